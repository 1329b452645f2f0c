from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import Response

from app.automation.api import router as automations_router
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(automations_router)

METRICS_ROLE = "system.metrics.read"


def _scheduler_state(request: Request) -> str:
    if not get_settings().automation_scheduler_enabled:
        return "disabled"
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None or not runtime.scheduler.is_running:
        return "stopped"
    return "running"


def require_metrics_reader(user: AuthUser = Depends(get_current_user)) -> AuthUser:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if METRICS_ROLE not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {METRICS_ROLE}")
    return user


@router.get("/health", tags=["system"])
def health(request: Request) -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "scheduler": _scheduler_state(request),
    }


@router.get("/metrics", tags=["system"])
def metrics(_: AuthUser = Depends(require_metrics_reader)) -> Response:
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
