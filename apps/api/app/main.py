from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.automation.runtime import build_runtime
from app.core.config import get_settings
from app.core.database import SessionLocal
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    runtime = getattr(app.state, "runtime", None)
    if runtime is None:
        runtime = build_runtime(SessionLocal, settings)
        app.state.runtime = runtime
    if settings.automation_scheduler_enabled:
        runtime.scheduler.start_background()
    logger.info("system.started", extra={"status": "scheduler on" if settings.automation_scheduler_enabled else "scheduler off"})
    try:
        yield
    finally:
        runtime.shutdown()
        logger.info("system.stopped")


app = FastAPI(title="CRM Automation API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("crm-automation-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
