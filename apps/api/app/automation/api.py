from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.automation.runtime import AutomationRuntime
from app.automation.schemas import (
    AutomationDefinition,
    AutomationRead,
    DebugLogEntry,
    DebugSummary,
    DryRunRequest,
    DryRunResponse,
    EnrollmentSummary,
    EnrollRequest,
    EnrollResult,
    EntityType,
    ExecutionLogRead,
    ExecutionReport,
    PreviewEntry,
)
from app.automation.service import AutomationService
from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user, require_owner
from app.core.database import get_db

router = APIRouter(prefix="/api/automations", tags=["automations"])
service = AutomationService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=get_correlation_id(),
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_runtime(request: Request) -> AutomationRuntime:
    return request.app.state.runtime


@router.post("", response_model=AutomationRead, status_code=status.HTTP_201_CREATED)
def create_automation(
    request: Request,
    dto: AutomationDefinition,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> AutomationRead | JSONResponse:
    try:
        return service.create_automation(db, require_owner(user), dto)
    except HTTPException as exc:
        return _failed(request, exc, "automation_create_failed")


@router.get("", response_model=list[AutomationRead])
def list_automations(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[AutomationRead] | JSONResponse:
    try:
        return service.list_automations(db, require_owner(user))
    except HTTPException as exc:
        return _failed(request, exc, "automation_list_failed")


@router.get("/enrollments/{enrollment_id}/logs", response_model=list[ExecutionLogRead])
def get_enrollment_logs(
    request: Request,
    enrollment_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[ExecutionLogRead] | JSONResponse:
    try:
        return service.get_enrollment_logs(db, require_owner(user), enrollment_id)
    except HTTPException as exc:
        return _failed(request, exc, "automation_enrollment_logs_failed")


@router.get("/enrollments/{enrollment_id}/report", response_model=ExecutionReport)
def get_execution_report(
    request: Request,
    enrollment_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> ExecutionReport | JSONResponse:
    try:
        return service.get_execution_report(db, require_owner(user), enrollment_id)
    except HTTPException as exc:
        return _failed(request, exc, "automation_report_failed")


@router.get("/{automation_id}", response_model=AutomationRead)
def get_automation(
    request: Request,
    automation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> AutomationRead | JSONResponse:
    try:
        return AutomationRead.model_validate(service.get_automation(db, require_owner(user), automation_id))
    except HTTPException as exc:
        return _failed(request, exc, "automation_get_failed")


@router.get("/{automation_id}/logs", response_model=list[ExecutionLogRead])
def get_automation_logs(
    request: Request,
    automation_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[ExecutionLogRead] | JSONResponse:
    try:
        return service.get_logs(db, require_owner(user), automation_id, limit=limit, offset=offset)
    except HTTPException as exc:
        return _failed(request, exc, "automation_logs_failed")


@router.get("/{automation_id}/debug-logs", response_model=list[DebugLogEntry])
def get_debug_logs(
    request: Request,
    automation_id: uuid.UUID,
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    runtime: AutomationRuntime = Depends(get_runtime),
) -> list[DebugLogEntry] | JSONResponse:
    try:
        return service.get_debug_logs(db, require_owner(user), automation_id, runtime.debugger, limit=limit)
    except HTTPException as exc:
        return _failed(request, exc, "automation_debug_logs_failed")


@router.get("/{automation_id}/debug-summary", response_model=DebugSummary)
def get_debug_summary(
    request: Request,
    automation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> DebugSummary | JSONResponse:
    try:
        return service.get_debug_summary(db, require_owner(user), automation_id)
    except HTTPException as exc:
        return _failed(request, exc, "automation_debug_summary_failed")


@router.post("/{automation_id}/test", response_model=DryRunResponse)
def test_automation(
    request: Request,
    automation_id: uuid.UUID,
    dto: DryRunRequest | None = None,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
    runtime: AutomationRuntime = Depends(get_runtime),
) -> DryRunResponse | JSONResponse:
    try:
        sample_data = dto.sample_data if dto is not None else None
        return service.test_automation(db, require_owner(user), automation_id, runtime.debugger, sample_data)
    except HTTPException as exc:
        return _failed(request, exc, "automation_test_failed")


@router.get("/{automation_id}/enrollments", response_model=EnrollmentSummary)
def get_enrollment_summary(
    request: Request,
    automation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> EnrollmentSummary | JSONResponse:
    try:
        return service.get_enrollment_summary(db, require_owner(user), automation_id)
    except HTTPException as exc:
        return _failed(request, exc, "automation_enrollments_failed")


@router.get("/{automation_id}/preview-enrollment", response_model=list[PreviewEntry])
def preview_enrollment(
    request: Request,
    automation_id: uuid.UUID,
    entity_type: EntityType | None = Query(default=None, alias="entityType"),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[PreviewEntry] | JSONResponse:
    try:
        return service.preview_enrollment(db, require_owner(user), automation_id, entity_type)
    except HTTPException as exc:
        return _failed(request, exc, "automation_preview_failed")


@router.post("/{automation_id}/enroll", response_model=list[EnrollResult])
def enroll_entities(
    request: Request,
    automation_id: uuid.UUID,
    dto: EnrollRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[EnrollResult] | JSONResponse:
    try:
        return service.enroll(db, require_owner(user), automation_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "automation_enroll_failed")


@router.post("/{automation_id}/unenroll", response_model=list[EnrollResult])
def unenroll_entities(
    request: Request,
    automation_id: uuid.UUID,
    dto: EnrollRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[EnrollResult] | JSONResponse:
    try:
        return service.unenroll(db, require_owner(user), automation_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "automation_unenroll_failed")
