from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.automation.models import AutomationExecutionLog, utcnow

EXECUTION_STATUSES = ("success", "failed", "skipped")


def record_execution(
    session: Session,
    *,
    automation_id: uuid.UUID,
    user_id: str,
    trigger_type: str,
    status: str,
    enrollment_id: uuid.UUID | None = None,
    trigger_data: dict[str, Any] | None = None,
    step_index: int | None = None,
    conditions_met: bool | None = None,
    conditions_evaluated: list[dict[str, Any]] | None = None,
    actions_executed: list[dict[str, Any]] | None = None,
    error: str | None = None,
    session_id: str | None = None,
    executed_at: datetime | None = None,
) -> AutomationExecutionLog:
    if status not in EXECUTION_STATUSES:
        raise ValueError(f"invalid execution status: {status}")
    entry = AutomationExecutionLog(
        automation_id=automation_id,
        enrollment_id=enrollment_id,
        user_id=user_id,
        trigger_type=trigger_type,
        trigger_data=trigger_data or {},
        step_index=step_index,
        conditions_met=conditions_met,
        conditions_evaluated=conditions_evaluated or [],
        actions_executed=actions_executed or [],
        status=status,
        error=error[:2000] if error else None,
        session_id=session_id,
        executed_at=executed_at or utcnow(),
    )
    session.add(entry)
    session.flush()
    return entry


def list_for_automation(
    session: Session,
    automation_id: uuid.UUID,
    *,
    limit: int = 50,
    offset: int = 0,
) -> list[AutomationExecutionLog]:
    return list(
        session.scalars(
            select(AutomationExecutionLog)
            .where(AutomationExecutionLog.automation_id == automation_id)
            .order_by(AutomationExecutionLog.executed_at.desc(), AutomationExecutionLog.id)
            .limit(limit)
            .offset(offset)
        ).all()
    )


def list_for_enrollment(session: Session, enrollment_id: uuid.UUID) -> list[AutomationExecutionLog]:
    return list(
        session.scalars(
            select(AutomationExecutionLog)
            .where(AutomationExecutionLog.enrollment_id == enrollment_id)
            .order_by(AutomationExecutionLog.executed_at)
        ).all()
    )
