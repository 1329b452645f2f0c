from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base


ENROLLMENT_STATUSES = ("active", "completed", "failed", "unenrolled")
TERMINAL_STATUSES = ("completed", "failed", "unenrolled")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Automation(Base):
    __tablename__ = "automation"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    trigger_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    conditions_json: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    actions_json: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    exit_criteria_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_multi_step: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    max_duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    safety_exit_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    enrolled_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    active_enrollments: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    completed_enrollments: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    execution_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    steps: Mapped[list[AutomationStep]] = relationship(
        back_populates="automation",
        cascade="all, delete-orphan",
        order_by="AutomationStep.step_index",
    )

    @property
    def trigger_type(self) -> str:
        return str((self.trigger_json or {}).get("type") or "")


class AutomationStep(Base):
    __tablename__ = "automation_step"
    __table_args__ = (UniqueConstraint("automation_id", "step_index", name="uq_automation_step_index"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    automation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("automation.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_index: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    step_type: Mapped[str] = mapped_column(String(16), nullable=False)
    config_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    next_step_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    branch_step_indices: Mapped[dict[str, int] | None] = mapped_column(JSON, nullable=True)

    automation: Mapped[Automation] = relationship(back_populates="steps")


class AutomationEnrollment(Base):
    __tablename__ = "automation_enrollment"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    automation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("automation.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", server_default="active")
    current_step_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    next_step_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    enrolled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    exited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    exit_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    claimed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claimed_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    automation: Mapped[Automation] = relationship()


class AutomationExecutionLog(Base):
    __tablename__ = "automation_execution_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    automation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("automation.id", ondelete="CASCADE"),
        nullable=False,
    )
    enrollment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    trigger_type: Mapped[str] = mapped_column(String(64), nullable=False)
    trigger_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    step_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    conditions_met: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    conditions_evaluated: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    actions_executed: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    session_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


Index("ix_automation_user_trigger_active", Automation.user_id, Automation.is_active)
Index(
    "uq_automation_enrollment_active_entity",
    AutomationEnrollment.automation_id,
    AutomationEnrollment.entity_type,
    AutomationEnrollment.entity_id,
    unique=True,
    postgresql_where=AutomationEnrollment.status == "active",
    sqlite_where=AutomationEnrollment.status == "active",
)
Index("ix_automation_enrollment_due", AutomationEnrollment.status, AutomationEnrollment.next_step_at)
Index("ix_automation_enrollment_automation", AutomationEnrollment.automation_id, AutomationEnrollment.status)
Index("ix_automation_execution_log_automation", AutomationExecutionLog.automation_id, AutomationExecutionLog.executed_at)
Index("ix_automation_execution_log_enrollment", AutomationExecutionLog.enrollment_id)
