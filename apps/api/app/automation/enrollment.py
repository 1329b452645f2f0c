from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.automation.models import Automation, AutomationEnrollment, utcnow
from app.metrics import observe_enrollment


logger = logging.getLogger("app.automation.enrollment")


@dataclass
class EnrollmentResult:
    automation_id: uuid.UUID
    entity_type: str
    entity_id: str
    enrolled: bool
    reason: str | None = None
    enrollment_id: uuid.UUID | None = None


class EnrollmentStore:
    """Durable enrollment cursor plus the conditional updates that move it.

    Every transition out of ``active`` is an UPDATE guarded on
    ``status = 'active'`` (and on the claim owner when one is given), so a
    transition that lost a race reports False instead of overwriting. Callers
    own the transaction.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, enrollment_id: uuid.UUID) -> AutomationEnrollment | None:
        return self.session.get(AutomationEnrollment, enrollment_id)

    def find_active(self, automation_id: uuid.UUID, entity_type: str, entity_id: uuid.UUID) -> AutomationEnrollment | None:
        return self.session.scalar(
            select(AutomationEnrollment).where(
                AutomationEnrollment.automation_id == automation_id,
                AutomationEnrollment.entity_type == entity_type,
                AutomationEnrollment.entity_id == entity_id,
                AutomationEnrollment.status == "active",
            )
        )

    def create(
        self,
        automation: Automation,
        entity_type: str,
        entity_id: uuid.UUID,
        *,
        now: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> EnrollmentResult:
        current = now or utcnow()
        refused = EnrollmentResult(automation.id, entity_type, str(entity_id), enrolled=False, reason="already_enrolled")
        if self.find_active(automation.id, entity_type, entity_id) is not None:
            observe_enrollment("refused")
            return refused

        enrollment = AutomationEnrollment(
            automation_id=automation.id,
            user_id=automation.user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            status="active",
            current_step_index=0,
            next_step_at=current,
            enrolled_at=current,
            metadata_json=dict(metadata or {}),
        )
        try:
            with self.session.begin_nested():
                self.session.add(enrollment)
                self.session.flush()
        except IntegrityError:
            logger.info(
                "automation.enrollment.race_refused",
                extra={"automation_id": str(automation.id), "entity_type": entity_type, "entity_id": str(entity_id)},
            )
            observe_enrollment("refused")
            return refused

        self._bump_counters(automation.id, enrolled_count=1, active_enrollments=1)
        observe_enrollment("enrolled")
        logger.info(
            "automation.enrollment.created",
            extra={
                "automation_id": str(automation.id),
                "enrollment_id": str(enrollment.id),
                "entity_type": entity_type,
                "entity_id": str(entity_id),
            },
        )
        return EnrollmentResult(automation.id, entity_type, str(entity_id), enrolled=True, enrollment_id=enrollment.id)

    def record_conditions_not_met(
        self,
        automation: Automation,
        entity_type: str,
        entity_id: uuid.UUID,
        *,
        now: datetime | None = None,
    ) -> AutomationEnrollment:
        """Keep a terminal record for a trigger whose entry conditions failed."""
        current = now or utcnow()
        enrollment = AutomationEnrollment(
            automation_id=automation.id,
            user_id=automation.user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            status="completed",
            current_step_index=0,
            next_step_at=None,
            enrolled_at=current,
            completed_at=current,
            exit_reason="conditions_not_met",
            metadata_json={},
        )
        self.session.add(enrollment)
        self.session.flush()
        self._bump_counters(automation.id, enrolled_count=1, completed_enrollments=1)
        observe_enrollment("conditions_not_met")
        return enrollment

    def claim_due(self, now: datetime, worker_id: str, *, limit: int, lease_seconds: int) -> list[uuid.UUID]:
        due_filter = and_(
            AutomationEnrollment.status == "active",
            AutomationEnrollment.next_step_at.is_not(None),
            AutomationEnrollment.next_step_at <= now,
            or_(AutomationEnrollment.claimed_until.is_(None), AutomationEnrollment.claimed_until < now),
            # deactivated automations keep their enrollments parked until reactivated
            select(Automation.id)
            .where(Automation.id == AutomationEnrollment.automation_id, Automation.is_active.is_(True))
            .exists(),
        )
        candidate_ids = self.session.scalars(
            select(AutomationEnrollment.id).where(due_filter).order_by(AutomationEnrollment.next_step_at).limit(limit)
        ).all()

        lease_until = now + timedelta(seconds=lease_seconds)
        claimed: list[uuid.UUID] = []
        for enrollment_id in candidate_ids:
            result = self.session.execute(
                update(AutomationEnrollment)
                .where(AutomationEnrollment.id == enrollment_id, due_filter)
                .values(claimed_by=worker_id, claimed_until=lease_until)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed.append(enrollment_id)
        return claimed

    def release(self, enrollment_id: uuid.UUID, worker_id: str) -> None:
        self.session.execute(
            update(AutomationEnrollment)
            .where(AutomationEnrollment.id == enrollment_id, AutomationEnrollment.claimed_by == worker_id)
            .values(claimed_by=None, claimed_until=None)
            .execution_options(synchronize_session=False)
        )

    def advance(
        self,
        enrollment: AutomationEnrollment,
        next_step_index: int,
        next_step_at: datetime,
        *,
        worker_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        values: dict[str, Any] = {"current_step_index": next_step_index, "next_step_at": next_step_at}
        if metadata is not None:
            values["metadata_json"] = metadata
        return self._guarded_update(enrollment, worker_id, values)

    def terminate(
        self,
        enrollment: AutomationEnrollment,
        status: str,
        *,
        now: datetime | None = None,
        worker_id: str | None = None,
        reason: str | None = None,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
        exited: bool = False,
    ) -> bool:
        current = now or utcnow()
        values: dict[str, Any] = {
            "status": status,
            "next_step_at": None,
            "claimed_by": None,
            "claimed_until": None,
        }
        if status == "completed":
            values["completed_at"] = current
        if exited or status in ("failed", "unenrolled"):
            values["exited_at"] = current
        if reason is not None:
            values["exit_reason"] = reason
        if error is not None:
            values["error"] = error[:2000]
        if metadata is not None:
            values["metadata_json"] = metadata

        if not self._guarded_update(enrollment, worker_id, values):
            return False

        counters = {"active_enrollments": -1}
        if status == "completed":
            counters["completed_enrollments"] = 1
        self._bump_counters(enrollment.automation_id, **counters)
        logger.info(
            "automation.enrollment.terminated",
            extra={
                "automation_id": str(enrollment.automation_id),
                "enrollment_id": str(enrollment.id),
                "status": status,
                "reason": reason,
                "error": error,
            },
        )
        return True

    def update_metadata(self, enrollment: AutomationEnrollment, metadata: dict[str, Any]) -> None:
        self.session.execute(
            update(AutomationEnrollment)
            .where(AutomationEnrollment.id == enrollment.id)
            .values(metadata_json=metadata)
            .execution_options(synchronize_session=False)
        )
        self.session.expire(enrollment)

    def unenroll(
        self,
        automation_id: uuid.UUID,
        entity_type: str,
        entity_id: uuid.UUID,
        *,
        now: datetime | None = None,
    ) -> bool:
        enrollment = self.find_active(automation_id, entity_type, entity_id)
        if enrollment is None:
            return False
        return self.terminate(enrollment, "unenrolled", now=now, reason="unenrolled by operator")

    def record_execution(self, automation_id: uuid.UUID, *, success: bool, now: datetime) -> None:
        self.session.execute(
            update(Automation)
            .where(Automation.id == automation_id)
            .values(
                execution_count=Automation.execution_count + (1 if success else 0),
                last_executed_at=now,
            )
            .execution_options(synchronize_session=False)
        )

    def status_counts(self, automation_id: uuid.UUID) -> dict[str, int]:
        rows = self.session.execute(
            select(AutomationEnrollment.status, func.count())
            .where(AutomationEnrollment.automation_id == automation_id)
            .group_by(AutomationEnrollment.status)
        ).all()
        return {str(status): int(count) for status, count in rows}

    def recent(self, automation_id: uuid.UUID, limit: int = 10) -> list[AutomationEnrollment]:
        return list(
            self.session.scalars(
                select(AutomationEnrollment)
                .where(AutomationEnrollment.automation_id == automation_id)
                .order_by(AutomationEnrollment.enrolled_at.desc())
                .limit(limit)
            ).all()
        )

    def _guarded_update(self, enrollment: AutomationEnrollment, worker_id: str | None, values: dict[str, Any]) -> bool:
        criteria = [AutomationEnrollment.id == enrollment.id, AutomationEnrollment.status == "active"]
        if worker_id is not None:
            criteria.append(AutomationEnrollment.claimed_by == worker_id)
        result = self.session.execute(
            update(AutomationEnrollment)
            .where(*criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.session.expire(enrollment)
        return result.rowcount == 1

    def _bump_counters(self, automation_id: uuid.UUID, **deltas: int) -> None:
        values: dict[str, Any] = {}
        for name, delta in deltas.items():
            column = getattr(Automation, name)
            if delta < 0:
                values[name] = func.max(column + delta, 0) if self._is_sqlite() else func.greatest(column + delta, 0)
            else:
                values[name] = column + delta
        self.session.execute(
            update(Automation).where(Automation.id == automation_id).values(**values).execution_options(synchronize_session=False)
        )
        automation = self.session.get(Automation, automation_id)
        if automation is not None:
            self.session.expire(automation)

    def _is_sqlite(self) -> bool:
        return self.session.get_bind().dialect.name == "sqlite"
