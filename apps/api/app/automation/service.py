from __future__ import annotations

import uuid

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app import audit
from app.automation.conditions import ConditionEvaluator
from app.automation.debugger import AutomationDebugger, create_execution_report, generate_debug_summary
from app.automation.enrollment import EnrollmentStore
from app.automation.execution_log import list_for_automation, list_for_enrollment
from app.automation.models import Automation, AutomationEnrollment, AutomationStep, utcnow
from app.automation.schemas import (
    AutomationDefinition,
    AutomationRead,
    DebugLogEntry,
    DebugSummary,
    DryRunResponse,
    EnrollmentRead,
    EnrollmentSummary,
    EnrollRequest,
    EnrollResult,
    ExecutionLogRead,
    ExecutionReport,
    PreviewEntry,
    parse_conditions,
)
from app.automation.triggers import EVENT_ENTITY_TYPES
from app.crm.repositories import SqlRecordStore


PREVIEW_LIMIT = 100


class AutomationService:
    """Operator-facing queries and commands, always scoped to the owning user."""

    def __init__(self, evaluator: ConditionEvaluator | None = None) -> None:
        self.evaluator = evaluator or ConditionEvaluator()

    def create_automation(self, session: Session, owner_id: str, dto: AutomationDefinition) -> AutomationRead:
        automation = Automation(
            user_id=owner_id,
            name=dto.name.strip(),
            description=dto.description,
            trigger_json=dto.trigger.model_dump(by_alias=True, exclude_none=True),
            conditions_json=[item.model_dump(by_alias=True) for item in dto.conditions],
            actions_json=dto.actions,
            exit_criteria_json=dto.exit_criteria.model_dump(by_alias=True, exclude_none=True) if dto.exit_criteria else None,
            is_multi_step=dto.is_multi_step,
            is_active=dto.is_active,
            max_duration_days=dto.max_duration_days,
            safety_exit_enabled=dto.safety_exit_enabled,
        )
        for step in dto.steps:
            automation.steps.append(
                AutomationStep(
                    step_index=step.step_index,
                    name=step.name,
                    step_type=step.type,
                    config_json=step.config_payload(),
                    next_step_index=step.next_step_index,
                    branch_step_indices=step.branch_step_indices,
                )
            )
        session.add(automation)
        session.flush()
        audit.record(
            actor_user_id=owner_id,
            automation_id=str(automation.id),
            action="automation.created",
            details={"trigger": automation.trigger_type, "isMultiStep": automation.is_multi_step},
        )
        session.commit()
        session.refresh(automation)
        return AutomationRead.model_validate(automation)

    def list_automations(self, session: Session, owner_id: str) -> list[AutomationRead]:
        rows = session.scalars(
            select(Automation).where(Automation.user_id == owner_id).order_by(Automation.created_at.desc())
        ).all()
        return [AutomationRead.model_validate(row) for row in rows]

    def get_automation(self, session: Session, owner_id: str, automation_id: uuid.UUID) -> Automation:
        automation = session.scalar(
            select(Automation).where(Automation.id == automation_id, Automation.user_id == owner_id)
        )
        if automation is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="automation not found")
        return automation

    def _get_enrollment(self, session: Session, owner_id: str, enrollment_id: uuid.UUID) -> AutomationEnrollment:
        enrollment = session.scalar(
            select(AutomationEnrollment).where(
                AutomationEnrollment.id == enrollment_id,
                AutomationEnrollment.user_id == owner_id,
            )
        )
        if enrollment is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="enrollment not found")
        return enrollment

    def get_logs(
        self,
        session: Session,
        owner_id: str,
        automation_id: uuid.UUID,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ExecutionLogRead]:
        automation = self.get_automation(session, owner_id, automation_id)
        rows = list_for_automation(session, automation.id, limit=limit, offset=offset)
        return [ExecutionLogRead.model_validate(row) for row in rows]

    def get_enrollment_logs(self, session: Session, owner_id: str, enrollment_id: uuid.UUID) -> list[ExecutionLogRead]:
        enrollment = self._get_enrollment(session, owner_id, enrollment_id)
        return [ExecutionLogRead.model_validate(row) for row in list_for_enrollment(session, enrollment.id)]

    def get_execution_report(self, session: Session, owner_id: str, enrollment_id: uuid.UUID) -> ExecutionReport:
        return create_execution_report(session, self._get_enrollment(session, owner_id, enrollment_id))

    def get_debug_summary(self, session: Session, owner_id: str, automation_id: uuid.UUID) -> DebugSummary:
        return generate_debug_summary(session, self.get_automation(session, owner_id, automation_id))

    def get_debug_logs(
        self,
        session: Session,
        owner_id: str,
        automation_id: uuid.UUID,
        debugger: AutomationDebugger,
        *,
        limit: int = 100,
    ) -> list[DebugLogEntry]:
        automation = self.get_automation(session, owner_id, automation_id)
        return [
            DebugLogEntry(
                id=entry.id,
                timestamp=entry.timestamp,
                session_id=entry.session_id,
                level=entry.level,
                event=entry.event,
                data=entry.data,
            )
            for entry in debugger.get_automation_logs(automation.id, limit=limit)
        ]

    def test_automation(
        self,
        session: Session,
        owner_id: str,
        automation_id: uuid.UUID,
        debugger: AutomationDebugger,
        sample_data: dict | None = None,
    ) -> DryRunResponse:
        automation = self.get_automation(session, owner_id, automation_id)
        result = debugger.test_automation(automation, sample_data, self.evaluator)
        audit.record(
            actor_user_id=owner_id,
            automation_id=str(automation.id),
            action="automation.tested",
            details={"sessionId": result.session_id, "conditionsMet": result.conditions_met},
        )
        return result

    def get_enrollment_summary(self, session: Session, owner_id: str, automation_id: uuid.UUID) -> EnrollmentSummary:
        automation = self.get_automation(session, owner_id, automation_id)
        store = EnrollmentStore(session)
        by_status = store.status_counts(automation.id)
        return EnrollmentSummary(
            total=sum(by_status.values()),
            by_status=by_status,
            recent=[EnrollmentRead.model_validate(row) for row in store.recent(automation.id, limit=10)],
        )

    def preview_enrollment(
        self,
        session: Session,
        owner_id: str,
        automation_id: uuid.UUID,
        entity_type: str | None = None,
    ) -> list[PreviewEntry]:
        """Which existing entities would enroll if the trigger fired for them now."""
        automation = self.get_automation(session, owner_id, automation_id)
        entity_type = entity_type or EVENT_ENTITY_TYPES.get(automation.trigger_type, "contact")
        store = EnrollmentStore(session)
        conditions = parse_conditions(automation.conditions_json) if not automation.is_multi_step else []

        entries: list[PreviewEntry] = []
        for entity in SqlRecordStore(session).list_entities(entity_type, owner_id, limit=PREVIEW_LIMIT):
            entity_id = uuid.UUID(entity["id"])
            if store.find_active(automation.id, entity_type, entity_id) is not None:
                entries.append(PreviewEntry(entity_id=entity["id"], would_enroll=False, reason="already_enrolled"))
            elif not self.evaluator.evaluate_all(conditions, entity, entity_type):
                entries.append(PreviewEntry(entity_id=entity["id"], would_enroll=False, reason="conditions_not_met"))
            else:
                entries.append(PreviewEntry(entity_id=entity["id"], would_enroll=True))
        return entries

    def enroll(self, session: Session, owner_id: str, automation_id: uuid.UUID, dto: EnrollRequest) -> list[EnrollResult]:
        """Manually enroll entities; entry conditions are not applied."""
        automation = self.get_automation(session, owner_id, automation_id)
        records = SqlRecordStore(session)
        store = EnrollmentStore(session)
        now = utcnow()

        results: list[EnrollResult] = []
        for entity_id in dto.entity_ids:
            if records.find(dto.entity_type, entity_id, owner_id) is None:
                results.append(EnrollResult(entity_id=str(entity_id), enrolled=False, reason="not_found"))
                continue
            outcome = store.create(automation, dto.entity_type, entity_id, now=now, metadata={"manual": True})
            results.append(
                EnrollResult(
                    entity_id=str(entity_id),
                    enrolled=outcome.enrolled,
                    reason=outcome.reason,
                    enrollment_id=outcome.enrollment_id,
                )
            )

        audit.record(
            actor_user_id=owner_id,
            automation_id=str(automation.id),
            action="automation.enrolled",
            details={"entityType": dto.entity_type, "enrolled": sum(1 for item in results if item.enrolled)},
        )
        session.commit()
        return results

    def unenroll(self, session: Session, owner_id: str, automation_id: uuid.UUID, dto: EnrollRequest) -> list[EnrollResult]:
        automation = self.get_automation(session, owner_id, automation_id)
        store = EnrollmentStore(session)
        now = utcnow()

        results: list[EnrollResult] = []
        for entity_id in dto.entity_ids:
            unenrolled = store.unenroll(automation.id, dto.entity_type, entity_id, now=now)
            results.append(
                EnrollResult(
                    entity_id=str(entity_id),
                    enrolled=False,
                    reason="unenrolled" if unenrolled else "not_enrolled",
                )
            )

        audit.record(
            actor_user_id=owner_id,
            automation_id=str(automation.id),
            action="automation.unenrolled",
            details={"entityType": dto.entity_type, "unenrolled": sum(1 for item in results if item.reason == "unenrolled")},
        )
        session.commit()
        return results
