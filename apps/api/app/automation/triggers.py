from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.automation.conditions import ConditionEvaluator
from app.automation.debugger import AutomationDebugger
from app.automation.enrollment import EnrollmentResult, EnrollmentStore
from app.automation.execution_log import record_execution
from app.automation.models import Automation, utcnow
from app.automation.schemas import parse_conditions
from app.core.events import DomainEvent


logger = logging.getLogger("app.automation.triggers")

EVENT_ENTITY_TYPES = {
    "contact_created": "contact",
    "contact_updated": "contact",
    "deal_created": "deal",
    "deal_updated": "deal",
    "deal_stage_changed": "deal",
}


def _parse_uuid(value: Any) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _stage_id(stage: Any) -> str | None:
    if isinstance(stage, dict) and stage.get("id") is not None:
        return str(stage["id"])
    return None


def stage_filter_matches(automation: Automation, data: dict[str, Any], entity: dict[str, Any]) -> bool:
    """Apply an optional ``{fromStageId, toStageId}`` filter of a stage-change trigger."""
    config = (automation.trigger_json or {}).get("config") or {}
    from_stage_id = config.get("fromStageId")
    to_stage_id = config.get("toStageId")
    if from_stage_id and str(from_stage_id) != _stage_id(data.get("previousStage")):
        return False
    if to_stage_id:
        new_stage_id = _stage_id(data.get("newStage")) or (str(entity["stageId"]) if entity.get("stageId") else None)
        if str(to_stage_id) != new_stage_id:
            return False
    return True


class TriggerService:
    """Turns a domain event into enrollment decisions for the owner's automations."""

    def __init__(self, debugger: AutomationDebugger, evaluator: ConditionEvaluator | None = None) -> None:
        self.debugger = debugger
        self.evaluator = evaluator or ConditionEvaluator()

    def matching_automations(self, session: Session, event_type: str, user_id: str) -> list[Automation]:
        rows = session.scalars(
            select(Automation)
            .where(Automation.user_id == str(user_id), Automation.is_active.is_(True))
            .order_by(Automation.created_at)
        ).all()
        return [automation for automation in rows if automation.trigger_type == event_type]

    def on_event(self, session: Session, event: DomainEvent, now: datetime | None = None) -> list[EnrollmentResult]:
        current = now or utcnow()
        entity_type = EVENT_ENTITY_TYPES.get(event.type)
        if entity_type is None:
            return []

        entity = event.data.get(entity_type)
        entity_id = _parse_uuid(entity.get("id")) if isinstance(entity, dict) else None
        if entity_id is None:
            logger.warning(
                "automation.trigger.missing_entity",
                extra={"event_type": event.type, "entity_type": entity_type},
            )
            return []

        store = EnrollmentStore(session)
        results: list[EnrollmentResult] = []
        for automation in self.matching_automations(session, event.type, event.user_id):
            result = self._decide(session, store, automation, event, entity_type, entity, entity_id, current)
            if result is not None:
                results.append(result)

        session.commit()
        logger.info(
            "automation.trigger.processed",
            extra={
                "event_type": event.type,
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "status": f"{sum(1 for item in results if item.enrolled)}/{len(results)} enrolled",
            },
        )
        return results

    def _decide(
        self,
        session: Session,
        store: EnrollmentStore,
        automation: Automation,
        event: DomainEvent,
        entity_type: str,
        entity: dict[str, Any],
        entity_id: uuid.UUID,
        now: datetime,
    ) -> EnrollmentResult | None:
        if event.type == "deal_stage_changed" and not stage_filter_matches(automation, event.data, entity):
            logger.debug(
                "automation.trigger.stage_filtered",
                extra={"automation_id": str(automation.id), "entity_id": str(entity_id)},
            )
            return None

        if store.find_active(automation.id, entity_type, entity_id) is not None:
            return EnrollmentResult(automation.id, entity_type, str(entity_id), enrolled=False, reason="already_enrolled")

        conditions = parse_conditions(automation.conditions_json)
        if not automation.is_multi_step and conditions:
            session_id = self.debugger.start_session(automation.id, entity_type, entity_id)
            met, trace = self.evaluator.evaluate_all_traced(conditions, entity, entity_type)
            self.debugger.log_condition_evaluation(session_id, met, trace)
            if not met:
                enrollment = store.record_conditions_not_met(automation, entity_type, entity_id, now=now)
                record_execution(
                    session,
                    automation_id=automation.id,
                    enrollment_id=enrollment.id,
                    user_id=automation.user_id,
                    trigger_type=event.type,
                    trigger_data=event.data,
                    step_index=0,
                    conditions_met=False,
                    conditions_evaluated=trace,
                    status="skipped",
                    session_id=session_id,
                )
                return EnrollmentResult(
                    automation.id,
                    entity_type,
                    str(entity_id),
                    enrolled=False,
                    reason="conditions_not_met",
                    enrollment_id=enrollment.id,
                )

        return store.create(automation, entity_type, entity_id, now=now, metadata={"triggerEventId": event.event_id})
