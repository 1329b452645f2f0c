from __future__ import annotations

import itertools
import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.automation.conditions import ConditionEvaluator
from app.automation.execution_log import list_for_automation, list_for_enrollment
from app.automation.models import Automation, AutomationEnrollment, as_utc, utcnow
from app.automation.schemas import (
    DebugLogEntry,
    DebugSummary,
    DryRunResponse,
    EnrollmentRead,
    ExecutionLogRead,
    ExecutionReport,
    parse_conditions,
)


sink = logging.getLogger("app.automation.debug")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass
class DebugEntry:
    id: int
    timestamp: datetime
    session_id: str
    automation_id: str
    level: str
    event: str
    data: dict[str, Any] = field(default_factory=dict)


def session_automation_id(session_id: str) -> str:
    # session ids start with the automation uuid
    return session_id[:36]


class AutomationDebugger:
    """Size-bounded trace of engine decisions.

    Each entry is kept in a ring buffer for the operator endpoints and also
    written to the ``app.automation.debug`` logger, which is where durable
    sinks attach.
    """

    def __init__(self, capacity: int = 1000) -> None:
        self.capacity = capacity
        self._entries: deque[DebugEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._sequence = itertools.count(1)

    def start_session(self, automation_id: Any, entity_type: str, entity_id: Any) -> str:
        session_id = f"{automation_id}-{entity_type}-{entity_id}-{int(time.time() * 1000)}"
        self.log(session_id, "session_started", {"entity_type": entity_type, "entity_id": str(entity_id)}, level="debug")
        return session_id

    def log(self, session_id: str, event: str, data: dict[str, Any] | None = None, level: str = "info") -> DebugEntry:
        entry = DebugEntry(
            id=next(self._sequence),
            timestamp=utcnow(),
            session_id=session_id,
            automation_id=session_automation_id(session_id),
            level=level if level in _LEVELS else "info",
            event=event,
            data=dict(data or {}),
        )
        with self._lock:
            self._entries.append(entry)
        sink.log(
            _LEVELS[entry.level],
            f"automation.debug.{event}",
            extra={
                "session_id": session_id,
                "automation_id": entry.automation_id,
                "debug_level": entry.level,
                "debug_event": event,
                "data": entry.data,
            },
        )
        return entry

    def log_condition_evaluation(self, session_id: str, met: bool, trace: list[dict[str, Any]]) -> DebugEntry:
        return self.log(
            session_id,
            "conditions_evaluated",
            {
                "met": met,
                "conditions": trace,
                "explanations": [item.get("explanation") for item in trace],
            },
            level="info" if met else "warn",
        )

    def log_action_execution(
        self,
        session_id: str,
        action_type: str,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> DebugEntry:
        if error is not None:
            return self.log(session_id, "action_failed", {"action_type": action_type, "error": error}, level="error")
        return self.log(session_id, "action_executed", {"action_type": action_type, "result": result or {}})

    def get_session_logs(self, session_id: str) -> list[DebugEntry]:
        with self._lock:
            return [entry for entry in self._entries if entry.session_id == session_id]

    def get_automation_logs(self, automation_id: Any, limit: int = 100) -> list[DebugEntry]:
        wanted = str(automation_id)
        with self._lock:
            matching = [entry for entry in self._entries if entry.automation_id == wanted]
        return matching[-limit:]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def test_automation(
        self,
        automation: Automation,
        sample_data: dict[str, Any] | None = None,
        evaluator: ConditionEvaluator | None = None,
    ) -> DryRunResponse:
        """Evaluate an automation against sample data without mutating anything."""
        evaluator = evaluator or ConditionEvaluator()
        trigger_type = automation.trigger_type
        data = sample_data if sample_data is not None else generate_test_data(trigger_type)
        entity_type = "contact" if trigger_type.startswith("contact_") else "deal"
        entity = data.get(entity_type) if isinstance(data.get(entity_type), dict) else data
        entity_id = entity.get("id", "sample") if isinstance(entity, dict) else "sample"

        session_id = self.start_session(automation.id, entity_type, f"test-{entity_id}")
        self.log(session_id, "test_started", {"trigger_type": trigger_type, "dry_run": True})

        conditions, actions = _first_decision(automation)
        met, trace = evaluator.evaluate_all_traced(conditions, entity, entity_type)
        self.log_condition_evaluation(session_id, met, trace)

        planned: list[dict[str, Any]] = []
        if met:
            for action in actions:
                planned.append({"type": action.get("type"), "config": action.get("config", {}), "would_execute": True})
                self.log(session_id, "action_would_execute", {"action_type": action.get("type")}, level="debug")
        self.log(session_id, "test_completed", {"conditions_met": met, "planned_actions": len(planned)})

        return DryRunResponse(
            session_id=session_id,
            trigger_type=trigger_type,
            sample_data=data,
            conditions_met=met,
            conditions=trace,
            actions=planned,
            logs=[DebugLogEntry(**_public(entry)) for entry in self.get_session_logs(session_id)],
        )


def _public(entry: DebugEntry) -> dict[str, Any]:
    payload = asdict(entry)
    payload.pop("automation_id")
    return payload


def _first_decision(automation: Automation) -> tuple[list[Any], list[dict[str, Any]]]:
    """Conditions and actions a dry run reports on.

    Single-step automations use their own lists; multi-step ones use the first
    condition step and the first action step.
    """
    if not automation.is_multi_step:
        return parse_conditions(automation.conditions_json), list(automation.actions_json or [])

    conditions: list[Any] = []
    actions: list[dict[str, Any]] = []
    for step in automation.steps:
        config = step.config_json or {}
        if not conditions and step.step_type == "condition":
            conditions = parse_conditions(config.get("conditions"))
        if not actions and step.step_type == "action":
            actions = list(config.get("actions") or [])
    return conditions, actions


def generate_test_data(trigger_type: str) -> dict[str, Any]:
    contact = {
        "id": str(uuid.UUID(int=1)),
        "firstName": "Test",
        "lastName": "Contact",
        "email": "test.contact@example.com",
        "phone": "+1-555-0100",
        "company": "Example Corp",
        "position": "Head of Sales",
        "source": "Website",
        "tags": ["test"],
        "customFields": {},
    }
    deal = {
        "id": str(uuid.UUID(int=2)),
        "name": "Test Deal",
        "value": 5000,
        "status": "open",
        "stageId": str(uuid.UUID(int=3)),
        "contactId": contact["id"],
        "customFields": {},
        "Contact": contact,
    }
    if trigger_type in ("contact_created", "contact_updated"):
        return {"contact": contact, "changedFields": ["firstName"] if trigger_type == "contact_updated" else []}
    if trigger_type == "deal_stage_changed":
        return {
            "deal": deal,
            "previousStage": {"id": str(uuid.UUID(int=4)), "name": "Qualified"},
            "newStage": {"id": deal["stageId"], "name": "Proposal"},
        }
    if trigger_type == "deal_updated":
        return {"deal": deal, "changedFields": ["value"]}
    return {"deal": deal}


def create_execution_report(session: Session, enrollment: AutomationEnrollment) -> ExecutionReport:
    logs = list_for_enrollment(session, enrollment.id)
    actions = [action for log in logs for action in log.actions_executed]
    end = as_utc(enrollment.completed_at or enrollment.exited_at)
    started = as_utc(enrollment.enrolled_at)
    return ExecutionReport(
        enrollment=EnrollmentRead.model_validate(enrollment),
        automation_name=enrollment.automation.name,
        duration_seconds=(end - started).total_seconds() if end is not None and started is not None else None,
        steps_executed=len(logs),
        actions_executed=sum(1 for action in actions if action.get("status") == "success"),
        actions_failed=sum(1 for action in actions if action.get("status") == "failed"),
        conditions_evaluated=sum(len(log.conditions_evaluated) for log in logs),
        logs=[ExecutionLogRead.model_validate(log) for log in logs],
    )


def generate_debug_summary(session: Session, automation: Automation, window: int = 200) -> DebugSummary:
    logs = list_for_automation(session, automation.id, limit=window)
    failed = [log for log in logs if log.status == "failed"]
    skipped = [log for log in logs if log.status == "skipped"]

    recommendations: list[dict[str, str]] = []
    if logs and len(skipped) / len(logs) > 0.5:
        recommendations.append(
            {
                "type": "CONDITION_FAILURES",
                "message": "Most executions stopped on unmet conditions; review the condition values and AND/OR logic.",
            }
        )
    if failed:
        recommendations.append(
            {
                "type": "ACTION_ERRORS",
                "message": f"{len(failed)} execution(s) failed; check action configuration and referenced records.",
            }
        )
    if automation.is_active and automation.enrolled_count == 0:
        recommendations.append(
            {
                "type": "ENROLLMENT_FAILURES",
                "message": "No entity has been enrolled yet; confirm the trigger type and stage filters.",
            }
        )

    return DebugSummary(
        automation_id=automation.id,
        total_executions=len(logs),
        successful=sum(1 for log in logs if log.status == "success"),
        failed=len(failed),
        skipped=len(skipped),
        recent_errors=[
            {"enrollment_id": str(log.enrollment_id) if log.enrollment_id else None, "error": log.error, "executed_at": log.executed_at.isoformat()}
            for log in failed[:10]
        ],
        recommendations=recommendations,
    )
