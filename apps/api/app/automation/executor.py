from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from app.automation import errors
from app.automation.actions import ActionContext, ActionExecutor
from app.automation.conditions import ConditionEvaluator
from app.automation.debugger import AutomationDebugger
from app.automation.enrollment import EnrollmentStore
from app.automation.execution_log import record_execution
from app.automation.exit_criteria import ExitCriteriaEvaluator
from app.automation.models import Automation, AutomationEnrollment, as_utc, utcnow
from app.automation.notifications import NotificationSender
from app.automation.schemas import BranchConfig, DelayConfig, parse_conditions
from app.context import (
    reset_correlation_id,
    reset_debug_session_id,
    set_correlation_id,
    set_debug_session_id,
)
from app.core.config import Settings, get_settings
from app.crm.repositories import SqlRecordStore
from app.metrics import observe_exit, observe_step
from app.otel import automation_span, mark_span_failed


logger = logging.getLogger("app.automation.executor")

STEP_EXECUTION_TRIGGER = "step_execution"
_DELAY_UNITS = {"minutes": 60, "hours": 3600, "days": 86400}
# actions with effects outside the database
_EXTERNAL_ACTIONS = frozenset({"send_email"})


@dataclass(frozen=True)
class StepPlan:
    step_index: int
    step_type: str
    config: dict[str, Any]
    next_step_index: int | None = None
    branch_step_indices: dict[str, int] = field(default_factory=dict)
    # single-step automations run as implicit steps
    implicit: bool = False


def build_plan(automation: Automation) -> dict[int, StepPlan]:
    """Step graph of an automation, keyed by step index.

    A single-step automation becomes a condition step (when it has conditions)
    followed by one action step, so both kinds run through the same state
    machine.
    """
    if automation.is_multi_step:
        return {
            step.step_index: StepPlan(
                step_index=step.step_index,
                step_type=step.step_type,
                config=dict(step.config_json or {}),
                next_step_index=step.next_step_index,
                branch_step_indices=dict(step.branch_step_indices or {}),
            )
            for step in automation.steps
        }

    actions = {"actions": list(automation.actions_json or [])}
    if not automation.conditions_json:
        return {0: StepPlan(0, "action", actions, implicit=True)}
    return {
        0: StepPlan(0, "condition", {"conditions": list(automation.conditions_json)}, next_step_index=1, implicit=True),
        1: StepPlan(1, "action", actions, implicit=True),
    }


def delay_delta(config: dict[str, Any]) -> timedelta:
    delay = DelayConfig.model_validate(config.get("delayConfig") or {})
    return timedelta(seconds=delay.value * _DELAY_UNITS[delay.unit])


@dataclass
class StepOutcome:
    status: str
    next_step_index: int | None = None
    terminal: str | None = None
    reason: str | None = None
    error: str | None = None
    conditions_met: bool | None = None
    conditions_evaluated: list[dict[str, Any]] = field(default_factory=list)
    actions_executed: list[dict[str, Any]] = field(default_factory=list)
    branch: str | None = None
    applied: bool = True


class StepExecutor:
    """Runs due steps for one enrollment.

    Exit criteria are checked before every step. Each step writes exactly one
    execution log entry and commits, so a crash between steps resumes from the
    stored ``current_step_index``. Errors raised while running a step are
    recorded on the enrollment and never escape ``process``.
    """

    def __init__(
        self,
        session: Session,
        notifier: NotificationSender,
        debugger: AutomationDebugger,
        *,
        settings: Settings | None = None,
        worker_id: str | None = None,
        evaluator: ConditionEvaluator | None = None,
    ) -> None:
        self.session = session
        self.debugger = debugger
        self.settings = settings or get_settings()
        self.worker_id = worker_id
        self.evaluator = evaluator or ConditionEvaluator()
        self.records = SqlRecordStore(session)
        self.enrollments = EnrollmentStore(session)
        self.actions = ActionExecutor(
            self.records,
            notifier,
            timeout_seconds=self.settings.automation_action_timeout_seconds,
        )
        self.exit_criteria = ExitCriteriaEvaluator(self.records, self.evaluator)

    def process(self, enrollment_id: uuid.UUID, now: datetime | None = None) -> int:
        """Run every step that is due for the enrollment and return how many ran."""
        current = now or utcnow()
        enrollment = self.enrollments.get(enrollment_id)
        if enrollment is None or enrollment.status != "active":
            return 0

        automation = enrollment.automation
        if not automation.is_active:
            logger.info(
                "automation.step.automation_inactive",
                extra={"automation_id": str(automation.id), "enrollment_id": str(enrollment_id)},
            )
            if self.worker_id is not None:
                self.enrollments.release(enrollment_id, self.worker_id)
                self.session.commit()
            return 0

        session_id = self.debugger.start_session(automation.id, enrollment.entity_type, enrollment.entity_id)
        correlation_token = set_correlation_id(session_id)
        session_token = set_debug_session_id(session_id)
        executed = 0
        try:
            plan = build_plan(automation)
            while executed < self.settings.automation_max_steps_per_pass:
                if enrollment.status != "active":
                    break
                due_at = as_utc(enrollment.next_step_at)
                if due_at is None or due_at > current:
                    break
                if self.check_exit(enrollment, automation, current, session_id):
                    break
                outcome = self.execute_step(enrollment, automation, plan, current, session_id)
                executed += 1
                if not outcome.applied:
                    break
            else:
                logger.info(
                    "automation.step.pass_limit_reached",
                    extra={"enrollment_id": str(enrollment_id), "step_index": enrollment.current_step_index},
                )
        finally:
            if self.worker_id is not None:
                self.enrollments.release(enrollment_id, self.worker_id)
                self.session.commit()
            reset_debug_session_id(session_token)
            reset_correlation_id(correlation_token)
        return executed

    def check_exit(self, enrollment: AutomationEnrollment, automation: Automation, now: datetime, session_id: str) -> bool:
        entity = self.records.find(enrollment.entity_type, enrollment.entity_id, enrollment.user_id)
        decision = self.exit_criteria.check(enrollment, automation, entity, now)
        if not decision.should_exit:
            return False

        step_index = enrollment.current_step_index
        terminated = self.enrollments.terminate(
            enrollment,
            "completed",
            now=now,
            worker_id=self.worker_id,
            reason=decision.reason,
            exited=True,
        )
        if terminated:
            record_execution(
                self.session,
                automation_id=automation.id,
                enrollment_id=enrollment.id,
                user_id=automation.user_id,
                trigger_type="exit_criteria",
                trigger_data={"kind": decision.kind, "reason": decision.reason},
                step_index=step_index,
                status="skipped",
                session_id=session_id,
            )
            observe_exit(decision.kind or "unknown")
            self.debugger.log(session_id, "exit_criteria_met", {"kind": decision.kind, "reason": decision.reason})
            logger.info(
                "automation.exit",
                extra={
                    "automation_id": str(automation.id),
                    "enrollment_id": str(enrollment.id),
                    "exit_kind": decision.kind,
                    "reason": decision.reason,
                },
            )
        self.session.commit()
        return True

    def execute_step(
        self,
        enrollment: AutomationEnrollment,
        automation: Automation,
        plan: dict[int, StepPlan],
        now: datetime,
        session_id: str,
    ) -> StepOutcome:
        enrollment_id = enrollment.id
        automation_id = automation.id
        step_index = enrollment.current_step_index
        step = plan.get(step_index)
        if step is None:
            self.enrollments.terminate(
                enrollment,
                "completed",
                now=now,
                worker_id=self.worker_id,
                reason=f"no step at index {step_index}",
            )
            self.session.commit()
            self.debugger.log(session_id, "step_missing", {"step_index": step_index}, level="warn")
            return StepOutcome(status="skipped", terminal="completed")

        started = time.perf_counter()
        with automation_span(
            "automation.step",
            automation_id=str(automation_id),
            enrollment_id=str(enrollment_id),
            step_index=step_index,
            step_type=step.step_type,
        ) as span:
            failure: Exception | None = None
            try:
                outcome = self._run(step, enrollment, automation, now, session_id)
            except Exception as exc:
                self.session.rollback()
                if not isinstance(exc, errors.AutomationError):
                    logger.exception(
                        "automation.step.crashed",
                        extra={"enrollment_id": str(enrollment_id), "step_index": step_index},
                    )
                outcome = StepOutcome(status="failed", terminal="failed", error=str(exc))
                failure = exc

            if outcome.status == "failed":
                mark_span_failed(span, outcome.error or "step failed", failure)
            if outcome.status == "failed" and outcome.actions_executed:
                # the failed step's store writes were rolled back with it; sent email stays sent
                self.session.rollback()
                for item in outcome.actions_executed:
                    if item.get("status") != "success":
                        continue
                    if item.get("type") in _EXTERNAL_ACTIONS:
                        item["delivered"] = True
                        item["rolledBack"] = False
                    else:
                        item["rolledBack"] = True

            enrollment = self.enrollments.get(enrollment_id)
            automation = enrollment.automation
            outcome.applied = self._transition(enrollment, automation, plan, step, outcome, now)
            record_execution(
                self.session,
                automation_id=automation_id,
                enrollment_id=enrollment_id,
                user_id=automation.user_id,
                trigger_type=automation.trigger_type if step.implicit else STEP_EXECUTION_TRIGGER,
                trigger_data={
                    "entityType": enrollment.entity_type,
                    "entityId": str(enrollment.entity_id),
                    "stepType": step.step_type,
                    "branch": outcome.branch,
                },
                step_index=step_index,
                conditions_met=outcome.conditions_met,
                conditions_evaluated=outcome.conditions_evaluated,
                actions_executed=outcome.actions_executed,
                status=outcome.status,
                error=outcome.error,
                session_id=session_id,
            )
            self.session.commit()

        duration = time.perf_counter() - started
        observe_step(step.step_type, outcome.status, duration)
        logger.info(
            "automation.step.executed",
            extra={
                "automation_id": str(automation_id),
                "enrollment_id": str(enrollment_id),
                "step_index": step_index,
                "step_type": step.step_type,
                "next_step_index": outcome.next_step_index,
                "status": outcome.status,
                "error": outcome.error,
                "duration_ms": round(duration * 1000, 2),
            },
        )
        return outcome

    def _run(
        self,
        step: StepPlan,
        enrollment: AutomationEnrollment,
        automation: Automation,
        now: datetime,
        session_id: str,
    ) -> StepOutcome:
        entity = self.records.find(enrollment.entity_type, enrollment.entity_id, enrollment.user_id)
        if entity is None:
            raise errors.NotFoundError(f"{enrollment.entity_type} {enrollment.entity_id} not found")

        if step.step_type == "action":
            return self._run_actions(step, enrollment, entity, now, session_id)
        if step.step_type == "delay":
            # the wait already happened through next_step_at
            return StepOutcome(status="success", next_step_index=step.next_step_index)
        if step.step_type == "condition":
            return self._run_condition(step, enrollment, entity, session_id)
        if step.step_type == "branch":
            return self._run_branch(step, enrollment, entity, session_id)
        raise errors.ValidationError(f"unknown step type: {step.step_type}")

    def _run_actions(
        self,
        step: StepPlan,
        enrollment: AutomationEnrollment,
        entity: dict[str, Any],
        now: datetime,
        session_id: str,
    ) -> StepOutcome:
        context = ActionContext(
            user_id=enrollment.user_id,
            entity_type=enrollment.entity_type,
            entity_id=str(enrollment.entity_id),
            entity=entity,
            now=now,
        )
        executed: list[dict[str, Any]] = []
        for payload in step.config.get("actions") or []:
            action_type = payload.get("type") if isinstance(payload, dict) else None
            try:
                result = self.actions.execute(payload, context)
            except errors.ActionError as exc:
                executed.append({"type": action_type, "status": "failed", "code": exc.code, "error": exc.message})
                self.debugger.log_action_execution(session_id, str(action_type), error=str(exc))
                return StepOutcome(
                    status="failed",
                    terminal="failed",
                    error=str(exc),
                    actions_executed=executed,
                )
            executed.append(result)
            self.debugger.log_action_execution(session_id, str(action_type), result=result)
        return StepOutcome(status="success", next_step_index=step.next_step_index, actions_executed=executed)

    def _run_condition(
        self,
        step: StepPlan,
        enrollment: AutomationEnrollment,
        entity: dict[str, Any],
        session_id: str,
    ) -> StepOutcome:
        conditions = parse_conditions(step.config.get("conditions"))
        met, trace_entries = self.evaluator.evaluate_all_traced(conditions, entity, enrollment.entity_type)
        self.debugger.log_condition_evaluation(session_id, met, trace_entries)
        if met:
            return StepOutcome(
                status="success",
                next_step_index=step.branch_step_indices.get("true", step.next_step_index),
                conditions_met=True,
                conditions_evaluated=trace_entries,
            )
        if "false" in step.branch_step_indices:
            return StepOutcome(
                status="success",
                next_step_index=step.branch_step_indices["false"],
                conditions_met=False,
                conditions_evaluated=trace_entries,
            )
        return StepOutcome(
            status="skipped",
            terminal="completed",
            reason="conditions_not_met",
            conditions_met=False,
            conditions_evaluated=trace_entries,
        )

    def _run_branch(
        self,
        step: StepPlan,
        enrollment: AutomationEnrollment,
        entity: dict[str, Any],
        session_id: str,
    ) -> StepOutcome:
        config = BranchConfig.model_validate(step.config.get("branchConfig") or {})
        evaluated: list[dict[str, Any]] = []
        outcome: str | None = None
        for branch in config.branches:
            met, trace_entries = self.evaluator.evaluate_all_traced(branch.conditions, entity, enrollment.entity_type)
            evaluated.extend({**entry, "branch": branch.name} for entry in trace_entries)
            if met:
                outcome = branch.name
                break
        if outcome is None:
            outcome = config.default_branch
        self.debugger.log(session_id, "branch_selected", {"branch": outcome, "step_index": step.step_index})

        if outcome is None:
            return StepOutcome(
                status="success",
                next_step_index=step.next_step_index,
                conditions_met=False,
                conditions_evaluated=evaluated,
            )
        if outcome not in step.branch_step_indices:
            return StepOutcome(
                status="success",
                terminal="completed",
                reason=f"no step for branch '{outcome}'",
                conditions_met=True,
                conditions_evaluated=evaluated,
                branch=outcome,
            )
        return StepOutcome(
            status="success",
            next_step_index=step.branch_step_indices[outcome],
            conditions_met=True,
            conditions_evaluated=evaluated,
            branch=outcome,
        )

    def _transition(
        self,
        enrollment: AutomationEnrollment,
        automation: Automation,
        plan: dict[int, StepPlan],
        step: StepPlan,
        outcome: StepOutcome,
        now: datetime,
    ) -> bool:
        metadata = dict(enrollment.metadata_json or {})
        if outcome.status == "failed":
            metadata["errorCount"] = int(metadata.get("errorCount") or 0) + 1
            metadata["lastError"] = outcome.error
        if step.step_type == "action" and outcome.status == "success":
            metadata["activityCount"] = int(metadata.get("activityCount") or 0) + len(outcome.actions_executed)
            self.enrollments.record_execution(automation.id, success=True, now=now)

        if outcome.terminal is None and outcome.next_step_index is None:
            outcome.terminal = "completed"

        if outcome.terminal is not None:
            applied = self.enrollments.terminate(
                enrollment,
                outcome.terminal,
                now=now,
                worker_id=self.worker_id,
                reason=outcome.reason,
                error=outcome.error,
                metadata=metadata,
            )
        else:
            target = plan.get(outcome.next_step_index)
            next_at = now + delay_delta(target.config) if target is not None and target.step_type == "delay" else now
            applied = self.enrollments.advance(
                enrollment,
                outcome.next_step_index,
                next_at,
                worker_id=self.worker_id,
                metadata=metadata,
            )
        if not applied:
            logger.warning(
                "automation.step.transition_lost",
                extra={"enrollment_id": str(enrollment.id), "step_index": step.step_index},
            )
        return applied
