from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from app.automation.conditions import ConditionEvaluator, is_empty, loose_equals, parse_number, stringify
from app.automation.field_resolver import resolve
from app.automation.models import Automation, AutomationEnrollment, as_utc, utcnow
from app.automation.schemas import ExitCondition, ExitCriteria, ExitGoal
from app.crm.repositories import RecordStore


logger = logging.getLogger("app.automation.exit_criteria")

SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class ExitDecision:
    should_exit: bool
    reason: str | None = None
    kind: str | None = None

    @classmethod
    def stay(cls) -> ExitDecision:
        return cls(False)


def days_since(start: datetime | None, now: datetime) -> int:
    started = as_utc(start)
    if started is None:
        return 0
    return math.floor((now - started).total_seconds() / SECONDS_PER_DAY)


def compare_value(actual: Any, operator: str, expected: Any) -> bool:
    if operator == "equals":
        return loose_equals(actual, expected)
    if operator == "not_equals":
        return not loose_equals(actual, expected)
    if operator in ("greater_than", "less_than", "greater_or_equal", "less_or_equal"):
        left = parse_number(actual)
        right = parse_number(expected)
        if math.isnan(left) or math.isnan(right):
            return False
        if operator == "greater_than":
            return left > right
        if operator == "less_than":
            return left < right
        if operator == "greater_or_equal":
            return left >= right
        return left <= right
    if operator == "contains":
        return not is_empty(actual) and stringify(expected).lower() in stringify(actual).lower()
    if operator == "not_contains":
        return is_empty(actual) or stringify(expected).lower() not in stringify(actual).lower()
    if operator == "is_empty":
        return is_empty(actual)
    if operator == "is_not_empty":
        return not is_empty(actual)
    return False


class ExitCriteriaEvaluator:
    """Decides whether an active enrollment must stop before its next step.

    Checks run goal, condition, time, then safety; the first match wins. Time
    limits from ``max_duration_days`` apply even when safety exits are off.
    """

    def __init__(self, store: RecordStore, evaluator: ConditionEvaluator | None = None) -> None:
        self.store = store
        self.evaluator = evaluator or ConditionEvaluator()

    def check(
        self,
        enrollment: AutomationEnrollment,
        automation: Automation,
        entity: dict[str, Any] | None,
        now: datetime | None = None,
    ) -> ExitDecision:
        current = now or utcnow()
        try:
            criteria = ExitCriteria.model_validate(automation.exit_criteria_json or {})
        except PydanticValidationError as exc:
            logger.warning(
                "automation.exit_criteria.invalid",
                extra={"automation_id": str(automation.id), "error": str(exc)},
            )
            criteria = ExitCriteria()

        try:
            for check in (self._check_goals, self._check_conditions):
                decision = check(criteria, enrollment, entity, current)
                if decision.should_exit:
                    return decision
            decision = self._check_time(automation, enrollment, current)
            if decision.should_exit:
                return decision
            if automation.safety_exit_enabled:
                return self._check_safety(criteria, enrollment, entity, current)
        except Exception as exc:
            logger.exception(
                "automation.exit_criteria.failed",
                extra={"enrollment_id": str(enrollment.id), "error": str(exc)},
            )
        return ExitDecision.stay()

    def _check_goals(
        self,
        criteria: ExitCriteria,
        enrollment: AutomationEnrollment,
        entity: dict[str, Any] | None,
        now: datetime,
    ) -> ExitDecision:
        if entity is None:
            return ExitDecision.stay()
        for goal in criteria.goals:
            if self._goal_met(goal, enrollment.entity_type, entity):
                return ExitDecision(True, f"Goal achieved: {self._describe_goal(goal)}", "goal")
        return ExitDecision.stay()

    def _goal_met(self, goal: ExitGoal, entity_type: str, entity: dict[str, Any]) -> bool:
        if goal.type == "field_value":
            if not goal.field:
                return False
            actual = resolve(goal.field, entity, entity_type)
            if actual is None and goal.operator not in ("is_empty", "not_equals", "not_contains"):
                return False
            return compare_value(actual, goal.operator, goal.value)
        if goal.type == "tag_applied":
            if entity_type != "contact" or not goal.tags:
                return False
            tags = {str(tag) for tag in entity.get("tags") or []}
            if goal.match == "any":
                return any(tag in tags for tag in goal.tags)
            return all(tag in tags for tag in goal.tags)
        if goal.type == "deal_value":
            if entity_type != "deal":
                return False
            return compare_value(entity.get("value"), goal.operator, goal.value)
        if goal.type == "custom_field":
            name = goal.field_name or goal.field
            custom_fields = entity.get("customFields")
            if not name or not isinstance(custom_fields, dict) or name not in custom_fields:
                return False
            return compare_value(custom_fields[name], goal.operator, goal.value)
        return False

    @staticmethod
    def _describe_goal(goal: ExitGoal) -> str:
        if goal.type == "tag_applied":
            return f"tag_applied ({goal.match}: {', '.join(goal.tags)})"
        target = goal.field_name or goal.field or "value"
        return f"{goal.type} {target} {goal.operator} {goal.value!r}"

    def _check_conditions(
        self,
        criteria: ExitCriteria,
        enrollment: AutomationEnrollment,
        entity: dict[str, Any] | None,
        now: datetime,
    ) -> ExitDecision:
        metadata = enrollment.metadata_json or {}
        elapsed_days = days_since(enrollment.enrolled_at, now)
        for condition in criteria.conditions:
            decision = self._condition_exit(condition, metadata, elapsed_days, enrollment, entity)
            if decision.should_exit:
                return decision
        return ExitDecision.stay()

    def _condition_exit(
        self,
        condition: ExitCondition,
        metadata: dict[str, Any],
        elapsed_days: int,
        enrollment: AutomationEnrollment,
        entity: dict[str, Any] | None,
    ) -> ExitDecision:
        if condition.type == "activity_count" and condition.count is not None:
            activity_count = int(metadata.get("activityCount") or 0)
            if activity_count >= condition.count:
                return ExitDecision(True, f"Activity count reached: {activity_count}", "condition")
        elif condition.type == "time_in_automation" and condition.days is not None:
            if elapsed_days >= condition.days:
                return ExitDecision(True, f"Time in automation reached: {elapsed_days} days", "condition")
        elif condition.type == "negative_condition" and condition.conditions and entity is not None:
            waited = elapsed_days >= (condition.after_days or 0)
            if waited and not self.evaluator.evaluate_all(condition.conditions, entity, enrollment.entity_type):
                return ExitDecision(True, f"Negative condition: not met after {elapsed_days} days", "condition")
        return ExitDecision.stay()

    def _check_time(self, automation: Automation, enrollment: AutomationEnrollment, now: datetime) -> ExitDecision:
        if automation.max_duration_days:
            elapsed_days = days_since(enrollment.enrolled_at, now)
            if elapsed_days >= automation.max_duration_days:
                return ExitDecision(True, f"Max duration reached: {elapsed_days} days", "time")
        return ExitDecision.stay()

    def _check_safety(
        self,
        criteria: ExitCriteria,
        enrollment: AutomationEnrollment,
        entity: dict[str, Any] | None,
        now: datetime,
    ) -> ExitDecision:
        safety = criteria.safety
        if safety.max_duration_days is not None:
            elapsed_days = days_since(enrollment.enrolled_at, now)
            if elapsed_days >= safety.max_duration_days:
                return ExitDecision(True, f"Safety: max duration reached ({elapsed_days} days)", "safety")

        if safety.max_errors is not None:
            error_count = int((enrollment.metadata_json or {}).get("errorCount") or 0)
            if error_count >= safety.max_errors:
                return ExitDecision(True, f"Safety: max errors reached ({error_count})", "safety")

        if (safety.exit_on_unsubscribe or safety.exit_on_bounce) and entity is not None:
            email = self._email_of(enrollment.entity_type, entity)
            if email:
                reason = self.store.find_suppression(email, enrollment.user_id)
                if reason == "unsubscribe" and safety.exit_on_unsubscribe:
                    return ExitDecision(True, "Safety: contact unsubscribed", "safety")
                if reason == "bounce" and safety.exit_on_bounce:
                    return ExitDecision(True, "Safety: email bounced", "safety")
        return ExitDecision.stay()

    @staticmethod
    def _email_of(entity_type: str, entity: dict[str, Any]) -> str | None:
        if entity_type == "contact":
            email = entity.get("email")
        else:
            email = resolve("Contact.email", entity)
        return email if isinstance(email, str) and email else None
