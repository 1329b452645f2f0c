from __future__ import annotations

import logging
import math
import re
from collections.abc import Sequence
from decimal import Decimal
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from app.automation.field_resolver import resolve
from app.automation.schemas import Condition


logger = logging.getLogger("app.automation.conditions")

OPERATORS = (
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "is_empty",
    "is_not_empty",
    "greater_than",
    "less_than",
    "has_tag",
    "not_has_tag",
)

_LEADING_NUMBER_RE = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


def parse_number(value: Any) -> float:
    """Leading-number parse; anything unparseable is NaN."""
    if isinstance(value, bool) or value is None:
        return math.nan
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    match = _LEADING_NUMBER_RE.match(str(value))
    if match is None:
        return math.nan
    return float(match.group(0))


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, Decimal):
        return stringify(float(value))
    if isinstance(value, (list, tuple)):
        return ",".join(stringify(item) for item in value)
    return str(value)


def _as_loose_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return 0.0
        try:
            return float(stripped)
        except ValueError:
            return None
    return None


def loose_equals(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    scalar_types = (bool, int, float, Decimal, str)
    if isinstance(left, scalar_types) and isinstance(right, scalar_types):
        left_number = _as_loose_number(left)
        right_number = _as_loose_number(right)
        if left_number is None or right_number is None:
            return False
        return left_number == right_number
    if isinstance(left, (list, tuple)) and isinstance(right, str):
        return stringify(left) == right
    if isinstance(right, (list, tuple)) and isinstance(left, str):
        return stringify(right) == left
    return left == right


def is_empty(value: Any) -> bool:
    return value is None or value == ""


def _tags_of(entity: dict[str, Any] | None) -> list[str]:
    if not isinstance(entity, dict):
        return []
    tags = entity.get("tags")
    return [str(tag) for tag in tags] if isinstance(tags, list) else []


def coerce_condition(condition: Condition | dict[str, Any]) -> Condition | None:
    if isinstance(condition, Condition):
        return condition
    try:
        return Condition.model_validate(condition)
    except PydanticValidationError:
        return None


class ConditionEvaluator:
    """Fixed-operator predicate evaluation over entity snapshots.

    Lists reduce left to right; the AND/OR that joins predicate ``i`` to the
    running result is the ``logic`` of predicate ``i - 1``. An empty list is
    satisfied. Unknown operators and malformed predicates evaluate to False.
    """

    def evaluate(self, condition: Condition | dict[str, Any], entity: dict[str, Any] | None, namespace: str | None = None) -> bool:
        result, _ = self._evaluate_with_value(condition, entity, namespace)
        return result

    def _evaluate_with_value(
        self,
        condition: Condition | dict[str, Any],
        entity: dict[str, Any] | None,
        namespace: str | None,
    ) -> tuple[bool, Any]:
        parsed = coerce_condition(condition)
        if parsed is None:
            return False, None

        operator = parsed.operator
        target = parsed.value

        if operator in ("has_tag", "not_has_tag"):
            tags = _tags_of(entity)
            present = stringify(target) in tags
            return (present if operator == "has_tag" else not present), tags

        actual = resolve(parsed.field, entity, namespace)

        if operator == "equals":
            return loose_equals(actual, target), actual
        if operator == "not_equals":
            return not loose_equals(actual, target), actual
        if operator == "contains":
            if is_empty(actual):
                return False, actual
            return stringify(target).lower() in stringify(actual).lower(), actual
        if operator == "not_contains":
            if is_empty(actual):
                return True, actual
            return stringify(target).lower() not in stringify(actual).lower(), actual
        if operator == "is_empty":
            return is_empty(actual), actual
        if operator == "is_not_empty":
            return not is_empty(actual), actual
        if operator in ("greater_than", "less_than"):
            left = parse_number(actual)
            right = parse_number(target)
            if math.isnan(left) or math.isnan(right):
                return False, actual
            return (left > right if operator == "greater_than" else left < right), actual

        logger.warning("automation.condition.unknown_operator", extra={"reason": operator})
        return False, actual

    def evaluate_all(
        self,
        conditions: Sequence[Condition | dict[str, Any]] | None,
        entity: dict[str, Any] | None,
        namespace: str | None = None,
    ) -> bool:
        met, _ = self.evaluate_all_traced(conditions, entity, namespace)
        return met

    def evaluate_all_traced(
        self,
        conditions: Sequence[Condition | dict[str, Any]] | None,
        entity: dict[str, Any] | None,
        namespace: str | None = None,
    ) -> tuple[bool, list[dict[str, Any]]]:
        """Reduce the list and return per-predicate results for the execution log.

        Predicates whose outcome cannot change the final answer are not
        evaluated and are reported with ``skipped=True``.
        """
        items = list(conditions or [])
        trace: list[dict[str, Any]] = []
        if not items:
            return True, trace

        logics = [self._logic_of(item) for item in items]
        accumulator: bool | None = None
        for index, item in enumerate(items):
            if accumulator is not None:
                joining = logics[index - 1]
                if self._decided(accumulator, logics[index - 1 :]):
                    # nothing left can change the result
                    trace.extend(self._skipped_entry(rest) for rest in items[index:])
                    return accumulator, trace
                if (joining == "AND" and not accumulator) or (joining == "OR" and accumulator):
                    trace.append(self._skipped_entry(item))
                    continue

            result, actual = self._evaluate_with_value(item, entity, namespace)
            trace.append(self._trace_entry(item, actual, result))
            if accumulator is None:
                accumulator = result
            elif logics[index - 1] == "AND":
                accumulator = accumulator and result
            else:
                accumulator = accumulator or result

        return bool(accumulator), trace

    @staticmethod
    def _decided(accumulator: bool, remaining_logics: list[str]) -> bool:
        # the last predicate's logic joins nothing
        joins = remaining_logics[:-1]
        if not accumulator:
            return all(logic == "AND" for logic in joins)
        return all(logic == "OR" for logic in joins)

    @staticmethod
    def _logic_of(condition: Condition | dict[str, Any]) -> str:
        parsed = coerce_condition(condition)
        return parsed.logic if parsed is not None else "AND"

    @staticmethod
    def _trace_entry(condition: Condition | dict[str, Any], actual: Any, result: bool) -> dict[str, Any]:
        parsed = coerce_condition(condition)
        payload = parsed.model_dump() if parsed is not None else {"raw": condition}
        payload["actual"] = actual
        payload["result"] = result
        payload["skipped"] = False
        payload["explanation"] = explain_condition_result(parsed, actual, result) if parsed is not None else "malformed condition"
        return payload

    @staticmethod
    def _skipped_entry(condition: Condition | dict[str, Any]) -> dict[str, Any]:
        parsed = coerce_condition(condition)
        payload = parsed.model_dump() if parsed is not None else {"raw": condition}
        payload["actual"] = None
        payload["result"] = None
        payload["skipped"] = True
        payload["explanation"] = "not evaluated: outcome already decided"
        return payload


def explain_condition_result(condition: Condition, actual: Any, result: bool) -> str:
    field = condition.field or "tags"
    shown = "empty" if is_empty(actual) else repr(actual)
    verdict = "passed" if result else "failed"
    operator = condition.operator
    if operator in ("is_empty", "is_not_empty"):
        return f"{field} is {shown}; {operator} {verdict}"
    if operator not in OPERATORS:
        return f"unknown operator '{operator}'; condition failed"
    return f"{field} is {shown}; {operator} {condition.value!r} {verdict}"
