from __future__ import annotations

import re
from typing import Any

from app.automation.conditions import is_empty, stringify

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([^{}|]+?)\s*(?:\|\|\s*([^{}]*?)\s*)?\}\}")


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def render(template: str, variables: dict[str, Any]) -> str:
    """Substitute ``{{name}}`` and ``{{name || 'fallback'}}`` placeholders.

    An empty variable with no fallback leaves the placeholder untouched.
    """

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1).strip()
        fallback = match.group(2)
        value = variables.get(name)
        if not is_empty(value):
            return stringify(value)
        if fallback is not None:
            return _strip_quotes(fallback.strip())
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_replace, template or "")


def _add_scope(variables: dict[str, Any], prefix: str, record: dict[str, Any] | None, exclude: set[str] | None = None) -> None:
    if not isinstance(record, dict):
        return
    for key, value in record.items():
        if exclude and key in exclude:
            continue
        if isinstance(value, dict):
            continue
        variables.setdefault(key, value)
        variables[f"{prefix}.{key}"] = value
    custom_fields = record.get("customFields")
    if isinstance(custom_fields, dict):
        for key, value in custom_fields.items():
            variables[f"{prefix}.customFields.{key}"] = value
            variables.setdefault(f"customFields.{key}", value)


def _full_name(record: dict[str, Any] | None) -> str:
    if not isinstance(record, dict):
        return ""
    return " ".join(str(part) for part in (record.get("firstName"), record.get("lastName")) if part)


def build_variables(
    *,
    contact: dict[str, Any] | None = None,
    deal: dict[str, Any] | None = None,
    candidate: dict[str, Any] | None = None,
    pipeline: dict[str, Any] | None = None,
    position: dict[str, Any] | None = None,
) -> dict[str, Any]:
    variables: dict[str, Any] = {}
    _add_scope(variables, "contact", contact)
    _add_scope(variables, "deal", deal, exclude={"Contact"})
    _add_scope(variables, "candidate", candidate)
    if isinstance(pipeline, dict):
        _add_scope(variables, "candidate", pipeline.get("Candidate"))
        _add_scope(variables, "position", pipeline.get("Position"))
    _add_scope(variables, "position", position)

    if contact:
        variables["fullName"] = _full_name(contact)
    pipeline_candidate = pipeline.get("Candidate") if isinstance(pipeline, dict) else None
    candidate_record = candidate or pipeline_candidate
    if candidate_record:
        variables["candidateName"] = _full_name(candidate_record)
        variables.setdefault("fullName", variables["candidateName"])
    position_record = position or (pipeline.get("Position") if isinstance(pipeline, dict) else None)
    if isinstance(position_record, dict) and position_record.get("title"):
        variables["positionTitle"] = position_record["title"]
    return variables


def resolve_recipient(
    *,
    contact: dict[str, Any] | None = None,
    deal: dict[str, Any] | None = None,
    candidate: dict[str, Any] | None = None,
    pipeline: dict[str, Any] | None = None,
) -> str | None:
    candidates: list[Any] = [
        (contact or {}).get("email"),
        (candidate or {}).get("email"),
        ((pipeline or {}).get("Candidate") or {}).get("email"),
        ((deal or {}).get("Contact") or {}).get("email"),
    ]
    for value in candidates:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None
