from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from app.automation import errors
from app.automation.conditions import loose_equals
from app.automation.field_resolver import CUSTOM_FIELDS_PREFIX
from app.automation.models import utcnow
from app.automation.notifications import NotificationSender
from app.automation.schemas import (
    ACTION_TYPES,
    AddCandidateNoteAction,
    AddContactTagAction,
    AssignToPositionAction,
    AutomationAction,
    MoveCandidateToStageAction,
    MoveDealToStageAction,
    ScheduleInterviewAction,
    SendEmailAction,
    UpdateCandidateRatingAction,
    UpdateCandidateStatusAction,
    UpdateContactFieldAction,
    UpdateCustomFieldAction,
    UpdateDealFieldAction,
    action_adapter,
)
from app.automation.templating import build_variables, render, resolve_recipient
from app.crm.repositories import RecordStore
from app.metrics import observe_action


logger = logging.getLogger("app.automation.actions")

_email_pool: ThreadPoolExecutor | None = None


def _get_email_pool() -> ThreadPoolExecutor:
    global _email_pool
    if _email_pool is None:
        _email_pool = ThreadPoolExecutor(max_workers=8, thread_name_prefix="automation-email")
    return _email_pool


def _unchanged(current: Any, requested: Any) -> bool:
    if current == requested:
        return True
    numeric = (int, float)
    if "" in (current, requested) or not (isinstance(current, numeric) or isinstance(requested, numeric)):
        return False
    return loose_equals(current, requested)


@dataclass
class ActionContext:
    user_id: str
    entity_type: str
    entity_id: str
    entity: dict[str, Any]
    now: datetime = field(default_factory=utcnow)


def parse_action(payload: Any) -> AutomationAction:
    """Validate a stored action payload into its typed form, before anything is mutated."""
    if not isinstance(payload, dict):
        raise errors.ValidationError("action must be an object")
    action_type = payload.get("type")
    if action_type not in ACTION_TYPES:
        raise errors.ValidationError(
            f"unknown action type: {action_type!r}",
            code="unknown_action_type",
            action_type=str(action_type),
        )
    try:
        return action_adapter.validate_python(payload)
    except PydanticValidationError as exc:
        raise errors.ValidationError(
            f"invalid config for {action_type}: {exc.errors(include_url=False)}",
            action_type=str(action_type),
        ) from exc


class ActionExecutor:
    """Runs typed actions against the record store.

    Every handler is idempotent: when the target already holds the requested
    state no write happens and the result reports ``changed=False``.
    """

    def __init__(
        self,
        store: RecordStore,
        notifier: NotificationSender,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.timeout_seconds = timeout_seconds

    def execute(self, action: AutomationAction | dict[str, Any], context: ActionContext) -> dict[str, Any]:
        typed = action if not isinstance(action, dict) else parse_action(action)
        try:
            result = self._dispatch(typed, context)
        except errors.ActionError as exc:
            exc.action_type = exc.action_type or typed.type
            observe_action(typed.type, "failed")
            raise
        except Exception as exc:
            observe_action(typed.type, "failed")
            raise errors.ActionExecutionError(str(exc) or exc.__class__.__name__, action_type=typed.type) from exc

        observe_action(typed.type, "success")
        logger.debug(
            "automation.action.executed",
            extra={"action_type": typed.type, "entity_type": context.entity_type, "entity_id": context.entity_id},
        )
        return {"type": typed.type, "status": "success", **result}

    def _dispatch(self, action: AutomationAction, context: ActionContext) -> dict[str, Any]:
        if isinstance(action, UpdateContactFieldAction):
            return self._update_contact_field(action, context)
        if isinstance(action, AddContactTagAction):
            return self._add_contact_tag(action, context)
        if isinstance(action, UpdateDealFieldAction):
            return self._update_deal_field(action, context)
        if isinstance(action, MoveDealToStageAction):
            return self._move_deal_to_stage(action, context)
        if isinstance(action, UpdateCustomFieldAction):
            return self._update_custom_field(action, context)
        if isinstance(action, SendEmailAction):
            return self._send_email(action, context)
        if isinstance(action, UpdateCandidateStatusAction):
            return self._update_pipeline(context, action.config.pipeline_id, {"status": action.config.status})
        if isinstance(action, MoveCandidateToStageAction):
            return self._move_candidate_to_stage(action, context)
        if isinstance(action, UpdateCandidateRatingAction):
            return self._update_pipeline(context, action.config.pipeline_id, {"rating": action.config.rating})
        if isinstance(action, AddCandidateNoteAction):
            return self._add_candidate_note(action, context)
        if isinstance(action, ScheduleInterviewAction):
            return self._update_pipeline(
                context,
                action.config.pipeline_id,
                {"interviewDate": action.config.interview_date.isoformat()},
            )
        if isinstance(action, AssignToPositionAction):
            return self._assign_to_position(action, context)
        raise errors.ValidationError(f"unhandled action type: {action.type}", code="unknown_action_type")

    # target resolution

    def _load(self, entity_type: str, entity_id: Any, context: ActionContext) -> dict[str, Any]:
        snapshot = self.store.find(entity_type, entity_id, context.user_id)
        if snapshot is None:
            raise errors.NotFoundError(f"{entity_type} {entity_id} not found")
        return snapshot

    def _contact_target(self, explicit_id: str | None, context: ActionContext) -> dict[str, Any]:
        if explicit_id:
            return self._load("contact", explicit_id, context)
        if context.entity_type == "contact":
            return self._load("contact", context.entity_id, context)
        contact_id = context.entity.get("contactId")
        if context.entity_type == "deal" and contact_id:
            return self._load("contact", contact_id, context)
        raise errors.NotFoundError("no contact is associated with this enrollment")

    def _deal_target(self, explicit_id: str | None, context: ActionContext) -> dict[str, Any]:
        if explicit_id:
            return self._load("deal", explicit_id, context)
        if context.entity_type == "deal":
            return self._load("deal", context.entity_id, context)
        raise errors.NotFoundError("no deal is associated with this enrollment")

    def _pipeline_target(self, explicit_id: str | None, context: ActionContext) -> dict[str, Any]:
        if explicit_id:
            return self._load("pipeline", explicit_id, context)
        if context.entity_type == "pipeline":
            return self._load("pipeline", context.entity_id, context)
        raise errors.ValidationError("pipelineId is required outside a recruiting pipeline enrollment")

    def _apply(self, entity_type: str, current: dict[str, Any], changes: dict[str, Any], context: ActionContext) -> dict[str, Any]:
        pending = {key: value for key, value in changes.items() if not _unchanged(current.get(key), value)}
        if not pending:
            return {"changed": False, "target": {"entity_type": entity_type, "entity_id": current["id"]}}
        updated = self.store.update(entity_type, current["id"], pending)
        if entity_type == context.entity_type and updated.get("id") == context.entity_id:
            context.entity = updated
        return {
            "changed": True,
            "fields": sorted(pending),
            "target": {"entity_type": entity_type, "entity_id": current["id"]},
        }

    def _field_changes(self, current: dict[str, Any], field_path: str, value: Any, namespace: str) -> dict[str, Any]:
        if field_path.startswith(f"{namespace}."):
            field_path = field_path[len(namespace) + 1 :]
        if field_path.startswith(CUSTOM_FIELDS_PREFIX):
            name = field_path[len(CUSTOM_FIELDS_PREFIX) :]
            if not name:
                raise errors.ValidationError("custom field name is required")
            return {"customFields": self._merged_custom_fields(current, name, value)}
        if "." in field_path:
            raise errors.ValidationError(f"unsupported field path: {field_path}")
        return {field_path: value}

    @staticmethod
    def _merged_custom_fields(current: dict[str, Any], name: str, value: Any) -> dict[str, Any]:
        existing = current.get("customFields")
        merged = dict(existing) if isinstance(existing, dict) else {}
        merged[name] = value
        return merged

    # handlers

    def _update_contact_field(self, action: UpdateContactFieldAction, context: ActionContext) -> dict[str, Any]:
        contact = self._contact_target(action.config.contact_id, context)
        changes = self._field_changes(contact, action.config.field, action.config.value, "contact")
        return self._apply("contact", contact, changes, context)

    def _add_contact_tag(self, action: AddContactTagAction, context: ActionContext) -> dict[str, Any]:
        contact = self._contact_target(action.config.contact_id, context)
        existing = [str(tag) for tag in contact.get("tags") or []]
        merged = list(existing)
        for tag in action.config.requested_tags():
            if tag not in merged:
                merged.append(tag)
        if merged == existing:
            return {"changed": False, "target": {"entity_type": "contact", "entity_id": contact["id"]}}
        return self._apply("contact", contact, {"tags": merged}, context)

    def _update_deal_field(self, action: UpdateDealFieldAction, context: ActionContext) -> dict[str, Any]:
        deal = self._deal_target(action.config.deal_id, context)
        changes = self._field_changes(deal, action.config.field, action.config.value, "deal")
        return self._apply("deal", deal, changes, context)

    def _move_deal_to_stage(self, action: MoveDealToStageAction, context: ActionContext) -> dict[str, Any]:
        deal = self._deal_target(action.config.deal_id, context)
        stage = self.store.find("stage", action.config.stage_id, context.user_id)
        if stage is None:
            raise errors.NotFoundError(f"stage {action.config.stage_id} not found")
        return self._apply("deal", deal, {"stageId": stage["id"]}, context)

    def _update_custom_field(self, action: UpdateCustomFieldAction, context: ActionContext) -> dict[str, Any]:
        config = action.config
        if config.entity_type == "contact":
            target = self._contact_target(config.entity_id, context)
        else:
            target = self._deal_target(config.entity_id, context)
        changes = {"customFields": self._merged_custom_fields(target, config.field_name, config.value)}
        return self._apply(config.entity_type, target, changes, context)

    def _send_email(self, action: SendEmailAction, context: ActionContext) -> dict[str, Any]:
        contact: dict[str, Any] | None = None
        deal: dict[str, Any] | None = None
        if context.entity_type == "contact":
            contact = context.entity
        elif context.entity_type == "deal":
            deal = context.entity
            contact = deal.get("Contact") if isinstance(deal.get("Contact"), dict) else None

        recipient = resolve_recipient(contact=contact, deal=deal)
        if recipient is None:
            raise errors.ValidationError("no recipient email address could be resolved")

        variables = build_variables(contact=contact, deal=deal)
        subject = render(action.config.subject, variables)
        body = render(action.config.body, variables)

        future = _get_email_pool().submit(self.notifier.send_templated_email, recipient, subject, body)
        try:
            delivery = future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError as exc:
            future.cancel()
            raise errors.ActionExecutionError(
                f"email delivery timed out after {self.timeout_seconds}s",
                code="timeout",
            ) from exc
        except Exception as exc:
            raise errors.ActionExecutionError(f"email delivery raised: {exc}") from exc

        if delivery != "delivered":
            raise errors.ActionExecutionError(f"email delivery {delivery} for {recipient}")
        return {"changed": True, "recipient": recipient, "subject": subject}

    def _update_pipeline(self, context: ActionContext, pipeline_id: str | None, changes: dict[str, Any]) -> dict[str, Any]:
        pipeline = self._pipeline_target(pipeline_id, context)
        return self._apply("pipeline", pipeline, changes, context)

    def _move_candidate_to_stage(self, action: MoveCandidateToStageAction, context: ActionContext) -> dict[str, Any]:
        pipeline = self._pipeline_target(action.config.pipeline_id, context)
        stage = self.store.find("stage", action.config.stage_id, context.user_id)
        if stage is None:
            raise errors.NotFoundError(f"stage {action.config.stage_id} not found")
        if stage.get("pipelineType") != "recruiting":
            raise errors.ValidationError(f"stage {stage['id']} is not a recruiting stage")
        return self._apply("pipeline", pipeline, {"stageId": stage["id"]}, context)

    def _add_candidate_note(self, action: AddCandidateNoteAction, context: ActionContext) -> dict[str, Any]:
        pipeline = self._pipeline_target(action.config.pipeline_id, context)
        note = action.config.note.strip()
        existing = pipeline.get("notes") or ""
        last_entry = existing.rsplit("\n\n", 1)[-1] if existing else ""
        if last_entry.endswith(f"] {note}"):
            return {"changed": False, "target": {"entity_type": "pipeline", "entity_id": pipeline["id"]}}
        entry = f"[{context.now.isoformat()}] {note}"
        notes = f"{existing}\n\n{entry}" if existing else entry
        return self._apply("pipeline", pipeline, {"notes": notes}, context)

    def _assign_to_position(self, action: AssignToPositionAction, context: ActionContext) -> dict[str, Any]:
        pipeline = self._pipeline_target(action.config.pipeline_id, context)
        position = self.store.find("position", action.config.position_id, context.user_id)
        if position is None:
            raise errors.NotFoundError(f"position {action.config.position_id} not found")
        return self._apply("pipeline", pipeline, {"positionId": position["id"]}, context)
