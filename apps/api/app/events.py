from __future__ import annotations

from typing import Any

from app.core.events import DomainEvent, InProcessEventBus


class CRMEventEmitter:
    """Helpers the CRUD layer calls after a contact or deal write commits."""

    def __init__(self, bus: InProcessEventBus) -> None:
        self.bus = bus

    def emit(self, event_type: str, user_id: str, data: dict[str, Any]) -> DomainEvent:
        event = DomainEvent(type=event_type, user_id=str(user_id), data=data)
        self.bus.publish(event)
        return event

    def emit_contact_created(self, user_id: str, contact: dict[str, Any]) -> DomainEvent:
        return self.emit("contact_created", user_id, {"contact": contact})

    def emit_contact_updated(
        self,
        user_id: str,
        contact: dict[str, Any],
        changed_fields: list[str] | None = None,
    ) -> DomainEvent:
        return self.emit("contact_updated", user_id, {"contact": contact, "changedFields": changed_fields or []})

    def emit_deal_created(self, user_id: str, deal: dict[str, Any]) -> DomainEvent:
        return self.emit("deal_created", user_id, {"deal": deal})

    def emit_deal_updated(
        self,
        user_id: str,
        deal: dict[str, Any],
        changed_fields: list[str] | None = None,
    ) -> DomainEvent:
        return self.emit("deal_updated", user_id, {"deal": deal, "changedFields": changed_fields or []})

    def emit_deal_stage_changed(
        self,
        user_id: str,
        deal: dict[str, Any],
        previous_stage: dict[str, Any] | None,
        new_stage: dict[str, Any] | None,
    ) -> DomainEvent:
        event = self.emit(
            "deal_stage_changed",
            user_id,
            {"deal": deal, "previousStage": previous_stage, "newStage": new_stage},
        )
        self.emit_deal_updated(user_id, deal, changed_fields=["stageId"])
        return event
