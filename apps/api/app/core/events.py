from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

ENTITY_EVENT_TYPES = (
    "contact_created",
    "contact_updated",
    "deal_created",
    "deal_updated",
    "deal_stage_changed",
)


@dataclass(frozen=True)
class DomainEvent:
    """Entity lifecycle notification published by the CRUD layer."""

    type: str
    user_id: str
    data: dict[str, Any]
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[DomainEvent], None]


class SubscriberLimitError(RuntimeError):
    pass


class InProcessEventBus:
    """Typed publish/subscribe bus with a bounded subscriber list per event type.

    One instance is built at process start and handed to whoever publishes or
    subscribes. Handlers run synchronously in subscription order; an exception
    raised by a handler propagates to the publisher.
    """

    def __init__(self, max_subscribers: int = 32, event_types: tuple[str, ...] = ENTITY_EVENT_TYPES) -> None:
        self.max_subscribers = max_subscribers
        self._event_types = set(event_types)
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        if event_type not in self._event_types:
            raise ValueError(f"unsupported event type: {event_type}")
        handlers = self._subscribers[event_type]
        if handler in handlers:
            return
        if len(handlers) >= self.max_subscribers:
            raise SubscriberLimitError(f"subscriber limit reached for {event_type} ({self.max_subscribers})")
        handlers.append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def subscriber_count(self, event_type: str) -> int:
        return len(self._subscribers.get(event_type, []))

    def publish(self, event: DomainEvent) -> None:
        if event.type not in self._event_types:
            raise ValueError(f"unsupported event type: {event.type}")
        for handler in list(self._subscribers.get(event.type, [])):
            handler(event)
