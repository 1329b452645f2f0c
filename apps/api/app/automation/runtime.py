from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session, sessionmaker

from app.automation.debugger import AutomationDebugger
from app.automation.notifications import NotificationSender, OutboxNotificationSender
from app.automation.scheduler import StepScheduler
from app.automation.triggers import EVENT_ENTITY_TYPES, TriggerService
from app.core.config import Settings, get_settings
from app.core.events import DomainEvent, InProcessEventBus
from app.events import CRMEventEmitter


logger = logging.getLogger("app.automation.runtime")


@dataclass
class AutomationRuntime:
    """Process-wide engine collaborators, built once and passed by reference."""

    bus: InProcessEventBus
    emitter: CRMEventEmitter
    debugger: AutomationDebugger
    notifier: NotificationSender
    session_factory: sessionmaker[Session]
    trigger_service: TriggerService
    scheduler: StepScheduler

    def handle_event(self, event: DomainEvent) -> None:
        # trigger failures must never reach the CRUD publisher
        try:
            with self.session_factory() as session:
                self.trigger_service.on_event(session, event)
        except Exception:
            logger.exception(
                "automation.trigger.failed",
                extra={"event_type": event.type},
            )

    def subscribe(self) -> None:
        for event_type in EVENT_ENTITY_TYPES:
            self.bus.subscribe(event_type, self.handle_event)

    def shutdown(self) -> None:
        self.scheduler.stop(timeout=self.scheduler.settings.automation_scheduler_interval_seconds)
        for event_type in EVENT_ENTITY_TYPES:
            self.bus.unsubscribe(event_type, self.handle_event)


def build_runtime(
    session_factory: sessionmaker[Session],
    settings: Settings | None = None,
    notifier: NotificationSender | None = None,
) -> AutomationRuntime:
    settings = settings or get_settings()
    bus = InProcessEventBus(max_subscribers=settings.automation_event_max_subscribers)
    debugger = AutomationDebugger(capacity=settings.automation_debug_buffer_size)
    notifier = notifier or OutboxNotificationSender()
    runtime = AutomationRuntime(
        bus=bus,
        emitter=CRMEventEmitter(bus),
        debugger=debugger,
        notifier=notifier,
        session_factory=session_factory,
        trigger_service=TriggerService(debugger),
        scheduler=StepScheduler(session_factory, debugger=debugger, notifier=notifier, settings=settings),
    )
    runtime.subscribe()
    return runtime
