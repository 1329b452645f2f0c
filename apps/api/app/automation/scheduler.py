from __future__ import annotations

import logging
import socket
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session, sessionmaker

from app.automation.debugger import AutomationDebugger
from app.automation.enrollment import EnrollmentStore
from app.automation.executor import StepExecutor
from app.automation.models import utcnow
from app.automation.notifications import NotificationSender
from app.core.config import Settings, get_settings
from app.metrics import observe_scheduler_tick
from app.otel import automation_span


logger = logging.getLogger("app.automation.scheduler")


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


@dataclass
class TickResult:
    claimed: int = 0
    processed: int = 0
    failed: int = 0
    skipped: bool = False


class StepScheduler:
    """Polling loop that resumes due enrollments.

    A tick claims due rows with a conditional update, then hands each claimed
    enrollment to a ``StepExecutor`` with its own session. A tick that starts
    while the previous one is still running is skipped, not queued.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        debugger: AutomationDebugger,
        notifier: NotificationSender,
        settings: Settings | None = None,
        worker_id: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.debugger = debugger
        self.notifier = notifier
        self.settings = settings or get_settings()
        self.worker_id = worker_id or default_worker_id()
        self.clock = clock
        self._tick_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def tick(self, now: datetime | None = None) -> TickResult:
        if not self._tick_lock.acquire(blocking=False):
            observe_scheduler_tick("skipped")
            logger.info("automation.scheduler.tick_skipped", extra={"reason": "previous tick still running"})
            return TickResult(skipped=True)
        try:
            return self._run_tick(now or self.clock())
        finally:
            self._tick_lock.release()

    def _run_tick(self, now: datetime) -> TickResult:
        with automation_span("automation.scheduler.tick", worker_id=self.worker_id) as span:
            claimed = self._claim(now)
            span.set_attribute("claimed", len(claimed))
            result = TickResult(claimed=len(claimed))

            if self.settings.automation_scheduler_max_concurrency <= 1:
                outcomes = [self._process_one(enrollment_id, now) for enrollment_id in claimed]
            else:
                with ThreadPoolExecutor(
                    max_workers=self.settings.automation_scheduler_max_concurrency,
                    thread_name_prefix="automation-step",
                ) as pool:
                    outcomes = list(pool.map(lambda enrollment_id: self._process_one(enrollment_id, now), claimed))

            result.processed = sum(1 for ok in outcomes if ok)
            result.failed = sum(1 for ok in outcomes if not ok)

        observe_scheduler_tick("ran")
        logger.info(
            "automation.scheduler.tick",
            extra={"claimed": result.claimed, "due_count": result.processed, "status": f"{result.failed} failed"},
        )
        return result

    def _claim(self, now: datetime) -> list[uuid.UUID]:
        with self.session_factory() as session:
            claimed = EnrollmentStore(session).claim_due(
                now,
                self.worker_id,
                limit=self.settings.automation_scheduler_batch_size,
                lease_seconds=self.settings.automation_claim_lease_seconds,
            )
            session.commit()
        return claimed

    def _process_one(self, enrollment_id: uuid.UUID, now: datetime) -> bool:
        with self.session_factory() as session:
            executor = StepExecutor(
                session,
                self.notifier,
                self.debugger,
                settings=self.settings,
                worker_id=self.worker_id,
            )
            try:
                executor.process(enrollment_id, now)
            except Exception:
                session.rollback()
                logger.exception("automation.scheduler.enrollment_failed", extra={"enrollment_id": str(enrollment_id)})
                return False
        return True

    def run_forever(self) -> None:
        interval = self.settings.automation_scheduler_interval_seconds
        logger.info("automation.scheduler.started", extra={"status": self.worker_id})
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("automation.scheduler.tick_failed")
            self._stop.wait(interval)
        logger.info("automation.scheduler.stopped", extra={"status": self.worker_id})

    def start_background(self) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="automation-scheduler", daemon=True)
        self._thread.start()
        return self._thread

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
