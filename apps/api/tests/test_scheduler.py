from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Generator
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import app.automation.scheduler as scheduler_module
from app.automation.debugger import AutomationDebugger
from app.automation.enrollment import EnrollmentStore
from app.automation.executor import StepExecutor
from app.automation.models import Automation, AutomationEnrollment
from app.automation.notifications import OutboxNotificationSender
from app.automation.scheduler import StepScheduler, TickResult
from app.core.config import Settings
from app.core.database import Base
from app.crm.models import CRMContact

OWNER = "user-1"
T0 = datetime(2026, 3, 3, 10, 0, tzinfo=timezone.utc)


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def _scheduler(session_factory: sessionmaker[Session], worker_id: str, **overrides: object) -> StepScheduler:
    settings = Settings(automation_scheduler_max_concurrency=1, automation_scheduler_interval_seconds=0.01, **overrides)
    return StepScheduler(
        session_factory,
        debugger=AutomationDebugger(capacity=100),
        notifier=OutboxNotificationSender(),
        settings=settings,
        worker_id=worker_id,
    )


def _seed(db_session: Session, count: int) -> list[uuid.UUID]:
    automation = Automation(
        user_id=OWNER,
        name="Tagger",
        trigger_json={"type": "contact_created"},
        actions_json=[{"type": "add_contact_tag", "config": {"tag": "seen"}}],
    )
    contacts = [CRMContact(user_id=OWNER, first_name=f"Contact {index}") for index in range(count)]
    db_session.add_all([automation, *contacts])
    db_session.commit()
    store = EnrollmentStore(db_session)
    ids = [store.create(automation, "contact", contact.id, now=T0).enrollment_id for contact in contacts]
    db_session.commit()
    return ids


def test_overlapping_tick_is_skipped(session_factory: sessionmaker[Session], caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="app.automation.scheduler")
    scheduler = _scheduler(session_factory, "worker-a")

    scheduler._tick_lock.acquire()
    try:
        result = scheduler.tick(T0)
    finally:
        scheduler._tick_lock.release()

    assert result == TickResult(skipped=True)
    assert any(record.getMessage() == "automation.scheduler.tick_skipped" for record in caplog.records)
    assert scheduler.tick(T0).skipped is False


def test_claimed_enrollments_are_not_processed_twice(
    db_session: Session,
    session_factory: sessionmaker[Session],
) -> None:
    ids = _seed(db_session, 2)
    first = _scheduler(session_factory, "worker-a")
    second = _scheduler(session_factory, "worker-b")

    claimed = first._claim(T0)

    assert sorted(claimed) == sorted(ids)
    assert second.tick(T0) == TickResult(claimed=0, processed=0, failed=0)

    for enrollment_id in claimed:
        assert first._process_one(enrollment_id, T0) is True
    db_session.expire_all()
    assert {db_session.get(AutomationEnrollment, enrollment_id).status for enrollment_id in ids} == {"completed"}


def test_batch_continues_after_enrollment_failure(
    db_session: Session,
    session_factory: sessionmaker[Session],
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.ERROR, logger="app.automation.scheduler")
    broken_id, healthy_id = _seed(db_session, 2)

    class ExplodingExecutor(StepExecutor):
        def process(self, enrollment_id: uuid.UUID, now: datetime | None = None) -> int:
            if enrollment_id == broken_id:
                raise RuntimeError("database went away")
            return super().process(enrollment_id, now)

    monkeypatch.setattr(scheduler_module, "StepExecutor", ExplodingExecutor)

    result = _scheduler(session_factory, "worker-a").tick(T0)

    assert (result.claimed, result.processed, result.failed) == (2, 1, 1)
    db_session.expire_all()
    assert db_session.get(AutomationEnrollment, healthy_id).status == "completed"
    assert db_session.get(AutomationEnrollment, broken_id).status == "active"
    failures = [record for record in caplog.records if record.getMessage() == "automation.scheduler.enrollment_failed"]
    assert [getattr(record, "enrollment_id") for record in failures] == [str(broken_id)]


def test_deactivated_automation_is_not_claimed(db_session: Session, session_factory: sessionmaker[Session]) -> None:
    [enrollment_id] = _seed(db_session, 1)
    enrollment = db_session.get(AutomationEnrollment, enrollment_id)
    enrollment.automation.is_active = False
    db_session.commit()
    scheduler = _scheduler(session_factory, "worker-a")

    assert scheduler.tick(T0).claimed == 0

    db_session.expire_all()
    assert enrollment.status == "active"
    assert db_session.get(CRMContact, enrollment.entity_id).tags == []

    enrollment.automation.is_active = True
    db_session.commit()
    assert scheduler.tick(T0).processed == 1
    db_session.expire_all()
    assert enrollment.status == "completed"
    assert db_session.get(CRMContact, enrollment.entity_id).tags == ["seen"]


def test_deactivation_after_claim_skips_processing(
    db_session: Session,
    session_factory: sessionmaker[Session],
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO, logger="app.automation.executor")
    [enrollment_id] = _seed(db_session, 1)
    scheduler = _scheduler(session_factory, "worker-a")
    assert scheduler._claim(T0) == [enrollment_id]

    enrollment = db_session.get(AutomationEnrollment, enrollment_id)
    enrollment.automation.is_active = False
    db_session.commit()

    assert scheduler._process_one(enrollment_id, T0) is True

    db_session.expire_all()
    assert enrollment.status == "active"
    assert enrollment.claimed_by is None
    assert db_session.get(CRMContact, enrollment.entity_id).tags == []
    assert any(record.getMessage() == "automation.step.automation_inactive" for record in caplog.records)


def test_batch_size_limits_a_tick(db_session: Session, session_factory: sessionmaker[Session]) -> None:
    _seed(db_session, 3)
    scheduler = _scheduler(session_factory, "worker-a", automation_scheduler_batch_size=2)

    assert scheduler.tick(T0).processed == 2
    assert scheduler.tick(T0).processed == 1
    assert scheduler.tick(T0).claimed == 0


def test_background_loop_stops(session_factory: sessionmaker[Session]) -> None:
    scheduler = _scheduler(session_factory, "worker-a")
    ticked = threading.Event()

    def fake_tick(now: datetime | None = None) -> TickResult:
        ticked.set()
        return TickResult()

    scheduler.tick = fake_tick  # type: ignore[method-assign]
    thread = scheduler.start_background()

    assert ticked.wait(2)
    assert scheduler.start_background() is thread
    scheduler.stop(timeout=2)
    assert not thread.is_alive()
