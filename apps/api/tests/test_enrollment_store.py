from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.automation.enrollment import EnrollmentStore
from app.automation.models import Automation, AutomationEnrollment
from app.core.database import Base

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _automation(db_session: Session) -> Automation:
    automation = Automation(
        user_id="user-1",
        name="Welcome",
        trigger_json={"type": "contact_created"},
        actions_json=[{"type": "add_contact_tag", "config": {"tag": "new"}}],
    )
    db_session.add(automation)
    db_session.commit()
    return automation


def test_create_refuses_second_active_enrollment(db_session: Session) -> None:
    automation = _automation(db_session)
    store = EnrollmentStore(db_session)
    entity_id = uuid.uuid4()

    first = store.create(automation, "contact", entity_id, now=NOW)
    second = store.create(automation, "contact", entity_id, now=NOW)
    db_session.commit()

    assert first.enrolled is True
    assert second.enrolled is False
    assert second.reason == "already_enrolled"
    assert store.status_counts(automation.id) == {"active": 1}


def test_partial_unique_index_rejects_duplicate_active_rows(db_session: Session) -> None:
    automation = _automation(db_session)
    store = EnrollmentStore(db_session)
    entity_id = uuid.uuid4()
    store.create(automation, "contact", entity_id, now=NOW)
    db_session.commit()

    db_session.add(
        AutomationEnrollment(
            automation_id=automation.id,
            user_id="user-1",
            entity_type="contact",
            entity_id=entity_id,
            status="active",
            next_step_at=NOW,
            enrolled_at=NOW,
        )
    )
    with pytest.raises(IntegrityError):
        db_session.flush()
    db_session.rollback()


def test_terminal_enrollment_allows_re_enrollment(db_session: Session) -> None:
    automation = _automation(db_session)
    store = EnrollmentStore(db_session)
    entity_id = uuid.uuid4()
    store.create(automation, "contact", entity_id, now=NOW)
    db_session.commit()

    assert store.unenroll(automation.id, "contact", entity_id, now=NOW) is True
    db_session.commit()
    again = store.create(automation, "contact", entity_id, now=NOW + timedelta(minutes=1))
    db_session.commit()

    assert again.enrolled is True
    assert store.status_counts(automation.id) == {"active": 1, "unenrolled": 1}


def test_claim_due_respects_schedule_and_lease(db_session: Session) -> None:
    automation = _automation(db_session)
    store = EnrollmentStore(db_session)
    due_a = store.create(automation, "contact", uuid.uuid4(), now=NOW - timedelta(minutes=5))
    due_b = store.create(automation, "contact", uuid.uuid4(), now=NOW)
    store.create(automation, "contact", uuid.uuid4(), now=NOW + timedelta(hours=1))
    db_session.commit()

    claimed = store.claim_due(NOW, "worker-a", limit=10, lease_seconds=300)
    db_session.commit()

    assert claimed == [due_a.enrollment_id, due_b.enrollment_id]
    assert store.claim_due(NOW, "worker-b", limit=10, lease_seconds=300) == []
    expired = store.claim_due(NOW + timedelta(seconds=301), "worker-b", limit=10, lease_seconds=300)
    assert set(expired) == {due_a.enrollment_id, due_b.enrollment_id}


def test_claim_due_honours_batch_limit(db_session: Session) -> None:
    automation = _automation(db_session)
    store = EnrollmentStore(db_session)
    for offset in range(3):
        store.create(automation, "contact", uuid.uuid4(), now=NOW - timedelta(minutes=offset))
    db_session.commit()

    assert len(store.claim_due(NOW, "worker-a", limit=2, lease_seconds=60)) == 2
    assert len(store.claim_due(NOW, "worker-b", limit=2, lease_seconds=60)) == 1


def test_guarded_transitions_lose_after_unenroll(db_session: Session) -> None:
    automation = _automation(db_session)
    store = EnrollmentStore(db_session)
    entity_id = uuid.uuid4()
    created = store.create(automation, "contact", entity_id, now=NOW)
    db_session.commit()
    store.claim_due(NOW, "worker-a", limit=10, lease_seconds=300)
    db_session.commit()
    enrollment = store.get(created.enrollment_id)

    assert store.advance(enrollment, 1, NOW, worker_id="worker-b") is False

    store.unenroll(automation.id, "contact", entity_id, now=NOW)
    db_session.commit()

    assert store.advance(enrollment, 1, NOW, worker_id="worker-a") is False
    assert store.terminate(enrollment, "completed", now=NOW, worker_id="worker-a") is False
    assert enrollment.status == "unenrolled"
    assert enrollment.current_step_index == 0
    assert enrollment.exited_at is not None


def test_counters_follow_transitions(db_session: Session) -> None:
    automation = _automation(db_session)
    store = EnrollmentStore(db_session)
    created = store.create(automation, "contact", uuid.uuid4(), now=NOW)
    store.record_conditions_not_met(automation, "contact", uuid.uuid4(), now=NOW)
    db_session.commit()

    assert automation.enrolled_count == 2
    assert automation.active_enrollments == 1
    assert automation.completed_enrollments == 1

    enrollment = store.get(created.enrollment_id)
    assert store.terminate(enrollment, "completed", now=NOW, reason="done") is True
    store.record_execution(automation.id, success=True, now=NOW)
    db_session.commit()
    db_session.expire_all()

    assert automation.active_enrollments == 0
    assert automation.completed_enrollments == 2
    assert automation.execution_count == 1
    assert enrollment.status == "completed"
    assert enrollment.next_step_at is None
    assert enrollment.exit_reason == "done"


def test_active_counter_never_goes_negative(db_session: Session) -> None:
    automation = _automation(db_session)
    store = EnrollmentStore(db_session)
    created = store.create(automation, "contact", uuid.uuid4(), now=NOW)
    db_session.commit()
    automation.active_enrollments = 0
    db_session.commit()

    store.terminate(store.get(created.enrollment_id), "failed", now=NOW, error="boom")
    db_session.commit()
    db_session.expire_all()

    assert automation.active_enrollments == 0
    assert store.get(created.enrollment_id).error == "boom"
