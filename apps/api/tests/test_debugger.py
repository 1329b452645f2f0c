from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.automation.debugger import (
    AutomationDebugger,
    create_execution_report,
    generate_debug_summary,
    generate_test_data,
    session_automation_id,
)
from app.automation.enrollment import EnrollmentStore
from app.automation.execution_log import record_execution
from app.automation.executor import StepExecutor
from app.automation.models import Automation, AutomationEnrollment
from app.automation.notifications import OutboxNotificationSender
from app.core.config import Settings
from app.core.database import Base
from app.crm.models import CRMContact

OWNER = "user-1"
T0 = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)


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


def _web_lead_automation(**overrides: object) -> Automation:
    values: dict = {
        "id": uuid.uuid4(),
        "user_id": OWNER,
        "name": "Tag web leads",
        "trigger_json": {"type": "contact_created"},
        "conditions_json": [{"field": "source", "operator": "equals", "value": "Website"}],
        "actions_json": [{"type": "add_contact_tag", "config": {"tag": "web-lead"}}],
        "is_multi_step": False,
        "is_active": True,
        "enrolled_count": 0,
    }
    values.update(overrides)
    return Automation(**values)


def test_ring_buffer_keeps_newest_entries() -> None:
    debugger = AutomationDebugger(capacity=3)
    automation_id = uuid.uuid4()
    session_id = f"{automation_id}-contact-{uuid.uuid4()}-1"

    for index in range(5):
        debugger.log(session_id, "tick", {"index": index})

    entries = debugger.get_automation_logs(automation_id)
    assert [entry.data["index"] for entry in entries] == [2, 3, 4]
    assert [entry.id for entry in entries] == [3, 4, 5]
    assert debugger.get_automation_logs(automation_id, limit=1)[0].data == {"index": 4}

    debugger.clear()
    assert debugger.get_session_logs(session_id) == []


def test_session_ids_carry_the_automation(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.DEBUG, logger="app.automation.debug")
    debugger = AutomationDebugger()
    automation_id = uuid.uuid4()
    entity_id = uuid.uuid4()

    session_id = debugger.start_session(automation_id, "contact", entity_id)
    debugger.log(session_id, "custom_event", {"answer": 42}, level="warn")

    assert session_id.startswith(f"{automation_id}-contact-{entity_id}-")
    assert session_automation_id(session_id) == str(automation_id)
    [started, custom] = debugger.get_session_logs(session_id)
    assert started.event == "session_started"
    assert custom.level == "warn"

    record = next(item for item in caplog.records if item.getMessage() == "automation.debug.custom_event")
    assert record.levelno == logging.WARNING
    assert getattr(record, "session_id") == session_id
    assert getattr(record, "automation_id") == str(automation_id)
    assert getattr(record, "data") == {"answer": 42}


def test_unknown_level_falls_back_to_info() -> None:
    entry = AutomationDebugger().log("x" * 36 + "-contact-1-1", "odd", level="verbose")

    assert entry.level == "info"


def test_dry_run_reports_plan_without_side_effects() -> None:
    debugger = AutomationDebugger()
    automation = _web_lead_automation()

    response = debugger.test_automation(automation)

    assert response.trigger_type == "contact_created"
    assert response.sample_data["contact"]["source"] == "Website"
    assert response.conditions_met is True
    assert response.actions == [{"type": "add_contact_tag", "config": {"tag": "web-lead"}, "would_execute": True}]
    assert [entry.event for entry in response.logs][-1] == "test_completed"
    assert automation.enrolled_count == 0


def test_dry_run_with_failing_sample_plans_nothing() -> None:
    response = AutomationDebugger().test_automation(
        _web_lead_automation(),
        {"contact": {"id": "c-1", "source": "Trade show"}},
    )

    assert response.conditions_met is False
    assert response.actions == []
    assert response.conditions[0]["actual"] == "Trade show"
    assert "test-c-1" in response.session_id


def test_generated_sample_data_matches_trigger() -> None:
    assert set(generate_test_data("deal_stage_changed")) == {"deal", "previousStage", "newStage"}
    assert generate_test_data("contact_updated")["changedFields"] == ["firstName"]
    assert generate_test_data("deal_created")["deal"]["Contact"]["email"] == "test.contact@example.com"


def test_execution_report_and_summary(db_session: Session) -> None:
    automation = _web_lead_automation()
    contact = CRMContact(user_id=OWNER, first_name="Ada", source="Website")
    db_session.add_all([automation, contact])
    db_session.commit()
    created = EnrollmentStore(db_session).create(automation, "contact", contact.id, now=T0)
    db_session.commit()
    debugger = AutomationDebugger()

    StepExecutor(db_session, OutboxNotificationSender(), debugger, settings=Settings()).process(created.enrollment_id, T0)
    enrollment = db_session.get(AutomationEnrollment, created.enrollment_id)

    report = create_execution_report(db_session, enrollment)

    assert report.automation_name == "Tag web leads"
    assert report.steps_executed == 2
    assert report.actions_executed == 1
    assert report.actions_failed == 0
    assert report.conditions_evaluated == 1
    assert report.duration_seconds == 0
    assert report.enrollment.status == "completed"
    assert debugger.get_automation_logs(automation.id)

    for _ in range(4):
        record_execution(db_session, automation_id=automation.id, user_id=OWNER, trigger_type="contact_created", status="skipped")
    record_execution(
        db_session,
        automation_id=automation.id,
        user_id=OWNER,
        trigger_type="contact_created",
        status="failed",
        error="invalid_config: bad stage",
    )
    db_session.commit()

    summary = generate_debug_summary(db_session, automation)

    assert (summary.total_executions, summary.successful, summary.failed, summary.skipped) == (7, 2, 1, 4)
    assert summary.recent_errors[0]["error"] == "invalid_config: bad stage"
    assert [item["type"] for item in summary.recommendations] == ["CONDITION_FAILURES", "ACTION_ERRORS"]


def test_summary_flags_automation_without_enrollments(db_session: Session) -> None:
    automation = _web_lead_automation()
    db_session.add(automation)
    db_session.commit()

    summary = generate_debug_summary(db_session, automation)

    assert summary.total_executions == 0
    assert [item["type"] for item in summary.recommendations] == ["ENROLLMENT_FAILURES"]
