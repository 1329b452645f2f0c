from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit
from app.automation.debugger import AutomationDebugger
from app.automation.enrollment import EnrollmentStore
from app.automation.executor import StepExecutor
from app.automation.models import Automation
from app.automation.notifications import OutboxNotificationSender
from app.automation.runtime import build_runtime
from app.context import get_correlation_id, get_debug_session_id
from app.core.auth import AuthUser, get_current_user
from app.core.config import Settings, get_settings
from app.core.database import Base, get_db
from app.crm.models import CRMContact
from app.main import app


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


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session, session_factory: sessionmaker[Session]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="user-1", roles=["user"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.state.runtime = build_runtime(session_factory, Settings(), OutboxNotificationSender())
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.runtime = None


def _create_automation(client: TestClient, correlation_id: str) -> dict:
    response = client.post(
        "/api/automations",
        json={
            "name": "Corr automation",
            "trigger": {"type": "contact_created"},
            "actions": [{"type": "add_contact_tag", "config": {"tag": "corr"}}],
        },
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/automations/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/automations/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_audit_uses_request_correlation_id(client: TestClient, db_session: Session) -> None:
    automation = _create_automation(client, "corr-audit-1")
    contact = CRMContact(user_id="user-1", first_name="Ada")
    db_session.add(contact)
    db_session.commit()

    enrolled = client.post(
        f"/api/automations/{automation['id']}/enroll",
        json={"entityType": "contact", "entityIds": [str(contact.id)]},
        headers={"X-Correlation-Id": "corr-audit-2"},
    )
    assert enrolled.status_code == 200

    assert [(entry["action"], entry["correlation_id"]) for entry in audit.audit_entries] == [
        ("automation.created", "corr-audit-1"),
        ("automation.enrolled", "corr-audit-2"),
    ]


def test_step_execution_binds_and_restores_correlation(db_session: Session) -> None:
    now = datetime(2026, 3, 5, 9, 0, tzinfo=timezone.utc)
    automation = Automation(
        user_id="user-1",
        name="Tagger",
        trigger_json={"type": "contact_created"},
        actions_json=[{"type": "add_contact_tag", "config": {"tag": "x"}}],
    )
    contact = CRMContact(user_id="user-1", first_name="Ada")
    db_session.add_all([automation, contact])
    db_session.commit()
    created = EnrollmentStore(db_session).create(automation, "contact", contact.id, now=now)
    db_session.commit()
    debugger = AutomationDebugger()

    StepExecutor(db_session, OutboxNotificationSender(), debugger, settings=Settings()).process(created.enrollment_id, now)

    [entry] = [item for item in debugger.get_automation_logs(automation.id) if item.event == "action_executed"]
    assert entry.session_id.startswith(str(automation.id))
    assert get_correlation_id() is None
    assert get_debug_session_id() is None
