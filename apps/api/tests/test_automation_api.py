from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit
from app.automation.models import utcnow
from app.automation.notifications import OutboxNotificationSender
from app.automation.runtime import AutomationRuntime, build_runtime
from app.core.auth import AuthUser, get_current_user
from app.core.config import Settings, get_settings
from app.core.database import Base, get_db
from app.crm.models import CRMContact
from app.main import app

OWNER = "user-1"


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("AUTOMATION_SCHEDULER_ENABLED", "false")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def runtime(session_factory: sessionmaker[Session]) -> AutomationRuntime:
    return build_runtime(session_factory, Settings(automation_scheduler_max_concurrency=1), OutboxNotificationSender())


@pytest.fixture()
def client(db_session: Session, runtime: AutomationRuntime) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub=OWNER, roles=["user"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.state.runtime = runtime
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.runtime = None


WEB_LEADS = {
    "name": "Tag web leads",
    "trigger": {"type": "contact_created"},
    "conditions": [{"field": "source", "operator": "equals", "value": "Website"}],
    "actions": [{"type": "add_contact_tag", "config": {"tag": "web-lead"}}],
}


def _create(client: TestClient, payload: dict = WEB_LEADS) -> dict:
    response = client.post("/api/automations", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def _contacts(db_session: Session, *sources: str) -> list[str]:
    contacts = [CRMContact(user_id=OWNER, first_name=f"Lead {index}", source=source) for index, source in enumerate(sources)]
    db_session.add_all(contacts)
    db_session.commit()
    return [str(contact.id) for contact in contacts]


def test_create_list_and_get(client: TestClient) -> None:
    audit.audit_entries.clear()

    created = _create(client)

    assert created["user_id"] == OWNER
    assert created["trigger_json"] == {"type": "contact_created", "config": {}}
    assert created["enrolled_count"] == 0
    assert [item["id"] for item in client.get("/api/automations").json()] == [created["id"]]
    assert client.get(f"/api/automations/{created['id']}").json()["name"] == "Tag web leads"
    assert audit.audit_entries[-1]["action"] == "automation.created"


def test_invalid_definition_is_rejected(client: TestClient) -> None:
    response = client.post(
        "/api/automations",
        json={"name": "No actions", "trigger": {"type": "contact_created"}, "actions": []},
    )

    assert response.status_code == 422


def test_missing_automation_returns_envelope(client: TestClient) -> None:
    response = client.get(f"/api/automations/{uuid.uuid4()}", headers={"X-Correlation-Id": "corr-404"})

    assert response.status_code == 404
    body = response.json()
    assert body["code"] == "automation_get_failed"
    assert body["message"] == "automation not found"
    assert body["correlation_id"] == "corr-404"
    assert response.headers["x-correlation-id"] == "corr-404"


def test_other_owners_automation_is_hidden(client: TestClient) -> None:
    created = _create(client)
    app.dependency_overrides[get_current_user] = lambda: AuthUser(sub="user-2", roles=["user"])

    response = client.get(f"/api/automations/{created['id']}/logs")

    assert response.status_code == 404
    assert response.json()["code"] == "automation_logs_failed"


def test_anonymous_caller_is_rejected(client: TestClient) -> None:
    del app.dependency_overrides[get_current_user]

    response = client.get("/api/automations")

    assert response.status_code == 401
    assert response.json()["code"] == "automation_list_failed"


def test_manual_enroll_unenroll_and_summary(client: TestClient, db_session: Session) -> None:
    automation = _create(client)
    [website, partner] = _contacts(db_session, "Website", "Partner")
    missing = str(uuid.uuid4())
    path = f"/api/automations/{automation['id']}"

    enrolled = client.post(f"{path}/enroll", json={"entityType": "contact", "entityIds": [website, partner, missing]})

    assert enrolled.status_code == 200
    results = {item["entity_id"]: item for item in enrolled.json()}
    # manual enrollment skips entry conditions
    assert results[partner]["enrolled"] is True
    assert results[website]["enrolled"] is True
    assert results[missing]["reason"] == "not_found"

    again = client.post(f"{path}/enroll", json={"entityType": "contact", "entityIds": [website]})
    assert again.json()[0]["reason"] == "already_enrolled"

    unenrolled = client.post(f"{path}/unenroll", json={"entityType": "contact", "entityIds": [partner, missing]})
    assert [item["reason"] for item in unenrolled.json()] == ["unenrolled", "not_enrolled"]

    summary = client.get(f"{path}/enrollments").json()
    assert summary["total"] == 2
    assert summary["by_status"] == {"active": 1, "unenrolled": 1}
    assert len(summary["recent"]) == 2
    assert audit.audit_entries[-1]["action"] == "automation.unenrolled"


def test_preview_reports_would_enroll(client: TestClient, db_session: Session) -> None:
    automation = _create(client)
    [website, partner, enrolled] = _contacts(db_session, "Website", "Partner", "Website")
    client.post(f"/api/automations/{automation['id']}/enroll", json={"entityType": "contact", "entityIds": [enrolled]})

    response = client.get(f"/api/automations/{automation['id']}/preview-enrollment", params={"entityType": "contact"})

    assert response.status_code == 200
    preview = {item["entity_id"]: (item["would_enroll"], item["reason"]) for item in response.json()}
    assert preview == {
        website: (True, None),
        partner: (False, "conditions_not_met"),
        enrolled: (False, "already_enrolled"),
    }


def test_dry_run_uses_sample_data_and_records_debug_logs(client: TestClient, runtime: AutomationRuntime) -> None:
    automation = _create(client)
    path = f"/api/automations/{automation['id']}"

    generated = client.post(f"{path}/test")
    custom = client.post(f"{path}/test", json={"sampleData": {"contact": {"id": "c-9", "source": "Partner"}}})

    assert generated.status_code == 200
    assert generated.json()["conditions_met"] is True
    assert generated.json()["actions"][0]["would_execute"] is True
    assert custom.json()["conditions_met"] is False
    assert custom.json()["actions"] == []

    debug_logs = client.get(f"{path}/debug-logs", params={"limit": 500}).json()
    assert {entry["session_id"] for entry in debug_logs} == {generated.json()["session_id"], custom.json()["session_id"]}
    assert runtime.debugger.get_automation_logs(automation["id"])


def test_logs_report_and_summary_after_execution(
    client: TestClient,
    db_session: Session,
    runtime: AutomationRuntime,
) -> None:
    automation = _create(client)
    [website] = _contacts(db_session, "Website")
    path = f"/api/automations/{automation['id']}"
    enrollment_id = client.post(f"{path}/enroll", json={"entityType": "contact", "entityIds": [website]}).json()[0][
        "enrollment_id"
    ]

    assert runtime.scheduler.tick(utcnow() + timedelta(seconds=1)).processed == 1

    logs = client.get(f"{path}/logs", params={"limit": 10}).json()
    assert sorted(row["step_index"] for row in logs) == [0, 1]
    assert {row["status"] for row in logs} == {"success"}
    assert client.get(f"{path}/logs", params={"limit": 1, "offset": 1}).status_code == 200

    enrollment_logs = client.get(f"/api/automations/enrollments/{enrollment_id}/logs").json()
    assert [row["step_index"] for row in enrollment_logs] == [0, 1]

    report = client.get(f"/api/automations/enrollments/{enrollment_id}/report").json()
    assert report["enrollment"]["status"] == "completed"
    assert report["actions_executed"] == 1

    summary = client.get(f"{path}/debug-summary").json()
    assert summary["successful"] == 2
    assert summary["recommendations"] == []

    refreshed = client.get(path).json()
    assert refreshed["execution_count"] == 1
    assert refreshed["completed_enrollments"] == 1


def test_missing_enrollment_report_returns_envelope(client: TestClient) -> None:
    response = client.get(f"/api/automations/enrollments/{uuid.uuid4()}/report")

    assert response.status_code == 404
    assert response.json()["code"] == "automation_report_failed"


def test_health_reports_scheduler_state(
    client: TestClient,
    runtime: AutomationRuntime,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    assert client.get("/health").json()["scheduler"] == "disabled"

    monkeypatch.setenv("AUTOMATION_SCHEDULER_ENABLED", "true")
    get_settings.cache_clear()
    assert client.get("/health").json()["scheduler"] == "stopped"

    runtime.scheduler.start_background()
    try:
        assert client.get("/health").json()["scheduler"] == "running"
    finally:
        runtime.scheduler.stop(timeout=5)
