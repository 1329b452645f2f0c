from __future__ import annotations

from collections.abc import Generator
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.automation.models import utcnow
from app.automation.notifications import OutboxNotificationSender
from app.automation.runtime import AutomationRuntime, build_runtime
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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
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

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=["system.metrics.read"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_auth_user
    app.state.runtime = runtime

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    app.state.runtime = None


def test_metrics_endpoint_exposes_http_and_automation_metrics(
    client: TestClient,
    db_session: Session,
    runtime: AutomationRuntime,
) -> None:
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["scheduler"] == "disabled"

    automation = client.post(
        "/api/automations",
        json={
            "name": "Metrics automation",
            "trigger": {"type": "contact_created"},
            "actions": [{"type": "add_contact_tag", "config": {"tag": "metered"}}],
        },
    )
    assert automation.status_code == 201

    contact = CRMContact(user_id="metrics-admin", first_name="Ada")
    db_session.add(contact)
    db_session.commit()
    enrolled = client.post(
        f"/api/automations/{automation.json()['id']}/enroll",
        json={"entityType": "contact", "entityIds": [str(contact.id)]},
    )
    assert enrolled.status_code == 200
    assert runtime.scheduler.tick(utcnow() + timedelta(seconds=1)).processed == 1

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "automation_enrollments_total" in body
    assert "automation_steps_total" in body
    assert "automation_scheduler_ticks_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/automations/{id}/enroll"' in body
    assert 'step_type="action"' in body
    assert 'action_type="add_contact_tag"' in body


def test_metrics_require_role(client: TestClient) -> None:
    app.dependency_overrides[get_current_user] = lambda: AuthUser(sub="user-1", roles=["user"])

    response = client.get("/metrics")

    assert response.status_code == 403


def test_metrics_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    assert client.get("/metrics").status_code == 404
