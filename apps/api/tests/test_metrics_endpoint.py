from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import timedelta

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.automation import runner as automation_runner
from app.automation import service as automation_service
from app.automation.api import get_current_user
from app.automation.service import ActorUser
from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app


ALL_PERMISSIONS = {
    "automation.workflows.read",
    "automation.workflows.manage",
    "automation.workflows.execute",
}


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


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.delenv("CRON_SECRET", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=["system.metrics.read"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _run_one_enrollment(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    created = client.post(
        "/api/automation/workflows",
        json={
            "name": "Metrics flow",
            "trigger": {"type": "manual"},
            "steps": [
                {"id": "tag", "type": "add_tag", "config": {"tag_ids": ["engaged"]}, "next_step_id": "done"},
                {"id": "done", "type": "end"},
            ],
        },
    )
    assert created.status_code == 201
    workflow_id = created.json()["id"]
    assert client.post(f"/api/automation/workflows/{workflow_id}/activate").status_code == 200

    enrolled = client.post(
        f"/api/automation/workflows/{workflow_id}/enroll",
        json={"contact_ids": [str(uuid.uuid4())]},
    )
    assert enrolled.status_code == 200

    later = automation_service.utcnow() + timedelta(minutes=5)
    monkeypatch.setattr(automation_service, "utcnow", lambda: later)
    monkeypatch.setattr(automation_runner, "utcnow", lambda: later)
    processed = client.post("/api/automation/cron/process-workflows")
    assert processed.status_code == 200
    assert processed.json()["succeeded"] >= 1


def test_metrics_endpoint_exposes_prometheus_payload(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    _run_one_enrollment(client, monkeypatch)

    workflow_id = uuid.uuid4()
    missing = client.get(f"/api/automation/workflows/{workflow_id}")
    assert missing.status_code == 404

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert metrics.headers["content-type"].startswith("text/plain")

    body = metrics.text
    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "automation_enrollments_total" in body
    assert "automation_steps_total" in body
    assert "automation_runner_batches_total" in body
    assert 'path="/api/automation/workflows/{id}"' in body
    assert str(workflow_id) not in body


def test_metrics_endpoint_returns_404_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")
    assert response.status_code == 404


def test_metrics_endpoint_requires_metrics_role(client: TestClient) -> None:
    def override_auth_user() -> AuthUser:
        return AuthUser(sub="viewer", roles=["automation.workflows.read"])

    app.dependency_overrides[auth_get_current_user] = override_auth_user
    response = client.get("/metrics")
    assert response.status_code == 403
