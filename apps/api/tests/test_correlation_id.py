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

from app import audit, events
from app.automation import service as automation_service
from app.automation.api import get_current_user
from app.automation.service import ActorUser
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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_active_workflow(client: TestClient, correlation_id: str) -> dict:
    created = client.post(
        "/api/automation/workflows",
        json={
            "name": "Corr flow",
            "trigger": {"type": "manual"},
            "steps": [
                {"id": "tag", "type": "add_tag", "config": {"tag_ids": ["corr"]}, "next_step_id": "done"},
                {"id": "done", "type": "end"},
            ],
        },
        headers={"X-Correlation-Id": correlation_id},
    )
    assert created.status_code == 201
    activated = client.post(
        f"/api/automation/workflows/{created.json()['id']}/activate",
        headers={"X-Correlation-Id": correlation_id},
    )
    assert activated.status_code == 200
    return activated.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/automation/workflows/{uuid.uuid4()}")
    assert response.status_code == 404

    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value
    assert body["code"] == "automation_workflow_get_failed"


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/automation/enrollments/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_request_id_used_when_correlation_header_missing(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Request-Id": "req-42"})
    assert response.status_code == 200
    assert response.headers.get("x-correlation-id") == "req-42"


def test_malformed_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "bad value with spaces"})
    assert response.status_code == 200
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    assert header_value != "bad value with spaces"
    uuid.UUID(header_value)


def test_audit_uses_request_correlation_id(client: TestClient) -> None:
    workflow = _create_active_workflow(client, "corr-audit-1")

    workflow_audits = audit.entries_for("automation.workflow", workflow["id"])
    assert workflow_audits
    assert {entry["action"] for entry in workflow_audits} >= {"automation.workflow.created"}
    assert all(entry["correlation_id"] == "corr-audit-1" for entry in workflow_audits)


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    workflow = _create_active_workflow(client, "corr-setup-1")

    response = client.post(
        f"/api/automation/workflows/{workflow['id']}/enroll",
        json={"contact_ids": [str(uuid.uuid4())]},
        headers={"X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 200

    created_events = [
        item for item in events.published_events if item.get("event_type") == "automation.enrollment.created"
    ]
    assert created_events
    assert created_events[-1].get("correlation_id") == "corr-event-1"


def test_completion_event_carries_advance_correlation_and_enrollment(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    workflow = _create_active_workflow(client, "corr-setup-2")
    enrolled = client.post(
        f"/api/automation/workflows/{workflow['id']}/enroll",
        json={"contact_ids": [str(uuid.uuid4())]},
    )
    enrollment_id = enrolled.json()["enrollment_ids"][0]

    later = automation_service.utcnow() + timedelta(minutes=5)
    monkeypatch.setattr(automation_service, "utcnow", lambda: later)
    first = client.post(f"/api/automation/enrollments/{enrollment_id}/advance", headers={"X-Correlation-Id": "corr-run-1"})
    assert first.status_code == 200

    later_still = later + timedelta(minutes=5)
    monkeypatch.setattr(automation_service, "utcnow", lambda: later_still)
    second = client.post(f"/api/automation/enrollments/{enrollment_id}/advance", headers={"X-Correlation-Id": "corr-run-1"})
    assert second.status_code == 200
    assert second.json()["status"] == "completed"

    completed_events = [
        item for item in events.published_events if item.get("event_type") == "automation.enrollment.completed"
    ]
    assert completed_events
    assert completed_events[-1]["correlation_id"] == "corr-run-1"
    assert completed_events[-1]["meta"]["enrollment_id"] == enrollment_id
