from __future__ import annotations

import threading
import time
import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.automation.errors import (
    EnrollmentCapacityError,
    EnrollmentStateError,
    WorkflowActivationError,
    WorkflowStateError,
)
from app.automation.executor import StepResult
from app.automation.models import (
    AutomationActionIntent,
    AutomationContactActivity,
    AutomationEnrollment,
    AutomationWorkflow,
)
from app.automation.schemas import WorkflowCreate, WorkflowStatusUpdate
from app.automation.service import (
    ALL_PERMISSIONS,
    PERMISSION_READ,
    ActorUser,
    EnrollmentManager,
    WorkflowDefinitionService,
)
from app.automation.triggers import TriggerEvent
from app.context import get_correlation_id, get_enrollment_id, reset_correlation_id, set_correlation_id
from app.core.config import get_settings
from app.core.database import Base


T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
ONE_DAY = timedelta(days=1)
ONE_SECOND = timedelta(seconds=1)

DRIP_STEPS = [
    {"id": "wait-1", "type": "wait", "config": {"duration": 1, "unit": "days"}, "next_step_id": "email-1"},
    {
        "id": "email-1",
        "name": "Welcome email",
        "type": "send_email",
        "config": {"subject": "Welcome {{first_name}}", "content_html": "<p>Hello</p>"},
    },
]


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
def actor() -> ActorUser:
    return ActorUser(user_id="marketer-1", permissions=set(ALL_PERMISSIONS), correlation_id="enroll-corr")


@pytest.fixture()
def workflows() -> WorkflowDefinitionService:
    return WorkflowDefinitionService()


@pytest.fixture()
def manager() -> EnrollmentManager:
    return EnrollmentManager()


def _active_workflow(
    session: Session,
    workflows: WorkflowDefinitionService,
    actor: ActorUser,
    *,
    steps: list[dict] | None = None,
    settings: dict | None = None,
    trigger: dict | None = None,
) -> uuid.UUID:
    created = workflows.create_workflow(
        session,
        actor,
        WorkflowCreate(
            name="Drip",
            trigger=trigger or {"type": "manual"},
            steps=steps or DRIP_STEPS,
            settings=settings or {},
        ),
    )
    workflows.activate(session, actor, created.id, now=T0)
    return created.id


def _contact_data(email: str | None = "ada@example.com") -> dict:
    contact: dict = {"first_name": "Ada"}
    if email is not None:
        contact["email"] = email
    return {"contact": contact}


def test_scenarios_a_b_c_drip_runs_to_completion(
    db_session: Session,
    workflows: WorkflowDefinitionService,
    manager: EnrollmentManager,
    actor: ActorUser,
) -> None:
    workflow_id = _active_workflow(db_session, workflows, actor)
    contact_id = uuid.uuid4()

    result = manager.enroll(db_session, actor, workflow_id, [contact_id], trigger_data=_contact_data(), now=T0)
    assert (result.enrolled, result.skipped) == (1, 0)
    enrollment_id = result.enrollment_ids[0]

    enrolled = manager.get_enrollment(db_session, actor, enrollment_id)
    assert enrolled.status == "active"
    assert enrolled.current_step_id == "wait-1"
    assert enrolled.next_step_at == T0 + timedelta(milliseconds=86_400_000)
    assert enrolled.trigger_data["source"] == "manual"
    assert enrolled.enrolled_by == "marketer-1"

    after_wait = manager.advance(db_session, enrollment_id, now=T0 + ONE_DAY)
    assert after_wait.status == "active"
    assert after_wait.current_step_id == "email-1"
    assert after_wait.next_step_at == T0 + ONE_DAY + ONE_SECOND
    assert after_wait.step_history[-1]["step_id"] == "wait-1"
    assert after_wait.step_history[-1]["status"] == "success"

    done = manager.advance(db_session, enrollment_id, now=T0 + ONE_DAY + ONE_SECOND)
    assert done.status == "completed"
    assert done.completed_at == T0 + ONE_DAY + ONE_SECOND
    assert done.next_step_at is None
    assert done.current_step_id is None

    workflow = db_session.get(AutomationWorkflow, workflow_id)
    db_session.refresh(workflow)
    assert workflow.enrolled_count == 1
    assert workflow.completed_count == 1

    intents = db_session.scalars(select(AutomationActionIntent)).all()
    assert len(intents) == 1
    assert intents[0].action_type == "send_email"
    assert intents[0].payload["subject"] == "Welcome Ada"
    assert intents[0].idempotency_key.startswith(f"{enrollment_id}:email-1:")

    completed_events = [item for item in events.published_events if item["event_type"] == "automation.enrollment.completed"]
    assert completed_events
    assert completed_events[-1]["meta"]["enrollment_id"] == str(enrollment_id)

    activity_types = set(db_session.scalars(select(AutomationContactActivity.activity_type)).all())
    assert {"workflow_enrolled", "workflow_step_executed", "workflow_completed"} <= activity_types


def test_terminal_enrollment_is_never_advanced_or_exited_again(
    db_session: Session,
    workflows: WorkflowDefinitionService,
    manager: EnrollmentManager,
    actor: ActorUser,
) -> None:
    workflow_id = _active_workflow(db_session, workflows, actor, steps=[{"id": "end", "type": "end"}])
    enrollment_id = manager.enroll(db_session, actor, workflow_id, [uuid.uuid4()], now=T0).enrollment_ids[0]

    done = manager.advance(db_session, enrollment_id, now=T0 + ONE_SECOND)
    assert done.status == "completed"

    with pytest.raises(EnrollmentStateError):
        manager.advance(db_session, enrollment_id, now=T0 + ONE_DAY)
    with pytest.raises(EnrollmentStateError):
        manager.exit_enrollment(db_session, actor, enrollment_id, "Too late")

    history = manager.get_enrollment(db_session, actor, enrollment_id).step_history
    assert len(history) == 1


def test_advance_before_due_time_is_rejected(
    db_session: Session,
    workflows: WorkflowDefinitionService,
    manager: EnrollmentManager,
    actor: ActorUser,
) -> None:
    workflow_id = _active_workflow(db_session, workflows, actor)
    enrollment_id = manager.enroll(db_session, actor, workflow_id, [uuid.uuid4()], now=T0).enrollment_ids[0]

    with pytest.raises(EnrollmentStateError, match="not due"):
        manager.advance(db_session, enrollment_id, now=T0 + timedelta(hours=1))


def test_re_enrollment_is_skipped_while_an_enrollment_is_open(
    db_session: Session,
    workflows: WorkflowDefinitionService,
    manager: EnrollmentManager,
    actor: ActorUser,
) -> None:
    workflow_id = _active_workflow(db_session, workflows, actor)
    contact_id = uuid.uuid4()

    first = manager.enroll(db_session, actor, workflow_id, [contact_id], now=T0)
    second = manager.enroll(db_session, actor, workflow_id, [contact_id], now=T0)

    assert (first.enrolled, first.skipped) == (1, 0)
    assert (second.enrolled, second.skipped) == (0, 1)
    open_rows = db_session.scalars(
        select(AutomationEnrollment).where(
            AutomationEnrollment.contact_id == contact_id,
            AutomationEnrollment.status.in_(("active", "paused")),
        )
    ).all()
    assert len(open_rows) == 1


def test_concurrent_enroll_collision_retries_and_skips_open_contact(
    db_session: Session,
    workflows: WorkflowDefinitionService,
    manager: EnrollmentManager,
    actor: ActorUser,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    workflow_id = _active_workflow(db_session, workflows, actor)
    existing_contact, new_contact = uuid.uuid4(), uuid.uuid4()
    manager.enroll(db_session, actor, workflow_id, [existing_contact], now=T0)

    real_open_contact_ids = manager.enrollment_repository.open_contact_ids
    calls: list[int] = []

    def stale_then_real(session, workflow_id, contact_ids):  # type: ignore[no-untyped-def]
        calls.append(len(contact_ids))
        if len(calls) == 1:
            return set()
        return real_open_contact_ids(session, workflow_id, contact_ids)

    monkeypatch.setattr(manager.enrollment_repository, "open_contact_ids", stale_then_real)

    result = manager.enroll(db_session, actor, workflow_id, [existing_contact, new_contact], now=T0)

    assert len(calls) == 2
    assert (result.enrolled, result.skipped) == (1, 1)
    open_rows = db_session.scalars(
        select(AutomationEnrollment).where(
            AutomationEnrollment.workflow_id == workflow_id,
            AutomationEnrollment.status.in_(("active", "paused")),
        )
    ).all()
    assert sorted(str(row.contact_id) for row in open_rows) == sorted([str(existing_contact), str(new_contact)])
    workflow = db_session.get(AutomationWorkflow, workflow_id)
    db_session.refresh(workflow)
    assert workflow.enrolled_count == 2


def test_duplicate_ids_in_one_request_are_skipped(
    db_session: Session,
    workflows: WorkflowDefinitionService,
    manager: EnrollmentManager,
    actor: ActorUser,
) -> None:
    workflow_id = _active_workflow(db_session, workflows, actor)
    contact_id = uuid.uuid4()

    result = manager.enroll(db_session, actor, workflow_id, [contact_id, contact_id], now=T0)
    assert (result.enrolled, result.skipped) == (1, 1)


def test_re_enrollment_allowed_by_settings(
    db_session: Session,
    workflows: WorkflowDefinitionService,
    manager: EnrollmentManager,
    actor: ActorUser,
) -> None:
    workflow_id = _active_workflow(db_session, workflows, actor, settings={"allow_re_enrollment": True})
    contact_id = uuid.uuid4()

    manager.enroll(db_session, actor, workflow_id, [contact_id], now=T0)
    second = manager.enroll(db_session, actor, workflow_id, [contact_id], now=T0)

    assert second.enrolled == 1
    rows = db_session.scalars(select(AutomationEnrollment).where(AutomationEnrollment.contact_id == contact_id)).all()
    assert len(rows) == 2
    assert all(row.is_exclusive is False for row in rows)


def test_enrollment_limit_boundary(
    db_session: Session,
    workflows: WorkflowDefinitionService,
    manager: EnrollmentManager,
    actor: ActorUser,
) -> None:
    workflow_id = _active_workflow(db_session, workflows, actor, settings={"enrollment_limit": 2})

    partial = manager.enroll(db_session, actor, workflow_id, [uuid.uuid4() for _ in range(3)], now=T0)
    assert (partial.enrolled, partial.skipped) == (2, 1)

    with pytest.raises(EnrollmentCapacityError) as exc_info:
        manager.enroll(db_session, actor, workflow_id, [uuid.uuid4()], now=T0)
    assert exc_info.value.skipped == 1

    workflow = db_session.get(AutomationWorkflow, workflow_id)
    db_session.refresh(workflow)
    assert workflow.enrolled_count == 2


def test_enroll_requires_active_workflow(
    db_session: Session,
    workflows: WorkflowDefinitionService,
    manager: EnrollmentManager,
    actor: ActorUser,
) -> None:
    draft = workflows.create_workflow(db_session, actor, WorkflowCreate(name="Draft", steps=DRIP_STEPS))
    with pytest.raises(WorkflowStateError):
        manager.enroll(db_session, actor, draft.id, [uuid.uuid4()], now=T0)


def test_enroll_requires_execute_permission(
    db_session: Session,
    workflows: WorkflowDefinitionService,
    manager: EnrollmentManager,
    actor: ActorUser,
) -> None:
    workflow_id = _active_workflow(db_session, workflows, actor)
    viewer = ActorUser(user_id="viewer-1", permissions={PERMISSION_READ})
    with pytest.raises(HTTPException) as exc_info:
        manager.enroll(db_session, viewer, workflow_id, [uuid.uuid4()], now=T0)
    assert exc_info.value.status_code == 403


def test_activation_refuses_dangling_branch(
    db_session: Session,
    workflows: WorkflowDefinitionService,
    actor: ActorUser,
) -> None:
    created = workflows.create_workflow(
        db_session,
        actor,
        WorkflowCreate(
            name="Broken",
            trigger={"type": "manual"},
            steps=[
                {
                    "id": "check",
                    "type": "condition",
                    "config": {"conditions": [{"field": "tier", "operator": "equals", "value": "vip"}]},
                    "branches": [{"id": "yes", "next_step_id": "missing"}],
                }
            ],
        ),
    )
    with pytest.raises(WorkflowActivationError) as exc_info:
        workflows.activate(db_session, actor, created.id, now=T0)
    assert exc_info.value.errors == ["condition: Links to unknown step 'missing'"]
    assert workflows.get_workflow(db_session, actor, created.id).status == "draft"


def test_status_transitions_follow_lifecycle(
    db_session: Session,
    workflows: WorkflowDefinitionService,
    actor: ActorUser,
) -> None:
    workflow_id = _active_workflow(db_session, workflows, actor)

    with pytest.raises(WorkflowStateError, match="already active"):
        workflows.activate(db_session, actor, workflow_id)
    paused = workflows.change_status(db_session, actor, workflow_id, WorkflowStatusUpdate(status="paused"))
    assert paused.status == "paused"
    archived = workflows.change_status(db_session, actor, workflow_id, WorkflowStatusUpdate(status="archived"))
    assert archived.status == "archived"
    with pytest.raises(WorkflowStateError, match="archived"):
        workflows.activate(db_session, actor, workflow_id)
    with pytest.raises(WorkflowStateError, match="Cannot transition"):
        workflows.change_status(db_session, actor, workflow_id, WorkflowStatusUpdate(status="paused"))


def test_send_email_without_address_fails_enrollment(
    db_session: Session,
    workflows: WorkflowDefinitionService,
    manager: EnrollmentManager,
    actor: ActorUser,
) -> None:
    workflow_id = _active_workflow(db_session, workflows, actor, steps=[DRIP_STEPS[1]])
    enrollment_id = manager.enroll(
        db_session,
        actor,
        workflow_id,
        [uuid.uuid4()],
        trigger_data=_contact_data(email=None),
        now=T0,
    ).enrollment_ids[0]

    failed = manager.advance(db_session, enrollment_id, now=T0 + ONE_SECOND)
    assert failed.status == "failed"
    assert failed.error_message == "Contact does not have an email address"
    assert db_session.scalars(select(AutomationActionIntent)).all() == []


def test_claimed_enrollment_is_not_advanced_twice(
    db_session: Session,
    workflows: WorkflowDefinitionService,
    manager: EnrollmentManager,
    actor: ActorUser,
) -> None:
    workflow_id = _active_workflow(db_session, workflows, actor)
    enrollment_id = manager.enroll(db_session, actor, workflow_id, [uuid.uuid4()], now=T0).enrollment_ids[0]
    row = db_session.get(AutomationEnrollment, enrollment_id)
    row.claimed_until = T0 + ONE_DAY + timedelta(minutes=5)
    row.claim_token = "other-worker"
    db_session.commit()

    with pytest.raises(EnrollmentStateError, match="already being processed"):
        manager.advance(db_session, enrollment_id, now=T0 + ONE_DAY)

    stale_write = manager.enrollment_repository.write_claimed(
        db_session,
        enrollment_id,
        "not-the-owner",
        {"status": "completed"},
    )
    db_session.rollback()
    assert stale_write is False


class _SlowExecutor:
    def execute(self, step, context):  # type: ignore[no-untyped-def]
        time.sleep(0.3)
        return StepResult(outcome="success")


class _BrokenExecutor:
    def execute(self, step, context):  # type: ignore[no-untyped-def]
        raise RuntimeError("provider unavailable")


def test_step_timeout_keeps_schedule_until_attempts_run_out(
    db_session: Session,
    workflows: WorkflowDefinitionService,
    actor: ActorUser,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("WORKFLOW_STEP_TIMEOUT_SECONDS", "0.05")
    monkeypatch.setenv("WORKFLOW_STEP_MAX_ATTEMPTS", "2")
    get_settings.cache_clear()
    manager = EnrollmentManager(_SlowExecutor())
    workflow_id = _active_workflow(db_session, workflows, actor)
    enrollment_id = manager.enroll(db_session, actor, workflow_id, [uuid.uuid4()], now=T0).enrollment_ids[0]

    first = manager.advance(db_session, enrollment_id, now=T0 + ONE_DAY)
    assert first.status == "active"
    assert first.attempt_count == 1
    assert first.current_step_id == "wait-1"
    assert first.next_step_at == T0 + ONE_DAY
    assert first.step_history[-1]["status"] == "timeout"

    second = manager.advance(db_session, enrollment_id, now=T0 + ONE_DAY + timedelta(minutes=1))
    assert second.status == "failed"
    assert second.attempt_count == 2


def test_executor_exception_is_recorded_as_failure(
    db_session: Session,
    workflows: WorkflowDefinitionService,
    actor: ActorUser,
) -> None:
    manager = EnrollmentManager(_BrokenExecutor())
    workflow_id = _active_workflow(db_session, workflows, actor)
    enrollment_id = manager.enroll(db_session, actor, workflow_id, [uuid.uuid4()], now=T0).enrollment_ids[0]

    failed = manager.advance(db_session, enrollment_id, now=T0 + ONE_DAY)
    assert failed.status == "failed"
    assert failed.error_message == "provider unavailable"


class _GatedExecutor:
    """Blocks every contact except ``fast_contact`` until ``gate`` is set."""

    def __init__(self, fast_contact: uuid.UUID) -> None:
        self.fast_contact = fast_contact
        self.gate = threading.Event()
        self.ran_for: list[uuid.UUID] = []

    def execute(self, step, context):  # type: ignore[no-untyped-def]
        self.ran_for.append(context.contact_id)
        if context.contact_id != self.fast_contact:
            self.gate.wait(timeout=5)
        return StepResult(outcome="success")


def test_step_queued_behind_saturated_pool_is_deferred_without_an_attempt(
    db_session: Session,
    workflows: WorkflowDefinitionService,
    actor: ActorUser,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("WORKFLOW_STEP_TIMEOUT_SECONDS", "0.1")
    monkeypatch.setenv("WORKFLOW_STEP_MAX_ATTEMPTS", "1")
    monkeypatch.setenv("WORKFLOW_STEP_WORKERS", "1")
    get_settings.cache_clear()
    hung_contact, healthy_contact = uuid.uuid4(), uuid.uuid4()
    executor = _GatedExecutor(fast_contact=healthy_contact)
    manager = EnrollmentManager(executor)
    workflow_id = _active_workflow(db_session, workflows, actor)
    hung_id, healthy_id = manager.enroll(
        db_session, actor, workflow_id, [hung_contact, healthy_contact], now=T0
    ).enrollment_ids

    try:
        hung = manager.advance(db_session, hung_id, now=T0 + ONE_DAY)
        assert hung.status == "failed"

        with pytest.raises(EnrollmentStateError, match="saturated"):
            manager.advance(db_session, healthy_id, now=T0 + ONE_DAY)

        deferred = db_session.get(AutomationEnrollment, healthy_id)
        db_session.refresh(deferred)
        assert deferred.status == "active"
        assert deferred.attempt_count == 0
        assert deferred.claim_token is None
        assert deferred.current_step_id == "wait-1"
        assert healthy_contact not in executor.ran_for
    finally:
        executor.gate.set()

    time.sleep(0.05)
    retried = manager.advance(db_session, healthy_id, now=T0 + ONE_DAY + timedelta(minutes=1))
    assert retried.status == "active"
    assert retried.current_step_id == "email-1"
    assert healthy_contact in executor.ran_for


class _ContextRecordingExecutor:
    def __init__(self) -> None:
        self.seen: list[tuple[str | None, str | None]] = []

    def execute(self, step, context):  # type: ignore[no-untyped-def]
        self.seen.append((get_enrollment_id(), get_correlation_id()))
        return StepResult(outcome="success")


def test_executor_runs_with_enrollment_and_correlation_context(
    db_session: Session,
    workflows: WorkflowDefinitionService,
    actor: ActorUser,
) -> None:
    executor = _ContextRecordingExecutor()
    manager = EnrollmentManager(executor)
    workflow_id = _active_workflow(db_session, workflows, actor)
    enrollment_id = manager.enroll(db_session, actor, workflow_id, [uuid.uuid4()], now=T0).enrollment_ids[0]

    token = set_correlation_id("executor-ctx-1")
    try:
        manager.advance(db_session, enrollment_id, now=T0 + ONE_DAY)
    finally:
        reset_correlation_id(token)

    assert executor.seen == [(str(enrollment_id), "executor-ctx-1")]


def test_pause_resume_and_exit(
    db_session: Session,
    workflows: WorkflowDefinitionService,
    manager: EnrollmentManager,
    actor: ActorUser,
) -> None:
    workflow_id = _active_workflow(db_session, workflows, actor)
    ids = manager.enroll(db_session, actor, workflow_id, [uuid.uuid4(), uuid.uuid4()], now=T0).enrollment_ids

    assert manager.pause_enrollments(db_session, actor, workflow_id) == 2
    with pytest.raises(EnrollmentStateError):
        manager.advance(db_session, ids[0], now=T0 + ONE_DAY)
    assert manager.resume_enrollments(db_session, actor, workflow_id) == 2

    exited = manager.exit_enrollment(db_session, actor, ids[0], "Replied to email", now=T0 + ONE_SECOND)
    assert exited.status == "exited"
    assert exited.exit_reason == "Replied to email"
    assert exited.next_step_at is None

    listing = manager.list_enrollments(db_session, actor, workflow_id, page_size=1)
    assert listing.pagination.total == 2
    assert listing.pagination.total_pages == 2
    assert len(listing.enrollments) == 1
    assert listing.status_breakdown["active"] == 1
    assert listing.status_breakdown["exited"] == 1
    assert listing.status_breakdown["completed"] == 0


def test_trigger_event_enrolls_matching_workflows(
    db_session: Session,
    workflows: WorkflowDefinitionService,
    manager: EnrollmentManager,
    actor: ActorUser,
) -> None:
    matching = _active_workflow(
        db_session,
        workflows,
        actor,
        trigger={"type": "tag_added", "config": {"tag_ids": ["vip"]}},
    )
    _active_workflow(
        db_session,
        workflows,
        actor,
        trigger={"type": "tag_added", "config": {"tag_ids": ["cold"]}},
    )
    contact_id = uuid.uuid4()

    outcome = manager.ingest_event(
        db_session,
        TriggerEvent("crm.contact.tag_added", contact_id, {"tag_ids": ["vip"], "contact": {"email": "a@b.c"}}),
        now=T0,
    )

    assert outcome.matched_workflow_ids == [matching]
    assert outcome.enrolled == 1
    row = db_session.scalar(select(AutomationEnrollment).where(AutomationEnrollment.contact_id == contact_id))
    assert row is not None
    assert row.workflow_id == matching
    assert row.enrolled_by == "system"
    assert row.trigger_data["trigger"] == "tag_added"
    assert row.trigger_data["source"] == "tag_added"

    repeat = manager.ingest_event(
        db_session,
        TriggerEvent("crm.contact.tag_added", contact_id, {"tag_ids": ["vip"]}),
        now=T0,
    )
    assert (repeat.enrolled, repeat.skipped) == (0, 1)


def test_delete_exits_open_enrollments(
    db_session: Session,
    workflows: WorkflowDefinitionService,
    manager: EnrollmentManager,
    actor: ActorUser,
) -> None:
    workflow_id = _active_workflow(db_session, workflows, actor)
    enrollment_id = manager.enroll(db_session, actor, workflow_id, [uuid.uuid4()], now=T0).enrollment_ids[0]

    with pytest.raises(WorkflowStateError):
        workflows.delete_workflow(db_session, actor, workflow_id)
    workflows.change_status(db_session, actor, workflow_id, WorkflowStatusUpdate(status="paused"))
    workflows.delete_workflow(db_session, actor, workflow_id, now=T0 + ONE_SECOND)

    assert db_session.get(AutomationWorkflow, workflow_id) is None
    row = db_session.get(AutomationEnrollment, enrollment_id)
    db_session.refresh(row)
    assert row.status == "exited"
    assert row.exit_reason == "Workflow deleted"
