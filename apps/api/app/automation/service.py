from __future__ import annotations

import contextvars
import logging
import math
import time
import uuid
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as StepTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import and_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit, events
from app.automation.errors import (
    EnrollmentCapacityError,
    EnrollmentNotFoundError,
    EnrollmentStateError,
    WorkflowActivationError,
    WorkflowNotFoundError,
    WorkflowStateError,
)
from app.automation.executor import DefaultStepExecutor, StepContext, StepExecutor, StepResult
from app.automation.graph import StepGraph
from app.automation.models import (
    AutomationActionIntent,
    AutomationContactActivity,
    AutomationEnrollment,
    AutomationWorkflow,
)
from app.automation.repository import EnrollmentRepository, WorkflowRepository
from app.automation.scheduler import compute_next
from app.automation.schemas import (
    TERMINAL_ENROLLMENT_STATUSES,
    EnrollmentListResponse,
    EnrollmentRead,
    EnrollResult,
    Pagination,
    TriggerEventResult,
    WorkflowCreate,
    WorkflowRead,
    WorkflowSettings,
    WorkflowStatusUpdate,
    WorkflowUpdate,
    WorkflowValidationRead,
    dump_steps,
    parse_steps,
)
from app.automation.triggers import DefaultTriggerEvaluator, TriggerEvaluator, TriggerEvent, normalize_event_type
from app.automation.validation import validate_for_activation
from app.context import get_correlation_id, reset_enrollment_id, set_enrollment_id
from app.core.config import get_settings
from app.metrics import observe_enrollment_transition, observe_enrollments, observe_step

logger = logging.getLogger("app.automation.enrollments")
tracer = trace.get_tracer("app.automation.enrollments")

PERMISSION_READ = "automation.workflows.read"
PERMISSION_MANAGE = "automation.workflows.manage"
PERMISSION_EXECUTE = "automation.workflows.execute"
ALL_PERMISSIONS = frozenset({PERMISSION_READ, PERMISSION_MANAGE, PERMISSION_EXECUTE})

WORKFLOW_TRANSITIONS: dict[str, set[str]] = {
    "draft": {"active", "archived"},
    "active": {"paused", "archived"},
    "paused": {"active", "archived"},
    "archived": {"draft"},
}

ENROLLMENT_STATUSES = ("active", "paused", "completed", "exited", "failed")
_MAX_ENROLL_ATTEMPTS = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None


def system_actor(correlation_id: str | None = None) -> ActorUser:
    return ActorUser(user_id="system", permissions=set(ALL_PERMISSIONS), correlation_id=correlation_id)


def _require_permission(actor_user: ActorUser, permission: str) -> None:
    if permission not in actor_user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def _contact_from_trigger_data(enrollment: AutomationEnrollment) -> dict[str, Any]:
    contact = (enrollment.trigger_data or {}).get("contact")
    return dict(contact) if isinstance(contact, dict) else {}


class WorkflowDefinitionService:
    """Workflow CRUD and the draft/active/paused/archived lifecycle."""

    def __init__(
        self,
        workflow_repository: WorkflowRepository | None = None,
        enrollment_repository: EnrollmentRepository | None = None,
    ) -> None:
        self.workflow_repository = workflow_repository or WorkflowRepository()
        self.enrollment_repository = enrollment_repository or EnrollmentRepository()

    def list_workflows(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        status_filter: str | None = None,
    ) -> list[WorkflowRead]:
        _require_permission(actor_user, PERMISSION_READ)
        rows = self.workflow_repository.list_all(session, status=status_filter)
        return [self._to_read(row) for row in rows]

    def get_workflow(self, session: Session, actor_user: ActorUser, workflow_id: uuid.UUID) -> WorkflowRead:
        _require_permission(actor_user, PERMISSION_READ)
        return self._to_read(self._load(session, workflow_id))

    def create_workflow(self, session: Session, actor_user: ActorUser, dto: WorkflowCreate) -> WorkflowRead:
        _require_permission(actor_user, PERMISSION_MANAGE)
        steps = dump_steps(dto.steps)
        workflow = AutomationWorkflow(
            name=dto.name.strip(),
            description=dto.description,
            status="draft",
            trigger=dto.trigger.model_dump(mode="json", exclude_none=True),
            steps=steps,
            settings=dto.settings.model_dump(mode="json", exclude_none=True),
            entry_step_id=steps[0]["id"] if steps else None,
            created_by=actor_user.user_id,
        )
        session.add(workflow)
        session.flush()

        after = self._to_read(workflow).model_dump(mode="json")
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation.workflow",
            entity_id=str(workflow.id),
            action="automation.workflow.created",
            before=None,
            after=after,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(workflow)
        logger.info("automation.workflow.created", extra={"workflow_id": str(workflow.id)})
        return self._to_read(workflow)

    def update_workflow(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        dto: WorkflowUpdate,
    ) -> WorkflowRead:
        _require_permission(actor_user, PERMISSION_MANAGE)
        workflow = self._load(session, workflow_id)
        before = self._to_read(workflow).model_dump(mode="json")

        payload = dto.model_dump(exclude_unset=True)
        if workflow.status == "active" and ("steps" in payload or "trigger" in payload):
            raise WorkflowStateError("Pause the workflow before changing its trigger or steps")

        if "name" in payload and dto.name is not None:
            workflow.name = dto.name.strip()
        if "description" in payload:
            workflow.description = dto.description
        if "trigger" in payload and dto.trigger is not None:
            workflow.trigger = dto.trigger.model_dump(mode="json", exclude_none=True)
        if "steps" in payload and dto.steps is not None:
            steps = dump_steps(dto.steps)
            workflow.steps = steps
            workflow.entry_step_id = steps[0]["id"] if steps else None
        if "settings" in payload and dto.settings is not None:
            workflow.settings = dto.settings.model_dump(mode="json", exclude_none=True)
        workflow.updated_at = utcnow()
        session.add(workflow)
        session.flush()

        after = self._to_read(workflow).model_dump(mode="json")
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation.workflow",
            entity_id=str(workflow.id),
            action="automation.workflow.updated",
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(workflow)
        return self._to_read(workflow)

    def delete_workflow(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        *,
        now: datetime | None = None,
    ) -> None:
        _require_permission(actor_user, PERMISSION_MANAGE)
        workflow = self._load(session, workflow_id)
        if workflow.status == "active":
            raise WorkflowStateError("Pause or archive the workflow before deleting it")
        moment = now or utcnow()
        before = self._to_read(workflow).model_dump(mode="json")

        session.execute(
            update(AutomationEnrollment)
            .where(
                and_(
                    AutomationEnrollment.workflow_id == workflow.id,
                    AutomationEnrollment.status.in_(("active", "paused")),
                )
            )
            .values(
                status="exited",
                exited_at=moment,
                exit_reason="Workflow deleted",
                next_step_at=None,
                claimed_until=None,
                claim_token=None,
                row_version=AutomationEnrollment.row_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        session.delete(workflow)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation.workflow",
            entity_id=str(workflow_id),
            action="automation.workflow.deleted",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        logger.info("automation.workflow.deleted", extra={"workflow_id": str(workflow_id)})

    def duplicate_workflow(self, session: Session, actor_user: ActorUser, workflow_id: uuid.UUID) -> WorkflowRead:
        _require_permission(actor_user, PERMISSION_MANAGE)
        original = self._load(session, workflow_id)
        duplicate = AutomationWorkflow(
            name=f"{original.name} (Copy)",
            description=original.description,
            status="draft",
            trigger=dict(original.trigger or {}),
            steps=[dict(step) for step in original.steps or []],
            settings=dict(original.settings or {}),
            entry_step_id=original.entry_step_id,
            created_by=actor_user.user_id,
        )
        session.add(duplicate)
        session.flush()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation.workflow",
            entity_id=str(duplicate.id),
            action="automation.workflow.duplicated",
            before=None,
            after={"source_workflow_id": str(original.id), "name": duplicate.name},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(duplicate)
        return self._to_read(duplicate)

    def validate_workflow(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
    ) -> WorkflowValidationRead:
        _require_permission(actor_user, PERMISSION_READ)
        workflow = self._to_read(self._load(session, workflow_id))
        errors = validate_for_activation(workflow)
        return WorkflowValidationRead(workflow_id=workflow.id, valid=not errors, errors=errors)

    def activate(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        *,
        now: datetime | None = None,
    ) -> WorkflowRead:
        _require_permission(actor_user, PERMISSION_MANAGE)
        workflow = self._load(session, workflow_id)
        if workflow.status == "active":
            raise WorkflowStateError("Workflow is already active")
        if workflow.status == "archived":
            raise WorkflowStateError("Cannot activate an archived workflow. Restore it first.")
        return self._apply_status(session, actor_user, workflow, "active", now=now)

    def change_status(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        dto: WorkflowStatusUpdate,
        *,
        now: datetime | None = None,
    ) -> WorkflowRead:
        _require_permission(actor_user, PERMISSION_MANAGE)
        workflow = self._load(session, workflow_id)
        if dto.status not in WORKFLOW_TRANSITIONS.get(workflow.status, set()):
            raise WorkflowStateError(f"Cannot transition from '{workflow.status}' to '{dto.status}'")
        return self._apply_status(session, actor_user, workflow, dto.status, now=now)

    def _apply_status(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow: AutomationWorkflow,
        target_status: str,
        *,
        now: datetime | None,
    ) -> WorkflowRead:
        before = self._to_read(workflow)
        if target_status == "active":
            errors = validate_for_activation(before)
            if errors:
                logger.info(
                    "automation.workflow.activation_rejected",
                    extra={"workflow_id": str(workflow.id), "reason": "; ".join(errors)},
                )
                raise WorkflowActivationError(errors)
            workflow.activated_at = now or utcnow()

        workflow.status = target_status
        workflow.updated_at = now or utcnow()
        session.add(workflow)
        session.flush()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation.workflow",
            entity_id=str(workflow.id),
            action=f"automation.workflow.{target_status}",
            before={"status": before.status},
            after={"status": target_status},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(workflow)
        logger.info(
            "automation.workflow.status_changed",
            extra={"workflow_id": str(workflow.id), "status": target_status},
        )
        return self._to_read(workflow)

    def _load(self, session: Session, workflow_id: uuid.UUID) -> AutomationWorkflow:
        workflow = self.workflow_repository.get(session, workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    def _to_read(self, workflow: AutomationWorkflow) -> WorkflowRead:
        return WorkflowRead.model_validate(workflow)


class EnrollmentManager:
    """Opens enrollments and moves them through a workflow's step graph.

    All enrollment state changes go through this class. ``advance`` claims
    the enrollment with a conditional update, runs the step executor under a
    timeout, then records the transition, the step history entry and the
    executor's action intents in a single commit that also releases the
    claim.
    """

    def __init__(
        self,
        executor: StepExecutor | None = None,
        *,
        contact_lookup: Callable[[AutomationEnrollment], dict[str, Any]] | None = None,
        trigger_evaluator: TriggerEvaluator | None = None,
        workflow_repository: WorkflowRepository | None = None,
        enrollment_repository: EnrollmentRepository | None = None,
    ) -> None:
        self.executor: StepExecutor = executor or DefaultStepExecutor()
        self.contact_lookup = contact_lookup or _contact_from_trigger_data
        self.trigger_evaluator: TriggerEvaluator = trigger_evaluator or DefaultTriggerEvaluator()
        self.workflow_repository = workflow_repository or WorkflowRepository()
        self.enrollment_repository = enrollment_repository or EnrollmentRepository()
        self._pool = ThreadPoolExecutor(
            max_workers=get_settings().workflow_step_workers,
            thread_name_prefix="automation-step",
        )

    def enroll(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        contact_ids: Sequence[uuid.UUID],
        *,
        trigger_data: dict[str, Any] | None = None,
        source: str = "manual",
        now: datetime | None = None,
    ) -> EnrollResult:
        _require_permission(actor_user, PERMISSION_EXECUTE)
        moment = now or utcnow()

        unique_ids: list[uuid.UUID] = []
        for contact_id in contact_ids:
            if contact_id not in unique_ids:
                unique_ids.append(contact_id)
        duplicate_count = len(contact_ids) - len(unique_ids)

        base_trigger_data: dict[str, Any] = {"source": source, "enrolled_by": actor_user.user_id}
        base_trigger_data.update(trigger_data or {})

        for _ in range(_MAX_ENROLL_ATTEMPTS):
            workflow = self.workflow_repository.get(session, workflow_id)
            if workflow is None:
                raise WorkflowNotFoundError(workflow_id)
            if workflow.status != "active":
                raise WorkflowStateError("Can only enroll contacts in active workflows")
            graph = StepGraph(parse_steps(workflow.steps), entry_step_id=workflow.entry_step_id)
            first_step = graph.first_step()
            if first_step is None:
                raise WorkflowStateError("Workflow has no steps configured")

            settings = WorkflowSettings.model_validate(workflow.settings or {})
            limit = settings.enrollment_limit
            observed_count = workflow.enrolled_count
            if limit is not None and observed_count >= limit:
                observe_enrollments("rejected", len(contact_ids))
                raise EnrollmentCapacityError(skipped=len(contact_ids))

            candidates = list(unique_ids)
            if not settings.allow_re_enrollment:
                already_open = self.enrollment_repository.open_contact_ids(session, workflow.id, candidates)
                candidates = [contact_id for contact_id in candidates if contact_id not in already_open]
            if limit is not None:
                candidates = candidates[: max(limit - observed_count, 0)]

            if not candidates:
                skipped = len(contact_ids)
                observe_enrollments("skipped", skipped)
                logger.info(
                    "automation.enrollment.created",
                    extra={"workflow_id": str(workflow.id), "enrolled": 0, "skipped": skipped},
                )
                return EnrollResult(enrolled=0, skipped=skipped, enrollment_ids=[])

            next_step_at = compute_next(first_step, moment, settings)
            rows = [
                AutomationEnrollment(
                    workflow_id=workflow.id,
                    contact_id=contact_id,
                    status="active",
                    is_exclusive=not settings.allow_re_enrollment,
                    current_step_id=first_step.id,
                    current_step_index=graph.index_of(first_step.id),
                    enrolled_at=moment,
                    enrolled_by=actor_user.user_id,
                    next_step_at=next_step_at,
                    trigger_data=dict(base_trigger_data),
                    step_history=[],
                )
                for contact_id in candidates
            ]
            workflow_name = workflow.name
            if not self.workflow_repository.reserve_enrollment_slots(
                session,
                workflow.id,
                observed_count=observed_count,
                count=len(rows),
            ):
                session.rollback()
                continue
            session.add_all(rows)
            try:
                session.commit()
            except IntegrityError:
                # A concurrent enroll opened an enrollment for one of these contacts.
                session.rollback()
                continue
            break
        else:
            raise EnrollmentStateError("Enrollment conflicted with concurrent changes; retry the request")

        enrolled = len(rows)
        skipped = len(contact_ids) - enrolled
        enrollment_ids = [row.id for row in rows]
        observe_enrollments("enrolled", enrolled)
        observe_enrollments("skipped", skipped)
        logger.info(
            "automation.enrollment.created",
            extra={"workflow_id": str(workflow_id), "enrolled": enrolled, "skipped": skipped},
        )

        self._record_activities(
            session,
            [
                AutomationContactActivity(
                    contact_id=row.contact_id,
                    workflow_id=workflow_id,
                    enrollment_id=row.id,
                    activity_type="workflow_enrolled",
                    title=f"Enrolled in workflow: {workflow_name}",
                    metadata_json={"source": source, "duplicate_ids": duplicate_count},
                    created_by=actor_user.user_id,
                )
                for row in rows
            ],
        )
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation.workflow",
            entity_id=str(workflow_id),
            action="automation.enrollment.created",
            before=None,
            after={
                "enrolled": enrolled,
                "skipped": skipped,
                "enrollment_ids": [str(item) for item in enrollment_ids],
                "source": source,
            },
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "automation.enrollment.created",
                "occurred_at": moment.isoformat(),
                "actor_user_id": actor_user.user_id,
                "payload": {
                    "workflow_id": str(workflow_id),
                    "enrollment_ids": [str(item) for item in enrollment_ids],
                },
            }
        )
        return EnrollResult(enrolled=enrolled, skipped=skipped, enrollment_ids=enrollment_ids)

    def advance(self, session: Session, enrollment_id: uuid.UUID, *, now: datetime | None = None) -> EnrollmentRead:
        settings = get_settings()
        moment = now or utcnow()

        enrollment = self._load(session, enrollment_id)
        if enrollment.status in TERMINAL_ENROLLMENT_STATUSES:
            raise EnrollmentStateError(f"Enrollment is already {enrollment.status}")
        if enrollment.status != "active":
            raise EnrollmentStateError(f"Enrollment is {enrollment.status}")
        scheduled_at = as_utc(enrollment.next_step_at)
        if scheduled_at is not None and scheduled_at > moment:
            raise EnrollmentStateError("Enrollment is not due yet")

        claim_token = self.enrollment_repository.claim(
            session,
            enrollment,
            now=moment,
            lease_seconds=settings.workflow_claim_lease_seconds,
        )
        if claim_token is None:
            raise EnrollmentStateError("Enrollment is already being processed")

        token = set_enrollment_id(str(enrollment_id))
        try:
            with tracer.start_as_current_span("automation.enrollment.advance") as span:
                span.set_attribute("enrollment.id", str(enrollment_id))
                span.set_attribute("workflow.id", str(enrollment.workflow_id))
                return self._advance_claimed(session, enrollment_id, claim_token, moment, scheduled_at)
        finally:
            reset_enrollment_id(token)

    def _advance_claimed(
        self,
        session: Session,
        enrollment_id: uuid.UUID,
        claim_token: str,
        moment: datetime,
        scheduled_at: datetime | None,
    ) -> EnrollmentRead:
        settings = get_settings()
        enrollment = self._load(session, enrollment_id)
        workflow = self.workflow_repository.get(session, enrollment.workflow_id)
        if workflow is None:
            return self._finish(
                session,
                enrollment,
                claim_token,
                {"status": "failed", "error_message": "Workflow not found", "next_step_at": None},
                moment=moment,
            )

        graph = StepGraph(parse_steps(workflow.steps), entry_step_id=workflow.entry_step_id)
        step = graph.get(enrollment.current_step_id)
        if step is None:
            return self._finish(
                session,
                enrollment,
                claim_token,
                {
                    "status": "failed",
                    "error_message": f"Step '{enrollment.current_step_id}' not found in workflow",
                    "next_step_at": None,
                },
                moment=moment,
                workflow_name=workflow.name,
            )

        scheduled_key = (scheduled_at or as_utc(enrollment.enrolled_at) or moment).isoformat()
        context = StepContext(
            enrollment_id=enrollment.id,
            workflow_id=workflow.id,
            contact_id=enrollment.contact_id,
            contact=self.contact_lookup(enrollment),
            trigger_data=dict(enrollment.trigger_data or {}),
            graph=graph,
            idempotency_key=f"{enrollment.id}:{step.id}:{scheduled_key}",
            now=moment,
        )

        started = time.perf_counter()
        future = self._pool.submit(contextvars.copy_context().run, self.executor.execute, step, context)
        try:
            result = future.result(timeout=settings.workflow_step_timeout_seconds)
        except StepTimeoutError:
            if future.cancel():
                self._release_unstarted(session, enrollment, claim_token, step.id, moment)
                raise EnrollmentStateError("Step executor is saturated; step deferred to a later run")
            observe_step(step.type, "timeout", time.perf_counter() - started)
            return self._record_timeout(session, enrollment, claim_token, step.id, step.type, moment, workflow.name)
        except Exception as exc:
            logger.exception(
                "automation.step.executor_error",
                extra={"workflow_id": str(workflow.id), "step_id": step.id, "step_type": step.type},
            )
            result = StepResult(outcome="failure", error=str(exc) or exc.__class__.__name__)
        observe_step(step.type, result.outcome, time.perf_counter() - started)

        history_entry = {
            "step_id": step.id,
            "step_type": step.type,
            "started_at": moment.isoformat(),
            "completed_at": utcnow().isoformat(),
            "status": result.outcome,
            "branch_taken": result.branch_taken,
            "error": result.error,
            "attempt": enrollment.attempt_count + 1,
        }
        values: dict[str, Any] = {
            "step_history": list(enrollment.step_history or []) + [history_entry],
            "attempt_count": 0,
        }
        completed = False

        if result.outcome == "exit":
            values.update(
                status="exited",
                exited_at=moment,
                exit_reason=result.error or "Exited by workflow",
                next_step_at=None,
            )
        elif result.outcome == "failure":
            values.update(status="failed", error_message=result.error or "Step failed", next_step_at=None)
        elif result.next_step_id is None:
            completed = True
            values.update(status="completed", completed_at=moment, current_step_id=None, next_step_at=None)
        else:
            next_step = graph.get(result.next_step_id)
            if next_step is None:
                values.update(
                    status="failed",
                    error_message=f"Next step '{result.next_step_id}' not found in workflow",
                    next_step_at=None,
                )
            else:
                workflow_settings = WorkflowSettings.model_validate(workflow.settings or {})
                values.update(
                    current_step_id=next_step.id,
                    current_step_index=graph.index_of(next_step.id),
                    next_step_at=compute_next(next_step, moment, workflow_settings),
                )

        intents: list[AutomationActionIntent] = []
        if result.outcome == "success":
            intents = [
                AutomationActionIntent(
                    enrollment_id=enrollment.id,
                    workflow_id=workflow.id,
                    contact_id=enrollment.contact_id,
                    step_id=step.id,
                    action_type=intent.action_type,
                    payload=intent.payload,
                    idempotency_key=f"{context.idempotency_key}:{index}:{intent.action_type}",
                    correlation_id=get_correlation_id(),
                )
                for index, intent in enumerate(result.intents)
            ]

        logger.info(
            "automation.step.executed",
            extra={
                "workflow_id": str(workflow.id),
                "enrollment_id": str(enrollment.id),
                "step_id": step.id,
                "step_type": step.type,
                "outcome": result.outcome,
            },
        )
        return self._finish(
            session,
            enrollment,
            claim_token,
            values,
            moment=moment,
            intents=intents,
            completed=completed,
            workflow_name=workflow.name,
            step_label=step.display_name,
        )

    def _release_unstarted(
        self,
        session: Session,
        enrollment: AutomationEnrollment,
        claim_token: str,
        step_id: str,
        moment: datetime,
    ) -> None:
        """Releases the claim of a step the executor pool never picked up.

        No attempt is counted and the schedule is left as is, so the next
        runner pass retries the step.
        """
        enrollment_id = enrollment.id
        released = self.enrollment_repository.write_claimed(
            session, enrollment_id, claim_token, {"updated_at": moment}
        )
        session.commit()
        logger.warning(
            "automation.step.deferred",
            extra={"enrollment_id": str(enrollment_id), "step_id": step_id, "reason": "executor pool saturated"},
        )
        if not released:
            raise EnrollmentStateError("Enrollment claim was lost before the step was deferred")

    def _record_timeout(
        self,
        session: Session,
        enrollment: AutomationEnrollment,
        claim_token: str,
        step_id: str,
        step_type: str,
        moment: datetime,
        workflow_name: str,
    ) -> EnrollmentRead:
        settings = get_settings()
        attempts = enrollment.attempt_count + 1
        history_entry = {
            "step_id": step_id,
            "step_type": step_type,
            "started_at": moment.isoformat(),
            "completed_at": utcnow().isoformat(),
            "status": "timeout",
            "branch_taken": None,
            "error": f"Step timed out after {settings.workflow_step_timeout_seconds}s",
            "attempt": attempts,
        }
        values: dict[str, Any] = {
            "step_history": list(enrollment.step_history or []) + [history_entry],
            "attempt_count": attempts,
        }
        if attempts >= settings.workflow_step_max_attempts:
            values.update(
                status="failed",
                error_message=f"Step '{step_id}' timed out after {attempts} attempts",
                next_step_at=None,
            )
        logger.warning(
            "automation.step.timed_out",
            extra={
                "enrollment_id": str(enrollment.id),
                "step_id": step_id,
                "step_type": step_type,
                "status": values.get("status", "active"),
            },
        )
        return self._finish(session, enrollment, claim_token, values, moment=moment, workflow_name=workflow_name)

    def _finish(
        self,
        session: Session,
        enrollment: AutomationEnrollment,
        claim_token: str,
        values: dict[str, Any],
        *,
        moment: datetime,
        intents: list[AutomationActionIntent] | None = None,
        completed: bool = False,
        workflow_name: str | None = None,
        step_label: str | None = None,
    ) -> EnrollmentRead:
        enrollment_id = enrollment.id
        workflow_id = enrollment.workflow_id
        contact_id = enrollment.contact_id
        previous_step_id = enrollment.current_step_id
        values["updated_at"] = moment

        if not self.enrollment_repository.write_claimed(session, enrollment_id, claim_token, values):
            session.rollback()
            raise EnrollmentStateError("Enrollment claim was lost before the step result was recorded")
        if intents:
            session.add_all(intents)
        if completed:
            self.workflow_repository.increment_completed(session, workflow_id)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise EnrollmentStateError("Step side effects were already recorded for this schedule")

        new_status = values.get("status")
        if new_status is not None:
            observe_enrollment_transition(new_status)
            logger.info(
                "automation.enrollment.transitioned",
                extra={"workflow_id": str(workflow_id), "enrollment_id": str(enrollment_id), "status": new_status},
            )

        activities: list[AutomationContactActivity] = []
        label = workflow_name or str(workflow_id)
        if step_label is not None:
            activities.append(
                AutomationContactActivity(
                    contact_id=contact_id,
                    workflow_id=workflow_id,
                    enrollment_id=enrollment_id,
                    activity_type="workflow_step_executed",
                    title=f"{step_label} ({label})",
                    metadata_json={"step_id": previous_step_id},
                )
            )
        if new_status in TERMINAL_ENROLLMENT_STATUSES:
            activities.append(
                AutomationContactActivity(
                    contact_id=contact_id,
                    workflow_id=workflow_id,
                    enrollment_id=enrollment_id,
                    activity_type=f"workflow_{new_status}",
                    title=f"Workflow {new_status}: {label}",
                    metadata_json={
                        "reason": values.get("exit_reason") or values.get("error_message"),
                    },
                )
            )
            events.publish(
                {
                    "event_id": str(uuid.uuid4()),
                    "event_type": f"automation.enrollment.{new_status}",
                    "occurred_at": moment.isoformat(),
                    "payload": {"workflow_id": str(workflow_id), "enrollment_id": str(enrollment_id)},
                }
            )
        self._record_activities(session, activities)

        refreshed = self._load(session, enrollment_id)
        return EnrollmentRead.model_validate(refreshed)

    def list_enrollments(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        *,
        status_filter: str | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> EnrollmentListResponse:
        _require_permission(actor_user, PERMISSION_READ)
        if self.workflow_repository.get(session, workflow_id) is None:
            raise WorkflowNotFoundError(workflow_id)

        size = page_size or get_settings().workflow_enrollment_page_size
        page = max(page, 1)
        rows, total = self.enrollment_repository.list_for_workflow(
            session,
            workflow_id,
            status=status_filter,
            offset=(page - 1) * size,
            limit=size,
        )
        breakdown = {status_name: 0 for status_name in ENROLLMENT_STATUSES}
        breakdown.update(self.enrollment_repository.status_breakdown(session, workflow_id))
        return EnrollmentListResponse(
            enrollments=[EnrollmentRead.model_validate(row) for row in rows],
            pagination=Pagination(
                page=page,
                page_size=size,
                total=total,
                total_pages=math.ceil(total / size) if total else 0,
            ),
            status_breakdown=breakdown,
        )

    def get_enrollment(self, session: Session, actor_user: ActorUser, enrollment_id: uuid.UUID) -> EnrollmentRead:
        _require_permission(actor_user, PERMISSION_READ)
        return EnrollmentRead.model_validate(self._load(session, enrollment_id))

    def pause_enrollments(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        *,
        now: datetime | None = None,
    ) -> int:
        return self._bulk_status(session, actor_user, workflow_id, "active", "paused", now=now)

    def resume_enrollments(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        *,
        now: datetime | None = None,
    ) -> int:
        return self._bulk_status(session, actor_user, workflow_id, "paused", "active", now=now)

    def _bulk_status(
        self,
        session: Session,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        from_status: str,
        to_status: str,
        *,
        now: datetime | None,
    ) -> int:
        _require_permission(actor_user, PERMISSION_EXECUTE)
        if self.workflow_repository.get(session, workflow_id) is None:
            raise WorkflowNotFoundError(workflow_id)
        result = session.execute(
            update(AutomationEnrollment)
            .where(
                and_(
                    AutomationEnrollment.workflow_id == workflow_id,
                    AutomationEnrollment.status == from_status,
                )
            )
            .values(
                status=to_status,
                updated_at=now or utcnow(),
                row_version=AutomationEnrollment.row_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        changed = int(result.rowcount or 0)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation.workflow",
            entity_id=str(workflow_id),
            action=f"automation.enrollments.{to_status}",
            before={"status": from_status},
            after={"status": to_status, "count": changed},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        logger.info(
            "automation.enrollments.bulk_status",
            extra={"workflow_id": str(workflow_id), "status": to_status, "processed": changed},
        )
        return changed

    def exit_enrollment(
        self,
        session: Session,
        actor_user: ActorUser,
        enrollment_id: uuid.UUID,
        reason: str,
        *,
        now: datetime | None = None,
    ) -> EnrollmentRead:
        _require_permission(actor_user, PERMISSION_EXECUTE)
        moment = now or utcnow()
        enrollment = self._load(session, enrollment_id)
        if enrollment.status in TERMINAL_ENROLLMENT_STATUSES:
            raise EnrollmentStateError(f"Enrollment is already {enrollment.status}")

        result = session.execute(
            update(AutomationEnrollment)
            .where(
                and_(
                    AutomationEnrollment.id == enrollment_id,
                    AutomationEnrollment.row_version == enrollment.row_version,
                )
            )
            .values(
                status="exited",
                exited_at=moment,
                exit_reason=reason,
                next_step_at=None,
                claimed_until=None,
                claim_token=None,
                updated_at=moment,
                row_version=enrollment.row_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            raise EnrollmentStateError("Enrollment changed concurrently; retry the request")
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="automation.enrollment",
            entity_id=str(enrollment_id),
            action="automation.enrollment.exited",
            before={"status": enrollment.status},
            after={"status": "exited", "exit_reason": reason},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        observe_enrollment_transition("exited")

        self._record_activities(
            session,
            [
                AutomationContactActivity(
                    contact_id=enrollment.contact_id,
                    workflow_id=enrollment.workflow_id,
                    enrollment_id=enrollment_id,
                    activity_type="workflow_exited",
                    title="Workflow exited manually",
                    metadata_json={"reason": reason},
                    created_by=actor_user.user_id,
                )
            ],
        )
        return EnrollmentRead.model_validate(self._load(session, enrollment_id))

    def ingest_event(
        self,
        session: Session,
        event: TriggerEvent,
        *,
        actor_user: ActorUser | None = None,
        now: datetime | None = None,
    ) -> TriggerEventResult:
        actor = actor_user or system_actor()
        trigger_type = normalize_event_type(event.type)
        workflows = [
            WorkflowRead.model_validate(row)
            for row in self.workflow_repository.list_active_for_trigger(session, trigger_type)
        ]
        requests = self.trigger_evaluator.evaluate(event, workflows)

        outcome = TriggerEventResult(matched_workflow_ids=[request.workflow_id for request in requests])
        for request in requests:
            try:
                result = self.enroll(
                    session,
                    actor,
                    request.workflow_id,
                    [request.contact_id],
                    trigger_data=request.trigger_data,
                    source=trigger_type,
                    now=now,
                )
            except (WorkflowStateError, EnrollmentCapacityError, EnrollmentStateError, WorkflowNotFoundError) as exc:
                session.rollback()
                outcome.skipped += 1
                outcome.rejected.append({"workflow_id": str(request.workflow_id), "reason": str(exc)})
                logger.info(
                    "automation.trigger.enrollment_rejected",
                    extra={
                        "workflow_id": str(request.workflow_id),
                        "contact_id": str(request.contact_id),
                        "trigger_type": trigger_type,
                        "reason": str(exc),
                    },
                )
                continue
            outcome.enrolled += result.enrolled
            outcome.skipped += result.skipped
        return outcome

    def _load(self, session: Session, enrollment_id: uuid.UUID) -> AutomationEnrollment:
        enrollment = self.enrollment_repository.get(session, enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(enrollment_id)
        return enrollment

    def _record_activities(self, session: Session, rows: list[AutomationContactActivity]) -> None:
        if not rows:
            return
        try:
            session.add_all(rows)
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception(
                "automation.activity.write_failed",
                extra={"workflow_id": str(rows[0].workflow_id), "contact_id": str(rows[0].contact_id)},
            )
