from __future__ import annotations

import hmac
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.automation.errors import (
    AutomationError,
    EnrollmentCapacityError,
    EnrollmentNotFoundError,
    EnrollmentStateError,
    WorkflowActivationError,
    WorkflowNotFoundError,
    WorkflowStateError,
)
from app.automation.runner import EnrollmentRunner
from app.automation.schemas import (
    EnrollmentExitRequest,
    EnrollmentListResponse,
    EnrollmentRead,
    EnrollmentStatus,
    EnrollRequest,
    EnrollResult,
    RunnerStats,
    RunnerSummary,
    TriggerEventIn,
    TriggerEventResult,
    WorkflowCreate,
    WorkflowRead,
    WorkflowStatus,
    WorkflowStatusUpdate,
    WorkflowUpdate,
    WorkflowValidationRead,
)
from app.automation.service import (
    ALL_PERMISSIONS,
    PERMISSION_EXECUTE,
    ActorUser,
    EnrollmentManager,
    WorkflowDefinitionService,
)
from app.automation.triggers import TriggerEvent
from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.config import get_settings
from app.core.database import get_db

workflows_router = APIRouter(prefix="/api/automation", tags=["automation.workflows"])
enrollments_router = APIRouter(prefix="/api/automation", tags=["automation.enrollments"])
cron_router = APIRouter(prefix="/api/automation", tags=["automation.cron"])

workflow_service = WorkflowDefinitionService()
enrollment_manager = EnrollmentManager()
enrollment_runner = EnrollmentRunner(enrollment_manager)

ADMIN_ROLE = "automation.admin"


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def automation_error_response(request: Request, exc: AutomationError, *, code: str) -> JSONResponse:
    if isinstance(exc, WorkflowActivationError):
        return error_response(
            request,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="automation_workflow_invalid",
            message=str(exc),
            details={"errors": exc.errors},
        )
    if isinstance(exc, (WorkflowNotFoundError, EnrollmentNotFoundError)):
        return error_response(request, status_code=status.HTTP_404_NOT_FOUND, code=code, message=str(exc))
    if isinstance(exc, EnrollmentCapacityError):
        return error_response(
            request,
            status_code=status.HTTP_409_CONFLICT,
            code="automation_enrollment_limit_reached",
            message=str(exc),
            details={"enrolled": 0, "skipped": exc.skipped},
        )
    if isinstance(exc, (WorkflowStateError, EnrollmentStateError)):
        return error_response(request, status_code=status.HTTP_409_CONFLICT, code=code, message=str(exc))
    return error_response(request, status_code=status.HTTP_400_BAD_REQUEST, code=code, message=str(exc))


def _http_error(request: Request, exc: HTTPException, *, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    permissions = set(auth_user.roles)
    if ADMIN_ROLE in permissions:
        permissions |= ALL_PERMISSIONS
    return ActorUser(
        user_id=auth_user.sub,
        permissions=permissions,
        correlation_id=correlation_id,
    )


@workflows_router.get("/workflows", response_model=list[WorkflowRead])
def list_workflows(
    request: Request,
    status_filter: WorkflowStatus | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[WorkflowRead] | JSONResponse:
    try:
        return workflow_service.list_workflows(db, user, status_filter=status_filter)
    except HTTPException as exc:
        return _http_error(request, exc, code="automation_workflow_list_failed")


@workflows_router.post("/workflows", response_model=WorkflowRead, status_code=status.HTTP_201_CREATED)
def create_workflow(
    request: Request,
    dto: WorkflowCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        return workflow_service.create_workflow(db, user, dto)
    except HTTPException as exc:
        return _http_error(request, exc, code="automation_workflow_create_failed")


@workflows_router.get("/workflows/{workflow_id}", response_model=WorkflowRead)
def get_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        return workflow_service.get_workflow(db, user, workflow_id)
    except HTTPException as exc:
        return _http_error(request, exc, code="automation_workflow_get_failed")
    except AutomationError as exc:
        return automation_error_response(request, exc, code="automation_workflow_get_failed")


@workflows_router.patch("/workflows/{workflow_id}", response_model=WorkflowRead)
def update_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    dto: WorkflowUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        return workflow_service.update_workflow(db, user, workflow_id, dto)
    except HTTPException as exc:
        return _http_error(request, exc, code="automation_workflow_update_failed")
    except AutomationError as exc:
        return automation_error_response(request, exc, code="automation_workflow_update_failed")


@workflows_router.delete("/workflows/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        workflow_service.delete_workflow(db, user, workflow_id)
    except HTTPException as exc:
        return _http_error(request, exc, code="automation_workflow_delete_failed")
    except AutomationError as exc:
        return automation_error_response(request, exc, code="automation_workflow_delete_failed")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@workflows_router.post(
    "/workflows/{workflow_id}/duplicate",
    response_model=WorkflowRead,
    status_code=status.HTTP_201_CREATED,
)
def duplicate_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        return workflow_service.duplicate_workflow(db, user, workflow_id)
    except HTTPException as exc:
        return _http_error(request, exc, code="automation_workflow_duplicate_failed")
    except AutomationError as exc:
        return automation_error_response(request, exc, code="automation_workflow_duplicate_failed")


@workflows_router.patch("/workflows/{workflow_id}/status", response_model=WorkflowRead)
def change_workflow_status(
    request: Request,
    workflow_id: uuid.UUID,
    dto: WorkflowStatusUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        return workflow_service.change_status(db, user, workflow_id, dto)
    except HTTPException as exc:
        return _http_error(request, exc, code="automation_workflow_status_failed")
    except AutomationError as exc:
        return automation_error_response(request, exc, code="automation_workflow_status_failed")


@workflows_router.get("/workflows/{workflow_id}/validation", response_model=WorkflowValidationRead)
def validate_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowValidationRead | JSONResponse:
    try:
        return workflow_service.validate_workflow(db, user, workflow_id)
    except HTTPException as exc:
        return _http_error(request, exc, code="automation_workflow_validation_failed")
    except AutomationError as exc:
        return automation_error_response(request, exc, code="automation_workflow_validation_failed")


@workflows_router.post("/workflows/{workflow_id}/activate", response_model=WorkflowRead)
def activate_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        return workflow_service.activate(db, user, workflow_id)
    except HTTPException as exc:
        return _http_error(request, exc, code="automation_workflow_activate_failed")
    except AutomationError as exc:
        return automation_error_response(request, exc, code="automation_workflow_activate_failed")


@enrollments_router.post("/workflows/{workflow_id}/enroll", response_model=EnrollResult)
def enroll_contacts(
    request: Request,
    workflow_id: uuid.UUID,
    dto: EnrollRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EnrollResult | JSONResponse:
    try:
        return enrollment_manager.enroll(
            db,
            user,
            workflow_id,
            dto.contact_ids,
            trigger_data=dto.trigger_data,
            source="manual",
        )
    except HTTPException as exc:
        return _http_error(request, exc, code="automation_enroll_failed")
    except AutomationError as exc:
        return automation_error_response(request, exc, code="automation_enroll_failed")


@enrollments_router.get("/workflows/{workflow_id}/enrollments", response_model=EnrollmentListResponse)
def list_enrollments(
    request: Request,
    workflow_id: uuid.UUID,
    status_filter: EnrollmentStatus | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    page_size: int | None = Query(default=None, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EnrollmentListResponse | JSONResponse:
    try:
        return enrollment_manager.list_enrollments(
            db,
            user,
            workflow_id,
            status_filter=status_filter,
            page=page,
            page_size=page_size,
        )
    except HTTPException as exc:
        return _http_error(request, exc, code="automation_enrollment_list_failed")
    except AutomationError as exc:
        return automation_error_response(request, exc, code="automation_enrollment_list_failed")


@enrollments_router.post("/workflows/{workflow_id}/enrollments/pause", response_model=None)
def pause_enrollments(
    request: Request,
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, int] | JSONResponse:
    try:
        return {"paused": enrollment_manager.pause_enrollments(db, user, workflow_id)}
    except HTTPException as exc:
        return _http_error(request, exc, code="automation_enrollment_pause_failed")
    except AutomationError as exc:
        return automation_error_response(request, exc, code="automation_enrollment_pause_failed")


@enrollments_router.post("/workflows/{workflow_id}/enrollments/resume", response_model=None)
def resume_enrollments(
    request: Request,
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, int] | JSONResponse:
    try:
        return {"resumed": enrollment_manager.resume_enrollments(db, user, workflow_id)}
    except HTTPException as exc:
        return _http_error(request, exc, code="automation_enrollment_resume_failed")
    except AutomationError as exc:
        return automation_error_response(request, exc, code="automation_enrollment_resume_failed")


@enrollments_router.get("/enrollments/{enrollment_id}", response_model=EnrollmentRead)
def get_enrollment(
    request: Request,
    enrollment_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EnrollmentRead | JSONResponse:
    try:
        return enrollment_manager.get_enrollment(db, user, enrollment_id)
    except HTTPException as exc:
        return _http_error(request, exc, code="automation_enrollment_get_failed")
    except AutomationError as exc:
        return automation_error_response(request, exc, code="automation_enrollment_get_failed")


@enrollments_router.post("/enrollments/{enrollment_id}/advance", response_model=EnrollmentRead)
def advance_enrollment(
    request: Request,
    enrollment_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EnrollmentRead | JSONResponse:
    if PERMISSION_EXECUTE not in user.permissions:
        return error_response(
            request,
            status_code=status.HTTP_403_FORBIDDEN,
            code="automation_enrollment_advance_failed",
            message=f"Missing permission: {PERMISSION_EXECUTE}",
        )
    try:
        return enrollment_manager.advance(db, enrollment_id)
    except AutomationError as exc:
        return automation_error_response(request, exc, code="automation_enrollment_advance_failed")


@enrollments_router.post("/enrollments/{enrollment_id}/exit", response_model=EnrollmentRead)
def exit_enrollment(
    request: Request,
    enrollment_id: uuid.UUID,
    dto: EnrollmentExitRequest | None = None,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EnrollmentRead | JSONResponse:
    reason = dto.reason if dto is not None else "Manual exit"
    try:
        return enrollment_manager.exit_enrollment(db, user, enrollment_id, reason)
    except HTTPException as exc:
        return _http_error(request, exc, code="automation_enrollment_exit_failed")
    except AutomationError as exc:
        return automation_error_response(request, exc, code="automation_enrollment_exit_failed")


@enrollments_router.post("/events", response_model=TriggerEventResult)
def ingest_trigger_event(
    request: Request,
    dto: TriggerEventIn,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TriggerEventResult | JSONResponse:
    if PERMISSION_EXECUTE not in user.permissions:
        return error_response(
            request,
            status_code=status.HTTP_403_FORBIDDEN,
            code="automation_event_ingest_failed",
            message=f"Missing permission: {PERMISSION_EXECUTE}",
        )
    event = TriggerEvent(type=dto.type, contact_id=dto.contact_id, payload=dto.payload)
    return enrollment_manager.ingest_event(db, event, actor_user=user)


def _cron_authorized(cron_secret: str | None) -> bool:
    settings = get_settings()
    expected = settings.cron_secret
    if not expected:
        return settings.app_env.lower() not in {"prod", "production"}
    return cron_secret is not None and hmac.compare_digest(cron_secret, expected)


@cron_router.post("/cron/process-workflows", response_model=RunnerSummary)
def process_workflows(
    request: Request,
    db: Session = Depends(get_db),
    cron_secret: str | None = Header(default=None, alias="x-cron-secret"),
) -> RunnerSummary | JSONResponse:
    if not _cron_authorized(cron_secret):
        return error_response(
            request,
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="automation_cron_unauthorized",
            message="Unauthorized",
        )
    return enrollment_runner.process_due(db, source="cron")


@cron_router.get("/cron/process-workflows", response_model=RunnerStats)
def process_workflows_stats(
    request: Request,
    db: Session = Depends(get_db),
    cron_secret: str | None = Header(default=None, alias="x-cron-secret"),
) -> RunnerStats | JSONResponse:
    if not _cron_authorized(cron_secret):
        return error_response(
            request,
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="automation_cron_unauthorized",
            message="Unauthorized",
        )
    return enrollment_runner.stats(db)
