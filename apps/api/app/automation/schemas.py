from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


WorkflowStatus = Literal["draft", "active", "paused", "archived"]
EnrollmentStatus = Literal["active", "paused", "completed", "exited", "failed"]

TriggerType = Literal[
    "tag_added",
    "tag_removed",
    "deal_stage_changed",
    "form_submitted",
    "date_based",
    "contact_created",
    "contact_updated",
    "deal_created",
    "manual",
]

StepType = Literal[
    "wait",
    "send_email",
    "send_sms",
    "add_tag",
    "remove_tag",
    "update_field",
    "create_task",
    "create_deal",
    "send_notification",
    "condition",
    "split",
    "go_to",
    "end",
]

FilterOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "greater_than",
    "less_than",
    "is_empty",
    "is_not_empty",
    "in",
    "not_in",
]

ACTIVE_ENROLLMENT_STATUSES = ("active", "paused")
TERMINAL_ENROLLMENT_STATUSES = ("completed", "exited", "failed")


def _ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ContactFilter(BaseModel):
    field: str = Field(min_length=1)
    operator: FilterOperator
    value: Any = None


class StepPosition(BaseModel):
    x: float = 0
    y: float = 0


class StepBranch(BaseModel):
    id: str = Field(min_length=1)
    name: str | None = None
    condition_ref: str | None = None
    next_step_id: str | None = None

    @property
    def key(self) -> str:
        return self.condition_ref or self.id


# Step configs are lenient so a draft can be saved half-built;
# completeness is checked on activation.


class WaitStepConfig(BaseModel):
    duration: int | None = None
    unit: str | None = None


class SendEmailStepConfig(BaseModel):
    template_id: str | None = None
    subject: str | None = Field(default=None, max_length=200)
    content_html: str | None = None
    from_name: str | None = Field(default=None, max_length=100)
    from_email: str | None = None


class SendSmsStepConfig(BaseModel):
    message: str | None = Field(default=None, max_length=1600)


class TagStepConfig(BaseModel):
    tag_ids: list[str] = Field(default_factory=list)


class UpdateFieldStepConfig(BaseModel):
    field: str | None = None
    value: str | int | float | bool | None = None


class CreateTaskStepConfig(BaseModel):
    title: str | None = None
    description: str | None = None
    due_in_days: int | None = None
    assigned_to: str | None = None
    priority: Literal["low", "medium", "high"] | None = None


class CreateDealStepConfig(BaseModel):
    pipeline_id: str | None = None
    stage_id: str | None = None
    title: str | None = None
    value: float | None = None
    assigned_to: str | None = None


class SendNotificationStepConfig(BaseModel):
    type: Literal["email", "in_app", "slack"] = "in_app"
    recipients: list[str] = Field(default_factory=list)
    subject: str | None = None
    message: str | None = None


class ConditionStepConfig(BaseModel):
    conditions: list[ContactFilter] = Field(default_factory=list)
    logic: Literal["and", "or"] = "and"
    exit_on: Literal["yes", "no"] | None = None


class SplitVariant(BaseModel):
    id: str = Field(min_length=1)
    name: str | None = None
    percentage: float | None = Field(default=None, ge=0, le=100)


class SplitStepConfig(BaseModel):
    split_type: Literal["percentage", "random"] = "random"
    variants: list[SplitVariant] = Field(default_factory=list)


class GoToStepConfig(BaseModel):
    target_step_id: str | None = None


class EndStepConfig(BaseModel):
    pass


class _StepBase(BaseModel):
    id: str = Field(min_length=1)
    name: str | None = None
    position: StepPosition | None = None
    next_step_id: str | None = None
    branches: list[StepBranch] | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.type  # type: ignore[attr-defined]


class WaitStep(_StepBase):
    type: Literal["wait"]
    config: WaitStepConfig = Field(default_factory=WaitStepConfig)


class SendEmailStep(_StepBase):
    type: Literal["send_email"]
    config: SendEmailStepConfig = Field(default_factory=SendEmailStepConfig)


class SendSmsStep(_StepBase):
    type: Literal["send_sms"]
    config: SendSmsStepConfig = Field(default_factory=SendSmsStepConfig)


class AddTagStep(_StepBase):
    type: Literal["add_tag"]
    config: TagStepConfig = Field(default_factory=TagStepConfig)


class RemoveTagStep(_StepBase):
    type: Literal["remove_tag"]
    config: TagStepConfig = Field(default_factory=TagStepConfig)


class UpdateFieldStep(_StepBase):
    type: Literal["update_field"]
    config: UpdateFieldStepConfig = Field(default_factory=UpdateFieldStepConfig)


class CreateTaskStep(_StepBase):
    type: Literal["create_task"]
    config: CreateTaskStepConfig = Field(default_factory=CreateTaskStepConfig)


class CreateDealStep(_StepBase):
    type: Literal["create_deal"]
    config: CreateDealStepConfig = Field(default_factory=CreateDealStepConfig)


class SendNotificationStep(_StepBase):
    type: Literal["send_notification"]
    config: SendNotificationStepConfig = Field(default_factory=SendNotificationStepConfig)


class ConditionStep(_StepBase):
    type: Literal["condition"]
    config: ConditionStepConfig = Field(default_factory=ConditionStepConfig)


class SplitStep(_StepBase):
    type: Literal["split"]
    config: SplitStepConfig = Field(default_factory=SplitStepConfig)


class GoToStep(_StepBase):
    type: Literal["go_to"]
    config: GoToStepConfig = Field(default_factory=GoToStepConfig)


class EndStep(_StepBase):
    type: Literal["end"]
    config: EndStepConfig = Field(default_factory=EndStepConfig)


WorkflowStep = Annotated[
    WaitStep
    | SendEmailStep
    | SendSmsStep
    | AddTagStep
    | RemoveTagStep
    | UpdateFieldStep
    | CreateTaskStep
    | CreateDealStep
    | SendNotificationStep
    | ConditionStep
    | SplitStep
    | GoToStep
    | EndStep,
    Field(discriminator="type"),
]

_workflow_step_list_adapter = TypeAdapter(list[WorkflowStep])


def parse_steps(raw: list[dict[str, Any]] | None) -> list[WorkflowStep]:
    return _workflow_step_list_adapter.validate_python(raw or [])


def dump_steps(steps: list[WorkflowStep]) -> list[dict[str, Any]]:
    return [step.model_dump(mode="json", exclude_none=True) for step in steps]


class TriggerConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    tag_ids: list[str] | None = None
    pipeline_id: str | None = None
    from_stage_id: str | None = None
    to_stage_id: str | None = None
    form_id: str | None = None
    date_field: str | None = None
    offset_days: int | None = None
    time: str | None = Field(default=None, pattern=r"^([01]\d|2[0-3]):([0-5]\d)$")
    fields: list[str] | None = None
    filters: list[ContactFilter] = Field(default_factory=list)


class WorkflowTrigger(BaseModel):
    type: TriggerType | None = None
    config: TriggerConfig = Field(default_factory=TriggerConfig)


class WorkingHours(BaseModel):
    start: str = Field(pattern=r"^([01]\d|2[0-3]):([0-5]\d)$")
    end: str = Field(pattern=r"^([01]\d|2[0-3]):([0-5]\d)$")
    days: list[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])


class WorkflowSettings(BaseModel):
    allow_re_enrollment: bool = False
    enrollment_limit: int | None = Field(default=None, ge=1)
    timezone: str | None = None
    working_hours_only: bool = False
    working_hours: WorkingHours | None = None


class WorkflowCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    trigger: WorkflowTrigger = Field(default_factory=WorkflowTrigger)
    steps: list[WorkflowStep] = Field(default_factory=list)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)


class WorkflowUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    trigger: WorkflowTrigger | None = None
    steps: list[WorkflowStep] | None = None
    settings: WorkflowSettings | None = None


class WorkflowStatusUpdate(BaseModel):
    status: WorkflowStatus


class WorkflowRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    status: WorkflowStatus
    trigger: WorkflowTrigger
    steps: list[WorkflowStep]
    settings: WorkflowSettings
    entry_step_id: str | None
    enrolled_count: int
    completed_count: int
    created_by: str | None
    activated_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @field_validator("activated_at", "created_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        return _ensure_utc(value)


class WorkflowValidationRead(BaseModel):
    workflow_id: UUID
    valid: bool
    errors: list[str] = Field(default_factory=list)


class EnrollRequest(BaseModel):
    contact_ids: list[UUID] = Field(min_length=1)
    trigger_data: dict[str, Any] | None = None


class EnrollResult(BaseModel):
    enrolled: int
    skipped: int
    enrollment_ids: list[UUID] = Field(default_factory=list)


class EnrollmentExitRequest(BaseModel):
    reason: str = Field(default="Manual exit", min_length=1, max_length=500)


class EnrollmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workflow_id: UUID
    contact_id: UUID
    status: EnrollmentStatus
    current_step_id: str | None
    current_step_index: int
    enrolled_at: datetime
    enrolled_by: str | None
    next_step_at: datetime | None
    trigger_data: dict[str, Any]
    step_history: list[dict[str, Any]]
    attempt_count: int
    completed_at: datetime | None
    exited_at: datetime | None
    exit_reason: str | None
    error_message: str | None

    @field_validator("enrolled_at", "next_step_at", "completed_at", "exited_at")
    @classmethod
    def normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        return _ensure_utc(value)


class Pagination(BaseModel):
    page: int
    page_size: int
    total: int
    total_pages: int


class EnrollmentListResponse(BaseModel):
    enrollments: list[EnrollmentRead]
    pagination: Pagination
    status_breakdown: dict[str, int]


class TriggerEventIn(BaseModel):
    type: str = Field(min_length=1)
    contact_id: UUID
    payload: dict[str, Any] = Field(default_factory=dict)


class TriggerEventResult(BaseModel):
    matched_workflow_ids: list[UUID] = Field(default_factory=list)
    enrolled: int = 0
    skipped: int = 0
    rejected: list[dict[str, Any]] = Field(default_factory=list)


class RunnerSummary(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    remaining: int = 0
    duration_ms: float = 0
    errors: list[dict[str, str]] = Field(default_factory=list)


class RunnerStats(BaseModel):
    pending_enrollments: int
    active_enrollments: int
    active_workflows: int
