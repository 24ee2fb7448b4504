from app.automation.errors import (
    AutomationError,
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
from app.automation.runner import EnrollmentRunner
from app.automation.scheduler import compute_next
from app.automation.service import ActorUser, EnrollmentManager, WorkflowDefinitionService
from app.automation.triggers import DefaultTriggerEvaluator, EnrollmentRequest, TriggerEvaluator, TriggerEvent
from app.automation.validation import validate_for_activation, validate_steps

__all__ = [
    "ActorUser",
    "AutomationActionIntent",
    "AutomationContactActivity",
    "AutomationEnrollment",
    "AutomationError",
    "AutomationWorkflow",
    "DefaultStepExecutor",
    "DefaultTriggerEvaluator",
    "EnrollmentCapacityError",
    "EnrollmentManager",
    "EnrollmentNotFoundError",
    "EnrollmentRequest",
    "EnrollmentRunner",
    "EnrollmentStateError",
    "StepContext",
    "StepExecutor",
    "StepGraph",
    "StepResult",
    "TriggerEvaluator",
    "TriggerEvent",
    "WorkflowActivationError",
    "WorkflowDefinitionService",
    "WorkflowNotFoundError",
    "WorkflowStateError",
    "compute_next",
    "validate_for_activation",
    "validate_steps",
]
