from __future__ import annotations

import uuid


class AutomationError(Exception):
    """Base error for workflow automation failures."""


class WorkflowNotFoundError(AutomationError):
    def __init__(self, workflow_id: uuid.UUID) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow '{workflow_id}' not found")


class EnrollmentNotFoundError(AutomationError):
    def __init__(self, enrollment_id: uuid.UUID) -> None:
        self.enrollment_id = enrollment_id
        super().__init__(f"Enrollment '{enrollment_id}' not found")


class WorkflowActivationError(AutomationError):
    """Raised when a workflow graph fails activation validation.

    Carries every finding, never just the first one.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("Workflow validation failed")


class WorkflowStateError(AutomationError):
    """Raised when a workflow is in the wrong lifecycle state for an operation."""


class EnrollmentStateError(AutomationError):
    """Raised when an enrollment cannot be advanced or changed in its current state."""


class EnrollmentCapacityError(AutomationError):
    """Raised when a workflow has reached its enrollment limit."""

    def __init__(self, skipped: int, message: str = "Workflow has reached its enrollment limit") -> None:
        self.skipped = skipped
        super().__init__(message)
