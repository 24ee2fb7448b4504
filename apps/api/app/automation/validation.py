from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any, Protocol

from app.automation.graph import StepGraph
from app.automation.schemas import (
    ConditionStep,
    CreateDealStep,
    CreateTaskStep,
    EndStep,
    GoToStep,
    SendEmailStep,
    SendNotificationStep,
    SendSmsStep,
    SplitStep,
    UpdateFieldStep,
    WaitStep,
    WorkflowStep,
    WorkflowTrigger,
)


class ValidatableWorkflow(Protocol):
    trigger: WorkflowTrigger
    steps: Sequence[WorkflowStep]


def _validate_trigger(trigger: WorkflowTrigger | None) -> list[str]:
    if trigger is None or trigger.type is None:
        return ["Workflow must have a trigger configured"]

    config = trigger.config
    errors: list[str] = []
    if trigger.type in ("tag_added", "tag_removed"):
        if not config.tag_ids:
            errors.append("Tag trigger requires at least one tag selected")
    elif trigger.type == "deal_stage_changed":
        if not config.to_stage_id:
            errors.append("Deal stage trigger requires a target stage")
    elif trigger.type == "form_submitted":
        if not config.form_id:
            errors.append("Form trigger requires a form selected")
    elif trigger.type == "date_based":
        if not config.date_field:
            errors.append("Date-based trigger requires a date field")
        if not config.time:
            errors.append("Date-based trigger requires a time")
    return errors


def _check_send_email(step: SendEmailStep, graph: StepGraph) -> list[str]:
    errors: list[str] = []
    if not step.config.template_id and not step.config.content_html:
        errors.append("Email requires a template or content")
    if not step.config.template_id and not step.config.subject:
        errors.append("Email requires a subject line")
    return errors


def _check_send_sms(step: SendSmsStep, graph: StepGraph) -> list[str]:
    return [] if step.config.message else ["SMS requires a message"]


def _check_tags(step: Any, graph: StepGraph) -> list[str]:
    return [] if step.config.tag_ids else ["Requires at least one tag selected"]


def _check_update_field(step: UpdateFieldStep, graph: StepGraph) -> list[str]:
    return [] if step.config.field else ["Update requires a field"]


def _check_create_task(step: CreateTaskStep, graph: StepGraph) -> list[str]:
    return [] if step.config.title else ["Task requires a title"]


def _check_create_deal(step: CreateDealStep, graph: StepGraph) -> list[str]:
    errors: list[str] = []
    if not step.config.pipeline_id or not step.config.stage_id:
        errors.append("Deal requires pipeline and stage")
    if not step.config.title:
        errors.append("Deal requires a title")
    return errors


def _check_send_notification(step: SendNotificationStep, graph: StepGraph) -> list[str]:
    errors: list[str] = []
    if not step.config.recipients:
        errors.append("Notification requires recipients")
    if not step.config.message:
        errors.append("Notification requires a message")
    return errors


def _check_wait(step: WaitStep, graph: StepGraph) -> list[str]:
    if step.config.duration is None or step.config.duration < 1:
        return ["Wait requires a valid duration"]
    return []


def _check_condition(step: ConditionStep, graph: StepGraph) -> list[str]:
    return [] if step.config.conditions else ["Condition requires at least one rule"]


def _check_split(step: SplitStep, graph: StepGraph) -> list[str]:
    variants = step.config.variants
    if not variants:
        return ["Split requires at least one variant"]
    if step.config.split_type == "percentage":
        total = sum(variant.percentage or 0 for variant in variants)
        if abs(total - 100) > 1e-6:
            return ["Split percentages must add up to 100"]
    return []


def _check_go_to(step: GoToStep, graph: StepGraph) -> list[str]:
    target = step.config.target_step_id
    if not target:
        return ["Go-to requires a target step"]
    if target not in graph:
        return [f"Go-to target step '{target}' does not exist"]
    return []


def _check_end(step: EndStep, graph: StepGraph) -> list[str]:
    return []


_STEP_CHECKS: dict[str, Callable[[Any, StepGraph], list[str]]] = {
    "wait": _check_wait,
    "send_email": _check_send_email,
    "send_sms": _check_send_sms,
    "add_tag": _check_tags,
    "remove_tag": _check_tags,
    "update_field": _check_update_field,
    "create_task": _check_create_task,
    "create_deal": _check_create_deal,
    "send_notification": _check_send_notification,
    "condition": _check_condition,
    "split": _check_split,
    "go_to": _check_go_to,
    "end": _check_end,
}


def validate_steps(steps: Sequence[WorkflowStep], entry_step_id: str | None = None) -> list[str]:
    if not steps:
        return ["Workflow must have at least one action step"]

    graph = StepGraph(steps, entry_step_id=entry_step_id)
    errors: list[str] = [f"Duplicate step id '{step_id}'" for step_id in graph.duplicate_ids]

    for step in graph:
        for message in _STEP_CHECKS[step.type](step, graph):
            errors.append(f"{step.display_name}: {message}")

    for source_id, target_id in graph.dangling_links():
        source = graph.get(source_id)
        label = source.display_name if source is not None else source_id
        errors.append(f"{label}: Links to unknown step '{target_id}'")

    for step in graph.unreachable_steps():
        errors.append(f"{step.display_name}: Step is not connected to the workflow")

    return errors


def validate_for_activation(workflow: ValidatableWorkflow) -> list[str]:
    """Collect every reason ``workflow`` cannot be activated.

    An empty list means the workflow is runnable. Findings cover the trigger
    configuration, per-step completeness and graph connectivity from the
    entry step.
    """
    errors = _validate_trigger(workflow.trigger)
    errors.extend(validate_steps(list(workflow.steps), getattr(workflow, "entry_step_id", None)))
    return errors
