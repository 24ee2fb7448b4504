from __future__ import annotations

import random
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal, Protocol

from app.automation.graph import StepGraph
from app.automation.schemas import (
    AddTagStep,
    ConditionStep,
    ContactFilter,
    CreateDealStep,
    CreateTaskStep,
    EndStep,
    GoToStep,
    RemoveTagStep,
    SendEmailStep,
    SendNotificationStep,
    SendSmsStep,
    SplitStep,
    SplitStepConfig,
    UpdateFieldStep,
    WaitStep,
    WorkflowStep,
)

StepOutcome = Literal["success", "failure", "exit"]

_TOKEN_PATTERN = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")
_SMS_SEGMENT_LENGTH = 160


@dataclass(slots=True)
class ActionIntent:
    action_type: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class StepContext:
    enrollment_id: uuid.UUID
    workflow_id: uuid.UUID
    contact_id: uuid.UUID
    contact: dict[str, Any]
    trigger_data: dict[str, Any]
    graph: StepGraph
    idempotency_key: str
    now: datetime


@dataclass(slots=True)
class StepResult:
    outcome: StepOutcome
    next_step_id: str | None = None
    branch_taken: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    intents: list[ActionIntent] = field(default_factory=list)


class StepExecutor(Protocol):
    def execute(self, step: WorkflowStep, context: StepContext) -> StepResult: ...


def get_field_value(contact: dict[str, Any], path: str) -> Any:
    value: Any = contact
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _loose_equals(left: Any, right: Any) -> bool:
    if left == right:
        return True
    if left is None or right is None:
        return False
    return str(left) == str(right)


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_text(value: Any) -> str:
    return "" if value is None else str(value).lower()


def evaluate_filter(condition: ContactFilter, contact: dict[str, Any]) -> bool:
    value = get_field_value(contact, condition.field)
    expected = condition.value
    operator = condition.operator

    if operator == "equals":
        return _loose_equals(value, expected)
    if operator == "not_equals":
        return not _loose_equals(value, expected)
    if operator == "contains":
        return _as_text(expected) in _as_text(value)
    if operator == "not_contains":
        return _as_text(expected) not in _as_text(value)
    if operator == "starts_with":
        return _as_text(value).startswith(_as_text(expected))
    if operator == "ends_with":
        return _as_text(value).endswith(_as_text(expected))
    if operator in ("greater_than", "less_than"):
        left, right = _as_number(value), _as_number(expected)
        if left is None or right is None:
            return False
        return left > right if operator == "greater_than" else left < right
    if operator == "is_empty":
        return _is_empty(value)
    if operator == "is_not_empty":
        return not _is_empty(value)
    if operator == "in":
        return isinstance(expected, list) and value in expected
    if operator == "not_in":
        return not isinstance(expected, list) or value not in expected
    return False


def evaluate_conditions(conditions: list[ContactFilter], logic: str, contact: dict[str, Any]) -> bool:
    if not conditions:
        return True
    results = [evaluate_filter(condition, contact) for condition in conditions]
    return all(results) if logic == "and" else any(results)


def render_tokens(template: str | None, contact: dict[str, Any]) -> str:
    if not template:
        return ""
    values = {
        "first_name": contact.get("first_name") or "",
        "last_name": contact.get("last_name") or "",
        "full_name": f"{contact.get('first_name') or ''} {contact.get('last_name') or ''}".strip(),
        "email": contact.get("email") or "",
        "company_name": contact.get("company_name") or "",
    }
    custom_fields = contact.get("custom_fields")
    if isinstance(custom_fields, dict):
        values.update({key: "" if item is None else str(item) for key, item in custom_fields.items()})

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in values:
            return str(values[key])
        nested = get_field_value(contact, key)
        return "" if nested is None else str(nested)

    return _TOKEN_PATTERN.sub(_replace, template)


def _is_unsubscribed(contact: dict[str, Any]) -> bool:
    return bool(contact.get("unsubscribed") or contact.get("do_not_contact"))


class DefaultStepExecutor:
    """Executes steps without performing any I/O.

    Side-effecting steps describe their effect as ``ActionIntent`` objects;
    persisting and delivering them is the caller's concern.
    """

    def __init__(self, random_source: Callable[[], float] = random.random) -> None:
        self._random = random_source
        self._handlers: dict[str, Callable[[Any, StepContext], StepResult]] = {
            "wait": self._execute_wait,
            "send_email": self._execute_send_email,
            "send_sms": self._execute_send_sms,
            "add_tag": self._execute_add_tag,
            "remove_tag": self._execute_remove_tag,
            "update_field": self._execute_update_field,
            "create_task": self._execute_create_task,
            "create_deal": self._execute_create_deal,
            "send_notification": self._execute_send_notification,
            "condition": self._execute_condition,
            "split": self._execute_split,
            "go_to": self._execute_go_to,
            "end": self._execute_end,
        }

    def execute(self, step: WorkflowStep, context: StepContext) -> StepResult:
        handler = self._handlers.get(step.type)
        if handler is None:
            return StepResult(outcome="failure", error=f"Unsupported step type '{step.type}'")
        result = handler(step, context)
        if result.outcome == "success" and result.next_step_id is None and not isinstance(step, EndStep):
            result.next_step_id = context.graph.resolve_successor(step, result.branch_taken)
        return result

    def _execute_wait(self, step: WaitStep, context: StepContext) -> StepResult:
        return StepResult(outcome="success", data={"waited": True})

    def _execute_send_email(self, step: SendEmailStep, context: StepContext) -> StepResult:
        contact = context.contact
        if _is_unsubscribed(contact):
            return StepResult(outcome="exit", error="Contact unsubscribed")
        if not contact.get("email"):
            return StepResult(outcome="failure", error="Contact does not have an email address")
        payload = {
            "to": contact["email"],
            "subject": render_tokens(step.config.subject, contact),
            "content_html": render_tokens(step.config.content_html, contact),
            "template_id": step.config.template_id,
            "from_name": step.config.from_name,
            "from_email": step.config.from_email,
        }
        return StepResult(
            outcome="success",
            data={"to": payload["to"], "subject": payload["subject"]},
            intents=[ActionIntent(action_type="send_email", payload=payload)],
        )

    def _execute_send_sms(self, step: SendSmsStep, context: StepContext) -> StepResult:
        contact = context.contact
        if _is_unsubscribed(contact):
            return StepResult(outcome="exit", error="Contact unsubscribed")
        if not contact.get("phone"):
            return StepResult(outcome="failure", error="Contact does not have a phone number")
        message = render_tokens(step.config.message, contact)
        segments = max(1, -(-len(message) // _SMS_SEGMENT_LENGTH))
        return StepResult(
            outcome="success",
            data={"to": contact["phone"], "segments": segments},
            intents=[
                ActionIntent(
                    action_type="send_sms",
                    payload={"to": contact["phone"], "message": message, "segments": segments},
                )
            ],
        )

    def _execute_add_tag(self, step: AddTagStep, context: StepContext) -> StepResult:
        if not step.config.tag_ids:
            return StepResult(outcome="failure", error="No tags specified to add")
        current = set(context.contact.get("tags") or [])
        added = [tag_id for tag_id in step.config.tag_ids if tag_id not in current]
        return StepResult(
            outcome="success",
            data={"added_tags": added},
            intents=[ActionIntent(action_type="add_tag", payload={"tag_ids": list(step.config.tag_ids)})],
        )

    def _execute_remove_tag(self, step: RemoveTagStep, context: StepContext) -> StepResult:
        if not step.config.tag_ids:
            return StepResult(outcome="failure", error="No tags specified to remove")
        current = set(context.contact.get("tags") or [])
        removed = [tag_id for tag_id in step.config.tag_ids if tag_id in current]
        return StepResult(
            outcome="success",
            data={"removed_tags": removed},
            intents=[ActionIntent(action_type="remove_tag", payload={"tag_ids": list(step.config.tag_ids)})],
        )

    def _execute_update_field(self, step: UpdateFieldStep, context: StepContext) -> StepResult:
        if not step.config.field:
            return StepResult(outcome="failure", error="No field specified to update")
        previous = get_field_value(context.contact, step.config.field)
        payload = {"field": step.config.field, "value": step.config.value, "previous_value": previous}
        return StepResult(
            outcome="success",
            data={"field": step.config.field},
            intents=[ActionIntent(action_type="update_field", payload=payload)],
        )

    def _execute_create_task(self, step: CreateTaskStep, context: StepContext) -> StepResult:
        config = step.config
        due_at = None
        if config.due_in_days is not None:
            due_at = (context.now + timedelta(days=config.due_in_days)).isoformat()
        payload = {
            "title": render_tokens(config.title, context.contact),
            "description": render_tokens(config.description, context.contact) or None,
            "due_at": due_at,
            "assigned_to": config.assigned_to,
            "priority": config.priority or "medium",
        }
        return StepResult(
            outcome="success",
            data={"title": payload["title"]},
            intents=[ActionIntent(action_type="create_task", payload=payload)],
        )

    def _execute_create_deal(self, step: CreateDealStep, context: StepContext) -> StepResult:
        config = step.config
        payload = {
            "pipeline_id": config.pipeline_id,
            "stage_id": config.stage_id,
            "title": render_tokens(config.title, context.contact),
            "value": config.value,
            "assigned_to": config.assigned_to,
        }
        return StepResult(
            outcome="success",
            data={"title": payload["title"]},
            intents=[ActionIntent(action_type="create_deal", payload=payload)],
        )

    def _execute_send_notification(self, step: SendNotificationStep, context: StepContext) -> StepResult:
        config = step.config
        payload = {
            "channel": config.type,
            "recipients": list(config.recipients),
            "subject": render_tokens(config.subject, context.contact) or None,
            "message": render_tokens(config.message, context.contact),
        }
        return StepResult(
            outcome="success",
            data={"recipients": len(config.recipients)},
            intents=[ActionIntent(action_type="send_notification", payload=payload)],
        )

    def _execute_condition(self, step: ConditionStep, context: StepContext) -> StepResult:
        matched = evaluate_conditions(step.config.conditions, step.config.logic, context.contact)
        branch = "yes" if matched else "no"
        if step.config.exit_on == branch:
            return StepResult(
                outcome="exit",
                branch_taken=branch,
                data={"condition_met": matched},
                error=f"Exited by condition '{step.display_name}'",
            )
        return StepResult(outcome="success", branch_taken=branch, data={"condition_met": matched})

    def _execute_split(self, step: SplitStep, context: StepContext) -> StepResult:
        variant = self.select_variant(step.config)
        if variant is None:
            return StepResult(outcome="failure", error="Split has no variants")
        return StepResult(outcome="success", branch_taken=variant, data={"variant": variant})

    def _execute_go_to(self, step: GoToStep, context: StepContext) -> StepResult:
        return StepResult(outcome="success", data={"target_step_id": step.config.target_step_id})

    def _execute_end(self, step: EndStep, context: StepContext) -> StepResult:
        return StepResult(outcome="success")

    def select_variant(self, config: SplitStepConfig) -> str | None:
        variants = config.variants
        if not variants:
            return None
        if config.split_type == "percentage":
            roll = self._random() * 100
            cumulative = 0.0
            for variant in variants:
                cumulative += variant.percentage or 0
                if roll <= cumulative:
                    return variant.id
            return variants[-1].id
        index = min(int(self._random() * len(variants)), len(variants) - 1)
        return variants[index].id
