from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from app.automation.executor import evaluate_conditions
from app.automation.schemas import TriggerConfig, WorkflowRead

logger = logging.getLogger("app.automation.triggers")

TRIGGER_EVENT_NAMES: dict[str, str] = {
    "crm.contact.tag_added": "tag_added",
    "crm.contact.tag_removed": "tag_removed",
    "crm.deal.stage_changed": "deal_stage_changed",
    "crm.form.submitted": "form_submitted",
    "crm.contact.date_reached": "date_based",
    "crm.contact.created": "contact_created",
    "crm.contact.updated": "contact_updated",
    "crm.deal.created": "deal_created",
}


def normalize_event_type(event_type: str) -> str:
    return TRIGGER_EVENT_NAMES.get(event_type, event_type)


@dataclass(slots=True)
class TriggerEvent:
    type: str
    contact_id: uuid.UUID
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class EnrollmentRequest:
    workflow_id: uuid.UUID
    contact_id: uuid.UUID
    trigger_data: dict[str, Any] = field(default_factory=dict)


class TriggerEvaluator(Protocol):
    def evaluate(self, event: TriggerEvent, workflows: Sequence[WorkflowRead]) -> list[EnrollmentRequest]: ...


def _event_tag_ids(payload: dict[str, Any]) -> set[str]:
    tag_ids = payload.get("tag_ids")
    if tag_ids is None and payload.get("tag_id") is not None:
        tag_ids = [payload["tag_id"]]
    return {str(tag_id) for tag_id in tag_ids or []}


def _match_tags(config: TriggerConfig, payload: dict[str, Any]) -> bool:
    return bool(set(config.tag_ids or []) & _event_tag_ids(payload))


def _match_deal_stage(config: TriggerConfig, payload: dict[str, Any]) -> bool:
    if config.pipeline_id and config.pipeline_id != payload.get("pipeline_id"):
        return False
    if config.to_stage_id != payload.get("to_stage_id"):
        return False
    if config.from_stage_id and config.from_stage_id != payload.get("from_stage_id"):
        return False
    return True


def _match_form(config: TriggerConfig, payload: dict[str, Any]) -> bool:
    return config.form_id is not None and config.form_id == payload.get("form_id")


def _match_date(config: TriggerConfig, payload: dict[str, Any]) -> bool:
    return config.date_field is not None and config.date_field == payload.get("date_field")


def _match_contact_created(config: TriggerConfig, payload: dict[str, Any]) -> bool:
    return True


def _match_contact_updated(config: TriggerConfig, payload: dict[str, Any]) -> bool:
    if not config.fields:
        return True
    changed = set(payload.get("changed_fields") or [])
    return bool(changed & set(config.fields))


def _match_deal_created(config: TriggerConfig, payload: dict[str, Any]) -> bool:
    return not config.pipeline_id or config.pipeline_id == payload.get("pipeline_id")


_MATCHERS: dict[str, Callable[[TriggerConfig, dict[str, Any]], bool]] = {
    "tag_added": _match_tags,
    "tag_removed": _match_tags,
    "deal_stage_changed": _match_deal_stage,
    "form_submitted": _match_form,
    "date_based": _match_date,
    "contact_created": _match_contact_created,
    "contact_updated": _match_contact_updated,
    "deal_created": _match_deal_created,
}


class DefaultTriggerEvaluator:
    """Matches trigger events against active workflows.

    ``manual`` workflows never match an event; they are enrolled explicitly.
    A matcher failure for one workflow is logged and does not stop the
    others from being evaluated.
    """

    def evaluate(self, event: TriggerEvent, workflows: Sequence[WorkflowRead]) -> list[EnrollmentRequest]:
        trigger_type = normalize_event_type(event.type)
        matcher = _MATCHERS.get(trigger_type)
        if matcher is None:
            return []

        requests: list[EnrollmentRequest] = []
        for workflow in workflows:
            if workflow.status != "active" or workflow.trigger.type != trigger_type:
                continue
            try:
                if not matcher(workflow.trigger.config, event.payload):
                    continue
                if not self._passes_filters(trigger_type, workflow.trigger.config, event.payload):
                    continue
            except Exception:
                logger.exception(
                    "automation.trigger.match_failed",
                    extra={"workflow_id": str(workflow.id), "event_type": event.type, "trigger_type": trigger_type},
                )
                continue
            requests.append(
                EnrollmentRequest(
                    workflow_id=workflow.id,
                    contact_id=event.contact_id,
                    trigger_data={"trigger": trigger_type, **event.payload},
                )
            )
        return requests

    @staticmethod
    def _passes_filters(trigger_type: str, config: TriggerConfig, payload: dict[str, Any]) -> bool:
        if not config.filters:
            return True
        subject_key = "deal" if trigger_type.startswith("deal_") else "contact"
        subject = payload.get(subject_key)
        if not isinstance(subject, dict):
            subject = {}
        return evaluate_conditions(config.filters, "and", subject)
