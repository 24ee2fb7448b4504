from __future__ import annotations

from datetime import datetime, timedelta

from app.automation.schemas import WaitStep, WorkflowSettings, WorkflowStep

MS_PER_UNIT: dict[str, int] = {
    "minutes": 60_000,
    "hours": 3_600_000,
    "days": 86_400_000,
    "weeks": 604_800_000,
}
DEFAULT_WAIT_UNIT = "days"
DEFAULT_WAIT_DURATION = 1
IMMEDIATE_STEP_DELAY_MS = 1_000


def wait_delay_ms(step: WaitStep) -> int:
    duration = step.config.duration if step.config.duration is not None else DEFAULT_WAIT_DURATION
    unit_ms = MS_PER_UNIT.get(step.config.unit or DEFAULT_WAIT_UNIT, MS_PER_UNIT[DEFAULT_WAIT_UNIT])
    return duration * unit_ms


def compute_next(step: WorkflowStep, now: datetime, settings: WorkflowSettings | None = None) -> datetime:
    """Return when ``step`` becomes due, measured from ``now``.

    Wait steps delay by their configured duration; every other step runs one
    second later. Working-hours settings are stored but not applied here.
    """
    if isinstance(step, WaitStep):
        return now + timedelta(milliseconds=wait_delay_ms(step))
    return now + timedelta(milliseconds=IMMEDIATE_STEP_DELAY_MS)
