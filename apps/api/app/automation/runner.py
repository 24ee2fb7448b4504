from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime

from opentelemetry import trace
from sqlalchemy.orm import Session

from app.automation.errors import EnrollmentStateError
from app.automation.repository import EnrollmentRepository, WorkflowRepository
from app.automation.schemas import RunnerStats, RunnerSummary
from app.automation.service import EnrollmentManager, utcnow
from app.context import get_correlation_id, reset_correlation_id, set_correlation_id
from app.core.config import get_settings
from app.metrics import observe_runner_batch

logger = logging.getLogger("app.automation.runner")
tracer = trace.get_tracer("app.automation.runner")


class EnrollmentRunner:
    """Advances due enrollments in batches.

    Driven by the Celery beat task and by the cron endpoint. Each batch is
    bounded by ``workflow_runner_batch_size`` and by a wall-clock budget of
    ``workflow_runner_max_processing_seconds``; enrollments left over are
    picked up by the next batch.
    """

    def __init__(
        self,
        manager: EnrollmentManager | None = None,
        *,
        enrollment_repository: EnrollmentRepository | None = None,
        workflow_repository: WorkflowRepository | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.manager = manager or EnrollmentManager()
        self.enrollment_repository = enrollment_repository or EnrollmentRepository()
        self.workflow_repository = workflow_repository or WorkflowRepository()
        self._clock = clock

    def process_due(self, session: Session, *, now: datetime | None = None, source: str = "worker") -> RunnerSummary:
        settings = get_settings()
        moment = now or utcnow()
        started = self._clock()
        summary = RunnerSummary()

        token = None
        if get_correlation_id() is None:
            token = set_correlation_id(f"runner-{uuid.uuid4()}")
        try:
            with tracer.start_as_current_span("automation.runner.batch") as span:
                span.set_attribute("runner.source", source)
                due_ids = self.enrollment_repository.due_ids(session, moment, settings.workflow_runner_batch_size)
                for enrollment_id in due_ids:
                    if self._clock() - started >= settings.workflow_runner_max_processing_seconds:
                        break
                    summary.processed += 1
                    try:
                        self.manager.advance(session, enrollment_id, now=moment)
                    except EnrollmentStateError as exc:
                        session.rollback()
                        summary.skipped += 1
                        logger.info(
                            "automation.runner.enrollment_skipped",
                            extra={"enrollment_id": str(enrollment_id), "reason": str(exc)},
                        )
                    except Exception as exc:
                        session.rollback()
                        summary.failed += 1
                        summary.errors.append({"enrollment_id": str(enrollment_id), "error": str(exc)[:500]})
                        logger.exception(
                            "automation.runner.enrollment_failed",
                            extra={"enrollment_id": str(enrollment_id), "error": str(exc)[:500]},
                        )
                    else:
                        summary.succeeded += 1

                summary.remaining = self.enrollment_repository.count_due(session, moment)
                span.set_attribute("runner.processed", summary.processed)
        finally:
            if token is not None:
                reset_correlation_id(token)

        summary.duration_ms = round((self._clock() - started) * 1000, 2)
        observe_runner_batch(source, summary.succeeded, summary.failed, summary.skipped)
        logger.info(
            "automation.runner.batch_completed",
            extra={
                "processed": summary.processed,
                "succeeded": summary.succeeded,
                "failed": summary.failed,
                "skipped": summary.skipped,
                "duration_ms": summary.duration_ms,
            },
        )
        return summary

    def stats(self, session: Session, *, now: datetime | None = None) -> RunnerStats:
        moment = now or utcnow()
        return RunnerStats(
            pending_enrollments=self.enrollment_repository.count_due(session, moment),
            active_enrollments=self.enrollment_repository.count_by_status(session, "active"),
            active_workflows=self.workflow_repository.count_by_status(session, "active"),
        )
