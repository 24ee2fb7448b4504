import logging
import uuid

from celery import Celery

from app.automation.errors import EnrollmentStateError
from app.automation.runner import EnrollmentRunner
from app.automation.service import EnrollmentManager
from app.core.config import get_settings
from app.core.database import SessionLocal

logger = logging.getLogger("app.automation.worker")

settings = get_settings()

celery_app = Celery("drip_automation", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.task_acks_late = True
celery_app.conf.beat_schedule = {
    "automation-process-due-enrollments": {
        "task": "app.tasks.process_due_enrollments",
        "schedule": settings.workflow_poll_interval_seconds,
    },
}

enrollment_manager = EnrollmentManager()
enrollment_runner = EnrollmentRunner(enrollment_manager)


@celery_app.task(name="app.tasks.process_due_enrollments")
def process_due_enrollments_task() -> dict:
    session = SessionLocal()
    try:
        summary = enrollment_runner.process_due(session, source="worker")
    finally:
        session.close()
    return summary.model_dump()


@celery_app.task(name="app.tasks.advance_enrollment")
def advance_enrollment_task(enrollment_id: str) -> dict | None:
    session = SessionLocal()
    try:
        enrollment = enrollment_manager.advance(session, uuid.UUID(enrollment_id))
    except EnrollmentStateError as exc:
        session.rollback()
        logger.info("automation.worker.advance_skipped", extra={"enrollment_id": enrollment_id, "reason": str(exc)})
        return None
    finally:
        session.close()
    return enrollment.model_dump(mode="json")
