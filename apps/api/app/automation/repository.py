from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.orm import Session

from app.automation.models import AutomationEnrollment, AutomationWorkflow
from app.automation.schemas import ACTIVE_ENROLLMENT_STATUSES


class WorkflowRepository:
    def get(self, session: Session, workflow_id: uuid.UUID) -> AutomationWorkflow | None:
        return session.scalar(select(AutomationWorkflow).where(AutomationWorkflow.id == workflow_id))

    def list_all(self, session: Session, *, status: str | None = None) -> Sequence[AutomationWorkflow]:
        stmt: Select[tuple[AutomationWorkflow]] = select(AutomationWorkflow)
        if status is not None:
            stmt = stmt.where(AutomationWorkflow.status == status)
        return session.scalars(stmt.order_by(AutomationWorkflow.created_at.desc())).all()

    def list_active_for_trigger(self, session: Session, trigger_type: str) -> list[AutomationWorkflow]:
        rows = session.scalars(
            select(AutomationWorkflow)
            .where(AutomationWorkflow.status == "active")
            .order_by(AutomationWorkflow.created_at.asc())
        ).all()
        # JSON path filters differ per dialect; trigger type is matched in Python.
        return [row for row in rows if isinstance(row.trigger, dict) and row.trigger.get("type") == trigger_type]

    def reserve_enrollment_slots(
        self,
        session: Session,
        workflow_id: uuid.UUID,
        *,
        observed_count: int,
        count: int,
    ) -> bool:
        result = session.execute(
            update(AutomationWorkflow)
            .where(and_(AutomationWorkflow.id == workflow_id, AutomationWorkflow.enrolled_count == observed_count))
            .values(enrolled_count=observed_count + count)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def increment_completed(self, session: Session, workflow_id: uuid.UUID) -> None:
        session.execute(
            update(AutomationWorkflow)
            .where(AutomationWorkflow.id == workflow_id)
            .values(completed_count=AutomationWorkflow.completed_count + 1)
            .execution_options(synchronize_session=False)
        )

    def count_by_status(self, session: Session, status: str) -> int:
        return int(
            session.scalar(select(func.count()).select_from(AutomationWorkflow).where(AutomationWorkflow.status == status))
            or 0
        )


class EnrollmentRepository:
    def get(self, session: Session, enrollment_id: uuid.UUID) -> AutomationEnrollment | None:
        return session.scalar(select(AutomationEnrollment).where(AutomationEnrollment.id == enrollment_id))

    def open_contact_ids(
        self,
        session: Session,
        workflow_id: uuid.UUID,
        contact_ids: Sequence[uuid.UUID],
    ) -> set[uuid.UUID]:
        if not contact_ids:
            return set()
        rows = session.scalars(
            select(AutomationEnrollment.contact_id).where(
                and_(
                    AutomationEnrollment.workflow_id == workflow_id,
                    AutomationEnrollment.contact_id.in_(list(contact_ids)),
                    AutomationEnrollment.status.in_(ACTIVE_ENROLLMENT_STATUSES),
                )
            )
        ).all()
        return set(rows)

    def list_for_workflow(
        self,
        session: Session,
        workflow_id: uuid.UUID,
        *,
        status: str | None,
        offset: int,
        limit: int,
    ) -> tuple[Sequence[AutomationEnrollment], int]:
        conditions: list[Any] = [AutomationEnrollment.workflow_id == workflow_id]
        if status is not None:
            conditions.append(AutomationEnrollment.status == status)
        total = int(session.scalar(select(func.count()).select_from(AutomationEnrollment).where(and_(*conditions))) or 0)
        rows = session.scalars(
            select(AutomationEnrollment)
            .where(and_(*conditions))
            .order_by(AutomationEnrollment.enrolled_at.desc(), AutomationEnrollment.id.asc())
            .offset(offset)
            .limit(limit)
        ).all()
        return rows, total

    def status_breakdown(self, session: Session, workflow_id: uuid.UUID) -> dict[str, int]:
        rows = session.execute(
            select(AutomationEnrollment.status, func.count())
            .where(AutomationEnrollment.workflow_id == workflow_id)
            .group_by(AutomationEnrollment.status)
        ).all()
        return {str(status): int(count) for status, count in rows}

    def list_with_status(
        self,
        session: Session,
        workflow_id: uuid.UUID,
        statuses: Sequence[str],
    ) -> Sequence[AutomationEnrollment]:
        return session.scalars(
            select(AutomationEnrollment).where(
                and_(
                    AutomationEnrollment.workflow_id == workflow_id,
                    AutomationEnrollment.status.in_(list(statuses)),
                )
            )
        ).all()

    def _due_conditions(self, now: datetime) -> list[Any]:
        return [
            AutomationEnrollment.status == "active",
            AutomationEnrollment.next_step_at.is_not(None),
            AutomationEnrollment.next_step_at <= now,
            or_(AutomationEnrollment.claimed_until.is_(None), AutomationEnrollment.claimed_until < now),
        ]

    def due_ids(self, session: Session, now: datetime, limit: int) -> list[uuid.UUID]:
        rows = session.scalars(
            select(AutomationEnrollment.id)
            .where(and_(*self._due_conditions(now)))
            .order_by(AutomationEnrollment.next_step_at.asc())
            .limit(limit)
        ).all()
        return list(rows)

    def count_due(self, session: Session, now: datetime) -> int:
        return int(
            session.scalar(
                select(func.count()).select_from(AutomationEnrollment).where(and_(*self._due_conditions(now)))
            )
            or 0
        )

    def count_by_status(self, session: Session, status: str) -> int:
        return int(
            session.scalar(
                select(func.count()).select_from(AutomationEnrollment).where(AutomationEnrollment.status == status)
            )
            or 0
        )

    def claim(
        self,
        session: Session,
        enrollment: AutomationEnrollment,
        *,
        now: datetime,
        lease_seconds: int,
    ) -> str | None:
        token = uuid.uuid4().hex
        result = session.execute(
            update(AutomationEnrollment)
            .where(
                and_(
                    AutomationEnrollment.id == enrollment.id,
                    AutomationEnrollment.status == "active",
                    AutomationEnrollment.row_version == enrollment.row_version,
                    or_(AutomationEnrollment.claimed_until.is_(None), AutomationEnrollment.claimed_until < now),
                )
            )
            .values(
                claimed_until=now + timedelta(seconds=lease_seconds),
                claim_token=token,
                row_version=enrollment.row_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            return None
        session.commit()
        return token

    def write_claimed(
        self,
        session: Session,
        enrollment_id: uuid.UUID,
        claim_token: str,
        values: dict[str, Any],
    ) -> bool:
        result = session.execute(
            update(AutomationEnrollment)
            .where(
                and_(
                    AutomationEnrollment.id == enrollment_id,
                    AutomationEnrollment.claim_token == claim_token,
                    AutomationEnrollment.status == "active",
                )
            )
            .values(
                **values,
                claimed_until=None,
                claim_token=None,
                row_version=AutomationEnrollment.row_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
