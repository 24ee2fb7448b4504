"""create automation workflow tables

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

_OPEN_EXCLUSIVE = sa.text("is_exclusive AND status IN ('active', 'paused')")


def upgrade() -> None:
    op.create_table(
        "automation_workflow",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="draft"),
        sa.Column("trigger", sa.JSON(), nullable=False),
        sa.Column("steps", sa.JSON(), nullable=False),
        sa.Column("settings", sa.JSON(), nullable=False),
        sa.Column("entry_step_id", sa.String(length=128), nullable=True),
        sa.Column("enrolled_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_automation_workflow_status", "automation_workflow", ["status"], unique=False)

    op.create_table(
        "automation_enrollment",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workflow_id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("is_exclusive", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("current_step_id", sa.String(length=128), nullable=True),
        sa.Column("current_step_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("enrolled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("enrolled_by", sa.String(length=128), nullable=True),
        sa.Column("next_step_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trigger_data", sa.JSON(), nullable=False),
        sa.Column("step_history", sa.JSON(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("claimed_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claim_token", sa.String(length=64), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("exited_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("exit_reason", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_automation_enrollment_workflow_status",
        "automation_enrollment",
        ["workflow_id", "status"],
        unique=False,
    )
    op.create_index(
        "ix_automation_enrollment_due",
        "automation_enrollment",
        ["status", "next_step_at"],
        unique=False,
    )
    op.create_index("ix_automation_enrollment_contact", "automation_enrollment", ["contact_id"], unique=False)
    op.create_index(
        "uq_automation_enrollment_open_per_contact",
        "automation_enrollment",
        ["workflow_id", "contact_id"],
        unique=True,
        postgresql_where=_OPEN_EXCLUSIVE,
        sqlite_where=_OPEN_EXCLUSIVE,
    )

    op.create_table(
        "automation_action_intent",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("enrollment_id", sa.Uuid(), nullable=False),
        sa.Column("workflow_id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("step_id", sa.String(length=128), nullable=False),
        sa.Column("action_type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="Queued"),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index(
        "ix_automation_action_intent_enrollment",
        "automation_action_intent",
        ["enrollment_id"],
        unique=False,
    )
    op.create_index(
        "ix_automation_action_intent_status_created",
        "automation_action_intent",
        ["status", "created_at"],
        unique=False,
    )

    op.create_table(
        "automation_contact_activity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("workflow_id", sa.Uuid(), nullable=False),
        sa.Column("enrollment_id", sa.Uuid(), nullable=True),
        sa.Column("activity_type", sa.String(length=64), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_automation_contact_activity_contact_created",
        "automation_contact_activity",
        ["contact_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_automation_contact_activity_contact_created", table_name="automation_contact_activity")
    op.drop_table("automation_contact_activity")
    op.drop_index("ix_automation_action_intent_status_created", table_name="automation_action_intent")
    op.drop_index("ix_automation_action_intent_enrollment", table_name="automation_action_intent")
    op.drop_table("automation_action_intent")
    op.drop_index("uq_automation_enrollment_open_per_contact", table_name="automation_enrollment")
    op.drop_index("ix_automation_enrollment_contact", table_name="automation_enrollment")
    op.drop_index("ix_automation_enrollment_due", table_name="automation_enrollment")
    op.drop_index("ix_automation_enrollment_workflow_status", table_name="automation_enrollment")
    op.drop_table("automation_enrollment")
    op.drop_index("ix_automation_workflow_status", table_name="automation_workflow")
    op.drop_table("automation_workflow")
