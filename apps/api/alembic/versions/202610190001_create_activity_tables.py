"""create activity tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_lead",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("company_name", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="New"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "activity_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("lead_id", sa.Integer(), sa.ForeignKey("crm_lead.id", ondelete="CASCADE"), nullable=False),
        sa.Column("details", sa.Text(), nullable=False),
        sa.Column("phase", sa.String(length=64), nullable=True),
        sa.Column("activity_type", sa.String(length=64), nullable=False, server_default="Call"),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("attachment_path", sa.Text(), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("deleted_activity_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_by", sa.String(length=128), nullable=True),
        sa.Column("delete_reason", sa.Text(), nullable=True),
    )
    op.create_index("ix_activity_log_lead_id", "activity_log", ["lead_id"], unique=False)

    op.create_table(
        "activity_reminder",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("lead_id", sa.Integer(), sa.ForeignKey("crm_lead.id", ondelete="CASCADE"), nullable=False),
        sa.Column("remind_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("assigned_to", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="Pending"),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("activity_type", sa.String(length=64), nullable=True),
        sa.Column("visibility", sa.String(length=16), nullable=False, server_default="visible"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("outcome_notes", sa.Text(), nullable=True),
        sa.Column("completed_by", sa.String(length=128), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_activity_reminder_lead_id", "activity_reminder", ["lead_id"], unique=False)
    op.create_index(
        "ix_activity_reminder_status_time",
        "activity_reminder",
        ["status", "remind_time"],
        unique=False,
    )

    for table_name, time_column, owner_column, extra_columns in (
        (
            "activity_meeting",
            "event_time",
            "created_by",
            [sa.Column("meeting_type", sa.String(length=64), nullable=True)],
        ),
        ("activity_demo", "start_time", "scheduled_by", []),
    ):
        op.create_table(
            table_name,
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("lead_id", sa.Integer(), sa.ForeignKey("crm_lead.id", ondelete="CASCADE"), nullable=False),
            sa.Column("assigned_to", sa.String(length=128), nullable=True),
            sa.Column(owner_column, sa.String(length=128), nullable=True),
            *extra_columns,
            sa.Column(time_column, sa.DateTime(timezone=True), nullable=False),
            sa.Column("event_end_time", sa.DateTime(timezone=True), nullable=True),
            sa.Column("phase", sa.String(length=32), nullable=False, server_default="Scheduled"),
            sa.Column("remark", sa.Text(), nullable=True),
            sa.Column("meeting_agenda", sa.Text(), nullable=True),
            sa.Column("meeting_link", sa.Text(), nullable=True),
            sa.Column("location_text", sa.Text(), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("outcome_notes", sa.Text(), nullable=True),
            sa.Column("duration_minutes", sa.Integer(), nullable=True),
            sa.Column("cancel_reason", sa.Text(), nullable=True),
            sa.Column("updated_by", sa.String(length=128), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        )
        op.create_index(f"ix_{table_name}_lead_id", table_name, ["lead_id"], unique=False)
        op.create_index(f"ix_{table_name}_phase_time", table_name, ["phase", time_column], unique=False)


def downgrade() -> None:
    for table_name in ("activity_demo", "activity_meeting"):
        op.drop_index(f"ix_{table_name}_phase_time", table_name=table_name)
        op.drop_index(f"ix_{table_name}_lead_id", table_name=table_name)
        op.drop_table(table_name)
    op.drop_index("ix_activity_reminder_status_time", table_name="activity_reminder")
    op.drop_index("ix_activity_reminder_lead_id", table_name="activity_reminder")
    op.drop_table("activity_reminder")
    op.drop_index("ix_activity_log_lead_id", table_name="activity_log")
    op.drop_table("activity_log")
    op.drop_table("crm_lead")
