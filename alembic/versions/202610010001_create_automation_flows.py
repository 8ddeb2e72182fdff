"""create automation flow and execution tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None

_ACTIVE_STATUSES = "status IN ('Running', 'Waiting')"


def upgrade() -> None:
    op.create_table(
        "automation_flow",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("trigger_type", sa.String(length=64), nullable=False),
        sa.Column("trigger_config", sa.JSON(), nullable=False),
        sa.Column("nodes", sa.JSON(), nullable=False),
        sa.Column("edges", sa.JSON(), nullable=False),
        sa.Column("variables", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_automation_flow_team_active", "automation_flow", ["team_id", "is_active"], unique=False)
    op.create_index("ix_automation_flow_trigger_active", "automation_flow", ["trigger_type", "is_active"], unique=False)

    op.create_table(
        "automation_flow_execution",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("flow_id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.String(length=128), nullable=False),
        sa.Column("contact_id", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("current_node_id", sa.String(length=128), nullable=True),
        sa.Column("variables", sa.JSON(), nullable=False),
        sa.Column("history", sa.JSON(), nullable=False),
        sa.Column("resume_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_by", sa.String(length=128), nullable=True),
        sa.Column("claim_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_kind", sa.String(length=64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("step_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["flow_id"], ["automation_flow.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_automation_flow_execution_active_contact",
        "automation_flow_execution",
        ["flow_id", "contact_id"],
        unique=True,
        postgresql_where=sa.text(_ACTIVE_STATUSES),
        sqlite_where=sa.text(_ACTIVE_STATUSES),
    )
    op.create_index(
        "ix_automation_flow_execution_due",
        "automation_flow_execution",
        ["status", "resume_at"],
        unique=False,
    )
    op.create_index(
        "ix_automation_flow_execution_flow_started",
        "automation_flow_execution",
        ["flow_id", "started_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_automation_flow_execution_flow_started", table_name="automation_flow_execution")
    op.drop_index("ix_automation_flow_execution_due", table_name="automation_flow_execution")
    op.drop_index("uq_automation_flow_execution_active_contact", table_name="automation_flow_execution")
    op.drop_table("automation_flow_execution")
    op.drop_index("ix_automation_flow_trigger_active", table_name="automation_flow")
    op.drop_index("ix_automation_flow_team_active", table_name="automation_flow")
    op.drop_table("automation_flow")
