from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from flowapp.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


EXECUTION_RUNNING = "Running"
EXECUTION_WAITING = "Waiting"
EXECUTION_COMPLETED = "Completed"
EXECUTION_FAILED = "Failed"
EXECUTION_CANCELLED = "Cancelled"

NON_TERMINAL_STATUSES = (EXECUTION_RUNNING, EXECUTION_WAITING)
TERMINAL_STATUSES = (EXECUTION_COMPLETED, EXECUTION_FAILED, EXECUTION_CANCELLED)


class AutomationFlow(Base):
    __tablename__ = "automation_flow"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    team_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    trigger_type: Mapped[str] = mapped_column(String(64), nullable=False)
    trigger_config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    nodes: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    edges: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    variables: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    executions: Mapped[list[AutomationFlowExecution]] = relationship(
        "AutomationFlowExecution",
        back_populates="flow",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_automation_flow_team_active", "team_id", "is_active"),
        Index("ix_automation_flow_trigger_active", "trigger_type", "is_active"),
    )


class AutomationFlowExecution(Base):
    __tablename__ = "automation_flow_execution"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    flow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("automation_flow.id", ondelete="RESTRICT"),
        nullable=False,
    )
    team_id: Mapped[str] = mapped_column(String(128), nullable=False)
    contact_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=EXECUTION_RUNNING)
    current_node_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    variables: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    history: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    resume_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    claim_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_kind: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    step_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    flow: Mapped[AutomationFlow] = relationship("AutomationFlow", back_populates="executions")


Index(
    "uq_automation_flow_execution_active_contact",
    AutomationFlowExecution.flow_id,
    AutomationFlowExecution.contact_id,
    unique=True,
    postgresql_where=AutomationFlowExecution.status.in_(NON_TERMINAL_STATUSES),
    sqlite_where=AutomationFlowExecution.status.in_(NON_TERMINAL_STATUSES),
)
Index("ix_automation_flow_execution_due", AutomationFlowExecution.status, AutomationFlowExecution.resume_at)
Index("ix_automation_flow_execution_flow_started", AutomationFlowExecution.flow_id, AutomationFlowExecution.started_at)
