from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from flowapp.automation.errors import AlreadyRunningError
from flowapp.automation.models import (
    EXECUTION_COMPLETED,
    EXECUTION_RUNNING,
    EXECUTION_WAITING,
    NON_TERMINAL_STATUSES,
    AutomationFlow,
    AutomationFlowExecution,
    utcnow,
)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class FlowRepository:
    def get(self, session: Session, flow_id: uuid.UUID, *, team_id: str | None = None) -> AutomationFlow | None:
        stmt = select(AutomationFlow).where(
            and_(AutomationFlow.id == flow_id, AutomationFlow.deleted_at.is_(None))
        )
        if team_id is not None:
            stmt = stmt.where(AutomationFlow.team_id == team_id)
        return session.scalar(stmt)

    def list_active(self, session: Session) -> Sequence[AutomationFlow]:
        stmt = (
            select(AutomationFlow)
            .where(and_(AutomationFlow.deleted_at.is_(None), AutomationFlow.is_active.is_(True)))
            .order_by(AutomationFlow.created_at.asc())
        )
        return session.scalars(stmt).all()

    def list_for_team(
        self,
        session: Session,
        team_id: str,
        *,
        is_active: bool | None = None,
        trigger_type: str | None = None,
        search: str | None = None,
    ) -> Sequence[AutomationFlow]:
        stmt = select(AutomationFlow).where(
            and_(AutomationFlow.team_id == team_id, AutomationFlow.deleted_at.is_(None))
        )
        if is_active is not None:
            stmt = stmt.where(AutomationFlow.is_active.is_(is_active))
        if trigger_type:
            stmt = stmt.where(AutomationFlow.trigger_type == trigger_type)
        if search:
            pattern = f"%{search.strip().lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(AutomationFlow.name).like(pattern),
                    func.lower(func.coalesce(AutomationFlow.description, "")).like(pattern),
                )
            )
        return session.scalars(stmt.order_by(AutomationFlow.created_at.desc())).all()


class FlowExecutionRepository:
    def get(self, session: Session, execution_id: uuid.UUID) -> AutomationFlowExecution | None:
        return session.scalar(
            select(AutomationFlowExecution)
            .where(AutomationFlowExecution.id == execution_id)
            .execution_options(populate_existing=True)
        )

    def find_open(self, session: Session, flow_id: uuid.UUID, contact_id: str) -> AutomationFlowExecution | None:
        return session.scalar(
            select(AutomationFlowExecution).where(
                and_(
                    AutomationFlowExecution.flow_id == flow_id,
                    AutomationFlowExecution.contact_id == contact_id,
                    AutomationFlowExecution.status.in_(NON_TERMINAL_STATUSES),
                )
            )
        )

    def find_open_started_after(
        self,
        session: Session,
        flow_id: uuid.UUID,
        contact_id: str,
        started_after: datetime,
    ) -> AutomationFlowExecution | None:
        return session.scalar(
            select(AutomationFlowExecution).where(
                and_(
                    AutomationFlowExecution.flow_id == flow_id,
                    AutomationFlowExecution.contact_id == contact_id,
                    AutomationFlowExecution.status.in_(NON_TERMINAL_STATUSES),
                    AutomationFlowExecution.started_at >= started_after,
                )
            )
        )

    def insert(self, session: Session, execution: AutomationFlowExecution) -> AutomationFlowExecution:
        session.add(execution)
        try:
            session.flush()
        except IntegrityError as exc:
            session.rollback()
            existing = self.find_open(session, execution.flow_id, execution.contact_id)
            raise AlreadyRunningError(
                execution.flow_id,
                execution.contact_id,
                existing.id if existing is not None else None,
            ) from exc
        return execution

    def guarded_update(
        self,
        session: Session,
        execution_id: uuid.UUID,
        *,
        expected_status: str,
        expected_row_version: int,
        **values: Any,
    ) -> bool:
        stmt = (
            update(AutomationFlowExecution)
            .where(
                and_(
                    AutomationFlowExecution.id == execution_id,
                    AutomationFlowExecution.status == expected_status,
                    AutomationFlowExecution.row_version == expected_row_version,
                )
            )
            .values(
                row_version=AutomationFlowExecution.row_version + 1,
                last_activity_at=utcnow(),
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        result = session.execute(stmt)
        return result.rowcount == 1

    def claim_due(
        self,
        session: Session,
        *,
        worker_id: str,
        now: datetime,
        claim_ttl_seconds: int,
        limit: int,
    ) -> tuple[list[uuid.UUID], int]:
        """Claim Waiting rows that are due and Running rows whose worker lease lapsed."""
        unclaimed = or_(
            AutomationFlowExecution.claim_expires_at.is_(None),
            AutomationFlowExecution.claim_expires_at <= now,
        )
        candidates = session.execute(
            select(
                AutomationFlowExecution.id,
                AutomationFlowExecution.status,
                AutomationFlowExecution.row_version,
            )
            .where(
                or_(
                    and_(
                        AutomationFlowExecution.status == EXECUTION_WAITING,
                        AutomationFlowExecution.resume_at.is_not(None),
                        AutomationFlowExecution.resume_at <= now,
                        unclaimed,
                    ),
                    and_(AutomationFlowExecution.status == EXECUTION_RUNNING, unclaimed),
                )
            )
            .order_by(AutomationFlowExecution.last_activity_at.asc())
            .limit(limit)
        ).all()

        claimed: list[uuid.UUID] = []
        lost = 0
        expires_at = now + timedelta(seconds=claim_ttl_seconds)
        for execution_id, status, row_version in candidates:
            won = self.guarded_update(
                session,
                execution_id,
                expected_status=status,
                expected_row_version=row_version,
                claimed_by=worker_id,
                claim_expires_at=expires_at,
            )
            if won:
                claimed.append(execution_id)
            else:
                lost += 1
        session.commit()
        return claimed, lost

    def page_for_flow(
        self,
        session: Session,
        flow_id: uuid.UUID,
        *,
        status: str | None,
        contact_id: str | None,
        page: int,
        limit: int,
    ) -> tuple[Sequence[AutomationFlowExecution], int]:
        conditions = [AutomationFlowExecution.flow_id == flow_id]
        if status:
            conditions.append(AutomationFlowExecution.status == status)
        if contact_id:
            conditions.append(AutomationFlowExecution.contact_id == contact_id)

        total = session.scalar(select(func.count()).select_from(AutomationFlowExecution).where(and_(*conditions))) or 0
        rows = session.scalars(
            select(AutomationFlowExecution)
            .where(and_(*conditions))
            .order_by(AutomationFlowExecution.started_at.desc(), AutomationFlowExecution.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        return rows, int(total)

    def status_counts(self, session: Session, flow_id: uuid.UUID) -> dict[str, int]:
        rows = session.execute(
            select(AutomationFlowExecution.status, func.count())
            .where(AutomationFlowExecution.flow_id == flow_id)
            .group_by(AutomationFlowExecution.status)
        ).all()
        return {status: int(count) for status, count in rows}

    def completed_durations(self, session: Session, flow_id: uuid.UUID) -> list[float]:
        rows = session.execute(
            select(AutomationFlowExecution.started_at, AutomationFlowExecution.completed_at).where(
                and_(
                    AutomationFlowExecution.flow_id == flow_id,
                    AutomationFlowExecution.status == EXECUTION_COMPLETED,
                    AutomationFlowExecution.completed_at.is_not(None),
                )
            )
        ).all()
        return [
            (as_utc(completed_at) - as_utc(started_at)).total_seconds()
            for started_at, completed_at in rows
        ]
