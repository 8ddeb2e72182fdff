from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Mapping
from datetime import timedelta
from typing import Any

from sqlalchemy.orm import Session

from flowapp import audit, events
from flowapp.automation.engine import FlowExecutionEngine, get_flow_engine
from flowapp.automation.errors import (
    AlreadyRunningError,
    ExecutionNotFoundError,
    FlowActiveDeleteError,
    FlowEngineError,
    FlowNotFoundError,
    FlowValidationError,
)
from flowapp.automation.models import (
    EXECUTION_COMPLETED,
    NON_TERMINAL_STATUSES,
    TERMINAL_STATUSES,
    AutomationFlow,
    utcnow,
)
from flowapp.automation.registry import (
    TriggerEvent,
    TriggerRegistration,
    TriggerRegistry,
    trigger_registry,
)
from flowapp.automation.repository import FlowExecutionRepository, FlowRepository
from flowapp.automation.schemas import (
    FireTriggerResult,
    FlowDefinitionCreate,
    FlowDefinitionUpdate,
    FlowExecutionFilters,
    FlowExecutionPage,
    FlowExecutionRead,
    FlowRead,
    FlowStatsRead,
    FlowValidationResult,
)
from flowapp.automation.validation import validate_flow
from flowapp.metrics import observe_trigger_match


logger = logging.getLogger("flowapp.automation.service")

_STRUCTURAL_FIELDS = ("nodes", "edges", "trigger_type")
_DEFINITION_FIELDS = ("name", "description", "trigger_type", "trigger_config", "nodes", "edges", "variables")


class FlowService:
    def __init__(
        self,
        engine: FlowExecutionEngine | None = None,
        registry: TriggerRegistry | None = None,
    ) -> None:
        self.engine = engine or get_flow_engine()
        self.registry = registry or trigger_registry
        self.flows = FlowRepository()
        self.executions = FlowExecutionRepository()

    def validate_definition(self, dto: FlowDefinitionCreate) -> FlowValidationResult:
        return validate_flow(dto.model_dump())

    def create_or_update_flow(
        self,
        session: Session,
        team_id: str,
        dto: FlowDefinitionCreate,
        *,
        flow_id: uuid.UUID | None = None,
        actor_id: str = "system",
    ) -> FlowRead:
        if flow_id is None:
            return self.create_flow(session, team_id, dto, actor_id=actor_id)
        update = FlowDefinitionUpdate(**dto.model_dump(include=set(_DEFINITION_FIELDS)))
        return self.update_flow(session, team_id, flow_id, update, actor_id=actor_id)

    def create_flow(
        self,
        session: Session,
        team_id: str,
        dto: FlowDefinitionCreate,
        *,
        actor_id: str = "system",
    ) -> FlowRead:
        result = self.validate_definition(dto)
        if not result.valid:
            raise FlowValidationError(result.errors)

        flow = AutomationFlow(
            team_id=team_id,
            name=(dto.name or "").strip(),
            description=dto.description,
            trigger_type=dto.trigger_type,
            trigger_config=dict(dto.trigger_config),
            nodes=list(dto.nodes or []),
            edges=list(dto.edges or []),
            variables=dict(dto.variables),
            is_active=dto.is_active,
            version=1,
            created_by=actor_id,
        )
        session.add(flow)
        session.flush()

        audit.record(
            actor_id=actor_id,
            entity_type="automation.flow",
            entity_id=str(flow.id),
            action="flow.created",
            before=None,
            after=self._to_read(flow).model_dump(mode="json"),
        )
        session.commit()
        session.refresh(flow)

        if flow.is_active:
            self._register(flow)
        logger.info(
            "flow_created",
            extra={"flow_id": str(flow.id), "team_id": team_id, "trigger_type": flow.trigger_type},
        )
        return self._to_read(flow)

    def update_flow(
        self,
        session: Session,
        team_id: str,
        flow_id: uuid.UUID,
        dto: FlowDefinitionUpdate,
        *,
        actor_id: str = "system",
    ) -> FlowRead:
        flow = self._load_flow(session, team_id, flow_id)
        before = self._to_read(flow).model_dump(mode="json")
        payload = {key: value for key, value in dto.model_dump(exclude_unset=True).items() if value is not None}

        merged = {key: getattr(flow, key) for key in _DEFINITION_FIELDS}
        merged.update(payload)
        result = validate_flow(merged)
        if not result.valid:
            raise FlowValidationError(result.errors)

        structural = any(key in payload and payload[key] != getattr(flow, key) for key in _STRUCTURAL_FIELDS)
        for key, value in payload.items():
            setattr(flow, key, value.strip() if key == "name" else value)
        if structural:
            flow.version = flow.version + 1
        flow.updated_at = utcnow()
        session.add(flow)
        session.flush()

        audit.record(
            actor_id=actor_id,
            entity_type="automation.flow",
            entity_id=str(flow.id),
            action="flow.updated",
            before=before,
            after=self._to_read(flow).model_dump(mode="json"),
        )
        session.commit()
        session.refresh(flow)

        if flow.is_active:
            self._register(flow)
        logger.info("flow_updated", extra={"flow_id": str(flow.id), "team_id": team_id, "version": flow.version})
        return self._to_read(flow)

    def list_flows(
        self,
        session: Session,
        team_id: str,
        *,
        is_active: bool | None = None,
        trigger_type: str | None = None,
        search: str | None = None,
    ) -> list[FlowRead]:
        rows = self.flows.list_for_team(
            session,
            team_id,
            is_active=is_active,
            trigger_type=trigger_type,
            search=search,
        )
        return [self._to_read(row) for row in rows]

    def get_flow(self, session: Session, team_id: str, flow_id: uuid.UUID) -> FlowRead:
        return self._to_read(self._load_flow(session, team_id, flow_id))

    def delete_flow(self, session: Session, team_id: str, flow_id: uuid.UUID, *, actor_id: str = "system") -> None:
        flow = self._load_flow(session, team_id, flow_id)
        if flow.is_active:
            raise FlowActiveDeleteError(flow.id)

        before = self._to_read(flow).model_dump(mode="json")
        flow.deleted_at = utcnow()
        flow.updated_at = utcnow()
        session.add(flow)
        session.flush()

        audit.record(
            actor_id=actor_id,
            entity_type="automation.flow",
            entity_id=str(flow.id),
            action="flow.deleted",
            before=before,
            after={"deleted_at": flow.deleted_at.isoformat()},
        )
        session.commit()

        self.registry.unregister(flow.id)
        events.publish(
            events.build_envelope("automation.flow.deleted", {"flow_id": str(flow.id)}, team_id=team_id)
        )

    def activate_flow(self, session: Session, team_id: str, flow_id: uuid.UUID, *, actor_id: str = "system") -> FlowRead:
        flow = self._load_flow(session, team_id, flow_id)
        result = validate_flow({key: getattr(flow, key) for key in _DEFINITION_FIELDS})
        if not result.valid:
            raise FlowValidationError(result.errors)
        return self._set_active(session, flow, True, actor_id)

    def deactivate_flow(self, session: Session, team_id: str, flow_id: uuid.UUID, *, actor_id: str = "system") -> FlowRead:
        flow = self._load_flow(session, team_id, flow_id)
        return self._set_active(session, flow, False, actor_id)

    def _set_active(self, session: Session, flow: AutomationFlow, active: bool, actor_id: str) -> FlowRead:
        before = {"is_active": flow.is_active}
        flow.is_active = active
        flow.updated_at = utcnow()
        session.add(flow)
        session.flush()

        action = "flow.activated" if active else "flow.deactivated"
        audit.record(
            actor_id=actor_id,
            entity_type="automation.flow",
            entity_id=str(flow.id),
            action=action,
            before=before,
            after={"is_active": active},
        )
        session.commit()
        session.refresh(flow)

        if active:
            self._register(flow)
        else:
            self.registry.unregister(flow.id, flow.trigger_type)
        events.publish(
            events.build_envelope(
                f"automation.{action}",
                {"flow_id": str(flow.id), "trigger_type": flow.trigger_type, "version": flow.version},
                team_id=flow.team_id,
            )
        )
        return self._to_read(flow)

    def trigger_flow(
        self,
        session: Session,
        team_id: str,
        flow_id: uuid.UUID,
        contact_id: str,
        data: Mapping[str, Any] | None = None,
        *,
        actor_id: str = "system",
    ) -> FlowExecutionRead:
        execution = self.engine.start(
            session,
            flow_id,
            contact_id,
            {"trigger": {"type": "manual"}, **dict(data or {})},
            team_id=team_id,
            actor_id=actor_id,
        )
        return FlowExecutionRead.model_validate(execution)

    def test_flow(
        self,
        session: Session,
        team_id: str,
        flow_id: uuid.UUID,
        contact_id: str,
        *,
        actor_id: str = "system",
    ) -> FlowExecutionRead:
        execution = self.engine.start(
            session,
            flow_id,
            contact_id,
            {"trigger": {"type": "test", "triggered_by": actor_id}},
            team_id=team_id,
            test_mode=True,
            actor_id=actor_id,
        )
        return FlowExecutionRead.model_validate(execution)

    def get_execution(self, session: Session, team_id: str, execution_id: uuid.UUID) -> FlowExecutionRead:
        execution = self.executions.get(session, execution_id)
        if execution is None or execution.team_id != team_id:
            raise ExecutionNotFoundError(execution_id)
        return FlowExecutionRead.model_validate(execution)

    def list_executions(
        self,
        session: Session,
        team_id: str,
        flow_id: uuid.UUID,
        filters: FlowExecutionFilters | None = None,
    ) -> FlowExecutionPage:
        filters = filters or FlowExecutionFilters()
        self._load_flow(session, team_id, flow_id)
        rows, total = self.executions.page_for_flow(
            session,
            flow_id,
            status=filters.status,
            contact_id=filters.contact_id,
            page=filters.page,
            limit=filters.limit,
        )
        return FlowExecutionPage(
            items=[FlowExecutionRead.model_validate(row) for row in rows],
            page=filters.page,
            limit=filters.limit,
            total=total,
            total_pages=math.ceil(total / filters.limit) if total else 0,
        )

    def cancel_execution(
        self,
        session: Session,
        team_id: str,
        execution_id: uuid.UUID,
        *,
        actor_id: str = "system",
    ) -> FlowExecutionRead:
        self.get_execution(session, team_id, execution_id)
        execution = self.engine.cancel(session, execution_id, actor_id=actor_id)
        return FlowExecutionRead.model_validate(execution)

    def get_flow_stats(self, session: Session, team_id: str, flow_id: uuid.UUID) -> FlowStatsRead:
        flow = self._load_flow(session, team_id, flow_id)
        counts = self.executions.status_counts(session, flow.id)
        breakdown = {status: counts.get(status, 0) for status in (*NON_TERMINAL_STATUSES, *TERMINAL_STATUSES)}
        total = sum(counts.values())
        durations = self.executions.completed_durations(session, flow.id)
        return FlowStatsRead(
            flow_id=flow.id,
            total_executions=total,
            status_breakdown=breakdown,
            completion_rate=round(breakdown[EXECUTION_COMPLETED] / total * 100, 2) if total else 0.0,
            avg_completion_seconds=round(sum(durations) / len(durations), 2) if durations else 0.0,
        )

    def fire_trigger(self, session: Session, trigger_type: str, event: TriggerEvent) -> FireTriggerResult:
        def continuation_lookup(registration: TriggerRegistration, candidate: TriggerEvent, window: float) -> uuid.UUID | None:
            cutoff = self.engine.clock() - timedelta(seconds=window)
            existing = self.executions.find_open_started_after(
                session,
                registration.flow_id,
                candidate.contact_id,
                cutoff,
            )
            return existing.id if existing is not None else None

        match = self.registry.match(trigger_type, event, continuation_lookup=continuation_lookup, now=self.engine.clock())
        if match is None:
            observe_trigger_match(trigger_type, "no_match")
            logger.debug("flow_trigger_no_match", extra={"trigger_type": trigger_type, "team_id": event.team_id})
            return FireTriggerResult(outcome="no_match")

        flow_id = match.registration.flow_id
        if match.kind == "continue" and match.execution_id is not None:
            routed = self.engine.route_event(session, match.execution_id, event.payload)
            outcome = "continued" if routed else "rejected"
            observe_trigger_match(trigger_type, outcome)
            logger.info(
                "flow_trigger_routed",
                extra={"trigger_type": trigger_type, "flow_id": str(flow_id), "outcome": outcome},
            )
            return FireTriggerResult(
                outcome=outcome,
                flow_id=flow_id,
                execution_id=match.execution_id,
                detail=None if routed else "execution changed state before the event was routed",
            )

        initial_data = {
            "trigger": {"type": trigger_type, **dict(event.payload)},
            "last_event": dict(event.payload),
        }
        try:
            execution = self.engine.start(
                session,
                flow_id,
                event.contact_id,
                initial_data,
                team_id=event.team_id,
            )
        except AlreadyRunningError as exc:
            observe_trigger_match(trigger_type, "rejected")
            return FireTriggerResult(outcome="rejected", flow_id=flow_id, execution_id=exc.execution_id, detail=exc.message)
        except FlowEngineError as exc:
            observe_trigger_match(trigger_type, "rejected")
            logger.warning(
                "flow_trigger_start_rejected",
                extra={"trigger_type": trigger_type, "flow_id": str(flow_id), "error": exc.message},
            )
            return FireTriggerResult(outcome="rejected", flow_id=flow_id, detail=exc.message)

        observe_trigger_match(trigger_type, "started")
        return FireTriggerResult(outcome="started", flow_id=flow_id, execution_id=execution.id)

    def _register(self, flow: AutomationFlow) -> None:
        self.registry.register(flow.id, flow.team_id, flow.trigger_type, dict(flow.trigger_config or {}))

    def _load_flow(self, session: Session, team_id: str, flow_id: uuid.UUID) -> AutomationFlow:
        flow = self.flows.get(session, flow_id, team_id=team_id)
        if flow is None:
            raise FlowNotFoundError(flow_id)
        return flow

    def _to_read(self, flow: AutomationFlow) -> FlowRead:
        return FlowRead.model_validate(flow)
