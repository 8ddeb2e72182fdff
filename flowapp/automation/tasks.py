from __future__ import annotations

import logging
import uuid
from typing import Any

from flowapp.automation.engine import get_flow_engine
from flowapp.automation.errors import FlowEngineError
from flowapp.automation.registry import TriggerEvent
from flowapp.automation.scheduler import ResumeScheduler
from flowapp.automation.service import FlowService
from flowapp.context import reset_correlation_id, set_correlation_id
from flowapp.core.celery_app import celery_app
from flowapp.core.database import SessionLocal


logger = logging.getLogger("flowapp.automation.tasks")


@celery_app.task(name="flowapp.automation.start_flow_execution")
def start_flow_execution(
    flow_id: str,
    contact_id: str,
    data: dict[str, Any] | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    token = set_correlation_id(correlation_id)
    session = SessionLocal()
    try:
        execution = get_flow_engine().start(session, uuid.UUID(flow_id), contact_id, data or {})
        return {"execution_id": str(execution.id), "status": execution.status}
    except FlowEngineError as exc:
        logger.warning("flow_task_start_rejected", extra={"flow_id": flow_id, "error": exc.message})
        return {"error": exc.code, "message": exc.message}
    finally:
        session.close()
        reset_correlation_id(token)


@celery_app.task(name="flowapp.automation.resume_flow_execution")
def resume_flow_execution(
    execution_id: str,
    correlation_id: str | None = None,
    claimed_by: str | None = None,
) -> dict[str, Any]:
    token = set_correlation_id(correlation_id)
    session = SessionLocal()
    try:
        execution = get_flow_engine().resume(session, uuid.UUID(execution_id), claimed_by=claimed_by)
        return {"execution_id": execution_id, "status": execution.status}
    except FlowEngineError as exc:
        logger.warning("flow_task_resume_rejected", extra={"error": exc.message})
        return {"error": exc.code, "message": exc.message}
    finally:
        session.close()
        reset_correlation_id(token)


@celery_app.task(name="flowapp.automation.fire_flow_trigger")
def fire_flow_trigger(
    trigger_type: str,
    team_id: str,
    contact_id: str,
    payload: dict[str, Any] | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    token = set_correlation_id(correlation_id)
    session = SessionLocal()
    try:
        result = FlowService().fire_trigger(
            session,
            trigger_type,
            TriggerEvent(team_id=team_id, contact_id=contact_id, payload=payload or {}),
        )
        return result.model_dump(mode="json")
    finally:
        session.close()
        reset_correlation_id(token)


@celery_app.task(name="flowapp.automation.scan_due_executions")
def scan_due_executions() -> dict[str, Any]:
    session = SessionLocal()
    try:
        result = ResumeScheduler().run_once(session)
        return {"claimed": len(result.claimed), "lost": result.lost, "dispatched": result.dispatched}
    finally:
        session.close()
