from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from flowapp.automation.errors import FlowEngineError
from flowapp.automation.registry import TriggerEvent
from flowapp.automation.schemas import (
    ExecutionStatus,
    FireTriggerRequest,
    FireTriggerResult,
    FlowDefinitionCreate,
    FlowDefinitionUpdate,
    FlowExecutionFilters,
    FlowExecutionPage,
    FlowExecutionRead,
    FlowRead,
    FlowStatsRead,
    FlowTestRequest,
    FlowTriggerRequest,
    FlowValidationResult,
)
from flowapp.automation.service import FlowService
from flowapp.context import get_correlation_id
from flowapp.core.database import get_db


router = APIRouter(prefix="/api/automation", tags=["automation"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


@dataclass
class Caller:
    team_id: str
    actor_id: str


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def engine_error_response(request: Request, exc: FlowEngineError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def get_caller(
    x_team_id: str = Header(min_length=1),
    x_actor_id: str | None = Header(default=None),
) -> Caller:
    return Caller(team_id=x_team_id, actor_id=x_actor_id or "system")


def get_flow_service() -> FlowService:
    return FlowService()


@router.post("/flows/validate", response_model=FlowValidationResult)
def validate_flow_definition(
    dto: FlowDefinitionCreate,
    service: FlowService = Depends(get_flow_service),
) -> FlowValidationResult:
    return service.validate_definition(dto)


@router.post("/flows", response_model=FlowRead, status_code=status.HTTP_201_CREATED)
def create_flow(
    request: Request,
    dto: FlowDefinitionCreate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    service: FlowService = Depends(get_flow_service),
) -> FlowRead | JSONResponse:
    try:
        return service.create_flow(db, caller.team_id, dto, actor_id=caller.actor_id)
    except FlowEngineError as exc:
        return engine_error_response(request, exc)


@router.get("/flows", response_model=list[FlowRead])
def list_flows(
    is_active: bool | None = Query(default=None),
    trigger_type: str | None = Query(default=None),
    search: str | None = Query(default=None),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    service: FlowService = Depends(get_flow_service),
) -> list[FlowRead]:
    return service.list_flows(db, caller.team_id, is_active=is_active, trigger_type=trigger_type, search=search)


@router.get("/flows/{flow_id}", response_model=FlowRead)
def get_flow(
    request: Request,
    flow_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    service: FlowService = Depends(get_flow_service),
) -> FlowRead | JSONResponse:
    try:
        return service.get_flow(db, caller.team_id, flow_id)
    except FlowEngineError as exc:
        return engine_error_response(request, exc)


@router.patch("/flows/{flow_id}", response_model=FlowRead)
def update_flow(
    request: Request,
    flow_id: uuid.UUID,
    dto: FlowDefinitionUpdate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    service: FlowService = Depends(get_flow_service),
) -> FlowRead | JSONResponse:
    try:
        return service.update_flow(db, caller.team_id, flow_id, dto, actor_id=caller.actor_id)
    except FlowEngineError as exc:
        return engine_error_response(request, exc)


@router.delete("/flows/{flow_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_flow(
    request: Request,
    flow_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    service: FlowService = Depends(get_flow_service),
) -> dict[str, str] | JSONResponse:
    try:
        service.delete_flow(db, caller.team_id, flow_id, actor_id=caller.actor_id)
        return {"status": "deleted"}
    except FlowEngineError as exc:
        return engine_error_response(request, exc)


@router.post("/flows/{flow_id}/activate", response_model=FlowRead)
def activate_flow(
    request: Request,
    flow_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    service: FlowService = Depends(get_flow_service),
) -> FlowRead | JSONResponse:
    try:
        return service.activate_flow(db, caller.team_id, flow_id, actor_id=caller.actor_id)
    except FlowEngineError as exc:
        return engine_error_response(request, exc)


@router.post("/flows/{flow_id}/deactivate", response_model=FlowRead)
def deactivate_flow(
    request: Request,
    flow_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    service: FlowService = Depends(get_flow_service),
) -> FlowRead | JSONResponse:
    try:
        return service.deactivate_flow(db, caller.team_id, flow_id, actor_id=caller.actor_id)
    except FlowEngineError as exc:
        return engine_error_response(request, exc)


@router.post("/flows/{flow_id}/trigger", response_model=FlowExecutionRead, status_code=status.HTTP_202_ACCEPTED)
def trigger_flow(
    request: Request,
    flow_id: uuid.UUID,
    dto: FlowTriggerRequest,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    service: FlowService = Depends(get_flow_service),
) -> FlowExecutionRead | JSONResponse:
    try:
        return service.trigger_flow(db, caller.team_id, flow_id, dto.contact_id, dto.data, actor_id=caller.actor_id)
    except FlowEngineError as exc:
        return engine_error_response(request, exc)


@router.post("/flows/{flow_id}/test", response_model=FlowExecutionRead, status_code=status.HTTP_202_ACCEPTED)
def test_flow(
    request: Request,
    flow_id: uuid.UUID,
    dto: FlowTestRequest,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    service: FlowService = Depends(get_flow_service),
) -> FlowExecutionRead | JSONResponse:
    try:
        return service.test_flow(db, caller.team_id, flow_id, dto.contact_id, actor_id=caller.actor_id)
    except FlowEngineError as exc:
        return engine_error_response(request, exc)


@router.get("/flows/{flow_id}/executions", response_model=FlowExecutionPage)
def list_flow_executions(
    request: Request,
    flow_id: uuid.UUID,
    status_filter: ExecutionStatus | None = Query(default=None, alias="status"),
    contact_id: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    service: FlowService = Depends(get_flow_service),
) -> FlowExecutionPage | JSONResponse:
    filters = FlowExecutionFilters(status=status_filter, contact_id=contact_id, page=page, limit=limit)
    try:
        return service.list_executions(db, caller.team_id, flow_id, filters)
    except FlowEngineError as exc:
        return engine_error_response(request, exc)


@router.get("/flows/{flow_id}/stats", response_model=FlowStatsRead)
def get_flow_stats(
    request: Request,
    flow_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    service: FlowService = Depends(get_flow_service),
) -> FlowStatsRead | JSONResponse:
    try:
        return service.get_flow_stats(db, caller.team_id, flow_id)
    except FlowEngineError as exc:
        return engine_error_response(request, exc)


@router.get("/executions/{execution_id}", response_model=FlowExecutionRead)
def get_execution(
    request: Request,
    execution_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    service: FlowService = Depends(get_flow_service),
) -> FlowExecutionRead | JSONResponse:
    try:
        return service.get_execution(db, caller.team_id, execution_id)
    except FlowEngineError as exc:
        return engine_error_response(request, exc)


@router.post("/executions/{execution_id}/cancel", response_model=FlowExecutionRead)
def cancel_execution(
    request: Request,
    execution_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    service: FlowService = Depends(get_flow_service),
) -> FlowExecutionRead | JSONResponse:
    try:
        return service.cancel_execution(db, caller.team_id, execution_id, actor_id=caller.actor_id)
    except FlowEngineError as exc:
        return engine_error_response(request, exc)


@router.post("/triggers/fire", response_model=FireTriggerResult)
def fire_trigger(
    dto: FireTriggerRequest,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    service: FlowService = Depends(get_flow_service),
) -> FireTriggerResult:
    event = TriggerEvent(team_id=caller.team_id, contact_id=dto.contact_id, payload=dto.payload)
    return service.fire_trigger(db, dto.trigger_type, event)
