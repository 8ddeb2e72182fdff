from __future__ import annotations

import logging
import os
import socket
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, assert_never

from opentelemetry import trace
from sqlalchemy.orm import Session

from flowapp import audit, events
from flowapp.automation.collaborators import (
    AiCompletionError,
    FlowCollaborators,
    HttpCallError,
    default_collaborators,
    split_custom_field,
)
from flowapp.automation.conditions import evaluate_rules
from flowapp.automation.errors import (
    AI_COMPLETION_FAILED,
    HTTP_REQUEST_FAILED,
    MALFORMED_NODE_CONFIG,
    STEP_LIMIT_EXCEEDED,
    UNEXPECTED_STEP_ERROR,
    AlreadyRunningError,
    ExecutionNotFoundError,
    FlowInactiveError,
    FlowNotFoundError,
    StepError,
)
from flowapp.automation.graph import FlowGraph
from flowapp.automation.models import (
    EXECUTION_CANCELLED,
    EXECUTION_COMPLETED,
    EXECUTION_FAILED,
    EXECUTION_RUNNING,
    EXECUTION_WAITING,
    NON_TERMINAL_STATUSES,
    AutomationFlow,
    AutomationFlowExecution,
    utcnow,
)
from flowapp.automation.repository import FlowExecutionRepository, FlowRepository, as_utc
from flowapp.automation.schemas import (
    DEFAULT_LABELS,
    ERROR_LABEL,
    FALSE_LABEL,
    TRUE_LABEL,
    AddTagNode,
    AiChatbotNode,
    BranchNode,
    ConditionNode,
    EndNode,
    FlowNode,
    HttpRequestNode,
    JoinNode,
    RemoveTagNode,
    SendMessageNode,
    TriggerNode,
    UpdateFieldNode,
    WaitNode,
)
from flowapp.automation.templating import render_template, render_value
from flowapp.context import get_correlation_id, reset_execution_id, set_execution_id
from flowapp.core.config import get_settings
from flowapp.metrics import observe_execution_status, observe_step, observe_step_loop


logger = logging.getLogger("flowapp.automation.engine")
tracer = trace.get_tracer("flowapp.automation.engine")

_WAIT_UNIT_SECONDS = {"seconds": 1, "minutes": 60, "hours": 3600, "days": 86400}
_CANCEL_ATTEMPTS = 5
_ERROR_MESSAGE_LIMIT = 2000


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass(frozen=True)
class Advance:
    node_id: str
    detail: dict[str, Any] | None = None


@dataclass(frozen=True)
class Suspend:
    resume_at: datetime


@dataclass(frozen=True)
class Terminal:
    status: str
    error_kind: str | None = None
    message: str | None = None


StepResult = Advance | Suspend | Terminal


@dataclass
class _RunState:
    execution_id: uuid.UUID
    flow_id: uuid.UUID
    team_id: str
    contact_id: str
    current_node_id: str | None
    row_version: int
    step_count: int = 0
    variables: dict[str, Any] = field(default_factory=dict)
    history: list[dict[str, Any]] = field(default_factory=list)

    @property
    def test_mode(self) -> bool:
        return bool(self.variables.get("test_mode"))


def _outcome(result: StepResult) -> str:
    if isinstance(result, Advance):
        return "advanced"
    if isinstance(result, Suspend):
        return "suspended"
    return "completed" if result.status == EXECUTION_COMPLETED else "failed"


def _execution_payload(state: _RunState, status: str, **extra: Any) -> dict[str, Any]:
    return {
        "execution_id": str(state.execution_id),
        "flow_id": str(state.flow_id),
        "contact_id": state.contact_id,
        "status": status,
        "node_id": state.current_node_id,
        **extra,
    }


class FlowExecutionEngine:
    def __init__(
        self,
        collaborators: FlowCollaborators | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
        worker_id: str | None = None,
    ) -> None:
        self.collaborators = collaborators or default_collaborators()
        self.sleep = sleep
        self.clock = clock
        self.worker_id = worker_id or default_worker_id()
        self.flows = FlowRepository()
        self.executions = FlowExecutionRepository()

    def start(
        self,
        session: Session,
        flow_id: uuid.UUID,
        contact_id: str,
        initial_data: Mapping[str, Any] | None = None,
        *,
        team_id: str | None = None,
        test_mode: bool = False,
        actor_id: str = "system",
    ) -> AutomationFlowExecution:
        with tracer.start_as_current_span("flow.start") as span:
            span.set_attribute("flow.id", str(flow_id))
            span.set_attribute("flow.contact_id", contact_id)
            span.set_attribute("flow.test_mode", test_mode)

            flow = self.flows.get(session, flow_id, team_id=team_id)
            if flow is None:
                raise FlowNotFoundError(flow_id)
            if not flow.is_active and not test_mode:
                raise FlowInactiveError(flow_id)

            existing = self.executions.find_open(session, flow.id, contact_id)
            if existing is not None:
                raise AlreadyRunningError(flow.id, contact_id, existing.id)

            graph = FlowGraph(flow.nodes or [], flow.edges or [])
            trigger_id = graph.trigger_node_id
            first_node_id = graph.sole_successor(trigger_id) if trigger_id else None

            snapshot = self.collaborators.contacts.get_snapshot(flow.team_id, contact_id)
            variables: dict[str, Any] = {**(flow.variables or {}), "contact": snapshot, **dict(initial_data or {})}
            if test_mode:
                variables["test_mode"] = True

            now = self.clock()
            execution = AutomationFlowExecution(
                flow_id=flow.id,
                team_id=flow.team_id,
                contact_id=contact_id,
                status=EXECUTION_RUNNING,
                current_node_id=first_node_id,
                variables=dict(variables),
                history=[{"node_id": trigger_id, "node_type": "trigger", "outcome": "triggered", "at": now.isoformat()}],
                step_count=0,
                row_version=1,
                started_at=now,
                last_activity_at=now,
                claimed_by=self.worker_id,
                claim_expires_at=self._lease_expiry(),
            )
            self.executions.insert(session, execution)
            session.commit()
            span.set_attribute("flow.execution_id", str(execution.id))

            state = _RunState(
                execution_id=execution.id,
                flow_id=flow.id,
                team_id=flow.team_id,
                contact_id=contact_id,
                current_node_id=first_node_id,
                row_version=1,
                variables=variables,
                history=list(execution.history),
            )

            observe_execution_status(EXECUTION_RUNNING)
            audit.record(
                actor_id=actor_id,
                entity_type="automation.flow_execution",
                entity_id=str(execution.id),
                action="execution.started",
                before=None,
                after={"flow_id": str(flow.id), "contact_id": contact_id, "test_mode": test_mode},
            )
            events.publish(
                events.build_envelope(
                    "automation.execution.started",
                    _execution_payload(state, EXECUTION_RUNNING, test_mode=test_mode),
                    team_id=flow.team_id,
                )
            )
            logger.info(
                "flow_execution_started",
                extra={"flow_id": str(flow.id), "team_id": flow.team_id, "contact_id": contact_id},
            )
            return self._run(session, graph, state, entrypoint="start")

    def resume(
        self,
        session: Session,
        execution_id: uuid.UUID,
        *,
        claimed_by: str | None = None,
    ) -> AutomationFlowExecution:
        """Continue a due Waiting execution, or take over a Running one whose lease lapsed.

        `claimed_by` is the scheduler worker that claimed the row; it lets that
        worker take over a Running execution before the claim it just took expires.
        """
        with tracer.start_as_current_span("flow.resume") as span:
            span.set_attribute("flow.execution_id", str(execution_id))
            execution = self.executions.get(session, execution_id)
            if execution is None:
                raise ExecutionNotFoundError(execution_id)
            if execution.status == EXECUTION_RUNNING:
                return self._recover(session, execution, claimed_by)
            if execution.status != EXECUTION_WAITING:
                logger.debug("flow_resume_skipped", extra={"status": execution.status})
                return execution
            resume_at = as_utc(execution.resume_at)
            if resume_at is not None and resume_at > self.clock():
                logger.debug("flow_resume_not_due", extra={"status": execution.status})
                return execution

            flow = session.get(AutomationFlow, execution.flow_id)
            graph = FlowGraph(flow.nodes or [], flow.edges or []) if flow is not None else FlowGraph([], [])
            wait_node_id = execution.current_node_id
            next_node_id = graph.sole_successor(wait_node_id) if wait_node_id else None

            state = _RunState(
                execution_id=execution.id,
                flow_id=execution.flow_id,
                team_id=execution.team_id,
                contact_id=execution.contact_id,
                current_node_id=next_node_id,
                row_version=execution.row_version + 1,
                step_count=execution.step_count,
                variables=dict(execution.variables or {}),
                history=list(execution.history or []),
            )
            won = self.executions.guarded_update(
                session,
                execution.id,
                expected_status=EXECUTION_WAITING,
                expected_row_version=execution.row_version,
                status=EXECUTION_RUNNING,
                current_node_id=next_node_id,
                resume_at=None,
                claimed_by=self.worker_id,
                claim_expires_at=self._lease_expiry(),
            )
            if not won:
                session.rollback()
                logger.debug("flow_resume_guard_lost", extra={"flow_id": str(execution.flow_id)})
                return self.executions.get(session, execution_id)
            session.commit()

            state.history.append(
                {"node_id": wait_node_id, "node_type": "wait", "outcome": "resumed", "at": self.clock().isoformat()}
            )
            observe_execution_status(EXECUTION_RUNNING)
            events.publish(
                events.build_envelope(
                    "automation.execution.resumed",
                    _execution_payload(state, EXECUTION_RUNNING, resumed_from=wait_node_id),
                    team_id=state.team_id,
                )
            )
            logger.info(
                "flow_execution_resumed",
                extra={"flow_id": str(state.flow_id), "contact_id": state.contact_id, "node_id": wait_node_id},
            )
            return self._run(session, graph, state, entrypoint="resume")

    def _lease_expiry(self) -> datetime:
        return self.clock() + timedelta(seconds=get_settings().flow_resume_claim_ttl_seconds)

    def _recover(
        self,
        session: Session,
        execution: AutomationFlowExecution,
        claimed_by: str | None,
    ) -> AutomationFlowExecution:
        lease_expires_at = as_utc(execution.claim_expires_at)
        holds_claim = claimed_by is not None and execution.claimed_by == claimed_by
        if not holds_claim and lease_expires_at is not None and lease_expires_at > self.clock():
            logger.debug("flow_recover_lease_held", extra={"status": execution.status})
            return execution

        flow = session.get(AutomationFlow, execution.flow_id)
        graph = FlowGraph(flow.nodes or [], flow.edges or []) if flow is not None else FlowGraph([], [])
        won = self.executions.guarded_update(
            session,
            execution.id,
            expected_status=EXECUTION_RUNNING,
            expected_row_version=execution.row_version,
            claimed_by=self.worker_id,
            claim_expires_at=self._lease_expiry(),
        )
        if not won:
            session.rollback()
            logger.debug("flow_recover_guard_lost", extra={"flow_id": str(execution.flow_id)})
            return self.executions.get(session, execution.id)
        session.commit()

        # re-enter at the node that was current when the previous worker stopped
        state = _RunState(
            execution_id=execution.id,
            flow_id=execution.flow_id,
            team_id=execution.team_id,
            contact_id=execution.contact_id,
            current_node_id=execution.current_node_id,
            row_version=execution.row_version + 1,
            step_count=execution.step_count,
            variables=dict(execution.variables or {}),
            history=list(execution.history or []),
        )
        state.history.append(
            {"node_id": state.current_node_id, "node_type": "recovery", "outcome": "recovered", "at": self.clock().isoformat()}
        )
        events.publish(
            events.build_envelope(
                "automation.execution.resumed",
                _execution_payload(state, EXECUTION_RUNNING, recovered=True),
                team_id=state.team_id,
            )
        )
        logger.warning(
            "flow_execution_recovered",
            extra={"flow_id": str(state.flow_id), "contact_id": state.contact_id, "node_id": state.current_node_id},
        )
        return self._run(session, graph, state, entrypoint="recover")

    def cancel(self, session: Session, execution_id: uuid.UUID, *, actor_id: str = "system") -> AutomationFlowExecution:
        with tracer.start_as_current_span("flow.cancel") as span:
            span.set_attribute("flow.execution_id", str(execution_id))
            for _ in range(_CANCEL_ATTEMPTS):
                execution = self.executions.get(session, execution_id)
                if execution is None:
                    raise ExecutionNotFoundError(execution_id)
                if execution.status not in NON_TERMINAL_STATUSES:
                    return execution

                previous_status = execution.status
                won = self.executions.guarded_update(
                    session,
                    execution.id,
                    expected_status=previous_status,
                    expected_row_version=execution.row_version,
                    status=EXECUTION_CANCELLED,
                    completed_at=self.clock(),
                    resume_at=None,
                    claimed_by=None,
                    claim_expires_at=None,
                )
                if not won:
                    session.rollback()
                    continue
                session.commit()

                observe_execution_status(EXECUTION_CANCELLED)
                audit.record(
                    actor_id=actor_id,
                    entity_type="automation.flow_execution",
                    entity_id=str(execution_id),
                    action="execution.cancelled",
                    before={"status": previous_status},
                    after={"status": EXECUTION_CANCELLED},
                )
                events.publish(
                    events.build_envelope(
                        "automation.execution.cancelled",
                        {
                            "execution_id": str(execution_id),
                            "flow_id": str(execution.flow_id),
                            "contact_id": execution.contact_id,
                            "status": EXECUTION_CANCELLED,
                            "previous_status": previous_status,
                        },
                        team_id=execution.team_id,
                    )
                )
                logger.info(
                    "flow_execution_cancelled",
                    extra={"flow_id": str(execution.flow_id), "status": previous_status},
                )
                return self.executions.get(session, execution_id)

            logger.warning("flow_cancel_contended", extra={"attempt": _CANCEL_ATTEMPTS})
            return self.executions.get(session, execution_id)

    def route_event(self, session: Session, execution_id: uuid.UUID, payload: Mapping[str, Any]) -> bool:
        execution = self.executions.get(session, execution_id)
        if execution is None or execution.status not in NON_TERMINAL_STATUSES:
            return False
        won = self.executions.guarded_update(
            session,
            execution.id,
            expected_status=execution.status,
            expected_row_version=execution.row_version,
            variables={**(execution.variables or {}), "last_event": dict(payload)},
        )
        if not won:
            session.rollback()
            logger.debug("flow_event_route_guard_lost", extra={"flow_id": str(execution.flow_id)})
            return False
        session.commit()
        return True

    def _run(self, session: Session, graph: FlowGraph, state: _RunState, *, entrypoint: str) -> AutomationFlowExecution:
        max_steps = get_settings().flow_max_steps
        started = time.perf_counter()
        token = set_execution_id(str(state.execution_id))
        steps = 0
        try:
            while True:
                if steps >= max_steps:
                    logger.error(
                        "flow_step_limit_exceeded",
                        extra={"flow_id": str(state.flow_id), "node_id": state.current_node_id, "count": steps},
                    )
                    return self._finish(
                        session,
                        state,
                        Terminal(EXECUTION_FAILED, STEP_LIMIT_EXCEEDED, f"Exceeded {max_steps} transitions in one run"),
                    )
                steps += 1
                result = self._step(graph, state)
                if isinstance(result, Advance):
                    state.current_node_id = result.node_id
                    if not self._checkpoint(session, state):
                        return self._drop(session, state)
                    continue
                if isinstance(result, Suspend):
                    return self._suspend(session, state, result)
                return self._finish(session, state, result)
        except Exception as exc:
            logger.exception(
                "flow_step_loop_crashed",
                extra={"flow_id": str(state.flow_id), "node_id": state.current_node_id, "error": str(exc)},
            )
            session.rollback()
            return self._fail_after_crash(session, state, exc)
        finally:
            observe_step_loop(entrypoint, time.perf_counter() - started)
            reset_execution_id(token)

    def _step(self, graph: FlowGraph, state: _RunState) -> StepResult:
        node_id = state.current_node_id
        node_type = "unknown"
        detail: dict[str, Any] = {}
        with tracer.start_as_current_span("flow.step") as span:
            span.set_attribute("flow.execution_id", str(state.execution_id))
            span.set_attribute("flow.node_id", str(node_id))
            correlation_id = get_correlation_id()
            if correlation_id:
                span.set_attribute("correlation_id", correlation_id)
            try:
                node = graph.node(node_id) if node_id else None
                if node is None:
                    raise StepError(MALFORMED_NODE_CONFIG, "Execution has no node to run")
                node_type = node.type
                span.set_attribute("flow.node_type", node_type)
                result = self._dispatch(graph, node, state)
            except StepError as exc:
                level = logging.ERROR if exc.kind == MALFORMED_NODE_CONFIG else logging.WARNING
                logger.log(
                    level,
                    "flow_step_failed",
                    extra={"node_id": node_id, "node_type": node_type, "error_kind": exc.kind, "error": exc.message},
                )
                result = Terminal(EXECUTION_FAILED, exc.kind, exc.message)

            outcome = _outcome(result)
            span.set_attribute("flow.outcome", outcome)

        if isinstance(result, Advance) and result.detail:
            detail.update(result.detail)
        elif isinstance(result, Suspend):
            detail["resume_at"] = result.resume_at.isoformat()
        elif isinstance(result, Terminal) and result.error_kind:
            detail["error_kind"] = result.error_kind

        state.step_count += 1
        state.history.append(
            {"node_id": node_id, "node_type": node_type, "outcome": outcome, "at": self.clock().isoformat(), **detail}
        )
        observe_step(node_type, outcome)
        return result

    def _dispatch(self, graph: FlowGraph, node: FlowNode, state: _RunState) -> StepResult:
        if isinstance(node, (TriggerNode, JoinNode)):
            return Advance(self._next(graph, node.id))
        if isinstance(node, WaitNode):
            return self._handle_wait(node)
        if isinstance(node, SendMessageNode):
            return self._handle_send_message(graph, node, state)
        if isinstance(node, ConditionNode):
            return self._handle_condition(graph, node, state)
        if isinstance(node, (AddTagNode, RemoveTagNode)):
            return self._handle_tag(graph, node, state)
        if isinstance(node, UpdateFieldNode):
            return self._handle_update_field(graph, node, state)
        if isinstance(node, HttpRequestNode):
            return self._handle_http_request(graph, node, state)
        if isinstance(node, AiChatbotNode):
            return self._handle_ai_chatbot(graph, node, state)
        if isinstance(node, BranchNode):
            return self._handle_branch(graph, node, state)
        if isinstance(node, EndNode):
            return Terminal(EXECUTION_COMPLETED)
        assert_never(node)

    def _next(self, graph: FlowGraph, node_id: str) -> str:
        target = graph.sole_successor(node_id)
        if target is None:
            raise StepError(MALFORMED_NODE_CONFIG, f"Node {node_id} has no single outgoing edge")
        return target

    def _handle_wait(self, node: WaitNode) -> StepResult:
        seconds = node.config.duration * _WAIT_UNIT_SECONDS[node.config.unit]
        return Suspend(resume_at=self.clock() + timedelta(seconds=seconds))

    def _handle_send_message(self, graph: FlowGraph, node: SendMessageNode, state: _RunState) -> StepResult:
        content = render_template(node.config.message, state.variables)
        media_url = render_template(node.config.media_url, state.variables) if node.config.media_url else None
        target = self._next(graph, node.id)
        if state.test_mode:
            return Advance(target, {"test_mode": True, "content": content})

        message_id = self.collaborators.messaging.send(
            state.team_id,
            state.contact_id,
            content,
            message_type=node.config.message_type,
            media_url=media_url,
        )
        state.variables["last_message_id"] = message_id
        return Advance(target, {"message_id": message_id})

    def _handle_condition(self, graph: FlowGraph, node: ConditionNode, state: _RunState) -> StepResult:
        result = evaluate_rules(node.config.conditions, node.config.operator, state.variables)
        state.variables["condition_result"] = result
        label = TRUE_LABEL if result else FALSE_LABEL
        target = graph.labeled_successor(node.id, label)
        if target is None:
            raise StepError(MALFORMED_NODE_CONFIG, f"Condition node {node.id} has no '{label}' edge")
        return Advance(target, {"result": result})

    def _handle_tag(self, graph: FlowGraph, node: AddTagNode | RemoveTagNode, state: _RunState) -> StepResult:
        tag_id = render_template(node.config.tag_id, state.variables)
        target = self._next(graph, node.id)
        if state.test_mode:
            return Advance(target, {"test_mode": True, "tag_id": tag_id})

        contacts = self.collaborators.contacts
        snapshot = state.variables.get("contact")
        tags = snapshot.setdefault("tags", []) if isinstance(snapshot, dict) else []
        if isinstance(node, AddTagNode):
            contacts.add_tag(state.team_id, state.contact_id, tag_id)
            if tag_id not in tags:
                tags.append(tag_id)
        else:
            contacts.remove_tag(state.team_id, state.contact_id, tag_id)
            if tag_id in tags:
                tags.remove(tag_id)
        return Advance(target, {"tag_id": tag_id})

    def _handle_update_field(self, graph: FlowGraph, node: UpdateFieldNode, state: _RunState) -> StepResult:
        value = render_value(node.config.value, state.variables)
        target = self._next(graph, node.id)
        if state.test_mode:
            return Advance(target, {"test_mode": True, "field": node.config.field})

        self.collaborators.contacts.update_field(state.team_id, state.contact_id, node.config.field, value)
        snapshot = state.variables.get("contact")
        if isinstance(snapshot, dict):
            is_custom, name = split_custom_field(node.config.field)
            if is_custom:
                snapshot.setdefault("custom_fields", {})[name] = value
            else:
                snapshot[name] = value
        return Advance(target, {"field": node.config.field})

    def _handle_http_request(self, graph: FlowGraph, node: HttpRequestNode, state: _RunState) -> StepResult:
        settings = get_settings()
        config = node.config
        url = render_template(config.url, state.variables)
        headers = {key: render_template(value, state.variables) for key, value in config.headers.items()}
        body = render_value(config.body, state.variables)
        timeout = config.timeout_seconds or settings.flow_http_timeout_seconds
        max_attempts = config.max_attempts or settings.flow_http_max_attempts
        backoff = config.backoff_seconds if config.backoff_seconds is not None else settings.flow_http_backoff_seconds

        if state.test_mode:
            target = graph.default_successor(node.id, excluded_labels=[ERROR_LABEL])
            if target is None:
                raise StepError(MALFORMED_NODE_CONFIG, f"HTTP request node {node.id} has no default edge")
            return Advance(target, {"test_mode": True, "url": url})

        last_error: HttpCallError | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                response = self.collaborators.http.request(
                    config.method,
                    url,
                    headers=headers,
                    body=body,
                    timeout=timeout,
                )
            except HttpCallError as exc:
                last_error = exc
                logger.warning(
                    "flow_http_request_attempt_failed",
                    extra={"node_id": node.id, "attempt": attempt, "error": str(exc)},
                )
                if attempt < max_attempts and backoff > 0:
                    self.sleep(backoff * (2 ** (attempt - 1)))
                continue

            state.variables[config.response_variable] = response.body
            state.variables["http_status"] = response.status_code
            state.variables.pop("http_error", None)
            target = graph.default_successor(node.id, excluded_labels=[ERROR_LABEL])
            if target is None:
                raise StepError(MALFORMED_NODE_CONFIG, f"HTTP request node {node.id} has no default edge")
            return Advance(target, {"status_code": response.status_code, "attempts": attempt})

        error_text = str(last_error) if last_error is not None else "request failed"
        state.variables["http_error"] = error_text
        state.variables["http_status"] = last_error.status_code if last_error is not None else None
        error_target = graph.labeled_successor(node.id, ERROR_LABEL)
        if error_target is not None:
            return Advance(error_target, {"error": error_text, "attempts": max_attempts})
        raise StepError(HTTP_REQUEST_FAILED, f"HTTP request failed after {max_attempts} attempts: {error_text}")

    def _handle_ai_chatbot(self, graph: FlowGraph, node: AiChatbotNode, state: _RunState) -> StepResult:
        settings = get_settings()
        config = node.config
        window = config.context_window or settings.flow_ai_context_window
        timeout = config.timeout_seconds or settings.flow_ai_timeout_seconds
        max_attempts = config.max_attempts or settings.flow_ai_max_attempts

        if config.prompt:
            prompt = render_template(config.prompt, state.variables)
        else:
            last_event = state.variables.get("last_event")
            prompt = ""
            if isinstance(last_event, dict):
                prompt = str(last_event.get("message") or last_event.get("text") or "")
            prompt = prompt or str(state.variables.get("message") or "")

        conversation = [item for item in state.variables.get("ai_conversation") or [] if isinstance(item, dict)]
        conversation.append({"role": "user", "content": prompt})
        messages = conversation[-window:]

        last_error: Exception | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                reply = self.collaborators.ai.complete(config.chatbot_id, messages, timeout=timeout)
            except (AiCompletionError, TimeoutError) as exc:
                last_error = exc
                logger.warning(
                    "flow_ai_completion_attempt_failed",
                    extra={"node_id": node.id, "attempt": attempt, "error": str(exc)},
                )
                if attempt < max_attempts and settings.flow_ai_backoff_seconds > 0:
                    self.sleep(settings.flow_ai_backoff_seconds * (2 ** (attempt - 1)))
                continue

            conversation.append({"role": "assistant", "content": reply})
            state.variables[config.output_variable] = reply
            state.variables["ai_conversation"] = conversation[-window:]
            target = graph.default_successor(node.id, excluded_labels=[ERROR_LABEL])
            if target is None:
                raise StepError(MALFORMED_NODE_CONFIG, f"AI chatbot node {node.id} has no default edge")
            return Advance(target, {"chatbot_id": config.chatbot_id, "attempts": attempt})

        error_text = str(last_error) if last_error is not None else "completion failed"
        error_target = graph.labeled_successor(node.id, ERROR_LABEL)
        if error_target is not None:
            state.variables["ai_error"] = error_text
            return Advance(error_target, {"error": error_text, "attempts": max_attempts})
        raise StepError(AI_COMPLETION_FAILED, f"AI completion failed after {max_attempts} attempts: {error_text}")

    def _handle_branch(self, graph: FlowGraph, node: BranchNode, state: _RunState) -> StepResult:
        for branch in node.config.branches:
            if not evaluate_rules(branch.conditions, branch.operator, state.variables):
                continue
            target = graph.labeled_successor(node.id, branch.label)
            if target is None:
                raise StepError(MALFORMED_NODE_CONFIG, f"Branch node {node.id} has no edge for branch '{branch.label}'")
            state.variables["branch_result"] = branch.label
            return Advance(target, {"branch": branch.label})

        default_labels = [node.config.default_label] if node.config.default_label else list(DEFAULT_LABELS)
        for label in default_labels:
            target = graph.labeled_successor(node.id, label)
            if target is not None:
                state.variables["branch_result"] = label
                return Advance(target, {"branch": label})
        raise StepError(MALFORMED_NODE_CONFIG, f"Branch node {node.id} matched no branch and has no default edge")

    def _checkpoint(self, session: Session, state: _RunState) -> bool:
        won = self.executions.guarded_update(
            session,
            state.execution_id,
            expected_status=EXECUTION_RUNNING,
            expected_row_version=state.row_version,
            current_node_id=state.current_node_id,
            variables=dict(state.variables),
            history=list(state.history),
            step_count=state.step_count,
            claimed_by=self.worker_id,
            claim_expires_at=self._lease_expiry(),
        )
        if not won:
            session.rollback()
            return False
        session.commit()
        state.row_version += 1
        return True

    def _drop(self, session: Session, state: _RunState) -> AutomationFlowExecution:
        logger.debug("flow_execution_guard_lost", extra={"flow_id": str(state.flow_id), "node_id": state.current_node_id})
        return self.executions.get(session, state.execution_id)

    def _suspend(self, session: Session, state: _RunState, result: Suspend) -> AutomationFlowExecution:
        won = self.executions.guarded_update(
            session,
            state.execution_id,
            expected_status=EXECUTION_RUNNING,
            expected_row_version=state.row_version,
            status=EXECUTION_WAITING,
            resume_at=result.resume_at,
            claimed_by=None,
            claim_expires_at=None,
            current_node_id=state.current_node_id,
            variables=dict(state.variables),
            history=list(state.history),
            step_count=state.step_count,
        )
        if not won:
            session.rollback()
            return self._drop(session, state)
        session.commit()
        state.row_version += 1

        observe_execution_status(EXECUTION_WAITING)
        events.publish(
            events.build_envelope(
                "automation.execution.waiting",
                _execution_payload(state, EXECUTION_WAITING, resume_at=result.resume_at.isoformat()),
                team_id=state.team_id,
            )
        )
        logger.info(
            "flow_execution_waiting",
            extra={"flow_id": str(state.flow_id), "node_id": state.current_node_id, "status": EXECUTION_WAITING},
        )
        return self.executions.get(session, state.execution_id)

    def _finish(self, session: Session, state: _RunState, result: Terminal) -> AutomationFlowExecution:
        message = result.message[:_ERROR_MESSAGE_LIMIT] if result.message else None
        won = self.executions.guarded_update(
            session,
            state.execution_id,
            expected_status=EXECUTION_RUNNING,
            expected_row_version=state.row_version,
            status=result.status,
            completed_at=self.clock(),
            resume_at=None,
            claimed_by=None,
            claim_expires_at=None,
            current_node_id=state.current_node_id,
            variables=dict(state.variables),
            history=list(state.history),
            step_count=state.step_count,
            error_kind=result.error_kind,
            error_message=message,
        )
        if not won:
            session.rollback()
            return self._drop(session, state)
        session.commit()
        state.row_version += 1

        observe_execution_status(result.status)
        event_type = (
            "automation.execution.completed" if result.status == EXECUTION_COMPLETED else "automation.execution.failed"
        )
        events.publish(
            events.build_envelope(
                event_type,
                _execution_payload(state, result.status, error_kind=result.error_kind, error_message=message),
                team_id=state.team_id,
            )
        )
        logger.info(
            "flow_execution_finished",
            extra={
                "flow_id": str(state.flow_id),
                "node_id": state.current_node_id,
                "status": result.status,
                "error_kind": result.error_kind,
            },
        )
        return self.executions.get(session, state.execution_id)

    def _fail_after_crash(self, session: Session, state: _RunState, exc: Exception) -> AutomationFlowExecution:
        execution = self.executions.get(session, state.execution_id)
        if execution is None or execution.status != EXECUTION_RUNNING:
            return execution
        state.row_version = execution.row_version
        return self._finish(
            session,
            state,
            Terminal(EXECUTION_FAILED, UNEXPECTED_STEP_ERROR, f"{exc.__class__.__name__}: {exc}"),
        )


_engine: FlowExecutionEngine | None = None


def get_flow_engine() -> FlowExecutionEngine:
    global _engine
    if _engine is None:
        _engine = FlowExecutionEngine()
    return _engine


def set_flow_engine(engine: FlowExecutionEngine | None) -> None:
    global _engine
    _engine = engine
