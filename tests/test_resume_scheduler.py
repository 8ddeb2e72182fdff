from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from flowapp import audit, events
from flowapp.automation.collaborators import (
    FlowCollaborators,
    HttpxHttpClient,
    InMemoryContactStore,
    StubAiCompletionService,
    StubMessagingGateway,
)
from flowapp.automation.engine import FlowExecutionEngine
from flowapp.automation.errors import AlreadyRunningError
from flowapp.automation.models import AutomationFlow
from flowapp.automation.repository import FlowExecutionRepository
from flowapp.automation.scheduler import ResumeScheduler
from flowapp.core.config import get_settings
from flowapp.core.database import Base


class WorkerCrash(BaseException):
    pass


class CrashingMessagingGateway(StubMessagingGateway):
    def send(self, *args: Any, **kwargs: Any) -> str | None:
        raise WorkerCrash("worker process killed mid-step")


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("AUTO_RUN_FLOW_JOBS", "true")
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def clock() -> Clock:
    return Clock()


@pytest.fixture()
def engine(clock: Clock) -> FlowExecutionEngine:
    collaborators = FlowCollaborators(
        contacts=InMemoryContactStore(),
        messaging=StubMessagingGateway(),
        ai=StubAiCompletionService(),
        http=HttpxHttpClient(),
    )
    return FlowExecutionEngine(collaborators, sleep=lambda _: None, clock=clock)


def _wait_flow(session: Session, seconds: int = 60) -> AutomationFlow:
    flow = AutomationFlow(
        team_id="team-1",
        name="Nudge",
        trigger_type="message_received",
        trigger_config={},
        nodes=[
            {"id": "t", "type": "trigger", "config": {}},
            {"id": "w", "type": "wait", "config": {"duration": seconds, "unit": "seconds"}},
            {"id": "m", "type": "send_message", "config": {"message": "Still interested?"}},
            {"id": "e", "type": "end", "config": {}},
        ],
        edges=[
            {"id": "e1", "source": "t", "target": "w"},
            {"id": "e2", "source": "w", "target": "m"},
            {"id": "e3", "source": "m", "target": "e"},
        ],
        variables={},
        is_active=True,
    )
    session.add(flow)
    session.commit()
    return flow


def test_scan_claims_only_due_executions_and_resumes_inline(
    db_session: Session,
    engine: FlowExecutionEngine,
    clock: Clock,
) -> None:
    short = _wait_flow(db_session, seconds=30)
    long = _wait_flow(db_session, seconds=600)
    due = engine.start(db_session, short.id, "c-1")
    not_due = engine.start(db_session, long.id, "c-1")

    clock.advance(31)
    result = ResumeScheduler(engine, worker_id="worker-a").run_once(db_session)

    assert result.claimed == [due.id]
    assert result.dispatched == 1
    assert FlowExecutionRepository().get(db_session, due.id).status == "Completed"
    assert FlowExecutionRepository().get(db_session, not_due.id).status == "Waiting"
    assert engine.collaborators.messaging.sent[0]["content"] == "Still interested?"


def test_claimed_execution_is_not_claimed_again_until_ttl_expires(
    db_session: Session,
    engine: FlowExecutionEngine,
    clock: Clock,
) -> None:
    flow = _wait_flow(db_session, seconds=10)
    execution = engine.start(db_session, flow.id, "c-1")
    clock.advance(11)

    dispatched: list[uuid.UUID] = []
    first = ResumeScheduler(engine, worker_id="worker-a", dispatch=dispatched.append)
    second = ResumeScheduler(engine, worker_id="worker-b", dispatch=dispatched.append)

    assert first.run_once(db_session).claimed == [execution.id]
    assert second.run_once(db_session).claimed == []
    assert dispatched == [execution.id]

    claimed = FlowExecutionRepository().get(db_session, execution.id)
    assert claimed.claimed_by == "worker-a"
    assert claimed.status == "Waiting"

    clock.advance(get_settings().flow_resume_claim_ttl_seconds + 1)
    assert second.run_once(db_session).claimed == [execution.id]


def test_concurrent_resume_calls_process_execution_once(
    db_session: Session,
    engine: FlowExecutionEngine,
    clock: Clock,
) -> None:
    flow = _wait_flow(db_session, seconds=5)
    execution = engine.start(db_session, flow.id, "c-1")
    clock.advance(6)

    first = engine.resume(db_session, execution.id)
    second = engine.resume(db_session, execution.id)

    assert first.status == "Completed"
    assert second.status == "Completed"
    assert len(engine.collaborators.messaging.sent) == 1
    resumed_events = [item for item in events.published_events if item["event_type"] == "automation.execution.resumed"]
    assert len(resumed_events) == 1


def test_cancelled_execution_is_never_claimed(
    db_session: Session,
    engine: FlowExecutionEngine,
    clock: Clock,
) -> None:
    flow = _wait_flow(db_session, seconds=5)
    execution = engine.start(db_session, flow.id, "c-1")
    engine.cancel(db_session, execution.id)
    clock.advance(60)

    dispatched: list[Any] = []
    result = ResumeScheduler(engine, worker_id="worker-a", dispatch=dispatched.append).run_once(db_session)

    assert result.claimed == []
    assert dispatched == []


def test_execution_left_running_by_crashed_worker_is_recovered_after_lease_expires(
    db_session: Session,
    engine: FlowExecutionEngine,
    clock: Clock,
) -> None:
    flow = _wait_flow(db_session, seconds=5)
    execution = engine.start(db_session, flow.id, "c-1")
    clock.advance(6)

    crashing = FlowExecutionEngine(
        FlowCollaborators(
            contacts=InMemoryContactStore(),
            messaging=CrashingMessagingGateway(),
            ai=StubAiCompletionService(),
            http=HttpxHttpClient(),
        ),
        sleep=lambda _: None,
        clock=clock,
        worker_id="worker-crashed",
    )
    with pytest.raises(WorkerCrash):
        crashing.resume(db_session, execution.id)
    db_session.rollback()

    stuck = FlowExecutionRepository().get(db_session, execution.id)
    assert stuck.status == "Running"
    assert stuck.current_node_id == "m"
    assert stuck.claimed_by == "worker-crashed"
    with pytest.raises(AlreadyRunningError):
        engine.start(db_session, flow.id, "c-1")

    recovering = ResumeScheduler(engine, worker_id="worker-b")
    clock.advance(60)
    assert recovering.run_once(db_session).claimed == []

    clock.advance(get_settings().flow_resume_claim_ttl_seconds)
    result = recovering.run_once(db_session)

    assert result.claimed == [execution.id]
    recovered = FlowExecutionRepository().get(db_session, execution.id)
    assert recovered.status == "Completed"
    assert recovered.claimed_by is None
    assert [message["content"] for message in engine.collaborators.messaging.sent] == ["Still interested?"]
    assert "recovered" in [entry["outcome"] for entry in recovered.history]

    restarted = engine.start(db_session, flow.id, "c-1")
    assert restarted.status == "Waiting"


def test_running_execution_with_live_lease_is_not_taken_over(
    db_session: Session,
    engine: FlowExecutionEngine,
    clock: Clock,
) -> None:
    flow = _wait_flow(db_session, seconds=5)
    execution = engine.start(db_session, flow.id, "c-1")
    clock.advance(6)

    crashing = FlowExecutionEngine(
        FlowCollaborators(
            contacts=InMemoryContactStore(),
            messaging=CrashingMessagingGateway(),
            ai=StubAiCompletionService(),
            http=HttpxHttpClient(),
        ),
        sleep=lambda _: None,
        clock=clock,
        worker_id="worker-crashed",
    )
    with pytest.raises(WorkerCrash):
        crashing.resume(db_session, execution.id)
    db_session.rollback()

    untouched = engine.resume(db_session, execution.id)

    assert untouched.status == "Running"
    assert untouched.claimed_by == "worker-crashed"
    assert engine.collaborators.messaging.sent == []
