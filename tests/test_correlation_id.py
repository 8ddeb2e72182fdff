from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from flowapp import audit, events
from flowapp.automation.engine import FlowExecutionEngine, set_flow_engine
from flowapp.automation.registry import reset_trigger_registry
from flowapp.core.config import get_settings
from flowapp.core.database import Base, get_db
from flowapp.main import app


TEAM_HEADERS = {"X-Team-Id": "team-1"}


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
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_trigger_registry()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_trigger_registry()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    set_flow_engine(FlowExecutionEngine(sleep=lambda _: None))
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    set_flow_engine(None)


def _create_active_flow(client: TestClient, correlation_id: str) -> dict:
    response = client.post(
        "/api/automation/flows",
        json={
            "name": "Corr Flow",
            "trigger_type": "message_received",
            "is_active": True,
            "nodes": [
                {"id": "t", "type": "trigger", "config": {}},
                {"id": "m", "type": "send_message", "config": {"message": "hi"}},
                {"id": "e", "type": "end", "config": {}},
            ],
            "edges": [
                {"id": "e1", "source": "t", "target": "m"},
                {"id": "e2", "source": "m", "target": "e"},
            ],
        },
        headers={**TEAM_HEADERS, "X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/automation/flows/{uuid.uuid4()}", headers=TEAM_HEADERS)
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(
        f"/api/automation/flows/{uuid.uuid4()}",
        headers={**TEAM_HEADERS, "X-Correlation-Id": "abc-123"},
    )
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_correlation_id_propagates_to_audit_and_execution_events(client: TestClient) -> None:
    flow = _create_active_flow(client, "corr-create-1")
    created_audit = audit.entries_for("automation.flow", flow["id"])
    assert created_audit[0]["correlation_id"] == "corr-create-1"

    response = client.post(
        f"/api/automation/flows/{flow['id']}/trigger",
        json={"contact_id": "c-1"},
        headers={**TEAM_HEADERS, "X-Correlation-Id": "corr-run-1"},
    )
    assert response.status_code == 202
    execution_id = response.json()["id"]

    execution_events = [
        envelope for envelope in events.published_events if envelope["event_type"].startswith("automation.execution.")
    ]
    assert [envelope["event_type"] for envelope in execution_events] == [
        "automation.execution.started",
        "automation.execution.completed",
    ]
    assert all(envelope["correlation_id"] == "corr-run-1" for envelope in execution_events)
    assert execution_events[-1]["meta"]["execution_id"] == execution_id


def test_oversized_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get(
        f"/api/automation/flows/{uuid.uuid4()}",
        headers={**TEAM_HEADERS, "X-Correlation-Id": "x" * 500},
    )

    header_value = response.headers["x-correlation-id"]
    assert header_value != "x" * 500
    assert uuid.UUID(header_value)
    assert response.json()["correlation_id"] == header_value
