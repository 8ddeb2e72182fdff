from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from flowapp.automation.engine import FlowExecutionEngine, set_flow_engine
from flowapp.automation.registry import reset_trigger_registry
from flowapp.core.config import get_settings
from flowapp.core.database import Base, get_db
from flowapp.main import app
from flowapp.otel import setup_inmemory_otel


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    reset_trigger_registry()
    yield
    get_settings.cache_clear()
    reset_trigger_registry()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


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


def _create_flow(client: TestClient) -> dict:
    response = client.post(
        "/api/automation/flows",
        json={
            "name": "Traced Flow",
            "trigger_type": "message_received",
            "is_active": True,
            "nodes": [
                {"id": "t", "type": "trigger", "config": {}},
                {"id": "m", "type": "send_message", "config": {"message": "Traced"}},
                {"id": "e", "type": "end", "config": {}},
            ],
            "edges": [
                {"id": "e1", "source": "t", "target": "m"},
                {"id": "e2", "source": "m", "target": "e"},
            ],
        },
        headers=TEAM_HEADERS,
    )
    assert response.status_code == 201
    return response.json()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.get("/api/automation/flows", headers={**TEAM_HEADERS, "X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_execution_spans_contain_execution_and_node_ids(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
) -> None:
    flow = _create_flow(client)

    response = client.post(
        f"/api/automation/flows/{flow['id']}/trigger",
        json={"contact_id": "c-1"},
        headers={**TEAM_HEADERS, "X-Correlation-Id": "otel-run-1"},
    )
    assert response.status_code == 202
    execution_id = response.json()["id"]

    spans = span_exporter.get_finished_spans()
    start_spans = [span for span in spans if span.name == "flow.start"]
    step_spans = [span for span in spans if span.name == "flow.step"]

    assert any(span.attributes.get("flow.execution_id") == execution_id for span in start_spans)
    assert [span.attributes.get("flow.node_id") for span in step_spans] == ["m", "e"]
    assert all(
        span.attributes.get("flow.execution_id") == execution_id
        and span.attributes.get("correlation_id") == "otel-run-1"
        for span in step_spans
    )
