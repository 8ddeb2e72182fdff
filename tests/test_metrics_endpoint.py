from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    reset_trigger_registry()
    yield
    get_settings.cache_clear()
    reset_trigger_registry()


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


def _run_flow(client: TestClient) -> None:
    flow = client.post(
        "/api/automation/flows",
        json={
            "name": "Metrics Flow",
            "trigger_type": "keyword",
            "trigger_config": {"keywords": ["metrics"]},
            "is_active": True,
            "nodes": [
                {"id": "t", "type": "trigger", "config": {}},
                {"id": "m", "type": "send_message", "config": {"message": "Counted"}},
                {"id": "e", "type": "end", "config": {}},
            ],
            "edges": [
                {"id": "e1", "source": "t", "target": "m"},
                {"id": "e2", "source": "m", "target": "e"},
            ],
        },
        headers=TEAM_HEADERS,
    )
    assert flow.status_code == 201

    fired = client.post(
        "/api/automation/triggers/fire",
        json={"trigger_type": "keyword", "contact_id": "c-1", "payload": {"message": "show metrics"}},
        headers=TEAM_HEADERS,
    )
    assert fired.status_code == 200
    assert fired.json()["outcome"] == "started"

    executions = client.get(f"/api/automation/flows/{flow.json()['id']}/executions", headers=TEAM_HEADERS)
    assert executions.status_code == 200


def test_metrics_endpoint_exposes_http_and_flow_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    _run_flow(client)

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "flow_executions_total" in body
    assert "flow_steps_total" in body
    assert "flow_trigger_matches_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/automation/flows/{id}/executions"' in body
    assert 'node_type="send_message"' in body
    assert 'status="Completed"' in body


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")

    assert response.status_code == 404
