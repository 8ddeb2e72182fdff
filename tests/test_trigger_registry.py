from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from flowapp.automation.models import AutomationFlow
from flowapp.automation.registry import (
    TriggerEvent,
    TriggerRegistration,
    TriggerRegistry,
    predicate_matches,
    within_schedule,
)
from flowapp.core.config import get_settings
from flowapp.core.database import Base


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
    yield
    get_settings.cache_clear()


@pytest.fixture()
def registry() -> TriggerRegistry:
    return TriggerRegistry()


def test_keyword_match_types_are_case_insensitive() -> None:
    payload = {"message": "  Please send the PRICING sheet  "}
    assert predicate_matches("keyword", {"keywords": ["pricing"]}, payload)
    assert not predicate_matches("keyword", {"keywords": ["pricing"], "match_type": "exact"}, payload)
    assert predicate_matches("keyword", {"keywords": ["please"], "match_type": "starts_with"}, payload)
    assert predicate_matches("keyword", {"keywords": ["sheet"], "match_type": "ends_with"}, payload)
    assert not predicate_matches("keyword", {"keywords": ["refund"]}, payload)


def test_tag_field_and_webhook_predicates() -> None:
    assert predicate_matches("tag_added", {"tag_id": "vip"}, {"tag_id": "vip"})
    assert not predicate_matches("tag_removed", {"tag_id": "vip"}, {"tag_id": "beta"})
    assert predicate_matches("field_updated", {"field": "email"}, {"changed_fields": ["phone", "email"]})
    assert predicate_matches("webhook", {"webhook_url": "/hooks/a"}, {"webhook_url": "/hooks/a"})
    assert not predicate_matches("webhook", {"webhook_url": "/hooks/a"}, {"webhook_url": "/hooks/b"})


def test_message_received_filters_on_message_types() -> None:
    assert predicate_matches("message_received", {}, {"message": "hi"})
    assert predicate_matches("message_received", {"message_types": ["image"]}, {"message_type": "image"})
    assert not predicate_matches("message_received", {"message_types": ["image"]}, {"message": "hi"})


def test_time_based_trigger_never_starts_a_flow_by_itself() -> None:
    config = {"schedule": {"start": "00:00", "end": "23:59"}}
    assert predicate_matches("time_based", config, {"message": "hi"}) is False


def test_schedule_gates_other_trigger_types() -> None:
    config = {"schedule": {"start": "09:00", "end": "17:00", "timezone": "UTC"}}
    inside = datetime(2026, 3, 2, 10, 30, tzinfo=timezone.utc)
    outside = datetime(2026, 3, 2, 20, 0, tzinfo=timezone.utc)
    assert predicate_matches("message_received", config, {"message": "hi"}, inside)
    assert not predicate_matches("message_received", config, {"message": "hi"}, outside)


def test_schedule_window_can_wrap_midnight() -> None:
    schedule = {"start": "22:00", "end": "06:00", "timezone": "UTC"}
    assert within_schedule(schedule, datetime(2026, 3, 2, 23, 15, tzinfo=timezone.utc))
    assert within_schedule(schedule, datetime(2026, 3, 2, 5, 59, tzinfo=timezone.utc))
    assert not within_schedule(schedule, datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc))


def test_register_replaces_and_unregister_is_idempotent(registry: TriggerRegistry) -> None:
    flow_id = uuid.uuid4()
    registry.register(flow_id, "team-1", "keyword", {"keywords": ["hi"]})
    registry.register(flow_id, "team-1", "tag_added", {"tag_id": "vip"})

    assert registry.registrations("keyword") == []
    assert [item.flow_id for item in registry.registrations("tag_added")] == [flow_id]

    assert registry.unregister(flow_id) is True
    assert registry.unregister(flow_id) is False
    assert registry.is_registered(flow_id) is False


def test_match_is_scoped_to_team_and_first_registration_wins(registry: TriggerRegistry) -> None:
    first = uuid.uuid4()
    second = uuid.uuid4()
    other_team = uuid.uuid4()
    registry.register(other_team, "team-2", "keyword", {"keywords": ["hello"]})
    registry.register(first, "team-1", "keyword", {"keywords": ["hello"]})
    registry.register(second, "team-1", "keyword", {"keywords": ["hello"]})

    match = registry.match("keyword", TriggerEvent(team_id="team-1", contact_id="c-1", payload={"message": "hello"}))

    assert match is not None
    assert match.kind == "start"
    assert match.registration.flow_id == first


def test_match_prefers_continuation_within_window(registry: TriggerRegistry) -> None:
    waiting_flow = uuid.uuid4()
    fresh_flow = uuid.uuid4()
    execution_id = uuid.uuid4()
    registry.register(fresh_flow, "team-1", "message_received", {})
    registry.register(waiting_flow, "team-1", "message_received", {"continuation_window_seconds": 300})

    calls: list[tuple[TriggerRegistration, float]] = []

    def lookup(registration: TriggerRegistration, event: TriggerEvent, window: float) -> uuid.UUID | None:
        calls.append((registration, window))
        return execution_id if registration.flow_id == waiting_flow else None

    match = registry.match(
        "message_received",
        TriggerEvent(team_id="team-1", contact_id="c-1", payload={"message": "yes"}),
        continuation_lookup=lookup,
    )

    assert match is not None
    assert match.kind == "continue"
    assert match.execution_id == execution_id
    assert [(item.flow_id, window) for item, window in calls] == [(waiting_flow, 300.0)]


def test_no_match_returns_none(registry: TriggerRegistry) -> None:
    registry.register(uuid.uuid4(), "team-1", "keyword", {"keywords": ["hello"]})
    assert registry.match("keyword", TriggerEvent(team_id="team-1", contact_id="c-1", payload={"message": "bye"})) is None
    assert registry.match("webhook", TriggerEvent(team_id="team-1", contact_id="c-1")) is None


def test_reload_rebuilds_from_active_flows(registry: TriggerRegistry, db_session: Session) -> None:
    active = AutomationFlow(
        team_id="team-1",
        name="Active",
        trigger_type="keyword",
        trigger_config={"keywords": ["hi"]},
        nodes=[],
        edges=[],
        variables={},
        is_active=True,
    )
    inactive = AutomationFlow(
        team_id="team-1",
        name="Inactive",
        trigger_type="keyword",
        trigger_config={"keywords": ["hi"]},
        nodes=[],
        edges=[],
        variables={},
        is_active=False,
    )
    deleted = AutomationFlow(
        team_id="team-1",
        name="Deleted",
        trigger_type="keyword",
        trigger_config={"keywords": ["hi"]},
        nodes=[],
        edges=[],
        variables={},
        is_active=True,
        deleted_at=datetime.now(timezone.utc),
    )
    db_session.add_all([active, inactive, deleted])
    db_session.commit()

    registry.register(uuid.uuid4(), "team-9", "webhook", {"webhook_url": "/stale"})
    count = registry.reload(db_session)

    assert count == 1
    assert [item.flow_id for item in registry.registrations()] == [active.id]
