from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from flowapp.automation.repository import FlowRepository
from flowapp.core.config import get_settings


logger = logging.getLogger("flowapp.automation.registry")


@dataclass(frozen=True)
class TriggerRegistration:
    flow_id: uuid.UUID
    team_id: str
    trigger_type: str
    trigger_config: Mapping[str, Any] = field(default_factory=dict)

    @property
    def continuation_window_seconds(self) -> float:
        raw = self.trigger_config.get("continuation_window_seconds")
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            return 0.0
        return max(float(raw), 0.0)


@dataclass(frozen=True)
class TriggerEvent:
    team_id: str
    contact_id: str
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TriggerMatch:
    registration: TriggerRegistration
    kind: Literal["start", "continue"]
    execution_id: uuid.UUID | None = None


ContinuationLookup = Callable[[TriggerRegistration, TriggerEvent, float], uuid.UUID | None]


def _parse_clock(value: Any) -> time | None:
    if not isinstance(value, str):
        return None
    try:
        hours, minutes = value.split(":", 1)
        return time(int(hours), int(minutes))
    except ValueError:
        return None


def within_schedule(schedule: Mapping[str, Any], now: datetime | None = None) -> bool:
    start = _parse_clock(schedule.get("start"))
    end = _parse_clock(schedule.get("end"))
    if start is None or end is None:
        return False
    try:
        zone = ZoneInfo(str(schedule.get("timezone") or get_settings().flow_default_timezone))
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return False

    current = (now or datetime.now(timezone.utc)).astimezone(zone).time()
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def _event_text(payload: Mapping[str, Any]) -> str:
    for key in ("message", "text", "content"):
        value = payload.get(key)
        if isinstance(value, str):
            return value
    return ""


def _keyword_matches(config: Mapping[str, Any], payload: Mapping[str, Any]) -> bool:
    text = _event_text(payload).strip().lower()
    if not text:
        return False
    match_type = config.get("match_type") or "contains"
    for keyword in config.get("keywords") or []:
        if not isinstance(keyword, str) or not keyword.strip():
            continue
        needle = keyword.strip().lower()
        if match_type == "exact" and text == needle:
            return True
        if match_type == "starts_with" and text.startswith(needle):
            return True
        if match_type == "ends_with" and text.endswith(needle):
            return True
        if match_type == "contains" and needle in text:
            return True
    return False


def _field_matches(config: Mapping[str, Any], payload: Mapping[str, Any]) -> bool:
    wanted = config.get("field")
    if payload.get("field") == wanted:
        return True
    changed = payload.get("changed_fields")
    return isinstance(changed, list) and wanted in changed


def predicate_matches(
    trigger_type: str,
    config: Mapping[str, Any],
    payload: Mapping[str, Any],
    now: datetime | None = None,
) -> bool:
    schedule = config.get("schedule")
    if trigger_type == "time_based":
        # gate only: a schedule never starts a flow by itself
        return False
    if isinstance(schedule, Mapping) and schedule and not within_schedule(schedule, now):
        return False

    if trigger_type == "message_received":
        message_types = config.get("message_types")
        if not message_types:
            return True
        return (payload.get("message_type") or "text") in message_types
    if trigger_type == "keyword":
        return _keyword_matches(config, payload)
    if trigger_type in ("tag_added", "tag_removed"):
        tag_id = config.get("tag_id")
        return bool(tag_id) and payload.get("tag_id") == tag_id
    if trigger_type == "field_updated":
        return _field_matches(config, payload)
    if trigger_type == "webhook":
        webhook_url = config.get("webhook_url")
        return bool(webhook_url) and payload.get("webhook_url") == webhook_url
    return False


class TriggerRegistry:
    """Process-local index of active flows by trigger type.

    Volatile: rebuild with ``reload`` at process start and keep in sync on every
    activate, deactivate and delete.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_type: dict[str, list[TriggerRegistration]] = {}

    def register(
        self,
        flow_id: uuid.UUID,
        team_id: str,
        trigger_type: str,
        trigger_config: Mapping[str, Any] | None = None,
    ) -> TriggerRegistration:
        registration = TriggerRegistration(
            flow_id=flow_id,
            team_id=team_id,
            trigger_type=trigger_type,
            trigger_config=dict(trigger_config or {}),
        )
        with self._lock:
            self._remove(flow_id, None)
            self._by_type.setdefault(trigger_type, []).append(registration)
        logger.info(
            "flow_trigger_registered",
            extra={"flow_id": str(flow_id), "team_id": team_id, "trigger_type": trigger_type},
        )
        return registration

    def unregister(self, flow_id: uuid.UUID, trigger_type: str | None = None) -> bool:
        with self._lock:
            removed = self._remove(flow_id, trigger_type)
        if removed:
            logger.info("flow_trigger_unregistered", extra={"flow_id": str(flow_id), "trigger_type": trigger_type})
        return removed

    def _remove(self, flow_id: uuid.UUID, trigger_type: str | None) -> bool:
        removed = False
        types = [trigger_type] if trigger_type else list(self._by_type)
        for key in types:
            current = self._by_type.get(key, [])
            kept = [item for item in current if item.flow_id != flow_id]
            if len(kept) != len(current):
                removed = True
                self._by_type[key] = kept
        return removed

    def clear(self) -> None:
        with self._lock:
            self._by_type.clear()

    def registrations(self, trigger_type: str | None = None) -> list[TriggerRegistration]:
        with self._lock:
            if trigger_type is not None:
                return list(self._by_type.get(trigger_type, []))
            return [item for items in self._by_type.values() for item in items]

    def is_registered(self, flow_id: uuid.UUID) -> bool:
        return any(item.flow_id == flow_id for item in self.registrations())

    def load(self, registrations: Iterable[TriggerRegistration]) -> int:
        fresh: dict[str, list[TriggerRegistration]] = {}
        count = 0
        for registration in registrations:
            fresh.setdefault(registration.trigger_type, []).append(registration)
            count += 1
        with self._lock:
            self._by_type = fresh
        return count

    def reload(self, session: Session) -> int:
        flows = FlowRepository().list_active(session)
        count = self.load(
            TriggerRegistration(
                flow_id=flow.id,
                team_id=flow.team_id,
                trigger_type=flow.trigger_type,
                trigger_config=dict(flow.trigger_config or {}),
            )
            for flow in flows
        )
        logger.info("flow_trigger_registry_reloaded", extra={"count": count})
        return count

    def match(
        self,
        trigger_type: str,
        event: TriggerEvent,
        continuation_lookup: ContinuationLookup | None = None,
        now: datetime | None = None,
    ) -> TriggerMatch | None:
        candidates = [item for item in self.registrations(trigger_type) if item.team_id == event.team_id]
        if not candidates:
            return None

        if continuation_lookup is not None:
            for registration in candidates:
                window = registration.continuation_window_seconds
                if window <= 0:
                    continue
                execution_id = continuation_lookup(registration, event, window)
                if execution_id is not None:
                    return TriggerMatch(registration=registration, kind="continue", execution_id=execution_id)

        for registration in candidates:
            if predicate_matches(trigger_type, registration.trigger_config, event.payload, now):
                return TriggerMatch(registration=registration, kind="start")
        return None


trigger_registry = TriggerRegistry()


def reset_trigger_registry() -> None:
    trigger_registry.clear()
