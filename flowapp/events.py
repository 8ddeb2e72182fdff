from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from flowapp.context import get_correlation_id, get_execution_id
from flowapp.core.events import event_bus

published_events: list[dict[str, Any]] = []


def build_envelope(event_type: str, payload: dict[str, Any], *, team_id: str | None = None) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "team_id": team_id,
        "version": 1,
        "payload": payload,
    }


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    existing_meta = envelope.get("meta")
    meta: dict[str, Any] = existing_meta.copy() if isinstance(existing_meta, dict) else {}
    execution_id = get_execution_id()
    if execution_id is not None and "execution_id" not in meta:
        meta["execution_id"] = execution_id
    if meta:
        envelope["meta"] = meta

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
