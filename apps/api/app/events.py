from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id
from app.core.events import event_bus

PUBLISHED_EVENTS_LIMIT = 1000

# Recent envelopes only; older ones fall off the left.
published_events: deque[dict[str, Any]] = deque(maxlen=PUBLISHED_EVENTS_LIMIT)


def build_envelope(
    event_type: str,
    payload: dict[str, Any],
    *,
    actor_user_id: str | None = None,
    version: int = 1,
) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id or "system",
        "correlation_id": get_correlation_id(),
        "version": version,
        "payload": payload,
    }


def publish(envelope: dict[str, Any]) -> int:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        return event_bus.publish(event_type, envelope)
    return 0
