from __future__ import annotations

import threading
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from dealflow.context import get_correlation_id
from dealflow.core.events import event_bus

# Recent envelopes only; the bus is the delivery path.
PUBLISHED_EVENTS_RETAINED = 1000
published_events: deque[dict[str, Any]] = deque(maxlen=PUBLISHED_EVENTS_RETAINED)
_published_lock = threading.Lock()


def build_envelope(event_type: str, team: str | None, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "team": team,
        "version": 1,
        "payload": payload,
    }


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    with _published_lock:
        published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
