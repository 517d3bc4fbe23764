from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Any

from dealflow.context import get_correlation_id

audit_entries: list[dict[str, Any]] = []
_entries_lock = threading.Lock()


def record(
    *,
    actor_user_id: str,
    team: str,
    workflow_id: str,
    action: str,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    entry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor_user_id,
        "entity_type": "automation.workflow",
        "entity_id": workflow_id,
        "team": team,
        "action": action,
        "before": before,
        "after": after,
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    with _entries_lock:
        audit_entries.append(entry)
    return entry


def entries_for_workflow(workflow_id: str) -> list[dict[str, Any]]:
    with _entries_lock:
        return [entry for entry in audit_entries if entry["entity_id"] == workflow_id]
