from __future__ import annotations

import logging
from typing import Any

from dealflow.automations.errors import StoreUnavailableError
from dealflow.automations.runtime import get_runtime
from dealflow.automations.schemas import DomainEvent
from dealflow.core.celery_app import celery_app


logger = logging.getLogger("dealflow.automations.tasks")

DISPATCH_EVENT_TASK = "dealflow.automations.dispatch_event"


@celery_app.task(
    name=DISPATCH_EVENT_TASK,
    autoretry_for=(StoreUnavailableError,),
    retry_backoff=True,
    max_retries=5,
)
def dispatch_event(payload: dict[str, Any]) -> list[dict[str, Any]]:
    """Queued delivery of one domain event. Store outages are retried with backoff."""
    event = DomainEvent.model_validate(payload)
    results = get_runtime().engine.on_event(event)
    logger.info(
        "automation.event.dispatched",
        extra={"event_id": event.event_id, "event_type": event.type, "team": event.team},
    )
    return [result.model_dump(mode="json", by_alias=True) for result in results]
