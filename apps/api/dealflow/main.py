from contextlib import asynccontextmanager
import logging
from typing import Any

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from pydantic import ValidationError

from dealflow.api.routes import router as api_router
from dealflow.automations.errors import StoreUnavailableError
from dealflow.automations.executor import shutdown_shared_pool
from dealflow.automations.runtime import AutomationRuntime, get_runtime
from dealflow.automations.schemas import DomainEvent
from dealflow.core.config import get_settings
from dealflow.core.events import InProcessEventBus, InternalEvent, event_bus
from dealflow.logging import configure_logging
from dealflow.middleware.correlation_id import CorrelationIdMiddleware
from dealflow.middleware.rate_limit import AutomationMutationRateLimitMiddleware
from dealflow.middleware.request_logging import RequestLoggingMiddleware
from dealflow.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("dealflow.lifecycle")


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_type": event.name})


def _domain_event_payload(event: InternalEvent) -> dict[str, Any]:
    envelope = event.payload
    inner = envelope.get("payload")
    if "event_type" not in envelope or not isinstance(inner, dict):
        return envelope
    # Envelopes built by dealflow.events carry the deal under "payload".
    return {
        **inner,
        "type": envelope["event_type"],
        "team": envelope.get("team"),
        "eventId": envelope.get("event_id"),
        "correlationId": envelope.get("correlation_id"),
    }


class DealEventSubscriber:
    """Feeds deal events published on the in-process bus into one runtime's engine."""

    def __init__(self, runtime: AutomationRuntime) -> None:
        self.runtime = runtime

    def attach(self, bus: InProcessEventBus) -> None:
        for trigger in self.runtime.registry.list_triggers():
            bus.subscribe(trigger.id, self.handle)

    def detach(self, bus: InProcessEventBus) -> None:
        for trigger in self.runtime.registry.list_triggers():
            bus.unsubscribe(trigger.id, self.handle)

    def handle(self, event: InternalEvent) -> None:
        if not isinstance(event.payload, dict):
            return
        try:
            domain_event = DomainEvent.model_validate(_domain_event_payload(event))
        except ValidationError as exc:
            logger.warning("automation.event.rejected", extra={"event_type": event.name, "error": str(exc)[:500]})
            return
        if domain_event.type != event.name:
            logger.warning(
                "automation.event.rejected",
                extra={"event_type": event.name, "error": f"payload type {domain_event.type} does not match"},
            )
            return

        try:
            self.runtime.engine.on_event(domain_event)
        except StoreUnavailableError:
            logger.exception("automation.event.store_unavailable", extra={"event_type": event.name})
            raise


@asynccontextmanager
async def lifespan(app: FastAPI):
    subscriber = DealEventSubscriber(get_runtime())
    event_bus.subscribe("system.started", _on_system_started)
    subscriber.attach(event_bus)
    event_bus.publish("system.started", {"service": "api"})
    try:
        yield
    finally:
        subscriber.detach(event_bus)
        shutdown_shared_pool()


app = FastAPI(title="Dealflow API", version=get_settings().app_version, lifespan=lifespan)
app.add_middleware(AutomationMutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
setup_otel(settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
