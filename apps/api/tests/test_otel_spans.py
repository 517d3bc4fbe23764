from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

os.environ.setdefault("OTEL_ENABLED", "true")

from dealflow.automations.api import get_current_user
from dealflow.automations.runtime import build_runtime, get_runtime
from dealflow.automations.service import ActorUser
from dealflow.automations.store import InMemoryWorkflowStore
from dealflow.core.config import Settings, get_settings
from dealflow.main import app
from dealflow.middleware.rate_limit import reset_rate_limiter
from dealflow.otel import setup_inmemory_otel


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel(Settings(otel_enabled=True))
    exporter.clear()
    return exporter


@pytest.fixture()
def client() -> Generator[TestClient, None, None]:
    runtime = build_runtime(store=InMemoryWorkflowStore(), timeout_seconds=2)

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            team_ids={"team-a"},
            permissions={"automations.read", "automations.manage", "automations.execute"},
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_runtime] = lambda: runtime
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.get("/api/automations/team/team-a", headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_engine_spans_cover_event_workflow_and_actions(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
) -> None:
    created = client.post(
        "/api/automations",
        json={
            "team": "team-a",
            "name": "OTel workflow",
            "trigger": {"type": "deal_created"},
            "actions": [{"type": "add_tag", "config": {"tag": "traced"}}],
        },
    )
    assert created.status_code == 201

    response = client.post(
        "/api/automations/events",
        json={"type": "deal_created", "team": "team-a", "deal": {"id": "deal-7", "team": "team-a"}, "eventId": "evt-otel"},
        headers={"X-Correlation-Id": "otel-engine-1"},
    )
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    event_spans = [span for span in spans if span.name == "automation.on_event"]
    run_spans = [span for span in spans if span.name == "automation.workflow.run"]
    action_spans = [span for span in spans if span.name == "automation.action.execute"]

    assert any(
        span.attributes.get("event_id") == "evt-otel" and span.attributes.get("event_type") == "deal_created"
        for span in event_spans
    )
    assert any(
        span.attributes.get("workflow_id") == created.json()["id"]
        and span.attributes.get("deal_id") == "deal-7"
        and span.attributes.get("outcome") == "success"
        for span in run_spans
    )
    assert any(
        span.attributes.get("action_type") == "add_tag"
        and span.attributes.get("ok") is True
        and span.attributes.get("correlation_id") == "otel-engine-1"
        for span in action_spans
    )
