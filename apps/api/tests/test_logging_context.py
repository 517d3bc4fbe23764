from __future__ import annotations

import json
import logging
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from dealflow.automations.api import get_current_user
from dealflow.automations.runtime import build_runtime, get_runtime
from dealflow.automations.service import ActorUser
from dealflow.automations.store import InMemoryWorkflowStore
from dealflow.context import reset_correlation_id, set_correlation_id
from dealflow.core.config import get_settings
from dealflow.logging import JsonLogFormatter
from dealflow.main import app
from dealflow.middleware.rate_limit import reset_rate_limiter


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


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


def _create_workflow(client: TestClient) -> dict:
    response = client.post(
        "/api/automations",
        json={
            "team": "team-a",
            "name": "Notify on amount change",
            "trigger": {"type": "deal_amount_changed"},
            "actions": [
                {"type": "notify_user", "config": {"userId": "user-9", "title": "Amount", "message": "{{dealAmount}}"}},
                {"type": "create_task", "config": {"title": "Review", "dueDate": "soon"}},
            ],
        },
    )
    assert response.status_code == 201
    return response.json()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/api/automations/00000000-0000-4000-8000-000000000000", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [
        record for record in caplog.records if record.name == "dealflow.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/automations/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_logs_include_workflow_context_and_correlation_id(
    client: TestClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    workflow = _create_workflow(client)

    response = client.post(
        "/api/automations/events",
        json={
            "type": "deal_amount_changed",
            "team": "team-a",
            "deal": {"id": "deal-3", "team": "team-a", "amount": "900"},
            "eventId": "evt-log-1",
        },
        headers={"X-Correlation-Id": "abc-456"},
    )
    assert response.status_code == 200

    engine_records = [record for record in caplog.records if record.name == "dealflow.automations.engine"]
    assert any(
        record.getMessage() == "automation.event.received"
        and getattr(record, "event_id", None) == "evt-log-1"
        and getattr(record, "candidate_count", None) == 1
        and getattr(record, "correlation_id", None) == "abc-456"
        for record in engine_records
    )
    assert any(
        record.getMessage() == "automation.workflow.executed"
        and getattr(record, "workflow_id", None) == workflow["id"]
        and getattr(record, "outcome", None) == "failure"
        and getattr(record, "correlation_id", None) == "abc-456"
        for record in engine_records
    )

    action_records = [record for record in caplog.records if record.name == "dealflow.automations.executor"]
    assert any(
        record.getMessage() == "automation.action.failed"
        and getattr(record, "action_type", None) == "create_task"
        and "dueDate" in str(getattr(record, "error", ""))
        for record in action_records
    )


def test_json_formatter_emits_known_fields_only() -> None:
    token = set_correlation_id("fmt-corr-1")
    try:
        record = logging.getLogger("dealflow.automations.engine").makeRecord(
            "dealflow.automations.engine",
            logging.INFO,
            __file__,
            1,
            "automation.workflow.executed",
            (),
            None,
            extra={
                "workflow_id": "wf-1",
                "outcome": "success",
                "secret_token": "do-not-log",
                "error": "x" * 800,
            },
        )
    finally:
        reset_correlation_id(token)

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "automation.workflow.executed"
    assert payload["correlation_id"] == "fmt-corr-1"
    assert payload["fields"]["workflow_id"] == "wf-1"
    assert payload["fields"]["outcome"] == "success"
    assert "secret_token" not in payload["fields"]
    assert len(payload["fields"]["error"]) == 500
