from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from datetime import datetime, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient

from dealflow import audit, events
from dealflow.automations.api import get_current_user
from dealflow.automations.errors import StoreUnavailableError
from dealflow.automations.runtime import AutomationRuntime, build_runtime, get_runtime
from dealflow.automations.schemas import WorkflowCreate, WorkflowRead
from dealflow.automations.service import ActorUser
from dealflow.automations.store import InMemoryWorkflowStore
from dealflow.core.config import get_settings
from dealflow.core.events import event_bus
from dealflow.main import DealEventSubscriber, app
from dealflow.middleware.rate_limit import reset_rate_limiter


class FlakyStore(InMemoryWorkflowStore):
    def __init__(self) -> None:
        super().__init__()
        self.unavailable = False

    def list_by_team(self, team: str):  # type: ignore[no-untyped-def]
        if self.unavailable:
            raise StoreUnavailableError("workflow store unavailable: OperationalError")
        return super().list_by_team(team)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def store() -> FlakyStore:
    return FlakyStore()


@pytest.fixture()
def runtime(store: FlakyStore) -> AutomationRuntime:
    return build_runtime(store=store, timeout_seconds=2)


@pytest.fixture()
def client(runtime: AutomationRuntime) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    actors = {
        "manager": ActorUser(
            user_id="manager-1",
            team_ids={"team-a"},
            permissions={"automations.read", "automations.manage"},
            correlation_id="auto-manager-corr",
        ),
        "executor": ActorUser(
            user_id="executor-1",
            team_ids={"team-a"},
            permissions={"automations.read", "automations.execute"},
            correlation_id="auto-exec-corr",
        ),
        "viewer": ActorUser(
            user_id="viewer-1",
            team_ids={"team-a"},
            permissions={"automations.read"},
            correlation_id="auto-view-corr",
        ),
        "team_b_manager": ActorUser(
            user_id="manager-b",
            team_ids={"team-b"},
            permissions={"automations.read", "automations.manage", "automations.execute"},
            correlation_id="auto-team-b-corr",
        ),
        "admin": ActorUser(
            user_id="admin-1",
            team_ids=set(),
            permissions={"automations.read", "automations.manage", "automations.execute"},
            is_super_admin=True,
        ),
    }
    state = {"current": "manager"}

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_runtime] = lambda: runtime
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _workflow_body(**overrides: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "team": "team-a",
        "name": "  Won follow-up  ",
        "description": "Kick off delivery when a deal is won",
        "trigger": {"type": "deal_stage_changed", "config": {"toStage": "Won"}},
        "conditions": [{"field": "amount", "operator": "greater_than", "value": "1000"}],
        "actions": [
            {"type": "create_task", "config": {"title": "Kickoff for {{dealName}}", "priority": "high"}},
            {
                "type": "send_email",
                "config": {"to": "owner@example.com", "subject": "Won", "template": "{{dealName}} closed"},
            },
        ],
    }
    body.update(overrides)
    return body


def _deal(stage: str = "Won", amount: str = "25000", team: str = "team-a") -> dict[str, Any]:
    return {"id": "deal-42", "team": team, "name": "Acme renewal", "stage": stage, "amount": amount}


def _create(test_client: TestClient, **overrides: Any) -> dict[str, Any]:
    response = test_client.post("/api/automations", json=_workflow_body(**overrides))
    assert response.status_code == 201, response.text
    return response.json()


def test_available_catalog_endpoints(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    triggers = test_client.get("/api/automations/available/triggers")
    actions = test_client.get("/api/automations/available/actions")

    assert triggers.status_code == 200
    assert triggers.json()[0]["id"] == "deal_created"
    stage_changed = next(item for item in triggers.json() if item["id"] == "deal_stage_changed")
    assert stage_changed["config"]["toStage"]["type"] == "select"
    assert "Won" in stage_changed["config"]["toStage"]["options"]

    assert actions.status_code == 200
    assert [item["id"] for item in actions.json()][:2] == ["send_email", "create_task"]


def test_workflow_crud_round_trip(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    created = _create(test_client)
    assert created["name"] == "Won follow-up"
    assert created["enabled"] is True
    assert created["trigger"] == {"type": "deal_stage_changed", "config": {"toStage": "Won"}}
    assert created["stats"]["totalExecutions"] == 0
    assert created["createdBy"] == "manager-1"

    workflow_id = created["id"]
    fetched = test_client.get(f"/api/automations/{workflow_id}")
    assert fetched.status_code == 200
    assert fetched.json()["actions"][0]["config"]["priority"] == "high"

    listed = test_client.get("/api/automations/team/team-a")
    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()] == [workflow_id]

    updated = test_client.put(
        f"/api/automations/{workflow_id}",
        json={"name": "Won handoff", "actions": [{"type": "add_tag", "config": {"tag": "handoff"}}]},
    )
    assert updated.status_code == 200
    assert updated.json()["name"] == "Won handoff"
    assert updated.json()["conditions"] == created["conditions"]
    assert [item["type"] for item in updated.json()["actions"]] == ["add_tag"]

    deleted = test_client.delete(f"/api/automations/{workflow_id}")
    assert deleted.status_code == 200
    assert deleted.json() == {"status": "deleted"}

    missing = test_client.get(f"/api/automations/{workflow_id}")
    assert missing.status_code == 404
    assert missing.json()["code"] == "automation_workflow_get_failed"
    assert test_client.get("/api/automations/team/team-a").json() == []

    actions = [entry["action"] for entry in audit.entries_for_workflow(workflow_id)]
    assert actions == [
        "automation.workflow.created",
        "automation.workflow.updated",
        "automation.workflow.deleted",
    ]
    assert audit.audit_entries[0]["correlation_id"] == "auto-manager-corr"


def test_invalid_definition_returns_field_errors(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.post(
        "/api/automations",
        json=_workflow_body(
            trigger={"type": "deal_stage_changed", "config": {"toStage": "Closed"}},
            conditions=[{"field": "amount", "operator": "greater_than", "value": ""}],
            actions=[
                {"type": "send_email", "config": {"to": "owner@example.com"}},
                {"type": "fax_deal", "config": {}},
            ],
        ),
        headers={"X-Correlation-Id": "auto-422"},
    )

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "automation_workflow_create_failed"
    assert body["message"] == "validation failed"
    assert body["correlation_id"] == "auto-422"
    assert [(item["field"], item["code"]) for item in body["details"]] == [
        ("trigger.config.toStage", "invalid"),
        ("conditions[0].value", "missing"),
        ("actions[0].config.subject", "missing"),
        ("actions[0].config.template", "missing"),
        ("actions[1].type", "unknown_type"),
    ]
    assert audit.audit_entries == []


def test_unknown_trigger_and_empty_actions_are_rejected(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.post(
        "/api/automations",
        json=_workflow_body(trigger={"type": "contact_created"}, actions=[]),
    )

    assert response.status_code == 422
    assert [(item["field"], item["code"]) for item in response.json()["details"]] == [
        ("trigger.type", "unknown_type"),
        ("actions", "missing"),
    ]


def test_update_validates_the_merged_definition(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    created = _create(test_client)

    response = test_client.put(
        f"/api/automations/{created['id']}",
        json={"actions": [{"type": "change_stage", "config": {"newStage": "Archived"}}]},
    )

    assert response.status_code == 422
    assert response.json()["details"][0]["field"] == "actions[0].config.newStage"
    assert test_client.get(f"/api/automations/{created['id']}").json()["actions"] == created["actions"]


def test_permissions_and_team_scoping(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    created = _create(test_client)

    set_actor("viewer")
    assert test_client.get(f"/api/automations/{created['id']}").status_code == 200
    forbidden_create = test_client.post("/api/automations", json=_workflow_body())
    assert forbidden_create.status_code == 403
    assert forbidden_create.json()["message"] == "Missing permission: automations.manage"
    assert test_client.patch(f"/api/automations/{created['id']}/toggle").status_code == 403
    assert test_client.delete(f"/api/automations/{created['id']}").status_code == 403

    set_actor("team_b_manager")
    assert test_client.get(f"/api/automations/{created['id']}").status_code == 403
    assert test_client.get("/api/automations/team/team-a").status_code == 403
    assert test_client.post("/api/automations", json=_workflow_body()).status_code == 403
    assert test_client.put(f"/api/automations/{created['id']}", json={"name": "Hijack"}).status_code == 403

    set_actor("admin")
    assert test_client.get("/api/automations/team/team-a").status_code == 200
    assert test_client.get(f"/api/automations/{created['id']}").json()["name"] == "Won follow-up"


def test_toggle_and_reset_stats(client: tuple[TestClient, Callable[[str], None]], runtime: AutomationRuntime) -> None:
    test_client, _ = client
    created = _create(test_client)
    workflow_id = uuid.UUID(created["id"])
    runtime.store.increment_stats(workflow_id, "success", datetime.now(timezone.utc))
    runtime.store.increment_stats(workflow_id, "failure", datetime.now(timezone.utc))

    toggled = test_client.patch(f"/api/automations/{workflow_id}/toggle")
    assert toggled.status_code == 200
    assert toggled.json()["enabled"] is False
    assert toggled.json()["stats"]["totalExecutions"] == 2

    reset = test_client.post(f"/api/automations/{workflow_id}/reset-stats")
    assert reset.status_code == 200
    assert reset.json()["stats"] == {
        "totalExecutions": 0,
        "successfulExecutions": 0,
        "failedExecutions": 0,
        "lastExecutedAt": None,
    }

    entries = audit.entries_for_workflow(str(workflow_id))
    assert entries[1]["before"] == {"enabled": True}
    assert entries[1]["after"] == {"enabled": False}
    assert entries[2]["before"]["total_executions"] == 2


def test_deliver_event_runs_matching_workflows(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    created = _create(test_client)

    set_actor("executor")
    response = test_client.post(
        "/api/automations/events",
        json={
            "type": "deal_stage_changed",
            "team": "team-a",
            "deal": _deal("Won"),
            "previousDeal": _deal("Negotiation"),
            "eventId": "evt-api-1",
        },
        headers={"X-Correlation-Id": "auto-event-corr"},
    )

    assert response.status_code == 200
    results = response.json()
    assert len(results) == 1
    assert results[0]["workflowId"] == created["id"]
    assert results[0]["matched"] is True
    assert results[0]["succeeded"] is True
    assert [item["actionType"] for item in results[0]["actionResults"]] == ["create_task", "send_email"]

    published_types = [envelope["event_type"] for envelope in events.published_events]
    assert published_types == ["crm.task.create_requested", "email.send_requested", "automation.workflow.executed"]
    assert all(envelope["correlation_id"] == "auto-event-corr" for envelope in events.published_events)

    history = test_client.get(f"/api/automations/{created['id']}/history")
    assert history.status_code == 200
    assert history.json()["stats"]["successfulExecutions"] == 1
    assert history.json()["history"][0]["eventId"] == "evt-api-1"
    assert history.json()["history"][0]["status"] == "success"


def test_deliver_event_requires_execute_permission_and_team(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    _create(test_client)
    event = {"type": "deal_created", "team": "team-a", "deal": _deal("Lead")}

    set_actor("viewer")
    assert test_client.post("/api/automations/events", json=event).status_code == 403

    set_actor("team_b_manager")
    assert test_client.post("/api/automations/events", json=event).status_code == 403


def test_deliver_event_rejects_cross_team_deal(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.post(
        "/api/automations/events",
        json={"type": "deal_created", "team": "team-a", "deal": _deal("Lead", team="team-b")},
    )

    assert response.status_code == 422


def test_history_limit_is_bounded(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    created = _create(test_client)

    assert test_client.get(f"/api/automations/{created['id']}/history?limit=0").status_code == 422
    bounded = test_client.get(f"/api/automations/{created['id']}/history?limit=500")
    assert bounded.status_code == 200
    assert bounded.json()["history"] == []


def test_manual_execute(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    created = _create(test_client)
    url = f"/api/automations/{created['id']}/execute"

    set_actor("viewer")
    assert test_client.post(url, json={"deal": _deal()}).status_code == 403

    set_actor("executor")
    not_matching = test_client.post(url, json={"deal": _deal(amount="10")})
    assert not_matching.status_code == 400
    assert not_matching.json()["message"] == "deal does not meet workflow conditions"

    foreign = test_client.post(url, json={"deal": _deal(team="team-b")})
    assert foreign.status_code == 403

    executed = test_client.post(url, json={"deal": _deal()})
    assert executed.status_code == 200
    assert executed.json()["succeeded"] is True
    assert executed.json()["workflowId"] == created["id"]

    set_actor("manager")
    test_client.patch(f"/api/automations/{created['id']}/toggle")
    set_actor("executor")
    inactive = test_client.post(url, json={"deal": _deal()})
    assert inactive.status_code == 409
    assert inactive.json()["code"] == "automation_workflow_execute_failed"

    manual_entries = [
        entry for entry in audit.audit_entries if entry["action"] == "automation.workflow.executed_manually"
    ]
    assert len(manual_entries) == 1
    assert manual_entries[0]["actor_user_id"] == "executor-1"


def test_unknown_workflow_returns_404(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    missing = uuid.uuid4()

    assert test_client.get(f"/api/automations/{missing}").status_code == 404
    assert test_client.patch(f"/api/automations/{missing}/toggle").status_code == 404
    assert test_client.post(f"/api/automations/{missing}/reset-stats").status_code == 404
    assert test_client.post(f"/api/automations/{missing}/execute", json={"deal": _deal()}).status_code == 404


def test_store_outage_maps_to_503(client: tuple[TestClient, Callable[[str], None]], store: FlakyStore) -> None:
    test_client, _ = client
    store.unavailable = True

    response = test_client.get("/api/automations/team/team-a")

    assert response.status_code == 503
    assert response.json()["code"] == "automation_store_unavailable"


@pytest.fixture()
def subscriber(runtime: AutomationRuntime) -> Generator[DealEventSubscriber, None, None]:
    deal_subscriber = DealEventSubscriber(runtime)
    deal_subscriber.attach(event_bus)
    yield deal_subscriber
    deal_subscriber.detach(event_bus)


def _stored_workflow(runtime: AutomationRuntime) -> WorkflowRead:
    return runtime.store.create(WorkflowCreate.model_validate(_workflow_body()))


def test_bus_events_reach_the_engine(subscriber: DealEventSubscriber, runtime: AutomationRuntime) -> None:
    created = _stored_workflow(runtime)

    events.publish(
        events.build_envelope(
            "deal_stage_changed",
            "team-a",
            {"deal": _deal("Won"), "previousDeal": _deal("Proposal")},
        )
    )

    workflow = runtime.store.get(created.id)
    assert workflow is not None
    assert workflow.stats.total_executions == 1
    assert workflow.stats.successful_executions == 1


def test_malformed_bus_events_are_dropped(subscriber: DealEventSubscriber, runtime: AutomationRuntime) -> None:
    created = _stored_workflow(runtime)

    events.publish(events.build_envelope("deal_stage_changed", "team-a", {"deal": {"id": "deal-1"}}))

    workflow = runtime.store.get(created.id)
    assert workflow is not None
    assert workflow.stats.total_executions == 0


def test_detached_subscriber_stops_feeding_the_engine(runtime: AutomationRuntime) -> None:
    created = _stored_workflow(runtime)
    deal_subscriber = DealEventSubscriber(runtime)
    deal_subscriber.attach(event_bus)
    deal_subscriber.detach(event_bus)

    events.publish(
        events.build_envelope(
            "deal_stage_changed",
            "team-a",
            {"deal": _deal("Won"), "previousDeal": _deal("Proposal")},
        )
    )

    workflow = runtime.store.get(created.id)
    assert workflow is not None
    assert workflow.stats.total_executions == 0
