from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from typing import Any, Protocol

import httpx

from dealflow import events
from dealflow.automations.conditions import resolve_field, to_comparable_string
from dealflow.automations.errors import CapabilityError
from dealflow.automations.schemas import DealSnapshot, WorkflowRead


Publisher = Callable[[dict[str, Any]], None]

UPDATABLE_DEAL_FIELDS = {"name", "stage", "amount", "probability", "closeDate", "ownerId", "description"}
TASK_PRIORITIES = {"low", "medium", "high"}
WEBHOOK_METHODS = {"POST", "PUT", "PATCH"}

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")


@dataclass(frozen=True)
class ActionContext:
    deal: DealSnapshot
    team: str
    workflow: WorkflowRead
    previous_deal: DealSnapshot | None = None
    event_id: str | None = None
    correlation_id: str | None = None


class ActionCapability(Protocol):
    """Back-end reached by one action type. Raising signals failure."""

    def invoke(self, config: dict[str, str], context: ActionContext) -> None: ...


def template_variables(deal: DealSnapshot) -> dict[str, str]:
    return {
        "dealId": deal.id,
        "dealName": to_comparable_string(resolve_field(deal, "name")),
        "dealAmount": to_comparable_string(resolve_field(deal, "amount")),
        "dealStage": to_comparable_string(resolve_field(deal, "stage")),
        "dealProbability": to_comparable_string(resolve_field(deal, "probability")),
        "dealCloseDate": to_comparable_string(resolve_field(deal, "closeDate")),
    }


def render_template(template: str, deal: DealSnapshot) -> str:
    variables = template_variables(deal)

    def _substitute(match: re.Match[str]) -> str:
        return variables.get(match.group(1), match.group(0))

    return _PLACEHOLDER_RE.sub(_substitute, template)


def _intent(event_type: str, context: ActionContext, payload: dict[str, Any]) -> dict[str, Any]:
    envelope = events.build_envelope(
        event_type,
        context.team,
        {
            "workflow_id": str(context.workflow.id),
            "deal_id": context.deal.id,
            **payload,
        },
    )
    envelope["correlation_id"] = context.correlation_id
    envelope["meta"] = {"source_event_id": context.event_id}
    return envelope


class _IntentCapability:
    def __init__(self, publisher: Publisher | None = None) -> None:
        self._publisher = publisher or events.publish

    def _publish(self, event_type: str, context: ActionContext, payload: dict[str, Any]) -> None:
        self._publisher(_intent(event_type, context, payload))


class DealFieldUpdater(_IntentCapability):
    def invoke(self, config: dict[str, str], context: ActionContext) -> None:
        field = config["field"].strip()
        if field not in UPDATABLE_DEAL_FIELDS:
            raise CapabilityError(f"field not allowed: {field}")
        self._publish("crm.deal.update_requested", context, {"changes": {field: config["value"]}})


class StageChanger(_IntentCapability):
    def invoke(self, config: dict[str, str], context: ActionContext) -> None:
        new_stage = config["newStage"]
        if context.deal.stage == new_stage:
            return
        self._publish("crm.deal.update_requested", context, {"changes": {"stage": new_stage}})


class TagAdder(_IntentCapability):
    def invoke(self, config: dict[str, str], context: ActionContext) -> None:
        tag = config["tag"].strip()
        if tag in context.deal.tags:
            return
        tags = sorted(context.deal.tags | {tag})
        self._publish("crm.deal.update_requested", context, {"changes": {"tags": tags}})


class TaskCreator(_IntentCapability):
    def invoke(self, config: dict[str, str], context: ActionContext) -> None:
        priority = config.get("priority") or "medium"
        if priority not in TASK_PRIORITIES:
            raise CapabilityError(f"invalid priority: {priority}")

        due_date: str | None = None
        if config.get("dueDate"):
            try:
                due_date = date.fromisoformat(config["dueDate"]).isoformat()
            except ValueError as exc:
                raise CapabilityError(f"invalid dueDate: {config['dueDate']}") from exc

        description = config.get("description")
        self._publish(
            "crm.task.create_requested",
            context,
            {
                "title": render_template(config["title"], context.deal),
                "description": render_template(description, context.deal) if description else None,
                "priority": priority,
                "due_date": due_date,
                "assigned_to": config.get("assignedTo") or None,
                "status": "open",
            },
        )


class UserNotifier(_IntentCapability):
    def invoke(self, config: dict[str, str], context: ActionContext) -> None:
        self._publish(
            "notification.requested",
            context,
            {
                "recipient_user_id": config["userId"],
                "title": render_template(config["title"], context.deal),
                "message": render_template(config["message"], context.deal),
            },
        )


class EmailSender(_IntentCapability):
    def invoke(self, config: dict[str, str], context: ActionContext) -> None:
        recipients = [item.strip() for item in config["to"].split(",") if item.strip()]
        if not recipients or any("@" not in item for item in recipients):
            raise CapabilityError(f"invalid recipient: {config['to']}")
        self._publish(
            "email.send_requested",
            context,
            {
                "to": recipients,
                "subject": render_template(config["subject"], context.deal),
                "html": render_template(config["template"], context.deal),
            },
        )


class _HttpCapability:
    def __init__(self, client: httpx.Client | None = None, *, timeout_seconds: float = 5.0) -> None:
        self._client = client
        self._timeout_seconds = timeout_seconds

    def _send(self, method: str, url: str, payload: dict[str, Any]) -> httpx.Response:
        if not url.startswith(("http://", "https://")):
            raise CapabilityError(f"invalid url: {url}")
        try:
            if self._client is not None:
                response = self._client.request(method, url, json=payload)
            else:
                with httpx.Client(timeout=self._timeout_seconds) as client:
                    response = client.request(method, url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise CapabilityError(f"{method} {url} returned {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise CapabilityError(f"{method} {url} failed: {exc}") from exc
        return response


class SlackNotifier(_HttpCapability):
    def invoke(self, config: dict[str, str], context: ActionContext) -> None:
        self._send("POST", config["webhookUrl"], {"text": render_template(config["message"], context.deal)})


class WebhookCaller(_HttpCapability):
    def invoke(self, config: dict[str, str], context: ActionContext) -> None:
        method = (config.get("method") or "POST").upper()
        if method not in WEBHOOK_METHODS:
            raise CapabilityError(f"unsupported method: {method}")
        self._send(
            method,
            config["url"],
            {
                "workflowId": str(context.workflow.id),
                "workflowName": context.workflow.name,
                "team": context.team,
                "eventId": context.event_id,
                "deal": context.deal.model_dump(mode="json", by_alias=True),
            },
        )


def default_capabilities(
    publisher: Publisher | None = None,
    http_client: httpx.Client | None = None,
    *,
    http_timeout_seconds: float = 5.0,
) -> dict[str, ActionCapability]:
    return {
        "send_email": EmailSender(publisher),
        "create_task": TaskCreator(publisher),
        "update_field": DealFieldUpdater(publisher),
        "change_stage": StageChanger(publisher),
        "add_tag": TagAdder(publisher),
        "notify_user": UserNotifier(publisher),
        "slack_notification": SlackNotifier(http_client, timeout_seconds=http_timeout_seconds),
        "webhook": WebhookCaller(http_client, timeout_seconds=http_timeout_seconds),
    }
