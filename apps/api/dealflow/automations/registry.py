from __future__ import annotations

import threading
from collections.abc import Mapping
from typing import Any

import httpx

from dealflow.automations.capabilities import ActionCapability, Publisher, default_capabilities
from dealflow.automations.schemas import ActionDescriptor, ConfigField, FieldError, TriggerDescriptor


Descriptor = TriggerDescriptor | ActionDescriptor

DEAL_STAGES = ["Lead", "Qualified", "Proposal", "Negotiation", "Won", "Lost"]
TEMPLATE_HELP = "Use {{dealName}}, {{dealAmount}}, {{dealStage}}"


class WorkflowRegistry:
    """Catalog of trigger and action types plus the action-type to capability binding.

    Descriptors are listed in registration order. Callers receive copies, so
    the catalog cannot be mutated through the values it hands out.
    """

    def __init__(self) -> None:
        self._triggers: dict[str, TriggerDescriptor] = {}
        self._actions: dict[str, ActionDescriptor] = {}
        self._handlers: dict[str, ActionCapability] = {}
        self._lock = threading.Lock()

    def register_trigger(self, descriptor: TriggerDescriptor) -> None:
        with self._lock:
            if descriptor.id in self._triggers:
                raise ValueError(f"trigger already registered: {descriptor.id}")
            self._triggers[descriptor.id] = descriptor

    def register_action(self, descriptor: ActionDescriptor, handler: ActionCapability | None = None) -> None:
        with self._lock:
            if descriptor.id in self._actions:
                raise ValueError(f"action already registered: {descriptor.id}")
            self._actions[descriptor.id] = descriptor
            if handler is not None:
                self._handlers[descriptor.id] = handler

    def bind(self, action_type: str, handler: ActionCapability) -> None:
        with self._lock:
            self._handlers[action_type] = handler

    def handler_for(self, action_type: str) -> ActionCapability | None:
        return self._handlers.get(action_type)

    def has_trigger(self, trigger_type: str) -> bool:
        return trigger_type in self._triggers

    def trigger(self, trigger_type: str) -> TriggerDescriptor | None:
        descriptor = self._triggers.get(trigger_type)
        return descriptor.model_copy(deep=True) if descriptor is not None else None

    def action(self, action_type: str) -> ActionDescriptor | None:
        descriptor = self._actions.get(action_type)
        return descriptor.model_copy(deep=True) if descriptor is not None else None

    def list_triggers(self) -> list[TriggerDescriptor]:
        return [descriptor.model_copy(deep=True) for descriptor in self._triggers.values()]

    def list_actions(self) -> list[ActionDescriptor]:
        return [descriptor.model_copy(deep=True) for descriptor in self._actions.values()]


def validate_config(descriptor: Descriptor, config: Mapping[str, Any] | None) -> list[FieldError]:
    """Check ``config`` against the descriptor's field schema.

    Required fields must be present and non-blank. Select fields with a value
    must use one of their options. Keys the schema does not know are ignored.
    """
    values = config if isinstance(config, Mapping) else {}
    errors: list[FieldError] = []
    for name, field in descriptor.config.items():
        raw = values.get(name)
        value = "" if raw is None else str(raw)
        if not value.strip():
            if field.required:
                errors.append(FieldError(field=name, code="missing", message=f"{name} is required"))
            continue
        if field.type == "select" and field.options and value not in field.options:
            errors.append(
                FieldError(
                    field=name,
                    code="invalid",
                    message=f"{name} must be one of: {', '.join(field.options)}",
                )
            )
    return errors


def default_triggers() -> list[TriggerDescriptor]:
    return [
        TriggerDescriptor(id="deal_created", name="Deal Created", description="Triggers when a new deal is created"),
        TriggerDescriptor(id="deal_updated", name="Deal Updated", description="Triggers when a deal is updated"),
        TriggerDescriptor(
            id="deal_stage_changed",
            name="Deal Stage Changed",
            description="Triggers when deal stage changes",
            config={
                "fromStage": ConfigField(type="select", options=DEAL_STAGES),
                "toStage": ConfigField(type="select", options=DEAL_STAGES),
            },
        ),
        TriggerDescriptor(
            id="deal_amount_changed",
            name="Deal Amount Changed",
            description="Triggers when deal amount changes",
        ),
        TriggerDescriptor(id="deal_closed", name="Deal Closed", description="Triggers when deal is won or lost"),
        TriggerDescriptor(
            id="deal_days_in_stage",
            name="Deal Days In Stage",
            description="Triggers after X days in current stage",
            config={"days": ConfigField(type="string", help="Whole number of days")},
        ),
    ]


def default_actions() -> list[ActionDescriptor]:
    return [
        ActionDescriptor(
            id="send_email",
            name="Send Email",
            description="Send email notification",
            config={
                "to": ConfigField(required=True, help="Comma-separated addresses"),
                "subject": ConfigField(required=True),
                "template": ConfigField(type="textarea", required=True, help=TEMPLATE_HELP),
            },
        ),
        ActionDescriptor(
            id="create_task",
            name="Create Task",
            description="Create a task automatically",
            config={
                "title": ConfigField(required=True),
                "description": ConfigField(type="textarea"),
                "priority": ConfigField(type="select", options=["low", "medium", "high"]),
                "dueDate": ConfigField(help="YYYY-MM-DD"),
                "assignedTo": ConfigField(),
            },
        ),
        ActionDescriptor(
            id="update_field",
            name="Update Field",
            description="Update a deal field",
            config={
                "field": ConfigField(required=True, help="e.g., stage, probability, amount"),
                "value": ConfigField(required=True),
            },
        ),
        ActionDescriptor(
            id="change_stage",
            name="Change Deal Stage",
            description="Automatically advance deal stage",
            config={"newStage": ConfigField(type="select", required=True, options=DEAL_STAGES)},
        ),
        ActionDescriptor(
            id="add_tag",
            name="Add Tag",
            description="Add a tag to the deal",
            config={"tag": ConfigField(required=True)},
        ),
        ActionDescriptor(
            id="notify_user",
            name="Notify User",
            description="Send in-app notification",
            config={
                "userId": ConfigField(required=True),
                "title": ConfigField(required=True),
                "message": ConfigField(type="textarea", required=True),
            },
        ),
        ActionDescriptor(
            id="slack_notification",
            name="Slack Notification",
            description="Post a message to a Slack incoming webhook",
            config={
                "webhookUrl": ConfigField(required=True),
                "message": ConfigField(type="textarea", required=True, help=TEMPLATE_HELP),
            },
        ),
        ActionDescriptor(
            id="webhook",
            name="Webhook",
            description="Send the deal to an external URL",
            config={
                "url": ConfigField(required=True),
                "method": ConfigField(type="select", options=["POST", "PUT", "PATCH"]),
            },
        ),
    ]


def create_default_registry(
    publisher: Publisher | None = None,
    http_client: httpx.Client | None = None,
    *,
    http_timeout_seconds: float = 5.0,
) -> WorkflowRegistry:
    registry = WorkflowRegistry()
    for trigger in default_triggers():
        registry.register_trigger(trigger)
    handlers = default_capabilities(publisher, http_client, http_timeout_seconds=http_timeout_seconds)
    for action in default_actions():
        registry.register_action(action, handlers.get(action.id))
    return registry
