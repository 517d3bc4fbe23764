from __future__ import annotations

import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status

from dealflow import audit
from dealflow.automations.engine import AutomationEngine
from dealflow.automations.errors import WorkflowNotFoundError
from dealflow.automations.registry import WorkflowRegistry, validate_config
from dealflow.automations.schemas import (
    ActionDescriptor,
    DealSnapshot,
    DomainEvent,
    ExecutionResult,
    FieldError,
    TriggerDescriptor,
    TriggerSpec,
    WorkflowAction,
    WorkflowCondition,
    WorkflowCreate,
    WorkflowHistoryResponse,
    WorkflowRead,
    WorkflowUpdate,
)
from dealflow.automations.store import WorkflowStore


HISTORY_MAX_LIMIT = 100


@dataclass
class ActorUser:
    user_id: str
    team_ids: set[str]
    permissions: set[str]
    is_super_admin: bool = False
    correlation_id: str | None = None


class WorkflowService:
    def __init__(self, store: WorkflowStore, registry: WorkflowRegistry, engine: AutomationEngine) -> None:
        self.store = store
        self.registry = registry
        self.engine = engine

    def list_triggers(self) -> list[TriggerDescriptor]:
        return self.registry.list_triggers()

    def list_actions(self) -> list[ActionDescriptor]:
        return self.registry.list_actions()

    def list_workflows(self, actor_user: ActorUser, team: str) -> list[WorkflowRead]:
        self._require_permission(actor_user, "automations.read")
        self._enforce_team_access(actor_user, team)
        return self.store.list_by_team(team)

    def get_workflow(self, actor_user: ActorUser, workflow_id: uuid.UUID) -> WorkflowRead:
        self._require_permission(actor_user, "automations.read")
        return self._load_workflow(actor_user, workflow_id)

    def create_workflow(self, actor_user: ActorUser, dto: WorkflowCreate) -> WorkflowRead:
        self._require_permission(actor_user, "automations.manage")
        self._enforce_team_access(actor_user, dto.team)
        self._raise_on_errors(self.validate_definition(dto.trigger, dto.conditions, dto.actions))

        normalized = dto.model_copy(update={"name": dto.name.strip()})
        workflow = self.store.create(normalized, created_by=actor_user.user_id)
        audit.record(
            actor_user_id=actor_user.user_id,
            team=workflow.team,
            workflow_id=str(workflow.id),
            action="automation.workflow.created",
            before=None,
            after=self._snapshot(workflow),
            correlation_id=actor_user.correlation_id,
        )
        return workflow

    def update_workflow(self, actor_user: ActorUser, workflow_id: uuid.UUID, dto: WorkflowUpdate) -> WorkflowRead:
        self._require_permission(actor_user, "automations.manage")
        current = self._load_workflow(actor_user, workflow_id)

        changes = dto.model_dump(exclude_unset=True)
        if "name" in changes and dto.name is None:
            self._raise_on_errors([FieldError(field="name", code="missing", message="name is required")])
        if "enabled" in changes and dto.enabled is None:
            self._raise_on_errors([FieldError(field="enabled", code="invalid", message="enabled must be a boolean")])

        self._raise_on_errors(
            self.validate_definition(
                dto.trigger if dto.trigger is not None else current.trigger,
                dto.conditions if dto.conditions is not None else current.conditions,
                dto.actions if dto.actions is not None else current.actions,
            )
        )
        if dto.name is not None:
            dto = dto.model_copy(update={"name": dto.name.strip()})

        workflow = self._call_store(lambda: self.store.update(workflow_id, dto))
        audit.record(
            actor_user_id=actor_user.user_id,
            team=workflow.team,
            workflow_id=str(workflow.id),
            action="automation.workflow.updated",
            before=self._snapshot(current),
            after=self._snapshot(workflow),
            correlation_id=actor_user.correlation_id,
        )
        return workflow

    def delete_workflow(self, actor_user: ActorUser, workflow_id: uuid.UUID) -> None:
        self._require_permission(actor_user, "automations.manage")
        current = self._load_workflow(actor_user, workflow_id)
        self._call_store(lambda: self.store.delete(workflow_id))
        audit.record(
            actor_user_id=actor_user.user_id,
            team=current.team,
            workflow_id=str(current.id),
            action="automation.workflow.deleted",
            before=self._snapshot(current),
            after=None,
            correlation_id=actor_user.correlation_id,
        )

    def toggle_workflow(self, actor_user: ActorUser, workflow_id: uuid.UUID) -> WorkflowRead:
        self._require_permission(actor_user, "automations.manage")
        current = self._load_workflow(actor_user, workflow_id)
        workflow = self._call_store(lambda: self.store.toggle(workflow_id))
        audit.record(
            actor_user_id=actor_user.user_id,
            team=workflow.team,
            workflow_id=str(workflow.id),
            action="automation.workflow.toggled",
            before={"enabled": current.enabled},
            after={"enabled": workflow.enabled},
            correlation_id=actor_user.correlation_id,
        )
        return workflow

    def reset_stats(self, actor_user: ActorUser, workflow_id: uuid.UUID) -> WorkflowRead:
        self._require_permission(actor_user, "automations.manage")
        current = self._load_workflow(actor_user, workflow_id)
        workflow = self._call_store(lambda: self.store.reset_stats(workflow_id))
        audit.record(
            actor_user_id=actor_user.user_id,
            team=workflow.team,
            workflow_id=str(workflow.id),
            action="automation.workflow.stats_reset",
            before=current.stats.model_dump(mode="json"),
            after=workflow.stats.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        return workflow

    def get_history(self, actor_user: ActorUser, workflow_id: uuid.UUID, limit: int = 50) -> WorkflowHistoryResponse:
        self._require_permission(actor_user, "automations.read")
        workflow = self._load_workflow(actor_user, workflow_id)
        bounded = max(1, min(limit, HISTORY_MAX_LIMIT))
        return WorkflowHistoryResponse(
            history=self.store.list_executions(workflow_id, bounded),
            stats=workflow.stats,
        )

    def execute_workflow(
        self,
        actor_user: ActorUser,
        workflow_id: uuid.UUID,
        deal: DealSnapshot,
        previous_deal: DealSnapshot | None = None,
    ) -> ExecutionResult:
        if not ({"automations.execute", "automations.manage"} & actor_user.permissions):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Missing permission: automations.execute or automations.manage",
            )
        workflow = self._load_workflow(actor_user, workflow_id)
        if not workflow.enabled:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="workflow is not active")
        if deal.team != workflow.team:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="deal belongs to another team")

        result = self._call_store(lambda: self.engine.execute_workflow(workflow_id, deal, previous_deal))
        if not result.matched:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="deal does not meet workflow conditions")

        audit.record(
            actor_user_id=actor_user.user_id,
            team=workflow.team,
            workflow_id=str(workflow.id),
            action="automation.workflow.executed_manually",
            before=None,
            after={"deal_id": deal.id, "succeeded": result.succeeded},
            correlation_id=actor_user.correlation_id,
        )
        return result

    def deliver_event(self, actor_user: ActorUser, event: DomainEvent) -> list[ExecutionResult]:
        if not ({"automations.execute", "automations.manage"} & actor_user.permissions):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Missing permission: automations.execute or automations.manage",
            )
        self._enforce_team_access(actor_user, event.team)
        return self.engine.on_event(event)

    def validate_definition(
        self,
        trigger: TriggerSpec,
        conditions: Sequence[WorkflowCondition],
        actions: Sequence[WorkflowAction],
    ) -> list[FieldError]:
        errors: list[FieldError] = []

        trigger_descriptor = self.registry.trigger(trigger.type)
        if trigger_descriptor is None:
            errors.append(
                FieldError(field="trigger.type", code="unknown_type", message=f"unknown trigger type: {trigger.type}")
            )
        else:
            errors.extend(_prefixed("trigger.config", validate_config(trigger_descriptor, trigger.config)))

        for index, condition in enumerate(conditions):
            if condition.operator in ("is_empty", "is_not_empty"):
                continue
            if condition.operator in ("greater_than", "less_than") and not condition.value.strip():
                errors.append(
                    FieldError(
                        field=f"conditions[{index}].value",
                        code="missing",
                        message=f"value is required for {condition.operator}",
                    )
                )

        if not actions:
            errors.append(FieldError(field="actions", code="missing", message="at least one action is required"))
        for index, action in enumerate(actions):
            action_descriptor = self.registry.action(action.type)
            if action_descriptor is None:
                errors.append(
                    FieldError(
                        field=f"actions[{index}].type",
                        code="unknown_type",
                        message=f"unknown action type: {action.type}",
                    )
                )
                continue
            errors.extend(_prefixed(f"actions[{index}].config", validate_config(action_descriptor, action.config)))
        return errors

    def _load_workflow(self, actor_user: ActorUser, workflow_id: uuid.UUID) -> WorkflowRead:
        workflow = self.store.get(workflow_id)
        if workflow is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="workflow not found")
        self._enforce_team_access(actor_user, workflow.team)
        return workflow

    def _call_store(self, operation: Callable[[], Any]) -> Any:
        try:
            return operation()
        except WorkflowNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="workflow not found") from exc

    def _snapshot(self, workflow: WorkflowRead) -> dict[str, Any]:
        return workflow.model_dump(mode="json", by_alias=True, exclude={"stats"})

    def _raise_on_errors(self, errors: list[FieldError]) -> None:
        if errors:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=[error.model_dump(mode="json") for error in errors],
            )

    def _require_permission(self, actor_user: ActorUser, permission: str) -> None:
        if permission not in actor_user.permissions:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")

    def _enforce_team_access(self, actor_user: ActorUser, team: str) -> None:
        if actor_user.is_super_admin or team in actor_user.team_ids:
            return
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied for team")


def _prefixed(prefix: str, errors: list[FieldError]) -> list[FieldError]:
    return [error.model_copy(update={"field": f"{prefix}.{error.field}"}) for error in errors]
