from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from dealflow.automations.errors import StoreUnavailableError
from dealflow.automations.runtime import AutomationRuntime, get_runtime
from dealflow.automations.schemas import (
    ActionDescriptor,
    DomainEvent,
    ExecutionResult,
    ManualExecutionRequest,
    TriggerDescriptor,
    WorkflowCreate,
    WorkflowHistoryResponse,
    WorkflowRead,
    WorkflowUpdate,
)
from dealflow.automations.service import ActorUser
from dealflow.automations.tasks import dispatch_event
from dealflow.context import get_correlation_id
from dealflow.core.auth import AuthUser, get_current_user as get_auth_user
from dealflow.core.config import get_settings


router = APIRouter(prefix="/api/automations", tags=["automations"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def failure_response(request: Request, exc: HTTPException | StoreUnavailableError, code: str) -> JSONResponse:
    if isinstance(exc, StoreUnavailableError):
        return error_response(
            request,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code="automation_store_unavailable",
            message=str(exc),
        )
    message = exc.detail if isinstance(exc.detail, str) else "validation failed"
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=exc.detail,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    team_ids = set(auth_user.teams)
    if not team_ids:
        team_header = request.headers.get("x-allowed-teams", "")
        team_ids = {item.strip() for item in team_header.split(",") if item.strip()}

    normalized_roles = {role.lower() for role in auth_user.roles}
    return ActorUser(
        user_id=auth_user.sub,
        team_ids=team_ids,
        permissions=set(auth_user.roles),
        is_super_admin="admin" in normalized_roles or "system.admin" in normalized_roles,
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def require_any_permission(user: ActorUser, permissions: list[str]) -> None:
    if not any(permission in user.permissions for permission in permissions):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {' or '.join(permissions)}")


@router.get("/available/triggers", response_model=list[TriggerDescriptor])
def list_available_triggers(runtime: AutomationRuntime = Depends(get_runtime)) -> list[TriggerDescriptor]:
    return runtime.service.list_triggers()


@router.get("/available/actions", response_model=list[ActionDescriptor])
def list_available_actions(runtime: AutomationRuntime = Depends(get_runtime)) -> list[ActionDescriptor]:
    return runtime.service.list_actions()


@router.post("/events", response_model=list[ExecutionResult])
def deliver_event(
    request: Request,
    event: DomainEvent,
    runtime: AutomationRuntime = Depends(get_runtime),
    user: ActorUser = Depends(get_current_user),
) -> list[ExecutionResult] | JSONResponse:
    try:
        require_any_permission(user, ["automations.execute", "automations.manage"])
        if get_settings().workflow_dispatch_mode == "celery":
            if not (user.is_super_admin or event.team in user.team_ids):
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied for team")
            if event.correlation_id is None:
                event = event.model_copy(update={"correlation_id": get_correlation_id()})
            dispatch_event.delay(event.model_dump(mode="json", by_alias=True))
            return JSONResponse(
                status_code=status.HTTP_202_ACCEPTED,
                content={"status": "queued", "eventId": event.event_id},
            )
        return runtime.service.deliver_event(user, event)
    except (HTTPException, StoreUnavailableError) as exc:
        return failure_response(request, exc, "automation_event_delivery_failed")


@router.get("/team/{team}", response_model=list[WorkflowRead])
def list_team_workflows(
    request: Request,
    team: str,
    runtime: AutomationRuntime = Depends(get_runtime),
    user: ActorUser = Depends(get_current_user),
) -> list[WorkflowRead] | JSONResponse:
    try:
        require_permission(user, "automations.read")
        return runtime.service.list_workflows(user, team)
    except (HTTPException, StoreUnavailableError) as exc:
        return failure_response(request, exc, "automation_workflow_list_failed")


@router.post("", response_model=WorkflowRead, status_code=status.HTTP_201_CREATED)
def create_workflow(
    request: Request,
    dto: WorkflowCreate,
    runtime: AutomationRuntime = Depends(get_runtime),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        require_permission(user, "automations.manage")
        return runtime.service.create_workflow(user, dto)
    except (HTTPException, StoreUnavailableError) as exc:
        return failure_response(request, exc, "automation_workflow_create_failed")


@router.get("/{workflow_id}", response_model=WorkflowRead)
def get_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    runtime: AutomationRuntime = Depends(get_runtime),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        require_permission(user, "automations.read")
        return runtime.service.get_workflow(user, workflow_id)
    except (HTTPException, StoreUnavailableError) as exc:
        return failure_response(request, exc, "automation_workflow_get_failed")


@router.put("/{workflow_id}", response_model=WorkflowRead)
def update_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    dto: WorkflowUpdate,
    runtime: AutomationRuntime = Depends(get_runtime),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        require_permission(user, "automations.manage")
        return runtime.service.update_workflow(user, workflow_id, dto)
    except (HTTPException, StoreUnavailableError) as exc:
        return failure_response(request, exc, "automation_workflow_update_failed")


@router.delete("/{workflow_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    runtime: AutomationRuntime = Depends(get_runtime),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, str] | JSONResponse:
    try:
        require_permission(user, "automations.manage")
        runtime.service.delete_workflow(user, workflow_id)
        return {"status": "deleted"}
    except (HTTPException, StoreUnavailableError) as exc:
        return failure_response(request, exc, "automation_workflow_delete_failed")


@router.patch("/{workflow_id}/toggle", response_model=WorkflowRead)
def toggle_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    runtime: AutomationRuntime = Depends(get_runtime),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        require_permission(user, "automations.manage")
        return runtime.service.toggle_workflow(user, workflow_id)
    except (HTTPException, StoreUnavailableError) as exc:
        return failure_response(request, exc, "automation_workflow_toggle_failed")


@router.post("/{workflow_id}/reset-stats", response_model=WorkflowRead)
def reset_workflow_stats(
    request: Request,
    workflow_id: uuid.UUID,
    runtime: AutomationRuntime = Depends(get_runtime),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowRead | JSONResponse:
    try:
        require_permission(user, "automations.manage")
        return runtime.service.reset_stats(user, workflow_id)
    except (HTTPException, StoreUnavailableError) as exc:
        return failure_response(request, exc, "automation_workflow_reset_failed")


@router.get("/{workflow_id}/history", response_model=WorkflowHistoryResponse)
def get_workflow_history(
    request: Request,
    workflow_id: uuid.UUID,
    limit: int = Query(default=50, ge=1),
    runtime: AutomationRuntime = Depends(get_runtime),
    user: ActorUser = Depends(get_current_user),
) -> WorkflowHistoryResponse | JSONResponse:
    try:
        require_permission(user, "automations.read")
        return runtime.service.get_history(user, workflow_id, limit)
    except (HTTPException, StoreUnavailableError) as exc:
        return failure_response(request, exc, "automation_workflow_history_failed")


@router.post("/{workflow_id}/execute", response_model=ExecutionResult)
def execute_workflow(
    request: Request,
    workflow_id: uuid.UUID,
    dto: ManualExecutionRequest,
    runtime: AutomationRuntime = Depends(get_runtime),
    user: ActorUser = Depends(get_current_user),
) -> ExecutionResult | JSONResponse:
    try:
        require_any_permission(user, ["automations.execute", "automations.manage"])
        return runtime.service.execute_workflow(user, workflow_id, dto.deal, dto.previous_deal)
    except (HTTPException, StoreUnavailableError) as exc:
        return failure_response(request, exc, "automation_workflow_execute_failed")
