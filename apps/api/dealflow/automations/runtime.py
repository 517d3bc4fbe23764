from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any

import httpx
from sqlalchemy.orm import Session, sessionmaker

from dealflow.automations.engine import AutomationEngine
from dealflow.automations.executor import ActionExecutor
from dealflow.automations.registry import WorkflowRegistry, create_default_registry
from dealflow.automations.schemas import utcnow
from dealflow.automations.service import WorkflowService
from dealflow.automations.store import SqlWorkflowStore, WorkflowStore
from dealflow.core.config import get_settings


@dataclass
class AutomationRuntime:
    registry: WorkflowRegistry
    store: WorkflowStore
    executor: ActionExecutor
    engine: AutomationEngine
    service: WorkflowService


def build_runtime(
    *,
    store: WorkflowStore | None = None,
    registry: WorkflowRegistry | None = None,
    session_factory: sessionmaker[Session] | None = None,
    publisher: Callable[[dict[str, Any]], None] | None = None,
    http_client: httpx.Client | None = None,
    timeout_seconds: float | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> AutomationRuntime:
    settings = get_settings()
    action_timeout = timeout_seconds if timeout_seconds is not None else settings.workflow_action_timeout_seconds

    resolved_registry = registry or create_default_registry(
        publisher,
        http_client,
        http_timeout_seconds=action_timeout,
    )
    resolved_store = store or SqlWorkflowStore(session_factory, clock=clock)
    executor = ActionExecutor(resolved_registry, timeout_seconds=action_timeout)
    engine = AutomationEngine(
        resolved_store,
        resolved_registry,
        executor,
        publisher=publisher,
        clock=clock,
        history_limit=settings.workflow_history_limit,
    )
    service = WorkflowService(resolved_store, resolved_registry, engine)
    return AutomationRuntime(
        registry=resolved_registry,
        store=resolved_store,
        executor=executor,
        engine=engine,
        service=service,
    )


@lru_cache
def get_runtime() -> AutomationRuntime:
    return build_runtime()
