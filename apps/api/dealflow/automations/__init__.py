from dealflow.automations.conditions import evaluate
from dealflow.automations.engine import AutomationEngine
from dealflow.automations.errors import (
    AutomationError,
    CapabilityError,
    StoreUnavailableError,
    WorkflowNotFoundError,
)
from dealflow.automations.executor import ActionExecutor
from dealflow.automations.registry import WorkflowRegistry, create_default_registry, validate_config
from dealflow.automations.schemas import (
    ActionResult,
    DealSnapshot,
    DomainEvent,
    ExecutionResult,
    WorkflowAction,
    WorkflowCondition,
    WorkflowRead,
)
from dealflow.automations.store import InMemoryWorkflowStore, SqlWorkflowStore, WorkflowStore

__all__ = [
    "evaluate",
    "AutomationEngine",
    "AutomationError",
    "CapabilityError",
    "StoreUnavailableError",
    "WorkflowNotFoundError",
    "ActionExecutor",
    "WorkflowRegistry",
    "create_default_registry",
    "validate_config",
    "ActionResult",
    "DealSnapshot",
    "DomainEvent",
    "ExecutionResult",
    "WorkflowAction",
    "WorkflowCondition",
    "WorkflowRead",
    "InMemoryWorkflowStore",
    "SqlWorkflowStore",
    "WorkflowStore",
]
