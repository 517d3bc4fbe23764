from __future__ import annotations

import uuid


class AutomationError(Exception):
    pass


class StoreUnavailableError(AutomationError):
    """The workflow store could not be read or written."""


class WorkflowNotFoundError(AutomationError):
    def __init__(self, workflow_id: uuid.UUID) -> None:
        super().__init__(f"workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


class CapabilityError(AutomationError):
    """Raised by an action capability when the requested side effect cannot be performed."""
