from __future__ import annotations

import contextvars
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError

from opentelemetry import trace

from dealflow.automations.capabilities import ActionContext
from dealflow.automations.registry import WorkflowRegistry, validate_config
from dealflow.automations.schemas import ActionResult, WorkflowAction
from dealflow.context import get_correlation_id
from dealflow.core.config import get_settings
from dealflow.metrics import observe_action_result


logger = logging.getLogger("dealflow.automations.executor")
tracer = trace.get_tracer("dealflow.automations.executor")

UNKNOWN_ACTION_TYPE = "unknown action type"
TIMEOUT = "timeout"

_shared_pool: ThreadPoolExecutor | None = None
_shared_pool_lock = threading.Lock()


def get_shared_pool() -> ThreadPoolExecutor:
    global _shared_pool

    with _shared_pool_lock:
        if _shared_pool is None:
            _shared_pool = ThreadPoolExecutor(
                max_workers=get_settings().workflow_executor_max_workers,
                thread_name_prefix="dealflow-action",
            )
        return _shared_pool


def shutdown_shared_pool() -> None:
    """Stop accepting new capability calls. In-flight calls run to completion."""
    global _shared_pool

    with _shared_pool_lock:
        pool = _shared_pool
        _shared_pool = None
    if pool is not None:
        pool.shutdown(wait=False)


def _error_message(exc: BaseException) -> str:
    message = str(exc).strip()
    return message or exc.__class__.__name__


class ActionExecutor:
    """Runs one workflow action through its bound capability.

    Every failure mode (unbound type, bad config, capability error, timeout)
    is returned as a failed ``ActionResult``; nothing is raised to the caller.
    """

    def __init__(
        self,
        registry: WorkflowRegistry,
        *,
        timeout_seconds: float | None = None,
        pool: ThreadPoolExecutor | None = None,
    ) -> None:
        self.registry = registry
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else get_settings().workflow_action_timeout_seconds
        )
        self._pool = pool

    def execute(self, action: WorkflowAction, context: ActionContext) -> ActionResult:
        started = time.perf_counter()
        with tracer.start_as_current_span("automation.action.execute") as span:
            span.set_attribute("action_type", action.type)
            span.set_attribute("workflow_id", str(context.workflow.id))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            result = self._execute(action, context)
            span.set_attribute("ok", result.ok)
            if result.error:
                span.set_attribute("error", result.error)

        observe_action_result(action.type, result.ok, time.perf_counter() - started)
        if not result.ok:
            logger.warning(
                "automation.action.failed",
                extra={
                    "workflow_id": str(context.workflow.id),
                    "deal_id": context.deal.id,
                    "action_type": action.type,
                    "error": result.error,
                },
            )
        return result

    def _execute(self, action: WorkflowAction, context: ActionContext) -> ActionResult:
        handler = self.registry.handler_for(action.type)
        descriptor = self.registry.action(action.type)
        if handler is None or descriptor is None:
            return ActionResult(action_type=action.type, ok=False, error=UNKNOWN_ACTION_TYPE)

        field_errors = validate_config(descriptor, action.config)
        if field_errors:
            fields = ", ".join(error.field for error in field_errors)
            return ActionResult(action_type=action.type, ok=False, error=f"invalid config: {fields}")

        pool = self._pool or get_shared_pool()
        call_context = contextvars.copy_context()
        try:
            future = pool.submit(call_context.run, handler.invoke, dict(action.config), context)
        except RuntimeError as exc:
            return ActionResult(action_type=action.type, ok=False, error=_error_message(exc))

        try:
            future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            # Only a call still queued behind a busy pool is cancelled; a running one finishes.
            future.cancel()
            return ActionResult(action_type=action.type, ok=False, error=TIMEOUT)
        except Exception as exc:
            return ActionResult(action_type=action.type, ok=False, error=_error_message(exc))
        return ActionResult(action_type=action.type, ok=True)
