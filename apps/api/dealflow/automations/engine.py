from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from opentelemetry import trace

from dealflow import events
from dealflow.automations.capabilities import ActionContext
from dealflow.automations.conditions import evaluate
from dealflow.automations.errors import WorkflowNotFoundError
from dealflow.automations.executor import ActionExecutor
from dealflow.automations.registry import WorkflowRegistry
from dealflow.automations.schemas import (
    DealSnapshot,
    DomainEvent,
    ExecutionResult,
    TriggerSpec,
    WorkflowExecutionRead,
    WorkflowRead,
    utcnow,
)
from dealflow.automations.store import WorkflowStore
from dealflow.context import get_correlation_id, reset_correlation_id, set_correlation_id
from dealflow.core.config import get_settings
from dealflow.metrics import observe_event_received, observe_workflow_execution, observe_workflow_skipped


logger = logging.getLogger("dealflow.automations.engine")
tracer = trace.get_tracer("dealflow.automations.engine")

WORKFLOW_EXECUTED_EVENT = "automation.workflow.executed"


def trigger_matches(trigger: TriggerSpec, deal: DealSnapshot, previous_deal: DealSnapshot | None) -> bool:
    """Apply trigger-level config on top of the event type match.

    Only ``deal_stage_changed`` narrows its match, through optional
    ``fromStage`` and ``toStage`` values.
    """
    if trigger.type != "deal_stage_changed":
        return True
    from_stage = trigger.config.get("fromStage", "").strip()
    to_stage = trigger.config.get("toStage", "").strip()
    if from_stage and (previous_deal is None or previous_deal.stage != from_stage):
        return False
    if to_stage and deal.stage != to_stage:
        return False
    return True


class AutomationEngine:
    """Reacts to deal domain events by running the team's matching workflows.

    Candidates are read once per event and run one after another. Action and
    configuration failures are folded into the returned results; only
    ``StoreUnavailableError`` escapes.
    """

    def __init__(
        self,
        store: WorkflowStore,
        registry: WorkflowRegistry,
        executor: ActionExecutor,
        *,
        publisher: Callable[[dict[str, Any]], None] | None = None,
        clock: Callable[[], datetime] = utcnow,
        history_limit: int | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.executor = executor
        self._publisher = publisher or events.publish
        self._clock = clock
        self.history_limit = history_limit if history_limit is not None else get_settings().workflow_history_limit

    def on_event(self, event: DomainEvent) -> list[ExecutionResult]:
        token = set_correlation_id(event.correlation_id or get_correlation_id() or event.event_id)
        try:
            with tracer.start_as_current_span("automation.on_event") as span:
                span.set_attribute("event_type", event.type)
                span.set_attribute("team", event.team)
                span.set_attribute("event_id", event.event_id)
                return self._dispatch(event)
        finally:
            reset_correlation_id(token)

    def _dispatch(self, event: DomainEvent) -> list[ExecutionResult]:
        observe_event_received(event.type)
        if not self.registry.has_trigger(event.type):
            logger.info(
                "automation.event.ignored",
                extra={"event_id": event.event_id, "event_type": event.type, "team": event.team},
            )
            return []

        candidates = self.store.list_enabled_by_team_and_trigger(event.team, event.type)
        logger.info(
            "automation.event.received",
            extra={
                "event_id": event.event_id,
                "event_type": event.type,
                "team": event.team,
                "deal_id": event.deal.id,
                "candidate_count": len(candidates),
            },
        )

        results: list[ExecutionResult] = []
        for workflow in candidates:
            if workflow.team != event.team:
                continue
            if not self._passes_gate(workflow, event.deal, event.previous_deal):
                results.append(ExecutionResult(workflow_id=workflow.id, matched=False))
                continue
            results.append(self._run(workflow, event.deal, event.previous_deal, event_id=event.event_id))
        return results

    def execute_workflow(
        self,
        workflow_id: uuid.UUID,
        deal: DealSnapshot,
        previous_deal: DealSnapshot | None = None,
    ) -> ExecutionResult:
        """Run one workflow against ``deal`` on demand.

        The condition gate still applies. Trigger type and ``enabled`` are not
        checked here; callers decide whether an inactive workflow may run.
        """
        workflow = self.store.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        if deal.team != workflow.team:
            raise ValueError("deal.team must match workflow team")

        with tracer.start_as_current_span("automation.workflow.manual") as span:
            span.set_attribute("workflow_id", str(workflow.id))
            span.set_attribute("deal_id", deal.id)
            if not evaluate(deal, workflow.conditions):
                observe_workflow_skipped(workflow.trigger.type)
                return ExecutionResult(workflow_id=workflow.id, matched=False)
            return self._run(workflow, deal, previous_deal, event_id=None)

    def _passes_gate(self, workflow: WorkflowRead, deal: DealSnapshot, previous_deal: DealSnapshot | None) -> bool:
        matched = trigger_matches(workflow.trigger, deal, previous_deal) and evaluate(deal, workflow.conditions)
        if not matched:
            observe_workflow_skipped(workflow.trigger.type)
            logger.debug(
                "automation.workflow.skipped",
                extra={"workflow_id": str(workflow.id), "deal_id": deal.id, "matched": False},
            )
        return matched

    def _run(
        self,
        workflow: WorkflowRead,
        deal: DealSnapshot,
        previous_deal: DealSnapshot | None,
        *,
        event_id: str | None,
    ) -> ExecutionResult:
        with tracer.start_as_current_span("automation.workflow.run") as span:
            span.set_attribute("workflow_id", str(workflow.id))
            span.set_attribute("deal_id", deal.id)

            context = ActionContext(
                deal=deal,
                team=workflow.team,
                workflow=workflow,
                previous_deal=previous_deal,
                event_id=event_id,
                correlation_id=get_correlation_id(),
            )
            action_results = [self.executor.execute(action, context) for action in workflow.actions]
            result = ExecutionResult(workflow_id=workflow.id, matched=True, action_results=action_results)
            outcome = "success" if result.succeeded else "failure"
            span.set_attribute("outcome", outcome)

            executed_at = self._clock()
            errors = [f"{item.action_type}: {item.error}" for item in action_results if not item.ok]
            execution = WorkflowExecutionRead(
                id=uuid.uuid4(),
                workflow_id=workflow.id,
                deal_id=deal.id,
                event_id=event_id,
                executed_at=executed_at,
                status="success" if result.succeeded else "failed",
                actions_executed=sum(1 for item in action_results if item.ok),
                error="; ".join(errors) or None,
                action_results=action_results,
            )
            try:
                self.store.increment_stats(workflow.id, outcome, executed_at)
                self.store.record_execution(execution, keep=self.history_limit)
            except WorkflowNotFoundError:
                logger.warning(
                    "automation.workflow.vanished",
                    extra={"workflow_id": str(workflow.id), "deal_id": deal.id, "outcome": outcome},
                )
                return result

        observe_workflow_execution(workflow.trigger.type, outcome)
        logger.info(
            "automation.workflow.executed",
            extra={
                "workflow_id": str(workflow.id),
                "deal_id": deal.id,
                "team": workflow.team,
                "outcome": outcome,
                "status": execution.status,
            },
        )
        self._announce(workflow, execution)
        return result

    def _announce(self, workflow: WorkflowRead, execution: WorkflowExecutionRead) -> None:
        envelope = events.build_envelope(
            WORKFLOW_EXECUTED_EVENT,
            workflow.team,
            {
                "workflow_id": str(workflow.id),
                "deal_id": execution.deal_id,
                "status": execution.status,
                "actions_executed": execution.actions_executed,
                "action_results": [item.model_dump(mode="json", by_alias=True) for item in execution.action_results],
            },
        )
        if execution.event_id:
            envelope["meta"] = {"source_event_id": execution.event_id}
        try:
            self._publisher(envelope)
        except Exception:
            logger.exception(
                "automation.workflow.announce_failed",
                extra={"workflow_id": str(workflow.id), "deal_id": execution.deal_id},
            )
