from __future__ import annotations

import threading
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import case, delete, literal, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from dealflow.automations.errors import StoreUnavailableError, WorkflowNotFoundError
from dealflow.automations.models import AutomationWorkflow, AutomationWorkflowExecution
from dealflow.automations.schemas import (
    ActionResult,
    ExecutionOutcome,
    TriggerSpec,
    WorkflowAction,
    WorkflowCondition,
    WorkflowCreate,
    WorkflowExecutionRead,
    WorkflowRead,
    WorkflowStats,
    WorkflowUpdate,
    utcnow,
)
from dealflow.core.database import SessionLocal


Clock = Callable[[], datetime]


class WorkflowStore(Protocol):
    """Persistence for workflow definitions, stats and execution history.

    Implementations raise ``StoreUnavailableError`` when the backing storage
    cannot be reached and ``WorkflowNotFoundError`` for unknown or deleted ids.
    ``increment_stats`` must not lose updates under concurrent callers.
    """

    def list_enabled_by_team_and_trigger(self, team: str, trigger_type: str) -> list[WorkflowRead]:
        ...

    def increment_stats(self, workflow_id: uuid.UUID, outcome: ExecutionOutcome, at: datetime) -> WorkflowStats:
        ...

    def create(self, payload: WorkflowCreate, *, created_by: str | None = None) -> WorkflowRead:
        ...

    def get(self, workflow_id: uuid.UUID) -> WorkflowRead | None:
        ...

    def list_by_team(self, team: str) -> list[WorkflowRead]:
        ...

    def update(self, workflow_id: uuid.UUID, payload: WorkflowUpdate) -> WorkflowRead:
        ...

    def delete(self, workflow_id: uuid.UUID) -> None:
        ...

    def toggle(self, workflow_id: uuid.UUID) -> WorkflowRead:
        ...

    def reset_stats(self, workflow_id: uuid.UUID) -> WorkflowRead:
        ...

    def record_execution(self, execution: WorkflowExecutionRead, *, keep: int) -> None:
        ...

    def list_executions(self, workflow_id: uuid.UUID, limit: int) -> list[WorkflowExecutionRead]:
        ...


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _stats_delta(outcome: ExecutionOutcome) -> tuple[int, int]:
    if outcome == "success":
        return 1, 0
    if outcome == "failure":
        return 0, 1
    raise ValueError(f"unknown outcome: {outcome}")


class InMemoryWorkflowStore:
    """Lock-guarded store for tests and local wiring."""

    def __init__(self, *, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._workflows: dict[uuid.UUID, WorkflowRead] = {}
        self._deleted: set[uuid.UUID] = set()
        self._executions: dict[uuid.UUID, list[WorkflowExecutionRead]] = {}

    def list_enabled_by_team_and_trigger(self, team: str, trigger_type: str) -> list[WorkflowRead]:
        with self._lock:
            rows = [
                workflow
                for workflow_id, workflow in self._workflows.items()
                if workflow_id not in self._deleted
                and workflow.team == team
                and workflow.enabled
                and workflow.trigger.type == trigger_type
            ]
        rows.sort(key=lambda workflow: (workflow.created_at, workflow.id))
        return [workflow.model_copy(deep=True) for workflow in rows]

    def increment_stats(self, workflow_id: uuid.UUID, outcome: ExecutionOutcome, at: datetime) -> WorkflowStats:
        successful, failed = _stats_delta(outcome)
        with self._lock:
            workflow = self._live(workflow_id)
            previous_at = workflow.stats.last_executed_at
            stats = WorkflowStats(
                total_executions=workflow.stats.total_executions + 1,
                successful_executions=workflow.stats.successful_executions + successful,
                failed_executions=workflow.stats.failed_executions + failed,
                last_executed_at=at if previous_at is None else max(previous_at, at),
            )
            self._workflows[workflow_id] = workflow.model_copy(update={"stats": stats})
        return stats.model_copy()

    def create(self, payload: WorkflowCreate, *, created_by: str | None = None) -> WorkflowRead:
        now = self._clock()
        workflow = WorkflowRead(
            id=uuid.uuid4(),
            team=payload.team,
            name=payload.name,
            description=payload.description,
            enabled=payload.enabled,
            trigger=payload.trigger.model_copy(deep=True),
            conditions=[condition.model_copy() for condition in payload.conditions],
            actions=[action.model_copy(deep=True) for action in payload.actions],
            stats=WorkflowStats(),
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._workflows[workflow.id] = workflow
        return workflow.model_copy(deep=True)

    def get(self, workflow_id: uuid.UUID) -> WorkflowRead | None:
        with self._lock:
            if workflow_id in self._deleted:
                return None
            workflow = self._workflows.get(workflow_id)
        return workflow.model_copy(deep=True) if workflow is not None else None

    def list_by_team(self, team: str) -> list[WorkflowRead]:
        with self._lock:
            rows = [
                workflow
                for workflow_id, workflow in self._workflows.items()
                if workflow_id not in self._deleted and workflow.team == team
            ]
        rows.sort(key=lambda workflow: (workflow.created_at, workflow.id), reverse=True)
        return [workflow.model_copy(deep=True) for workflow in rows]

    def update(self, workflow_id: uuid.UUID, payload: WorkflowUpdate) -> WorkflowRead:
        changes = payload.model_dump(exclude_unset=True)
        updates: dict[str, object] = {}
        for key in ("name", "description", "enabled"):
            if key in changes:
                updates[key] = changes[key]
        if payload.trigger is not None:
            updates["trigger"] = payload.trigger.model_copy(deep=True)
        if payload.conditions is not None:
            updates["conditions"] = [condition.model_copy() for condition in payload.conditions]
        if payload.actions is not None:
            updates["actions"] = [action.model_copy(deep=True) for action in payload.actions]
        updates["updated_at"] = self._clock()
        return self._replace(workflow_id, updates)

    def delete(self, workflow_id: uuid.UUID) -> None:
        with self._lock:
            if workflow_id not in self._workflows or workflow_id in self._deleted:
                raise WorkflowNotFoundError(workflow_id)
            self._deleted.add(workflow_id)

    def toggle(self, workflow_id: uuid.UUID) -> WorkflowRead:
        with self._lock:
            workflow = self._live(workflow_id)
            updated = workflow.model_copy(update={"enabled": not workflow.enabled, "updated_at": self._clock()})
            self._workflows[workflow_id] = updated
        return updated.model_copy(deep=True)

    def reset_stats(self, workflow_id: uuid.UUID) -> WorkflowRead:
        return self._replace(workflow_id, {"stats": WorkflowStats(), "updated_at": self._clock()})

    def record_execution(self, execution: WorkflowExecutionRead, *, keep: int) -> None:
        with self._lock:
            self._live(execution.workflow_id)
            history = self._executions.setdefault(execution.workflow_id, [])
            history.append(execution.model_copy(deep=True))
            history.sort(key=lambda item: (item.executed_at, item.id), reverse=True)
            del history[max(keep, 0):]

    def list_executions(self, workflow_id: uuid.UUID, limit: int) -> list[WorkflowExecutionRead]:
        with self._lock:
            history = list(self._executions.get(workflow_id, []))
        return [item.model_copy(deep=True) for item in history[: max(limit, 0)]]

    def _live(self, workflow_id: uuid.UUID) -> WorkflowRead:
        workflow = self._workflows.get(workflow_id)
        if workflow is None or workflow_id in self._deleted:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    def _replace(self, workflow_id: uuid.UUID, updates: dict[str, object]) -> WorkflowRead:
        with self._lock:
            updated = self._live(workflow_id).model_copy(update=updates)
            self._workflows[workflow_id] = updated
        return updated.model_copy(deep=True)


class SqlWorkflowStore:
    """SQLAlchemy-backed store. Stats use a single ``UPDATE ... SET n = n + 1``."""

    def __init__(self, session_factory: sessionmaker[Session] | None = None, *, clock: Clock = utcnow) -> None:
        self._session_factory = session_factory or SessionLocal
        self._clock = clock

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"workflow store unavailable: {exc.__class__.__name__}") from exc

    def list_enabled_by_team_and_trigger(self, team: str, trigger_type: str) -> list[WorkflowRead]:
        with self._session_scope() as session:
            rows = session.scalars(
                select(AutomationWorkflow)
                .where(
                    AutomationWorkflow.team == team,
                    AutomationWorkflow.trigger_type == trigger_type,
                    AutomationWorkflow.enabled.is_(True),
                    AutomationWorkflow.deleted_at.is_(None),
                )
                .order_by(AutomationWorkflow.created_at.asc(), AutomationWorkflow.id.asc())
            ).all()
            return [_workflow_to_read(row) for row in rows]

    def increment_stats(self, workflow_id: uuid.UUID, outcome: ExecutionOutcome, at: datetime) -> WorkflowStats:
        successful, failed = _stats_delta(outcome)
        executed_at = literal(at, AutomationWorkflow.last_executed_at.type)
        with self._session_scope() as session:
            result = session.execute(
                update(AutomationWorkflow)
                .where(AutomationWorkflow.id == workflow_id, AutomationWorkflow.deleted_at.is_(None))
                .values(
                    total_executions=AutomationWorkflow.total_executions + 1,
                    successful_executions=AutomationWorkflow.successful_executions + successful,
                    failed_executions=AutomationWorkflow.failed_executions + failed,
                    last_executed_at=case(
                        (AutomationWorkflow.last_executed_at.is_(None), executed_at),
                        (AutomationWorkflow.last_executed_at < executed_at, executed_at),
                        else_=AutomationWorkflow.last_executed_at,
                    ),
                    updated_at=AutomationWorkflow.updated_at,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise WorkflowNotFoundError(workflow_id)
            row = session.execute(
                select(
                    AutomationWorkflow.total_executions,
                    AutomationWorkflow.successful_executions,
                    AutomationWorkflow.failed_executions,
                    AutomationWorkflow.last_executed_at,
                ).where(AutomationWorkflow.id == workflow_id)
            ).one()
            return WorkflowStats(
                total_executions=row.total_executions,
                successful_executions=row.successful_executions,
                failed_executions=row.failed_executions,
                last_executed_at=_as_utc(row.last_executed_at),
            )

    def create(self, payload: WorkflowCreate, *, created_by: str | None = None) -> WorkflowRead:
        now = self._clock()
        with self._session_scope() as session:
            row = AutomationWorkflow(
                team=payload.team,
                name=payload.name,
                description=payload.description,
                enabled=payload.enabled,
                trigger_type=payload.trigger.type,
                trigger_config_json=dict(payload.trigger.config),
                conditions_json=[condition.model_dump() for condition in payload.conditions],
                actions_json=[action.model_dump() for action in payload.actions],
                created_by=created_by,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            return _workflow_to_read(row)

    def get(self, workflow_id: uuid.UUID) -> WorkflowRead | None:
        with self._session_scope() as session:
            row = self._live(session, workflow_id)
            return _workflow_to_read(row) if row is not None else None

    def list_by_team(self, team: str) -> list[WorkflowRead]:
        with self._session_scope() as session:
            rows = session.scalars(
                select(AutomationWorkflow)
                .where(AutomationWorkflow.team == team, AutomationWorkflow.deleted_at.is_(None))
                .order_by(AutomationWorkflow.created_at.desc(), AutomationWorkflow.id.desc())
            ).all()
            return [_workflow_to_read(row) for row in rows]

    def update(self, workflow_id: uuid.UUID, payload: WorkflowUpdate) -> WorkflowRead:
        changes = payload.model_dump(exclude_unset=True)
        with self._session_scope() as session:
            row = self._require(session, workflow_id)
            for key in ("name", "description", "enabled"):
                if key in changes:
                    setattr(row, key, changes[key])
            if payload.trigger is not None:
                row.trigger_type = payload.trigger.type
                row.trigger_config_json = dict(payload.trigger.config)
            if payload.conditions is not None:
                row.conditions_json = [condition.model_dump() for condition in payload.conditions]
            if payload.actions is not None:
                row.actions_json = [action.model_dump() for action in payload.actions]
            row.updated_at = self._clock()
            session.flush()
            return _workflow_to_read(row)

    def delete(self, workflow_id: uuid.UUID) -> None:
        with self._session_scope() as session:
            row = self._require(session, workflow_id)
            row.deleted_at = self._clock()

    def toggle(self, workflow_id: uuid.UUID) -> WorkflowRead:
        with self._session_scope() as session:
            row = self._require(session, workflow_id)
            row.enabled = not row.enabled
            row.updated_at = self._clock()
            session.flush()
            return _workflow_to_read(row)

    def reset_stats(self, workflow_id: uuid.UUID) -> WorkflowRead:
        with self._session_scope() as session:
            row = self._require(session, workflow_id)
            row.total_executions = 0
            row.successful_executions = 0
            row.failed_executions = 0
            row.last_executed_at = None
            row.updated_at = self._clock()
            session.flush()
            return _workflow_to_read(row)

    def record_execution(self, execution: WorkflowExecutionRead, *, keep: int) -> None:
        with self._session_scope() as session:
            self._require(session, execution.workflow_id)
            session.add(
                AutomationWorkflowExecution(
                    id=execution.id,
                    workflow_id=execution.workflow_id,
                    deal_id=execution.deal_id,
                    event_id=execution.event_id,
                    status=execution.status,
                    actions_executed=execution.actions_executed,
                    error=execution.error,
                    action_results_json=[result.model_dump() for result in execution.action_results],
                    executed_at=execution.executed_at,
                )
            )
            session.flush()
            stale_ids = session.scalars(
                select(AutomationWorkflowExecution.id)
                .where(AutomationWorkflowExecution.workflow_id == execution.workflow_id)
                .order_by(AutomationWorkflowExecution.executed_at.desc(), AutomationWorkflowExecution.id.desc())
                .offset(max(keep, 0))
            ).all()
            if stale_ids:
                session.execute(
                    delete(AutomationWorkflowExecution)
                    .where(AutomationWorkflowExecution.id.in_(stale_ids))
                    .execution_options(synchronize_session=False)
                )

    def list_executions(self, workflow_id: uuid.UUID, limit: int) -> list[WorkflowExecutionRead]:
        with self._session_scope() as session:
            rows = session.scalars(
                select(AutomationWorkflowExecution)
                .where(AutomationWorkflowExecution.workflow_id == workflow_id)
                .order_by(AutomationWorkflowExecution.executed_at.desc(), AutomationWorkflowExecution.id.desc())
                .limit(max(limit, 0))
            ).all()
            return [_execution_to_read(row) for row in rows]

    @staticmethod
    def _live(session: Session, workflow_id: uuid.UUID) -> AutomationWorkflow | None:
        return session.scalar(
            select(AutomationWorkflow).where(
                AutomationWorkflow.id == workflow_id,
                AutomationWorkflow.deleted_at.is_(None),
            )
        )

    def _require(self, session: Session, workflow_id: uuid.UUID) -> AutomationWorkflow:
        row = self._live(session, workflow_id)
        if row is None:
            raise WorkflowNotFoundError(workflow_id)
        return row


def _workflow_to_read(row: AutomationWorkflow) -> WorkflowRead:
    return WorkflowRead(
        id=row.id,
        team=row.team,
        name=row.name,
        description=row.description,
        enabled=row.enabled,
        trigger=TriggerSpec(type=row.trigger_type, config=row.trigger_config_json or {}),
        conditions=[WorkflowCondition.model_validate(item) for item in row.conditions_json or []],
        actions=[WorkflowAction.model_validate(item) for item in row.actions_json or []],
        stats=WorkflowStats(
            total_executions=row.total_executions,
            successful_executions=row.successful_executions,
            failed_executions=row.failed_executions,
            last_executed_at=_as_utc(row.last_executed_at),
        ),
        created_by=row.created_by,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def _execution_to_read(row: AutomationWorkflowExecution) -> WorkflowExecutionRead:
    return WorkflowExecutionRead(
        id=row.id,
        workflow_id=row.workflow_id,
        deal_id=row.deal_id,
        event_id=row.event_id,
        executed_at=_as_utc(row.executed_at),
        status=row.status,
        actions_executed=row.actions_executed,
        error=row.error,
        action_results=[ActionResult.model_validate(item) for item in row.action_results_json or []],
    )
