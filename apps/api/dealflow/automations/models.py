from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, JSON, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from dealflow.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AutomationWorkflow(Base):
    __tablename__ = "automation_workflow"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    team: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    trigger_type: Mapped[str] = mapped_column(String(128), nullable=False)
    trigger_config_json: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    conditions_json: Mapped[list[dict[str, str]]] = mapped_column(JSON, nullable=False, default=list)
    actions_json: Mapped[list[dict[str, object]]] = mapped_column(JSON, nullable=False, default=list)
    total_executions: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    successful_executions: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    failed_executions: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AutomationWorkflowExecution(Base):
    __tablename__ = "automation_workflow_execution"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workflow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("automation_workflow.id", ondelete="CASCADE"),
        nullable=False,
    )
    deal_id: Mapped[str] = mapped_column(String(128), nullable=False)
    event_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    actions_executed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    action_results_json: Mapped[list[dict[str, object]]] = mapped_column(JSON, nullable=False, default=list)
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


Index(
    "ix_automation_workflow_team_trigger_enabled",
    AutomationWorkflow.team,
    AutomationWorkflow.trigger_type,
    AutomationWorkflow.enabled,
)
Index("ix_automation_workflow_deleted_at", AutomationWorkflow.deleted_at)
Index(
    "ix_automation_workflow_execution_workflow_executed_at",
    AutomationWorkflowExecution.workflow_id,
    AutomationWorkflowExecution.executed_at,
)
