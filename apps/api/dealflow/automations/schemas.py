from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator
from pydantic.alias_generators import to_camel


ConditionOperator = Literal[
    "equals",
    "not_equals",
    "greater_than",
    "less_than",
    "contains",
    "not_contains",
    "is_empty",
    "is_not_empty",
]
ConfigFieldType = Literal["string", "select", "textarea"]
ExecutionOutcome = Literal["success", "failure"]
ExecutionStatus = Literal["success", "failed"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _stringify_config(value: Any) -> Any:
    if not isinstance(value, dict):
        return value
    normalized: dict[str, Any] = {}
    for key, item in value.items():
        if item is None:
            continue
        if isinstance(item, bool):
            normalized[key] = "true" if item else "false"
        elif isinstance(item, (int, float, Decimal)):
            normalized[key] = str(item)
        else:
            normalized[key] = item
    return normalized


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DealSnapshot(CamelModel):
    """Read-only view of a deal at event time.

    Keys outside the standard deal fields (``name``, ``ownerId``, custom
    fields) are kept as extras and stay readable by conditions and templates.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True, extra="allow")

    id: str = Field(min_length=1)
    team: str = Field(min_length=1)
    stage: str | None = None
    amount: Decimal | str | None = None
    probability: Decimal | str | None = None
    close_date: date | None = None
    tags: frozenset[str] = frozenset()

    @field_validator("close_date", mode="before")
    @classmethod
    def close_date_from_timestamp(cls, value: Any) -> Any:
        # Deal stores serialize closeDate as a full UTC timestamp.
        if isinstance(value, str) and "T" in value:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                value = value.astimezone(timezone.utc)
            return value.date()
        return value


class DomainEvent(CamelModel):
    type: str = Field(min_length=1)
    team: str = Field(min_length=1)
    deal: DealSnapshot
    previous_deal: DealSnapshot | None = None
    occurred_at: datetime = Field(default_factory=utcnow)
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str | None = None

    @model_validator(mode="after")
    def validate_team_scope(self) -> "DomainEvent":
        if self.deal.team != self.team:
            raise ValueError("deal.team must match event team")
        if self.previous_deal is not None and self.previous_deal.team != self.team:
            raise ValueError("previousDeal.team must match event team")
        return self


class TriggerSpec(CamelModel):
    type: str = Field(min_length=1)
    config: dict[str, str] = Field(default_factory=dict)

    @field_validator("config", mode="before")
    @classmethod
    def normalize_config(cls, value: Any) -> Any:
        return _stringify_config(value)


class WorkflowCondition(CamelModel):
    field: str = Field(min_length=1)
    operator: ConditionOperator
    value: str = ""

    @field_validator("value", mode="before")
    @classmethod
    def stringify_value(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float, Decimal)):
            return str(value)
        return value


class WorkflowAction(CamelModel):
    type: str = Field(min_length=1)
    config: dict[str, str] = Field(default_factory=dict)

    @field_validator("config", mode="before")
    @classmethod
    def normalize_config(cls, value: Any) -> Any:
        return _stringify_config(value)


class WorkflowStats(CamelModel):
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    last_executed_at: datetime | None = None


class WorkflowRead(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: UUID
    team: str
    name: str
    description: str | None
    enabled: bool
    trigger: TriggerSpec
    conditions: list[WorkflowCondition]
    actions: list[WorkflowAction]
    stats: WorkflowStats
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime


class WorkflowCreate(CamelModel):
    team: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str | None = None
    enabled: bool = True
    trigger: TriggerSpec
    conditions: list[WorkflowCondition] = Field(default_factory=list)
    actions: list[WorkflowAction] = Field(default_factory=list)


class WorkflowUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    enabled: bool | None = None
    trigger: TriggerSpec | None = None
    conditions: list[WorkflowCondition] | None = None
    actions: list[WorkflowAction] | None = None


class ActionResult(CamelModel):
    action_type: str
    ok: bool
    error: str | None = None


class ExecutionResult(CamelModel):
    workflow_id: UUID
    matched: bool
    action_results: list[ActionResult] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def succeeded(self) -> bool:
        return self.matched and all(result.ok for result in self.action_results)


class WorkflowExecutionRead(CamelModel):
    id: UUID
    workflow_id: UUID
    deal_id: str
    event_id: str | None = None
    executed_at: datetime
    status: ExecutionStatus
    actions_executed: int
    error: str | None = None
    action_results: list[ActionResult] = Field(default_factory=list)


class WorkflowHistoryResponse(CamelModel):
    history: list[WorkflowExecutionRead]
    stats: WorkflowStats


class ManualExecutionRequest(CamelModel):
    deal: DealSnapshot
    previous_deal: DealSnapshot | None = None


class ConfigField(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    type: ConfigFieldType = "string"
    required: bool = False
    options: list[str] | None = None
    help: str | None = None


class TriggerDescriptor(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    name: str
    description: str
    config: dict[str, ConfigField] = Field(default_factory=dict)


class ActionDescriptor(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    name: str
    description: str
    config: dict[str, ConfigField] = Field(default_factory=dict)


class FieldError(CamelModel):
    field: str
    code: Literal["missing", "invalid", "unknown_type"]
    message: str
