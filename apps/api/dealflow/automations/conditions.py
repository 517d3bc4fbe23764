"""Condition gate for workflow execution.

Conditions are AND-ed and evaluated against an immutable deal snapshot.
Evaluation never raises: values that cannot be compared resolve to ``False``
for numeric operators and to empty-string semantics for string operators.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from dealflow.automations.schemas import DealSnapshot, WorkflowCondition


_DEAL_FIELD_ATTRIBUTES = {
    "id": "id",
    "team": "team",
    "stage": "stage",
    "amount": "amount",
    "probability": "probability",
    "closeDate": "close_date",
    "close_date": "close_date",
    "tags": "tags",
}

_ABSENT = object()


def evaluate(deal: DealSnapshot, conditions: Sequence[WorkflowCondition]) -> bool:
    for condition in conditions:
        if not evaluate_condition(deal, condition):
            return False
    return True


def evaluate_condition(deal: DealSnapshot, condition: WorkflowCondition) -> bool:
    current = resolve_field(deal, condition.field)
    op = condition.operator

    if op == "is_empty":
        return _is_empty(current)
    if op == "is_not_empty":
        return not _is_empty(current)
    if op == "equals":
        return to_comparable_string(current) == condition.value
    if op == "not_equals":
        return to_comparable_string(current) != condition.value
    if op == "contains":
        return _contains(current, condition.value)
    if op == "not_contains":
        return not _contains(current, condition.value)
    if op in ("greater_than", "less_than"):
        left = to_number(current)
        right = to_number(condition.value)
        if left is None or right is None:
            return False
        return left > right if op == "greater_than" else left < right
    return False


def resolve_field(deal: DealSnapshot, field: str) -> Any:
    attribute = _DEAL_FIELD_ATTRIBUTES.get(field)
    if attribute is not None:
        value = getattr(deal, attribute)
    else:
        value = (deal.model_extra or {}).get(field, _ABSENT)
    if value is None:
        return _ABSENT
    return value


def to_comparable_string(value: Any) -> str:
    if value is _ABSENT or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, Decimal)):
        return canonical_decimal(value)
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (set, frozenset, list, tuple)):
        return ",".join(sorted(str(item) for item in value))
    return str(value)


def canonical_decimal(value: int | float | Decimal) -> str:
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        return str(value)
    if not number.is_finite():
        return str(value)
    return format(number.normalize(), "f")


def to_number(value: Any) -> Decimal | None:
    if value is _ABSENT or value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        raw = str(value)
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
    else:
        return None
    try:
        number = Decimal(raw)
    except InvalidOperation:
        return None
    if not number.is_finite():
        return None
    return number


def _is_empty(value: Any) -> bool:
    if value is _ABSENT or value is None:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (set, frozenset, list, tuple)):
        return len(value) == 0
    return False


def _contains(current: Any, target: str) -> bool:
    if _is_collection(current):
        return target in {str(item) for item in current}
    return target in to_comparable_string(current)


def _is_collection(value: Any) -> bool:
    return isinstance(value, (set, frozenset, list, tuple))
