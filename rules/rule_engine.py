from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

ZERO = Decimal("0")
ONE = Decimal("1")


class ConditionOperator(str, Enum):
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"


def lookup(context: dict, path: str) -> Any:
    """Resolve a dotted path such as ``progress.days_active`` in nested dicts."""
    value = context
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


@dataclass
class Condition:
    field: str
    operator: ConditionOperator
    value: Any = None

    def evaluate(self, context: dict) -> bool:
        actual = lookup(context, self.field)
        if actual is None:
            return False
        return actual >= self.value

    def ratio(self, context: dict) -> Decimal:
        """How far the threshold is towards being met, clamped to [0, 1]."""
        if not self.value or self.value <= 0:
            return ONE
        actual = lookup(context, self.field) or 0
        return min(Decimal(str(actual)) / Decimal(str(self.value)), ONE)


@dataclass
class ConditionGroup:
    """All member conditions must hold."""

    conditions: list[Condition]

    def evaluate(self, context: dict) -> bool:
        return all(cond.evaluate(context) for cond in self.conditions)

    def ratio(self, context: dict) -> Decimal:
        """Mean progress of the member conditions."""
        if not self.conditions:
            return ONE
        return sum((cond.ratio(context) for cond in self.conditions), ZERO) / len(self.conditions)
