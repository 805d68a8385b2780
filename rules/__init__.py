"""
Rules Package

Threshold conditions over plain dict contexts. Referral completion criteria
are expressed as a group of conditions that must all hold.
"""

from .rule_engine import (
    Condition,
    ConditionGroup,
    ConditionOperator,
)

__all__ = [
    "Condition",
    "ConditionGroup",
    "ConditionOperator",
]
