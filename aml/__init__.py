"""
AML Rules Package

Provides rule representation and evaluation for anti-money-laundering
screening: threshold, velocity and pattern rules that each raise a scored
alert when their conditions hold.
"""

from .rule_engine import (
    RuleEngine,
    Rule,
    Condition,
    ConditionGroup,
    ConditionOperator,
    LogicalOperator,
    RuleCategory,
    AlertType,
    Severity,
    default_aml_rules,
)

__all__ = [
    "RuleEngine",
    "Rule",
    "Condition",
    "ConditionGroup",
    "ConditionOperator",
    "LogicalOperator",
    "RuleCategory",
    "AlertType",
    "Severity",
    "default_aml_rules",
]
