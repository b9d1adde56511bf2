from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Union, Optional
import json


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    IN = "in"
    NOT_IN = "not_in"
    IS_TRUE = "is_true"
    IS_FALSE = "is_false"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class RuleCategory(str, Enum):
    THRESHOLD = "threshold"
    VELOCITY = "velocity"
    PATTERN = "pattern"


class AlertType(str, Enum):
    AML = "aml"
    UNUSUAL_ACTIVITY = "unusual_activity"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


def _numeric(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return Decimal(str(value))
    return value


@dataclass
class Condition:
    field: str
    operator: ConditionOperator
    value: Any = None

    def evaluate(self, context: dict) -> bool:
        field_value = self._get_field_value(context, self.field)
        if field_value is None and self.operator not in (ConditionOperator.IS_FALSE, ConditionOperator.NOT_IN):
            return False
        return self._apply_operator(_numeric(field_value), _numeric(self.value))

    def _get_field_value(self, context: dict, field_path: str) -> Any:
        value = context
        for part in field_path.split("."):
            if isinstance(value, dict):
                value = value.get(part)
            else:
                return None
        return value

    def _apply_operator(self, field_value: Any, compare_value: Any) -> bool:
        op = self.operator
        if op == ConditionOperator.EQUALS: return field_value == compare_value
        if op == ConditionOperator.NOT_EQUALS: return field_value != compare_value
        if op == ConditionOperator.GREATER_THAN: return field_value > compare_value
        if op == ConditionOperator.LESS_THAN: return field_value < compare_value
        if op == ConditionOperator.GREATER_THAN_OR_EQUAL: return field_value >= compare_value
        if op == ConditionOperator.LESS_THAN_OR_EQUAL: return field_value <= compare_value
        if op == ConditionOperator.IN: return field_value in compare_value if compare_value else False
        if op == ConditionOperator.NOT_IN: return field_value not in compare_value if compare_value else True
        if op == ConditionOperator.IS_TRUE: return bool(field_value) is True
        if op == ConditionOperator.IS_FALSE: return bool(field_value) is False
        return False

    def to_dict(self) -> dict:
        value = self.value
        if isinstance(value, Decimal):
            value = int(value) if value == value.to_integral_value() else float(value)
        return {"field": self.field, "operator": self.operator.value, "value": value}

    @classmethod
    def from_dict(cls, data: dict) -> "Condition":
        return cls(field=data["field"], operator=ConditionOperator(data["operator"]), value=data.get("value"))


@dataclass
class ConditionGroup:
    operator: LogicalOperator
    conditions: list[Union[Condition, "ConditionGroup"]]

    def evaluate(self, context: dict) -> bool:
        if not self.conditions:
            return True
        results = [cond.evaluate(context) for cond in self.conditions]
        return all(results) if self.operator == LogicalOperator.AND else any(results)

    def to_dict(self) -> dict:
        return {"operator": self.operator.value, "conditions": [c.to_dict() for c in self.conditions]}

    @classmethod
    def from_dict(cls, data: dict) -> "ConditionGroup":
        conditions = []
        for c in data["conditions"]:
            if "operator" in c and "conditions" in c:
                conditions.append(ConditionGroup.from_dict(c))
            else:
                conditions.append(Condition.from_dict(c))
        return cls(operator=LogicalOperator(data["operator"]), conditions=conditions)


@dataclass
class Rule:
    id: str
    name: str
    category: RuleCategory
    conditions: Union[Condition, ConditionGroup]
    risk_score: int
    alert_type: AlertType = AlertType.AML
    severity: Severity = Severity.MEDIUM
    description: str = ""
    is_active: bool = True
    priority: int = 0
    metadata: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)

    def evaluate(self, context: dict) -> bool:
        if not self.is_active:
            return False
        return self.conditions.evaluate(context)

    def render_description(self, context: dict) -> str:
        try:
            return self.description.format(**context) if self.description else self.name
        except (KeyError, IndexError, ValueError):
            return self.description

    def to_dict(self) -> dict:
        return {
            "id": self.id, "name": self.name, "description": self.description,
            "category": self.category.value, "is_active": self.is_active, "priority": self.priority,
            "risk_score": self.risk_score, "alert_type": self.alert_type.value, "severity": self.severity.value,
            "conditions": self.conditions.to_dict(), "metadata": self.metadata,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: dict) -> "Rule":
        cond_data = data["conditions"]
        conditions = ConditionGroup.from_dict(cond_data) if "operator" in cond_data and "conditions" in cond_data else Condition.from_dict(cond_data)
        return cls(
            id=data["id"], name=data["name"], description=data.get("description", ""),
            category=RuleCategory(data["category"]), conditions=conditions,
            risk_score=int(data["risk_score"]),
            alert_type=AlertType(data.get("alert_type", AlertType.AML.value)),
            severity=Severity(data.get("severity", Severity.MEDIUM.value)),
            is_active=data.get("is_active", True), priority=data.get("priority", 0),
            metadata=data.get("metadata", {}),
        )


class RuleEngine:
    def __init__(self, rules: Optional[list[Rule]] = None):
        self.rules: dict[str, Rule] = {}
        for rule in rules or []:
            self.add_rule(rule)

    def add_rule(self, rule: Rule) -> None:
        self.rules[rule.id] = rule

    def remove_rule(self, rule_id: str) -> None:
        self.rules.pop(rule_id, None)

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        return self.rules.get(rule_id)

    def list_rules(self, categories: Optional[list[str]] = None) -> list[Rule]:
        rules = list(self.rules.values())
        if categories is not None:
            rules = [r for r in rules if r.category.value in categories]
        rules.sort(key=lambda r: r.priority, reverse=True)
        return rules

    def evaluate(self, context: dict, categories: Optional[list[str]] = None) -> list[Rule]:
        return [rule for rule in self.list_rules(categories) if rule.evaluate(context)]


def default_aml_rules(reporting_threshold: Decimal = Decimal("50000"), structuring_band: Decimal = Decimal("0.8")) -> list[Rule]:
    threshold = reporting_threshold
    return [
        Rule(
            id="large-transaction", name="Large Transaction Monitoring",
            category=RuleCategory.THRESHOLD, risk_score=25, severity=Severity.MEDIUM,
            conditions=Condition(field="amount", operator=ConditionOperator.GREATER_THAN_OR_EQUAL, value=threshold),
            description="Large transaction amount: {amount:,}", priority=10,
        ),
        Rule(
            id="very-large-transaction", name="Very Large Transaction Monitoring",
            category=RuleCategory.THRESHOLD, risk_score=70, severity=Severity.HIGH,
            conditions=Condition(field="amount", operator=ConditionOperator.GREATER_THAN_OR_EQUAL, value=threshold * 4),
            description="Very large transaction amount: {amount:,}", priority=20,
        ),
        Rule(
            id="large-cash", name="Cash Transaction Monitoring",
            category=RuleCategory.THRESHOLD, risk_score=30, severity=Severity.HIGH,
            conditions=ConditionGroup(operator=LogicalOperator.AND, conditions=[
                Condition(field="type", operator=ConditionOperator.EQUALS, value="cash_digitization"),
                Condition(field="amount", operator=ConditionOperator.GREATER_THAN_OR_EQUAL, value=threshold * 2),
            ]),
            description="Large cash transaction: {amount:,}", priority=15,
        ),
        Rule(
            id="daily-cumulative", name="Daily Cumulative Monitoring",
            category=RuleCategory.VELOCITY, risk_score=20, severity=Severity.MEDIUM,
            conditions=Condition(field="daily_total_with_amount", operator=ConditionOperator.GREATER_THAN_OR_EQUAL, value=threshold * 2),
            description="Daily cumulative volume reaches {daily_total_with_amount:,}", priority=5,
        ),
        Rule(
            id="frequency", name="Frequency Monitoring",
            category=RuleCategory.VELOCITY, risk_score=20, alert_type=AlertType.UNUSUAL_ACTIVITY,
            conditions=Condition(field="daily_count", operator=ConditionOperator.GREATER_THAN, value=10),
            description="Unusual transaction frequency: {daily_count} transactions today", priority=5,
        ),
        Rule(
            id="round-number", name="Round Number Pattern",
            category=RuleCategory.PATTERN, risk_score=10, severity=Severity.LOW, alert_type=AlertType.UNUSUAL_ACTIVITY,
            conditions=ConditionGroup(operator=LogicalOperator.AND, conditions=[
                Condition(field="is_round_number", operator=ConditionOperator.IS_TRUE),
                Condition(field="amount", operator=ConditionOperator.GREATER_THAN_OR_EQUAL, value=threshold),
            ]),
            description="Round number transaction pattern detected",
        ),
        Rule(
            id="structuring", name="Structuring Detection",
            category=RuleCategory.PATTERN, risk_score=50, severity=Severity.HIGH,
            conditions=Condition(field="near_threshold_count", operator=ConditionOperator.GREATER_THAN_OR_EQUAL, value=3),
            description="Potential structuring: {near_threshold_count} recent transactions just below the reporting threshold",
            priority=15, metadata={"band": str(structuring_band)},
        ),
    ]
