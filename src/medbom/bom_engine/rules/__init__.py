from medbom.bom_engine.rules.actions import (
    Action,
    AddComponent,
    AdjustPrice,
    RequireCustomPart,
    SubstituteComponent,
    parse_action,
)
from medbom.bom_engine.rules.conditions import (
    ALWAYS,
    AllOf,
    AnyOf,
    Comparison,
    Condition,
    Not,
    parse_condition,
)
from medbom.bom_engine.rules.engine import ActionPlan, PlannedAction, RuleEngine, order_rules
from medbom.bom_engine.rules.loader import Rule, load_rule
from medbom.bom_engine.rules.repository import (
    InMemoryRuleRepository,
    RuleRepository,
    RuleScope,
    SQLRuleRepository,
)

__all__ = [
    "ALWAYS",
    "Action",
    "ActionPlan",
    "AddComponent",
    "AdjustPrice",
    "AllOf",
    "AnyOf",
    "Comparison",
    "Condition",
    "InMemoryRuleRepository",
    "Not",
    "PlannedAction",
    "RequireCustomPart",
    "Rule",
    "RuleEngine",
    "RuleRepository",
    "RuleScope",
    "SQLRuleRepository",
    "SubstituteComponent",
    "load_rule",
    "order_rules",
    "parse_action",
    "parse_condition",
]
