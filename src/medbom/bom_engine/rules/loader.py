"""
Rule loading: schema check, then parse conditions, actions and derivations.

Every malformed rule is rejected here with RuleDefinitionError, so rule
evaluation never meets an unknown node or operator.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Tuple

from jsonschema import ValidationError as JSONSchemaValidationError
from jsonschema import validate

from medbom.bom_engine.rules.actions import Action, parse_action
from medbom.bom_engine.rules.conditions import ALWAYS, Condition, lookup, is_missing, parse_condition
from medbom.exceptions import RuleDefinitionError

logger = logging.getLogger(__name__)

CONSTRAINT_TYPES = frozenset({"VALIDATION", "COMPATIBILITY", "CONSTRAINT"})
SELECTION_TYPES = frozenset({"COMPONENT_SELECTION", "SUBSTITUTION", "PRICING"})
CALCULATION = "CALCULATION"
RULE_TYPES = CONSTRAINT_TYPES | SELECTION_TYPES | {CALCULATION}

_ID_LIST = {"type": "array", "items": {"type": "integer"}}
_STR_LIST = {"type": "array", "items": {"type": "string"}}
_DATE = {"type": ["string", "null"]}

RULE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["rule_id", "rule_code", "rule_type"],
    "properties": {
        "rule_id": {"type": "integer"},
        "rule_code": {"type": "string", "minLength": 1},
        "rule_name": {"type": "string"},
        "rule_type": {"type": "string", "enum": sorted(RULE_TYPES)},
        "priority": {"type": "integer"},
        "execution_order": {"type": "integer"},
        "is_blocking": {"type": "boolean"},
        "is_active": {"type": "boolean"},
        "conditions": {"type": ["object", "array", "null"]},
        "actions": {"type": ["array", "null"], "items": {"type": "object"}},
        "derive": {"type": ["object", "null"]},
        "applies_to_assemblies": _STR_LIST,
        "applies_to_categories": _STR_LIST,
        "dependency_rules": _ID_LIST,
        "conflicting_rules": _ID_LIST,
        "error_message": {"type": ["string", "null"]},
        "warning_message": {"type": ["string", "null"]},
        "resolution_guidance": {"type": ["string", "null"]},
        "effective_date": _DATE,
        "expiration_date": _DATE,
    },
}


# ---------------------------------------------------------------------------
# Derived attribute expressions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Literal:
    value: Any

    def evaluate(self, attributes: Mapping[str, Any]) -> Any:
        return self.value


@dataclass(frozen=True)
class AttributeRef:
    name: str

    def evaluate(self, attributes: Mapping[str, Any]) -> Any:
        value = lookup(attributes, self.name)
        return None if is_missing(value) else value


@dataclass(frozen=True)
class Operation:
    op: str
    args: Tuple[Any, ...]

    def evaluate(self, attributes: Mapping[str, Any]) -> Any:
        values = []
        for arg in self.args:
            value = arg.evaluate(attributes)
            if value is None or isinstance(value, bool):
                return None
            try:
                values.append(Decimal(str(value)))
            except InvalidOperation:
                return None
        if self.op == "add":
            return sum(values, Decimal("0"))
        if self.op == "multiply":
            result = Decimal("1")
            for value in values:
                result *= value
            return result
        if self.op == "subtract":
            result = values[0]
            for value in values[1:]:
                result -= value
            return result
        if self.op == "divide":
            result = values[0]
            for value in values[1:]:
                if value == 0:
                    return None
                result /= value
            return result
        if self.op == "min":
            return min(values)
        return max(values)


Expression = Any
_EXPRESSION_OPS = ("add", "subtract", "multiply", "divide", "min", "max")


def parse_expression(raw: Any, rule: Optional[str] = None) -> Expression:
    """Literal, "$attribute" reference, or {"op": ..., "args": [...]}."""
    if isinstance(raw, str) and raw.startswith("$"):
        if len(raw) == 1:
            raise RuleDefinitionError("Empty attribute reference '$'", rule=rule)
        return AttributeRef(raw[1:])
    if isinstance(raw, Mapping):
        op = raw.get("op")
        if op not in _EXPRESSION_OPS:
            raise RuleDefinitionError(f"Unknown expression op: {op}", rule=rule)
        args = raw.get("args")
        if not isinstance(args, list) or not args:
            raise RuleDefinitionError(f"'{op}' needs a non-empty 'args' list", rule=rule)
        return Operation(op, tuple(parse_expression(arg, rule) for arg in args))
    if isinstance(raw, list):
        raise RuleDefinitionError("Lists are not valid expressions", rule=rule)
    return Literal(raw)


# ---------------------------------------------------------------------------
# Rule
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Rule:
    rule_id: int
    code: str
    rule_type: str
    name: str = ""
    priority: int = 100
    execution_order: int = 100
    is_blocking: bool = False
    is_active: bool = True
    condition: Condition = ALWAYS
    actions: Tuple[Action, ...] = ()
    derive: Tuple[Tuple[str, Expression], ...] = ()
    applies_to_assemblies: Tuple[str, ...] = ()
    applies_to_categories: Tuple[str, ...] = ()
    depends_on: Tuple[int, ...] = ()
    conflicts_with: Tuple[int, ...] = ()
    error_message: Optional[str] = None
    warning_message: Optional[str] = None
    resolution_guidance: Optional[str] = None
    effective_date: Optional[date] = None
    expiration_date: Optional[date] = None
    updated_at: Optional[datetime] = field(default=None, compare=False)

    @property
    def sort_key(self) -> Tuple[int, int, int]:
        return (self.priority, self.execution_order, self.rule_id)

    def applies_to(self, assembly_id: Optional[str], category_id: Optional[str]) -> bool:
        """Unscoped rules are global; otherwise assembly or category must match."""
        if not self.applies_to_assemblies and not self.applies_to_categories:
            return True
        if assembly_id and assembly_id in self.applies_to_assemblies:
            return True
        return bool(category_id and category_id in self.applies_to_categories)

    def is_effective(self, as_of: datetime) -> bool:
        day = as_of.date() if isinstance(as_of, datetime) else as_of
        if self.effective_date and day < self.effective_date:
            return False
        if self.expiration_date and day >= self.expiration_date:
            return False
        return True

    def derive_attributes(self, attributes: Mapping[str, Any]) -> Dict[str, Any]:
        derived = {}
        for name, expression in self.derive:
            value = expression.evaluate({**attributes, **derived})
            if value is not None:
                derived[name] = value
        return derived


def _parse_date(value: Any, key: str, rule: str) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise RuleDefinitionError(f"'{key}' is not an ISO date: {value!r}", rule=rule)


def load_rule(raw: Mapping[str, Any]) -> Rule:
    """
    Build a Rule from its raw mapping (fixture row or database row dict).

    Raises:
        RuleDefinitionError: schema violation, unknown condition/action/expression.
    """
    payload = {key: value for key, value in raw.items() if value is not None}
    for key in ("effective_date", "expiration_date"):
        if isinstance(payload.get(key), (date, datetime)):
            payload[key] = payload[key].isoformat()
    payload.pop("updated_at", None)

    try:
        validate(instance=payload, schema=RULE_SCHEMA)
    except JSONSchemaValidationError as e:
        raise RuleDefinitionError(
            f"Rule schema violation: {e.message}",
            rule=str(raw.get("rule_code") or raw.get("rule_id")),
        ) from e

    code = payload["rule_code"]
    rule_type = payload["rule_type"]
    raw_condition = payload.get("conditions", payload.get("condition"))
    condition = parse_condition(raw_condition, rule=code)

    raw_actions = payload.get("actions") or []
    if raw_actions and rule_type not in SELECTION_TYPES:
        raise RuleDefinitionError(f"{rule_type} rules cannot carry actions", rule=code)
    actions = tuple(parse_action(action, rule=code) for action in raw_actions)

    raw_derive = payload.get("derive") or {}
    if raw_derive and rule_type != CALCULATION:
        raise RuleDefinitionError("Only CALCULATION rules may derive attributes", rule=code)
    derive = tuple(
        (name, parse_expression(expr, rule=code)) for name, expr in sorted(raw_derive.items())
    )

    rule_id = payload["rule_id"]
    depends_on = tuple(sorted(set(payload.get("dependency_rules") or [])))
    if rule_id in depends_on:
        raise RuleDefinitionError("Rule cannot depend on itself", rule=code)

    return Rule(
        rule_id=rule_id,
        code=code,
        rule_type=rule_type,
        name=payload.get("rule_name") or code,
        priority=payload.get("priority", 100),
        execution_order=payload.get("execution_order", 100),
        is_blocking=payload.get("is_blocking", False),
        is_active=payload.get("is_active", True),
        condition=condition,
        actions=actions,
        derive=derive,
        applies_to_assemblies=tuple(payload.get("applies_to_assemblies") or ()),
        applies_to_categories=tuple(payload.get("applies_to_categories") or ()),
        depends_on=depends_on,
        conflicts_with=tuple(sorted(set(payload.get("conflicting_rules") or []))),
        error_message=payload.get("error_message"),
        warning_message=payload.get("warning_message"),
        resolution_guidance=payload.get("resolution_guidance"),
        effective_date=_parse_date(payload.get("effective_date"), "effective_date", code),
        expiration_date=_parse_date(payload.get("expiration_date"), "expiration_date", code),
        updated_at=raw.get("updated_at"),
    )
