"""
Rule condition AST.

Supported encodings (parsed once, at rule-load time):
{
    "type": "and|or|not|field|always",
    "conditions": [...],   # for and/or
    "condition": {...},    # for not
    "field": "attribute.path",
    "operator": "eq|ne|gt|gte|lt|lte|in|not_in|contains|between|exists|not_exists",
    "value": any
}
plus the shorthand {"option": "attribute", "value": v} for equality.

Evaluation is total: a missing attribute or an incomparable value makes a
comparison False, it never raises.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from medbom.exceptions import RuleDefinitionError

_MISSING = object()


def _ordered(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(actual: Any, expected: Any) -> bool:
        if isinstance(actual, bool) or isinstance(expected, bool):
            return False
        return op(_numeric(actual), _numeric(expected))

    return compare


def _numeric(value: Any) -> Any:
    if isinstance(value, float):
        return Decimal(str(value))
    return value


def _equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, (int, float, Decimal)) and isinstance(expected, (int, float, Decimal)):
        if isinstance(actual, bool) != isinstance(expected, bool):
            return False
        return _numeric(actual) == _numeric(expected)
    return actual == expected


def _member(actual: Any, expected: Any) -> bool:
    return any(_equals(actual, candidate) for candidate in expected)


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return isinstance(expected, str) and expected in actual
    if isinstance(actual, (list, tuple, set, frozenset)):
        return _member(expected, actual)
    if isinstance(actual, Mapping):
        return expected in actual
    return False


def _between(actual: Any, expected: Any) -> bool:
    low, high = expected
    return _ordered(lambda a, b: a >= b)(actual, low) and _ordered(lambda a, b: a <= b)(
        actual, high
    )


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": _equals,
    "ne": lambda a, e: not _equals(a, e),
    "gt": _ordered(lambda a, e: a > e),
    "gte": _ordered(lambda a, e: a >= e),
    "lt": _ordered(lambda a, e: a < e),
    "lte": _ordered(lambda a, e: a <= e),
    "in": _member,
    "not_in": lambda a, e: not _member(a, e),
    "contains": _contains,
    "between": _between,
}
PRESENCE_OPERATORS = ("exists", "not_exists")

_OPERATOR_ALIASES = {
    "==": "eq",
    "!=": "ne",
    ">": "gt",
    ">=": "gte",
    "<": "lt",
    "<=": "lte",
    "not in": "not_in",
    "is_null": "not_exists",
    "is_not_null": "exists",
}


def lookup(attributes: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted attribute path; returns the module sentinel when absent."""
    value: Any = attributes
    for part in path.split("."):
        if isinstance(value, Mapping) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


def is_missing(value: Any) -> bool:
    return value is _MISSING or value is None


@dataclass(frozen=True)
class Always:
    def evaluate(self, attributes: Mapping[str, Any]) -> bool:
        return True

    def fields(self) -> Tuple[str, ...]:
        return ()

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "always"}


@dataclass(frozen=True)
class Comparison:
    field: str
    operator: str
    value: Any = None

    def evaluate(self, attributes: Mapping[str, Any]) -> bool:
        actual = lookup(attributes, self.field)
        if self.operator == "exists":
            return not is_missing(actual)
        if self.operator == "not_exists":
            return is_missing(actual)
        if is_missing(actual):
            return False
        try:
            return bool(OPERATORS[self.operator](actual, self.value))
        except (TypeError, ValueError, ArithmeticError):
            return False

    def fields(self) -> Tuple[str, ...]:
        return (self.field,)

    def to_dict(self) -> Dict[str, Any]:
        value = list(self.value) if isinstance(self.value, tuple) else self.value
        return {"type": "field", "field": self.field, "operator": self.operator, "value": value}


@dataclass(frozen=True)
class AllOf:
    conditions: Tuple["Condition", ...]

    def evaluate(self, attributes: Mapping[str, Any]) -> bool:
        return all(c.evaluate(attributes) for c in self.conditions)

    def fields(self) -> Tuple[str, ...]:
        return tuple(f for c in self.conditions for f in c.fields())

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "and", "conditions": [c.to_dict() for c in self.conditions]}


@dataclass(frozen=True)
class AnyOf:
    conditions: Tuple["Condition", ...]

    def evaluate(self, attributes: Mapping[str, Any]) -> bool:
        return any(c.evaluate(attributes) for c in self.conditions)

    def fields(self) -> Tuple[str, ...]:
        return tuple(f for c in self.conditions for f in c.fields())

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "or", "conditions": [c.to_dict() for c in self.conditions]}


@dataclass(frozen=True)
class Not:
    condition: "Condition"

    def evaluate(self, attributes: Mapping[str, Any]) -> bool:
        return not self.condition.evaluate(attributes)

    def fields(self) -> Tuple[str, ...]:
        return self.condition.fields()

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "not", "condition": self.condition.to_dict()}


Condition = Union[Always, Comparison, AllOf, AnyOf, Not]

ALWAYS = Always()


def parse_condition(raw: Optional[Any], rule: Optional[str] = None) -> Condition:
    """
    Parse a raw condition blob into the AST.

    None or an empty mapping means "always". A list is read as an implicit AND.

    Raises:
        RuleDefinitionError: unknown node type or operator, or malformed operands.
    """
    if raw is None or raw == {} or raw == []:
        return ALWAYS
    if isinstance(raw, list):
        return AllOf(tuple(parse_condition(item, rule) for item in raw))
    if not isinstance(raw, Mapping):
        raise RuleDefinitionError(f"Condition must be an object, got {type(raw).__name__}", rule=rule)

    if "type" not in raw and "option" in raw:
        return _parse_comparison(
            raw["option"], raw.get("operator", "eq"), raw.get("value", True), rule
        )

    node_type = raw.get("type", "field")
    if node_type in ("and", "or"):
        children = raw.get("conditions")
        if not isinstance(children, list) or not children:
            raise RuleDefinitionError(f"'{node_type}' needs a non-empty 'conditions' list", rule=rule)
        parsed = tuple(parse_condition(child, rule) for child in children)
        return AllOf(parsed) if node_type == "and" else AnyOf(parsed)
    if node_type == "not":
        if "condition" not in raw:
            raise RuleDefinitionError("'not' needs a 'condition'", rule=rule)
        return Not(parse_condition(raw["condition"], rule))
    if node_type == "always":
        return ALWAYS
    if node_type == "field":
        return _parse_comparison(raw.get("field"), raw.get("operator", "eq"), raw.get("value"), rule)

    raise RuleDefinitionError(f"Unknown condition type: {node_type}", rule=rule)


def _parse_comparison(field: Any, operator: Any, value: Any, rule: Optional[str]) -> Comparison:
    if not isinstance(field, str) or not field.strip():
        raise RuleDefinitionError("Comparison needs a non-empty 'field'", rule=rule)
    if not isinstance(operator, str):
        raise RuleDefinitionError(f"Operator must be a string, got {operator!r}", rule=rule)
    op = _OPERATOR_ALIASES.get(operator, operator)
    if op not in OPERATORS and op not in PRESENCE_OPERATORS:
        raise RuleDefinitionError(f"Unknown operator: {operator}", rule=rule)

    if op in ("in", "not_in"):
        if not isinstance(value, (list, tuple)):
            raise RuleDefinitionError(f"'{op}' needs a list value for field '{field}'", rule=rule)
        value = tuple(value)
    elif op == "between":
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise RuleDefinitionError(f"'between' needs [low, high] for field '{field}'", rule=rule)
        value = tuple(value)
    elif op in PRESENCE_OPERATORS:
        value = None
    elif isinstance(value, (list, dict)):
        raise RuleDefinitionError(f"'{op}' needs a scalar value for field '{field}'", rule=rule)

    return Comparison(field.strip(), op, value)
