"""
Rule actions.

Raw encoding: {"type": "<action>", ...fields}. The action type accepts either
snake case (`add_component`) or the class name (`AddComponent`).
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Union

from medbom.exceptions import RuleDefinitionError

CUSTOMIZATION_TYPES = ("DIMENSIONAL", "MATERIAL", "FINISH", "FEATURE", "COMPLETE_CUSTOM")


@dataclass(frozen=True)
class AddComponent:
    """Include a component; with dimensions + category, look for a dimensional match."""

    component_id: Optional[str] = None
    quantity: Decimal = Decimal("1")
    target_assembly_id: Optional[str] = None
    category_id: Optional[str] = None
    dimensions: Dict[str, Any] = field(default_factory=dict, hash=False)

    kind = "add_component"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "component_id": self.component_id,
            "quantity": self.quantity,
            "target_assembly_id": self.target_assembly_id,
            "category_id": self.category_id,
            "dimensions": self.dimensions,
        }


@dataclass(frozen=True)
class SubstituteComponent:
    replacement_component_id: str
    original_component_id: Optional[str] = None
    substitute_group: Optional[str] = None

    kind = "substitute_component"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "replacement_component_id": self.replacement_component_id,
            "original_component_id": self.original_component_id,
            "substitute_group": self.substitute_group,
        }


@dataclass(frozen=True)
class RequireCustomPart:
    customization_type: str
    specifications: Dict[str, Any] = field(default_factory=dict, hash=False)
    base_part_id: Optional[str] = None
    quantity: Decimal = Decimal("1")
    target_assembly_id: Optional[str] = None
    description: Optional[str] = None

    kind = "require_custom_part"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "customization_type": self.customization_type,
            "specifications": self.specifications,
            "base_part_id": self.base_part_id,
            "quantity": self.quantity,
            "target_assembly_id": self.target_assembly_id,
            "description": self.description,
        }


@dataclass(frozen=True)
class AdjustPrice:
    """Percent and/or absolute adjustment; scoped to one part or the whole BOM."""

    percent: Decimal = Decimal("0")
    amount: Decimal = Decimal("0")
    part_id: Optional[str] = None
    reason: Optional[str] = None

    kind = "adjust_price"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "percent": self.percent,
            "amount": self.amount,
            "part_id": self.part_id,
            "reason": self.reason,
        }


Action = Union[AddComponent, SubstituteComponent, RequireCustomPart, AdjustPrice]

_ACTION_TYPES = {
    "add_component": AddComponent,
    "addcomponent": AddComponent,
    "substitute_component": SubstituteComponent,
    "substitutecomponent": SubstituteComponent,
    "require_custom_part": RequireCustomPart,
    "requirecustompart": RequireCustomPart,
    "adjust_price": AdjustPrice,
    "adjustprice": AdjustPrice,
}


def _decimal(raw: Mapping[str, Any], key: str, default: str, rule: Optional[str]) -> Decimal:
    value = raw.get(key)
    if value is None:
        return Decimal(default)
    if isinstance(value, bool):
        raise RuleDefinitionError(f"'{key}' must be numeric", rule=rule)
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise RuleDefinitionError(f"'{key}' must be numeric, got {value!r}", rule=rule)


def parse_action(raw: Any, rule: Optional[str] = None) -> Action:
    if not isinstance(raw, Mapping):
        raise RuleDefinitionError("Action must be an object", rule=rule)
    action_type = str(raw.get("type", "")).lower()
    cls = _ACTION_TYPES.get(action_type)
    if cls is None:
        raise RuleDefinitionError(f"Unknown action type: {raw.get('type')}", rule=rule)

    if cls is AddComponent:
        quantity = _decimal(raw, "quantity", "1", rule)
        if quantity <= 0:
            raise RuleDefinitionError("add_component quantity must be positive", rule=rule)
        dimensions = dict(raw.get("dimensions") or {})
        if not raw.get("component_id") and not (dimensions and raw.get("category_id")):
            raise RuleDefinitionError(
                "add_component needs 'component_id' or 'dimensions' with 'category_id'",
                rule=rule,
            )
        return AddComponent(
            component_id=raw.get("component_id"),
            quantity=quantity,
            target_assembly_id=raw.get("target_assembly_id"),
            category_id=raw.get("category_id"),
            dimensions=dimensions,
        )

    if cls is SubstituteComponent:
        replacement = raw.get("replacement_component_id")
        if not replacement:
            raise RuleDefinitionError("substitute_component needs 'replacement_component_id'", rule=rule)
        if not raw.get("original_component_id") and not raw.get("substitute_group"):
            raise RuleDefinitionError(
                "substitute_component needs 'original_component_id' or 'substitute_group'",
                rule=rule,
            )
        return SubstituteComponent(
            replacement_component_id=replacement,
            original_component_id=raw.get("original_component_id"),
            substitute_group=raw.get("substitute_group"),
        )

    if cls is RequireCustomPart:
        customization_type = str(raw.get("customization_type", "")).upper()
        if customization_type not in CUSTOMIZATION_TYPES:
            raise RuleDefinitionError(
                f"Unknown customization type: {raw.get('customization_type')}", rule=rule
            )
        return RequireCustomPart(
            customization_type=customization_type,
            specifications=dict(raw.get("specifications") or {}),
            base_part_id=raw.get("base_part_id"),
            quantity=_decimal(raw, "quantity", "1", rule),
            target_assembly_id=raw.get("target_assembly_id"),
            description=raw.get("description"),
        )

    percent = _decimal(raw, "percent", "0", rule)
    amount = _decimal(raw, "amount", "0", rule)
    if percent == 0 and amount == 0:
        raise RuleDefinitionError("adjust_price needs a non-zero 'percent' or 'amount'", rule=rule)
    return AdjustPrice(
        percent=percent,
        amount=amount,
        part_id=raw.get("part_id"),
        reason=raw.get("reason"),
    )
