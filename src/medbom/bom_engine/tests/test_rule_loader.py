from datetime import date, datetime
from decimal import Decimal

import pytest

from medbom.bom_engine.rules.actions import AddComponent, AdjustPrice, RequireCustomPart, SubstituteComponent
from medbom.bom_engine.rules.conditions import ALWAYS
from medbom.bom_engine.rules.loader import load_rule
from medbom.exceptions import RuleDefinitionError


def _rule(**overrides):
    raw = {"rule_id": 10, "rule_code": "R-10", "rule_type": "VALIDATION"}
    raw.update(overrides)
    return raw


def test_defaults_for_minimal_rule():
    rule = load_rule(_rule())

    assert rule.name == "R-10"
    assert rule.priority == 100
    assert rule.execution_order == 100
    assert rule.is_blocking is False
    assert rule.is_active is True
    assert rule.condition is ALWAYS
    assert rule.actions == ()
    assert rule.sort_key == (100, 100, 10)


def test_selection_rule_actions_are_parsed():
    rule = load_rule(
        _rule(
            rule_type="COMPONENT_SELECTION",
            actions=[
                {"type": "add_component", "component_id": "SURGE-PROTECTOR", "quantity": 2},
                {"type": "SubstituteComponent", "original_component_id": "A", "replacement_component_id": "B"},
                {"type": "require_custom_part", "customization_type": "finish", "specifications": {"finish": "RAL 9005"}},
                {"type": "adjust_price", "percent": "-5"},
            ],
        )
    )

    add, substitute, custom, price = rule.actions
    assert add == AddComponent(component_id="SURGE-PROTECTOR", quantity=Decimal("2"))
    assert substitute == SubstituteComponent(replacement_component_id="B", original_component_id="A")
    assert isinstance(custom, RequireCustomPart)
    assert custom.customization_type == "FINISH"
    assert price == AdjustPrice(percent=Decimal("-5"))


def test_calculation_rule_derives_attributes_in_name_order():
    rule = load_rule(
        _rule(
            rule_type="CALCULATION",
            derive={
                "total_watts": {"op": "multiply", "args": ["$length_ft", 5]},
                "amps": {"op": "divide", "args": ["$total_watts", "$voltage"]},
                "label": "LINEAR",
            },
        )
    )

    derived = rule.derive_attributes({"length_ft": 8, "voltage": 120})

    # "amps" sorts first, so it cannot see total_watts yet.
    assert "amps" not in derived
    assert derived["total_watts"] == Decimal("40")
    assert derived["label"] == "LINEAR"


def test_expression_with_missing_input_is_skipped():
    rule = load_rule(
        _rule(rule_type="CALCULATION", derive={"total": {"op": "add", "args": ["$a", "$b"]}})
    )

    assert rule.derive_attributes({"a": 1}) == {}
    assert rule.derive_attributes({"a": 1, "b": "2.5"}) == {"total": Decimal("3.5")}


def test_dates_accept_strings_and_date_objects():
    rule = load_rule(_rule(effective_date="2024-01-01", expiration_date=date(2025, 1, 1)))

    assert rule.effective_date == date(2024, 1, 1)
    assert rule.expiration_date == date(2025, 1, 1)
    assert not rule.is_effective(datetime(2023, 12, 31))
    assert rule.is_effective(datetime(2024, 1, 1))
    assert not rule.is_effective(datetime(2025, 1, 1))


def test_scope_matching():
    unscoped = load_rule(_rule())
    scoped = load_rule(_rule(applies_to_assemblies=["FIXTURE-48"], applies_to_categories=["LTG"]))

    assert unscoped.applies_to("ANY", None)
    assert scoped.applies_to("FIXTURE-48", None)
    assert scoped.applies_to("OTHER", "LTG")
    assert not scoped.applies_to("OTHER", "CTL")


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"rule_type": "MAGIC"}, "schema violation"),
        ({"rule_id": "ten"}, "schema violation"),
        ({"priority": "high"}, "schema violation"),
        ({"actions": [{"type": "add_component", "component_id": "X"}]}, "cannot carry actions"),
        ({"derive": {"x": 1}}, "Only CALCULATION"),
        ({"dependency_rules": [10]}, "depend on itself"),
        ({"effective_date": "next week"}, "not an ISO date"),
        ({"rule_type": "PRICING", "actions": [{"type": "adjust_price"}]}, "non-zero"),
        ({"rule_type": "PRICING", "actions": [{"type": "discount"}]}, "Unknown action type"),
        ({"rule_type": "CALCULATION", "derive": {"x": {"op": "pow", "args": [1]}}}, "Unknown expression op"),
        ({"rule_type": "CALCULATION", "derive": {"x": "$"}}, "Empty attribute reference"),
        ({"conditions": {"type": "field", "field": "v", "operator": "approx"}}, "Unknown operator"),
    ],
)
def test_malformed_rules_are_rejected(overrides, message):
    with pytest.raises(RuleDefinitionError) as exc:
        load_rule(_rule(**overrides))
    assert message in exc.value.message


def test_missing_required_key_is_rejected():
    with pytest.raises(RuleDefinitionError):
        load_rule({"rule_id": 1, "rule_type": "VALIDATION"})


def test_add_component_needs_target():
    with pytest.raises(RuleDefinitionError) as exc:
        load_rule(_rule(rule_type="COMPONENT_SELECTION", actions=[{"type": "add_component", "dimensions": {"length": 60}}]))
    assert "component_id" in exc.value.message
