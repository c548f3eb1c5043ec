from datetime import datetime
from decimal import Decimal
from pathlib import Path

import pytest

from medbom.bom_engine.fixtures import load_fixture
from medbom.bom_engine.rules.loader import load_rule
from medbom.bom_engine.rules.repository import InMemoryRuleRepository, RuleScope
from medbom.bom_engine.services.config_validator import ERROR, WARNING, ConfigurationValidator
from medbom.exceptions import ValidationError

FIXTURE = Path(__file__).parent / "fixtures" / "lighting.yaml"
FIXTURE_SCOPE = RuleScope(assembly_id="FIXTURE-48", category_id="LTG")


@pytest.fixture(scope="module")
def validator():
    return ConfigurationValidator(load_fixture(FIXTURE).build_rule_repository())


def test_valid_configuration_derives_attributes(validator):
    result = validator.validate({"voltage": 277, "length_ft": 8}, FIXTURE_SCOPE)

    assert result.is_valid
    assert result.errors == []
    assert result.warnings == []
    assert result.derived_attributes == {"total_watts": Decimal("40")}
    assert result.attributes["total_watts"] == Decimal("40")
    assert result.attributes["voltage"] == 277
    assert result.evaluated_rule_ids[0] == 3


def test_blocking_failure_is_an_error(validator):
    result = validator.validate({"voltage": 480, "length_ft": 4}, FIXTURE_SCOPE)

    assert not result.is_valid
    [error] = result.errors
    assert error.rule_code == "REQ-VOLTAGE"
    assert error.severity == ERROR
    assert error.message == "Input voltage must be 120V or 277V"
    assert error.resolution_guidance == "Select a 120V or 277V supply"
    assert error.fields == ("voltage",)


def test_non_blocking_failure_is_a_warning(validator):
    result = validator.validate({"voltage": 120, "length_ft": 12}, FIXTURE_SCOPE)

    assert result.is_valid
    [warning] = result.warnings
    assert warning.rule_code == "LONG-RUN-WARN"
    assert warning.severity == WARNING
    assert warning.message == "Runs longer than 8 ft need a field splice"


def test_all_violations_are_reported_not_just_the_first(validator):
    result = validator.validate({"voltage": 480, "length_ft": 12}, FIXTURE_SCOPE)

    assert [v.rule_code for v in result.errors] == ["REQ-VOLTAGE"]
    assert [v.rule_code for v in result.warnings] == ["LONG-RUN-WARN"]


def test_scope_limits_rules(validator):
    result = validator.validate({"voltage": 120}, RuleScope(assembly_id="T2-CTRL-EDR1", category_id="CTL"))

    assert result.is_valid
    assert result.derived_attributes == {}
    assert result.evaluated_rule_ids == (1,)


def test_raise_for_errors_carries_the_violation_set(validator):
    result = validator.validate({"voltage": 480, "length_ft": 12}, FIXTURE_SCOPE)

    with pytest.raises(ValidationError) as exc:
        result.raise_for_errors("cfg-1")

    assert exc.value.code == "VALIDATION_ERROR"
    assert exc.value.details["configuration_id"] == "cfg-1"
    assert exc.value.errors[0]["rule_code"] == "REQ-VOLTAGE"
    assert exc.value.warnings[0]["rule_code"] == "LONG-RUN-WARN"


def test_conflicting_rules_suppress_the_higher_id():
    rules = [
        load_rule(
            {
                "rule_id": 1,
                "rule_code": "WARM",
                "rule_type": "COMPONENT_SELECTION",
                "conflicting_rules": [2],
                "actions": [{"type": "add_component", "component_id": "LED-3000K"}],
            }
        ),
        load_rule(
            {
                "rule_id": 2,
                "rule_code": "COOL",
                "rule_type": "COMPONENT_SELECTION",
                "actions": [{"type": "add_component", "component_id": "LED-5000K"}],
            }
        ),
    ]
    validator = ConfigurationValidator(InMemoryRuleRepository(rules))

    result = validator.validate({}, RuleScope())

    assert result.suppressed_rule_ids == frozenset({2})
    [warning] = result.warnings
    assert warning.rule_code == "COOL"
    assert "WARM takes precedence" in warning.message


def test_missing_dependency_is_a_warning():
    rule = load_rule(
        {
            "rule_id": 5,
            "rule_code": "NEEDS-CALC",
            "rule_type": "VALIDATION",
            "dependency_rules": [99],
        }
    )
    validator = ConfigurationValidator(InMemoryRuleRepository([rule]))

    result = validator.validate({}, RuleScope(), as_of=datetime(2024, 1, 1))

    assert result.is_valid
    assert "[99]" in result.warnings[0].message
