"""
Configuration validation against active business rules.

Unlike a fail-fast check, every rule is evaluated so callers always get the
complete violation set. Generation must not proceed when `errors` is non-empty.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple

from medbom.bom_engine.rules.engine import missing_dependencies, order_rules
from medbom.bom_engine.rules.loader import CALCULATION, CONSTRAINT_TYPES, Rule
from medbom.bom_engine.rules.repository import RuleRepository, RuleScope
from medbom.exceptions import ValidationError

logger = logging.getLogger(__name__)

ERROR = "ERROR"
WARNING = "WARNING"


@dataclass(frozen=True)
class RuleViolation:
    rule_id: Optional[int]
    rule_code: Optional[str]
    message: str
    severity: str = ERROR
    rule_type: Optional[str] = None
    resolution_guidance: Optional[str] = None
    fields: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "rule_code": self.rule_code,
            "rule_type": self.rule_type,
            "severity": self.severity,
            "message": self.message,
            "resolution_guidance": self.resolution_guidance,
            "fields": list(self.fields),
        }


@dataclass
class ValidationResult:
    selections: Dict[str, Any]
    errors: List[RuleViolation] = field(default_factory=list)
    warnings: List[RuleViolation] = field(default_factory=list)
    derived_attributes: Dict[str, Any] = field(default_factory=dict)
    suppressed_rule_ids: FrozenSet[int] = frozenset()
    evaluated_rule_ids: Tuple[int, ...] = ()
    rules: Tuple[Rule, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def attributes(self) -> Dict[str, Any]:
        """Selections overlaid with derived attributes."""
        return {**self.selections, **self.derived_attributes}

    def raise_for_errors(self, configuration_id: Optional[str] = None) -> None:
        if self.errors:
            raise ValidationError(
                f"{len(self.errors)} blocking rule violation(s)",
                errors=[v.to_dict() for v in self.errors],
                warnings=[v.to_dict() for v in self.warnings],
                configuration_id=configuration_id,
            )


class ConfigurationValidator:
    def __init__(self, rule_repository: RuleRepository):
        self.rule_repository = rule_repository

    def validate(
        self,
        selections: Mapping[str, Any],
        scope: RuleScope,
        as_of: Optional[datetime] = None,
    ) -> ValidationResult:
        """
        Evaluate every active rule in scope against the selections.

        Args:
            selections: Raw configuration attributes.
            scope: Root assembly and category of the configuration.
            as_of: Rule effectivity instant; defaults to now (naive UTC).

        Returns:
            ValidationResult with errors, warnings and derived attributes.
        """
        as_of = as_of or datetime.utcnow()
        rules = order_rules(self.rule_repository.list_active_rules(scope, as_of))
        result = ValidationResult(selections=dict(selections), rules=tuple(rules))

        for rule_id, absent in sorted(missing_dependencies(rules).items()):
            rule = next(r for r in rules if r.rule_id == rule_id)
            result.warnings.append(
                RuleViolation(
                    rule_id=rule.rule_id,
                    rule_code=rule.code,
                    rule_type=rule.rule_type,
                    severity=WARNING,
                    message=f"Rule {rule.code} depends on inactive or out-of-scope rules {list(absent)}",
                )
            )

        attributes: Dict[str, Any] = dict(selections)
        satisfied: Dict[int, bool] = {}
        evaluated: List[int] = []

        for rule in rules:
            holds = rule.condition.evaluate(attributes)
            satisfied[rule.rule_id] = holds
            evaluated.append(rule.rule_id)

            if rule.rule_type == CALCULATION:
                if holds:
                    derived = rule.derive_attributes(attributes)
                    result.derived_attributes.update(derived)
                    attributes.update(derived)
            elif rule.rule_type in CONSTRAINT_TYPES and not holds:
                self._record_failure(result, rule)

        result.suppressed_rule_ids = self._resolve_conflicts(rules, satisfied, result)
        result.evaluated_rule_ids = tuple(evaluated)

        logger.info(
            f"Validated configuration against {len(rules)} rules for {scope.assembly_id}: "
            f"{len(result.errors)} errors, {len(result.warnings)} warnings"
        )
        return result

    def _record_failure(self, result: ValidationResult, rule: Rule) -> None:
        if rule.is_blocking:
            message = rule.error_message or f"Rule {rule.code} failed"
            target, severity = result.errors, ERROR
        else:
            message = rule.warning_message or rule.error_message or f"Rule {rule.code} not satisfied"
            target, severity = result.warnings, WARNING
        target.append(
            RuleViolation(
                rule_id=rule.rule_id,
                rule_code=rule.code,
                rule_type=rule.rule_type,
                severity=severity,
                message=message,
                resolution_guidance=rule.resolution_guidance,
                fields=tuple(dict.fromkeys(rule.condition.fields())),
            )
        )

    def _resolve_conflicts(
        self,
        rules: List[Rule],
        satisfied: Dict[int, bool],
        result: ValidationResult,
    ) -> FrozenSet[int]:
        """Both-satisfied conflicting pairs: lower rule id wins, the other is suppressed."""
        by_id = {rule.rule_id: rule for rule in rules}
        suppressed: Set[int] = set()
        seen: Set[Tuple[int, int]] = set()

        for rule in sorted(rules, key=lambda r: r.rule_id):
            for other_id in rule.conflicts_with:
                pair = (min(rule.rule_id, other_id), max(rule.rule_id, other_id))
                if pair in seen or other_id not in by_id:
                    continue
                seen.add(pair)
                if not (satisfied.get(pair[0]) and satisfied.get(pair[1])):
                    continue
                winner, loser = by_id[pair[0]], by_id[pair[1]]
                if winner.rule_id in suppressed:
                    continue
                suppressed.add(loser.rule_id)
                result.warnings.append(
                    RuleViolation(
                        rule_id=loser.rule_id,
                        rule_code=loser.code,
                        rule_type=loser.rule_type,
                        severity=WARNING,
                        message=(
                            f"Rules {winner.code} and {loser.code} conflict; "
                            f"{winner.code} takes precedence"
                        ),
                        resolution_guidance=loser.resolution_guidance,
                    )
                )
        return frozenset(suppressed)
