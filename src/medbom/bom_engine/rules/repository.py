import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from medbom.bom_engine.models.configuration import ConfigurationRule
from medbom.bom_engine.rules.engine import order_rules
from medbom.bom_engine.rules.loader import Rule, load_rule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleScope:
    assembly_id: Optional[str] = None
    category_id: Optional[str] = None


class RuleRepository(Protocol):
    def list_active_rules(self, scope: RuleScope, as_of: datetime) -> List[Rule]: ...


def _select(rules: Iterable[Rule], scope: RuleScope, as_of: datetime) -> List[Rule]:
    return order_rules(
        rule
        for rule in rules
        if rule.is_active
        and rule.is_effective(as_of)
        and rule.applies_to(scope.assembly_id, scope.category_id)
    )


class InMemoryRuleRepository:
    def __init__(self, rules: Iterable[Rule] = ()):
        self._lock = threading.Lock()
        self._rules: Dict[int, Rule] = {rule.rule_id: rule for rule in rules}

    def add(self, rule: Rule) -> None:
        with self._lock:
            self._rules[rule.rule_id] = rule

    def remove(self, rule_id: int) -> None:
        with self._lock:
            self._rules.pop(rule_id, None)

    def list_active_rules(self, scope: RuleScope, as_of: datetime) -> List[Rule]:
        with self._lock:
            rules = list(self._rules.values())
        return _select(rules, scope, as_of)


class SQLRuleRepository:
    """
    Reads `configuration_rules`; each row is parsed once per revision,
    keyed by (rule_id, updated_at).
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._lock = threading.Lock()
        self._parsed: Dict[int, Tuple[Optional[datetime], Rule]] = {}

    def _parse(self, row: ConfigurationRule) -> Rule:
        with self._lock:
            cached = self._parsed.get(row.rule_id)
            if cached and cached[0] == row.updated_at:
                return cached[1]
        rule = load_rule(
            {
                "rule_id": row.rule_id,
                "rule_code": row.rule_code,
                "rule_name": row.rule_name,
                "rule_type": row.rule_type,
                "priority": row.priority,
                "execution_order": row.execution_order,
                "is_blocking": row.is_blocking,
                "is_active": row.is_active,
                "conditions": row.conditions,
                "actions": row.actions,
                "derive": row.derive,
                "applies_to_assemblies": row.applies_to_assemblies,
                "applies_to_categories": row.applies_to_categories,
                "dependency_rules": row.dependency_rules,
                "conflicting_rules": row.conflicting_rules,
                "error_message": row.error_message,
                "warning_message": row.warning_message,
                "resolution_guidance": row.resolution_guidance,
                "effective_date": row.effective_date,
                "expiration_date": row.expiration_date,
                "updated_at": row.updated_at,
            }
        )
        with self._lock:
            self._parsed[row.rule_id] = (row.updated_at, rule)
        logger.debug(f"Parsed rule {rule.code} (revision {row.updated_at})")
        return rule

    def list_active_rules(self, scope: RuleScope, as_of: datetime) -> List[Rule]:
        session = self.session_factory()
        try:
            rows = (
                session.query(ConfigurationRule)
                .filter(ConfigurationRule.is_active.is_(True))
                .order_by(ConfigurationRule.rule_id)
                .all()
            )
            rules = [self._parse(row) for row in rows]
        finally:
            session.close()
        return _select(rules, scope, as_of)
