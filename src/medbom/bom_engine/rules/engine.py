"""
Rule ordering and evaluation.

`order_rules` yields priority/execution-order order with every rule placed
after the rules it depends on. `RuleEngine.evaluate` turns the selection
rules whose conditions hold into an immutable ActionPlan.
"""

import heapq
import logging
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Tuple, Type

from medbom.bom_engine.fingerprint import fingerprint
from medbom.bom_engine.rules.actions import Action
from medbom.bom_engine.rules.loader import SELECTION_TYPES, Rule
from medbom.exceptions import RuleDefinitionError

logger = logging.getLogger(__name__)


def order_rules(rules: Iterable[Rule]) -> List[Rule]:
    """
    Topologically sort rules by dependency, breaking ties on
    (priority, execution_order, rule_id).

    Dependencies on rules outside the given set are ignored here.

    Raises:
        RuleDefinitionError: the dependency references form a cycle.
    """
    by_id: Dict[int, Rule] = {}
    for rule in rules:
        if rule.rule_id in by_id:
            raise RuleDefinitionError(f"Duplicate rule id {rule.rule_id}", rule=rule.code)
        by_id[rule.rule_id] = rule

    pending: Dict[int, int] = {}
    dependents: Dict[int, List[int]] = {rule_id: [] for rule_id in by_id}
    for rule in by_id.values():
        deps = [dep for dep in rule.depends_on if dep in by_id]
        pending[rule.rule_id] = len(deps)
        for dep in deps:
            dependents[dep].append(rule.rule_id)

    ready: List[Tuple[Tuple[int, int, int], int]] = [
        (by_id[rule_id].sort_key, rule_id) for rule_id, n in pending.items() if n == 0
    ]
    heapq.heapify(ready)

    ordered: List[Rule] = []
    while ready:
        _, rule_id = heapq.heappop(ready)
        ordered.append(by_id[rule_id])
        for dependent in dependents[rule_id]:
            pending[dependent] -= 1
            if pending[dependent] == 0:
                heapq.heappush(ready, (by_id[dependent].sort_key, dependent))

    if len(ordered) != len(by_id):
        stuck = sorted(rule_id for rule_id, n in pending.items() if n > 0)
        raise RuleDefinitionError(
            f"Rule dependency cycle among rules {stuck}",
            rule_ids=stuck,
        )
    return ordered


def missing_dependencies(rules: Iterable[Rule]) -> Dict[int, Tuple[int, ...]]:
    """Dependencies that reference rules outside the set, per rule id."""
    rules = list(rules)
    known = {rule.rule_id for rule in rules}
    missing = {}
    for rule in rules:
        absent = tuple(dep for dep in rule.depends_on if dep not in known)
        if absent:
            missing[rule.rule_id] = absent
    return missing


@dataclass(frozen=True)
class PlannedAction:
    rule_id: int
    rule_code: str
    action: Action

    def to_dict(self) -> Dict[str, Any]:
        return {"rule_id": self.rule_id, "rule_code": self.rule_code, "action": self.action.to_dict()}


@dataclass(frozen=True)
class ActionPlan:
    """Ordered, immutable list of actions to apply during expansion."""

    entries: Tuple[PlannedAction, ...] = ()

    @property
    def actions(self) -> Tuple[Action, ...]:
        return tuple(entry.action for entry in self.entries)

    @property
    def rule_ids(self) -> Tuple[int, ...]:
        seen: Dict[int, None] = {}
        for entry in self.entries:
            seen.setdefault(entry.rule_id, None)
        return tuple(seen)

    def of_type(self, action_type: Type) -> List[Any]:
        return [entry.action for entry in self.entries if isinstance(entry.action, action_type)]

    @property
    def digest(self) -> str:
        return fingerprint([entry.to_dict() for entry in self.entries])

    def to_dict(self) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self.entries]

    def __len__(self) -> int:
        return len(self.entries)


class RuleEngine:
    def evaluate(
        self,
        rules: Iterable[Rule],
        attributes: Mapping[str, Any],
        suppressed: FrozenSet[int] = frozenset(),
    ) -> ActionPlan:
        """
        Collect actions of satisfied selection rules in execution order.

        Args:
            rules: Active, in-scope rules (any order).
            attributes: Selections merged with derived attributes.
            suppressed: Rule ids that lost a conflict and must not fire.
        """
        entries = []
        for rule in order_rules(rules):
            if rule.rule_type not in SELECTION_TYPES or rule.rule_id in suppressed:
                continue
            if not rule.condition.evaluate(attributes):
                continue
            for action in rule.actions:
                entries.append(PlannedAction(rule.rule_id, rule.code, action))

        plan = ActionPlan(tuple(entries))
        logger.debug(f"Rule engine produced {len(plan)} actions from rules {list(plan.rule_ids)}")
        return plan
