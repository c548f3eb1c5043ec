"""
BOM explosion.

Walks the snapshot depth-first from the root assembly, applies the rule
engine's action plan, and flattens the result into merged line items. Also
records the build-step DAG (stages by position sequence) for critical-path
costing and the substitution choices made along the way.
"""

import logging
import time
from dataclasses import dataclass, field, replace
from decimal import ROUND_CEILING, Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from medbom.bom_engine.catalog.snapshot import ASSEMBLY, PART, CatalogSnapshot, EdgeRecord
from medbom.bom_engine.rules.actions import AddComponent, RequireCustomPart, SubstituteComponent
from medbom.bom_engine.rules.engine import ActionPlan
from medbom.bom_engine.services.custom_part_service import (
    CustomPart,
    CustomPartRequest,
    CustomPartResolver,
)
from medbom.exceptions import (
    ConfigurationUnsupportedError,
    CycleDetectedError,
    GenerationTimeoutError,
    SubstitutionUnresolvedError,
)

logger = logging.getLogger(__name__)

# Components added by rule actions are installed after every catalog stage.
ADDED_STAGE = 1_000_000


@dataclass(frozen=True)
class LineItem:
    line_number: int
    component_id: str
    description: str
    quantity: Decimal
    adjusted_quantity: Decimal
    unit_of_measure: str = "EACH"
    waste_factor: Decimal = Decimal("0")
    unit_cost: Decimal = Decimal("0")
    weight_kg: Decimal = Decimal("0")
    assembly_sequence: int = 0
    sequence_path: Tuple[int, ...] = ()
    substitute_group: Optional[str] = None
    primary_component_id: Optional[str] = None
    is_substitute: bool = False
    is_custom_part: bool = False
    custom_part_specifications: Optional[Dict[str, Any]] = field(default=None, hash=False)
    setup_cost: Decimal = Decimal("0")
    lead_time_days: int = 0
    extended_cost: Optional[Decimal] = None
    is_critical_path: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "line_number": self.line_number,
            "component_id": self.component_id,
            "description": self.description,
            "quantity": self.quantity,
            "adjusted_quantity": self.adjusted_quantity,
            "unit_of_measure": self.unit_of_measure,
            "waste_factor": self.waste_factor,
            "unit_cost": self.unit_cost,
            "extended_cost": self.extended_cost,
            "weight_kg": self.weight_kg,
            "assembly_sequence": self.assembly_sequence,
            "substitute_group": self.substitute_group,
            "primary_component_id": self.primary_component_id,
            "is_substitute": self.is_substitute,
            "is_custom_part": self.is_custom_part,
            "custom_part_specifications": self.custom_part_specifications,
            "lead_time_days": self.lead_time_days,
            "is_critical_path": self.is_critical_path,
        }


@dataclass(frozen=True)
class BuildStep:
    """One edge installation; runs after every step in `depends_on`."""

    step_id: int
    assembly_id: str
    component_id: str
    minutes: Decimal
    depends_on: Tuple[int, ...] = ()


@dataclass(frozen=True)
class SubstitutionChoice:
    assembly_id: str
    substitute_group: str
    chosen_component_id: str
    primary_component_id: str
    candidates: Tuple[str, ...]
    reason: str = "preferred"


@dataclass(frozen=True)
class ExpansionResult:
    root_assembly_id: str
    catalog_version: str
    line_items: Tuple[LineItem, ...]
    build_steps: Tuple[BuildStep, ...] = ()
    substitutions: Tuple[SubstitutionChoice, ...] = ()
    custom_parts: Tuple[CustomPart, ...] = ()
    applied_rule_ids: Tuple[int, ...] = ()
    warnings: Tuple[str, ...] = ()
    assemblies_visited: int = 0

    @property
    def line_count(self) -> int:
        return len(self.line_items)


class _Line:
    """Merge accumulator for one part across all of its occurrences."""

    def __init__(self, component_id: str, path: Tuple[int, ...]):
        self.component_id = component_id
        self.path = path
        self.quantity = Decimal("0")
        self.adjusted = Decimal("0")
        self.waste_factor = Decimal("0")
        self.unit_of_measure = "EACH"
        self.substitute_group: Optional[str] = None
        self.primary_component_id: Optional[str] = None
        self.is_substitute = False


class _Run:
    """Mutable state of one expansion; discarded when the call returns."""

    def __init__(
        self,
        snapshot: CatalogSnapshot,
        attributes: Mapping[str, Any],
        deadline: Optional[float],
        started: float,
    ):
        self.snapshot = snapshot
        self.attributes = attributes
        self.deadline = deadline
        self.started = started
        self.lines: Dict[str, _Line] = {}
        self.steps: List[BuildStep] = []
        self.choices: Dict[Tuple[str, str], SubstitutionChoice] = {}
        self.custom_parts: Dict[str, CustomPart] = {}
        self.warnings: List[str] = []
        self.visited = 0

        self.selected: Set[str] = set(attributes.get("selected_components") or ())
        self.preferences: Dict[str, str] = dict(attributes.get("substitution_preferences") or {})
        self.group_overrides: Dict[str, str] = {}
        self.replacements: Dict[str, str] = {}
        self.added: Dict[str, List[EdgeRecord]] = {}


class BOMExpander:
    def __init__(
        self,
        custom_part_resolver: Optional[CustomPartResolver] = None,
        max_depth: int = 20,
        defer_custom_parts: bool = False,
    ):
        self.custom_part_resolver = custom_part_resolver
        self.max_depth = max_depth
        # Only build custom part candidates; the caller registers them when it stores the BOM.
        self.defer_custom_parts = defer_custom_parts

    def expand(
        self,
        snapshot: CatalogSnapshot,
        attributes: Mapping[str, Any],
        plan: Optional[ActionPlan] = None,
        deadline: Optional[float] = None,
    ) -> ExpansionResult:
        """
        Explode the snapshot's root assembly into line items.

        Args:
            snapshot: Immutable catalog subgraph for this run.
            attributes: Resolved configuration attributes. `selected_components`
                and `substitution_preferences` are read from here.
            plan: Actions from the rule engine, applied in plan order.
            deadline: `time.monotonic()` value after which the run aborts.

        Raises:
            CycleDetectedError, ConfigurationUnsupportedError,
            SubstitutionUnresolvedError, GenerationTimeoutError
        """
        plan = plan or ActionPlan()
        run = _Run(snapshot, attributes, deadline, time.monotonic())
        self._apply_plan(run, plan)

        root = snapshot.root_handle
        self._expand_assembly(run, root, Decimal("1"), (root,), (), 0, ())

        line_items = self._finalize_lines(run)
        result = ExpansionResult(
            root_assembly_id=snapshot.root_assembly_id,
            catalog_version=snapshot.version,
            line_items=line_items,
            build_steps=tuple(run.steps),
            substitutions=tuple(run.choices[key] for key in sorted(run.choices)),
            custom_parts=tuple(run.custom_parts[k] for k in sorted(run.custom_parts)),
            applied_rule_ids=plan.rule_ids,
            warnings=tuple(run.warnings),
            assemblies_visited=run.visited,
        )
        logger.debug(
            f"Expanded {snapshot.root_assembly_id}: {len(line_items)} lines, "
            f"{run.visited} assembly visits, {len(run.steps)} build steps"
        )
        return result

    # ------------------------------------------------------------------
    # Action plan
    # ------------------------------------------------------------------

    def _apply_plan(self, run: _Run, plan: ActionPlan) -> None:
        snapshot = run.snapshot
        optional_components = {
            edge.component_id
            for handle in range(snapshot.assembly_count)
            for edge in snapshot.edges(handle)
            if edge.is_optional
        }
        synthetic_id = 0

        for action in plan.actions:
            if isinstance(action, SubstituteComponent):
                self._require_component(snapshot, action.replacement_component_id)
                if action.substitute_group:
                    run.group_overrides[action.substitute_group] = action.replacement_component_id
                else:
                    run.replacements[action.original_component_id] = action.replacement_component_id
                continue

            component_id: Optional[str] = None
            quantity = Decimal("1")
            target = snapshot.root_assembly_id

            if isinstance(action, AddComponent):
                target = action.target_assembly_id or target
                quantity = action.quantity
                if action.component_id:
                    if action.component_id in optional_components:
                        run.selected.add(action.component_id)
                        continue
                    self._require_component(snapshot, action.component_id)
                    component_id = action.component_id
                else:
                    match = snapshot.find_dimensional_match(action.category_id, action.dimensions)
                    if match is not None:
                        component_id = match.part_id
                    else:
                        custom = self._resolve_custom(
                            run,
                            CustomPartRequest(
                                customization_type="DIMENSIONAL",
                                specifications={"category_id": action.category_id, **action.dimensions},
                            ),
                        )
                        component_id = custom.part_number
            elif isinstance(action, RequireCustomPart):
                target = action.target_assembly_id or target
                quantity = action.quantity
                custom = self._resolve_custom(
                    run,
                    CustomPartRequest(
                        customization_type=action.customization_type,
                        specifications=action.specifications,
                        base_part_id=action.base_part_id,
                        description=action.description,
                    ),
                )
                component_id = custom.part_number
            else:
                # AdjustPrice is applied by the costing aggregator.
                continue

            if snapshot.handle(target) is None:
                raise ConfigurationUnsupportedError(
                    f"Rule action targets assembly {target}, which is not in this BOM",
                    reason="unknown_component",
                    component_id=target,
                )
            synthetic_id -= 1
            run.added.setdefault(target, []).append(
                EdgeRecord(
                    edge_id=synthetic_id,
                    assembly_id=target,
                    component_id=component_id,
                    component_type=ASSEMBLY if snapshot.handle(component_id) is not None else PART,
                    quantity=quantity,
                    position_sequence=ADDED_STAGE,
                )
            )

    def _require_component(self, snapshot: CatalogSnapshot, component_id: str) -> None:
        if not (snapshot.contains(component_id, PART) or snapshot.contains(component_id, ASSEMBLY)):
            raise ConfigurationUnsupportedError(
                f"Component {component_id} named by a rule action is not in the catalog",
                reason="unknown_component",
                component_id=component_id,
            )

    def _resolve_custom(self, run: _Run, request: CustomPartRequest) -> CustomPart:
        if self.custom_part_resolver is None:
            raise ConfigurationUnsupportedError(
                "Configuration requires a custom part but no custom part resolver is configured",
                reason="custom_part_unavailable",
            )
        base_part = run.snapshot.part(request.base_part_id) if request.base_part_id else None
        if self.defer_custom_parts:
            custom = self.custom_part_resolver.prepare(request, base_part)
        else:
            custom = self.custom_part_resolver.resolve(request, base_part)
        run.custom_parts[custom.part_number] = custom
        return custom

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def _expand_assembly(
        self,
        run: _Run,
        handle: int,
        multiplier: Decimal,
        path: Tuple[int, ...],
        sequence_path: Tuple[int, ...],
        depth: int,
        predecessors: Tuple[int, ...],
    ) -> Tuple[int, ...]:
        """Expand one assembly instance; returns the ids of its final build steps."""
        if run.deadline is not None and time.monotonic() > run.deadline:
            raise GenerationTimeoutError(timeout_seconds=round(run.deadline - run.started, 3))
        run.visited += 1

        assembly = run.snapshot.assembly(handle)
        edges = self._select_edges(run, handle, assembly.assembly_id)

        stages: Dict[int, List[Tuple[EdgeRecord, Optional[Tuple[str, str]]]]] = {}
        for edge, substitution in edges:
            stages.setdefault(edge.position_sequence, []).append((edge, substitution))

        current = predecessors
        for sequence in sorted(stages):
            finished: List[int] = []
            for edge, substitution in stages[sequence]:
                raw = edge.quantity * multiplier
                adjusted = (edge.quantity * (1 + edge.waste_factor) * multiplier).to_integral_value(
                    rounding=ROUND_CEILING
                )
                step_preds = current
                if edge.is_assembly:
                    child = run.snapshot.handle(edge.component_id)
                    if child in path:
                        start = path.index(child)
                        cycle = [run.snapshot.assembly(h).assembly_id for h in path[start:]]
                        raise CycleDetectedError(cycle + [edge.component_id])
                    if depth + 1 > self.max_depth:
                        raise ConfigurationUnsupportedError(
                            f"Assembly nesting exceeds the maximum depth of {self.max_depth}",
                            reason="max_depth_exceeded",
                            assembly_id=edge.component_id,
                            max_depth=self.max_depth,
                        )
                    step_preds = self._expand_assembly(
                        run,
                        child,
                        adjusted,
                        path + (child,),
                        sequence_path + (sequence,),
                        depth + 1,
                        current,
                    ) or current
                else:
                    self._merge_part(run, edge, raw, adjusted, sequence_path + (sequence,), substitution)

                step_id = len(run.steps)
                run.steps.append(
                    BuildStep(
                        step_id=step_id,
                        assembly_id=assembly.assembly_id,
                        component_id=edge.component_id,
                        minutes=edge.assembly_time_minutes * edge.quantity * multiplier,
                        depends_on=tuple(step_preds),
                    )
                )
                finished.append(step_id)
            current = tuple(finished)
        return current

    def _select_edges(
        self, run: _Run, handle: int, assembly_id: str
    ) -> List[Tuple[EdgeRecord, Optional[Tuple[str, str]]]]:
        """Active edges of one assembly after conditions, options and substitutions."""
        selected: List[Tuple[EdgeRecord, Optional[Tuple[str, str]]]] = []
        groups: Dict[str, List[EdgeRecord]] = {}

        for edge in run.snapshot.edges(handle) + tuple(run.added.get(assembly_id, ())):
            if not edge.condition.evaluate(run.attributes):
                continue
            if edge.substitute_group:
                groups.setdefault(edge.substitute_group, []).append(edge)
                continue
            if edge.is_optional and not self._is_selected(run, edge):
                continue
            replacement = run.replacements.get(edge.component_id)
            if replacement:
                edge = self._swap(run, edge, replacement)
            self._check_component(run, edge, assembly_id)
            selected.append((edge, None))

        for group in sorted(groups):
            chosen = self._choose(run, assembly_id, group, groups[group])
            if chosen is not None:
                selected.append(chosen)
        return selected

    def _is_selected(self, run: _Run, edge: EdgeRecord) -> bool:
        if edge.component_id in run.selected:
            return True
        if edge.option_key:
            value = run.attributes.get(edge.option_key)
            return bool(value) and value not in ("false", "False", "0", "no", "NO")
        return False

    def _swap(self, run: _Run, edge: EdgeRecord, component_id: str) -> EdgeRecord:
        component_type = ASSEMBLY if run.snapshot.handle(component_id) is not None else PART
        return replace(edge, component_id=component_id, component_type=component_type)

    def _is_valid(self, run: _Run, edge: EdgeRecord) -> bool:
        if edge.is_assembly:
            return run.snapshot.handle(edge.component_id) is not None
        if edge.component_id in run.custom_parts:
            return True
        part = run.snapshot.part(edge.component_id)
        return part is not None and part.is_active

    def _check_component(self, run: _Run, edge: EdgeRecord, assembly_id: str) -> None:
        if edge.component_id in run.custom_parts:
            return
        if edge.is_assembly:
            if run.snapshot.handle(edge.component_id) is None:
                raise ConfigurationUnsupportedError(
                    f"Assembly {assembly_id} references unknown assembly {edge.component_id}",
                    reason="unknown_component",
                    component_id=edge.component_id,
                )
            return
        part = run.snapshot.part(edge.component_id)
        if part is None:
            raise ConfigurationUnsupportedError(
                f"Assembly {assembly_id} references unknown part {edge.component_id}",
                reason="unknown_component",
                component_id=edge.component_id,
            )
        if not part.is_active:
            message = f"Part {part.part_id} in {assembly_id} has status {part.status}"
            if message not in run.warnings:
                run.warnings.append(message)

    def _choose(
        self, run: _Run, assembly_id: str, group: str, members: Sequence[EdgeRecord]
    ) -> Optional[Tuple[EdgeRecord, Tuple[str, str]]]:
        """Pick exactly one member of a substitution group, or none if it is unselected-optional."""
        named = {run.group_overrides.get(group), run.preferences.get(group)}
        eligible = [
            m for m in members if not m.is_optional or self._is_selected(run, m) or m.component_id in named
        ]
        if not eligible:
            if group not in run.group_overrides:
                return None
            eligible = list(members)

        ranked = sorted(eligible, key=lambda m: (m.preference_order, m.component_id))
        valid = [m for m in ranked if self._is_valid(run, m)]
        if not valid:
            raise SubstitutionUnresolvedError(group, assembly_id, [m.component_id for m in ranked])

        primary = valid[0]
        chosen, reason = primary, "preferred"
        picked = [m for m in valid if m.is_optional and self._is_selected(run, m)]
        if picked:
            chosen, reason = picked[0], "selected"

        override = run.group_overrides.get(group)
        preference = run.preferences.get(group)
        if override:
            member = next((m for m in valid if m.component_id == override), None)
            chosen = member or self._swap(run, primary, override)
            reason = "rule"
        elif preference:
            member = next((m for m in valid if m.component_id == preference), None)
            if member is not None:
                chosen, reason = member, "preference"
            else:
                run.warnings.append(
                    f"Preferred component {preference} is not a valid member of group {group}; "
                    f"using {primary.component_id}"
                )

        key = (assembly_id, group)
        if key not in run.choices:
            run.choices[key] = SubstitutionChoice(
                assembly_id=assembly_id,
                substitute_group=group,
                chosen_component_id=chosen.component_id,
                primary_component_id=primary.component_id,
                candidates=tuple(m.component_id for m in valid),
                reason=reason,
            )
        return chosen, (group, primary.component_id)

    # ------------------------------------------------------------------
    # Lines
    # ------------------------------------------------------------------

    def _merge_part(
        self,
        run: _Run,
        edge: EdgeRecord,
        raw: Decimal,
        adjusted: Decimal,
        sequence_path: Tuple[int, ...],
        substitution: Optional[Tuple[str, str]],
    ) -> None:
        line = run.lines.get(edge.component_id)
        if line is None:
            line = _Line(edge.component_id, sequence_path)
            line.unit_of_measure = edge.unit_of_measure
            line.waste_factor = edge.waste_factor
            run.lines[edge.component_id] = line
        elif sequence_path < line.path:
            line.path = sequence_path
        line.quantity += raw
        line.adjusted += adjusted
        if substitution is not None:
            group, primary = substitution
            line.substitute_group = group
            line.primary_component_id = primary
            line.is_substitute = line.is_substitute or edge.component_id != primary

    def _finalize_lines(self, run: _Run) -> Tuple[LineItem, ...]:
        ordered = sorted(run.lines.values(), key=lambda l: (l.path, l.component_id))
        items = []
        for number, line in enumerate(ordered, start=1):
            custom = run.custom_parts.get(line.component_id)
            if custom is not None:
                items.append(
                    LineItem(
                        line_number=number,
                        component_id=line.component_id,
                        description=custom.part_name,
                        quantity=line.quantity,
                        adjusted_quantity=line.adjusted,
                        unit_of_measure=line.unit_of_measure,
                        waste_factor=line.waste_factor,
                        unit_cost=custom.unit_cost,
                        assembly_sequence=line.path[-1] if line.path else 0,
                        sequence_path=line.path,
                        is_custom_part=True,
                        custom_part_specifications=dict(custom.specification),
                        setup_cost=custom.setup_cost,
                        lead_time_days=custom.lead_time_days,
                    )
                )
                continue
            part = run.snapshot.part(line.component_id)
            items.append(
                LineItem(
                    line_number=number,
                    component_id=line.component_id,
                    description=part.name,
                    quantity=line.quantity,
                    adjusted_quantity=line.adjusted,
                    unit_of_measure=line.unit_of_measure or part.unit_of_measure,
                    waste_factor=line.waste_factor,
                    unit_cost=part.unit_cost,
                    weight_kg=part.weight_kg,
                    assembly_sequence=line.path[-1] if line.path else 0,
                    sequence_path=line.path,
                    substitute_group=line.substitute_group,
                    primary_component_id=line.primary_component_id,
                    is_substitute=line.is_substitute,
                    is_custom_part=part.is_custom_part,
                    lead_time_days=part.lead_time_days,
                )
            )
        return tuple(items)
