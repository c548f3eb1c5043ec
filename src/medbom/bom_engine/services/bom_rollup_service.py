from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any, Dict, List, Optional, Tuple

from medbom.bom_engine.rules.actions import AdjustPrice
from medbom.bom_engine.rules.engine import ActionPlan
from medbom.bom_engine.services.bom_expander import BuildStep, ExpansionResult, LineItem

CENT = Decimal("0.01")
GRAM = Decimal("0.001")
HUNDRED = Decimal("100")


def _round(value: Decimal, quantum: Decimal) -> Decimal:
    return value.quantize(quantum, rounding=ROUND_HALF_EVEN)


@dataclass(frozen=True)
class CriticalPath:
    minutes: Decimal
    step_ids: Tuple[int, ...]
    component_ids: Tuple[str, ...]


@dataclass(frozen=True)
class BOMMetrics:
    total_parts_count: int
    unique_parts_count: int
    custom_parts_count: int
    material_cost: Decimal
    setup_cost: Decimal
    price_adjustment: Decimal
    total_cost: Decimal
    total_weight_kg: Decimal
    critical_path_minutes: Decimal
    estimated_build_hours: Decimal
    substitution_branching: int
    complexity_score: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_parts_count": self.total_parts_count,
            "unique_parts_count": self.unique_parts_count,
            "custom_parts_count": self.custom_parts_count,
            "material_cost": self.material_cost,
            "setup_cost": self.setup_cost,
            "price_adjustment": self.price_adjustment,
            "total_cost": self.total_cost,
            "total_weight_kg": self.total_weight_kg,
            "critical_path_minutes": self.critical_path_minutes,
            "estimated_build_hours": self.estimated_build_hours,
            "substitution_branching": self.substitution_branching,
            "complexity_score": self.complexity_score,
        }


@dataclass(frozen=True)
class CostedBOM:
    expansion: ExpansionResult
    line_items: Tuple[LineItem, ...]
    metrics: BOMMetrics
    warnings: Tuple[str, ...] = ()


class CostingAggregator:
    """Totals, weights, critical-path build time and complexity for an expansion."""

    def aggregate(
        self, expansion: ExpansionResult, plan: Optional[ActionPlan] = None
    ) -> CostedBOM:
        adjustments = plan.of_type(AdjustPrice) if plan else []
        warnings: List[str] = []

        extended: Dict[str, Decimal] = {}
        setup_total = Decimal("0")
        material_total = Decimal("0")
        for line in expansion.line_items:
            cost = line.adjusted_quantity * line.unit_cost
            material_total += cost
            if line.is_custom_part:
                cost += line.setup_cost
                setup_total += line.setup_cost
            extended[line.component_id] = cost

        # Part-scoped adjustments first, in plan order; then BOM-wide ones.
        for adjustment in adjustments:
            if adjustment.part_id is None:
                continue
            if adjustment.part_id not in extended:
                warnings.append(f"Price adjustment for {adjustment.part_id} matched no line item")
                continue
            current = extended[adjustment.part_id]
            extended[adjustment.part_id] = (
                current * (1 + adjustment.percent / HUNDRED) + adjustment.amount
            )

        subtotal = sum(extended.values(), Decimal("0"))
        total = subtotal
        for adjustment in adjustments:
            if adjustment.part_id is None:
                total = total * (1 + adjustment.percent / HUNDRED) + adjustment.amount

        critical = self.critical_path(expansion.build_steps)
        critical_parts = set(critical.component_ids)

        line_items = tuple(
            replace(
                line,
                extended_cost=_round(extended[line.component_id], CENT),
                is_critical_path=line.component_id in critical_parts,
            )
            for line in expansion.line_items
        )

        weight = sum(
            (line.adjusted_quantity * line.weight_kg for line in expansion.line_items),
            Decimal("0"),
        )
        unique = len(expansion.line_items)
        custom = sum(1 for line in expansion.line_items if line.is_custom_part)
        branching = sum(max(len(choice.candidates) - 1, 0) for choice in expansion.substitutions)

        metrics = BOMMetrics(
            total_parts_count=int(sum((l.adjusted_quantity for l in expansion.line_items), Decimal("0"))),
            unique_parts_count=unique,
            custom_parts_count=custom,
            material_cost=_round(material_total, CENT),
            setup_cost=_round(setup_total, CENT),
            price_adjustment=_round(total - material_total - setup_total, CENT),
            total_cost=_round(total, CENT),
            total_weight_kg=_round(weight, GRAM),
            critical_path_minutes=_round(critical.minutes, CENT),
            estimated_build_hours=_round(critical.minutes / Decimal("60"), CENT),
            substitution_branching=branching,
            complexity_score=self.complexity_score(unique, custom, branching),
        )
        return CostedBOM(
            expansion=expansion,
            line_items=line_items,
            metrics=metrics,
            warnings=tuple(warnings),
        )

    @staticmethod
    def complexity_score(unique_parts: int, custom_parts: int, branching: int) -> int:
        raw = (
            Decimal("1")
            + Decimal(unique_parts) / Decimal("20")
            + Decimal("1.5") * custom_parts
            + Decimal("0.5") * branching
        )
        score = int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_EVEN))
        return max(1, min(10, score))

    @staticmethod
    def critical_path(steps: Tuple[BuildStep, ...]) -> CriticalPath:
        """
        Longest weighted path through the build-step DAG.

        Steps arrive in topological order (every dependency has a lower id), so
        one forward pass computes earliest finish times.
        """
        if not steps:
            return CriticalPath(Decimal("0"), (), ())

        by_id = {step.step_id: step for step in steps}
        finish: Dict[int, Decimal] = {}
        via: Dict[int, Optional[int]] = {}
        for step in sorted(steps, key=lambda s: s.step_id):
            best: Optional[int] = None
            start = Decimal("0")
            for dep in step.depends_on:
                if dep not in finish:
                    raise ValueError(f"Build step {step.step_id} depends on unknown or later step {dep}")
                if best is None or finish[dep] > start:
                    best, start = dep, finish[dep]
            finish[step.step_id] = start + step.minutes
            via[step.step_id] = best

        end = max(finish, key=lambda step_id: (finish[step_id], -step_id))
        if finish[end] == 0:
            return CriticalPath(Decimal("0"), (), ())
        path: List[int] = []
        cursor: Optional[int] = end
        while cursor is not None:
            path.append(cursor)
            cursor = via[cursor]
        path.reverse()

        return CriticalPath(
            minutes=finish[end],
            step_ids=tuple(path),
            component_ids=tuple(dict.fromkeys(by_id[s].component_id for s in path)),
        )
