"""
Immutable catalog snapshot consumed by a single generation run.

Assemblies are addressed by integer handles; each handle owns an adjacency list
of effective edges. Nothing in a snapshot changes after it is built, so a run
never observes concurrent catalog edits.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from medbom.bom_engine.rules.conditions import ALWAYS, Condition

PART = "PART"
ASSEMBLY = "ASSEMBLY"


@dataclass(frozen=True)
class CategoryRecord:
    category_id: str
    name: str
    parent_category_id: Optional[str] = None


@dataclass(frozen=True)
class SubcategoryRecord:
    subcategory_id: str
    category_id: str
    name: str


@dataclass(frozen=True)
class AssemblyRecord:
    assembly_id: str
    name: str
    category_id: Optional[str] = None
    subcategory_id: Optional[str] = None
    assembly_type: str = "COMPONENT"
    build_time_hours: Decimal = Decimal("0")
    effective_date: Optional[date] = None
    end_date: Optional[date] = None


@dataclass(frozen=True)
class PartRecord:
    part_id: str
    name: str
    unit_cost: Decimal = Decimal("0")
    weight_kg: Decimal = Decimal("0")
    unit_of_measure: str = "EACH"
    part_type: str = "COMPONENT"
    status: str = "ACTIVE"
    is_custom_part: bool = False
    lead_time_days: int = 0
    category_id: Optional[str] = None
    dimensions: Dict[str, Any] = field(default_factory=dict, hash=False)

    @property
    def is_active(self) -> bool:
        return self.status == "ACTIVE"


@dataclass(frozen=True)
class EdgeRecord:
    edge_id: int
    assembly_id: str
    component_id: str
    component_type: str = PART
    quantity: Decimal = Decimal("1")
    unit_of_measure: str = "EACH"
    waste_factor: Decimal = Decimal("0")
    position_sequence: int = 0
    assembly_time_minutes: Decimal = Decimal("0")
    is_optional: bool = False
    option_key: Optional[str] = None
    substitute_group: Optional[str] = None
    preference_order: int = 0
    condition: Condition = ALWAYS
    effective_date: Optional[date] = None
    end_date: Optional[date] = None

    @property
    def is_assembly(self) -> bool:
        return self.component_type == ASSEMBLY


def is_effective(
    effective_date: Optional[date], end_date: Optional[date], as_of: datetime
) -> bool:
    """Start date inclusive, end date exclusive."""
    day = as_of.date() if isinstance(as_of, datetime) else as_of
    if effective_date and day < effective_date:
        return False
    if end_date and day >= end_date:
        return False
    return True


class CatalogSnapshot:
    """Reachable subgraph of the catalog at one version and as-of instant."""

    def __init__(
        self,
        version: str,
        as_of: datetime,
        root_assembly_id: str,
        assemblies: Iterable[AssemblyRecord],
        edges: Dict[str, List[EdgeRecord]],
        parts: Dict[str, PartRecord],
        category_parts: Optional[Dict[str, List[str]]] = None,
    ):
        self.version = version
        self.as_of = as_of
        self.root_assembly_id = root_assembly_id

        self._nodes: Tuple[AssemblyRecord, ...] = tuple(
            sorted(assemblies, key=lambda a: a.assembly_id)
        )
        self._handles: Dict[str, int] = {
            node.assembly_id: handle for handle, node in enumerate(self._nodes)
        }
        self._adjacency: Tuple[Tuple[EdgeRecord, ...], ...] = tuple(
            tuple(
                sorted(
                    edges.get(node.assembly_id, ()),
                    key=lambda e: (e.position_sequence, e.component_id, e.edge_id),
                )
            )
            for node in self._nodes
        )
        self._parts: Dict[str, PartRecord] = dict(parts)
        self._category_parts: Dict[str, Tuple[str, ...]] = {
            category: tuple(sorted(ids))
            for category, ids in (category_parts or {}).items()
        }

    @property
    def root_handle(self) -> int:
        handle = self.handle(self.root_assembly_id)
        if handle is None:
            raise KeyError(self.root_assembly_id)
        return handle

    def handle(self, assembly_id: str) -> Optional[int]:
        return self._handles.get(assembly_id)

    def assembly(self, handle: int) -> AssemblyRecord:
        return self._nodes[handle]

    def edges(self, handle: int) -> Tuple[EdgeRecord, ...]:
        return self._adjacency[handle]

    def part(self, part_id: str) -> Optional[PartRecord]:
        return self._parts.get(part_id)

    def contains(self, component_id: str, component_type: str = PART) -> bool:
        if component_type == ASSEMBLY:
            return component_id in self._handles
        return component_id in self._parts

    def parts_in_category(self, category_id: str) -> List[PartRecord]:
        return [
            self._parts[part_id]
            for part_id in self._category_parts.get(category_id, ())
            if part_id in self._parts
        ]

    def find_dimensional_match(
        self, category_id: str, dimensions: Dict[str, Any]
    ) -> Optional[PartRecord]:
        """First active part in the category whose dimensions equal the request."""
        wanted = {str(k).lower(): _as_decimal(v) for k, v in dimensions.items()}
        for part in self.parts_in_category(category_id):
            if not part.is_active or not part.dimensions:
                continue
            have = {str(k).lower(): _as_decimal(v) for k, v in part.dimensions.items()}
            if all(have.get(k) == v for k, v in wanted.items()):
                return part
        return None

    @property
    def assembly_count(self) -> int:
        return len(self._nodes)

    @property
    def part_count(self) -> int:
        return len(self._parts)


def _as_decimal(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except ArithmeticError:
            return value.strip().upper()
    return value
