"""
Inventory catalog reader.

Providers expose the read-only catalog (`get_assembly`, `get_part`) and a
version string. `CatalogReader.snapshot` walks the subgraph reachable from a
root assembly through one consistent provider view and freezes it.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from itertools import count
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from medbom.bom_engine.catalog.snapshot import (
    ASSEMBLY,
    PART,
    AssemblyRecord,
    CatalogSnapshot,
    EdgeRecord,
    PartRecord,
    is_effective,
)
from medbom.bom_engine.fingerprint import fingerprint
from medbom.bom_engine.models.catalog import Assembly, AssemblyComponent, Part
from medbom.bom_engine.rules.conditions import parse_condition
from medbom.exceptions import ConfigurationUnsupportedError, RuleDefinitionError

logger = logging.getLogger(__name__)


class CatalogView(Protocol):
    def catalog_version(self, as_of: datetime) -> str: ...

    def get_assembly(self, assembly_id: str, as_of: datetime) -> Optional[Dict[str, Any]]: ...

    def get_part(self, part_id: str) -> Optional[Dict[str, Any]]: ...

    def list_parts(self, category_id: str) -> List[Dict[str, Any]]: ...


class CatalogProvider(CatalogView, Protocol):
    def read_view(self) -> Any:
        """Context manager yielding a CatalogView that is stable for its lifetime."""
        ...


# ---------------------------------------------------------------------------
# In-memory provider
# ---------------------------------------------------------------------------


class _CatalogState:
    """One published version of the in-memory catalog. Never mutated."""

    def __init__(
        self,
        version: int,
        assemblies: Dict[str, Dict[str, Any]],
        edges: Dict[str, Tuple[Dict[str, Any], ...]],
        parts: Dict[str, Dict[str, Any]],
    ):
        self.version = version
        self.assemblies = assemblies
        self.edges = edges
        self.parts = parts

    def catalog_version(self, as_of: datetime) -> str:
        return f"mem-{self.version}"

    def get_assembly(self, assembly_id: str, as_of: datetime) -> Optional[Dict[str, Any]]:
        attributes = self.assemblies.get(assembly_id)
        if attributes is None:
            return None
        if not is_effective(
            _as_date(attributes.get("effective_date")),
            _as_date(attributes.get("end_date")),
            as_of,
        ):
            return None
        edges = [
            dict(edge)
            for edge in self.edges.get(assembly_id, ())
            if edge.get("is_active", True)
            and is_effective(
                _as_date(edge.get("effective_date")),
                _as_date(edge.get("end_date")),
                as_of,
            )
        ]
        return {"attributes": dict(attributes), "edges": edges}

    def get_part(self, part_id: str) -> Optional[Dict[str, Any]]:
        attributes = self.parts.get(part_id)
        return dict(attributes) if attributes is not None else None

    def list_parts(self, category_id: str) -> List[Dict[str, Any]]:
        return [
            dict(attrs)
            for attrs in self.parts.values()
            if attrs.get("category_id") == category_id
        ]


class InMemoryCatalogProvider:
    """
    Copy-on-write catalog for fixtures and tests.

    Every edit publishes a new `_CatalogState` and bumps the catalog version;
    views already handed out keep reading the state they were opened on.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._edge_ids = count(1)
        self._state = _CatalogState(0, {}, {}, {})

    def _publish(self, assemblies=None, edges=None, parts=None) -> None:
        current = self._state
        self._state = _CatalogState(
            current.version + 1,
            assemblies if assemblies is not None else current.assemblies,
            edges if edges is not None else current.edges,
            parts if parts is not None else current.parts,
        )

    def add_assembly(self, assembly_id: str, name: str, **attributes: Any) -> None:
        with self._lock:
            assemblies = dict(self._state.assemblies)
            assemblies[assembly_id] = {"assembly_id": assembly_id, "name": name, **attributes}
            self._publish(assemblies=assemblies)

    def add_part(self, part_id: str, name: str, **attributes: Any) -> None:
        with self._lock:
            parts = dict(self._state.parts)
            parts[part_id] = {"part_id": part_id, "name": name, **attributes}
            self._publish(parts=parts)

    def update_part(self, part_id: str, **changes: Any) -> None:
        with self._lock:
            if part_id not in self._state.parts:
                raise KeyError(part_id)
            parts = dict(self._state.parts)
            parts[part_id] = {**parts[part_id], **changes}
            self._publish(parts=parts)

    def add_edge(
        self,
        assembly_id: str,
        component_id: str,
        component_type: str = PART,
        **attributes: Any,
    ) -> int:
        with self._lock:
            edge_id = attributes.pop("edge_id", None) or next(self._edge_ids)
            edge = {
                "edge_id": edge_id,
                "assembly_id": assembly_id,
                "component_id": component_id,
                "component_type": component_type,
                **attributes,
            }
            edges = dict(self._state.edges)
            edges[assembly_id] = edges.get(assembly_id, ()) + (edge,)
            self._publish(edges=edges)
            return edge_id

    def remove_edge(self, edge_id: int) -> None:
        with self._lock:
            edges = {
                assembly_id: tuple(e for e in members if e["edge_id"] != edge_id)
                for assembly_id, members in self._state.edges.items()
            }
            self._publish(edges=edges)

    @contextmanager
    def read_view(self) -> Iterator[_CatalogState]:
        yield self._state

    # Direct protocol access reads the latest published state.
    def catalog_version(self, as_of: datetime) -> str:
        return self._state.catalog_version(as_of)

    def get_assembly(self, assembly_id: str, as_of: datetime) -> Optional[Dict[str, Any]]:
        return self._state.get_assembly(assembly_id, as_of)

    def get_part(self, part_id: str) -> Optional[Dict[str, Any]]:
        return self._state.get_part(part_id)

    def list_parts(self, category_id: str) -> List[Dict[str, Any]]:
        return self._state.list_parts(category_id)


# ---------------------------------------------------------------------------
# SQL provider
# ---------------------------------------------------------------------------


def _assembly_attributes(row: Assembly) -> Dict[str, Any]:
    return {
        "assembly_id": row.assembly_id,
        "name": row.name,
        "category_id": row.category_id,
        "subcategory_id": row.subcategory_id,
        "assembly_type": row.assembly_type,
        "build_time_hours": row.build_time_hours,
        "effective_date": row.effective_date,
        "end_date": row.end_date,
    }


def _edge_attributes(row: AssemblyComponent) -> Dict[str, Any]:
    return {
        "edge_id": row.id,
        "assembly_id": row.assembly_id,
        "component_id": row.component_id,
        "component_type": row.component_type,
        "quantity": row.quantity,
        "unit_of_measure": row.unit_of_measure,
        "waste_factor": row.waste_factor,
        "position_sequence": row.position_sequence,
        "assembly_time_minutes": row.assembly_time_minutes,
        "is_optional": row.is_optional,
        "option_key": row.option_key,
        "substitute_group": row.substitute_group,
        "preference_order": row.preference_order,
        "condition": row.configuration_rules,
        "effective_date": row.effective_date,
        "end_date": row.end_date,
    }


def _part_attributes(row: Part) -> Dict[str, Any]:
    return {
        "part_id": row.part_id,
        "name": row.name,
        "category_id": row.category_id,
        "part_type": row.part_type,
        "unit_of_measure": row.unit_of_measure,
        "unit_cost": row.unit_cost,
        "weight_kg": row.weight_kg,
        "dimensions": row.dimensions or {},
        "status": row.status,
        "is_custom_part": row.is_custom_part,
        "lead_time_days": row.lead_time_days,
    }


class _SQLCatalogView:
    def __init__(self, session: Session):
        self.session = session

    def catalog_version(self, as_of: datetime) -> str:
        stamps = []
        for model in (Assembly, AssemblyComponent, Part):
            latest, total = self.session.query(
                func.max(model.updated_at), func.count()
            ).select_from(model).one()
            stamps.append([latest, total])
        return "sql-" + fingerprint(stamps)[:16]

    def get_assembly(self, assembly_id: str, as_of: datetime) -> Optional[Dict[str, Any]]:
        row = self.session.get(Assembly, assembly_id)
        if row is None or row.status != "ACTIVE":
            return None
        if not is_effective(row.effective_date, row.end_date, as_of):
            return None
        edges = (
            self.session.query(AssemblyComponent)
            .filter(
                AssemblyComponent.assembly_id == assembly_id,
                AssemblyComponent.is_active.is_(True),
            )
            .order_by(AssemblyComponent.position_sequence, AssemblyComponent.id)
            .all()
        )
        return {
            "attributes": _assembly_attributes(row),
            "edges": [
                _edge_attributes(edge)
                for edge in edges
                if is_effective(edge.effective_date, edge.end_date, as_of)
            ],
        }

    def get_part(self, part_id: str) -> Optional[Dict[str, Any]]:
        row = self.session.get(Part, part_id)
        return _part_attributes(row) if row is not None else None

    def list_parts(self, category_id: str) -> List[Dict[str, Any]]:
        rows = (
            self.session.query(Part)
            .filter(Part.category_id == category_id)
            .order_by(Part.part_id)
            .all()
        )
        return [_part_attributes(row) for row in rows]


# Isolation per dialect for a catalog view; every query of one view reads the
# same database snapshot. SQLite only offers SERIALIZABLE and READ UNCOMMITTED.
VIEW_ISOLATION_LEVELS = {"postgresql": "REPEATABLE READ", "mysql": "REPEATABLE READ"}
DEFAULT_VIEW_ISOLATION_LEVEL = "SERIALIZABLE"


class SQLCatalogProvider:
    """Catalog backed by the SQLAlchemy catalog tables; one session and transaction per view."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    @contextmanager
    def read_view(self) -> Iterator[_SQLCatalogView]:
        session = self.session_factory()
        try:
            dialect = session.get_bind().dialect.name
            level = VIEW_ISOLATION_LEVELS.get(dialect, DEFAULT_VIEW_ISOLATION_LEVEL)
            # Must run before the first query so the whole view shares one transaction.
            session.connection(execution_options={"isolation_level": level})
            yield _SQLCatalogView(session)
        finally:
            session.close()

    def catalog_version(self, as_of: datetime) -> str:
        with self.read_view() as view:
            return view.catalog_version(as_of)

    def get_assembly(self, assembly_id: str, as_of: datetime) -> Optional[Dict[str, Any]]:
        with self.read_view() as view:
            return view.get_assembly(assembly_id, as_of)

    def get_part(self, part_id: str) -> Optional[Dict[str, Any]]:
        with self.read_view() as view:
            return view.get_part(part_id)

    def list_parts(self, category_id: str) -> List[Dict[str, Any]]:
        with self.read_view() as view:
            return view.list_parts(category_id)


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------


class CatalogReader:
    def __init__(self, provider: CatalogProvider):
        self.provider = provider

    def assembly_category(self, assembly_id: str, as_of: datetime) -> Optional[str]:
        found = self.provider.get_assembly(assembly_id, as_of)
        if found is None:
            return None
        return found["attributes"].get("category_id")

    def snapshot(
        self,
        root_assembly_id: str,
        as_of: Optional[datetime] = None,
        extra_part_ids: Iterable[str] = (),
        extra_categories: Iterable[str] = (),
    ) -> CatalogSnapshot:
        """
        Load everything reachable from the root into an immutable snapshot.

        Args:
            root_assembly_id: Assembly to expand.
            as_of: Effectivity instant; defaults to now (naive UTC).
            extra_part_ids: Parts named by rule actions but not on any edge.
            extra_categories: Categories searched for dimensional matches.

        Raises:
            ConfigurationUnsupportedError: root assembly unknown or not effective.
            RuleDefinitionError: an edge carries a malformed condition.
        """
        as_of = as_of or datetime.utcnow()

        with self.provider.read_view() as view:
            version = view.catalog_version(as_of)
            assemblies: Dict[str, AssemblyRecord] = {}
            edges: Dict[str, List[EdgeRecord]] = {}
            parts: Dict[str, PartRecord] = {}
            category_parts: Dict[str, List[str]] = {}

            root = view.get_assembly(root_assembly_id, as_of)
            if root is None:
                raise ConfigurationUnsupportedError(
                    f"Assembly {root_assembly_id} is not in the catalog at {as_of.isoformat()}",
                    reason="unknown_assembly",
                    assembly_id=root_assembly_id,
                )

            pending = [(root_assembly_id, root)]
            seen = {root_assembly_id}
            while pending:
                assembly_id, payload = pending.pop()
                assemblies[assembly_id] = _to_assembly_record(payload["attributes"])
                edge_records = []
                for raw_edge in payload["edges"]:
                    edge = _to_edge_record(assembly_id, raw_edge)
                    edge_records.append(edge)
                    if edge.is_assembly:
                        if edge.component_id in seen:
                            continue
                        seen.add(edge.component_id)
                        child = view.get_assembly(edge.component_id, as_of)
                        if child is not None:
                            pending.append((edge.component_id, child))
                    elif edge.component_id not in parts:
                        part = view.get_part(edge.component_id)
                        if part is not None:
                            parts[edge.component_id] = _to_part_record(part)
                edges[assembly_id] = edge_records

            for part_id in extra_part_ids:
                if part_id and part_id not in parts:
                    part = view.get_part(part_id)
                    if part is not None:
                        parts[part_id] = _to_part_record(part)

            for category_id in extra_categories:
                if not category_id:
                    continue
                members = []
                for raw_part in view.list_parts(category_id):
                    record = _to_part_record(raw_part)
                    parts.setdefault(record.part_id, record)
                    members.append(record.part_id)
                category_parts[category_id] = members

        snapshot = CatalogSnapshot(
            version=version,
            as_of=as_of,
            root_assembly_id=root_assembly_id,
            assemblies=assemblies.values(),
            edges=edges,
            parts=parts,
            category_parts=category_parts,
        )
        logger.debug(
            f"Catalog snapshot {version} for {root_assembly_id}: "
            f"{snapshot.assembly_count} assemblies, {snapshot.part_count} parts"
        )
        return snapshot


def _as_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _dec(value: Any, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _to_assembly_record(attrs: Dict[str, Any]) -> AssemblyRecord:
    return AssemblyRecord(
        assembly_id=attrs["assembly_id"],
        name=attrs.get("name") or attrs["assembly_id"],
        category_id=attrs.get("category_id"),
        subcategory_id=attrs.get("subcategory_id"),
        assembly_type=attrs.get("assembly_type") or "COMPONENT",
        build_time_hours=_dec(attrs.get("build_time_hours")),
        effective_date=_as_date(attrs.get("effective_date")),
        end_date=_as_date(attrs.get("end_date")),
    )


def _to_part_record(attrs: Dict[str, Any]) -> PartRecord:
    return PartRecord(
        part_id=attrs["part_id"],
        name=attrs.get("name") or attrs["part_id"],
        unit_cost=_dec(attrs.get("unit_cost")),
        weight_kg=_dec(attrs.get("weight_kg")),
        unit_of_measure=attrs.get("unit_of_measure") or "EACH",
        part_type=attrs.get("part_type") or "COMPONENT",
        status=attrs.get("status") or "ACTIVE",
        is_custom_part=bool(attrs.get("is_custom_part", False)),
        lead_time_days=int(attrs.get("lead_time_days") or 0),
        category_id=attrs.get("category_id"),
        dimensions=dict(attrs.get("dimensions") or {}),
    )


def _to_edge_record(assembly_id: str, attrs: Dict[str, Any]) -> EdgeRecord:
    waste = _dec(attrs.get("waste_factor"))
    if waste < 0 or waste >= 1:
        raise ConfigurationUnsupportedError(
            f"Edge {attrs.get('edge_id')} of {assembly_id} has waste factor {waste} outside [0, 1)",
            reason="invalid_edge",
        )
    try:
        condition = parse_condition(attrs.get("condition"))
    except RuleDefinitionError as e:
        raise RuleDefinitionError(
            f"Edge {attrs.get('edge_id')} of {assembly_id}: {e.message}",
            assembly_id=assembly_id,
            edge_id=attrs.get("edge_id"),
        ) from e
    component_type = (attrs.get("component_type") or PART).upper()
    return EdgeRecord(
        edge_id=int(attrs.get("edge_id") or 0),
        assembly_id=assembly_id,
        component_id=attrs["component_id"],
        component_type=ASSEMBLY if component_type == ASSEMBLY else PART,
        quantity=_dec(attrs.get("quantity"), "1"),
        unit_of_measure=attrs.get("unit_of_measure") or "EACH",
        waste_factor=waste,
        position_sequence=int(attrs.get("position_sequence") or 0),
        assembly_time_minutes=_dec(attrs.get("assembly_time_minutes")),
        is_optional=bool(attrs.get("is_optional", False)),
        option_key=attrs.get("option_key"),
        substitute_group=attrs.get("substitute_group"),
        preference_order=int(attrs.get("preference_order") or 0),
        condition=condition,
        effective_date=_as_date(attrs.get("effective_date")),
        end_date=_as_date(attrs.get("end_date")),
    )
