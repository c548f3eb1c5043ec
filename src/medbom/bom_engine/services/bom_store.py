"""
Append-only persistence for generated BOMs, line items and custom parts.

BOM and line item rows are inserted once. Afterwards only status, review/approval
fields and the latest pointer may change; a `before_flush` guard enforces it.
"""

from __future__ import annotations

import json
import logging
import uuid
from decimal import Decimal
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import event, inspect
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from medbom.bom_engine.fingerprint import canonical_json
from medbom.bom_engine.models.bom import BOM, BOMLineItem, BOMStatus
from medbom.bom_engine.models.bom import CustomPart as CustomPartRow
from medbom.bom_engine.services.bom_expander import LineItem
from medbom.bom_engine.services.custom_part_service import CustomPart
from medbom.exceptions import ImmutableBOMError, NotFoundError

logger = logging.getLogger(__name__)

MUTABLE_BOM_FIELDS = {
    "status",
    "is_latest",
    "reviewed_by",
    "reviewed_at",
    "review_notes",
    "approved_by",
    "approved_at",
    "approval_notes",
    "rejected_by",
    "rejected_at",
    "rejection_reason",
    "updated_at",
}

_REGISTER_LOCK = Lock()
_REGISTERED = False


def install_immutability_guard() -> None:
    global _REGISTERED
    if _REGISTERED:
        return
    with _REGISTER_LOCK:
        if _REGISTERED:
            return
        event.listen(Session, "before_flush", _before_flush)
        _REGISTERED = True


def _before_flush(session: Session, flush_context, instances) -> None:  # type: ignore[no-untyped-def]
    for obj in list(session.dirty) + list(session.deleted):
        if isinstance(obj, BOMLineItem):
            raise ImmutableBOMError("WRITTEN", resource=f"bom_line_item:{obj.id}")
        if isinstance(obj, BOM) and obj in session.deleted:
            raise ImmutableBOMError(obj.status, resource=f"bom:{obj.id}")

    for obj in session.dirty:
        if not isinstance(obj, BOM):
            continue
        state = inspect(obj)
        changed = {
            attr.key
            for attr in state.attrs
            if attr.key not in ("line_items",) and attr.history.has_changes()
        }
        frozen = changed - MUTABLE_BOM_FIELDS
        if frozen:
            status_history = state.attrs.status.history
            previous = status_history.deleted[0] if status_history.deleted else obj.status
            raise ImmutableBOMError(previous, resource=f"bom:{obj.id}", fields=sorted(frozen))


def _json_safe(value: Any) -> Any:
    return None if value is None else json.loads(canonical_json(value))


def version_key(version: Optional[str]) -> tuple:
    parts = []
    for token in (version or "0").split("."):
        parts.append(int(token) if token.isdigit() else 0)
    return tuple(parts)


class BOMStore:
    def __init__(self, session: Session):
        self.session = session
        install_immutability_guard()

    def create_bom(
        self,
        *,
        bom_number: str,
        configuration_id: str,
        chain_id: str,
        assembly_id: str,
        version: str,
        parent_bom_id: Optional[str],
        is_latest: bool,
        line_items: Iterable[LineItem],
        totals: Dict[str, Any],
        generation: Dict[str, Any],
    ) -> BOM:
        lines = list(line_items)
        bom = BOM(
            id=str(uuid.uuid4()),
            bom_number=bom_number,
            configuration_id=configuration_id,
            chain_id=chain_id,
            assembly_id=assembly_id,
            bom_type="CUSTOM" if any(l.is_custom_part for l in lines) else "STANDARD",
            status=BOMStatus.DRAFT.value,
            version=version,
            parent_bom_id=parent_bom_id,
            is_latest=is_latest,
            **totals,
            **generation,
        )
        self.session.add(bom)
        self.session.flush()

        for line in lines:
            self.session.add(
                BOMLineItem(
                    bom_id=bom.id,
                    line_number=line.line_number,
                    component_id=line.component_id,
                    component_type="PART",
                    description=line.description[:200] if line.description else None,
                    quantity=line.quantity,
                    adjusted_quantity=line.adjusted_quantity,
                    unit_of_measure=line.unit_of_measure,
                    waste_factor=line.waste_factor,
                    unit_cost=line.unit_cost,
                    extended_cost=line.extended_cost,
                    weight_kg=line.weight_kg,
                    assembly_sequence=line.assembly_sequence,
                    substitute_group=line.substitute_group,
                    primary_component_id=line.primary_component_id,
                    is_substitute=line.is_substitute,
                    is_custom_part=line.is_custom_part,
                    custom_part_specifications=_json_safe(line.custom_part_specifications),
                    lead_time_days=line.lead_time_days,
                    is_critical_path=line.is_critical_path,
                )
            )
        self.session.flush()
        logger.info(f"Stored BOM {bom_number} v{version} with {len(lines)} line items")
        return bom

    def get_bom(self, bom_id: str) -> BOM:
        bom = self.session.get(BOM, bom_id)
        if bom is None:
            raise NotFoundError("BOM", bom_id)
        return bom

    def get_line_items(self, bom_id: str) -> List[BOMLineItem]:
        return (
            self.session.query(BOMLineItem)
            .filter(BOMLineItem.bom_id == bom_id)
            .order_by(BOMLineItem.line_number)
            .all()
        )

    def list_chain(self, chain_id: str) -> List[BOM]:
        members = self.session.query(BOM).filter(BOM.chain_id == chain_id).all()
        return sorted(members, key=lambda b: version_key(b.version))

    def list_for_configuration(self, configuration_id: str) -> List[BOM]:
        members = (
            self.session.query(BOM).filter(BOM.configuration_id == configuration_id).all()
        )
        return sorted(members, key=lambda b: version_key(b.version))


def _to_custom_part(row: CustomPartRow) -> CustomPart:
    return CustomPart(
        part_number=row.part_number,
        part_name=row.part_name,
        customization_type=row.customization_type,
        specification=dict(row.custom_specifications or {}),
        specification_hash=row.specification_hash,
        lead_time_days=row.manufacturing_lead_time_days,
        unit_cost=Decimal(str(row.unit_cost or 0)),
        setup_cost=Decimal(str(row.setup_cost or 0)),
        base_part_id=row.base_part_id,
    )


def _custom_part_row(part: CustomPart) -> CustomPartRow:
    return CustomPartRow(
        part_number=part.part_number,
        part_name=part.part_name,
        base_part_id=part.base_part_id,
        customization_type=part.customization_type,
        specification_hash=part.specification_hash,
        custom_specifications=_json_safe(part.specification),
        manufacturing_lead_time_days=part.lead_time_days,
        unit_cost=part.unit_cost,
        setup_cost=part.setup_cost,
    )


class SQLCustomPartRegistry:
    """Custom part registry on `custom_parts`; the unique hash settles races."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def get_custom_part(self, specification_hash: str) -> Optional[CustomPart]:
        session = self.session_factory()
        try:
            row = (
                session.query(CustomPartRow)
                .filter(CustomPartRow.specification_hash == specification_hash)
                .one_or_none()
            )
            return _to_custom_part(row) if row is not None else None
        finally:
            session.close()

    def add_custom_part(self, part: CustomPart, session=None) -> CustomPart:
        """
        Store the part, or return the part already registered under its hash.

        With `session`, the row joins that transaction and is only flushed; a
        concurrent duplicate then fails the caller's transaction instead of being
        settled here.
        """
        if session is not None:
            session.add(_custom_part_row(part))
            session.flush()
            return part

        session = self.session_factory()
        try:
            session.add(_custom_part_row(part))
            session.commit()
            return part
        except IntegrityError:
            session.rollback()
            logger.info(f"Custom part {part.specification_hash[:12]} registered concurrently; reusing")
            existing = self.get_custom_part(part.specification_hash)
            if existing is None:
                raise
            return existing
        finally:
            session.close()
