import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from medbom.models.base import Base


class BOMStatus(str, enum.Enum):
    """Generated BOM lifecycle states."""

    DRAFT = "DRAFT"
    CALCULATING = "CALCULATING"
    PENDING_REVIEW = "PENDING_REVIEW"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ACTIVE = "ACTIVE"
    SUPERSEDED = "SUPERSEDED"


class BOM(Base):
    __tablename__ = "boms"

    id = Column(String, primary_key=True)
    bom_number = Column(String(50), unique=True, nullable=False)
    configuration_id = Column(String, ForeignKey("configurations.id"), nullable=False, index=True)
    chain_id = Column(String, nullable=False, index=True)
    assembly_id = Column(String(50), nullable=False, index=True)
    bom_type = Column(String(20), default="STANDARD")  # STANDARD|CUSTOM

    total_parts_count = Column(Integer, default=0)
    unique_parts_count = Column(Integer, default=0)
    custom_parts_count = Column(Integer, default=0)
    total_estimated_cost = Column(Numeric(12, 2), default=0)
    total_estimated_weight_kg = Column(Numeric(10, 3), default=0)
    estimated_build_hours = Column(Numeric(8, 2), default=0)
    estimated_assembly_complexity = Column(Integer, default=1)
    critical_path_hours = Column(Numeric(8, 2), nullable=True)

    status = Column(String(20), default=BOMStatus.DRAFT.value, index=True)
    reviewed_by = Column(String(100), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    review_notes = Column(Text, nullable=True)
    approved_by = Column(String(100), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    approval_notes = Column(Text, nullable=True)
    rejected_by = Column(String(100), nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    version = Column(String(20), default="1.0")
    parent_bom_id = Column(String, ForeignKey("boms.id"), nullable=True, index=True)
    is_latest = Column(Boolean, default=False, index=True)

    generated_by = Column(String(100), nullable=True)
    generation_rules_applied = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    generation_parameters = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    generation_duration_ms = Column(Integer, nullable=True)
    configuration_fingerprint = Column(String(64), nullable=True)
    catalog_version = Column(String(64), nullable=True)
    validation_warnings = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, onupdate=func.now())

    line_items = relationship(
        "BOMLineItem",
        backref="bom",
        order_by="BOMLineItem.line_number",
    )


class BOMLineItem(Base):
    __tablename__ = "bom_line_items"
    __table_args__ = (
        UniqueConstraint("bom_id", "line_number", name="uq_bom_line_number"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    bom_id = Column(String, ForeignKey("boms.id"), nullable=False, index=True)
    line_number = Column(Integer, nullable=False)
    component_id = Column(String(50), nullable=False, index=True)
    component_type = Column(String(20), nullable=False, default="PART")
    description = Column(String(200), nullable=True)
    quantity = Column(Numeric(10, 3), nullable=False)
    adjusted_quantity = Column(Numeric(10, 3), nullable=False)
    unit_of_measure = Column(String(20), default="EACH")
    waste_factor = Column(Numeric(5, 4), default=0)
    unit_cost = Column(Numeric(10, 4), nullable=True)
    extended_cost = Column(Numeric(12, 2), nullable=True)
    weight_kg = Column(Numeric(10, 3), nullable=True)
    assembly_sequence = Column(Integer, default=0)
    substitute_group = Column(String(20), nullable=True)
    primary_component_id = Column(String(50), nullable=True)
    is_substitute = Column(Boolean, default=False)
    is_custom_part = Column(Boolean, default=False)
    custom_part_specifications = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    lead_time_days = Column(Integer, default=0)
    is_critical_path = Column(Boolean, default=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)


class CustomPart(Base):
    """700-series custom part registry; deduplicated by specification hash."""

    __tablename__ = "custom_parts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    part_number = Column(String(50), unique=True, nullable=False)
    part_name = Column(String(200), nullable=False)
    base_part_id = Column(String(50), nullable=True)
    customization_type = Column(String(30), nullable=False)
    specification_hash = Column(String(64), unique=True, nullable=False)
    custom_specifications = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False)
    manufacturing_lead_time_days = Column(Integer, nullable=False)
    unit_cost = Column(Numeric(10, 4), nullable=True)
    setup_cost = Column(Numeric(10, 2), nullable=True)
    status = Column(String(20), default="DEVELOPMENT")
    created_at = Column(DateTime, server_default=func.now(), nullable=False)


class SequenceCounter(Base):
    __tablename__ = "sequence_counters"

    name = Column(String(64), primary_key=True)
    value = Column(Integer, nullable=False, default=0)
