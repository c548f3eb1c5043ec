"""
Catalog tables: category -> subcategory -> assembly -> part.

The engine consumes these read-only; edits happen in the catalog management
collaborator and are picked up through effective-dated snapshots.
"""

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from medbom.models.base import Base


class Category(Base):
    __tablename__ = "categories"

    category_id = Column(String(10), primary_key=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    parent_category_id = Column(
        String(10), ForeignKey("categories.category_id"), nullable=True, index=True
    )
    display_order = Column(Integer, default=0)
    is_active = Column(Boolean, default=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Subcategory(Base):
    __tablename__ = "subcategories"

    subcategory_id = Column(String(20), primary_key=True)
    category_id = Column(
        String(10), ForeignKey("categories.category_id"), nullable=False, index=True
    )
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    display_order = Column(Integer, default=0)
    is_active = Column(Boolean, default=True)
    specifications = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Assembly(Base):
    __tablename__ = "assemblies"

    assembly_id = Column(String(50), primary_key=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    category_id = Column(String(10), ForeignKey("categories.category_id"), nullable=True, index=True)
    subcategory_id = Column(
        String(20), ForeignKey("subcategories.subcategory_id"), nullable=True, index=True
    )
    assembly_type = Column(String(20), default="COMPONENT")  # COMPONENT|KIT|SERVICE_PART|ACCESSORY
    base_price = Column(Numeric(12, 2), nullable=True)
    weight_kg = Column(Numeric(8, 3), nullable=True)
    build_time_hours = Column(Numeric(6, 2), nullable=True)
    status = Column(String(20), default="ACTIVE")
    effective_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Part(Base):
    __tablename__ = "parts"

    part_id = Column(String(50), primary_key=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    category_id = Column(String(10), ForeignKey("categories.category_id"), nullable=True, index=True)
    part_type = Column(String(20), default="COMPONENT")
    unit_of_measure = Column(String(20), default="EACH")
    unit_cost = Column(Numeric(10, 4), nullable=True)
    weight_kg = Column(Numeric(8, 3), nullable=True)
    dimensions = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    status = Column(String(20), default="ACTIVE", index=True)
    is_custom_part = Column(Boolean, default=False)
    lead_time_days = Column(Integer, default=0)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class AssemblyComponent(Base):
    """Directed edge assembly -> component (part or sub-assembly)."""

    __tablename__ = "assembly_components"

    id = Column(Integer, primary_key=True, autoincrement=True)
    assembly_id = Column(
        String(50), ForeignKey("assemblies.assembly_id"), nullable=False, index=True
    )
    component_id = Column(String(50), nullable=False, index=True)
    component_type = Column(String(20), nullable=False, default="PART")  # PART|ASSEMBLY
    quantity = Column(Numeric(10, 3), nullable=False, default=1)
    unit_of_measure = Column(String(20), default="EACH")
    waste_factor = Column(Numeric(5, 4), default=0)
    position_sequence = Column(Integer, default=0)
    assembly_time_minutes = Column(Numeric(6, 2), nullable=True)
    is_optional = Column(Boolean, default=False)
    option_key = Column(String(100), nullable=True)
    substitute_group = Column(String(20), nullable=True)
    preference_order = Column(Integer, default=1)
    configuration_rules = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    is_active = Column(Boolean, default=True)
    effective_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
