import enum

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from medbom.models.base import Base


class ConfigurationStatus(str, enum.Enum):
    """Configuration lifecycle states."""

    DRAFT = "DRAFT"
    VALIDATING = "VALIDATING"
    VALID = "VALID"
    INVALID = "INVALID"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SUPERSEDED = "SUPERSEDED"


class RuleType(str, enum.Enum):
    VALIDATION = "VALIDATION"
    COMPATIBILITY = "COMPATIBILITY"
    CONSTRAINT = "CONSTRAINT"
    CALCULATION = "CALCULATION"
    COMPONENT_SELECTION = "COMPONENT_SELECTION"
    SUBSTITUTION = "SUBSTITUTION"
    PRICING = "PRICING"


class Configuration(Base):
    """Customer product configuration; revisions form a chain via parent link."""

    __tablename__ = "configurations"

    id = Column(String, primary_key=True)
    chain_id = Column(String, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    code = Column(String(50), unique=True, nullable=True)
    assembly_id = Column(String(50), nullable=False, index=True)
    category_id = Column(String(10), nullable=True)
    selections = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False)
    derived_attributes = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    validation_errors = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    validation_warnings = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    is_valid = Column(Boolean, default=False)
    status = Column(String(20), default=ConfigurationStatus.DRAFT.value, index=True)
    version = Column(String(20), default="1.0")
    parent_configuration_id = Column(
        String, ForeignKey("configurations.id"), nullable=True, index=True
    )
    is_latest = Column(Boolean, default=True, index=True)
    change_reason = Column(String(100), nullable=True)
    approved_by = Column(String(100), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejected_by = Column(String(100), nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, onupdate=func.now())


class ConfigurationRule(Base):
    """Business rule row; conditions and actions are parsed once on load."""

    __tablename__ = "configuration_rules"

    rule_id = Column(Integer, primary_key=True)
    rule_code = Column(String(50), unique=True, nullable=False)
    rule_name = Column(String(100), nullable=False)
    rule_type = Column(String(30), nullable=False)
    priority = Column(Integer, default=100)
    execution_order = Column(Integer, default=100)
    is_blocking = Column(Boolean, default=False)
    conditions = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False)
    actions = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    derive = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    applies_to_assemblies = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    applies_to_categories = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    dependency_rules = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    conflicting_rules = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    error_message = Column(Text, nullable=True)
    warning_message = Column(Text, nullable=True)
    resolution_guidance = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, index=True)
    effective_date = Column(Date, nullable=True)
    expiration_date = Column(Date, nullable=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
