"""initial bom engine schema

Revision ID: m0001_initial
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB


# revision identifiers, used by Alembic.
revision: str = "m0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _json() -> sa.types.TypeEngine:
    return sa.JSON().with_variant(JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "categories",
        sa.Column("category_id", sa.String(length=10), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("parent_category_id", sa.String(length=10), nullable=True),
        sa.Column("display_order", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["parent_category_id"], ["categories.category_id"]),
        sa.PrimaryKeyConstraint("category_id"),
    )
    op.create_index(op.f("ix_categories_parent_category_id"), "categories", ["parent_category_id"])

    op.create_table(
        "subcategories",
        sa.Column("subcategory_id", sa.String(length=20), nullable=False),
        sa.Column("category_id", sa.String(length=10), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("display_order", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("specifications", _json(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["category_id"], ["categories.category_id"]),
        sa.PrimaryKeyConstraint("subcategory_id"),
    )
    op.create_index(op.f("ix_subcategories_category_id"), "subcategories", ["category_id"])

    op.create_table(
        "assemblies",
        sa.Column("assembly_id", sa.String(length=50), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category_id", sa.String(length=10), nullable=True),
        sa.Column("subcategory_id", sa.String(length=20), nullable=True),
        sa.Column("assembly_type", sa.String(length=20), nullable=True),
        sa.Column("base_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("weight_kg", sa.Numeric(8, 3), nullable=True),
        sa.Column("build_time_hours", sa.Numeric(6, 2), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=True),
        sa.Column("effective_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["category_id"], ["categories.category_id"]),
        sa.ForeignKeyConstraint(["subcategory_id"], ["subcategories.subcategory_id"]),
        sa.PrimaryKeyConstraint("assembly_id"),
    )
    op.create_index(op.f("ix_assemblies_category_id"), "assemblies", ["category_id"])
    op.create_index(op.f("ix_assemblies_subcategory_id"), "assemblies", ["subcategory_id"])

    op.create_table(
        "parts",
        sa.Column("part_id", sa.String(length=50), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category_id", sa.String(length=10), nullable=True),
        sa.Column("part_type", sa.String(length=20), nullable=True),
        sa.Column("unit_of_measure", sa.String(length=20), nullable=True),
        sa.Column("unit_cost", sa.Numeric(10, 4), nullable=True),
        sa.Column("weight_kg", sa.Numeric(8, 3), nullable=True),
        sa.Column("dimensions", _json(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=True),
        sa.Column("is_custom_part", sa.Boolean(), nullable=True),
        sa.Column("lead_time_days", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["category_id"], ["categories.category_id"]),
        sa.PrimaryKeyConstraint("part_id"),
    )
    op.create_index(op.f("ix_parts_category_id"), "parts", ["category_id"])
    op.create_index(op.f("ix_parts_status"), "parts", ["status"])

    op.create_table(
        "assembly_components",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("assembly_id", sa.String(length=50), nullable=False),
        sa.Column("component_id", sa.String(length=50), nullable=False),
        sa.Column("component_type", sa.String(length=20), nullable=False),
        sa.Column("quantity", sa.Numeric(10, 3), nullable=False),
        sa.Column("unit_of_measure", sa.String(length=20), nullable=True),
        sa.Column("waste_factor", sa.Numeric(5, 4), nullable=True),
        sa.Column("position_sequence", sa.Integer(), nullable=True),
        sa.Column("assembly_time_minutes", sa.Numeric(6, 2), nullable=True),
        sa.Column("is_optional", sa.Boolean(), nullable=True),
        sa.Column("option_key", sa.String(length=100), nullable=True),
        sa.Column("substitute_group", sa.String(length=20), nullable=True),
        sa.Column("preference_order", sa.Integer(), nullable=True),
        sa.Column("configuration_rules", _json(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("effective_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.ForeignKeyConstraint(["assembly_id"], ["assemblies.assembly_id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_assembly_components_assembly_id"), "assembly_components", ["assembly_id"])
    op.create_index(op.f("ix_assembly_components_component_id"), "assembly_components", ["component_id"])

    op.create_table(
        "configuration_rules",
        sa.Column("rule_id", sa.Integer(), nullable=False),
        sa.Column("rule_code", sa.String(length=50), nullable=False),
        sa.Column("rule_name", sa.String(length=100), nullable=False),
        sa.Column("rule_type", sa.String(length=30), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=True),
        sa.Column("execution_order", sa.Integer(), nullable=True),
        sa.Column("is_blocking", sa.Boolean(), nullable=True),
        sa.Column("conditions", _json(), nullable=False),
        sa.Column("actions", _json(), nullable=True),
        sa.Column("derive", _json(), nullable=True),
        sa.Column("applies_to_assemblies", _json(), nullable=True),
        sa.Column("applies_to_categories", _json(), nullable=True),
        sa.Column("dependency_rules", _json(), nullable=True),
        sa.Column("conflicting_rules", _json(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("warning_message", sa.Text(), nullable=True),
        sa.Column("resolution_guidance", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("effective_date", sa.Date(), nullable=True),
        sa.Column("expiration_date", sa.Date(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=True),
        sa.PrimaryKeyConstraint("rule_id"),
        sa.UniqueConstraint("rule_code"),
    )
    op.create_index(op.f("ix_configuration_rules_is_active"), "configuration_rules", ["is_active"])

    op.create_table(
        "configurations",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("chain_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("code", sa.String(length=50), nullable=True),
        sa.Column("assembly_id", sa.String(length=50), nullable=False),
        sa.Column("category_id", sa.String(length=10), nullable=True),
        sa.Column("selections", _json(), nullable=False),
        sa.Column("derived_attributes", _json(), nullable=True),
        sa.Column("validation_errors", _json(), nullable=True),
        sa.Column("validation_warnings", _json(), nullable=True),
        sa.Column("is_valid", sa.Boolean(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=True),
        sa.Column("version", sa.String(length=20), nullable=True),
        sa.Column("parent_configuration_id", sa.String(), nullable=True),
        sa.Column("is_latest", sa.Boolean(), nullable=True),
        sa.Column("change_reason", sa.String(length=100), nullable=True),
        sa.Column("approved_by", sa.String(length=100), nullable=True),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("rejected_by", sa.String(length=100), nullable=True),
        sa.Column("rejected_at", sa.DateTime(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=100), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["parent_configuration_id"], ["configurations.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code"),
    )
    for column in ("chain_id", "assembly_id", "status", "parent_configuration_id", "is_latest"):
        op.create_index(op.f(f"ix_configurations_{column}"), "configurations", [column])

    op.create_table(
        "boms",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("bom_number", sa.String(length=50), nullable=False),
        sa.Column("configuration_id", sa.String(), nullable=False),
        sa.Column("chain_id", sa.String(), nullable=False),
        sa.Column("assembly_id", sa.String(length=50), nullable=False),
        sa.Column("bom_type", sa.String(length=20), nullable=True),
        sa.Column("total_parts_count", sa.Integer(), nullable=True),
        sa.Column("unique_parts_count", sa.Integer(), nullable=True),
        sa.Column("custom_parts_count", sa.Integer(), nullable=True),
        sa.Column("total_estimated_cost", sa.Numeric(12, 2), nullable=True),
        sa.Column("total_estimated_weight_kg", sa.Numeric(10, 3), nullable=True),
        sa.Column("estimated_build_hours", sa.Numeric(8, 2), nullable=True),
        sa.Column("estimated_assembly_complexity", sa.Integer(), nullable=True),
        sa.Column("critical_path_hours", sa.Numeric(8, 2), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=True),
        sa.Column("reviewed_by", sa.String(length=100), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(), nullable=True),
        sa.Column("review_notes", sa.Text(), nullable=True),
        sa.Column("approved_by", sa.String(length=100), nullable=True),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("approval_notes", sa.Text(), nullable=True),
        sa.Column("rejected_by", sa.String(length=100), nullable=True),
        sa.Column("rejected_at", sa.DateTime(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("version", sa.String(length=20), nullable=True),
        sa.Column("parent_bom_id", sa.String(), nullable=True),
        sa.Column("is_latest", sa.Boolean(), nullable=True),
        sa.Column("generated_by", sa.String(length=100), nullable=True),
        sa.Column("generation_rules_applied", _json(), nullable=True),
        sa.Column("generation_parameters", _json(), nullable=True),
        sa.Column("generation_duration_ms", sa.Integer(), nullable=True),
        sa.Column("configuration_fingerprint", sa.String(length=64), nullable=True),
        sa.Column("catalog_version", sa.String(length=64), nullable=True),
        sa.Column("validation_warnings", _json(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["configuration_id"], ["configurations.id"]),
        sa.ForeignKeyConstraint(["parent_bom_id"], ["boms.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("bom_number"),
    )
    for column in ("configuration_id", "chain_id", "assembly_id", "status", "parent_bom_id", "is_latest"):
        op.create_index(op.f(f"ix_boms_{column}"), "boms", [column])

    op.create_table(
        "bom_line_items",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("bom_id", sa.String(), nullable=False),
        sa.Column("line_number", sa.Integer(), nullable=False),
        sa.Column("component_id", sa.String(length=50), nullable=False),
        sa.Column("component_type", sa.String(length=20), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=True),
        sa.Column("quantity", sa.Numeric(10, 3), nullable=False),
        sa.Column("adjusted_quantity", sa.Numeric(10, 3), nullable=False),
        sa.Column("unit_of_measure", sa.String(length=20), nullable=True),
        sa.Column("waste_factor", sa.Numeric(5, 4), nullable=True),
        sa.Column("unit_cost", sa.Numeric(10, 4), nullable=True),
        sa.Column("extended_cost", sa.Numeric(12, 2), nullable=True),
        sa.Column("weight_kg", sa.Numeric(10, 3), nullable=True),
        sa.Column("assembly_sequence", sa.Integer(), nullable=True),
        sa.Column("substitute_group", sa.String(length=20), nullable=True),
        sa.Column("primary_component_id", sa.String(length=50), nullable=True),
        sa.Column("is_substitute", sa.Boolean(), nullable=True),
        sa.Column("is_custom_part", sa.Boolean(), nullable=True),
        sa.Column("custom_part_specifications", _json(), nullable=True),
        sa.Column("lead_time_days", sa.Integer(), nullable=True),
        sa.Column("is_critical_path", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["bom_id"], ["boms.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("bom_id", "line_number", name="uq_bom_line_number"),
    )
    op.create_index(op.f("ix_bom_line_items_bom_id"), "bom_line_items", ["bom_id"])
    op.create_index(op.f("ix_bom_line_items_component_id"), "bom_line_items", ["component_id"])

    op.create_table(
        "custom_parts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("part_number", sa.String(length=50), nullable=False),
        sa.Column("part_name", sa.String(length=200), nullable=False),
        sa.Column("base_part_id", sa.String(length=50), nullable=True),
        sa.Column("customization_type", sa.String(length=30), nullable=False),
        sa.Column("specification_hash", sa.String(length=64), nullable=False),
        sa.Column("custom_specifications", _json(), nullable=False),
        sa.Column("manufacturing_lead_time_days", sa.Integer(), nullable=False),
        sa.Column("unit_cost", sa.Numeric(10, 4), nullable=True),
        sa.Column("setup_cost", sa.Numeric(10, 2), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("part_number"),
        sa.UniqueConstraint("specification_hash"),
    )

    op.create_table(
        "sequence_counters",
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("value", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )


def downgrade() -> None:
    for table in (
        "sequence_counters",
        "custom_parts",
        "bom_line_items",
        "boms",
        "configurations",
        "configuration_rules",
        "assembly_components",
        "parts",
        "assemblies",
        "subcategories",
        "categories",
    ):
        op.drop_table(table)
