"""
YAML fixtures: a catalog, its rules and sample configurations in one file.

Used by the CLI, the seed script and the tests. A fixture can be loaded into
the in-memory providers or written to the SQL catalog tables.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from medbom.bom_engine.catalog.reader import InMemoryCatalogProvider
from medbom.bom_engine.models.catalog import Assembly, AssemblyComponent, Category, Part
from medbom.bom_engine.models.configuration import ConfigurationRule
from medbom.bom_engine.rules.loader import Rule, load_rule
from medbom.bom_engine.rules.repository import InMemoryRuleRepository
from medbom.exceptions import ValidationError

logger = logging.getLogger(__name__)


class CategoryFixture(BaseModel):
    id: str
    name: Optional[str] = None


class PartFixture(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    category_id: Optional[str] = None
    part_type: str = "COMPONENT"
    unit_of_measure: str = "EACH"
    unit_cost: Decimal = Decimal("0")
    weight_kg: Decimal = Decimal("0")
    dimensions: Dict[str, Any] = Field(default_factory=dict)
    status: str = "ACTIVE"
    lead_time_days: int = 0


class ComponentFixture(BaseModel):
    model_config = ConfigDict(extra="forbid")

    component_id: str
    component_type: str = "PART"
    quantity: Decimal = Decimal("1")
    unit_of_measure: str = "EACH"
    waste_factor: Decimal = Decimal("0")
    position_sequence: int = 0
    assembly_time_minutes: Decimal = Decimal("0")
    is_optional: bool = False
    option_key: Optional[str] = None
    substitute_group: Optional[str] = None
    preference_order: int = 1
    condition: Optional[Union[Dict[str, Any], List[Any]]] = None
    effective_date: Optional[date] = None
    end_date: Optional[date] = None


class AssemblyFixture(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str
    category_id: Optional[str] = None
    assembly_type: str = "COMPONENT"
    build_time_hours: Decimal = Decimal("0")
    effective_date: Optional[date] = None
    end_date: Optional[date] = None
    components: List[ComponentFixture] = Field(default_factory=list)


class ConfigurationFixture(BaseModel):
    code: str
    name: Optional[str] = None
    assembly_id: str
    category_id: Optional[str] = None
    selections: Dict[str, Any] = Field(default_factory=dict)


class CatalogFixture(BaseModel):
    categories: List[CategoryFixture] = Field(default_factory=list)
    parts: List[PartFixture] = Field(default_factory=list)
    assemblies: List[AssemblyFixture] = Field(default_factory=list)


class Fixture(BaseModel):
    catalog: CatalogFixture = Field(default_factory=CatalogFixture)
    rules: List[Dict[str, Any]] = Field(default_factory=list)
    configurations: List[ConfigurationFixture] = Field(default_factory=list)

    def configuration(self, code: str) -> ConfigurationFixture:
        for candidate in self.configurations:
            if candidate.code == code:
                return candidate
        known = ", ".join(c.code for c in self.configurations) or "none"
        raise ValidationError(
            f"Configuration {code} is not in the fixture (known: {known})",
            errors=[{"field": "configuration", "message": f"unknown code {code}"}],
        )

    def load_rules(self) -> List[Rule]:
        return [load_rule(raw) for raw in self.rules]

    def build_catalog(self) -> InMemoryCatalogProvider:
        provider = InMemoryCatalogProvider()
        for part in self.catalog.parts:
            provider.add_part(part.id, **part.model_dump(exclude={"id"}))
        for assembly in self.catalog.assemblies:
            provider.add_assembly(
                assembly.id, **assembly.model_dump(exclude={"id", "components"})
            )
            for component in assembly.components:
                provider.add_edge(assembly.id, **component.model_dump())
        return provider

    def build_rule_repository(self) -> InMemoryRuleRepository:
        return InMemoryRuleRepository(self.load_rules())

    def category_ids(self) -> List[str]:
        seen: Dict[str, None] = {c.id: None for c in self.catalog.categories}
        for item in list(self.catalog.parts) + list(self.catalog.assemblies):
            if item.category_id:
                seen.setdefault(item.category_id, None)
        return list(seen)


def parse_fixture(data: Any) -> Fixture:
    if not isinstance(data, dict):
        raise ValidationError(
            "Fixture must be a mapping",
            errors=[{"field": "<root>", "message": "expected a mapping"}],
        )
    try:
        return Fixture.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid fixture: {e.error_count()} error(s)",
            errors=[
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ],
        ) from e


def load_fixture(path: Union[str, Path]) -> Fixture:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    fixture = parse_fixture(data)
    logger.info(
        f"Loaded fixture {path}: {len(fixture.catalog.parts)} parts, "
        f"{len(fixture.catalog.assemblies)} assemblies, {len(fixture.rules)} rules"
    )
    return fixture


def seed_catalog(session: Session, fixture: Fixture) -> None:
    """Write the fixture's catalog and rules to the SQL tables (insert or update)."""
    names = {c.id: c.name for c in fixture.catalog.categories}
    for category_id in fixture.category_ids():
        session.merge(Category(category_id=category_id, name=names.get(category_id) or category_id))
    session.flush()

    for part in fixture.catalog.parts:
        session.merge(
            Part(
                part_id=part.id,
                name=part.name,
                category_id=part.category_id,
                part_type=part.part_type,
                unit_of_measure=part.unit_of_measure,
                unit_cost=part.unit_cost,
                weight_kg=part.weight_kg,
                dimensions=part.dimensions or None,
                status=part.status,
                lead_time_days=part.lead_time_days,
            )
        )

    for assembly in fixture.catalog.assemblies:
        session.merge(
            Assembly(
                assembly_id=assembly.id,
                name=assembly.name,
                category_id=assembly.category_id,
                assembly_type=assembly.assembly_type,
                build_time_hours=assembly.build_time_hours,
                effective_date=assembly.effective_date,
                end_date=assembly.end_date,
            )
        )
    session.flush()

    for assembly in fixture.catalog.assemblies:
        session.query(AssemblyComponent).filter(
            AssemblyComponent.assembly_id == assembly.id
        ).delete(synchronize_session=False)
        for component in assembly.components:
            values = component.model_dump(exclude={"condition"})
            session.add(
                AssemblyComponent(
                    assembly_id=assembly.id,
                    configuration_rules=component.condition,
                    **values,
                )
            )

    for raw, rule in zip(fixture.rules, fixture.load_rules()):
        session.merge(
            ConfigurationRule(
                rule_id=rule.rule_id,
                rule_code=rule.code,
                rule_name=rule.name,
                rule_type=rule.rule_type,
                priority=rule.priority,
                execution_order=rule.execution_order,
                is_blocking=rule.is_blocking,
                conditions=raw.get("conditions") or {},
                actions=raw.get("actions"),
                derive=raw.get("derive"),
                applies_to_assemblies=list(rule.applies_to_assemblies) or None,
                applies_to_categories=list(rule.applies_to_categories) or None,
                dependency_rules=list(rule.depends_on) or None,
                conflicting_rules=list(rule.conflicts_with) or None,
                error_message=rule.error_message,
                warning_message=rule.warning_message,
                resolution_guidance=rule.resolution_guidance,
                is_active=rule.is_active,
                effective_date=rule.effective_date,
                expiration_date=rule.expiration_date,
            )
        )
    session.flush()
    logger.info(
        f"Seeded {len(fixture.catalog.parts)} parts, {len(fixture.catalog.assemblies)} assemblies "
        f"and {len(fixture.rules)} rules"
    )


def seed_configurations(
    session: Session, fixture: Fixture, created_by: Optional[str] = None
) -> Dict[str, str]:
    """Create the fixture's configurations that are not stored yet; returns code -> id."""
    from medbom.bom_engine.models.configuration import Configuration
    from medbom.bom_engine.services.configuration_service import ConfigurationService

    service = ConfigurationService(session)
    ids: Dict[str, str] = {}
    for config in fixture.configurations:
        existing = (
            session.query(Configuration).filter(Configuration.code == config.code).one_or_none()
        )
        if existing is None:
            existing = service.create(
                config.name or config.code,
                config.assembly_id,
                config.selections,
                category_id=config.category_id,
                code=config.code,
                created_by=created_by,
            )
        ids[config.code] = existing.id
    return ids
