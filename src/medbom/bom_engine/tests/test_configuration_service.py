from pathlib import Path

import pytest

from medbom.bom_engine.fixtures import load_fixture
from medbom.bom_engine.models.configuration import ConfigurationStatus
from medbom.bom_engine.services.config_validator import ConfigurationValidator
from medbom.bom_engine.services.configuration_service import (
    ConfigurationRecord,
    ConfigurationService,
    InMemoryConfigurationSource,
    SQLConfigurationSource,
    bump_minor,
)
from medbom.database import create_db_engine, create_session_factory, get_db_session, init_db
from medbom.exceptions import NotFoundError, StateTransitionError

FIXTURE = Path(__file__).parent / "fixtures" / "lighting.yaml"


@pytest.fixture
def session_factory():
    engine = create_db_engine("sqlite:///:memory:")
    init_db(create_tables=True, bind_engine=engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def service(session_factory):
    session = session_factory()
    validator = ConfigurationValidator(load_fixture(FIXTURE).build_rule_repository())
    yield ConfigurationService(session, validator)
    session.close()


def test_create_starts_a_chain(service):
    row = service.create(
        "Standard 48in", "FIXTURE-48", {"voltage": 120}, category_id="LTG", code="FX48", created_by="sales"
    )

    assert row.status == ConfigurationStatus.DRAFT.value
    assert row.chain_id == row.id
    assert row.version == "1.0"
    assert row.is_latest
    assert service.get_by_code("FX48").id == row.id
    assert service.load(row.id) == ConfigurationRecord(
        configuration_id=row.id,
        chain_id=row.id,
        assembly_id="FIXTURE-48",
        selections={"voltage": 120},
        category_id="LTG",
    )


def test_validate_records_the_outcome(service):
    good = service.create("Good", "FIXTURE-48", {"voltage": 277, "length_ft": 4}, category_id="LTG")
    bad = service.create("Bad", "FIXTURE-48", {"voltage": 480, "length_ft": 12}, category_id="LTG")

    assert service.validate(good.id).is_valid
    assert not service.validate(bad.id).is_valid

    assert good.status == ConfigurationStatus.VALID.value
    assert good.is_valid
    assert good.derived_attributes == {"total_watts": "20"}
    assert bad.status == ConfigurationStatus.INVALID.value
    assert [e["rule_code"] for e in bad.validation_errors] == ["REQ-VOLTAGE"]
    assert [w["rule_code"] for w in bad.validation_warnings] == ["LONG-RUN-WARN"]


def test_only_valid_configurations_can_be_approved(service):
    draft = service.create("Draft", "FIXTURE-48", {"voltage": 120}, category_id="LTG")

    with pytest.raises(StateTransitionError):
        service.approve(draft.id, "engineer")

    service.validate(draft.id)
    approved = service.approve(draft.id, "engineer")

    assert approved.status == ConfigurationStatus.APPROVED.value
    assert approved.approved_by == "engineer"
    assert approved.approved_at is not None


def test_invalid_configuration_can_be_revalidated_or_rejected(service):
    row = service.create("Bad", "FIXTURE-48", {"voltage": 480}, category_id="LTG")
    service.validate(row.id)

    service.validate(row.id)
    rejected = service.reject(row.id, "engineer", "unsupported supply")

    assert rejected.status == ConfigurationStatus.REJECTED.value
    assert rejected.rejection_reason == "unsupported supply"
    assert rejected.rejected_by == "engineer"
    assert rejected.rejected_at is not None
    assert rejected.approved_by is None
    with pytest.raises(StateTransitionError):
        service.validate(row.id)


def test_revise_supersedes_and_extends_the_chain(service):
    original = service.create("Std", "FIXTURE-48", {"voltage": 120}, category_id="LTG", code="FX48")
    service.validate(original.id)
    service.approve(original.id, "engineer")

    revision = service.revise(
        original.id, {"voltage": 120, "lens": "clear"}, change_reason="clear lens", created_by="sales"
    )

    assert original.status == ConfigurationStatus.SUPERSEDED.value
    assert not original.is_latest
    assert original.code is None
    assert revision.chain_id == original.chain_id
    assert revision.parent_configuration_id == original.id
    assert revision.version == "1.1"
    assert revision.status == ConfigurationStatus.DRAFT.value
    assert revision.is_latest
    assert revision.code == "FX48"
    assert service.get_by_code("FX48").id == revision.id


def test_only_the_latest_member_can_be_revised(service):
    original = service.create("Std", "FIXTURE-48", {"voltage": 120})
    service.revise(original.id, {"voltage": 277})

    with pytest.raises(StateTransitionError):
        service.revise(original.id, {"voltage": 120})


def test_validate_requires_a_validator(session_factory):
    session = session_factory()
    try:
        service = ConfigurationService(session)
        row = service.create("Std", "FIXTURE-48", {"voltage": 120})
        with pytest.raises(RuntimeError):
            service.validate(row.id)
    finally:
        session.close()


def test_unknown_configuration(service):
    with pytest.raises(NotFoundError):
        service.get("missing")
    with pytest.raises(NotFoundError):
        service.get_by_code("missing")


def test_sources(session_factory):
    with get_db_session(session_factory) as session:
        row = ConfigurationService(session).create("Std", "FIXTURE-48", {"voltage": 120})
        config_id = row.id

    record = SQLConfigurationSource(session_factory).load(config_id)
    memory = InMemoryConfigurationSource()
    memory.add(record)

    assert record.selections == {"voltage": 120}
    assert memory.load(config_id) is record
    with pytest.raises(NotFoundError):
        memory.load("missing")
    with pytest.raises(NotFoundError):
        SQLConfigurationSource(session_factory).load("missing")


@pytest.mark.parametrize("version, expected", [("1.0", "1.1"), ("2.9", "2.10"), (None, "1.1"), ("3", "3.1")])
def test_bump_minor(version, expected):
    assert bump_minor(version) == expected
