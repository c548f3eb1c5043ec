from datetime import datetime
from pathlib import Path

import pytest

from medbom.bom_engine.fixtures import load_fixture, parse_fixture, seed_catalog, seed_configurations
from medbom.bom_engine.models.catalog import AssemblyComponent, Part
from medbom.bom_engine.models.configuration import Configuration, ConfigurationRule
from medbom.bom_engine.rules.repository import RuleScope, SQLRuleRepository
from medbom.database import create_db_engine, create_session_factory, get_db_session, init_db
from medbom.exceptions import ValidationError

FIXTURE = Path(__file__).parent / "fixtures" / "lighting.yaml"
AS_OF = datetime(2024, 6, 1)
LTG = RuleScope(assembly_id="FIXTURE-48", category_id="LTG")


@pytest.fixture
def session_factory():
    engine = create_db_engine("sqlite:///:memory:")
    init_db(create_tables=True, bind_engine=engine)
    yield create_session_factory(engine)
    engine.dispose()


def test_fixture_file_loads():
    fixture = load_fixture(FIXTURE)

    assert len(fixture.catalog.parts) == 9
    assert [a.id for a in fixture.catalog.assemblies] == ["T2-CTRL-EDR1", "FIXTURE-48"]
    assert [r.rule_id for r in fixture.load_rules()] == [1, 2, 3, 4, 5, 6, 7]
    assert fixture.configuration("FX48-STD").selections == {"voltage": 120, "length_ft": 4}
    assert fixture.category_ids() == ["LTG", "CTL", "HW", "OPT"]


def test_non_mapping_fixture_is_rejected():
    with pytest.raises(ValidationError) as exc:
        parse_fixture(["not", "a", "mapping"])
    assert exc.value.errors == [{"field": "<root>", "message": "expected a mapping"}]


def test_unknown_part_field_is_reported_with_its_location():
    data = {"catalog": {"parts": [{"id": "P1", "name": "Part", "colour": "red"}]}}

    with pytest.raises(ValidationError) as exc:
        parse_fixture(data)
    assert exc.value.errors[0]["field"] == "catalog.parts.0.colour"


def test_unknown_configuration_code_lists_known_codes():
    fixture = parse_fixture({"configurations": [{"code": "A", "assembly_id": "X"}]})

    with pytest.raises(ValidationError) as exc:
        fixture.configuration("B")
    assert "known: A" in exc.value.message


def test_seeding_is_idempotent(session_factory):
    fixture = load_fixture(FIXTURE)

    for _ in range(2):
        with get_db_session(session_factory) as session:
            seed_catalog(session, fixture)
            ids = seed_configurations(session, fixture, created_by="seed")

    with get_db_session(session_factory) as session:
        assert session.query(Part).count() == 9
        assert session.query(AssemblyComponent).count() == 9
        assert session.query(ConfigurationRule).count() == 7
        assert session.query(Configuration).count() == 5
        std = session.get(Configuration, ids["FX48-STD"])
        assert std.code == "FX48-STD"
        assert std.created_by == "seed"


def test_sql_rule_repository_parses_each_revision_once(session_factory):
    with get_db_session(session_factory) as session:
        seed_catalog(session, load_fixture(FIXTURE))
    repository = SQLRuleRepository(session_factory)

    first = repository.list_active_rules(LTG, AS_OF)
    second = repository.list_active_rules(LTG, AS_OF)

    assert {r.rule_id for r in first} == {1, 2, 3, 4, 5, 6, 7}
    assert first[0].rule_id == 3
    assert all(a is b for a, b in zip(first, second))

    with get_db_session(session_factory) as session:
        row = session.get(ConfigurationRule, 2)
        row.warning_message = "Runs over 8 ft ship in two pieces"
        row.updated_at = datetime(2030, 1, 1)

    third = {r.rule_id: r for r in repository.list_active_rules(LTG, AS_OF)}
    assert third[2].warning_message == "Runs over 8 ft ship in two pieces"
    assert third[1] is next(r for r in first if r.rule_id == 1)


def test_sql_rule_repository_scopes_and_skips_inactive_rules(session_factory):
    with get_db_session(session_factory) as session:
        seed_catalog(session, load_fixture(FIXTURE))
        session.get(ConfigurationRule, 7).is_active = False
    repository = SQLRuleRepository(session_factory)

    ctl = repository.list_active_rules(RuleScope(assembly_id="T2-CTRL-EDR1", category_id="CTL"), AS_OF)
    ltg = repository.list_active_rules(LTG, AS_OF)

    assert [r.rule_id for r in ctl] == [1]
    assert 7 not in {r.rule_id for r in ltg}
