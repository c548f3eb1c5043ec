from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from medbom.bom_engine.catalog.reader import CatalogReader, InMemoryCatalogProvider, SQLCatalogProvider
from medbom.bom_engine.fixtures import load_fixture, seed_catalog
from medbom.database import create_db_engine, create_session_factory, get_db_session, init_db
from medbom.exceptions import ConfigurationUnsupportedError, RuleDefinitionError

FIXTURE = Path(__file__).parent / "fixtures" / "lighting.yaml"
AS_OF = datetime(2024, 6, 1)


def _edge_ids(snapshot, assembly_id):
    return [edge.component_id for edge in snapshot.edges(snapshot.handle(assembly_id))]


def test_snapshot_contains_reachable_subgraph():
    reader = CatalogReader(load_fixture(FIXTURE).build_catalog())

    snapshot = reader.snapshot("FIXTURE-48", AS_OF)

    assert snapshot.root_assembly_id == "FIXTURE-48"
    assert snapshot.assembly_count == 2
    assert snapshot.handle("T2-CTRL-EDR1") is not None
    assert snapshot.part("SURGE-PROTECTOR") is None
    assert _edge_ids(snapshot, "FIXTURE-48") == [
        "HOUSING-48",
        "SCREW-M4",
        "T2-CTRL-EDR1",
        "DIFFUSER-48-CLEAR",
        "DIFFUSER-48-FROST",
        "BATTERY-PACK",
        "DIMMER-0-10V",
    ]


def test_snapshot_is_isolated_from_later_catalog_edits():
    provider = load_fixture(FIXTURE).build_catalog()
    reader = CatalogReader(provider)
    before = reader.snapshot("FIXTURE-48", AS_OF)

    provider.update_part("HOUSING-48", unit_cost=Decimal("999"))
    edge_id = provider.add_edge("FIXTURE-48", "SURGE-PROTECTOR", position_sequence=50)
    after = reader.snapshot("FIXTURE-48", AS_OF)
    provider.remove_edge(edge_id)
    removed = reader.snapshot("FIXTURE-48", AS_OF)

    assert before.part("HOUSING-48").unit_cost == Decimal("120")
    assert "SURGE-PROTECTOR" not in _edge_ids(before, "FIXTURE-48")
    assert after.part("HOUSING-48").unit_cost == Decimal("999")
    assert "SURGE-PROTECTOR" in _edge_ids(after, "FIXTURE-48")
    assert "SURGE-PROTECTOR" not in _edge_ids(removed, "FIXTURE-48")
    assert len({before.version, after.version, removed.version}) == 3


def test_extra_parts_and_categories_are_loaded():
    reader = CatalogReader(load_fixture(FIXTURE).build_catalog())

    snapshot = reader.snapshot(
        "T2-CTRL-EDR1", AS_OF, extra_part_ids=["SURGE-PROTECTOR", "NOPE"], extra_categories=["LTG"]
    )

    assert snapshot.part("SURGE-PROTECTOR").unit_cost == Decimal("12")
    assert snapshot.part("NOPE") is None
    assert [p.part_id for p in snapshot.parts_in_category("LTG")] == ["HOUSING-48", "LED-STRIP-48-4000K"]
    match = snapshot.find_dimensional_match("LTG", {"Length": "48", "width": 4})
    assert match is not None and match.part_id == "HOUSING-48"
    assert snapshot.find_dimensional_match("LTG", {"length": 60}) is None


def test_effectivity_windows_filter_assemblies_and_edges():
    provider = InMemoryCatalogProvider()
    provider.add_part("P1", "Current part")
    provider.add_part("P2", "Retired part")
    provider.add_assembly("ROOT", "Root")
    provider.add_assembly("FUTURE", "Future", effective_date=date(2030, 1, 1))
    provider.add_edge("ROOT", "P1")
    provider.add_edge("ROOT", "P2", end_date=date(2024, 1, 1))
    reader = CatalogReader(provider)

    snapshot = reader.snapshot("ROOT", AS_OF)

    assert _edge_ids(snapshot, "ROOT") == ["P1"]
    assert _edge_ids(reader.snapshot("ROOT", datetime(2023, 12, 31)), "ROOT") == ["P1", "P2"]
    with pytest.raises(ConfigurationUnsupportedError) as exc:
        reader.snapshot("FUTURE", AS_OF)
    assert exc.value.details["reason"] == "unknown_assembly"


def test_edge_with_invalid_waste_factor_is_rejected():
    provider = InMemoryCatalogProvider()
    provider.add_part("P1", "Part")
    provider.add_assembly("ROOT", "Root")
    provider.add_edge("ROOT", "P1", waste_factor=Decimal("1.2"))

    with pytest.raises(ConfigurationUnsupportedError) as exc:
        CatalogReader(provider).snapshot("ROOT", AS_OF)
    assert exc.value.details["reason"] == "invalid_edge"


def test_edge_with_malformed_condition_is_rejected():
    provider = InMemoryCatalogProvider()
    provider.add_part("P1", "Part")
    provider.add_assembly("ROOT", "Root")
    provider.add_edge("ROOT", "P1", condition={"type": "maybe"})

    with pytest.raises(RuleDefinitionError) as exc:
        CatalogReader(provider).snapshot("ROOT", AS_OF)
    assert exc.value.details["assembly_id"] == "ROOT"


def test_sql_provider_matches_in_memory_provider():
    fixture = load_fixture(FIXTURE)
    engine = create_db_engine("sqlite:///:memory:")
    init_db(create_tables=True, bind_engine=engine)
    session_factory = create_session_factory(engine)
    with get_db_session(session_factory) as session:
        seed_catalog(session, fixture)

    provider = SQLCatalogProvider(session_factory)
    sql_snapshot = CatalogReader(provider).snapshot("FIXTURE-48", AS_OF)
    memory_snapshot = CatalogReader(fixture.build_catalog()).snapshot("FIXTURE-48", AS_OF)

    assert sql_snapshot.version.startswith("sql-")
    assert sql_snapshot.version == provider.catalog_version(AS_OF)
    assert _edge_ids(sql_snapshot, "FIXTURE-48") == _edge_ids(memory_snapshot, "FIXTURE-48")
    assert _edge_ids(sql_snapshot, "T2-CTRL-EDR1") == _edge_ids(memory_snapshot, "T2-CTRL-EDR1")
    for part_id in ("HOUSING-48", "SCREW-M4", "CTRL-MODULE-T2"):
        assert sql_snapshot.part(part_id).unit_cost == memory_snapshot.part(part_id).unit_cost

    screws = next(e for e in sql_snapshot.edges(sql_snapshot.handle("FIXTURE-48")) if e.component_id == "SCREW-M4")
    assert screws.waste_factor == Decimal("0.05")
    battery = next(e for e in sql_snapshot.edges(sql_snapshot.handle("FIXTURE-48")) if e.component_id == "BATTERY-PACK")
    assert battery.condition.evaluate({"emergency_backup": True})


def test_sql_view_reads_through_one_snapshot_transaction():
    session = MagicMock()
    session.get_bind.return_value.dialect.name = "postgresql"
    provider = SQLCatalogProvider(lambda: session)

    with provider.read_view() as view:
        assert view.session is session

    session.connection.assert_called_once_with(execution_options={"isolation_level": "REPEATABLE READ"})
    session.close.assert_called_once()


def test_sql_view_on_sqlite_is_serializable():
    engine = create_db_engine("sqlite:///:memory:")
    init_db(create_tables=True, bind_engine=engine)
    provider = SQLCatalogProvider(create_session_factory(engine))

    with provider.read_view() as view:
        assert view.session.connection().get_isolation_level() == "SERIALIZABLE"
        version = view.catalog_version(AS_OF)

    assert version == provider.catalog_version(AS_OF)
