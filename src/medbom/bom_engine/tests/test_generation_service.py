import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, List

import pytest

from medbom.bom_engine.events.domain_events import DomainEvent, GenerationFailedEvent
from medbom.bom_engine.events.event_bus import EventBus
from medbom.bom_engine.fixtures import Fixture, load_fixture, seed_configurations
from medbom.bom_engine.models.bom import BOM, BOMStatus, CustomPart
from medbom.bom_engine.services.bom_store import BOMStore
from medbom.bom_engine.services.configuration_service import ConfigurationService
from medbom.bom_engine.services.generation_service import (
    BOMGenerationService,
    build_generation_service,
)
from medbom.bom_engine.version.service import BOMVersionManager
from medbom.config import Settings
from medbom.context import get_generation_context
from medbom.database import create_db_engine, create_session_factory, get_db_session, init_db
from medbom.exceptions import (
    ConcurrencyConflictError,
    GenerationTimeoutError,
    NotFoundError,
    ValidationError,
)

FIXTURE = Path(__file__).parent / "fixtures" / "lighting.yaml"
AS_OF = datetime(2024, 6, 1)
STANDARD_LINES = ["HOUSING-48", "SCREW-M4", "CTRL-MODULE-T2", "LED-STRIP-48-4000K", "DIFFUSER-48-FROST"]


@dataclass
class Harness:
    fixture: Fixture
    session_factory: object
    service: BOMGenerationService
    bus: EventBus
    events: List[DomainEvent]
    ids: Dict[str, str]

    def event_types(self):
        return [e.event_type for e in self.events]

    def bom_count(self):
        with get_db_session(self.session_factory) as session:
            return session.query(BOM).count()


def _harness(tmp_path, settings=None):
    fixture = load_fixture(FIXTURE)
    engine = create_db_engine(f"sqlite:///{tmp_path / 'medbom.db'}")
    init_db(create_tables=True, bind_engine=engine)
    session_factory = create_session_factory(engine)
    with get_db_session(session_factory) as session:
        ids = seed_configurations(session, fixture, created_by="seed")

    events: List[DomainEvent] = []
    bus = EventBus()
    bus.subscribe(DomainEvent, events.append)
    service = build_generation_service(
        session_factory,
        fixture.build_catalog(),
        fixture.build_rule_repository(),
        event_bus=bus,
        settings=settings or Settings(),
    )
    return Harness(fixture, session_factory, service, bus, events, ids)


@pytest.fixture
def harness(tmp_path):
    h = _harness(tmp_path)
    yield h
    h.service.close()


class _SlowExpander:
    def __init__(self, inner, delay):
        self.inner = inner
        self.delay = delay
        self.finished = threading.Event()

    def expand(self, snapshot, attributes, plan=None, deadline=None):
        try:
            time.sleep(self.delay)
            return self.inner.expand(snapshot, attributes, plan, deadline)
        finally:
            self.finished.set()


class _GatedExpander:
    """Blocks expansions of one assembly until released."""

    def __init__(self, inner, assembly_id):
        self.inner = inner
        self.assembly_id = assembly_id
        self.entered = threading.Event()
        self.release = threading.Event()
        self.context = None

    def expand(self, snapshot, attributes, plan=None, deadline=None):
        if snapshot.root_assembly_id == self.assembly_id:
            self.context = get_generation_context()
            self.entered.set()
            self.release.wait(5)
        return self.inner.expand(snapshot, attributes, plan, deadline)


def test_generates_and_stores_a_bom_pending_review(harness):
    result = harness.service.generate(harness.ids["FX48-STD"], generated_by="planner", as_of=AS_OF)

    assert result.status == BOMStatus.PENDING_REVIEW.value
    assert result.version == "1.0"
    assert result.is_latest
    assert not result.cache_hit
    assert re.fullmatch(r"BOM-\d{6}-0001", result.bom_number)
    assert [line.component_id for line in result.line_items] == STANDARD_LINES
    assert result.metrics.total_cost == Decimal("266.05")

    with get_db_session(harness.session_factory) as session:
        store = BOMStore(session)
        bom = store.get_bom(result.bom_id)
        assert bom.status == BOMStatus.PENDING_REVIEW.value
        assert bom.total_estimated_cost == Decimal("266.05")
        assert bom.unique_parts_count == 5
        assert bom.bom_type == "STANDARD"
        assert bom.generated_by == "planner"
        assert bom.catalog_version == result.catalog_version
        assert bom.generation_parameters["selections"] == {"voltage": 120, "length_ft": 4}
        assert bom.generation_parameters["derived_attributes"] == {"total_watts": "20"}
        lines = store.get_line_items(bom.id)
        assert [line.component_id for line in lines] == STANDARD_LINES
        assert [line.line_number for line in lines] == [1, 2, 3, 4, 5]
        assert lines[1].adjusted_quantity == Decimal("11")


def test_events_follow_the_generation(harness):
    result = harness.service.generate(harness.ids["FX48-STD"], generated_by="planner", as_of=AS_OF)

    assert harness.event_types() == [
        "generation_started",
        "bom.state_changed",
        "bom.state_changed",
        "generation_completed",
    ]
    started, calculating, review, completed = harness.events
    assert started.generation_id == result.generation_id
    assert (calculating.old_state, calculating.new_state) == ("DRAFT", "CALCULATING")
    assert (review.old_state, review.new_state) == ("CALCULATING", "PENDING_REVIEW")
    assert completed.bom_id == result.bom_id
    assert completed.line_count == 5
    assert completed.actor_id == "planner"


def test_regeneration_appends_a_version_and_reuses_the_expansion(harness):
    first = harness.service.generate(harness.ids["FX48-STD"], as_of=AS_OF)
    second = harness.service.generate(harness.ids["FX48-STD"], as_of=AS_OF)

    assert second.cache_hit
    assert second.version == "2.0"
    assert not second.is_latest
    assert second.bom_number != first.bom_number
    assert second.line_items == first.line_items
    assert harness.service.cache.hits == 1

    with get_db_session(harness.session_factory) as session:
        assert BOMStore(session).get_bom(second.bom_id).parent_bom_id == first.bom_id


def test_invalid_configuration_fails_without_storing(harness):
    with pytest.raises(ValidationError) as exc:
        harness.service.generate(harness.ids["FX48-BADVOLT"], as_of=AS_OF)

    assert exc.value.errors[0]["rule_code"] == "REQ-VOLTAGE"
    assert harness.event_types() == ["generation_started", "generation_failed"]
    failed = harness.events[-1]
    assert isinstance(failed, GenerationFailedEvent)
    assert failed.error_kind == "VALIDATION_ERROR"
    assert harness.bom_count() == 0
    assert not harness.service.is_inflight(harness.ids["FX48-BADVOLT"])


def test_unknown_configuration(harness):
    with pytest.raises(NotFoundError):
        harness.service.generate("does-not-exist")

    assert harness.events[-1].error_kind == "NOT_FOUND"


def test_rule_driven_components_and_custom_parts(harness):
    clear = harness.service.generate(harness.ids["FX48-CLEAR-DIM"], as_of=AS_OF)
    custom = harness.service.generate(harness.ids["FX48-CUSTOM"], as_of=AS_OF)

    clear_ids = [line.component_id for line in clear.line_items]
    assert "DIFFUSER-48-CLEAR" in clear_ids
    assert "DIFFUSER-48-FROST" not in clear_ids
    assert "DIMMER-0-10V" in clear_ids
    assert clear_ids[-1] == "SURGE-PROTECTOR"

    custom_lines = [line for line in custom.line_items if line.is_custom_part]
    assert [line.component_id for line in custom_lines] == ["700-00001"]
    assert custom.metrics.custom_parts_count == 1
    assert "custom_part.created" in harness.event_types()
    with get_db_session(harness.session_factory) as session:
        bom = BOMStore(session).get_bom(custom.bom_id)
        assert bom.bom_type == "CUSTOM"
        assert bom.generation_rules_applied == [6]


@pytest.mark.slow
def test_timeout_discards_the_result(tmp_path):
    h = _harness(tmp_path, Settings(GENERATION_TIMEOUT_SECONDS=0.5))
    real = h.service.expander
    slow = _SlowExpander(real, delay=1.0)
    h.service.expander = slow
    try:
        with pytest.raises(GenerationTimeoutError) as exc:
            h.service.generate(h.ids["FX48-STD"], as_of=AS_OF)

        assert exc.value.retryable
        assert h.events[-1].error_kind == "GENERATION_TIMEOUT"
        assert h.bom_count() == 0

        assert slow.finished.wait(5)
        h.service.expander = real
        retried = h.service.generate(h.ids["FX48-STD"], as_of=AS_OF)
        assert retried.version == "1.0"
        assert not retried.cache_hit
    finally:
        h.service.close()


@pytest.mark.slow
def test_timeout_registers_no_custom_parts(tmp_path):
    h = _harness(tmp_path, Settings(GENERATION_TIMEOUT_SECONDS=0.5))
    real = h.service.expander
    slow = _SlowExpander(real, delay=1.0)
    h.service.expander = slow
    try:
        with pytest.raises(GenerationTimeoutError):
            h.service.generate(h.ids["FX48-CUSTOM"], as_of=AS_OF)
        assert slow.finished.wait(5)

        assert h.bom_count() == 0
        with get_db_session(h.session_factory) as session:
            assert session.query(CustomPart).count() == 0
        assert "custom_part.created" not in h.event_types()

        h.service.expander = real
        retried = h.service.generate(h.ids["FX48-CUSTOM"], as_of=AS_OF)
        assert [line.component_id for line in retried.line_items if line.is_custom_part] == ["700-00001"]
        with get_db_session(h.session_factory) as session:
            assert [row.part_number for row in session.query(CustomPart).all()] == ["700-00001"]
    finally:
        h.service.close()


def test_regenerating_reuses_the_registered_custom_part(harness):
    first = harness.service.generate(harness.ids["FX48-CUSTOM"], as_of=AS_OF)
    second = harness.service.generate(harness.ids["FX48-CUSTOM"], as_of=AS_OF)

    assert second.cache_hit
    assert [l.component_id for l in second.line_items] == [l.component_id for l in first.line_items]
    assert harness.event_types().count("custom_part.created") == 1
    with get_db_session(harness.session_factory) as session:
        assert session.query(CustomPart).count() == 1


def test_concurrent_request_for_the_same_configuration_conflicts(harness):
    gated = _GatedExpander(harness.service.expander, "FIXTURE-48")
    harness.service.expander = gated
    config_id = harness.ids["FX48-STD"]
    results = []
    worker = threading.Thread(target=lambda: results.append(harness.service.generate(config_id, as_of=AS_OF)))
    worker.start()
    try:
        assert gated.entered.wait(5)

        with pytest.raises(ConcurrencyConflictError) as exc:
            harness.service.generate(config_id, as_of=AS_OF)
        assert exc.value.details["configuration_id"] == config_id
        assert gated.context.configuration_id == config_id
        assert gated.context.generation_id is not None
        assert harness.service.is_inflight(config_id)
        assert not harness.service.wait_for_inflight(config_id, timeout=0.01)

        other = harness.service.generate(harness.ids["EDR1-BASIC"], as_of=AS_OF)
        assert other.version == "1.0"
    finally:
        gated.release.set()
        worker.join(5)

    assert harness.service.wait_for_inflight(config_id, timeout=1)
    assert not harness.service.is_inflight(config_id)
    assert [r.version for r in results] == ["1.0"]


def test_different_configurations_generate_in_parallel(harness):
    codes = ["FX48-STD", "FX48-CLEAR-DIM", "EDR1-BASIC"]
    results = {}
    errors = []

    def run(code):
        try:
            results[code] = harness.service.generate(harness.ids[code], as_of=AS_OF)
        except Exception as e:  # surfaced by the assertion below
            errors.append(e)

    threads = [threading.Thread(target=run, args=(code,)) for code in codes]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert errors == []
    assert len({r.bom_number for r in results.values()}) == 3
    assert all(r.version == "1.0" for r in results.values())


def test_revision_extends_the_bom_chain(harness):
    first = harness.service.generate(harness.ids["FX48-STD"], as_of=AS_OF)
    with get_db_session(harness.session_factory) as session:
        versions = BOMVersionManager(session, harness.bus)
        versions.review(first.bom_id, "reviewer@example.com")
        versions.approve(first.bom_id, "approver@example.com")
        original_lines = [
            (line.component_id, line.extended_cost) for line in BOMStore(session).get_line_items(first.bom_id)
        ]
        revision = ConfigurationService(session).revise(
            harness.ids["FX48-STD"],
            {"voltage": 120, "length_ft": 4, "lens": "clear"},
            change_reason="clear lens",
        )
        revision_id = revision.id

    second = harness.service.generate(revision_id, as_of=AS_OF)
    assert second.chain_id == first.chain_id
    assert second.version == "2.0"
    assert not second.is_latest

    with get_db_session(harness.session_factory) as session:
        versions = BOMVersionManager(session, harness.bus)
        versions.review(second.bom_id, "reviewer@example.com")
        versions.approve(second.bom_id, "approver@example.com")

    with get_db_session(harness.session_factory) as session:
        store = BOMStore(session)
        old, new = store.get_bom(first.bom_id), store.get_bom(second.bom_id)
        assert new.parent_bom_id == old.id
        assert old.status == BOMStatus.SUPERSEDED.value
        assert not old.is_latest
        assert new.is_latest
        assert [(l.component_id, l.extended_cost) for l in store.get_line_items(old.id)] == original_lines
        assert "DIFFUSER-48-CLEAR" in [l.component_id for l in store.get_line_items(new.id)]
        assert [b.version for b in store.list_chain(first.chain_id)] == ["1.0", "2.0"]
        assert [b.id for b in store.list_for_configuration(revision_id)] == [new.id]
