import threading
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from medbom.bom_engine.catalog.snapshot import PartRecord
from medbom.bom_engine.events.domain_events import CustomPartCreatedEvent
from medbom.bom_engine.services.bom_store import SQLCustomPartRegistry
from medbom.bom_engine.services.custom_part_service import (
    CustomPart,
    CustomPartRequest,
    CustomPartResolver,
    normalize_specification,
)
from medbom.bom_engine.services.sequence import InMemorySequenceAllocator, SQLSequenceAllocator
from medbom.database import create_db_engine, create_session_factory, init_db
from medbom.exceptions import ConfigurationUnsupportedError


def test_normalize_specification():
    spec = normalize_specification({" Length ": 96.0, "Finish": "  matte   black ", "holes": [1, 2.50]})

    assert spec == {"length": "96", "finish": "MATTE BLACK", "holes": ["1", "2.5"]}


def test_equivalent_specifications_share_a_part_number():
    resolver = CustomPartResolver(InMemorySequenceAllocator())

    first = resolver.resolve(
        CustomPartRequest("DIMENSIONAL", {"length": 96, "width": 12}, base_part_id="HOUSING-48")
    )
    again = resolver.resolve(
        CustomPartRequest("dimensional", {"WIDTH": 12.0, "Length": "96"}, base_part_id="HOUSING-48")
    )
    other = resolver.resolve(
        CustomPartRequest("DIMENSIONAL", {"length": 72, "width": 12}, base_part_id="HOUSING-48")
    )

    assert first.part_number == "700-00001"
    assert again == first
    assert other.part_number == "700-00002"
    assert len(resolver.registry) == 2


def test_profile_pricing_without_base_part():
    resolver = CustomPartResolver(InMemorySequenceAllocator(), prefix="710")

    part = resolver.resolve(CustomPartRequest("MATERIAL", {"material": "brass"}))

    assert part.part_number == "710-00001"
    assert part.unit_cost == Decimal("375.0000")
    assert part.setup_cost == Decimal("250.00")
    assert part.lead_time_days == 21
    assert part.specification == {"material": "BRASS"}


def test_base_part_cost_and_lead_time():
    resolver = CustomPartResolver(InMemorySequenceAllocator())
    base = PartRecord("HOUSING-48", "Housing", unit_cost=Decimal("120.00"), lead_time_days=5)

    part = resolver.resolve(CustomPartRequest("FINISH", {"finish": "black"}, base_part_id="HOUSING-48"), base)

    assert part.unit_cost == Decimal("138.0000")
    assert part.lead_time_days == 12
    assert part.part_name == "Custom Finish Housing"


@pytest.mark.parametrize(
    "request_, reason",
    [
        (CustomPartRequest("ENGRAVED", {"text": "x"}), "unknown_customization_type"),
        (CustomPartRequest("MATERIAL", {}), "missing_parameter"),
        (CustomPartRequest("DIMENSIONAL", {"color": "red"}), "missing_parameter"),
        (CustomPartRequest("COMPLETE_CUSTOM", {"material": "steel"}), "missing_parameter"),
        (CustomPartRequest("DIMENSIONAL", {"length": 150}), "out_of_range"),
        (CustomPartRequest("DIMENSIONAL", {"length": 60, "depth": 3}), "out_of_range"),
        (CustomPartRequest("DIMENSIONAL", {"width": "wide"}), "invalid_parameter"),
    ],
)
def test_invalid_requests(request_, reason):
    resolver = CustomPartResolver(InMemorySequenceAllocator())

    with pytest.raises(ConfigurationUnsupportedError) as exc:
        resolver.resolve(request_)
    assert exc.value.details["reason"] == reason


def test_range_bounds_are_inclusive():
    resolver = CustomPartResolver(InMemorySequenceAllocator())

    part = resolver.resolve(CustomPartRequest("DIMENSIONAL", {"length": 120, "width": 12, "depth": 4}))

    assert part.specification == {"length": "120", "width": "12", "depth": "4"}


def test_description_satisfies_complete_custom():
    resolver = CustomPartResolver(InMemorySequenceAllocator())

    part = resolver.resolve(CustomPartRequest("COMPLETE_CUSTOM", {}, description="Curved pendant"))

    assert part.specification == {"description": "CURVED PENDANT"}
    assert part.unit_cost == Decimal("2000.0000")


def test_concurrent_identical_requests_allocate_once():
    allocator = InMemorySequenceAllocator()
    bus = MagicMock()
    resolver = CustomPartResolver(allocator, event_bus=bus)
    request = CustomPartRequest("FEATURE", {"feature": "motion sensor"})
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(resolver.resolve(request).part_number)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results == ["700-00001"] * 8
    assert allocator.next_value("custom_part") == 2
    bus.publish.assert_called_once()
    event = bus.publish.call_args[0][0]
    assert isinstance(event, CustomPartCreatedEvent)
    assert event.part_number == "700-00001"


def test_sql_registry_and_allocator():
    engine = create_db_engine("sqlite:///:memory:")
    init_db(create_tables=True, bind_engine=engine)
    session_factory = create_session_factory(engine)
    registry = SQLCustomPartRegistry(session_factory)
    resolver = CustomPartResolver(SQLSequenceAllocator(session_factory), registry)

    part = resolver.resolve(CustomPartRequest("DIMENSIONAL", {"length": 60}))
    stored = registry.get_custom_part(part.specification_hash)

    assert stored == part
    assert resolver.resolve(CustomPartRequest("DIMENSIONAL", {"length": 60.0})) == part

    duplicate = CustomPart(
        part_number="700-09999",
        part_name="Duplicate",
        customization_type="DIMENSIONAL",
        specification={"length": "60"},
        specification_hash=part.specification_hash,
        lead_time_days=1,
        unit_cost=Decimal("1"),
        setup_cost=Decimal("0"),
    )
    assert registry.add_custom_part(duplicate).part_number == part.part_number


def test_prepare_builds_a_candidate_without_writing():
    allocator = InMemorySequenceAllocator()
    bus = MagicMock()
    resolver = CustomPartResolver(allocator, event_bus=bus)
    request = CustomPartRequest("FINISH", {"finish": "anodized"})

    candidate = resolver.prepare(request)

    assert candidate.provisional
    assert candidate.part_number.startswith("700-PENDING-")
    assert len(resolver.registry) == 0
    bus.publish.assert_not_called()

    registered = resolver.register(candidate)
    assert registered.part_number == "700-00001"
    assert not registered.provisional
    assert resolver.prepare(request) == registered
    assert resolver.register(registered) is registered
    assert allocator.next_value("custom_part") == 2
