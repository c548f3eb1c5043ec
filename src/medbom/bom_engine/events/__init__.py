from medbom.bom_engine.events.domain_events import (
    BOMStateChangedEvent,
    CustomPartCreatedEvent,
    DomainEvent,
    GenerationCompletedEvent,
    GenerationFailedEvent,
    GenerationStartedEvent,
)
from medbom.bom_engine.events.event_bus import EventBus, event_bus

__all__ = [
    "BOMStateChangedEvent",
    "CustomPartCreatedEvent",
    "DomainEvent",
    "EventBus",
    "GenerationCompletedEvent",
    "GenerationFailedEvent",
    "GenerationStartedEvent",
    "event_bus",
]
