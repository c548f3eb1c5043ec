import logging

from medbom.bom_engine.events.domain_events import (
    DomainEvent,
    GenerationFailedEvent,
)
from medbom.bom_engine.events.event_bus import EventBus

logger = logging.getLogger("medbom.events")


def log_event(event: DomainEvent) -> None:
    payload = event.model_dump(mode="json", exclude={"event_id", "timestamp", "metadata"})
    if isinstance(event, GenerationFailedEvent) and event.severity == "CRITICAL":
        logger.critical(f"{event.event_type}: {payload}")
    elif isinstance(event, GenerationFailedEvent):
        logger.warning(f"{event.event_type}: {payload}")
    else:
        logger.info(f"{event.event_type}: {payload}")


def register_logging_listeners(bus: EventBus) -> None:
    bus.subscribe(DomainEvent, log_event)
