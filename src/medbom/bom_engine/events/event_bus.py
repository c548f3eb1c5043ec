"""
In-process event bus for domain events.
Provides a simple publish/subscribe mechanism.
"""

import logging
from threading import Lock
from typing import Callable, Dict, List, Type

from medbom.bom_engine.events.domain_events import DomainEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], None]


class EventBus:
    def __init__(self):
        self._lock = Lock()
        self._subscribers: Dict[Type[DomainEvent], List[EventHandler]] = {}

    def subscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        """
        Subscribes a handler function to a specific event type.
        Subscribing to DomainEvent receives every event.
        """
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(handler)
        logger.debug(f"Subscribed handler {getattr(handler, '__name__', handler)} to {event_type.__name__}")

    def unsubscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        with self._lock:
            handlers = self._subscribers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: DomainEvent) -> None:
        """
        Publishes an event to all subscribed handlers.
        Handler failures are logged and never reach the publisher.
        """
        logger.debug(f"Publishing event: {event.event_type} (ID: {event.event_id})")

        with self._lock:
            exact = list(self._subscribers.get(type(event), []))
            generic = [
                h
                for h in self._subscribers.get(DomainEvent, [])
                if type(event) is not DomainEvent and h not in exact
            ]

        for handler in exact + generic:
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    f"Event handler {getattr(handler, '__name__', handler)} for {type(event).__name__} failed: {e}",
                    exc_info=True,
                )


# Process-wide default bus; services accept an explicit bus for isolation.
event_bus = EventBus()
