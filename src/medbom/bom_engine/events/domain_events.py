"""
Domain events emitted by the BOM engine.
Subscribers (audit, notification, metrics) live outside the engine.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class DomainEvent(BaseModel):
    """Base class for all domain events."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    actor_id: Optional[str] = None
    generation_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class GenerationStartedEvent(DomainEvent):
    event_type: str = "generation_started"
    configuration_id: str
    assembly_id: Optional[str] = None


class GenerationCompletedEvent(DomainEvent):
    event_type: str = "generation_completed"
    configuration_id: str
    bom_id: str
    bom_number: str
    version: str
    duration_ms: int
    line_count: int
    cache_hit: bool = False


class GenerationFailedEvent(DomainEvent):
    event_type: str = "generation_failed"
    configuration_id: str
    error_kind: str
    severity: str = "ERROR"
    message: str = ""
    duration_ms: Optional[int] = None


class BOMStateChangedEvent(DomainEvent):
    event_type: str = "bom.state_changed"
    bom_id: str
    old_state: str
    new_state: str
    version: Optional[str] = None


class CustomPartCreatedEvent(DomainEvent):
    event_type: str = "custom_part.created"
    part_number: str
    customization_type: str
    specification_hash: str
