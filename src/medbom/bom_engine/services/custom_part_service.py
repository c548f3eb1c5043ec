"""
Custom (700-series) part synthesis.

Requests are normalized and hashed; an identical specification always resolves
to the same part number, including under concurrent requests.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

from medbom.bom_engine.catalog.snapshot import PartRecord
from medbom.bom_engine.events.domain_events import CustomPartCreatedEvent
from medbom.bom_engine.fingerprint import fingerprint, normalize_decimal
from medbom.bom_engine.services.sequence import SequenceAllocator, format_custom_part_number
from medbom.exceptions import ConfigurationUnsupportedError

logger = logging.getLogger(__name__)

CUSTOM_PART_SEQUENCE = "custom_part"


@dataclass(frozen=True)
class CustomizationProfile:
    required: Tuple[str, ...] = ()
    required_any: Tuple[str, ...] = ()
    lead_time_days: int = 14
    cost_multiplier: Decimal = Decimal("1.0")
    setup_cost: Decimal = Decimal("0")
    default_unit_cost: Decimal = Decimal("0")


CUSTOMIZATION_PROFILES: Dict[str, CustomizationProfile] = {
    "DIMENSIONAL": CustomizationProfile(
        required_any=("length", "width", "depth"),
        lead_time_days=10,
        cost_multiplier=Decimal("1.25"),
        setup_cost=Decimal("150.00"),
        default_unit_cost=Decimal("200.00"),
    ),
    "MATERIAL": CustomizationProfile(
        required=("material",),
        lead_time_days=21,
        cost_multiplier=Decimal("1.50"),
        setup_cost=Decimal("250.00"),
        default_unit_cost=Decimal("250.00"),
    ),
    "FINISH": CustomizationProfile(
        required=("finish",),
        lead_time_days=7,
        cost_multiplier=Decimal("1.15"),
        setup_cost=Decimal("100.00"),
        default_unit_cost=Decimal("120.00"),
    ),
    "FEATURE": CustomizationProfile(
        required=("feature",),
        lead_time_days=14,
        cost_multiplier=Decimal("1.40"),
        setup_cost=Decimal("300.00"),
        default_unit_cost=Decimal("300.00"),
    ),
    "COMPLETE_CUSTOM": CustomizationProfile(
        required=("description",),
        lead_time_days=30,
        cost_multiplier=Decimal("2.00"),
        setup_cost=Decimal("750.00"),
        default_unit_cost=Decimal("1000.00"),
    ),
}

# Supported ranges in inches, inclusive.
DIMENSION_RANGES: Dict[str, Tuple[Decimal, Decimal]] = {
    "length": (Decimal("12"), Decimal("120")),
    "width": (Decimal("12"), Decimal("48")),
    "depth": (Decimal("4"), Decimal("16")),
}


@dataclass(frozen=True)
class CustomPartRequest:
    customization_type: str
    specifications: Dict[str, Any] = field(default_factory=dict, hash=False)
    base_part_id: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class CustomPart:
    part_number: str
    part_name: str
    customization_type: str
    specification: Dict[str, Any] = field(hash=False)
    specification_hash: str
    lead_time_days: int
    unit_cost: Decimal
    setup_cost: Decimal
    base_part_id: Optional[str] = None
    # Built but not yet registered; part_number is a placeholder.
    provisional: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "part_number": self.part_number,
            "part_name": self.part_name,
            "customization_type": self.customization_type,
            "specification": self.specification,
            "specification_hash": self.specification_hash,
            "lead_time_days": self.lead_time_days,
            "unit_cost": self.unit_cost,
            "setup_cost": self.setup_cost,
            "base_part_id": self.base_part_id,
        }


class CustomPartRegistry(Protocol):
    def get_custom_part(self, specification_hash: str) -> Optional[CustomPart]: ...

    def add_custom_part(self, part: CustomPart, session=None) -> CustomPart:
        """Store the part; if the hash already exists return the stored part instead."""
        ...


class InMemoryCustomPartRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._parts: Dict[str, CustomPart] = {}

    def get_custom_part(self, specification_hash: str) -> Optional[CustomPart]:
        with self._lock:
            return self._parts.get(specification_hash)

    def add_custom_part(self, part: CustomPart, session=None) -> CustomPart:
        with self._lock:
            return self._parts.setdefault(part.specification_hash, part)

    def __len__(self) -> int:
        return len(self._parts)


def normalize_value(value: Any) -> Any:
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, (int, float, Decimal)):
        return normalize_decimal(Decimal(str(value)))
    if isinstance(value, str):
        return " ".join(value.split()).upper()
    if isinstance(value, Mapping):
        return normalize_specification(value)
    if isinstance(value, (list, tuple)):
        return [normalize_value(v) for v in value]
    return str(value)


def normalize_specification(spec: Mapping[str, Any]) -> Dict[str, Any]:
    """Lower-case keys, trimmed upper-case strings, canonical decimal numbers."""
    return {str(key).strip().lower(): normalize_value(value) for key, value in spec.items()}


def _dimension(spec: Mapping[str, Any], key: str) -> Decimal:
    try:
        return Decimal(str(spec[key]))
    except (InvalidOperation, ValueError):
        raise ConfigurationUnsupportedError(
            f"Dimension '{key}' must be numeric, got {spec[key]!r}",
            reason="invalid_parameter",
            parameter=key,
        )


class CustomPartResolver:
    def __init__(
        self,
        allocator: SequenceAllocator,
        registry: Optional[CustomPartRegistry] = None,
        prefix: str = "700",
        event_bus=None,
    ):
        self.allocator = allocator
        self.registry = registry if registry is not None else InMemoryCustomPartRegistry()
        self.prefix = prefix
        self.event_bus = event_bus
        self._lock = threading.Lock()

    def validate_request(self, request: CustomPartRequest) -> Tuple[str, Dict[str, Any]]:
        """
        Check the customization type, required parameters and dimension ranges.

        Returns:
            (customization_type, normalized specification)

        Raises:
            ConfigurationUnsupportedError: unknown type, missing or out-of-range parameter.
        """
        customization_type = (request.customization_type or "").upper()
        profile = CUSTOMIZATION_PROFILES.get(customization_type)
        if profile is None:
            raise ConfigurationUnsupportedError(
                f"Unknown customization type: {request.customization_type}",
                reason="unknown_customization_type",
            )

        spec = normalize_specification(request.specifications)
        if request.description and "description" not in spec:
            spec["description"] = normalize_value(request.description)

        missing = [key for key in profile.required if spec.get(key) in (None, "")]
        if profile.required_any and not any(spec.get(k) not in (None, "") for k in profile.required_any):
            missing.append(" or ".join(profile.required_any))
        if missing:
            raise ConfigurationUnsupportedError(
                f"{customization_type} custom part is missing required parameters: {', '.join(missing)}",
                reason="missing_parameter",
                parameters=missing,
            )

        for key, (low, high) in DIMENSION_RANGES.items():
            if spec.get(key) is None:
                continue
            value = _dimension(spec, key)
            if value < low or value > high:
                raise ConfigurationUnsupportedError(
                    f"{key} {value} is outside the supported range {low}-{high} in",
                    reason="out_of_range",
                    parameter=key,
                    value=str(value),
                )
        return customization_type, spec

    def prepare(
        self, request: CustomPartRequest, base_part: Optional[PartRecord] = None
    ) -> CustomPart:
        """
        Look up the part for this specification without writing anything.

        A specification that is not registered yet comes back as a provisional
        candidate carrying a placeholder part number; `register` or `assign_number`
        turns it into a real 700-series part.
        """
        customization_type, spec = self.validate_request(request)
        spec_hash = fingerprint(
            {
                "customization_type": customization_type,
                "base_part_id": request.base_part_id,
                "specification": spec,
            }
        )

        existing = self.registry.get_custom_part(spec_hash)
        if existing is not None:
            return existing

        profile = CUSTOMIZATION_PROFILES[customization_type]
        base_cost = base_part.unit_cost if base_part else profile.default_unit_cost
        unit_cost = (base_cost * profile.cost_multiplier).quantize(Decimal("0.0001"), rounding=ROUND_HALF_EVEN)
        lead_time = profile.lead_time_days + (base_part.lead_time_days if base_part else 0)
        label = base_part.name if base_part else (request.description or "Part")
        return CustomPart(
            part_number=f"{self.prefix}-PENDING-{spec_hash[:12]}",
            part_name=f"Custom {customization_type.title().replace('_', ' ')} {label}"[:200],
            customization_type=customization_type,
            specification=spec,
            specification_hash=spec_hash,
            lead_time_days=lead_time,
            unit_cost=unit_cost,
            setup_cost=profile.setup_cost,
            base_part_id=request.base_part_id,
            provisional=True,
        )

    def assign_number(self, part: CustomPart) -> CustomPart:
        """Allocate the next 700-series number for a provisional candidate."""
        number = format_custom_part_number(self.prefix, self.allocator.next_value(CUSTOM_PART_SEQUENCE))
        return replace(part, part_number=number, provisional=False)

    def created_event(self, part: CustomPart) -> CustomPartCreatedEvent:
        return CustomPartCreatedEvent(
            part_number=part.part_number,
            customization_type=part.customization_type,
            specification_hash=part.specification_hash,
        )

    def register(self, part: CustomPart) -> CustomPart:
        """Store a provisional candidate in the registry; registered parts pass through."""
        if not part.provisional:
            return part

        with self._lock:
            existing = self.registry.get_custom_part(part.specification_hash)
            if existing is not None:
                return existing
            numbered = self.assign_number(part)
            stored = self.registry.add_custom_part(numbered)

        if stored.part_number == numbered.part_number:
            logger.info(f"Created custom part {stored.part_number} ({stored.customization_type})")
            if self.event_bus is not None:
                self.event_bus.publish(self.created_event(stored))
        return stored

    def resolve(
        self, request: CustomPartRequest, base_part: Optional[PartRecord] = None
    ) -> CustomPart:
        """Return the existing part for this specification or synthesize and store a new one."""
        return self.register(self.prepare(request, base_part))
