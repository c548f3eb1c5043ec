"""
BOM Generation Service
Orchestrates one generation: validate -> rules -> snapshot -> cache(expand +
aggregate) on a worker pool, then persists the BOM and moves it to review.
"""

import contextvars
import json
import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from medbom.bom_engine.catalog.reader import CatalogReader
from medbom.bom_engine.events.domain_events import (
    GenerationCompletedEvent,
    GenerationFailedEvent,
    GenerationStartedEvent,
)
from medbom.bom_engine.events.event_bus import EventBus
from medbom.bom_engine.events.event_bus import event_bus as default_event_bus
from medbom.bom_engine.events.transactional import enqueue_event
from medbom.bom_engine.fingerprint import canonical_json
from medbom.bom_engine.rules.actions import AddComponent, RequireCustomPart, SubstituteComponent
from medbom.bom_engine.rules.engine import ActionPlan, RuleEngine
from medbom.bom_engine.rules.repository import RuleScope
from medbom.bom_engine.services.bom_expander import BOMExpander, LineItem
from medbom.bom_engine.services.bom_rollup_service import BOMMetrics, CostedBOM, CostingAggregator
from medbom.bom_engine.services.bom_store import BOMStore
from medbom.bom_engine.services.cache import CacheKey, SingleFlightCache, configuration_fingerprint
from medbom.bom_engine.services.config_validator import ConfigurationValidator, ValidationResult
from medbom.bom_engine.services.configuration_service import ConfigurationRecord, ConfigurationSource
from medbom.bom_engine.services.custom_part_service import CustomPart, CustomPartResolver
from medbom.bom_engine.services.sequence import (
    SequenceAllocator,
    bom_sequence_name,
    format_bom_number,
)
from medbom.bom_engine.version.service import BOMVersionManager
from medbom.config import Settings, get_settings
from medbom.context import configuration_id_var, generation_id_var, user_id_var
from medbom.database import get_db_session
from medbom.exceptions import BOMEngineError, ConcurrencyConflictError, GenerationTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationResult:
    generation_id: str
    configuration_id: str
    chain_id: str
    bom_id: str
    bom_number: str
    version: str
    status: str
    is_latest: bool
    line_items: Tuple[LineItem, ...]
    metrics: BOMMetrics
    warnings: Tuple[str, ...]
    catalog_version: str
    configuration_fingerprint: str
    cache_hit: bool
    duration_ms: int

    @property
    def line_count(self) -> int:
        return len(self.line_items)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generation_id": self.generation_id,
            "configuration_id": self.configuration_id,
            "bom_id": self.bom_id,
            "bom_number": self.bom_number,
            "version": self.version,
            "status": self.status,
            "is_latest": self.is_latest,
            "catalog_version": self.catalog_version,
            "cache_hit": self.cache_hit,
            "duration_ms": self.duration_ms,
            "metrics": self.metrics.to_dict(),
            "warnings": list(self.warnings),
            "line_items": [line.to_dict() for line in self.line_items],
        }


@dataclass(frozen=True)
class _Computed:
    record: ConfigurationRecord
    validation: ValidationResult
    plan: ActionPlan
    key: CacheKey
    costed: CostedBOM
    cache_hit: bool


def _json_safe(value: Any) -> Any:
    return json.loads(canonical_json(value))


def _plan_extras(plan: ActionPlan) -> Tuple[List[str], List[str]]:
    """Part ids and categories the snapshot must carry for the plan's actions."""
    part_ids: List[str] = []
    categories: List[str] = []
    for action in plan.actions:
        if isinstance(action, AddComponent):
            if action.component_id:
                part_ids.append(action.component_id)
            elif action.category_id:
                categories.append(action.category_id)
        elif isinstance(action, SubstituteComponent):
            part_ids.append(action.replacement_component_id)
        elif isinstance(action, RequireCustomPart) and action.base_part_id:
            part_ids.append(action.base_part_id)
    return part_ids, categories


class BOMGenerationService:
    def __init__(
        self,
        *,
        session_factory,
        catalog: CatalogReader,
        configurations: ConfigurationSource,
        validator: ConfigurationValidator,
        expander: BOMExpander,
        allocator: SequenceAllocator,
        engine: Optional[RuleEngine] = None,
        aggregator: Optional[CostingAggregator] = None,
        cache: Optional[SingleFlightCache] = None,
        event_bus: Optional[EventBus] = None,
        custom_part_resolver: Optional[CustomPartResolver] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.catalog = catalog
        self.configurations = configurations
        self.validator = validator
        self.expander = expander
        self.allocator = allocator
        self.custom_part_resolver = custom_part_resolver or getattr(expander, "custom_part_resolver", None)
        self.engine = engine or RuleEngine()
        self.aggregator = aggregator or CostingAggregator()
        self.cache = cache if cache is not None else SingleFlightCache(self.settings.CACHE_MAX_ENTRIES)
        self.event_bus = event_bus or default_event_bus

        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.GENERATION_WORKERS,
            thread_name_prefix="bom-generation",
        )
        self._lock = threading.Lock()
        self._inflight: Dict[str, threading.Event] = {}
        # Version allocation and insert for one chain must not interleave.
        self._persist_lock = threading.Lock()

    # --- In-flight tracking ---
    def _claim(self, configuration_id: str) -> threading.Event:
        with self._lock:
            if configuration_id in self._inflight:
                raise ConcurrencyConflictError(configuration_id)
            done = threading.Event()
            self._inflight[configuration_id] = done
            return done

    def _release(self, configuration_id: str, done: threading.Event) -> None:
        with self._lock:
            self._inflight.pop(configuration_id, None)
        done.set()

    def is_inflight(self, configuration_id: str) -> bool:
        with self._lock:
            return configuration_id in self._inflight

    def wait_for_inflight(self, configuration_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the running generation for the configuration ends. False on timeout."""
        with self._lock:
            done = self._inflight.get(configuration_id)
        if done is None:
            return True
        return done.wait(timeout)

    # --- Generation ---
    def generate(
        self,
        configuration_id: str,
        generated_by: Optional[str] = None,
        as_of: Optional[datetime] = None,
    ) -> GenerationResult:
        """
        Generate and persist a new BOM version for a configuration.

        Args:
            configuration_id: Configuration to generate for.
            generated_by: Actor recorded on the BOM and on emitted events.
            as_of: Catalog and rule effectivity instant; defaults to now.

        Returns:
            GenerationResult for the stored BOM, in PENDING_REVIEW.

        Raises:
            ConcurrencyConflictError: a generation for this configuration is running.
            GenerationTimeoutError: the hard ceiling elapsed; nothing was stored.
            BOMEngineError: any validation, rule, catalog or expansion failure.
        """
        done = self._claim(configuration_id)
        generation_id = str(uuid.uuid4())
        tokens = (
            generation_id_var.set(generation_id),
            configuration_id_var.set(configuration_id),
            user_id_var.set(generated_by),
        )
        started = time.monotonic()
        as_of = as_of or datetime.utcnow()
        try:
            self.event_bus.publish(
                GenerationStartedEvent(
                    configuration_id=configuration_id,
                    generation_id=generation_id,
                    actor_id=generated_by,
                )
            )
            result = self._run(configuration_id, generation_id, generated_by, as_of, started)
        except BOMEngineError as e:
            self._publish_failure(configuration_id, generation_id, generated_by, e, started)
            raise
        except Exception as e:
            logger.error(f"Generation {generation_id} failed unexpectedly: {e}", exc_info=True)
            self._publish_failure(configuration_id, generation_id, generated_by, e, started)
            raise
        finally:
            for var, token in zip((generation_id_var, configuration_id_var, user_id_var), tokens):
                var.reset(token)
            self._release(configuration_id, done)

        if result.duration_ms > self.settings.GENERATION_TARGET_MS:
            logger.warning(
                f"Generation {generation_id} for {configuration_id} took {result.duration_ms}ms "
                f"(target {self.settings.GENERATION_TARGET_MS}ms)"
            )
        return result

    def _run(
        self,
        configuration_id: str,
        generation_id: str,
        generated_by: Optional[str],
        as_of: datetime,
        started: float,
    ) -> GenerationResult:
        timeout = self.settings.GENERATION_TIMEOUT_SECONDS
        deadline = started + timeout
        ctx = contextvars.copy_context()
        future = self._executor.submit(ctx.run, self._compute, configuration_id, as_of, deadline)
        try:
            computed = future.result(timeout=max(deadline - time.monotonic(), 0))
        except FutureTimeoutError:
            # The worker keeps running; a finished result still lands in the cache.
            raise GenerationTimeoutError(timeout, configuration_id=configuration_id)

        if time.monotonic() > deadline:
            raise GenerationTimeoutError(timeout, configuration_id=configuration_id)
        return self._persist(computed, generation_id, generated_by, as_of, started)

    def _compute(self, configuration_id: str, as_of: datetime, deadline: float) -> _Computed:
        """Pure part of a generation; runs on the worker pool and writes nothing."""
        record = self.configurations.load(configuration_id)
        category_id = record.category_id or self.catalog.assembly_category(record.assembly_id, as_of)
        scope = RuleScope(assembly_id=record.assembly_id, category_id=category_id)

        validation = self.validator.validate(record.selections, scope, as_of)
        validation.raise_for_errors(configuration_id)

        attributes = validation.attributes
        plan = self.engine.evaluate(validation.rules, attributes, validation.suppressed_rule_ids)
        part_ids, categories = _plan_extras(plan)
        snapshot = self.catalog.snapshot(
            record.assembly_id,
            as_of,
            extra_part_ids=part_ids,
            extra_categories=categories,
        )
        key = CacheKey(
            root_assembly_id=record.assembly_id,
            configuration_fingerprint=configuration_fingerprint(attributes, plan.digest),
            catalog_version=snapshot.version,
        )

        def expand_and_cost() -> CostedBOM:
            expansion = self.expander.expand(snapshot, attributes, plan, deadline)
            return self.aggregator.aggregate(expansion, plan)

        costed, cache_hit = self.cache.get_or_compute(key, expand_and_cost)
        if cache_hit:
            logger.debug(f"Cache hit for {record.assembly_id} at catalog {snapshot.version}")
        return _Computed(
            record=record,
            validation=validation,
            plan=plan,
            key=key,
            costed=costed,
            cache_hit=cache_hit,
        )

    def _persist(
        self,
        computed: _Computed,
        generation_id: str,
        generated_by: Optional[str],
        as_of: datetime,
        started: float,
    ) -> GenerationResult:
        record = computed.record
        costed = computed.costed
        warnings = tuple(
            [v.message for v in computed.validation.warnings]
            + list(costed.expansion.warnings)
            + list(costed.warnings)
        )

        with self._persist_lock:
            numbers, new_parts = self._number_custom_parts(costed.expansion.custom_parts)
            line_items = tuple(
                replace(line, component_id=numbers[line.component_id].part_number)
                if line.component_id in numbers
                else line
                for line in costed.line_items
            )
            now = datetime.utcnow()
            bom_number = format_bom_number(
                self.settings.BOM_NUMBER_PREFIX,
                now,
                self.allocator.next_value(bom_sequence_name(now)),
            )
            result = self._store(
                computed, bom_number, line_items, new_parts, generation_id, generated_by, as_of, started, warnings
            )

        logger.info(
            f"Generated {result.bom_number} v{result.version} for configuration "
            f"{record.configuration_id}: {result.line_count} lines in {result.duration_ms}ms"
        )
        return result

    def _number_custom_parts(
        self, candidates: Tuple[CustomPart, ...]
    ) -> Tuple[Dict[str, CustomPart], List[CustomPart]]:
        """
        Final parts for the provisional custom parts of an expansion.

        Returns the placeholder-to-part mapping and the parts that still have to be
        registered. Numbers come from their own transactions, before the BOM
        transaction opens; a failed store leaves a gap, never a duplicate.
        """
        numbers: Dict[str, CustomPart] = {}
        new_parts: List[CustomPart] = []
        for part in candidates:
            if not part.provisional:
                continue
            final = self.custom_part_resolver.registry.get_custom_part(part.specification_hash)
            if final is None:
                final = self.custom_part_resolver.assign_number(part)
                new_parts.append(final)
            numbers[part.part_number] = final
        return numbers, new_parts

    def _store(
        self,
        computed: _Computed,
        bom_number: str,
        line_items: Tuple[LineItem, ...],
        custom_parts: List[CustomPart],
        generation_id: str,
        generated_by: Optional[str],
        as_of: datetime,
        started: float,
        warnings: Tuple[str, ...],
    ) -> GenerationResult:
        record = computed.record
        costed = computed.costed
        metrics = costed.metrics
        with get_db_session(self.session_factory) as session:
            for part in custom_parts:
                self.custom_part_resolver.registry.add_custom_part(part, session=session)
                enqueue_event(session, self.custom_part_resolver.created_event(part), self.event_bus)
                logger.info(f"Registering custom part {part.part_number} ({part.customization_type})")

            versions = BOMVersionManager(session, self.event_bus)
            version, parent_bom_id, is_latest = versions.next_version(record.chain_id)
            duration_ms = int((time.monotonic() - started) * 1000)
            bom = BOMStore(session).create_bom(
                bom_number=bom_number,
                configuration_id=record.configuration_id,
                chain_id=record.chain_id,
                assembly_id=record.assembly_id,
                version=version,
                parent_bom_id=parent_bom_id,
                is_latest=is_latest,
                line_items=line_items,
                totals={
                    "total_parts_count": metrics.total_parts_count,
                    "unique_parts_count": metrics.unique_parts_count,
                    "custom_parts_count": metrics.custom_parts_count,
                    "total_estimated_cost": metrics.total_cost,
                    "total_estimated_weight_kg": metrics.total_weight_kg,
                    "estimated_build_hours": metrics.estimated_build_hours,
                    "estimated_assembly_complexity": metrics.complexity_score,
                    "critical_path_hours": metrics.estimated_build_hours,
                },
                generation={
                    "generated_by": generated_by,
                    "generation_rules_applied": list(computed.plan.rule_ids),
                    "generation_parameters": _json_safe(
                        {
                            "generation_id": generation_id,
                            "as_of": as_of,
                            "selections": record.selections,
                            "derived_attributes": computed.validation.derived_attributes,
                            "suppressed_rule_ids": sorted(computed.validation.suppressed_rule_ids),
                            "actions": computed.plan.to_dict(),
                            "metrics": metrics.to_dict(),
                        }
                    ),
                    "generation_duration_ms": duration_ms,
                    "configuration_fingerprint": computed.key.configuration_fingerprint,
                    "catalog_version": computed.key.catalog_version,
                    "validation_warnings": list(warnings),
                },
            )
            versions.start_calculation(bom.id)
            versions.complete_calculation(bom.id)

            enqueue_event(
                session,
                GenerationCompletedEvent(
                    configuration_id=record.configuration_id,
                    bom_id=bom.id,
                    bom_number=bom.bom_number,
                    version=bom.version,
                    duration_ms=duration_ms,
                    line_count=len(line_items),
                    cache_hit=computed.cache_hit,
                    generation_id=generation_id,
                    actor_id=generated_by,
                ),
                self.event_bus,
            )
            result = GenerationResult(
                generation_id=generation_id,
                configuration_id=record.configuration_id,
                chain_id=record.chain_id,
                bom_id=bom.id,
                bom_number=bom.bom_number,
                version=bom.version,
                status=bom.status,
                is_latest=bool(bom.is_latest),
                line_items=line_items,
                metrics=metrics,
                warnings=warnings,
                catalog_version=computed.key.catalog_version,
                configuration_fingerprint=computed.key.configuration_fingerprint,
                cache_hit=computed.cache_hit,
                duration_ms=duration_ms,
            )
        return result

    def _publish_failure(
        self,
        configuration_id: str,
        generation_id: str,
        generated_by: Optional[str],
        error: Exception,
        started: float,
    ) -> None:
        if isinstance(error, BOMEngineError):
            error_kind, severity, message = error.error_kind, error.severity, error.message
        else:
            error_kind, severity, message = "INTERNAL_ERROR", "ERROR", str(error)
        self.event_bus.publish(
            GenerationFailedEvent(
                configuration_id=configuration_id,
                error_kind=error_kind,
                severity=severity,
                message=message,
                duration_ms=int((time.monotonic() - started) * 1000),
                generation_id=generation_id,
                actor_id=generated_by,
            )
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)


def build_generation_service(
    session_factory,
    catalog_provider,
    rule_repository,
    configurations: Optional[ConfigurationSource] = None,
    *,
    allocator: Optional[SequenceAllocator] = None,
    custom_part_registry=None,
    event_bus: Optional[EventBus] = None,
    settings: Optional[Settings] = None,
) -> BOMGenerationService:
    """Wire a generation service from its collaborators, defaulting to the SQL ones."""
    from medbom.bom_engine.services.bom_store import SQLCustomPartRegistry
    from medbom.bom_engine.services.configuration_service import SQLConfigurationSource
    from medbom.bom_engine.services.sequence import SQLSequenceAllocator

    settings = settings or get_settings()
    allocator = allocator or SQLSequenceAllocator(session_factory)
    resolver = CustomPartResolver(
        allocator,
        custom_part_registry if custom_part_registry is not None else SQLCustomPartRegistry(session_factory),
        prefix=settings.CUSTOM_PART_PREFIX,
        event_bus=event_bus,
    )
    return BOMGenerationService(
        session_factory=session_factory,
        catalog=CatalogReader(catalog_provider),
        configurations=configurations or SQLConfigurationSource(session_factory),
        validator=ConfigurationValidator(rule_repository),
        expander=BOMExpander(resolver, max_depth=settings.BOM_MAX_DEPTH, defer_custom_parts=True),
        allocator=allocator,
        custom_part_resolver=resolver,
        event_bus=event_bus,
        settings=settings,
    )
