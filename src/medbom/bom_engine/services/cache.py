"""
Memoization cache with single-flight semantics.

Concurrent misses for one key collapse into a single computation; the other
callers block on the leader's future. Failures are never cached.
"""

import logging
import threading
from collections import OrderedDict
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

from medbom.bom_engine.fingerprint import fingerprint

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CacheKey:
    root_assembly_id: str
    configuration_fingerprint: str
    catalog_version: str


def configuration_fingerprint(attributes: Dict[str, Any], plan_digest: str = "") -> str:
    """Stable hash of resolved attributes plus the action-plan digest."""
    return fingerprint({"attributes": attributes, "plan": plan_digest})


class SingleFlightCache(Generic[T]):
    def __init__(self, max_entries: int = 256):
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._entries: "OrderedDict[Hashable, T]" = OrderedDict()
        self._inflight: Dict[Hashable, Future] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> Optional[T]:
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
                return self._entries[key]
        return None

    def get_or_compute(self, key: Hashable, compute: Callable[[], T]) -> Tuple[T, bool]:
        """
        Return (value, cached). `cached` is True when this caller did not run
        `compute` itself, either because of a hit or because it joined an
        in-flight computation.
        """
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
                self.hits += 1
                return self._entries[key], True
            future = self._inflight.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._inflight[key] = future
                self.misses += 1

        if not leader:
            logger.debug(f"Joining in-flight computation for {key}")
            return future.result(), True

        try:
            value = compute()
        except BaseException as e:
            with self._lock:
                self._inflight.pop(key, None)
            future.set_exception(e)
            raise

        with self._lock:
            self._entries[key] = value
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
            self._inflight.pop(key, None)
        future.set_result(value)
        return value, False

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
