"""
Atomic sequence allocation for BOM numbers and 700-series part numbers.

Allocators are injected; nothing in the engine keeps a global counter.
"""

import threading
from datetime import datetime
from typing import Dict, Protocol

from medbom.bom_engine.models.bom import SequenceCounter


class SequenceAllocator(Protocol):
    def next_value(self, name: str) -> int: ...


class InMemorySequenceAllocator:
    def __init__(self, start: int = 0):
        self._lock = threading.Lock()
        self._start = start
        self._values: Dict[str, int] = {}

    def next_value(self, name: str) -> int:
        with self._lock:
            value = self._values.get(name, self._start) + 1
            self._values[name] = value
            return value


class SQLSequenceAllocator:
    """Counter rows in `sequence_counters`, incremented in their own transaction."""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        # SQLite has no row locks; serialize within the process.
        self._lock = threading.Lock()

    def next_value(self, name: str) -> int:
        with self._lock:
            session = self.session_factory()
            try:
                counter = session.get(SequenceCounter, name, with_for_update=True)
                if counter is None:
                    counter = SequenceCounter(name=name, value=0)
                    session.add(counter)
                counter.value = (counter.value or 0) + 1
                value = counter.value
                session.commit()
                return value
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()


def bom_sequence_name(when: datetime) -> str:
    return f"bom:{when:%Y%m}"


def format_bom_number(prefix: str, when: datetime, value: int) -> str:
    """BOM-YYYYMM-NNNN"""
    return f"{prefix}-{when:%Y%m}-{value:04d}"


def format_custom_part_number(prefix: str, value: int) -> str:
    """700-NNNNN"""
    return f"{prefix}-{value:05d}"
