"""
Per-(entity, artifact kind) mutual exclusion for enrichment requests.

Enrichment calls cost network time and model spend. The guard turns a
second request for the same (entity, kind) while the first is still
running into a no-op instead of a duplicate billed call.

State machine per key: Idle --acquire--> InFlight --release--> Idle.
Acquiring an in-flight key is rejected immediately, never queued.
Tickets are process-local and never persisted; after a restart every
key is Idle.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

logger = logging.getLogger(__name__)


class GenerationGuard:
    """Non-blocking in-flight tracker keyed by (entity_id, kind)."""

    def __init__(self, on_change: Optional[Callable[[str, str, bool], None]] = None):
        """
        Args:
            on_change: Called as ``on_change(entity_id, kind, in_flight)``
                after every transition (used to publish spinner state)
        """
        self._in_flight: set[tuple[str, str]] = set()
        self._lock = threading.Lock()
        self._on_change = on_change

    def try_acquire(self, entity_id: str, kind: str) -> bool:
        """Start a ticket. Returns False without blocking if one is in flight."""
        key = (entity_id, str(kind))
        with self._lock:
            if key in self._in_flight:
                logger.debug("Generation of %s for %s already in flight", kind, entity_id)
                return False
            self._in_flight.add(key)
        self._changed(entity_id, key[1], True)
        return True

    def release(self, entity_id: str, kind: str) -> None:
        """Clear the ticket. Safe to call when none is held."""
        key = (entity_id, str(kind))
        with self._lock:
            if key not in self._in_flight:
                return
            self._in_flight.discard(key)
        self._changed(entity_id, key[1], False)

    def is_in_flight(self, entity_id: str, kind: str) -> bool:
        with self._lock:
            return (entity_id, str(kind)) in self._in_flight

    def in_flight(self) -> list[tuple[str, str]]:
        """Snapshot of in-flight (entity_id, kind) pairs."""
        with self._lock:
            return sorted(self._in_flight)

    @contextmanager
    def ticket(self, entity_id: str, kind: str) -> Iterator[bool]:
        """
        Acquire for the duration of a block.

        Yields whether the ticket was acquired; if it was, it is released
        on exit whether the block succeeds or raises.
        """
        acquired = self.try_acquire(entity_id, kind)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(entity_id, kind)

    def _changed(self, entity_id: str, kind: str, in_flight: bool) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(entity_id, kind, in_flight)
        except Exception as e:
            logger.warning("Guard listener failed for %s/%s: %s", entity_id, kind, e)
