"""
Enrichment orchestration.

Runs one producer call per (entity, artifact kind) at a time and lands
the result everywhere it needs to go:

    guard -> producer -> observable store -> local cache -> sync queue

The guard is acquired synchronously in the caller's thread, so two
back-to-back requests are decided deterministically: the first runs,
the second returns ``busy`` without invoking the producer. The producer
itself runs on a bounded thread pool.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import PersistenceError, ProducerError
from .generation_guard import GenerationGuard
from .local_cache import CacheWriter
from .observable import ObservableStore
from .producers import producer_name
from .protocol import SyncQueueProtocol
from .types import (
    DEFAULT_SUB_KEY,
    Artifact,
    ArtifactKind,
    SyncOp,
    entity_key,
    utc_now,
)

logger = logging.getLogger(__name__)

COMPLETED = "completed"
BUSY = "busy"
FAILED = "failed"


@dataclass(frozen=True)
class EnrichmentResult:
    """Outcome of one enrichment request."""
    status: str
    entity_id: str
    kind: ArtifactKind
    sub_key: str = DEFAULT_SUB_KEY
    artifact: Optional[Artifact] = None
    error: Optional[Exception] = None
    # Completed, but the entity was deleted so the result was applied nowhere
    orphaned: bool = False

    @property
    def ok(self) -> bool:
        return self.status == COMPLETED

    @property
    def busy(self) -> bool:
        return self.status == BUSY


class EnrichmentOrchestrator:
    """
    Generic guard + producer pipeline shared by every artifact kind.

    Args:
        store: Observable store the artifact is written to
        guard: In-flight tracker
        cache_writer: Write-through to the local cache
        queue: Sync queue receiving ``upsert-artifact`` ops
        executor: Pool for ``submit``; created lazily with ``max_workers``
        on_enqueued: Called after an op is queued (wakes the uploader)
    """

    def __init__(
        self,
        store: ObservableStore,
        guard: GenerationGuard,
        cache_writer: CacheWriter,
        queue: SyncQueueProtocol,
        *,
        executor: Optional[ThreadPoolExecutor] = None,
        max_workers: int = 2,
        on_enqueued: Optional[Callable[[], None]] = None,
    ):
        self._store = store
        self._guard = guard
        self._cache_writer = cache_writer
        self._queue = queue
        self._executor = executor
        self._owns_executor = executor is None
        self._max_workers = max_workers
        self._on_enqueued = on_enqueued

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_workers,
                thread_name_prefix="memex-enrich",
            )
        return self._executor

    def generate(
        self,
        entity_id: str,
        kind: ArtifactKind,
        sub_key: str,
        producer: Callable[[], str],
        *,
        produced_by: Optional[str] = None,
    ) -> EnrichmentResult:
        """Run an enrichment in the calling thread."""
        kind = ArtifactKind(kind)
        if not self._guard.try_acquire(entity_id, kind.value):
            return EnrichmentResult(BUSY, entity_id, kind, sub_key)
        return self._run_acquired(entity_id, kind, sub_key, producer, produced_by)

    def submit(
        self,
        entity_id: str,
        kind: ArtifactKind,
        sub_key: str,
        producer: Callable[[], str],
        *,
        produced_by: Optional[str] = None,
    ) -> "Future[EnrichmentResult]":
        """
        Start an enrichment on the worker pool.

        The guard decision happens before this returns; a rejected
        request yields an already-resolved future with a busy result.
        """
        kind = ArtifactKind(kind)
        if not self._guard.try_acquire(entity_id, kind.value):
            future: Future = Future()
            future.set_result(EnrichmentResult(BUSY, entity_id, kind, sub_key))
            return future
        try:
            return self._get_executor().submit(
                self._run_acquired, entity_id, kind, sub_key, producer, produced_by,
            )
        except RuntimeError:
            # Executor already shut down
            self._guard.release(entity_id, kind.value)
            raise

    def _run_acquired(
        self,
        entity_id: str,
        kind: ArtifactKind,
        sub_key: str,
        producer: Callable[[], str],
        produced_by: Optional[str],
    ) -> EnrichmentResult:
        try:
            try:
                value = producer()
            except Exception as e:
                logger.warning("Producer failed for %s/%s: %s", entity_id, kind.value, e)
                error = e if isinstance(e, ProducerError) else ProducerError(str(e) or type(e).__name__)
                if error is not e:
                    error.__cause__ = e
                return EnrichmentResult(FAILED, entity_id, kind, sub_key, error=error)

            if not isinstance(value, str) or not value.strip():
                logger.warning("Producer returned nothing for %s/%s", entity_id, kind.value)
                return EnrichmentResult(
                    FAILED, entity_id, kind, sub_key,
                    error=ProducerError(f"Empty {kind.value} for {entity_id}"),
                )

            now = utc_now()
            artifact = Artifact(
                entity_id=entity_id,
                kind=kind,
                sub_key=sub_key,
                value=value,
                produced_by=produced_by or producer_name(producer),
                fetched_at=now,
                updated_at=now,
            )
            return self._apply(artifact)
        finally:
            self._guard.release(entity_id, kind.value)

    def _apply(self, artifact: Artifact) -> EnrichmentResult:
        """Write a produced artifact to store, cache and queue."""
        # The entity's key lock is held until the op is queued, so a
        # delete can't land between the owner check and the enqueue
        with self._store.key_lock(entity_key(artifact.entity_id)):
            owner = self._store.get(entity_key(artifact.entity_id))
            # A tombstone's delete may already be acknowledged, with the
            # purge still to come: nothing may be queued for it any more
            if owner is None or owner.deleted:
                logger.info(
                    "Dropping %s for %s: entity deleted",
                    artifact.kind.value, artifact.entity_id,
                )
                return EnrichmentResult(
                    COMPLETED, artifact.entity_id, artifact.kind, artifact.sub_key,
                    artifact=artifact, orphaned=True,
                )
            previous = self._store.set(artifact.key, artifact)
            self._cache_writer.flush(artifact.namespace)
            try:
                op = self._queue.enqueue(SyncOp.upsert_artifact(artifact))
            except PersistenceError as e:
                self._store.rollback(artifact.key, previous)
                self._cache_writer.flush(artifact.namespace)
                return EnrichmentResult(
                    FAILED, artifact.entity_id, artifact.kind, artifact.sub_key, error=e,
                )

        if op is not None and self._on_enqueued is not None:
            self._on_enqueued()
        logger.info(
            "Generated %s for %s (%s)",
            artifact.kind.value, artifact.entity_id, artifact.produced_by,
        )
        return EnrichmentResult(
            COMPLETED, artifact.entity_id, artifact.kind, artifact.sub_key, artifact=artifact,
        )

    def close(self, wait: bool = True) -> None:
        """Shut down the worker pool if this orchestrator created it."""
        if self._executor is not None and self._owns_executor:
            self._executor.shutdown(wait=wait)
            self._executor = None
