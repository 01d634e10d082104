"""
Core API for the local-first item store.

``Memex`` wires the pieces together and is the only thing a UI talks to:

- reads come straight from the in-memory observable store
- writes land in the store first (optimistic), then the local cache,
  then the sync queue, before the call returns
- enrichment runs through the generation guard on a worker pool
- the uploader drains the queue to the remote in the background

Example:
    with Memex("~/.memex") as mx:
        item = mx.create("article", title="Local-first software")
        mx.request_enrichment(item.id, "summary").result()
        mx.drain()
"""

import logging
import uuid
from concurrent.futures import Future
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Union

from .config import StoreConfig, get_default_store_path, load_or_create_config
from .enrichment import EnrichmentOrchestrator, EnrichmentResult
from .errors import PersistenceError, ProducerError, SyncExhaustedError
from .generation_guard import GenerationGuard
from .local_cache import CacheWriter, merge_by_updated_at
from .observable import ObservableStore
from .producers import get_registry, producer_name
from .protocol import RemoteProtocol
from .types import (
    ARTIFACTS_PREFIX,
    DEFAULT_SUB_KEY,
    ENTITIES,
    FILTERS,
    MEMBERSHIPS,
    SPACES,
    Artifact,
    ArtifactKind,
    ContentKind,
    Entity,
    Membership,
    Space,
    SyncOp,
    SyncOpKind,
    artifact_key,
    artifact_namespace,
    artifact_namespaces,
    entity_key,
    membership_key,
    next_timestamp,
    space_key,
    utc_now,
    validate_id,
    validate_space_name,
)
from .uploader import Uploader
from .views import FILTER_KEY, FilterState, FilterView, project

logger = logging.getLogger(__name__)

GENERATING = "generating"
SYNC_STATUS_KEY = ("sync", "status")


@dataclass(frozen=True)
class SyncStatus:
    """What the UI shows about background sync."""
    configured: bool
    running: bool
    pending: int
    in_flight: int
    failed: int
    last_sync_at: Optional[str] = None
    last_error: Optional[str] = None


class Memex:
    """
    Local-first store of saved items with background enrichment and sync.

    One instance owns a store directory. Call ``close()`` (or use it as
    a context manager) to stop background threads and release files.
    """

    def __init__(
        self,
        store_path: Optional[Union[str, Path]] = None,
        *,
        config: Optional[StoreConfig] = None,
        remote: Optional[RemoteProtocol] = None,
        start_sync: bool = False,
    ) -> None:
        """
        Open or create a store.

        Args:
            store_path: Store directory. Uses MEMEX_STORE_PATH or ~/.memex
                if not specified.
            config: Pre-loaded StoreConfig (skips filesystem config discovery)
            remote: Injected remote (skips building one from config)
            start_sync: Start the background uploader immediately
        """
        self._closed = False

        # --- Config resolution ---
        if config is not None:
            self._config = config
        else:
            path = Path(store_path).expanduser().resolve() if store_path else get_default_store_path()
            self._config = load_or_create_config(path)
        self._store_path = self._config.path

        # --- Persistent operations log ---
        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._store_path)

        # --- Durable backends ---
        from .backend import create_stores
        bundle = create_stores(self._config, remote=remote)
        self._cache = bundle.cache
        self._queue = bundle.queue
        self._remote = bundle.remote

        # --- In-memory state ---
        self._store = ObservableStore()
        self._cache_writer = CacheWriter(self._cache, self._serialize)
        self._load()

        self._guard = GenerationGuard(on_change=self._publish_generating)
        self._orchestrator = EnrichmentOrchestrator(
            self._store,
            self._guard,
            self._cache_writer,
            self._queue,
            max_workers=self._config.enrichment_workers,
            on_enqueued=self._enqueued,
        )
        self._producers: dict[ArtifactKind, Callable[[Entity, str], str]] = {}

        self._uploader: Optional[Uploader] = None
        if self._remote is not None:
            self._uploader = Uploader(
                self._queue,
                self._remote,
                workers=self._config.sync.workers,
                batch_size=self._config.sync.batch_size,
                poll_interval=self._config.sync.poll_interval,
                on_ack=self._on_ack,
                on_exhausted=self._on_exhausted,
                on_drain=lambda result: self._publish_sync_status(),
            )
        self._publish_sync_status()

        logger.info(
            "Opened store %s (%d entities, %d ops queued)",
            self._store_path, self._store.count(ENTITIES), self._queue.count(),
        )
        if start_sync:
            self.start_sync()

    @property
    def store_path(self) -> Path:
        return self._store_path

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def store(self) -> ObservableStore:
        """The observable store (read-only use; write through Memex)."""
        return self._store

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _serialize(self, namespace: str) -> list[dict[str, Any]]:
        """Serialized collection for a namespace, for the local cache."""
        return [value.to_dict() for value in self._store.values(namespace)]

    def _load(self) -> None:
        """Populate the store from the local cache (once, at open)."""
        for record in self._cache.load(ENTITIES):
            try:
                entity = Entity.from_dict(record)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable entity %s: %s", record.get("id"), e)
                continue
            self._store.set(entity_key(entity.id), entity)

        for namespace, parse in ((SPACES, Space.from_dict), (MEMBERSHIPS, Membership.from_dict)):
            for record in self._cache.load(namespace):
                try:
                    value = parse(record)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("Skipping unreadable %s %s: %s", namespace, record.get("id"), e)
                    continue
                self._store.set(value.key, value)

        for namespace in artifact_namespaces():
            for record in self._cache.load(namespace):
                try:
                    artifact = Artifact.from_dict(record)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("Skipping unreadable %s %s: %s", namespace, record.get("id"), e)
                    continue
                self._store.set(artifact.key, artifact)

        for record in self._cache.load(FILTERS):
            if record.get("id") == FILTER_KEY[1]:
                self._store.set(FILTER_KEY, FilterState.from_dict(record))

    def _flush(self, *namespaces: str) -> None:
        for namespace in dict.fromkeys(namespaces):
            self._cache_writer.flush(namespace)

    def _enqueue_or_rollback(
        self,
        op: SyncOp,
        previous: dict[tuple, Any],
    ) -> Optional[SyncOp]:
        """
        Queue an op for a change already applied to the store.

        If the queue cannot be written, the store is put back to
        ``previous`` (key -> prior value, None for absent) and re-persisted,
        and PersistenceError propagates: an un-queued change would never sync.
        """
        try:
            queued = self._queue.enqueue(op)
        except PersistenceError:
            logger.warning("Rolling back %s %s: could not queue for sync", op.kind.value, op.target)
            for key, value in previous.items():
                self._store.rollback(key, value)
            self._flush(*(key[0] for key in previous))
            raise
        self._enqueued()
        return queued

    def _enqueued(self) -> None:
        self._publish_sync_status()
        if self._uploader is not None and self._uploader.running:
            self._uploader.wake()

    # -------------------------------------------------------------------------
    # Entities
    # -------------------------------------------------------------------------

    def get(self, id: str, *, include_deleted: bool = False) -> Optional[Entity]:
        """Current entity, or None. Tombstones are hidden unless asked for."""
        entity = self._store.get(entity_key(id))
        if entity is None or (entity.deleted and not include_deleted):
            return None
        return entity

    def exists(self, id: str) -> bool:
        return self.get(id) is not None

    def list_entities(self, filters: Optional[FilterState] = None) -> list[Entity]:
        """Entities through a filter (the stored filter state by default)."""
        return project(
            self._store.values(ENTITIES), filters or self.filters(), self._store.values(MEMBERSHIPS),
        )

    def count(self) -> int:
        """Number of live (non-deleted) entities."""
        return sum(1 for e in self._store.values(ENTITIES) if not e.deleted)

    def list_tags(self) -> list[str]:
        """Every tag in use on a live entity."""
        tags: set[str] = set()
        for entity in self._store.values(ENTITIES):
            if not entity.deleted:
                tags.update(entity.tags)
        return sorted(tags)

    def create(
        self,
        kind: Union[ContentKind, str] = ContentKind.BOOKMARK,
        *,
        id: Optional[str] = None,
        **fields: Any,
    ) -> Entity:
        """
        Create an entity and queue it for sync.

        Args:
            kind: Content kind (unknown kinds become bookmark)
            id: Entity ID; a random one is generated if omitted
            **fields: Any editable Entity field (title, url, tags, ...)

        Raises:
            ValueError: If the ID is invalid or already in use
            PersistenceError: If the change could not be queued (rolled back)
        """
        id = id or uuid.uuid4().hex
        validate_id(id)
        now = utc_now()
        draft = Entity(id=id, created_at=now, updated_at=now)
        entity = draft.with_changes({"kind": kind, **fields}, updated_at=now)

        key = entity_key(id)
        with self._store.key_lock(key):
            existing = self._store.get(key)
            if existing is not None and not existing.deleted:
                raise ValueError(f"Entity already exists: {id}")
            if existing is not None:
                # A queued delete would discard the new upsert
                if any(op.kind == SyncOpKind.DELETE_ENTITY for op in self._queue.ops_for_entity(id)):
                    raise ValueError(f"Entity is being deleted: {id}")
                # Re-creating over a tombstone: keep updated_at increasing
                entity = replace(entity, updated_at=next_timestamp(existing.updated_at))
            self._store.set(key, entity)
            self._flush(ENTITIES)
            self._enqueue_or_rollback(SyncOp.upsert_entity(entity), {key: existing})

        logger.info("Created %s %s", entity.kind.value, id)
        return entity

    def mutate(self, id: str, patch: dict[str, Any]) -> Entity:
        """
        Apply a partial update. Visible to ``get`` before this returns.

        Raises:
            KeyError: If the entity doesn't exist or is deleted
            ValueError: If the patch touches non-editable fields
            PersistenceError: If the change could not be queued (rolled back)
        """
        key = entity_key(id)
        with self._store.key_lock(key):
            current = self._store.get(key)
            if current is None or current.deleted:
                raise KeyError(id)
            updated = current.with_changes(patch)
            self._store.set(key, updated)
            self._flush(ENTITIES)
            self._enqueue_or_rollback(SyncOp.upsert_entity(updated), {key: current})

        logger.debug("Updated %s: %s", id, ", ".join(sorted(patch)))
        return updated

    def tag(
        self,
        id: str,
        add: Iterable[str] = (),
        remove: Iterable[str] = (),
    ) -> Entity:
        """Add and remove tags in one mutation."""
        current = self.get(id)
        if current is None:
            raise KeyError(id)
        tags = (set(current.tags) | set(add)) - set(remove)
        return self.mutate(id, {"tags": tags})

    def delete_entity(self, id: str) -> bool:
        """
        Delete an entity.

        The entity becomes a tombstone (hidden everywhere) and its
        artifacts and space memberships are removed; it is purged for good once the remote
        acknowledges the delete. In-flight enrichment is not cancelled.

        Returns:
            False if the entity didn't exist

        Raises:
            PersistenceError: If the delete could not be queued (rolled back)
        """
        key = entity_key(id)
        with self._store.key_lock(key):
            current = self._store.get(key)
            if current is None:
                return False
            if current.deleted:
                return True
            tombstone = replace(current, deleted=True, updated_at=next_timestamp(current.updated_at))
            previous: dict[tuple, Any] = {key: current}
            self._store.set(key, tombstone)
            for artifact in self.artifacts(id):
                previous[artifact.key] = self._store.delete(artifact.key)
            for membership in self._memberships(entity_id=id):
                previous[membership.key] = self._store.delete(membership.key)
            self._flush(*(k[0] for k in previous))
            self._enqueue_or_rollback(SyncOp.delete_entity(id), previous)

        logger.info("Deleted %s", id)
        return True

    def _purge(self, id: str) -> None:
        """Physically remove an acknowledged tombstone and anything left attached."""
        key = entity_key(id)
        with self._store.key_lock(key):
            current = self._store.get(key)
            if current is not None and not current.deleted:
                # Re-created since the delete was queued
                return
            namespaces = [ENTITIES]
            if current is not None:
                self._store.delete(key)
            for artifact in self.artifacts(id):
                self._store.delete(artifact.key)
                namespaces.append(artifact.namespace)
            for membership in self._memberships(entity_id=id):
                self._store.delete(membership.key)
                namespaces.append(MEMBERSHIPS)
            self._flush(*namespaces)
        logger.debug("Purged %s", id)

    # -------------------------------------------------------------------------
    # Spaces
    # -------------------------------------------------------------------------

    def spaces(self) -> list[Space]:
        """Live spaces, by name."""
        live = [s for s in self._store.values(SPACES) if not s.deleted]
        return sorted(live, key=lambda s: (s.name.casefold(), s.id))

    def get_space(self, id: str, *, include_deleted: bool = False) -> Optional[Space]:
        space = self._store.get(space_key(id))
        if space is None or (space.deleted and not include_deleted):
            return None
        return space

    def create_space(
        self,
        name: str,
        *,
        id: Optional[str] = None,
        **fields: Any,
    ) -> Space:
        """
        Create a space and queue it for sync.

        Args:
            name: Display name
            id: Space ID; a random one is generated if omitted
            **fields: description, color or icon

        Raises:
            ValueError: If the name or ID is invalid, or the ID is in use
            PersistenceError: If the change could not be queued (rolled back)
        """
        id = id or uuid.uuid4().hex
        validate_id(id)
        now = utc_now()
        space = Space(id=id, name=validate_space_name(name), created_at=now, updated_at=now)
        space = space.with_changes(fields, updated_at=now)

        key = space_key(id)
        with self._store.key_lock(key):
            existing = self._store.get(key)
            if existing is not None and not existing.deleted:
                raise ValueError(f"Space already exists: {id}")
            if existing is not None:
                if any(op.kind == SyncOpKind.DELETE_SPACE for op in self._queue.ops_for_space(id)):
                    raise ValueError(f"Space is being deleted: {id}")
                space = replace(space, updated_at=next_timestamp(existing.updated_at))
            self._store.set(key, space)
            self._flush(SPACES)
            self._enqueue_or_rollback(SyncOp.upsert_space(space), {key: existing})

        logger.info("Created space %s (%s)", space.name, id)
        return space

    def update_space(self, id: str, patch: dict[str, Any]) -> Space:
        """
        Rename or restyle a space.

        Raises:
            KeyError: If the space doesn't exist or is deleted
            ValueError: If the patch touches non-editable fields
        """
        key = space_key(id)
        with self._store.key_lock(key):
            current = self._store.get(key)
            if current is None or current.deleted:
                raise KeyError(id)
            updated = current.with_changes(patch)
            self._store.set(key, updated)
            self._flush(SPACES)
            self._enqueue_or_rollback(SyncOp.upsert_space(updated), {key: current})
        return updated

    def delete_space(self, id: str) -> bool:
        """
        Delete a space. Its entities stay; only their memberships go.

        Like entities, the space is a tombstone until the remote
        acknowledges the delete.

        Returns:
            False if the space didn't exist or was already deleted
        """
        key = space_key(id)
        with self._store.key_lock(key):
            current = self._store.get(key)
            if current is None or current.deleted:
                return False
            tombstone = replace(current, deleted=True, updated_at=next_timestamp(current.updated_at))
            previous: dict[tuple, Any] = {key: current}
            self._store.set(key, tombstone)
            for membership in self._memberships(space_id=id):
                previous[membership.key] = self._store.delete(membership.key)
            self._flush(*(k[0] for k in previous))
            self._enqueue_or_rollback(SyncOp.delete_space(id), previous)

        logger.info("Deleted space %s", id)
        return True

    def _purge_space(self, id: str) -> None:
        key = space_key(id)
        with self._store.key_lock(key):
            current = self._store.get(key)
            if current is not None and not current.deleted:
                return
            if current is not None:
                self._store.delete(key)
            for membership in self._memberships(space_id=id):
                self._store.delete(membership.key)
            self._flush(SPACES, MEMBERSHIPS)
        logger.debug("Purged space %s", id)

    def _memberships(
        self,
        entity_id: Optional[str] = None,
        space_id: Optional[str] = None,
    ) -> list[Membership]:
        return [
            m for m in self._store.values(MEMBERSHIPS)
            if (entity_id is None or m.entity_id == entity_id)
            and (space_id is None or m.space_id == space_id)
        ]

    def add_to_space(self, entity_id: str, space_id: str) -> Membership:
        """
        File an entity in a space. Adding it twice is a no-op.

        Raises:
            KeyError: If the entity or the space doesn't exist
        """
        key = membership_key(entity_id, space_id)
        # Entity lock first, then space lock
        with self._store.key_lock(entity_key(entity_id)), self._store.key_lock(space_key(space_id)):
            if self.get(entity_id) is None:
                raise KeyError(entity_id)
            if self.get_space(space_id) is None:
                raise KeyError(space_id)
            existing = self._store.get(key)
            if existing is not None:
                return existing
            now = utc_now()
            membership = Membership(entity_id, space_id, created_at=now, updated_at=now)
            self._store.set(key, membership)
            self._flush(MEMBERSHIPS)
            self._enqueue_or_rollback(SyncOp.upsert_membership(membership), {key: None})
        return membership

    def remove_from_space(self, entity_id: str, space_id: str) -> bool:
        """
        Take an entity out of a space.

        Returns:
            False if the entity wasn't in the space
        """
        key = membership_key(entity_id, space_id)
        with self._store.key_lock(entity_key(entity_id)), self._store.key_lock(space_key(space_id)):
            membership = self._store.get(key)
            if membership is None:
                return False
            self._store.delete(key)
            self._flush(MEMBERSHIPS)
            self._enqueue_or_rollback(SyncOp.delete_membership(membership), {key: membership})
        return True

    def spaces_for(self, entity_id: str) -> list[Space]:
        """Live spaces an entity is filed in."""
        found = (self.get_space(m.space_id) for m in self._memberships(entity_id=entity_id))
        return sorted((s for s in found if s is not None), key=lambda s: (s.name.casefold(), s.id))

    def space_entities(self, space_id: str) -> list[Entity]:
        """Live entities in a space, newest first."""
        return self.list_entities(FilterState(space_id=space_id, archived=None))

    # -------------------------------------------------------------------------
    # Artifacts
    # -------------------------------------------------------------------------

    def artifacts(
        self,
        entity_id: str,
        kind: Optional[Union[ArtifactKind, str]] = None,
    ) -> list[Artifact]:
        """Artifacts of an entity, optionally of one kind."""
        namespaces = [artifact_namespace(kind)] if kind else artifact_namespaces()
        found = []
        for namespace in namespaces:
            found.extend(
                artifact for key, artifact in self._store.items(namespace)
                if key[1] == entity_id
            )
        return sorted(found, key=lambda a: (a.kind.value, a.sub_key))

    def get_artifact(
        self,
        entity_id: str,
        kind: Union[ArtifactKind, str],
        sub_key: str = DEFAULT_SUB_KEY,
    ) -> Optional[Artifact]:
        return self._store.get(artifact_key(entity_id, kind, sub_key))

    def remove_artifact(
        self,
        entity_id: str,
        kind: Union[ArtifactKind, str],
        sub_key: str = DEFAULT_SUB_KEY,
    ) -> bool:
        """
        Remove one artifact and queue the remote delete.

        Returns:
            False if there was no such artifact
        """
        key = artifact_key(entity_id, kind, sub_key)
        with self._store.key_lock(entity_key(entity_id)):
            artifact = self._store.get(key)
            if artifact is None:
                return False
            self._store.delete(key)
            self._flush(artifact.namespace)
            self._enqueue_or_rollback(SyncOp.delete_artifact(artifact), {key: artifact})
        return True

    # -------------------------------------------------------------------------
    # Enrichment
    # -------------------------------------------------------------------------

    def register_producer(
        self,
        kind: Union[ArtifactKind, str],
        producer: Callable[[Entity, str], str],
    ) -> None:
        """Use ``producer(entity, sub_key) -> str`` for an artifact kind."""
        self._producers[ArtifactKind(kind)] = producer

    def _get_producer(self, kind: ArtifactKind) -> Callable[[Entity, str], str]:
        producer = self._producers.get(kind)
        if producer is not None:
            return producer
        provider = self._config.producers.get(kind.value)
        if provider is None:
            raise ProducerError(f"No producer configured for {kind.value}")
        try:
            producer = get_registry().create(provider.name, provider.params)
        except (ValueError, RuntimeError) as e:
            raise ProducerError(str(e)) from e
        self._producers[kind] = producer
        return producer

    def request_enrichment(
        self,
        entity_id: str,
        kind: Union[ArtifactKind, str],
        sub_key: str = DEFAULT_SUB_KEY,
        *,
        producer: Optional[Callable[[Entity, str], str]] = None,
    ) -> "Future[EnrichmentResult]":
        """
        Generate an artifact in the background.

        At most one generation per (entity, kind) runs at a time; a
        request made while one is in flight resolves immediately with a
        busy result and does not call the producer.

        Raises:
            KeyError: If the entity doesn't exist or is deleted
            ProducerError: If no producer is available for the kind
        """
        kind = ArtifactKind(kind)
        entity = self.get(entity_id)
        if entity is None:
            raise KeyError(entity_id)
        producer = producer or self._get_producer(kind)
        return self._orchestrator.submit(
            entity_id, kind, sub_key,
            lambda: producer(entity, sub_key),
            produced_by=producer_name(producer),
        )

    def is_generating(self, entity_id: str, kind: Union[ArtifactKind, str]) -> bool:
        return self._guard.is_in_flight(entity_id, ArtifactKind(kind).value)

    def generating(self) -> list[tuple[str, str]]:
        """(entity_id, kind) pairs with a generation in flight."""
        return self._guard.in_flight()

    def _publish_generating(self, entity_id: str, kind: str, in_flight: bool) -> None:
        key = (GENERATING, entity_id, kind)
        if in_flight:
            self._store.set(key, True)
        else:
            self._store.delete(key)

    # -------------------------------------------------------------------------
    # Subscriptions and views
    # -------------------------------------------------------------------------

    def subscribe(self, target, callback: Callable[[tuple, Any], None]) -> Callable[[], None]:
        """
        Subscribe to store changes.

        ``target`` is an exact key such as ``("entities", id)``, a
        namespace name such as ``"entities"``, or a predicate over keys.
        Returns an unsubscribe function.
        """
        return self._store.subscribe(target, callback)

    def filters(self) -> FilterState:
        """The persisted filter state."""
        return self._store.get(FILTER_KEY) or FilterState()

    def set_filters(self, filters: Optional[FilterState] = None, **changes: Any) -> FilterState:
        """Replace the filter state, or change some of its fields."""
        base = filters or self.filters()
        if "content_kind" in changes and changes["content_kind"] is not None:
            changes["content_kind"] = ContentKind.coerce(changes["content_kind"])
        if "tags" in changes:
            changes["tags"] = frozenset(changes["tags"] or ())
        with self._store.key_lock(FILTER_KEY):
            updated = replace(base, **changes, updated_at=next_timestamp(self.filters().updated_at))
            self._store.set(FILTER_KEY, updated)
            self._flush(FILTERS)
        return updated

    def view(self, filters: Optional[FilterState] = None) -> FilterView:
        """
        A live filtered list. Follows the stored filter state unless
        ``filters`` pins it. Close the view when done.
        """
        return FilterView(self._store, filters)

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    def drain(self, limit: Optional[int] = None) -> dict:
        """
        Upload queued ops now, in the calling thread.

        Returns:
            Dict with counts: processed, failed, abandoned, errors
        """
        if self._uploader is None:
            logger.info("Sync not configured; %d ops stay queued", self._queue.count())
            return {"processed": 0, "failed": 0, "abandoned": 0, "errors": []}
        return self._uploader.drain(limit)

    def start_sync(self) -> bool:
        """Start background upload. Returns False if sync isn't configured."""
        if self._uploader is None:
            return False
        self._uploader.start()
        self._publish_sync_status()
        return True

    def stop_sync(self) -> None:
        if self._uploader is not None:
            self._uploader.stop()
            self._publish_sync_status()

    def sync_status(self) -> SyncStatus:
        stats = self._queue.stats()
        uploader = self._uploader
        return SyncStatus(
            configured=uploader is not None,
            running=uploader is not None and uploader.running,
            pending=stats["pending"],
            in_flight=stats["processing"],
            failed=stats["failed"],
            last_sync_at=uploader.last_sync_at if uploader else None,
            last_error=uploader.last_error if uploader else None,
        )

    def _publish_sync_status(self) -> None:
        if self._closed:
            return
        try:
            self._store.set(SYNC_STATUS_KEY, self.sync_status())
        except Exception as e:
            logger.debug("Could not publish sync status: %s", e)

    def pending_stats(self) -> dict:
        return self._queue.stats()

    def pending_ops(self) -> list[SyncOp]:
        """Ops awaiting acknowledgment, oldest first."""
        return self._queue.pending()

    def failed_ops(self) -> list[SyncOp]:
        """Dead-lettered ops that will not be retried automatically."""
        return self._queue.list_failed()

    def retry_failed(self) -> int:
        """Give every failed op a fresh set of attempts."""
        count = self._queue.retry_failed()
        if count:
            self._enqueued()
        return count

    def _on_ack(self, op: SyncOp) -> None:
        if op.kind == SyncOpKind.DELETE_ENTITY:
            self._purge(op.entity_id)
        elif op.kind == SyncOpKind.DELETE_SPACE:
            self._purge_space(op.space_id)

    def _on_exhausted(self, op: SyncOp, error: SyncExhaustedError) -> None:
        logger.warning("%s", error)
        self._publish_sync_status()

    def pull(self, namespaces: Optional[Iterable[str]] = None) -> dict[str, int]:
        """
        Fetch records from the remote and merge them in (last writer wins).

        Entities and spaces are merged before memberships and artifacts
        so that those can find their owners.

        Returns:
            Dict of namespace -> number of records applied
        """
        if self._remote is None:
            raise RuntimeError("Sync is not configured (set sync.api_url or MEMEX_API_URL)")
        targets = list(namespaces) if namespaces else [ENTITIES, SPACES, MEMBERSHIPS, *artifact_namespaces()]
        owners_first = {ENTITIES: 0, SPACES: 0, MEMBERSHIPS: 1}
        targets.sort(key=lambda ns: owners_first.get(ns, 2))
        applied = {}
        for namespace in targets:
            applied[namespace] = self.merge_remote(namespace, self._remote.fetch(namespace))
        return applied

    def merge_remote(self, namespace: str, records: list[dict[str, Any]]) -> int:
        """
        Merge remote records into a namespace without queuing them back.

        A record is taken only if it is newer than the local copy and the
        target has no local op awaiting acknowledgment.

        Returns:
            Number of records applied
        """
        if namespace == ENTITIES:
            parse = Entity.from_dict
        elif namespace == SPACES:
            parse = Space.from_dict
        elif namespace == MEMBERSHIPS:
            parse = Membership.from_dict
        elif namespace.startswith(ARTIFACTS_PREFIX):
            parse = Artifact.from_dict
        else:
            raise ValueError(f"Cannot merge namespace: {namespace}")

        local_intent = {op.target for op in self._queue.pending()}
        local_intent.update(op.target for op in self._queue.list_failed())
        incoming = [
            r for r in records
            if f"{namespace}/{r.get('id')}" not in local_intent
        ]
        _, taken = merge_by_updated_at(self._serialize(namespace), incoming)
        taken_ids = set(taken)

        applied = 0
        for record in incoming:
            if record["id"] not in taken_ids:
                continue
            try:
                value = parse(record)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable remote %s %s: %s", namespace, record.get("id"), e)
                continue
            if isinstance(value, (Artifact, Membership)) and self.get(value.entity_id) is None:
                continue
            if isinstance(value, Membership) and self.get_space(value.space_id) is None:
                continue
            if isinstance(value, Entity):
                self._store.set(entity_key(value.id), value)
            else:
                self._store.set(value.key, value)
            applied += 1

        if applied:
            self._flush(namespace)
            logger.info("Merged %d remote %s records", applied, namespace)
        return applied

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Stop background work, flush, and release files. Idempotent."""
        if self._closed:
            return
        self._closed = True

        if getattr(self, "_uploader", None) is not None:
            self._uploader.close()
        if getattr(self, "_orchestrator", None) is not None:
            self._orchestrator.close()
        if getattr(self, "_cache_writer", None) is not None:
            still_dirty = self._cache_writer.flush_dirty()
            if still_dirty:
                logger.warning("Closing with %d namespaces not saved", still_dirty)
        if getattr(self, "_queue", None) is not None:
            self._queue.close()
        if getattr(self, "_cache", None) is not None:
            self._cache.close()
        if getattr(self, "_remote", None) is not None:
            self._remote.close()
        if getattr(self, "_store", None) is not None:
            self._store.close()

        from .logging_config import remove_ops_log
        remove_ops_log(getattr(self, "_ops_log_handler", None))

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - close resources."""
        self.close()
        return False

    def __del__(self):
        """Cleanup on deletion."""
        try:
            self.close()
        except Exception:
            pass  # Suppress errors during garbage collection
