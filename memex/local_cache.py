"""
Durable local cache using SQLite.

Holds the on-disk mirror of the observable store: one serialized
collection per namespace (``entities``, ``artifacts.<kind>``,
``filters``). Every record carries ``updated_at`` for conflict
resolution when state is reloaded or merged with a remote pull.

Saves are whole-collection and idempotent: ``save(namespace, records)``
replaces the namespace inside one transaction. A failed save therefore
loses at most the newest write, never corrupts what is on disk, and the
next successful save rewrites everything.
"""

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from .errors import PersistenceError

logger = logging.getLogger(__name__)


class LocalCache:
    """
    SQLite-backed key-value persistence of serialized collections.

    Writers are serialized per namespace; readers of different
    namespaces never block each other.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._conn_lock = threading.Lock()
        self._namespace_locks: dict[str, threading.RLock] = {}
        self._namespace_locks_guard = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None: explicit BEGIN/COMMIT around each save
        self._conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row

        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS records (
                namespace TEXT NOT NULL,
                id TEXT NOT NULL,
                updated_at TEXT NOT NULL DEFAULT '',
                record TEXT NOT NULL,
                PRIMARY KEY (namespace, id)
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_records_updated
            ON records(namespace, updated_at)
        """)

    def namespace_lock(self, namespace: str) -> threading.RLock:
        """The writer lock for a namespace (reentrant)."""
        with self._namespace_locks_guard:
            lock = self._namespace_locks.get(namespace)
            if lock is None:
                lock = threading.RLock()
                self._namespace_locks[namespace] = lock
            return lock

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    def load(self, namespace: str) -> list[dict[str, Any]]:
        """
        Load every record in a namespace.

        Rows that fail to decode are skipped with a warning rather than
        failing the whole load.

        Raises:
            PersistenceError: If the database cannot be read
        """
        try:
            with self._conn_lock:
                rows = self._conn.execute("""
                    SELECT id, record FROM records
                    WHERE namespace = ?
                    ORDER BY updated_at ASC, id ASC
                """, (namespace,)).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to load {namespace}: {e}") from e

        records = []
        for row in rows:
            try:
                records.append(json.loads(row["record"]))
            except (json.JSONDecodeError, TypeError) as e:
                logger.warning("Skipping corrupt %s record %s: %s", namespace, row["id"], e)
        return records

    def namespaces(self) -> list[str]:
        """List namespaces that have at least one record."""
        with self._conn_lock:
            rows = self._conn.execute(
                "SELECT DISTINCT namespace FROM records ORDER BY namespace"
            ).fetchall()
        return [row["namespace"] for row in rows]

    def count(self, namespace: str) -> int:
        with self._conn_lock:
            return self._conn.execute(
                "SELECT COUNT(*) FROM records WHERE namespace = ?", (namespace,)
            ).fetchone()[0]

    # -------------------------------------------------------------------------
    # Write
    # -------------------------------------------------------------------------

    def save(self, namespace: str, records: Iterable[dict[str, Any]]) -> int:
        """
        Replace the full collection for a namespace.

        Each record must have an ``id``; ``updated_at`` is stored
        alongside for ordering and conflict resolution.

        Returns:
            Number of records written

        Raises:
            PersistenceError: If the write fails (nothing is changed on disk)
        """
        try:
            rows = [
                (
                    namespace,
                    str(record["id"]),
                    record.get("updated_at") or "",
                    json.dumps(record, ensure_ascii=False, sort_keys=True),
                )
                for record in records
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(f"Cannot serialize {namespace}: {e}") from e

        with self.namespace_lock(namespace), self._conn_lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                try:
                    self._conn.execute(
                        "DELETE FROM records WHERE namespace = ?", (namespace,)
                    )
                    self._conn.executemany("""
                        INSERT OR REPLACE INTO records (namespace, id, updated_at, record)
                        VALUES (?, ?, ?, ?)
                    """, rows)
                    self._conn.execute("COMMIT")
                except Exception:
                    self._conn.execute("ROLLBACK")
                    raise
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to save {namespace}: {e}") from e
        return len(rows)

    def clear(self, namespace: Optional[str] = None) -> int:
        """Delete one namespace, or everything. Returns rows removed."""
        with self._conn_lock:
            if namespace is None:
                cursor = self._conn.execute("DELETE FROM records")
            else:
                cursor = self._conn.execute(
                    "DELETE FROM records WHERE namespace = ?", (namespace,)
                )
            return cursor.rowcount

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()


def merge_by_updated_at(
    local: Iterable[dict[str, Any]],
    incoming: Iterable[dict[str, Any]],
) -> tuple[list[dict[str, Any]], list[str]]:
    """
    Last-writer-wins merge keyed by ``id``.

    An incoming record replaces the local one only if its ``updated_at``
    is strictly newer; ties keep the local copy.

    Returns:
        (merged records, ids taken from ``incoming``)
    """
    merged = {record["id"]: record for record in local}
    taken = []
    for record in incoming:
        current = merged.get(record["id"])
        if current is None or (record.get("updated_at") or "") > (current.get("updated_at") or ""):
            merged[record["id"]] = record
            taken.append(record["id"])
    return list(merged.values()), taken


class CacheWriter:
    """
    Write-through from the observable store to the local cache.

    ``flush(namespace)`` snapshots the namespace *inside* the namespace
    write lock, so a slow writer can never overwrite a newer snapshot
    with an older one. Persistence failures are logged and swallowed:
    the namespace stays dirty and the next flush rewrites it in full.
    """

    def __init__(
        self,
        cache: LocalCache,
        snapshot: Callable[[str], list[dict[str, Any]]],
    ):
        """
        Args:
            cache: Durable cache to write to
            snapshot: Returns the serialized collection for a namespace
        """
        self._cache = cache
        self._snapshot = snapshot
        self._dirty: set[str] = set()
        self._dirty_lock = threading.Lock()

    @property
    def dirty(self) -> set[str]:
        """Namespaces whose last flush failed."""
        with self._dirty_lock:
            return set(self._dirty)

    def flush(self, namespace: str) -> bool:
        """Persist one namespace. Returns False if the write failed."""
        with self._cache.namespace_lock(namespace):
            try:
                records = self._snapshot(namespace)
                self._cache.save(namespace, records)
            except PersistenceError as e:
                with self._dirty_lock:
                    self._dirty.add(namespace)
                logger.warning("Local save of %s failed, keeping in-memory state: %s", namespace, e)
                return False
        with self._dirty_lock:
            self._dirty.discard(namespace)
        return True

    def flush_dirty(self) -> int:
        """Retry every namespace whose last flush failed. Returns count still dirty."""
        for namespace in sorted(self.dirty):
            self.flush(namespace)
        return len(self.dirty)
