"""
Durable sync queue using SQLite.

Every local mutation that must reach the remote is recorded here as a
SyncOp before the caller returns. The queue survives restarts: ops
left claimed by an earlier run are put back to pending when the queue
is next opened.

Enqueue coalesces atomically, so the remote only ever sees the latest
intent per target:

- a new op replaces any queued (pending or failed) op for the same
  target; an op already being uploaded is left alone and the new op
  waits behind it
- ``delete-entity`` also discards the entity's queued artifact and
  membership ops; ``delete-space`` discards the space's membership ops
- any other op for an entity or space with a queued delete is discarded

Dequeue is atomic: ops move from 'pending' to 'processing' with a PID
claim inside a single IMMEDIATE transaction. Failed uploads back off
exponentially (30s, 60s, 120s, ... up to 1h, with jitter). Ops that
exhaust ``max_attempts`` move to 'failed' (dead letter) and are kept
with their last error until ``retry_failed`` resets them.
"""

import json
import logging
import os
import random
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from .errors import PersistenceError
from .types import ENTITIES, MEMBERSHIPS, TIMESTAMP_FORMAT, SyncOp, SyncOpKind, utc_now

logger = logging.getLogger(__name__)

# Retry backoff: min(BASE * 2^(attempts-1), MAX) seconds
RETRY_BACKOFF_BASE = 30.0
RETRY_BACKOFF_MAX = 3600.0
MAX_ATTEMPTS = 5

# Statuses that count as "queued" for coalescing
_QUEUED = ("pending", "failed")

_COLUMNS = (
    "op_id, kind, namespace, target_id, entity_id, payload, "
    "enqueued_at, attempts, last_error, status, space_id"
)


def _row_to_op(row) -> SyncOp:
    payload = {}
    if row[5]:
        try:
            payload = json.loads(row[5])
        except (json.JSONDecodeError, TypeError):
            logger.warning("Corrupt payload for sync op %s", row[0])
    return SyncOp(
        op_id=row[0],
        kind=SyncOpKind(row[1]),
        namespace=row[2],
        target_id=row[3],
        entity_id=row[4],
        payload=payload,
        enqueued_at=row[6],
        attempts=row[7],
        last_error=row[8],
        status=row[9],
        space_id=row[10],
    )


class SyncQueue:
    """
    SQLite-backed coalescing queue of remote operations.

    Safe to share between the UI thread, enrichment workers and the
    uploader: all access goes through one connection under a lock.
    """

    def __init__(
        self,
        queue_path: Path,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_base: float = RETRY_BACKOFF_BASE,
        backoff_max: float = RETRY_BACKOFF_MAX,
        jitter: bool = True,
    ):
        """
        Args:
            queue_path: Path to SQLite database file
            max_attempts: Upload attempts before an op is dead-lettered
            backoff_base: Delay before the first retry, in seconds
            backoff_max: Retry delay cap, in seconds
            jitter: Scale each delay by a random factor in [0.5, 1.0]
        """
        self._queue_path = queue_path
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.jitter = jitter
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()
        self.recover_claims()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._queue_path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives us manual transaction control
        # so we can use BEGIN IMMEDIATE for atomic enqueue and dequeue
        self._conn = sqlite3.connect(
            str(self._queue_path), check_same_thread=False,
            isolation_level=None,
        )

        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        # seq keeps FIFO order stable even when enqueued_at collides
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS sync_ops (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                op_id TEXT NOT NULL UNIQUE,
                kind TEXT NOT NULL,
                namespace TEXT NOT NULL,
                target_id TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                payload TEXT DEFAULT '{}',
                enqueued_at TEXT NOT NULL,
                attempts INTEGER DEFAULT 0,
                status TEXT DEFAULT 'pending',
                claimed_by TEXT,
                claimed_at TEXT,
                last_error TEXT,
                retry_after TEXT,
                space_id TEXT
            )
        """)
        self._migrate()
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_target
            ON sync_ops(namespace, target_id)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_entity
            ON sync_ops(entity_id)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_status
            ON sync_ops(status)
        """)

    def _migrate(self) -> None:
        """Migrate existing databases to current schema."""
        cursor = self._conn.execute("PRAGMA table_info(sync_ops)")
        columns = {row[1] for row in cursor.fetchall()}

        # Spaces and memberships
        if "space_id" not in columns:
            self._conn.execute("ALTER TABLE sync_ops ADD COLUMN space_id TEXT")
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_space
            ON sync_ops(space_id)
        """)

    @property
    def path(self) -> Path:
        return self._queue_path

    def recover_claims(self) -> int:
        """Reset every claimed op back to pending.

        Called when the queue is opened. One process owns a store
        directory at a time, and a fresh queue has claimed nothing yet,
        so any 'processing' row is left over from an earlier run. The
        claiming PID is not compared: a restarted process can reuse it.

        Returns count of recovered ops.
        """
        with self._lock:
            cursor = self._conn.execute("""
                UPDATE sync_ops
                SET status = 'pending', claimed_by = NULL, claimed_at = NULL
                WHERE status = 'processing'
            """)
            recovered = cursor.rowcount
        if recovered:
            logger.info("Recovered %d interrupted sync ops", recovered)
        return recovered

    # -------------------------------------------------------------------------
    # Enqueue
    # -------------------------------------------------------------------------

    def enqueue(self, op: SyncOp) -> Optional[SyncOp]:
        """
        Record an op, applying the coalescing rules in one transaction.

        Returns:
            The queued op, or None if it was discarded because its
            entity is already queued for deletion

        Raises:
            PersistenceError: If the queue database cannot be written
        """
        op.enqueued_at = op.enqueued_at or utc_now()
        op.status = "pending"
        op.attempts = 0
        op.last_error = None

        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                try:
                    queued = self._enqueue_locked(op)
                    self._conn.execute("COMMIT")
                except Exception:
                    self._conn.execute("ROLLBACK")
                    raise
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to enqueue {op.kind.value} {op.target}: {e}") from e
        return queued

    def _enqueue_locked(self, op: SyncOp) -> Optional[SyncOp]:
        # Anything but the delete itself is moot once its owner is going away
        owners = []
        if op.entity_id and op.kind != SyncOpKind.DELETE_ENTITY:
            owners.append(("entity_id", op.entity_id, SyncOpKind.DELETE_ENTITY))
        if op.space_id and op.kind != SyncOpKind.DELETE_SPACE:
            owners.append(("space_id", op.space_id, SyncOpKind.DELETE_SPACE))
        for column, owner_id, delete_kind in owners:
            row = self._conn.execute(f"""
                SELECT op_id FROM sync_ops
                WHERE {column} = ? AND kind = ?
                  AND status IN ('pending', 'processing', 'failed')
                LIMIT 1
            """, (owner_id, delete_kind.value)).fetchone()
            if row is not None:
                logger.debug("Discarding %s for %s: %s queued", op.kind.value, op.target, delete_kind.value)
                return None

        cursor = self._conn.execute(f"""
            DELETE FROM sync_ops
            WHERE namespace = ? AND target_id = ?
              AND status IN {_QUEUED}
        """, (op.namespace, op.target_id))
        replaced = cursor.rowcount

        if op.kind == SyncOpKind.DELETE_ENTITY:
            cursor = self._conn.execute(f"""
                DELETE FROM sync_ops
                WHERE entity_id = ? AND namespace != ?
                  AND status IN {_QUEUED}
            """, (op.entity_id, ENTITIES))
            replaced += cursor.rowcount
        elif op.kind == SyncOpKind.DELETE_SPACE:
            cursor = self._conn.execute(f"""
                DELETE FROM sync_ops
                WHERE space_id = ? AND namespace = ?
                  AND status IN {_QUEUED}
            """, (op.space_id, MEMBERSHIPS))
            replaced += cursor.rowcount

        self._conn.execute(f"""
            INSERT INTO sync_ops ({_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, 0, NULL, 'pending', ?)
        """, (
            op.op_id, op.kind.value, op.namespace, op.target_id, op.entity_id,
            json.dumps(op.payload, ensure_ascii=False), op.enqueued_at, op.space_id,
        ))
        if replaced:
            logger.debug("Enqueued %s for %s (coalesced %d)", op.kind.value, op.target, replaced)
        return op

    # -------------------------------------------------------------------------
    # Dequeue and outcome
    # -------------------------------------------------------------------------

    def dequeue(self, limit: int = 10) -> list[SyncOp]:
        """
        Atomically claim the oldest eligible pending ops.

        Eligible means: retry time reached, no op for the same target in
        flight, and for ``delete-entity`` or ``delete-space`` no op for the
        same entity or space in flight. At most one op per target is
        claimed per batch, so a batch can be uploaded concurrently.

        Ops transition from 'pending' to 'processing'. Call complete()
        after success or fail() to release them.
        """
        pid = str(os.getpid())
        now = utc_now()

        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                busy_targets = set()
                busy_entities = set()
                busy_spaces = set()
                for namespace, target_id, entity_id, space_id in self._conn.execute(
                    "SELECT namespace, target_id, entity_id, space_id FROM sync_ops "
                    "WHERE status = 'processing'"
                ):
                    busy_targets.add((namespace, target_id))
                    busy_entities.add(entity_id)
                    busy_spaces.add(space_id)

                rows = self._conn.execute(f"""
                    SELECT {_COLUMNS} FROM sync_ops
                    WHERE status = 'pending'
                      AND (retry_after IS NULL OR retry_after <= ?)
                    ORDER BY seq ASC
                """, (now,)).fetchall()

                ops = []
                for row in rows:
                    if len(ops) >= limit:
                        break
                    op = _row_to_op(row)
                    if (op.namespace, op.target_id) in busy_targets:
                        continue
                    if op.kind == SyncOpKind.DELETE_ENTITY and op.entity_id in busy_entities:
                        continue
                    if op.kind == SyncOpKind.DELETE_SPACE and op.space_id in busy_spaces:
                        continue
                    busy_targets.add((op.namespace, op.target_id))
                    busy_entities.add(op.entity_id)
                    busy_spaces.add(op.space_id)
                    op.attempts += 1
                    op.status = "processing"
                    ops.append(op)

                if ops:
                    self._conn.executemany("""
                        UPDATE sync_ops
                        SET status = 'processing',
                            claimed_by = ?,
                            claimed_at = ?,
                            attempts = attempts + 1
                        WHERE op_id = ?
                    """, [(pid, now, op.op_id) for op in ops])

                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise

        return ops

    def complete(self, op_id: str) -> None:
        """Remove an op after the remote acknowledged it."""
        with self._lock:
            self._conn.execute("DELETE FROM sync_ops WHERE op_id = ?", (op_id,))

    def backoff_delay(self, attempts: int) -> float:
        """Seconds to wait before retrying after ``attempts`` failures."""
        delay = min(self.backoff_base * (2 ** (max(attempts, 1) - 1)), self.backoff_max)
        if self.jitter:
            delay *= random.uniform(0.5, 1.0)
        return delay

    def fail(self, op_id: str, error: Optional[str] = None, *, retryable: bool = True) -> str:
        """Release a claimed op after a failed upload.

        The attempt counter (already incremented by dequeue) is preserved.
        Ops that reached ``max_attempts``, or whose error is not
        retryable, are dead-lettered.

        Returns the op's new status: 'pending', 'failed', or 'missing'
        if it no longer exists.
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT attempts, kind, namespace, target_id FROM sync_ops WHERE op_id = ?",
                (op_id,),
            ).fetchone()
            if row is None:
                return "missing"
            attempts, kind, namespace, target_id = row

            if not retryable or attempts >= self.max_attempts:
                self._conn.execute("""
                    UPDATE sync_ops
                    SET status = 'failed', claimed_by = NULL, claimed_at = NULL,
                        last_error = ?, retry_after = NULL
                    WHERE op_id = ?
                """, (error, op_id))
                logger.warning(
                    "Abandoned %s %s/%s after %d attempts: %s",
                    kind, namespace, target_id, attempts, error or "unknown",
                )
                return "failed"

            delay = self.backoff_delay(attempts)
            retry_at = (datetime.now(timezone.utc) + timedelta(seconds=delay)).strftime(TIMESTAMP_FORMAT)
            self._conn.execute("""
                UPDATE sync_ops
                SET status = 'pending', claimed_by = NULL, claimed_at = NULL,
                    last_error = ?, retry_after = ?
                WHERE op_id = ?
            """, (error, retry_at, op_id))

        logger.info(
            "%s %s/%s failed (attempt %d), retry after %.1fs: %s",
            kind, namespace, target_id, attempts, delay, error or "unknown",
        )
        return "pending"

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def get(self, op_id: str) -> Optional[SyncOp]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM sync_ops WHERE op_id = ?", (op_id,)
            ).fetchone()
        return _row_to_op(row) if row else None

    def pending(self) -> list[SyncOp]:
        """Ops awaiting acknowledgment (pending or processing), oldest first."""
        with self._lock:
            rows = self._conn.execute(f"""
                SELECT {_COLUMNS} FROM sync_ops
                WHERE status IN ('pending', 'processing')
                ORDER BY seq ASC
            """).fetchall()
        return [_row_to_op(row) for row in rows]

    def ops_for_entity(self, entity_id: str) -> list[SyncOp]:
        """Every op (any status) touching an entity or its artifacts."""
        with self._lock:
            rows = self._conn.execute(f"""
                SELECT {_COLUMNS} FROM sync_ops
                WHERE entity_id = ?
                ORDER BY seq ASC
            """, (entity_id,)).fetchall()
        return [_row_to_op(row) for row in rows]

    def ops_for_space(self, space_id: str) -> list[SyncOp]:
        """Every op (any status) touching a space or its memberships."""
        with self._lock:
            rows = self._conn.execute(f"""
                SELECT {_COLUMNS} FROM sync_ops
                WHERE space_id = ?
                ORDER BY seq ASC
            """, (space_id,)).fetchall()
        return [_row_to_op(row) for row in rows]

    def list_failed(self) -> list[SyncOp]:
        """Ops in failed (dead letter) status, oldest first."""
        with self._lock:
            rows = self._conn.execute(f"""
                SELECT {_COLUMNS} FROM sync_ops
                WHERE status = 'failed'
                ORDER BY seq ASC
            """).fetchall()
        return [_row_to_op(row) for row in rows]

    def retry_failed(self) -> int:
        """Reset all failed ops back to pending for retry.

        Resets attempt counters and clears backoff. Returns count of
        ops moved back to pending.
        """
        with self._lock:
            cursor = self._conn.execute("""
                UPDATE sync_ops
                SET status = 'pending', attempts = 0, claimed_by = NULL,
                    claimed_at = NULL, last_error = NULL, retry_after = NULL
                WHERE status = 'failed'
            """)
            count = cursor.rowcount
        if count:
            logger.info("Reset %d failed sync ops back to pending", count)
        return count

    def count(self) -> int:
        """Count of ops awaiting acknowledgment (excludes failed)."""
        with self._lock:
            return self._conn.execute(
                "SELECT COUNT(*) FROM sync_ops WHERE status IN ('pending', 'processing')"
            ).fetchone()[0]

    def stats(self) -> dict:
        """Get queue statistics including status breakdown."""
        with self._lock:
            by_status = {
                row[0]: row[1] for row in self._conn.execute(
                    "SELECT status, COUNT(*) FROM sync_ops GROUP BY status"
                )
            }
            by_kind = {
                row[0]: row[1] for row in self._conn.execute("""
                    SELECT kind, COUNT(*) AS cnt FROM sync_ops
                    WHERE status IN ('pending', 'processing')
                    GROUP BY kind ORDER BY cnt DESC
                """)
            }
            row = self._conn.execute("""
                SELECT COUNT(*), MAX(attempts), MIN(enqueued_at),
                       MIN(CASE WHEN status = 'pending' THEN retry_after END)
                FROM sync_ops
            """).fetchone()
        return {
            "pending": by_status.get("pending", 0),
            "processing": by_status.get("processing", 0),
            "failed": by_status.get("failed", 0),
            "total": row[0],
            "max_attempts": row[1] or 0,
            "oldest": row[2],
            "next_retry": row[3],
            "queue_path": str(self._queue_path),
            "by_kind": by_kind,
        }

    def clear(self) -> int:
        """Clear all ops. Returns count of ops cleared."""
        with self._lock:
            count = self._conn.execute("SELECT COUNT(*) FROM sync_ops").fetchone()[0]
            self._conn.execute("DELETE FROM sync_ops")
        return count

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
        """Ensure connection is closed on garbage collection."""
        self.close()
