"""
Background uploader: drains the sync queue to the remote.

Each drain claims a batch from the queue and uploads it on a bounded
worker pool. The queue never hands out two ops for the same target in
one batch, so concurrent uploads never race on a record.

Outcomes per op:
- success: ``queue.complete`` then ``on_ack(op)``
- retryable failure: ``queue.fail`` schedules a backoff retry
- exhausted or rejected: the op is dead-lettered, ``on_exhausted(op, error)``
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from .errors import SyncError, SyncExhaustedError
from .protocol import RemoteProtocol, SyncQueueProtocol
from .types import SyncOp, utc_now

logger = logging.getLogger(__name__)


class Uploader:
    """
    Drains a SyncQueue into a remote, on demand or on a daemon thread.

    Args:
        queue: Source of ops
        remote: Upload target
        workers: Concurrent uploads per batch
        batch_size: Ops claimed per batch
        poll_interval: Seconds between drains when nothing wakes the loop
        on_ack: Called with each acknowledged op
        on_exhausted: Called with each dead-lettered op and its error
        on_drain: Called with the result dict of every drain
    """

    def __init__(
        self,
        queue: SyncQueueProtocol,
        remote: RemoteProtocol,
        *,
        workers: int = 4,
        batch_size: int = 10,
        poll_interval: float = 5.0,
        on_ack: Optional[Callable[[SyncOp], None]] = None,
        on_exhausted: Optional[Callable[[SyncOp, SyncExhaustedError], None]] = None,
        on_drain: Optional[Callable[[dict], None]] = None,
    ):
        self._queue = queue
        self._remote = remote
        self._workers = max(1, workers)
        self._batch_size = max(1, batch_size)
        self._poll_interval = poll_interval
        self._on_ack = on_ack
        self._on_exhausted = on_exhausted
        self._on_drain = on_drain

        self._executor: Optional[ThreadPoolExecutor] = None
        self._drain_lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.last_sync_at: Optional[str] = None
        self.last_error: Optional[str] = None

    # -------------------------------------------------------------------------
    # Drain
    # -------------------------------------------------------------------------

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._workers,
                thread_name_prefix="memex-upload",
            )
        return self._executor

    def drain(self, limit: Optional[int] = None) -> dict:
        """
        Upload eligible ops until the queue has nothing ready.

        Stops early after ``limit`` ops, or after a batch in which
        nothing succeeded (the remote is probably unreachable; retries
        wait for their backoff).

        Returns:
            Dict with counts: processed, failed, abandoned, and an
            errors list of messages
        """
        result = {"processed": 0, "failed": 0, "abandoned": 0, "errors": []}
        with self._drain_lock:
            while limit is None or result["processed"] + result["failed"] + result["abandoned"] < limit:
                remaining = self._batch_size
                if limit is not None:
                    done = result["processed"] + result["failed"] + result["abandoned"]
                    remaining = min(remaining, limit - done)
                batch = self._queue.dequeue(limit=remaining)
                if not batch:
                    break

                executor = self._get_executor()
                outcomes = list(executor.map(self._upload_one, batch))
                succeeded = 0
                for op, (outcome, error) in zip(batch, outcomes):
                    result[outcome] += 1
                    if outcome == "processed":
                        succeeded += 1
                    elif error:
                        result["errors"].append(f"{op.target}: {error}")
                if not succeeded:
                    break

        if result["processed"]:
            self.last_sync_at = utc_now()
        if result["errors"]:
            self.last_error = result["errors"][-1]
        elif result["processed"]:
            self.last_error = None
        if result["processed"] or result["failed"] or result["abandoned"]:
            logger.info(
                "Sync drain: %d uploaded, %d retrying, %d abandoned",
                result["processed"], result["failed"], result["abandoned"],
            )
        if self._on_drain is not None:
            self._on_drain(result)
        return result

    def _upload_one(self, op: SyncOp) -> tuple[str, Optional[str]]:
        """Upload one claimed op and record the outcome in the queue."""
        try:
            if op.kind.is_delete:
                self._remote.delete(op.namespace, op.target_id)
            else:
                self._remote.upsert(op.namespace, op.target_id, op.payload)
        except SyncError as e:
            return self._failed(op, str(e), retryable=e.retryable)
        except Exception as e:
            logger.warning("Unexpected error uploading %s: %s", op.target, e, exc_info=True)
            return self._failed(op, f"{type(e).__name__}: {e}", retryable=True)

        self._queue.complete(op.op_id)
        logger.debug("Acknowledged %s %s", op.kind.value, op.target)
        if self._on_ack is not None:
            try:
                self._on_ack(op)
            except Exception as e:
                logger.warning("Ack handler failed for %s: %s", op.target, e, exc_info=True)
        return "processed", None

    def _failed(self, op: SyncOp, error: str, *, retryable: bool) -> tuple[str, str]:
        status = self._queue.fail(op.op_id, error, retryable=retryable)
        if status != "failed":
            return "failed", error
        if self._on_exhausted is not None:
            exhausted = SyncExhaustedError(
                f"{op.kind.value} {op.target} failed after {op.attempts} attempts: {error}",
                op_id=op.op_id,
            )
            try:
                self._on_exhausted(op, exhausted)
            except Exception as e:
                logger.warning("Exhausted handler failed for %s: %s", op.target, e, exc_info=True)
        return "abandoned", error

    # -------------------------------------------------------------------------
    # Background loop
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the drain loop on a daemon thread (no-op if running)."""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="memex-sync", daemon=True,
        )
        self._thread.start()
        logger.info("Sync uploader started")

    def wake(self) -> None:
        """Ask the loop to drain now instead of waiting for the next poll."""
        self._wake.set()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.drain()
            except Exception as e:
                self.last_error = str(e)
                logger.exception("Sync drain failed")
            self._wake.wait(self._poll_interval)
            self._wake.clear()

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Stop the loop and wait for the current drain to finish."""
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Sync uploader did not stop within %ss", timeout)
            self._thread = None

    def close(self) -> None:
        """Stop the loop and release the worker pool."""
        self.stop()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
