"""
Error types and error logging for memex.

Logs full stack traces for debugging while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class MemexError(Exception):
    """Base class for memex errors."""


class ProducerError(MemexError):
    """An enrichment producer failed. Recoverable: the user may retry."""


class PersistenceError(MemexError):
    """A local write failed. In-memory state stays authoritative."""


class SyncError(MemexError):
    """A remote call failed. Retried with backoff by the uploader."""

    def __init__(self, message: str, *, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class SyncExhaustedError(SyncError):
    """A sync operation ran out of attempts and was moved to the failed list."""

    def __init__(self, message: str, op_id: Optional[str] = None):
        super().__init__(message, retryable=False)
        self.op_id = op_id


def _error_log_path(store_path: Optional[Path] = None) -> Path:
    """Resolve error log path, respecting MEMEX_STORE_PATH."""
    if store_path is not None:
        return Path(store_path) / "memex-errors.log"
    store = os.environ.get("MEMEX_STORE_PATH")
    if store:
        return Path(store) / "memex-errors.log"
    return Path.home() / ".memex" / "memex-errors.log"


def log_exception(exc: Exception, context: str = "", store_path: Optional[Path] = None) -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)
        store_path: Store directory; defaults to MEMEX_STORE_PATH or ~/.memex

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path(store_path)
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
