"""
Protocol definitions for the collaborators injected into Memex.

Defines interface contracts for:
- RemoteProtocol: where acknowledged sync ops go (HTTP API, tests, plugins)
- ProducerProtocol: what generates an artifact value for an entity
- SyncQueueProtocol: the durable op queue the uploader drains
"""

from typing import Optional, Protocol, runtime_checkable

from .types import Entity, SyncOp


@runtime_checkable
class RemoteProtocol(Protocol):
    """
    Remote sync target.

    Implemented by:
    - HttpRemote (memex HTTP API)
    - NullRemote (local-only stores)
    - packages registered under the ``memex.remotes`` entry point group

    ``upsert`` and ``delete`` must be idempotent and raise SyncError on
    failure. ``fetch`` returns every record of a namespace for pulls.
    """

    def upsert(self, namespace: str, id: str, payload: dict) -> None: ...

    def delete(self, namespace: str, id: str) -> None: ...

    def fetch(self, namespace: str) -> list[dict]: ...

    def close(self) -> None: ...


@runtime_checkable
class ProducerProtocol(Protocol):
    """
    Generates one artifact value for an entity.

    Raise on failure; an empty string also counts as failure. Optional
    ``name`` or ``model_name`` attributes become the artifact's
    ``produced_by``.
    """

    def __call__(self, entity: Entity, sub_key: str) -> str: ...


@runtime_checkable
class SyncQueueProtocol(Protocol):
    """Durable coalescing queue of remote operations."""

    def enqueue(self, op: SyncOp) -> Optional[SyncOp]: ...

    def dequeue(self, limit: int = 10) -> list[SyncOp]: ...

    def complete(self, op_id: str) -> None: ...

    def fail(self, op_id: str, error: Optional[str] = None, *, retryable: bool = True) -> str: ...

    def list_failed(self) -> list[SyncOp]: ...

    def retry_failed(self) -> int: ...

    def count(self) -> int: ...

    def stats(self) -> dict: ...

    def close(self) -> None: ...
