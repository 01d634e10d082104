"""
memex

A local-first store for saved content items (links, videos, posts, notes)
with background AI enrichment and crash-safe sync to a remote backend.

Quick Start:
    from memex import Memex

    with Memex() as mx:  # uses ~/.memex/
        item = mx.create("article", url="https://example.com", title="Example")
        mx.request_enrichment(item.id, "summary").result()
        mx.drain()

CLI Usage:
    memex add https://example.com --title Example
    memex list --tag reading
    memex sync

Default Store:
    ~/.memex/ (created automatically).
    Override with MEMEX_STORE_PATH or an explicit path argument.

Environment Variables:
    MEMEX_STORE_PATH  - Override default store location
    MEMEX_API_URL     - Sync API endpoint
    MEMEX_API_KEY     - Sync API bearer token
    MEMEX_VERBOSE     - Set to 1 for debug logging in the CLI
"""

from .api import Memex, SyncStatus
from .enrichment import EnrichmentResult
from .errors import (
    MemexError,
    PersistenceError,
    ProducerError,
    SyncError,
    SyncExhaustedError,
)
from .types import Artifact, ArtifactKind, ContentKind, Entity, Membership, Space, SyncOp, SyncOpKind
from .views import FilterState

__version__ = "0.1.0"
__all__ = [
    "Memex",
    "SyncStatus",
    "EnrichmentResult",
    "Entity",
    "Artifact",
    "ArtifactKind",
    "ContentKind",
    "Space",
    "Membership",
    "SyncOp",
    "SyncOpKind",
    "FilterState",
    "MemexError",
    "PersistenceError",
    "ProducerError",
    "SyncError",
    "SyncExhaustedError",
]
