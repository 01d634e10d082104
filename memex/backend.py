"""
Pluggable storage and sync backend factory.

Creates the local cache, the sync queue and the remote from
configuration. The built-in remotes are ``http`` (the memex sync API)
and ``none`` (local-only). External remotes register via the
``memex.remotes`` entry point group.

External remote packages provide a factory function::

    def create_remote(config: StoreConfig) -> RemoteProtocol:
        ...

and register it in their pyproject.toml::

    [project.entry-points."memex.remotes"]
    my-remote = "my_package.remote:create_remote"
"""

import logging
from typing import NamedTuple, Optional

from .config import StoreConfig
from .local_cache import LocalCache
from .protocol import RemoteProtocol
from .sync_queue import SyncQueue

logger = logging.getLogger(__name__)

CACHE_FILENAME = "cache.db"
QUEUE_FILENAME = "sync_queue.db"


class StoreBundle(NamedTuple):
    """Durable parts of a store returned by the factory."""
    cache: LocalCache
    queue: SyncQueue
    remote: Optional[RemoteProtocol]  # None until sync is configured


def create_stores(config: StoreConfig, remote: Optional[RemoteProtocol] = None) -> StoreBundle:
    """
    Open the local cache and sync queue, and build the remote.

    Args:
        config: Store configuration
        remote: Use this remote instead of building one from config
    """
    config.path.mkdir(parents=True, exist_ok=True)
    cache = LocalCache(config.path / CACHE_FILENAME)
    queue = SyncQueue(
        config.path / QUEUE_FILENAME,
        max_attempts=config.sync.max_attempts,
        backoff_base=config.sync.backoff_base,
        backoff_max=config.sync.backoff_max,
        jitter=config.sync.jitter,
    )
    if remote is None:
        remote = create_remote(config)
    return StoreBundle(cache=cache, queue=queue, remote=remote)


def create_remote(config: StoreConfig) -> Optional[RemoteProtocol]:
    """
    Create the remote from configuration.

    Returns None for ``backend = "http"`` without an ``api_url``: ops
    keep accumulating (coalesced) in the queue until sync is configured.
    """
    backend = config.sync.backend
    if backend == "none":
        from .remote import NullRemote
        return NullRemote()
    if backend == "http":
        if not config.sync.api_url:
            logger.debug("Sync not configured; ops stay queued")
            return None
        from .remote import HttpRemote
        return HttpRemote(config.sync.api_url, config.sync.api_key)
    return _load_remote(backend, config)


def _load_remote(name: str, config: StoreConfig) -> RemoteProtocol:
    """Load a remote by entry point name."""
    from importlib.metadata import entry_points

    eps = entry_points(group="memex.remotes")
    for ep in eps:
        if ep.name == name:
            factory = ep.load()
            return factory(config)

    available = [ep.name for ep in eps]
    if available:
        raise ValueError(
            f"Unknown sync backend: {name!r}. Available: {['http', 'none', *available]}"
        )
    raise ValueError(
        f"Unknown sync backend: {name!r}. Use 'http' or 'none', "
        f"or install a package that registers a memex.remotes entry point."
    )
