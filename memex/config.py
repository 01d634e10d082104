"""
Configuration management for memex stores.

The configuration is stored as a TOML file in the store directory.
It specifies the remote sync backend, retry policy, worker pool sizes
and which producer generates each artifact kind.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

# tomli_w for writing TOML (tomllib is read-only)
try:
    import tomli_w
except ImportError:
    tomli_w = None  # type: ignore


CONFIG_FILENAME = "memex.toml"
CONFIG_VERSION = 1

DEFAULT_STORE_DIR = ".memex"


@dataclass
class ProviderConfig:
    """Configuration for a single named provider (producer or remote)."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class SyncConfig:
    """Remote sync and retry policy."""
    backend: str = "http"
    api_url: Optional[str] = None
    api_key: Optional[str] = None
    max_attempts: int = 5
    backoff_base: float = 30.0     # seconds before the first retry
    backoff_max: float = 3600.0    # retry delay cap
    jitter: bool = True
    workers: int = 4
    batch_size: int = 10
    poll_interval: float = 5.0

    @property
    def enabled(self) -> bool:
        """True when a remote can be built from this config."""
        if self.backend == "none":
            return False
        if self.backend == "http":
            return bool(self.api_url)
        return True


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    sync: SyncConfig = field(default_factory=SyncConfig)
    enrichment_workers: int = 2
    # artifact kind -> producer
    producers: dict[str, ProviderConfig] = field(default_factory=lambda: {
        "summary": ProviderConfig("truncate"),
        "tags": ProviderConfig("keywords"),
    })

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_default_store_path() -> Path:
    """Store directory: MEMEX_STORE_PATH or ~/.memex."""
    env = os.environ.get("MEMEX_STORE_PATH")
    if env:
        return Path(env).expanduser()
    return Path.home() / DEFAULT_STORE_DIR


def _apply_env_overrides(sync: SyncConfig) -> SyncConfig:
    """Environment wins over the file for credentials and endpoint."""
    api_url = os.environ.get("MEMEX_API_URL")
    api_key = os.environ.get("MEMEX_API_KEY")
    if api_url:
        sync.api_url = api_url
    if api_key:
        sync.api_key = api_key
    return sync


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    sync_data = data.get("sync", {})
    defaults = SyncConfig()
    try:
        sync = SyncConfig(
            backend=sync_data.get("backend", defaults.backend),
            api_url=sync_data.get("api_url"),
            api_key=sync_data.get("api_key"),
            max_attempts=int(sync_data.get("max_attempts", defaults.max_attempts)),
            backoff_base=float(sync_data.get("backoff_base", defaults.backoff_base)),
            backoff_max=float(sync_data.get("backoff_max", defaults.backoff_max)),
            jitter=bool(sync_data.get("jitter", defaults.jitter)),
            workers=int(sync_data.get("workers", defaults.workers)),
            batch_size=int(sync_data.get("batch_size", defaults.batch_size)),
            poll_interval=float(sync_data.get("poll_interval", defaults.poll_interval)),
        )
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid [sync] section in {config_path}: {e}") from e
    if sync.max_attempts < 1:
        raise ValueError(f"sync.max_attempts must be at least 1 (got {sync.max_attempts})")
    if sync.workers < 1:
        raise ValueError(f"sync.workers must be at least 1 (got {sync.workers})")

    def parse_provider(section) -> ProviderConfig:
        if isinstance(section, str):
            return ProviderConfig(name=section)
        return ProviderConfig(
            name=section.get("name", ""),
            params={k: v for k, v in section.items() if k != "name"},
        )

    producers_data = data.get("producers")
    producers = (
        {kind: parse_provider(section) for kind, section in producers_data.items()}
        if producers_data is not None
        else StoreConfig(path=store_path).producers
    )

    return StoreConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        sync=_apply_env_overrides(sync),
        enrichment_workers=int(data.get("enrichment", {}).get("workers", 2)),
        producers=producers,
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist. The API key is only
    written if it did not come from the environment.
    """
    if tomli_w is None:
        raise RuntimeError("tomli_w is required to save config. Install with: pip install tomli-w")

    config.path.mkdir(parents=True, exist_ok=True)

    def provider_to_dict(p: ProviderConfig) -> dict:
        d = {"name": p.name}
        d.update(p.params)
        return d

    sync: dict[str, Any] = {
        "backend": config.sync.backend,
        "max_attempts": config.sync.max_attempts,
        "backoff_base": config.sync.backoff_base,
        "backoff_max": config.sync.backoff_max,
        "jitter": config.sync.jitter,
        "workers": config.sync.workers,
        "batch_size": config.sync.batch_size,
        "poll_interval": config.sync.poll_interval,
    }
    # TOML has no null; omit unset values
    if config.sync.api_url:
        sync["api_url"] = config.sync.api_url
    if config.sync.api_key and config.sync.api_key != os.environ.get("MEMEX_API_KEY"):
        sync["api_key"] = config.sync.api_key

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "sync": sync,
        "enrichment": {"workers": config.enrichment_workers},
        "producers": {
            kind: provider_to_dict(p) for kind, p in config.producers.items()
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = StoreConfig(path=store_path, sync=_apply_env_overrides(SyncConfig()))
    save_config(config)
    return config
