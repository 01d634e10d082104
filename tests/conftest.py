"""
Shared pytest fixtures for memex tests.

Provides an in-memory remote and producers with controllable timing so
sync and enrichment can be tested without a network.
"""

import threading
from pathlib import Path

import pytest

from memex.api import Memex
from memex.config import StoreConfig, SyncConfig
from memex.errors import SyncError


class FakeRemote:
    """
    In-memory remote with scriptable failures.

    ``failures`` is a list of exceptions raised by the next calls, in
    order; once it is empty, calls succeed.
    """

    def __init__(self):
        self.records: dict[tuple[str, str], dict] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.failures: list[Exception] = []
        self.fail_always: Exception | None = None
        self.closed = False
        self._lock = threading.Lock()

    def _maybe_fail(self) -> None:
        with self._lock:
            if self.fail_always is not None:
                raise self.fail_always
            if self.failures:
                raise self.failures.pop(0)

    def upsert(self, namespace: str, id: str, payload: dict) -> None:
        with self._lock:
            self.calls.append(("upsert", namespace, id))
        self._maybe_fail()
        with self._lock:
            self.records[(namespace, id)] = dict(payload)

    def delete(self, namespace: str, id: str) -> None:
        with self._lock:
            self.calls.append(("delete", namespace, id))
        self._maybe_fail()
        with self._lock:
            self.records.pop((namespace, id), None)

    def fetch(self, namespace: str) -> list[dict]:
        self._maybe_fail()
        with self._lock:
            return [dict(r) for (ns, _), r in self.records.items() if ns == namespace]

    def close(self) -> None:
        self.closed = True


class BlockingProducer:
    """
    Producer that blocks until released, for holding a generation in flight.

    ``started`` is set when the producer is entered.
    """

    name = "blocking"

    def __init__(self, value: str = "generated value"):
        self.value = value
        self.calls = 0
        self.started = threading.Event()
        self.release = threading.Event()

    def __call__(self, entity, sub_key):
        self.calls += 1
        self.started.set()
        if not self.release.wait(timeout=10):
            raise TimeoutError("producer was never released")
        return self.value


class FailingProducer:
    name = "failing"

    def __init__(self, error: Exception | None = None):
        self.error = error or RuntimeError("model unavailable")
        self.calls = 0

    def __call__(self, entity, sub_key):
        self.calls += 1
        raise self.error


def make_config(path: Path, **sync_overrides) -> StoreConfig:
    """Store config with immediate retries and small pools."""
    sync = SyncConfig(
        backend="http",
        max_attempts=3,
        backoff_base=0.0,
        backoff_max=0.0,
        jitter=False,
        workers=2,
        batch_size=10,
        poll_interval=0.05,
    )
    for key, value in sync_overrides.items():
        setattr(sync, key, value)
    return StoreConfig(path=path, sync=sync, enrichment_workers=2)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep the developer's environment out of tests."""
    for name in ("MEMEX_STORE_PATH", "MEMEX_API_URL", "MEMEX_API_KEY", "MEMEX_VERBOSE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def store_path(tmp_path) -> Path:
    return tmp_path / "store"


@pytest.fixture
def config(store_path) -> StoreConfig:
    return make_config(store_path)


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def mx(config, remote):
    """An open Memex with a fake remote. Background sync is off."""
    memex = Memex(config=config, remote=remote)
    yield memex
    memex.close()


@pytest.fixture
def retryable_error():
    return SyncError("503 Service Unavailable", retryable=True)
