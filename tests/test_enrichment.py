"""Tests for enrichment: guard, producer, store, cache and queue."""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from conftest import BlockingProducer, FailingProducer
from memex.enrichment import BUSY, COMPLETED, FAILED, EnrichmentOrchestrator
from memex.errors import PersistenceError, ProducerError
from memex.generation_guard import GenerationGuard
from memex.local_cache import CacheWriter, LocalCache
from memex.observable import ObservableStore
from memex.types import ArtifactKind, Entity, SyncOpKind, artifact_key, entity_key


class NamedProducer:
    name = "test-model"

    def __init__(self, value="A short summary."):
        self.value = value

    def __call__(self, entity, sub_key):
        return self.value


class TestRequestEnrichment:
    def test_result_lands_everywhere(self, mx):
        item = mx.create("article", title="Local-first", content="Long body text")
        result = mx.request_enrichment(item.id, "summary", producer=NamedProducer()).result(timeout=5)

        assert result.ok
        artifact = mx.get_artifact(item.id, ArtifactKind.SUMMARY)
        assert artifact.value == "A short summary."
        assert artifact.produced_by == "test-model"
        assert artifact.fetched_at
        assert result.artifact == artifact

        cached = mx._cache.load("artifacts.summary")
        assert [r["id"] for r in cached] == [f"{item.id}:-"]
        kinds = [op.kind for op in mx.pending_ops()]
        assert kinds == [SyncOpKind.UPSERT_ENTITY, SyncOpKind.UPSERT_ARTIFACT]

    def test_second_request_is_busy_and_producer_runs_once(self, mx):
        item = mx.create("note", content="text")
        producer = BlockingProducer("tagged, twice")

        first = mx.request_enrichment(item.id, "tags", producer=producer)
        assert producer.started.wait(timeout=5)
        assert mx.is_generating(item.id, "tags")
        assert mx.store.get(("generating", item.id, "tags")) is True

        second = mx.request_enrichment(item.id, "tags", producer=producer)
        assert second.done()
        assert second.result().status == BUSY

        producer.release.set()
        assert first.result(timeout=5).status == COMPLETED
        assert producer.calls == 1
        assert not mx.is_generating(item.id, "tags")
        assert mx.store.get(("generating", item.id, "tags")) is None
        assert mx.generating() == []

    def test_other_kinds_run_concurrently(self, mx):
        item = mx.create("note", content="text")
        producer = BlockingProducer()
        summary = mx.request_enrichment(item.id, "summary", producer=producer)
        assert producer.started.wait(timeout=5)

        tags = mx.request_enrichment(item.id, "tags", producer=NamedProducer("a, b"))
        assert tags.result(timeout=5).ok
        producer.release.set()
        assert summary.result(timeout=5).ok

    def test_producer_failure(self, mx):
        item = mx.create("note", content="text")
        producer = FailingProducer()
        result = mx.request_enrichment(item.id, "summary", producer=producer).result(timeout=5)

        assert result.status == FAILED
        assert isinstance(result.error, ProducerError)
        assert "model unavailable" in str(result.error)
        assert mx.get_artifact(item.id, "summary") is None
        assert not mx.is_generating(item.id, "summary")

        # The guard was released: a retry runs
        retry = mx.request_enrichment(item.id, "summary", producer=NamedProducer()).result(timeout=5)
        assert retry.ok

    def test_empty_result_is_a_failure(self, mx):
        item = mx.create("note", content="text")
        result = mx.request_enrichment(
            item.id, "summary", producer=NamedProducer("   "),
        ).result(timeout=5)
        assert result.status == FAILED
        assert isinstance(result.error, ProducerError)
        assert mx.get_artifact(item.id, "summary") is None

    def test_configured_producers(self, mx):
        item = mx.create(
            "article",
            title="Python packaging",
            content="Packaging python wheels. Python packaging tools build wheels.",
        )
        summary = mx.request_enrichment(item.id, "summary").result(timeout=5)
        tags = mx.request_enrichment(item.id, "tags").result(timeout=5)

        assert summary.artifact.value.startswith("Packaging python wheels.")
        assert summary.artifact.produced_by == "truncate"
        # Equal counts rank alphabetically
        assert tags.artifact.value.split(", ")[:3] == ["packaging", "python", "wheels"]

    def test_no_producer_for_kind(self, mx):
        item = mx.create("note", content="text")
        with pytest.raises(ProducerError, match="transcript"):
            mx.request_enrichment(item.id, "transcript")

    def test_unknown_entity(self, mx):
        with pytest.raises(KeyError):
            mx.request_enrichment("missing", "summary", producer=NamedProducer())

    def test_sub_keys_are_separate_artifacts(self, mx):
        item = mx.create("image", url="https://example.com/page")
        for url in ("https://img/1.png", "https://img/2.png"):
            mx.request_enrichment(
                item.id, "image_description", url, producer=NamedProducer(f"desc of {url}"),
            ).result(timeout=5)
        artifacts = mx.artifacts(item.id, "image_description")
        assert [a.sub_key for a in artifacts] == ["https://img/1.png", "https://img/2.png"]


class TestDeleteDuringGeneration:
    def test_late_result_for_deleted_entity_is_not_synced(self, mx):
        item = mx.create("note", content="text")
        producer = BlockingProducer()
        future = mx.request_enrichment(item.id, "summary", producer=producer)
        assert producer.started.wait(timeout=5)

        mx.delete_entity(item.id)
        producer.release.set()
        future.result(timeout=5)

        assert [op.kind for op in mx.pending_ops()] == [SyncOpKind.DELETE_ENTITY]
        assert mx.get(item.id) is None

        # Acknowledging the delete purges everything, including the late artifact
        mx.drain()
        assert mx.get(item.id, include_deleted=True) is None
        assert mx.artifacts(item.id) == []

    def test_result_for_purged_entity_is_orphaned(self, mx, remote):
        item = mx.create("note", content="text")
        producer = BlockingProducer()
        future = mx.request_enrichment(item.id, "summary", producer=producer)
        assert producer.started.wait(timeout=5)

        mx.delete_entity(item.id)
        mx.drain()
        assert mx.get(item.id, include_deleted=True) is None

        producer.release.set()
        result = future.result(timeout=5)
        assert result.orphaned
        assert mx.get_artifact(item.id, "summary") is None
        assert mx.pending_ops() == []
        assert not any(ns.startswith("artifacts") for ns, _ in remote.records)

    def test_result_between_delete_ack_and_purge_is_dropped(self, mx, remote):
        item = mx.create("note", content="text")
        mx.drain()
        mx.delete_entity(item.id)

        # The remote acknowledged the delete but the purge hasn't run yet
        [delete_op] = mx._queue.dequeue()
        mx._queue.complete(delete_op.op_id)
        assert mx.get(item.id, include_deleted=True).deleted

        result = mx._orchestrator.generate(item.id, "summary", "-", lambda: "late summary")
        assert result.ok and result.orphaned
        assert mx.pending_ops() == []
        assert mx.get_artifact(item.id, "summary") is None

        mx._on_ack(delete_op)
        assert mx.get(item.id, include_deleted=True) is None
        assert mx.drain()["processed"] == 0
        assert not any(ns.startswith("artifacts") for ns, _ in remote.records)


class TestOrchestrator:
    @pytest.fixture
    def parts(self, tmp_path):
        store = ObservableStore()
        store.set(entity_key("e1"), Entity(id="e1"))
        cache = LocalCache(tmp_path / "cache.db")
        writer = CacheWriter(
            cache, lambda ns: [v.to_dict() for v in store.values(ns)],
        )
        queue = MagicMock()
        guard = GenerationGuard()
        orchestrator = EnrichmentOrchestrator(store, guard, writer, queue)
        yield store, cache, queue, guard, orchestrator
        orchestrator.close()
        cache.close()

    def test_generate_in_calling_thread(self, parts):
        store, cache, queue, guard, orchestrator = parts
        woken = []
        orchestrator._on_enqueued = lambda: woken.append(True)

        result = orchestrator.generate("e1", "tags", "-", lambda: "x, y", produced_by="kw")
        assert result.ok
        assert store.get(artifact_key("e1", "tags")).value == "x, y"
        assert cache.load("artifacts.tags")[0]["produced_by"] == "kw"
        queue.enqueue.assert_called_once()
        assert woken == [True]

    def test_busy_when_guard_held(self, parts):
        _, _, queue, guard, orchestrator = parts
        guard.try_acquire("e1", "summary")
        called = []
        result = orchestrator.generate("e1", "summary", "-", lambda: called.append(1) or "v")
        assert result.busy
        assert called == []
        queue.enqueue.assert_not_called()

    def test_enqueue_failure_rolls_back(self, parts):
        store, cache, queue, guard, orchestrator = parts
        queue.enqueue.side_effect = PersistenceError("queue locked")

        result = orchestrator.generate("e1", "summary", "-", lambda: "value")
        assert result.status == FAILED
        assert isinstance(result.error, PersistenceError)
        assert store.get(artifact_key("e1", "summary")) is None
        assert cache.load("artifacts.summary") == []
        assert not guard.is_in_flight("e1", "summary")

    def test_missing_entity_is_orphaned(self, parts):
        store, _, queue, _, orchestrator = parts
        result = orchestrator.generate("nobody", "summary", "-", lambda: "value")
        assert result.ok and result.orphaned
        assert store.get(artifact_key("nobody", "summary")) is None
        queue.enqueue.assert_not_called()

    def test_submit_to_shut_down_pool_releases_guard(self, tmp_path):
        store = ObservableStore()
        cache = LocalCache(tmp_path / "cache.db")
        guard = GenerationGuard()
        executor = ThreadPoolExecutor(max_workers=1)
        executor.shutdown()
        orchestrator = EnrichmentOrchestrator(
            store, guard, CacheWriter(cache, lambda ns: []), MagicMock(), executor=executor,
        )
        with pytest.raises(RuntimeError):
            orchestrator.submit("e1", "summary", "-", lambda: "v")
        assert not guard.is_in_flight("e1", "summary")
        cache.close()

    def test_tombstoned_entity_gets_no_artifact(self, parts):
        store, _, queue, _, orchestrator = parts
        store.set(entity_key("e1"), Entity(id="e1", deleted=True))
        result = orchestrator.generate("e1", "summary", "-", lambda: "value")
        assert result.ok and result.orphaned
        assert store.get(artifact_key("e1", "summary")) is None
        queue.enqueue.assert_not_called()
