"""Tests for the durable coalescing sync queue."""

import sqlite3
import tempfile
from pathlib import Path

import pytest

from memex.sync_queue import SyncQueue
from memex.types import Artifact, ArtifactKind, Entity, Membership, Space, SyncOp, SyncOpKind


def upsert(id: str, title: str = "") -> SyncOp:
    return SyncOp.upsert_entity(Entity(id=id, title=title))


def summary(entity_id: str, value: str = "s") -> SyncOp:
    return SyncOp.upsert_artifact(Artifact(entity_id, ArtifactKind.SUMMARY, "-", value))


def member(entity_id: str, space_id: str) -> SyncOp:
    return SyncOp.upsert_membership(Membership(entity_id, space_id))


@pytest.fixture
def queue(tmp_path):
    q = SyncQueue(tmp_path / "sync_queue.db", max_attempts=3, backoff_base=0.0,
                  backoff_max=0.0, jitter=False)
    yield q
    q.close()


class TestEnqueueDequeue:
    def test_enqueue_and_count(self, queue):
        assert queue.count() == 0
        queue.enqueue(upsert("a"))
        queue.enqueue(upsert("b"))
        assert queue.count() == 2

    def test_dequeue_returns_oldest_first(self, queue):
        for id in ("first", "second", "third"):
            queue.enqueue(upsert(id))
        ops = queue.dequeue(limit=2)
        assert [op.target_id for op in ops] == ["first", "second"]
        assert all(op.status == "processing" for op in ops)

    def test_dequeue_claims_ops(self, queue):
        queue.enqueue(upsert("a"))
        queue.enqueue(upsert("b"))
        assert [op.target_id for op in queue.dequeue(limit=1)] == ["a"]
        assert [op.target_id for op in queue.dequeue(limit=1)] == ["b"]
        assert queue.dequeue(limit=1) == []

    def test_dequeue_increments_attempts(self, queue):
        queue.enqueue(upsert("a"))
        op = queue.dequeue()[0]
        assert op.attempts == 1
        queue.fail(op.op_id, "timeout")
        assert queue.dequeue()[0].attempts == 2

    def test_complete_removes_op(self, queue):
        op = queue.enqueue(upsert("a"))
        queue.dequeue()
        queue.complete(op.op_id)
        assert queue.count() == 0
        assert queue.get(op.op_id) is None

    def test_payload_round_trips(self, queue):
        queue.enqueue(upsert("a", title="Ünïcode"))
        op = queue.dequeue()[0]
        assert op.kind is SyncOpKind.UPSERT_ENTITY
        assert op.payload["title"] == "Ünïcode"


class TestCoalescing:
    def test_upsert_then_delete_leaves_only_delete(self, queue):
        queue.enqueue(upsert("k"))
        queue.enqueue(upsert("k", title="again"))
        queue.enqueue(SyncOp.delete_entity("k"))
        ops = queue.pending()
        assert len(ops) == 1
        assert ops[0].kind is SyncOpKind.DELETE_ENTITY

    def test_newer_upsert_replaces_queued_one(self, queue):
        queue.enqueue(upsert("k", title="v1"))
        queue.enqueue(upsert("k", title="v2"))
        ops = queue.pending()
        assert len(ops) == 1
        assert ops[0].payload["title"] == "v2"

    def test_delete_entity_discards_artifact_ops(self, queue):
        queue.enqueue(upsert("k"))
        queue.enqueue(summary("k"))
        queue.enqueue(summary("other"))
        queue.enqueue(SyncOp.delete_entity("k"))
        kinds = sorted((op.kind.value, op.entity_id) for op in queue.pending())
        assert kinds == [("delete-entity", "k"), ("upsert-artifact", "other")]

    def test_upsert_after_delete_is_discarded(self, queue):
        queue.enqueue(SyncOp.delete_entity("k"))
        assert queue.enqueue(summary("k")) is None
        assert queue.enqueue(upsert("k")) is None
        assert [op.kind for op in queue.pending()] == [SyncOpKind.DELETE_ENTITY]

    def test_in_flight_op_is_not_replaced(self, queue):
        queue.enqueue(upsert("k", title="v1"))
        in_flight = queue.dequeue()[0]
        queue.enqueue(upsert("k", title="v2"))

        ops = queue.pending()
        assert [op.status for op in ops] == ["processing", "pending"]
        # The newer op waits until the in-flight one resolves
        assert queue.dequeue() == []
        queue.complete(in_flight.op_id)
        assert queue.dequeue()[0].payload["title"] == "v2"

    def test_failed_op_is_replaced(self, queue):
        queue.enqueue(upsert("k", title="v1"))
        op = queue.dequeue()[0]
        queue.fail(op.op_id, "rejected", retryable=False)
        assert len(queue.list_failed()) == 1
        queue.enqueue(upsert("k", title="v2"))
        assert queue.list_failed() == []
        assert queue.count() == 1


class TestSpaceCoalescing:
    def test_delete_space_discards_membership_ops(self, queue):
        queue.enqueue(SyncOp.upsert_space(Space(id="s", name="S")))
        queue.enqueue(member("a", "s"))
        queue.enqueue(member("b", "s"))
        queue.enqueue(member("a", "other"))
        queue.enqueue(SyncOp.delete_space("s"))
        targets = sorted(op.target for op in queue.pending())
        assert targets == ["memberships/a:other", "spaces/s"]
        assert queue.ops_for_space("s")[0].kind is SyncOpKind.DELETE_SPACE

    def test_membership_after_delete_space_is_discarded(self, queue):
        queue.enqueue(SyncOp.delete_space("s"))
        assert queue.enqueue(member("a", "s")) is None
        assert queue.enqueue(SyncOp.upsert_space(Space(id="s", name="S"))) is None
        assert queue.count() == 1

    def test_delete_entity_discards_membership_ops(self, queue):
        queue.enqueue(member("a", "s"))
        queue.enqueue(SyncOp.delete_entity("a"))
        assert [op.kind for op in queue.pending()] == [SyncOpKind.DELETE_ENTITY]
        assert queue.enqueue(member("a", "s")) is None

    def test_delete_space_keeps_entity_ops(self, queue):
        queue.enqueue(upsert("a"))
        queue.enqueue(SyncOp.delete_space("s"))
        assert queue.count() == 2

    def test_membership_removal_replaces_add(self, queue):
        queue.enqueue(member("a", "s"))
        queue.enqueue(SyncOp.delete_membership(Membership("a", "s")))
        assert [op.kind for op in queue.pending()] == [SyncOpKind.DELETE_MEMBERSHIP]


class TestDequeueEligibility:
    def test_delete_entity_waits_for_in_flight_artifact(self, queue):
        queue.enqueue(upsert("k"))
        queue.enqueue(summary("k"))
        claimed = queue.dequeue()
        assert len(claimed) == 2

        queue.enqueue(SyncOp.delete_entity("k"))
        assert queue.dequeue() == []
        for op in claimed:
            queue.complete(op.op_id)
        assert queue.dequeue()[0].kind is SyncOpKind.DELETE_ENTITY

    def test_delete_space_waits_for_in_flight_membership(self, queue):
        queue.enqueue(member("a", "s"))
        [claimed] = queue.dequeue()

        queue.enqueue(SyncOp.delete_space("s"))
        assert queue.dequeue() == []
        queue.complete(claimed.op_id)
        [op] = queue.dequeue()
        assert op.kind is SyncOpKind.DELETE_SPACE
        assert op.space_id == "s"

    def test_backoff_defers_retry(self, tmp_path):
        with SyncQueue(tmp_path / "q.db", backoff_base=30.0, jitter=False) as queue:
            queue.enqueue(upsert("a"))
            op = queue.dequeue()[0]
            assert queue.fail(op.op_id, "timeout") == "pending"
            assert queue.count() == 1
            assert queue.dequeue() == []
            assert queue.stats()["next_retry"] is not None

    def test_backoff_delay_curve(self, tmp_path):
        with SyncQueue(tmp_path / "q.db", backoff_base=30.0, backoff_max=100.0,
                       jitter=False) as queue:
            assert [queue.backoff_delay(n) for n in (1, 2, 3, 4)] == [30.0, 60.0, 100.0, 100.0]
            queue.jitter = True
            for _ in range(20):
                assert 15.0 <= queue.backoff_delay(1) <= 30.0


class TestDeadLetter:
    def test_exhausted_op_moves_to_failed(self, queue):
        op = queue.enqueue(upsert("a"))
        statuses = []
        for _ in range(3):
            claimed = queue.dequeue()
            assert [c.op_id for c in claimed] == [op.op_id]
            statuses.append(queue.fail(op.op_id, "503"))
        assert statuses == ["pending", "pending", "failed"]
        assert queue.dequeue() == []
        failed = queue.list_failed()
        assert len(failed) == 1
        assert failed[0].attempts == 3
        assert failed[0].last_error == "503"
        assert queue.count() == 0

    def test_non_retryable_fails_immediately(self, queue):
        op = queue.enqueue(upsert("a"))
        queue.dequeue()
        assert queue.fail(op.op_id, "400 bad request", retryable=False) == "failed"

    def test_retry_failed_resets(self, queue):
        op = queue.enqueue(upsert("a"))
        queue.dequeue()
        queue.fail(op.op_id, "gave up", retryable=False)
        assert queue.retry_failed() == 1
        claimed = queue.dequeue()
        assert claimed[0].attempts == 1
        assert claimed[0].last_error is None

    def test_fail_missing_op(self, queue):
        assert queue.fail("nope", "x") == "missing"


class TestDurability:
    def test_ops_survive_reopen(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "sync_queue.db"
            with SyncQueue(path) as queue:
                queue.enqueue(upsert("a"))
                queue.enqueue(summary("a"))
            with SyncQueue(path) as queue:
                assert queue.count() == 2
                assert [op.kind for op in queue.dequeue()] == [
                    SyncOpKind.UPSERT_ENTITY, SyncOpKind.UPSERT_ARTIFACT,
                ]

    def test_claims_from_dead_process_recovered(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "sync_queue.db"
            with SyncQueue(path) as queue:
                queue.enqueue(upsert("a"))
                queue.dequeue()
                # Pretend another process held the claim and crashed
                queue._conn.execute("UPDATE sync_ops SET claimed_by = '999999999'")
            with SyncQueue(path) as queue:
                assert queue.stats()["processing"] == 0
                assert [op.target_id for op in queue.dequeue()] == ["a"]

    def test_claims_with_same_pid_recovered(self, tmp_path):
        # A restarted process can get the PID of the one that held the claim
        path = tmp_path / "sync_queue.db"
        with SyncQueue(path) as queue:
            queue.enqueue(upsert("a"))
            assert len(queue.dequeue()) == 1
        with SyncQueue(path) as queue:
            assert queue.stats()["processing"] == 0
            [op] = queue.dequeue()
            assert op.target_id == "a"
            assert op.attempts == 2

    def test_older_table_gains_space_column(self, tmp_path):
        path = tmp_path / "sync_queue.db"
        conn = sqlite3.connect(str(path))
        conn.execute("""
            CREATE TABLE sync_ops (
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
                retry_after TEXT
            )
        """)
        conn.execute("""
            INSERT INTO sync_ops (op_id, kind, namespace, target_id, entity_id, enqueued_at)
            VALUES ('op1', 'upsert-entity', 'entities', 'a', 'a', '2026-01-01T00:00:00.000000Z')
        """)
        conn.commit()
        conn.close()

        with SyncQueue(path) as queue:
            [old] = queue.pending()
            assert old.target == "entities/a"
            assert old.space_id is None
            queue.enqueue(member("a", "s"))
            assert queue.ops_for_space("s")[0].target == "memberships/a:s"


class TestStats:
    def test_stats(self, queue):
        queue.enqueue(upsert("a"))
        queue.enqueue(summary("a"))
        op = queue.enqueue(upsert("b"))
        stats = queue.stats()
        assert stats["pending"] == 3
        assert stats["by_kind"] == {"upsert-entity": 2, "upsert-artifact": 1}
        assert queue.ops_for_entity("a")[0].target == "entities/a"

        queue.dequeue(limit=1)
        queue.fail(op.op_id, "x", retryable=False)
        stats = queue.stats()
        assert stats["processing"] == 1
        assert stats["failed"] == 1
        assert queue.clear() == 3
