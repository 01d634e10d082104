"""Tests for the SQLite local cache and write-through writer."""

import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from memex.errors import PersistenceError
from memex.local_cache import CacheWriter, LocalCache, merge_by_updated_at


class TestLocalCache:
    """Tests for the SQLite-backed collection cache."""

    def test_save_and_load(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            cache = LocalCache(Path(tmpdir) / "cache.db")
            written = cache.save("entities", [
                {"id": "b", "updated_at": "2026-01-02T00:00:00.000000Z", "title": "B"},
                {"id": "a", "updated_at": "2026-01-01T00:00:00.000000Z", "title": "A"},
            ])
            assert written == 2
            records = cache.load("entities")
            assert [r["id"] for r in records] == ["a", "b"]
            assert records[1]["title"] == "B"
            assert cache.load("filters") == []
            cache.close()

    def test_save_replaces_whole_namespace(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            cache = LocalCache(Path(tmpdir) / "cache.db")
            cache.save("entities", [{"id": "a"}, {"id": "b"}])
            cache.save("entities", [{"id": "c"}])
            cache.save("filters", [{"id": "current"}])
            assert [r["id"] for r in cache.load("entities")] == ["c"]
            assert cache.count("filters") == 1
            assert cache.namespaces() == ["entities", "filters"]
            cache.close()

    def test_survives_reopen(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "cache.db"
            with LocalCache(path) as cache:
                cache.save("artifacts.summary", [{"id": "e1:-", "value": "héllo"}])
            with LocalCache(path) as cache:
                assert cache.load("artifacts.summary") == [{"id": "e1:-", "value": "héllo"}]

    def test_record_without_id_raises(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            cache = LocalCache(Path(tmpdir) / "cache.db")
            cache.save("entities", [{"id": "keep"}])
            with pytest.raises(PersistenceError):
                cache.save("entities", [{"title": "no id"}])
            # Failed save leaves the previous collection intact
            assert [r["id"] for r in cache.load("entities")] == ["keep"]
            cache.close()

    def test_corrupt_row_skipped(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            cache = LocalCache(Path(tmpdir) / "cache.db")
            cache.save("entities", [{"id": "good"}])
            cache._conn.execute(
                "INSERT INTO records (namespace, id, updated_at, record) VALUES (?, ?, ?, ?)",
                ("entities", "bad", "", "{not json"),
            )
            assert [r["id"] for r in cache.load("entities")] == ["good"]
            cache.close()

    def test_clear(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            cache = LocalCache(Path(tmpdir) / "cache.db")
            cache.save("entities", [{"id": "a"}])
            cache.save("filters", [{"id": "current"}])
            assert cache.clear("entities") == 1
            assert cache.clear() == 1
            cache.close()


class TestMergeByUpdatedAt:
    def test_newer_incoming_wins(self):
        local = [{"id": "a", "updated_at": "2026-01-01", "v": "local"}]
        incoming = [{"id": "a", "updated_at": "2026-01-02", "v": "remote"}]
        merged, taken = merge_by_updated_at(local, incoming)
        assert merged == incoming
        assert taken == ["a"]

    def test_older_or_equal_incoming_loses(self):
        local = [
            {"id": "a", "updated_at": "2026-01-02", "v": "local"},
            {"id": "b", "updated_at": "2026-01-02", "v": "local"},
        ]
        incoming = [
            {"id": "a", "updated_at": "2026-01-01", "v": "remote"},
            {"id": "b", "updated_at": "2026-01-02", "v": "remote"},
        ]
        merged, taken = merge_by_updated_at(local, incoming)
        assert {r["v"] for r in merged} == {"local"}
        assert taken == []

    def test_new_records_added(self):
        merged, taken = merge_by_updated_at([], [{"id": "n", "updated_at": ""}])
        assert taken == ["n"]
        assert len(merged) == 1


class TestCacheWriter:
    def test_flush_writes_snapshot(self, tmp_path):
        cache = LocalCache(tmp_path / "cache.db")
        data = {"entities": [{"id": "a"}]}
        writer = CacheWriter(cache, lambda ns: data[ns])
        assert writer.flush("entities") is True
        assert cache.load("entities") == [{"id": "a"}]
        cache.close()

    def test_failed_flush_marks_dirty_until_next_success(self, tmp_path):
        cache = LocalCache(tmp_path / "cache.db")
        real_save = cache.save
        cache.save = MagicMock(side_effect=PersistenceError("disk full"))
        records = [{"id": "a"}]
        writer = CacheWriter(cache, lambda ns: records)

        assert writer.flush("entities") is False
        assert writer.dirty == {"entities"}

        cache.save = real_save
        records.append({"id": "b"})
        assert writer.flush_dirty() == 0
        assert writer.dirty == set()
        assert [r["id"] for r in cache.load("entities")] == ["a", "b"]
        cache.close()
