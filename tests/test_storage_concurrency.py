"""
Test suite for storage backends and the optimistic concurrency guard

Covers compare-and-swap on each local backend, atomic rollback, grouped
commits and racing writers.
"""

import threading
from dataclasses import dataclass
from typing import Any, Dict

import pytest

from arrears_core.concurrency import Change, ConcurrencyGuard
from arrears_core.errors import ConflictError
from arrears_core.storage import InMemoryStorage, SQLiteStorage, create_storage


@dataclass
class Record:
    id: str
    value: int = 0
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "value": self.value, "version": self.version}


@pytest.fixture(params=["memory", "sqlite"])
def backend(request):
    """Each local backend in turn"""
    if request.param == "memory":
        store = InMemoryStorage()
    else:
        store = SQLiteStorage(":memory:")
    yield store
    store.close()


class TestCompareAndSwap:
    """Test the versioned write primitive"""

    def test_insert_starts_at_version_one(self, backend):
        version = backend.compare_and_swap("items", "a", None, {"id": "a", "value": 1})

        assert version == 1
        assert backend.load("items", "a")["version"] == 1

    def test_insert_existing_id_conflicts(self, backend):
        backend.compare_and_swap("items", "a", None, {"id": "a"})

        with pytest.raises(ConflictError) as exc_info:
            backend.compare_and_swap("items", "a", None, {"id": "a"})
        assert exc_info.value.actual_version == 1

    def test_update_with_matching_version(self, backend):
        backend.compare_and_swap("items", "a", None, {"id": "a", "value": 1})

        version = backend.compare_and_swap("items", "a", 1, {"id": "a", "value": 2})

        assert version == 2
        assert backend.load("items", "a")["value"] == 2

    def test_stale_version_conflicts_without_writing(self, backend):
        backend.compare_and_swap("items", "a", None, {"id": "a", "value": 1})
        backend.compare_and_swap("items", "a", 1, {"id": "a", "value": 2})

        with pytest.raises(ConflictError) as exc_info:
            backend.compare_and_swap("items", "a", 1, {"id": "a", "value": 99})

        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2
        assert backend.load("items", "a")["value"] == 2

    def test_update_missing_record_conflicts(self, backend):
        with pytest.raises(ConflictError):
            backend.compare_and_swap("items", "ghost", 3, {"id": "ghost"})

    def test_find_filters_on_top_level_keys(self, backend):
        backend.save("items", "a", {"id": "a", "kind": "x"})
        backend.save("items", "b", {"id": "b", "kind": "y"})

        assert [r["id"] for r in backend.find("items", {"kind": "y"})] == ["b"]
        assert backend.count("items") == 2


class TestAtomic:
    """Test all-or-nothing groups"""

    def test_rollback_discards_every_write(self, backend):
        backend.compare_and_swap("items", "a", None, {"id": "a", "value": 1})

        with pytest.raises(RuntimeError):
            with backend.atomic():
                backend.compare_and_swap("items", "a", 1, {"id": "a", "value": 2})
                backend.compare_and_swap("items", "b", None, {"id": "b"})
                raise RuntimeError("boom")

        assert backend.load("items", "a")["value"] == 1
        assert backend.load("items", "a")["version"] == 1
        assert backend.load("items", "b") is None

    def test_nested_blocks_join_outer(self, backend):
        with backend.atomic():
            backend.compare_and_swap("items", "a", None, {"id": "a"})
            with backend.atomic():
                backend.compare_and_swap("items", "b", None, {"id": "b"})

        assert backend.exists("items", "a")
        assert backend.exists("items", "b")


class TestConcurrencyGuard:
    """Test guard commits on entities"""

    def test_commit_updates_entity_version(self, backend):
        guard = ConcurrencyGuard(backend)
        record = Record(id="r1", value=1)

        guard.insert("records", record)
        assert record.version == 1

        record.value = 2
        guard.commit("records", record, record.version)
        assert record.version == 2

    def test_conflict_leaves_entity_untouched(self, backend):
        guard = ConcurrencyGuard(backend)
        record = Record(id="r1")
        guard.insert("records", record)

        stale = Record(id="r1", value=5, version=1)
        record.value = 3
        guard.commit("records", record, 1)

        with pytest.raises(ConflictError):
            guard.commit("records", stale, stale.version)
        assert stale.version == 1
        assert backend.load("records", "r1")["value"] == 3

    def test_commit_all_rolls_back_on_conflict(self, backend):
        guard = ConcurrencyGuard(backend)
        first = Record(id="r1")
        second = Record(id="r2")
        guard.insert("records", first)
        guard.insert("records", second)

        first.value = 10
        second.value = 20
        with pytest.raises(ConflictError):
            guard.commit_all([
                Change("records", first, 1),
                Change("records", second, 7),
            ])

        assert backend.load("records", "r1")["value"] == 0
        assert backend.load("records", "r1")["version"] == 1
        assert first.version == 1

    def test_commit_all_updates_every_version(self, backend):
        guard = ConcurrencyGuard(backend)
        first = Record(id="r1")
        second = Record(id="r2")

        versions = guard.commit_all([
            Change("records", first, None),
            Change("records", second, None),
        ])

        assert versions == [1, 1]
        assert first.version == 1 and second.version == 1

    def test_racing_writers_exactly_one_wins(self):
        storage = InMemoryStorage()
        guard = ConcurrencyGuard(storage)
        guard.insert("records", Record(id="r1"))

        barrier = threading.Barrier(2)
        outcomes = []
        lock = threading.Lock()

        def writer(value):
            record = Record(id="r1", value=value, version=1)
            barrier.wait()
            try:
                guard.commit("records", record, 1)
                result = "ok"
            except ConflictError:
                result = "conflict"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=writer, args=(v,)) for v in (1, 2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["conflict", "ok"]
        assert storage.load("records", "r1")["version"] == 2


class TestCreateStorage:
    """Test the backend factory"""

    def test_memory_backend(self):
        assert isinstance(create_storage("memory"), InMemoryStorage)

    def test_sqlite_backend(self, tmp_path):
        store = create_storage("sqlite", sqlite_path=str(tmp_path / "arrears.db"))
        try:
            assert isinstance(store, SQLiteStorage)
        finally:
            store.close()

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_storage("cassandra")
