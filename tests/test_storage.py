"""
Tests for storage backends, compare-and-swap and transaction support
"""

import threading
import time

import pytest

from compliance_workflows.storage import (
    InMemoryStorage, SQLiteStorage, StorageInterface, create_storage
)


@pytest.fixture(params=["memory", "sqlite"])
def backend(request, tmp_path):
    """Each local backend in turn"""
    if request.param == "memory":
        store = InMemoryStorage()
    else:
        store = SQLiteStorage(tmp_path / "workflows.db")
    yield store
    store.close()


class TestBasicOperations:
    """CRUD behaviour shared by every backend"""

    def test_save_load_exists_delete(self, backend):
        """Test basic CRUD operations"""
        backend.save("records", "r1", {"id": "r1", "name": "first"})

        assert backend.load("records", "r1") == {"id": "r1", "name": "first"}
        assert backend.exists("records", "r1")
        assert not backend.exists("records", "missing")
        assert backend.load("records", "missing") is None

        assert backend.delete("records", "r1")
        assert not backend.delete("records", "r1")
        assert backend.count("records") == 0

    def test_find_matches_all_filters(self, backend):
        """Test find filters on top-level keys including booleans"""
        backend.save("records", "r1", {"id": "r1", "org": "a", "active": True})
        backend.save("records", "r2", {"id": "r2", "org": "a", "active": False})
        backend.save("records", "r3", {"id": "r3", "org": "b", "active": True})

        found = backend.find("records", {"org": "a", "active": True})
        assert [r["id"] for r in found] == ["r1"]
        assert len(backend.find("records", {"org": "a"})) == 2
        assert backend.find("records", {"missing_key": 1}) == []

    def test_loaded_records_are_copies(self, backend):
        """Mutating a loaded record never changes stored data"""
        backend.save("records", "r1", {"id": "r1", "tags": ["x"]})
        loaded = backend.load("records", "r1")
        loaded["tags"].append("y")

        assert backend.load("records", "r1")["tags"] == ["x"]

    def test_clear_table(self, backend):
        """Test clearing a table"""
        backend.save("records", "r1", {"id": "r1"})
        backend.save("records", "r2", {"id": "r2"})
        backend.clear_table("records")
        assert backend.count("records") == 0


class TestCompareAndSwap:
    """Optimistic concurrency primitives"""

    def test_insert_only_when_absent(self, backend):
        """expected_revision=None inserts once"""
        assert backend.compare_and_swap("records", "r1", {"id": "r1", "revision": 1}, None)
        assert not backend.compare_and_swap("records", "r1", {"id": "r1", "revision": 1}, None)

    def test_update_requires_matching_revision(self, backend):
        """A stale revision loses"""
        backend.compare_and_swap("records", "r1", {"id": "r1", "revision": 1, "v": "a"}, None)

        assert backend.compare_and_swap("records", "r1", {"id": "r1", "revision": 2, "v": "b"}, 1)
        assert not backend.compare_and_swap("records", "r1", {"id": "r1", "revision": 2, "v": "c"}, 1)
        assert backend.load("records", "r1")["v"] == "b"

    def test_update_of_missing_record_fails(self, backend):
        """CAS never creates a record when a revision is expected"""
        assert not backend.compare_and_swap("records", "ghost", {"id": "ghost", "revision": 2}, 1)
        assert not backend.exists("records", "ghost")


class TestTransactions:
    """atomic() commits or rolls back as a unit"""

    def test_atomic_commit(self, backend):
        """Test committed writes are visible"""
        with backend.atomic():
            backend.save("records", "r1", {"id": "r1"})
            backend.save("records", "r2", {"id": "r2"})
        assert backend.count("records") == 2

    def test_atomic_rollback(self, backend):
        """Test a failing block leaves no partial writes"""
        backend.save("records", "keep", {"id": "keep"})

        with pytest.raises(RuntimeError):
            with backend.atomic():
                backend.save("records", "r1", {"id": "r1"})
                backend.delete("records", "keep")
                raise RuntimeError("boom")

        assert not backend.exists("records", "r1")
        assert backend.exists("records", "keep")

    def test_rollback_keeps_writes_from_other_threads(self, backend):
        backend.save("records", "seed", {"id": "seed"})
        inside = threading.Event()

        def other_writer():
            inside.wait(timeout=5)
            backend.save("records", "other", {"id": "other"})

        writer = threading.Thread(target=other_writer)
        writer.start()
        with pytest.raises(RuntimeError):
            with backend.atomic():
                backend.save("records", "mine", {"id": "mine"})
                inside.set()
                time.sleep(0.05)
                raise RuntimeError("boom")
        writer.join(timeout=5)

        assert not backend.exists("records", "mine")
        assert backend.load("records", "other") == {"id": "other"}

    def test_nested_blocks_commit_with_the_outermost(self, backend):
        with pytest.raises(RuntimeError):
            with backend.atomic():
                with backend.atomic():
                    backend.save("records", "inner", {"id": "inner"})
                raise RuntimeError("boom")

        assert not backend.exists("records", "inner")

    def test_table_created_inside_rolled_back_block_is_recreated(self, backend):
        with pytest.raises(RuntimeError):
            with backend.atomic():
                backend.save("fresh", "r1", {"id": "r1"})
                raise RuntimeError("boom")

        backend.save("fresh", "r2", {"id": "r2"})
        assert backend.load("fresh", "r2") == {"id": "r2"}
        assert backend.load("fresh", "r1") is None


class TestSQLitePersistence:
    """SQLite data survives reconnects"""

    def test_reopen_database(self, tmp_path):
        """Test records persist across connections"""
        path = tmp_path / "persist.db"
        first = SQLiteStorage(path)
        first.save("records", "r1", {"id": "r1", "revision": 1})
        first.close()

        second = SQLiteStorage(path)
        assert second.load("records", "r1") == {"id": "r1", "revision": 1}
        second.close()


class TestCreateStorage:
    """Database URL parsing"""

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_in_memory_url(self):
        store = create_storage("sqlite://")
        assert isinstance(store, SQLiteStorage)
        assert store.db_path == ":memory:"
        store.close()

    def test_sqlite_relative_and_absolute_paths(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        relative = create_storage("sqlite:///relative.db")
        assert relative.db_path == "relative.db"
        relative.close()

        absolute_path = tmp_path / "absolute.db"
        absolute = create_storage(f"sqlite:///{absolute_path}")
        assert absolute.db_path == str(absolute_path)
        absolute.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError):
            create_storage("mongodb://localhost")

    def test_backends_implement_interface(self):
        assert issubclass(InMemoryStorage, StorageInterface)
        assert issubclass(SQLiteStorage, StorageInterface)
