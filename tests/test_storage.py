"""
Tests for storage backends and transaction support
"""

import threading
import tempfile
from pathlib import Path

import pytest

from allocation_engine.storage import InMemoryStorage, SQLiteStorage, create_storage
from allocation_engine.exceptions import StorageError


test_data = {
    "id": "record_1",
    "case_id": 100,
    "agent_id": 7,
    "status": "ALLOCATED",
}


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    """Each test runs against both backends"""
    backend = InMemoryStorage() if request.param == "memory" else SQLiteStorage(":memory:")
    yield backend
    backend.close()


class TestBasicOperations:
    """CRUD behaviour shared by both backends"""

    def test_save_load_exists_delete(self, storage):
        """Records round-trip and can be removed"""
        storage.save("allocations", "record_1", test_data)
        assert storage.load("allocations", "record_1") == test_data
        assert storage.exists("allocations", "record_1")
        assert not storage.exists("allocations", "missing")
        assert storage.load("allocations", "missing") is None

        assert storage.delete("allocations", "record_1")
        assert not storage.delete("allocations", "record_1")
        assert storage.count("allocations") == 0

    def test_save_overwrites(self, storage):
        """Saving an existing id replaces the document"""
        storage.save("allocations", "record_1", test_data)
        storage.save("allocations", "record_1", {**test_data, "status": "DEALLOCATED"})
        assert storage.load("allocations", "record_1")["status"] == "DEALLOCATED"
        assert storage.count("allocations") == 1

    def test_load_all_keeps_insertion_order(self, storage):
        """load_all returns records in the order they were first saved"""
        for i in range(5):
            storage.save("events", f"event_{i}", {"id": f"event_{i}", "seq": i})
        assert [r["seq"] for r in storage.load_all("events")] == [0, 1, 2, 3, 4]

    def test_find_by_fields(self, storage):
        """find matches on top-level field equality"""
        storage.save("allocations", "a", {"id": "a", "case_id": 1, "status": "ALLOCATED"})
        storage.save("allocations", "b", {"id": "b", "case_id": 1, "status": "DEALLOCATED"})
        storage.save("allocations", "c", {"id": "c", "case_id": 2, "status": "ALLOCATED"})

        results = storage.find("allocations", {"case_id": 1, "status": "ALLOCATED"})
        assert [r["id"] for r in results] == ["a"]
        assert len(storage.find("allocations", {"case_id": 1})) == 2

    def test_find_matches_booleans_and_none(self, storage):
        """Boolean and null values can be used as filters"""
        storage.save("outbox", "e1", {"id": "e1", "delivered": False, "error": None})
        storage.save("outbox", "e2", {"id": "e2", "delivered": True, "error": "boom"})

        assert [r["id"] for r in storage.find("outbox", {"delivered": False})] == ["e1"]
        assert [r["id"] for r in storage.find("outbox", {"error": None})] == ["e1"]

    def test_clear_table(self, storage):
        """clear_table empties the table"""
        storage.save("cases", "1", {"id": "1"})
        storage.save("cases", "2", {"id": "2"})
        storage.clear_table("cases")
        assert storage.count("cases") == 0

    def test_loaded_records_are_copies(self, storage):
        """Mutating a loaded record does not change storage"""
        storage.save("cases", "1", {"id": "1", "tags": ["a"]})
        loaded = storage.load("cases", "1")
        loaded["tags"].append("b")
        assert storage.load("cases", "1")["tags"] == ["a"]


class TestCompareAndSwap:
    """Conditional writes used for case ownership"""

    def test_insert_when_expected_none(self, storage):
        """A missing record counts as field=None"""
        assert storage.compare_and_swap("owners", "100", "agent_id", None, {"id": "100", "agent_id": 1})
        assert storage.load("owners", "100")["agent_id"] == 1

    def test_swap_requires_matching_value(self, storage):
        """The write only happens when the current value matches"""
        storage.save("owners", "100", {"id": "100", "agent_id": 1})

        assert not storage.compare_and_swap("owners", "100", "agent_id", 2, {"id": "100", "agent_id": 3})
        assert storage.load("owners", "100")["agent_id"] == 1

        assert storage.compare_and_swap("owners", "100", "agent_id", 1, {"id": "100", "agent_id": 3})
        assert storage.load("owners", "100")["agent_id"] == 3

    def test_expected_none_does_not_overwrite_owner(self, storage):
        """Inserting fails when someone already owns the record"""
        storage.save("owners", "100", {"id": "100", "agent_id": 1})
        assert not storage.compare_and_swap("owners", "100", "agent_id", None, {"id": "100", "agent_id": 2})
        assert storage.load("owners", "100")["agent_id"] == 1

    def test_only_one_concurrent_winner(self, storage):
        """Of many threads racing for the same record, exactly one wins"""
        results = []
        lock = threading.Lock()

        def claim(agent_id):
            won = storage.compare_and_swap("owners", "100", "agent_id", None, {"id": "100", "agent_id": agent_id})
            with lock:
                results.append(won)

        threads = [threading.Thread(target=claim, args=(i,)) for i in range(1, 11)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1


class TestTransactions:
    """Atomic blocks and savepoints"""

    def test_atomic_commits(self, storage):
        """Writes inside a successful block are kept"""
        with storage.atomic():
            storage.save("cases", "1", {"id": "1"})
            assert storage.in_transaction()
        assert not storage.in_transaction()
        assert storage.exists("cases", "1")

    def test_atomic_rolls_back_on_error(self, storage):
        """An exception undoes every write in the block"""
        storage.save("cases", "1", {"id": "1", "bucket": "B1"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("cases", "1", {"id": "1", "bucket": "B3"})
                storage.save("cases", "2", {"id": "2"})
                storage.delete("cases", "1")
                raise RuntimeError("boom")

        assert storage.load("cases", "1") == {"id": "1", "bucket": "B1"}
        assert not storage.exists("cases", "2")

    def test_nested_rollback_keeps_outer_writes(self, storage):
        """An inner block acts as a savepoint"""
        with storage.atomic():
            storage.save("cases", "outer", {"id": "outer"})
            with pytest.raises(ValueError):
                with storage.atomic():
                    storage.save("cases", "inner", {"id": "inner"})
                    raise ValueError("inner failure")
            assert storage.in_transaction()

        assert storage.exists("cases", "outer")
        assert not storage.exists("cases", "inner")

    def test_outer_rollback_discards_committed_inner(self, storage):
        """Committing a savepoint does not survive an outer rollback"""
        storage.save("cases", "1", {"id": "1", "dpd": 10})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("cases", "1", {"id": "1", "dpd": 20})
                storage.save("cases", "1", {"id": "1", "dpd": 30})
                raise RuntimeError("outer failure")

        assert storage.load("cases", "1")["dpd"] == 10

    def test_in_transaction_is_per_thread(self, storage):
        """Another thread does not see the owner's transaction"""
        seen = []
        with storage.atomic():
            worker = threading.Thread(target=lambda: seen.append(storage.in_transaction()))
            worker.start()
            worker.join()
        assert seen == [False]


class TestSQLiteStorage:
    """File-backed SQLite specifics"""

    def test_data_survives_reopen(self):
        """Records persist across connections"""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "allocations.db"
            storage = SQLiteStorage(db_path)
            storage.save("cases", "1", {"id": "1", "bucket": "B2"})
            storage.close()

            reopened = SQLiteStorage(db_path)
            assert reopened.load("cases", "1") == {"id": "1", "bucket": "B2"}
            reopened.close()

    def test_invalid_table_name_raises_storage_error(self):
        """SQLite failures surface as StorageError"""
        storage = SQLiteStorage(":memory:")
        with pytest.raises(StorageError):
            storage.save("bad table", "1", {"id": "1"})
        storage.close()


class TestCreateStorage:
    """Backend selection from a URL"""

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_urls(self):
        assert isinstance(create_storage("sqlite://"), SQLiteStorage)
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = create_storage(f"sqlite:///{temp_dir}/alloc.db")
            assert isinstance(storage, SQLiteStorage)
            storage.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/alloc")
