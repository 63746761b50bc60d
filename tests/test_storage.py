"""
Tests for the storage backends
"""

import pytest
from decimal import Decimal

from loan_servicing.storage import InMemoryStorage, SQLiteStorage, create_storage


@pytest.fixture(params=["memory", "sqlite"])
def backend(request, tmp_path):
    if request.param == "memory":
        storage = InMemoryStorage()
    else:
        storage = SQLiteStorage(str(tmp_path / "test.db"))
    yield storage
    storage.close()


class TestStorageBackends:
    """Behaviour shared by every backend"""

    def test_save_and_load(self, backend):
        """Test saving and loading a record"""
        backend.save("loans", "L1", {'id': "L1", 'principal': Decimal('1000.50'), 'status': "ACTIVE"})

        record = backend.load("loans", "L1")
        assert record['principal'] == "1000.50"
        assert backend.exists("loans", "L1")
        assert backend.load("loans", "missing") is None

    def test_records_are_copies(self, backend):
        """Test loaded records are copies"""
        data = {'id': "L1", 'tags': ["a"]}
        backend.save("loans", "L1", data)
        data['tags'].append("b")

        loaded = backend.load("loans", "L1")
        loaded['tags'].append("c")
        assert backend.load("loans", "L1")['tags'] == ["a"]

    def test_find_and_count(self, backend):
        """Test filtering and counting records"""
        backend.save("loans", "L1", {'id': "L1", 'status': "ACTIVE"})
        backend.save("loans", "L2", {'id': "L2", 'status': "CLOSED"})
        backend.save("loans", "L3", {'id': "L3", 'status': "ACTIVE"})

        assert {r['id'] for r in backend.find("loans", {'status': "ACTIVE"})} == {"L1", "L3"}
        assert backend.find("loans", {'missing': 1}) == []
        assert backend.count("loans") == 3

    def test_delete_and_clear(self, backend):
        """Test deleting one record and clearing a table"""
        backend.save("loans", "L1", {'id': "L1"})
        backend.save("loans", "L2", {'id': "L2"})

        assert backend.delete("loans", "L1")
        assert not backend.delete("loans", "L1")
        backend.clear_table("loans")
        assert backend.count("loans") == 0

    def test_atomic_commit(self, backend):
        """Test an atomic block commits all writes"""
        with backend.atomic():
            backend.save("loan_versions", "L1:000001", {'id': "L1:000001"})
            backend.save("loans", "L1", {'id': "L1", 'current_version': 1})

        assert backend.load("loans", "L1")['current_version'] == 1
        assert backend.exists("loan_versions", "L1:000001")

    def test_atomic_rollback(self, backend):
        """Test a failing atomic block rolls back all writes"""
        backend.save("loans", "L1", {'id': "L1", 'current_version': 1})

        with pytest.raises(RuntimeError):
            with backend.atomic():
                backend.save("loan_versions", "L1:000002", {'id': "L1:000002"})
                backend.save("loans", "L1", {'id': "L1", 'current_version': 2})
                raise RuntimeError("fail before commit")

        assert backend.load("loans", "L1")['current_version'] == 1
        assert not backend.exists("loan_versions", "L1:000002")


class TestCreateStorage:
    """Test backend selection from a URL"""

    def test_memory(self):
        """Test the memory URL selects in-memory storage"""
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite(self, tmp_path):
        """Test a sqlite URL selects SQLite storage"""
        storage = create_storage(f"sqlite:///{tmp_path / 'loans.db'}")
        assert isinstance(storage, SQLiteStorage)
        storage.close()

    def test_unsupported(self):
        """Test an unknown URL scheme is rejected"""
        with pytest.raises(ValueError, match="Unsupported database URL"):
            create_storage("postgresql://localhost/loans")
