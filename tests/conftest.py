"""
Shared fixtures for the account ledger tests
"""

import pytest

from account_ledger.repository import AccountRepository
from account_ledger.storage import InMemoryStorage, SQLiteStorage


@pytest.fixture(params=["memory", "sqlite"])
def repository(request, tmp_path):
    """AccountRepository over each embedded storage backend"""
    if request.param == "memory":
        storage = InMemoryStorage()
    else:
        storage = SQLiteStorage(tmp_path / "accounts.db")
    yield AccountRepository(storage)
    storage.close()
