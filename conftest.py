import pytest

import database
from accounts import Accounts
from circulation import Circulation
from ledger import Ledger
from library import Library


@pytest.fixture(autouse=True)
def db_file(tmp_path, request, monkeypatch):
    # A fresh database file for every test
    path = str(tmp_path / f"test_{request.node.name}.db")
    monkeypatch.setattr(database, "DATABASE_FILE", path)
    monkeypatch.delenv("LIB_CLI_OUTPUT", raising=False)
    database.initialize_database()
    yield path


@pytest.fixture
def lib():
    return Library()


@pytest.fixture
def accounts():
    return Accounts()


@pytest.fixture
def circulation():
    return Circulation(borrow_limit=5)


@pytest.fixture
def ledger(lib):
    return Ledger(lib)


@pytest.fixture
def make_client(accounts):
    counter = {"n": 0}

    def _make(name=None, password="secret"):
        counter["n"] += 1
        n = counter["n"]
        return accounts.register_client(
            name or f"Client {n}", f"ID{n:04d}", f"+1 555 01{n:02d}", f"client{n}@example.com", password
        )

    return _make
