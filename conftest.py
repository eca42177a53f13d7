import os

import pytest

from auth import AuthService
from config import settings
from lending import LendingService
from library import Library
from user import Role


@pytest.fixture(autouse=True)
def fast_password_hashing(monkeypatch):
    # bcrypt's minimum cost keeps the suite quick
    monkeypatch.setattr(settings, "bcrypt_rounds", 4)


@pytest.fixture
def db_file(tmp_path, request):
    # Unique database file per test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def lib(db_file):
    lib = Library(db_file=db_file)
    yield lib
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def accounts(lib):
    return AuthService(lib.db_file)


@pytest.fixture
def lending(lib):
    return LendingService(lib)


@pytest.fixture
def student(accounts):
    return accounts.create_user("Alice Student", "alice@campus.edu", "alice-pass").principal()


@pytest.fixture
def other_student(accounts):
    return accounts.create_user("Bob Student", "bob@campus.edu", "bob-pass").principal()


@pytest.fixture
def admin(accounts):
    return accounts.create_user("Carol Admin", "carol@campus.edu", "carol-pass", Role.ADMIN).principal()
