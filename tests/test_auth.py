from datetime import timedelta

import jwt
import pytest

from auth import AuthService, create_access_token, decode_access_token, hash_password, verify_password
from config import settings
from database import transaction, utc_now
from errors import InvalidInputError, UnauthenticatedError
from user import Role


def test_password_hashing():
    hashed = hash_password("s3cret")
    assert hashed != "s3cret"
    assert verify_password("s3cret", hashed)
    assert not verify_password("wrong", hashed)
    assert not verify_password("s3cret", "not-a-bcrypt-hash")


def test_register_creates_student_and_token(accounts):
    user, token = accounts.register("Dana", "Dana@Campus.edu", "pw")

    assert user.role is Role.STUDENT
    assert user.email == "dana@campus.edu"
    assert "password_hash" not in user.to_dict()
    assert decode_access_token(token) == user.id


def test_register_ignores_admin_role_by_default(accounts):
    user, _ = accounts.register("Eve", "eve@campus.edu", "pw", role="admin")
    assert user.role is Role.STUDENT


def test_register_admin_when_signup_enabled(accounts, monkeypatch):
    monkeypatch.setattr(settings, "allow_admin_signup", True)
    user, _ = accounts.register("Frank", "frank@campus.edu", "pw", role="admin")
    assert user.role is Role.ADMIN


@pytest.mark.parametrize("name,email,password", [
    (None, "a@b.co", "pw"),
    ("Name", None, "pw"),
    ("Name", "a@b.co", ""),
    ("Name", "not-an-email", "pw"),
])
def test_register_validates_input(accounts, name, email, password):
    with pytest.raises(InvalidInputError):
        accounts.register(name, email, password)


def test_register_duplicate_email(accounts):
    accounts.register("Gina", "gina@campus.edu", "pw")
    with pytest.raises(InvalidInputError, match="already exists"):
        accounts.register("Gina Again", "GINA@campus.edu", "pw2")


def test_login(accounts):
    registered, _ = accounts.register("Hank", "hank@campus.edu", "letmein")

    user, token = accounts.login("HANK@campus.edu", "letmein")
    assert user.id == registered.id
    assert accounts.principal_from_token(token).user_id == registered.id

    with pytest.raises(InvalidInputError, match="Invalid email or password."):
        accounts.login("hank@campus.edu", "wrong")
    with pytest.raises(InvalidInputError, match="Invalid email or password."):
        accounts.login("nobody@campus.edu", "letmein")


def test_principal_role_comes_from_users_table(accounts):
    user = accounts.create_user("Ivy", "ivy@campus.edu", "pw", Role.ADMIN)
    token = create_access_token(user)

    assert accounts.principal_from_token(token).role is Role.ADMIN

    with transaction(accounts.db_file) as conn:
        conn.execute("UPDATE users SET role = 'student' WHERE id = ?", (user.id,))

    # Same token, but the demotion is visible on the next call
    assert accounts.principal_from_token(token).role is Role.STUDENT


def test_principal_from_bad_tokens(accounts):
    with pytest.raises(UnauthenticatedError, match="No token provided"):
        accounts.principal_from_token(None)
    with pytest.raises(UnauthenticatedError):
        accounts.principal_from_token("garbage")

    forged = jwt.encode({"sub": "1", "exp": utc_now() + timedelta(hours=1)},
                        "another-secret-key-that-is-long-enough", algorithm="HS256")
    with pytest.raises(UnauthenticatedError):
        accounts.principal_from_token(forged)

    expired = jwt.encode({"sub": "1", "exp": utc_now() - timedelta(minutes=1)},
                         settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    with pytest.raises(UnauthenticatedError, match="expired"):
        accounts.principal_from_token(expired)


def test_token_for_deleted_user_is_rejected(accounts):
    user = accounts.create_user("Jo", "jo@campus.edu", "pw")
    token = create_access_token(user)

    with transaction(accounts.db_file) as conn:
        conn.execute("DELETE FROM users WHERE id = ?", (user.id,))

    with pytest.raises(UnauthenticatedError):
        accounts.principal_from_token(token)


def test_seed_admin_is_idempotent(db_file, monkeypatch):
    monkeypatch.setattr(settings, "admin_email", "root@library.local")
    monkeypatch.setattr(settings, "admin_password", "root-pass")
    accounts = AuthService(db_file)

    created = accounts.seed_admin()
    assert created is not None
    assert created.role is Role.ADMIN
    assert accounts.seed_admin() is None

    user, _ = accounts.login("root@library.local", "root-pass")
    assert user.id == created.id


def test_seed_admin_skips_when_email_is_taken(accounts, monkeypatch):
    monkeypatch.setattr(settings, "admin_email", "taken@campus.edu")
    squatter = accounts.create_user("Early Bird", "taken@campus.edu", "pw")

    assert accounts.seed_admin() is None
    assert accounts.find_user_by_email("taken@campus.edu").role is Role.STUDENT
    assert accounts.get_user(squatter.id).role is Role.STUDENT
