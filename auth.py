"""Accounts, passwords and bearer tokens.

Passwords are hashed with bcrypt. Tokens are HS256 JWTs carrying the user id
(``sub``) and role; the role in a token is informational only, because every
request reloads the user and takes the role from the users table.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from datetime import timedelta
from typing import Optional, Tuple

import bcrypt
import jwt

import database
from config import settings
from database import get_db_connection, initialize_database, storage_errors, to_db_timestamp, transaction, utc_now
from errors import InvalidInputError, UnauthenticatedError
from user import Principal, Role, User
from utils.validators import EmailValidator, TextValidator

logger = logging.getLogger(__name__)

# bcrypt only looks at the first 72 bytes of a password.
MAX_PASSWORD_BYTES = 72


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=settings.bcrypt_rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def create_access_token(user: User) -> str:
    now = utc_now()
    payload = {
        "sub": str(user.id),
        "role": user.role.value,
        "iat": now,
        "exp": now + timedelta(minutes=settings.jwt_expiration_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> int:
    """Verify a token and return the user id it was issued for."""
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        return int(payload["sub"])
    except jwt.ExpiredSignatureError as exc:
        raise UnauthenticatedError("Invalid or expired token.") from exc
    except (jwt.PyJWTError, KeyError, ValueError) as exc:
        logger.warning("JWT verification error: %s", exc)
        raise UnauthenticatedError("Invalid or expired token.") from exc


class AuthService:
    """Registers users, checks credentials and resolves tokens to principals."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or os.environ.get("LIBRARY_DB_FILE") or database.DATABASE_FILE
        initialize_database(self.db_file)

    def get_user(self, user_id: int) -> Optional[User]:
        with storage_errors("get_user"):
            conn = get_db_connection(self.db_file)
            try:
                row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            finally:
                conn.close()
        return User.from_row(row) if row else None

    def find_user_by_email(self, email: str) -> Optional[User]:
        with storage_errors("find_user_by_email"):
            conn = get_db_connection(self.db_file)
            try:
                row = conn.execute(
                    "SELECT * FROM users WHERE email = ?", (EmailValidator.normalize_email(email),)
                ).fetchone()
            finally:
                conn.close()
        return User.from_row(row) if row else None

    def create_user(self, name: Optional[str], email: Optional[str], password: Optional[str],
                    role: Role = Role.STUDENT) -> User:
        name = TextValidator.normalize(name)
        if not name or not email or not password:
            raise InvalidInputError("Name, email, and password are required.")
        if not EmailValidator.is_valid_email(email):
            raise InvalidInputError("Email address is not valid.")
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise InvalidInputError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")
        email = EmailValidator.normalize_email(email)

        password_hash = hash_password(password)
        try:
            with transaction(self.db_file) as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO users (name, email, password_hash, role, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (name, email, password_hash, role.value, to_db_timestamp(utc_now())),
                )
                user_id = cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            raise InvalidInputError("A user with this email already exists.") from exc
        logger.info("User %s registered as %s", user_id, role.value)
        return self.get_user(user_id)

    def register(self, name: Optional[str], email: Optional[str], password: Optional[str],
                 role: Optional[str] = None) -> Tuple[User, str]:
        """Create an account and log it in. Self-registration yields students unless admin sign-up is enabled."""
        granted = Role.STUDENT
        if role == Role.ADMIN.value and settings.allow_admin_signup:
            granted = Role.ADMIN
        with storage_errors("register"):
            user = self.create_user(name, email, password, granted)
        return user, create_access_token(user)

    def login(self, email: Optional[str], password: Optional[str]) -> Tuple[User, str]:
        if not email or not password:
            raise InvalidInputError("Email and password are required.")
        user = self.find_user_by_email(email)
        if not user or not verify_password(password, user.password_hash):
            raise InvalidInputError("Invalid email or password.")
        return user, create_access_token(user)

    def principal_from_token(self, token: Optional[str]) -> Principal:
        """Resolve a bearer token to the current identity and role of its user."""
        if not token:
            raise UnauthenticatedError("No token provided. Authorization denied.")
        user_id = decode_access_token(token)
        user = self.get_user(user_id)
        if not user:
            raise UnauthenticatedError("Invalid or expired token.")
        return user.principal()

    def seed_admin(self) -> Optional[User]:
        """Create the configured default admin when no admin exists. Returns the new user, if any."""
        with storage_errors("seed_admin"):
            conn = get_db_connection(self.db_file)
            try:
                existing = conn.execute("SELECT id FROM users WHERE role = ? LIMIT 1", (Role.ADMIN.value,)).fetchone()
            finally:
                conn.close()
        if existing:
            logger.info("Admin already exists, skipping admin seed.")
            return None

        try:
            with storage_errors("seed_admin"):
                user = self.create_user(settings.admin_name, settings.admin_email, settings.admin_password,
                                        Role.ADMIN)
        except InvalidInputError as exc:
            # The address is taken by another account, or another process seeded first
            logger.warning("Admin seed skipped for %s: %s", settings.admin_email, exc.message)
            return None
        logger.info("Default admin account created: %s", user.email)
        return user
