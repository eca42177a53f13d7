import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from dotenv import load_dotenv

from config import settings
from errors import InternalError

# Make sure .env is loaded before LIBRARY_DB_FILE is read below.
load_dotenv()

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE (explicit override)
# 2) library.db in the working directory
DATABASE_FILE = os.environ.get("LIBRARY_DB_FILE") or settings.database_file or "library.db"


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database with rows addressable by column name."""
    conn = sqlite3.connect(db_file or DATABASE_FILE, timeout=settings.database_busy_timeout)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def transaction(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Run a block of statements as one all-or-nothing write transaction.

    ``BEGIN IMMEDIATE`` takes SQLite's writer lock before anything is read, so
    a check made inside the block cannot be invalidated by another writer
    before the block commits. Any exception rolls every statement back.
    """
    conn = get_db_connection(db_file)
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_db_timestamp(value: datetime) -> str:
    """Serialise an aware datetime as UTC ISO-8601 with fixed precision.

    Fixed precision keeps lexical order equal to chronological order.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the users, books and borrow_records tables if they do not exist."""
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                password_hash TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'student' CHECK(role IN ('student', 'admin')),
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                isbn TEXT,
                category TEXT,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'available' CHECK(status IN ('available', 'borrowed')),
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS borrow_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                book_id INTEGER NOT NULL REFERENCES books(id) ON DELETE CASCADE,
                borrowed_at TEXT NOT NULL,
                due_date TEXT NOT NULL,
                returned_at TEXT
            )
        """)

        # At most one open loan per book, whatever the application does.
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_borrow_records_active_book
            ON borrow_records(book_id) WHERE returned_at IS NULL
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrow_records_user ON borrow_records(user_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrow_records_book ON borrow_records(book_id, borrowed_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_status ON books(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_category ON books(category)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_created_at ON books(created_at)")

        conn.commit()
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Create the schema; safe to call on every start-up."""
    create_tables(db_file)
    logger.debug("Database ready at %s", db_file or DATABASE_FILE)


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Report SQLite failures as InternalError after logging them."""
    try:
        yield
    except sqlite3.Error as exc:
        logger.exception("Storage failure during %s", operation)
        raise InternalError("Server error. Please try again.") from exc
