import logging
import os
import sqlite3
from typing import Any, Dict, List, Optional

import database
from book import Book, BookStatus
from database import (get_db_connection, initialize_database, storage_errors, to_db_timestamp,
                      transaction, utc_now)
from errors import InvalidInputError, InvalidStateError, NotFoundError
from loan import find_active_loan
from utils.validators import TextValidator

logger = logging.getLogger(__name__)

# Each book joined with its open loan only; closed loans never contribute a due date.
_BOOK_SELECT = """
    SELECT
        b.id, b.title, b.author, b.isbn, b.category, b.description, b.status, b.created_at,
        br.due_date AS current_due_date
    FROM books b
    LEFT JOIN borrow_records br
        ON br.book_id = b.id
       AND br.returned_at IS NULL
"""

_OPTIONAL_FIELDS = ("isbn", "category", "description")


def get_book_by_id(conn: sqlite3.Connection, book_id: int) -> Optional[Book]:
    row = conn.execute(_BOOK_SELECT + " WHERE b.id = ?", (book_id,)).fetchone()
    return Book.from_row(row) if row else None


def set_book_status(conn: sqlite3.Connection, book_id: int, status: BookStatus,
                    expected: Optional[BookStatus] = None) -> bool:
    """Write a book's status, optionally only if it currently equals ``expected``.

    Returns False when no row was changed (missing book or lost compare-and-swap).
    """
    if expected is None:
        cursor = conn.execute("UPDATE books SET status = ? WHERE id = ?", (status.value, book_id))
    else:
        cursor = conn.execute(
            "UPDATE books SET status = ? WHERE id = ? AND status = ?",
            (status.value, book_id, expected.value),
        )
    return cursor.rowcount == 1


def _parse_status(value: Any) -> BookStatus:
    try:
        return BookStatus(str(value).strip().lower())
    except ValueError as exc:
        raise InvalidInputError("Status must be 'available' or 'borrowed'.") from exc


class Library:
    """Manages the book catalogue and its persistence."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        # An explicit file wins, then LIBRARY_DB_FILE, then the module default.
        self.db_file = db_file or os.environ.get("LIBRARY_DB_FILE") or database.DATABASE_FILE
        initialize_database(self.db_file)

    # ------------------------- Reads ------------------------- #
    def find_book(self, book_id: int) -> Optional[Book]:
        with storage_errors("find_book"):
            conn = get_db_connection(self.db_file)
            try:
                return get_book_by_id(conn, book_id)
            finally:
                conn.close()

    def get_book(self, book_id: int) -> Book:
        book = self.find_book(book_id)
        if not book:
            raise NotFoundError("Book not found.")
        return book

    def list_books(self, search: Optional[str] = None, category: Optional[str] = None,
                   status: Optional[str] = None) -> List[Book]:
        """List books newest first, filtered by title/author substring, category and status."""
        conditions = []
        values: List[Any] = []

        if search:
            conditions.append("(LOWER(b.title) LIKE ? OR LOWER(b.author) LIKE ?)")
            pattern = f"%{search.strip().lower()}%"
            values.extend([pattern, pattern])
        if category:
            conditions.append("LOWER(b.category) = ?")
            values.append(category.strip().lower())
        if status:
            conditions.append("b.status = ?")
            values.append(_parse_status(status).value)

        query = _BOOK_SELECT
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY b.created_at DESC, b.id DESC"

        with storage_errors("list_books"):
            conn = get_db_connection(self.db_file)
            try:
                return [Book.from_row(row) for row in conn.execute(query, values).fetchall()]
            finally:
                conn.close()

    # ------------------------- Admin writes ------------------------- #
    def add_book(self, title: Optional[str], author: Optional[str], isbn: Optional[str] = None,
                 category: Optional[str] = None, description: Optional[str] = None,
                 status: Optional[str] = None) -> Book:
        """Add a book to the catalogue. New books are always available."""
        title = TextValidator.normalize(title)
        author = TextValidator.normalize(author)
        if not title or not author:
            raise InvalidInputError("Title and author are required.")
        if status and _parse_status(status) is not BookStatus.AVAILABLE:
            raise InvalidStateError("A new book cannot be borrowed without a borrow record.")

        with storage_errors("add_book"), transaction(self.db_file) as conn:
            cursor = conn.execute(
                """
                INSERT INTO books (title, author, isbn, category, description, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (title, author, TextValidator.normalize(isbn), TextValidator.normalize(category),
                 TextValidator.normalize(description, collapse_whitespace=False), BookStatus.AVAILABLE.value,
                 to_db_timestamp(utc_now())),
            )
            book = get_book_by_id(conn, cursor.lastrowid)
        logger.info("Book %s added: %s by %s", book.id, book.title, book.author)
        return book

    def update_book(self, book_id: int, changes: Dict[str, Any]) -> Book:
        """Merge a partial update into an existing book.

        Only keys present in ``changes`` are considered. Title and author keep
        their old value when omitted or blank. isbn, category and description
        are cleared by an explicit None or empty string. status is owned by the
        loan ledger: it may be sent only if it matches what the ledger says.
        """
        with storage_errors("update_book"), transaction(self.db_file) as conn:
            original = get_book_by_id(conn, book_id)
            if not original:
                raise NotFoundError("Book not found.")

            # A blank status counts as omitted
            if TextValidator.normalize(changes.get("status")):
                requested = _parse_status(changes["status"])
                derived = BookStatus.BORROWED if find_active_loan(conn, book_id) else BookStatus.AVAILABLE
                if requested is not derived:
                    raise InvalidStateError(
                        f"Status is '{derived.value}' according to the borrow records and cannot be "
                        f"set to '{requested.value}' directly. Use borrow/return instead."
                    )

            title = TextValidator.normalize(changes.get("title")) or original.title
            author = TextValidator.normalize(changes.get("author")) or original.author
            merged = {
                field: (TextValidator.normalize(changes[field], collapse_whitespace=field != "description")
                        if field in changes else getattr(original, field))
                for field in _OPTIONAL_FIELDS
            }

            conn.execute(
                """
                UPDATE books
                SET title = ?, author = ?, isbn = ?, category = ?, description = ?
                WHERE id = ?
                """,
                (title, author, merged["isbn"], merged["category"], merged["description"], book_id),
            )
            book = get_book_by_id(conn, book_id)
        logger.info("Book %s updated", book_id)
        return book

    def remove_book(self, book_id: int) -> None:
        """Delete a book and its closed borrow records. Refused while the book is on loan."""
        with storage_errors("remove_book"), transaction(self.db_file) as conn:
            if not get_book_by_id(conn, book_id):
                raise NotFoundError("Book not found.")
            if find_active_loan(conn, book_id):
                raise InvalidStateError("Book is currently borrowed and cannot be deleted.")
            conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
        logger.info("Book %s deleted", book_id)

    # ------------------------- Consistency ------------------------- #
    def find_inconsistencies(self) -> List[Dict[str, Any]]:
        """Books whose stored status disagrees with their open borrow records."""
        with storage_errors("find_inconsistencies"):
            conn = get_db_connection(self.db_file)
            try:
                rows = conn.execute(
                    """
                    SELECT b.id, b.title, b.status,
                           (SELECT COUNT(*) FROM borrow_records br
                             WHERE br.book_id = b.id AND br.returned_at IS NULL) AS active_loans
                    FROM books b
                    ORDER BY b.id
                    """
                ).fetchall()
            finally:
                conn.close()

        mismatches = []
        for row in rows:
            expected = BookStatus.BORROWED if row["active_loans"] else BookStatus.AVAILABLE
            if row["status"] != expected.value:
                mismatches.append({
                    "id": row["id"],
                    "title": row["title"],
                    "status": row["status"],
                    "expected_status": expected.value,
                    "active_loans": row["active_loans"],
                })
        return mismatches

    def reconcile(self) -> List[int]:
        """Recompute status from the borrow records for every mismatched book."""
        fixed = []
        with storage_errors("reconcile"), transaction(self.db_file) as conn:
            rows = conn.execute(
                """
                SELECT b.id, b.status,
                       EXISTS(SELECT 1 FROM borrow_records br
                               WHERE br.book_id = b.id AND br.returned_at IS NULL) AS on_loan
                FROM books b
                """
            ).fetchall()
            for row in rows:
                expected = BookStatus.BORROWED if row["on_loan"] else BookStatus.AVAILABLE
                if row["status"] != expected.value:
                    set_book_status(conn, row["id"], expected)
                    fixed.append(row["id"])
        if fixed:
            logger.warning("Reconciled status of books %s from borrow records", fixed)
        return fixed
