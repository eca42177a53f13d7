"""Loan ledger: borrow records and the statements that read and write them.

Every function takes an open connection so the engine can compose ledger
writes with catalogue writes inside a single transaction.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import List, Optional

from database import from_db_timestamp, to_db_timestamp


class Loan:
    """A borrow record linking a user to a book until it is returned."""

    def __init__(self, id: int, user_id: int, book_id: int, borrowed_at: datetime,
                 due_date: datetime, returned_at: datetime | None = None) -> None:
        self.id = id
        self.user_id = user_id
        self.book_id = book_id
        self.borrowed_at = borrowed_at
        self.due_date = due_date
        self.returned_at = returned_at

    @property
    def is_active(self) -> bool:
        return self.returned_at is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "borrowed_at": self.borrowed_at,
            "due_date": self.due_date,
            "returned_at": self.returned_at,
        }

    @staticmethod
    def from_row(row) -> "Loan":
        return Loan(
            id=row["id"],
            user_id=row["user_id"],
            book_id=row["book_id"],
            borrowed_at=from_db_timestamp(row["borrowed_at"]),
            due_date=from_db_timestamp(row["due_date"]),
            returned_at=from_db_timestamp(row["returned_at"]),
        )


_LOAN_COLUMNS = "id, user_id, book_id, borrowed_at, due_date, returned_at"


def find_active_loan(conn: sqlite3.Connection, book_id: int) -> Optional[Loan]:
    """Return the open loan for a book, newest first if more than one were ever open."""
    row = conn.execute(
        f"""
        SELECT {_LOAN_COLUMNS} FROM borrow_records
        WHERE book_id = ? AND returned_at IS NULL
        ORDER BY borrowed_at DESC, id DESC
        LIMIT 1
        """,
        (book_id,),
    ).fetchone()
    return Loan.from_row(row) if row else None


def get_loan(conn: sqlite3.Connection, loan_id: int) -> Optional[Loan]:
    row = conn.execute(f"SELECT {_LOAN_COLUMNS} FROM borrow_records WHERE id = ?", (loan_id,)).fetchone()
    return Loan.from_row(row) if row else None


def create_loan(conn: sqlite3.Connection, user_id: int, book_id: int,
                borrowed_at: datetime, due_date: datetime) -> Loan:
    cursor = conn.execute(
        """
        INSERT INTO borrow_records (user_id, book_id, borrowed_at, due_date)
        VALUES (?, ?, ?, ?)
        """,
        (user_id, book_id, to_db_timestamp(borrowed_at), to_db_timestamp(due_date)),
    )
    return Loan(
        id=cursor.lastrowid,
        user_id=user_id,
        book_id=book_id,
        borrowed_at=borrowed_at,
        due_date=due_date,
    )


def close_loan(conn: sqlite3.Connection, loan_id: int, returned_at: datetime) -> bool:
    """Set returned_at on an open loan. Returns False if the loan was already closed."""
    cursor = conn.execute(
        "UPDATE borrow_records SET returned_at = ? WHERE id = ? AND returned_at IS NULL",
        (to_db_timestamp(returned_at), loan_id),
    )
    return cursor.rowcount == 1


def list_loans(conn: sqlite3.Connection, user_id: Optional[int] = None,
               book_id: Optional[int] = None, active_only: bool = False) -> List[Loan]:
    conditions = []
    values: list = []
    if user_id is not None:
        conditions.append("user_id = ?")
        values.append(user_id)
    if book_id is not None:
        conditions.append("book_id = ?")
        values.append(book_id)
    if active_only:
        conditions.append("returned_at IS NULL")

    query = f"SELECT {_LOAN_COLUMNS} FROM borrow_records"
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += " ORDER BY borrowed_at DESC, id DESC"
    return [Loan.from_row(row) for row in conn.execute(query, values).fetchall()]
