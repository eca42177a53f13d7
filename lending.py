"""Borrow/return engine.

Keeps ``books.status`` and the open borrow records consistent: a book is
``borrowed`` exactly when one borrow record for it has no ``returned_at``.
Each transition runs in a single ``BEGIN IMMEDIATE`` transaction and moves
the status with a compare-and-swap update, so concurrent requests for the
same book are applied one after another and a losing request changes nothing.
"""

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from book import BookStatus
from config import settings
from database import get_db_connection, storage_errors, transaction, utc_now
from errors import ForbiddenError, InvalidStateError, NotFoundError
from library import Library, get_book_by_id, set_book_status
from loan import Loan, close_loan, create_loan, find_active_loan, list_loans
from user import Principal

logger = logging.getLogger(__name__)


class LendingService:
    """Borrow and return books on behalf of an authenticated principal."""

    def __init__(self, library: Library, clock: Optional[Callable[[], datetime]] = None,
                 loan_period: Optional[timedelta] = None) -> None:
        self.library = library
        self.clock = clock or utc_now
        self.loan_period = loan_period or timedelta(days=settings.loan_period_days)

    @property
    def db_file(self) -> str:
        return self.library.db_file

    def borrow(self, principal: Principal, book_id: int) -> Loan:
        """Lend an available book to the principal and return the new loan.

        Any authenticated role may borrow.
        """
        with storage_errors("borrow"), transaction(self.db_file) as conn:
            book = get_book_by_id(conn, book_id)
            if not book:
                raise NotFoundError("Book not found.")
            if not book.is_available:
                raise InvalidStateError("Book is not available for borrowing.")

            borrowed_at = self.clock()
            due_date = borrowed_at + self.loan_period

            if not set_book_status(conn, book_id, BookStatus.BORROWED, expected=BookStatus.AVAILABLE):
                raise InvalidStateError("Book is not available for borrowing.")
            try:
                loan = create_loan(conn, principal.user_id, book_id, borrowed_at, due_date)
            except sqlite3.IntegrityError as exc:
                if "UNIQUE" not in str(exc):
                    raise
                # Status said available but an open record exists; the partial unique index refused it.
                logger.error("Book %s is marked available but already has an open borrow record", book_id)
                raise InvalidStateError("Book is not available for borrowing.") from exc

        logger.info("User %s borrowed book %s (loan %s, due %s)",
                    principal.user_id, book_id, loan.id, loan.due_date.isoformat())
        return loan

    def return_book(self, principal: Principal, book_id: int) -> Loan:
        """Close the open loan of a book. Only the borrower or an admin may do this."""
        with storage_errors("return"), transaction(self.db_file) as conn:
            loan = find_active_loan(conn, book_id)
            if not loan:
                if not get_book_by_id(conn, book_id):
                    raise NotFoundError("Book not found.")
                raise InvalidStateError("No active borrow record for this book.")

            if not (principal.is_admin or loan.user_id == principal.user_id):
                raise ForbiddenError("You are not allowed to return this book.")

            returned_at = self.clock()
            if not close_loan(conn, loan.id, returned_at):
                raise InvalidStateError("No active borrow record for this book.")
            set_book_status(conn, book_id, BookStatus.AVAILABLE)
            loan.returned_at = returned_at

        logger.info("Book %s returned (loan %s) by user %s as %s",
                    book_id, loan.id, principal.user_id, principal.role.value)
        return loan

    def active_loan(self, book_id: int) -> Optional[Loan]:
        with storage_errors("active_loan"):
            conn = get_db_connection(self.db_file)
            try:
                return find_active_loan(conn, book_id)
            finally:
                conn.close()

    def loans_for(self, principal: Principal, active_only: bool = False) -> List[Loan]:
        """The principal's own borrow records, newest first."""
        with storage_errors("loans_for"):
            conn = get_db_connection(self.db_file)
            try:
                return list_loans(conn, user_id=principal.user_id, active_only=active_only)
            finally:
                conn.close()

    def all_loans(self, active_only: bool = False) -> List[Loan]:
        with storage_errors("all_loans"):
            conn = get_db_connection(self.db_file)
            try:
                return list_loans(conn, active_only=active_only)
            finally:
                conn.close()
