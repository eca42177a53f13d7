from __future__ import annotations

from datetime import datetime
from enum import Enum

from database import from_db_timestamp


class BookStatus(str, Enum):
    AVAILABLE = "available"
    BORROWED = "borrowed"


class Book:
    """A single book in the catalogue, optionally with the due date of its open loan."""

    def __init__(self, id: int | None, title: str, author: str, isbn: str | None = None,
                 category: str | None = None, description: str | None = None,
                 status: BookStatus | str = BookStatus.AVAILABLE, created_at: datetime | None = None,
                 current_due_date: datetime | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn
        self.category = category
        self.description = description
        self.status = BookStatus(status)
        self.created_at = created_at
        # Only set when an active loan exists for this book
        self.current_due_date = current_due_date

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"#{self.id} {self.title} by {self.author} ({self.status.value})"

    @property
    def is_available(self) -> bool:
        return self.status is BookStatus.AVAILABLE

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "category": self.category,
            "description": self.description,
            "status": self.status.value,
            "created_at": self.created_at,
            "current_due_date": self.current_due_date,
        }

    @staticmethod
    def from_row(row) -> "Book":
        data = dict(row)
        return Book(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            isbn=data.get("isbn"),
            category=data.get("category"),
            description=data.get("description"),
            status=data.get("status") or BookStatus.AVAILABLE,
            created_at=from_db_timestamp(data.get("created_at")),
            current_due_date=from_db_timestamp(data.get("current_due_date")),
        )
