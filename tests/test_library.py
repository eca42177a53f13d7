import sqlite3

import pytest

import library as library_module
from book import BookStatus
from database import transaction
from errors import InternalError, InvalidInputError, InvalidStateError, NotFoundError
from library import Library, set_book_status


def test_add_list_and_find(lib):
    assert lib.list_books() == []

    book = lib.add_book("Ulysses", "James Joyce", isbn="9780199535675", category="Fiction")

    assert book.id is not None
    assert book.status is BookStatus.AVAILABLE
    assert book.current_due_date is None
    assert lib.find_book(book.id).title == "Ulysses"
    assert len(lib.list_books()) == 1


def test_add_book_requires_title_and_author(lib):
    with pytest.raises(InvalidInputError, match="Title and author are required."):
        lib.add_book("", "Someone")
    with pytest.raises(InvalidInputError):
        lib.add_book("A Title", "   ")
    assert lib.list_books() == []


def test_add_book_cannot_start_borrowed(lib):
    with pytest.raises(InvalidStateError):
        lib.add_book("X", "Y", status="borrowed")
    assert lib.add_book("X", "Y", status="available").status is BookStatus.AVAILABLE


def test_persistence(db_file):
    Library(db_file=db_file).add_book("Sapiens", "Yuval Noah Harari")

    lib2 = Library(db_file=db_file)
    assert len(lib2.list_books()) == 1
    assert lib2.list_books()[0].title == "Sapiens"


def test_get_book_not_found(lib):
    assert lib.find_book(999) is None
    with pytest.raises(NotFoundError):
        lib.get_book(999)


def test_list_books_filters(lib):
    lib.add_book("Dune", "Frank Herbert", category="Science Fiction")
    lib.add_book("Emma", "Jane Austen", category="Classics")
    lib.add_book("Persuasion", "Jane Austen", category="classics")

    assert {b.title for b in lib.list_books(search="austen")} == {"Emma", "Persuasion"}
    assert [b.title for b in lib.list_books(search="DUN")] == ["Dune"]
    assert {b.title for b in lib.list_books(category="CLASSICS")} == {"Emma", "Persuasion"}
    assert len(lib.list_books(status="available")) == 3
    assert lib.list_books(status="borrowed") == []


def test_list_books_newest_first(lib):
    first = lib.add_book("First", "A")
    second = lib.add_book("Second", "B")
    assert [b.id for b in lib.list_books()] == [second.id, first.id]


def test_list_books_rejects_unknown_status(lib):
    with pytest.raises(InvalidInputError):
        lib.list_books(status="lost")


def test_update_book_partial(lib):
    book = lib.add_book("Original Title", "Original Author", isbn="111", category="Old")

    updated = lib.update_book(book.id, {"title": "Only Title Changed"})
    assert updated.title == "Only Title Changed"
    assert updated.author == "Original Author"
    assert updated.isbn == "111"
    assert updated.category == "Old"

    updated = lib.update_book(book.id, {"author": "Only Author Changed"})
    assert updated.title == "Only Title Changed"
    assert updated.author == "Only Author Changed"


def test_update_book_blank_title_keeps_old_value(lib):
    book = lib.add_book("Keep Me", "Author")
    updated = lib.update_book(book.id, {"title": "", "author": None})
    assert updated.title == "Keep Me"
    assert updated.author == "Author"


def test_update_book_explicit_empty_clears_optional_fields(lib):
    book = lib.add_book("T", "A", isbn="123", category="Cat", description="Desc")
    updated = lib.update_book(book.id, {"isbn": None, "category": ""})
    assert updated.isbn is None
    assert updated.category is None
    assert updated.description == "Desc"


def test_description_keeps_line_breaks(lib):
    book = lib.add_book("  The   Hobbit ", "Tolkien", description="  First paragraph.\n\nSecond one. ")
    assert book.title == "The Hobbit"
    assert book.description == "First paragraph.\n\nSecond one."

    updated = lib.update_book(book.id, {"description": "Line one\nLine two"})
    assert updated.description == "Line one\nLine two"


def test_update_book_not_found(lib):
    with pytest.raises(NotFoundError):
        lib.update_book(42, {"title": "New Title"})


def test_update_book_cannot_change_status(lib, lending, student):
    book = lib.add_book("Loaned", "Author")
    with pytest.raises(InvalidStateError):
        lib.update_book(book.id, {"status": "borrowed"})

    lending.borrow(student, book.id)
    with pytest.raises(InvalidStateError):
        lib.update_book(book.id, {"status": "available", "title": "Renamed"})

    # Rejected update leaves everything untouched
    current = lib.get_book(book.id)
    assert current.title == "Loaned"
    assert current.status is BookStatus.BORROWED

    # Sending the status the ledger already implies is harmless
    assert lib.update_book(book.id, {"status": "borrowed", "title": "Renamed"}).title == "Renamed"


def test_remove_book(lib):
    book = lib.add_book("Test", "Author")
    lib.remove_book(book.id)
    assert lib.find_book(book.id) is None
    with pytest.raises(NotFoundError):
        lib.remove_book(book.id)


def test_remove_borrowed_book_is_refused(lib, lending, student):
    book = lib.add_book("Busy", "Author")
    lending.borrow(student, book.id)
    with pytest.raises(InvalidStateError):
        lib.remove_book(book.id)

    lending.return_book(student, book.id)
    lib.remove_book(book.id)
    assert lib.find_book(book.id) is None


def test_reconcile_repairs_drifted_status(lib, lending, student):
    on_loan = lib.add_book("On loan", "A")
    idle = lib.add_book("Idle", "B")
    lending.borrow(student, on_loan.id)

    # Simulate drift written behind the engine's back
    with transaction(lib.db_file) as conn:
        set_book_status(conn, on_loan.id, BookStatus.AVAILABLE)
        set_book_status(conn, idle.id, BookStatus.BORROWED)

    mismatches = {m["id"]: m for m in lib.find_inconsistencies()}
    assert mismatches[on_loan.id]["expected_status"] == "borrowed"
    assert mismatches[idle.id]["expected_status"] == "available"

    assert sorted(lib.reconcile()) == sorted([on_loan.id, idle.id])
    assert lib.find_inconsistencies() == []
    assert lib.get_book(on_loan.id).status is BookStatus.BORROWED
    assert lib.get_book(idle.id).status is BookStatus.AVAILABLE


def test_blank_status_is_treated_as_omitted(lib):
    book = lib.add_book("Form Post", "Author")
    updated = lib.update_book(book.id, {"title": "Renamed", "status": "  "})
    assert updated.title == "Renamed"
    assert updated.status is BookStatus.AVAILABLE


def test_read_failures_surface_as_internal_error(lib, monkeypatch):
    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(library_module, "get_db_connection", locked)
    with pytest.raises(InternalError):
        lib.list_books()
    with pytest.raises(InternalError):
        lib.find_book(1)
    with pytest.raises(InternalError):
        lib.find_inconsistencies()
