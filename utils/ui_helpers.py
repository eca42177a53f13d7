import json
import os
from datetime import datetime
from typing import Any, Dict, List

from rich.console import Console
from rich.table import Table

# Environment variable that controls CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _fmt(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M UTC")
    return str(value)


def print_books(books: List[Any]) -> None:
    """Print books in the current output mode.
    - plain: '#id Title by Author [status]' lines, or 'No books in library.'
    - json: JSON array
    - rich: Rich table
    """
    if not books:
        print("No books in library.")
        return

    mode = get_output_mode()
    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], default=str, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Category")
        table.add_column("Status")
        table.add_column("Due")
        for b in books:
            status_style = "green" if b.status.value == "available" else "yellow"
            table.add_row(str(b.id), b.title, b.author, _fmt(b.category),
                          f"[{status_style}]{b.status.value}[/]", _fmt(b.current_due_date))
        _console.print(table)
    else:
        for b in books:
            line = f"#{b.id} {b.title} by {b.author} [{b.status.value}]"
            if b.current_due_date:
                line += f" due {_fmt(b.current_due_date)}"
            print(line)


def print_loans(loans: List[Any]) -> None:
    if not loans:
        print("No borrow records.")
        return

    mode = get_output_mode()
    if mode == "json":
        print(json.dumps([l.to_dict() for l in loans], default=str, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📖 Borrow records", header_style="bold cyan")
        for column in ("Loan", "Book", "User", "Borrowed", "Due", "Returned"):
            table.add_column(column)
        for l in loans:
            table.add_row(str(l.id), str(l.book_id), str(l.user_id), _fmt(l.borrowed_at),
                          _fmt(l.due_date), _fmt(l.returned_at))
        _console.print(table)
    else:
        for l in loans:
            state = f"returned {_fmt(l.returned_at)}" if l.returned_at else f"due {_fmt(l.due_date)}"
            print(f"Loan {l.id}: book #{l.book_id} -> user {l.user_id}, {state}")


def print_mismatches(mismatches: List[Dict[str, Any]]) -> None:
    if not mismatches:
        print("All book statuses match the borrow records.")
        return

    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(mismatches, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="⚠️  Status mismatches", header_style="bold red")
        for column in ("ID", "Title", "Stored", "Expected", "Open loans"):
            table.add_column(column)
        for m in mismatches:
            table.add_row(str(m["id"]), m["title"], m["status"], m["expected_status"], str(m["active_loans"]))
        _console.print(table)
    else:
        for m in mismatches:
            print(f"#{m['id']} {m['title']}: status '{m['status']}', expected '{m['expected_status']}'")
