import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console

from auth import AuthService
from config import settings
from errors import LibraryError
from lending import LendingService
from library import Library
from utils.ui_helpers import print_books, print_loans, print_mismatches, set_output_mode

console = Console()

app = typer.Typer(help="Campus library catalogue administration")


def _library(db_file: Optional[str]) -> Library:
    return Library(db_file=db_file)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global options for the CLI (e.g. output mode)."""
    if output:
        set_output_mode(output)


@app.command("books")
def cli_books(
    search: Optional[str] = typer.Option(None, "--search", "-s", help="Title or author contains"),
    category: Optional[str] = typer.Option(None, "--category", "-c"),
    status: Optional[str] = typer.Option(None, "--status", help="available | borrowed"),
    db_file: Optional[str] = typer.Option(None, "--db", help="SQLite database file"),
):
    """List books with their current due dates."""
    try:
        books = _library(db_file).list_books(search=search, category=category, status=status)
    except LibraryError as e:
        print(f"Error: {e.message}")
        raise typer.Exit(code=1)
    print_books(books)


@app.command("loans")
def cli_loans(
    active: bool = typer.Option(False, "--active", help="Only loans that are not returned"),
    db_file: Optional[str] = typer.Option(None, "--db", help="SQLite database file"),
):
    """List borrow records, newest first."""
    lending = LendingService(_library(db_file))
    print_loans(lending.all_loans(active_only=active))


@app.command("check")
def cli_check(db_file: Optional[str] = typer.Option(None, "--db", help="SQLite database file")):
    """Report books whose status disagrees with the borrow records. Exits with 1 on mismatch."""
    mismatches = _library(db_file).find_inconsistencies()
    print_mismatches(mismatches)
    if mismatches:
        raise typer.Exit(code=1)


@app.command("reconcile")
def cli_reconcile(db_file: Optional[str] = typer.Option(None, "--db", help="SQLite database file")):
    """Recompute book status from the borrow records."""
    fixed = _library(db_file).reconcile()
    if fixed:
        print(f"Reconciled {len(fixed)} book(s): {', '.join(str(i) for i in fixed)}")
    else:
        print("Nothing to reconcile.")


@app.command("seed-admin")
def cli_seed_admin(db_file: Optional[str] = typer.Option(None, "--db", help="SQLite database file")):
    """Create the default admin account if no admin exists yet."""
    user = AuthService(_library(db_file).db_file).seed_admin()
    if user:
        print(f"Default admin account created: {user.email}")
    else:
        print("Admin already exists, skipping admin seed.")


@app.command("serve")
def cli_serve(
    host: str = typer.Option(settings.api_host, "--host"),
    port: int = typer.Option(settings.api_port, "--port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Start the HTTP API with uvicorn."""
    url = f"http://{host}:{port}/"
    print(f"Starting API on {url}")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args, check=False)
    except KeyboardInterrupt:
        console.print("[yellow]Server stopped.[/]")


if __name__ == "__main__":
    app()
