import os
import subprocess
import sys
from datetime import date, timedelta
from functools import wraps
from typing import Optional

import typer

import database
from accounts import Accounts
from circulation import Circulation
from config import configure_logging, settings
from errors import LibraryError, ValidationError
from ledger import Ledger
from library import Library
from utils.ui_helpers import (
    get_output_mode,
    print_books,
    print_copies,
    print_penalties,
    print_requests,
    print_stats_result,
    set_output_mode,
)

library = Library()
accounts = Accounts()
circulation = Circulation()
ledger = Ledger(library)

app = typer.Typer(help="Library circulation admin CLI")


def handle_errors(func):
    """Turn domain errors into ``Error: <message>`` and exit code 1."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ValidationError as e:
            print(f"Error: {e.message}")
            for field, messages in e.errors.items():
                for message in messages:
                    print(f"  {field}: {message}")
            raise typer.Exit(code=1)
        except LibraryError as e:
            print(f"Error: {e.message}")
            raise typer.Exit(code=1)
    return wrapper


def _say(message: str) -> None:
    # json mode keeps stdout machine-readable
    if get_output_mode() != "json":
        print(message)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file to use"),
):
    """Global options (output mode, database file)."""
    if output:
        set_output_mode(output)
    configure_logging("WARNING")
    database.initialize_database(db)


@app.command("init-db")
def cli_init_db():
    """Create the schema (safe to run repeatedly)."""
    print(f"Database ready at {database.DATABASE_FILE}")


@app.command("create-admin")
@handle_errors
def cli_create_admin(
    name: str,
    email: str,
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
):
    """Create a staff account that can sign in to the API."""
    admin = accounts.register_admin(name, email, password)
    print(f"Admin {admin.email} created (id {admin.id}).")


@app.command("add-book")
@handle_errors
def cli_add_book(
    title: str,
    author: str,
    year: int,
    copies: int = typer.Option(1, "--copies", "-c", help="Number of copies to label"),
    prefix: Optional[str] = typer.Option(None, "--prefix", help="Label prefix (default BK<id>-)"),
    suffix: Optional[str] = typer.Option(None, "--suffix", help="Label suffix"),
):
    """Add a title and generate its labelled copies."""
    book = library.create_book(title, author, year, copies, label_prefix=prefix, label_suffix=suffix)
    print(f"Successfully added: {book.title} by {book.author} ({book.total_copies} copies, id {book.id})")


@app.command("books")
def cli_books(search: Optional[str] = typer.Option(None, "--search", "-s", help="Title or author filter")):
    """List catalogue titles with their availability."""
    print_books(library.list_books(search))


@app.command("copies")
@handle_errors
def cli_copies(
    book_id: Optional[int] = typer.Option(None, "--book-id", "-b"),
    status: Optional[str] = typer.Option(None, "--status", help="available | assigned"),
    search: Optional[str] = typer.Option(None, "--search", "-s", help="Label filter"),
):
    """List physical copies."""
    print_copies(library.list_copies(book_id=book_id, status=status, search=search))


@app.command("requests")
@handle_errors
def cli_requests(
    status: Optional[str] = typer.Option("pending", "--status", help="pending | approved | rejected | all"),
    search: Optional[str] = typer.Option(None, "--search", "-s"),
    page: int = typer.Option(1, "--page", "-p"),
):
    """List borrow requests, newest first."""
    result = circulation.list_requests(
        status=None if status == "all" else status, search=search, page=page
    )
    print_requests(result["items"])
    if result["total_pages"] > 1:
        _say(f"Page {result['page']} of {result['total_pages']} ({result['total']} requests)")


@app.command("approve")
@handle_errors
def cli_approve(
    request_id: int,
    copy_id: int,
    due: Optional[str] = typer.Option(None, "--due", help="Return date YYYY-MM-DD (default: loan period from today)"),
):
    """Approve a pending request by handing over a specific copy."""
    due_date = due or (date.today() + timedelta(days=settings.default_loan_days)).isoformat()
    request = circulation.approve(request_id, copy_id, due_date)
    print(f"Request {request.id} approved: {request.book_title} for {request.client_name}, due {due_date}.")


@app.command("reject")
@handle_errors
def cli_reject(request_id: int):
    """Reject a pending request."""
    request = circulation.reject(request_id)
    print(f"Request {request.id} rejected.")


@app.command("collect")
@handle_errors
def cli_collect(copy_id: int):
    """Mark a copy as returned to the shelf."""
    copy = library.collect_copy(copy_id)
    print(f"Copy {copy.label} collected.")


@app.command("overdue")
def cli_overdue(almost: bool = typer.Option(False, "--almost", help="Include copies due within the warning window")):
    """List overdue (or almost overdue) copies."""
    if almost:
        print_copies(library.list_almost_overdue_copies(), "No copies are almost overdue.")
    else:
        print_copies(library.list_overdue_copies(), "No overdue copies.")


@app.command("penalties")
def cli_penalties():
    """List recorded penalties."""
    print_penalties(ledger.list_penalties())


@app.command("refresh-penalties")
def cli_refresh_penalties():
    """Recompute days overdue and fees as of today."""
    penalties = ledger.refresh_penalties()
    _say(f"Refreshed {len(penalties)} penalties.")
    print_penalties(penalties)


@app.command("stats")
def cli_stats():
    """Show circulation statistics."""
    print_stats_result(library.get_statistics())


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Start the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = port or int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    # the API reads its database path from the environment
    env = dict(os.environ, LIBRARY_DB_FILE=database.DATABASE_FILE)
    subprocess.run(args, env=env)


if __name__ == "__main__":
    app()
