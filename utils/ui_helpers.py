import os
import json
from typing import Any, Dict, List, Sequence, Tuple
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

# (key, heading) pairs per record kind
BOOK_COLUMNS = [("id", "ID"), ("title", "Title"), ("author", "Author"), ("year", "Year"),
                ("available_copies", "Available"), ("total_copies", "Total")]
COPY_COLUMNS = [("id", "ID"), ("label", "Label"), ("book_title", "Book"), ("status", "Status"),
                ("borrower_name", "Borrower"), ("due_date", "Due")]
REQUEST_COLUMNS = [("id", "ID"), ("client_name", "Client"), ("book_title", "Book"),
                   ("status", "Status"), ("created_at", "Requested")]
PENALTY_COLUMNS = [("id", "ID"), ("client_name", "Client"), ("client_phone", "Phone"), ("due_date", "Due"),
                   ("days_overdue", "Days"), ("daily_rate", "Rate"), ("fee_amount", "Fee")]


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _cell(value: Any) -> str:
    return "" if value is None else str(value)


def print_records(
    records: Sequence[Any],
    columns: List[Tuple[str, str]],
    title: str,
    empty_message: str,
) -> None:
    """Print records (objects with ``to_dict``) in the current output mode.

    - plain: one ``a | b | c`` line per record, or ``empty_message``
    - json: JSON array of the selected columns
    - rich: Rich table
    """
    mode = get_output_mode()
    rows = [record.to_dict() for record in records]

    if mode == "json":
        print(json.dumps([{key: row.get(key) for key, _ in columns} for row in rows], ensure_ascii=False))
        return

    if not rows:
        print(empty_message)
        return

    if mode == "rich":
        table = Table(title=title, show_lines=False, header_style="bold cyan")
        for _, heading in columns:
            table.add_column(heading)
        for row in rows:
            table.add_row(*(_cell(row.get(key)) for key, _ in columns))
        _console.print(table)
    else:
        for row in rows:
            print(" | ".join(_cell(row.get(key)) for key, _ in columns))


def print_books(books: Sequence[Any]) -> None:
    print_records(books, BOOK_COLUMNS, "Books", "No books in library.")


def print_copies(copies: Sequence[Any], empty_message: str = "No book copies found.") -> None:
    print_records(copies, COPY_COLUMNS, "Book copies", empty_message)


def print_requests(requests: Sequence[Any]) -> None:
    print_records(requests, REQUEST_COLUMNS, "Borrow requests", "No borrow requests.")


def print_penalties(penalties: Sequence[Any]) -> None:
    print_records(penalties, PENALTY_COLUMNS, "Penalties", "No penalties.")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print the circulation statistics in the current output mode.
    - plain: one ``Label: value`` line per metric
    - json: JSON object
    - rich: Panel with the metrics
    """
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
        return

    lines = [(key.replace("_", " ").title(), value) for key, value in stats.items()]
    if mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {value}" for label, value in lines)
        _console.print(Panel.fit(content, title="Stats", border_style="blue"))
    else:
        for label, value in lines:
            print(f"{label}: {value}")
