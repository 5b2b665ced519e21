import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from config import settings

logger = logging.getLogger(__name__)

# Tests and the CLI repoint this before touching the database.
DATABASE_FILE = settings.database_file


def get_db_connection(autocommit: bool = False) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Every operation opens its own connection and closes it when done; rows
    come back as ``sqlite3.Row`` so callers can read columns by name.
    """
    conn = sqlite3.connect(
        DATABASE_FILE,
        timeout=settings.database_busy_timeout_ms / 1000,
        isolation_level=None if autocommit else "DEFERRED",
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute(f"PRAGMA busy_timeout={int(settings.database_busy_timeout_ms)};")
    return conn


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Run a unit of work inside one write transaction.

    ``BEGIN IMMEDIATE`` takes the database write lock before the first read,
    so rows read inside the block cannot change under us until COMMIT.
    Any exception rolls back every write made in the block.
    """
    conn = get_db_connection(autocommit=True)
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def create_tables() -> None:
    """Create the schema if it does not exist yet."""
    conn = get_db_connection()
    cursor = conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS admins (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS books (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            author TEXT NOT NULL,
            year INTEGER NOT NULL,
            total_copies INTEGER NOT NULL DEFAULT 0,
            assigned_copies INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            CHECK (assigned_copies >= 0 AND assigned_copies <= total_copies)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS clients (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            id_number TEXT UNIQUE NOT NULL,
            phone TEXT NOT NULL,
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'active',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    # One row per physical copy; borrower and due date exist only while assigned.
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS book_numbers (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            book_id INTEGER NOT NULL,
            label TEXT UNIQUE NOT NULL,
            status TEXT NOT NULL DEFAULT 'available' CHECK(status IN ('available', 'assigned')),
            borrower_id INTEGER,
            due_date TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE,
            FOREIGN KEY (borrower_id) REFERENCES clients(id),
            CHECK ((status = 'assigned') = (borrower_id IS NOT NULL AND due_date IS NOT NULL))
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS borrow_requests (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            client_id INTEGER NOT NULL,
            book_id INTEGER NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending', 'approved', 'rejected')),
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (client_id) REFERENCES clients(id) ON DELETE CASCADE,
            FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
        )
    """)

    # Ledger tables are free-standing: names and phones are snapshots.
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS penalties (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            client_name TEXT NOT NULL,
            client_phone TEXT NOT NULL,
            due_date TEXT NOT NULL,
            days_overdue INTEGER NOT NULL,
            fee_amount REAL NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS payments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            client_name TEXT NOT NULL,
            client_phone TEXT NOT NULL,
            amount_paid REAL NOT NULL,
            date_paid TIMESTAMP NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    # Columns added after the first release
    cursor.execute("PRAGMA table_info(penalties)")
    penalty_columns = [column[1] for column in cursor.fetchall()]
    if "daily_rate" not in penalty_columns:
        cursor.execute("ALTER TABLE penalties ADD COLUMN daily_rate REAL")
        cursor.execute(
            "UPDATE penalties SET daily_rate = CASE WHEN days_overdue > 0 "
            "THEN fee_amount / days_overdue ELSE fee_amount END WHERE daily_rate IS NULL"
        )

    cursor.execute("PRAGMA table_info(payments)")
    payment_columns = [column[1] for column in cursor.fetchall()]
    if "penalty_id" not in payment_columns:
        # Informational back-reference only; the penalty row is deleted once paid.
        cursor.execute("ALTER TABLE payments ADD COLUMN penalty_id INTEGER")

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_book_numbers_book_id ON book_numbers(book_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_book_numbers_status ON book_numbers(status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_book_numbers_borrower ON book_numbers(borrower_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_book_numbers_due_date ON book_numbers(due_date)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrow_requests_status ON borrow_requests(status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrow_requests_client_book ON borrow_requests(client_id, book_id, status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title_author ON books(title, author)")

    conn.commit()
    conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Point the module at ``db_file`` (when given) and make sure the schema exists."""
    global DATABASE_FILE
    if db_file:
        DATABASE_FILE = db_file
    create_tables()
    logger.debug("Database ready at %s", DATABASE_FILE)
