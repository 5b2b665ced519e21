import logging
import sqlite3
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from config import settings
from database import get_db_connection, transaction
from errors import ConflictError, NotFoundError, ValidationError
from models import Book, BookNumber, CopyStatus
from utils.validators import FieldErrors

logger = logging.getLogger(__name__)

_COPY_SELECT = """
    SELECT bn.*, b.title AS book_title, c.name AS borrower_name, c.phone AS borrower_phone
    FROM book_numbers bn
    JOIN books b ON b.id = bn.book_id
    LEFT JOIN clients c ON c.id = bn.borrower_id
"""


class Library:
    """Catalog store: book titles and their physical copies."""

    # ------------------------- Books ------------------------- #
    def list_books(self, search: Optional[str] = None) -> List[Book]:
        conn = get_db_connection()
        try:
            if search:
                cursor = conn.execute(
                    "SELECT * FROM books WHERE title LIKE ? OR author LIKE ? ORDER BY title",
                    (f"%{search}%", f"%{search}%"),
                )
            else:
                cursor = conn.execute("SELECT * FROM books ORDER BY title")
            return [Book.from_row(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_book(self, book_id: int) -> Book:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFoundError("Book", book_id)
        return Book.from_row(row)

    def create_book(
        self,
        title: str,
        author: str,
        year: int,
        total_copies: int,
        label_prefix: Optional[str] = None,
        label_suffix: Optional[str] = None,
    ) -> Book:
        """Add a title and generate one labelled copy per ``total_copies``.

        Labels are ``prefix + n + suffix`` for n = 1..total_copies. The book and
        all of its copies are written in one transaction.
        """
        check = FieldErrors()
        title = check.text("title", title)
        author = check.text("author", author)
        check.integer_range("year", year, 1000, date.today().year)
        check.integer_range("total_copies", total_copies, 0)
        check.raise_if_any()

        with transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO books (title, author, year, total_copies, assigned_copies) VALUES (?, ?, ?, ?, 0)",
                (title, author, year, total_copies),
            )
            book_id = cursor.lastrowid
            prefix = label_prefix[: settings.label_max_part] if label_prefix else f"BK{book_id}-"
            suffix = label_suffix[: settings.label_max_part] if label_suffix else ""
            labels = [f"{prefix}{i}{suffix}" for i in range(1, total_copies + 1)]
            try:
                conn.executemany(
                    "INSERT INTO book_numbers (book_id, label, status) VALUES (?, ?, 'available')",
                    [(book_id, label) for label in labels],
                )
            except sqlite3.IntegrityError as e:
                raise ValidationError.single("label", "A generated copy label is already in use.") from e
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()

        logger.info("Book %s created with %d copies", book_id, total_copies)
        return Book.from_row(row)

    def update_book(
        self,
        book_id: int,
        *,
        title: Optional[str] = None,
        author: Optional[str] = None,
        year: Optional[int] = None,
    ) -> Book:
        """Edit the descriptive fields. The copy count follows the copy rows and is not editable here."""
        check = FieldErrors()
        title = check.text("title", title, required=False)
        author = check.text("author", author, required=False)
        check.integer_range("year", year, 1000, date.today().year, required=False)
        check.raise_if_any()

        with transaction() as conn:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
            if row is None:
                raise NotFoundError("Book", book_id)
            book = Book.from_row(row)
            conn.execute(
                "UPDATE books SET title = ?, author = ?, year = ?, "
                "updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (
                    title or book.title,
                    author or book.author,
                    year if year is not None else book.year,
                    book_id,
                ),
            )
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()

        logger.info("Book %s updated", book_id)
        return Book.from_row(row)

    def delete_book(self, book_id: int) -> None:
        """Delete a title; its copies and borrow requests go with it."""
        with transaction() as conn:
            cursor = conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
            if cursor.rowcount == 0:
                raise NotFoundError("Book", book_id)
        logger.info("Book %s deleted", book_id)

    def browse_available_books(self, search: Optional[str] = None) -> List[Book]:
        """Titles with at least one copy on the shelf, for the client catalogue."""
        query = "SELECT * FROM books WHERE total_copies - assigned_copies > 0"
        params: List[Any] = []
        if search:
            query += " AND (title LIKE ? OR author LIKE ?)"
            params += [f"%{search}%", f"%{search}%"]
        query += " ORDER BY title"
        conn = get_db_connection()
        try:
            return [Book.from_row(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    # ------------------------- Copies ------------------------- #
    def list_copies(
        self,
        book_id: Optional[int] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
        borrower_id: Optional[int] = None,
    ) -> List[BookNumber]:
        if status is not None and status not in CopyStatus.ALL:
            raise ValidationError.single("status", "The selected status is invalid.")
        clauses: List[str] = []
        params: List[Any] = []
        if book_id is not None:
            clauses.append("bn.book_id = ?")
            params.append(book_id)
        if status:
            clauses.append("bn.status = ?")
            params.append(status)
        if search:
            clauses.append("bn.label LIKE ?")
            params.append(f"%{search}%")
        if borrower_id is not None:
            clauses.append("bn.borrower_id = ?")
            params.append(borrower_id)
        query = _COPY_SELECT
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY bn.book_id, bn.label"
        return self._query_copies(query, params)

    def list_available_copies_for_book(self, book_id: int) -> List[BookNumber]:
        self.get_book(book_id)
        return self.list_copies(book_id=book_id, status=CopyStatus.AVAILABLE)

    def list_overdue_copies(self, today: Optional[date] = None) -> List[BookNumber]:
        today = today or date.today()
        return self._query_copies(
            _COPY_SELECT + " WHERE bn.status = 'assigned' AND bn.due_date < ? ORDER BY bn.due_date",
            [today.isoformat()],
        )

    def list_almost_overdue_copies(self, today: Optional[date] = None) -> List[BookNumber]:
        today = today or date.today()
        cutoff = today + timedelta(days=settings.almost_overdue_days)
        return self._query_copies(
            _COPY_SELECT + " WHERE bn.status = 'assigned' AND bn.due_date <= ? ORDER BY bn.due_date",
            [cutoff.isoformat()],
        )

    def get_copy(self, copy_id: int) -> BookNumber:
        copies = self._query_copies(_COPY_SELECT + " WHERE bn.id = ?", [copy_id])
        if not copies:
            raise NotFoundError("Book number", copy_id)
        return copies[0]

    def create_copy(self, book_id: int, label: str) -> BookNumber:
        """Add one more shelf copy to an existing title."""
        check = FieldErrors()
        label = check.text("label", label)
        check.raise_if_any()

        with transaction() as conn:
            if conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone() is None:
                raise ValidationError.single("book_id", "The selected book_id is invalid.")
            try:
                cursor = conn.execute(
                    "INSERT INTO book_numbers (book_id, label, status) VALUES (?, ?, 'available')",
                    (book_id, label),
                )
            except sqlite3.IntegrityError as e:
                raise ValidationError.single("label", "The label has already been taken.") from e
            conn.execute(
                "UPDATE books SET total_copies = total_copies + 1, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (book_id,),
            )
            copy_id = cursor.lastrowid

        logger.info("Book number %s created for book %s", copy_id, book_id)
        return self.get_copy(copy_id)

    def update_copy(self, copy_id: int, label: str) -> BookNumber:
        check = FieldErrors()
        label = check.text("label", label)
        check.raise_if_any()

        with transaction() as conn:
            try:
                cursor = conn.execute(
                    "UPDATE book_numbers SET label = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (label, copy_id),
                )
            except sqlite3.IntegrityError as e:
                raise ValidationError.single("label", "The label has already been taken.") from e
            if cursor.rowcount == 0:
                raise NotFoundError("Book number", copy_id)

        logger.info("Book number %s relabelled", copy_id)
        return self.get_copy(copy_id)

    def delete_copy(self, copy_id: int) -> None:
        with transaction() as conn:
            row = conn.execute("SELECT * FROM book_numbers WHERE id = ?", (copy_id,)).fetchone()
            if row is None:
                raise NotFoundError("Book number", copy_id)
            if row["status"] == CopyStatus.ASSIGNED:
                raise ConflictError("An assigned copy cannot be deleted; collect it first.")
            conn.execute("DELETE FROM book_numbers WHERE id = ?", (copy_id,))
            conn.execute(
                "UPDATE books SET total_copies = MAX(total_copies - 1, assigned_copies), "
                "updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (row["book_id"],),
            )
        logger.info("Book number %s deleted", copy_id)

    def assign_copy(self, copy_id: int, borrower_id: int, due_date, today: Optional[date] = None) -> BookNumber:
        """Hand a copy directly to a client, bypassing the request queue."""
        check = FieldErrors()
        due = check.date_not_before("date_to_be_returned", due_date, today or date.today())
        check.raise_if_any()

        with transaction() as conn:
            row = conn.execute("SELECT book_id FROM book_numbers WHERE id = ?", (copy_id,)).fetchone()
            if row is None:
                raise NotFoundError("Book number", copy_id)
            if conn.execute("SELECT 1 FROM clients WHERE id = ?", (borrower_id,)).fetchone() is None:
                raise ValidationError.single("assigned_to", "The selected assigned_to is invalid.")
            cursor = conn.execute(
                "UPDATE book_numbers SET status = 'assigned', borrower_id = ?, due_date = ?, "
                "updated_at = CURRENT_TIMESTAMP WHERE id = ? AND status = 'available'",
                (borrower_id, due.isoformat(), copy_id),
            )
            if cursor.rowcount == 0:
                logger.warning("Assignment refused: book number %s is not available", copy_id)
                raise ConflictError("This book copy is currently not available for assignment.")
            conn.execute(
                "UPDATE books SET assigned_copies = assigned_copies + 1, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (row["book_id"],),
            )

        logger.info("Book number %s assigned to client %s until %s", copy_id, borrower_id, due)
        return self.get_copy(copy_id)

    def collect_copy(self, copy_id: int) -> BookNumber:
        """Mark a copy as returned.

        The copy is always reset; the book's assigned counter only moves when
        the copy was actually out.
        """
        with transaction() as conn:
            row = conn.execute("SELECT book_id, status FROM book_numbers WHERE id = ?", (copy_id,)).fetchone()
            if row is None:
                raise NotFoundError("Book number", copy_id)
            conn.execute(
                "UPDATE book_numbers SET status = 'available', borrower_id = NULL, due_date = NULL, "
                "updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (copy_id,),
            )
            if row["status"] == CopyStatus.ASSIGNED:
                conn.execute(
                    "UPDATE books SET assigned_copies = assigned_copies - 1, updated_at = CURRENT_TIMESTAMP "
                    "WHERE id = ?",
                    (row["book_id"],),
                )

        logger.info("Book number %s collected", copy_id)
        return self.get_copy(copy_id)

    # ------------------------- Reports ------------------------- #
    def get_statistics(self, today: Optional[date] = None) -> Dict[str, Any]:
        today = today or date.today()
        conn = get_db_connection()
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*), COALESCE(SUM(total_copies), 0), COALESCE(SUM(assigned_copies), 0) FROM books")
            total_books, total_copies, assigned_copies = cursor.fetchone()
            cursor.execute("SELECT COUNT(*) FROM clients")
            total_clients = cursor.fetchone()[0]
            cursor.execute("SELECT COUNT(*) FROM borrow_requests WHERE status = 'pending'")
            pending_requests = cursor.fetchone()[0]
            cursor.execute(
                "SELECT COUNT(*) FROM book_numbers WHERE status = 'assigned' AND due_date < ?",
                (today.isoformat(),),
            )
            overdue_copies = cursor.fetchone()[0]
            return {
                "total_books": total_books,
                "total_copies": total_copies,
                "assigned_copies": assigned_copies,
                "available_copies": total_copies - assigned_copies,
                "total_clients": total_clients,
                "pending_requests": pending_requests,
                "overdue_copies": overdue_copies,
            }
        finally:
            conn.close()

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _query_copies(query: str, params: List[Any]) -> List[BookNumber]:
        conn = get_db_connection()
        try:
            return [BookNumber.from_row(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()
