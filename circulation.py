"""Borrow-request workflow.

A client asks for a title, an admin answers. Requests move
``pending -> approved`` or ``pending -> rejected`` and never leave those
terminal states; only a pending request can be cancelled (by its owner) or
decided (by an admin).

Approval is the one place where several rows must change together: the
chosen copy is handed to the client, the title's assigned counter goes up
and the request is marked approved. All three writes happen inside a single
``BEGIN IMMEDIATE`` transaction and the copy is claimed with a conditional
UPDATE, so two admins racing for the same copy (or an approval racing a
cancellation) cannot both succeed.
"""

import logging
import math
import sqlite3
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from config import settings
from database import get_db_connection, transaction
from errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from models import BookNumber, BorrowRequest, Principal, RequestStatus
from utils.validators import FieldErrors

logger = logging.getLogger(__name__)

_REQUEST_SELECT = """
    SELECT br.*, c.name AS client_name, c.email AS client_email,
           b.title AS book_title, b.author AS book_author
    FROM borrow_requests br
    JOIN clients c ON c.id = br.client_id
    JOIN books b ON b.id = br.book_id
"""


def _fetch_request(conn: sqlite3.Connection, request_id: int) -> BorrowRequest:
    row = conn.execute(_REQUEST_SELECT + " WHERE br.id = ?", (request_id,)).fetchone()
    if row is None:
        raise NotFoundError("Borrow request", request_id)
    return BorrowRequest.from_row(row)


def _borrowed_count(conn: sqlite3.Connection, client_id: int) -> int:
    return conn.execute(
        "SELECT COUNT(*) FROM book_numbers WHERE borrower_id = ? AND status = 'assigned'",
        (client_id,),
    ).fetchone()[0]


def _pending_count(conn: sqlite3.Connection, client_id: int) -> int:
    return conn.execute(
        "SELECT COUNT(*) FROM borrow_requests WHERE client_id = ? AND status = 'pending'",
        (client_id,),
    ).fetchone()[0]


class Circulation:
    def __init__(self, borrow_limit: Optional[int] = None) -> None:
        self.borrow_limit = borrow_limit if borrow_limit is not None else settings.borrow_limit

    # ------------------------- Client actions ------------------------- #
    def submit(self, client_id: int, book_id: int) -> BorrowRequest:
        """Create a pending request after the availability, duplicate and limit checks."""
        with transaction() as conn:
            book = conn.execute(
                "SELECT id, total_copies, assigned_copies FROM books WHERE id = ?", (book_id,)
            ).fetchone()
            if book is None:
                raise ValidationError.single("book_id", "Invalid book selected.")
            if book["total_copies"] - book["assigned_copies"] <= 0:
                logger.warning("Request refused: book %s has no copies left", book_id)
                raise ConflictError("Sorry, this book is currently not available.")

            duplicate = conn.execute(
                "SELECT 1 FROM borrow_requests WHERE client_id = ? AND book_id = ? AND status = 'pending'",
                (client_id, book_id),
            ).fetchone()
            if duplicate is not None:
                logger.warning("Request refused: client %s already waits for book %s", client_id, book_id)
                raise ConflictError("You already have a pending request for this book.")

            if _borrowed_count(conn, client_id) + _pending_count(conn, client_id) >= self.borrow_limit:
                logger.warning("Request refused: client %s reached the borrowing limit", client_id)
                raise ConflictError(
                    f"Borrowing limit reached (max {self.borrow_limit} items, including pending requests)."
                )

            cursor = conn.execute(
                "INSERT INTO borrow_requests (client_id, book_id, status) VALUES (?, ?, 'pending')",
                (client_id, book_id),
            )
            request = _fetch_request(conn, cursor.lastrowid)

        logger.info("Borrow request %s submitted by client %s for book %s", request.id, client_id, book_id)
        return request

    def cancel(self, request_id: int, principal: Principal) -> None:
        """Withdraw a pending request; only the client who made it may do so."""
        with transaction() as conn:
            request = _fetch_request(conn, request_id)
            if not principal.is_client or request.client_id != principal.id:
                logger.warning("Cancel of request %s refused for %s %s", request_id, principal.kind, principal.id)
                raise PermissionDeniedError("Unauthorized action.")
            if not request.is_pending:
                raise ConflictError("Cannot cancel a request that is already processed.")
            conn.execute("DELETE FROM borrow_requests WHERE id = ? AND status = 'pending'", (request_id,))

        logger.info("Borrow request %s cancelled by client %s", request_id, principal.id)

    # ------------------------- Admin actions ------------------------- #
    def approve(self, request_id: int, copy_id: int, due_date, today: Optional[date] = None) -> BorrowRequest:
        """Approve a pending request by handing over a specific copy.

        Either every write lands or none does: a copy that was taken in the
        meantime leaves both the copy and the request untouched.
        """
        check = FieldErrors()
        due = check.date_not_before("date_to_be_returned", due_date, today or date.today())
        if copy_id is None:
            check.add("book_number_id", "The book_number_id field is required.")
        check.raise_if_any()

        with transaction() as conn:
            request = _fetch_request(conn, request_id)
            if not request.is_pending:
                raise ConflictError("This request has already been processed.")

            claimed = conn.execute(
                "UPDATE book_numbers SET status = 'assigned', borrower_id = ?, due_date = ?, "
                "updated_at = CURRENT_TIMESTAMP "
                "WHERE id = ? AND status = 'available' AND book_id = ?",
                (request.client_id, due.isoformat(), copy_id, request.book_id),
            )
            if claimed.rowcount == 0:
                logger.warning("Approval of request %s failed: copy %s is not available", request_id, copy_id)
                raise ConflictError("The selected book copy is no longer available.")

            conn.execute(
                "UPDATE books SET assigned_copies = assigned_copies + 1, updated_at = CURRENT_TIMESTAMP "
                "WHERE id = ?",
                (request.book_id,),
            )
            conn.execute(
                "UPDATE borrow_requests SET status = 'approved', updated_at = CURRENT_TIMESTAMP "
                "WHERE id = ? AND status = 'pending'",
                (request_id,),
            )
            request = _fetch_request(conn, request_id)

        logger.info("Borrow request %s approved with copy %s due %s", request_id, copy_id, due)
        return request

    def reject(self, request_id: int) -> BorrowRequest:
        with transaction() as conn:
            request = _fetch_request(conn, request_id)
            if not request.is_pending:
                raise ConflictError("This request has already been processed.")
            conn.execute(
                "UPDATE borrow_requests SET status = 'rejected', updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (request_id,),
            )
            request = _fetch_request(conn, request_id)

        logger.info("Borrow request %s rejected", request_id)
        return request

    def decide(self, request_id: int, status: str, copy_id: Optional[int] = None,
               due_date=None, today: Optional[date] = None) -> BorrowRequest:
        """Apply an admin decision given as a target status."""
        if status == RequestStatus.APPROVED:
            return self.approve(request_id, copy_id, due_date, today=today)
        if status == RequestStatus.REJECTED:
            return self.reject(request_id)
        raise ValidationError.single("status", "The selected status is invalid.")

    # ------------------------- Queries ------------------------- #
    def get(self, request_id: int) -> BorrowRequest:
        conn = get_db_connection()
        try:
            return _fetch_request(conn, request_id)
        finally:
            conn.close()

    def list_requests(
        self,
        status: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        per_page: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Newest-first page of requests, filtered by status and client/book text."""
        if status is not None and status not in RequestStatus.ALL:
            raise ValidationError.single("status", "The selected status is invalid.")
        per_page = min(per_page or settings.default_page_size, settings.max_page_size)
        page = max(page, 1)

        clauses: List[str] = []
        params: List[Any] = []
        if status:
            clauses.append("br.status = ?")
            params.append(status)
        if search:
            like = f"%{search}%"
            clauses.append("(c.name LIKE ? OR c.email LIKE ? OR b.title LIKE ?)")
            params += [like, like, like]
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""

        conn = get_db_connection()
        try:
            total = conn.execute(
                "SELECT COUNT(*) FROM borrow_requests br "
                "JOIN clients c ON c.id = br.client_id JOIN books b ON b.id = br.book_id" + where,
                params,
            ).fetchone()[0]
            rows = conn.execute(
                _REQUEST_SELECT + where + " ORDER BY br.created_at DESC, br.id DESC LIMIT ? OFFSET ?",
                params + [per_page, (page - 1) * per_page],
            ).fetchall()
        finally:
            conn.close()

        return {
            "items": [BorrowRequest.from_row(row) for row in rows],
            "total": total,
            "page": page,
            "per_page": per_page,
            "total_pages": math.ceil(total / per_page) if total else 0,
        }

    def list_for_client(self, client_id: int) -> List[BorrowRequest]:
        conn = get_db_connection()
        try:
            rows = conn.execute(
                _REQUEST_SELECT + " WHERE br.client_id = ? ORDER BY br.created_at DESC, br.id DESC",
                (client_id,),
            ).fetchall()
            return [BorrowRequest.from_row(row) for row in rows]
        finally:
            conn.close()

    def pending_book_ids(self, client_id: int, book_ids: Optional[Iterable[int]] = None) -> List[int]:
        """Titles the client is already waiting for, so the catalogue can disable them."""
        query = "SELECT DISTINCT book_id FROM borrow_requests WHERE client_id = ? AND status = 'pending'"
        params: List[Any] = [client_id]
        if book_ids is not None:
            ids = list(book_ids)
            if not ids:
                return []
            query += f" AND book_id IN ({', '.join('?' for _ in ids)})"
            params += ids
        conn = get_db_connection()
        try:
            return sorted(row[0] for row in conn.execute(query, params).fetchall())
        finally:
            conn.close()

    def client_dashboard(self, client_id: int) -> Dict[str, int]:
        conn = get_db_connection()
        try:
            borrowed = _borrowed_count(conn, client_id)
            pending = _pending_count(conn, client_id)
        finally:
            conn.close()
        return {
            "borrowed_count": borrowed,
            "pending_count": pending,
            "borrow_limit": self.borrow_limit,
            "remaining": max(0, self.borrow_limit - borrowed - pending),
        }

    def client_books(self, client_id: int) -> List[BookNumber]:
        """Copies the client currently holds, soonest due first."""
        conn = get_db_connection()
        try:
            rows = conn.execute(
                "SELECT bn.*, b.title AS book_title FROM book_numbers bn "
                "JOIN books b ON b.id = bn.book_id "
                "WHERE bn.borrower_id = ? AND bn.status = 'assigned' ORDER BY bn.due_date",
                (client_id,),
            ).fetchall()
            return [BookNumber.from_row(row) for row in rows]
        finally:
            conn.close()
