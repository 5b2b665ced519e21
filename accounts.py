import logging
import sqlite3
from typing import List, Optional

import bcrypt

from config import settings
from database import get_db_connection, transaction
from errors import AuthenticationError, ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from models import Admin, Client, ClientStatus
from utils.validators import FieldErrors

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 4

_CLIENT_SELECT = """
    SELECT c.*, (
        SELECT COUNT(*) FROM book_numbers bn
        WHERE bn.borrower_id = c.id AND bn.status = 'assigned'
    ) AS borrowed_count
    FROM clients c
"""


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


def _check_password(check: FieldErrors, password: Optional[str]) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        check.add("password", f"The password must be at least {MIN_PASSWORD_LENGTH} characters.")


def _unique_violation(error: sqlite3.IntegrityError) -> ValidationError:
    message = str(error)
    if "id_number" in message:
        return ValidationError.single("id_number", "The id_number has already been taken.")
    return ValidationError.single("email", "The email has already been taken.")


class Accounts:
    """Staff accounts and the client directory.

    Admins and clients authenticate independently; a session may carry one
    of each.
    """

    # ------------------------- Admins ------------------------- #
    def register_admin(self, name: str, email: str, password: str) -> Admin:
        check = FieldErrors()
        name = check.text("name", name)
        email = check.email("email", email)
        _check_password(check, password)
        check.raise_if_any()

        conn = get_db_connection()
        try:
            cursor = conn.execute(
                "INSERT INTO admins (name, email, password_hash) VALUES (?, ?, ?)",
                (name, email, hash_password(password)),
            )
            conn.commit()
            admin_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ValidationError.single("email", "The email has already been taken.") from e
        finally:
            conn.close()

        logger.info("Admin %s registered", admin_id)
        return self.get_admin(admin_id)

    def get_admin(self, admin_id: int) -> Admin:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM admins WHERE id = ?", (admin_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFoundError("Admin", admin_id)
        return Admin.from_row(row)

    def authenticate_admin(self, email: str, password: str) -> Admin:
        conn = get_db_connection()
        try:
            row = conn.execute(
                "SELECT * FROM admins WHERE email = ?", ((email or "").strip().lower(),)
            ).fetchone()
        finally:
            conn.close()
        if row is None or not verify_password(password, row["password_hash"]):
            logger.warning("Failed admin login for %s", email)
            raise AuthenticationError("These credentials do not match our records.")
        return Admin.from_row(row)

    # ------------------------- Clients ------------------------- #
    def register_client(self, name: str, id_number: str, phone: str, email: str, password: str) -> Client:
        """Self-registration from the client portal."""
        check = FieldErrors()
        name = check.text("name", name)
        id_number = check.text("id_number", id_number, max_length=20)
        phone = check.phone("phone", phone)
        email = check.email("email", email)
        _check_password(check, password)
        check.raise_if_any()
        return self._insert_client(name, id_number, phone, email, password)

    def create_client(self, name: str, id_number: str, phone: str, email: str,
                      password: Optional[str] = None) -> Client:
        """Staff-created account; the client signs in with the default password."""
        check = FieldErrors()
        name = check.text("name", name)
        id_number = check.text("id_number", id_number, max_length=20)
        phone = check.phone("phone", phone)
        email = check.email("email", email)
        if password is not None:
            _check_password(check, password)
        check.raise_if_any()
        return self._insert_client(name, id_number, phone, email, password or settings.default_client_password)

    def _insert_client(self, name: str, id_number: str, phone: str, email: str, password: str) -> Client:
        conn = get_db_connection()
        try:
            cursor = conn.execute(
                "INSERT INTO clients (name, id_number, phone, email, password_hash, status) VALUES (?, ?, ?, ?, ?, ?)",
                (name, id_number, phone, email, hash_password(password), ClientStatus.ACTIVE),
            )
            conn.commit()
            client_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise _unique_violation(e) from e
        finally:
            conn.close()

        logger.info("Client %s created", client_id)
        return self.get_client(client_id)

    def list_clients(self, search: Optional[str] = None) -> List[Client]:
        conn = get_db_connection()
        try:
            if search:
                like = f"%{search}%"
                rows = conn.execute(
                    _CLIENT_SELECT + " WHERE c.name LIKE ? OR c.email LIKE ? OR c.id_number LIKE ? OR c.phone LIKE ?"
                    " ORDER BY c.name",
                    (like, like, like, like),
                ).fetchall()
            else:
                rows = conn.execute(_CLIENT_SELECT + " ORDER BY c.name").fetchall()
            return [Client.from_row(row) for row in rows]
        finally:
            conn.close()

    def get_client(self, client_id: int) -> Client:
        conn = get_db_connection()
        try:
            row = conn.execute(_CLIENT_SELECT + " WHERE c.id = ?", (client_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFoundError("Client", client_id)
        return Client.from_row(row)

    def update_client(
        self,
        client_id: int,
        *,
        name: Optional[str] = None,
        id_number: Optional[str] = None,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Client:
        check = FieldErrors()
        name = check.text("name", name, required=False)
        id_number = check.text("id_number", id_number, max_length=20, required=False)
        phone = check.phone("phone", phone, required=False)
        email = check.email("email", email, required=False)
        if status is not None and status not in ClientStatus.ALL:
            check.add("status", "The selected status is invalid.")
        check.raise_if_any()

        client = self.get_client(client_id)
        conn = get_db_connection()
        try:
            conn.execute(
                "UPDATE clients SET name = ?, id_number = ?, phone = ?, email = ?, status = ?, "
                "updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (
                    name or client.name,
                    id_number or client.id_number,
                    phone or client.phone,
                    email or client.email,
                    status or client.status,
                    client_id,
                ),
            )
            conn.commit()
        except sqlite3.IntegrityError as e:
            raise _unique_violation(e) from e
        finally:
            conn.close()

        logger.info("Client %s updated", client_id)
        return self.get_client(client_id)

    def delete_client(self, client_id: int) -> None:
        """Remove a client and their borrow requests.

        Refused while the client still holds copies, so no assigned copy is
        ever left without a borrower.
        """
        with transaction() as conn:
            if conn.execute("SELECT 1 FROM clients WHERE id = ?", (client_id,)).fetchone() is None:
                raise NotFoundError("Client", client_id)
            held = conn.execute(
                "SELECT COUNT(*) FROM book_numbers WHERE borrower_id = ? AND status = 'assigned'",
                (client_id,),
            ).fetchone()[0]
            if held:
                raise ConflictError(f"Client still holds {held} borrowed copies; collect them first.")
            conn.execute("DELETE FROM clients WHERE id = ?", (client_id,))
        logger.info("Client %s deleted", client_id)

    def authenticate_client(self, email: str, password: str) -> Client:
        conn = get_db_connection()
        try:
            row = conn.execute(
                _CLIENT_SELECT + " WHERE c.email = ?", ((email or "").strip().lower(),)
            ).fetchone()
        finally:
            conn.close()
        if row is None or not verify_password(password, row["password_hash"]):
            logger.warning("Failed client login for %s", email)
            raise AuthenticationError("These credentials do not match our records.")
        client = Client.from_row(row)
        if not client.is_active:
            logger.warning("Login refused for %s client %s", client.status, client.id)
            raise PermissionDeniedError(f"This account is {client.status}.")
        return client
