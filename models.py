from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Dict, Optional, Union

Row = Union[sqlite3.Row, Dict[str, Any]]


class CopyStatus:
    AVAILABLE = "available"
    ASSIGNED = "assigned"

    ALL = (AVAILABLE, ASSIGNED)


class RequestStatus:
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    ALL = (PENDING, APPROVED, REJECTED)


class ClientStatus:
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"

    ALL = (ACTIVE, INACTIVE, SUSPENDED)


def _get(row: Row, key: str, default: Any = None) -> Any:
    # sqlite3.Row has no .get(); joined columns may be absent from plain selects
    try:
        return row[key]
    except (IndexError, KeyError):
        return default


def parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


@dataclass
class Admin:
    id: int
    name: str
    email: str
    password_hash: str = field(default="", repr=False)
    created_at: Optional[str] = None

    @staticmethod
    def from_row(row: Row) -> "Admin":
        return Admin(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            password_hash=_get(row, "password_hash", ""),
            created_at=_get(row, "created_at"),
        )

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "email": self.email, "created_at": self.created_at}


@dataclass
class Book:
    """A catalogue title; copies are tracked individually as BookNumber rows."""

    id: int
    title: str
    author: str
    year: int
    total_copies: int = 0
    assigned_copies: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def available_copies(self) -> int:
        return self.total_copies - self.assigned_copies

    @staticmethod
    def from_row(row: Row) -> "Book":
        return Book(
            id=row["id"],
            title=row["title"],
            author=row["author"],
            year=row["year"],
            total_copies=row["total_copies"],
            assigned_copies=row["assigned_copies"],
            created_at=_get(row, "created_at"),
            updated_at=_get(row, "updated_at"),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["available_copies"] = self.available_copies
        return data


@dataclass
class BookNumber:
    """One physical copy of a Book."""

    id: int
    book_id: int
    label: str
    status: str = CopyStatus.AVAILABLE
    borrower_id: Optional[int] = None
    due_date: Optional[date] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    # Joined for listings
    book_title: Optional[str] = None
    borrower_name: Optional[str] = None
    borrower_phone: Optional[str] = None

    @property
    def is_assigned(self) -> bool:
        return self.status == CopyStatus.ASSIGNED

    def days_overdue(self, today: date) -> int:
        if not self.is_assigned or self.due_date is None:
            return 0
        return max(0, (today - self.due_date).days)

    @staticmethod
    def from_row(row: Row) -> "BookNumber":
        return BookNumber(
            id=row["id"],
            book_id=row["book_id"],
            label=row["label"],
            status=row["status"],
            borrower_id=row["borrower_id"],
            due_date=parse_date(row["due_date"]),
            created_at=_get(row, "created_at"),
            updated_at=_get(row, "updated_at"),
            book_title=_get(row, "book_title"),
            borrower_name=_get(row, "borrower_name"),
            borrower_phone=_get(row, "borrower_phone"),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["due_date"] = self.due_date.isoformat() if self.due_date else None
        return data


@dataclass
class Client:
    id: int
    name: str
    id_number: str
    phone: str
    email: str
    status: str = ClientStatus.ACTIVE
    password_hash: str = field(default="", repr=False)
    borrowed_count: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == ClientStatus.ACTIVE

    @staticmethod
    def from_row(row: Row) -> "Client":
        return Client(
            id=row["id"],
            name=row["name"],
            id_number=row["id_number"],
            phone=row["phone"],
            email=row["email"],
            status=row["status"],
            password_hash=_get(row, "password_hash", ""),
            borrowed_count=_get(row, "borrowed_count", 0) or 0,
            created_at=_get(row, "created_at"),
            updated_at=_get(row, "updated_at"),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("password_hash")
        return data


@dataclass
class BorrowRequest:
    id: int
    client_id: int
    book_id: int
    status: str = RequestStatus.PENDING
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    book_title: Optional[str] = None
    book_author: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING

    @staticmethod
    def from_row(row: Row) -> "BorrowRequest":
        return BorrowRequest(
            id=row["id"],
            client_id=row["client_id"],
            book_id=row["book_id"],
            status=row["status"],
            created_at=_get(row, "created_at"),
            updated_at=_get(row, "updated_at"),
            client_name=_get(row, "client_name"),
            client_email=_get(row, "client_email"),
            book_title=_get(row, "book_title"),
            book_author=_get(row, "book_author"),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Penalty:
    id: int
    client_name: str
    client_phone: str
    due_date: date
    days_overdue: int
    daily_rate: float
    fee_amount: float
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @staticmethod
    def from_row(row: Row) -> "Penalty":
        return Penalty(
            id=row["id"],
            client_name=row["client_name"],
            client_phone=row["client_phone"],
            due_date=parse_date(row["due_date"]),
            days_overdue=row["days_overdue"],
            daily_rate=row["daily_rate"] if row["daily_rate"] is not None else 0.0,
            fee_amount=row["fee_amount"],
            created_at=_get(row, "created_at"),
            updated_at=_get(row, "updated_at"),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["due_date"] = self.due_date.isoformat() if self.due_date else None
        return data


@dataclass
class Payment:
    id: int
    client_name: str
    client_phone: str
    amount_paid: float
    date_paid: str
    penalty_id: Optional[int] = None
    created_at: Optional[str] = None

    @staticmethod
    def from_row(row: Row) -> "Payment":
        return Payment(
            id=row["id"],
            client_name=row["client_name"],
            client_phone=row["client_phone"],
            amount_paid=row["amount_paid"],
            date_paid=row["date_paid"],
            penalty_id=_get(row, "penalty_id"),
            created_at=_get(row, "created_at"),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Principal:
    """The authenticated caller: either a staff admin or a library client."""

    kind: str
    id: int

    ADMIN = "admin"
    CLIENT = "client"

    @classmethod
    def admin(cls, admin_id: int) -> "Principal":
        return cls(cls.ADMIN, admin_id)

    @classmethod
    def client(cls, client_id: int) -> "Principal":
        return cls(cls.CLIENT, client_id)

    @property
    def is_admin(self) -> bool:
        return self.kind == self.ADMIN

    @property
    def is_client(self) -> bool:
        return self.kind == self.CLIENT
