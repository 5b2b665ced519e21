import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, EmailStr
from starlette.middleware.sessions import SessionMiddleware

from accounts import Accounts
from circulation import Circulation
from config import configure_logging, settings
from database import get_db_connection, initialize_database
from errors import AuthenticationError, LibraryError, NotFoundError, PermissionDeniedError
from ledger import Ledger
from library import Library
from models import CopyStatus, Principal, RequestStatus

logger = logging.getLogger(__name__)

library = Library()
accounts = Accounts()
circulation = Circulation()
ledger = Ledger(library)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    initialize_database()
    logger.info("%s %s started", settings.app_name, settings.app_version)
    yield


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.secret_key,
    session_cookie=settings.session_cookie,
    max_age=settings.session_max_age,
    same_site="lax",
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    return response


# --- Error handling ---
@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors: Dict[str, List[str]] = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        field = ".".join(loc) or "body"
        errors.setdefault(field, []).append(error.get("msg", "Invalid value."))
    return JSONResponse(status_code=422, content={"message": "Validation failed.", "errors": errors})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"message": "Internal server error."})


# --- Authentication ---
def require_admin(request: Request) -> Principal:
    """Dependency for staff-only routes; drops sessions of removed admins."""
    admin_id = request.session.get("admin_id")
    if admin_id is None:
        raise AuthenticationError("Unauthenticated.")
    try:
        admin = accounts.get_admin(admin_id)
    except NotFoundError:
        request.session.pop("admin_id", None)
        raise AuthenticationError("Unauthenticated.")
    return Principal.admin(admin.id)


def require_client(request: Request) -> Principal:
    """Dependency for the client portal; drops sessions of removed or blocked clients."""
    client_id = request.session.get("client_id")
    if client_id is None:
        raise AuthenticationError("Unauthenticated.")
    try:
        client = accounts.get_client(client_id)
    except NotFoundError:
        request.session.pop("client_id", None)
        raise AuthenticationError("Unauthenticated.")
    if not client.is_active:
        request.session.pop("client_id", None)
        raise PermissionDeniedError(f"This account is {client.status}.")
    return Principal.client(client.id)


# --- Request models ---
class AdminRegisterModel(BaseModel):
    name: str
    email: EmailStr
    password: str


class LoginModel(BaseModel):
    email: str
    password: str


class ClientRegisterModel(BaseModel):
    name: str
    id_number: str
    phone: str
    email: EmailStr
    password: str


class ClientCreateModel(BaseModel):
    name: str
    id_number: str
    phone: str
    email: EmailStr
    password: Optional[str] = None


class ClientUpdateModel(BaseModel):
    name: Optional[str] = None
    id_number: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    status: Optional[str] = None


class BookCreateModel(BaseModel):
    title: str
    author: str
    year: int
    total_copies: int
    label_prefix: Optional[str] = None
    label_suffix: Optional[str] = None


class BookUpdateModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None
    author: Optional[str] = None
    year: Optional[int] = None


class BookNumberCreateModel(BaseModel):
    book_id: int
    label: str


class BookNumberUpdateModel(BaseModel):
    label: str


class AssignModel(BaseModel):
    assigned_to: int
    date_to_be_returned: Optional[date] = None


class BorrowRequestCreateModel(BaseModel):
    book_id: int


class DecisionModel(BaseModel):
    status: str
    book_number_id: Optional[int] = None
    date_to_be_returned: Optional[date] = None


class PenaltyCreateModel(BaseModel):
    client_name: str
    client_phone: str
    due_date: date
    days_overdue: int
    fee_amount: float
    daily_rate: Optional[float] = None


class PenalizeModel(BaseModel):
    daily_rate: float


class PaymentCreateModel(BaseModel):
    client_name: str
    client_phone: str
    amount_paid: float
    date_paid: Optional[datetime] = None


def _dicts(items) -> List[Dict[str, Any]]:
    return [item.to_dict() for item in items]


# --- Public ---
@app.get("/health")
def health():
    """Liveness probe with a quick database round trip."""
    db_ok = True
    try:
        conn = get_db_connection()
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except Exception:
        logger.exception("Health check could not reach the database")
        db_ok = False
    return {"status": "healthy" if db_ok else "degraded", "timestamp": datetime.now().isoformat(), "db": db_ok}


@app.get("/")
def read_root():
    return {"name": settings.app_name, "version": settings.app_version, "docs": "/docs"}


# --- Admin session ---
@app.post("/register", status_code=201)
def register_admin(payload: AdminRegisterModel, request: Request):
    if not settings.allow_admin_registration:
        raise PermissionDeniedError("Admin registration is disabled.")
    admin = accounts.register_admin(payload.name, payload.email, payload.password)
    request.session["admin_id"] = admin.id
    return {"admin": admin.to_dict(), "message": "Registration successful."}


@app.post("/login")
def login_admin(payload: LoginModel, request: Request):
    admin = accounts.authenticate_admin(payload.email, payload.password)
    request.session["admin_id"] = admin.id
    logger.info("Admin %s logged in", admin.id)
    return {"admin": admin.to_dict(), "message": "Logged in."}


@app.post("/logout")
def logout_admin(request: Request):
    request.session.pop("admin_id", None)
    return {"message": "Logged out."}


# --- Client session ---
@app.post("/client/register", status_code=201)
def register_client(payload: ClientRegisterModel, request: Request):
    client = accounts.register_client(
        payload.name, payload.id_number, payload.phone, payload.email, payload.password
    )
    request.session["client_id"] = client.id
    return {"client": client.to_dict(), "message": "Registration successful."}


@app.post("/client/login")
def login_client(payload: LoginModel, request: Request):
    client = accounts.authenticate_client(payload.email, payload.password)
    request.session["client_id"] = client.id
    logger.info("Client %s logged in", client.id)
    return {"client": client.to_dict(), "message": "Logged in."}


@app.post("/client/logout")
def logout_client(request: Request):
    request.session.pop("client_id", None)
    return {"message": "Logged out."}


@app.get("/me")
def who_am_i(request: Request):
    """Both principals a session may carry; either can be null."""
    admin = client = None
    admin_id = request.session.get("admin_id")
    client_id = request.session.get("client_id")
    if admin_id is not None:
        try:
            admin = accounts.get_admin(admin_id).to_dict()
        except NotFoundError:
            request.session.pop("admin_id", None)
    if client_id is not None:
        try:
            client = accounts.get_client(client_id).to_dict()
        except NotFoundError:
            request.session.pop("client_id", None)
    return {"admin": admin, "client": client}


# --- Books ---
@app.get("/api/books", dependencies=[Depends(require_admin)])
def list_books(search: Optional[str] = Query(None)):
    return {"books": _dicts(library.list_books(search))}


@app.post("/api/books", status_code=201, dependencies=[Depends(require_admin)])
def create_book(payload: BookCreateModel):
    book = library.create_book(
        payload.title,
        payload.author,
        payload.year,
        payload.total_copies,
        label_prefix=payload.label_prefix,
        label_suffix=payload.label_suffix,
    )
    return {"book": book.to_dict(), "message": "Book created successfully."}


@app.get("/api/books/{book_id}", dependencies=[Depends(require_admin)])
def get_book(book_id: int):
    return {"book": library.get_book(book_id).to_dict()}


@app.put("/api/books/{book_id}", dependencies=[Depends(require_admin)])
def update_book(book_id: int, payload: BookUpdateModel):
    book = library.update_book(book_id, **payload.model_dump())
    return {"book": book.to_dict(), "message": "Book updated successfully."}


@app.delete("/api/books/{book_id}", dependencies=[Depends(require_admin)])
def delete_book(book_id: int):
    library.delete_book(book_id)
    return {"message": "Book deleted successfully."}


@app.get("/api/books/{book_id}/available-copies", dependencies=[Depends(require_admin)])
def available_copies_for_book(book_id: int):
    return {"book_numbers": _dicts(library.list_available_copies_for_book(book_id))}


# --- Book numbers (copies) ---
@app.get("/api/book-numbers", dependencies=[Depends(require_admin)])
def list_book_numbers(
    book_id: Optional[int] = Query(None),
    status: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
):
    return {"book_numbers": _dicts(library.list_copies(book_id=book_id, status=status, search=search))}


@app.get("/api/book-numbers/assigned", dependencies=[Depends(require_admin)])
def list_assigned_book_numbers():
    return {"book_numbers": _dicts(library.list_copies(status=CopyStatus.ASSIGNED))}


@app.get("/api/book-numbers/available", dependencies=[Depends(require_admin)])
def list_available_book_numbers():
    return {"book_numbers": _dicts(library.list_copies(status=CopyStatus.AVAILABLE))}


@app.get("/api/book-numbers/overdue", dependencies=[Depends(require_admin)])
def list_overdue_book_numbers():
    return {"book_numbers": _dicts(library.list_overdue_copies())}


@app.get("/api/book-numbers/almost-overdue", dependencies=[Depends(require_admin)])
def list_almost_overdue_book_numbers():
    return {"book_numbers": _dicts(library.list_almost_overdue_copies())}


@app.get("/api/overdues", dependencies=[Depends(require_admin)])
def list_overdues():
    today = date.today()
    overdues = []
    for copy in library.list_overdue_copies(today):
        entry = copy.to_dict()
        entry["days_overdue"] = copy.days_overdue(today)
        overdues.append(entry)
    return {"overdues": overdues}


@app.post("/api/book-numbers", status_code=201, dependencies=[Depends(require_admin)])
def create_book_number(payload: BookNumberCreateModel):
    copy = library.create_copy(payload.book_id, payload.label)
    return {"book_number": copy.to_dict(), "message": "Book copy created successfully."}


@app.get("/api/book-numbers/{book_number_id}", dependencies=[Depends(require_admin)])
def get_book_number(book_number_id: int):
    return {"book_number": library.get_copy(book_number_id).to_dict()}


@app.put("/api/book-numbers/{book_number_id}", dependencies=[Depends(require_admin)])
def update_book_number(book_number_id: int, payload: BookNumberUpdateModel):
    copy = library.update_copy(book_number_id, payload.label)
    return {"book_number": copy.to_dict(), "message": "Book copy updated successfully."}


@app.delete("/api/book-numbers/{book_number_id}", dependencies=[Depends(require_admin)])
def delete_book_number(book_number_id: int):
    library.delete_copy(book_number_id)
    return {"message": "Book copy deleted successfully."}


@app.put("/api/book-numbers/{book_number_id}/assign", dependencies=[Depends(require_admin)])
def assign_book_number(book_number_id: int, payload: AssignModel):
    copy = library.assign_copy(book_number_id, payload.assigned_to, payload.date_to_be_returned)
    return {"book_number": copy.to_dict(), "message": "Book copy assigned successfully."}


@app.put("/api/book-numbers/{book_number_id}/collect", dependencies=[Depends(require_admin)])
def collect_book_number(book_number_id: int):
    copy = library.collect_copy(book_number_id)
    return {"book_number": copy.to_dict(), "message": "Book copy collected successfully."}


@app.post("/api/book-numbers/{book_number_id}/penalize", status_code=201, dependencies=[Depends(require_admin)])
def penalize_book_number(book_number_id: int, payload: PenalizeModel):
    penalty = ledger.penalize_copy(book_number_id, payload.daily_rate)
    return {"penalty": penalty.to_dict(), "message": "Penalty recorded."}


# --- Clients ---
@app.get("/api/clients", dependencies=[Depends(require_admin)])
def list_clients(search: Optional[str] = Query(None)):
    return {"clients": _dicts(accounts.list_clients(search))}


@app.post("/api/clients", status_code=201, dependencies=[Depends(require_admin)])
def create_client(payload: ClientCreateModel):
    client = accounts.create_client(**payload.model_dump())
    return {"client": client.to_dict(), "message": "Client created successfully."}


@app.get("/api/clients/{client_id}", dependencies=[Depends(require_admin)])
def get_client(client_id: int):
    client = accounts.get_client(client_id)
    return {"client": client.to_dict(), "book_numbers": _dicts(library.list_copies(borrower_id=client_id))}


@app.put("/api/clients/{client_id}", dependencies=[Depends(require_admin)])
def update_client(client_id: int, payload: ClientUpdateModel):
    client = accounts.update_client(client_id, **payload.model_dump())
    return {"client": client.to_dict(), "message": "Client updated successfully."}


@app.delete("/api/clients/{client_id}", dependencies=[Depends(require_admin)])
def delete_client(client_id: int):
    accounts.delete_client(client_id)
    return {"message": "Client deleted successfully."}


# --- Borrow requests (staff) ---
@app.get("/api/borrow-requests", dependencies=[Depends(require_admin)])
def list_borrow_requests(
    status: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    per_page: Optional[int] = Query(None, ge=1),
):
    result = circulation.list_requests(status=status, search=search, page=page, per_page=per_page)
    return {
        "borrow_requests": _dicts(result["items"]),
        "meta": {key: result[key] for key in ("total", "page", "per_page", "total_pages")},
    }


@app.get("/api/borrow-requests/{request_id}", dependencies=[Depends(require_admin)])
def get_borrow_request(request_id: int):
    borrow_request = circulation.get(request_id)
    response: Dict[str, Any] = {"borrow_request": borrow_request.to_dict()}
    if borrow_request.is_pending:
        response["available_book_numbers"] = _dicts(library.list_available_copies_for_book(borrow_request.book_id))
    return response


@app.put("/api/borrow-requests/{request_id}", dependencies=[Depends(require_admin)])
def decide_borrow_request(request_id: int, payload: DecisionModel):
    borrow_request = circulation.decide(
        request_id,
        payload.status,
        copy_id=payload.book_number_id,
        due_date=payload.date_to_be_returned,
    )
    message = "Request approved." if payload.status == RequestStatus.APPROVED else "Request rejected."
    return {"borrow_request": borrow_request.to_dict(), "message": message}


# --- Penalties and payments ---
@app.get("/api/penalties", dependencies=[Depends(require_admin)])
def list_penalties():
    return {"penalties": _dicts(ledger.list_penalties())}


@app.post("/api/penalties", status_code=201, dependencies=[Depends(require_admin)])
def create_penalty(payload: PenaltyCreateModel):
    penalty = ledger.create_penalty(**payload.model_dump())
    return {"penalty": penalty.to_dict(), "message": "Penalty recorded."}


@app.put("/api/penalties/refresh", dependencies=[Depends(require_admin)])
def refresh_penalties():
    return {"penalties": _dicts(ledger.refresh_penalties()), "message": "Penalties refreshed."}


@app.delete("/api/penalties/{penalty_id}", dependencies=[Depends(require_admin)])
def delete_penalty(penalty_id: int):
    ledger.delete_penalty(penalty_id)
    return {"message": "Penalty deleted."}


@app.post("/api/penalties/{penalty_id}/relieve", dependencies=[Depends(require_admin)])
def relieve_penalty(penalty_id: int):
    payment = ledger.relieve_penalty(penalty_id)
    return {"payment": payment.to_dict(), "message": "Penalty relieved."}


@app.get("/api/payments", dependencies=[Depends(require_admin)])
def list_payments():
    return {"payments": _dicts(ledger.list_payments())}


@app.post("/api/payments", status_code=201, dependencies=[Depends(require_admin)])
def create_payment(payload: PaymentCreateModel):
    payment = ledger.record_payment(**payload.model_dump())
    return {"payment": payment.to_dict(), "message": "Payment recorded."}


@app.get("/api/stats", dependencies=[Depends(require_admin)])
def get_stats():
    return {"stats": library.get_statistics()}


# --- Client portal ---
@app.get("/api/client/books")
def browse_books(search: Optional[str] = Query(None), principal: Principal = Depends(require_client)):
    books = library.browse_available_books(search)
    pending = circulation.pending_book_ids(principal.id, [book.id for book in books])
    return {"books": _dicts(books), "pending_request_book_ids": pending}


@app.get("/api/client/dashboard")
def client_dashboard(principal: Principal = Depends(require_client)):
    return {"dashboard": circulation.client_dashboard(principal.id)}


@app.get("/api/client/my-books")
def client_my_books(principal: Principal = Depends(require_client)):
    return {"book_numbers": _dicts(circulation.client_books(principal.id))}


@app.get("/api/client/borrow-requests")
def client_borrow_requests(principal: Principal = Depends(require_client)):
    return {"borrow_requests": _dicts(circulation.list_for_client(principal.id))}


@app.post("/api/client/borrow-requests", status_code=201)
def submit_borrow_request(payload: BorrowRequestCreateModel, principal: Principal = Depends(require_client)):
    borrow_request = circulation.submit(principal.id, payload.book_id)
    return {"borrow_request": borrow_request.to_dict(), "message": "Borrow request submitted successfully."}


@app.delete("/api/client/borrow-requests/{request_id}")
def cancel_borrow_request(request_id: int, principal: Principal = Depends(require_client)):
    circulation.cancel(request_id, principal)
    return {"message": "Borrow request cancelled."}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api:app", host=settings.api_host, port=settings.api_port, reload=settings.debug)
