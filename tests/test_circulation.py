from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest

from errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from models import Principal

TODAY = date(2025, 4, 1)


@pytest.fixture
def book(lib):
    return lib.create_book("Dune", "Frank Herbert", 1965, 2, label_prefix="C")


def _copies(lib, book):
    return lib.list_copies(book_id=book.id)


def test_submit_creates_pending_request(circulation, book, make_client):
    client = make_client()
    request = circulation.submit(client.id, book.id)

    assert request.status == "pending"
    assert request.client_id == client.id
    assert request.book_title == "Dune"
    assert circulation.pending_book_ids(client.id) == [book.id]


def test_approve_scenario(lib, circulation, book, make_client):
    client = make_client()
    request = circulation.submit(client.id, book.id)
    c1 = _copies(lib, book)[0]

    approved = circulation.approve(request.id, c1.id, "2025-05-01", today=TODAY)

    assert approved.status == "approved"
    assert lib.get_book(book.id).assigned_copies == 1
    copy = lib.get_copy(c1.id)
    assert copy.status == "assigned"
    assert copy.borrower_id == client.id
    assert copy.due_date == date(2025, 5, 1)


def test_submit_refused_when_every_copy_is_out(lib, circulation, book, make_client):
    holder, newcomer = make_client(), make_client()
    for copy in _copies(lib, book):
        lib.assign_copy(copy.id, holder.id, "2025-05-01", today=TODAY)
    assert lib.get_book(book.id).assigned_copies == 2

    with pytest.raises(ConflictError, match="not available"):
        circulation.submit(newcomer.id, book.id)
    assert circulation.list_for_client(newcomer.id) == []


def test_approve_with_consumed_copy_leaves_request_pending(lib, circulation, book, make_client):
    first, second = make_client(), make_client()
    r1 = circulation.submit(first.id, book.id)
    r2 = circulation.submit(second.id, book.id)
    c1 = _copies(lib, book)[0]

    circulation.approve(r1.id, c1.id, "2025-05-01", today=TODAY)
    with pytest.raises(ConflictError, match="no longer available"):
        circulation.approve(r2.id, c1.id, "2025-05-01", today=TODAY)

    assert circulation.get(r2.id).status == "pending"
    copy = lib.get_copy(c1.id)
    assert copy.borrower_id == first.id
    assert lib.get_book(book.id).assigned_copies == 1


def test_approve_rejects_copy_of_another_title(lib, circulation, book, make_client):
    client = make_client()
    other = lib.create_book("Emma", "Jane Austen", 1815, 1)
    request = circulation.submit(client.id, book.id)
    foreign_copy = _copies(lib, other)[0]

    with pytest.raises(ConflictError):
        circulation.approve(request.id, foreign_copy.id, "2025-05-01", today=TODAY)
    assert lib.get_copy(foreign_copy.id).status == "available"
    assert circulation.get(request.id).is_pending


def test_concurrent_approvals_for_one_copy(lib, circulation, book, make_client):
    first, second = make_client(), make_client()
    requests = [circulation.submit(first.id, book.id), circulation.submit(second.id, book.id)]
    c1 = _copies(lib, book)[0]

    def attempt(request):
        try:
            circulation.approve(request.id, c1.id, "2025-05-01", today=TODAY)
            return "approved"
        except ConflictError:
            return "conflict"

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = sorted(pool.map(attempt, requests))

    assert outcomes == ["approved", "conflict"]
    assert lib.get_book(book.id).assigned_copies == 1
    statuses = sorted(circulation.get(r.id).status for r in requests)
    assert statuses == ["approved", "pending"]


def test_cancel_racing_approval_has_one_winner(lib, circulation, book, make_client):
    c1 = _copies(lib, book)[0]

    for _ in range(5):
        client = make_client()
        request = circulation.submit(client.id, book.id)

        def approve():
            try:
                circulation.approve(request.id, c1.id, "2025-05-01", today=TODAY)
                return "approved"
            except (ConflictError, NotFoundError) as e:
                return type(e).__name__

        def cancel():
            try:
                circulation.cancel(request.id, Principal.client(client.id))
                return "cancelled"
            except (ConflictError, NotFoundError) as e:
                return type(e).__name__

        with ThreadPoolExecutor(max_workers=2) as pool:
            approving, cancelling = pool.submit(approve), pool.submit(cancel)
            outcome = (approving.result(), cancelling.result())

        copy = lib.get_copy(c1.id)
        if outcome == ("approved", "ConflictError"):
            assert circulation.get(request.id).status == "approved"
            assert copy.borrower_id == client.id
            assert lib.get_book(book.id).assigned_copies == 1
            lib.collect_copy(c1.id)
        else:
            assert outcome == ("NotFoundError", "cancelled")
            with pytest.raises(NotFoundError):
                circulation.get(request.id)
            assert copy.status == "available"
            assert lib.get_book(book.id).assigned_copies == 0


def test_approve_validates_due_date_and_copy(circulation, book, make_client):
    client = make_client()
    request = circulation.submit(client.id, book.id)

    with pytest.raises(ValidationError) as excinfo:
        circulation.approve(request.id, None, "2025-03-01", today=TODAY)
    assert set(excinfo.value.errors) == {"book_number_id", "date_to_be_returned"}
    assert circulation.get(request.id).is_pending


def test_processed_requests_cannot_be_decided_again(lib, circulation, book, make_client):
    client = make_client()
    request = circulation.submit(client.id, book.id)
    circulation.reject(request.id)

    with pytest.raises(ConflictError, match="already been processed"):
        circulation.reject(request.id)
    with pytest.raises(ConflictError, match="already been processed"):
        circulation.approve(request.id, _copies(lib, book)[0].id, "2025-05-01", today=TODAY)
    assert lib.get_book(book.id).assigned_copies == 0


def test_reject_only_changes_status(lib, circulation, book, make_client):
    client = make_client()
    request = circulation.submit(client.id, book.id)
    rejected = circulation.reject(request.id)

    assert rejected.status == "rejected"
    assert all(copy.status == "available" for copy in _copies(lib, book))


def test_duplicate_pending_request_refused(circulation, book, make_client):
    client = make_client()
    circulation.submit(client.id, book.id)
    with pytest.raises(ConflictError, match="pending request for this book"):
        circulation.submit(client.id, book.id)


def test_new_request_allowed_after_rejection(circulation, book, make_client):
    client = make_client()
    first = circulation.submit(client.id, book.id)
    circulation.reject(first.id)
    assert circulation.submit(client.id, book.id).is_pending


def test_borrow_limit_counts_loans_and_pending(lib, circulation, make_client):
    client = make_client()
    books = [lib.create_book(f"Title {i}", "Author", 2000, 1) for i in range(6)]

    # two copies already out, three waiting: five in total
    for book in books[:2]:
        lib.assign_copy(_copies(lib, book)[0].id, client.id, "2025-05-01", today=TODAY)
    for book in books[2:5]:
        circulation.submit(client.id, book.id)

    with pytest.raises(ConflictError, match=r"Borrowing limit reached \(max 5 items"):
        circulation.submit(client.id, books[5].id)
    assert circulation.client_dashboard(client.id) == {
        "borrowed_count": 2,
        "pending_count": 3,
        "borrow_limit": 5,
        "remaining": 0,
    }


def test_submit_unknown_book(circulation, make_client):
    client = make_client()
    with pytest.raises(ValidationError) as excinfo:
        circulation.submit(client.id, 999)
    assert "book_id" in excinfo.value.errors


def test_cancel_pending_request(circulation, book, make_client):
    client = make_client()
    request = circulation.submit(client.id, book.id)
    circulation.cancel(request.id, Principal.client(client.id))

    with pytest.raises(NotFoundError):
        circulation.get(request.id)


def test_cancel_requires_owner(circulation, book, make_client):
    owner, stranger = make_client(), make_client()
    request = circulation.submit(owner.id, book.id)

    with pytest.raises(PermissionDeniedError):
        circulation.cancel(request.id, Principal.client(stranger.id))
    with pytest.raises(PermissionDeniedError):
        circulation.cancel(request.id, Principal.admin(owner.id))
    assert circulation.get(request.id).is_pending


def test_cancel_processed_request_conflicts(lib, circulation, book, make_client):
    client = make_client()
    request = circulation.submit(client.id, book.id)
    circulation.approve(request.id, _copies(lib, book)[0].id, "2025-05-01", today=TODAY)

    with pytest.raises(ConflictError, match="already processed"):
        circulation.cancel(request.id, Principal.client(client.id))
    assert circulation.get(request.id).status == "approved"


def test_decide_dispatches_on_status(lib, circulation, book, make_client):
    client = make_client()
    r1 = circulation.submit(client.id, book.id)

    with pytest.raises(ValidationError):
        circulation.decide(r1.id, "pending")
    approved = circulation.decide(r1.id, "approved", copy_id=_copies(lib, book)[0].id,
                                  due_date="2025-05-01", today=TODAY)
    assert approved.status == "approved"


def test_list_requests_filters_and_pages(lib, circulation, make_client):
    alice, bob = make_client(name="Alice"), make_client(name="Bob")
    books = [lib.create_book(f"Title {i}", "Author", 2000, 1) for i in range(3)]
    for book in books:
        circulation.submit(alice.id, book.id)
    bob_request = circulation.submit(bob.id, books[0].id)
    circulation.reject(bob_request.id)

    pending = circulation.list_requests(status="pending", per_page=2)
    assert pending["total"] == 3
    assert pending["total_pages"] == 2
    assert len(pending["items"]) == 2

    assert [r.client_name for r in circulation.list_requests(search="Bob")["items"]] == ["Bob"]
    # newest first
    assert circulation.list_requests()["items"][0].id == bob_request.id
    with pytest.raises(ValidationError):
        circulation.list_requests(status="lost")


def test_client_books_lists_held_copies(lib, circulation, book, make_client):
    client = make_client()
    request = circulation.submit(client.id, book.id)
    copy = _copies(lib, book)[0]
    circulation.approve(request.id, copy.id, "2025-05-01", today=TODAY)

    held = circulation.client_books(client.id)
    assert [c.id for c in held] == [copy.id]
    assert held[0].book_title == "Dune"
