import sqlite3
from datetime import date

import pytest

from database import get_db_connection
from errors import ConflictError, NotFoundError, ValidationError

TODAY = date(2025, 4, 1)


def _book_row(book_id):
    conn = get_db_connection()
    try:
        return conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
    finally:
        conn.close()


def test_create_book_generates_labelled_copies(lib):
    book = lib.create_book("Dune", "Frank Herbert", 1965, 3, label_prefix="DUNE-", label_suffix="-A")

    assert book.total_copies == 3
    assert book.assigned_copies == 0
    assert book.available_copies == 3
    labels = [copy.label for copy in lib.list_copies(book_id=book.id)]
    assert labels == ["DUNE-1-A", "DUNE-2-A", "DUNE-3-A"]
    assert all(copy.status == "available" for copy in lib.list_copies(book_id=book.id))


def test_create_book_default_prefix_and_truncation(lib):
    book = lib.create_book("Emma", "Jane Austen", 1815, 1)
    assert lib.list_copies(book_id=book.id)[0].label == f"BK{book.id}-1"

    long_book = lib.create_book("Persuasion", "Jane Austen", 1817, 1, label_prefix="X" * 30)
    assert lib.list_copies(book_id=long_book.id)[0].label == "X" * 20 + "1"


def test_create_book_label_collision_writes_nothing(lib):
    lib.create_book("First", "Author", 2000, 2, label_prefix="SAME-")
    with pytest.raises(ValidationError) as excinfo:
        lib.create_book("Second", "Author", 2001, 2, label_prefix="SAME-")

    assert "label" in excinfo.value.errors
    assert [b.title for b in lib.list_books()] == ["First"]
    assert len(lib.list_copies()) == 2


def test_create_book_validation(lib):
    with pytest.raises(ValidationError) as excinfo:
        lib.create_book("", "Author", 999, -1)
    assert set(excinfo.value.errors) == {"title", "year", "total_copies"}


def test_list_books_search(lib):
    lib.create_book("The Hobbit", "J.R.R. Tolkien", 1937, 1)
    lib.create_book("Ulysses", "James Joyce", 1922, 1)

    assert [b.title for b in lib.list_books("tolkien")] == ["The Hobbit"]
    assert len(lib.list_books()) == 2


def test_get_book_not_found(lib):
    with pytest.raises(NotFoundError):
        lib.get_book(999)


def test_update_book_partial(lib):
    book = lib.create_book("Old Title", "Old Author", 1990, 1)
    updated = lib.update_book(book.id, title="New Title")

    assert updated.title == "New Title"
    assert updated.author == "Old Author"
    assert lib.get_book(book.id).title == "New Title"


def test_update_book_cannot_change_copy_count(lib, circulation, make_client):
    holder, newcomer = make_client(), make_client()
    book = lib.create_book("Dune", "Frank Herbert", 1965, 1)

    with pytest.raises(TypeError):
        lib.update_book(book.id, total_copies=3)
    updated = lib.update_book(book.id, title="Dune (Deluxe)", year=1966)
    assert updated.total_copies == len(lib.list_copies(book_id=book.id)) == 1

    copy = lib.list_copies(book_id=book.id)[0]
    lib.assign_copy(copy.id, holder.id, "2025-05-01", today=TODAY)
    assert lib.browse_available_books() == []
    with pytest.raises(ConflictError, match="not available"):
        circulation.submit(newcomer.id, book.id)


def test_delete_book_cascades_copies(lib):
    book = lib.create_book("Gone", "Someone", 2000, 2)
    lib.delete_book(book.id)

    assert lib.list_copies() == []
    with pytest.raises(NotFoundError):
        lib.delete_book(book.id)


def test_create_and_delete_copy_keep_totals(lib):
    book = lib.create_book("Dune", "Frank Herbert", 1965, 1)
    copy = lib.create_copy(book.id, "EXTRA-1")

    assert copy.status == "available"
    assert lib.get_book(book.id).total_copies == 2

    lib.delete_copy(copy.id)
    assert lib.get_book(book.id).total_copies == 1
    with pytest.raises(NotFoundError):
        lib.get_copy(copy.id)


def test_create_copy_rejects_duplicate_label_and_unknown_book(lib):
    book = lib.create_book("Dune", "Frank Herbert", 1965, 1, label_prefix="D-")
    with pytest.raises(ValidationError) as excinfo:
        lib.create_copy(book.id, "D-1")
    assert "label" in excinfo.value.errors

    with pytest.raises(ValidationError) as excinfo:
        lib.create_copy(999, "NEW")
    assert "book_id" in excinfo.value.errors


def test_update_copy_changes_label_only(lib):
    book = lib.create_book("Dune", "Frank Herbert", 1965, 1)
    copy = lib.list_copies(book_id=book.id)[0]
    updated = lib.update_copy(copy.id, "RENAMED")

    assert updated.label == "RENAMED"
    assert updated.status == "available"


def test_assign_and_collect_keep_invariants(lib, make_client):
    client = make_client()
    book = lib.create_book("Dune", "Frank Herbert", 1965, 2)
    copy = lib.list_copies(book_id=book.id)[0]

    assigned = lib.assign_copy(copy.id, client.id, "2025-05-01", today=TODAY)
    assert assigned.status == "assigned"
    assert assigned.borrower_id == client.id
    assert assigned.due_date == date(2025, 5, 1)
    assert assigned.borrower_name == client.name
    assert lib.get_book(book.id).assigned_copies == 1

    collected = lib.collect_copy(copy.id)
    assert collected.status == "available"
    assert collected.borrower_id is None
    assert collected.due_date is None
    assert lib.get_book(book.id).assigned_copies == 0

    # collecting an available copy leaves the counter alone
    lib.collect_copy(copy.id)
    assert lib.get_book(book.id).assigned_copies == 0


def test_assign_refuses_taken_copy_and_past_dates(lib, make_client):
    first, second = make_client(), make_client()
    book = lib.create_book("Dune", "Frank Herbert", 1965, 1)
    copy = lib.list_copies(book_id=book.id)[0]

    with pytest.raises(ValidationError) as excinfo:
        lib.assign_copy(copy.id, first.id, "2025-03-31", today=TODAY)
    assert "date_to_be_returned" in excinfo.value.errors

    with pytest.raises(ValidationError) as excinfo:
        lib.assign_copy(copy.id, 999, "2025-05-01", today=TODAY)
    assert "assigned_to" in excinfo.value.errors

    lib.assign_copy(copy.id, first.id, "2025-05-01", today=TODAY)
    with pytest.raises(ConflictError, match="not available for assignment"):
        lib.assign_copy(copy.id, second.id, "2025-05-01", today=TODAY)
    assert lib.get_copy(copy.id).borrower_id == first.id
    assert lib.get_book(book.id).assigned_copies == 1


def test_delete_assigned_copy_is_refused(lib, make_client):
    client = make_client()
    book = lib.create_book("Dune", "Frank Herbert", 1965, 1)
    copy = lib.list_copies(book_id=book.id)[0]
    lib.assign_copy(copy.id, client.id, "2025-05-01", today=TODAY)

    with pytest.raises(ConflictError):
        lib.delete_copy(copy.id)


def test_schema_rejects_half_assigned_copy(lib):
    book = lib.create_book("Dune", "Frank Herbert", 1965, 1)
    conn = get_db_connection()
    try:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute("UPDATE book_numbers SET status = 'assigned' WHERE book_id = ?", (book.id,))
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute("UPDATE books SET assigned_copies = 5 WHERE id = ?", (book.id,))
    finally:
        conn.close()


def test_overdue_and_almost_overdue_reports(lib, make_client):
    client = make_client()
    book = lib.create_book("Dune", "Frank Herbert", 1965, 3)
    late, soon, later = lib.list_copies(book_id=book.id)
    lib.assign_copy(late.id, client.id, "2025-04-10", today=date(2025, 4, 1))
    lib.assign_copy(soon.id, client.id, "2025-04-22", today=date(2025, 4, 1))
    lib.assign_copy(later.id, client.id, "2025-05-30", today=date(2025, 4, 1))

    today = date(2025, 4, 20)
    assert [c.id for c in lib.list_overdue_copies(today)] == [late.id]
    assert [c.id for c in lib.list_almost_overdue_copies(today)] == [late.id, soon.id]
    assert late.id not in [c.id for c in lib.list_available_copies_for_book(book.id)]


def test_browse_available_books_hides_fully_assigned_titles(lib, make_client):
    client = make_client()
    out = lib.create_book("All Out", "Author", 2000, 1)
    lib.create_book("On Shelf", "Author", 2000, 1)
    lib.assign_copy(lib.list_copies(book_id=out.id)[0].id, client.id, "2025-05-01", today=TODAY)

    assert [b.title for b in lib.browse_available_books()] == ["On Shelf"]


def test_statistics(lib, make_client):
    client = make_client()
    book = lib.create_book("Dune", "Frank Herbert", 1965, 2)
    copy = lib.list_copies(book_id=book.id)[0]
    lib.assign_copy(copy.id, client.id, "2025-04-02", today=TODAY)

    stats = lib.get_statistics(today=date(2025, 4, 10))
    assert stats["total_books"] == 1
    assert stats["total_copies"] == 2
    assert stats["assigned_copies"] == 1
    assert stats["available_copies"] == 1
    assert stats["total_clients"] == 1
    assert stats["overdue_copies"] == 1
    assert _book_row(book.id)["assigned_copies"] == 1
