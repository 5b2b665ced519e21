from datetime import date, datetime, timedelta
from unittest.mock import patch

import pytest

from errors import ConflictError, NotFoundError, ValidationError


def _penalty(ledger, **overrides):
    data = {
        "client_name": "Jane Reader",
        "client_phone": "555 0101",
        "due_date": "2025-04-01",
        "days_overdue": 4,
        "fee_amount": 2.0,
    }
    data.update(overrides)
    return ledger.create_penalty(**data)


def test_create_penalty_derives_daily_rate(ledger):
    penalty = _penalty(ledger)

    assert penalty.daily_rate == 0.5
    assert penalty.due_date == date(2025, 4, 1)
    assert [p.id for p in ledger.list_penalties()] == [penalty.id]


def test_create_penalty_validation(ledger):
    with pytest.raises(ValidationError) as excinfo:
        _penalty(ledger, client_name="", client_phone="1" * 21, days_overdue=0, fee_amount=0, due_date="soon")
    assert set(excinfo.value.errors) == {"client_name", "client_phone", "days_overdue", "fee_amount", "due_date"}


def test_create_penalty_rejects_due_date_not_in_the_past(ledger):
    with pytest.raises(ValidationError) as excinfo:
        _penalty(ledger, due_date="2025-04-01", today=date(2025, 4, 1))
    assert set(excinfo.value.errors) == {"due_date"}

    with pytest.raises(ValidationError):
        _penalty(ledger, due_date=date.today() + timedelta(days=3))
    assert ledger.list_penalties() == []

    # a penalty that can be created can always be relieved after a refresh
    penalty = _penalty(ledger, due_date=date.today() - timedelta(days=1), days_overdue=1, fee_amount=0.5)
    ledger.refresh_penalties()
    assert ledger.relieve_penalty(penalty.id).amount_paid == 0.5


def test_refresh_recomputes_from_daily_rate(ledger):
    penalty = _penalty(ledger, daily_rate=1.25)
    refreshed = ledger.refresh_penalties(today=date(2025, 4, 11))

    assert refreshed[0].id == penalty.id
    assert refreshed[0].days_overdue == 10
    assert refreshed[0].fee_amount == 12.5

    # running it again on the same day changes nothing
    again = ledger.refresh_penalties(today=date(2025, 4, 11))
    assert again[0].fee_amount == 12.5


def test_refresh_before_due_date_clamps_to_zero(ledger):
    _penalty(ledger)
    refreshed = ledger.refresh_penalties(today=date(2025, 3, 20))
    assert refreshed[0].days_overdue == 0
    assert refreshed[0].fee_amount == 0


def test_penalize_overdue_copy(ledger, lib, make_client):
    client = make_client(name="Late Larry")
    book = lib.create_book("Dune", "Frank Herbert", 1965, 1)
    copy = lib.list_copies(book_id=book.id)[0]
    lib.assign_copy(copy.id, client.id, "2025-04-05", today=date(2025, 4, 1))

    penalty = ledger.penalize_copy(copy.id, daily_rate=0.75, today=date(2025, 4, 9))
    assert penalty.client_name == "Late Larry"
    assert penalty.client_phone == client.phone
    assert penalty.days_overdue == 4
    assert penalty.fee_amount == 3.0

    with pytest.raises(ConflictError):
        ledger.penalize_copy(copy.id, daily_rate=0.75, today=date(2025, 4, 5))


def test_record_and_list_payments(ledger):
    payment = ledger.record_payment("Jane Reader", "555 0101", 4.5, date_paid=datetime(2025, 4, 2, 10, 30))
    assert payment.amount_paid == 4.5
    assert payment.date_paid == "2025-04-02 10:30:00"
    assert payment.penalty_id is None
    assert [p.id for p in ledger.list_payments()] == [payment.id]

    with pytest.raises(ValidationError):
        ledger.record_payment("Jane Reader", "555 0101", 0)


def test_relieve_records_payment_then_deletes_penalty(ledger):
    penalty = _penalty(ledger, fee_amount=3.0)
    payment = ledger.relieve_penalty(penalty.id)

    assert payment.amount_paid == 3.0
    assert payment.penalty_id == penalty.id
    assert payment.client_name == penalty.client_name
    assert ledger.list_penalties() == []
    with pytest.raises(NotFoundError):
        ledger.relieve_penalty(penalty.id)


def test_relieve_keeps_payment_when_delete_fails(ledger):
    penalty = _penalty(ledger)
    with patch.object(ledger, "delete_penalty", side_effect=RuntimeError("disk gone")):
        with pytest.raises(RuntimeError):
            ledger.relieve_penalty(penalty.id)

    assert len(ledger.list_payments()) == 1
    assert [p.id for p in ledger.list_penalties()] == [penalty.id]


def test_delete_penalty(ledger):
    penalty = _penalty(ledger)
    ledger.delete_penalty(penalty.id)
    with pytest.raises(NotFoundError):
        ledger.delete_penalty(penalty.id)
