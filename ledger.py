import logging
from datetime import date, datetime
from typing import List, Optional

from database import get_db_connection
from errors import ConflictError, NotFoundError
from library import Library
from models import Payment, Penalty
from utils.validators import DateValidator, FieldErrors

logger = logging.getLogger(__name__)


def _money(value: float) -> float:
    return round(float(value), 2)


class Ledger:
    """Overdue penalties and the payments that settle them.

    Both tables are free-standing: staff create penalties by hand from the
    overdue report, and "relieving" a penalty records a payment and then
    deletes the penalty in two separate steps.
    """

    def __init__(self, library: Optional[Library] = None) -> None:
        self.library = library or Library()

    # ------------------------- Penalties ------------------------- #
    def create_penalty(
        self,
        client_name: str,
        client_phone: str,
        due_date,
        days_overdue: int,
        fee_amount: float,
        daily_rate: Optional[float] = None,
        today: Optional[date] = None,
    ) -> Penalty:
        today = today or date.today()
        check = FieldErrors()
        client_name = check.text("client_name", client_name)
        client_phone = check.text("client_phone", client_phone, max_length=20)
        due = DateValidator.parse(due_date)
        if due is None:
            check.add("due_date", "The due_date is not a valid date.")
        elif due >= today:
            check.add("due_date", f"The due_date must be a date before {today.isoformat()}.")
        check.integer_range("days_overdue", days_overdue, 1)
        if fee_amount is None or fee_amount < 0.01:
            check.add("fee_amount", "The fee_amount must be at least 0.01.")
        if daily_rate is not None and daily_rate < 0:
            check.add("daily_rate", "The daily_rate must be at least 0.")
        check.raise_if_any()

        if daily_rate is None:
            daily_rate = fee_amount / days_overdue

        conn = get_db_connection()
        try:
            cursor = conn.execute(
                "INSERT INTO penalties (client_name, client_phone, due_date, days_overdue, daily_rate, fee_amount) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (client_name, client_phone, due.isoformat(), days_overdue, _money(daily_rate), _money(fee_amount)),
            )
            conn.commit()
            penalty_id = cursor.lastrowid
        finally:
            conn.close()

        logger.info("Penalty %s recorded for %s (%d days, %.2f)", penalty_id, client_name, days_overdue, fee_amount)
        return self.get_penalty(penalty_id)

    def penalize_copy(self, copy_id: int, daily_rate: float, today: Optional[date] = None) -> Penalty:
        """Build a penalty from an overdue copy's borrower and due date."""
        today = today or date.today()
        check = FieldErrors()
        if daily_rate is None or daily_rate < 0.01:
            check.add("daily_rate", "The daily_rate must be at least 0.01.")
        check.raise_if_any()

        copy = self.library.get_copy(copy_id)
        days = copy.days_overdue(today)
        if days <= 0:
            raise ConflictError("This book copy is not overdue.")
        return self.create_penalty(
            client_name=copy.borrower_name,
            client_phone=copy.borrower_phone,
            due_date=copy.due_date,
            days_overdue=days,
            fee_amount=days * daily_rate,
            daily_rate=daily_rate,
            today=today,
        )

    def list_penalties(self) -> List[Penalty]:
        conn = get_db_connection()
        try:
            rows = conn.execute("SELECT * FROM penalties ORDER BY due_date, id").fetchall()
            return [Penalty.from_row(row) for row in rows]
        finally:
            conn.close()

    def get_penalty(self, penalty_id: int) -> Penalty:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM penalties WHERE id = ?", (penalty_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFoundError("Penalty", penalty_id)
        return Penalty.from_row(row)

    def delete_penalty(self, penalty_id: int) -> None:
        conn = get_db_connection()
        try:
            cursor = conn.execute("DELETE FROM penalties WHERE id = ?", (penalty_id,))
            conn.commit()
            deleted = cursor.rowcount
        finally:
            conn.close()
        if deleted == 0:
            raise NotFoundError("Penalty", penalty_id)
        logger.info("Penalty %s removed", penalty_id)

    def refresh_penalties(self, today: Optional[date] = None) -> List[Penalty]:
        """Recompute days overdue and fees from the calendar.

        Runs only when staff ask for it; each penalty's fee becomes
        ``days_overdue * daily_rate`` as of ``today``.
        """
        today = today or date.today()
        penalties = self.list_penalties()
        conn = get_db_connection()
        try:
            for penalty in penalties:
                days = max(0, (today - penalty.due_date).days)
                conn.execute(
                    "UPDATE penalties SET days_overdue = ?, fee_amount = ?, updated_at = CURRENT_TIMESTAMP "
                    "WHERE id = ?",
                    (days, _money(days * penalty.daily_rate), penalty.id),
                )
            conn.commit()
        finally:
            conn.close()

        logger.info("Refreshed %d penalties as of %s", len(penalties), today)
        return self.list_penalties()

    # ------------------------- Payments ------------------------- #
    def record_payment(
        self,
        client_name: str,
        client_phone: str,
        amount_paid: float,
        date_paid: Optional[datetime] = None,
        penalty_id: Optional[int] = None,
    ) -> Payment:
        check = FieldErrors()
        client_name = check.text("client_name", client_name)
        client_phone = check.text("client_phone", client_phone, max_length=20)
        if amount_paid is None or amount_paid < 0.01:
            check.add("amount_paid", "The amount_paid must be at least 0.01.")
        check.raise_if_any()

        paid_at = (date_paid or datetime.now()).isoformat(sep=" ", timespec="seconds")
        conn = get_db_connection()
        try:
            cursor = conn.execute(
                "INSERT INTO payments (client_name, client_phone, amount_paid, date_paid, penalty_id) "
                "VALUES (?, ?, ?, ?, ?)",
                (client_name, client_phone, _money(amount_paid), paid_at, penalty_id),
            )
            conn.commit()
            payment_id = cursor.lastrowid
            row = conn.execute("SELECT * FROM payments WHERE id = ?", (payment_id,)).fetchone()
        finally:
            conn.close()

        logger.info("Payment %s of %.2f recorded for %s", payment_id, amount_paid, client_name)
        return Payment.from_row(row)

    def list_payments(self) -> List[Payment]:
        conn = get_db_connection()
        try:
            rows = conn.execute("SELECT * FROM payments ORDER BY date_paid DESC, id DESC").fetchall()
            return [Payment.from_row(row) for row in rows]
        finally:
            conn.close()

    def relieve_penalty(self, penalty_id: int) -> Payment:
        """Settle a penalty: record the payment, then drop the penalty.

        The two steps are independent writes. If the delete fails the payment
        stays recorded and the penalty is still listed until removed by hand.
        """
        penalty = self.get_penalty(penalty_id)
        payment = self.record_payment(
            client_name=penalty.client_name,
            client_phone=penalty.client_phone,
            amount_paid=penalty.fee_amount,
            penalty_id=penalty.id,
        )
        try:
            self.delete_penalty(penalty.id)
        except Exception:
            logger.error("Payment %s recorded but penalty %s could not be removed", payment.id, penalty.id)
            raise
        return payment
