"""Fine calculator.

Prices lateness and owns the payment state of every fine. A fine starts
``pending`` and moves once, to ``paid`` or ``waived``; after that only its
notes may change.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from circulation.config import settings
from circulation.database import fetch_page
from circulation.errors import (
    AlreadyPaid,
    AlreadyWaived,
    DuplicateFine,
    ValidationError,
    not_found,
)
from circulation.models import (
    Fine,
    FineReason,
    PaymentMethod,
    PaymentStatus,
    append_note,
    days_late,
    to_db_time,
    to_money,
    utcnow,
)

logger = logging.getLogger(__name__)


class FineCalculator:

    def __init__(self, daily_rate: Optional[Decimal] = None) -> None:
        self.daily_rate = to_money(daily_rate if daily_rate is not None else settings.daily_fine_rate)

    def overdue_amount(self, due_date: datetime, returned_at: datetime) -> Decimal:
        """``ceil(days late) * daily rate``; zero when returned on or before the due moment."""
        return to_money(days_late(due_date, returned_at) * self.daily_rate)

    # ------------------------- lookups ------------------------- #
    def get(self, conn: sqlite3.Connection, fine_id: int) -> Fine:
        row = conn.execute("SELECT * FROM fines WHERE id = ?", (fine_id,)).fetchone()
        if row is None:
            raise not_found("Fine", fine_id)
        return Fine.from_row(row)

    def outstanding(self, conn: sqlite3.Connection, borrower_id: int) -> Tuple[List[Fine], Decimal]:
        rows = conn.execute(
            "SELECT * FROM fines WHERE borrower_id = ? AND payment_status = ? ORDER BY created_at DESC, id DESC",
            (borrower_id, PaymentStatus.PENDING.value),
        ).fetchall()
        fines = [Fine.from_row(r) for r in rows]
        return fines, to_money(sum((f.amount for f in fines), Decimal("0")))

    def outstanding_total(self, conn: sqlite3.Connection, borrower_id: int) -> Decimal:
        return self.outstanding(conn, borrower_id)[1]

    def pending_count(self, conn: sqlite3.Connection, borrower_id: int) -> int:
        """Number of unsettled fines, whatever their amount."""
        return conn.execute(
            "SELECT COUNT(*) FROM fines WHERE borrower_id = ? AND payment_status = ?",
            (borrower_id, PaymentStatus.PENDING.value),
        ).fetchone()[0]

    def list_fines(self, conn: sqlite3.Connection, *, borrower_id: Optional[int] = None,
                   payment_status: Optional[str] = None, reason: Optional[str] = None,
                   min_amount: Optional[Decimal] = None, max_amount: Optional[Decimal] = None,
                   sort: str = "created", page: int = 1,
                   limit: int = settings.default_page_size) -> Tuple[List[Fine], Dict[str, int]]:
        clauses: List[str] = []
        params: List[Any] = []
        if borrower_id is not None:
            clauses.append("borrower_id = ?")
            params.append(borrower_id)
        if payment_status:
            clauses.append("payment_status = ?")
            params.append(payment_status)
        if reason:
            clauses.append("reason = ?")
            params.append(reason)
        # amounts are stored as text so they keep their exact decimal value
        if min_amount is not None:
            clauses.append("CAST(amount AS REAL) >= ?")
            params.append(float(min_amount))
        if max_amount is not None:
            clauses.append("CAST(amount AS REAL) <= ?")
            params.append(float(max_amount))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        order_by = {
            "amount": "CAST(amount AS REAL) DESC, id DESC",
            "paymentDate": "payment_date DESC, id DESC",
        }.get(sort, "created_at DESC, id DESC")
        rows, pagination = fetch_page(conn, f"SELECT * FROM fines{where}", params, order_by, page, limit)
        return [Fine.from_row(r) for r in rows], pagination

    # ------------------------- transitions ------------------------- #
    def assess(self, conn: sqlite3.Connection, borrower_id: int, loan_id: int, amount: Any,
               reason: str, notes: Optional[str] = None, now: Optional[datetime] = None) -> Fine:
        """Record a fine against a loan. A loan carries at most one fine per reason."""
        now = now or utcnow()
        if reason not in {r.value for r in FineReason}:
            raise ValidationError(f"Unknown fine reason '{reason}'")
        amount = to_money(amount)
        if amount < 0:
            raise ValidationError("Fine amount cannot be negative", amount=amount)

        loan = conn.execute("SELECT borrower_id FROM transactions WHERE id = ?", (loan_id,)).fetchone()
        if loan is None:
            raise not_found("Transaction", loan_id)
        if loan["borrower_id"] != borrower_id:
            raise ValidationError("Transaction does not belong to this borrower",
                                  loan_id=loan_id, borrower_id=borrower_id)

        existing = conn.execute(
            "SELECT id FROM fines WHERE loan_id = ? AND reason = ?", (loan_id, reason)
        ).fetchone()
        if existing is not None:
            raise DuplicateFine(f"A {reason} fine already exists for this transaction",
                                loan_id=loan_id, fine_id=existing["id"])

        cursor = conn.execute(
            """
            INSERT INTO fines (borrower_id, loan_id, amount, reason, notes, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (borrower_id, loan_id, str(amount), reason, notes, to_db_time(now)),
        )
        logger.info(f"Fine {cursor.lastrowid} assessed: borrower={borrower_id} loan={loan_id} "
                    f"amount={amount} reason={reason}")
        return self.get(conn, cursor.lastrowid)

    def _require_pending(self, fine: Fine, action: str) -> None:
        if fine.payment_status == PaymentStatus.PAID.value:
            raise AlreadyPaid(f"Fine is already paid, cannot {action}", fine_id=fine.id)
        if fine.payment_status == PaymentStatus.WAIVED.value:
            raise AlreadyWaived(f"Fine has been waived, cannot {action}", fine_id=fine.id)

    def pay(self, conn: sqlite3.Connection, fine_id: int, method: str, staff_id: int,
            notes: Optional[str] = None, now: Optional[datetime] = None) -> Fine:
        now = now or utcnow()
        if method not in {m.value for m in PaymentMethod}:
            raise ValidationError(f"Unknown payment method '{method}'")
        fine = self.get(conn, fine_id)
        self._require_pending(fine, "pay")
        new_notes = append_note(fine.notes, f"Payment: {notes}") if notes else fine.notes
        conn.execute(
            """
            UPDATE fines SET payment_status = ?, payment_date = ?, payment_method = ?,
                             processed_by = ?, notes = ?
            WHERE id = ? AND payment_status = ?
            """,
            (PaymentStatus.PAID.value, to_db_time(now), method, staff_id, new_notes,
             fine_id, PaymentStatus.PENDING.value),
        )
        logger.info(f"Fine {fine_id} paid by {method}, processed by {staff_id}")
        return self.get(conn, fine_id)

    def waive(self, conn: sqlite3.Connection, fine_id: int, reason: str, staff_id: int) -> Fine:
        fine = self.get(conn, fine_id)
        self._require_pending(fine, "waive")
        conn.execute(
            """
            UPDATE fines SET payment_status = ?, processed_by = ?, notes = ?
            WHERE id = ? AND payment_status = ?
            """,
            (PaymentStatus.WAIVED.value, staff_id, append_note(fine.notes, f"Waived: {reason}"),
             fine_id, PaymentStatus.PENDING.value),
        )
        logger.info(f"Fine {fine_id} waived by {staff_id}: {reason}")
        return self.get(conn, fine_id)

    def annotate(self, conn: sqlite3.Connection, fine_id: int, notes: str) -> Fine:
        fine = self.get(conn, fine_id)
        conn.execute("UPDATE fines SET notes = ? WHERE id = ?", (append_note(fine.notes, notes), fine_id))
        return self.get(conn, fine_id)
