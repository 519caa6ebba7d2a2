"""Circulation state machine.

A loan is ``issued`` until it is ``returned`` or reported ``lost``. Being
overdue is never stored: it is read off the clock (``now > due_date``) each
time a loan is looked at, so there is no background job to drift from it.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from circulation.config import settings
from circulation.database import fetch_page
from circulation.errors import (
    BorrowerInactive,
    DuplicateLoan,
    LimitExceeded,
    NotIssued,
    OutstandingFine,
    ValidationError,
    not_found,
)
from circulation.fines import FineCalculator
from circulation.ledger import InventoryLedger
from circulation.models import (
    Fine,
    FineReason,
    Loan,
    LoanStatus,
    Member,
    append_note,
    as_utc,
    to_db_time,
    to_money,
    utcnow,
)

logger = logging.getLogger(__name__)

LOAN_SORTS = {
    "issueDate": "issue_date DESC, id DESC",
    "dueDate": "due_date ASC, id ASC",
    "returnDate": "return_date DESC, id DESC",
}


class Circulation:

    def __init__(self, ledger: InventoryLedger, fines: FineCalculator) -> None:
        self.ledger = ledger
        self.fines = fines

    # ------------------------- lookups ------------------------- #
    def get(self, conn: sqlite3.Connection, loan_id: int) -> Loan:
        row = conn.execute("SELECT * FROM transactions WHERE id = ?", (loan_id,)).fetchone()
        if row is None:
            raise not_found("Transaction", loan_id)
        return Loan.from_row(row)

    def open_loan_count(self, conn: sqlite3.Connection, borrower_id: int) -> int:
        return conn.execute(
            "SELECT COUNT(*) FROM transactions WHERE borrower_id = ? AND status = ?",
            (borrower_id, LoanStatus.ISSUED.value),
        ).fetchone()[0]

    def find_open_loan(self, conn: sqlite3.Connection, borrower_id: int, book_id: int) -> Optional[Loan]:
        row = conn.execute(
            "SELECT * FROM transactions WHERE borrower_id = ? AND book_id = ? AND status = ?",
            (borrower_id, book_id, LoanStatus.ISSUED.value),
        ).fetchone()
        return Loan.from_row(row) if row else None

    def list_loans(self, conn: sqlite3.Connection, *, borrower_id: Optional[int] = None,
                   book_id: Optional[int] = None, status: Optional[str] = None,
                   overdue: bool = False, start_date: Optional[datetime] = None,
                   end_date: Optional[datetime] = None, sort: str = "issueDate",
                   page: int = 1, limit: int = settings.default_page_size,
                   now: Optional[datetime] = None) -> Tuple[List[Loan], Dict[str, int]]:
        now = now or utcnow()
        clauses: List[str] = []
        params: List[Any] = []
        if borrower_id is not None:
            clauses.append("borrower_id = ?")
            params.append(borrower_id)
        if book_id is not None:
            clauses.append("book_id = ?")
            params.append(book_id)
        if overdue or status == LoanStatus.OVERDUE.value:
            clauses.append("status = ? AND due_date < ?")
            params.extend([LoanStatus.ISSUED.value, to_db_time(now)])
        elif status:
            clauses.append("status = ?")
            params.append(status)
        if start_date is not None:
            clauses.append("issue_date >= ?")
            params.append(to_db_time(start_date))
        if end_date is not None:
            clauses.append("issue_date <= ?")
            params.append(to_db_time(end_date))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows, pagination = fetch_page(conn, f"SELECT * FROM transactions{where}", params,
                                      LOAN_SORTS.get(sort, LOAN_SORTS["issueDate"]), page, limit)
        return [Loan.from_row(r) for r in rows], pagination

    def list_overdue(self, conn: sqlite3.Connection, page: int = 1,
                     limit: int = settings.default_page_size,
                     now: Optional[datetime] = None) -> Tuple[List[Loan], Dict[str, int]]:
        return self.list_loans(conn, overdue=True, sort="dueDate", page=page, limit=limit, now=now)

    def due_between(self, conn: sqlite3.Connection, start: datetime, end: datetime) -> List[Loan]:
        rows = conn.execute(
            "SELECT * FROM transactions WHERE status = ? AND due_date >= ? AND due_date <= ? ORDER BY due_date",
            (LoanStatus.ISSUED.value, to_db_time(start), to_db_time(end)),
        ).fetchall()
        return [Loan.from_row(r) for r in rows]

    def all_overdue(self, conn: sqlite3.Connection, now: Optional[datetime] = None) -> List[Loan]:
        now = now or utcnow()
        rows = conn.execute(
            "SELECT * FROM transactions WHERE status = ? AND due_date < ? ORDER BY due_date",
            (LoanStatus.ISSUED.value, to_db_time(now)),
        ).fetchall()
        return [Loan.from_row(r) for r in rows]

    # ------------------------- transitions ------------------------- #
    def issue(self, conn: sqlite3.Connection, borrower: Member, book_id: int, staff_id: int,
              due_date: Optional[datetime] = None, now: Optional[datetime] = None) -> Loan:
        """Open a loan. All gates are checked before the copy is taken."""
        now = as_utc(now or utcnow())
        due_date = as_utc(due_date) if due_date else now + timedelta(days=settings.default_loan_days)
        if due_date <= now:
            raise ValidationError("Due date must be after the issue date",
                                  issue_date=now, due_date=due_date)

        if not borrower.is_active:
            raise BorrowerInactive("User account is not active", borrower_id=borrower.id)

        if self.find_open_loan(conn, borrower.id, book_id) is not None:
            raise DuplicateLoan("User already has this book issued",
                                borrower_id=borrower.id, book_id=book_id)

        limit = settings.loan_limit(borrower.role)
        if self.open_loan_count(conn, borrower.id) >= limit:
            raise LimitExceeded(f"User has reached the borrowing limit of {limit} books",
                                borrower_id=borrower.id, limit=limit)

        pending = self.fines.pending_count(conn, borrower.id)
        if pending:
            raise OutstandingFine("User has outstanding fines. Please clear them before borrowing.",
                                  borrower_id=borrower.id, pending_fines=pending,
                                  outstanding=self.fines.outstanding_total(conn, borrower.id))

        self.ledger.reserve_copy(conn, book_id)
        cursor = conn.execute(
            """
            INSERT INTO transactions (borrower_id, book_id, issue_date, due_date, status, issued_by)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (borrower.id, book_id, to_db_time(now), to_db_time(due_date),
             LoanStatus.ISSUED.value, staff_id),
        )
        logger.info(f"Loan {cursor.lastrowid} issued: borrower={borrower.id} book={book_id} "
                    f"due={due_date.date()} by={staff_id}")
        return self.get(conn, cursor.lastrowid)

    def return_loan(self, conn: sqlite3.Connection, loan_id: int, staff_id: int,
                    notes: Optional[str] = None,
                    now: Optional[datetime] = None) -> Tuple[Loan, Optional[Fine]]:
        """Close a loan, price any lateness and put the copy back."""
        now = as_utc(now or utcnow())
        loan = self.get(conn, loan_id)
        if loan.status != LoanStatus.ISSUED.value:
            raise NotIssued("Book is not currently issued", loan_id=loan_id, status=loan.status)
        if now < loan.issue_date:
            raise ValidationError("Return date cannot be before issue date", loan_id=loan_id)

        fine: Optional[Fine] = None
        fine_amount = Decimal("0.00")
        if now > loan.due_date:
            fine_amount = self.fines.overdue_amount(loan.due_date, now)
            fine = self.fines.assess(conn, loan.borrower_id, loan.id, fine_amount,
                                     FineReason.OVERDUE.value, now=now)

        conn.execute(
            """
            UPDATE transactions SET return_date = ?, status = ?, fine_amount = ?, returned_by = ?, notes = ?
            WHERE id = ? AND status = ?
            """,
            (to_db_time(now), LoanStatus.RETURNED.value, str(to_money(fine_amount)), staff_id,
             append_note(loan.notes, notes) if notes else loan.notes,
             loan_id, LoanStatus.ISSUED.value),
        )
        self.ledger.release_copy(conn, loan.book_id)
        logger.info(f"Loan {loan_id} returned by={staff_id} fine={fine_amount}")
        return self.get(conn, loan_id), fine

    def extend(self, conn: sqlite3.Connection, loan_id: int, new_due_date: datetime,
               reason: str) -> Loan:
        """Move the due date. Lateness already accrued is not re-priced."""
        loan = self.get(conn, loan_id)
        if loan.status != LoanStatus.ISSUED.value:
            raise NotIssued("Can only extend due date for issued books", loan_id=loan_id, status=loan.status)
        new_due_date = as_utc(new_due_date)
        if new_due_date <= loan.issue_date:
            raise ValidationError("New due date must be after the issue date",
                                  issue_date=loan.issue_date, due_date=new_due_date)
        conn.execute(
            "UPDATE transactions SET due_date = ?, notes = ? WHERE id = ?",
            (to_db_time(new_due_date), append_note(loan.notes, f"Due date extended: {reason}"), loan_id),
        )
        logger.info(f"Loan {loan_id} due date moved {loan.due_date.date()} -> {new_due_date.date()}")
        return self.get(conn, loan_id)

    def report_lost(self, conn: sqlite3.Connection, loan_id: int, staff_id: int,
                    fine_amount: Optional[Any] = None, notes: Optional[str] = None,
                    now: Optional[datetime] = None) -> Tuple[Loan, Optional[Fine]]:
        """Close a loan whose copy will not come back; the owned count drops by one."""
        now = as_utc(now or utcnow())
        loan = self.get(conn, loan_id)
        if loan.status != LoanStatus.ISSUED.value:
            raise NotIssued("Only issued books can be reported lost", loan_id=loan_id, status=loan.status)

        fine: Optional[Fine] = None
        if fine_amount is not None:
            fine = self.fines.assess(conn, loan.borrower_id, loan.id, fine_amount,
                                     FineReason.LOST.value, notes=notes, now=now)
        conn.execute(
            "UPDATE transactions SET status = ?, fine_amount = ?, returned_by = ?, notes = ? WHERE id = ?",
            (LoanStatus.LOST.value, str(fine.amount if fine else loan.fine_amount), staff_id,
             append_note(loan.notes, f"Reported lost: {notes}" if notes else "Reported lost"), loan_id),
        )
        self.ledger.write_off_copy(conn, loan.book_id)
        logger.info(f"Loan {loan_id} reported lost by={staff_id}")
        return self.get(conn, loan_id), fine
