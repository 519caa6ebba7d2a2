"""Lifecycle orchestrator.

Sequences the ledger, the circulation state machine, the fine calculator and
the reservation queue for each borrower-facing use case. Every use case runs
inside one ``database.transaction()``: either all of its writes commit or
none do. Notifications are sent only after the commit succeeded.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from circulation import database
from circulation.catalog import Catalog
from circulation.config import settings
from circulation.errors import AccessDenied
from circulation.fines import FineCalculator
from circulation.ledger import InventoryLedger
from circulation.loans import Circulation
from circulation.models import BookPool, Fine, Loan, Member, Reservation, Role, as_utc, utcnow
from circulation.reservations import ReservationQueue
from circulation.services.notifications import Fact, NotificationSender

logger = logging.getLogger(__name__)

Notice = Tuple[Fact, Dict[str, Any], Dict[str, Any], Dict[str, Any]]


def _require_staff(actor: Member) -> None:
    if not actor.is_staff:
        raise AccessDenied("This operation is restricted to librarians and admins", member_id=actor.id)


def _require_owner_or_staff(actor: Member, owner_id: int) -> None:
    if actor.id != owner_id and not actor.is_staff:
        raise AccessDenied("Access denied", member_id=actor.id)


class LifecycleOrchestrator:

    def __init__(self, notifier: Optional[NotificationSender] = None,
                 fines: Optional[FineCalculator] = None) -> None:
        self.catalog = Catalog()
        self.ledger = InventoryLedger()
        self.fines = fines or FineCalculator()
        self.circulation = Circulation(self.ledger, self.fines)
        self.reservations = ReservationQueue(self.ledger)
        self.notifier = notifier or NotificationSender()

    def _dispatch(self, notices: List[Notice]) -> None:
        for fact, recipient, book, context in notices:
            try:
                self.notifier.notify(fact, recipient, book, **context)
            except Exception as e:  # the operation is already committed
                logger.error(f"Could not queue {fact.value} notice for {recipient.get('email')}: {e}")

    # ------------------------- identity and catalog ------------------------- #
    def register_member(self, name: str, email: str, role: str = Role.BORROWER.value) -> Member:
        with database.transaction() as conn:
            return self.catalog.register_member(conn, name, email, role)

    def get_member(self, member_id: int) -> Member:
        with database.read_only() as conn:
            return self.catalog.get_member(conn, member_id)

    def set_member_status(self, member_id: int, status: str, actor: Member) -> Member:
        _require_staff(actor)
        with database.transaction() as conn:
            return self.catalog.set_member_status(conn, member_id, status)

    def add_book(self, title: str, total_copies: int, actor: Member, isbn: Optional[str] = None) -> BookPool:
        _require_staff(actor)
        with database.transaction() as conn:
            return self.catalog.add_book(conn, title, total_copies, isbn=isbn)

    def get_book(self, book_id: int) -> BookPool:
        with database.read_only() as conn:
            return self.catalog.get_book(conn, book_id)

    def set_book_status(self, book_id: int, status: str, actor: Member) -> BookPool:
        _require_staff(actor)
        with database.transaction() as conn:
            return self.catalog.set_book_status(conn, book_id, status)

    def adjust_totals(self, book_id: int, new_total: int, new_available: int, actor: Member) -> BookPool:
        _require_staff(actor)
        with database.transaction() as conn:
            return self.ledger.adjust_totals(conn, book_id, new_total, new_available)

    # ------------------------- borrow / return ------------------------- #
    def borrow(self, borrower_id: int, book_id: int, actor: Member,
               due_date: Optional[datetime] = None, now: Optional[datetime] = None) -> Loan:
        _require_staff(actor)
        with database.transaction() as conn:
            borrower = self.catalog.get_member(conn, borrower_id)
            self.catalog.get_book(conn, book_id)
            return self.circulation.issue(conn, borrower, book_id, actor.id, due_date=due_date, now=now)

    def return_book(self, loan_id: int, actor: Member, notes: Optional[str] = None,
                    now: Optional[datetime] = None) -> Tuple[Loan, Optional[Fine]]:
        _require_staff(actor)
        notices: List[Notice] = []
        with database.transaction() as conn:
            loan, fine = self.circulation.return_loan(conn, loan_id, actor.id, notes=notes, now=now)
            head = self.reservations.head(conn, loan.book_id)
            if head is not None and not head.notification_sent:
                self.reservations.mark_notified(conn, head.id)
                member = self.catalog.get_member(conn, head.borrower_id)
                book = self.catalog.get_book(conn, loan.book_id)
                notices.append((Fact.RESERVATION_AVAILABLE, member.to_dict(), book.to_dict(),
                                {"reservation_id": head.id}))
        self._dispatch(notices)
        return loan, fine

    def extend(self, loan_id: int, new_due_date: datetime, reason: str, actor: Member) -> Loan:
        _require_staff(actor)
        with database.transaction() as conn:
            return self.circulation.extend(conn, loan_id, new_due_date, reason)

    def report_lost(self, loan_id: int, actor: Member, fine_amount: Optional[Any] = None,
                    notes: Optional[str] = None, now: Optional[datetime] = None) -> Tuple[Loan, Optional[Fine]]:
        _require_staff(actor)
        with database.transaction() as conn:
            return self.circulation.report_lost(conn, loan_id, actor.id, fine_amount=fine_amount,
                                                notes=notes, now=now)

    def get_loan(self, loan_id: int, actor: Member) -> Loan:
        with database.read_only() as conn:
            loan = self.circulation.get(conn, loan_id)
        _require_owner_or_staff(actor, loan.borrower_id)
        return loan

    def list_loans(self, actor: Member, **filters: Any) -> Tuple[List[Loan], Dict[str, int]]:
        if not actor.is_staff:
            filters["borrower_id"] = actor.id
        with database.read_only() as conn:
            return self.circulation.list_loans(conn, **filters)

    def list_overdue(self, actor: Optional[Member] = None, page: int = 1,
                     limit: int = settings.default_page_size,
                     now: Optional[datetime] = None) -> Tuple[List[Loan], Dict[str, int]]:
        if actor is not None:
            _require_staff(actor)
        with database.read_only() as conn:
            return self.circulation.list_overdue(conn, page=page, limit=limit, now=now)

    def due_soon(self, days: Optional[int] = None, now: Optional[datetime] = None) -> List[Loan]:
        now = as_utc(now or utcnow())
        days = settings.reminder_days_ahead if days is None else days
        with database.read_only() as conn:
            return self.circulation.due_between(conn, now, now + timedelta(days=days))

    # ------------------------- fines ------------------------- #
    def assess_fine(self, borrower_id: int, loan_id: int, amount: Any, reason: str, actor: Member,
                    notes: Optional[str] = None, now: Optional[datetime] = None) -> Fine:
        _require_staff(actor)
        with database.transaction() as conn:
            self.catalog.get_member(conn, borrower_id)
            return self.fines.assess(conn, borrower_id, loan_id, amount, reason, notes=notes, now=now)

    def pay_fine(self, fine_id: int, method: str, actor: Member, notes: Optional[str] = None,
                 now: Optional[datetime] = None) -> Fine:
        _require_staff(actor)
        notices: List[Notice] = []
        with database.transaction() as conn:
            fine = self.fines.pay(conn, fine_id, method, actor.id, notes=notes, now=now)
            member = self.catalog.get_member(conn, fine.borrower_id)
            loan = self.circulation.get(conn, fine.loan_id)
            book = self.catalog.get_book(conn, loan.book_id)
            notices.append((Fact.FINE_PAYMENT, member.to_dict(), book.to_dict(),
                            {"amount": fine.amount, "method": method}))
        self._dispatch(notices)
        return fine

    def waive_fine(self, fine_id: int, reason: str, actor: Member) -> Fine:
        _require_staff(actor)
        with database.transaction() as conn:
            return self.fines.waive(conn, fine_id, reason, actor.id)

    def annotate_fine(self, fine_id: int, notes: str, actor: Member) -> Fine:
        _require_staff(actor)
        with database.transaction() as conn:
            return self.fines.annotate(conn, fine_id, notes)

    def get_fine(self, fine_id: int, actor: Member) -> Fine:
        with database.read_only() as conn:
            fine = self.fines.get(conn, fine_id)
        _require_owner_or_staff(actor, fine.borrower_id)
        return fine

    def list_fines(self, actor: Member, **filters: Any) -> Tuple[List[Fine], Dict[str, int]]:
        if not actor.is_staff:
            filters["borrower_id"] = actor.id
        with database.read_only() as conn:
            return self.fines.list_fines(conn, **filters)

    def outstanding(self, borrower_id: int, actor: Optional[Member] = None) -> Tuple[List[Fine], Decimal]:
        if actor is not None:
            _require_owner_or_staff(actor, borrower_id)
        with database.read_only() as conn:
            return self.fines.outstanding(conn, borrower_id)

    # ------------------------- reservations ------------------------- #
    def reserve(self, borrower_id: int, book_id: int, actor: Member,
                expiry_date: Optional[datetime] = None, notes: Optional[str] = None,
                now: Optional[datetime] = None) -> Reservation:
        _require_owner_or_staff(actor, borrower_id)
        with database.transaction() as conn:
            borrower = self.catalog.get_member(conn, borrower_id)
            return self.reservations.create(conn, borrower, book_id, expiry_date=expiry_date,
                                            notes=notes, now=now)

    def cancel_reservation(self, reservation_id: int, actor: Member) -> Reservation:
        with database.transaction() as conn:
            return self.reservations.cancel(conn, reservation_id, actor)

    def fulfill_reservation(self, reservation_id: int, actor: Member,
                            now: Optional[datetime] = None) -> Reservation:
        _require_staff(actor)
        with database.transaction() as conn:
            return self.reservations.fulfill(conn, reservation_id, actor.id, now=now)

    def auto_expire(self, now: Optional[datetime] = None, actor: Optional[Member] = None) -> List[Reservation]:
        """Expiry sweep. ``actor`` is omitted when the sweep is run by the scheduler or CLI."""
        if actor is not None:
            _require_staff(actor)
        with database.transaction() as conn:
            return self.reservations.auto_expire(conn, now=now)

    def get_reservation(self, reservation_id: int, actor: Member) -> Reservation:
        with database.read_only() as conn:
            reservation = self.reservations.get(conn, reservation_id)
        _require_owner_or_staff(actor, reservation.borrower_id)
        return reservation

    def list_reservations(self, actor: Member, **filters: Any) -> Tuple[List[Reservation], Dict[str, int]]:
        if not actor.is_staff:
            filters["borrower_id"] = actor.id
        with database.read_only() as conn:
            return self.reservations.list_reservations(conn, **filters)

    def list_expired_reservations(self, page: int = 1, limit: int = settings.default_page_size,
                                  now: Optional[datetime] = None) -> Tuple[List[Reservation], Dict[str, int]]:
        with database.read_only() as conn:
            return self.reservations.list_expired(conn, page=page, limit=limit, now=now)

    def queue(self, book_id: int) -> List[Reservation]:
        with database.read_only() as conn:
            self.catalog.get_book(conn, book_id)
            return self.reservations.queue(conn, book_id)

    # ------------------------- reminders ------------------------- #
    def send_due_reminders(self, now: Optional[datetime] = None,
                           days_ahead: Optional[int] = None) -> Dict[str, int]:
        """Notify borrowers of loans due soon or already overdue. Loans are not modified."""
        now = as_utc(now or utcnow())
        days_ahead = settings.reminder_days_ahead if days_ahead is None else days_ahead
        notices: List[Notice] = []
        with database.read_only() as conn:
            due_soon = self.circulation.due_between(conn, now, now + timedelta(days=days_ahead))
            overdue = self.circulation.all_overdue(conn, now=now)
            for loan in due_soon:
                member = self.catalog.get_member(conn, loan.borrower_id)
                book = self.catalog.get_book(conn, loan.book_id)
                notices.append((Fact.DUE_REMINDER, member.to_dict(), book.to_dict(),
                                {"due_date": loan.due_date.date()}))
            for loan in overdue:
                member = self.catalog.get_member(conn, loan.borrower_id)
                book = self.catalog.get_book(conn, loan.book_id)
                notices.append((Fact.OVERDUE, member.to_dict(), book.to_dict(), {
                    "due_date": loan.due_date.date(),
                    "overdue_days": loan.overdue_days(now),
                    "fine": self.fines.overdue_amount(loan.due_date, now),
                }))
        self._dispatch(notices)
        logger.info(f"Reminders queued: {len(due_soon)} due soon, {len(overdue)} overdue")
        return {"due_soon": len(due_soon), "overdue": len(overdue)}
