"""Reservation queue.

Holds the waiting line for books with no copy on the shelf. ``priority`` is
the 1-based rank among a book's active reservations, ordered by when they
were placed. This module is its only writer: a new reservation goes to the
back of the line, and whenever one leaves the active set the remaining
reservations for that book are renumbered 1..N in the same unit of work.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from circulation.config import settings
from circulation.database import fetch_page
from circulation.errors import (
    AccessDenied,
    AlreadyHolding,
    BookAvailable,
    BorrowerInactive,
    DuplicateReservation,
    LimitExceeded,
    NotActive,
    NotYetAvailable,
    ValidationError,
    not_found,
)
from circulation.ledger import InventoryLedger
from circulation.models import (
    LoanStatus,
    Member,
    Reservation,
    ReservationStatus,
    as_utc,
    to_db_time,
    utcnow,
)

logger = logging.getLogger(__name__)

ACTIVE = ReservationStatus.ACTIVE.value

RESERVATION_SORTS = {
    "priority": "priority ASC, id ASC",
    "expiryDate": "expiry_date ASC, id ASC",
    "reservationDate": "reservation_date DESC, id DESC",
}


class ReservationQueue:

    def __init__(self, ledger: InventoryLedger) -> None:
        self.ledger = ledger

    # ------------------------- lookups ------------------------- #
    def get(self, conn: sqlite3.Connection, reservation_id: int) -> Reservation:
        row = conn.execute("SELECT * FROM reservations WHERE id = ?", (reservation_id,)).fetchone()
        if row is None:
            raise not_found("Reservation", reservation_id)
        return Reservation.from_row(row)

    def queue(self, conn: sqlite3.Connection, book_id: int) -> List[Reservation]:
        rows = conn.execute(
            "SELECT * FROM reservations WHERE book_id = ? AND status = ? ORDER BY priority, id",
            (book_id, ACTIVE),
        ).fetchall()
        return [Reservation.from_row(r) for r in rows]

    def head(self, conn: sqlite3.Connection, book_id: int) -> Optional[Reservation]:
        line = self.queue(conn, book_id)
        return line[0] if line else None

    def active_count_for_book(self, conn: sqlite3.Connection, book_id: int) -> int:
        return conn.execute(
            "SELECT COUNT(*) FROM reservations WHERE book_id = ? AND status = ?", (book_id, ACTIVE)
        ).fetchone()[0]

    def active_count_for_borrower(self, conn: sqlite3.Connection, borrower_id: int) -> int:
        return conn.execute(
            "SELECT COUNT(*) FROM reservations WHERE borrower_id = ? AND status = ?", (borrower_id, ACTIVE)
        ).fetchone()[0]

    def list_reservations(self, conn: sqlite3.Connection, *, borrower_id: Optional[int] = None,
                          book_id: Optional[int] = None, status: Optional[str] = None,
                          expired: bool = False, sort: str = "reservationDate", page: int = 1,
                          limit: int = settings.default_page_size,
                          now: Optional[datetime] = None) -> Tuple[List[Reservation], Dict[str, int]]:
        now = now or utcnow()
        clauses: List[str] = []
        params: List[Any] = []
        if borrower_id is not None:
            clauses.append("borrower_id = ?")
            params.append(borrower_id)
        if book_id is not None:
            clauses.append("book_id = ?")
            params.append(book_id)
        if expired:
            clauses.append("status = ? AND expiry_date < ?")
            params.extend([ACTIVE, to_db_time(now)])
        elif status:
            clauses.append("status = ?")
            params.append(status)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        order_by = RESERVATION_SORTS.get(sort, RESERVATION_SORTS["reservationDate"])
        rows, pagination = fetch_page(conn, f"SELECT * FROM reservations{where}", params, order_by, page, limit)
        return [Reservation.from_row(r) for r in rows], pagination

    def list_expired(self, conn: sqlite3.Connection, page: int = 1,
                     limit: int = settings.default_page_size,
                     now: Optional[datetime] = None) -> Tuple[List[Reservation], Dict[str, int]]:
        """Active reservations past their expiry that the next sweep will close."""
        return self.list_reservations(conn, expired=True, sort="expiryDate", page=page, limit=limit, now=now)

    # ------------------------- ranking ------------------------- #
    def rerank(self, conn: sqlite3.Connection, book_id: int) -> List[Reservation]:
        """Renumber the book's active reservations 1..N by placement time."""
        rows = conn.execute(
            "SELECT id, priority FROM reservations WHERE book_id = ? AND status = ? "
            "ORDER BY reservation_date, id",
            (book_id, ACTIVE),
        ).fetchall()
        for rank, row in enumerate(rows, start=1):
            if row["priority"] != rank:
                conn.execute("UPDATE reservations SET priority = ? WHERE id = ?", (rank, row["id"]))
        return self.queue(conn, book_id)

    def _leave_active_set(self, conn: sqlite3.Connection, reservation: Reservation, status: str,
                          **fields: Any) -> Reservation:
        assignments = ", ".join(["status = ?"] + [f"{name} = ?" for name in fields])
        conn.execute(
            f"UPDATE reservations SET {assignments} WHERE id = ? AND status = ?",
            [status, *fields.values(), reservation.id, ACTIVE],
        )
        self.rerank(conn, reservation.book_id)
        return self.get(conn, reservation.id)

    # ------------------------- transitions ------------------------- #
    def create(self, conn: sqlite3.Connection, borrower: Member, book_id: int,
               expiry_date: Optional[datetime] = None, notes: Optional[str] = None,
               now: Optional[datetime] = None) -> Reservation:
        now = as_utc(now or utcnow())
        expiry_date = as_utc(expiry_date) if expiry_date else now + timedelta(days=settings.default_reservation_days)
        if expiry_date <= now:
            raise ValidationError("Expiry date must be after reservation date",
                                  reservation_date=now, expiry_date=expiry_date)
        if not borrower.is_active:
            raise BorrowerInactive("User account is not active", borrower_id=borrower.id)

        book = self.ledger.pool(conn, book_id)
        if book.loanable:
            raise BookAvailable("Book is currently available. No need to reserve.",
                                book_id=book_id, available_copies=book.available_copies)

        duplicate = conn.execute(
            "SELECT id FROM reservations WHERE borrower_id = ? AND book_id = ? AND status = ?",
            (borrower.id, book_id, ACTIVE),
        ).fetchone()
        if duplicate is not None:
            raise DuplicateReservation("You already have an active reservation for this book",
                                       reservation_id=duplicate["id"])

        holding = conn.execute(
            "SELECT id FROM transactions WHERE borrower_id = ? AND book_id = ? AND status = ?",
            (borrower.id, book_id, LoanStatus.ISSUED.value),
        ).fetchone()
        if holding is not None:
            raise AlreadyHolding("You currently have this book issued", loan_id=holding["id"])

        limit = settings.reservation_limit(borrower.role)
        if self.active_count_for_borrower(conn, borrower.id) >= limit:
            raise LimitExceeded(f"You have reached the reservation limit of {limit} books",
                                borrower_id=borrower.id, limit=limit)

        # ranks are contiguous, so the back of the line is count + 1
        priority = self.active_count_for_book(conn, book_id) + 1
        cursor = conn.execute(
            """
            INSERT INTO reservations (borrower_id, book_id, reservation_date, expiry_date, status, priority, notes)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (borrower.id, book_id, to_db_time(now), to_db_time(expiry_date), ACTIVE, priority, notes),
        )
        logger.info(f"Reservation {cursor.lastrowid} placed: borrower={borrower.id} book={book_id} "
                    f"position={priority}")
        return self.get(conn, cursor.lastrowid)

    def cancel(self, conn: sqlite3.Connection, reservation_id: int, actor: Member) -> Reservation:
        reservation = self.get(conn, reservation_id)
        if reservation.borrower_id != actor.id and not actor.is_staff:
            raise AccessDenied("Access denied", reservation_id=reservation_id)
        if not reservation.is_active:
            raise NotActive("Can only cancel active reservations",
                            reservation_id=reservation_id, status=reservation.status)
        cancelled = self._leave_active_set(conn, reservation, ReservationStatus.CANCELLED.value)
        logger.info(f"Reservation {reservation_id} cancelled by {actor.id}")
        return cancelled

    def fulfill(self, conn: sqlite3.Connection, reservation_id: int, staff_id: int,
                now: Optional[datetime] = None) -> Reservation:
        """Hand the reserved book over. Copy counts are untouched until the loan is issued."""
        now = now or utcnow()
        reservation = self.get(conn, reservation_id)
        if not reservation.is_active:
            raise NotActive("Can only fulfill active reservations",
                            reservation_id=reservation_id, status=reservation.status)
        book = self.ledger.pool(conn, reservation.book_id)
        if book.available_copies <= 0:
            raise NotYetAvailable("Book is not available", book_id=book.id)
        fulfilled = self._leave_active_set(
            conn, reservation, ReservationStatus.FULFILLED.value,
            fulfilled_by=staff_id, fulfilled_date=to_db_time(now),
        )
        logger.info(f"Reservation {reservation_id} fulfilled by {staff_id}")
        return fulfilled

    def auto_expire(self, conn: sqlite3.Connection, now: Optional[datetime] = None) -> List[Reservation]:
        """Close every active reservation whose expiry has passed. Safe to repeat."""
        now = now or utcnow()
        rows = conn.execute(
            "SELECT * FROM reservations WHERE status = ? AND expiry_date < ? ORDER BY book_id, priority",
            (ACTIVE, to_db_time(now)),
        ).fetchall()
        if not rows:
            return []
        ids = [r["id"] for r in rows]
        conn.execute(
            f"UPDATE reservations SET status = ? WHERE id IN ({', '.join('?' * len(ids))})",
            [ReservationStatus.EXPIRED.value, *ids],
        )
        for book_id in sorted({r["book_id"] for r in rows}):
            self.rerank(conn, book_id)
        logger.info(f"{len(ids)} reservations expired")
        return [self.get(conn, reservation_id) for reservation_id in ids]

    def mark_notified(self, conn: sqlite3.Connection, reservation_id: int) -> None:
        conn.execute("UPDATE reservations SET notification_sent = 1 WHERE id = ?", (reservation_id,))
