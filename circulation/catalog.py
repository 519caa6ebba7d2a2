"""Catalog and identity store.

Members and the copy-count side of books live here. Catalog metadata beyond
title and ISBN belongs to the catalog service and is not modelled. Copy counts
are created here but only ever changed by the inventory ledger afterwards.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from circulation.errors import Conflict, InvalidRange, ValidationError, not_found
from circulation.models import BookPool, BookStatus, Member, MemberStatus, Role

logger = logging.getLogger(__name__)


class Catalog:

    # ------------------------- members ------------------------- #
    def register_member(self, conn: sqlite3.Connection, name: str, email: str,
                        role: str = Role.BORROWER.value) -> Member:
        if not name or not name.strip():
            raise ValidationError("Member name cannot be empty")
        if role not in {r.value for r in Role}:
            raise ValidationError(f"Unknown role '{role}'")
        try:
            cursor = conn.execute(
                "INSERT INTO members (name, email, role) VALUES (?, ?, ?)",
                (name.strip(), email.strip().lower(), role),
            )
        except sqlite3.IntegrityError as e:
            raise Conflict(f"A member with email {email} already exists") from e
        return self.get_member(conn, cursor.lastrowid)

    def find_member(self, conn: sqlite3.Connection, member_id: int) -> Optional[Member]:
        row = conn.execute("SELECT * FROM members WHERE id = ?", (member_id,)).fetchone()
        return Member.from_row(row) if row else None

    def get_member(self, conn: sqlite3.Connection, member_id: int) -> Member:
        member = self.find_member(conn, member_id)
        if member is None:
            raise not_found("Member", member_id)
        return member

    def set_member_status(self, conn: sqlite3.Connection, member_id: int, status: str) -> Member:
        if status not in {s.value for s in MemberStatus}:
            raise ValidationError(f"Unknown member status '{status}'")
        self.get_member(conn, member_id)
        conn.execute("UPDATE members SET status = ? WHERE id = ?", (status, member_id))
        return self.get_member(conn, member_id)

    # ------------------------- books ------------------------- #
    def add_book(self, conn: sqlite3.Connection, title: str, total_copies: int,
                 isbn: Optional[str] = None, available_copies: Optional[int] = None) -> BookPool:
        if not title or not title.strip():
            raise ValidationError("Book title cannot be empty")
        available = total_copies if available_copies is None else available_copies
        if total_copies < 0 or available < 0 or available > total_copies:
            raise InvalidRange(
                "Copy counts must satisfy 0 <= available <= total",
                total_copies=total_copies, available_copies=available,
            )
        cursor = conn.execute(
            "INSERT INTO books (title, isbn, total_copies, available_copies) VALUES (?, ?, ?, ?)",
            (title.strip(), isbn, total_copies, available),
        )
        return self.get_book(conn, cursor.lastrowid)

    def find_book(self, conn: sqlite3.Connection, book_id: int) -> Optional[BookPool]:
        row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        return BookPool.from_row(row) if row else None

    def get_book(self, conn: sqlite3.Connection, book_id: int) -> BookPool:
        book = self.find_book(conn, book_id)
        if book is None:
            raise not_found("Book", book_id)
        return book

    def set_book_status(self, conn: sqlite3.Connection, book_id: int, status: str) -> BookPool:
        if status not in {s.value for s in BookStatus}:
            raise ValidationError(f"Unknown book status '{status}'")
        self.get_book(conn, book_id)
        conn.execute("UPDATE books SET status = ? WHERE id = ?", (status, book_id))
        logger.info(f"Book {book_id} status set to {status}")
        return self.get_book(conn, book_id)
