"""Inventory ledger: the only writer of a book's copy counts.

Every change is a single conditional UPDATE, so the guard and the write are
evaluated together by the store and two callers can never both take the
last copy.
"""

from __future__ import annotations

import logging
import sqlite3

from circulation.errors import Inconsistent, InvalidRange, Unavailable, not_found
from circulation.models import BookPool, BookStatus

logger = logging.getLogger(__name__)


class InventoryLedger:

    def pool(self, conn: sqlite3.Connection, book_id: int) -> BookPool:
        row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        if row is None:
            raise not_found("Book", book_id)
        return BookPool.from_row(row)

    def reserve_copy(self, conn: sqlite3.Connection, book_id: int) -> BookPool:
        """Take one copy out of the available pool."""
        cursor = conn.execute(
            """
            UPDATE books SET available_copies = available_copies - 1
            WHERE id = ? AND available_copies > 0 AND status = ?
            """,
            (book_id, BookStatus.AVAILABLE.value),
        )
        if cursor.rowcount == 0:
            pool = self.pool(conn, book_id)
            raise Unavailable(
                "Book is not available for borrowing",
                book_id=book_id, available_copies=pool.available_copies, status=pool.status,
            )
        return self.pool(conn, book_id)

    def release_copy(self, conn: sqlite3.Connection, book_id: int) -> BookPool:
        """Put one copy back. Releasing more than was taken is a caller bug."""
        cursor = conn.execute(
            """
            UPDATE books SET available_copies = available_copies + 1
            WHERE id = ? AND available_copies < total_copies
            """,
            (book_id,),
        )
        if cursor.rowcount == 0:
            pool = self.pool(conn, book_id)
            logger.error(
                f"Invariant violation: release of book {book_id} would exceed owned copies "
                f"(available={pool.available_copies}, total={pool.total_copies})"
            )
            raise Inconsistent(
                "Releasing this copy would exceed the number of copies owned",
                book_id=book_id, available_copies=pool.available_copies,
                total_copies=pool.total_copies,
            )
        return self.pool(conn, book_id)

    def write_off_copy(self, conn: sqlite3.Connection, book_id: int) -> BookPool:
        """Drop one owned copy that is out on loan and will not come back."""
        cursor = conn.execute(
            """
            UPDATE books SET total_copies = total_copies - 1
            WHERE id = ? AND total_copies - 1 >= available_copies
            """,
            (book_id,),
        )
        if cursor.rowcount == 0:
            pool = self.pool(conn, book_id)
            logger.error(
                f"Invariant violation: write-off of book {book_id} with no copy in circulation "
                f"(available={pool.available_copies}, total={pool.total_copies})"
            )
            raise Inconsistent(
                "No copy of this book is in circulation to write off",
                book_id=book_id, available_copies=pool.available_copies,
                total_copies=pool.total_copies,
            )
        return self.pool(conn, book_id)

    def adjust_totals(self, conn: sqlite3.Connection, book_id: int,
                      new_total: int, new_available: int) -> BookPool:
        """Staff re-stocking: overwrite both counts at once."""
        if new_total < 0 or new_available < 0 or new_available > new_total:
            raise InvalidRange(
                "Copy counts must satisfy 0 <= available <= total",
                total_copies=new_total, available_copies=new_available,
            )
        before = self.pool(conn, book_id)
        on_loan = conn.execute(
            "SELECT COUNT(*) FROM transactions WHERE book_id = ? AND status = 'issued'",
            (book_id,),
        ).fetchone()[0]
        if new_total - new_available < on_loan:
            raise InvalidRange(
                f"{on_loan} copies are on loan; total minus available cannot be smaller",
                total_copies=new_total, available_copies=new_available,
            )
        conn.execute(
            "UPDATE books SET total_copies = ?, available_copies = ? WHERE id = ?",
            (new_total, new_available, book_id),
        )
        logger.info(
            f"Book {book_id} restocked: total {before.total_copies}->{new_total}, "
            f"available {before.available_copies}->{new_available}"
        )
        return self.pool(conn, book_id)
