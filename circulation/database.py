import logging
import math
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from circulation.config import settings
from circulation.errors import Contention

logger = logging.getLogger(__name__)

# Tests and the CLI may point the engine at another file by reassigning this.
DATABASE_FILE = settings.database_file


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection in autocommit mode; transactions are explicit."""
    conn = sqlite3.connect(
        db_file or DATABASE_FILE,
        timeout=settings.db_lock_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA busy_timeout=%d;" % int(settings.db_lock_timeout * 1000))
    return conn


@contextmanager
def transaction(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """One unit of work.

    ``BEGIN IMMEDIATE`` takes the write lock up front, so every read made
    inside the block sees state no other writer can change before commit.
    Any exception rolls the whole unit back.
    """
    conn = get_db_connection(db_file)
    try:
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            if "locked" in str(e) or "busy" in str(e):
                logger.warning(f"Write lock not acquired within {settings.db_lock_timeout}s: {e}")
                raise Contention("The library store is busy, retry the request") from e
            raise
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")
    finally:
        conn.close()


@contextmanager
def read_only(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    conn = get_db_connection(db_file)
    try:
        yield conn
    finally:
        conn.close()


SCHEMA = """
CREATE TABLE IF NOT EXISTS members (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    email TEXT UNIQUE NOT NULL,
    role TEXT NOT NULL CHECK(role IN ('admin', 'librarian', 'borrower')),
    status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'inactive')),
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS books (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    isbn TEXT,
    status TEXT NOT NULL DEFAULT 'available'
        CHECK(status IN ('available', 'unavailable', 'maintenance')),
    total_copies INTEGER NOT NULL CHECK(total_copies >= 0),
    available_copies INTEGER NOT NULL
        CHECK(available_copies >= 0 AND available_copies <= total_copies),
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    borrower_id INTEGER NOT NULL REFERENCES members(id),
    book_id INTEGER NOT NULL REFERENCES books(id),
    issue_date TEXT NOT NULL,
    due_date TEXT NOT NULL,
    return_date TEXT,
    fine_amount TEXT NOT NULL DEFAULT '0.00',
    status TEXT NOT NULL DEFAULT 'issued' CHECK(status IN ('issued', 'returned', 'lost')),
    issued_by INTEGER REFERENCES members(id),
    returned_by INTEGER REFERENCES members(id),
    notes TEXT,
    CHECK(return_date IS NULL OR return_date >= issue_date)
);

CREATE TABLE IF NOT EXISTS fines (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    borrower_id INTEGER NOT NULL REFERENCES members(id),
    loan_id INTEGER NOT NULL REFERENCES transactions(id),
    amount TEXT NOT NULL,
    reason TEXT NOT NULL CHECK(reason IN ('overdue', 'damage', 'lost', 'other')),
    payment_status TEXT NOT NULL DEFAULT 'pending'
        CHECK(payment_status IN ('pending', 'paid', 'waived')),
    payment_date TEXT,
    payment_method TEXT CHECK(payment_method IS NULL OR payment_method IN ('cash', 'card', 'online', 'check')),
    processed_by INTEGER REFERENCES members(id),
    notes TEXT,
    created_at TEXT NOT NULL,
    CHECK((payment_status = 'paid') = (payment_date IS NOT NULL))
);

CREATE TABLE IF NOT EXISTS reservations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    borrower_id INTEGER NOT NULL REFERENCES members(id),
    book_id INTEGER NOT NULL REFERENCES books(id),
    reservation_date TEXT NOT NULL,
    expiry_date TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active'
        CHECK(status IN ('active', 'fulfilled', 'expired', 'cancelled')),
    priority INTEGER NOT NULL DEFAULT 1 CHECK(priority >= 1),
    notification_sent INTEGER NOT NULL DEFAULT 0,
    fulfilled_by INTEGER REFERENCES members(id),
    fulfilled_date TEXT,
    notes TEXT,
    CHECK(expiry_date > reservation_date)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_fines_loan_reason ON fines(loan_id, reason);
CREATE UNIQUE INDEX IF NOT EXISTS idx_reservations_one_active
    ON reservations(borrower_id, book_id) WHERE status = 'active';

CREATE INDEX IF NOT EXISTS idx_transactions_borrower ON transactions(borrower_id, status);
CREATE INDEX IF NOT EXISTS idx_transactions_book ON transactions(book_id, status);
CREATE INDEX IF NOT EXISTS idx_transactions_due_date ON transactions(due_date);
CREATE INDEX IF NOT EXISTS idx_fines_borrower ON fines(borrower_id, payment_status);
CREATE INDEX IF NOT EXISTS idx_reservations_book ON reservations(book_id, status);
CREATE INDEX IF NOT EXISTS idx_reservations_expiry ON reservations(expiry_date);
"""


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the tables and indexes if they do not exist yet."""
    conn = get_db_connection(db_file)
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    create_tables(db_file)
    logger.info(f"Database ready at {db_file or DATABASE_FILE}")


def fetch_page(conn: sqlite3.Connection, base_sql: str, params: Sequence[Any],
               order_by: str, page: int, limit: int) -> Tuple[List[sqlite3.Row], Dict[str, int]]:
    """Run a filtered SELECT one page at a time, with the pagination block the API returns."""
    page = max(page, 1)
    limit = max(limit, 1)
    total = conn.execute(f"SELECT COUNT(*) FROM ({base_sql})", list(params)).fetchone()[0]
    rows = conn.execute(
        f"{base_sql} ORDER BY {order_by} LIMIT ? OFFSET ?",
        [*params, limit, (page - 1) * limit],
    ).fetchall()
    return rows, {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit),
    }
