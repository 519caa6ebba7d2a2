import pytest

from circulation import database
from circulation.catalog import Catalog
from circulation.errors import Inconsistent, InvalidRange, Unavailable
from circulation.ledger import InventoryLedger

from conftest import T0


@pytest.fixture
def ledger():
    return InventoryLedger()


@pytest.fixture
def book_id(db_file):
    with database.transaction() as conn:
        return Catalog().add_book(conn, "The Left Hand of Darkness", 2).id


def test_reserve_copy_decrements_available(ledger, book_id):
    with database.transaction() as conn:
        pool = ledger.reserve_copy(conn, book_id)
    assert pool.available_copies == 1
    assert pool.total_copies == 2
    assert pool.in_circulation == 1


def test_reserve_copy_refuses_when_none_left(ledger, book_id):
    with database.transaction() as conn:
        ledger.reserve_copy(conn, book_id)
        ledger.reserve_copy(conn, book_id)
    with pytest.raises(Unavailable):
        with database.transaction() as conn:
            ledger.reserve_copy(conn, book_id)
    with database.read_only() as conn:
        assert ledger.pool(conn, book_id).available_copies == 0


def test_reserve_copy_refuses_book_under_maintenance(ledger, book_id):
    with database.transaction() as conn:
        Catalog().set_book_status(conn, book_id, "maintenance")
    with pytest.raises(Unavailable):
        with database.transaction() as conn:
            ledger.reserve_copy(conn, book_id)


def test_release_beyond_owned_copies_is_inconsistent(ledger, book_id):
    with pytest.raises(Inconsistent):
        with database.transaction() as conn:
            ledger.release_copy(conn, book_id)
    with database.read_only() as conn:
        pool = ledger.pool(conn, book_id)
    assert (pool.available_copies, pool.total_copies) == (2, 2)


def test_release_puts_copy_back(ledger, book_id):
    with database.transaction() as conn:
        ledger.reserve_copy(conn, book_id)
        pool = ledger.release_copy(conn, book_id)
    assert pool.available_copies == 2


def test_write_off_requires_copy_in_circulation(ledger, book_id):
    with pytest.raises(Inconsistent):
        with database.transaction() as conn:
            ledger.write_off_copy(conn, book_id)

    with database.transaction() as conn:
        ledger.reserve_copy(conn, book_id)
        pool = ledger.write_off_copy(conn, book_id)
    assert (pool.available_copies, pool.total_copies) == (1, 1)


@pytest.mark.parametrize("total, available", [(-1, 0), (2, 3), (3, -1)])
def test_adjust_totals_rejects_bad_ranges(ledger, book_id, total, available):
    with pytest.raises(InvalidRange):
        with database.transaction() as conn:
            ledger.adjust_totals(conn, book_id, total, available)


def test_adjust_totals_restocks(ledger, book_id):
    with database.transaction() as conn:
        pool = ledger.adjust_totals(conn, book_id, 5, 5)
    assert (pool.available_copies, pool.total_copies) == (5, 5)


def test_adjust_totals_cannot_hide_open_loans(orch, librarian, borrower, make_book):
    book = make_book(copies=2)
    orch.borrow(borrower.id, book.id, librarian, now=T0)

    with pytest.raises(InvalidRange):
        orch.adjust_totals(book.id, 2, 2, librarian)

    pool = orch.adjust_totals(book.id, 4, 3, librarian)
    assert pool.in_circulation == 1


def test_add_book_rejects_more_available_than_owned(db_file):
    with pytest.raises(InvalidRange):
        with database.transaction() as conn:
            Catalog().add_book(conn, "Solaris", 1, available_copies=2)
