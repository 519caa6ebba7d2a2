from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from circulation.errors import (
    AccessDenied,
    AlreadyPaid,
    AlreadyWaived,
    DuplicateFine,
    NotFound,
    ValidationError,
)
from circulation.fines import FineCalculator
from circulation.services.notifications import Fact

from conftest import T0


@pytest.fixture
def loan(orch, librarian, borrower, make_book):
    book = make_book(copies=2)
    return orch.borrow(borrower.id, book.id, librarian, now=T0)


@pytest.fixture
def late_fine(orch, librarian, loan):
    _, fine = orch.return_book(loan.id, librarian, now=loan.due_date + timedelta(days=3))
    return fine


@pytest.mark.parametrize("late_by, expected", [
    (timedelta(0), Decimal("0.00")),
    (-timedelta(days=2), Decimal("0.00")),
    (timedelta(minutes=1), Decimal("0.50")),
    (timedelta(days=1), Decimal("0.50")),
    (timedelta(days=1, seconds=1), Decimal("1.00")),
    (timedelta(days=10), Decimal("5.00")),
])
def test_overdue_amount_rounds_partial_days_up(late_by, expected):
    calculator = FineCalculator(daily_rate=Decimal("0.50"))
    due = datetime(2024, 5, 1, 17, 0, tzinfo=timezone.utc)
    assert calculator.overdue_amount(due, due + late_by) == expected


def test_pay_records_payment(orch, librarian, late_fine, notifier):
    paid = orch.pay_fine(late_fine.id, "card", librarian, notes="Paid at desk", now=T0 + timedelta(days=20))

    assert paid.payment_status == "paid"
    assert paid.payment_method == "card"
    assert paid.payment_date == T0 + timedelta(days=20)
    assert paid.processed_by == librarian.id
    assert "Paid at desk" in paid.notes
    assert Fact.FINE_PAYMENT in notifier.facts()


def test_pay_twice_rejected(orch, librarian, late_fine):
    orch.pay_fine(late_fine.id, "cash", librarian, now=T0 + timedelta(days=20))
    with pytest.raises(AlreadyPaid):
        orch.pay_fine(late_fine.id, "cash", librarian, now=T0 + timedelta(days=21))
    with pytest.raises(AlreadyPaid):
        orch.waive_fine(late_fine.id, "goodwill", librarian)


def test_waive_leaves_no_payment_date(orch, librarian, late_fine):
    waived = orch.waive_fine(late_fine.id, "First offence", librarian)

    assert waived.payment_status == "waived"
    assert waived.payment_date is None
    assert "Waived: First offence" in waived.notes
    with pytest.raises(AlreadyWaived):
        orch.pay_fine(late_fine.id, "cash", librarian)


def test_unknown_payment_method(orch, librarian, late_fine):
    with pytest.raises(ValidationError):
        orch.pay_fine(late_fine.id, "bitcoin", librarian)
    assert orch.get_fine(late_fine.id, librarian).payment_status == "pending"


def test_pay_unknown_fine(orch, librarian, db_file):
    with pytest.raises(NotFound):
        orch.pay_fine(404, "cash", librarian)


def test_one_fine_per_loan_and_reason(orch, librarian, borrower, loan, late_fine):
    with pytest.raises(DuplicateFine):
        orch.assess_fine(borrower.id, loan.id, "2.00", "overdue", librarian)

    damage = orch.assess_fine(borrower.id, loan.id, "7.50", "damage", librarian, notes="Torn cover")
    assert damage.amount == Decimal("7.50")
    assert damage.reason == "damage"


def test_manual_fine_validation(orch, librarian, borrower, other_borrower, loan):
    with pytest.raises(ValidationError):
        orch.assess_fine(borrower.id, loan.id, "-1.00", "damage", librarian)
    with pytest.raises(ValidationError):
        orch.assess_fine(borrower.id, loan.id, "1.00", "rudeness", librarian)
    with pytest.raises(ValidationError):
        orch.assess_fine(other_borrower.id, loan.id, "1.00", "damage", librarian)
    with pytest.raises(NotFound):
        orch.assess_fine(borrower.id, 999, "1.00", "damage", librarian)


def test_only_staff_assess_or_settle(orch, borrower, loan, late_fine):
    with pytest.raises(AccessDenied):
        orch.assess_fine(borrower.id, loan.id, "1.00", "damage", borrower)
    with pytest.raises(AccessDenied):
        orch.pay_fine(late_fine.id, "cash", borrower)
    with pytest.raises(AccessDenied):
        orch.waive_fine(late_fine.id, "please", borrower)


def test_annotate_allowed_after_settlement(orch, librarian, late_fine):
    orch.pay_fine(late_fine.id, "online", librarian, now=T0 + timedelta(days=20))
    annotated = orch.annotate_fine(late_fine.id, "Receipt #118", librarian)
    assert annotated.payment_status == "paid"
    assert annotated.notes.endswith("Receipt #118")


def test_outstanding_counts_only_pending(orch, librarian, borrower, loan, late_fine):
    damage = orch.assess_fine(borrower.id, loan.id, "4.00", "damage", librarian)

    fines, total = orch.outstanding(borrower.id, borrower)
    assert total == Decimal("7.00")
    assert {f.id for f in fines} == {late_fine.id, damage.id}

    orch.pay_fine(damage.id, "cash", librarian)
    fines, total = orch.outstanding(borrower.id)
    assert total == Decimal("3.00")
    assert [f.id for f in fines] == [late_fine.id]


def test_outstanding_of_someone_else_is_denied(orch, borrower, other_borrower, late_fine):
    with pytest.raises(AccessDenied):
        orch.outstanding(borrower.id, other_borrower)


def test_list_fines_filters(orch, librarian, borrower, loan, late_fine):
    orch.assess_fine(borrower.id, loan.id, "12.00", "damage", librarian)

    by_reason, _ = orch.list_fines(librarian, reason="damage")
    assert [f.reason for f in by_reason] == ["damage"]

    big, _ = orch.list_fines(librarian, min_amount=Decimal("5"))
    assert [f.amount for f in big] == [Decimal("12.00")]

    _, pagination = orch.list_fines(librarian, payment_status="pending", limit=1)
    assert pagination == {"page": 1, "limit": 1, "total": 2, "pages": 2}

    by_amount, _ = orch.list_fines(librarian, sort="amount")
    assert [f.amount for f in by_amount] == [Decimal("12.00"), Decimal("3.00")]


def test_borrower_sees_only_own_fines(orch, librarian, borrower, other_borrower, late_fine):
    mine, _ = orch.list_fines(borrower)
    assert [f.id for f in mine] == [late_fine.id]
    theirs, _ = orch.list_fines(other_borrower)
    assert theirs == []
    with pytest.raises(AccessDenied):
        orch.get_fine(late_fine.id, other_borrower)
