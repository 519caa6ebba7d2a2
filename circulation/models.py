from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional

CENT = Decimal("0.01")


class Role(str, Enum):
    ADMIN = "admin"
    LIBRARIAN = "librarian"
    BORROWER = "borrower"


STAFF_ROLES = (Role.ADMIN.value, Role.LIBRARIAN.value)


class MemberStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class BookStatus(str, Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"
    MAINTENANCE = "maintenance"


class LoanStatus(str, Enum):
    ISSUED = "issued"
    RETURNED = "returned"
    OVERDUE = "overdue"  # view only, never stored
    LOST = "lost"


class FineReason(str, Enum):
    OVERDUE = "overdue"
    DAMAGE = "damage"
    LOST = "lost"
    OTHER = "other"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    WAIVED = "waived"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    ONLINE = "online"
    CHECK = "check"


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    FULFILLED = "fulfilled"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# ------------------------- time and money ------------------------- #

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with stored values."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    # fixed width so stored timestamps sort lexically
    return as_utc(value).isoformat(timespec="microseconds") if value is not None else None


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    return as_utc(datetime.fromisoformat(value)) if value else None


def to_money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENT)


def _serialize(data: dict) -> dict:
    out = {}
    for key, value in data.items():
        if isinstance(value, datetime):
            out[key] = value.isoformat()
        elif isinstance(value, Decimal):
            out[key] = str(value)
        elif isinstance(value, Enum):
            out[key] = value.value
        else:
            out[key] = value
    return out


# ------------------------- records ------------------------- #

@dataclass
class Member:
    id: int
    name: str
    email: str
    role: str = Role.BORROWER.value
    status: str = MemberStatus.ACTIVE.value

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def is_active(self) -> bool:
        return self.status == MemberStatus.ACTIVE.value

    def to_dict(self) -> dict:
        return asdict(self)

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Member":
        return Member(id=row["id"], name=row["name"], email=row["email"],
                      role=row["role"], status=row["status"])


@dataclass
class BookPool:
    """The copy-count view of a catalog book."""

    id: int
    title: str
    isbn: Optional[str]
    status: str
    total_copies: int
    available_copies: int

    @property
    def in_circulation(self) -> int:
        return self.total_copies - self.available_copies

    @property
    def loanable(self) -> bool:
        return self.status == BookStatus.AVAILABLE.value and self.available_copies > 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["in_circulation"] = self.in_circulation
        return data

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "BookPool":
        return BookPool(id=row["id"], title=row["title"], isbn=row["isbn"], status=row["status"],
                        total_copies=row["total_copies"], available_copies=row["available_copies"])


@dataclass
class Loan:
    id: int
    borrower_id: int
    book_id: int
    issue_date: datetime
    due_date: datetime
    status: str = LoanStatus.ISSUED.value
    return_date: Optional[datetime] = None
    fine_amount: Decimal = Decimal("0.00")
    issued_by: Optional[int] = None
    returned_by: Optional[int] = None
    notes: Optional[str] = None

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        """Overdue is derived from the clock, it is never stored."""
        now = as_utc(now or utcnow())
        return self.status == LoanStatus.ISSUED.value and now > self.due_date

    def overdue_days(self, now: Optional[datetime] = None) -> int:
        if not self.is_overdue(now):
            return 0
        return days_late(self.due_date, as_utc(now or utcnow()))

    def effective_status(self, now: Optional[datetime] = None) -> str:
        return LoanStatus.OVERDUE.value if self.is_overdue(now) else self.status

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        data = _serialize(asdict(self))
        data["effective_status"] = self.effective_status(now)
        data["overdue_days"] = self.overdue_days(now)
        return data

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Loan":
        return Loan(
            id=row["id"],
            borrower_id=row["borrower_id"],
            book_id=row["book_id"],
            issue_date=from_db_time(row["issue_date"]),
            due_date=from_db_time(row["due_date"]),
            status=row["status"],
            return_date=from_db_time(row["return_date"]),
            fine_amount=to_money(row["fine_amount"]),
            issued_by=row["issued_by"],
            returned_by=row["returned_by"],
            notes=row["notes"],
        )


@dataclass
class Fine:
    id: int
    borrower_id: int
    loan_id: int
    amount: Decimal
    reason: str
    payment_status: str = PaymentStatus.PENDING.value
    payment_date: Optional[datetime] = None
    payment_method: Optional[str] = None
    processed_by: Optional[int] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return _serialize(asdict(self))

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Fine":
        return Fine(
            id=row["id"],
            borrower_id=row["borrower_id"],
            loan_id=row["loan_id"],
            amount=to_money(row["amount"]),
            reason=row["reason"],
            payment_status=row["payment_status"],
            payment_date=from_db_time(row["payment_date"]),
            payment_method=row["payment_method"],
            processed_by=row["processed_by"],
            notes=row["notes"],
            created_at=from_db_time(row["created_at"]),
        )


@dataclass
class Reservation:
    id: int
    borrower_id: int
    book_id: int
    reservation_date: datetime
    expiry_date: datetime
    priority: int
    status: str = ReservationStatus.ACTIVE.value
    notification_sent: bool = False
    fulfilled_by: Optional[int] = None
    fulfilled_date: Optional[datetime] = None
    notes: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == ReservationStatus.ACTIVE.value

    def to_dict(self) -> dict:
        return _serialize(asdict(self))

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Reservation":
        return Reservation(
            id=row["id"],
            borrower_id=row["borrower_id"],
            book_id=row["book_id"],
            reservation_date=from_db_time(row["reservation_date"]),
            expiry_date=from_db_time(row["expiry_date"]),
            priority=row["priority"],
            status=row["status"],
            notification_sent=bool(row["notification_sent"]),
            fulfilled_by=row["fulfilled_by"],
            fulfilled_date=from_db_time(row["fulfilled_date"]),
            notes=row["notes"],
        )


def days_late(due: datetime, when: datetime) -> int:
    """Whole days (rounded up) between a due date and a later moment."""
    delta = as_utc(when) - as_utc(due)
    if delta.total_seconds() <= 0:
        return 0
    days, remainder = divmod(delta.total_seconds(), 86400)
    return int(days) + (1 if remainder > 0 else 0)


def append_note(existing: Optional[str], note: str) -> str:
    return f"{existing}\n{note}" if existing else note
