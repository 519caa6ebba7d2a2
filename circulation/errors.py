"""Error taxonomy for the circulation engine.

Every failure raised by a component is a ``CirculationError``. The ``kind``
groups failures the way callers act on them (retry, fix the request, report a
bug); ``code`` is the stable machine-readable identifier of the specific rule
that was broken.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class CirculationError(Exception):
    kind = "error"
    code = "error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": False,
            "message": self.message,
            "error": self.kind,
            "code": self.code,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = {k: str(v) for k, v in self.details.items()}
        return payload


# --- Kinds ---

class NotFound(CirculationError):
    kind = "not_found"
    code = "not_found"
    status_code = 404


class Conflict(CirculationError):
    kind = "conflict"
    code = "conflict"
    status_code = 409


class PolicyViolation(CirculationError):
    kind = "policy_violation"
    code = "policy_violation"
    status_code = 400


class InvariantViolation(CirculationError):
    kind = "invariant_violation"
    code = "invariant_violation"
    status_code = 500


class ValidationError(CirculationError):
    kind = "validation_error"
    code = "validation_error"
    status_code = 422


class Contention(CirculationError):
    """The backing store stayed locked longer than the configured wait."""

    kind = "contention"
    code = "contention"
    status_code = 503
    retryable = True


# --- Conflicts ---

class DuplicateLoan(Conflict):
    code = "duplicate_loan"


class DuplicateFine(Conflict):
    code = "duplicate_fine"


class DuplicateReservation(Conflict):
    code = "duplicate_reservation"


class AlreadyPaid(Conflict):
    code = "already_paid"


class AlreadyWaived(Conflict):
    code = "already_waived"


class NotIssued(Conflict):
    code = "not_issued"


class NotActive(Conflict):
    code = "not_active"


class NotYetAvailable(Conflict):
    code = "not_yet_available"


# --- Policy ---

class Unavailable(PolicyViolation):
    code = "unavailable"


class BorrowerInactive(PolicyViolation):
    code = "borrower_inactive"


class LimitExceeded(PolicyViolation):
    code = "limit_exceeded"


class OutstandingFine(PolicyViolation):
    code = "outstanding_fine"


class BookAvailable(PolicyViolation):
    code = "book_available"


class AlreadyHolding(PolicyViolation):
    code = "already_holding"


class AccessDenied(PolicyViolation):
    code = "access_denied"
    status_code = 403


# --- Invariants / validation ---

class Inconsistent(InvariantViolation):
    code = "inconsistent"


class InvalidRange(ValidationError):
    code = "invalid_range"


def not_found(entity: str, entity_id: Optional[object]) -> NotFound:
    return NotFound(f"{entity} not found", id=entity_id)
