import logging
import sqlite3
import time
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, Security
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from circulation import database
from circulation.config import settings
from circulation.errors import AccessDenied, CirculationError, InvariantViolation, NotFound
from circulation.models import Member, Role, utcnow
from circulation.orchestrator import LifecycleOrchestrator

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

orchestrator = LifecycleOrchestrator()


def get_orchestrator() -> LifecycleOrchestrator:
    return orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    database.initialize_database()
    try:
        yield
    finally:
        orchestrator.notifier.close()


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f} ms)")
    return response


@app.exception_handler(CirculationError)
async def circulation_error_handler(request: Request, exc: CirculationError) -> JSONResponse:
    if isinstance(exc, InvariantViolation):
        logger.error(f"{request.method} {request.url.path}: {exc.code} {exc.message} {exc.details}")
    elif exc.retryable:
        logger.warning(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


HTTP_ERROR_KINDS = {
    401: ("policy_violation", "unauthenticated"),
    403: ("policy_violation", "access_denied"),
    404: ("not_found", "not_found"),
    405: ("validation_error", "method_not_allowed"),
}


def error_envelope(message: str, kind: str, code: str, **extra: Any) -> Dict[str, Any]:
    return {"success": False, "message": message, "error": kind, "code": code,
            "retryable": False, **extra}


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info(f"{request.method} {request.url.path}: rejected request body or parameters")
    return JSONResponse(
        status_code=422,
        content=error_envelope("Request validation failed", "validation_error", "validation_error",
                               errors=jsonable_encoder(exc.errors())),
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    kind, code = HTTP_ERROR_KINDS.get(exc.status_code, ("error", "http_error"))
    return JSONResponse(
        status_code=exc.status_code,
        content=error_envelope(str(exc.detail), kind, code),
        headers=getattr(exc, "headers", None),
    )


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that validates the API key."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


def get_actor(
    x_user_id: int = Header(..., alias="X-User-Id"),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
) -> Member:
    """Resolve the acting member from the identity store."""
    try:
        return orch.get_member(x_user_id)
    except NotFound:
        raise HTTPException(status_code=401, detail=f"Unknown user {x_user_id}")


def ok(data: Any, message: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    return {"success": True, "data": data, "message": message, **extra}


# --- Request models ---

class MemberCreate(BaseModel):
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    role: str = Role.BORROWER.value


class BookCreate(BaseModel):
    title: str = Field(..., min_length=1)
    total_copies: int = Field(1, ge=0)
    isbn: Optional[str] = None


class CopiesUpdate(BaseModel):
    total_copies: int
    available_copies: int


class StatusUpdate(BaseModel):
    status: str


class IssueRequest(BaseModel):
    borrower_id: int
    book_id: int
    due_date: Optional[datetime] = None


class ReturnRequest(BaseModel):
    notes: Optional[str] = None


class ExtendRequest(BaseModel):
    new_due_date: datetime
    reason: str = Field(..., min_length=1)


class LostRequest(BaseModel):
    fine_amount: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = None


class FineCreate(BaseModel):
    borrower_id: int
    loan_id: int
    amount: Decimal
    reason: str
    notes: Optional[str] = None


class PaymentRequest(BaseModel):
    payment_method: str
    notes: Optional[str] = None


class WaiveRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class NotesRequest(BaseModel):
    notes: str = Field(..., min_length=1)


class ReservationCreate(BaseModel):
    book_id: int
    borrower_id: Optional[int] = None
    expiry_date: Optional[datetime] = None
    notes: Optional[str] = None


def page_params(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
) -> Dict[str, int]:
    return {"page": page, "limit": limit}


router = APIRouter(dependencies=[Depends(get_api_key)])


# --- Members and books ---

@router.post("/members", status_code=201)
def register_member(body: MemberCreate, orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    member = orch.register_member(body.name, body.email, body.role)
    return ok(member.to_dict(), "Member registered")


@router.get("/members/{member_id}")
def get_member(member_id: int, actor: Member = Depends(get_actor),
               orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    if actor.id != member_id and not actor.is_staff:
        raise AccessDenied("Access denied", actor_id=actor.id, member_id=member_id)
    return ok(orch.get_member(member_id).to_dict())


@router.post("/books", status_code=201)
def add_book(body: BookCreate, actor: Member = Depends(get_actor),
             orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    book = orch.add_book(body.title, body.total_copies, actor, isbn=body.isbn)
    return ok(book.to_dict(), "Book added")


@router.get("/books/{book_id}")
def get_book(book_id: int, actor: Member = Depends(get_actor),
             orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return ok(orch.get_book(book_id).to_dict())


@router.put("/books/{book_id}/copies")
def adjust_copies(book_id: int, body: CopiesUpdate, actor: Member = Depends(get_actor),
                  orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    book = orch.adjust_totals(book_id, body.total_copies, body.available_copies, actor)
    return ok(book.to_dict(), "Copy counts updated")


@router.put("/books/{book_id}/status")
def set_book_status(book_id: int, body: StatusUpdate, actor: Member = Depends(get_actor),
                    orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return ok(orch.set_book_status(book_id, body.status, actor).to_dict(), "Book status updated")


# --- Transactions ---

@router.post("/transactions/issue", status_code=201)
def issue_book(body: IssueRequest, actor: Member = Depends(get_actor),
               orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    loan = orch.borrow(body.borrower_id, body.book_id, actor, due_date=body.due_date)
    return ok(loan.to_dict(), "Book issued successfully")


@router.put("/transactions/{loan_id}/return")
def return_book(loan_id: int, body: Optional[ReturnRequest] = None, actor: Member = Depends(get_actor),
                orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    loan, fine = orch.return_book(loan_id, actor, notes=body.notes if body else None)
    message = f"Book returned. Fine of {fine.amount} applied." if fine else "Book returned successfully"
    return ok({"transaction": loan.to_dict(), "fine": fine.to_dict() if fine else None}, message)


@router.put("/transactions/{loan_id}/extend")
def extend_loan(loan_id: int, body: ExtendRequest, actor: Member = Depends(get_actor),
                orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    loan = orch.extend(loan_id, body.new_due_date, body.reason, actor)
    return ok(loan.to_dict(), "Due date extended")


@router.put("/transactions/{loan_id}/lost")
def report_lost(loan_id: int, body: Optional[LostRequest] = None, actor: Member = Depends(get_actor),
                orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    body = body or LostRequest()
    loan, fine = orch.report_lost(loan_id, actor, fine_amount=body.fine_amount, notes=body.notes)
    return ok({"transaction": loan.to_dict(), "fine": fine.to_dict() if fine else None}, "Book reported lost")


@router.get("/transactions")
def list_transactions(
    borrower_id: Optional[int] = None,
    book_id: Optional[int] = None,
    status: Optional[str] = None,
    overdue: bool = False,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    sort: str = "issueDate",
    paging: Dict[str, int] = Depends(page_params),
    actor: Member = Depends(get_actor),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
):
    loans, pagination = orch.list_loans(
        actor, borrower_id=borrower_id, book_id=book_id, status=status, overdue=overdue,
        start_date=start_date, end_date=end_date, sort=sort, **paging,
    )
    return ok([loan.to_dict() for loan in loans], pagination=pagination)


@router.get("/transactions/overdue")
def list_overdue(paging: Dict[str, int] = Depends(page_params), actor: Member = Depends(get_actor),
                 orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    now = utcnow()
    loans, pagination = orch.list_overdue(actor, now=now, **paging)
    return ok([loan.to_dict(now) for loan in loans], pagination=pagination)


@router.get("/transactions/{loan_id}")
def get_transaction(loan_id: int, actor: Member = Depends(get_actor),
                    orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return ok(orch.get_loan(loan_id, actor).to_dict())


# --- Fines ---

@router.post("/fines", status_code=201)
def create_fine(body: FineCreate, actor: Member = Depends(get_actor),
                orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    fine = orch.assess_fine(body.borrower_id, body.loan_id, body.amount, body.reason, actor, notes=body.notes)
    return ok(fine.to_dict(), "Fine created")


@router.get("/fines")
def list_fines(
    borrower_id: Optional[int] = None,
    payment_status: Optional[str] = None,
    reason: Optional[str] = None,
    min_amount: Optional[Decimal] = None,
    max_amount: Optional[Decimal] = None,
    sort: str = "created",
    paging: Dict[str, int] = Depends(page_params),
    actor: Member = Depends(get_actor),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
):
    fines, pagination = orch.list_fines(
        actor, borrower_id=borrower_id, payment_status=payment_status, reason=reason,
        min_amount=min_amount, max_amount=max_amount, sort=sort, **paging,
    )
    return ok([fine.to_dict() for fine in fines], pagination=pagination)


@router.get("/fines/member/{member_id}/outstanding")
def outstanding_fines(member_id: int, actor: Member = Depends(get_actor),
                      orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    fines, total = orch.outstanding(member_id, actor)
    return ok({"fines": [fine.to_dict() for fine in fines], "total": str(total), "count": len(fines)})


@router.get("/fines/{fine_id}")
def get_fine(fine_id: int, actor: Member = Depends(get_actor),
             orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return ok(orch.get_fine(fine_id, actor).to_dict())


@router.put("/fines/{fine_id}/pay")
def pay_fine(fine_id: int, body: PaymentRequest, actor: Member = Depends(get_actor),
             orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    fine = orch.pay_fine(fine_id, body.payment_method, actor, notes=body.notes)
    return ok(fine.to_dict(), "Fine paid successfully")


@router.put("/fines/{fine_id}/waive")
def waive_fine(fine_id: int, body: WaiveRequest, actor: Member = Depends(get_actor),
               orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return ok(orch.waive_fine(fine_id, body.reason, actor).to_dict(), "Fine waived successfully")


@router.put("/fines/{fine_id}/notes")
def annotate_fine(fine_id: int, body: NotesRequest, actor: Member = Depends(get_actor),
                  orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return ok(orch.annotate_fine(fine_id, body.notes, actor).to_dict(), "Fine notes updated")


# --- Reservations ---

@router.post("/reservations", status_code=201)
def create_reservation(body: ReservationCreate, actor: Member = Depends(get_actor),
                       orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    borrower_id = body.borrower_id if body.borrower_id is not None else actor.id
    reservation = orch.reserve(borrower_id, body.book_id, actor,
                               expiry_date=body.expiry_date, notes=body.notes)
    return ok(reservation.to_dict(), f"Reservation created. Queue position: {reservation.priority}")


@router.get("/reservations")
def list_reservations(
    borrower_id: Optional[int] = None,
    book_id: Optional[int] = None,
    status: Optional[str] = None,
    expired: bool = False,
    sort: str = "reservationDate",
    paging: Dict[str, int] = Depends(page_params),
    actor: Member = Depends(get_actor),
    orch: LifecycleOrchestrator = Depends(get_orchestrator),
):
    reservations, pagination = orch.list_reservations(
        actor, borrower_id=borrower_id, book_id=book_id, status=status, expired=expired, sort=sort, **paging,
    )
    return ok([r.to_dict() for r in reservations], pagination=pagination)


@router.get("/reservations/expired")
def list_expired_reservations(paging: Dict[str, int] = Depends(page_params), actor: Member = Depends(get_actor),
                              orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    if not actor.is_staff:
        raise AccessDenied("Only staff may list expired reservations", actor_id=actor.id)
    reservations, pagination = orch.list_expired_reservations(**paging)
    return ok([r.to_dict() for r in reservations], pagination=pagination)


@router.get("/reservations/book/{book_id}/queue")
def reservation_queue(book_id: int, actor: Member = Depends(get_actor),
                      orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    line = orch.queue(book_id)
    return ok([r.to_dict() for r in line], count=len(line))


@router.put("/reservations/auto-expire")
def auto_expire(actor: Member = Depends(get_actor), orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    expired = orch.auto_expire(actor=actor)
    return ok({"expired_count": len(expired)}, f"{len(expired)} reservations expired")


@router.get("/reservations/{reservation_id}")
def get_reservation(reservation_id: int, actor: Member = Depends(get_actor),
                    orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return ok(orch.get_reservation(reservation_id, actor).to_dict())


@router.put("/reservations/{reservation_id}/cancel")
def cancel_reservation(reservation_id: int, actor: Member = Depends(get_actor),
                       orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return ok(orch.cancel_reservation(reservation_id, actor).to_dict(), "Reservation cancelled")


@router.put("/reservations/{reservation_id}/fulfill")
def fulfill_reservation(reservation_id: int, actor: Member = Depends(get_actor),
                        orch: LifecycleOrchestrator = Depends(get_orchestrator)):
    return ok(orch.fulfill_reservation(reservation_id, actor).to_dict(), "Reservation fulfilled")


app.include_router(router)


# --- Health check ---
@app.get("/health")
async def health():
    """Lightweight health endpoint: a quick database round-trip plus version."""
    db_ok = True
    try:
        with database.read_only() as conn:
            conn.execute("SELECT 1")
    except sqlite3.Error as e:
        logger.warning(f"Health check could not reach the database: {e}")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": utcnow().isoformat(),
        "db": db_ok,
        "version": settings.app_version,
    }
