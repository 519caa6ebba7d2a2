from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from circulation import api
from circulation.config import settings

from conftest import T0


@pytest.fixture
def client(orch):
    # Route handlers use the per-test orchestrator and database
    api.app.dependency_overrides[api.get_orchestrator] = lambda: orch
    try:
        yield TestClient(api.app)
    finally:
        api.app.dependency_overrides.clear()


def headers_for(member):
    return {"X-API-Key": settings.api_key, "X-User-Id": str(member.id)}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["db"] is True


def test_invalid_api_key(client, librarian):
    response = client.get("/transactions", headers={"X-API-Key": "invalid-key", "X-User-Id": str(librarian.id)})
    assert response.status_code == 403


def test_unknown_user(client):
    response = client.get("/transactions", headers={"X-API-Key": settings.api_key, "X-User-Id": "999"})
    assert response.status_code == 401


def test_register_member(client):
    response = client.post("/members", headers={"X-API-Key": settings.api_key},
                           json={"name": "Cy Reader", "email": "cy@library.test"})
    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["data"]["role"] == "borrower"

    duplicate = client.post("/members", headers={"X-API-Key": settings.api_key},
                            json={"name": "Cy Again", "email": "cy@library.test"})
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "conflict"


def test_borrower_cannot_add_books(client, borrower):
    response = client.post("/books", headers=headers_for(borrower), json={"title": "Dune", "total_copies": 2})
    assert response.status_code == 403
    assert response.json()["code"] == "access_denied"


def test_add_book_validates_counts(client, librarian):
    response = client.post("/books", headers=headers_for(librarian), json={"title": "Dune", "total_copies": -1})
    assert response.status_code == 422


def test_issue_and_return(client, librarian, borrower, other_borrower):
    book = client.post("/books", headers=headers_for(librarian),
                       json={"title": "Dune", "total_copies": 1}).json()["data"]

    issued = client.post("/transactions/issue", headers=headers_for(librarian),
                         json={"borrower_id": borrower.id, "book_id": book["id"]})
    assert issued.status_code == 201
    loan = issued.json()["data"]
    assert loan["status"] == "issued"
    assert client.get(f"/books/{book['id']}", headers=headers_for(librarian)).json()["data"]["available_copies"] == 0

    refused = client.post("/transactions/issue", headers=headers_for(librarian),
                          json={"borrower_id": other_borrower.id, "book_id": book["id"]})
    assert refused.status_code == 400
    assert refused.json()["code"] == "unavailable"
    assert refused.json()["success"] is False

    returned = client.put(f"/transactions/{loan['id']}/return", headers=headers_for(librarian),
                          json={"notes": "Fine condition"})
    assert returned.status_code == 200
    data = returned.json()["data"]
    assert data["transaction"]["status"] == "returned"
    assert data["fine"] is None

    again = client.put(f"/transactions/{loan['id']}/return", headers=headers_for(librarian))
    assert again.status_code == 409
    assert again.json()["code"] == "not_issued"


def test_late_return_over_http_creates_fine(client, orch, librarian, borrower, make_book):
    book = make_book()
    loan = orch.borrow(borrower.id, book.id, librarian, now=T0)

    overdue = client.get("/transactions/overdue", headers=headers_for(librarian))
    assert overdue.status_code == 200
    rows = overdue.json()["data"]
    assert [r["id"] for r in rows] == [loan.id]
    assert rows[0]["effective_status"] == "overdue"
    assert rows[0]["overdue_days"] > 0

    returned = client.put(f"/transactions/{loan.id}/return", headers=headers_for(librarian))
    fine = returned.json()["data"]["fine"]
    assert fine["reason"] == "overdue"
    assert fine["payment_status"] == "pending"

    outstanding = client.get(f"/fines/member/{borrower.id}/outstanding", headers=headers_for(borrower))
    assert outstanding.json()["data"]["count"] == 1
    assert outstanding.json()["data"]["total"] == fine["amount"]

    paid = client.put(f"/fines/{fine['id']}/pay", headers=headers_for(librarian), json={"payment_method": "card"})
    assert paid.status_code == 200
    assert paid.json()["data"]["payment_status"] == "paid"

    twice = client.put(f"/fines/{fine['id']}/pay", headers=headers_for(librarian), json={"payment_method": "card"})
    assert twice.status_code == 409
    assert twice.json()["code"] == "already_paid"


def test_borrower_views_are_scoped(client, orch, librarian, borrower, other_borrower, make_book):
    book = make_book(copies=2)
    mine = orch.borrow(borrower.id, book.id, librarian, now=T0)
    theirs = orch.borrow(other_borrower.id, book.id, librarian, now=T0)

    listed = client.get("/transactions", headers=headers_for(borrower))
    assert [row["id"] for row in listed.json()["data"]] == [mine.id]
    assert listed.json()["pagination"]["total"] == 1

    denied = client.get(f"/transactions/{theirs.id}", headers=headers_for(borrower))
    assert denied.status_code == 403

    assert client.get("/transactions/overdue", headers=headers_for(borrower)).status_code == 403
    assert client.get(f"/members/{other_borrower.id}", headers=headers_for(borrower)).status_code == 403


def test_extend_and_report_lost(client, orch, librarian, borrower, make_book):
    book = make_book(copies=2)
    loan = orch.borrow(borrower.id, book.id, librarian, now=T0)

    new_due = (loan.due_date + timedelta(days=7)).isoformat()
    extended = client.put(f"/transactions/{loan.id}/extend", headers=headers_for(librarian),
                          json={"new_due_date": new_due, "reason": "Holiday"})
    assert extended.status_code == 200
    assert "Holiday" in extended.json()["data"]["notes"]

    lost = client.put(f"/transactions/{loan.id}/lost", headers=headers_for(librarian),
                      json={"fine_amount": "30.00"})
    assert lost.status_code == 200
    assert lost.json()["data"]["transaction"]["status"] == "lost"
    assert lost.json()["data"]["fine"]["amount"] == "30.00"
    assert orch.get_book(book.id).total_copies == 1


def test_copies_and_status_endpoints(client, librarian, borrower, make_book):
    book = make_book(copies=1)

    restocked = client.put(f"/books/{book.id}/copies", headers=headers_for(librarian),
                           json={"total_copies": 4, "available_copies": 4})
    assert restocked.json()["data"]["total_copies"] == 4

    bad = client.put(f"/books/{book.id}/copies", headers=headers_for(librarian),
                     json={"total_copies": 1, "available_copies": 2})
    assert bad.status_code == 422
    assert bad.json()["code"] == "invalid_range"

    status = client.put(f"/books/{book.id}/status", headers=headers_for(librarian), json={"status": "maintenance"})
    assert status.json()["data"]["status"] == "maintenance"


def test_manual_fines(client, orch, librarian, borrower, make_book):
    book = make_book()
    loan = orch.borrow(borrower.id, book.id, librarian, now=T0)

    created = client.post("/fines", headers=headers_for(librarian), json={
        "borrower_id": borrower.id, "loan_id": loan.id, "amount": "5.00", "reason": "damage",
    })
    assert created.status_code == 201
    fine_id = created.json()["data"]["id"]

    noted = client.put(f"/fines/{fine_id}/notes", headers=headers_for(librarian), json={"notes": "Water damage"})
    assert noted.json()["data"]["notes"] == "Water damage"

    waived = client.put(f"/fines/{fine_id}/waive", headers=headers_for(librarian), json={"reason": "Goodwill"})
    assert waived.json()["data"]["payment_status"] == "waived"

    listed = client.get("/fines", headers=headers_for(borrower), params={"payment_status": "waived"})
    assert [f["id"] for f in listed.json()["data"]] == [fine_id]
    assert client.get(f"/fines/{fine_id}", headers=headers_for(borrower)).status_code == 200


def test_reservation_lifecycle(client, orch, librarian, borrower, other_borrower, make_book):
    book = make_book(copies=1)
    loan = orch.borrow(other_borrower.id, book.id, librarian, now=T0)

    created = client.post("/reservations", headers=headers_for(borrower), json={"book_id": book.id})
    assert created.status_code == 201
    reservation = created.json()["data"]
    assert reservation["priority"] == 1
    assert "Queue position: 1" in created.json()["message"]

    queue = client.get(f"/reservations/book/{book.id}/queue", headers=headers_for(librarian))
    assert queue.json()["count"] == 1

    early = client.put(f"/reservations/{reservation['id']}/fulfill", headers=headers_for(librarian))
    assert early.status_code == 409
    assert early.json()["code"] == "not_yet_available"

    assert client.put(f"/reservations/{reservation['id']}/cancel",
                      headers=headers_for(other_borrower)).status_code == 403

    orch.return_book(loan.id, librarian, now=T0 + timedelta(days=1))
    fulfilled = client.put(f"/reservations/{reservation['id']}/fulfill", headers=headers_for(librarian))
    assert fulfilled.json()["data"]["status"] == "fulfilled"

    mine = client.get("/reservations", headers=headers_for(borrower))
    assert [r["status"] for r in mine.json()["data"]] == ["fulfilled"]


def test_reserving_an_available_book_is_refused(client, borrower, make_book):
    book = make_book(copies=1)
    response = client.post("/reservations", headers=headers_for(borrower), json={"book_id": book.id})
    assert response.status_code == 400
    assert response.json()["code"] == "book_available"


def test_auto_expire_endpoint(client, orch, librarian, borrower, other_borrower, make_book):
    book = make_book(copies=1)
    orch.borrow(other_borrower.id, book.id, librarian, now=T0)
    orch.reserve(borrower.id, book.id, borrower, now=T0)

    assert client.put("/reservations/auto-expire", headers=headers_for(borrower)).status_code == 403

    expired_view = client.get("/reservations/expired", headers=headers_for(librarian))
    assert expired_view.json()["pagination"]["total"] == 1

    swept = client.put("/reservations/auto-expire", headers=headers_for(librarian))
    assert swept.status_code == 200
    assert swept.json()["data"]["expired_count"] == 1

    again = client.put("/reservations/auto-expire", headers=headers_for(librarian))
    assert again.json()["data"]["expired_count"] == 0


def assert_error_envelope(response, status, kind, code):
    assert response.status_code == status
    body = response.json()
    assert body["success"] is False
    assert body["error"] == kind
    assert body["code"] == code
    assert body["retryable"] is False
    assert body["message"]


def test_invalid_api_key_uses_error_envelope(client, librarian):
    response = client.get("/transactions", headers={"X-API-Key": "invalid-key", "X-User-Id": str(librarian.id)})
    assert_error_envelope(response, 403, "policy_violation", "access_denied")


def test_unknown_user_uses_error_envelope(client):
    response = client.get("/transactions", headers={"X-API-Key": settings.api_key, "X-User-Id": "999"})
    assert_error_envelope(response, 401, "policy_violation", "unauthenticated")


def test_negative_lost_fine_uses_error_envelope(client, orch, librarian, borrower, make_book):
    book = make_book()
    loan = orch.borrow(borrower.id, book.id, librarian, now=T0)

    response = client.put(f"/transactions/{loan.id}/lost", headers=headers_for(librarian),
                          json={"fine_amount": "-5"})
    assert_error_envelope(response, 422, "validation_error", "validation_error")
    assert response.json()["errors"][0]["loc"][-1] == "fine_amount"
    assert orch.get_loan(loan.id, librarian).status == "issued"


def test_malformed_due_date_uses_error_envelope(client, librarian, borrower, make_book):
    book = make_book()
    response = client.post("/transactions/issue", headers=headers_for(librarian),
                           json={"borrower_id": borrower.id, "book_id": book.id, "due_date": "next tuesday"})
    assert_error_envelope(response, 422, "validation_error", "validation_error")


def test_expired_reservations_are_staff_only(client, borrower):
    response = client.get("/reservations/expired", headers=headers_for(borrower))
    assert_error_envelope(response, 403, "policy_violation", "access_denied")


def test_other_members_profile_is_hidden(client, borrower, other_borrower):
    response = client.get(f"/members/{other_borrower.id}", headers=headers_for(borrower))
    assert_error_envelope(response, 403, "policy_violation", "access_denied")

    own = client.get(f"/members/{borrower.id}", headers=headers_for(borrower))
    assert own.json()["data"]["id"] == borrower.id
