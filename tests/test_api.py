from datetime import datetime

import pytest


@pytest.fixture
def api_key(app):
    return app.config["SERVICE_API_KEY"]


@pytest.fixture
def headers(api_key):
    def _headers(user):
        return {"X-API-Key": api_key, "X-User-Id": str(user.id)}

    return _headers


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "ok"


def test_loan_routes_need_api_key(client, api_key, make_user, make_book):
    user = make_user()
    book = make_book()

    resp = client.post("/api/loans/borrow", json={"book_id": book.id}, headers={"X-User-Id": str(user.id)})
    assert resp.status_code == 401

    resp = client.post("/api/loans/borrow", json={"book_id": book.id}, headers={"X-API-Key": api_key})
    assert resp.status_code == 401
    assert resp.get_json()["code"] == "UNAUTHORIZED"


def test_borrow_and_return_over_http(client, headers, make_user, make_book, book_copies):
    user = make_user()
    book = make_book(total_copies=2)

    resp = client.post(
        "/api/loans/borrow",
        json={"book_id": book.id, "loan_period_days": 7, "notes": "weekend read"},
        headers=headers(user),
    )
    assert resp.status_code == 201
    loan = resp.get_json()
    assert loan["status"] == "active"
    assert loan["book_title"] == book.title
    assert loan["status_info"]["days_until_due"] == 7
    assert book_copies(book.id) == 1

    resp = client.post(f"/api/loans/{loan['id']}/return", json={}, headers=headers(user))
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "returned"
    assert book_copies(book.id) == 2

    resp = client.post(f"/api/loans/{loan['id']}/return", json={}, headers=headers(user))
    assert resp.status_code == 409
    assert resp.get_json()["code"] == "BOOK_ALREADY_RETURNED"


def test_error_kinds_map_to_statuses(client, headers, make_user, make_book):
    user = make_user(max_books_allowed=1)
    stranger = make_user()
    book = make_book()

    resp = client.post("/api/loans/borrow", json={"book_id": 999}, headers=headers(user))
    assert resp.status_code == 404
    assert resp.get_json()["code"] == "BOOK_NOT_FOUND"

    loan = client.post("/api/loans/borrow", json={"book_id": book.id}, headers=headers(user)).get_json()

    resp = client.post("/api/loans/borrow", json={"book_id": make_book().id}, headers=headers(user))
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["code"] == "LOAN_LIMIT_EXCEEDED"
    assert body["limit"] == 1

    resp = client.post("/api/loans/borrow", json={"book_id": book.id}, headers=headers(stranger))
    assert resp.status_code == 409
    assert resp.get_json()["code"] == "BOOK_NOT_AVAILABLE"

    resp = client.get(f"/api/loans/{loan['id']}", headers=headers(stranger))
    assert resp.status_code == 403


def test_request_validation(client, headers, make_user):
    user = make_user()

    resp = client.post("/api/loans/borrow", json={"loan_period_days": 5}, headers=headers(user))
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "VALIDATION_ERROR"

    resp = client.post("/api/loans/borrow", json={"book_id": 1, "loan_period_days": 90}, headers=headers(user))
    assert resp.status_code == 400

    resp = client.post("/api/loans/1/renew", json={"extension_days": 0}, headers=headers(user))
    assert resp.status_code == 400


def test_renew_over_http(client, headers, make_user, make_book, clock):
    user = make_user()
    loan = client.post("/api/loans/borrow", json={"book_id": make_book().id}, headers=headers(user)).get_json()

    resp = client.post(f"/api/loans/{loan['id']}/renew", json={"extension_days": 5}, headers=headers(user))
    assert resp.status_code == 200
    assert resp.get_json()["status_info"]["days_until_due"] == 19

    clock.advance(days=30)
    resp = client.post(f"/api/loans/{loan['id']}/renew", json={}, headers=headers(user))
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "CANNOT_RENEW"


def test_force_return_over_http(client, headers, make_user, make_book, book_copies):
    member = make_user()
    librarian = make_user(role="librarian")
    book = make_book()
    loan = client.post("/api/loans/borrow", json={"book_id": book.id}, headers=headers(member)).get_json()
    url = f"/api/loans/{loan['id']}/force-return"

    resp = client.post(url, json={"notes": "Lost on the bus"}, headers=headers(member))
    assert resp.status_code == 403

    resp = client.post(url, json={"notes": "lost"}, headers=headers(librarian))
    assert resp.status_code == 400

    resp = client.post(url, json={"notes": "Lost on the bus"}, headers=headers(librarian))
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "returned"
    assert body["user_email"] == member.email
    assert book_copies(book.id) == 1


def test_update_overdue_sweep_over_http(client, headers, make_user, make_book, clock):
    member = make_user()
    librarian = make_user(role="librarian")
    client.post("/api/loans/borrow", json={"book_id": make_book().id}, headers=headers(member))
    clock.advance(days=15)

    resp = client.post("/api/loans/update-overdue", headers=headers(member))
    assert resp.status_code == 403

    resp = client.post("/api/loans/update-overdue", headers=headers(librarian))
    assert resp.get_json() == {"updated_count": 1}
    resp = client.post("/api/loans/update-overdue", headers=headers(librarian))
    assert resp.get_json() == {"updated_count": 0}

    resp = client.get("/api/loans/overdue", headers=headers(librarian))
    overdue = resp.get_json()
    assert len(overdue) == 1
    assert overdue[0]["status"] == "overdue"
    assert overdue[0]["status_info"]["days_overdue"] == 1


def test_eligibility_over_http(client, headers, make_user, make_book):
    member = make_user(max_books_allowed=1)
    other = make_user()
    librarian = make_user(role="librarian")
    client.post("/api/loans/borrow", json={"book_id": make_book().id}, headers=headers(member))

    resp = client.get("/api/loans/eligibility", headers=headers(member))
    body = resp.get_json()
    assert body["can_borrow"] is False
    assert body["active_loan_count"] == 1

    resp = client.get(f"/api/loans/eligibility/{member.id}", headers=headers(librarian))
    assert resp.status_code == 200

    resp = client.get(f"/api/loans/eligibility/{member.id}", headers=headers(other))
    assert resp.status_code == 403


def test_my_loans_and_listing(client, headers, make_user, make_book):
    member = make_user()
    librarian = make_user(role="librarian")
    for _ in range(2):
        client.post("/api/loans/borrow", json={"book_id": make_book().id}, headers=headers(member))

    resp = client.get("/api/loans/my-loans?limit=1", headers=headers(member))
    body = resp.get_json()
    assert body["total"] == 2
    assert body["pages"] == 2
    assert len(body["loans"]) == 1

    resp = client.get("/api/loans", headers=headers(member))
    assert resp.status_code == 403

    resp = client.get(f"/api/loans?user_id={member.id}&sort_by=due_date&sort_order=asc", headers=headers(librarian))
    assert resp.get_json()["total"] == 2

    resp = client.get("/api/loans/statistics", headers=headers(librarian))
    assert resp.get_json()["active_loans"] == 2


def test_book_admin_over_http(client, headers, make_user):
    librarian = make_user(role="librarian")
    member = make_user()
    payload = {"isbn": "9780441013593", "title": "Dune", "author": "Frank Herbert", "total_copies": 2}

    resp = client.post("/api/books", json=payload, headers=headers(member))
    assert resp.status_code == 403

    resp = client.post("/api/books", json=payload, headers=headers(librarian))
    assert resp.status_code == 201
    book = resp.get_json()
    assert book["available_copies"] == 2

    resp = client.post("/api/books", json=payload, headers=headers(librarian))
    assert resp.status_code == 409

    resp = client.patch(f"/api/books/{book['id']}", json={"total_copies": 4}, headers=headers(librarian))
    assert resp.get_json()["available_copies"] == 4

    resp = client.get("/api/books?search=dune")
    assert resp.get_json()["total"] == 1

    resp = client.get(f"/api/books/{book['id']}/availability")
    assert resp.get_json()["available"] is True

    resp = client.delete(f"/api/books/{book['id']}", headers=headers(librarian))
    assert resp.status_code == 200
    assert client.get(f"/api/books/{book['id']}").status_code == 404


def test_unexpected_errors_become_500(client, headers, make_user, loans, monkeypatch, caplog):
    user = make_user()

    def broken(user_id):
        raise RuntimeError("database went away")

    monkeypatch.setattr(loans, "check_borrowing_eligibility", broken)
    resp = client.get("/api/loans/eligibility", headers=headers(user))

    assert resp.status_code == 500
    assert resp.get_json()["code"] == "INTERNAL_ERROR"
    assert "Unhandled error" in caplog.text


def test_book_patch_cannot_set_available_copies(client, headers, make_user, make_book, book_copies):
    librarian = make_user(role="librarian")
    member = make_user()
    book = make_book(total_copies=2)
    loan = client.post("/api/loans/borrow", json={"book_id": book.id}, headers=headers(member)).get_json()

    resp = client.patch(f"/api/books/{book.id}", json={"available_copies": 2}, headers=headers(librarian))
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "VALIDATION_ERROR"
    assert book_copies(book.id) == 1

    resp = client.patch(f"/api/books/{book.id}", json={"total_copies": 3}, headers=headers(librarian))
    assert resp.status_code == 200
    assert resp.get_json()["available_copies"] == 2

    resp = client.patch(f"/api/books/{book.id}", json={"total_copies": 1}, headers=headers(librarian))
    assert resp.status_code == 200
    assert resp.get_json()["available_copies"] == 0

    resp = client.post(f"/api/loans/{loan['id']}/return", json={}, headers=headers(member))
    assert resp.status_code == 200
    assert book_copies(book.id) == 1


def test_racing_duplicate_borrow_is_a_conflict(client, headers, make_user, make_book, loans, monkeypatch, book_copies):
    user = make_user()
    book = make_book(total_copies=3)
    # both requests pass the pre-check; the unique index decides
    monkeypatch.setattr(loans.loans, "find_outstanding_user_book_loan", lambda *args: None)

    resp = client.post("/api/loans/borrow", json={"book_id": book.id}, headers=headers(user))
    assert resp.status_code == 201

    resp = client.post("/api/loans/borrow", json={"book_id": book.id}, headers=headers(user))
    assert resp.status_code == 409
    assert resp.get_json()["code"] == "BOOK_ALREADY_BORROWED"
    assert book_copies(book.id) == 2


def test_return_date_is_checked_against_service_clock(client, headers, make_user, make_book, clock):
    clock.now = datetime(2100, 1, 1, 9, 0, 0)
    user = make_user()
    book = make_book()
    loan = client.post("/api/loans/borrow", json={"book_id": book.id}, headers=headers(user)).get_json()
    clock.advance(days=10)

    resp = client.post(
        f"/api/loans/{loan['id']}/return",
        json={"return_date": "2100-02-01T00:00:00"},
        headers=headers(user),
    )
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "VALIDATION_ERROR"

    resp = client.post(
        f"/api/loans/{loan['id']}/return",
        json={"return_date": "2100-01-05T00:00:00+00:00"},
        headers=headers(user),
    )
    assert resp.status_code == 200
    assert resp.get_json()["return_date"].startswith("2100-01-05")


def test_category_admin_over_http(client, headers, make_user):
    librarian = make_user(role="librarian")
    member = make_user()

    resp = client.post("/api/categories", json={"name": "Fiction"}, headers=headers(member))
    assert resp.status_code == 403

    resp = client.post(
        "/api/categories",
        json={"name": "Fiction", "description": "Stories"},
        headers=headers(librarian),
    )
    assert resp.status_code == 201
    category = resp.get_json()
    assert category["name"] == "Fiction"

    resp = client.post("/api/categories", json={"name": "fiction"}, headers=headers(librarian))
    assert resp.status_code == 409
    assert resp.get_json()["code"] == "DUPLICATE_CATEGORY"

    resp = client.post(
        "/api/books",
        json={"isbn": "1", "title": "Emma", "author": "Austen", "category_ids": [category["id"]]},
        headers=headers(librarian),
    )
    assert resp.status_code == 201
    assert resp.get_json()["categories"] == [{"id": category["id"], "name": "Fiction"}]

    resp = client.post(
        "/api/books",
        json={"isbn": "2", "title": "Dune", "author": "Herbert", "category_ids": [999]},
        headers=headers(librarian),
    )
    assert resp.status_code == 404
    assert resp.get_json()["code"] == "CATEGORY_NOT_FOUND"

    resp = client.get("/api/categories?include_book_count=true")
    assert resp.get_json()["categories"] == [
        {"id": category["id"], "name": "Fiction", "description": "Stories", "book_count": 1}
    ]

    resp = client.get(f"/api/books/category/{category['id']}")
    assert [b["title"] for b in resp.get_json()["books"]] == ["Emma"]

    resp = client.get("/api/categories/search?q=f")
    assert resp.status_code == 400

    resp = client.get("/api/categories/statistics", headers=headers(librarian))
    assert resp.get_json()["categories_with_books"] == 1

    resp = client.delete(f"/api/categories/{category['id']}", headers=headers(librarian))
    assert resp.status_code == 409
    assert resp.get_json()["code"] == "CATEGORY_IN_USE"

    resp = client.patch(
        f"/api/categories/{category['id']}", json={"name": "Novels"}, headers=headers(librarian)
    )
    assert resp.get_json()["name"] == "Novels"
    assert client.get(f"/api/categories/{category['id']}").get_json()["book_count"] == 1
