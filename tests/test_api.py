from datetime import date
from itertools import count

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

import main
from auth import SESSION_COOKIE, issue_access_token
from csrf import generate_csrf_token
from database import Base, SessionLocal, engine, init_db
from models import Expense
from ocr import RATE_LIMIT_MESSAGE
from schemas import BatchItemIn, CategoryIn, ExpenseBatchIn, ExpenseIn, FundIn, ScanResult
from services import CategoryService, ExpenseService, FundService, SettingsService

# Report caches live on disk for the whole run, so every test signs in as a
# fresh user.
_user_ids = count(1000)


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(engine)
    init_db(engine)
    yield


@pytest.fixture
def user_id() -> int:
    return next(_user_ids)


@pytest.fixture
def client() -> TestClient:
    return TestClient(main.app)


def _auth(user_id: int) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_access_token(user_id)}"}


def _seed(user_id: int) -> int:
    with SessionLocal() as session:
        groceries = CategoryService(session, user_id).create(CategoryIn(name="Groceries"))
        FundService(session, user_id).create(
            FundIn(fund_date=date(2025, 6, 1), amount_cents=50000, source_note="Gift")
        )
        expenses = ExpenseService(session, user_id)
        expenses.create(
            ExpenseIn(
                expense_date=date(2025, 6, 1),
                item_name="Rice",
                category_id=groceries.id,
                total_cents=12000,
            )
        )
        expenses.create(
            ExpenseIn(expense_date=date(2025, 6, 2), item_name="Tea", total_cents=1500)
        )
        return groceries.id


def test_api_requires_bearer_token(client) -> None:
    assert client.get("/api/reports/daily").status_code == 401
    response = client.get(
        "/api/reports/daily", headers={"Authorization": "Bearer not-a-token"}
    )
    assert response.status_code == 401
    assert response.json() == {"error": "Invalid credentials"}


def test_custom_report_requires_both_bounds(client, user_id) -> None:
    response = client.get(
        "/api/reports/custom", params={"start": "2025-06-01"}, headers=_auth(user_id)
    )

    assert response.status_code == 400
    assert "error" in response.json()


def test_custom_report_with_category_filter(client, user_id) -> None:
    groceries_id = _seed(user_id)
    params = {"start": "2025-06-01", "end": "2025-06-30"}

    everything = client.get(
        "/api/reports/custom", params={**params, "category": "all"}, headers=_auth(user_id)
    ).json()
    filtered = client.get(
        "/api/reports/custom",
        params={**params, "category": str(groceries_id)},
        headers=_auth(user_id),
    ).json()

    assert everything["total_expenses"] == 135.0
    assert everything["total_funds"] == 500.0
    assert everything["balance"] == 365.0
    assert filtered["total_expenses"] == 120.0
    assert filtered["category_breakdown"] == {"Groceries": 120.0}
    assert filtered["total_funds"] == 500.0


def test_bad_filter_value_is_rejected(client, user_id) -> None:
    response = client.get(
        "/api/reports/monthly", params={"category": "abc"}, headers=_auth(user_id)
    )
    assert response.status_code == 400


def test_last_report_is_kept_between_requests(client, user_id) -> None:
    _seed(user_id)

    missing = client.get("/api/reports/last", headers=_auth(user_id))
    assert missing.status_code == 404

    generated = client.get(
        "/api/reports/custom",
        params={"start": "2025-06-02", "end": "2025-06-02"},
        headers=_auth(user_id),
    ).json()
    last = client.get("/api/reports/last", headers=_auth(user_id))

    assert last.status_code == 200
    assert last.json() == generated
    assert last.json()["total_expenses"] == 15.0


def test_ocr_requires_image_url(client, user_id) -> None:
    response = client.post("/api/ocr", json={}, headers=_auth(user_id))

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Image URL is required"}


def test_ocr_rate_limit_is_reported_as_429(client, user_id, monkeypatch) -> None:
    class RateLimitedOCR:
        def scan(self, image_url):
            return ScanResult(
                success=False, error=RATE_LIMIT_MESSAGE, error_kind="rate_limited"
            )

    monkeypatch.setattr(main, "ReceiptOCRService", RateLimitedOCR)

    response = client.post(
        "/api/ocr", json={"imageUrl": "https://x.test/r.jpg"}, headers=_auth(user_id)
    )

    assert response.status_code == 429
    assert response.json()["error"] == RATE_LIMIT_MESSAGE


def test_ocr_success_returns_normalized_data(client, user_id, monkeypatch) -> None:
    class FakeOCR:
        def scan(self, image_url):
            return ScanResult(
                success=True,
                data={"items": [{"name": "Rice", "quantity": "1", "price": 60}], "total": 60},
            )

    monkeypatch.setattr(main, "ReceiptOCRService", FakeOCR)

    response = client.post(
        "/api/ocr", json={"imageUrl": "https://x.test/r.jpg"}, headers=_auth(user_id)
    )

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["data"]["total"] == 60
    assert "rawText" not in body["data"]


def test_html_pages_redirect_to_signin(client) -> None:
    response = client.get("/", follow_redirects=False)

    assert response.status_code == 303
    assert response.headers["location"] == "/signin"


def test_signin_sets_session_cookie(client, user_id) -> None:
    _seed(user_id)

    rejected = client.post("/signin", data={"token": "garbage"}, follow_redirects=False)
    assert rejected.status_code == 401

    response = client.post(
        "/signin", data={"token": issue_access_token(user_id)}, follow_redirects=False
    )
    assert response.status_code == 303
    assert SESSION_COOKIE in response.cookies

    dashboard = client.get("/")
    assert dashboard.status_code == 200
    assert "Daily Boarding Manager" in dashboard.text


def test_editing_requires_edit_mode(client, user_id) -> None:
    _seed(user_id)
    with SessionLocal() as session:
        expense_id = ExpenseService(session, user_id).recent()[0].id
    client.cookies.set(SESSION_COOKIE, issue_access_token(user_id))

    response = client.post(
        f"/expenses/{expense_id}/delete",
        data={"csrf_token": generate_csrf_token(user_id)},
        follow_redirects=False,
    )

    assert response.status_code == 403


def test_form_posts_require_csrf_token(client, user_id) -> None:
    client.cookies.set(SESSION_COOKIE, issue_access_token(user_id))

    response = client.post("/categories", data={"name": "Snacks"})

    assert response.status_code == 400


def test_transactions_page_rejects_bad_page_number(client, user_id) -> None:
    client.cookies.set(SESSION_COOKIE, issue_access_token(user_id))

    assert client.get("/transactions", params={"page": "abc"}).status_code == 400
    assert client.get("/transactions", params={"page": "2"}).status_code == 200


def test_expense_cannot_point_at_another_users_receipt(client, user_id) -> None:
    client.cookies.set(SESSION_COOKIE, issue_access_token(user_id))
    form = {
        "csrf_token": generate_csrf_token(user_id),
        "expense_date": "2025-06-01",
        "item_name": "Rice",
        "amount": "120",
    }

    foreign = client.post(
        "/expenses", data={**form, "receipt_path": f"{user_id + 1}/abc.jpg"},
        follow_redirects=False,
    )
    traversal = client.post(
        "/expenses", data={**form, "receipt_path": f"{user_id}/../{user_id + 1}/abc.jpg"},
        follow_redirects=False,
    )
    own = client.post(
        "/expenses", data={**form, "receipt_path": f"{user_id}/abc.jpg"},
        follow_redirects=False,
    )

    assert foreign.status_code == 400
    assert traversal.status_code == 400
    assert own.status_code == 303
    with SessionLocal() as session:
        receipts = [e.receipt_image_url for e in ExpenseService(session, user_id).recent()]
    assert receipts == [f"{user_id}/abc.jpg"]


def test_receipts_page_lists_signed_images(client, user_id) -> None:
    with SessionLocal() as session:
        ExpenseService(session, user_id).create(
            ExpenseIn(
                expense_date=date(2025, 6, 1),
                item_name="Rice sack",
                total_cents=12000,
                receipt_image_url=f"{user_id}/rice.jpg",
            )
        )
        ExpenseService(session, user_id).create(
            ExpenseIn(expense_date=date(2025, 6, 2), item_name="Tea", total_cents=1500)
        )
    client.cookies.set(SESSION_COOKIE, issue_access_token(user_id))

    response = client.get("/receipts")

    assert response.status_code == 200
    assert "Rice sack" in response.text
    assert "Tea" not in response.text
    assert "/receipts/signed/" in response.text


def test_batch_delete_removes_every_row(client, user_id) -> None:
    with SessionLocal() as session:
        rows = ExpenseService(session, user_id).create_batch(
            ExpenseBatchIn(
                expense_date=date(2025, 6, 1),
                items=[
                    BatchItemIn(item_name="Rice", total_cents=12000),
                    BatchItemIn(item_name="Oil", total_cents=19000),
                ],
            )
        )
        batch_id = rows[0].batch_id
        SettingsService(session, user_id).set_edit_mode(True)
    client.cookies.set(SESSION_COOKIE, issue_access_token(user_id))

    response = client.post(
        f"/batches/{batch_id}/delete",
        data={"csrf_token": generate_csrf_token(user_id)},
        follow_redirects=False,
    )

    assert response.status_code == 303
    with SessionLocal() as session:
        left = session.scalars(select(Expense).where(Expense.batch_id == batch_id)).all()
    assert left == []


def test_api_edit_mode_switch(client, user_id) -> None:
    response = client.post(
        "/api/settings/edit-mode", params={"enabled": "true"}, headers=_auth(user_id)
    )

    assert response.json() == {"edit_mode": True}
    with SessionLocal() as session:
        assert SettingsService(session, user_id).is_edit_mode() is True


def test_backup_lists_user_data(client, user_id) -> None:
    _seed(user_id)

    response = client.get("/api/backup", headers=_auth(user_id))

    body = response.json()
    assert response.status_code == 200
    assert body["user_id"] == user_id
    assert len(body["data"]["expenses"]) == 2
    assert len(body["data"]["funds"]) == 1
    assert [c["name"] for c in body["data"]["categories"]] == ["Groceries"]


def test_store_errors_become_503(client, user_id, monkeypatch) -> None:
    def broken(self):
        raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

    monkeypatch.setattr(main.BackupService, "export", broken)

    response = client.get("/api/backup", headers=_auth(user_id))

    assert response.status_code == 503
    assert "error" in response.json()
