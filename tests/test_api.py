import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from auth import issue_user_token
from config import get_settings
from database import Base, build_session_factory
from main import app, get_db, get_scanner
from receipts import MAX_RECEIPT_BYTES, ReceiptScanner
from schemas import UserIdentity


class FakeModel:
    def generate_content(self, parts):
        text = '{"amount": 18.4, "date": "2025-03-02", "merchantName": "Cafe", "category": "food"}'
        return type("Response", (), {"text": text})()


@pytest.fixture
def client():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = build_session_factory(engine)

    def override_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_scanner] = lambda: ReceiptScanner(
        get_settings(), model=FakeModel()
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


def _auth(external_id: str = "user_a") -> dict[str, str]:
    token = issue_user_token(
        UserIdentity(external_id=external_id, email=f"{external_id}@example.com")
    )
    return {"Authorization": f"Bearer {token}"}


def _txn(account_id: int, amount: int, txn_type: str = "EXPENSE", **extra):
    return {
        "type": txn_type,
        "amount_cents": amount,
        "date": "2025-03-05T12:00:00",
        "account_id": account_id,
        "category": "food",
        **extra,
    }


def _create_account(client, headers, name="Main", balance=10000) -> dict:
    resp = client.post(
        "/api/accounts",
        json={"name": name, "type": "CURRENT", "balance_cents": balance},
        headers=headers,
    )
    assert resp.status_code == 201
    return resp.json()


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_requests_without_valid_token_are_unauthorized(client):
    assert client.get("/api/accounts").status_code == 401
    bad = client.get("/api/accounts", headers={"Authorization": "Bearer nope"})
    assert bad.status_code == 401
    basic = client.get("/api/accounts", headers={"Authorization": "Basic abc"})
    assert basic.status_code == 401


def test_transaction_lifecycle_keeps_balance(client):
    headers = _auth()
    account = _create_account(client, headers)
    assert account["is_default"] is True

    created = client.post(
        "/api/transactions", json=_txn(account["id"], 3000), headers=headers
    )
    assert created.status_code == 201
    txn_id = created.json()["id"]

    detail = client.get(f"/api/accounts/{account['id']}", headers=headers).json()
    assert detail["account"]["balance_cents"] == 7000
    assert detail["account"]["transaction_count"] == 1
    assert [t["id"] for t in detail["transactions"]] == [txn_id]

    updated = client.put(
        f"/api/transactions/{txn_id}",
        json=_txn(account["id"], 3000, "INCOME"),
        headers=headers,
    )
    assert updated.status_code == 200
    assert updated.json()["type"] == "INCOME"

    listing = client.get("/api/accounts", headers=headers).json()["items"]
    assert listing[0]["balance_cents"] == 13000

    deleted = client.delete(f"/api/transactions/{txn_id}", headers=headers)
    assert deleted.json() == {"success": True}
    listing = client.get("/api/accounts", headers=headers).json()["items"]
    assert listing[0]["balance_cents"] == 10000
    assert listing[0]["transaction_count"] == 0

    assert client.delete(f"/api/transactions/{txn_id}", headers=headers).status_code == 404


def test_other_users_resources_are_forbidden(client):
    owner, intruder = _auth("owner"), _auth("intruder")
    account = _create_account(client, owner)
    txn_id = client.post(
        "/api/transactions", json=_txn(account["id"], 500), headers=owner
    ).json()["id"]

    assert client.get(f"/api/accounts/{account['id']}", headers=intruder).status_code == 403
    assert client.get(f"/api/transactions/{txn_id}", headers=intruder).status_code == 403
    assert (
        client.post(
            "/api/transactions", json=_txn(account["id"], 100), headers=intruder
        ).status_code
        == 403
    )
    bulk = client.post(
        "/api/transactions/bulk-delete",
        json={"transaction_ids": [txn_id]},
        headers=intruder,
    )
    assert bulk.status_code == 403
    assert client.get(f"/api/transactions/{txn_id}", headers=owner).status_code == 200


def test_invalid_payloads(client):
    headers = _auth()
    account = _create_account(client, headers)
    zero = client.post("/api/transactions", json=_txn(account["id"], 0), headers=headers)
    assert zero.status_code == 422
    no_interval = client.post(
        "/api/transactions",
        json=_txn(account["id"], 100, is_recurring=True),
        headers=headers,
    )
    assert no_interval.status_code == 422
    missing = client.post("/api/transactions", json=_txn(9999, 100), headers=headers)
    assert missing.status_code == 404


def test_bulk_delete_and_filters(client):
    headers = _auth()
    first = _create_account(client, headers, "First", 10000)
    second = _create_account(client, headers, "Second", 0)
    ids = [
        client.post("/api/transactions", json=body, headers=headers).json()["id"]
        for body in (
            _txn(first["id"], 1000),
            _txn(second["id"], 2000),
            _txn(second["id"], 700, "INCOME", is_recurring=True, recurring_interval="MONTHLY"),
        )
    ]

    recurring = client.get(
        "/api/transactions", params={"is_recurring": "true"}, headers=headers
    ).json()
    assert [t["id"] for t in recurring["items"]] == [ids[2]]
    assert recurring["items"][0]["next_recurring_date"] == "2025-04-05T12:00:00"

    expenses = client.get(
        "/api/transactions", params={"type": "EXPENSE", "limit": 1}, headers=headers
    ).json()
    assert len(expenses["items"]) == 1
    assert expenses["has_more"] is True

    resp = client.post(
        "/api/transactions/bulk-delete",
        json={"transaction_ids": ids[:2]},
        headers=headers,
    )
    assert resp.json() == {"success": True, "deleted": 2}
    balances = {
        a["name"]: a["balance_cents"]
        for a in client.get("/api/accounts", headers=headers).json()["items"]
    }
    assert balances == {"First": 10000, "Second": 700}


def test_set_default_account(client):
    headers = _auth()
    first = _create_account(client, headers, "First")
    second = _create_account(client, headers, "Second")
    assert second["is_default"] is False

    resp = client.post(f"/api/accounts/{second['id']}/default", headers=headers)
    assert resp.json()["is_default"] is True
    defaults = [
        a["id"]
        for a in client.get("/api/accounts", headers=headers).json()["items"]
        if a["is_default"]
    ]
    assert defaults == [second["id"]]
    assert first["id"] != second["id"]


def test_budget_upsert_and_usage(client):
    headers = _auth()
    empty = client.get("/api/budget", headers=headers).json()
    assert empty["budget_id"] is None
    assert empty["percentage_used"] == 0

    resp = client.put("/api/budget", json={"amount_cents": 0}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["percentage_used"] == 0

    resp = client.put("/api/budget", json={"amount_cents": 50000}, headers=headers)
    assert resp.json()["amount_cents"] == 50000
    assert client.put(
        "/api/budget", json={"amount_cents": -1}, headers=headers
    ).status_code == 422


def test_receipt_scan(client):
    headers = _auth()
    resp = client.post(
        "/api/receipts/scan",
        files={"file": ("receipt.jpg", b"\xff\xd8fake", "image/jpeg")},
        headers=headers,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["amount_cents"] == 1840
    assert body["merchant_name"] == "Cafe"
    assert body["category"] == "food"

    rejected = client.post(
        "/api/receipts/scan",
        files={"file": ("notes.txt", b"hello", "text/plain")},
        headers=headers,
    )
    assert rejected.status_code == 400


def test_receipt_upload_is_read_only_up_to_the_limit(client):
    seen_sizes = []

    class RecordingScanner(ReceiptScanner):
        def scan(self, image, mime_type):
            seen_sizes.append(len(image))
            return super().scan(image, mime_type)

    app.dependency_overrides[get_scanner] = lambda: RecordingScanner(
        get_settings(), model=FakeModel()
    )
    resp = client.post(
        "/api/receipts/scan",
        files={"file": ("big.jpg", b"x" * (MAX_RECEIPT_BYTES + 4096), "image/jpeg")},
        headers=_auth(),
    )

    assert resp.status_code == 400
    assert seen_sizes == [MAX_RECEIPT_BYTES + 1]
