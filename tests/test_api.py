from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, enable_sqlite_pragmas
from main import app, get_db


def make_client() -> TestClient:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(engine, "connect", enable_sqlite_pragmas)
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


def register(client: TestClient, email: str) -> dict[str, str]:
    response = client.post(
        "/api/auth/register", json={"email": email, "password": "correct horse"}
    )
    assert response.status_code == 201, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


def test_ledger_flow_over_http() -> None:
    client = make_client()
    headers = register(client, "ann@example.com")

    category = client.post(
        "/api/categories", json={"name": "Groceries"}, headers=headers
    ).json()
    income = client.post(
        "/api/transactions",
        json={"type": "income", "amount": "1000.00", "date": "2024-01-01"},
        headers=headers,
    )
    assert income.status_code == 201
    expense = client.post(
        "/api/transactions",
        json={
            "type": "expense",
            "amount": 250,
            "date": "2024-01-02",
            "categoryId": None,
            "category_id": category["id"],
            "comment": "weekly shop",
        },
        headers=headers,
    )
    assert expense.status_code == 201
    assert expense.json()["category_name"] == "Groceries"

    assert client.get("/api/balance", headers=headers).json() == {"balance": "750.00"}

    stats = client.get(
        "/api/statistics",
        params={"start": "2024-01-01", "end": "2024-01-31"},
        headers=headers,
    ).json()
    assert stats["income"]["total"] == "1000.00"
    assert [(b["name"], b["amount"]) for b in stats["income"]["buckets"]] == [
        ("Income", "1000.00")
    ]
    assert [(b["name"], b["amount"]) for b in stats["expense"]["buckets"]] == [
        ("Groceries", "250.00")
    ]

    updated = client.put(
        f"/api/transactions/{expense.json()['id']}",
        json={
            "type": "expense",
            "amount": "300.00",
            "date": "2024-01-02",
            "category_id": category["id"],
        },
        headers=headers,
    )
    assert updated.status_code == 200
    assert client.get("/api/balance", headers=headers).json() == {"balance": "700.00"}

    deleted = client.delete(f"/api/transactions/{income.json()['id']}", headers=headers)
    assert deleted.status_code == 200
    assert client.get("/api/balance", headers=headers).json() == {"balance": "-300.00"}

    listed = client.get("/api/transactions", headers=headers).json()
    assert [t["id"] for t in listed] == [expense.json()["id"]]

    reconcile = client.post("/api/admin/reconcile-balance", headers=headers).json()
    assert reconcile == {"stored": "-300.00", "recomputed": "-300.00", "drift": "0.00"}


def test_errors_carry_kind_and_status() -> None:
    client = make_client()
    headers = register(client, "ann@example.com")
    category = client.post("/api/categories", json={"name": "Rent"}, headers=headers)
    category_id = category.json()["id"]
    client.post(
        "/api/transactions",
        json={"type": "expense", "amount": "10", "date": "2024-01-01", "category_id": category_id},
        headers=headers,
    )

    missing_category = client.post(
        "/api/transactions",
        json={"type": "expense", "amount": "10", "date": "2024-01-01"},
        headers=headers,
    )
    assert missing_category.status_code == 400
    assert missing_category.json()["kind"] == "validation_error"

    zero = client.post(
        "/api/transactions",
        json={"type": "income", "amount": 0, "date": "2024-01-01"},
        headers=headers,
    )
    assert zero.status_code == 400

    blank = client.post("/api/categories", json={"name": "  "}, headers=headers)
    assert blank.status_code == 400
    assert blank.json()["kind"] == "validation_error"

    conflict = client.delete(f"/api/categories/{category_id}", headers=headers)
    assert conflict.status_code == 409
    assert conflict.json()["kind"] == "conflict"

    missing = client.get("/api/transactions/9999", headers=headers)
    assert missing.status_code == 404
    assert missing.json() == {"kind": "not_found", "message": "Transaction not found"}

    bad_period = client.get(
        "/api/statistics", params={"period": "fortnight"}, headers=headers
    )
    assert bad_period.status_code == 400

    bad_filter = client.get(
        "/api/transactions", params={"start": "2024-13-01"}, headers=headers
    )
    assert bad_filter.status_code == 400


def test_requests_need_a_valid_token() -> None:
    client = make_client()

    assert client.get("/api/balance").status_code == 401
    unauthorized = client.get(
        "/api/balance", headers={"Authorization": "Bearer not-a-token"}
    )
    assert unauthorized.status_code == 401
    assert unauthorized.json()["kind"] == "authentication_error"


def test_login_and_duplicate_registration() -> None:
    client = make_client()
    register(client, "ann@example.com")

    duplicate = client.post(
        "/api/auth/register",
        json={"email": "ann@example.com", "password": "correct horse"},
    )
    assert duplicate.status_code == 409

    wrong = client.post(
        "/api/auth/login", json={"email": "ann@example.com", "password": "nope nope"}
    )
    assert wrong.status_code == 401

    ok = client.post(
        "/api/auth/login",
        json={"email": "ann@example.com", "password": "correct horse"},
    )
    assert ok.status_code == 200
    assert ok.json()["user"]["email"] == "ann@example.com"


def test_users_cannot_reach_each_others_records() -> None:
    client = make_client()
    ann = register(client, "ann@example.com")
    bob = register(client, "bob@example.com")

    category_id = client.post(
        "/api/categories", json={"name": "Secret"}, headers=ann
    ).json()["id"]
    txn_id = client.post(
        "/api/transactions",
        json={"type": "expense", "amount": "5", "date": "2024-01-01", "category_id": category_id},
        headers=ann,
    ).json()["id"]

    assert client.get(f"/api/transactions/{txn_id}", headers=bob).status_code == 404
    assert client.delete(f"/api/transactions/{txn_id}", headers=bob).status_code == 404
    assert (
        client.put(
            f"/api/categories/{category_id}", json={"name": "Mine"}, headers=bob
        ).status_code
        == 404
    )
    stolen = client.post(
        "/api/transactions",
        json={"type": "expense", "amount": "5", "date": "2024-01-01", "category_id": category_id},
        headers=bob,
    )
    assert stolen.status_code == 404
    assert client.get("/api/transactions", headers=bob).json() == []
    assert client.get("/api/balance", headers=bob).json() == {"balance": "0.00"}
    assert client.get("/api/balance", headers=ann).json() == {"balance": "-5.00"}
    names = [c["name"] for c in client.get("/api/categories", headers=bob).json()]
    assert "Secret" not in names


def test_out_of_range_ids_and_bad_emails_keep_the_error_shape() -> None:
    client = make_client()
    headers = register(client, "ann@example.com")
    huge = 10**20

    missing = client.get(f"/api/transactions/{huge}", headers=headers)
    assert missing.status_code == 404
    assert missing.json() == {"kind": "not_found", "message": "Transaction not found"}

    renamed = client.put(
        f"/api/categories/{huge}", json={"name": "Food"}, headers=headers
    )
    assert renamed.status_code == 404
    assert renamed.json()["kind"] == "not_found"

    expense = client.post(
        "/api/transactions",
        json={"type": "expense", "amount": "5", "date": "2024-01-01", "category_id": huge},
        headers=headers,
    )
    assert expense.status_code == 404

    filtered = client.get(
        "/api/transactions", params={"category": huge}, headers=headers
    )
    assert filtered.status_code == 200
    assert filtered.json() == []

    bad_email = client.post(
        "/api/auth/register",
        json={"email": "a@example..com", "password": "correct horse"},
    )
    assert bad_email.status_code == 400
    assert bad_email.json()["kind"] == "validation_error"
