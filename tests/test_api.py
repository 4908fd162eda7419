from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, get_db
from main import app


def _client() -> TestClient:
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
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


def test_category_crud_and_conflict() -> None:
    client = _client()
    created = client.post(
        "/api/categories",
        json={"name": "Groceries", "type": "expense", "color": "#4caf50", "keywords": ["Market"]},
    )
    assert created.status_code == 201
    body = created.json()
    assert body["color"] == "#4CAF50"
    assert body["keywords"] == ["market"]

    duplicate = client.post("/api/categories", json={"name": "groceries", "type": "expense"})
    assert duplicate.status_code == 409

    listed = client.get("/api/categories").json()
    assert [c["name"] for c in listed["categories"]] == ["Groceries"]
    assert listed["pagination"]["total_items"] == 1

    missing_parent = client.post(
        "/api/categories", json={"name": "Snacks", "type": "expense", "parent_id": 99}
    )
    assert missing_parent.status_code == 404


def test_transaction_lifecycle() -> None:
    client = _client()
    client.post(
        "/api/categories",
        json={"name": "Transport", "type": "expense", "keywords": ["metro"]},
    )
    created = client.post(
        "/api/transactions",
        json={
            "date": "2025-05-02",
            "type": "expense",
            "amount_cents": 290,
            "description": "Metro ticket",
            "tags": ["Commute"],
        },
    )
    assert created.status_code == 201
    txn = created.json()
    assert txn["category"] == "Transport"
    assert txn["auto_categorized"] is True

    assert client.get(f"/api/transactions/{txn['id']}").json()["amount_cents"] == 290
    assert client.delete(f"/api/transactions/{txn['id']}").status_code == 204
    assert client.get(f"/api/transactions/{txn['id']}").status_code == 404

    restored = client.post(f"/api/transactions/{txn['id']}/restore")
    assert restored.status_code == 200
    assert restored.json()["is_deleted"] is False


def test_error_statuses() -> None:
    client = _client()
    assert client.get("/api/transactions/999").status_code == 404
    assert client.get("/api/transactions/999").json() == {"detail": "Transaction not found"}

    invalid = client.post(
        "/api/transactions",
        json={"date": "2025-05-02", "type": "expense", "amount_cents": 0, "description": "x"},
    )
    assert invalid.status_code == 422

    wrong_file = client.post(
        "/api/transactions/import",
        files={"file": ("data.json", b"{}", "application/json")},
    )
    assert wrong_file.status_code == 400


def test_csv_import_and_export() -> None:
    client = _client()
    content = (
        "Date,Amount,Description\n"
        "2025-05-01,-12.00,Lunch\n"
        "2025-05-03,1500,Salary\n"
    ).encode("utf-8")
    imported = client.post(
        "/api/transactions/import", files={"file": ("bank.csv", content, "text/csv")}
    )
    assert imported.status_code == 200
    assert imported.json() == {"imported": 2, "failed": 0, "errors": []}

    exported = client.get("/api/transactions/export.csv")
    assert exported.status_code == 200
    assert exported.headers["content-type"].startswith("text/csv")
    lines = exported.text.strip().splitlines()
    assert len(lines) == 3


def test_password_strength_endpoint() -> None:
    client = _client()
    weak = client.post("/api/password/strength", json={"password": "abc"}).json()
    assert weak["is_valid"] is False
    assert weak["strength"] in ("Very Weak", "Weak")
    assert weak["suggestions"]

    generated = client.get("/api/password/generate", params={"length": 16}).json()
    assert len(generated["password"]) == 16


def test_forgot_password_does_not_reveal_accounts() -> None:
    client = _client()
    response = client.post("/api/password/forgot", json={"email": "ghost@example.com"})
    assert response.status_code == 200
    assert "If an account exists" in response.json()["message"]


def test_scheduler_status_and_unknown_job() -> None:
    client = _client()
    status = client.get("/api/scheduler/status").json()
    assert len(status["jobs"]) == 6
    assert status["running"] is False

    assert client.post("/api/scheduler/jobs/unknown/run").status_code == 400


def test_forgot_password_answers_the_same_for_unverified_accounts() -> None:
    client = _client()
    registered = client.post(
        "/api/users",
        json={
            "email": "rita.moss@example.com",
            "first_name": "Rita",
            "last_name": "Moss",
            "password": "Blue$Harbor2024",
        },
    )
    assert registered.status_code == 201

    unknown = client.post("/api/password/forgot", json={"email": "ghost@example.com"})
    unverified = client.post("/api/password/forgot", json={"email": "rita.moss@example.com"})

    assert unverified.status_code == unknown.status_code == 200
    assert unverified.json() == unknown.json()


def test_import_of_undecodable_csv_is_a_bad_request() -> None:
    client = _client()
    response = client.post(
        "/api/transactions/import",
        files={"file": ("bank.csv", b"Date,Amount\n\xff\xfe\x80,1\n", "text/csv")},
    )
    assert response.status_code == 400
    assert "UTF-8" in response.json()["detail"]
