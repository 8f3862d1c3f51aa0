import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import main
from database import Base
from errors import StorageError
from gateway import SQLAlchemyGateway
from periods import local_now


@pytest.fixture
def client():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[main.get_db] = override_get_db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def create_user(client, email="ana@example.com") -> int:
    response = client.post(
        "/api/users", json={"name": "Ana", "email": email, "number": "0800"}
    )
    assert response.status_code == 201
    return response.json()["id"]


def post_txn(client, user_id, type, amount, **extra):
    payload = {"type": type, "amount": amount, "date": local_now().isoformat()}
    payload.update(extra)
    return client.post(
        "/api/transactions", json=payload, headers={"X-User-Id": str(user_id)}
    )


def test_budget_flow_over_http(client) -> None:
    user_id = create_user(client)
    headers = {"X-User-Id": str(user_id)}

    rejected = post_txn(client, user_id, "expense", 500)
    assert rejected.status_code == 400
    assert rejected.json()["detail"] == "this month's income does not cover this expense"

    salary = post_txn(client, user_id, "income", 1_000, note="salary")
    assert salary.status_code == 201
    body = salary.json()
    assert body["user"] == {
        "id": user_id,
        "name": "Ana",
        "email": "ana@example.com",
        "number": "0800",
    }
    assert body["category"] is None

    groceries = post_txn(client, user_id, "expense", 400, note="groceries")
    assert groceries.status_code == 201

    listing = client.get("/api/transactions?search=groceries", headers=headers)
    assert listing.status_code == 200
    envelope = listing.json()
    assert [t["id"] for t in envelope["data"]] == [groceries.json()["id"]]
    assert envelope["pagination"] == {
        "total": 1,
        "page": 1,
        "limit": 10,
        "totalPage": 1,
    }

    summary = client.get("/api/summary/monthly", headers=headers).json()
    assert summary["total_income"] == 1_000
    assert summary["total_expense"] == 400
    assert summary["balance"] == 600

    too_much = client.put(
        f"/api/transactions/{groceries.json()['id']}",
        json={"amount": 1_200},
        headers=headers,
    )
    assert too_much.status_code == 400

    fine = client.put(
        f"/api/transactions/{groceries.json()['id']}",
        json={"amount": 1_000, "note": "big shop"},
        headers=headers,
    )
    assert fine.status_code == 200
    assert fine.json()["amount"] == 1_000
    assert fine.json()["note"] == "big shop"


def test_transactions_are_private_to_their_owner(client) -> None:
    ana = create_user(client)
    bob = create_user(client, email="bob@example.com")
    txn_id = post_txn(client, ana, "income", 10).json()["id"]

    foreign = client.get(f"/api/transactions/{txn_id}", headers={"X-User-Id": str(bob)})
    assert foreign.status_code == 404
    assert client.delete(
        f"/api/transactions/{txn_id}", headers={"X-User-Id": str(bob)}
    ).status_code == 404

    own = client.get(f"/api/transactions/{txn_id}", headers={"X-User-Id": str(ana)})
    assert own.status_code == 200


def test_delete_then_missing(client) -> None:
    user_id = create_user(client)
    headers = {"X-User-Id": str(user_id)}
    txn_id = post_txn(client, user_id, "income", 10).json()["id"]

    assert client.delete(f"/api/transactions/{txn_id}", headers=headers).status_code == 204
    assert client.get(f"/api/transactions/{txn_id}", headers=headers).status_code == 404
    assert client.delete(f"/api/transactions/{txn_id}", headers=headers).status_code == 404


def test_caller_identity_and_payload_are_validated(client) -> None:
    assert client.get("/api/transactions").status_code == 422

    user_id = create_user(client)
    headers = {"X-User-Id": str(user_id)}
    assert client.get("/api/transactions?page=0", headers=headers).status_code == 422
    negative = post_txn(client, user_id, "income", -1)
    assert negative.status_code == 422
    unknown_category = post_txn(client, user_id, "income", 5, category_id=77)
    assert unknown_category.status_code == 404
    assert client.get("/api/summary/monthly?month=2025-13", headers=headers).status_code == 400


def test_categories_and_users(client) -> None:
    created = client.post(
        "/api/categories", json={"name": "Food", "description": "Meals"}
    )
    assert created.status_code == 201
    category_id = created.json()["id"]
    assert client.get("/api/categories").json() == [
        {"id": category_id, "name": "Food", "description": "Meals"}
    ]

    user_id = create_user(client)
    txn = post_txn(client, user_id, "income", 5, category_id=category_id).json()
    assert txn["category"] == {"name": "Food", "description": "Meals"}

    assert client.delete(f"/api/categories/{category_id}").status_code == 204
    assert client.delete(f"/api/categories/{category_id}").status_code == 404
    again = client.get(
        f"/api/transactions/{txn['id']}", headers={"X-User-Id": str(user_id)}
    ).json()
    assert again["category"] is None

    duplicate = client.post(
        "/api/users", json={"name": "Other", "email": "ana@example.com"}
    )
    assert duplicate.status_code == 400
    renamed = client.put(f"/api/users/{user_id}", json={"name": "Ana Maria"})
    assert renamed.json()["name"] == "Ana Maria"
    assert client.get("/api/users/999").status_code == 404


def test_storage_failures_become_500(client) -> None:
    user_id = create_user(client)

    class BrokenGateway(SQLAlchemyGateway):
        def find_many(self, query):
            raise StorageError("disk on fire")

    def broken_gateway(db: Session = Depends(main.get_db)):
        return BrokenGateway(db)

    main.app.dependency_overrides[main.get_gateway] = broken_gateway
    response = client.get("/api/transactions", headers={"X-User-Id": str(user_id)})
    assert response.status_code == 500
    assert response.json() == {"detail": "Storage failure"}


def test_unknown_caller_is_not_found(client) -> None:
    response = post_txn(client, 999, "income", 5)
    assert response.status_code == 404
    assert response.json() == {"detail": "User not found"}
    assert client.get(
        "/api/transactions", headers={"X-User-Id": "999"}
    ).status_code == 404

    user_id = create_user(client)
    listing = client.get("/api/transactions", headers={"X-User-Id": str(user_id)})
    assert listing.json()["pagination"]["total"] == 0
