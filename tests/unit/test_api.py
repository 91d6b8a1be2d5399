"""
HTTP API tests.

The app runs in mock mode (in-memory document store) through FastAPI's
TestClient. The client is used as a context manager so the lifespan
builds the shared ledger once and all requests run on the same event loop.
"""

import pytest
from fastapi.testclient import TestClient

from courtbook.api import dependencies
from courtbook.config.settings import get_settings
from courtbook.core.ledger.store import USERS
from courtbook.main import create_app

from tests.support import COACH_ID, OTHER_STUDENT_ID, STUDENT_ID

API_KEY = "test-key"


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("SNOWFLAKE_MOCK_MODE", "true")
    monkeypatch.setenv("API_KEYS", API_KEY)
    monkeypatch.setenv("EARNINGS_RETRY_DELAY_SECONDS", "0")
    get_settings.cache_clear()

    with TestClient(create_app()) as client:
        ledger = dependencies._ledger
        client.portal.call(ledger.store.set, USERS, COACH_ID, {
            "firstName": "Jane",
            "lastName": "Smith",
            "role": "Coach",
        })
        client.portal.call(ledger.store.set, USERS, STUDENT_ID, {"role": "Student", "credits": 50})
        client.portal.call(ledger.store.set, USERS, OTHER_STUDENT_ID, {"role": "Student", "credits": 5})
        yield client

    get_settings.cache_clear()


def headers(user_id: str | None = None) -> dict[str, str]:
    result = {"X-API-Key": API_KEY}
    if user_id is not None:
        result["X-User-Id"] = user_id
    return result


def drain_earnings(client: TestClient) -> None:
    client.portal.call(dependencies._ledger.dispatcher.drain)


def create_class(client: TestClient, credit_cost: int = 20) -> dict:
    response = client.post(
        "/api/v1/classes",
        json={
            "date": "2025-03-10",
            "start_time": "2025-01-01T09:00:00Z",
            "end_time": "2025-01-01T10:00:00Z",
            "credit_cost": credit_cost,
        },
        headers=headers(COACH_ID),
    )
    assert response.status_code == 201
    return response.json()


# ---------------------------------------------------------------------------
# Health and Authentication
# ---------------------------------------------------------------------------

class TestHealth:

    def test_liveness(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["details"]["mock_mode"]["snowflake"] is True

    def test_readiness_in_mock_mode(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"
        assert all(check["error"] is None for check in response.json()["checks"])


class TestAuthentication:

    def test_missing_api_key_is_forbidden(self, client):
        response = client.get("/api/v1/balance", headers={"X-User-Id": STUDENT_ID})

        assert response.status_code == 403

    def test_wrong_api_key_is_forbidden(self, client):
        response = client.get("/api/v1/balance", headers={"X-API-Key": "nope", "X-User-Id": STUDENT_ID})

        assert response.status_code == 403

    def test_missing_identity_is_unauthorized(self, client):
        response = client.get("/api/v1/balance", headers=headers())

        assert response.status_code == 401
        assert response.json()["error"] == "IdentityError"


# ---------------------------------------------------------------------------
# Balance
# ---------------------------------------------------------------------------

class TestBalanceEndpoints:

    def test_new_user_gets_starting_credits(self, client):
        response = client.get("/api/v1/balance", headers=headers("brand-new"))

        assert response.status_code == 200
        assert response.json() == {"user_id": "brand-new", "balance": 100}

    def test_add_and_deduct(self, client):
        added = client.post("/api/v1/balance/credits", json={"amount": 10}, headers=headers(STUDENT_ID))
        deducted = client.post("/api/v1/balance/deduct", json={"amount": 25}, headers=headers(STUDENT_ID))

        assert added.json()["balance"] == 60
        assert deducted.json()["balance"] == 35

        transactions = client.get("/api/v1/balance/transactions", headers=headers(STUDENT_ID)).json()
        assert [(t["type"], t["amount"], t["balance"]) for t in transactions["transactions"]] == [
            ("deduct", 25, 35),
            ("add", 10, 60),
        ]

    def test_overdraw_is_payment_required(self, client):
        response = client.post("/api/v1/balance/deduct", json={"amount": 51}, headers=headers(STUDENT_ID))

        assert response.status_code == 402
        assert response.json()["balance"] == 50
        assert response.json()["requested"] == 51

    def test_negative_amount_is_invalid(self, client):
        response = client.post("/api/v1/balance/credits", json={"amount": -1}, headers=headers(STUDENT_ID))

        assert response.status_code == 422

    def test_year_summary_has_twelve_months(self, client):
        response = client.get("/api/v1/balance/summary", params={"year": 2025}, headers=headers(STUDENT_ID))

        assert response.status_code == 200
        body = response.json()
        assert len(body["months"]) == 12
        assert body["month"] is None

    def test_month_summary(self, client):
        response = client.get(
            "/api/v1/balance/summary",
            params={"year": 2025, "month": 3},
            headers=headers(STUDENT_ID),
        )

        assert response.status_code == 200
        assert response.json()["months"] == []


# ---------------------------------------------------------------------------
# Classes
# ---------------------------------------------------------------------------

class TestClassEndpoints:

    def test_create_derives_label_and_name(self, client):
        created = create_class(client)

        assert created["class_time"] == "9:00 AM - 10:00 AM"
        assert created["instructor_name"] == "Jane Smith"
        assert created["status"] == "Available"
        assert created["start_time"].startswith("2025-03-10T09:00:00")

    def test_list_by_date(self, client):
        created = create_class(client)

        on_day = client.get("/api/v1/classes", params={"date": "2025-03-10"}, headers=headers()).json()
        other_day = client.get("/api/v1/classes", params={"date": "2025-03-11"}, headers=headers()).json()

        assert [c["id"] for c in on_day["classes"]] == [created["id"]]
        assert other_day["count"] == 0

    def test_end_before_start_is_invalid(self, client):
        response = client.post(
            "/api/v1/classes",
            json={
                "date": "2025-03-10",
                "start_time": "2025-01-01T10:00:00Z",
                "end_time": "2025-01-01T09:00:00Z",
                "credit_cost": 10,
            },
            headers=headers(COACH_ID),
        )

        assert response.status_code == 422

    def test_unknown_class_is_not_found(self, client):
        response = client.get("/api/v1/classes/NOPE", headers=headers())

        assert response.status_code == 404

    def test_booking_lifecycle(self, client):
        """
        Given a coach's class costing 20
        When a student books it and the coach finishes it
        Then the student pays 20 once and the coach earns 20 once
        """
        class_id = create_class(client)["id"]

        booked = client.post(f"/api/v1/classes/{class_id}/book", headers=headers(STUDENT_ID))
        assert booked.status_code == 200
        assert booked.json()["student_id"] == STUDENT_ID
        assert client.get("/api/v1/balance", headers=headers(STUDENT_ID)).json()["balance"] == 30

        again = client.post(f"/api/v1/classes/{class_id}/book", headers=headers(STUDENT_ID))
        assert again.status_code == 409

        by_student = client.post(f"/api/v1/classes/{class_id}/finish", headers=headers(STUDENT_ID))
        assert by_student.status_code == 403

        finished = client.post(f"/api/v1/classes/{class_id}/finish", headers=headers(COACH_ID))
        assert finished.status_code == 200
        assert finished.json()["status"] == "Completed"

        twice = client.post(f"/api/v1/classes/{class_id}/finish", headers=headers(COACH_ID))
        assert twice.status_code == 409

        drain_earnings(client)
        earnings = client.get("/api/v1/earnings", headers=headers(COACH_ID)).json()
        assert earnings["total_earnings"] == 20
        history = client.get("/api/v1/earnings/transactions", headers=headers(COACH_ID)).json()
        assert [t["class_id"] for t in history["transactions"]] == [class_id]

    def test_insufficient_balance_keeps_class_available(self, client):
        class_id = create_class(client, credit_cost=20)["id"]

        response = client.post(f"/api/v1/classes/{class_id}/book", headers=headers(OTHER_STUDENT_ID))

        assert response.status_code == 402
        slot = client.get(f"/api/v1/classes/{class_id}", headers=headers()).json()
        assert slot["status"] == "Available"
        assert slot["student_id"] is None

    def test_edit_and_delete(self, client):
        class_id = create_class(client)["id"]

        edited = client.patch(
            f"/api/v1/classes/{class_id}",
            json={"credit_cost": 30, "end_time": "2025-01-01T10:30:00Z"},
            headers=headers(COACH_ID),
        )
        assert edited.status_code == 200
        assert edited.json()["credit_cost"] == 30
        assert edited.json()["class_time"] == "9:00 AM - 10:30 AM"

        forbidden = client.delete(f"/api/v1/classes/{class_id}", headers=headers(STUDENT_ID))
        assert forbidden.status_code == 403

        deleted = client.delete(f"/api/v1/classes/{class_id}", headers=headers(COACH_ID))
        assert deleted.status_code == 204
        assert client.get(f"/api/v1/classes/{class_id}", headers=headers()).status_code == 404
