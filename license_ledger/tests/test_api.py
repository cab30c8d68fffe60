"""
API Tests

Exercise the HTTP surface end to end with the FastAPI test client.
"""

import pytest
from fastapi.testclient import TestClient

from license_ledger.api import create_app

from .helpers import BUYER_ID, REFERRER_ID, UNKNOWN_ID, VALID_ADDRESS


@pytest.fixture
def delivered_pins(platform):
    pins = {}

    def deliver(user_id, purpose, issued):
        pins[user_id] = issued.pin

    platform.notifications.set_pin_delivery(deliver)
    return pins


@pytest.fixture
def client(platform):
    return TestClient(create_app(platform))


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_purchase_confirm_flow(client):
    response = client.post("/purchases", json={
        "user_id": str(BUYER_ID),
        "principal": "1000.00",
        "package_id": "PKG_STANDARD",
    })
    assert response.status_code == 201
    purchase_id = response.json()["purchase"]["id"]
    assert response.json()["external_status"] == "pending"

    response = client.post(f"/purchases/{purchase_id}/confirm", json={})
    assert response.status_code == 200
    body = response.json()
    assert body["purchase"]["external_status"] == "confirmed"
    assert body["schedule"]["external_status"] == "ACTIVE"
    assert body["schedule"]["total_days"] == 45
    assert len(body["commissions"]) == 1
    assert body["commissions"][0]["external_status"] == "PENDING"

    response = client.post(f"/purchases/{purchase_id}/confirm", json={})
    assert response.status_code == 409
    assert response.json()["code"] == "INVALID_STATE_TRANSITION"


def test_unknown_package(client):
    response = client.post("/purchases", json={
        "user_id": str(BUYER_ID),
        "principal": "1000.00",
        "package_id": "PKG_MISSING",
    })
    assert response.status_code == 404


def test_unknown_purchase(client):
    response = client.get(f"/purchases/{UNKNOWN_ID}")
    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


def test_withdrawal_flow(client, fund, delivered_pins):
    fund(REFERRER_ID, "100")

    response = client.post("/otp", json={"user_id": str(REFERRER_ID)})
    assert response.status_code == 201
    assert response.json()["delivered"] is True
    assert "pin" not in response.json()

    response = client.post("/withdrawals", json={
        "user_id": str(REFERRER_ID),
        "amount": "50.00",
        "destination_address": VALID_ADDRESS,
        "pin": delivered_pins[REFERRER_ID],
    })
    assert response.status_code == 201
    withdrawal_id = response.json()["withdrawal"]["id"]
    assert response.json()["external_status"] == "PENDING"

    response = client.post(f"/withdrawals/{withdrawal_id}/approve")
    assert response.json()["external_status"] == "CONFIRMED"

    response = client.post(f"/withdrawals/{withdrawal_id}/finalize", json={
        "outcome": "rejected",
        "reason": "manual review",
    })
    assert response.status_code == 200
    assert response.json()["external_status"] == "CANCELLED"

    response = client.get(f"/users/{REFERRER_ID}/balance")
    assert response.json()["available"] == "100.00"


def test_withdrawal_errors(client, fund, delivered_pins):
    fund(REFERRER_ID, "50")
    client.post("/otp", json={"user_id": str(REFERRER_ID)})

    response = client.post("/withdrawals", json={
        "user_id": str(REFERRER_ID),
        "amount": "100.00",
        "destination_address": VALID_ADDRESS,
        "pin": delivered_pins[REFERRER_ID],
    })
    assert response.status_code == 400
    assert response.json()["code"] == "INSUFFICIENT_BALANCE"

    response = client.post("/withdrawals", json={
        "user_id": str(REFERRER_ID),
        "amount": "20.00",
        "destination_address": VALID_ADDRESS,
        "pin": "0000000",
    })
    assert response.status_code == 401
    assert response.json()["reason"] in ("MISMATCH", "NOT_FOUND")


def test_reject_confirmed_purchase(client):
    response = client.post("/purchases", json={"user_id": str(BUYER_ID), "principal": "1000.00"})
    purchase_id = response.json()["purchase"]["id"]
    client.post(f"/purchases/{purchase_id}/confirm", json={})

    response = client.post(f"/purchases/{purchase_id}/reject", json={"reason": "chargeback"})
    assert response.status_code == 200
    assert response.json()["external_status"] == "rejected"

    response = client.get(f"/schedules/{purchase_id}")
    assert response.json()["external_status"] == "CANCELLED"

    response = client.get(f"/users/{REFERRER_ID}/commissions")
    assert [c["external_status"] for c in response.json()] == ["CANCELLED"]

    response = client.post("/sweeps/commissions", json={"as_of": "2100-01-01T00:00:00Z"})
    assert response.json()["released"] == 0


def test_sweeps(client):
    response = client.post("/purchases", json={"user_id": str(BUYER_ID), "principal": "1000.00"})
    purchase_id = response.json()["purchase"]["id"]
    client.post(f"/purchases/{purchase_id}/confirm", json={})

    response = client.post("/sweeps/benefits", json={"as_of": "2100-01-01T00:00:00Z"})
    assert response.status_code == 200
    assert response.json()["released"] == 8

    response = client.post("/sweeps/commissions", json={"as_of": "2100-01-01T00:00:00Z"})
    assert response.json()["released"] == 1

    response = client.get(f"/schedules/{purchase_id}")
    assert response.json()["external_status"] == "CONFIRMED"

    response = client.get(f"/users/{REFERRER_ID}/commissions")
    assert response.json()[0]["external_status"] == "CONFIRMED"

    response = client.get(f"/users/{BUYER_ID}/ledger", params={"limit": 3})
    assert len(response.json()["entries"]) == 3
    assert response.json()["total_count"] == 9
