"""
End-to-end tests of the services and transactions API through signed requests.
"""
import os
import sys
from datetime import date
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from billtrack.database import get_db
from billtrack.main import app

from helpers import (
    OTHER_USER_ID,
    USER_ID,
    add_monthly_series,
    add_transaction,
    create_test_engine,
    ensure_user,
)
from internal_auth import build_internal_auth_headers


@pytest.fixture
def session_factory():
    engine = create_test_engine()
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSession()
    try:
        ensure_user(db, USER_ID)
        ensure_user(db, OTHER_USER_ID)
    finally:
        db.close()

    def override_get_db():
        session = TestingSession()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestingSession
    app.dependency_overrides.pop(get_db, None)
    engine.dispose()


@pytest.fixture
def client(session_factory):
    with TestClient(app) as test_client:
        yield test_client


def call(client, method: str, path: str, json=None, user_id: str = USER_ID):
    headers = build_internal_auth_headers(method, path, user_id)
    return client.request(method, path, json=json, headers=headers)


def seed(session_factory, fn, *args, **kwargs):
    db = session_factory()
    try:
        result = fn(db, *args, **kwargs)
        if isinstance(result, list):
            return [str(item.id) for item in result]
        return str(result.id)
    finally:
        db.close()


def test_health_is_public_and_api_requires_signature(client):
    assert client.get("/health").json() == {"status": "healthy"}

    response = client.get("/api/services/")
    assert response.status_code == 401

    headers = build_internal_auth_headers("GET", "/api/services/", USER_ID)
    headers["X-Billtrack-Signature"] = "0" * 64
    assert client.get("/api/services/", headers=headers).status_code == 401

    response = call(client, "GET", f"/api/services/?user_id={OTHER_USER_ID}")
    assert response.status_code == 403
    print("✓ Internal auth enforced on /api")


def test_create_duplicate_and_validation_errors(client):
    response = call(client, "POST", "/api/services/", json={
        "name": "Netflix",
        "typical_day_of_month": 15,
        "estimated_amount": "15.99",
        "first_payment_date": "2024-03-15",
    })
    assert response.status_code == 201
    body = response.json()
    assert body["normalized_name"] == "netflix"
    assert body["estimated_amount"] == "15.99"
    assert body["next_expected_date"] == "2024-04-15"
    assert body["is_auto_detected"] is False

    duplicate = call(client, "POST", "/api/services/", json={"name": "NETFLIX"})
    assert duplicate.status_code == 409
    assert "already exists" in duplicate.json()["detail"]

    invalid = call(client, "POST", "/api/services/", json={"name": "Gym", "typical_day_of_month": 32})
    assert invalid.status_code == 400

    computed = call(client, "PATCH", f"/api/services/{body['id']}", json={"status": "overdue"})
    assert computed.status_code == 400

    assert call(client, "GET", f"/api/services/{uuid4()}").status_code == 404
    assert call(client, "GET", f"/api/services/{body['id']}", user_id=OTHER_USER_ID).status_code == 404

    listing = call(client, "GET", "/api/services/").json()
    assert [s["name"] for s in listing] == ["Netflix"]
    print("✓ Create, duplicate and validation status codes")


def test_link_twice_conflicts_and_unlink_restores(client, session_factory):
    service = call(client, "POST", "/api/services/", json={"name": "Netflix", "typical_day_of_month": 15}).json()
    txn_id = seed(session_factory, add_transaction, date(2024, 3, 15), "-15.99", "NETFLIX.COM")

    linked = call(client, "POST", f"/api/services/{service['id']}/link", json={"transaction_id": txn_id})
    assert linked.status_code == 201
    payment = linked.json()
    assert payment["amount"] == "15.99"
    assert payment["matched_by"] == "manual"
    assert payment["match_confidence"] == 100

    again = call(client, "POST", f"/api/services/{service['id']}/link", json={"transaction_id": txn_id})
    assert again.status_code == 409

    owner = call(client, "GET", f"/api/transactions/{txn_id}/service").json()
    assert owner["service"]["name"] == "Netflix"
    assert owner["payment"]["id"] == payment["id"]

    payments = call(client, "GET", f"/api/services/{service['id']}/payments?include_transaction_detail=true").json()
    assert payments[0]["transaction"]["description"] == "NETFLIX.COM"

    assert call(client, "DELETE", f"/api/services/payments/{payment['id']}").status_code == 204
    assert call(client, "GET", f"/api/transactions/{txn_id}/service").json() == {"service": None, "payment": None}

    refreshed = call(client, "GET", f"/api/services/{service['id']}").json()
    assert refreshed["last_payment_date"] is None
    assert refreshed["first_payment_date"] is None
    print("✓ Double link rejected; unlink clears the link")


def test_detect_confirm_and_calendar_flow(client, session_factory):
    seed(session_factory, add_monthly_series, "NETFLIX.COM 866-579-7172", ["-15.99"] * 6, date(2024, 1, 15))

    detected = call(client, "POST", "/api/services/detect", json={"today": "2024-06-20"})
    assert detected.status_code == 200
    detected = detected.json()
    assert detected["total"] == 1
    assert detected["candidates"][0]["name"] == "Netflix"
    assert call(client, "GET", "/api/services/").json() == []

    confirmed = call(client, "POST", "/api/services/confirm-detected", json={
        "candidates": detected["candidates"],
        "today": "2024-06-20",
    }).json()
    assert confirmed["created_count"] == 1
    assert confirmed["linked_count"] == 6
    assert confirmed["skipped_duplicates"] == []

    services = call(client, "GET", "/api/services/?include_payments=true").json()
    assert len(services) == 1
    assert services[0]["status"] == "up_to_date"
    assert services[0]["next_expected_date"] == "2024-07-15"
    assert len(services[0]["recent_payments"]) == 5

    upcoming = call(client, "GET", "/api/services/calendar/upcoming?months=1&today=2024-06-20").json()
    assert upcoming["start_date"] == "2024-06-20"
    assert [(p["payment_date"], p["is_predicted"]) for p in upcoming["payments"]] == [("2024-07-15", True)]

    june = call(client, "GET", "/api/services/calendar/2024/6").json()
    assert june["paid_count"] == 1
    assert june["pending_count"] == 0
    assert call(client, "GET", "/api/services/calendar/2024/13").status_code == 400

    recalculated = call(client, "POST", "/api/services/recalculate-all?today=2024-07-14").json()
    assert recalculated["total"] == 1
    assert recalculated["updated"] == 1
    assert recalculated["details"][0]["status"] == "due_soon"

    summary = call(client, "GET", "/api/services/summary").json()
    assert summary["total_live"] == 1
    assert summary["monthly_total_by_currency"] == {"EUR": 15.99}

    again = call(client, "POST", "/api/services/detect", json={"today": "2024-06-20"}).json()
    assert again["total"] == 0
    print("✓ Detect, confirm, calendar and summary over HTTP")


def test_potential_matches_and_auto_link(client, session_factory):
    call(client, "POST", "/api/services/", json={
        "name": "Spotify",
        "typical_day_of_month": 3,
        "estimated_amount": "9.99",
        "first_payment_date": "2024-05-03",
    })
    txn_id = seed(session_factory, add_transaction, date(2024, 6, 3), "-9.99", "SPOTIFY P1234567")

    matches = call(client, "GET", f"/api/transactions/{txn_id}/matches").json()
    assert matches[0]["service_name"] == "Spotify"
    assert matches[0]["confidence"] == 100
    assert matches[0]["reasons"][0] == "High match confidence"

    first = call(client, "POST", f"/api/transactions/{txn_id}/auto-link").json()
    assert first["linked"] is True
    assert first["payment"]["matched_by"] == "auto"

    second = call(client, "POST", f"/api/transactions/{txn_id}/auto-link").json()
    assert second == {"linked": False, "payment": None}
    print("✓ Potential matches and auto-link endpoints")


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
