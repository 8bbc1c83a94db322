"""Pytest configuration and fixtures.

Every test gets its own SQLite file under ``tmp_path`` with migrations
applied and the bootstrap administrator seeded.  Network calls (Stripe,
webhook deliveries) are never made for real: tests patch
``httpx.post`` or the service helpers that wrap it.
"""

import json
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from gateflow_api.app.core.config import settings
from gateflow_api.app.core.db import format_timestamp, get_connection, init_db, new_id, now_iso, utc_now
from gateflow_api.app.main import app


ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "s3cret-pass"


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    """Point the app at a fresh database for each test."""
    db_path = tmp_path / "gateflow.db"
    monkeypatch.setattr(settings, "database_url", str(db_path))
    monkeypatch.setattr(settings, "admin_email", ADMIN_EMAIL)
    monkeypatch.setattr(settings, "admin_password", ADMIN_PASSWORD)
    monkeypatch.setattr(settings, "secret_key", "test-secret")
    monkeypatch.setattr(settings, "rate_limit_enabled", True)
    monkeypatch.setattr(settings, "allow_http_webhooks", False)
    monkeypatch.setattr(settings, "stripe_secret_key", "sk_test_123")
    init_db()
    return db_path


@pytest.fixture
def client(database):
    return TestClient(app)


@pytest.fixture
def admin_headers(client):
    response = client.post("/api/v1/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['data']['access_token']}"}


@pytest.fixture
def admin_id(database):
    conn = get_connection()
    try:
        return conn.execute("SELECT id FROM admin_users WHERE email = ?", (ADMIN_EMAIL,)).fetchone()["id"]
    finally:
        conn.close()


@pytest.fixture
def api_key_factory(client, admin_headers):
    """Create an API key through the API and return ``(headers, key_data)``."""

    def _create(scopes=None, name="Test key", rate_limit_per_minute=None):
        body = {"name": name}
        if scopes is not None:
            body["scopes"] = scopes
        if rate_limit_per_minute is not None:
            body["rate_limit_per_minute"] = rate_limit_per_minute
        response = client.post("/api/v1/api-keys", json=body, headers=admin_headers)
        assert response.status_code == 201, response.text
        data = response.json()["data"]
        return {"X-API-Key": data["key"]}, data

    return _create


@pytest.fixture
def full_access_headers(api_key_factory):
    headers, _ = api_key_factory(["*"], name="Full access")
    return headers


def _insert(table, values):
    columns = ", ".join(values)
    placeholders = ", ".join("?" for _ in values)
    conn = get_connection()
    try:
        conn.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", list(values.values()))
        conn.commit()
    finally:
        conn.close()
    return values


@pytest.fixture
def seed_product():
    counter = {"n": 0}

    def _seed(**overrides):
        counter["n"] += 1
        timestamp = now_iso()
        values = {
            "id": new_id(),
            "name": f"Product {counter['n']}",
            "slug": f"product-{counter['n']}-{new_id()[:8]}",
            "description": "A digital product",
            "price": 49.0,
            "currency": "PLN",
            "is_active": 1,
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        values.update(overrides)
        return _insert("products", values)

    return _seed


@pytest.fixture
def seed_user():
    def _seed(email=None, **overrides):
        values = {
            "id": new_id(),
            "email": email or f"user-{new_id()[:8]}@example.com",
            "raw_user_meta_data": json.dumps({"full_name": "Test User"}),
            "created_at": now_iso(),
        }
        values.update(overrides)
        return _insert("users", values)

    return _seed


@pytest.fixture
def seed_access():
    def _seed(user_id, product_id, expires_in_days=None, **overrides):
        timestamp = now_iso()
        values = {
            "id": new_id(),
            "user_id": user_id,
            "product_id": product_id,
            "access_granted_at": timestamp,
            "access_expires_at": (
                format_timestamp(utc_now() + timedelta(days=expires_in_days)) if expires_in_days else None
            ),
            "created_at": timestamp,
        }
        values.update(overrides)
        return _insert("user_product_access", values)

    return _seed


@pytest.fixture
def seed_payment():
    def _seed(product_id, amount=4900, status="completed", **overrides):
        timestamp = now_iso()
        values = {
            "id": new_id(),
            "session_id": f"cs_test_{new_id()[:12]}",
            "product_id": product_id,
            "customer_email": "buyer@example.com",
            "amount": amount,
            "currency": "PLN",
            "status": status,
            "stripe_payment_intent_id": f"pi_{new_id()[:12]}",
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        values.update(overrides)
        return _insert("payment_transactions", values)

    return _seed


@pytest.fixture
def seed_refund_request():
    def _seed(payment, **overrides):
        timestamp = now_iso()
        values = {
            "id": new_id(),
            "user_id": payment.get("user_id"),
            "product_id": payment["product_id"],
            "transaction_id": payment["id"],
            "customer_email": payment["customer_email"],
            "reason": "Not what I expected",
            "requested_amount": payment["amount"],
            "currency": payment["currency"],
            "status": "pending",
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        values.update(overrides)
        return _insert("refund_requests", values)

    return _seed
