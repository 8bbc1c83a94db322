import asyncio
import csv
import io
from unittest.mock import patch

import pytest

from gateflow_api.app.core.api_keys import Scopes
from gateflow_api.app.core.config import settings
from gateflow_api.app.core.db import get_connection
from gateflow_api.app.services import stripe_client
from gateflow_api.app.services.audit_service import AuditService
from gateflow_api.app.services.stripe_client import StripeError


STRIPE_REFUND = "gateflow_api.app.services.stripe_client.create_refund"


def _payment_row(payment_id):
    conn = get_connection()
    try:
        return dict(conn.execute("SELECT * FROM payment_transactions WHERE id = ?", (payment_id,)).fetchone())
    finally:
        conn.close()


class TestPaymentListing:
    def test_list_sort_and_filters(self, client, full_access_headers, seed_product, seed_payment):
        product = seed_product()
        seed_payment(product["id"], amount=1000, customer_email="ann@example.com", created_at="2025-03-01T00:00:00.000000Z")
        seed_payment(product["id"], amount=3000, customer_email="bob@example.com", created_at="2025-03-02T00:00:00.000000Z")
        seed_payment(product["id"], amount=2000, status="failed", created_at="2025-03-03T00:00:00.000000Z")

        newest = client.get("/api/v1/payments", headers=full_access_headers).json()
        assert [p["amount"] for p in newest["data"]] == [2000, 3000, 1000]
        assert newest["data"][0]["product"]["name"] == product["name"]

        by_amount = client.get("/api/v1/payments?sort=amount&limit=2", headers=full_access_headers).json()
        assert [p["amount"] for p in by_amount["data"]] == [1000, 2000]
        cursor = by_amount["pagination"]["next_cursor"]
        rest = client.get(f"/api/v1/payments?sort=amount&limit=2&cursor={cursor}", headers=full_access_headers)
        assert [p["amount"] for p in rest.json()["data"]] == [3000]

        completed = client.get("/api/v1/payments?status=completed&email=bob", headers=full_access_headers).json()
        assert [p["customer_email"] for p in completed["data"]] == ["bob@example.com"]

        ranged = client.get(
            "/api/v1/payments?date_from=2025-03-02T00:00:00Z&date_to=2025-03-02T23:59:59Z",
            headers=full_access_headers,
        ).json()
        assert [p["amount"] for p in ranged["data"]] == [3000]

    def test_invalid_sort(self, client, full_access_headers):
        response = client.get("/api/v1/payments?sort=status", headers=full_access_headers)
        assert response.status_code == 400

    def test_requires_analytics_scope(self, client, api_key_factory):
        headers, _ = api_key_factory([Scopes.PRODUCTS_READ])
        assert client.get("/api/v1/payments", headers=headers).status_code == 403

    def test_get(self, client, full_access_headers, seed_product, seed_payment):
        payment = seed_payment(seed_product()["id"])
        response = client.get(f"/api/v1/payments/{payment['id']}", headers=full_access_headers)
        assert response.status_code == 200
        assert response.json()["data"]["refund"] is None
        missing = client.get("/api/v1/payments/00000000-0000-4000-8000-000000000000", headers=full_access_headers)
        assert missing.status_code == 404

    def test_stats(self, client, full_access_headers, seed_product, seed_payment):
        product = seed_product()
        seed_payment(product["id"], amount=1000)
        seed_payment(product["id"], amount=3000, status="refunded", refunded_amount=3000)
        seed_payment(product["id"], amount=500, status="failed")

        stats = client.get("/api/v1/payments/stats?period=7d", headers=full_access_headers).json()["data"]
        assert stats["total_transactions"] == 3
        assert stats["paid_transactions"] == 2
        assert stats["total_revenue"] == 1000
        assert stats["refunded_transactions"] == 1
        assert stats["refund_rate"] == 50.0

        bad = client.get("/api/v1/payments/stats?period=1y", headers=full_access_headers)
        assert bad.status_code == 400


class TestPaymentRefunds:
    def setup_method(self):
        self.refund_patch = patch(STRIPE_REFUND)
        self.mock_refund = self.refund_patch.start()
        self.mock_refund.return_value = {
            "id": "re_123",
            "amount": 4900,
            "currency": "pln",
            "status": "succeeded",
            "reason": "requested_by_customer",
        }

    def teardown_method(self):
        self.refund_patch.stop()

    def test_full_refund_revokes_access(
        self, client, full_access_headers, seed_product, seed_user, seed_access, seed_payment
    ):
        product = seed_product()
        user = seed_user()
        seed_access(user["id"], product["id"])
        payment = seed_payment(product["id"], user_id=user["id"])

        response = client.post(
            f"/api/v1/payments/{payment['id']}/refund",
            json={"reason": "requested_by_customer"},
            headers=full_access_headers,
        )
        assert response.status_code == 200, response.text
        data = response.json()["data"]
        assert data["payment_status"] == "refunded"
        assert data["total_refunded"] == 4900
        assert data["refund"]["id"] == "re_123"
        self.mock_refund.assert_called_once_with(
            payment["stripe_payment_intent_id"], amount=None, reason="requested_by_customer"
        )

        stored = _payment_row(payment["id"])
        assert stored["status"] == "refunded"
        assert stored["refund_id"] == "re_123"
        conn = get_connection()
        try:
            access = conn.execute("SELECT COUNT(*) FROM user_product_access").fetchone()[0]
        finally:
            conn.close()
        assert access == 0
        audit = asyncio.run(AuditService.list_entries(target_type="payment_transaction", target_id=payment["id"]))
        assert [entry["action"] for entry in audit] == ["refund_processed"]
        assert audit[0]["details"]["refund_id"] == "re_123"

    def test_partial_refund(self, client, full_access_headers, seed_product, seed_payment):
        self.mock_refund.return_value = {"id": "re_456", "amount": 1000, "currency": "pln", "status": "succeeded"}
        payment = seed_payment(seed_product()["id"])
        response = client.post(
            f"/api/v1/payments/{payment['id']}/refund", json={"amount": 1000}, headers=full_access_headers
        )
        assert response.json()["data"]["payment_status"] == "partially_refunded"
        assert self.mock_refund.call_args.kwargs["amount"] == 1000

    def test_refund_validation(self, client, full_access_headers, seed_product, seed_payment):
        product = seed_product()
        payment = seed_payment(product["id"])
        url = f"/api/v1/payments/{payment['id']}/refund"

        too_much = client.post(url, json={"amount": 5000}, headers=full_access_headers)
        assert too_much.json()["error"]["message"] == "Refund amount (5000) exceeds refundable amount (4900)"
        fraction = client.post(url, json={"amount": 10.5}, headers=full_access_headers)
        assert fraction.json()["error"]["message"] == "Refund amount must be a positive integer (in cents)"
        reason = client.post(url, json={"reason": "changed_mind"}, headers=full_access_headers)
        assert reason.status_code == 400

        failed = seed_payment(product["id"], status="failed")
        not_completed = client.post(f"/api/v1/payments/{failed['id']}/refund", headers=full_access_headers)
        assert not_completed.json()["error"]["message"] == "Only completed payments can be refunded"

        manual = seed_payment(product["id"], stripe_payment_intent_id=None)
        no_intent = client.post(f"/api/v1/payments/{manual['id']}/refund", headers=full_access_headers)
        assert no_intent.json()["error"]["message"] == "Payment does not have a Stripe payment intent"
        self.mock_refund.assert_not_called()

    def test_stripe_errors(self, client, full_access_headers, seed_product, seed_payment):
        payment = seed_payment(seed_product()["id"])
        url = f"/api/v1/payments/{payment['id']}/refund"

        self.mock_refund.side_effect = StripeError("Charge already refunded", is_api_error=True)
        rejected = client.post(url, headers=full_access_headers)
        assert rejected.status_code == 400
        assert rejected.json()["error"]["message"] == "Stripe error: Charge already refunded"

        self.mock_refund.side_effect = StripeError("Could not reach Stripe")
        unreachable = client.post(url, headers=full_access_headers)
        assert unreachable.status_code == 500
        assert unreachable.json()["error"]["code"] == "INTERNAL_ERROR"
        assert _payment_row(payment["id"])["status"] == "completed"

    def test_requires_full_access(self, client, api_key_factory, seed_product, seed_payment):
        headers, _ = api_key_factory([Scopes.ANALYTICS_READ])
        payment = seed_payment(seed_product()["id"])
        response = client.post(f"/api/v1/payments/{payment['id']}/refund", headers=headers)
        assert response.status_code == 403

    def test_refund_rate_limit(self, client, full_access_headers, seed_product, seed_payment):
        product = seed_product()
        self.mock_refund.return_value = {"id": "re_x", "amount": 100}
        for _ in range(10):
            payment = seed_payment(product["id"], amount=100)
            assert client.post(f"/api/v1/payments/{payment['id']}/refund", headers=full_access_headers).status_code == 200
        payment = seed_payment(product["id"], amount=100)
        response = client.post(f"/api/v1/payments/{payment['id']}/refund", headers=full_access_headers)
        assert response.status_code == 429
        assert response.json()["error"]["message"] == "Rate limit exceeded. Maximum 10 refunds per hour."


class TestPaymentExport:
    def test_csv_export(self, client, full_access_headers, seed_product, seed_payment):
        product = seed_product(name="Course, with comma")
        seed_payment(product["id"], amount=4900, customer_email="ann@example.com")
        seed_payment(product["id"], amount=100, status="failed")

        response = client.post(
            "/api/v1/payments/export", json={"status": "completed"}, headers=full_access_headers
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.headers["content-disposition"].startswith('attachment; filename="payments-')

        rows = list(csv.reader(io.StringIO(response.text)))
        assert rows[0][:4] == ["Transaction ID", "Session ID", "User ID", "Customer Email"]
        assert len(rows) == 2
        assert rows[1][3] == "ann@example.com"
        assert rows[1][4] == "Course, with comma"
        assert rows[1][6] == "49.00"

    def test_export_without_body(self, client, full_access_headers, seed_product, seed_payment):
        seed_payment(seed_product()["id"])
        response = client.post("/api/v1/payments/export", headers=full_access_headers)
        assert response.status_code == 200
        assert len(response.text.strip().split("\n")) == 2

    def test_export_rate_limit(self, client, full_access_headers):
        for _ in range(5):
            assert client.post("/api/v1/payments/export", headers=full_access_headers).status_code == 200
        response = client.post("/api/v1/payments/export", headers=full_access_headers)
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "RATE_LIMITED"


class TestStripeClient:
    def setup_method(self):
        self.post_patch = patch("gateflow_api.app.services.stripe_client.httpx.post")
        self.mock_post = self.post_patch.start()

    def teardown_method(self):
        self.post_patch.stop()

    def _respond(self, status_code, body):
        response = self.mock_post.return_value
        response.status_code = status_code
        response.is_error = status_code >= 400
        response.json.return_value = body

    def test_sends_form_with_idempotency_key(self):
        self._respond(200, {"id": "re_1", "amount": 500})
        refund = stripe_client.create_refund("pi_1", amount=500, reason="duplicate", idempotency_key="k-1")
        assert refund["id"] == "re_1"
        kwargs = self.mock_post.call_args.kwargs
        assert kwargs["data"] == {"payment_intent": "pi_1", "amount": 500, "reason": "duplicate"}
        assert kwargs["headers"]["Idempotency-Key"] == "k-1"
        assert kwargs["headers"]["Authorization"] == "Bearer sk_test_123"

    def test_api_error(self):
        self._respond(400, {"error": {"message": "Charge already refunded"}})
        with pytest.raises(StripeError) as excinfo:
            stripe_client.create_refund("pi_1")
        assert excinfo.value.is_api_error is True
        assert excinfo.value.message == "Charge already refunded"

    def test_not_configured(self, monkeypatch):
        monkeypatch.setattr(settings, "stripe_secret_key", "")
        with pytest.raises(StripeError) as excinfo:
            stripe_client.create_refund("pi_1")
        assert excinfo.value.is_api_error is False
        self.mock_post.assert_not_called()
