from datetime import datetime, timedelta, timezone

import pytest

from gateflow_api.app.core.api_keys import Scopes
from gateflow_api.app.core.db import format_timestamp, utc_now
from gateflow_api.app.core.errors import InvalidInputError
from gateflow_api.app.services.analytics_service import bucket_key, period_start


class TestPeriodHelpers:
    def setup_method(self):
        self.now = datetime(2025, 3, 5, 15, 30, tzinfo=timezone.utc)

    def test_period_start(self):
        assert period_start("day", self.now) == datetime(2025, 3, 5, tzinfo=timezone.utc)
        assert period_start("week", self.now) == self.now - timedelta(days=7)
        assert period_start("month", self.now) == datetime(2025, 3, 1, tzinfo=timezone.utc)
        assert period_start("quarter", self.now) == datetime(2024, 12, 5, 15, 30, tzinfo=timezone.utc)
        assert period_start("year", self.now) == datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert period_start("all", self.now) == datetime(2020, 1, 1, tzinfo=timezone.utc)

    def test_unknown_period_is_rejected(self):
        with pytest.raises(InvalidInputError) as excinfo:
            period_start("fortnight", self.now)
        assert excinfo.value.message == "Invalid period. Valid values: day, week, month, quarter, year, all"

    def test_bucket_keys(self):
        # 2025-03-05 is a Wednesday; weeks start on Sunday.
        assert bucket_key(self.now, "day") == "2025-03-05"
        assert bucket_key(self.now, "week") == "2025-03-02"
        assert bucket_key(datetime(2025, 3, 2, tzinfo=timezone.utc), "week") == "2025-03-02"
        assert bucket_key(self.now, "month") == "2025-03"


class TestAnalyticsEndpoints:
    def test_revenue_breakdown_and_comparison(self, client, full_access_headers, seed_product, seed_payment):
        product = seed_product()
        seed_payment(product["id"], amount=1500, created_at="2025-02-27T12:00:00.000000Z")
        seed_payment(product["id"], amount=1000, created_at="2025-03-01T10:00:00.000000Z")
        seed_payment(product["id"], amount=500, status="failed", created_at="2025-03-02T10:00:00.000000Z")
        seed_payment(product["id"], amount=2000, refunded_amount=500, created_at="2025-03-03T10:00:00.000000Z")

        response = client.get(
            "/api/v1/analytics/revenue?start_date=2025-03-01T00:00:00Z&end_date=2025-03-03T23:59:59Z&group_by=day",
            headers=full_access_headers,
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["summary"]["total_revenue"] == 3000
        assert data["summary"]["total_refunded"] == 500
        assert data["summary"]["net_revenue"] == 2500
        assert data["summary"]["total_transactions"] == 2
        assert data["summary"]["average_order_value"] == 1500
        assert data["summary"]["by_currency"]["PLN"]["transactions"] == 2
        assert [(b["date"], b["revenue"]) for b in data["breakdown"]] == [
            ("2025-03-01", 1000),
            ("2025-03-02", 0),
            ("2025-03-03", 2000),
        ]
        comparison = data["comparison"]
        assert comparison["previous_revenue"] == 1500
        assert comparison["previous_transactions"] == 1
        assert comparison["revenue_change_percent"] == 100.0
        assert comparison["transactions_change_percent"] == 100.0
        assert data["filters"]["group_by"] == "day"

    def test_revenue_weekly_buckets(self, client, full_access_headers, seed_product, seed_payment):
        product = seed_product()
        seed_payment(product["id"], amount=100, created_at="2025-03-03T10:00:00.000000Z")
        seed_payment(product["id"], amount=200, created_at="2025-03-10T10:00:00.000000Z")
        data = client.get(
            "/api/v1/analytics/revenue?start_date=2025-03-02T00:00:00Z&end_date=2025-03-15T00:00:00Z&group_by=week",
            headers=full_access_headers,
        ).json()["data"]
        assert [(b["date"], b["revenue"]) for b in data["breakdown"]] == [("2025-03-02", 100), ("2025-03-09", 200)]

    def test_revenue_validation(self, client, full_access_headers):
        url = "/api/v1/analytics/revenue"
        cases = [
            ("?start_date=yesterday", "Invalid start_date format"),
            ("?start_date=2025-03-01T00:00:00Z&end_date=soon", "Invalid end_date format"),
            ("?start_date=2025-03-05T00:00:00Z&end_date=2025-03-01T00:00:00Z", "end_date must be after start_date"),
            ("?group_by=hour", "Invalid group_by. Valid values: day, week, month"),
            ("?period=fortnight", "Invalid period. Valid values: day, week, month, quarter, year, all"),
            (
                "?period=fortnight&start_date=2025-03-01T00:00:00Z",
                "Invalid period. Valid values: day, week, month, quarter, year, all",
            ),
        ]
        for query, message in cases:
            response = client.get(url + query, headers=full_access_headers)
            assert response.status_code == 400, query
            assert response.json()["error"]["message"] == message

    def test_dashboard(
        self, client, full_access_headers, seed_product, seed_user, seed_access, seed_payment, seed_refund_request
    ):
        product = seed_product()
        seed_product(is_active=0)
        user = seed_user()
        seed_user()
        seed_access(user["id"], product["id"])
        recent = seed_payment(product["id"], amount=4900)
        seed_payment(
            product["id"], amount=1000, created_at=format_timestamp(utc_now() - timedelta(days=60))
        )
        seed_refund_request(recent)

        data = client.get("/api/v1/analytics/dashboard", headers=full_access_headers).json()["data"]
        assert data["revenue"]["today"] == 4900
        assert data["revenue"]["total"] == 5900
        assert data["revenue"]["by_currency"] == {"PLN": 5900}
        assert data["transactions"] == {"today": 1, "this_week": 1, "this_month": 1, "total": 2}
        assert data["products"] == {"active": 1, "total": 2}
        assert data["users"] == {"total": 2, "with_access": 1}
        assert data["refunds"]["pending_count"] == 1
        assert len(data["recent_activity"]) == 7
        assert data["recent_activity"][-1]["revenue"] == 4900

    def test_top_products(self, client, full_access_headers, seed_product, seed_payment):
        course = seed_product(name="Course")
        ebook = seed_product(name="Ebook")
        seed_payment(ebook["id"], amount=1000)
        seed_payment(ebook["id"], amount=1000)
        seed_payment(course["id"], amount=5000)

        by_revenue = client.get("/api/v1/analytics/top-products", headers=full_access_headers).json()["data"]
        assert [p["name"] for p in by_revenue["products"]] == ["Course", "Ebook"]
        assert by_revenue["products"][0]["rank"] == 1
        assert by_revenue["products"][0]["revenue_share"] == 71.43
        assert by_revenue["summary"] == {"total_products": 2, "total_revenue": 7000, "total_sales": 3}

        by_sales = client.get(
            "/api/v1/analytics/top-products?sort_by=sales&limit=1", headers=full_access_headers
        ).json()["data"]
        assert [p["name"] for p in by_sales["products"]] == ["Ebook"]
        assert by_sales["products"][0]["sales_share"] == 100

        bad = client.get("/api/v1/analytics/top-products?sort_by=profit", headers=full_access_headers)
        assert bad.json()["error"]["message"] == 'sort_by must be "revenue" or "sales"'
        bad_period = client.get("/api/v1/analytics/top-products?period=decade", headers=full_access_headers)
        assert bad_period.status_code == 400
        assert bad_period.json()["error"]["code"] == "INVALID_INPUT"

    def test_top_products_empty(self, client, full_access_headers):
        data = client.get("/api/v1/analytics/top-products", headers=full_access_headers).json()["data"]
        assert data["products"] == []
        assert data["summary"]["total_revenue"] == 0

    def test_requires_analytics_scope(self, client, api_key_factory):
        headers, _ = api_key_factory([Scopes.PRODUCTS_READ])
        assert client.get("/api/v1/analytics/dashboard", headers=headers).status_code == 403
