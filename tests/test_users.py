from datetime import timedelta
from unittest.mock import patch

from gateflow_api.app.core.db import format_timestamp, parse_timestamp, utc_now


MISSING_ID = "00000000-0000-4000-8000-000000000000"


class TestUserListing:
    def test_list_with_stats_and_sorting(self, client, full_access_headers, seed_user, seed_product, seed_access):
        cheap = seed_product(price=10)
        pricey = seed_product(price=90)
        ann = seed_user("ann@example.com", created_at="2025-01-01T00:00:00.000000Z")
        bob = seed_user("bob@example.com", created_at="2025-01-02T00:00:00.000000Z")
        seed_user("cid@example.com", created_at="2025-01-03T00:00:00.000000Z")
        seed_access(ann["id"], cheap["id"])
        seed_access(ann["id"], pricey["id"])
        seed_access(bob["id"], cheap["id"])

        newest = client.get("/api/v1/users", headers=full_access_headers).json()
        assert [u["email"] for u in newest["data"]] == ["cid@example.com", "bob@example.com", "ann@example.com"]

        by_value = client.get(
            "/api/v1/users?sort_by=total_value&sort_order=desc&limit=2", headers=full_access_headers
        ).json()
        assert [u["email"] for u in by_value["data"]] == ["ann@example.com", "bob@example.com"]
        assert by_value["data"][0]["stats"]["total_products"] == 2
        assert by_value["data"][0]["stats"]["total_value"] == 100
        assert "duration_days" not in by_value["data"][0]["product_access"][0]

        cursor = by_value["pagination"]["next_cursor"]
        rest = client.get(
            f"/api/v1/users?sort_by=total_value&sort_order=desc&limit=2&cursor={cursor}",
            headers=full_access_headers,
        ).json()
        assert [u["email"] for u in rest["data"]] == ["cid@example.com"]

        search = client.get("/api/v1/users?search=BOB", headers=full_access_headers).json()
        assert [u["email"] for u in search["data"]] == ["bob@example.com"]

    def test_nullable_sort_column_paginates(self, client, full_access_headers, seed_user):
        seed_user("a@example.com", last_sign_in_at="2025-05-01T00:00:00.000000Z")
        seed_user("b@example.com")
        seed_user("c@example.com")
        seen = []
        url = "/api/v1/users?sort_by=last_sign_in_at&sort_order=desc&limit=1"
        cursor = None
        while True:
            body = client.get(url + (f"&cursor={cursor}" if cursor else ""), headers=full_access_headers).json()
            seen += [u["email"] for u in body["data"]]
            cursor = body["pagination"]["next_cursor"]
            if not cursor:
                break
        assert seen[0] == "a@example.com"
        assert sorted(seen) == ["a@example.com", "b@example.com", "c@example.com"]

    def test_get_user(self, client, full_access_headers, seed_user):
        user = seed_user("ann@example.com")
        data = client.get(f"/api/v1/users/{user['id']}", headers=full_access_headers).json()["data"]
        assert data["email"] == "ann@example.com"
        assert data["raw_user_meta_data"] == {"full_name": "Test User"}
        assert data["stats"]["total_products"] == 0

        assert client.get(f"/api/v1/users/{MISSING_ID}", headers=full_access_headers).status_code == 404
        bad = client.get("/api/v1/users/abc", headers=full_access_headers)
        assert bad.json()["error"]["message"] == "Invalid user ID format"


class TestUserAccess:
    def setup_method(self):
        self.trigger = patch("gateflow_api.app.services.webhook_service.WebhookService.trigger")
        self.mock_trigger = self.trigger.start()

    def teardown_method(self):
        self.trigger.stop()

    def test_grant_with_duration(self, client, full_access_headers, seed_user, seed_product):
        user = seed_user()
        product = seed_product()
        response = client.post(
            f"/api/v1/users/{user['id']}/access",
            json={"product_id": product["id"], "access_duration_days": 30},
            headers=full_access_headers,
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["duration_days"] == 30
        expires = parse_timestamp(data["expires_at"])
        assert timedelta(days=29) < expires - utc_now() <= timedelta(days=30)
        assert self.mock_trigger.call_args[0][0] == "user.access_granted"

        listed = client.get(f"/api/v1/users/{user['id']}/access", headers=full_access_headers).json()["data"]
        assert [a["id"] for a in listed] == [data["id"]]

        duplicate = client.post(
            f"/api/v1/users/{user['id']}/access", json={"product_id": product["id"]}, headers=full_access_headers
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["error"]["message"] == "User already has access to this product"

    def test_grant_validation(self, client, full_access_headers, seed_user, seed_product):
        user = seed_user()
        url = f"/api/v1/users/{user['id']}/access"

        missing = client.post(url, json={}, headers=full_access_headers)
        assert missing.status_code == 400
        assert missing.json()["error"]["details"] == {"_errors": ["UUID is required"]}

        bad = client.post(
            url,
            json={"product_id": "x", "access_duration_days": 0, "access_expires_at": "2020-01-01T00:00:00Z"},
            headers=full_access_headers,
        )
        assert bad.json()["error"]["details"]["_errors"] == [
            "Invalid UUID format",
            "Duration must be at least 1 day",
            "Date must be in the future",
        ]

        unknown = client.post(url, json={"product_id": MISSING_ID}, headers=full_access_headers)
        assert unknown.status_code == 404
        assert unknown.json()["error"]["message"] == "Product not found"

        inactive = seed_product(is_active=0)
        response = client.post(url, json={"product_id": inactive["id"]}, headers=full_access_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Cannot grant access to inactive product"

        no_user = client.post(
            f"/api/v1/users/{MISSING_ID}/access", json={"product_id": inactive["id"]}, headers=full_access_headers
        )
        assert no_user.json()["error"]["message"] == "User not found"

    def test_extend_from_current_expiry(self, client, full_access_headers, seed_user, seed_product, seed_access):
        user = seed_user()
        access = seed_access(user["id"], seed_product()["id"], expires_in_days=10)
        response = client.patch(
            f"/api/v1/users/{user['id']}/access/{access['id']}",
            json={"extend_days": 5},
            headers=full_access_headers,
        )
        assert response.status_code == 200
        new_expiry = parse_timestamp(response.json()["data"]["expires_at"])
        assert new_expiry - parse_timestamp(access["access_expires_at"]) == timedelta(days=5)

    def test_extend_expired_access_starts_from_now(
        self, client, full_access_headers, seed_user, seed_product, seed_access
    ):
        user = seed_user()
        expired = format_timestamp(utc_now() - timedelta(days=3))
        access = seed_access(user["id"], seed_product()["id"], access_expires_at=expired)
        response = client.patch(
            f"/api/v1/users/{user['id']}/access/{access['id']}",
            json={"extend_days": 7},
            headers=full_access_headers,
        )
        new_expiry = parse_timestamp(response.json()["data"]["expires_at"])
        assert timedelta(days=6) < new_expiry - utc_now() <= timedelta(days=7)

    def test_update_precedence_and_errors(self, client, full_access_headers, seed_user, seed_product, seed_access):
        user = seed_user()
        access = seed_access(user["id"], seed_product()["id"])
        url = f"/api/v1/users/{user['id']}/access/{access['id']}"

        response = client.patch(url, json={"access_duration_days": 14}, headers=full_access_headers)
        assert response.json()["data"]["duration_days"] == 14

        past = client.patch(url, json={"access_expires_at": "2021-01-01T00:00:00Z"}, headers=full_access_headers)
        assert past.json()["error"]["message"] == "access_expires_at must be in the future"

        empty = client.patch(url, json={}, headers=full_access_headers)
        assert empty.json()["error"]["message"] == "No valid update fields provided"

        missing = client.patch(
            f"/api/v1/users/{user['id']}/access/{MISSING_ID}", json={"extend_days": 1}, headers=full_access_headers
        )
        assert missing.status_code == 404

    def test_get_and_revoke(self, client, full_access_headers, seed_user, seed_product, seed_access):
        user = seed_user()
        access = seed_access(user["id"], seed_product()["id"])
        url = f"/api/v1/users/{user['id']}/access/{access['id']}"

        fetched = client.get(url, headers=full_access_headers).json()["data"]
        assert fetched["user_id"] == user["id"]

        assert client.delete(url, headers=full_access_headers).status_code == 204
        assert self.mock_trigger.call_args[0][0] == "user.access_revoked"
        assert client.get(url, headers=full_access_headers).status_code == 404

        bad = client.get(f"/api/v1/users/{user['id']}/access/nope", headers=full_access_headers)
        assert bad.json()["error"]["message"] == "Invalid access ID format"
