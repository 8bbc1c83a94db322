from unittest.mock import patch

from gateflow_api.app.core.api_keys import Scopes
from gateflow_api.app.core.pagination import encode_cursor
from gateflow_api.app.services.product_service import escape_like, sanitize_product_data, validate_product


VALID_PRODUCT = {
    "name": "Python Masterclass",
    "slug": "python-masterclass",
    "description": "Eight hours of video lessons",
    "price": 199,
}


class TestProductValidation:
    def test_sanitize_trims_and_normalises(self):
        data = sanitize_product_data(
            {"name": "  Course ", "slug": " My-Course ", "currency": "pln", "available_from": "", "bogus": 1}
        )
        assert data == {"name": "Course", "slug": "my-course", "currency": "PLN", "available_from": None}

    def test_create_collects_every_error(self):
        errors = validate_product({}, partial=False)
        assert "Name is required" in errors
        assert "Slug is required" in errors
        assert "Description is required" in errors
        assert "Price must be a number" in errors

    def test_slug_rules(self):
        assert validate_product({"slug": "Bad Slug"}, partial=True) == [
            "Slug can only contain lowercase letters, numbers, and hyphens"
        ]
        assert validate_product({"slug": "-edge"}, partial=True) == ["Slug cannot start or end with hyphens"]
        assert validate_product({"slug": "a--b"}, partial=True) == ["Slug cannot contain consecutive hyphens"]

    def test_price_and_dates(self):
        assert validate_product({"price": -1}, partial=True) == ["Price must be non-negative"]
        assert validate_product({"price": 1_000_000}, partial=True) == ["Price cannot exceed 999,999.99"]
        errors = validate_product(
            {"available_from": "2030-01-02T00:00:00Z", "available_until": "2030-01-01T00:00:00Z"},
            partial=True,
        )
        assert errors == ["Available from date must be before available until date"]
        assert validate_product({"available_from": "2019-05-01T00:00:00Z"}, partial=True) == [
            "Date must be between 2020 and 10 years in the future"
        ]

    def test_download_links_must_be_https(self):
        config = {"content_items": [{"type": "download_link", "config": {"download_url": "http://x.test/f.zip"}}]}
        assert validate_product({"content_config": config}, partial=True) == [
            "Content item 1: Download URL must use HTTPS"
        ]

    def test_escape_like(self):
        assert escape_like("50%_off\\") == "50\\%\\_off\\\\"


class TestProductEndpoints:
    def setup_method(self):
        self.trigger = patch("gateflow_api.app.services.webhook_service.WebhookService.trigger")
        self.mock_trigger = self.trigger.start()

    def teardown_method(self):
        self.trigger.stop()

    def test_create_and_get(self, client, full_access_headers):
        response = client.post("/api/v1/products", json=VALID_PRODUCT, headers=full_access_headers)
        assert response.status_code == 201
        product = response.json()["data"]
        assert product["currency"] == "PLN"
        assert product["is_active"] is True
        assert product["content_delivery_type"] == "content"
        self.mock_trigger.assert_called_once()
        assert self.mock_trigger.call_args[0][0] == "product.created"

        fetched = client.get(f"/api/v1/products/{product['id']}", headers=full_access_headers)
        assert fetched.status_code == 200
        assert fetched.json()["data"]["categories"] == []

    def test_create_validation_error_lists_all_problems(self, client, full_access_headers):
        response = client.post("/api/v1/products", json={"price": -5}, headers=full_access_headers)
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert "Price must be non-negative" in error["details"]["_errors"]
        assert "Name is required" in error["details"]["_errors"]

    def test_duplicate_slug(self, client, full_access_headers, seed_product):
        seed_product(slug="python-masterclass")
        response = client.post("/api/v1/products", json=VALID_PRODUCT, headers=full_access_headers)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "ALREADY_EXISTS"

    def test_list_filters_and_paginates(self, client, full_access_headers, seed_product):
        for index in range(3):
            seed_product(name=f"Course {index}", created_at=f"2025-01-0{index + 1}T00:00:00.000000Z")
        seed_product(name="Hidden", is_active=0, created_at="2025-01-05T00:00:00.000000Z")

        first = client.get("/api/v1/products?limit=2&status=active", headers=full_access_headers).json()
        assert [p["name"] for p in first["data"]] == ["Course 2", "Course 1"]
        assert first["pagination"]["has_more"] is True

        cursor = first["pagination"]["next_cursor"]
        second = client.get(
            f"/api/v1/products?limit=2&status=active&cursor={cursor}", headers=full_access_headers
        ).json()
        assert [p["name"] for p in second["data"]] == ["Course 0"]
        assert second["pagination"]["has_more"] is False
        assert second["pagination"]["next_cursor"] is None

        search = client.get("/api/v1/products?search=hid", headers=full_access_headers).json()
        assert [p["name"] for p in search["data"]] == ["Hidden"]

    def test_invalid_cursor(self, client, full_access_headers):
        response = client.get("/api/v1/products?cursor=not-a-cursor", headers=full_access_headers)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_INPUT"

        object_value = encode_cursor({"id": "x", "field": "created_at", "value": {"a": 1}, "direction": "desc"})
        nested = client.get(f"/api/v1/products?cursor={object_value}", headers=full_access_headers)
        assert nested.status_code == 400
        assert nested.json()["error"]["code"] == "INVALID_INPUT"

    def test_update(self, client, full_access_headers, seed_product):
        product = seed_product()
        response = client.patch(
            f"/api/v1/products/{product['id']}",
            json={"price": 10, "is_active": False},
            headers=full_access_headers,
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["price"] == 10
        assert data["is_active"] is False

        empty = client.patch(f"/api/v1/products/{product['id']}", json={}, headers=full_access_headers)
        assert empty.status_code == 400
        assert empty.json()["error"]["message"] == "No valid update fields provided"

    def test_not_found_and_bad_id(self, client, full_access_headers):
        bad = client.get("/api/v1/products/123", headers=full_access_headers)
        assert bad.status_code == 400
        assert bad.json()["error"]["message"] == "Invalid product ID format"
        missing = client.get("/api/v1/products/00000000-0000-4000-8000-000000000000", headers=full_access_headers)
        assert missing.status_code == 404

    def test_delete(self, client, full_access_headers, seed_product):
        product = seed_product()
        response = client.delete(f"/api/v1/products/{product['id']}", headers=full_access_headers)
        assert response.status_code == 204
        assert client.get(f"/api/v1/products/{product['id']}", headers=full_access_headers).status_code == 404

    def test_delete_with_payments_conflicts(self, client, full_access_headers, seed_product, seed_payment):
        product = seed_product()
        seed_payment(product["id"])
        response = client.delete(f"/api/v1/products/{product['id']}", headers=full_access_headers)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    def test_read_scope_cannot_write(self, client, api_key_factory):
        headers, _ = api_key_factory([Scopes.PRODUCTS_READ])
        response = client.post("/api/v1/products", json=VALID_PRODUCT, headers=headers)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"


class TestOtoOffers:
    def test_lifecycle(self, client, full_access_headers, seed_product):
        source = seed_product()
        upsell = seed_product(name="Upsell")
        url = f"/api/v1/products/{source['id']}/oto"

        assert client.get(url, headers=full_access_headers).json()["data"] == {"has_oto": False}

        response = client.put(
            url,
            json={"oto_product_id": upsell["id"], "discount_type": "fixed", "discount_value": 15},
            headers=full_access_headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["has_oto"] is True

        offer = client.get(url, headers=full_access_headers).json()["data"]
        assert offer["oto_product"]["name"] == "Upsell"
        assert offer["duration_minutes"] == 15

        assert client.delete(url, headers=full_access_headers).status_code == 204
        assert client.get(url, headers=full_access_headers).json()["data"] == {"has_oto": False}

    def test_validation(self, client, full_access_headers, seed_product):
        source = seed_product()
        url = f"/api/v1/products/{source['id']}/oto"
        missing = client.put(url, json={}, headers=full_access_headers)
        assert missing.status_code == 400
        assert missing.json()["error"]["message"] == "oto_product_id is required"

        bad_type = client.put(
            url,
            json={"oto_product_id": source["id"], "discount_type": "free"},
            headers=full_access_headers,
        )
        assert bad_type.json()["error"]["details"] == {"discount_type": ['Must be "percentage" or "fixed"']}

        unknown = client.put(
            url,
            json={"oto_product_id": "00000000-0000-4000-8000-000000000000"},
            headers=full_access_headers,
        )
        assert unknown.status_code == 400
        assert unknown.json()["error"]["message"] == "OTO product not found"
