from gateflow_api.app.core.api_keys import (
    KEY_LENGTH,
    SCOPE_PRESETS,
    Scopes,
    generate_api_key,
    has_scope,
    hash_api_key,
    mask_api_key,
    parse_api_key_from_header,
    validate_scopes,
)
from gateflow_api.app.core.db import get_connection


class TestKeyPrimitives:
    def test_generated_key_format(self):
        generated = generate_api_key()
        assert generated.plaintext.startswith("gf_live_")
        assert len(generated.plaintext) == KEY_LENGTH == 72
        assert generated.prefix == generated.plaintext[:12]
        assert generated.hash == hash_api_key(generated.plaintext)
        assert generate_api_key(is_test=True).plaintext.startswith("gf_test_")

    def test_parse_header_accepts_bearer_and_raw(self):
        key = generate_api_key().plaintext
        assert parse_api_key_from_header(f"Bearer {key}") == key
        assert parse_api_key_from_header(key) == key
        assert parse_api_key_from_header("Bearer eyJhbGciOi.payload.sig") is None
        assert parse_api_key_from_header("gf_live_short") is None
        assert parse_api_key_from_header(None) is None

    def test_mask(self):
        key = generate_api_key().plaintext
        assert mask_api_key(key) == f"{key[:12]}...{key[-4:]}"

    def test_scope_rules(self):
        assert has_scope(["*"], Scopes.PRODUCTS_WRITE)
        assert has_scope([Scopes.PRODUCTS_WRITE], Scopes.PRODUCTS_READ)
        assert not has_scope([Scopes.PRODUCTS_READ], Scopes.PRODUCTS_WRITE)
        assert not has_scope([Scopes.PRODUCTS_READ], Scopes.FULL_ACCESS)

    def test_validate_scopes_reports_invalid_entries(self):
        assert validate_scopes(["products:read"]) == (True, [])
        assert validate_scopes(["products:read", "bogus"]) == (False, ["bogus"])
        assert validate_scopes("products:read") == (False, [])

    def test_read_only_preset(self):
        assert Scopes.SYSTEM_READ in SCOPE_PRESETS["readOnly"]
        assert all(scope.endswith(":read") for scope in SCOPE_PRESETS["readOnly"])


class TestApiKeyEndpoints:
    def test_create_returns_plaintext_once(self, client, admin_headers, database):
        response = client.post(
            "/api/v1/api-keys",
            json={"name": "  MCP  ", "scopes": ["products:read"]},
            headers=admin_headers,
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["name"] == "MCP"
        assert data["key"].startswith("gf_live_")
        assert data["warning"] == "Save this key now - it will not be shown again!"
        assert data["rate_limit_per_minute"] == 60

        listed = client.get("/api/v1/api-keys", headers=admin_headers).json()["data"]
        assert len(listed) == 1
        assert "key" not in listed[0]

        conn = get_connection()
        try:
            stored = conn.execute("SELECT key_hash FROM api_keys").fetchone()["key_hash"]
        finally:
            conn.close()
        assert stored == hash_api_key(data["key"])
        assert data["key"] not in stored

    def test_create_defaults_to_full_access(self, api_key_factory):
        _, data = api_key_factory()
        assert data["scopes"] == ["*"]

    def test_create_validation(self, client, admin_headers):
        missing = client.post("/api/v1/api-keys", json={}, headers=admin_headers)
        assert missing.status_code == 400
        bad_scope = client.post("/api/v1/api-keys", json={"name": "x", "scopes": ["nope"]}, headers=admin_headers)
        assert bad_scope.status_code == 400
        past = client.post(
            "/api/v1/api-keys",
            json={"name": "x", "expires_at": "2020-01-01T00:00:00Z"},
            headers=admin_headers,
        )
        assert past.status_code == 400
        assert past.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_api_key_cannot_manage_keys(self, client, full_access_headers):
        response = client.get("/api/v1/api-keys", headers=full_access_headers)
        assert response.status_code == 401

    def test_missing_credentials(self, client):
        response = client.get("/api/v1/products")
        assert response.status_code == 401
        assert response.json()["error"] == {"code": "UNAUTHORIZED", "message": "Authentication required"}

    def test_unknown_key_is_invalid_token(self, client):
        headers = {"X-API-Key": generate_api_key().plaintext}
        response = client.get("/api/v1/products", headers=headers)
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_TOKEN"

    def test_bearer_key_is_accepted(self, client, api_key_factory):
        headers, _ = api_key_factory([Scopes.PRODUCTS_READ])
        response = client.get("/api/v1/products", headers={"Authorization": f"Bearer {headers['X-API-Key']}"})
        assert response.status_code == 200

    def test_missing_scope_is_forbidden(self, client, api_key_factory):
        headers, _ = api_key_factory([Scopes.PRODUCTS_READ])
        response = client.get("/api/v1/coupons", headers=headers)
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Missing required permission: coupons:read"

    def test_usage_is_recorded(self, client, api_key_factory, admin_headers):
        headers, data = api_key_factory([Scopes.PRODUCTS_READ])
        client.get("/api/v1/products", headers={**headers, "X-Forwarded-For": "203.0.113.9, 10.0.0.1"})
        key = client.get(f"/api/v1/api-keys/{data['id']}", headers=admin_headers).json()["data"]
        assert key["usage_count"] == 1
        assert key["last_used_ip"] == "203.0.113.9"
        assert key["last_used_at"] is not None

    def test_rate_limit(self, client, api_key_factory):
        headers, _ = api_key_factory([Scopes.PRODUCTS_READ], rate_limit_per_minute=2)
        assert client.get("/api/v1/products", headers=headers).status_code == 200
        assert client.get("/api/v1/products", headers=headers).status_code == 200
        response = client.get("/api/v1/products", headers=headers)
        assert response.status_code == 429
        assert response.json()["error"]["message"] == "Rate limit exceeded. Maximum 2 requests per minute."

    def test_update(self, client, api_key_factory, admin_headers):
        _, data = api_key_factory()
        response = client.patch(
            f"/api/v1/api-keys/{data['id']}",
            json={"name": "Renamed", "rate_limit_per_minute": 100},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["name"] == "Renamed"
        assert response.json()["data"]["rate_limit_per_minute"] == 100

        empty = client.patch(f"/api/v1/api-keys/{data['id']}", json={}, headers=admin_headers)
        assert empty.status_code == 400
        assert empty.json()["error"]["message"] == "No valid update fields provided"

    def test_revoke(self, client, api_key_factory, admin_headers):
        headers, data = api_key_factory()
        response = client.delete(f"/api/v1/api-keys/{data['id']}?reason=leaked", headers=admin_headers)
        assert response.status_code == 200
        body = response.json()["data"]
        assert body["revoked"] is True
        assert body["id"] == data["id"]

        denied = client.get("/api/v1/products", headers=headers)
        assert denied.status_code == 401
        assert denied.json()["error"]["message"] == "API key has been revoked"

        again = client.delete(f"/api/v1/api-keys/{data['id']}", headers=admin_headers)
        assert again.status_code == 400
        update = client.patch(f"/api/v1/api-keys/{data['id']}", json={"name": "x"}, headers=admin_headers)
        assert update.json()["error"]["message"] == "Cannot update a revoked key"

    def test_expired_key(self, client, api_key_factory):
        headers, data = api_key_factory()
        conn = get_connection()
        try:
            conn.execute("UPDATE api_keys SET expires_at = ? WHERE id = ?", ("2021-01-01T00:00:00.000000Z", data["id"]))
            conn.commit()
        finally:
            conn.close()
        response = client.get("/api/v1/products", headers=headers)
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "API key has expired"

    def test_invalid_key_id(self, client, admin_headers):
        response = client.get("/api/v1/api-keys/not-a-uuid", headers=admin_headers)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid key ID format"


class TestApiKeyRotation:
    def test_rotation_with_grace_keeps_old_key_working(self, client, api_key_factory, admin_headers):
        old_headers, old = api_key_factory([Scopes.PRODUCTS_READ], name="Integration")
        response = client.post(
            f"/api/v1/api-keys/{old['id']}/rotate",
            json={"grace_period_hours": 2},
            headers=admin_headers,
        )
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["new_key"]["name"] == "Integration (rotated)"
        assert data["new_key"]["scopes"] == [Scopes.PRODUCTS_READ]
        assert data["new_key"]["rotated_from_id"] == old["id"]
        assert data["old_key"]["grace_until"] is not None

        assert client.get("/api/v1/products", headers=old_headers).status_code == 200
        new_headers = {"X-API-Key": data["new_key"]["key"]}
        assert client.get("/api/v1/products", headers=new_headers).status_code == 200

        conn = get_connection()
        try:
            conn.execute(
                "UPDATE api_keys SET rotation_grace_until = ? WHERE id = ?",
                ("2021-01-01T00:00:00.000000Z", old["id"]),
            )
            events = conn.execute(
                "SELECT event_type FROM api_key_audit_log WHERE api_key_id = ?", (old["id"],)
            ).fetchall()
            conn.commit()
        finally:
            conn.close()
        assert "rotated" in [row["event_type"] for row in events]

        expired = client.get("/api/v1/products", headers=old_headers)
        assert expired.status_code == 401
        assert expired.json()["error"]["code"] == "INVALID_TOKEN"

    def test_rotation_without_grace_revokes_immediately(self, client, api_key_factory, admin_headers):
        old_headers, old = api_key_factory()
        response = client.post(
            f"/api/v1/api-keys/{old['id']}/rotate",
            json={"grace_period_hours": 0},
            headers=admin_headers,
        )
        assert response.status_code == 201
        assert response.json()["data"]["old_key"]["grace_until"] is None
        assert client.get("/api/v1/products", headers=old_headers).status_code == 401

        key = client.get(f"/api/v1/api-keys/{old['id']}", headers=admin_headers).json()["data"]
        assert key["revoked_reason"] == "Rotated"

    def test_rotation_validates_grace_period(self, client, api_key_factory, admin_headers):
        _, old = api_key_factory()
        response = client.post(
            f"/api/v1/api-keys/{old['id']}/rotate",
            json={"grace_period_hours": 500},
            headers=admin_headers,
        )
        assert response.status_code == 400

    def test_rotation_default_grace_is_24_hours(self, client, api_key_factory, admin_headers):
        _, old = api_key_factory()
        response = client.post(f"/api/v1/api-keys/{old['id']}/rotate", headers=admin_headers)
        assert response.status_code == 201
        assert response.json()["data"]["old_key"]["grace_until"] is not None
