"""
API key lifecycle: creation, listing, update, revocation, rotation and
verification at authentication time.

Keys belong to the administrator who created them; every management
operation is scoped to that administrator.  Rotation issues a new key
and leaves the old one usable until ``rotation_grace_until`` (or
revokes it at once when the grace period is zero).
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import timedelta
from typing import Any, Dict, List, Optional

from gateflow_api.app.core.api_keys import Scopes, generate_api_key, validate_scopes
from gateflow_api.app.core.db import (
    format_timestamp,
    get_connection,
    is_valid_uuid,
    load_json,
    new_id,
    now_iso,
    parse_timestamp,
    utc_now,
)
from gateflow_api.app.core.errors import (
    AuthError,
    ConflictError,
    ErrorCode,
    InvalidInputError,
    NotFoundError,
    ValidationError,
)
from gateflow_api.app.schemas.api_key import (
    ApiKeyCreate,
    ApiKeyCreated,
    ApiKeyRead,
    ApiKeyRotate,
    ApiKeyUpdate,
)
from gateflow_api.app.services.audit_service import AuditService


logger = logging.getLogger(__name__)

KEY_WARNING = "Save this key now - it will not be shown again!"
DEFAULT_RATE_LIMIT = 60
DEFAULT_GRACE_HOURS = 24
MAX_GRACE_HOURS = 168
# Prefix collisions are possible (4 random hex chars in the prefix).
_INSERT_ATTEMPTS = 3


def _row_to_key(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    data["scopes"] = load_json(data.get("scopes"), [])
    data["is_active"] = bool(data.get("is_active"))
    data.pop("key_hash", None)
    data.pop("admin_user_id", None)
    return data


def _validate_name(name: Optional[str], required: bool) -> Optional[str]:
    if name is None:
        if required:
            raise ValidationError("Name is required")
        return None
    if not name.strip():
        raise ValidationError("Name is required" if required else "Name cannot be empty")
    if len(name) > 100:
        raise ValidationError("Name must be less than 100 characters")
    return name.strip()


def _validate_rate_limit(value: int) -> int:
    if value < 1 or value > 1000:
        raise ValidationError("Rate limit must be between 1 and 1000")
    return value


def _validate_scope_list(scopes: List[str]) -> List[str]:
    is_valid, invalid = validate_scopes(scopes)
    if not is_valid:
        raise ValidationError(f"Invalid scopes: {', '.join(invalid)}")
    return scopes


class ApiKeyService:
    """Manage and verify API keys."""

    @staticmethod
    def _check_id(key_id: str) -> None:
        if not is_valid_uuid(key_id):
            raise InvalidInputError("Invalid key ID format")

    @staticmethod
    def _fetch(cursor: sqlite3.Cursor, admin_id: str, key_id: str) -> sqlite3.Row:
        row = cursor.execute(
            "SELECT * FROM api_keys WHERE id = ? AND admin_user_id = ?",
            (key_id, admin_id),
        ).fetchone()
        if not row:
            raise NotFoundError("API key not found")
        return row

    @staticmethod
    def _insert_key(
        cursor: sqlite3.Cursor,
        admin_id: str,
        name: str,
        scopes: List[str],
        rate_limit: int,
        expires_at: Optional[str],
        rotated_from_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Insert a freshly generated key and return its row plus plaintext."""
        for attempt in range(_INSERT_ATTEMPTS):
            generated = generate_api_key(is_test=False)
            key_id = new_id()
            try:
                cursor.execute(
                    """
                    INSERT INTO api_keys (id, name, key_prefix, key_hash, admin_user_id, scopes,
                                          rate_limit_per_minute, expires_at, rotated_from_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        key_id,
                        name,
                        generated.prefix,
                        generated.hash,
                        admin_id,
                        json.dumps(scopes),
                        rate_limit,
                        expires_at,
                        rotated_from_id,
                        now_iso(),
                    ),
                )
            except sqlite3.IntegrityError:
                logger.warning("API key prefix collision, regenerating (attempt %s)", attempt + 1)
                continue
            row = cursor.execute("SELECT * FROM api_keys WHERE id = ?", (key_id,)).fetchone()
            return {"row": row, "plaintext": generated.plaintext}
        raise ConflictError("Failed to generate unique key, please try again")

    @staticmethod
    def _audit_key_event(cursor: sqlite3.Cursor, key_id: str, event_type: str, data: dict, ip: Optional[str] = None) -> None:
        cursor.execute(
            """
            INSERT INTO api_key_audit_log (id, api_key_id, event_type, event_data, ip_address, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (new_id(), key_id, event_type, json.dumps(data), ip, now_iso()),
        )

    @classmethod
    async def list_keys(cls, admin_id: str) -> List[Dict[str, Any]]:
        conn = get_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM api_keys WHERE admin_user_id = ? ORDER BY created_at DESC, id DESC",
                (admin_id,),
            ).fetchall()
        finally:
            conn.close()
        return [ApiKeyRead(**_row_to_key(row)).model_dump() for row in rows]

    @classmethod
    async def create_key(cls, admin_id: str, data: ApiKeyCreate) -> Dict[str, Any]:
        """Create a key and return it, including the plaintext, exactly once."""
        name = _validate_name(data.name, required=True)
        scopes = _validate_scope_list(data.scopes if data.scopes is not None else [Scopes.FULL_ACCESS])
        rate_limit = _validate_rate_limit(
            data.rate_limit_per_minute if data.rate_limit_per_minute is not None else DEFAULT_RATE_LIMIT
        )
        expires_at = None
        if data.expires_at:
            expiry = parse_timestamp(data.expires_at)
            if expiry is None:
                raise ValidationError("Invalid expiration date format")
            if expiry <= utc_now():
                raise ValidationError("Expiration date must be in the future")
            expires_at = format_timestamp(expiry)

        conn = get_connection()
        try:
            cursor = conn.cursor()
            created = cls._insert_key(cursor, admin_id, name, scopes, rate_limit, expires_at)
            cls._audit_key_event(cursor, created["row"]["id"], "created", {"name": name, "scopes": scopes})
            conn.commit()
        finally:
            conn.close()

        key = _row_to_key(created["row"])
        await AuditService.log(admin_id, "api_key_created", "api_key", key["id"], {"name": name, "scopes": scopes})
        return ApiKeyCreated(**key, key=created["plaintext"], warning=KEY_WARNING).model_dump()

    @classmethod
    async def get_key(cls, admin_id: str, key_id: str) -> Dict[str, Any]:
        cls._check_id(key_id)
        conn = get_connection()
        try:
            row = cls._fetch(conn.cursor(), admin_id, key_id)
        finally:
            conn.close()
        return ApiKeyRead(**_row_to_key(row)).model_dump()

    @classmethod
    async def update_key(cls, admin_id: str, key_id: str, data: ApiKeyUpdate) -> Dict[str, Any]:
        cls._check_id(key_id)
        fields = data.model_dump(exclude_unset=True)
        conn = get_connection()
        try:
            cursor = conn.cursor()
            existing = cls._fetch(cursor, admin_id, key_id)
            if existing["revoked_at"]:
                raise ValidationError("Cannot update a revoked key")

            updates: Dict[str, Any] = {}
            if "name" in fields:
                updates["name"] = _validate_name(fields["name"] if fields["name"] is not None else "", required=False)
            if fields.get("scopes") is not None:
                updates["scopes"] = json.dumps(_validate_scope_list(fields["scopes"]))
            if fields.get("rate_limit_per_minute") is not None:
                updates["rate_limit_per_minute"] = _validate_rate_limit(fields["rate_limit_per_minute"])
            if fields.get("is_active") is not None:
                updates["is_active"] = 1 if fields["is_active"] else 0
            if not updates:
                raise ValidationError("No valid update fields provided")

            assignments = ", ".join(f"{column} = ?" for column in updates)
            cursor.execute(
                f"UPDATE api_keys SET {assignments} WHERE id = ?",
                (*updates.values(), key_id),
            )
            conn.commit()
            row = cursor.execute("SELECT * FROM api_keys WHERE id = ?", (key_id,)).fetchone()
        finally:
            conn.close()
        return ApiKeyRead(**_row_to_key(row)).model_dump()

    @classmethod
    async def revoke_key(cls, admin_id: str, key_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        cls._check_id(key_id)
        if reason is not None and len(reason) > 500:
            raise ValidationError("Revocation reason must be at most 500 characters")
        revoked_at = now_iso()
        conn = get_connection()
        try:
            cursor = conn.cursor()
            existing = cls._fetch(cursor, admin_id, key_id)
            if existing["revoked_at"]:
                raise ValidationError("Key is already revoked")
            cursor.execute(
                "UPDATE api_keys SET is_active = 0, revoked_at = ?, revoked_reason = ? WHERE id = ?",
                (revoked_at, reason or None, key_id),
            )
            cls._audit_key_event(cursor, key_id, "revoked", {"reason": reason})
            conn.commit()
        finally:
            conn.close()
        await AuditService.log(admin_id, "api_key_revoked", "api_key", key_id, {"reason": reason})
        return {"id": key_id, "name": existing["name"], "revoked": True, "revoked_at": revoked_at}

    @classmethod
    async def rotate_key(cls, admin_id: str, key_id: str, data: ApiKeyRotate) -> Dict[str, Any]:
        """Issue a replacement key.

        With a positive grace period the old key keeps working until
        ``rotation_grace_until``; with zero it is revoked immediately.
        """
        cls._check_id(key_id)
        grace_hours = data.grace_period_hours if data.grace_period_hours is not None else DEFAULT_GRACE_HOURS
        if grace_hours < 0 or grace_hours > MAX_GRACE_HOURS:
            raise ValidationError("Grace period must be between 0 and 168 hours")

        conn = get_connection()
        try:
            cursor = conn.cursor()
            old = cls._fetch(cursor, admin_id, key_id)
            if old["revoked_at"]:
                raise ValidationError("Cannot rotate a revoked key")
            if not old["is_active"]:
                raise ValidationError("Cannot rotate an inactive key")

            created = cls._insert_key(
                cursor,
                admin_id,
                f"{old['name']} (rotated)"[:100],
                load_json(old["scopes"], []),
                old["rate_limit_per_minute"],
                old["expires_at"],
                rotated_from_id=old["id"],
            )
            grace_until = None
            if grace_hours > 0:
                grace_until = format_timestamp(utc_now() + timedelta(hours=grace_hours))
                cursor.execute(
                    "UPDATE api_keys SET rotation_grace_until = ? WHERE id = ?",
                    (grace_until, key_id),
                )
            else:
                cursor.execute(
                    "UPDATE api_keys SET is_active = 0, revoked_at = ?, revoked_reason = 'Rotated' WHERE id = ?",
                    (now_iso(), key_id),
                )
            event = {
                "new_key_id": created["row"]["id"],
                "grace_period_hours": grace_hours,
                "grace_until": grace_until,
            }
            cls._audit_key_event(cursor, key_id, "rotated", event)
            conn.commit()
        finally:
            conn.close()

        await AuditService.log(admin_id, "api_key_rotated", "api_key", key_id, event)
        new_key = ApiKeyCreated(
            **_row_to_key(created["row"]), key=created["plaintext"], warning=KEY_WARNING
        ).model_dump()
        return {
            "new_key": new_key,
            "old_key": {
                "id": key_id,
                "grace_until": grace_until,
                "message": (
                    f"Old key will remain valid until {grace_until}"
                    if grace_until
                    else "Old key has been immediately deactivated"
                ),
            },
        }

    @classmethod
    async def verify(cls, key_hash: str, client_ip: Optional[str] = None) -> Dict[str, Any]:
        """Check a presented key and record its use.

        Raises ``AuthError`` (``INVALID_TOKEN``) when the key is unknown,
        revoked, past its rotation grace window or expired.  Returns the
        key row with decoded scopes on success.
        """
        conn = get_connection()
        try:
            cursor = conn.cursor()
            row = cursor.execute("SELECT * FROM api_keys WHERE key_hash = ?", (key_hash,)).fetchone()
            if not row:
                raise AuthError("Invalid API key", code=ErrorCode.INVALID_TOKEN)

            now = utc_now()
            grace_until = parse_timestamp(row["rotation_grace_until"])
            in_grace = grace_until is not None and grace_until > now
            if not row["is_active"] and not in_grace:
                cls._audit_key_event(cursor, row["id"], "used_after_revoke", {}, client_ip)
                conn.commit()
                raise AuthError("API key has been revoked", code=ErrorCode.INVALID_TOKEN)
            if row["is_active"] and grace_until is not None and not in_grace:
                # Rotated key whose grace window has closed.
                raise AuthError("API key has been revoked", code=ErrorCode.INVALID_TOKEN)

            expires_at = parse_timestamp(row["expires_at"])
            if expires_at is not None and expires_at < now:
                raise AuthError("API key has expired", code=ErrorCode.INVALID_TOKEN)

            cursor.execute(
                """
                UPDATE api_keys
                SET last_used_at = ?, usage_count = usage_count + 1, last_used_ip = ?
                WHERE id = ?
                """,
                (format_timestamp(now), client_ip, row["id"]),
            )
            conn.commit()
        finally:
            conn.close()

        data = dict(row)
        data["scopes"] = load_json(row["scopes"], [])
        return data

    @classmethod
    async def count_active(cls) -> int:
        conn = get_connection()
        try:
            row = conn.execute("SELECT COUNT(*) AS n FROM api_keys WHERE is_active = 1").fetchone()
        finally:
            conn.close()
        return row["n"]
