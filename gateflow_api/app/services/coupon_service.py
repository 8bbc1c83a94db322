"""
Service layer for discount coupons and their redemption statistics.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from collections import OrderedDict
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

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
from gateflow_api.app.core.errors import ConflictError, InvalidInputError, NotFoundError, ValidationError
from gateflow_api.app.core.pagination import apply_cursor, create_pagination_response, order_clause
from gateflow_api.app.schemas.coupon import CouponCreate, CouponRead, CouponUpdate
from gateflow_api.app.services.product_service import escape_like


logger = logging.getLogger(__name__)

COUPON_SORT_FIELDS = ("created_at", "updated_at", "code", "name", "current_usage_count")
MAX_FIXED_DISCOUNT = 99999999
_CODE_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def _row_to_coupon(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    for flag in ("is_active", "is_public", "exclude_order_bumps", "is_oto_coupon"):
        data[flag] = bool(data[flag])
    data["allowed_emails"] = load_json(data.get("allowed_emails"), [])
    data["allowed_product_ids"] = load_json(data.get("allowed_product_ids"), [])
    return CouponRead(**data).model_dump()


def _check_code(code: str) -> str:
    code = code.strip()
    if not _CODE_RE.match(code):
        raise ValidationError("Coupon code can only contain letters, numbers, hyphens, and underscores")
    if len(code) > 50:
        raise ValidationError("Coupon code must be 50 characters or less")
    return code.strip().upper()


def _check_discount_value(discount_type: str, value: float) -> float:
    if value != value or value <= 0 or value == float("inf"):
        raise ValidationError("Discount value must be a positive number")
    if discount_type == "percentage" and value > 100:
        raise ValidationError("Percentage discount cannot exceed 100%")
    if discount_type == "fixed" and value > MAX_FIXED_DISCOUNT:
        raise ValidationError(f"Fixed discount cannot exceed {MAX_FIXED_DISCOUNT} cents")
    return value


def _normalize_date(value: str, field: str) -> str:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValidationError(f"Invalid {field} date format")
    return format_timestamp(parsed)


class CouponService:
    """Service class for coupon CRUD and statistics."""

    @staticmethod
    def _check_id(coupon_id: str) -> None:
        if not is_valid_uuid(coupon_id):
            raise InvalidInputError("Invalid coupon ID format")

    @staticmethod
    def _fetch(conn: sqlite3.Connection, coupon_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM coupons WHERE id = ?", (coupon_id,)).fetchone()
        if not row:
            raise NotFoundError("Coupon not found")
        return row

    @classmethod
    async def list_coupons(
        cls,
        limit: int,
        cursor: Optional[str] = None,
        status: str = "all",
        search: Optional[str] = None,
        sort: str = "-created_at",
    ) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        direction = "desc" if sort.startswith("-") else "asc"
        field = sort.lstrip("-")
        if field not in COUPON_SORT_FIELDS:
            raise InvalidInputError(f"Invalid sort field. Allowed: {', '.join(COUPON_SORT_FIELDS)}")

        now = now_iso()
        where: List[str] = []
        params: List[Any] = []
        if status == "active":
            where.append("is_active = 1 AND (expires_at IS NULL OR expires_at > ?)")
            params.append(now)
        elif status == "inactive":
            where.append("is_active = 0")
        elif status == "expired":
            where.append("expires_at IS NOT NULL AND expires_at < ?")
            params.append(now)
        if search:
            pattern = f"%{escape_like(search)}%"
            where.append("(code LIKE ? ESCAPE '\\' OR name LIKE ? ESCAPE '\\')")
            params.extend([pattern, pattern])
        # name is nullable; keyset comparisons need a non-null sort key.
        expr = "COALESCE(name, '')" if field == "name" else field
        apply_cursor(where, params, cursor, field, direction, column=expr)

        query = f"SELECT *, {expr} AS sort_value FROM coupons"
        if where:
            query += " WHERE " + " AND ".join(where)
        query += f" {order_clause(expr, direction)} LIMIT ?"
        params.append(limit + 1)
        conn = get_connection()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        items = [{**_row_to_coupon(row), "sort_value": row["sort_value"]} for row in rows]
        page, pagination = create_pagination_response(
            items, limit, field, direction, cursor, value_key="sort_value"
        )
        for item in page:
            item.pop("sort_value")
        return page, pagination

    @classmethod
    async def get_coupon(cls, coupon_id: str) -> Dict[str, Any]:
        cls._check_id(coupon_id)
        conn = get_connection()
        try:
            row = cls._fetch(conn, coupon_id)
        finally:
            conn.close()
        return _row_to_coupon(row)

    @classmethod
    async def create_coupon(cls, data: CouponCreate) -> Dict[str, Any]:
        if not data.code or not data.code.strip():
            raise ValidationError("Coupon code is required")
        if data.discount_type not in ("percentage", "fixed"):
            raise ValidationError('discount_type must be "percentage" or "fixed"')
        if data.discount_value is None:
            raise ValidationError("discount_value is required and must be a number")
        discount_value = _check_discount_value(data.discount_type, data.discount_value)
        if data.discount_type == "fixed" and not data.currency:
            raise ValidationError("Currency is required for fixed discount coupons")
        code = _check_code(data.code)

        starts_at = _normalize_date(data.starts_at, "starts_at") if data.starts_at else now_iso()
        expires_at = None
        if data.expires_at:
            expires_at = _normalize_date(data.expires_at, "expires_at")
            if parse_timestamp(expires_at) <= parse_timestamp(starts_at):
                raise ValidationError("expires_at must be after starts_at")

        if data.usage_limit_global is not None and data.usage_limit_global < 1:
            raise ValidationError("usage_limit_global must be a positive integer")
        if data.usage_limit_per_user is not None and data.usage_limit_per_user < 1:
            raise ValidationError("usage_limit_per_user must be a positive integer")
        for field in ("allowed_emails", "allowed_product_ids"):
            if getattr(data, field) is not None and not isinstance(getattr(data, field), list):
                raise ValidationError(f"{field} must be an array")

        coupon_id = new_id()
        timestamp = now_iso()
        conn = get_connection()
        try:
            try:
                conn.execute(
                    """
                    INSERT INTO coupons (id, code, name, discount_type, discount_value, currency,
                                         allowed_emails, allowed_product_ids, usage_limit_global,
                                         usage_limit_per_user, starts_at, expires_at, is_active, is_public,
                                         exclude_order_bumps, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        coupon_id,
                        code,
                        (data.name or "").strip() or None,
                        data.discount_type,
                        discount_value,
                        data.currency or None,
                        json.dumps(data.allowed_emails or []),
                        json.dumps(data.allowed_product_ids or []),
                        data.usage_limit_global or None,
                        data.usage_limit_per_user if data.usage_limit_per_user is not None else 1,
                        starts_at,
                        expires_at,
                        0 if data.is_active is False else 1,
                        1 if data.is_public else 0,
                        1 if data.exclude_order_bumps else 0,
                        timestamp,
                        timestamp,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError("Coupon code already exists") from exc
            conn.commit()
            row = cls._fetch(conn, coupon_id)
        finally:
            conn.close()
        logger.info("Coupon created: %s", code)
        return _row_to_coupon(row)

    @classmethod
    async def update_coupon(cls, coupon_id: str, data: CouponUpdate) -> Dict[str, Any]:
        cls._check_id(coupon_id)
        body = data.model_dump(exclude_unset=True)
        conn = get_connection()
        try:
            existing = cls._fetch(conn, coupon_id)
            if existing["is_oto_coupon"]:
                invalid = [field for field in body if field != "is_active"]
                if invalid:
                    raise ValidationError(
                        f"OTO coupons can only update: is_active. Invalid fields: {', '.join(invalid)}"
                    )

            updates: Dict[str, Any] = {}
            if "code" in body:
                if not body["code"] or not body["code"].strip():
                    raise ValidationError("Coupon code cannot be empty")
                updates["code"] = _check_code(body["code"])
            if "name" in body:
                updates["name"] = (body["name"] or "").strip() or None
            if "discount_type" in body:
                if body["discount_type"] not in ("percentage", "fixed"):
                    raise ValidationError('discount_type must be "percentage" or "fixed"')
                updates["discount_type"] = body["discount_type"]
            if "discount_value" in body:
                if body["discount_value"] is None:
                    raise ValidationError("Discount value must be a positive number")
                final_type = body.get("discount_type") or existing["discount_type"]
                updates["discount_value"] = _check_discount_value(final_type, body["discount_value"])
            if "currency" in body:
                updates["currency"] = body["currency"] or None
            for flag in ("is_active", "is_public", "exclude_order_bumps"):
                if flag in body:
                    if body[flag] is None:
                        raise ValidationError(f"{flag} must be a boolean")
                    updates[flag] = 1 if body[flag] else 0
            if "starts_at" in body:
                updates["starts_at"] = _normalize_date(body["starts_at"] or "", "starts_at")
            if "expires_at" in body:
                updates["expires_at"] = (
                    None if body["expires_at"] is None else _normalize_date(body["expires_at"], "expires_at")
                )
            if "usage_limit_global" in body:
                value = body["usage_limit_global"]
                if value is not None and value < 1:
                    raise ValidationError("usage_limit_global must be a positive integer or null")
                updates["usage_limit_global"] = value
            if "usage_limit_per_user" in body:
                value = body["usage_limit_per_user"]
                if value is None or value < 1:
                    raise ValidationError("usage_limit_per_user must be a positive integer")
                updates["usage_limit_per_user"] = value
            for field in ("allowed_emails", "allowed_product_ids"):
                if field in body:
                    if not isinstance(body[field], list):
                        raise ValidationError(f"{field} must be an array")
                    updates[field] = json.dumps(body[field])

            if not updates:
                raise ValidationError("No valid update fields provided")

            # Recheck the merged row so a type-only or date-only change cannot break the rules.
            if "discount_type" in updates or "discount_value" in updates:
                final_type = updates.get("discount_type", existing["discount_type"])
                _check_discount_value(final_type, updates.get("discount_value", existing["discount_value"]))
                final_currency = updates.get("currency", existing["currency"])
                if final_type == "fixed" and not final_currency:
                    raise ValidationError("Currency is required for fixed discount coupons")
            if "starts_at" in updates or "expires_at" in updates:
                final_starts = updates.get("starts_at", existing["starts_at"])
                final_expires = updates.get("expires_at", existing["expires_at"])
                if final_starts and final_expires and parse_timestamp(final_expires) <= parse_timestamp(final_starts):
                    raise ValidationError("expires_at must be after starts_at")

            updates["updated_at"] = now_iso()
            assignments = ", ".join(f"{column} = ?" for column in updates)
            try:
                conn.execute(f"UPDATE coupons SET {assignments} WHERE id = ?", (*updates.values(), coupon_id))
            except sqlite3.IntegrityError as exc:
                raise ConflictError("Coupon code already exists") from exc
            conn.commit()
            row = cls._fetch(conn, coupon_id)
        finally:
            conn.close()
        return _row_to_coupon(row)

    @classmethod
    async def delete_coupon(cls, coupon_id: str) -> None:
        cls._check_id(coupon_id)
        conn = get_connection()
        try:
            cls._fetch(conn, coupon_id)
            conn.execute("DELETE FROM coupons WHERE id = ?", (coupon_id,))
            conn.commit()
        finally:
            conn.close()

    @classmethod
    async def get_stats(cls, coupon_id: str) -> Dict[str, Any]:
        """Redemption summary, the ten latest redemptions, 30 days of usage and usage per product."""
        cls._check_id(coupon_id)
        conn = get_connection()
        try:
            coupon = cls._fetch(conn, coupon_id)
            redemptions = conn.execute(
                """
                SELECT r.id, r.customer_email, r.discount_amount, r.redeemed_at, r.transaction_id,
                       t.product_id, p.name AS product_name
                FROM coupon_redemptions r
                LEFT JOIN payment_transactions t ON t.id = r.transaction_id
                LEFT JOIN products p ON p.id = t.product_id
                WHERE r.coupon_id = ?
                ORDER BY r.redeemed_at DESC
                """,
                (coupon_id,),
            ).fetchall()
        finally:
            conn.close()

        total_discount = sum(r["discount_amount"] or 0 for r in redemptions)
        unique_users = len({r["customer_email"].lower() for r in redemptions})

        today = utc_now().date()
        daily: "OrderedDict[str, Dict[str, int]]" = OrderedDict()
        for offset in range(29, -1, -1):
            daily[(today - timedelta(days=offset)).isoformat()] = {"count": 0, "amount": 0}
        by_product: Dict[str, Dict[str, Any]] = {}
        for r in redemptions:
            bucket = daily.get(r["redeemed_at"][:10])
            if bucket is not None:
                bucket["count"] += 1
                bucket["amount"] += r["discount_amount"] or 0
            if r["product_id"]:
                entry = by_product.setdefault(
                    r["product_id"],
                    {"product_id": r["product_id"], "product_name": r["product_name"] or "Unknown", "count": 0, "amount": 0},
                )
                entry["count"] += 1
                entry["amount"] += r["discount_amount"] or 0

        limit_global = coupon["usage_limit_global"]
        return {
            "coupon_id": coupon_id,
            "coupon_code": coupon["code"],
            "currency": coupon["currency"],
            "summary": {
                "total_redemptions": len(redemptions),
                "total_discount_amount": total_discount,
                "unique_users": unique_users,
                "usage_limit_global": limit_global,
                "usage_limit_per_user": coupon["usage_limit_per_user"],
                "remaining_global_uses": max(0, limit_global - len(redemptions)) if limit_global else None,
            },
            "recent_redemptions": [
                {
                    "id": r["id"],
                    "customer_email": r["customer_email"],
                    "discount_amount": r["discount_amount"],
                    "redeemed_at": r["redeemed_at"],
                    "transaction_id": r["transaction_id"],
                }
                for r in redemptions[:10]
            ],
            "daily_usage": [{"date": day, **values} for day, values in daily.items()],
            "usage_by_product": sorted(by_product.values(), key=lambda item: item["count"], reverse=True),
        }

    @classmethod
    async def count_active(cls) -> int:
        conn = get_connection()
        try:
            row = conn.execute("SELECT COUNT(*) AS n FROM coupons WHERE is_active = 1").fetchone()
        finally:
            conn.close()
        return row["n"]
