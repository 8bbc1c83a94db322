"""
Service layer for customers and their product access.

Listing reads the ``user_access_stats`` view so that users can be
sorted by aggregate columns (number of products, total value, latest
grant) with the same keyset pagination as every other list.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from gateflow_api.app.core.db import (
    format_timestamp,
    get_connection,
    is_valid_uuid,
    load_json,
    new_id,
    parse_timestamp,
    utc_now,
)
from gateflow_api.app.core.errors import (
    AlreadyExistsError,
    InvalidInputError,
    NotFoundError,
    ValidationError,
)
from gateflow_api.app.core.pagination import apply_cursor, create_pagination_response, order_clause
from gateflow_api.app.schemas.user import AccessGrant, AccessUpdate, ProductAccessItem, UserRead
from gateflow_api.app.services.product_service import escape_like
from gateflow_api.app.services.webhook_service import WebhookService


logger = logging.getLogger(__name__)

USER_SORT_COLUMNS = {
    "created_at": "user_created_at",
    "user_created_at": "user_created_at",
    "email": "email",
    "last_sign_in_at": "last_sign_in_at",
    "total_products": "total_products",
    "total_value": "total_value",
    "last_access_granted_at": "last_access_granted_at",
}
_NULLABLE_SORT_COLUMNS = ("last_sign_in_at", "last_access_granted_at")
MAX_DURATION_DAYS = 3650

_ACCESS_SELECT = """
    SELECT a.id, a.user_id, a.product_id, a.access_granted_at, a.access_expires_at, a.access_duration_days,
           p.slug AS product_slug, p.name AS product_name, p.price AS product_price,
           p.currency AS product_currency, p.icon AS product_icon, p.is_active AS product_is_active
    FROM user_product_access a
    JOIN products p ON p.id = a.product_id
"""


def _access_item(row: sqlite3.Row) -> Dict[str, Any]:
    return ProductAccessItem(
        id=row["id"],
        product_id=row["product_id"],
        product_slug=row["product_slug"],
        product_name=row["product_name"],
        product_price=row["product_price"],
        product_currency=row["product_currency"],
        product_icon=row["product_icon"],
        product_is_active=bool(row["product_is_active"]),
        granted_at=row["access_granted_at"],
        expires_at=row["access_expires_at"],
        duration_days=row["access_duration_days"],
    ).model_dump()


def _check_future_date(value: str) -> List[str]:
    parsed = parse_timestamp(value)
    if parsed is None:
        return ["Invalid date format"]
    now = utc_now()
    if parsed <= now:
        return ["Date must be in the future"]
    if parsed > now + timedelta(days=365 * 10 + 3):
        return ["Date cannot be more than 10 years in the future"]
    return []


def _check_duration(value: int) -> List[str]:
    if value < 1:
        return ["Duration must be at least 1 day"]
    if value > MAX_DURATION_DAYS:
        return ["Duration cannot exceed 10 years"]
    return []


class UserService:
    """Service class for customers and product access."""

    @staticmethod
    def _check_ids(user_id: str, access_id: Optional[str] = None) -> None:
        if not is_valid_uuid(user_id):
            raise InvalidInputError("Invalid user ID format")
        if access_id is not None and not is_valid_uuid(access_id):
            raise InvalidInputError("Invalid access ID format")

    @staticmethod
    def _build_user(stats: sqlite3.Row, access: List[Dict[str, Any]]) -> Dict[str, Any]:
        return UserRead(
            id=stats["user_id"],
            email=stats["email"],
            created_at=stats["user_created_at"],
            email_confirmed_at=stats["email_confirmed_at"],
            last_sign_in_at=stats["last_sign_in_at"],
            raw_user_meta_data=load_json(stats["raw_user_meta_data"], None),
            product_access=access,
            stats={
                "total_products": stats["total_products"],
                "total_value": stats["total_value"],
                "last_access_granted_at": stats["last_access_granted_at"],
                "first_access_granted_at": stats["first_access_granted_at"],
            },
        ).model_dump()

    @classmethod
    def _access_by_user(cls, conn: sqlite3.Connection, user_ids: List[str]) -> Dict[str, List[Dict[str, Any]]]:
        grouped: Dict[str, List[Dict[str, Any]]] = {user_id: [] for user_id in user_ids}
        if not user_ids:
            return grouped
        placeholders = ", ".join("?" for _ in user_ids)
        rows = conn.execute(
            _ACCESS_SELECT + f" WHERE a.user_id IN ({placeholders}) ORDER BY a.created_at DESC",
            user_ids,
        ).fetchall()
        for row in rows:
            item = _access_item(row)
            # The list view omits the duration.
            item.pop("duration_days")
            grouped[row["user_id"]].append(item)
        return grouped

    @classmethod
    async def list_users(
        cls,
        limit: int,
        cursor: Optional[str] = None,
        search: Optional[str] = None,
        sort_by: Optional[str] = None,
        sort_order: str = "desc",
    ) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        field = USER_SORT_COLUMNS.get(sort_by or "", "user_created_at")
        direction = "asc" if sort_order == "asc" else "desc"
        expr = f"COALESCE({field}, '')" if field in _NULLABLE_SORT_COLUMNS else field

        where: List[str] = []
        params: List[Any] = []
        if search:
            where.append("email LIKE ? ESCAPE '\\'")
            params.append(f"%{escape_like(search)}%")
        apply_cursor(where, params, cursor, field, direction, column=expr, id_column="user_id")

        query = f"SELECT *, {expr} AS sort_value FROM user_access_stats"
        if where:
            query += " WHERE " + " AND ".join(where)
        query += f" {order_clause(expr, direction, id_column='user_id')} LIMIT ?"
        params.append(limit + 1)

        conn = get_connection()
        try:
            rows = conn.execute(query, params).fetchall()
            access = cls._access_by_user(conn, [row["user_id"] for row in rows[:limit]])
        finally:
            conn.close()

        items = [
            {**cls._build_user(row, access.get(row["user_id"], [])), "sort_value": row["sort_value"]}
            for row in rows
        ]
        page, pagination = create_pagination_response(
            items, limit, field, direction, cursor, value_key="sort_value"
        )
        for item in page:
            item.pop("sort_value")
        return page, pagination

    @classmethod
    async def get_user(cls, user_id: str) -> Dict[str, Any]:
        cls._check_ids(user_id)
        conn = get_connection()
        try:
            stats = conn.execute("SELECT * FROM user_access_stats WHERE user_id = ?", (user_id,)).fetchone()
            if not stats:
                raise NotFoundError("User not found")
            access = cls._access_by_user(conn, [user_id])
        finally:
            conn.close()
        return cls._build_user(stats, access[user_id])

    @classmethod
    async def list_access(cls, user_id: str) -> List[Dict[str, Any]]:
        cls._check_ids(user_id)
        conn = get_connection()
        try:
            rows = conn.execute(
                _ACCESS_SELECT + " WHERE a.user_id = ? ORDER BY a.created_at DESC",
                (user_id,),
            ).fetchall()
        finally:
            conn.close()
        return [_access_item(row) for row in rows]

    @classmethod
    async def get_access(cls, user_id: str, access_id: str) -> Dict[str, Any]:
        cls._check_ids(user_id, access_id)
        conn = get_connection()
        try:
            row = conn.execute(
                _ACCESS_SELECT + " WHERE a.id = ? AND a.user_id = ?",
                (access_id, user_id),
            ).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFoundError("Access entry not found")
        return {"user_id": user_id, **_access_item(row)}

    @classmethod
    async def grant_access(cls, user_id: str, data: AccessGrant) -> Dict[str, Any]:
        """Give a user access to an active product, optionally time-limited."""
        cls._check_ids(user_id)
        errors: List[str] = []
        if not data.product_id:
            errors.append("UUID is required")
        elif not is_valid_uuid(data.product_id):
            errors.append("Invalid UUID format")
        if data.access_duration_days is not None:
            errors += _check_duration(data.access_duration_days)
        if data.access_expires_at:
            errors += _check_future_date(data.access_expires_at)
        if errors:
            raise ValidationError("Validation failed", details={"_errors": errors})

        conn = get_connection()
        try:
            cursor = conn.cursor()
            user = cursor.execute("SELECT id, email FROM users WHERE id = ?", (user_id,)).fetchone()
            if not user:
                raise NotFoundError("User not found")
            product = cursor.execute(
                "SELECT id, name, slug, is_active FROM products WHERE id = ?",
                (data.product_id,),
            ).fetchone()
            if not product:
                raise NotFoundError("Product not found")
            if not product["is_active"]:
                raise ValidationError("Cannot grant access to inactive product")
            if cursor.execute(
                "SELECT id FROM user_product_access WHERE user_id = ? AND product_id = ?",
                (user_id, data.product_id),
            ).fetchone():
                raise AlreadyExistsError("User already has access to this product")

            now = utc_now()
            expires_at = None
            if data.access_duration_days:
                expires_at = format_timestamp(now + timedelta(days=data.access_duration_days))
            elif data.access_expires_at:
                expires_at = format_timestamp(parse_timestamp(data.access_expires_at))
            access_id = new_id()
            granted_at = format_timestamp(now)
            cursor.execute(
                """
                INSERT INTO user_product_access (id, user_id, product_id, access_granted_at, access_expires_at,
                                                 access_duration_days, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (access_id, user_id, data.product_id, granted_at, expires_at, data.access_duration_days, granted_at),
            )
            conn.commit()
        finally:
            conn.close()

        result = {
            "id": access_id,
            "user_id": user_id,
            "product_id": data.product_id,
            "product_name": product["name"],
            "granted_at": granted_at,
            "expires_at": expires_at,
            "duration_days": data.access_duration_days,
        }
        await WebhookService.trigger(
            "user.access_granted",
            {
                "user": {"id": user_id, "email": user["email"]},
                "product": {"id": product["id"], "name": product["name"], "slug": product["slug"]},
                "access": {"id": access_id, "granted_at": granted_at, "expires_at": expires_at},
            },
        )
        return result

    @classmethod
    async def update_access(cls, user_id: str, access_id: str, data: AccessUpdate) -> Dict[str, Any]:
        cls._check_ids(user_id, access_id)
        conn = get_connection()
        try:
            cursor = conn.cursor()
            existing = cursor.execute(
                "SELECT * FROM user_product_access WHERE id = ? AND user_id = ?",
                (access_id, user_id),
            ).fetchone()
            if not existing:
                raise NotFoundError("Access entry not found")

            now = utc_now()
            updates: Dict[str, Any] = {}
            if data.extend_days is not None:
                if data.extend_days < 1 or data.extend_days > MAX_DURATION_DAYS:
                    raise ValidationError("extend_days must be between 1 and 3650")
                base = parse_timestamp(existing["access_expires_at"]) or now
                if base < now:
                    base = now
                updates["access_expires_at"] = format_timestamp(base + timedelta(days=data.extend_days))
            elif data.access_expires_at is not None:
                expires_at = parse_timestamp(data.access_expires_at)
                if expires_at is None:
                    raise ValidationError("Invalid access_expires_at format")
                if expires_at <= now:
                    raise ValidationError("access_expires_at must be in the future")
                updates["access_expires_at"] = format_timestamp(expires_at)
            elif data.access_duration_days is not None:
                if data.access_duration_days < 1 or data.access_duration_days > MAX_DURATION_DAYS:
                    raise ValidationError("access_duration_days must be between 1 and 3650")
                updates["access_duration_days"] = data.access_duration_days
                updates["access_expires_at"] = format_timestamp(now + timedelta(days=data.access_duration_days))
            if not updates:
                raise ValidationError("No valid update fields provided")

            assignments = ", ".join(f"{column} = ?" for column in updates)
            cursor.execute(
                f"UPDATE user_product_access SET {assignments} WHERE id = ?",
                (*updates.values(), access_id),
            )
            conn.commit()
            row = cursor.execute("SELECT * FROM user_product_access WHERE id = ?", (access_id,)).fetchone()
        finally:
            conn.close()
        return {
            "id": row["id"],
            "user_id": user_id,
            "product_id": row["product_id"],
            "granted_at": row["access_granted_at"],
            "expires_at": row["access_expires_at"],
            "duration_days": row["access_duration_days"],
        }

    @classmethod
    async def revoke_access(cls, user_id: str, access_id: str) -> None:
        cls._check_ids(user_id, access_id)
        conn = get_connection()
        try:
            cursor = conn.cursor()
            row = cursor.execute(
                """
                SELECT a.id, a.product_id, u.email, p.name AS product_name, p.slug AS product_slug
                FROM user_product_access a
                JOIN users u ON u.id = a.user_id
                JOIN products p ON p.id = a.product_id
                WHERE a.id = ? AND a.user_id = ?
                """,
                (access_id, user_id),
            ).fetchone()
            if not row:
                raise NotFoundError("Access entry not found")
            cursor.execute("DELETE FROM user_product_access WHERE id = ?", (access_id,))
            conn.commit()
        finally:
            conn.close()
        await WebhookService.trigger(
            "user.access_revoked",
            {
                "user": {"id": user_id, "email": row["email"]},
                "product": {"id": row["product_id"], "name": row["product_name"], "slug": row["product_slug"]},
                "access_id": access_id,
            },
        )
