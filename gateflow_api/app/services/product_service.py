"""
Service layer for products and their one-time offers (OTO).

Validation mirrors the storefront rules: every violation is collected
and reported together as ``VALIDATION_ERROR`` with
``details["_errors"]``.  Writes fire the ``product.*`` webhooks.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from gateflow_api.app.core.db import (
    get_connection,
    is_valid_uuid,
    load_json,
    new_id,
    now_iso,
    parse_timestamp,
    utc_now,
)
from gateflow_api.app.core.errors import (
    AlreadyExistsError,
    ConflictError,
    InvalidInputError,
    NotFoundError,
    ValidationError,
)
from gateflow_api.app.core.pagination import (
    apply_cursor,
    create_pagination_response,
    order_clause,
)
from gateflow_api.app.schemas.product import OtoOfferUpdate, ProductCreate, ProductRead, ProductUpdate
from gateflow_api.app.services.webhook_service import WebhookService


logger = logging.getLogger(__name__)

PRODUCT_SORT_COLUMNS = ("name", "price", "created_at", "updated_at", "is_active", "is_featured", "slug")
CONTENT_DELIVERY_TYPES = ("content", "redirect", "download")
MAX_PRICE = 999999.99

_SLUG_RE = re.compile(r"^[a-z0-9-]+$")
_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
_ICON_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")

# Columns a client may write; everything else in the body is ignored.
_WRITABLE = (
    "name",
    "slug",
    "description",
    "long_description",
    "price",
    "currency",
    "is_active",
    "is_featured",
    "icon",
    "content_delivery_type",
    "content_config",
    "available_from",
    "available_until",
    "auto_grant_duration_days",
)


def escape_like(value: str) -> str:
    """Escape ``\\``, ``%`` and ``_`` for use in ``LIKE ... ESCAPE '\\'``."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def validate_sort_column(sort_by: Optional[str]) -> str:
    return sort_by if sort_by in PRODUCT_SORT_COLUMNS else "created_at"


def _check_name(name: Any) -> List[str]:
    if not isinstance(name, str) or name == "":
        return ["Name is required"]
    if not name.strip():
        return ["Name cannot be empty"]
    if len(name.strip()) > 200:
        return ["Name must be less than 200 characters"]
    return []


def _check_slug(slug: Any) -> List[str]:
    if not isinstance(slug, str) or slug == "":
        return ["Slug is required"]
    slug = slug.strip()
    if not slug:
        return ["Slug cannot be empty"]
    if len(slug) > 100:
        return ["Slug must be less than 100 characters"]
    if not _SLUG_RE.match(slug):
        return ["Slug can only contain lowercase letters, numbers, and hyphens"]
    if slug.startswith("-") or slug.endswith("-"):
        return ["Slug cannot start or end with hyphens"]
    if "--" in slug:
        return ["Slug cannot contain consecutive hyphens"]
    return []


def _check_description(description: Any) -> List[str]:
    if not isinstance(description, str) or description == "":
        return ["Description is required"]
    if not description.strip():
        return ["Description cannot be empty"]
    if len(description.strip()) > 1000:
        return ["Description must be less than 1000 characters"]
    return []


def _check_price(price: Any) -> List[str]:
    if price is None:
        return ["Price must be a number"]
    if price != price or price in (float("inf"), float("-inf")):
        return ["Price must be a valid number"]
    if price < 0:
        return ["Price must be non-negative"]
    if price > MAX_PRICE:
        return ["Price cannot exceed 999,999.99"]
    return []


def _check_currency(currency: Any) -> List[str]:
    if not currency:
        return ["Currency is required"]
    if len(currency) != 3:
        return ["Currency must be exactly 3 characters"]
    if not _CURRENCY_RE.match(currency):
        return ["Currency must be uppercase letters only"]
    return []


def _check_icon(icon: Any) -> List[str]:
    if not icon:
        return ["Icon is required"]
    if len(icon) > 20:
        return ["Icon must be less than 20 characters"]
    # Either an icon name or a run of emoji code points.
    if not _ICON_NAME_RE.match(icon) and any(ord(ch) < 128 for ch in icon):
        return ["Invalid icon format"]
    return []


def _check_date(value: Any) -> List[str]:
    if value is None or value == "":
        return []
    parsed = parse_timestamp(value)
    if parsed is None:
        return ["Invalid date format"]
    now = utc_now()
    lower = datetime(2020, 1, 1, tzinfo=timezone.utc)
    upper = now.replace(year=now.year + 10, day=min(now.day, 28))
    if parsed < lower or parsed > upper:
        return ["Date must be between 2020 and 10 years in the future"]
    return []


def _check_duration(value: Any) -> List[str]:
    if value is None:
        return []
    if value < 1:
        return ["Duration must be at least 1 day"]
    if value > 3650:
        return ["Duration cannot exceed 10 years"]
    return []


def _check_content_config(config: Any) -> List[str]:
    errors: List[str] = []
    if not isinstance(config, dict):
        return errors
    items = config.get("content_items")
    if not isinstance(items, list):
        return errors
    for index, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            errors.append(f"Content item {index}: Invalid format")
            continue
        if item.get("type") == "download_link":
            url = (item.get("config") or {}).get("download_url")
            if url and urlparse(str(url)).scheme != "https":
                errors.append(f"Content item {index}: Download URL must use HTTPS")
    return errors


def sanitize_product_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """Trim strings, normalise case and turn empty dates into ``None``."""
    clean = {key: value for key, value in data.items() if key in _WRITABLE}
    for key in ("name", "description"):
        if isinstance(clean.get(key), str):
            clean[key] = clean[key].strip()
    if isinstance(clean.get("slug"), str):
        clean["slug"] = clean["slug"].strip().lower()
    if isinstance(clean.get("currency"), str):
        clean["currency"] = clean["currency"].strip().upper()
    for key in ("available_from", "available_until"):
        if clean.get(key) == "":
            clean[key] = None
    return clean


def validate_product(data: Dict[str, Any], partial: bool) -> List[str]:
    """Return every rule violation for a create (``partial=False``) or update body."""
    errors: List[str] = []

    def present(key: str) -> bool:
        return key in data if partial else True

    if present("name"):
        errors += _check_name(data.get("name"))
    if present("slug"):
        errors += _check_slug(data.get("slug"))
    if present("description"):
        errors += _check_description(data.get("description"))
    if present("price"):
        errors += _check_price(data.get("price"))
    if (partial and "currency" in data) or (not partial and data.get("currency")):
        errors += _check_currency(data.get("currency"))
    if (partial and "icon" in data) or (not partial and data.get("icon")):
        errors += _check_icon(data.get("icon"))
    if (partial and "content_delivery_type" in data) or (not partial and data.get("content_delivery_type")):
        if data.get("content_delivery_type") not in CONTENT_DELIVERY_TYPES:
            errors.append("Invalid content delivery type")
    errors += _check_date(data.get("available_from"))
    errors += _check_date(data.get("available_until"))
    errors += _check_duration(data.get("auto_grant_duration_days"))
    if data.get("content_config"):
        errors += _check_content_config(data["content_config"])

    start = parse_timestamp(data.get("available_from"))
    end = parse_timestamp(data.get("available_until"))
    if start and end and start >= end:
        errors.append("Available from date must be before available until date")
    return errors


def _row_to_product(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    data["is_active"] = bool(data["is_active"])
    data["is_featured"] = bool(data["is_featured"])
    data["content_config"] = load_json(data.get("content_config"), None)
    return data


def _serialize(product: Dict[str, Any]) -> Dict[str, Any]:
    data = ProductRead(**product).model_dump()
    if data["categories"] is None:
        data.pop("categories")
    return data


class ProductService:
    """Service class for product CRUD and OTO configuration."""

    @staticmethod
    def _check_id(product_id: str) -> None:
        if not is_valid_uuid(product_id):
            raise InvalidInputError("Invalid product ID format")

    @staticmethod
    def _slug_taken(cursor: sqlite3.Cursor, slug: str, exclude_id: Optional[str] = None) -> bool:
        row = cursor.execute(
            "SELECT id FROM products WHERE slug = ? AND id != ?",
            (slug, exclude_id or ""),
        ).fetchone()
        return row is not None

    @staticmethod
    def _set_categories(cursor: sqlite3.Cursor, product_id: str, categories: List[str]) -> None:
        cursor.execute("DELETE FROM product_categories WHERE product_id = ?", (product_id,))
        for category_id in categories:
            try:
                cursor.execute(
                    "INSERT INTO product_categories (product_id, category_id) VALUES (?, ?)",
                    (product_id, str(category_id)),
                )
            except sqlite3.IntegrityError:
                logger.warning("Skipping unknown category %s for product %s", category_id, product_id)

    @classmethod
    async def list_products(
        cls,
        limit: int,
        cursor: Optional[str] = None,
        search: Optional[str] = None,
        status: str = "all",
        sort_by: Optional[str] = None,
        sort_order: str = "desc",
    ) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        """Return one page of products and its pagination block."""
        field = validate_sort_column(sort_by)
        direction = "asc" if sort_order == "asc" else "desc"
        where: List[str] = []
        params: List[Any] = []
        if search:
            pattern = f"%{escape_like(search)}%"
            where.append("(name LIKE ? ESCAPE '\\' OR description LIKE ? ESCAPE '\\')")
            params.extend([pattern, pattern])
        if status == "active":
            where.append("is_active = 1")
        elif status == "inactive":
            where.append("is_active = 0")
        apply_cursor(where, params, cursor, field, direction)

        query = "SELECT * FROM products"
        if where:
            query += " WHERE " + " AND ".join(where)
        query += f" {order_clause(field, direction)} LIMIT ?"
        params.append(limit + 1)

        conn = get_connection()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        items = [_row_to_product(row) for row in rows]
        page, pagination = create_pagination_response(items, limit, field, direction, cursor)
        return [_serialize(item) for item in page], pagination

    @classmethod
    async def get_product(cls, product_id: str) -> Dict[str, Any]:
        cls._check_id(product_id)
        conn = get_connection()
        try:
            row = conn.execute("SELECT * FROM products WHERE id = ?", (product_id,)).fetchone()
            if not row:
                raise NotFoundError("Product not found")
            categories = conn.execute(
                """
                SELECT c.id, c.name, c.slug
                FROM product_categories pc JOIN categories c ON c.id = pc.category_id
                WHERE pc.product_id = ?
                ORDER BY c.name
                """,
                (product_id,),
            ).fetchall()
        finally:
            conn.close()
        product = _row_to_product(row)
        product["categories"] = [dict(c) for c in categories]
        return _serialize(product)

    @classmethod
    async def create_product(cls, payload: ProductCreate) -> Dict[str, Any]:
        body = payload.model_dump(exclude_unset=True)
        categories = body.pop("categories", None)
        data = sanitize_product_data(body)
        errors = validate_product(data, partial=False)
        if errors:
            raise ValidationError("Validation failed", details={"_errors": errors})

        product_id = new_id()
        timestamp = now_iso()
        conn = get_connection()
        try:
            cursor = conn.cursor()
            if cls._slug_taken(cursor, data["slug"]):
                raise AlreadyExistsError("A product with this slug already exists")
            cursor.execute(
                """
                INSERT INTO products (id, name, slug, description, long_description, price, currency,
                                      is_active, is_featured, icon, content_delivery_type, content_config,
                                      available_from, available_until, auto_grant_duration_days,
                                      created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    product_id,
                    data["name"],
                    data["slug"],
                    data.get("description"),
                    data.get("long_description"),
                    data["price"],
                    data.get("currency") or "PLN",
                    1 if data.get("is_active", True) else 0,
                    1 if data.get("is_featured", False) else 0,
                    data.get("icon") or "📦",
                    data.get("content_delivery_type") or "content",
                    json.dumps(data["content_config"]) if data.get("content_config") is not None else None,
                    data.get("available_from"),
                    data.get("available_until"),
                    data.get("auto_grant_duration_days"),
                    timestamp,
                    timestamp,
                ),
            )
            if categories:
                cls._set_categories(cursor, product_id, categories)
            conn.commit()
            row = cursor.execute("SELECT * FROM products WHERE id = ?", (product_id,)).fetchone()
        finally:
            conn.close()

        product = _serialize(_row_to_product(row))
        logger.info("Product created: %s (%s)", product["slug"], product_id)
        await WebhookService.trigger("product.created", {"product": product})
        return product

    @classmethod
    async def update_product(cls, product_id: str, payload: ProductUpdate) -> Dict[str, Any]:
        cls._check_id(product_id)
        body = payload.model_dump(exclude_unset=True)
        categories = body.pop("categories", None)
        data = sanitize_product_data(body)
        if not data and categories is None:
            raise ValidationError("No valid update fields provided")
        errors = validate_product(data, partial=True)
        if errors:
            raise ValidationError("Validation failed", details={"_errors": errors})

        conn = get_connection()
        try:
            cursor = conn.cursor()
            if data.get("slug") and cls._slug_taken(cursor, data["slug"], exclude_id=product_id):
                raise AlreadyExistsError("A product with this slug already exists")
            existing = cursor.execute("SELECT id FROM products WHERE id = ?", (product_id,)).fetchone()
            if not existing:
                raise NotFoundError("Product not found")

            if data:
                if "content_config" in data:
                    data["content_config"] = (
                        json.dumps(data["content_config"]) if data["content_config"] is not None else None
                    )
                for flag in ("is_active", "is_featured"):
                    if flag in data:
                        data[flag] = 1 if data[flag] else 0
                data["updated_at"] = now_iso()
                assignments = ", ".join(f"{column} = ?" for column in data)
                cursor.execute(
                    f"UPDATE products SET {assignments} WHERE id = ?",
                    (*data.values(), product_id),
                )
            if categories is not None:
                cls._set_categories(cursor, product_id, categories)
            conn.commit()
            row = cursor.execute("SELECT * FROM products WHERE id = ?", (product_id,)).fetchone()
        finally:
            conn.close()

        product = _serialize(_row_to_product(row))
        await WebhookService.trigger("product.updated", {"product": product})
        return product

    @classmethod
    async def delete_product(cls, product_id: str) -> None:
        cls._check_id(product_id)
        conn = get_connection()
        try:
            cursor = conn.cursor()
            row = cursor.execute("SELECT * FROM products WHERE id = ?", (product_id,)).fetchone()
            if not row:
                raise NotFoundError("Product not found")
            try:
                cursor.execute("DELETE FROM product_categories WHERE product_id = ?", (product_id,))
                cursor.execute("DELETE FROM products WHERE id = ?", (product_id,))
                conn.commit()
            except sqlite3.IntegrityError as exc:
                conn.rollback()
                logger.info("Refusing to delete product %s: %s", product_id, exc)
                raise ConflictError("Cannot delete product with existing user access or payments") from exc
        finally:
            conn.close()
        await WebhookService.trigger(
            "product.deleted",
            {"product": {"id": row["id"], "name": row["name"], "slug": row["slug"]}},
        )

    # One-time offers

    @classmethod
    async def get_oto(cls, product_id: str) -> Dict[str, Any]:
        cls._check_id(product_id)
        conn = get_connection()
        try:
            if not conn.execute("SELECT id FROM products WHERE id = ?", (product_id,)).fetchone():
                raise NotFoundError("Product not found")
            offer = conn.execute(
                """
                SELECT o.*, p.name AS p_name, p.slug AS p_slug, p.price AS p_price, p.currency AS p_currency
                FROM oto_offers o JOIN products p ON p.id = o.oto_product_id
                WHERE o.source_product_id = ? AND o.is_active = 1
                ORDER BY o.created_at DESC LIMIT 1
                """,
                (product_id,),
            ).fetchone()
        finally:
            conn.close()
        if not offer:
            return {"has_oto": False}
        return {
            "has_oto": True,
            "oto_product_id": offer["oto_product_id"],
            "discount_type": offer["discount_type"],
            "discount_value": offer["discount_value"],
            "duration_minutes": offer["duration_minutes"],
            "oto_product": {
                "id": offer["oto_product_id"],
                "name": offer["p_name"],
                "slug": offer["p_slug"],
                "price": offer["p_price"],
                "currency": offer["p_currency"],
            },
        }

    @classmethod
    async def set_oto(cls, product_id: str, payload: OtoOfferUpdate) -> Dict[str, Any]:
        """Replace the active OTO offer of ``product_id``."""
        cls._check_id(product_id)
        if not payload.oto_product_id:
            raise ValidationError(
                "oto_product_id is required",
                details={"oto_product_id": ["Required field"]},
            )
        if not is_valid_uuid(payload.oto_product_id):
            raise InvalidInputError("Invalid OTO product ID format")
        if payload.discount_type not in ("percentage", "fixed"):
            raise ValidationError(
                "Invalid discount type",
                details={"discount_type": ['Must be "percentage" or "fixed"']},
            )
        if payload.discount_value < 0:
            raise ValidationError(
                "Invalid discount value",
                details={"discount_value": ["Must be a positive number"]},
            )
        if payload.duration_minutes < 1:
            raise ValidationError(
                "Invalid duration",
                details={"duration_minutes": ["Must be at least 1 minute"]},
            )

        timestamp = now_iso()
        conn = get_connection()
        try:
            cursor = conn.cursor()
            if not cursor.execute("SELECT id FROM products WHERE id = ?", (product_id,)).fetchone():
                raise NotFoundError("Source product not found")
            if not cursor.execute("SELECT id FROM products WHERE id = ?", (payload.oto_product_id,)).fetchone():
                raise ValidationError(
                    "OTO product not found",
                    details={"oto_product_id": ["OTO product not found"]},
                )
            cursor.execute(
                "UPDATE oto_offers SET is_active = 0, updated_at = ? WHERE source_product_id = ?",
                (timestamp, product_id),
            )
            cursor.execute(
                """
                INSERT INTO oto_offers (id, source_product_id, oto_product_id, discount_type, discount_value,
                                        duration_minutes, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
                """,
                (
                    new_id(),
                    product_id,
                    payload.oto_product_id,
                    payload.discount_type,
                    payload.discount_value,
                    payload.duration_minutes,
                    timestamp,
                    timestamp,
                ),
            )
            conn.commit()
        finally:
            conn.close()
        return {
            "has_oto": True,
            "oto_product_id": payload.oto_product_id,
            "discount_type": payload.discount_type,
            "discount_value": payload.discount_value,
            "duration_minutes": payload.duration_minutes,
        }

    @classmethod
    async def delete_oto(cls, product_id: str) -> None:
        cls._check_id(product_id)
        conn = get_connection()
        try:
            conn.execute(
                "UPDATE oto_offers SET is_active = 0, updated_at = ? WHERE source_product_id = ?",
                (now_iso(), product_id),
            )
            conn.commit()
        finally:
            conn.close()
