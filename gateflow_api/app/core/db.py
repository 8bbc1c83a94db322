"""
SQLite database integration and simple migration system.

This module provides ``get_connection`` for services, ``init_db`` for
applying migrations on application start, and a few helpers shared by
every service: identifier generation, timestamp formatting and JSON
column encoding.

Applied migration versions are stored in the ``migrations`` table and
new migrations are executed in order.  Uniqueness and foreign keys
are enforced by the schema; services translate ``sqlite3`` integrity
errors into API errors.
"""

import json
import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from .config import settings


logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def get_database_path() -> str:
    """Compute the path to the SQLite database file.

    Absolute paths are used as is; relative paths are
    resolved against the project root.
    """
    db_url = settings.database_url
    if os.path.isabs(db_url):
        return db_url
    base_dir = Path(__file__).resolve().parent.parent.parent.parent
    return str((base_dir / db_url).resolve())


def get_connection() -> sqlite3.Connection:
    """Create and return a new SQLite connection.

    Rows are returned as ``sqlite3.Row`` objects and foreign key
    enforcement is switched on for the lifetime of the connection.
    Timestamps are stored as ISO‑8601 strings, so no type detection is
    enabled.
    """
    conn = sqlite3.connect(get_database_path())
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def get_cursor() -> Iterator[sqlite3.Cursor]:
    """Context manager that yields a cursor and closes the connection on exit."""
    conn = get_connection()
    try:
        yield conn.cursor()
        conn.commit()
    finally:
        conn.close()


def new_id() -> str:
    """Return a new UUID4 primary key."""
    return str(uuid.uuid4())


def is_valid_uuid(value: Optional[str]) -> bool:
    if not value or not isinstance(value, str):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return len(value) == 36


def format_timestamp(moment: datetime) -> str:
    """Render a datetime in the storage format (UTC, microseconds, ``Z``)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return format_timestamp(utc_now())


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO‑8601 string (``Z`` suffix allowed) into an aware datetime.

    Returns ``None`` for empty or unparseable input.  Naive values are
    assumed to be UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def load_json(value: Optional[str], default: Any = None) -> Any:
    if value is None or value == "":
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        logger.warning("Stored JSON column could not be decoded: %r", value)
        return default


MIGRATIONS: list[tuple[int, str]] = [
    # Migration 1: catalogue, customers, payments and access
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS admin_users (
            id TEXT PRIMARY KEY,
            email TEXT NOT NULL UNIQUE,
            password TEXT NOT NULL,
            full_name TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            email TEXT NOT NULL UNIQUE,
            full_name TEXT,
            raw_user_meta_data TEXT,
            email_confirmed_at TEXT,
            last_sign_in_at TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS categories (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            slug TEXT NOT NULL UNIQUE,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS products (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            slug TEXT NOT NULL UNIQUE,
            description TEXT,
            long_description TEXT,
            price REAL NOT NULL DEFAULT 0 CHECK (price >= 0),
            currency TEXT NOT NULL DEFAULT 'PLN',
            is_active INTEGER NOT NULL DEFAULT 1,
            is_featured INTEGER NOT NULL DEFAULT 0,
            icon TEXT,
            content_delivery_type TEXT NOT NULL DEFAULT 'content',
            content_config TEXT,
            available_from TEXT,
            available_until TEXT,
            auto_grant_duration_days INTEGER,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS product_categories (
            product_id TEXT NOT NULL,
            category_id TEXT NOT NULL,
            PRIMARY KEY (product_id, category_id),
            FOREIGN KEY(product_id) REFERENCES products(id) ON DELETE CASCADE,
            FOREIGN KEY(category_id) REFERENCES categories(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS oto_offers (
            id TEXT PRIMARY KEY,
            source_product_id TEXT NOT NULL,
            oto_product_id TEXT NOT NULL,
            discount_type TEXT NOT NULL DEFAULT 'percentage',
            discount_value REAL NOT NULL DEFAULT 20,
            duration_minutes INTEGER NOT NULL DEFAULT 15,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY(source_product_id) REFERENCES products(id) ON DELETE CASCADE,
            FOREIGN KEY(oto_product_id) REFERENCES products(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS payment_transactions (
            id TEXT PRIMARY KEY,
            session_id TEXT UNIQUE,
            user_id TEXT,
            product_id TEXT NOT NULL,
            customer_email TEXT NOT NULL,
            amount INTEGER NOT NULL CHECK (amount >= 0),
            currency TEXT NOT NULL DEFAULT 'PLN',
            status TEXT NOT NULL DEFAULT 'completed',
            stripe_payment_intent_id TEXT,
            refund_id TEXT,
            refunded_amount INTEGER NOT NULL DEFAULT 0,
            refunded_at TEXT,
            refunded_by TEXT,
            refund_reason TEXT,
            metadata TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE SET NULL,
            FOREIGN KEY(product_id) REFERENCES products(id)
        );

        CREATE TABLE IF NOT EXISTS user_product_access (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            product_id TEXT NOT NULL,
            access_granted_at TEXT NOT NULL,
            access_expires_at TEXT,
            access_duration_days INTEGER,
            created_at TEXT NOT NULL,
            UNIQUE (user_id, product_id),
            FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE,
            FOREIGN KEY(product_id) REFERENCES products(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS refund_requests (
            id TEXT PRIMARY KEY,
            user_id TEXT,
            product_id TEXT NOT NULL,
            transaction_id TEXT NOT NULL,
            customer_email TEXT NOT NULL,
            reason TEXT,
            requested_amount INTEGER NOT NULL,
            currency TEXT NOT NULL DEFAULT 'PLN',
            status TEXT NOT NULL DEFAULT 'pending',
            admin_id TEXT,
            admin_response TEXT,
            processed_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE SET NULL,
            FOREIGN KEY(product_id) REFERENCES products(id),
            FOREIGN KEY(transaction_id) REFERENCES payment_transactions(id)
        );

        CREATE TABLE IF NOT EXISTS audit_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            admin_id TEXT,
            action TEXT NOT NULL,
            target_type TEXT,
            target_id TEXT,
            details TEXT,
            created_at TEXT NOT NULL
        );
        """,
    ),
    # Migration 2: coupons and redemptions
    (
        2,
        """
        CREATE TABLE IF NOT EXISTS coupons (
            id TEXT PRIMARY KEY,
            code TEXT NOT NULL UNIQUE,
            name TEXT,
            discount_type TEXT NOT NULL,
            discount_value REAL NOT NULL,
            currency TEXT,
            allowed_emails TEXT NOT NULL DEFAULT '[]',
            allowed_product_ids TEXT NOT NULL DEFAULT '[]',
            usage_limit_global INTEGER,
            usage_limit_per_user INTEGER NOT NULL DEFAULT 1,
            current_usage_count INTEGER NOT NULL DEFAULT 0,
            starts_at TEXT NOT NULL,
            expires_at TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            is_public INTEGER NOT NULL DEFAULT 0,
            exclude_order_bumps INTEGER NOT NULL DEFAULT 0,
            is_oto_coupon INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS coupon_redemptions (
            id TEXT PRIMARY KEY,
            coupon_id TEXT NOT NULL,
            user_id TEXT,
            customer_email TEXT NOT NULL,
            transaction_id TEXT,
            discount_amount INTEGER NOT NULL DEFAULT 0,
            redeemed_at TEXT NOT NULL,
            FOREIGN KEY(coupon_id) REFERENCES coupons(id) ON DELETE CASCADE,
            FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE SET NULL,
            FOREIGN KEY(transaction_id) REFERENCES payment_transactions(id) ON DELETE SET NULL
        );
        """,
    ),
    # Migration 3: outgoing webhooks
    (
        3,
        """
        CREATE TABLE IF NOT EXISTS webhook_endpoints (
            id TEXT PRIMARY KEY,
            url TEXT NOT NULL UNIQUE,
            events TEXT NOT NULL,
            description TEXT,
            secret TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS webhook_logs (
            id TEXT PRIMARY KEY,
            endpoint_id TEXT,
            event_type TEXT NOT NULL,
            payload TEXT NOT NULL,
            status TEXT NOT NULL,
            http_status INTEGER,
            response_body TEXT,
            error_message TEXT,
            duration_ms INTEGER,
            created_at TEXT NOT NULL,
            FOREIGN KEY(endpoint_id) REFERENCES webhook_endpoints(id) ON DELETE SET NULL
        );
        """,
    ),
    # Migration 4: API keys, their audit trail and request counters
    (
        4,
        """
        CREATE TABLE IF NOT EXISTS api_keys (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL CHECK (length(name) BETWEEN 1 AND 100),
            key_prefix TEXT NOT NULL UNIQUE CHECK (length(key_prefix) = 12),
            key_hash TEXT NOT NULL UNIQUE,
            admin_user_id TEXT NOT NULL,
            scopes TEXT NOT NULL DEFAULT '["*"]',
            rate_limit_per_minute INTEGER NOT NULL DEFAULT 60
                CHECK (rate_limit_per_minute > 0 AND rate_limit_per_minute <= 1000),
            is_active INTEGER NOT NULL DEFAULT 1,
            expires_at TEXT,
            last_used_at TEXT,
            last_used_ip TEXT,
            usage_count INTEGER NOT NULL DEFAULT 0,
            rotated_from_id TEXT,
            rotation_grace_until TEXT,
            created_at TEXT NOT NULL,
            revoked_at TEXT,
            revoked_reason TEXT CHECK (revoked_reason IS NULL OR length(revoked_reason) <= 500),
            FOREIGN KEY(admin_user_id) REFERENCES admin_users(id) ON DELETE CASCADE,
            FOREIGN KEY(rotated_from_id) REFERENCES api_keys(id) ON DELETE SET NULL
        );

        CREATE TABLE IF NOT EXISTS api_key_audit_log (
            id TEXT PRIMARY KEY,
            api_key_id TEXT,
            event_type TEXT NOT NULL
                CHECK (event_type IN ('created', 'rotated', 'revoked', 'expired', 'used_after_revoke')),
            event_data TEXT NOT NULL DEFAULT '{}',
            ip_address TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY(api_key_id) REFERENCES api_keys(id) ON DELETE SET NULL
        );

        CREATE TABLE IF NOT EXISTS rate_limits (
            identifier TEXT NOT NULL,
            window_start TEXT NOT NULL,
            request_count INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (identifier, window_start)
        );
        """,
    ),
    # Migration 5: lookup indices and the per-user access summary
    (
        5,
        """
        CREATE INDEX IF NOT EXISTS idx_products_created_at ON products(created_at);
        CREATE INDEX IF NOT EXISTS idx_transactions_created_at ON payment_transactions(created_at);
        CREATE INDEX IF NOT EXISTS idx_transactions_product_id ON payment_transactions(product_id);
        CREATE INDEX IF NOT EXISTS idx_transactions_status ON payment_transactions(status);
        CREATE INDEX IF NOT EXISTS idx_access_user_id ON user_product_access(user_id);
        CREATE INDEX IF NOT EXISTS idx_refund_requests_status ON refund_requests(status);
        CREATE INDEX IF NOT EXISTS idx_webhook_logs_endpoint_id ON webhook_logs(endpoint_id);
        CREATE INDEX IF NOT EXISTS idx_api_keys_admin_user_id ON api_keys(admin_user_id);
        CREATE INDEX IF NOT EXISTS idx_coupon_redemptions_coupon_id ON coupon_redemptions(coupon_id);

        CREATE VIEW IF NOT EXISTS user_access_stats AS
        SELECT
            u.id AS user_id,
            u.email AS email,
            u.created_at AS user_created_at,
            u.email_confirmed_at AS email_confirmed_at,
            u.last_sign_in_at AS last_sign_in_at,
            u.raw_user_meta_data AS raw_user_meta_data,
            COUNT(a.id) AS total_products,
            COALESCE(SUM(p.price), 0) AS total_value,
            MAX(a.access_granted_at) AS last_access_granted_at,
            MIN(a.access_granted_at) AS first_access_granted_at
        FROM users u
        LEFT JOIN user_product_access a ON a.user_id = u.id
        LEFT JOIN products p ON p.id = a.product_id
        GROUP BY u.id;
        """,
    ),
]


def init_db() -> None:
    """Initialise the database and apply pending migrations.

    Creates the ``migrations`` table if needed, applies every entry of
    ``MIGRATIONS`` newer than the recorded version and seeds the
    bootstrap administrator from ``ADMIN_EMAIL``/``ADMIN_PASSWORD``.
    """
    with get_cursor() as cursor:
        cursor.execute(
            "CREATE TABLE IF NOT EXISTS migrations (version INTEGER PRIMARY KEY)"
        )
        cursor.execute("SELECT MAX(version) AS version FROM migrations")
        row = cursor.fetchone()
        current_version = row["version"] if row and row["version"] is not None else 0

        for version, sql in MIGRATIONS:
            if version > current_version:
                logger.info("Applying database migration %s", version)
                cursor.executescript(sql)
                cursor.execute(
                    "INSERT INTO migrations (version) VALUES (?)", (version,)
                )
                current_version = version

        if settings.admin_email and settings.admin_password:
            from .security import hash_password

            existing = cursor.execute(
                "SELECT id FROM admin_users WHERE email = ?",
                (settings.admin_email.lower(),),
            ).fetchone()
            if not existing:
                cursor.execute(
                    "INSERT INTO admin_users (id, email, password, created_at) VALUES (?, ?, ?, ?)",
                    (new_id(), settings.admin_email.lower(), hash_password(settings.admin_password), now_iso()),
                )
                logger.info("Created bootstrap administrator %s", settings.admin_email)
