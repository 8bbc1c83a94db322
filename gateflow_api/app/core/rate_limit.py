"""
Database-backed fixed-window rate limiting.

Counters live in the ``rate_limits`` table keyed by an identifier such
as ``api_key:<id>`` and the start of the current window.  Each call
increments the counter for the window and reports whether the request
is still within ``max_requests``.
"""

import logging
from datetime import datetime, timezone

from .config import settings
from .db import format_timestamp, get_connection, utc_now


logger = logging.getLogger(__name__)

# (action, max requests, window minutes); keyed per administrator or key.
ADMIN_REFUND_LIMIT = ("admin_refund", 10, 60)
ADMIN_EXPORT_LIMIT = ("admin_export", 5, 60)


def _window_start(now: datetime, window_minutes: int) -> str:
    epoch_minutes = int(now.timestamp() // 60)
    start_minutes = epoch_minutes - (epoch_minutes % window_minutes)
    return format_timestamp(datetime.fromtimestamp(start_minutes * 60, tz=timezone.utc))


def check_rate_limit(identifier: str, max_requests: int, window_minutes: int = 1) -> bool:
    """Count one request for ``identifier`` and return ``True`` if allowed."""
    if not settings.rate_limit_enabled:
        return True
    window = _window_start(utc_now(), max(window_minutes, 1))
    conn = get_connection()
    try:
        cursor = conn.cursor()
        cursor.execute(
            """
            INSERT INTO rate_limits (identifier, window_start, request_count)
            VALUES (?, ?, 1)
            ON CONFLICT(identifier, window_start)
            DO UPDATE SET request_count = request_count + 1
            """,
            (identifier, window),
        )
        row = cursor.execute(
            "SELECT request_count FROM rate_limits WHERE identifier = ? AND window_start = ?",
            (identifier, window),
        ).fetchone()
        cursor.execute(
            "DELETE FROM rate_limits WHERE identifier = ? AND window_start < ?",
            (identifier, window),
        )
        conn.commit()
    finally:
        conn.close()
    count = row["request_count"] if row else 1
    if count > max_requests:
        logger.warning("Rate limit exceeded for %s (%s/%s)", identifier, count, max_requests)
        return False
    return True
