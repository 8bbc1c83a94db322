"""
System status: database health, record counts and build information.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict

from gateflow_api.app.core.config import settings
from gateflow_api.app.core.db import get_connection, now_iso
from gateflow_api.app.services.api_key_service import ApiKeyService
from gateflow_api.app.services.coupon_service import CouponService
from gateflow_api.app.services.webhook_service import WebhookService


logger = logging.getLogger(__name__)

_COUNT_QUERIES = {
    ("products", "total"): "SELECT COUNT(*) FROM products",
    ("products", "active"): "SELECT COUNT(*) FROM products WHERE is_active = 1",
    ("users", "total"): "SELECT COUNT(*) FROM users",
    ("transactions", "total"): "SELECT COUNT(*) FROM payment_transactions",
    ("transactions", "completed"): "SELECT COUNT(*) FROM payment_transactions WHERE status = 'completed'",
    ("refund_requests", "pending"): "SELECT COUNT(*) FROM refund_requests WHERE status = 'pending'",
}


class SystemService:
    """Service class for the status endpoint."""

    @classmethod
    async def get_status(cls) -> Dict[str, Any]:
        counts: Dict[str, Dict[str, int]] = {}
        connected = True
        try:
            conn = get_connection()
            try:
                conn.execute("SELECT 1").fetchone()
                for (group, name), query in _COUNT_QUERIES.items():
                    counts.setdefault(group, {})[name] = conn.execute(query).fetchone()[0]
            finally:
                conn.close()
            counts["webhooks"] = {"active": await WebhookService.count_active()}
            counts["coupons"] = {"active": await CouponService.count_active()}
            counts["api_keys"] = {"active": await ApiKeyService.count_active()}
        except sqlite3.Error:
            logger.exception("Database health check failed")
            connected = False

        return {
            "status": "healthy" if connected else "degraded",
            "timestamp": now_iso(),
            "version": {"api": "v1", "service": settings.api_version, "build": settings.build_id},
            "database": {"connected": connected},
            "counts": counts,
            "features": {"webhooks_enabled": True, "api_keys_enabled": True},
            "environment": settings.environment,
        }
