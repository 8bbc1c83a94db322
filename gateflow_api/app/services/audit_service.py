"""
Audit trail for administrative actions.

Refunds, refund request decisions and API key lifecycle events are
written to ``audit_log`` with the acting administrator, the affected
record and a JSON ``details`` blob.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from gateflow_api.app.core.db import get_connection, load_json, now_iso


logger = logging.getLogger(__name__)


class AuditService:
    """Service class for writing and reading audit entries."""

    @classmethod
    async def log(
        cls,
        admin_id: Optional[str],
        action: str,
        target_type: str,
        target_id: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        """Insert a new audit record.

        Parameters
        ----------
        admin_id : Optional[str]
            Administrator performing the action; ``None`` for system actions.
        action : str
            Short action name, e.g. ``"refund_processed"`` or ``"api_key_rotated"``.
        target_type : str
            Kind of record affected, e.g. ``"payment_transaction"``.
        target_id : Optional[str]
            Primary key of the affected record.
        details : Optional[dict]
            Additional structured data, stored as JSON.
        """
        conn = get_connection()
        try:
            conn.execute(
                """
                INSERT INTO audit_log (admin_id, action, target_type, target_id, details, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (admin_id, action, target_type, target_id, json.dumps(details) if details else None, now_iso()),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("audit: %s %s %s by %s", action, target_type, target_id, admin_id)

    @classmethod
    async def list_entries(
        cls,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Most recent audit entries, optionally narrowed to one record."""
        query = "SELECT id, admin_id, action, target_type, target_id, details, created_at FROM audit_log"
        where: List[str] = []
        params: List[Any] = []
        if target_type:
            where.append("target_type = ?")
            params.append(target_type)
        if target_id:
            where.append("target_id = ?")
            params.append(target_id)
        if where:
            query += " WHERE " + " AND ".join(where)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        conn = get_connection()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [{**dict(row), "details": load_json(row["details"], {})} for row in rows]
