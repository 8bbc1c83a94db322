"""
Outgoing webhooks: endpoint management, signed delivery and retries.

Every delivery attempt is POSTed with ``httpx`` and recorded as one row
in ``webhook_logs``.  The body is ``{"event", "timestamp", "data"}``
and is signed with the endpoint secret (hex HMAC‑SHA256) in the
``X-GateFlow-Signature`` header so receivers can authenticate it.

URL validation refuses targets that would let a caller reach internal
services from the server (localhost, private and link-local ranges,
cloud metadata hosts).
"""

from __future__ import annotations

import hashlib
import hmac
import ipaddress
import json
import logging
import secrets
import sqlite3
import time
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import urlsplit

import httpx

from gateflow_api.app.core.config import settings
from gateflow_api.app.core.db import get_connection, is_valid_uuid, load_json, new_id, now_iso
from gateflow_api.app.core.errors import AlreadyExistsError, InvalidInputError, NotFoundError
from gateflow_api.app.core.pagination import apply_cursor, create_pagination_response, order_clause
from gateflow_api.app.schemas.webhook import (
    DeliveryResult,
    WebhookCreate,
    WebhookLogRead,
    WebhookRead,
    WebhookUpdate,
    WebhookWithSecret,
)


logger = logging.getLogger(__name__)

WEBHOOK_EVENT_TYPES = (
    "purchase.completed",
    "lead.captured",
    "waitlist.signup",
    "payment.completed",
    "payment.refunded",
    "payment.failed",
    "user.access_granted",
    "user.access_revoked",
    "product.created",
    "product.updated",
    "product.deleted",
)

LOG_STATUSES = ("success", "failed", "archived", "retried")

_BLOCKED_HOSTNAMES = (
    "metadata.google.internal",
    "metadata.goog",
    "kubernetes.default",
    "kubernetes.default.svc",
)
_IPV4_10 = ipaddress.ip_network("10.0.0.0/8")
_IPV4_172 = ipaddress.ip_network("172.16.0.0/12")
_IPV4_192 = ipaddress.ip_network("192.168.0.0/16")
_RESPONSE_BODY_LIMIT = 5000

SAMPLE_PAYLOADS: Dict[str, Dict[str, Any]] = {
    "test.event": {"message": "This is a test webhook from GateFlow"},
    "purchase.completed": {
        "customer": {"email": "customer@example.com"},
        "product": {"id": "00000000-0000-4000-8000-000000000000", "name": "Sample product", "slug": "sample-product"},
        "order": {"amount": 4900, "currency": "pln", "sessionId": "cs_test_sample"},
    },
    "lead.captured": {
        "customer": {"email": "lead@example.com"},
        "product": {"id": "00000000-0000-4000-8000-000000000000", "name": "Free guide", "slug": "free-guide"},
    },
    "payment.refunded": {
        "payment_id": "00000000-0000-4000-8000-000000000001",
        "amount": 4900,
        "currency": "pln",
        "status": "refunded",
    },
}


def _parse_inet_part(part: str) -> int:
    if part.lower().startswith("0x"):
        return int(part[2:] or "0", 16)
    if len(part) > 1 and part.startswith("0"):
        return int(part, 8)
    return int(part, 10)


def _parse_ip_host(hostname: str) -> Optional[Union[ipaddress.IPv4Address, ipaddress.IPv6Address]]:
    """Parse an IP literal, including shorthand IPv4 forms such as ``2130706433`` or ``127.1``."""
    try:
        return ipaddress.ip_address(hostname)
    except ValueError:
        pass
    parts = hostname.split(".")
    if not 1 <= len(parts) <= 4:
        return None
    try:
        numbers = [_parse_inet_part(part) for part in parts]
    except ValueError:
        return None
    # Leading parts are single octets; the last part fills the remaining bytes.
    head, last = numbers[:-1], numbers[-1]
    if any(n > 255 for n in head) or last >= 256 ** (4 - len(head)):
        return None
    value = last
    for index, number in enumerate(head):
        value += number << (8 * (3 - index))
    return ipaddress.IPv4Address(value)



def validate_webhook_url(url: str, allow_http: Optional[bool] = None) -> Optional[str]:
    """Return an error message when ``url`` may not be used as a webhook target."""
    if allow_http is None:
        allow_http = settings.allow_http_webhooks
    try:
        parts = urlsplit(url)
        hostname = (parts.hostname or "").lower().rstrip(".")
    except ValueError:
        return "Invalid URL format"
    if not parts.scheme or not parts.netloc or not hostname:
        return "Invalid URL format"

    if parts.scheme != "https" and not (parts.scheme == "http" and allow_http):
        return "URL must use HTTPS protocol"

    if hostname in ("localhost", "127.0.0.1", "::1") or hostname.endswith(".localhost"):
        return "URL cannot point to localhost"

    if any(hostname == blocked or hostname.endswith("." + blocked) for blocked in _BLOCKED_HOSTNAMES):
        return "URL cannot point to internal services"

    address = _parse_ip_host(hostname)
    if address is None:
        return None
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    if isinstance(address, ipaddress.IPv4Address):
        if address.is_unspecified:
            return "URL cannot point to 0.0.0.0"
        if address in _IPV4_10:
            return "URL cannot point to private IP addresses (10.x.x.x)"
        if address in _IPV4_172:
            return "URL cannot point to private IP addresses (172.16-31.x.x)"
        if address in _IPV4_192:
            return "URL cannot point to private IP addresses (192.168.x.x)"
        if address.is_loopback:
            return "URL cannot point to loopback addresses"
        if address.is_link_local:
            return "URL cannot point to link-local addresses (cloud metadata)"
        if address.is_private or address.is_reserved:
            return "URL cannot point to private IP addresses"
        return None
    if address.is_loopback or address.is_link_local or address.is_private or address.is_unspecified:
        return "URL cannot point to IPv6 loopback or private addresses"
    return None


def validate_event_types(events: Any) -> Optional[str]:
    if not isinstance(events, list) or not events:
        return "Events must be a non-empty array"
    invalid = [str(event) for event in events if event not in WEBHOOK_EVENT_TYPES]
    if invalid:
        return f"Invalid event types: {', '.join(invalid)}. Valid types: {', '.join(WEBHOOK_EVENT_TYPES)}"
    return None


def sign_payload(body: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def _row_to_webhook(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    data["events"] = load_json(data.get("events"), [])
    data["is_active"] = bool(data.get("is_active"))
    return data


class WebhookService:
    """Manage webhook endpoints and deliver events to them."""

    @staticmethod
    def _check_id(webhook_id: str) -> None:
        if not is_valid_uuid(webhook_id):
            raise InvalidInputError("Invalid webhook ID format")

    @staticmethod
    def _fetch(conn: sqlite3.Connection, webhook_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM webhook_endpoints WHERE id = ?", (webhook_id,)).fetchone()
        if not row:
            raise NotFoundError("Webhook not found")
        return row

    @classmethod
    async def list_webhooks(
        cls, limit: int, cursor: Optional[str] = None, status: str = "all"
    ) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        where: List[str] = []
        params: List[Any] = []
        if status == "active":
            where.append("is_active = 1")
        elif status == "inactive":
            where.append("is_active = 0")
        apply_cursor(where, params, cursor, "created_at", "desc")
        query = "SELECT * FROM webhook_endpoints"
        if where:
            query += " WHERE " + " AND ".join(where)
        query += f" {order_clause('created_at', 'desc')} LIMIT ?"
        params.append(limit + 1)
        conn = get_connection()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        items = [WebhookRead(**_row_to_webhook(row)).model_dump() for row in rows]
        return create_pagination_response(items, limit, "created_at", "desc", cursor)

    @classmethod
    async def get_webhook(cls, webhook_id: str) -> Dict[str, Any]:
        cls._check_id(webhook_id)
        conn = get_connection()
        try:
            row = cls._fetch(conn, webhook_id)
        finally:
            conn.close()
        return WebhookWithSecret(**_row_to_webhook(row)).model_dump()

    @classmethod
    async def create_webhook(cls, data: WebhookCreate) -> Dict[str, Any]:
        """Register an endpoint.  The response carries the signing secret."""
        if not data.url:
            raise InvalidInputError("URL is required")
        if data.events is None:
            raise InvalidInputError("Events array is required")
        error = validate_webhook_url(data.url) or validate_event_types(data.events)
        if error:
            raise InvalidInputError(error)

        webhook_id = new_id()
        timestamp = now_iso()
        conn = get_connection()
        try:
            try:
                conn.execute(
                    """
                    INSERT INTO webhook_endpoints (id, url, events, description, secret, is_active, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        webhook_id,
                        data.url,
                        json.dumps(data.events),
                        data.description or None,
                        secrets.token_hex(32),
                        0 if data.is_active is False else 1,
                        timestamp,
                        timestamp,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise AlreadyExistsError("A webhook with this URL already exists") from exc
            conn.commit()
            row = cls._fetch(conn, webhook_id)
        finally:
            conn.close()
        logger.info("Webhook endpoint registered: %s", data.url)
        return WebhookWithSecret(**_row_to_webhook(row)).model_dump()

    @classmethod
    async def update_webhook(cls, webhook_id: str, data: WebhookUpdate) -> Dict[str, Any]:
        cls._check_id(webhook_id)
        fields = data.model_dump(exclude_unset=True)
        conn = get_connection()
        try:
            cls._fetch(conn, webhook_id)
            updates: Dict[str, Any] = {}
            if "url" in fields:
                error = validate_webhook_url(fields["url"] or "")
                if error:
                    raise InvalidInputError(error)
                updates["url"] = fields["url"]
            if "events" in fields:
                error = validate_event_types(fields["events"])
                if error:
                    raise InvalidInputError(error)
                updates["events"] = json.dumps(fields["events"])
            if "description" in fields:
                updates["description"] = fields["description"] or None
            if isinstance(fields.get("is_active"), bool):
                updates["is_active"] = 1 if fields["is_active"] else 0

            if updates:
                updates["updated_at"] = now_iso()
                assignments = ", ".join(f"{column} = ?" for column in updates)
                try:
                    conn.execute(
                        f"UPDATE webhook_endpoints SET {assignments} WHERE id = ?",
                        (*updates.values(), webhook_id),
                    )
                except sqlite3.IntegrityError as exc:
                    raise AlreadyExistsError("A webhook with this URL already exists") from exc
                conn.commit()
            row = cls._fetch(conn, webhook_id)
        finally:
            conn.close()
        return WebhookRead(**_row_to_webhook(row)).model_dump()

    @classmethod
    async def delete_webhook(cls, webhook_id: str) -> None:
        cls._check_id(webhook_id)
        conn = get_connection()
        try:
            cls._fetch(conn, webhook_id)
            conn.execute("DELETE FROM webhook_endpoints WHERE id = ?", (webhook_id,))
            conn.commit()
        finally:
            conn.close()

    @classmethod
    async def list_logs(
        cls,
        limit: int,
        cursor: Optional[str] = None,
        endpoint_id: Optional[str] = None,
        status: str = "all",
        event_type: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        where: List[str] = []
        params: List[Any] = []
        if endpoint_id:
            where.append("l.endpoint_id = ?")
            params.append(endpoint_id)
        if status != "all":
            if status not in LOG_STATUSES:
                raise InvalidInputError(f"Invalid status. Valid values: {', '.join(LOG_STATUSES)}")
            where.append("l.status = ?")
            params.append(status)
        if event_type:
            where.append("l.event_type = ?")
            params.append(event_type)
        apply_cursor(where, params, cursor, "created_at", "desc", column="l.created_at", id_column="l.id")

        query = """
            SELECT l.*, e.url AS e_url, e.description AS e_description, e.is_active AS e_is_active
            FROM webhook_logs l LEFT JOIN webhook_endpoints e ON e.id = l.endpoint_id
        """
        if where:
            query += " WHERE " + " AND ".join(where)
        query += f" {order_clause('l.created_at', 'desc', id_column='l.id')} LIMIT ?"
        params.append(limit + 1)
        conn = get_connection()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()

        items = []
        for row in rows:
            endpoint = None
            if row["e_url"] is not None:
                endpoint = {
                    "id": row["endpoint_id"],
                    "url": row["e_url"],
                    "description": row["e_description"],
                    "is_active": bool(row["e_is_active"]),
                }
            log = {key: row[key] for key in row.keys() if not key.startswith("e_")}
            log["payload"] = load_json(log["payload"], {})
            log["endpoint"] = endpoint
            items.append(WebhookLogRead(**log).model_dump())
        return create_pagination_response(items, limit, "created_at", "desc", cursor)

    # Delivery

    @classmethod
    def _dispatch(
        cls,
        endpoint: Dict[str, Any],
        event: str,
        payload: Dict[str, Any],
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> DeliveryResult:
        """POST ``payload`` to one endpoint and record the attempt."""
        body = json.dumps(payload)
        timeout = settings.webhook_timeout_seconds
        headers = {
            "Content-Type": "application/json",
            "X-GateFlow-Event": event,
            "X-GateFlow-Signature": sign_payload(body, endpoint["secret"]),
            "X-GateFlow-Timestamp": payload.get("timestamp") or now_iso(),
        }
        headers.update(extra_headers or {})

        http_status = 0
        response_body = ""
        error_message: Optional[str] = None
        status = "failed"
        started = time.monotonic()
        try:
            response = httpx.post(endpoint["url"], content=body, headers=headers, timeout=timeout)
            http_status = response.status_code
            response_body = response.text
            if response.is_success:
                status = "success"
            else:
                error_message = f"HTTP {response.status_code}"
        except httpx.TimeoutException:
            error_message = f"Request timed out ({timeout:g}s)"
            http_status = 408
        except httpx.HTTPError as exc:
            error_message = str(exc) or exc.__class__.__name__
            http_status = 0
        duration_ms = int((time.monotonic() - started) * 1000)

        if status != "success":
            logger.warning("Webhook %s to %s failed: %s", event, endpoint["url"], error_message)

        conn = get_connection()
        try:
            conn.execute(
                """
                INSERT INTO webhook_logs (id, endpoint_id, event_type, payload, status, http_status,
                                          response_body, error_message, duration_ms, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    new_id(),
                    endpoint["id"],
                    event,
                    body,
                    status,
                    http_status,
                    response_body[:_RESPONSE_BODY_LIMIT] if response_body else None,
                    error_message,
                    duration_ms,
                    now_iso(),
                ),
            )
            conn.commit()
        finally:
            conn.close()
        return DeliveryResult(success=status == "success", status=http_status, error=error_message)

    @classmethod
    async def trigger(cls, event: str, data: Dict[str, Any]) -> None:
        """Deliver ``event`` to every active endpoint subscribed to it.

        Never raises: webhook problems must not fail the write that
        caused them.
        """
        try:
            conn = get_connection()
            try:
                rows = conn.execute(
                    "SELECT id, url, secret, events FROM webhook_endpoints WHERE is_active = 1"
                ).fetchall()
            finally:
                conn.close()
            endpoints = [dict(row) for row in rows if event in load_json(row["events"], [])]
            if not endpoints:
                return
            payload = {"event": event, "timestamp": now_iso(), "data": data}
            for endpoint in endpoints:
                try:
                    cls._dispatch(endpoint, event, payload)
                except Exception:
                    logger.exception("Webhook %s to %s could not be delivered", event, endpoint["url"])
        except Exception:
            logger.exception("Error while triggering webhook event %s", event)

    @classmethod
    async def test_endpoint(cls, webhook_id: str, event_type: Optional[str] = None) -> Dict[str, Any]:
        """Send a sample ``event_type`` payload to one endpoint."""
        cls._check_id(webhook_id)
        event_type = event_type or "test.event"
        conn = get_connection()
        try:
            endpoint = dict(cls._fetch(conn, webhook_id))
        finally:
            conn.close()
        payload = {
            "event": event_type,
            "timestamp": now_iso(),
            "data": SAMPLE_PAYLOADS.get(event_type, SAMPLE_PAYLOADS["test.event"]),
        }
        return cls._dispatch(endpoint, event_type, payload).model_dump()

    @classmethod
    async def retry(cls, log_id: str) -> Dict[str, Any]:
        """Resend a logged delivery; the old log becomes ``retried`` once a response arrived."""
        if not is_valid_uuid(log_id):
            raise InvalidInputError("Invalid log ID format")
        conn = get_connection()
        try:
            log = conn.execute(
                "SELECT payload, endpoint_id, event_type FROM webhook_logs WHERE id = ?",
                (log_id,),
            ).fetchone()
            if not log:
                raise NotFoundError("Log entry not found")
            if not log["endpoint_id"]:
                raise InvalidInputError("Endpoint ID is missing in log entry")
            endpoint = conn.execute(
                "SELECT id, url, secret FROM webhook_endpoints WHERE id = ?",
                (log["endpoint_id"],),
            ).fetchone()
            if not endpoint:
                raise NotFoundError("Endpoint not found")
        finally:
            conn.close()

        result = cls._dispatch(
            dict(endpoint),
            log["event_type"],
            load_json(log["payload"], {}),
            extra_headers={"X-GateFlow-Retry": "true"},
        )
        if result.success or result.status > 0:
            conn = get_connection()
            try:
                conn.execute("UPDATE webhook_logs SET status = 'retried' WHERE id = ?", (log_id,))
                conn.commit()
            finally:
                conn.close()
        return result.model_dump()

    @classmethod
    async def count_active(cls) -> int:
        conn = get_connection()
        try:
            row = conn.execute("SELECT COUNT(*) AS n FROM webhook_endpoints WHERE is_active = 1").fetchone()
        finally:
            conn.close()
        return row["n"]
