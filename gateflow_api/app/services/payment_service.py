"""
Service layer for payment transactions.

Handles listing and exporting transactions, summary statistics and
admin-initiated refunds through Stripe.  A refund updates the
transaction, revokes the buyer's product access, writes an audit entry
and fires the ``payment.refunded`` webhook.
"""

from __future__ import annotations

import csv
import io
import logging
import sqlite3
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from gateflow_api.app.core.db import (
    format_timestamp,
    get_connection,
    is_valid_uuid,
    now_iso,
    parse_timestamp,
    utc_now,
)
from gateflow_api.app.core.errors import (
    ApiError,
    AuthError,
    ErrorCode,
    InvalidInputError,
    NotFoundError,
)
from gateflow_api.app.core.pagination import apply_cursor, create_pagination_response, order_clause
from gateflow_api.app.core.rate_limit import ADMIN_EXPORT_LIMIT, ADMIN_REFUND_LIMIT, check_rate_limit
from gateflow_api.app.schemas.payment import PaymentExportFilters, PaymentRead, PaymentRefundRequest
from gateflow_api.app.services import stripe_client
from gateflow_api.app.services.audit_service import AuditService
from gateflow_api.app.services.webhook_service import WebhookService


logger = logging.getLogger(__name__)

PAYMENT_SORT_FIELDS = ("created_at", "amount", "customer_email")
REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")
MAX_REFUND_AMOUNT = 99999999
STATS_PERIODS = {"7d": 7, "30d": 30, "90d": 90, "all": None}
PAID_STATUSES = ("completed", "partially_refunded", "refunded")

CSV_HEADERS = [
    "Transaction ID",
    "Session ID",
    "User ID",
    "Customer Email",
    "Product Name",
    "Product Slug",
    "Amount",
    "Currency",
    "Status",
    "Refunded Amount",
    "Refund Reason",
    "Created At",
    "Updated At",
]

_SELECT = """
    SELECT t.*, p.name AS product_name, p.slug AS product_slug
    FROM payment_transactions t
    LEFT JOIN products p ON p.id = t.product_id
"""


def _row_to_payment(row: sqlite3.Row) -> Dict[str, Any]:
    refund = None
    if row["refund_id"]:
        refund = {
            "id": row["refund_id"],
            "amount": row["refunded_amount"],
            "refunded_at": row["refunded_at"],
            "reason": row["refund_reason"],
        }
    return PaymentRead(
        id=row["id"],
        customer_email=row["customer_email"],
        amount=row["amount"],
        currency=row["currency"],
        status=row["status"],
        stripe_payment_intent_id=row["stripe_payment_intent_id"],
        product={"id": row["product_id"], "name": row["product_name"], "slug": row["product_slug"]},
        user_id=row["user_id"],
        session_id=row["session_id"],
        refund=refund,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    ).model_dump()


def _date_filters(where: List[str], params: List[Any], date_from: Optional[str], date_to: Optional[str]) -> None:
    """Unparseable dates are ignored."""
    start = parse_timestamp(date_from)
    if start:
        where.append("t.created_at >= ?")
        params.append(format_timestamp(start))
    end = parse_timestamp(date_to)
    if end:
        where.append("t.created_at <= ?")
        params.append(format_timestamp(end))


def apply_refund(
    cursor: sqlite3.Cursor,
    payment: sqlite3.Row,
    refund: Dict[str, Any],
    admin_id: Optional[str],
    reason: Optional[str],
) -> Tuple[str, int]:
    """Record a Stripe refund on ``payment`` and revoke the buyer's access.

    Returns the new transaction status and the total refunded amount.
    """
    total_refunded = (payment["refunded_amount"] or 0) + int(refund.get("amount") or 0)
    new_status = "refunded" if total_refunded >= payment["amount"] else "partially_refunded"
    timestamp = now_iso()
    cursor.execute(
        """
        UPDATE payment_transactions
        SET status = ?, refund_id = ?, refunded_amount = ?, refunded_at = ?, refunded_by = ?,
            refund_reason = ?, updated_at = ?
        WHERE id = ?
        """,
        (new_status, refund.get("id"), total_refunded, timestamp, admin_id, reason, timestamp, payment["id"]),
    )
    if payment["user_id"] and payment["product_id"]:
        cursor.execute(
            "DELETE FROM user_product_access WHERE user_id = ? AND product_id = ?",
            (payment["user_id"], payment["product_id"]),
        )
    return new_status, total_refunded


class PaymentService:
    """Service class for payment transactions."""

    @classmethod
    async def list_payments(
        cls,
        limit: int,
        cursor: Optional[str] = None,
        status: str = "all",
        product_id: Optional[str] = None,
        email: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        sort: str = "-created_at",
    ) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        direction = "desc" if sort.startswith("-") else "asc"
        field = sort.lstrip("-")
        if field not in PAYMENT_SORT_FIELDS:
            raise InvalidInputError(f"Invalid sort field. Allowed: {', '.join(PAYMENT_SORT_FIELDS)}")

        where: List[str] = []
        params: List[Any] = []
        if status and status != "all":
            where.append("t.status = ?")
            params.append(status)
        if product_id:
            where.append("t.product_id = ?")
            params.append(product_id)
        if email:
            where.append("t.customer_email LIKE ?")
            params.append(f"%{email}%")
        _date_filters(where, params, date_from, date_to)
        apply_cursor(where, params, cursor, field, direction, column=f"t.{field}", id_column="t.id")

        query = _SELECT
        if where:
            query += " WHERE " + " AND ".join(where)
        query += f" {order_clause(f't.{field}', direction, id_column='t.id')} LIMIT ?"
        params.append(limit + 1)
        conn = get_connection()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        items = [_row_to_payment(row) for row in rows]
        return create_pagination_response(items, limit, field, direction, cursor)

    @classmethod
    async def get_payment(cls, payment_id: str) -> Dict[str, Any]:
        if not is_valid_uuid(payment_id):
            raise InvalidInputError("Invalid payment ID format")
        conn = get_connection()
        try:
            row = conn.execute(_SELECT + " WHERE t.id = ?", (payment_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFoundError("Payment not found")
        return _row_to_payment(row)

    @classmethod
    async def get_stats(cls, period: str = "30d") -> Dict[str, Any]:
        if period not in STATS_PERIODS:
            raise InvalidInputError(f"Invalid period. Valid values: {', '.join(STATS_PERIODS)}")
        days = STATS_PERIODS[period]
        where = [f"status IN ({', '.join('?' for _ in PAID_STATUSES)})"]
        params: List[Any] = list(PAID_STATUSES)
        all_where: List[str] = []
        all_params: List[Any] = []
        if days is not None:
            since = format_timestamp(utc_now() - timedelta(days=days))
            where.append("created_at >= ?")
            params.append(since)
            all_where.append("created_at >= ?")
            all_params.append(since)

        conn = get_connection()
        try:
            paid = conn.execute(
                f"""
                SELECT COUNT(*) AS n,
                       COALESCE(SUM(amount - refunded_amount), 0) AS revenue,
                       SUM(CASE WHEN refunded_amount > 0 THEN 1 ELSE 0 END) AS refunded
                FROM payment_transactions WHERE {' AND '.join(where)}
                """,
                params,
            ).fetchone()
            total = conn.execute(
                "SELECT COUNT(*) AS n FROM payment_transactions"
                + (f" WHERE {' AND '.join(all_where)}" if all_where else ""),
                all_params,
            ).fetchone()
        finally:
            conn.close()

        paid_count = paid["n"] or 0
        refunded = paid["refunded"] or 0
        revenue = paid["revenue"] or 0
        return {
            "period": period,
            "total_revenue": revenue,
            "total_transactions": total["n"],
            "paid_transactions": paid_count,
            "avg_transaction_value": round(revenue / paid_count) if paid_count else 0,
            "refunded_transactions": refunded,
            "refund_rate": round(refunded / paid_count * 100, 2) if paid_count else 0,
        }

    @classmethod
    async def refund_payment(
        cls, payment_id: str, data: Optional[PaymentRefundRequest], admin_id: str
    ) -> Dict[str, Any]:
        """Refund a completed payment through Stripe."""
        if not is_valid_uuid(payment_id):
            raise InvalidInputError("Invalid payment ID format")
        action, max_requests, window = ADMIN_REFUND_LIMIT
        if not check_rate_limit(f"{action}:{admin_id}", max_requests, window):
            raise AuthError("Rate limit exceeded. Maximum 10 refunds per hour.", code=ErrorCode.RATE_LIMITED)

        data = data or PaymentRefundRequest()
        if data.reason and data.reason not in REFUND_REASONS:
            raise InvalidInputError(f"Invalid refund reason. Valid values: {', '.join(REFUND_REASONS)}")

        conn = get_connection()
        try:
            cursor = conn.cursor()
            payment = cursor.execute("SELECT * FROM payment_transactions WHERE id = ?", (payment_id,)).fetchone()
            if not payment:
                raise NotFoundError("Payment not found")
            if payment["status"] != "completed":
                raise InvalidInputError("Only completed payments can be refunded")
            if not payment["stripe_payment_intent_id"]:
                raise InvalidInputError("Payment does not have a Stripe payment intent")

            amount = data.amount if data.amount is not None else payment["amount"]
            if amount != int(amount) or amount <= 0:
                raise InvalidInputError("Refund amount must be a positive integer (in cents)")
            amount = int(amount)
            if amount > MAX_REFUND_AMOUNT:
                raise InvalidInputError(f"Refund amount cannot exceed {MAX_REFUND_AMOUNT} cents")
            refundable = payment["amount"] - (payment["refunded_amount"] or 0)
            if amount > refundable:
                raise InvalidInputError(f"Refund amount ({amount}) exceeds refundable amount ({refundable})")

            try:
                refund = stripe_client.create_refund(
                    payment["stripe_payment_intent_id"],
                    amount=amount if data.amount is not None else None,
                    reason=data.reason,
                )
            except stripe_client.StripeError as exc:
                if exc.is_api_error:
                    raise InvalidInputError(f"Stripe error: {exc.message}") from exc
                raise ApiError("Failed to process refund with Stripe", code=ErrorCode.INTERNAL_ERROR) from exc

            new_status, total_refunded = apply_refund(cursor, payment, refund, admin_id, data.reason)
            conn.commit()
        finally:
            conn.close()

        await AuditService.log(
            admin_id,
            "refund_processed",
            "payment_transaction",
            payment_id,
            {"refund_id": refund.get("id"), "amount": refund.get("amount"), "reason": data.reason, "via_api": True},
        )
        await WebhookService.trigger(
            "payment.refunded",
            {
                "payment_id": payment_id,
                "amount": refund.get("amount"),
                "currency": refund.get("currency") or payment["currency"],
                "status": new_status,
                "customer_email": payment["customer_email"],
                "product_id": payment["product_id"],
            },
        )
        return {
            "payment_id": payment_id,
            "refund": {
                "id": refund.get("id"),
                "amount": refund.get("amount"),
                "currency": refund.get("currency"),
                "status": refund.get("status"),
                "reason": refund.get("reason"),
            },
            "payment_status": new_status,
            "total_refunded": total_refunded,
            "created_at": now_iso(),
        }

    @classmethod
    async def export_csv(cls, filters: PaymentExportFilters, requester_id: str) -> str:
        """Render matching transactions as CSV, newest first."""
        action, max_requests, window = ADMIN_EXPORT_LIMIT
        if not check_rate_limit(f"{action}:{requester_id}", max_requests, window):
            raise AuthError("Rate limit exceeded. Maximum 5 exports per hour.", code=ErrorCode.RATE_LIMITED)

        where: List[str] = []
        params: List[Any] = []
        if filters.status and filters.status != "all":
            where.append("t.status = ?")
            params.append(filters.status)
        if filters.product_id:
            if not is_valid_uuid(filters.product_id):
                raise InvalidInputError("Invalid product ID format")
            where.append("t.product_id = ?")
            params.append(filters.product_id)
        if filters.email:
            where.append("t.customer_email LIKE ?")
            params.append(f"%{filters.email}%")
        _date_filters(where, params, filters.date_from, filters.date_to)
        if filters.date_range and filters.date_range != "all" and not filters.date_from:
            try:
                days = int(filters.date_range)
            except ValueError:
                days = None
            if days is not None:
                where.append("t.created_at >= ?")
                params.append(format_timestamp(utc_now() - timedelta(days=days)))

        query = _SELECT
        if where:
            query += " WHERE " + " AND ".join(where)
        query += " ORDER BY t.created_at DESC, t.id DESC"
        conn = get_connection()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADERS)
        for row in rows:
            writer.writerow([
                row["id"],
                row["session_id"] or "",
                row["user_id"] or "",
                row["customer_email"] or "",
                row["product_name"] or "",
                row["product_slug"] or "",
                f"{row['amount'] / 100:.2f}",
                row["currency"],
                row["status"],
                f"{(row['refunded_amount'] or 0) / 100:.2f}",
                row["refund_reason"] or "",
                row["created_at"],
                row["updated_at"],
            ])
        logger.info("Exported %s payment transactions", len(rows))
        return buffer.getvalue()
