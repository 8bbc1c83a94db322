"""
Service layer for customer refund requests.

Customers file refund requests against a transaction; administrators
approve or reject them.  Approving a request backed by a Stripe
payment intent refunds the requested amount through Stripe and revokes
the customer's access.  When Stripe fails the request is put back to
``pending`` so it can be processed again.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Optional, Tuple

from gateflow_api.app.core.db import get_connection, is_valid_uuid, now_iso
from gateflow_api.app.core.errors import ApiError, ErrorCode, InvalidInputError, NotFoundError
from gateflow_api.app.core.pagination import apply_cursor, create_pagination_response, order_clause
from gateflow_api.app.schemas.refund_request import RefundRequestProcess, RefundRequestRead
from gateflow_api.app.services import stripe_client
from gateflow_api.app.services.audit_service import AuditService
from gateflow_api.app.services.payment_service import apply_refund
from gateflow_api.app.services.webhook_service import WebhookService


logger = logging.getLogger(__name__)

REFUND_REQUEST_STATUSES = ("pending", "approved", "rejected")
REFUND_REQUEST_ACTIONS = {"approve": "approved", "reject": "rejected"}

_SELECT = """
    SELECT r.*,
           p.name AS product_name, p.slug AS product_slug, p.price AS product_price,
           p.currency AS product_currency,
           t.customer_email AS tx_customer_email, t.amount AS tx_amount, t.currency AS tx_currency,
           t.status AS tx_status, t.stripe_payment_intent_id AS tx_payment_intent,
           t.created_at AS tx_created_at
    FROM refund_requests r
    LEFT JOIN products p ON p.id = r.product_id
    LEFT JOIN payment_transactions t ON t.id = r.transaction_id
"""


def _row_to_request(row: sqlite3.Row) -> Dict[str, Any]:
    product = None
    if row["product_name"] is not None:
        product = {
            "id": row["product_id"],
            "name": row["product_name"],
            "slug": row["product_slug"],
            "price": row["product_price"],
            "currency": row["product_currency"],
        }
    transaction = None
    if row["tx_amount"] is not None:
        transaction = {
            "id": row["transaction_id"],
            "customer_email": row["tx_customer_email"],
            "amount": row["tx_amount"],
            "currency": row["tx_currency"],
            "status": row["tx_status"],
            "stripe_payment_intent_id": row["tx_payment_intent"],
            "created_at": row["tx_created_at"],
        }
    return RefundRequestRead(
        id=row["id"],
        user_id=row["user_id"],
        product_id=row["product_id"],
        transaction_id=row["transaction_id"],
        customer_email=row["customer_email"],
        requested_amount=row["requested_amount"],
        currency=row["currency"],
        reason=row["reason"],
        status=row["status"],
        admin_id=row["admin_id"],
        admin_response=row["admin_response"],
        processed_at=row["processed_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        product=product,
        transaction=transaction,
    ).model_dump()


class RefundRequestService:
    """Service class for refund requests."""

    @classmethod
    async def list_requests(
        cls,
        limit: int,
        cursor: Optional[str] = None,
        status: str = "all",
        user_id: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        where: List[str] = []
        params: List[Any] = []
        if status and status != "all":
            if status not in REFUND_REQUEST_STATUSES:
                raise InvalidInputError(f"Invalid status. Valid values: {', '.join(REFUND_REQUEST_STATUSES)}")
            where.append("r.status = ?")
            params.append(status)
        if user_id:
            where.append("r.user_id = ?")
            params.append(user_id)
        if product_id:
            where.append("r.product_id = ?")
            params.append(product_id)
        apply_cursor(where, params, cursor, "created_at", "desc", column="r.created_at", id_column="r.id")

        query = _SELECT
        if where:
            query += " WHERE " + " AND ".join(where)
        query += f" {order_clause('r.created_at', 'desc', id_column='r.id')} LIMIT ?"
        params.append(limit + 1)
        conn = get_connection()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        items = [_row_to_request(row) for row in rows]
        return create_pagination_response(items, limit, "created_at", "desc", cursor)

    @classmethod
    async def get_request(cls, request_id: str) -> Dict[str, Any]:
        if not is_valid_uuid(request_id):
            raise InvalidInputError("Invalid refund request ID format")
        conn = get_connection()
        try:
            row = conn.execute(_SELECT + " WHERE r.id = ?", (request_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFoundError("Refund request not found")
        return _row_to_request(row)

    @classmethod
    async def process_request(
        cls, request_id: str, data: RefundRequestProcess, admin_id: str
    ) -> Dict[str, Any]:
        """Approve or reject a pending refund request.

        The request is marked processed before Stripe is called; a
        Stripe failure reverts it to ``pending`` and raises
        ``INTERNAL_ERROR``.
        """
        if not is_valid_uuid(request_id):
            raise InvalidInputError("Invalid refund request ID format")
        if data.action not in REFUND_REQUEST_ACTIONS:
            raise InvalidInputError('Action must be "approve" or "reject"')
        new_status = REFUND_REQUEST_ACTIONS[data.action]

        conn = get_connection()
        try:
            cursor = conn.cursor()
            request = cursor.execute("SELECT * FROM refund_requests WHERE id = ?", (request_id,)).fetchone()
            if not request:
                raise NotFoundError("Refund request not found")
            if request["status"] != "pending":
                raise InvalidInputError(
                    f"Cannot process refund request with status '{request['status']}'. "
                    "Only pending requests can be processed."
                )
            payment = cursor.execute(
                "SELECT * FROM payment_transactions WHERE id = ?",
                (request["transaction_id"],),
            ).fetchone()
            if not payment:
                logger.error("Refund request %s points at a missing transaction", request_id)
                raise ApiError("Transaction not found", code=ErrorCode.INTERNAL_ERROR)

            timestamp = now_iso()
            cursor.execute(
                """
                UPDATE refund_requests
                SET status = ?, admin_id = ?, admin_response = ?, processed_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (new_status, admin_id, data.admin_response or None, timestamp, timestamp, request_id),
            )
            conn.commit()

            refund = None
            if data.action == "approve" and payment["stripe_payment_intent_id"]:
                try:
                    refund = stripe_client.create_refund(
                        payment["stripe_payment_intent_id"],
                        amount=int(round(request["requested_amount"])),
                        reason="requested_by_customer",
                        idempotency_key=f"refund_request_{request_id}",
                    )
                except stripe_client.StripeError as exc:
                    logger.error("Stripe refund for request %s failed: %s", request_id, exc.message)
                    cursor.execute(
                        """
                        UPDATE refund_requests
                        SET status = 'pending', admin_id = NULL, admin_response = NULL, processed_at = NULL,
                            updated_at = ?
                        WHERE id = ?
                        """,
                        (now_iso(), request_id),
                    )
                    conn.commit()
                    raise ApiError(
                        "Failed to process refund with Stripe. Request has been reverted to pending.",
                        code=ErrorCode.INTERNAL_ERROR,
                    ) from exc
                refund.setdefault("amount", request["requested_amount"])
                payment_status, _ = apply_refund(
                    cursor,
                    payment,
                    refund,
                    admin_id,
                    data.admin_response or "Customer request approved",
                )
                conn.commit()
        finally:
            conn.close()

        await AuditService.log(
            admin_id,
            f"refund_request_{new_status}",
            "refund_request",
            request_id,
            {
                "transaction_id": request["transaction_id"],
                "requested_amount": request["requested_amount"],
                "stripe_refund_id": refund.get("id") if refund else None,
                "via_api": True,
            },
        )
        if refund is not None:
            await WebhookService.trigger(
                "payment.refunded",
                {
                    "payment_id": payment["id"],
                    "amount": refund.get("amount"),
                    "currency": refund.get("currency") or payment["currency"],
                    "status": payment_status,
                    "customer_email": payment["customer_email"],
                    "product_id": payment["product_id"],
                    "refund_request_id": request_id,
                },
            )
            return {
                "id": request_id,
                "status": "approved",
                "message": "Refund processed successfully",
                "stripe_refund_created": True,
            }
        return {
            "id": request_id,
            "status": new_status,
            "message": (
                "Refund request approved (no Stripe payment to refund)"
                if data.action == "approve"
                else "Refund request rejected"
            ),
        }
