"""
Payment endpoints for API v1.

Listing, statistics and CSV export need ``analytics:read``.  Refunds
move money and therefore require full access (``*``).
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Response

from gateflow_api.app.core.api_keys import Scopes
from gateflow_api.app.core.db import utc_now
from gateflow_api.app.core.errors import success_response
from gateflow_api.app.core.pagination import ensure_valid_cursor, parse_limit
from gateflow_api.app.core.security import AuthContext, require_scopes
from gateflow_api.app.schemas.payment import PaymentExportFilters, PaymentRefundRequest
from gateflow_api.app.services.payment_service import PaymentService


router = APIRouter()


@router.get("")
async def list_payments(
    limit: Optional[str] = Query(None),
    cursor: Optional[str] = Query(None),
    status_filter: str = Query("all", alias="status"),
    product_id: Optional[str] = Query(None),
    email: Optional[str] = Query(None),
    date_from: Optional[str] = Query(None),
    date_to: Optional[str] = Query(None),
    sort: str = Query("-created_at"),
    auth: AuthContext = Depends(require_scopes(Scopes.ANALYTICS_READ)),
) -> dict:
    """List payment transactions, newest first by default.

    - **sort**: `created_at`, `amount` or `customer_email`, `-` prefix
      for descending.
    - **email** matches any part of the customer email.
    """
    page, pagination = await PaymentService.list_payments(
        limit=parse_limit(limit, default=50),
        cursor=ensure_valid_cursor(cursor),
        status=status_filter,
        product_id=product_id,
        email=email,
        date_from=date_from,
        date_to=date_to,
        sort=sort,
    )
    return success_response(page, pagination)


@router.get("/stats")
async def payment_stats(
    period: str = Query("30d"),
    auth: AuthContext = Depends(require_scopes(Scopes.ANALYTICS_READ)),
) -> dict:
    return success_response(await PaymentService.get_stats(period))


@router.post("/export")
async def export_payments(
    filters: Optional[PaymentExportFilters] = Body(None),
    auth: AuthContext = Depends(require_scopes(Scopes.ANALYTICS_READ)),
) -> Response:
    """Export matching transactions as a CSV attachment."""
    requester = auth.api_key_id or auth.admin_id
    content = await PaymentService.export_csv(filters or PaymentExportFilters(), requester)
    filename = f"payments-{utc_now().date().isoformat()}.csv"
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/{payment_id}")
async def get_payment(
    payment_id: str,
    auth: AuthContext = Depends(require_scopes(Scopes.ANALYTICS_READ)),
) -> dict:
    return success_response(await PaymentService.get_payment(payment_id))


@router.post("/{payment_id}/refund")
async def refund_payment(
    payment_id: str,
    payload: Optional[PaymentRefundRequest] = Body(None),
    auth: AuthContext = Depends(require_scopes(Scopes.FULL_ACCESS)),
) -> dict:
    """Refund a completed payment through Stripe.

    Omit ``amount`` to refund everything that has not been refunded yet.
    Limited to 10 refunds per hour per administrator.
    """
    return success_response(await PaymentService.refund_payment(payment_id, payload, auth.admin_id))
