"""
Refund request endpoints for API v1.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from gateflow_api.app.core.api_keys import Scopes
from gateflow_api.app.core.errors import success_response
from gateflow_api.app.core.pagination import ensure_valid_cursor, parse_limit
from gateflow_api.app.core.security import AuthContext, require_scopes
from gateflow_api.app.schemas.refund_request import RefundRequestProcess
from gateflow_api.app.services.refund_request_service import RefundRequestService


router = APIRouter()


@router.get("")
async def list_refund_requests(
    limit: Optional[str] = Query(None),
    cursor: Optional[str] = Query(None),
    status_filter: str = Query("all", alias="status"),
    user_id: Optional[str] = Query(None),
    product_id: Optional[str] = Query(None),
    auth: AuthContext = Depends(require_scopes(Scopes.REFUND_REQUESTS_READ)),
) -> dict:
    page, pagination = await RefundRequestService.list_requests(
        limit=parse_limit(limit),
        cursor=ensure_valid_cursor(cursor),
        status=status_filter,
        user_id=user_id,
        product_id=product_id,
    )
    return success_response(page, pagination)


@router.get("/{request_id}")
async def get_refund_request(
    request_id: str,
    auth: AuthContext = Depends(require_scopes(Scopes.REFUND_REQUESTS_READ)),
) -> dict:
    return success_response(await RefundRequestService.get_request(request_id))


@router.patch("/{request_id}")
async def process_refund_request(
    request_id: str,
    payload: RefundRequestProcess,
    auth: AuthContext = Depends(require_scopes(Scopes.REFUND_REQUESTS_WRITE)),
) -> dict:
    """Approve or reject a pending request.

    Approval refunds the requested amount through Stripe when the
    transaction has a payment intent.
    """
    return success_response(await RefundRequestService.process_request(request_id, payload, auth.admin_id))
