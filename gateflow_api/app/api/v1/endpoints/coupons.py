"""
Coupon endpoints for API v1.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from gateflow_api.app.core.api_keys import Scopes
from gateflow_api.app.core.errors import success_response
from gateflow_api.app.core.pagination import ensure_valid_cursor, parse_limit
from gateflow_api.app.core.security import AuthContext, require_scopes
from gateflow_api.app.schemas.coupon import CouponCreate, CouponUpdate
from gateflow_api.app.services.coupon_service import CouponService


router = APIRouter()


@router.get("")
async def list_coupons(
    limit: Optional[str] = Query(None),
    cursor: Optional[str] = Query(None),
    status_filter: str = Query("all", alias="status"),
    search: Optional[str] = Query(None),
    sort: str = Query("-created_at"),
    auth: AuthContext = Depends(require_scopes(Scopes.COUPONS_READ)),
) -> dict:
    """List coupons.

    - **status**: `all`, `active`, `inactive` or `expired`.
    - **sort**: field name, `-` prefix for descending.
    """
    page, pagination = await CouponService.list_coupons(
        limit=parse_limit(limit),
        cursor=ensure_valid_cursor(cursor),
        status=status_filter,
        search=search,
        sort=sort,
    )
    return success_response(page, pagination)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_coupon(
    payload: CouponCreate,
    auth: AuthContext = Depends(require_scopes(Scopes.COUPONS_WRITE)),
) -> dict:
    return success_response(await CouponService.create_coupon(payload))


@router.get("/{coupon_id}")
async def get_coupon(
    coupon_id: str,
    auth: AuthContext = Depends(require_scopes(Scopes.COUPONS_READ)),
) -> dict:
    return success_response(await CouponService.get_coupon(coupon_id))


@router.patch("/{coupon_id}")
async def update_coupon(
    coupon_id: str,
    payload: CouponUpdate,
    auth: AuthContext = Depends(require_scopes(Scopes.COUPONS_WRITE)),
) -> dict:
    """Partially update a coupon.  OTO coupons only accept ``is_active``."""
    return success_response(await CouponService.update_coupon(coupon_id, payload))


@router.delete("/{coupon_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_coupon(
    coupon_id: str,
    auth: AuthContext = Depends(require_scopes(Scopes.COUPONS_WRITE)),
) -> None:
    await CouponService.delete_coupon(coupon_id)
    return None


@router.get("/{coupon_id}/stats")
async def get_coupon_stats(
    coupon_id: str,
    auth: AuthContext = Depends(require_scopes(Scopes.COUPONS_READ)),
) -> dict:
    """Redemption summary, the latest redemptions and 30 days of daily usage."""
    return success_response(await CouponService.get_stats(coupon_id))
