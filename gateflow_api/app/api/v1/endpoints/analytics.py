"""
Analytics endpoints for API v1 (scope ``analytics:read``).
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from gateflow_api.app.core.api_keys import Scopes
from gateflow_api.app.core.errors import success_response
from gateflow_api.app.core.pagination import parse_limit
from gateflow_api.app.core.security import AuthContext, require_scopes
from gateflow_api.app.services.analytics_service import TOP_PRODUCTS_MAX_LIMIT, AnalyticsService


router = APIRouter()


@router.get("/dashboard")
async def dashboard(
    product_id: Optional[str] = Query(None),
    auth: AuthContext = Depends(require_scopes(Scopes.ANALYTICS_READ)),
) -> dict:
    """Revenue, transaction, product, user and refund headline numbers."""
    return success_response(await AnalyticsService.get_dashboard(product_id))


@router.get("/revenue")
async def revenue(
    period: str = Query("month"),
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    product_id: Optional[str] = Query(None),
    group_by: Optional[str] = Query(None),
    auth: AuthContext = Depends(require_scopes(Scopes.ANALYTICS_READ)),
) -> dict:
    """Revenue for a period, bucketed by day, week or month.

    - **period**: day, week, month, quarter, year or all.
    - **start_date** overrides **period**.
    """
    return success_response(
        await AnalyticsService.get_revenue(
            period=period,
            start_date=start_date,
            end_date=end_date,
            product_id=product_id,
            group_by=group_by,
        )
    )


@router.get("/top-products")
async def top_products(
    period: str = Query("month"),
    limit: Optional[str] = Query(None),
    sort_by: str = Query("revenue"),
    auth: AuthContext = Depends(require_scopes(Scopes.ANALYTICS_READ)),
) -> dict:
    return success_response(
        await AnalyticsService.get_top_products(
            period=period,
            limit=parse_limit(limit, default=10, maximum=TOP_PRODUCTS_MAX_LIMIT),
            sort_by=sort_by,
        )
    )
