"""
Top-level router for version 1 of the API.

Aggregates the domain routers under the ``/api/v1`` prefix applied in
``main.create_app``.
"""

from fastapi import APIRouter

from .endpoints import (
    analytics,
    api_keys,
    auth,
    coupons,
    payments,
    products,
    refund_requests,
    system,
    users,
    webhooks,
)

router = APIRouter()

router.include_router(auth.router, prefix="/auth", tags=["auth"])
router.include_router(products.router, prefix="/products", tags=["products"])
router.include_router(coupons.router, prefix="/coupons", tags=["coupons"])
router.include_router(payments.router, prefix="/payments", tags=["payments"])
router.include_router(users.router, prefix="/users", tags=["users"])
router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
router.include_router(refund_requests.router, prefix="/refund-requests", tags=["refund-requests"])
router.include_router(analytics.router, prefix="/analytics", tags=["analytics"])
router.include_router(api_keys.router, prefix="/api-keys", tags=["api-keys"])
router.include_router(system.router, prefix="/system", tags=["system"])
