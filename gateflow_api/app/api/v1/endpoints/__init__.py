"""
Endpoint subpackage for API v1.

Each module defines an APIRouter for one domain (products, coupons,
payments, ...).  The routers are aggregated in ``router.py``.
"""
