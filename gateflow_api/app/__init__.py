"""
Application package for the GateFlow storefront API.

Each domain (products, coupons, payments, users, webhooks, refund
requests, analytics, API keys, system status) keeps its request and
response models in ``schemas``, its business logic in ``services`` and
its routes in ``api/v1/endpoints``.  Routers are grouped by version
under ``api/<version>/`` so a future ``v2`` can live beside ``v1``.
"""

from .main import app  # noqa: F401
