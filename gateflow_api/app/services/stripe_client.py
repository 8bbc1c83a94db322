"""
Minimal Stripe REST client for refunds.

Refunds are created with a form-encoded ``POST /v1/refunds``
authenticated by the secret key.  An idempotency key is sent with
every request so that a retried call cannot refund twice.
"""

import logging
import uuid
from typing import Any, Dict, Optional

import httpx

from gateflow_api.app.core.config import settings


logger = logging.getLogger(__name__)


class StripeError(Exception):
    """Stripe rejected the request or could not be reached.

    ``is_api_error`` is ``True`` when Stripe answered with an error
    object (bad amount, already refunded, ...) as opposed to a network
    or configuration failure.
    """

    def __init__(self, message: str, is_api_error: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.is_api_error = is_api_error


def create_refund(
    payment_intent: str,
    amount: Optional[int] = None,
    reason: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> Dict[str, Any]:
    """Refund ``payment_intent`` (fully unless ``amount`` cents is given).

    Returns the Stripe refund object as a dict (``id``, ``amount``,
    ``currency``, ``status``, ``reason``...).
    """
    if not settings.stripe_secret_key:
        raise StripeError("Stripe is not configured")
    data: Dict[str, Any] = {"payment_intent": payment_intent}
    if amount is not None:
        data["amount"] = amount
    if reason:
        data["reason"] = reason
    headers = {
        "Authorization": f"Bearer {settings.stripe_secret_key}",
        "Idempotency-Key": idempotency_key or str(uuid.uuid4()),
    }
    try:
        response = httpx.post(f"{settings.stripe_api_base}/refunds", data=data, headers=headers, timeout=30)
    except httpx.HTTPError as exc:
        logger.error("Stripe request failed: %s", exc)
        raise StripeError(f"Could not reach Stripe: {exc}") from exc

    try:
        body = response.json()
    except ValueError:
        body = {}
    if response.is_error:
        message = (body.get("error") or {}).get("message") or f"HTTP {response.status_code}"
        logger.warning("Stripe refund for %s rejected: %s", payment_intent, message)
        raise StripeError(message, is_api_error=True)
    logger.info("Stripe refund %s created for %s", body.get("id"), payment_intent)
    return body
