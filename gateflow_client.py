"""GateFlow API client.

A small wrapper around the ``/api/v1`` REST API built on ``requests``.
It authenticates with an API key sent in the ``X-API-Key`` header,
unwraps the ``{"data": ...}`` success envelope and turns error
envelopes into :class:`GateFlowAPIError`.

The client exposes high-level methods for the common operations:

* products: :meth:`list_products`, :meth:`get_product`,
  :meth:`create_product`, :meth:`update_product`, :meth:`delete_product`
* coupons: :meth:`list_coupons`, :meth:`create_coupon`,
  :meth:`delete_coupon`
* webhooks: :meth:`list_webhooks`, :meth:`create_webhook`,
  :meth:`test_webhook`
* API keys (admin session only): :meth:`list_api_keys`,
  :meth:`create_api_key`, :meth:`rotate_api_key`, :meth:`revoke_api_key`
* :meth:`system_status`

List endpoints are cursor paginated; :meth:`paginate` walks every page.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple

import requests


logger = logging.getLogger(__name__)


class GateFlowAPIError(Exception):
    """An error envelope returned by the API, or a transport failure.

    Attributes:
        status_code: HTTP status, ``None`` when no response arrived.
        code: Error code from the envelope (``NOT_FOUND``, ...).
        message: Human readable message.
        details: Optional per-field validation messages.
    """

    def __init__(
        self,
        status_code: Optional[int],
        code: str,
        message: str,
        details: Optional[Dict[str, List[str]]] = None,
    ) -> None:
        super().__init__(f"{code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details


class GateFlowClient:
    """Client for the GateFlow REST API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: Optional[str] = None,
        session_token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 15,
    ) -> None:
        """Initialise the API client.

        Args:
            base_url: Site URL, e.g. ``https://shop.example.com``.  The
                ``/api/v1`` prefix is added automatically.
            api_key: A ``gf_live_``/``gf_test_`` key sent as ``X-API-Key``.
            session_token: Admin session token, sent as a bearer token.
                Needed for API key management.
            session: Optional requests session.
            timeout: Per-request timeout in seconds.
        """
        self.base_url = base_url.rstrip("/") + "/api/v1"
        self.api_key = api_key
        self.session_token = session_token
        self.session = session or requests.Session()
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Low level HTTP helpers
    # ------------------------------------------------------------------
    def _headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        if self.session_token:
            headers["Authorization"] = f"Bearer {self.session_token}"
        return headers

    def _raw_request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
    ) -> requests.Response:
        url = f"{self.base_url}{path}"
        clean_params = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            logger.debug("Sending %s request to %s", method, url)
            response = self.session.request(
                method=method,
                url=url,
                params=clean_params or None,
                json=json_body,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("API request failed: %s", exc)
            raise GateFlowAPIError(None, "NETWORK_ERROR", str(exc)) from exc
        if response.status_code >= 400:
            code, message, details = "HTTP_ERROR", response.text or response.reason, None
            try:
                error = response.json().get("error") or {}
                code = error.get("code", code)
                message = error.get("message", message)
                details = error.get("details")
            except (ValueError, AttributeError):
                pass
            logger.error("API request failed (%s): %s", response.status_code, message)
            raise GateFlowAPIError(response.status_code, code, message, details)
        return response

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
    ) -> Tuple[Any, Optional[Dict[str, Any]]]:
        """Perform a request and unwrap the success envelope.

        Returns:
            A tuple ``(data, pagination)``.  Both are ``None`` for 204
            responses; ``pagination`` is ``None`` for single objects.
        """
        response = self._raw_request(method, path, params=params, json_body=json_body)
        if response.status_code == 204 or not response.content:
            return None, None
        body = response.json()
        return body.get("data"), body.get("pagination")

    def paginate(self, path: str, params: Optional[Dict[str, Any]] = None) -> Iterator[Dict[str, Any]]:
        """Yield every item of a cursor paginated list endpoint."""
        query = dict(params or {})
        while True:
            items, pagination = self._request("GET", path, params=query)
            for item in items or []:
                yield item
            if not pagination or not pagination.get("has_more"):
                return
            query["cursor"] = pagination["next_cursor"]

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------
    def list_products(self, **params: Any) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        """One page of products; accepts ``limit``, ``cursor``, ``search``, ``status``..."""
        return self._request("GET", "/products", params=params)

    def get_product(self, product_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/products/{product_id}")[0]

    def create_product(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/products", json_body=payload)[0]

    def update_product(self, product_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PATCH", f"/products/{product_id}", json_body=payload)[0]

    def delete_product(self, product_id: str) -> None:
        self._request("DELETE", f"/products/{product_id}")

    # ------------------------------------------------------------------
    # Coupons
    # ------------------------------------------------------------------
    def list_coupons(self, **params: Any) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        return self._request("GET", "/coupons", params=params)

    def create_coupon(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/coupons", json_body=payload)[0]

    def delete_coupon(self, coupon_id: str) -> None:
        self._request("DELETE", f"/coupons/{coupon_id}")

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------
    def list_webhooks(self, **params: Any) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        return self._request("GET", "/webhooks", params=params)

    def create_webhook(self, url: str, events: List[str], description: Optional[str] = None) -> Dict[str, Any]:
        """Register a webhook endpoint.  The result includes its signing secret."""
        payload: Dict[str, Any] = {"url": url, "events": events}
        if description is not None:
            payload["description"] = description
        return self._request("POST", "/webhooks", json_body=payload)[0]

    def test_webhook(self, webhook_id: str, event_type: Optional[str] = None) -> Dict[str, Any]:
        body = {"event_type": event_type} if event_type else None
        return self._request("POST", f"/webhooks/{webhook_id}/test", json_body=body)[0]

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------
    def list_api_keys(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/api-keys")[0]

    def create_api_key(
        self,
        name: str,
        scopes: Optional[List[str]] = None,
        rate_limit_per_minute: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Create a key; the plaintext ``key`` field is only returned here."""
        payload: Dict[str, Any] = {"name": name}
        if scopes is not None:
            payload["scopes"] = scopes
        if rate_limit_per_minute is not None:
            payload["rate_limit_per_minute"] = rate_limit_per_minute
        return self._request("POST", "/api-keys", json_body=payload)[0]

    def rotate_api_key(self, key_id: str, grace_period_hours: Optional[int] = None) -> Dict[str, Any]:
        body = {"grace_period_hours": grace_period_hours} if grace_period_hours is not None else None
        return self._request("POST", f"/api-keys/{key_id}/rotate", json_body=body)[0]

    def revoke_api_key(self, key_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        return self._request("DELETE", f"/api-keys/{key_id}", params={"reason": reason})[0]

    # ------------------------------------------------------------------
    # System
    # ------------------------------------------------------------------
    def system_status(self) -> Dict[str, Any]:
        return self._request("GET", "/system/status")[0]
