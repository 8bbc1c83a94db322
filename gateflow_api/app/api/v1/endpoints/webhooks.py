"""
Webhook endpoints for API v1.

Endpoint management, the delivery log, test sends and retries.  The
``/logs`` routes are declared before ``/{webhook_id}`` so that they are
matched first.
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, status

from gateflow_api.app.core.api_keys import Scopes
from gateflow_api.app.core.errors import success_response
from gateflow_api.app.core.pagination import ensure_valid_cursor, parse_limit
from gateflow_api.app.core.security import AuthContext, require_scopes
from gateflow_api.app.schemas.webhook import WebhookCreate, WebhookTest, WebhookUpdate
from gateflow_api.app.services.webhook_service import WebhookService


router = APIRouter()


@router.get("")
async def list_webhooks(
    limit: Optional[str] = Query(None),
    cursor: Optional[str] = Query(None),
    status_filter: str = Query("all", alias="status"),
    auth: AuthContext = Depends(require_scopes(Scopes.WEBHOOKS_READ)),
) -> dict:
    page, pagination = await WebhookService.list_webhooks(
        limit=parse_limit(limit, default=50),
        cursor=ensure_valid_cursor(cursor),
        status=status_filter,
    )
    return success_response(page, pagination)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_webhook(
    payload: WebhookCreate,
    auth: AuthContext = Depends(require_scopes(Scopes.WEBHOOKS_WRITE)),
) -> dict:
    """Register an endpoint.  The response carries the signing ``secret``."""
    return success_response(await WebhookService.create_webhook(payload))


@router.get("/logs")
async def list_webhook_logs(
    limit: Optional[str] = Query(None),
    cursor: Optional[str] = Query(None),
    endpoint_id: Optional[str] = Query(None),
    status_filter: str = Query("all", alias="status"),
    event_type: Optional[str] = Query(None),
    auth: AuthContext = Depends(require_scopes(Scopes.WEBHOOKS_READ)),
) -> dict:
    """Delivery attempts, newest first.

    - **status**: `success`, `failed`, `archived`, `retried` or `all`.
    """
    page, pagination = await WebhookService.list_logs(
        limit=parse_limit(limit, default=50),
        cursor=ensure_valid_cursor(cursor),
        endpoint_id=endpoint_id,
        status=status_filter,
        event_type=event_type,
    )
    return success_response(page, pagination)


@router.post("/logs/{log_id}/retry")
async def retry_webhook_delivery(
    log_id: str,
    auth: AuthContext = Depends(require_scopes(Scopes.WEBHOOKS_WRITE)),
) -> dict:
    return success_response(await WebhookService.retry(log_id))


@router.get("/{webhook_id}")
async def get_webhook(
    webhook_id: str,
    auth: AuthContext = Depends(require_scopes(Scopes.WEBHOOKS_READ)),
) -> dict:
    return success_response(await WebhookService.get_webhook(webhook_id))


@router.patch("/{webhook_id}")
async def update_webhook(
    webhook_id: str,
    payload: WebhookUpdate,
    auth: AuthContext = Depends(require_scopes(Scopes.WEBHOOKS_WRITE)),
) -> dict:
    return success_response(await WebhookService.update_webhook(webhook_id, payload))


@router.delete("/{webhook_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_webhook(
    webhook_id: str,
    auth: AuthContext = Depends(require_scopes(Scopes.WEBHOOKS_WRITE)),
) -> None:
    await WebhookService.delete_webhook(webhook_id)
    return None


@router.post("/{webhook_id}/test")
async def test_webhook(
    webhook_id: str,
    payload: Optional[WebhookTest] = Body(None),
    auth: AuthContext = Depends(require_scopes(Scopes.WEBHOOKS_WRITE)),
) -> dict:
    """Send a sample event (``test.event`` unless ``event_type`` is given)."""
    event_type = payload.event_type if payload else None
    return success_response(await WebhookService.test_endpoint(webhook_id, event_type))
