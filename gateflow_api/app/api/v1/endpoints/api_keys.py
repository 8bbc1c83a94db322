"""
API key management endpoints for API v1.

Keys can only be managed from an admin session, never with another
API key.  Every route is scoped to the calling administrator's keys.
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, status

from gateflow_api.app.core.errors import success_response
from gateflow_api.app.core.security import AuthContext, require_admin_session
from gateflow_api.app.schemas.api_key import ApiKeyCreate, ApiKeyRotate, ApiKeyUpdate
from gateflow_api.app.services.api_key_service import ApiKeyService


router = APIRouter()


@router.get("")
async def list_api_keys(auth: AuthContext = Depends(require_admin_session)) -> dict:
    return success_response(await ApiKeyService.list_keys(auth.admin_id))


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_api_key(
    payload: ApiKeyCreate,
    auth: AuthContext = Depends(require_admin_session),
) -> dict:
    """Create a key.  The plaintext ``key`` is only returned here."""
    return success_response(await ApiKeyService.create_key(auth.admin_id, payload))


@router.get("/{key_id}")
async def get_api_key(key_id: str, auth: AuthContext = Depends(require_admin_session)) -> dict:
    return success_response(await ApiKeyService.get_key(auth.admin_id, key_id))


@router.patch("/{key_id}")
async def update_api_key(
    key_id: str,
    payload: ApiKeyUpdate,
    auth: AuthContext = Depends(require_admin_session),
) -> dict:
    return success_response(await ApiKeyService.update_key(auth.admin_id, key_id, payload))


@router.delete("/{key_id}")
async def revoke_api_key(
    key_id: str,
    reason: Optional[str] = Query(None),
    auth: AuthContext = Depends(require_admin_session),
) -> dict:
    return success_response(await ApiKeyService.revoke_key(auth.admin_id, key_id, reason))


@router.post("/{key_id}/rotate", status_code=status.HTTP_201_CREATED)
async def rotate_api_key(
    key_id: str,
    payload: Optional[ApiKeyRotate] = Body(None),
    auth: AuthContext = Depends(require_admin_session),
) -> dict:
    """Replace a key, optionally keeping the old one valid for a grace period."""
    return success_response(await ApiKeyService.rotate_key(auth.admin_id, key_id, payload or ApiKeyRotate()))
