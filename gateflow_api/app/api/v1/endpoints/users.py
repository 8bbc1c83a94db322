"""
Customer and product access endpoints for API v1.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from gateflow_api.app.core.api_keys import Scopes
from gateflow_api.app.core.errors import success_response
from gateflow_api.app.core.pagination import ensure_valid_cursor, parse_limit
from gateflow_api.app.core.security import AuthContext, require_scopes
from gateflow_api.app.schemas.user import AccessGrant, AccessUpdate
from gateflow_api.app.services.user_service import UserService


router = APIRouter()


@router.get("")
async def list_users(
    limit: Optional[str] = Query(None),
    cursor: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    sort_by: Optional[str] = Query("created_at"),
    sort_order: str = Query("desc"),
    auth: AuthContext = Depends(require_scopes(Scopes.USERS_READ)),
) -> dict:
    """List customers with their product access and aggregate stats.

    - **sort_by**: created_at, email, last_sign_in_at, total_products,
      total_value or last_access_granted_at.
    """
    page, pagination = await UserService.list_users(
        limit=parse_limit(limit),
        cursor=ensure_valid_cursor(cursor),
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return success_response(page, pagination)


@router.get("/{user_id}")
async def get_user(
    user_id: str,
    auth: AuthContext = Depends(require_scopes(Scopes.USERS_READ)),
) -> dict:
    return success_response(await UserService.get_user(user_id))


@router.get("/{user_id}/access")
async def list_user_access(
    user_id: str,
    auth: AuthContext = Depends(require_scopes(Scopes.USERS_READ)),
) -> dict:
    return success_response(await UserService.list_access(user_id))


@router.post("/{user_id}/access", status_code=status.HTTP_201_CREATED)
async def grant_user_access(
    user_id: str,
    payload: AccessGrant,
    auth: AuthContext = Depends(require_scopes(Scopes.USERS_WRITE)),
) -> dict:
    """Grant access to a product, permanently or for a limited time."""
    return success_response(await UserService.grant_access(user_id, payload))


@router.get("/{user_id}/access/{access_id}")
async def get_user_access(
    user_id: str,
    access_id: str,
    auth: AuthContext = Depends(require_scopes(Scopes.USERS_READ)),
) -> dict:
    return success_response(await UserService.get_access(user_id, access_id))


@router.patch("/{user_id}/access/{access_id}")
async def update_user_access(
    user_id: str,
    access_id: str,
    payload: AccessUpdate,
    auth: AuthContext = Depends(require_scopes(Scopes.USERS_WRITE)),
) -> dict:
    """Extend or reset an access expiry.

    ``extend_days`` wins over ``access_expires_at``, which wins over
    ``access_duration_days``.
    """
    return success_response(await UserService.update_access(user_id, access_id, payload))


@router.delete("/{user_id}/access/{access_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_user_access(
    user_id: str,
    access_id: str,
    auth: AuthContext = Depends(require_scopes(Scopes.USERS_WRITE)),
) -> None:
    await UserService.revoke_access(user_id, access_id)
    return None
