"""
System status endpoint for API v1.
"""

from fastapi import APIRouter, Depends

from gateflow_api.app.core.api_keys import Scopes
from gateflow_api.app.core.errors import success_response
from gateflow_api.app.core.security import AuthContext, require_scopes
from gateflow_api.app.services.system_service import SystemService


router = APIRouter()


@router.get("/status")
async def system_status(auth: AuthContext = Depends(require_scopes(Scopes.SYSTEM_READ))) -> dict:
    """Health, version and record counts."""
    return success_response(await SystemService.get_status())
