"""
Admin session endpoint.

``POST /auth/login`` exchanges admin credentials for a bearer token
that grants full access to every route, including API key
management.
"""

from fastapi import APIRouter

from gateflow_api.app.core.errors import success_response
from gateflow_api.app.schemas.auth import AdminLogin
from gateflow_api.app.services.auth_service import AuthService


router = APIRouter()


@router.post("/login")
async def login(credentials: AdminLogin) -> dict:
    """Authenticate an administrator and return a session token."""
    return success_response(await AuthService.login(credentials.email, credentials.password))
