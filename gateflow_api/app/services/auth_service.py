"""
Admin account lookup and login.
"""

import logging
from typing import Any, Dict

from gateflow_api.app.core.config import settings
from gateflow_api.app.core.db import get_connection
from gateflow_api.app.core.errors import AuthError
from gateflow_api.app.core.security import create_access_token, verify_password


logger = logging.getLogger(__name__)


class AuthService:
    """Service class for admin sessions."""

    @classmethod
    async def login(cls, email: str, password: str) -> Dict[str, Any]:
        """Check admin credentials and issue a session token.

        Unknown emails and wrong passwords fail with the same message.
        """
        conn = get_connection()
        try:
            row = conn.execute(
                "SELECT id, email, password FROM admin_users WHERE email = ?",
                (email.strip().lower(),),
            ).fetchone()
        finally:
            conn.close()
        if not row or not verify_password(password, row["password"]):
            logger.warning("Failed admin login for %s", email)
            raise AuthError("Invalid credentials")
        expires_in = settings.access_token_expire_minutes * 60
        token = create_access_token({"sub": row["email"]}, expires_in)
        logger.info("Admin %s logged in", row["email"])
        return {"access_token": token, "token_type": "bearer", "expires_in": expires_in}
