"""
Authentication for the GateFlow API.

Two credentials are accepted:

* **Admin session tokens** – lightweight JWTs signed with HMAC‑SHA256
  (``header.payload.signature``, base64url encoded) issued by
  ``POST /api/v1/auth/login``.  A valid session grants full access.
* **API keys** – ``gf_live_``/``gf_test_`` keys sent either as
  ``Authorization: Bearer <key>`` or ``X-API-Key: <key>``.  Keys carry
  scopes and a per-minute rate limit.

Route handlers declare what they need with ``Depends(require_scopes(...))``
or ``Depends(require_admin_session)``; both resolve to an
``AuthContext``.  Passwords are hashed with PBKDF2‑HMAC‑SHA256.
"""

import base64
import hashlib
import hmac
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from fastapi import Request

from .api_keys import Scopes, has_scope, hash_api_key, parse_api_key_from_header
from .config import settings
from .db import get_connection
from .errors import AuthError, ErrorCode
from .rate_limit import check_rate_limit


logger = logging.getLogger(__name__)


def _b64_url_encode(data: bytes) -> str:
    """Base64‑url encode bytes without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("utf-8")


def _b64_url_decode(data: str) -> bytes:
    """Decode base64‑url encoded string, adding padding if necessary."""
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def _sign(message: bytes, secret: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()


def create_access_token(data: Dict[str, Any], expires_delta: Optional[int] = None) -> str:
    """Create a signed admin session token.

    The payload is extended with ``exp`` (UNIX timestamp).  Clients
    send the token as ``Authorization: Bearer <token>``.

    Parameters
    ----------
    data : dict
        Claims to embed, typically ``{"sub": "<admin email>"}``.
    expires_delta : Optional[int]
        Lifetime in seconds.  Defaults to
        ``settings.access_token_expire_minutes * 60``.
    """
    to_encode = data.copy()
    exp_seconds = expires_delta or settings.access_token_expire_minutes * 60
    to_encode["exp"] = int(time.time()) + exp_seconds
    header = {"alg": "HS256", "typ": "JWT"}
    header_b64 = _b64_url_encode(json.dumps(header, separators=(",", ":")).encode("utf-8"))
    payload_b64 = _b64_url_encode(json.dumps(to_encode, separators=(",", ":")).encode("utf-8"))
    signing_input = f"{header_b64}.{payload_b64}".encode("utf-8")
    signature_b64 = _b64_url_encode(_sign(signing_input, settings.secret_key))
    return f"{header_b64}.{payload_b64}.{signature_b64}"


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Verify a session token and return its payload, or ``None``.

    The signature is compared in constant time and ``exp`` must lie in
    the future.
    """
    parts = token.split(".")
    if len(parts) != 3:
        return None
    header_b64, payload_b64, signature_b64 = parts
    signing_input = f"{header_b64}.{payload_b64}".encode("utf-8")
    try:
        actual_sig = _b64_url_decode(signature_b64)
        if not hmac.compare_digest(_sign(signing_input, settings.secret_key), actual_sig):
            return None
        data = json.loads(_b64_url_decode(payload_b64).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    if data.get("exp") is None or int(data["exp"]) < int(time.time()):
        return None
    return data


def hash_password(password: str) -> str:
    """Hash a password as ``<salt hex>$<pbkdf2 hex>`` with a random 16‑byte salt."""
    salt = os.urandom(16)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, 100_000)
    return f"{salt.hex()}${dk.hex()}"


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        salt_hex, hash_hex = hashed_password.split("$", 1)
        salt = bytes.fromhex(salt_hex)
        stored_hash = bytes.fromhex(hash_hex)
    except ValueError:
        return False
    dk = hashlib.pbkdf2_hmac("sha256", plain_password.encode("utf-8"), salt, 100_000)
    return hmac.compare_digest(dk, stored_hash)


@dataclass
class AuthContext:
    """Who is calling and with which permissions."""

    method: str
    admin_id: str
    email: Optional[str] = None
    scopes: List[str] = field(default_factory=list)
    api_key_id: Optional[str] = None
    api_key_name: Optional[str] = None
    rate_limit_per_minute: Optional[int] = None

    @property
    def is_session(self) -> bool:
        return self.method == "session"


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization")
    if header and header.startswith("Bearer "):
        return header[7:].strip() or None
    return None


def authenticate_session(request: Request) -> Optional[AuthContext]:
    """Resolve an admin session from the bearer token, if there is one."""
    token = _bearer_token(request)
    if not token or parse_api_key_from_header(token):
        return None
    payload = decode_access_token(token)
    if not payload:
        return None
    conn = get_connection()
    try:
        row = conn.execute(
            "SELECT id, email FROM admin_users WHERE email = ?",
            (str(payload.get("sub", "")).lower(),),
        ).fetchone()
    finally:
        conn.close()
    if not row:
        return None
    return AuthContext(method="session", admin_id=row["id"], email=row["email"], scopes=[Scopes.FULL_ACCESS])


async def authenticate_api_key(request: Request) -> Optional[AuthContext]:
    """Resolve and verify an API key from ``Authorization`` or ``X-API-Key``.

    Raises ``AuthError`` with ``INVALID_TOKEN`` when a key is presented
    but unknown, revoked or expired.
    """
    from gateflow_api.app.services.api_key_service import ApiKeyService

    api_key = parse_api_key_from_header(request.headers.get("authorization")) or request.headers.get("x-api-key")
    if not api_key:
        return None
    key_row = await ApiKeyService.verify(hash_api_key(api_key.strip()), get_client_ip(request))
    return AuthContext(
        method="api_key",
        admin_id=key_row["admin_user_id"],
        scopes=key_row["scopes"],
        api_key_id=key_row["id"],
        api_key_name=key_row["name"],
        rate_limit_per_minute=key_row["rate_limit_per_minute"],
    )


async def authenticate(request: Request, required_scopes: Optional[List[str]] = None) -> AuthContext:
    """Authenticate a request and enforce ``required_scopes``.

    Admin sessions are checked first and always carry full access.
    API keys are then verified, rate limited and scope checked.
    """
    session = authenticate_session(request)
    if session:
        request.state.auth = session
        return session

    auth = await authenticate_api_key(request)
    if auth is None:
        raise AuthError("Authentication required", code=ErrorCode.UNAUTHORIZED)

    limit = auth.rate_limit_per_minute or 60
    if not check_rate_limit(f"api_key:{auth.api_key_id}", limit, 1):
        raise AuthError(
            f"Rate limit exceeded. Maximum {limit} requests per minute.",
            code=ErrorCode.RATE_LIMITED,
        )

    for scope in required_scopes or []:
        if not has_scope(auth.scopes, scope):
            raise AuthError(f"Missing required permission: {scope}", code=ErrorCode.FORBIDDEN)

    request.state.auth = auth
    return auth


def require_scopes(*scopes: str) -> Callable[..., Any]:
    """Dependency factory enforcing that the caller holds every scope.

    Use as ``Depends(require_scopes(Scopes.PRODUCTS_READ))``.  Admin
    sessions always pass.
    """

    async def _scope_dependency(request: Request) -> AuthContext:
        return await authenticate(request, list(scopes))

    return _scope_dependency


async def require_admin_session(request: Request) -> AuthContext:
    """Dependency for routes that only an admin session may call (API key management)."""
    session = authenticate_session(request)
    if session is None:
        raise AuthError("Admin session required", code=ErrorCode.UNAUTHORIZED)
    request.state.auth = session
    return session
