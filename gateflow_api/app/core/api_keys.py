"""
API key primitives: generation, hashing, header parsing and scopes.

Keys look like ``gf_live_<64 hex chars>`` (or ``gf_test_`` for test
keys).  Only the SHA‑256 hex digest and the 12 character display
prefix are ever stored; the plaintext is returned to the caller once
at creation time.
"""

import hashlib
import secrets
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple


KEY_PREFIX_LIVE = "gf_live_"
KEY_PREFIX_TEST = "gf_test_"
KEY_RANDOM_BYTES = 32
KEY_LENGTH = len(KEY_PREFIX_LIVE) + KEY_RANDOM_BYTES * 2
DISPLAY_PREFIX_LENGTH = 12


class Scopes:
    PRODUCTS_READ = "products:read"
    PRODUCTS_WRITE = "products:write"
    USERS_READ = "users:read"
    USERS_WRITE = "users:write"
    COUPONS_READ = "coupons:read"
    COUPONS_WRITE = "coupons:write"
    ANALYTICS_READ = "analytics:read"
    WEBHOOKS_READ = "webhooks:read"
    WEBHOOKS_WRITE = "webhooks:write"
    REFUND_REQUESTS_READ = "refund-requests:read"
    REFUND_REQUESTS_WRITE = "refund-requests:write"
    SYSTEM_READ = "system:read"
    FULL_ACCESS = "*"


ALL_SCOPES: Tuple[str, ...] = (
    Scopes.PRODUCTS_READ,
    Scopes.PRODUCTS_WRITE,
    Scopes.USERS_READ,
    Scopes.USERS_WRITE,
    Scopes.COUPONS_READ,
    Scopes.COUPONS_WRITE,
    Scopes.ANALYTICS_READ,
    Scopes.WEBHOOKS_READ,
    Scopes.WEBHOOKS_WRITE,
    Scopes.REFUND_REQUESTS_READ,
    Scopes.REFUND_REQUESTS_WRITE,
    Scopes.SYSTEM_READ,
    Scopes.FULL_ACCESS,
)

SCOPE_PRESETS = {
    "full": [Scopes.FULL_ACCESS],
    "readOnly": [
        Scopes.PRODUCTS_READ,
        Scopes.USERS_READ,
        Scopes.COUPONS_READ,
        Scopes.ANALYTICS_READ,
        Scopes.WEBHOOKS_READ,
        Scopes.REFUND_REQUESTS_READ,
        Scopes.SYSTEM_READ,
    ],
    "analyticsOnly": [Scopes.ANALYTICS_READ],
    "support": [Scopes.PRODUCTS_READ, Scopes.USERS_READ, Scopes.COUPONS_READ],
    "mcp": [Scopes.FULL_ACCESS],
}


@dataclass
class GeneratedApiKey:
    plaintext: str
    prefix: str
    hash: str


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def generate_api_key(is_test: bool = False) -> GeneratedApiKey:
    """Create a new random key together with its display prefix and hash."""
    prefix = KEY_PREFIX_TEST if is_test else KEY_PREFIX_LIVE
    plaintext = prefix + secrets.token_hex(KEY_RANDOM_BYTES)
    return GeneratedApiKey(
        plaintext=plaintext,
        prefix=plaintext[:DISPLAY_PREFIX_LENGTH],
        hash=hash_api_key(plaintext),
    )


def parse_api_key_from_header(header: Optional[str]) -> Optional[str]:
    """Extract a well-formed GateFlow key from a header value.

    Accepts either the raw key or ``Bearer <key>``.  Anything that is
    not a ``gf_live_``/``gf_test_`` key of the expected length gives
    ``None`` so that session tokens fall through to session auth.
    """
    if not header:
        return None
    key = header[7:] if header.startswith("Bearer ") else header
    key = key.strip()
    if not (key.startswith(KEY_PREFIX_LIVE) or key.startswith(KEY_PREFIX_TEST)):
        return None
    if len(key) != KEY_LENGTH:
        return None
    return key


def mask_api_key(key: str) -> str:
    if len(key) < 16:
        return key[:4] + "..."
    return key[:DISPLAY_PREFIX_LENGTH] + "..." + key[-4:]


def is_valid_scope(scope: object) -> bool:
    return isinstance(scope, str) and scope in ALL_SCOPES


def validate_scopes(scopes: object) -> Tuple[bool, List[str]]:
    """Return ``(is_valid, invalid_scopes)`` for a candidate scope list."""
    if not isinstance(scopes, list):
        return False, []
    invalid = [str(scope) for scope in scopes if not is_valid_scope(scope)]
    return not invalid, invalid


def has_scope(key_scopes: Iterable[str], required: str) -> bool:
    """Whether ``key_scopes`` grant ``required``.

    ``*`` grants everything and ``<resource>:write`` implies
    ``<resource>:read``.
    """
    granted = set(key_scopes)
    if Scopes.FULL_ACCESS in granted or required in granted:
        return True
    if required.endswith(":read"):
        return required[: -len(":read")] + ":write" in granted
    return False
