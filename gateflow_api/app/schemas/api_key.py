"""
Pydantic models for API key management.

The plaintext key only ever appears in ``ApiKeyCreated`` (the response
to creation and rotation).
"""

from typing import List, Optional

from pydantic import BaseModel, Field


class ApiKeyCreate(BaseModel):
    name: Optional[str] = Field(None, examples=["MCP server"])
    scopes: Optional[List[str]] = Field(None, examples=[["products:read", "analytics:read"]])
    rate_limit_per_minute: Optional[int] = Field(None, examples=[60])
    expires_at: Optional[str] = Field(None, description="ISO‑8601 expiry, must be in the future")


class ApiKeyUpdate(BaseModel):
    name: Optional[str] = None
    scopes: Optional[List[str]] = None
    rate_limit_per_minute: Optional[int] = None
    is_active: Optional[bool] = None


class ApiKeyRotate(BaseModel):
    grace_period_hours: Optional[int] = Field(None, description="0..168, defaults to 24")


class ApiKeyRead(BaseModel):
    id: str
    name: str
    key_prefix: str
    scopes: List[str]
    rate_limit_per_minute: int
    is_active: bool
    expires_at: Optional[str] = None
    last_used_at: Optional[str] = None
    last_used_ip: Optional[str] = None
    usage_count: int = 0
    rotated_from_id: Optional[str] = None
    rotation_grace_until: Optional[str] = None
    created_at: str
    revoked_at: Optional[str] = None
    revoked_reason: Optional[str] = None

    model_config = {
        "from_attributes": True,
    }


class ApiKeyCreated(ApiKeyRead):
    """Returned once, on creation or rotation."""

    key: str
    warning: str
