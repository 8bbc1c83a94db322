"""
Pydantic models for customers and their product access.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ProductAccessItem(BaseModel):
    id: str
    product_id: str
    product_slug: Optional[str] = None
    product_name: Optional[str] = None
    product_price: Optional[float] = None
    product_currency: Optional[str] = None
    product_icon: Optional[str] = None
    product_is_active: Optional[bool] = None
    granted_at: str
    expires_at: Optional[str] = None
    duration_days: Optional[int] = None


class UserStats(BaseModel):
    total_products: int
    total_value: float
    last_access_granted_at: Optional[str] = None
    first_access_granted_at: Optional[str] = None


class UserRead(BaseModel):
    id: str
    email: str
    created_at: str
    email_confirmed_at: Optional[str] = None
    last_sign_in_at: Optional[str] = None
    raw_user_meta_data: Optional[Dict[str, Any]] = None
    product_access: List[ProductAccessItem]
    stats: UserStats


class AccessGrant(BaseModel):
    product_id: Optional[str] = Field(None, examples=["7f1c2b0e-6a8e-4c59-9b9e-2f0d7c3e4a11"])
    access_duration_days: Optional[int] = Field(None, examples=[30])
    access_expires_at: Optional[str] = None


class AccessUpdate(BaseModel):
    """Exactly one of the fields is applied, in this order of precedence."""

    extend_days: Optional[int] = Field(None, examples=[30])
    access_expires_at: Optional[str] = None
    access_duration_days: Optional[int] = None
