"""
Pydantic models for discount coupons.
"""

from typing import Any, List, Optional

from pydantic import BaseModel, Field


class CouponCreate(BaseModel):
    code: Optional[str] = Field(None, examples=["SUMMER25"])
    name: Optional[str] = Field(None, examples=["Summer sale"])
    discount_type: Optional[str] = Field(None, examples=["percentage"])
    discount_value: Optional[float] = Field(None, examples=[25])
    currency: Optional[str] = None
    is_active: Optional[bool] = None
    is_public: Optional[bool] = None
    starts_at: Optional[str] = None
    expires_at: Optional[str] = None
    usage_limit_global: Optional[int] = None
    usage_limit_per_user: Optional[int] = None
    allowed_emails: Optional[Any] = None
    allowed_product_ids: Optional[Any] = None
    exclude_order_bumps: Optional[bool] = None


class CouponUpdate(CouponCreate):
    """Partial update; ``null`` clears ``expires_at`` and ``usage_limit_global``."""


class CouponRead(BaseModel):
    id: str
    code: str
    name: Optional[str] = None
    discount_type: str
    discount_value: float
    currency: Optional[str] = None
    is_active: bool
    is_public: bool
    starts_at: str
    expires_at: Optional[str] = None
    usage_limit_global: Optional[int] = None
    usage_limit_per_user: int
    current_usage_count: int
    allowed_emails: List[str]
    allowed_product_ids: List[str]
    exclude_order_bumps: bool
    is_oto_coupon: bool
    created_at: str
    updated_at: str

    model_config = {
        "from_attributes": True,
    }
