"""
Pydantic models for products and one-time offers.

Request models keep every field optional so that the service layer can
report all rule violations at once (``details._errors``) instead of
failing on the first missing field.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ProductCreate(BaseModel):
    name: Optional[str] = Field(None, examples=["Python Masterclass"])
    slug: Optional[str] = Field(None, examples=["python-masterclass"])
    description: Optional[str] = Field(None, examples=["Eight hours of video lessons"])
    long_description: Optional[str] = None
    price: Optional[float] = Field(None, examples=[199.0])
    currency: Optional[str] = Field(None, examples=["PLN"])
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None
    icon: Optional[str] = Field(None, examples=["📦"])
    content_delivery_type: Optional[str] = Field(None, examples=["content"])
    content_config: Optional[Dict[str, Any]] = None
    available_from: Optional[str] = None
    available_until: Optional[str] = None
    auto_grant_duration_days: Optional[int] = None
    categories: Optional[List[str]] = None


class ProductUpdate(ProductCreate):
    """Partial update; only fields present in the body are applied."""


class CategoryRead(BaseModel):
    id: str
    name: str
    slug: str


class ProductRead(BaseModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    long_description: Optional[str] = None
    price: float
    currency: str
    is_active: bool
    is_featured: bool
    icon: Optional[str] = None
    content_delivery_type: str
    content_config: Optional[Dict[str, Any]] = None
    available_from: Optional[str] = None
    available_until: Optional[str] = None
    auto_grant_duration_days: Optional[int] = None
    created_at: str
    updated_at: str
    categories: Optional[List[CategoryRead]] = None

    model_config = {
        "from_attributes": True,
    }


class OtoOfferUpdate(BaseModel):
    oto_product_id: Optional[str] = None
    discount_type: str = Field("percentage", examples=["percentage", "fixed"])
    discount_value: float = 20
    duration_minutes: int = 15
