"""
Pydantic models for payment transactions, refunds and exports.

Amounts are integer minor units (cents/grosze).
"""

from typing import Optional

from pydantic import BaseModel, Field


class ProductSummary(BaseModel):
    id: str
    name: Optional[str] = None
    slug: Optional[str] = None


class RefundInfo(BaseModel):
    id: str
    amount: int
    refunded_at: Optional[str] = None
    reason: Optional[str] = None


class PaymentRead(BaseModel):
    id: str
    customer_email: str
    amount: int
    currency: str
    status: str
    stripe_payment_intent_id: Optional[str] = None
    product: ProductSummary
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    refund: Optional[RefundInfo] = None
    created_at: str
    updated_at: str


class PaymentRefundRequest(BaseModel):
    amount: Optional[float] = Field(None, description="Cents; omit to refund the remaining amount", examples=[2500])
    reason: Optional[str] = Field(None, examples=["requested_by_customer"])


class PaymentExportFilters(BaseModel):
    status: Optional[str] = "all"
    product_id: Optional[str] = None
    email: Optional[str] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    date_range: Optional[str] = Field(None, description="Number of days back, or 'all'", examples=["30"])
