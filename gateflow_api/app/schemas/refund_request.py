"""
Pydantic models for customer refund requests.
"""

from typing import Optional

from pydantic import BaseModel, Field


class RefundRequestProduct(BaseModel):
    id: str
    name: Optional[str] = None
    slug: Optional[str] = None
    price: Optional[float] = None
    currency: Optional[str] = None


class RefundRequestTransaction(BaseModel):
    id: str
    customer_email: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    created_at: Optional[str] = None


class RefundRequestRead(BaseModel):
    id: str
    user_id: Optional[str] = None
    product_id: str
    transaction_id: str
    customer_email: str
    requested_amount: int
    currency: str
    reason: Optional[str] = None
    status: str
    admin_id: Optional[str] = None
    admin_response: Optional[str] = None
    processed_at: Optional[str] = None
    created_at: str
    updated_at: str
    product: Optional[RefundRequestProduct] = None
    transaction: Optional[RefundRequestTransaction] = None


class RefundRequestProcess(BaseModel):
    action: Optional[str] = Field(None, examples=["approve"])
    admin_response: Optional[str] = None
