"""
Pydantic models for webhook endpoints and delivery logs.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class WebhookCreate(BaseModel):
    url: Optional[str] = Field(None, examples=["https://hooks.example.com/gateflow"])
    # Left untyped so that a non-list value is reported with the API's own message.
    events: Optional[Any] = Field(None, examples=[["purchase.completed", "payment.refunded"]])
    description: Optional[str] = None
    is_active: Optional[bool] = None


class WebhookUpdate(WebhookCreate):
    pass


class WebhookTest(BaseModel):
    event_type: Optional[str] = Field(None, examples=["purchase.completed"])


class WebhookRead(BaseModel):
    id: str
    url: str
    events: List[str]
    description: Optional[str] = None
    is_active: bool
    created_at: str
    updated_at: str

    model_config = {
        "from_attributes": True,
    }


class WebhookWithSecret(WebhookRead):
    secret: str


class WebhookEndpointSummary(BaseModel):
    id: str
    url: str
    description: Optional[str] = None
    is_active: bool


class WebhookLogRead(BaseModel):
    id: str
    endpoint_id: Optional[str] = None
    endpoint: Optional[WebhookEndpointSummary] = None
    event_type: str
    payload: Dict[str, Any]
    http_status: Optional[int] = None
    response_body: Optional[str] = None
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    status: str
    created_at: str


class DeliveryResult(BaseModel):
    success: bool
    status: int
    error: Optional[str] = None
