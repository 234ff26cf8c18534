"""
Pydantic schemas for webhook endpoints.

The signing secret only appears in WebhookCreatedResponse.
"""
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime

from filedrop.models.webhook import DeliveryStatus


class WebhookCreate(BaseModel):
    """Schema for creating a webhook."""
    url: str = Field(..., description="Endpoint receiving POST requests")
    events: List[str] = Field(..., min_length=1, description="Subscribed event names")
    is_active: bool = True

    class Config:
        json_schema_extra = {
            "example": {
                "url": "https://example.com/hooks/filedrop",
                "events": ["upload.completed"]
            }
        }


class WebhookUpdate(BaseModel):
    """Schema for updating a webhook. Omitted fields are unchanged."""
    url: Optional[str] = None
    events: Optional[List[str]] = None
    is_active: Optional[bool] = None


class WebhookResponse(BaseModel):
    """Webhook without its secret."""
    id: str
    url: str
    events: List[str]
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class WebhookCreatedResponse(WebhookResponse):
    """Creation response, the only one carrying the secret."""
    secret: str


class DeliveryResponse(BaseModel):
    """Schema for a delivery history entry."""
    id: str
    webhook_id: str
    event: str
    payload: str
    status: DeliveryStatus
    attempts: int
    last_attempt_at: Optional[datetime] = None
    response_status: Optional[int] = None
    error_message: Optional[str] = None
    created_at: datetime
    delivered_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WebhookStatsResponse(BaseModel):
    """Delivery statistics for one webhook."""
    total: int
    delivered: int
    failed: int
    pending: int
    success_rate: float
