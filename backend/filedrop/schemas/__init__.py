"""
Pydantic schemas for API request/response validation.
"""
from filedrop.schemas.upload import (
    PrepareUploadRequest,
    PrepareUploadResponse,
    UploadResponse,
    UploadUrlResponse,
)
from filedrop.schemas.webhook import (
    WebhookCreate,
    WebhookUpdate,
    WebhookResponse,
    WebhookCreatedResponse,
    DeliveryResponse,
    WebhookStatsResponse,
)
from filedrop.schemas.api_key import (
    ApiKeyCreate,
    ApiKeyResponse,
    ApiKeyCreatedResponse,
)

__all__ = [
    "PrepareUploadRequest",
    "PrepareUploadResponse",
    "UploadResponse",
    "UploadUrlResponse",
    "WebhookCreate",
    "WebhookUpdate",
    "WebhookResponse",
    "WebhookCreatedResponse",
    "DeliveryResponse",
    "WebhookStatsResponse",
    "ApiKeyCreate",
    "ApiKeyResponse",
    "ApiKeyCreatedResponse",
]
