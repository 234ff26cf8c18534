"""
Database models package.
"""
from filedrop.models.base import Base
from filedrop.models.upload import Upload
from filedrop.models.webhook import Webhook, WebhookDelivery, DeliveryStatus
from filedrop.models.api_key import ApiKey, ApiKeyUsage

__all__ = [
    "Base",
    "Upload",
    "Webhook",
    "WebhookDelivery",
    "DeliveryStatus",
    "ApiKey",
    "ApiKeyUsage",
]
