"""
Business logic services.

Services are built once per process by build_services() and handed to
callers explicitly; nothing here is a module-level singleton.
"""
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import async_sessionmaker

from filedrop.config import Settings
from filedrop.services.api_keys import ApiKeyService
from filedrop.services.billing import AllowAllBillingGate, BillingGate
from filedrop.services.delivery_scheduler import (
    AsyncioDeliveryScheduler, CeleryDeliveryScheduler, DeliveryScheduler
)
from filedrop.services.ingestion import IngestionService
from filedrop.services.upload_tokens import UploadTokenService
from filedrop.services.webhooks import WebhookService
from filedrop.storage import StorageBackend, create_storage_backend


@dataclass
class Services:
    """Process-wide service container."""
    storage: StorageBackend
    upload_tokens: UploadTokenService
    webhooks: WebhookService
    ingestion: IngestionService
    api_keys: ApiKeyService
    billing: BillingGate


def build_scheduler(settings: Settings) -> DeliveryScheduler:
    name = settings.webhook_scheduler.lower()
    if name == "asyncio":
        return AsyncioDeliveryScheduler()
    if name == "celery":
        return CeleryDeliveryScheduler()
    raise ValueError(f"Unknown webhook scheduler: {settings.webhook_scheduler}")


def build_webhook_service(
    settings: Settings,
    session_factory: async_sessionmaker,
    scheduler: DeliveryScheduler,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> WebhookService:
    webhooks = WebhookService(
        session_factory=session_factory,
        scheduler=scheduler,
        timeout=settings.webhook_timeout_seconds,
        max_attempts=settings.webhook_max_attempts,
        backoff_base=settings.webhook_backoff_base,
        user_agent=settings.webhook_user_agent,
        transport=transport,
    )
    if isinstance(scheduler, AsyncioDeliveryScheduler):
        scheduler.bind(webhooks.attempt_delivery)
    return webhooks


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker,
    storage: Optional[StorageBackend] = None,
    scheduler: Optional[DeliveryScheduler] = None,
    billing: Optional[BillingGate] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Services:
    """
    Wire all services from settings.

    Any collaborator can be passed in explicitly (tests, alternative
    deployments); the rest is built from configuration.
    """
    storage = storage or create_storage_backend(settings)
    billing = billing or AllowAllBillingGate()
    webhooks = build_webhook_service(
        settings,
        session_factory,
        scheduler or build_scheduler(settings),
        transport=transport,
    )
    upload_tokens = UploadTokenService(
        ttl_seconds=settings.upload_token_ttl_seconds,
        max_upload_size=settings.max_upload_size,
    )
    ingestion = IngestionService(
        storage=storage,
        tokens=upload_tokens,
        webhooks=webhooks,
        billing=billing,
        allowed_mime_types=settings.allowed_mime_types,
        signed_url_ttl=settings.signed_url_ttl,
    )
    api_keys = ApiKeyService(
        rate_window_seconds=settings.api_key_rate_window_seconds,
        default_rate_limit=settings.api_key_default_rate_limit,
        bcrypt_rounds=settings.api_key_bcrypt_rounds,
        environment=settings.environment,
    )
    return Services(
        storage=storage,
        upload_tokens=upload_tokens,
        webhooks=webhooks,
        ingestion=ingestion,
        api_keys=api_keys,
        billing=billing,
    )


__all__ = [
    "Services",
    "build_services",
    "build_scheduler",
    "build_webhook_service",
    "ApiKeyService",
    "IngestionService",
    "UploadTokenService",
    "WebhookService",
]
