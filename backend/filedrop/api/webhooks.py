"""
Webhook endpoints.

Manages the caller's outgoing webhook endpoints and their delivery history.
Deliveries are signed with HMAC-SHA256 over the exact request body using
the per-endpoint secret returned once at creation.
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from filedrop.auth.dependencies import Caller, get_services, require_scopes
from filedrop.database import get_db
from filedrop.schemas.webhook import (
    DeliveryResponse,
    WebhookCreate,
    WebhookCreatedResponse,
    WebhookResponse,
    WebhookStatsResponse,
    WebhookUpdate,
)
from filedrop.services import Services

router = APIRouter()
logger = logging.getLogger(__name__)

require_webhooks = require_scopes("webhooks:manage")


@router.post("", response_model=WebhookCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_webhook(
    request: WebhookCreate,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(require_webhooks),
    services: Services = Depends(get_services),
):
    """
    Register a webhook endpoint.

    The signing secret is only included in this response.
    """
    webhook, secret = await services.webhooks.create_webhook(
        db,
        owner_id=caller.owner_id,
        url=request.url,
        events=request.events,
        is_active=request.is_active,
    )
    return WebhookCreatedResponse(
        **WebhookResponse.model_validate(webhook).model_dump(),
        secret=secret,
    )


@router.get("", response_model=List[WebhookResponse])
async def list_webhooks(
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(require_webhooks),
    services: Services = Depends(get_services),
):
    return await services.webhooks.list_webhooks(db, caller.owner_id)


@router.post("/deliveries/{delivery_id}/retry", response_model=DeliveryResponse)
async def retry_delivery(
    delivery_id: str,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(require_webhooks),
    services: Services = Depends(get_services),
):
    """
    Manually re-attempt a delivery now, including one already failed.

    Returns 502 when the attempt fails again.
    """
    return await services.webhooks.retry_delivery(db, caller.owner_id, delivery_id)


@router.get("/{webhook_id}", response_model=WebhookResponse)
async def get_webhook(
    webhook_id: str,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(require_webhooks),
    services: Services = Depends(get_services),
):
    return await services.webhooks.get_webhook(db, caller.owner_id, webhook_id)


@router.patch("/{webhook_id}", response_model=WebhookResponse)
async def update_webhook(
    webhook_id: str,
    request: WebhookUpdate,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(require_webhooks),
    services: Services = Depends(get_services),
):
    """Update url, events or is_active. Omitted fields are unchanged."""
    return await services.webhooks.update_webhook(
        db,
        caller.owner_id,
        webhook_id,
        url=request.url,
        events=request.events,
        is_active=request.is_active,
    )


@router.delete("/{webhook_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_webhook(
    webhook_id: str,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(require_webhooks),
    services: Services = Depends(get_services),
):
    """Delete a webhook and its delivery history."""
    await services.webhooks.delete_webhook(db, caller.owner_id, webhook_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{webhook_id}/deliveries", response_model=List[DeliveryResponse])
async def list_deliveries(
    webhook_id: str,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(require_webhooks),
    services: Services = Depends(get_services),
):
    """Most recent deliveries first."""
    return await services.webhooks.list_deliveries(db, caller.owner_id, webhook_id, limit=limit)


@router.get("/{webhook_id}/stats", response_model=WebhookStatsResponse)
async def get_webhook_stats(
    webhook_id: str,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(require_webhooks),
    services: Services = Depends(get_services),
):
    return await services.webhooks.get_stats(db, caller.owner_id, webhook_id)


@router.post("/{webhook_id}/test", response_model=DeliveryResponse, status_code=status.HTTP_202_ACCEPTED)
async def test_webhook(
    webhook_id: str,
    db: AsyncSession = Depends(get_db),
    caller: Caller = Depends(require_webhooks),
    services: Services = Depends(get_services),
):
    """
    Queue a webhook.test event for one endpoint.

    The delivery is attempted in the background; poll the deliveries
    endpoint for the outcome.
    """
    return await services.webhooks.test_webhook(db, caller.owner_id, webhook_id)
