"""
Celery task attempting one webhook delivery.

Enqueued by CeleryDeliveryScheduler. Retries are scheduled by the service
itself (apply_async with a countdown), so the task never uses Celery's
own retry mechanism.
"""
import logging

from filedrop.config import settings
from filedrop.services import build_webhook_service
from filedrop.services.delivery_scheduler import CeleryDeliveryScheduler
from filedrop.workers.celery_app import celery_app
from filedrop.workers.runtime import run_async, worker_session_factory

logger = logging.getLogger(__name__)


async def _deliver_async(delivery_id: str):
    async with worker_session_factory() as session_factory:
        webhooks = build_webhook_service(settings, session_factory, CeleryDeliveryScheduler())
        try:
            delivery = await webhooks.attempt_delivery(delivery_id)
        finally:
            await webhooks.aclose()

    if delivery is None:
        return None
    return {"delivery_id": delivery.id, "status": delivery.status.value, "attempts": delivery.attempts}


@celery_app.task(name="deliver_webhook")
def deliver_webhook_task(delivery_id: str):
    """
    Attempt delivery of a pending webhook.

    Non-pending deliveries (already delivered or failed) are skipped.
    """
    logger.debug(f"Delivering webhook {delivery_id}")
    return run_async(lambda: _deliver_async(delivery_id))
