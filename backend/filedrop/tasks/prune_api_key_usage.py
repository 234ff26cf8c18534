"""
Celery beat task pruning API key usage rows outside the rate window.
"""
import logging

from filedrop.config import settings
from filedrop.services.api_keys import ApiKeyService
from filedrop.workers.celery_app import celery_app
from filedrop.workers.runtime import run_async, worker_session_factory

logger = logging.getLogger(__name__)


async def _prune_async() -> int:
    api_keys = ApiKeyService(rate_window_seconds=settings.api_key_rate_window_seconds)
    async with worker_session_factory() as session_factory:
        async with session_factory() as db:
            return await api_keys.prune_usage(db)


@celery_app.task(name="prune_api_key_usage")
def prune_api_key_usage_task():
    pruned = run_async(_prune_async)
    logger.info(f"Usage prune finished: {pruned} rows")
    return pruned
