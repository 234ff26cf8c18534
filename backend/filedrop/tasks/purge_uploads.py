"""
Celery beat task reclaiming storage of soft-deleted uploads.
"""
import logging

from filedrop.config import settings
from filedrop.services.ingestion import IngestionService
from filedrop.storage import create_storage_backend
from filedrop.workers.celery_app import celery_app
from filedrop.workers.runtime import run_async, worker_session_factory

logger = logging.getLogger(__name__)


async def _purge_async(limit: int) -> int:
    # Purging only touches storage and upload rows
    ingestion = IngestionService(
        storage=create_storage_backend(settings),
        tokens=None,
        webhooks=None,
        billing=None,
    )
    async with worker_session_factory() as session_factory:
        async with session_factory() as db:
            return await ingestion.purge_deleted(db, limit=limit)


@celery_app.task(name="purge_deleted_uploads")
def purge_deleted_uploads_task(limit: int = None):
    """Delete stored bytes of soft-deleted uploads, in batches."""
    purged = run_async(lambda: _purge_async(limit or settings.upload_purge_batch_size))
    logger.info(f"Purge run finished: {purged} uploads")
    return purged
