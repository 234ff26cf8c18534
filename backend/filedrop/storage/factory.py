"""
Storage backend selection.

Called once at process start; the result is passed to every service that
needs storage.
"""
import logging

from filedrop.config import Settings
from filedrop.storage.base import StorageBackend
from filedrop.storage.local import LocalStorageBackend
from filedrop.storage.s3 import S3StorageBackend

logger = logging.getLogger(__name__)


def create_storage_backend(settings: Settings) -> StorageBackend:
    """
    Build the configured storage backend.

    Raises:
        ValueError: unknown backend name or incomplete S3 configuration
    """
    backend = settings.storage_backend.lower()

    if backend == "local":
        logger.info("Using local storage backend")
        return LocalStorageBackend(
            base_dir=settings.local_storage_dir,
            base_url=settings.local_public_base_url,
        )

    if backend == "s3":
        if not all([settings.s3_access_key, settings.s3_secret_key]):
            raise ValueError(
                "S3 storage not configured. "
                "Set S3_ACCESS_KEY and S3_SECRET_KEY (and S3_ENDPOINT for non-AWS stores)."
            )
        logger.info(f"Using S3 storage backend (bucket: {settings.s3_bucket})")
        return S3StorageBackend(
            bucket=settings.s3_bucket,
            endpoint_url=settings.s3_endpoint,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
            region=settings.s3_region,
            public_base_url=settings.s3_public_base_url,
        )

    raise ValueError(f"Unknown storage backend: {settings.storage_backend}")
