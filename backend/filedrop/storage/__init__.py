"""
Storage module.

One contract (StorageBackend) over a local filesystem and S3-compatible
object storage. The backend is chosen once at startup.
"""
from filedrop.storage.base import StorageBackend
from filedrop.storage.local import LocalStorageBackend
from filedrop.storage.s3 import S3StorageBackend
from filedrop.storage.factory import create_storage_backend

__all__ = [
    "StorageBackend",
    "LocalStorageBackend",
    "S3StorageBackend",
    "create_storage_backend",
]
