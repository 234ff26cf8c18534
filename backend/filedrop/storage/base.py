"""
Storage backend contract.

Callers (ingestion, file access endpoints) are written once against
StorageBackend. The concrete backend is chosen at startup by configuration.
"""
import os
import secrets
import time
from abc import ABC, abstractmethod
from typing import Optional


def unique_filename(suggested_name: str) -> str:
    """
    Build a collision-free filename from a client-suggested one.

    Pattern: {stem}-{epoch ms}-{8 hex}{ext}

    Only the basename of the suggestion is kept, so a client cannot
    smuggle path segments into the storage key.
    """
    basename = os.path.basename(suggested_name.replace("\\", "/")) or "file"
    stem, ext = os.path.splitext(basename)
    stem = stem or "file"
    suffix = f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"
    return f"{stem}-{suffix}{ext}"


def join_key(folder: Optional[str], filename: str) -> str:
    """Join a folder and filename into a '/'-separated storage key."""
    if not folder:
        return filename
    return f"{folder.strip('/')}/{filename}"


class StorageBackend(ABC):
    """
    Uniform object storage contract.

    Raises:
        NotFound: fetch of a missing key
        StorageWriteFailed: backend I/O error while saving
        Unsupported: signed_url on a backend without request signing
    """

    #: Short identifier stored on upload records ("local", "s3")
    name: str = ""

    @abstractmethod
    def save(
        self,
        data: bytes,
        suggested_name: str,
        folder: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> str:
        """
        Store bytes under a new unique key and return the key.

        content_type is the verified MIME type, for backends that keep one
        with the object.
        """

    @abstractmethod
    def fetch(self, storage_key: str) -> bytes:
        """Return the bytes stored under key."""

    @abstractmethod
    def delete(self, storage_key: str) -> None:
        """Delete key. Deleting a missing key is not an error."""

    @abstractmethod
    def exists(self, storage_key: str) -> bool:
        """Check whether key exists."""

    @abstractmethod
    def public_url(self, storage_key: str) -> str:
        """Best-effort public URL. May be unusable for private backends."""

    @abstractmethod
    def signed_url(self, storage_key: str, ttl: int) -> str:
        """Time-limited read URL."""
