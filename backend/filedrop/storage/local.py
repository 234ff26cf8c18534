"""
Local filesystem storage backend.

Writes are atomic per file: bytes go to a temporary file in the target
directory, then get published with a hard link. The link fails if the
name already exists, so an existing object is never overwritten.
"""
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from filedrop.exceptions import NotFound, StorageWriteFailed, Unsupported
from filedrop.storage.base import StorageBackend, join_key, unique_filename

logger = logging.getLogger(__name__)


class LocalStorageBackend(StorageBackend):
    """Stores objects as files below a base directory."""

    name = "local"

    def __init__(self, base_dir: str = "./uploads", base_url: str = "/uploads"):
        self.base_dir = Path(base_dir).resolve()
        self.base_url = base_url.rstrip("/")
        self.base_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Local storage initialized at {self.base_dir}")

    def _path(self, storage_key: str) -> Path:
        """Resolve a key to a path, refusing keys that escape base_dir."""
        path = (self.base_dir / storage_key).resolve()
        if path != self.base_dir and self.base_dir not in path.parents:
            raise NotFound(f"Invalid storage key: {storage_key}")
        return path

    def save(
        self,
        data: bytes,
        suggested_name: str,
        folder: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> str:
        storage_key = join_key(folder, unique_filename(suggested_name))

        try:
            target = self._path(storage_key)
        except NotFound as e:
            raise StorageWriteFailed(str(e)) from e

        tmp_path = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=".upload-")
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            # Fails with FileExistsError instead of overwriting
            os.link(tmp_path, target)
        except OSError as e:
            logger.error(f"Error saving file {storage_key}: {e}")
            raise StorageWriteFailed(f"Failed to save file: {e}") from e
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except FileNotFoundError:
                    pass

        logger.info(f"File saved: {storage_key}")
        return storage_key

    def fetch(self, storage_key: str) -> bytes:
        path = self._path(storage_key)
        try:
            return path.read_bytes()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            raise NotFound(f"File not found: {storage_key}")

    def delete(self, storage_key: str) -> None:
        try:
            path = self._path(storage_key)
        except NotFound:
            return
        try:
            path.unlink()
            logger.info(f"File deleted: {storage_key}")
        except FileNotFoundError:
            logger.debug(f"File {storage_key} not found (already deleted)")

    def exists(self, storage_key: str) -> bool:
        try:
            return self._path(storage_key).is_file()
        except NotFound:
            return False

    def public_url(self, storage_key: str) -> str:
        return f"{self.base_url}/{storage_key}"

    def signed_url(self, storage_key: str, ttl: int) -> str:
        raise Unsupported("Local storage cannot produce signed URLs")
