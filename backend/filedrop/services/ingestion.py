"""
Ingestion pipeline.

Turns a completed transfer into a durable upload record:

1. Claim the upload token (one ingestion per token)
2. Enforce the size and MIME type the token was issued for
3. Checksum the bytes (SHA-256)
4. Deduplicate on (owner_id, checksum)
5. Write through the storage backend
6. Persist the record, consume the token, emit upload.completed

Ordering: storage write -> metadata commit -> token consumption -> webhook
emission. A failed commit removes the stored object on a best-effort basis:
a stored object without a record is acceptable (reclaimable), a record
without stored bytes is not. Webhook and billing errors are logged and never
change the outcome of an upload.
"""
import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from filedrop.exceptions import (
    NotFound, PayloadTooLarge, StorageWriteFailed, TokenInvalid, Unauthorized,
    Unsupported, UnsupportedMediaType
)
from filedrop.models.base import as_utc, utc_now
from filedrop.models.upload import Upload
from filedrop.services.billing import BillingGate
from filedrop.services.upload_tokens import UploadToken, UploadTokenService
from filedrop.services.webhooks import EVENT_UPLOAD_COMPLETED, EVENT_UPLOAD_DELETED, WebhookService
from filedrop.storage.base import StorageBackend
from filedrop.utils.logging import log_event, log_upload_deduplicated, log_upload_ingested
from filedrop.utils.metrics import upload_bytes_total, uploads_ingested_total

logger = logging.getLogger(__name__)

# A cached signed URL is reused while it has at least this much life left
SIGNED_URL_MIN_REMAINING = timedelta(seconds=60)


def _normalize_mime(mime_type: Optional[str]) -> str:
    """Strip parameters (e.g. '; charset=utf-8') and lowercase."""
    if not mime_type:
        return ""
    return mime_type.split(";", 1)[0].strip().lower()


@dataclass
class IngestResult:
    """Outcome of an ingestion: the record and whether it was newly created."""
    upload: Upload
    created: bool


def upload_public_fields(upload: Upload) -> Dict[str, Any]:
    """Public representation used in responses and webhook payloads."""
    return {
        "id": upload.id,
        "filename": upload.filename,
        "original_name": upload.original_name,
        "mime_type": upload.mime_type,
        "size": upload.size,
        "url": upload.url,
        "uploaded_at": as_utc(upload.created_at).isoformat() if upload.created_at else None,
    }


class IngestionService:
    """Validates, stores and records completed uploads."""

    def __init__(
        self,
        storage: StorageBackend,
        tokens: UploadTokenService,
        webhooks: WebhookService,
        billing: BillingGate,
        allowed_mime_types: Iterable[str] = (),
        signed_url_ttl: int = 3600,
    ):
        self.storage = storage
        self.tokens = tokens
        self.webhooks = webhooks
        self.billing = billing
        self.allowed_mime_types = {_normalize_mime(m) for m in allowed_mime_types if m}
        self.signed_url_ttl = signed_url_ttl

    @staticmethod
    def checksum(data: bytes) -> str:
        """Hex SHA-256 of the content."""
        return hashlib.sha256(data).hexdigest()

    @staticmethod
    def storage_folder(owner_id: str, now: Optional[datetime] = None) -> str:
        """Pattern: users/{owner_id}/{YYYY}/{MM}"""
        now = now or utc_now()
        return f"users/{owner_id}/{now.year:04d}/{now.month:02d}"

    def is_mime_allowed(self, mime_type: str) -> bool:
        """Check the configured allow-list (empty list allows everything)."""
        return not self.allowed_mime_types or _normalize_mime(mime_type) in self.allowed_mime_types

    async def find_duplicate(self, db: AsyncSession, owner_id: str, checksum: str) -> Optional[Upload]:
        """Existing live record with the same owner and content."""
        result = await db.execute(
            select(Upload)
            .where(
                Upload.owner_id == owner_id,
                Upload.checksum == checksum,
                Upload.deleted_at.is_(None)
            )
            .order_by(Upload.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def receive(
        self,
        token: Optional[str],
        chunks: AsyncIterator[bytes],
        upload_id: Optional[str] = None,
    ) -> bytes:
        """
        Buffer a request body for ingest(), up to the token's size limit.

        Reading stops as soon as the body passes max_file_size, so an
        oversized transfer is never held in memory in full.

        Raises:
            Unauthorized: invalid/expired token or mismatched upload_id
            PayloadTooLarge: body larger than the token allows; the token
                is invalidated
        """
        upload_token = self.tokens.validate(token)
        if upload_id is not None and upload_token.upload_id != upload_id:
            raise Unauthorized("Invalid or expired upload token")

        limit = upload_token.max_file_size
        buffer = bytearray()
        async for chunk in chunks:
            buffer.extend(chunk)
            if len(buffer) > limit:
                self.tokens.invalidate(token)
                uploads_ingested_total.labels(result="rejected").inc()
                raise PayloadTooLarge(f"File size exceeds allowed limit of {limit} bytes")
        return bytes(buffer)

    async def ingest(
        self,
        db: AsyncSession,
        token: str,
        data: bytes,
        mime_type: str,
        upload_id: Optional[str] = None,
    ) -> IngestResult:
        """
        Ingest a completed upload.

        The token is claimed before anything else, so a concurrent request
        with the same token fails with TokenInvalid before any write.

        Args:
            db: Database session
            token: Upload token from X-Upload-Token
            data: Raw file bytes
            mime_type: Actual MIME type of the bytes
            upload_id: Upload ID from the URL, must match the token

        Raises:
            Unauthorized: invalid/expired/claimed token or mismatched upload_id
            PayloadTooLarge: more bytes than the token allows
            UnsupportedMediaType: MIME type differs from the declared one
                or is not allowed
            StorageWriteFailed: backend error; the token is invalidated and
                the client must prepare again
        """
        start_time = time.time()

        upload_token = self.tokens.claim(token)
        if upload_id is not None and upload_token.upload_id != upload_id:
            self.tokens.release(token)
            raise Unauthorized("Invalid or expired upload token")

        try:
            result = await self._store(db, upload_token, data, mime_type)
        except (Unauthorized, PayloadTooLarge, UnsupportedMediaType, StorageWriteFailed):
            self.tokens.invalidate(token)
            raise
        except BaseException:
            # Nothing was recorded, the same token may be sent again
            self.tokens.release(token)
            raise

        self.tokens.consume(token)

        if not result.created:
            return result

        upload = result.upload
        owner_id = upload.owner_id
        uploads_ingested_total.labels(result="created").inc()
        upload_bytes_total.inc(upload.size)
        log_upload_ingested(
            logger,
            upload_id=upload.id,
            owner_id=owner_id,
            size=upload.size,
            storage_key=upload.storage_key,
            duration_ms=(time.time() - start_time) * 1000,
        )

        try:
            await self.billing.track_upload(owner_id, upload.size, upload.id)
        except Exception as e:
            # Usage tracking must not fail an upload that is already stored
            logger.warning(f"Failed to track usage for upload {upload.id}: {e}")

        await self._emit(db, owner_id, EVENT_UPLOAD_COMPLETED, {"upload": upload_public_fields(upload)})

        return result

    async def _store(
        self,
        db: AsyncSession,
        upload_token: UploadToken,
        data: bytes,
        mime_type: str,
    ) -> IngestResult:
        """Check, deduplicate, write and record the bytes of a claimed token."""
        if len(data) > upload_token.max_file_size:
            uploads_ingested_total.labels(result="rejected").inc()
            raise PayloadTooLarge(
                f"File size {len(data)} exceeds allowed limit of {upload_token.max_file_size} bytes"
            )

        actual_mime = _normalize_mime(mime_type)
        if actual_mime != _normalize_mime(upload_token.declared_mime_type) \
                or not self.is_mime_allowed(actual_mime):
            uploads_ingested_total.labels(result="rejected").inc()
            raise UnsupportedMediaType(f"File type not allowed: {mime_type}")

        owner_id = upload_token.owner_id
        checksum = self.checksum(data)

        existing = await self.find_duplicate(db, owner_id, checksum)
        if existing is not None:
            uploads_ingested_total.labels(result="deduplicated").inc()
            log_upload_deduplicated(logger, upload_id=existing.id, owner_id=owner_id, checksum=checksum)
            return IngestResult(upload=existing, created=False)

        try:
            storage_key = await run_in_threadpool(
                self.storage.save,
                data,
                upload_token.filename,
                self.storage_folder(owner_id),
                actual_mime,
            )
        except StorageWriteFailed:
            uploads_ingested_total.labels(result="storage_failed").inc()
            raise

        upload = Upload(
            id=upload_token.upload_id,
            owner_id=owner_id,
            checksum=checksum,
            storage_key=storage_key,
            storage_provider=self.storage.name,
            original_name=upload_token.filename,
            mime_type=actual_mime,
            size=len(data),
            url=self.storage.public_url(storage_key),
        )
        db.add(upload)
        try:
            await db.commit()
        except IntegrityError as e:
            # A record already exists for this upload_id
            await db.rollback()
            await self._discard(storage_key)
            raise TokenInvalid("Upload already completed") from e
        except Exception:
            await db.rollback()
            await self._discard(storage_key)
            raise
        await db.refresh(upload)

        return IngestResult(upload=upload, created=True)

    async def _discard(self, storage_key: str) -> None:
        """Best-effort removal of bytes that never got a record."""
        try:
            await run_in_threadpool(self.storage.delete, storage_key)
        except Exception as e:
            logger.warning(f"Failed to remove unrecorded object {storage_key}: {e}")

    async def _emit(self, db: AsyncSession, owner_id: str, event: str, data: Dict[str, Any]) -> None:
        # Webhook errors never change the outcome of the upload operation
        try:
            await self.webhooks.emit(db, owner_id, event, data)
        except Exception as e:
            logger.error(f"Failed to emit {event} for owner {owner_id}: {e}")

    async def get_upload(self, db: AsyncSession, owner_id: str, upload_id: str) -> Upload:
        """
        Raises:
            NotFound: unknown, foreign or deleted upload
        """
        result = await db.execute(
            select(Upload).where(
                Upload.id == upload_id,
                Upload.owner_id == owner_id,
                Upload.deleted_at.is_(None)
            )
        )
        upload = result.scalar_one_or_none()
        if upload is None:
            raise NotFound("Upload not found")
        return upload

    async def get_access_url(self, db: AsyncSession, upload: Upload) -> str:
        """
        URL a client can read the file from.

        Prefers a signed URL (cached on the record until close to expiry);
        backends without signing fall back to the public URL.
        """
        now = utc_now()
        if upload.signed_url and upload.signed_url_expires_at \
                and as_utc(upload.signed_url_expires_at) - now > SIGNED_URL_MIN_REMAINING:
            return upload.signed_url

        try:
            url = await run_in_threadpool(self.storage.signed_url, upload.storage_key, self.signed_url_ttl)
        except Unsupported:
            return self.storage.public_url(upload.storage_key)

        upload.signed_url = url
        upload.signed_url_expires_at = now + timedelta(seconds=self.signed_url_ttl)
        await db.commit()
        return url

    async def delete_upload(self, db: AsyncSession, owner_id: str, upload_id: str) -> Upload:
        """
        Soft-delete an upload.

        Storage bytes are reclaimed later by purge_deleted().
        """
        upload = await self.get_upload(db, owner_id, upload_id)
        upload.deleted_at = utc_now()
        upload.signed_url = None
        upload.signed_url_expires_at = None
        await db.commit()

        log_event(logger, "upload_deleted", f"Upload deleted: {upload_id}", owner_id=owner_id, upload_id=upload_id)

        try:
            await self.billing.track_deletion(owner_id, upload.size, upload.id)
        except Exception as e:
            logger.warning(f"Failed to track deletion for upload {upload.id}: {e}")

        await self._emit(
            db,
            owner_id,
            EVENT_UPLOAD_DELETED,
            {"upload": {"id": upload.id, "deleted_at": as_utc(upload.deleted_at).isoformat()}},
        )
        return upload

    async def purge_deleted(self, db: AsyncSession, limit: int = 500) -> int:
        """
        Remove storage bytes of soft-deleted uploads.

        Returns:
            Number of uploads purged
        """
        result = await db.execute(
            select(Upload)
            .where(Upload.deleted_at.is_not(None), Upload.purged_at.is_(None))
            .order_by(Upload.deleted_at)
            .limit(limit)
        )
        uploads = list(result.scalars().all())

        purged = 0
        for upload in uploads:
            try:
                await run_in_threadpool(self.storage.delete, upload.storage_key)
            except Exception as e:
                logger.error(f"Failed to purge {upload.storage_key}: {e}")
                continue
            upload.purged_at = utc_now()
            purged += 1

        await db.commit()
        if purged:
            logger.info(f"Purged storage for {purged} deleted uploads")
        return purged
