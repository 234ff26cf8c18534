"""
Upload token service.

Issues short-lived, single-use upload authorizations.

Flow:
1. Client calls prepare with filename, MIME type and declared size
2. Service returns an opaque token (256 bits) and a public upload_id
3. Client sends the bytes with the token in X-Upload-Token
4. Ingestion claims the token, writes the bytes, then consumes the claim

A claimed token is in flight: it is no longer valid for anyone else, so
two concurrent transfers with the same token cannot both write. A failed
transfer either releases the claim (retryable) or invalidates it.

Tokens only live in process memory. Losing them on restart is fine:
the client simply prepares again.
"""
import asyncio
import logging
import secrets
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from filedrop.exceptions import SizeExceedsPolicy, TokenInvalid, ValidationFailed
from filedrop.utils.metrics import upload_tokens_active, upload_tokens_issued_total
from filedrop.utils.logging import log_event

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UploadToken:
    """An issued upload authorization."""
    token: str
    upload_id: str
    owner_id: str
    filename: str
    declared_mime_type: str
    declared_size: int
    expires_at: datetime
    max_file_size: int


class UploadTokenService:
    """
    In-memory token table.

    All access goes through a lock: prepare, validate, claim, consume and
    the sweep race safely, and removing an already-removed token is a no-op.
    """

    def __init__(
        self,
        ttl_seconds: int = 15 * 60,
        max_upload_size: int = 100 * 1024 * 1024,
        clock: Callable[[], datetime] = _utc_now,
    ):
        if ttl_seconds <= 0:
            raise ValueError("Token TTL must be positive")
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_upload_size = max_upload_size
        self._clock = clock
        self._tokens: Dict[str, UploadToken] = {}
        # Tokens claimed by an ingestion in progress
        self._claimed: Dict[str, UploadToken] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens) + len(self._claimed)

    def _update_gauge(self) -> None:
        # Caller holds the lock
        upload_tokens_active.set(len(self._tokens) + len(self._claimed))

    def prepare(
        self,
        owner_id: str,
        filename: str,
        mime_type: str,
        declared_size: int
    ) -> UploadToken:
        """
        Issue a new upload token.

        Raises:
            ValidationFailed: missing filename/MIME type or non-positive size
            SizeExceedsPolicy: declared_size above the configured ceiling
        """
        if not filename or not mime_type:
            raise ValidationFailed("Missing required fields: filename, mime_type")
        if declared_size <= 0:
            raise ValidationFailed("Invalid file size")
        if declared_size > self.max_upload_size:
            raise SizeExceedsPolicy(declared_size, self.max_upload_size)

        upload_token = UploadToken(
            token=secrets.token_hex(32),
            upload_id=str(uuid.uuid4()),
            owner_id=owner_id,
            filename=filename,
            declared_mime_type=mime_type,
            declared_size=declared_size,
            expires_at=self._clock() + self.ttl,
            max_file_size=declared_size,
        )

        with self._lock:
            self._tokens[upload_token.token] = upload_token
            self._update_gauge()

        upload_tokens_issued_total.inc()
        log_event(
            logger,
            "upload_token_issued",
            f"Upload token issued: {upload_token.upload_id}",
            owner_id=owner_id,
            upload_id=upload_token.upload_id,
            declared_size=declared_size,
        )

        # Opportunistic cleanup
        self.sweep()

        return upload_token

    def _active(self, token: Optional[str]) -> UploadToken:
        # Caller holds the lock
        if not token:
            raise TokenInvalid("Missing upload token")

        upload_token = self._tokens.get(token)
        if upload_token is None:
            raise TokenInvalid("Invalid or expired upload token")

        if self._clock() >= upload_token.expires_at:
            del self._tokens[token]
            self._update_gauge()
            raise TokenInvalid("Invalid or expired upload token")

        return upload_token

    def validate(self, token: Optional[str]) -> UploadToken:
        """
        Return the active token.

        An expired token is rejected (and dropped) even if the sweep has
        not run yet. A claimed token is not active.

        Raises:
            TokenInvalid: unknown, claimed, consumed or expired token
        """
        with self._lock:
            return self._active(token)

    def claim(self, token: Optional[str]) -> UploadToken:
        """
        Take an active token for one ingestion.

        Exactly one caller wins a token; everybody else gets TokenInvalid
        until the claim is released.

        Raises:
            TokenInvalid: unknown, claimed, consumed or expired token
        """
        with self._lock:
            upload_token = self._active(token)
            del self._tokens[token]
            self._claimed[token] = upload_token
            self._update_gauge()
        return upload_token

    def release(self, token: str) -> bool:
        """
        Return a claimed token to the active table after a retryable failure.

        A claim that expired in the meantime is dropped instead.

        Returns:
            True if the token is usable again
        """
        with self._lock:
            upload_token = self._claimed.pop(token, None)
            restored = upload_token is not None and self._clock() < upload_token.expires_at
            if restored:
                self._tokens[token] = upload_token
            self._update_gauge()
        return restored

    def consume(self, token: str) -> bool:
        """
        Remove a token, claimed or not, after its bytes were durably written.

        Returns:
            True for the single successful consumption, False afterwards
        """
        with self._lock:
            removed = self._claimed.pop(token, None)
            if removed is None:
                removed = self._tokens.pop(token, None)
            self._update_gauge()
        return removed is not None

    def invalidate(self, token: str) -> None:
        """Drop a token after a failed upload so it cannot be reused."""
        if self.consume(token):
            logger.info("Upload token invalidated after failed upload")

    def sweep(self) -> int:
        """
        Remove expired tokens.

        Advisory cleanup only: validate() already rejects expired tokens.
        Claimed tokens are left to their ingestion.

        Returns:
            Number of tokens removed
        """
        now = self._clock()
        with self._lock:
            expired = [t for t, ut in self._tokens.items() if now >= ut.expires_at]
            for token in expired:
                del self._tokens[token]
            self._update_gauge()

        if expired:
            logger.debug(f"Swept {len(expired)} expired upload tokens")
        return len(expired)

    async def run_sweeper(self, interval: float) -> None:
        """Sweep on a fixed interval until cancelled."""
        while True:
            await asyncio.sleep(interval)
            self.sweep()
