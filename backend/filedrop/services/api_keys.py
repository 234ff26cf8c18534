"""
API key service.

Keys are random secrets shown once at creation and stored as salted bcrypt
hashes. Because hashes cannot be looked up by plaintext, authentication
compares the presented key against every active key. This is O(active
keys), which is fine at the expected scale.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

import bcrypt
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from filedrop.exceptions import NotFound, RateLimited, Unauthorized, ValidationFailed
from filedrop.models.api_key import ApiKey, ApiKeyUsage
from filedrop.models.base import utc_now
from filedrop.utils.metrics import api_key_auth_failures_total

logger = logging.getLogger(__name__)

KEY_PREFIX = "fd_"


class ApiKeyService:
    """API key lifecycle, authentication and rate limiting."""

    def __init__(
        self,
        rate_window_seconds: int = 3600,
        default_rate_limit: int = 1000,
        bcrypt_rounds: int = 12,
        environment: str = "dev",
    ):
        self.rate_window = timedelta(seconds=rate_window_seconds)
        self.default_rate_limit = default_rate_limit
        self.bcrypt_rounds = bcrypt_rounds
        self.environment = environment

    @staticmethod
    def generate_key() -> str:
        return f"{KEY_PREFIX}{secrets.token_hex(32)}"

    def _hash(self, plain_key: str) -> str:
        return bcrypt.hashpw(plain_key.encode(), bcrypt.gensalt(rounds=self.bcrypt_rounds)).decode()

    def _display_prefix(self, plain_key: str) -> str:
        mode = "live" if self.environment == "production" else "test"
        return f"{KEY_PREFIX}{mode}_{plain_key[len(KEY_PREFIX):len(KEY_PREFIX) + 8]}"

    async def create_api_key(
        self,
        db: AsyncSession,
        owner_id: str,
        name: str,
        scopes: Iterable[str] = (),
        rate_limit: Optional[int] = None,
        expires_at: Optional[datetime] = None,
    ) -> Tuple[ApiKey, str]:
        """
        Create a key.

        Returns:
            (api_key, plain_key). The plain key is never stored.
        """
        if not owner_id:
            raise ValidationFailed("owner_id is required")
        if rate_limit is not None and rate_limit <= 0:
            raise ValidationFailed("rate_limit must be positive")

        plain_key = self.generate_key()
        key_hash = await run_in_threadpool(self._hash, plain_key)

        api_key = ApiKey(
            name=name,
            key_hash=key_hash,
            key_prefix=self._display_prefix(plain_key),
            owner_id=owner_id,
            scopes=list(scopes),
            rate_limit=rate_limit if rate_limit is not None else self.default_rate_limit,
            expires_at=expires_at,
        )
        db.add(api_key)
        await db.commit()
        await db.refresh(api_key)

        logger.info(f"API key created: {api_key.id} ({api_key.key_prefix}) for owner {owner_id}")
        return api_key, plain_key

    async def list_api_keys(self, db: AsyncSession, owner_id: str) -> List[ApiKey]:
        result = await db.execute(
            select(ApiKey)
            .where(ApiKey.owner_id == owner_id)
            .order_by(ApiKey.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_api_key(self, db: AsyncSession, owner_id: str, key_id: str) -> ApiKey:
        result = await db.execute(
            select(ApiKey).where(ApiKey.id == key_id, ApiKey.owner_id == owner_id)
        )
        api_key = result.scalar_one_or_none()
        if api_key is None:
            raise NotFound("API key not found")
        return api_key

    async def revoke_api_key(self, db: AsyncSession, owner_id: str, key_id: str) -> ApiKey:
        api_key = await self.get_api_key(db, owner_id, key_id)
        api_key.is_active = False
        api_key.revoked_at = utc_now()
        await db.commit()
        logger.info(f"API key revoked: {key_id}")
        return api_key

    async def rotate_api_key(self, db: AsyncSession, owner_id: str, key_id: str) -> Tuple[ApiKey, str]:
        """Create a replacement with the same properties and revoke the old key."""
        old_key = await self.get_api_key(db, owner_id, key_id)

        new_key, plain_key = await self.create_api_key(
            db,
            owner_id=old_key.owner_id,
            name=f"{old_key.name} (Rotated)",
            scopes=old_key.scopes or [],
            rate_limit=old_key.rate_limit,
            expires_at=old_key.expires_at,
        )
        await self.revoke_api_key(db, owner_id, key_id)

        logger.info(f"API key rotated: {key_id} -> {new_key.id}")
        return new_key, plain_key

    async def _find_matching_key(self, db: AsyncSession, presented: str) -> Optional[ApiKey]:
        now = utc_now()
        result = await db.execute(
            select(ApiKey).where(
                ApiKey.is_active.is_(True),
                ApiKey.revoked_at.is_(None),
                or_(ApiKey.expires_at.is_(None), ApiKey.expires_at > now)
            )
        )
        candidates = list(result.scalars().all())

        def _match() -> Optional[ApiKey]:
            encoded = presented.encode()
            for candidate in candidates:
                if bcrypt.checkpw(encoded, candidate.key_hash.encode()):
                    return candidate
            return None

        return await run_in_threadpool(_match)

    async def check_rate_limit(self, db: AsyncSession, api_key: ApiKey) -> bool:
        """
        Check the key's usage in the trailing window.

        Returns:
            False once the key's ceiling is reached
        """
        if not api_key.rate_limit:
            return True  # No rate limit

        window_start = utc_now() - self.rate_window
        result = await db.execute(
            select(func.count())
            .select_from(ApiKeyUsage)
            .where(
                ApiKeyUsage.api_key_id == api_key.id,
                ApiKeyUsage.created_at >= window_start
            )
        )
        return result.scalar_one() < api_key.rate_limit

    async def authenticate(self, db: AsyncSession, presented: Optional[str]) -> ApiKey:
        """
        Resolve a presented key to its ApiKey row.

        Raises:
            Unauthorized: missing, unknown, inactive, revoked or expired key
            RateLimited: key is over its ceiling for the current window
        """
        if not presented:
            api_key_auth_failures_total.labels(reason="missing").inc()
            raise Unauthorized("API key is required")

        api_key = await self._find_matching_key(db, presented)
        if api_key is None:
            api_key_auth_failures_total.labels(reason="invalid").inc()
            raise Unauthorized("Invalid API key")

        if not await self.check_rate_limit(db, api_key):
            api_key_auth_failures_total.labels(reason="rate_limited").inc()
            logger.warning(f"Rate limit exceeded for API key {api_key.id}")
            raise RateLimited("Rate limit exceeded")

        now = utc_now()
        db.add(ApiKeyUsage(api_key_id=api_key.id, created_at=now))
        await db.execute(
            update(ApiKey)
            .where(ApiKey.id == api_key.id)
            .values(last_used_at=now, usage_count=ApiKey.usage_count + 1)
        )
        await db.commit()
        await db.refresh(api_key)

        return api_key

    async def prune_usage(self, db: AsyncSession) -> int:
        """
        Delete usage rows older than the rate window.

        They no longer count against any limit. usage_count on the key
        keeps the lifetime total.

        Returns:
            Number of rows deleted
        """
        cutoff = utc_now() - self.rate_window
        result = await db.execute(
            delete(ApiKeyUsage)
            .where(ApiKeyUsage.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

        if result.rowcount:
            logger.info(f"Pruned {result.rowcount} API key usage rows")
        return result.rowcount
