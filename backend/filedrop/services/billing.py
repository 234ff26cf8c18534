"""
Billing/subscription gate.

Plan limits are enforced by an external billing service. The core only
asks whether an upload is allowed before issuing a token, and reports
usage after ingestion or removal.
"""
import logging
from typing import Optional, Tuple

logger = logging.getLogger(__name__)


class BillingGate:
    """Interface to the billing service."""

    async def can_upload(self, owner_id: str, size: int) -> Tuple[bool, Optional[str]]:
        """Return (allowed, reason)."""
        raise NotImplementedError

    async def track_upload(self, owner_id: str, size: int, upload_id: str) -> None:
        raise NotImplementedError

    async def track_deletion(self, owner_id: str, size: int, upload_id: str) -> None:
        raise NotImplementedError


class AllowAllBillingGate(BillingGate):
    """Default gate for deployments without a billing service: allows everything, logs usage."""

    async def can_upload(self, owner_id: str, size: int) -> Tuple[bool, Optional[str]]:
        return True, None

    async def track_upload(self, owner_id: str, size: int, upload_id: str) -> None:
        logger.debug(f"Usage: owner={owner_id} +{size} bytes (upload {upload_id})")

    async def track_deletion(self, owner_id: str, size: int, upload_id: str) -> None:
        logger.debug(f"Usage: owner={owner_id} -{size} bytes (upload {upload_id})")
