"""
Webhook delivery engine.

Responsibilities:
- Manage subscriber endpoints (owner scoped)
- Fan out events to every active webhook subscribed to them
- Sign and POST payloads, retrying with exponential backoff
- Record every attempt on the WebhookDelivery row

Delivery guarantees are at-least-once: consumers must be idempotent and
can use the payload id / X-Webhook-ID header to deduplicate.
"""
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

import httpx
from sqlalchemy import delete, func, or_, and_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from filedrop.exceptions import DeliveryFailed, Forbidden, NotFound, ValidationFailed
from filedrop.models.base import utc_now
from filedrop.models.webhook import DeliveryStatus, Webhook, WebhookDelivery
from filedrop.services.delivery_scheduler import DeliveryScheduler
from filedrop.utils.logging import log_webhook_delivery
from filedrop.utils.metrics import webhook_deliveries_total, webhook_delivery_duration_seconds
from filedrop.utils.signing import canonical_json, generate_secret, sign_payload

logger = logging.getLogger(__name__)

EVENT_UPLOAD_COMPLETED = "upload.completed"
EVENT_UPLOAD_DELETED = "upload.deleted"
EVENT_WEBHOOK_TEST = "webhook.test"

WEBHOOK_EVENTS = frozenset({
    EVENT_UPLOAD_COMPLETED,
    EVENT_UPLOAD_DELETED,
    EVENT_WEBHOOK_TEST,
})

# Stored response bodies are truncated to this many characters
RESPONSE_BODY_LIMIT = 1000


def _validate_url(url: str) -> str:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationFailed(f"Invalid webhook URL: {url}")
    return url


def _validate_events(events: Iterable[str]) -> List[str]:
    events = list(dict.fromkeys(events))
    if not events:
        raise ValidationFailed("At least one event is required")
    unknown = [e for e in events if e not in WEBHOOK_EVENTS]
    if unknown:
        raise ValidationFailed(f"Unknown events: {', '.join(unknown)}")
    return events


class WebhookService:
    """Webhook management and delivery."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        scheduler: DeliveryScheduler,
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff_base: float = 2,
        user_agent: str = "FileDrop-Webhooks/1.0",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            session_factory: Session factory used by delivery attempts,
                which run outside of any request
            scheduler: Runs attempts after a delay
            timeout: Per-attempt HTTP timeout in seconds
            max_attempts: Automatic attempts before a delivery fails
            backoff_base: Retry n waits backoff_base ** n seconds
            user_agent: User-Agent header sent to endpoints
            transport: Custom httpx transport (tests)
        """
        self._session_factory = session_factory
        self.scheduler = scheduler
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.user_agent = user_agent
        self._client = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            follow_redirects=False,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Endpoint management
    # ------------------------------------------------------------------

    async def create_webhook(
        self,
        db: AsyncSession,
        owner_id: str,
        url: str,
        events: Iterable[str],
        is_active: bool = True,
    ) -> Tuple[Webhook, str]:
        """
        Create a webhook endpoint.

        Returns:
            (webhook, secret). The secret is only ever returned here.
        """
        secret = generate_secret()
        webhook = Webhook(
            owner_id=owner_id,
            url=_validate_url(url),
            events=_validate_events(events),
            secret=secret,
            is_active=is_active,
        )
        db.add(webhook)
        await db.commit()
        await db.refresh(webhook)

        logger.info(f"Webhook created: {webhook.id} for owner {owner_id}")
        return webhook, secret

    async def list_webhooks(self, db: AsyncSession, owner_id: str) -> List[Webhook]:
        result = await db.execute(
            select(Webhook)
            .where(Webhook.owner_id == owner_id)
            .order_by(Webhook.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_webhook(self, db: AsyncSession, owner_id: str, webhook_id: str) -> Webhook:
        result = await db.execute(
            select(Webhook).where(
                Webhook.id == webhook_id,
                Webhook.owner_id == owner_id
            )
        )
        webhook = result.scalar_one_or_none()
        if webhook is None:
            raise NotFound("Webhook not found")
        return webhook

    async def update_webhook(
        self,
        db: AsyncSession,
        owner_id: str,
        webhook_id: str,
        url: Optional[str] = None,
        events: Optional[Iterable[str]] = None,
        is_active: Optional[bool] = None,
    ) -> Webhook:
        webhook = await self.get_webhook(db, owner_id, webhook_id)

        if url is not None:
            webhook.url = _validate_url(url)
        if events is not None:
            webhook.events = _validate_events(events)
        if is_active is not None:
            webhook.is_active = is_active

        await db.commit()
        await db.refresh(webhook)
        return webhook

    async def delete_webhook(self, db: AsyncSession, owner_id: str, webhook_id: str) -> None:
        webhook = await self.get_webhook(db, owner_id, webhook_id)

        await db.execute(delete(WebhookDelivery).where(WebhookDelivery.webhook_id == webhook.id))
        await db.delete(webhook)
        await db.commit()

        logger.info(f"Webhook deleted: {webhook_id}")

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    @staticmethod
    def build_payload(event: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Envelope sent to subscribers: {id, event, data, timestamp}."""
        return {
            "id": str(uuid.uuid4()),
            "event": event,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def emit(
        self,
        db: AsyncSession,
        owner_id: str,
        event: str,
        data: Dict[str, Any]
    ) -> List[WebhookDelivery]:
        """
        Fan an event out to the owner's subscribed, active webhooks.

        Creates one pending delivery per webhook and schedules its first
        attempt. Returns without waiting for any HTTP request.
        """
        result = await db.execute(
            select(Webhook).where(
                Webhook.owner_id == owner_id,
                Webhook.is_active.is_(True)
            )
        )
        webhooks = [w for w in result.scalars().all() if event in (w.events or [])]

        if not webhooks:
            logger.debug(f"No webhooks found for event: {event}")
            return []

        # One occurrence id shared by all subscribers
        body = canonical_json(self.build_payload(event, data))

        deliveries = [
            WebhookDelivery(
                webhook_id=webhook.id,
                event=event,
                payload=body,
                status=DeliveryStatus.PENDING,
                attempts=0,
            )
            for webhook in webhooks
        ]
        db.add_all(deliveries)
        await db.commit()

        for delivery in deliveries:
            self._schedule(delivery.id, 0)

        logger.info(f"Event {event} emitted to {len(deliveries)} webhooks for owner {owner_id}")
        return deliveries

    async def test_webhook(self, db: AsyncSession, owner_id: str, webhook_id: str) -> WebhookDelivery:
        """Send a synthetic webhook.test event to one endpoint."""
        webhook = await self.get_webhook(db, owner_id, webhook_id)

        body = canonical_json(self.build_payload(
            EVENT_WEBHOOK_TEST,
            {
                "message": "This is a test webhook",
                "webhook_id": webhook.id,
            },
        ))
        delivery = WebhookDelivery(
            webhook_id=webhook.id,
            event=EVENT_WEBHOOK_TEST,
            payload=body,
            status=DeliveryStatus.PENDING,
            attempts=0,
        )
        db.add(delivery)
        await db.commit()

        self._schedule(delivery.id, 0)
        return delivery

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _schedule(self, delivery_id: str, delay: float) -> bool:
        """
        Hand an attempt to the scheduler.

        A scheduler failure (broker down) is logged and leaves the delivery
        pending for reconcile_pending().
        """
        try:
            self.scheduler.schedule(delivery_id, delay)
        except Exception as e:
            logger.error(f"Failed to schedule delivery {delivery_id}: {e}")
            return False
        return True

    def retry_delay(self, attempts: int) -> float:
        """Backoff before the next automatic attempt (2s, 4s, 8s with base 2)."""
        return self.backoff_base ** attempts

    async def attempt_delivery(self, delivery_id: str, manual: bool = False) -> Optional[WebhookDelivery]:
        """
        POST a delivery's frozen payload once and record the outcome.

        Automatic attempts only run for pending deliveries. Manual attempts
        run regardless of status; they are the only way a failed delivery
        can become delivered.

        Returns:
            The updated delivery, or None if it no longer exists
        """
        async with self._session_factory() as db:
            # Overlapping attempts (manual retry vs scheduled attempt) queue on the row lock
            result = await db.execute(
                select(WebhookDelivery)
                .where(WebhookDelivery.id == delivery_id)
                .with_for_update()
            )
            delivery = result.scalar_one_or_none()
            if delivery is None:
                logger.warning(f"Delivery {delivery_id} not found, skipping attempt")
                return None

            if not manual and delivery.status != DeliveryStatus.PENDING:
                logger.debug(f"Delivery {delivery_id} is {delivery.status.value}, skipping attempt")
                return delivery

            webhook = await db.get(Webhook, delivery.webhook_id)
            if webhook is None:
                logger.warning(f"Webhook for delivery {delivery_id} no longer exists")
                return delivery

            body = delivery.payload.encode("utf-8")
            headers = {
                "Content-Type": "application/json",
                "X-Webhook-Signature": sign_payload(body, webhook.secret),
                "X-Webhook-Event": delivery.event,
                "X-Webhook-ID": delivery.id,
                "User-Agent": self.user_agent,
            }

            response_status = None
            response_body = None
            error_message = None
            start_time = time.monotonic()

            try:
                response = await self._client.post(webhook.url, content=body, headers=headers)
                response_status = response.status_code
                response_body = response.text[:RESPONSE_BODY_LIMIT]
                succeeded = 200 <= response.status_code < 300
                if not succeeded:
                    error_message = f"Endpoint returned HTTP {response.status_code}"
            except httpx.HTTPError as e:
                succeeded = False
                error_message = str(e) or e.__class__.__name__

            duration = time.monotonic() - start_time
            webhook_delivery_duration_seconds.observe(duration)

            now = utc_now()
            # Incremented in SQL so concurrent attempts are never lost
            delivery.attempts = WebhookDelivery.attempts + 1
            delivery.last_attempt_at = now
            delivery.response_status = response_status
            delivery.response_body = response_body
            await db.flush()
            await db.refresh(delivery, ["attempts", "status"])

            next_delay = None
            if succeeded:
                delivery.status = DeliveryStatus.DELIVERED
                delivery.delivered_at = now
                delivery.error_message = None
            else:
                delivery.error_message = error_message
                # Delivered and failed deliveries never move back to pending
                if delivery.status == DeliveryStatus.PENDING:
                    if delivery.attempts < self.max_attempts:
                        next_delay = self.retry_delay(delivery.attempts)
                    else:
                        delivery.status = DeliveryStatus.FAILED

            await db.commit()

        webhook_deliveries_total.labels(status=delivery.status.value).inc()
        log_webhook_delivery(
            logger,
            delivery_id=delivery.id,
            webhook_id=delivery.webhook_id,
            status=delivery.status.value,
            attempts=delivery.attempts,
            response_status=response_status,
            error=error_message,
            duration_ms=duration * 1000,
            manual=manual,
        )

        if next_delay is not None:
            self._schedule(delivery.id, next_delay)

        return delivery

    async def retry_delivery(self, db: AsyncSession, owner_id: str, delivery_id: str) -> WebhookDelivery:
        """
        Manually re-send a delivery's original payload.

        Raises:
            NotFound: unknown delivery
            Forbidden: delivery belongs to another owner
            DeliveryFailed: the attempt failed and the delivery is failed
        """
        result = await db.execute(
            select(WebhookDelivery, Webhook.owner_id)
            .join(Webhook, Webhook.id == WebhookDelivery.webhook_id)
            .where(WebhookDelivery.id == delivery_id)
        )
        row = result.first()
        if row is None:
            raise NotFound("Delivery not found")
        if row.owner_id != owner_id:
            raise Forbidden("Delivery belongs to another owner")

        delivery = await self.attempt_delivery(delivery_id, manual=True)
        if delivery is None:
            raise NotFound("Delivery not found")

        if delivery.status == DeliveryStatus.FAILED:
            raise DeliveryFailed(
                f"Delivery {delivery_id} failed after {delivery.attempts} attempts: "
                f"{delivery.error_message}"
            )
        return delivery

    async def reconcile_pending(self, older_than_seconds: int = 300) -> int:
        """
        Re-schedule pending deliveries with no recent attempt.

        Recovers retries whose timers were lost on restart. May cause a
        duplicate attempt if a broker-held retry is still queued, which
        at-least-once delivery allows.

        Returns:
            Number of deliveries scheduled
        """
        cutoff = utc_now() - timedelta(seconds=older_than_seconds)
        async with self._session_factory() as db:
            result = await db.execute(
                select(WebhookDelivery.id).where(
                    WebhookDelivery.status == DeliveryStatus.PENDING,
                    or_(
                        WebhookDelivery.last_attempt_at < cutoff,
                        and_(
                            WebhookDelivery.last_attempt_at.is_(None),
                            WebhookDelivery.created_at < cutoff
                        )
                    )
                )
            )
            delivery_ids = list(result.scalars().all())

        scheduled = sum(1 for delivery_id in delivery_ids if self._schedule(delivery_id, 0))

        if scheduled:
            logger.info(f"Re-scheduled {scheduled} stale pending deliveries")
        return scheduled

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def list_deliveries(
        self,
        db: AsyncSession,
        owner_id: str,
        webhook_id: str,
        limit: int = 50
    ) -> List[WebhookDelivery]:
        webhook = await self.get_webhook(db, owner_id, webhook_id)
        result = await db.execute(
            select(WebhookDelivery)
            .where(WebhookDelivery.webhook_id == webhook.id)
            .order_by(WebhookDelivery.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_stats(self, db: AsyncSession, owner_id: str, webhook_id: str) -> Dict[str, Any]:
        webhook = await self.get_webhook(db, owner_id, webhook_id)
        result = await db.execute(
            select(WebhookDelivery.status, func.count())
            .where(WebhookDelivery.webhook_id == webhook.id)
            .group_by(WebhookDelivery.status)
        )
        counts = {status: count for status, count in result.all()}

        delivered = counts.get(DeliveryStatus.DELIVERED, 0)
        failed = counts.get(DeliveryStatus.FAILED, 0)
        pending = counts.get(DeliveryStatus.PENDING, 0)
        total = delivered + failed + pending

        return {
            "total": total,
            "delivered": delivered,
            "failed": failed,
            "pending": pending,
            "success_rate": round(delivered / total * 100, 2) if total else 0.0,
        }
