"""
Tests for the webhook delivery engine.
Endpoints are served by httpx.MockTransport; retries go through a
recording scheduler so no test waits on backoff timers.
"""
import asyncio
import json
from unittest.mock import patch

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from filedrop.exceptions import DeliveryFailed, Forbidden, NotFound, ValidationFailed
from filedrop.models.webhook import DeliveryStatus, WebhookDelivery
from filedrop.services import Services
from filedrop.services.delivery_scheduler import AsyncioDeliveryScheduler, CeleryDeliveryScheduler
from filedrop.services.webhooks import WebhookService
from filedrop.utils.signing import verify_signature

from conftest import OTHER_OWNER_ID, OWNER_ID, BrokenScheduler, RecordingScheduler, WebhookReceiver


async def run_scheduled(services: Services, scheduler: RecordingScheduler):
    """Run every scheduled attempt, including retries scheduled meanwhile."""
    done = 0
    while done < len(scheduler.scheduled):
        delivery_id, _ = scheduler.scheduled[done]
        done += 1
        await services.webhooks.attempt_delivery(delivery_id)


class TestWebhookManagement:
    """Tests for webhook CRUD."""

    async def test_create_returns_secret(self, services: Services, db_session: AsyncSession):
        webhook, secret = await services.webhooks.create_webhook(
            db_session, OWNER_ID, "https://hooks.test/a", ["upload.completed", "upload.completed"]
        )

        assert len(secret) == 64
        assert webhook.secret == secret
        assert webhook.events == ["upload.completed"]
        assert webhook.is_active is True

    @pytest.mark.parametrize("url", ["ftp://hooks.test", "not a url", ""])
    async def test_invalid_url(self, services: Services, db_session: AsyncSession, url):
        with pytest.raises(ValidationFailed):
            await services.webhooks.create_webhook(db_session, OWNER_ID, url, ["upload.completed"])

    @pytest.mark.parametrize("events", [[], ["upload.exploded"]])
    async def test_invalid_events(self, services: Services, db_session: AsyncSession, events):
        with pytest.raises(ValidationFailed):
            await services.webhooks.create_webhook(db_session, OWNER_ID, "https://hooks.test/a", events)

    async def test_owner_scoping(self, services: Services, db_session: AsyncSession):
        webhook, _ = await services.webhooks.create_webhook(
            db_session, OWNER_ID, "https://hooks.test/a", ["upload.completed"]
        )

        assert [w.id for w in await services.webhooks.list_webhooks(db_session, OWNER_ID)] == [webhook.id]
        assert await services.webhooks.list_webhooks(db_session, OTHER_OWNER_ID) == []
        with pytest.raises(NotFound):
            await services.webhooks.get_webhook(db_session, OTHER_OWNER_ID, webhook.id)

    async def test_update(self, services: Services, db_session: AsyncSession):
        webhook, _ = await services.webhooks.create_webhook(
            db_session, OWNER_ID, "https://hooks.test/a", ["upload.completed"]
        )

        updated = await services.webhooks.update_webhook(
            db_session, OWNER_ID, webhook.id, events=["upload.deleted"], is_active=False
        )

        assert updated.url == "https://hooks.test/a"
        assert updated.events == ["upload.deleted"]
        assert updated.is_active is False

    async def test_delete_removes_deliveries(
        self, services: Services, db_session: AsyncSession, scheduler: RecordingScheduler
    ):
        webhook, _ = await services.webhooks.create_webhook(
            db_session, OWNER_ID, "https://hooks.test/a", ["upload.completed"]
        )
        [delivery] = await services.webhooks.emit(db_session, OWNER_ID, "upload.completed", {"upload": {}})

        await services.webhooks.delete_webhook(db_session, OWNER_ID, webhook.id)

        with pytest.raises(NotFound):
            await services.webhooks.get_webhook(db_session, OWNER_ID, webhook.id)
        assert await services.webhooks.attempt_delivery(delivery.id) is None


class TestEmit:
    """Tests for event fan-out."""

    async def test_fan_out_to_subscribed_active_webhooks(
        self, services: Services, db_session: AsyncSession, scheduler: RecordingScheduler
    ):
        a, _ = await services.webhooks.create_webhook(db_session, OWNER_ID, "https://hooks.test/a", ["upload.completed"])
        b, _ = await services.webhooks.create_webhook(db_session, OWNER_ID, "https://hooks.test/b", ["upload.completed"])
        await services.webhooks.create_webhook(
            db_session, OWNER_ID, "https://hooks.test/inactive", ["upload.completed"], is_active=False
        )
        await services.webhooks.create_webhook(db_session, OWNER_ID, "https://hooks.test/other", ["upload.deleted"])
        await services.webhooks.create_webhook(
            db_session, OTHER_OWNER_ID, "https://hooks.test/foreign", ["upload.completed"]
        )

        deliveries = await services.webhooks.emit(db_session, OWNER_ID, "upload.completed", {"upload": {"id": "u1"}})

        assert {d.webhook_id for d in deliveries} == {a.id, b.id}
        assert all(d.status == DeliveryStatus.PENDING and d.attempts == 0 for d in deliveries)
        assert [delay for _, delay in scheduler.scheduled] == [0, 0]
        # One occurrence shared by both subscribers
        assert deliveries[0].payload == deliveries[1].payload
        payload = json.loads(deliveries[0].payload)
        assert set(payload) == {"id", "event", "data", "timestamp"}
        assert payload["data"] == {"upload": {"id": "u1"}}

    async def test_no_subscribers(self, services: Services, db_session: AsyncSession, scheduler: RecordingScheduler):
        assert await services.webhooks.emit(db_session, OWNER_ID, "upload.completed", {}) == []
        assert scheduler.scheduled == []

    async def test_scheduler_outage_leaves_deliveries_pending(
        self, session_factory: async_sessionmaker, db_session: AsyncSession
    ):
        webhooks = WebhookService(session_factory, BrokenScheduler())
        try:
            await webhooks.create_webhook(db_session, OWNER_ID, "https://hooks.test/a", ["upload.completed"])

            [delivery] = await webhooks.emit(db_session, OWNER_ID, "upload.completed", {"upload": {"id": "u1"}})

            assert delivery.status == DeliveryStatus.PENDING
            assert await webhooks.reconcile_pending(older_than_seconds=-1) == 0
        finally:
            await webhooks.aclose()


class TestDelivery:
    """Tests for delivery attempts and retries."""

    async def _emit_one(self, services: Services, db: AsyncSession):
        webhook, secret = await services.webhooks.create_webhook(
            db, OWNER_ID, "https://hooks.test/a", ["upload.completed"]
        )
        [delivery] = await services.webhooks.emit(db, OWNER_ID, "upload.completed", {"upload": {"id": "u1"}})
        return webhook, secret, delivery

    async def test_successful_delivery(
        self, services: Services, db_session: AsyncSession, scheduler: RecordingScheduler, receiver: WebhookReceiver
    ):
        webhook, secret, delivery = await self._emit_one(services, db_session)

        result = await services.webhooks.attempt_delivery(delivery.id)

        assert result.status == DeliveryStatus.DELIVERED
        assert result.attempts == 1
        assert result.response_status == 200
        assert result.delivered_at is not None

        [request] = receiver.requests
        assert str(request.url) == "https://hooks.test/a"
        assert request.headers["X-Webhook-Event"] == "upload.completed"
        assert request.headers["X-Webhook-ID"] == delivery.id
        assert request.headers["Content-Type"] == "application/json"
        assert request.content == delivery.payload.encode()
        assert verify_signature(request.content, request.headers["X-Webhook-Signature"], secret)

        # No retry scheduled after success, and a second attempt is skipped
        assert len(scheduler.scheduled) == 1
        await services.webhooks.attempt_delivery(delivery.id)
        assert len(receiver.requests) == 1

    async def test_retries_then_fails(
        self, services: Services, db_session: AsyncSession, scheduler: RecordingScheduler, receiver: WebhookReceiver
    ):
        receiver.status_code = 500
        _, _, delivery = await self._emit_one(services, db_session)

        await run_scheduled(services, scheduler)

        async with services.webhooks._session_factory() as db:
            final = await db.get(WebhookDelivery, delivery.id)
        assert final.status == DeliveryStatus.FAILED
        assert final.attempts == 3
        assert final.response_status == 500
        assert final.error_message == "Endpoint returned HTTP 500"
        assert final.response_body == "boom"

        # Initial attempt, then backoff 2s and 4s
        assert scheduler.delays_for(delivery.id) == [0, 2, 4]

        # Every attempt carried the identical frozen body and signature
        assert len(receiver.requests) == 3
        assert len({r.content for r in receiver.requests}) == 1
        assert len({r.headers["X-Webhook-Signature"] for r in receiver.requests}) == 1

    async def test_failed_delivery_not_retried_automatically(
        self, services: Services, db_session: AsyncSession, scheduler: RecordingScheduler, receiver: WebhookReceiver
    ):
        receiver.status_code = 500
        _, _, delivery = await self._emit_one(services, db_session)
        await run_scheduled(services, scheduler)

        await services.webhooks.attempt_delivery(delivery.id)

        assert len(receiver.requests) == 3

    async def test_manual_retry_after_failure(
        self, services: Services, db_session: AsyncSession, scheduler: RecordingScheduler, receiver: WebhookReceiver
    ):
        receiver.status_code = 500
        _, _, delivery = await self._emit_one(services, db_session)
        await run_scheduled(services, scheduler)

        # Still failing: stays failed, no new automatic retries
        with pytest.raises(DeliveryFailed):
            await services.webhooks.retry_delivery(db_session, OWNER_ID, delivery.id)
        assert len(scheduler.scheduled) == 3

        receiver.status_code = 204
        result = await services.webhooks.retry_delivery(db_session, OWNER_ID, delivery.id)

        assert result.status == DeliveryStatus.DELIVERED
        assert result.attempts == 5
        assert len({r.content for r in receiver.requests}) == 1

    async def test_manual_retry_owner_checks(self, services: Services, db_session: AsyncSession):
        _, _, delivery = await self._emit_one(services, db_session)

        with pytest.raises(Forbidden):
            await services.webhooks.retry_delivery(db_session, OTHER_OWNER_ID, delivery.id)
        with pytest.raises(NotFound):
            await services.webhooks.retry_delivery(db_session, OWNER_ID, "missing")

    async def test_network_error_recorded(
        self, session_factory: async_sessionmaker, services: Services, db_session: AsyncSession,
        scheduler: RecordingScheduler
    ):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        webhooks = WebhookService(
            session_factory=session_factory,
            scheduler=scheduler,
            max_attempts=1,
            transport=httpx.MockTransport(refuse),
        )
        try:
            _, _, delivery = await self._emit_one(services, db_session)
            result = await webhooks.attempt_delivery(delivery.id)
        finally:
            await webhooks.aclose()

        assert result.status == DeliveryStatus.FAILED
        assert result.attempts == 1
        assert result.response_status is None
        assert "connection refused" in result.error_message

    async def test_stats_and_history(
        self, services: Services, db_session: AsyncSession, scheduler: RecordingScheduler, receiver: WebhookReceiver
    ):
        webhook, _, delivery = await self._emit_one(services, db_session)
        await services.webhooks.emit(db_session, OWNER_ID, "upload.completed", {"upload": {"id": "u2"}})
        await services.webhooks.attempt_delivery(delivery.id)

        stats = await services.webhooks.get_stats(db_session, OWNER_ID, webhook.id)
        assert stats == {"total": 2, "delivered": 1, "failed": 0, "pending": 1, "success_rate": 50.0}

        history = await services.webhooks.list_deliveries(db_session, OWNER_ID, webhook.id, limit=1)
        assert len(history) == 1

    async def test_test_webhook(
        self, services: Services, db_session: AsyncSession, scheduler: RecordingScheduler, receiver: WebhookReceiver
    ):
        webhook, _ = await services.webhooks.create_webhook(
            db_session, OWNER_ID, "https://hooks.test/a", ["upload.completed"]
        )

        delivery = await services.webhooks.test_webhook(db_session, OWNER_ID, webhook.id)
        await run_scheduled(services, scheduler)

        assert delivery.event == "webhook.test"
        assert json.loads(receiver.requests[0].content)["data"]["webhook_id"] == webhook.id

    async def test_overlapping_attempts_both_counted(
        self, services: Services, db_session: AsyncSession, receiver: WebhookReceiver
    ):
        receiver.status_code = 500
        _, _, delivery = await self._emit_one(services, db_session)

        await asyncio.gather(
            services.webhooks.attempt_delivery(delivery.id, manual=True),
            services.webhooks.attempt_delivery(delivery.id),
        )

        await db_session.refresh(delivery)
        assert len(receiver.requests) == 2
        assert delivery.attempts == 2
        assert delivery.status == DeliveryStatus.PENDING

    async def test_reconcile_pending(self, services: Services, db_session: AsyncSession, scheduler: RecordingScheduler):
        _, _, delivery = await self._emit_one(services, db_session)
        scheduler.scheduled.clear()

        assert await services.webhooks.reconcile_pending(older_than_seconds=3600) == 0
        assert await services.webhooks.reconcile_pending(older_than_seconds=-1) == 1
        assert scheduler.scheduled == [(delivery.id, 0)]

    def test_retry_delay(self, services: Services):
        assert [services.webhooks.retry_delay(n) for n in (1, 2, 3)] == [2, 4, 8]


class TestSchedulers:
    """Tests for DeliveryScheduler implementations."""

    async def test_asyncio_scheduler_runs_retries(
        self, session_factory: async_sessionmaker, services: Services, db_session: AsyncSession
    ):
        calls = []

        def flaky(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503 if len(calls) < 3 else 200)

        scheduler = AsyncioDeliveryScheduler()
        webhooks = WebhookService(
            session_factory=session_factory,
            scheduler=scheduler,
            backoff_base=0.0,
            transport=httpx.MockTransport(flaky),
        )
        scheduler.bind(webhooks.attempt_delivery)
        try:
            await webhooks.create_webhook(db_session, OWNER_ID, "https://hooks.test/a", ["upload.completed"])
            [delivery] = await webhooks.emit(db_session, OWNER_ID, "upload.completed", {"upload": {}})
            await scheduler.drain()
            final = await webhooks.attempt_delivery(delivery.id)
        finally:
            await scheduler.shutdown()
            await webhooks.aclose()

        assert len(calls) == 3
        assert final.status == DeliveryStatus.DELIVERED
        assert final.attempts == 3
        assert scheduler.pending == 0

    def test_asyncio_scheduler_requires_runner(self):
        with pytest.raises(RuntimeError):
            AsyncioDeliveryScheduler().schedule("d1")

    def test_celery_scheduler_enqueues_with_countdown(self):
        with patch("filedrop.tasks.deliver_webhook.deliver_webhook_task.apply_async") as mock:
            CeleryDeliveryScheduler().schedule("d1", 4)

        mock.assert_called_once_with(args=["d1"], countdown=4)
