"""
Deferred execution of webhook delivery attempts.

Retries are scheduled tasks, never busy waits. Two implementations:

- AsyncioDeliveryScheduler runs attempts inside the API process with
  loop.call_later. Pending timers are lost on restart; the delivery stays
  pending and is picked up by WebhookService.reconcile_pending().
- CeleryDeliveryScheduler enqueues the deliver_webhook task with a
  countdown, so the backlog lives in the broker and survives restarts.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)

DeliveryRunner = Callable[[str], Awaitable[object]]


class DeliveryScheduler:
    """Schedules a delivery attempt to run after a delay."""

    def schedule(self, delivery_id: str, delay: float = 0) -> None:
        raise NotImplementedError

    async def shutdown(self) -> None:
        """Release pending work on process shutdown."""


class AsyncioDeliveryScheduler(DeliveryScheduler):
    """In-process scheduler on the running event loop."""

    def __init__(self, runner: Optional[DeliveryRunner] = None):
        self._runner = runner
        self._handles: Set[asyncio.TimerHandle] = set()
        self._tasks: Set[asyncio.Task] = set()

    def bind(self, runner: DeliveryRunner) -> None:
        """Set the coroutine function that performs an attempt."""
        self._runner = runner

    @property
    def pending(self) -> int:
        return len(self._handles) + len(self._tasks)

    def schedule(self, delivery_id: str, delay: float = 0) -> None:
        if self._runner is None:
            raise RuntimeError("AsyncioDeliveryScheduler has no runner bound")

        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def _start():
            self._handles.discard(handle)
            task = loop.create_task(self._run(delivery_id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        handle = loop.call_later(max(delay, 0), _start)
        self._handles.add(handle)
        logger.debug(f"Scheduled delivery {delivery_id} in {delay}s")

    async def _run(self, delivery_id: str) -> None:
        try:
            await self._runner(delivery_id)
        except Exception:
            # The delivery row stays pending and can be reconciled later
            logger.exception(f"Delivery attempt crashed: {delivery_id}")

    async def drain(self) -> None:
        """Wait until no attempt is running or waiting. Used by tests and shutdown."""
        while self._handles or self._tasks:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            else:
                await asyncio.sleep(0.01)

    async def shutdown(self) -> None:
        for handle in list(self._handles):
            handle.cancel()
        self._handles.clear()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class CeleryDeliveryScheduler(DeliveryScheduler):
    """Broker-backed scheduler using the deliver_webhook Celery task."""

    def schedule(self, delivery_id: str, delay: float = 0) -> None:
        # Imported lazily: the task module imports the Celery app
        from filedrop.tasks.deliver_webhook import deliver_webhook_task

        deliver_webhook_task.apply_async(args=[delivery_id], countdown=max(delay, 0))
        logger.debug(f"Enqueued delivery {delivery_id} with countdown {delay}s")
