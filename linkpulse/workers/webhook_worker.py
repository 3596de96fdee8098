"""
Webhook Delivery Worker

Consumes "webhooks" jobs from the queue and delivers them to the owner's
endpoints.

Architecture:
- One job per (click, endpoint); the endpoint row is loaded per job so
  secrets never travel through the broker and deactivated endpoints are
  skipped
- A failed delivery bumps the endpoint's failed_attempts / last_failed_at
  and is republished after base * 2**(attempt-1) seconds
- A job that used up max_attempts is dropped with an error log
- The consumed message is always acked, even when processing raised;
  retries are new messages

Usage:
    python -m linkpulse.workers.webhook_worker
"""

import asyncio
import logging
import signal
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from linkpulse.core.exceptions import WebhookDeliveryError
from linkpulse.core.setting import settings
from linkpulse.db import session as db_session
from linkpulse.db.models import WebhookEndpoint
from linkpulse.queue.models import WEBHOOKS_TOPIC, QueueMessage
from linkpulse.queue.strategies import QueueStrategy
from linkpulse.services.webhooks import WebhookDispatcher, record_delivery_failure

logger = logging.getLogger(__name__)


def retry_delay(attempt: int, base_seconds: float) -> float:
    """Exponential backoff: base, 2*base, 4*base, ... for attempt 1, 2, 3, ..."""
    return base_seconds * (2 ** (max(attempt, 1) - 1))


class WebhookWorker:
    """
    Webhook worker with per-job retry and exponential backoff.
    """

    def __init__(
        self,
        queue: QueueStrategy,
        dispatcher: WebhookDispatcher,
        session_factory: Optional[async_sessionmaker] = None,
        backoff_base_seconds: float = 2.0,
        batch_size: int = 10,
    ):
        self.queue = queue
        self.dispatcher = dispatcher
        self.session_factory = session_factory
        self.backoff_base_seconds = backoff_base_seconds
        self.batch_size = batch_size
        self.running = False
        self.delivered_count = 0
        self.dropped_count = 0
        self._pending_retries: dict[asyncio.Task, QueueMessage] = {}

    def _new_session(self):
        return (self.session_factory or db_session.async_session_maker)()

    async def start(self) -> None:
        """Consume until stopped."""
        self.running = True
        logger.info(f"Webhook worker started (batch size {self.batch_size})")

        while self.running:
            try:
                await self.run_once(block_time=1000)
            except asyncio.CancelledError:
                logger.info("Webhook worker task cancelled")
                break
            except Exception as e:
                logger.error(f"Error in webhook worker loop: {e}", exc_info=True)
                await asyncio.sleep(1)

        await self.drain()
        logger.info(
            f"Webhook worker stopped: delivered={self.delivered_count} dropped={self.dropped_count}"
        )

    async def run_once(self, block_time: int = 0) -> int:
        """
        Consume and process one batch.

        Returns:
            Number of messages processed
        """
        messages = await self.queue.consume(WEBHOOKS_TOPIC, batch_size=self.batch_size, block_time=block_time)
        for message in messages:
            try:
                await self.process_message(message)
            except Exception as e:
                logger.error(f"Webhook job {message.job_id} failed unexpectedly: {e}", exc_info=True)
                self._retry_or_drop(message)
            if message.message_id:
                await self.queue.ack(WEBHOOKS_TOPIC, [message.message_id])
        return len(messages)

    async def process_message(self, message: QueueMessage) -> bool:
        """
        Deliver one job.

        Returns:
            True when delivered, False when it failed (and was retried or dropped)
        """
        endpoint_id = message.payload.get("endpoint_id")
        async with self._new_session() as session:
            endpoint = await session.get(WebhookEndpoint, endpoint_id) if endpoint_id else None
            if endpoint is None or not endpoint.is_active:
                logger.warning(f"Skipping webhook job {message.job_id}: endpoint {endpoint_id} unavailable")
                self.dropped_count += 1
                return False

            try:
                await self.dispatcher.deliver(
                    endpoint.url,
                    endpoint.secret,
                    message.payload.get("event", ""),
                    message.payload.get("payload", {}),
                )
            except WebhookDeliveryError as e:
                logger.warning(f"Webhook job {message.job_id} attempt {message.attempts + 1} failed: {e}")
                await record_delivery_failure(session, endpoint.id)
                await session.commit()
                self._retry_or_drop(message)
                return False

        self.delivered_count += 1
        return True

    def _retry_or_drop(self, message: QueueMessage) -> None:
        retry = message.next_attempt()
        if retry.exhausted:
            self.dropped_count += 1
            logger.error(
                f"Dropping webhook job {message.job_id} to {message.payload.get('url')} "
                f"after {retry.attempts} attempts"
            )
            return

        delay = retry_delay(retry.attempts, self.backoff_base_seconds)
        task = asyncio.create_task(self._republish_later(retry, delay))
        self._pending_retries[task] = retry
        task.add_done_callback(lambda done: self._pending_retries.pop(done, None))

    async def _republish(self, message: QueueMessage) -> None:
        if not await self.queue.publish(WEBHOOKS_TOPIC, message):
            logger.error(f"Failed to republish webhook job {message.job_id}")

    async def _republish_later(self, message: QueueMessage, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._republish(message)

    async def drain(self) -> None:
        """Flush scheduled retries back to the queue immediately."""
        pending = dict(self._pending_retries)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        # Cancelled retries are published now so the job is not lost
        for task, message in pending.items():
            if task.cancelled():
                await self._republish(message)

    def stop(self) -> None:
        self.running = False


async def main() -> None:
    from linkpulse.core.resources import get_event_queue, get_webhook_dispatcher, shutdown_resources
    from linkpulse.middleware.logging import configure_logging

    configure_logging(settings.LOG_LEVEL)
    logger.info(f"Queue backend: {settings.QUEUE_BACKEND.value}")

    worker = WebhookWorker(
        queue=get_event_queue(),
        dispatcher=get_webhook_dispatcher(),
        backoff_base_seconds=settings.WEBHOOK_BACKOFF_BASE_SECONDS,
    )

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, worker.stop)

    try:
        await worker.start()
    finally:
        await shutdown_resources()


if __name__ == "__main__":
    asyncio.run(main())
