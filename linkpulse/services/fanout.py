"""
Event Fan-out

Publishes a recorded click to downstream consumers:
- one "analytics" job per click
- one "webhooks" job per active owner endpoint subscribed to link.clicked
- with direct delivery on, an immediate attempt per endpoint; only failed
  attempts become "webhooks" jobs

Design Decisions:
- Nothing here retries inline; retry policy travels with the queue message
  and is applied by the workers
- Endpoint secrets stay in the database; webhook jobs carry the endpoint id
- Every failure is logged and contained so a broken broker or endpoint
  cannot affect the click that was already recorded
"""

import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from linkpulse.core.exceptions import WebhookDeliveryError
from linkpulse.core.setting import settings
from linkpulse.db.models import WebhookEndpoint
from linkpulse.queue.models import ANALYTICS_TOPIC, WEBHOOKS_TOPIC, QueueMessage
from linkpulse.queue.strategies import QueueStrategy
from linkpulse.services.context import RequestContext
from linkpulse.services.redirect_service import RedirectDecision
from linkpulse.services.webhooks import WebhookDispatcher, record_delivery_failure

logger = logging.getLogger(__name__)

LINK_CLICKED = "link.clicked"


def build_click_payload(
    decision: RedirectDecision,
    context: RequestContext,
    event_id: Optional[str] = None,
) -> dict[str, Any]:
    """
    Event body shared by analytics jobs and webhook deliveries.

    Contains no device fingerprint and no raw headers beyond what a link
    owner already sees in their dashboard.
    """
    link_ref = decision.link_ref
    return {
        "event": LINK_CLICKED,
        "link_id": link_ref.id,
        "link_kind": link_ref.kind,
        "alias": link_ref.alias,
        "owner_id": link_ref.owner_id,
        "occurred_at": context.received_at.isoformat(),
        "click": {
            "event_id": event_id,
            "target": decision.target,
            "status_code": decision.status_code,
            "ip_address": context.ip_address,
            "user_agent": context.user_agent,
            "referer": context.referer,
            "utm": {name: value for name, value in context.utm.items() if value},
        },
    }


def subscribes_to(endpoint: WebhookEndpoint, event: str) -> bool:
    return event in (endpoint.events or [])


class EventFanout:
    """
    Service for publishing click events to the queue and webhooks.
    """

    def __init__(
        self,
        session: AsyncSession,
        queue: QueueStrategy,
        dispatcher: Optional[WebhookDispatcher] = None,
        direct_delivery: Optional[bool] = None,
    ):
        self.session = session
        self.queue = queue
        self.dispatcher = dispatcher
        self.direct_delivery = settings.WEBHOOK_DIRECT_DELIVERY if direct_delivery is None else direct_delivery

    async def get_subscribed_endpoints(self, owner_id: Optional[str], event: str = LINK_CLICKED) -> list[WebhookEndpoint]:
        """Active endpoints of the link owner that listen for `event`."""
        if not owner_id:
            return []
        statement = select(WebhookEndpoint).where(
            WebhookEndpoint.user_id == owner_id,
            WebhookEndpoint.is_active.is_(True),
        )
        result = await self.session.execute(statement)
        # events is a JSON list; filtered here to stay portable across backends
        return [endpoint for endpoint in result.scalars().all() if subscribes_to(endpoint, event)]

    async def publish_click(
        self,
        decision: RedirectDecision,
        context: RequestContext,
        event_id: Optional[str] = None,
    ) -> int:
        """
        Fan one click out to analytics and webhook consumers.

        Returns:
            Number of jobs successfully enqueued
        """
        payload = build_click_payload(decision, context, event_id)
        published = 0

        analytics = QueueMessage(
            topic=ANALYTICS_TOPIC,
            payload=payload,
            max_attempts=settings.ANALYTICS_MAX_ATTEMPTS,
        )
        if await self._publish(analytics):
            published += 1

        try:
            endpoints = await self.get_subscribed_endpoints(decision.link_ref.owner_id)
        except Exception as e:
            logger.error(
                f"Failed to load webhook endpoints for owner {decision.link_ref.owner_id}: {str(e)}",
                exc_info=True
            )
            return published

        for endpoint in endpoints:
            attempts = 0
            if self.direct_delivery and self.dispatcher is not None:
                if await self._deliver_now(endpoint, payload):
                    continue
                attempts = 1

            job = QueueMessage(
                topic=WEBHOOKS_TOPIC,
                payload={
                    "endpoint_id": endpoint.id,
                    "url": endpoint.url,
                    "event": LINK_CLICKED,
                    "payload": payload,
                },
                attempts=attempts,
                max_attempts=settings.WEBHOOK_MAX_ATTEMPTS,
            )
            if await self._publish(job):
                published += 1

        return published

    async def _publish(self, message: QueueMessage) -> bool:
        try:
            ok = await self.queue.publish(message.topic, message)
        except Exception as e:
            logger.error(f"Failed to enqueue {message.topic} job: {str(e)}", exc_info=True)
            return False
        if not ok:
            logger.error(f"Queue rejected {message.topic} job {message.job_id}")
        return ok

    async def _deliver_now(self, endpoint: WebhookEndpoint, payload: dict[str, Any]) -> bool:
        try:
            await self.dispatcher.deliver(endpoint.url, endpoint.secret, LINK_CLICKED, payload)
            return True
        except WebhookDeliveryError as e:
            logger.warning(f"Direct webhook delivery failed, handing over to worker: {e}")
        await record_delivery_failure(self.session, endpoint.id)
        return False
