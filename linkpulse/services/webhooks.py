"""
Webhook Dispatcher

Delivers one event to one registered endpoint. Retries are not handled
here: the webhook worker owns the retry policy.

Request format:
    POST <url>
    Content-Type: application/json
    X-Webhook-Signature: hex(HMAC-SHA256(secret, json(payload)))

    {"event": "...", "payload": {...}, "timestamp": "<ISO-8601 UTC>"}

Receivers verify by recomputing the HMAC over the compact JSON encoding of
the "payload" member.
"""

import hashlib
import hmac
import json
import logging
from typing import Any, Mapping, Optional

import httpx
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from linkpulse.core.exceptions import WebhookDeliveryError
from linkpulse.db.models import WebhookEndpoint, utcnow

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"


def serialize_payload(payload: Mapping[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), default=str)


def sign_payload(secret: str, payload: Mapping[str, Any]) -> str:
    """HMAC-SHA256 hex digest of the serialized payload."""
    return hmac.new(secret.encode(), serialize_payload(payload).encode(), hashlib.sha256).hexdigest()


async def record_delivery_failure(session: AsyncSession, endpoint_id: str) -> None:
    """Bump failed_attempts / last_failed_at. Note: commit is handled by the caller."""
    statement = (
        update(WebhookEndpoint)
        .where(WebhookEndpoint.id == endpoint_id)
        .values(
            failed_attempts=WebhookEndpoint.failed_attempts + 1,
            last_failed_at=utcnow(),
        )
    )
    await session.execute(statement)


class WebhookDispatcher:
    """Thin async wrapper around httpx.AsyncClient for signed deliveries."""

    def __init__(self, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def deliver(self, url: str, secret: str, event: str, payload: Mapping[str, Any]) -> int:
        """
        POST one signed event.

        Args:
            url: Endpoint URL
            secret: Endpoint signing secret
            event: Event name, e.g. "link.clicked"
            payload: Event payload

        Returns:
            HTTP status code of the accepted delivery

        Raises:
            WebhookDeliveryError: transport failure or non-2xx response
        """
        body = {
            "event": event,
            "payload": payload,
            "timestamp": utcnow().isoformat(),
        }
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(secret, payload),
        }

        try:
            response = await self._client.post(
                url,
                content=json.dumps(body, separators=(",", ":"), default=str),
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise WebhookDeliveryError(url, message=str(e)) from e

        if not response.is_success:
            raise WebhookDeliveryError(url, status_code=response.status_code)

        logger.debug(f"Delivered {event} to {url} ({response.status_code})")
        return response.status_code

    async def aclose(self) -> None:
        await self._client.aclose()
