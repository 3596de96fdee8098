"""
Runtime Resource Manager

This module manages the process-wide collaborators of the tracking path.
Each is created once per application instance and shared across requests.

Design:
- Singleton pattern: one queue, one geo resolver and one webhook dispatcher
  per process
- Initialized on application startup, or lazily on first use (background
  tasks may run without the lifespan, e.g. under test transports)
- Each instance holds its own clients; shared state lives in the database
  and the broker
"""

import logging
from typing import Optional

from linkpulse.core.setting import settings
from linkpulse.queue.factory import create_queue
from linkpulse.queue.strategies import QueueStrategy
from linkpulse.services.geo import GeoResolver
from linkpulse.services.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)

_queue: Optional[QueueStrategy] = None
_geo_resolver: Optional[GeoResolver] = None
_webhook_dispatcher: Optional[WebhookDispatcher] = None


def get_event_queue() -> QueueStrategy:
    """Get (creating on first use) the event queue."""
    global _queue
    if _queue is None:
        _queue = create_queue(settings)
    return _queue


def get_geo_resolver() -> GeoResolver:
    global _geo_resolver
    if _geo_resolver is None:
        _geo_resolver = GeoResolver(settings.GEOIP_CITY_DB)
    return _geo_resolver


def get_webhook_dispatcher() -> WebhookDispatcher:
    global _webhook_dispatcher
    if _webhook_dispatcher is None:
        _webhook_dispatcher = WebhookDispatcher(timeout=settings.WEBHOOK_TIMEOUT_SECONDS)
    return _webhook_dispatcher


def set_event_queue(queue: Optional[QueueStrategy]) -> None:
    """Replace the process queue (used by tests and workers)."""
    global _queue
    _queue = queue


async def initialize_resources() -> None:
    """Create all resources up front so the first redirect pays no setup cost."""
    get_event_queue()
    get_geo_resolver()
    get_webhook_dispatcher()
    logger.info(
        f"Resources initialized: queue={settings.QUEUE_BACKEND.value}, "
        f"geoip={'on' if settings.GEOIP_CITY_DB else 'off'}"
    )


async def shutdown_resources() -> None:
    """Close clients and forget the singletons."""
    global _queue, _geo_resolver, _webhook_dispatcher

    if _webhook_dispatcher is not None:
        try:
            await _webhook_dispatcher.aclose()
        except Exception as e:
            logger.warning(f"Failed to close webhook dispatcher: {e}")
        _webhook_dispatcher = None

    if _queue is not None:
        try:
            await _queue.close()
        except Exception as e:
            logger.warning(f"Failed to close event queue: {e}")
        _queue = None

    if _geo_resolver is not None:
        _geo_resolver.close()
        _geo_resolver = None

    logger.info("Resources shut down")
