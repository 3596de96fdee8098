"""
Background Task Helpers

Provides helper functions for background tasks that create their own database sessions.
Background tasks cannot use the endpoint's session as it's closed after the endpoint returns.

Every function here contains its own errors: a failure is logged and never
propagates, so one failing step cannot stop the next one or reach the client.
"""

import logging
from datetime import timedelta
from typing import Optional

from linkpulse.core import resources
from linkpulse.core.setting import settings
from linkpulse.db import session as db_session
from linkpulse.db.session import TrackingUnitOfWork
from linkpulse.services.context import RequestContext
from linkpulse.services.fanout import EventFanout
from linkpulse.services.link_lookup import LinkLookupService, LinkRef
from linkpulse.services.redirect_service import RedirectDecision
from linkpulse.services.session_tracker import SessionTracker
from linkpulse.services.tracking import TrackingService

logger = logging.getLogger(__name__)


def _tracking_service() -> TrackingService:
    return TrackingService(
        session_factory=db_session.async_session_maker,
        geo_resolver=resources.get_geo_resolver(),
    )


async def track_click_background(context: RequestContext, decision: RedirectDecision) -> Optional[str]:
    """
    Background task to record a click with device and session stitching.

    Returns:
        The click event id, or None if tracking failed
    """
    return await _tracking_service().track_click(
        context,
        decision.link_ref,
        status_code=decision.status_code,
    )


async def increment_click_count_background(link_ref: LinkRef) -> None:
    """
    Background task to increment the link's click counter.

    Uses database-level increment for atomicity.

    Args:
        link_ref: The link to increment the count for
    """
    try:
        async with db_session.async_session_maker() as session:
            await LinkLookupService(session).increment_click_counter(link_ref)
            await session.commit()
    except Exception as e:
        logger.error(
            f"Failed to increment click count for {link_ref.alias}: {str(e)}",
            exc_info=True
        )


async def publish_click_background(
    decision: RedirectDecision,
    context: RequestContext,
    event_id: Optional[str] = None,
) -> None:
    """
    Background task to fan a click out to the queue and webhooks.
    """
    try:
        async with db_session.async_session_maker() as session:
            fanout = EventFanout(
                session,
                resources.get_event_queue(),
                dispatcher=resources.get_webhook_dispatcher() if settings.WEBHOOK_DIRECT_DELIVERY else None,
            )
            await fanout.publish_click(decision, context, event_id)
            # Persists failure counters from direct deliveries
            await session.commit()
    except Exception as e:
        logger.error(
            f"Failed to publish click for {decision.link_ref.alias}: {str(e)}",
            exc_info=True
        )


async def process_click_background(context: RequestContext, decision: RedirectDecision) -> None:
    """
    Background task scheduled by the redirect endpoint.

    Runs tracking, counter increment and fan-out in sequence; each step
    is independent of the others' success.
    """
    event_id = await track_click_background(context, decision)
    await increment_click_count_background(decision.link_ref)
    await publish_click_background(decision, context, event_id)


async def track_visit_background(context: RequestContext) -> Optional[str]:
    """Background task to record a visit for a non-redirect request."""
    return await _tracking_service().track_visit(context)


async def close_stale_sessions_background() -> int:
    """
    Close sessions idle past the timeout.

    Returns:
        Number of sessions closed (0 on failure)
    """
    try:
        async with TrackingUnitOfWork(db_session.async_session_maker) as uow:
            tracker = SessionTracker(uow.session, timeout=timedelta(minutes=settings.SESSION_TIMEOUT_MINUTES))
            closed = await tracker.close_stale_sessions()
        if closed:
            logger.info(f"Closed {closed} stale tracking session(s)")
        return closed
    except Exception as e:
        logger.error(f"Failed to close stale sessions: {str(e)}", exc_info=True)
        return 0
