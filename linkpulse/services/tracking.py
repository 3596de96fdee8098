"""
Tracking Service

Runs the analytics half of a request: attribute the user, upsert the
device, stitch the session and append the event, all in one transaction.

Design Decisions:
- Called from background tasks only; the redirect response never waits on it
- One TrackingUnitOfWork per call, so a failure leaves no partial device /
  session / event rows behind
- A failed device upsert is rolled back to its SAVEPOINT and the event is
  still recorded without device and session
- Failures are logged and swallowed: analytics must never surface to the
  visitor
"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from linkpulse.core.setting import settings
from linkpulse.db.models import UserDevice
from linkpulse.db.session import TrackingUnitOfWork
from linkpulse.services.auth import authenticated_user_from_token
from linkpulse.services.click_recorder import ClickRecorder, build_event_fields
from linkpulse.services.context import RequestContext
from linkpulse.services.device_service import DeviceService
from linkpulse.services.fingerprint import generate_device_id
from linkpulse.services.geo import GeoResolver
from linkpulse.services.link_lookup import LinkRef
from linkpulse.services.session_tracker import SessionTracker
from linkpulse.services.user_agent import parse_user_agent

logger = logging.getLogger(__name__)


class TrackingService:
    """
    Orchestrates device, session and event writes for one request.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        geo_resolver: Optional[GeoResolver] = None,
        session_timeout: Optional[timedelta] = None,
    ):
        self.session_factory = session_factory
        self.geo_resolver = geo_resolver or GeoResolver()
        self.session_timeout = session_timeout or timedelta(minutes=settings.SESSION_TIMEOUT_MINUTES)

    async def track_click(
        self,
        context: RequestContext,
        link_ref: LinkRef,
        status_code: Optional[int] = None,
    ) -> Optional[str]:
        """
        Record one click against a standard or dynamic link.

        Args:
            context: Request snapshot taken before the response was sent
            link_ref: The resolved link
            status_code: Redirect status served to the visitor

        Returns:
            The click event id, or None when tracking failed
        """
        try:
            async with TrackingUnitOfWork(self.session_factory) as uow:
                fields = await self._resolve_identity(uow.session, context)
                event = await ClickRecorder(uow.session).record_click(link_ref, fields, status_code=status_code)
                event_id = event.id
            logger.debug(f"Recorded click {event_id} for {link_ref.kind} '{link_ref.alias}'")
            return event_id
        except Exception as e:
            logger.error(
                f"Failed to track click for '{link_ref.alias}': {str(e)}",
                exc_info=True
            )
            return None

    async def track_visit(self, context: RequestContext) -> Optional[str]:
        """
        Record one visit for a non-redirect request.

        Returns:
            The visit id, or None when tracking failed
        """
        try:
            async with TrackingUnitOfWork(self.session_factory) as uow:
                fields = await self._resolve_identity(uow.session, context)
                visit = await ClickRecorder(uow.session).record_visit(fields, context.path, context.method)
                visit_id = visit.id
            return visit_id
        except Exception as e:
            logger.error(
                f"Failed to track visit for {context.method} {context.path}: {str(e)}",
                exc_info=True
            )
            return None

    async def _resolve_identity(self, session, context: RequestContext) -> dict:
        """User -> device -> session, then the shared event columns."""
        user = await authenticated_user_from_token(session, context.bearer_token)
        user_id = user.id if user is not None else None

        ua = parse_user_agent(context.user_agent)
        geo = await self.geo_resolver.resolve(context.headers, context.ip_address)

        device_id = generate_device_id(context.headers, client_ip=context.ip_address)
        device = await self._upsert_device(session, context, device_id, user_id, ua)

        tracked_session = None
        if device is not None:
            tracker = SessionTracker(session, timeout=self.session_timeout)
            tracked_session = await tracker.resolve_session(device.id, now=context.received_at, user_id=user_id)

        return build_event_fields(context, device, tracked_session, ua, geo, user_id=user_id)

    async def _upsert_device(self, session, context: RequestContext, device_id: str, user_id, ua) -> Optional[UserDevice]:
        """
        Upsert the device inside its own SAVEPOINT.

        A storage failure here degrades to "no device": the event is still
        recorded, without device and session.
        """
        try:
            async with session.begin_nested():
                return await DeviceService(session).upsert_device(
                    context.headers,
                    device_id,
                    user_id=user_id,
                    ua=ua,
                )
        except SQLAlchemyError as e:
            logger.warning(f"Device upsert failed for {device_id[:12]}, recording without device: {e}", exc_info=True)
            return None
