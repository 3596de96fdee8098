"""
Session Tracker

Decides which session an event belongs to.

Rules (per device, server-side UTC clock):
- no open session              -> open a new one at `now`
- open and now - last_event_at < timeout -> reuse it, extend last_event_at
- open but the window elapsed  -> close it (ended_at = now,
                                  duration = now - started_at) and open a new one

At most one open session per device is enforced by the partial unique index
uq_tracking_sessions_open_per_device. When two requests race to open the
first session, the loser's SAVEPOINT is rolled back and it joins the winner's
session.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from linkpulse.db.models import TrackingSession, as_utc, utcnow

logger = logging.getLogger(__name__)

SESSION_TIMEOUT = timedelta(minutes=30)


class SessionTracker:
    """
    Resolves and closes tracking sessions on the unit of work's session.
    """

    def __init__(self, session: AsyncSession, timeout: timedelta = SESSION_TIMEOUT):
        self.session = session
        self.timeout = timeout

    async def get_open_session(self, user_device_id: str) -> Optional[TrackingSession]:
        statement = (
            select(TrackingSession)
            .where(
                TrackingSession.user_device_id == user_device_id,
                TrackingSession.ended_at.is_(None),
            )
            .order_by(TrackingSession.started_at.desc())
        )
        result = await self.session.execute(statement)
        return result.scalars().first()

    async def resolve_session(
        self,
        user_device_id: str,
        now: Optional[datetime] = None,
        user_id: Optional[str] = None,
    ) -> TrackingSession:
        """
        Return the session the event at `now` belongs to.

        Args:
            user_device_id: Primary key of the resolved UserDevice
            now: Server-side event time (defaults to current UTC time)
            user_id: Authenticated user, attached to the session when known

        Returns:
            The open (flushed) TrackingSession
        """
        now = as_utc(now) or utcnow()
        current = await self.get_open_session(user_device_id)

        if current is not None:
            if now - as_utc(current.last_event_at) < self.timeout:
                self._extend(current, now, user_id)
                await self.session.flush()
                return current

            self.close_session(current, now)
            # The close must reach the database before the new open row
            await self.session.flush()

        return await self._open_session(user_device_id, now, user_id)

    def close_session(self, tracked: TrackingSession, ended_at: datetime) -> None:
        tracked.ended_at = ended_at
        started_at = as_utc(tracked.started_at)
        tracked.duration_seconds = max(0, int((as_utc(ended_at) - started_at).total_seconds()))

    async def close_stale_sessions(self, now: Optional[datetime] = None) -> int:
        """
        Close every open session idle for longer than the timeout.

        Sessions closed by the sweep end at their last event.

        Returns:
            Number of sessions closed
        """
        now = as_utc(now) or utcnow()
        statement = select(TrackingSession).where(
            TrackingSession.ended_at.is_(None),
            TrackingSession.last_event_at < now - self.timeout,
        )
        result = await self.session.execute(statement)
        stale = list(result.scalars().all())

        for tracked in stale:
            self.close_session(tracked, as_utc(tracked.last_event_at))

        await self.session.flush()
        return len(stale)

    async def _open_session(self, user_device_id: str, now: datetime, user_id: Optional[str]) -> TrackingSession:
        tracked = TrackingSession(
            user_device_id=user_device_id,
            user_id=user_id,
            started_at=now,
            last_event_at=now,
            event_count=1,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(tracked)
        except IntegrityError:
            logger.warning(f"Concurrent session open for device {user_device_id}, joining existing session")
            current = await self.get_open_session(user_device_id)
            if current is None:
                raise
            self._extend(current, now, user_id)
            await self.session.flush()
            return current
        return tracked

    def _extend(self, tracked: TrackingSession, now: datetime, user_id: Optional[str]) -> None:
        tracked.last_event_at = max(as_utc(tracked.last_event_at), now)
        tracked.event_count = (tracked.event_count or 0) + 1
        if user_id and not tracked.user_id:
            tracked.user_id = user_id
