"""
Click / Visit Recorder

Builds analytics rows from a request snapshot plus the resolved identity
(device, session, user) and inserts them. Rows are append-only: nothing in
this service updates or deletes an event.
"""

from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from linkpulse.db.models import (
    ClickEvent,
    DynamicLinkClickEvent,
    LinkKind,
    TrackingSession,
    UserDevice,
    Visit,
)
from linkpulse.services.context import RequestContext
from linkpulse.services.geo import GeoInfo, extract_referrer_domain
from linkpulse.services.link_lookup import LinkRef
from linkpulse.services.user_agent import UserAgentInfo

# Event column -> normalized header key
HEADER_COLUMNS = {
    "cf_ray": "cfRay",
    "cf_ip_country": "cfIpcountry",
    "host": "host",
    "request_id": "xRequestId",
    "accept_language": "acceptLanguage",
    "x_platform": "xPlatform",
    "x_time_zone": "xTimeZone",
    "x_screen_width": "xScreenWidth",
    "x_screen_height": "xScreenHeight",
    "x_device_memory": "xDeviceMemory",
    "x_color_depth": "xColorDepth",
    "x_device_id": "xDeviceId",
}

INTEGER_COLUMNS = frozenset({"x_screen_width", "x_screen_height", "x_color_depth"})

# Bounded varchar columns
_MAX_LENGTHS = {
    "utm_source": 100,
    "utm_medium": 100,
    "utm_campaign": 100,
    "utm_term": 100,
    "utm_content": 100,
    "referrer_domain": 255,
    "cf_ray": 100,
    "request_id": 100,
    "accept_language": 255,
    "x_platform": 100,
    "x_time_zone": 100,
    "x_device_id": 255,
    "host": 255,
}


def _truncate(column: str, value: Any) -> Any:
    limit = _MAX_LENGTHS.get(column)
    if limit is not None and isinstance(value, str) and len(value) > limit:
        return value[:limit]
    return value


def build_event_fields(
    context: RequestContext,
    device: Optional[UserDevice],
    tracked_session: Optional[TrackingSession],
    ua: UserAgentInfo,
    geo: GeoInfo,
    user_id: Optional[str] = None,
) -> dict[str, Any]:
    """
    Derive the shared event columns for one request.

    Args:
        context: Request snapshot
        device: Resolved device (None when the upsert degraded)
        tracked_session: Resolved session
        ua: Parsed user agent
        geo: Resolved geo
        user_id: Authenticated user

    Returns:
        Column values for any event table
    """
    fields: dict[str, Any] = {
        "timestamp": context.received_at,
        "user_id": user_id,
        "user_device_id": device.id if device is not None else None,
        "device_id": device.device_id if device is not None else None,
        "session_id": tracked_session.id if tracked_session is not None else None,
        "ip_address": context.ip_address,
        "user_agent": context.user_agent,
        "referer": context.referer,
        "referrer_domain": extract_referrer_domain(context.referer),
        "browser": ua.browser,
        "browser_version": ua.browser_version,
        "os": ua.os,
        "os_version": ua.os_version,
        "device": ua.device,
        "device_type": ua.device_type,
        "geo_country": geo.country,
        "geo_city": geo.city,
        "geo_latitude": geo.latitude,
        "geo_longitude": geo.longitude,
        "query_params": context.query_params,
    }

    for column, header in HEADER_COLUMNS.items():
        value = context.headers.get(header)
        if column in INTEGER_COLUMNS and isinstance(value, (int, float)):
            value = int(value)
        elif value is not None and not isinstance(value, (int, float)):
            value = str(value)
        fields[column] = value

    for name, value in context.utm.items():
        fields[name] = value

    return {column: _truncate(column, value) for column, value in fields.items()}


class ClickRecorder:
    """
    Inserts click and visit rows on the unit of work's session.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record_click(
        self,
        link_ref: LinkRef,
        fields: dict[str, Any],
        status_code: Optional[int] = None,
    ) -> ClickEvent | DynamicLinkClickEvent:
        """
        Insert one click for a standard or dynamic link.

        Returns:
            The flushed event row
        """
        if link_ref.kind == LinkKind.DYNAMIC:
            event = DynamicLinkClickEvent(dynamic_link_id=link_ref.id, status_code=status_code, **fields)
        else:
            event = ClickEvent(link_id=link_ref.id, status_code=status_code, **fields)

        self.session.add(event)
        await self.session.flush()
        return event

    async def record_visit(self, fields: dict[str, Any], path: Optional[str], method: Optional[str]) -> Visit:
        """Insert one visit row for a non-redirect request."""
        visit = Visit(path=path[:2048] if path else None, method=method, **fields)
        self.session.add(visit)
        await self.session.flush()
        return visit
