"""
Device Identity Service

Upserts the UserDevice row for a fingerprinted request.

Concurrency:
- No lock is taken ahead of time. Two first requests from the same new
  device can both miss the lookup; the second INSERT then violates
  uq_user_devices_identity, its SAVEPOINT is rolled back and the row the
  first writer created is fetched and refreshed instead.
"""

import logging
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from linkpulse.db.models import ANONYMOUS_KEY, UserDevice, utcnow
from linkpulse.services.user_agent import UserAgentInfo

logger = logging.getLogger(__name__)

# Attributes refreshed from every request; the identity columns never change
MUTABLE_HEADER_FIELDS = {
    "x_device_memory": ("xDeviceMemory", float),
    "x_hardware_concurrency": ("xHardwareConcurrency", int),
    "x_platform": ("xPlatform", str),
    "x_screen_width": ("xScreenWidth", int),
    "x_screen_height": ("xScreenHeight", int),
    "x_color_depth": ("xColorDepth", int),
    "x_time_zone": ("xTimeZone", str),
}


class DeviceService:
    """
    Service for resolving the device behind a request.

    Runs on the tracking unit of work's session; it flushes but never commits.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_device(
        self,
        device_id: str,
        user_key: str = ANONYMOUS_KEY,
        client_device_key: str = ANONYMOUS_KEY,
    ) -> Optional[UserDevice]:
        statement = select(UserDevice).where(
            UserDevice.device_id == device_id,
            UserDevice.user_key == user_key,
            UserDevice.client_device_key == client_device_key,
        )
        result = await self.session.execute(statement)
        return result.scalars().first()

    async def upsert_device(
        self,
        headers: Mapping[str, Any],
        device_id: str,
        user_id: Optional[str] = None,
        ua: Optional[UserAgentInfo] = None,
    ) -> UserDevice:
        """
        Fetch or create the device for (device_id, user, client device id),
        refreshing its mutable attributes from the current request.

        Args:
            headers: Normalized header map
            device_id: Fingerprint computed for the request
            user_id: Authenticated user, if any
            ua: Parsed user agent

        Returns:
            The persisted (flushed) UserDevice
        """
        x_device_id = headers.get("xDeviceId")
        user_key = user_id or ANONYMOUS_KEY
        client_device_key = str(x_device_id) if x_device_id else ANONYMOUS_KEY

        device = await self.find_device(device_id, user_key, client_device_key)
        if device is not None:
            self._refresh(device, headers, ua)
            await self.session.flush()
            return device

        device = UserDevice(
            device_id=device_id,
            x_device_id=str(x_device_id) if x_device_id else None,
            user_id=user_id,
            user_key=user_key,
            client_device_key=client_device_key,
            fingerprint_hash=device_id,
        )
        self._refresh(device, headers, ua)

        try:
            async with self.session.begin_nested():
                self.session.add(device)
        except IntegrityError:
            logger.warning(f"Concurrent insert for device {device_id[:12]}, reusing existing row")
            device = await self.find_device(device_id, user_key, client_device_key)
            if device is None:
                raise
            self._refresh(device, headers, ua)
            await self.session.flush()

        return device

    def _refresh(self, device: UserDevice, headers: Mapping[str, Any], ua: Optional[UserAgentInfo]) -> None:
        for column, (header, cast) in MUTABLE_HEADER_FIELDS.items():
            value = headers.get(header)
            if value is None:
                continue
            setattr(device, column, cast(value))

        if ua is not None:
            if ua.browser:
                device.browser = ua.browser
            if ua.device_type:
                device.device_type = ua.device_type

        device.updated_at = utcnow()
