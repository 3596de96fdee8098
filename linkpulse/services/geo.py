"""
Geo enrichment for analytics rows.

Sources, in order:
1. ``x-geo-data`` JSON header set by the edge worker
2. Cloudflare IP geolocation headers
3. Local MaxMind city database (optional, GEOIP_CITY_DB)

Lookups never raise; missing or malformed data yields empty fields.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

import geoip2.database
import geoip2.errors
import maxminddb

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeoInfo:
    country: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[Decimal] = None
    longitude: Optional[Decimal] = None

    @property
    def is_empty(self) -> bool:
        return self.country is None and self.city is None


def _coordinate(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.000001"))
    except (InvalidOperation, ValueError):
        return None


def parse_geo_header(raw: Optional[str]) -> GeoInfo:
    """Parse the ``x-geo-data`` header: {"country", "city", "latitude", "longitude"}."""
    if not raw:
        return GeoInfo()
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return GeoInfo()
    if not isinstance(parsed, dict):
        return GeoInfo()

    country = parsed.get("country")
    return GeoInfo(
        country=country.lower() if isinstance(country, str) and country else None,
        city=parsed.get("city") or None,
        latitude=_coordinate(parsed.get("latitude")),
        longitude=_coordinate(parsed.get("longitude")),
    )


def geo_from_cloudflare(headers: Mapping[str, Any]) -> GeoInfo:
    country = headers.get("cfIpcountry")
    return GeoInfo(
        country=country.lower() if isinstance(country, str) and country and country != "XX" else None,
        city=headers.get("cfIpcity") or None,
        latitude=_coordinate(headers.get("cfIplatitude")),
        longitude=_coordinate(headers.get("cfIplongitude")),
    )


def extract_referrer_domain(referer: Optional[str]) -> Optional[str]:
    """Hostname of the Referer header without a leading ``www.``."""
    if not referer:
        return None
    try:
        hostname = urlparse(referer).hostname
    except ValueError:
        return None
    if not hostname:
        return None
    return hostname[4:] if hostname.startswith("www.") else hostname


class GeoResolver:
    """
    Resolves coarse geo for a request.

    The MaxMind reader is opened lazily on first use and reads run in a
    worker thread so the event loop never blocks on the .mmdb file.
    """

    def __init__(self, city_db_path: Optional[str] = None):
        self._city_db_path = city_db_path
        self._reader: Optional[geoip2.database.Reader] = None
        self._loaded = False
        self._lock = asyncio.Lock()

    async def _get_reader(self) -> Optional[geoip2.database.Reader]:
        if not self._city_db_path:
            return None
        if not self._loaded:
            async with self._lock:
                if not self._loaded:
                    try:
                        self._reader = await asyncio.to_thread(geoip2.database.Reader, self._city_db_path)
                    except (OSError, maxminddb.InvalidDatabaseError) as e:
                        logger.warning(f"GeoIP city database unavailable: {e}")
                        self._reader = None
                    self._loaded = True
        return self._reader

    async def lookup_ip(self, ip_address: Optional[str]) -> GeoInfo:
        reader = await self._get_reader()
        if reader is None or not ip_address or ip_address == "unknown":
            return GeoInfo()
        try:
            result = await asyncio.to_thread(reader.city, ip_address)
        except (geoip2.errors.AddressNotFoundError, ValueError, maxminddb.InvalidDatabaseError):
            return GeoInfo()
        country = result.country.iso_code
        return GeoInfo(
            country=country.lower() if country else None,
            city=result.city.name,
            latitude=_coordinate(result.location.latitude),
            longitude=_coordinate(result.location.longitude),
        )

    async def resolve(self, headers: Mapping[str, Any], ip_address: Optional[str]) -> GeoInfo:
        """Header-derived geo first, then the IP database."""
        geo = parse_geo_header(headers.get("xGeoData"))
        if not geo.is_empty:
            return geo
        geo = geo_from_cloudflare(headers)
        if not geo.is_empty:
            return geo
        return await self.lookup_ip(ip_address)

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None
            self._loaded = False
