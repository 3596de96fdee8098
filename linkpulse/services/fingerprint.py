"""
Device fingerprinting.

The device id is a SHA-256 over a fixed, ordered set of normalized headers.
Identical inputs always give the same id, which is what makes the device
upsert idempotent.
"""

import hashlib
from typing import Any, Mapping, Optional

FINGERPRINT_FIELDS = (
    "userAgent",
    "xScreenWidth",
    "xScreenHeight",
    "xDeviceMemory",
    "xPlatform",
    "xTimeZone",
    "acceptLanguage",
    "cfConnectingIp",
    "xDeviceId",
)
FINGERPRINT_DELIMITER = "|"


def fingerprint_components(headers: Mapping[str, Any], client_ip: Optional[str] = None) -> list[str]:
    """
    Ordered, present fingerprint components.

    ``client_ip`` stands in for ``cfConnectingIp`` when the request did not
    come through the CDN.
    """
    values = dict(headers)
    if not values.get("cfConnectingIp") and client_ip and client_ip != "unknown":
        values["cfConnectingIp"] = client_ip

    return [str(values[field]) for field in FINGERPRINT_FIELDS if values.get(field)]


def generate_device_id(headers: Mapping[str, Any], client_ip: Optional[str] = None) -> str:
    """
    Compute the deterministic device id for a normalized header map.

    Absent fields are skipped, so sparse headers still hash (to a weaker id).
    Never raises for missing data.
    """
    raw_fingerprint = FINGERPRINT_DELIMITER.join(fingerprint_components(headers, client_ip))
    return hashlib.sha256(raw_fingerprint.encode("utf-8")).hexdigest()
