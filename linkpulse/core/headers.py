"""
Request Header Normalization

Raw HTTP headers are turned into a flat, camel-cased map before any
tracking logic sees them:

    x-screen-width: "1920"   ->  {"xScreenWidth": 1920}
    cf-connecting-ip: "..."  ->  {"cfConnectingIp": "..."}
    user-agent: ""           ->  {"userAgent": None}

Everything in this module is a pure input adapter; the tracking services
only ever consume the normalized map.
"""

import re
from typing import Any, Mapping, Optional

from starlette.requests import Request

NUMERIC_HEADERS = frozenset({
    "xDeviceMemory",
    "xHardwareConcurrency",
    "xColorDepth",
    "xScreenWidth",
    "xScreenHeight",
})

_SEPARATOR = re.compile(r"[-_]([a-z0-9])")


def to_camel_case(name: str) -> str:
    """Convert a header name such as ``x-screen-width`` to ``xScreenWidth``."""
    return _SEPARATOR.sub(lambda match: match.group(1).upper(), name.lower())


def _coerce_number(value: Any) -> Optional[float | int]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return int(number) if number.is_integer() else number


def normalize_headers(raw_headers: Mapping[str, Any]) -> dict[str, Any]:
    """
    Normalize raw headers into a camel-cased map.

    - Keys are lower-cased and converted from kebab/snake case to camelCase
    - Empty strings become None
    - Device geometry / capability headers are coerced to numbers
      (unparsable values become None)

    Args:
        raw_headers: Header mapping as received (any case)

    Returns:
        Normalized header dictionary
    """
    headers: dict[str, Any] = {}

    for key, value in raw_headers.items():
        camel = to_camel_case(key)
        if isinstance(value, str):
            value = value.strip()
        normalized = None if value == "" else value

        if camel in NUMERIC_HEADERS:
            normalized = _coerce_number(normalized)

        headers[camel] = normalized

    return headers


def get_client_ip(request: Request) -> str:
    """
    Extract client IP address from request.

    Checks the CDN header first, then X-Forwarded-For (first hop), then
    the socket peer.

    Args:
        request: Incoming request

    Returns:
        IP address as string
    """
    connecting_ip = request.headers.get("CF-Connecting-IP")
    if connecting_ip:
        return connecting_ip.strip()

    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # X-Forwarded-For can contain multiple IPs, take the first one
        return forwarded_for.split(",")[0].strip()

    return request.client.host if request.client else "unknown"


def extract_query_params(query: Mapping[str, Any]) -> Optional[dict[str, Any]]:
    """
    Flatten query parameters into a JSON-friendly dict.

    Comma-separated values are split into trimmed lists; empty values are
    dropped. Returns None when nothing is left.
    """
    params: dict[str, Any] = {}

    for key, value in query.items():
        if value is None or value == "":
            continue
        if isinstance(value, str) and "," in value:
            params[key] = [item.strip() for item in value.split(",")]
        else:
            params[key] = value

    return params or None


def get_bearer_token(headers: Mapping[str, Any]) -> Optional[str]:
    """Return the token part of an ``Authorization: Bearer <token>`` header."""
    authorization = headers.get("authorization")
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        return None
    return parts[1].strip()
