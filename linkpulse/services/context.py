"""
Request Context

Snapshot of everything the tracking path needs from an HTTP request.
Built once in the endpoint (before the response is sent) so background
tasks never touch the Request object after the response lifecycle ends.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from starlette.requests import Request

from linkpulse.core.headers import (
    extract_query_params,
    get_bearer_token,
    get_client_ip,
    normalize_headers,
)
from linkpulse.db.models import utcnow

UTM_PARAMETERS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")


@dataclass
class RequestContext:
    ip_address: str
    headers: dict[str, Any] = field(default_factory=dict)
    query_params: Optional[dict[str, Any]] = None
    utm: dict[str, Optional[str]] = field(default_factory=dict)
    bearer_token: Optional[str] = None
    path: Optional[str] = None
    method: Optional[str] = None
    received_at: datetime = field(default_factory=utcnow)

    @property
    def user_agent(self) -> Optional[str]:
        return self.headers.get("userAgent")

    @property
    def referer(self) -> Optional[str]:
        return self.headers.get("referer")


def build_request_context(request: Request) -> RequestContext:
    """Capture ip, normalized headers, query and UTM fields of a request."""
    query = dict(request.query_params)
    utm = {name: (query.get(name) or None) for name in UTM_PARAMETERS}

    return RequestContext(
        ip_address=get_client_ip(request),
        headers=normalize_headers(request.headers),
        query_params=extract_query_params(query),
        utm=utm,
        bearer_token=get_bearer_token(request.headers),
        path=request.url.path,
        method=request.method,
    )
