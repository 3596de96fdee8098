"""
Rate Limiting Configuration

Rate limiting prevents abuse of the redirect and stats endpoints.

Design Decisions:
- Uses slowapi for rate limiting (lightweight, FastAPI-compatible)
- Different limits for different endpoints
- Keyed on the real client IP (honours CDN / proxy headers)
"""

from slowapi import Limiter
from starlette.requests import Request

from linkpulse.core.headers import get_client_ip
from linkpulse.core.setting import settings


def client_ip_key(request: Request) -> str:
    """Rate limit key: the client IP as seen behind Cloudflare / proxies."""
    return get_client_ip(request)


limiter = Limiter(key_func=client_ip_key)

# Format: "count/period" (e.g., "10/minute" means 10 requests per minute)
RATE_LIMITS = {
    "redirect": settings.RATE_LIMIT_REDIRECT,
    "stats": settings.RATE_LIMIT_STATS,
}
