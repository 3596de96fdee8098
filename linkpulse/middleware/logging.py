"""
Request Logging and Visitor Tracking Middleware

LoggingMiddleware logs every HTTP request and response for observability:
- Request method and path
- Response status code
- Request processing time
- Client IP address

VisitorTrackingMiddleware records a Visit row for ordinary (non-redirect)
requests. The write is attached to the response as a background task, so
it runs after the body is sent and never delays the visitor.

Design Decisions:
- Uses Starlette's BaseHTTPMiddleware for compatibility
- Logs to standard Python logging, configured once at startup
- Redirect responses are skipped here (the redirect endpoint records them
  as clicks), and so are server errors
"""

import logging
import sys
import time

from fastapi import Request
from starlette.background import BackgroundTask
from starlette.middleware.base import BaseHTTPMiddleware

from linkpulse.core.headers import get_client_ip
from linkpulse.core.setting import settings
from linkpulse.services.background_tasks import track_visit_background
from linkpulse.services.context import build_request_context

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

logger = logging.getLogger("linkpulse")


def configure_logging(level: str = "INFO") -> None:
    """
    Install a single stream handler on the root logger.

    Safe to call more than once (e.g. app reloads); existing handlers are
    replaced rather than duplicated.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level.upper())


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for logging HTTP requests and responses.
    """

    async def dispatch(self, request: Request, call_next):
        client_ip = get_client_ip(request)

        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time

        # Format: METHOD PATH STATUS_CODE PROCESS_TIME_MS CLIENT_IP
        logger.info(
            f"{request.method} {request.url.path} "
            f"{response.status_code} {process_time*1000:.2f}ms "
            f"IP:{client_ip}"
        )

        response.headers["X-Process-Time"] = str(process_time)
        return response


class VisitorTrackingMiddleware(BaseHTTPMiddleware):
    """
    Middleware recording one Visit per non-redirect request.
    """

    def __init__(self, app, enabled: bool = True, excluded_paths=None):
        super().__init__(app)
        self.enabled = enabled
        self.excluded_paths = set(excluded_paths or [])

    def should_track(self, request: Request) -> bool:
        if not self.enabled or request.method == "OPTIONS":
            return False
        return request.url.path not in self.excluded_paths

    async def dispatch(self, request: Request, call_next):
        if not self.should_track(request):
            return await call_next(request)

        # Captured before the handler runs; the request is gone afterwards
        context = build_request_context(request)
        response = await call_next(request)

        # Redirects are recorded as clicks; failed requests record nothing
        if response.status_code >= 500 or 300 <= response.status_code < 400:
            return response

        if response.background is None:
            response.background = BackgroundTask(track_visit_background, context)
        return response


def add_logging_middleware(app):
    """
    Add visitor tracking and request logging middleware to the app.

    Logging is added last so it wraps (and times) everything else.
    """
    app.add_middleware(
        VisitorTrackingMiddleware,
        enabled=settings.TRACK_VISITS,
        excluded_paths=settings.VISIT_TRACKING_EXCLUDED_PATHS,
    )
    app.add_middleware(LoggingMiddleware)
