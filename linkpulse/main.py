"""
FastAPI Application Entry Point

This module initializes the FastAPI application and configures:
- API routes
- Middleware (logging, visitor tracking, CORS)
- Application lifespan (resources, stale-session sweep)

Design Decisions:
- Clean separation: Routes, middleware, and app config are separate
- Health routes are registered before the router so they win over the
  catch-all /{alias} route
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from linkpulse.api import endpoints
from linkpulse.api.schemas import HealthResponse
from linkpulse.core.rate_limit import limiter
from linkpulse.core.resources import initialize_resources, shutdown_resources
from linkpulse.core.setting import settings
from linkpulse.middleware.logging import add_logging_middleware, configure_logging
from linkpulse.services.background_tasks import close_stale_sessions_background

logger = logging.getLogger(__name__)


async def sweep_stale_sessions(interval_seconds: int) -> None:
    """Periodically close sessions idle past the timeout until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        await close_stale_sessions_background()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.LOG_LEVEL)
    await initialize_resources()

    sweeper = None
    if settings.SESSION_SWEEP_INTERVAL_SECONDS > 0:
        sweeper = asyncio.create_task(sweep_stale_sessions(settings.SESSION_SWEEP_INTERVAL_SECONDS))

    logger.info(f"linkpulse started ({settings.ENV_SETTING.value})")
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        await shutdown_resources()


app = FastAPI(
    title="linkpulse",
    description="Short-link redirect service with click, device and session tracking",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

add_logging_middleware(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Health endpoints defined before router to match before catch-all route
@app.get("/", tags=["Health"])
async def root():
    """
    Root endpoint for health checks.
    """
    return {
        "message": "linkpulse redirect service",
        "version": "1.0.0",
        "docs": "/docs"
    }


@app.get("/health", tags=["Health"], response_model=HealthResponse)
async def health_check() -> HealthResponse:
    return HealthResponse(status="healthy", environment=settings.ENV_SETTING.value)


app.include_router(endpoints.router, tags=["Redirect"])
