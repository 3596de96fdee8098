"""
FastAPI Endpoints for the Redirect Service

This module defines the public HTTP surface with minimal logic.
Endpoints only handle:
- Alias validation
- Rate limiting
- Error handling and HTTP responses
- Delegating to the service layer

Design Principles:
- Thin endpoints: resolution lives in RedirectService
- The redirect never waits on analytics: tracking, the click counter and
  event fan-out are scheduled as one background task after the response
- Error bodies never reveal whether a disabled or expired link exists
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from linkpulse.api.schemas import ErrorResponse, StatsResponse
from linkpulse.core.exceptions import DatabaseError, InvalidAliasError, LinkNotFoundError
from linkpulse.core.rate_limit import RATE_LIMITS, limiter
from linkpulse.core.validators import sanitize_alias
from linkpulse.db.session import get_session
from linkpulse.services.background_tasks import process_click_background
from linkpulse.services.context import build_request_context
from linkpulse.services.redirect_service import RedirectService
from linkpulse.services.stats_service import StatsService

logger = logging.getLogger(__name__)

NOT_FOUND_DETAIL = "Link not found or expired"
REDIRECT_ERROR_DETAIL = "Error processing redirect"

router = APIRouter()


@router.get(
    "/stats/{alias}",
    response_model=StatsResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Get link click statistics",
    description="Returns the click counter next to the number of recorded click events"
)
@limiter.limit(RATE_LIMITS["stats"])
async def get_link_stats(
    alias: str,
    request: Request,  # Required for rate limiting (slowapi expects parameter named 'request')
    session: AsyncSession = Depends(get_session)
) -> StatsResponse:
    """
    Get click statistics for an alias.

    Raises:
        HTTPException 404: If the alias is invalid or unknown
        HTTPException 429: If rate limit exceeded
    """
    sanitized = sanitize_alias(alias)
    if not sanitized:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=NOT_FOUND_DETAIL)

    stats = await StatsService(session).get_stats(sanitized)
    await session.commit()
    if not stats:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=NOT_FOUND_DETAIL)

    return StatsResponse(**stats)


@router.get(
    "/{alias}",
    status_code=status.HTTP_302_FOUND,
    responses={
        301: {"description": "Permanent redirect"},
        404: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
    summary="Redirect to the link target",
    description="Resolves an alias and redirects (301/302); the click is recorded after the response"
)
@limiter.limit(RATE_LIMITS["redirect"])
async def redirect_alias(
    alias: str,
    request: Request,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session)
) -> RedirectResponse:
    """
    Redirect to the target of a standard or dynamic link.

    Args:
        alias: The alias to resolve
        request: FastAPI Request object (context capture and rate limiting)
        background_tasks: FastAPI BackgroundTasks for post-response tracking

    Returns:
        RedirectResponse with the link's status code (301 or 302)

    Raises:
        HTTPException 404: Alias malformed, unknown, inactive or expired
        HTTPException 500: Link lookup failed
        HTTPException 429: If rate limit exceeded
    """
    try:
        decision = await RedirectService(session).resolve(
            alias,
            user_agent=request.headers.get("user-agent"),
        )
    except (InvalidAliasError, LinkNotFoundError):
        await session.rollback()
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=NOT_FOUND_DETAIL)
    except DatabaseError as e:
        logger.error(f"Redirect lookup failed for '{alias}': {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=REDIRECT_ERROR_DETAIL)
    except Exception as e:
        logger.error(f"Unexpected redirect error for '{alias}': {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=REDIRECT_ERROR_DETAIL)

    # End the read transaction here: the dependency is only torn down after
    # the background tasks, and on SQLite its lock would block their writes
    await session.commit()

    # Snapshot the request now; background tasks must not touch it later
    context = build_request_context(request)
    background_tasks.add_task(process_click_background, context, decision)

    return RedirectResponse(url=decision.target, status_code=decision.status_code)
