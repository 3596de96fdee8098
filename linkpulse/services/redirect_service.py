"""
Redirect Service

Resolves an alias to a redirect decision. This is the fast path: it only
reads, and it is the only part of a redirect whose failure reaches the
client.

Decision:
- malformed alias                    -> InvalidAliasError (404)
- missing, inactive or expired link  -> LinkNotFoundError (404, existence
  of disabled/expired links is not revealed)
- standard link                      -> its redirect_type (301 / 302)
- dynamic link                       -> first matching platform rule, else
                                        default_url, always 302
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from linkpulse.core.exceptions import DatabaseError, InvalidAliasError, LinkNotFoundError
from linkpulse.core.validators import sanitize_alias
from linkpulse.db.models import DynamicLink, Link, RedirectType, as_utc, utcnow
from linkpulse.services.link_lookup import AnyLink, LinkLookupService, LinkRef
from linkpulse.services.user_agent import parse_user_agent

logger = logging.getLogger(__name__)

PLATFORM_OS_NAMES = {
    "ios": ("ios",),
    "android": ("android",),
}


@dataclass(frozen=True)
class RedirectDecision:
    target: str
    status_code: int
    link_ref: LinkRef


def compare_versions(version: str, minimum: str) -> int:
    """Compare dotted versions numerically; missing parts count as 0."""

    def parts(value: str) -> list[int]:
        numbers = []
        for piece in value.split("."):
            try:
                numbers.append(int(piece))
            except ValueError:
                numbers.append(0)
        return numbers

    left, right = parts(version or "0"), parts(minimum or "0")
    for index in range(max(len(left), len(right))):
        a = left[index] if index < len(left) else 0
        b = right[index] if index < len(right) else 0
        if a != b:
            return a - b
    return 0


def select_dynamic_target(link: DynamicLink, user_agent: Optional[str]) -> str:
    """
    Pick the target URL of a dynamic link for the visitor's platform.

    Rules are checked in order; a "web" rule matches any visitor.
    """
    ua = parse_user_agent(user_agent)
    os_name = (ua.os or "").lower()

    for rule in link.rules or []:
        platform = rule.get("platform")
        url = rule.get("url")
        if not url:
            continue
        if platform == "web":
            return url
        names = PLATFORM_OS_NAMES.get(platform)
        if names and any(name in os_name for name in names):
            minimum = rule.get("minimum_version")
            if not minimum or compare_versions(ua.os_version or "", minimum) >= 0:
                return url

    return link.default_url


def is_resolvable(link: Any, now: Optional[datetime] = None) -> bool:
    """Active and not expired."""
    if not link.is_active:
        return False
    expires_at = as_utc(link.expires_at)
    if expires_at is not None and expires_at <= (now or utcnow()):
        return False
    return True


def redirect_status(link: Link) -> int:
    if link.redirect_type == RedirectType.PERMANENT:
        return RedirectType.PERMANENT.value
    return RedirectType.TEMPORARY.value


class RedirectService:
    """
    Service for handling URL redirections.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.link_lookup = LinkLookupService(session)

    async def resolve(self, alias: str, user_agent: Optional[str] = None) -> RedirectDecision:
        """
        Resolve an alias into a redirect target and status.

        Args:
            alias: Raw alias path segment
            user_agent: Visitor User-Agent (dynamic links only)

        Returns:
            RedirectDecision

        Raises:
            InvalidAliasError: alias can never match a link
            LinkNotFoundError: alias missing, inactive or expired
            DatabaseError: the lookup itself failed
        """
        sanitized = sanitize_alias(alias)
        if not sanitized:
            raise InvalidAliasError(alias)
        alias = sanitized

        try:
            link: Optional[AnyLink] = await self.link_lookup.find_by_alias(alias)
        except SQLAlchemyError as e:
            raise DatabaseError(f"link lookup failed for '{alias}'", original_error=e) from e

        if link is None:
            raise LinkNotFoundError(alias)

        if not is_resolvable(link):
            raise LinkNotFoundError(alias, reason="inactive or expired")

        if isinstance(link, DynamicLink):
            return RedirectDecision(
                target=select_dynamic_target(link, user_agent),
                status_code=RedirectType.TEMPORARY.value,
                link_ref=LinkRef.from_link(link),
            )

        return RedirectDecision(
            target=link.original_url,
            status_code=redirect_status(link),
            link_ref=LinkRef.from_link(link),
        )
