"""
Statistics Service

Reconciliation view for one alias: the denormalized click counter next to
the number of click rows actually recorded.

Design Decisions:
- The two numbers are expected to drift slightly (counter and event are
  written by independent background steps); this view makes the drift
  visible rather than hiding it
- Aggregated dashboards are served elsewhere
"""

from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from linkpulse.db.models import ClickEvent, DynamicLinkClickEvent, LinkKind
from linkpulse.services.link_lookup import LinkLookupService, LinkRef


class StatsService:
    """
    Service for retrieving per-link click statistics.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.link_lookup = LinkLookupService(session)

    async def count_recorded_clicks(self, link_ref: LinkRef) -> int:
        if link_ref.kind == LinkKind.DYNAMIC:
            statement = select(func.count(DynamicLinkClickEvent.id)).where(
                DynamicLinkClickEvent.dynamic_link_id == link_ref.id
            )
        else:
            statement = select(func.count(ClickEvent.id)).where(ClickEvent.link_id == link_ref.id)
        result = await self.session.execute(statement)
        return result.scalar_one()

    async def get_stats(self, alias: str) -> Optional[dict]:
        """
        Get click statistics for an alias.

        Returns:
            Dictionary with alias, link_kind, click_count and recorded_clicks,
            or None if the alias is unknown
        """
        link = await self.link_lookup.find_by_alias(alias)
        if link is None:
            return None

        link_ref = LinkRef.from_link(link)
        return {
            "alias": link_ref.alias,
            "link_kind": link_ref.kind,
            "click_count": link.click_count or 0,
            "recorded_clicks": await self.count_recorded_clicks(link_ref),
        }
