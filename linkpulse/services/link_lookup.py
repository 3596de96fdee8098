"""
Link Lookup Service

Read access to the link tables owned by the link management service, plus
the one write the redirect path is allowed: the click counter increment.

Design Decisions:
- Standard links are looked up first, dynamic links second (aliases are
  unique per table; the link service keeps them disjoint)
- Soft-deleted rows are invisible here
- click_count uses a database-level increment, never read-modify-write
"""

from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from linkpulse.db.models import DynamicLink, Link, LinkKind

AnyLink = Union[Link, DynamicLink]


@dataclass(frozen=True)
class LinkRef:
    """Lightweight handle to a resolved link, safe to pass to background tasks."""
    kind: str
    id: str
    alias: str
    owner_id: Optional[str] = None

    @classmethod
    def from_link(cls, link: AnyLink) -> "LinkRef":
        kind = LinkKind.DYNAMIC if isinstance(link, DynamicLink) else LinkKind.STANDARD
        return cls(kind=kind, id=link.id, alias=link.alias, owner_id=link.user_id)


class LinkLookupService:
    """
    Service for alias lookups and counter updates.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_link(self, alias: str) -> Optional[Link]:
        statement = select(Link).where(Link.alias == alias, Link.deleted_at.is_(None))
        result = await self.session.execute(statement)
        return result.scalars().first()

    async def find_dynamic_link(self, alias: str) -> Optional[DynamicLink]:
        statement = select(DynamicLink).where(DynamicLink.alias == alias, DynamicLink.deleted_at.is_(None))
        result = await self.session.execute(statement)
        return result.scalars().first()

    async def find_by_alias(self, alias: str) -> Optional[AnyLink]:
        """
        Exact alias match across standard and dynamic links.

        Returns:
            The link row, or None when no live row carries the alias
        """
        link = await self.find_link(alias)
        if link is not None:
            return link
        return await self.find_dynamic_link(alias)

    async def increment_click_counter(self, link_ref: LinkRef) -> None:
        """
        Atomically add one to the link's click_count.

        Note: commit is handled by the caller. Silently does nothing when the
        link has been removed in the meantime.
        """
        model = DynamicLink if link_ref.kind == LinkKind.DYNAMIC else Link
        statement = (
            update(model)
            .where(model.id == link_ref.id)
            .values(click_count=model.click_count + 1)
        )
        await self.session.execute(statement)
