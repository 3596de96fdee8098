"""Row factories for tests (links and users are normally created by other services)."""

from datetime import timedelta
from typing import Optional

from sqlalchemy import func, select

from linkpulse.db.models import DynamicLink, Link, RedirectType, User, WebhookEndpoint, utcnow

CHROME_DESKTOP_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1"
)
ANDROID_UA = (
    "Mozilla/5.0 (Linux; Android 10; SM-G975F) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36"
)


async def create_user(session, email: str = "owner@example.com", is_active: bool = True) -> User:
    user = User(email=email, is_active=is_active)
    session.add(user)
    await session.commit()
    return user


async def create_link(
    session,
    alias: str = "promo",
    original_url: str = "https://example.com/landing",
    redirect_type: int = RedirectType.TEMPORARY.value,
    is_active: bool = True,
    expires_in: Optional[timedelta] = None,
    user_id: Optional[str] = None,
) -> Link:
    link = Link(
        alias=alias,
        original_url=original_url,
        redirect_type=redirect_type,
        is_active=is_active,
        expires_at=utcnow() + expires_in if expires_in is not None else None,
        user_id=user_id,
    )
    session.add(link)
    await session.commit()
    return link


async def create_dynamic_link(
    session,
    alias: str = "app",
    default_url: str = "https://example.com/app",
    rules: Optional[list] = None,
    user_id: Optional[str] = None,
) -> DynamicLink:
    link = DynamicLink(
        name="App download",
        alias=alias,
        default_url=default_url,
        rules=rules if rules is not None else [],
        user_id=user_id,
    )
    session.add(link)
    await session.commit()
    return link


async def create_webhook_endpoint(
    session,
    user_id: str,
    url: str = "https://hooks.example.com/clicks",
    events: Optional[list] = None,
    is_active: bool = True,
    secret: str = "whsec_test",
) -> WebhookEndpoint:
    endpoint = WebhookEndpoint(
        user_id=user_id,
        url=url,
        events=events if events is not None else ["link.clicked"],
        is_active=is_active,
        secret=secret,
    )
    session.add(endpoint)
    await session.commit()
    return endpoint


async def count_rows(session_maker, model, *criteria) -> int:
    """Count rows in a fresh session (sees commits made by background tasks)."""
    async with session_maker() as session:
        statement = select(func.count()).select_from(model)
        if criteria:
            statement = statement.where(*criteria)
        result = await session.execute(statement)
        return result.scalar_one()


async def fetch_all(session_maker, model, *criteria) -> list:
    async with session_maker() as session:
        statement = select(model)
        if criteria:
            statement = statement.where(*criteria)
        result = await session.execute(statement)
        return list(result.scalars().all())
