"""
Authenticated user lookup.

Tokens are issued by the account service; this module only verifies them
(PyJWT) and loads the active user they name. Any failure means "anonymous".
"""

import logging
from typing import Optional

import jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from linkpulse.core.setting import settings
from linkpulse.db.models import User

logger = logging.getLogger(__name__)


def decode_user_id(token: Optional[str]) -> Optional[str]:
    """Return the ``sub`` claim of a valid bearer token, else None."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.PyJWTError as e:
        logger.debug(f"Ignoring invalid bearer token: {e}")
        return None
    subject = payload.get("sub")
    return str(subject) if subject else None


async def authenticated_user_from_token(session: AsyncSession, token: Optional[str]) -> Optional[User]:
    """
    Resolve the active user behind a bearer token.

    Returns:
        User, or None for missing/invalid tokens and unknown/inactive users
    """
    user_id = decode_user_id(token)
    if user_id is None:
        return None
    statement = select(User).where(User.id == user_id, User.is_active.is_(True))
    result = await session.execute(statement)
    return result.scalars().first()
