"""
Session store: persisted validity of issued tokens.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chatforum.kernel.models.base import utcnow
from chatforum.kernel.models.session import UserSession


class SessionStore:
    """Reads and revokes session rows within the caller's transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_active_session(self, token: str) -> Optional[UserSession]:
        """Row for token if it exists, is valid and has not expired."""
        query = select(UserSession).where(
            and_(
                UserSession.token == token,
                UserSession.is_valid.is_(True),
                UserSession.expires_at > utcnow(),
            )
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def create(
        self,
        user_id: int,
        token: str,
        expires_at: datetime,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> UserSession:
        record = UserSession(
            user_id=user_id,
            token=token,
            expires_at=expires_at,
            is_valid=True,
            device_info=(device_info or "")[:255] or None,
            ip_address=ip_address,
        )
        self.session.add(record)
        await self.session.flush()
        return record

    async def invalidate(self, token: str) -> int:
        """Revoke one token. Returns the number of rows changed (0 or 1)."""
        result = await self.session.execute(
            update(UserSession)
            .where(and_(UserSession.token == token, UserSession.is_valid.is_(True)))
            .values(is_valid=False)
        )
        return result.rowcount or 0

    async def invalidate_all_for_user(self, user_id: int) -> int:
        """Revoke every still-valid session of a user."""
        result = await self.session.execute(
            update(UserSession)
            .where(and_(UserSession.user_id == user_id, UserSession.is_valid.is_(True)))
            .values(is_valid=False)
        )
        return result.rowcount or 0
