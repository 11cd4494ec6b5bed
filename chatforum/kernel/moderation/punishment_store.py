"""
Punishment store: persisted mutes and bans.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from chatforum.kernel.models.base import utcnow
from chatforum.kernel.models.punishment import Punishment, PunishmentType


class PunishmentStore:
    """Creates, queries and deletes punishment rows within the caller's transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find(
        self,
        user_id: int,
        punishment_type: PunishmentType,
        now: Optional[datetime] = None,
    ) -> Optional[Punishment]:
        """
        The active punishment of this type, if any.

        Active means permanent or expiring after now. When several rows
        exist the most recent one wins.
        """
        now = now or utcnow()
        query = (
            select(Punishment)
            .where(
                and_(
                    Punishment.user_id == user_id,
                    Punishment.type == punishment_type.value,
                    or_(Punishment.expires_at.is_(None), Punishment.expires_at > now),
                )
            )
            .order_by(Punishment.id.desc())
            .limit(1)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def find_any(self, user_id: int, punishment_type: PunishmentType) -> Optional[Punishment]:
        """Most recent row of this type regardless of expiry."""
        query = (
            select(Punishment)
            .where(and_(Punishment.user_id == user_id, Punishment.type == punishment_type.value))
            .order_by(Punishment.id.desc())
            .limit(1)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def create(
        self,
        user_id: int,
        punishment_type: PunishmentType,
        reason: Optional[str],
        expires_at: Optional[datetime],
        issuer_id: Optional[int] = None,
    ) -> Punishment:
        record = Punishment(
            user_id=user_id,
            type=punishment_type.value,
            reason=reason,
            expires_at=expires_at,
            issued_by_id=issuer_id,
        )
        self.session.add(record)
        await self.session.flush()
        return record

    async def delete_all(self, user_id: int, punishment_type: PunishmentType) -> int:
        """Delete every row of this type for the user. Returns rows deleted."""
        result = await self.session.execute(
            delete(Punishment).where(
                and_(Punishment.user_id == user_id, Punishment.type == punishment_type.value)
            )
        )
        return result.rowcount or 0

    async def list_timed(self) -> List[Punishment]:
        """Every punishment with an expiry, used to re-arm timers at startup."""
        query = (
            select(Punishment)
            .where(Punishment.expires_at.is_not(None))
            .order_by(Punishment.expires_at)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())
