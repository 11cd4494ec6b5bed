"""
Automatic expiry of timed punishments.

One asyncio task per (user, punishment type). Timers live in memory
only; on startup rearm() rebuilds them from the persisted expires_at of
every timed punishment, so a restart delays nothing that was already due.
"""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional, Set, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatforum.database import transaction
from chatforum.kernel.errors import PersistentStoreFailure
from chatforum.kernel.models.base import as_utc, utcnow
from chatforum.kernel.models.punishment import PunishmentType
from chatforum.kernel.moderation.punishment_store import PunishmentStore
from chatforum.logging_config import get_logger

logger = get_logger(__name__)

ExpiryKey = Tuple[int, PunishmentType]
ExpiryCallback = Callable[[int, PunishmentType], Awaitable[None]]

STORE_RETRY_SECONDS = 30.0


class PunishmentExpiryScheduler:
    """Fires a callback when a timed punishment runs out."""

    def __init__(
        self,
        on_expire: Optional[ExpiryCallback] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        retry_seconds: float = STORE_RETRY_SECONDS,
    ):
        self._on_expire = on_expire
        self._clock = clock
        self._sleep = sleep
        self._retry_seconds = retry_seconds
        self._tasks: Dict[ExpiryKey, asyncio.Task] = {}

    def bind(self, on_expire: ExpiryCallback) -> None:
        self._on_expire = on_expire

    def schedule(self, user_id: int, punishment_type: PunishmentType, expires_at: datetime) -> asyncio.Task:
        """(Re)arm the timer for this user and type, replacing any earlier one."""
        delay = (as_utc(expires_at) - self._clock()).total_seconds()
        return self._arm((user_id, PunishmentType(punishment_type)), max(0.0, delay))

    def cancel(self, user_id: int, punishment_type: PunishmentType) -> bool:
        task = self._tasks.pop((user_id, PunishmentType(punishment_type)), None)
        if task is None:
            return False
        task.cancel()
        return True

    def pending(self) -> Set[ExpiryKey]:
        return {key for key, task in self._tasks.items() if not task.done()}

    async def rearm(self, session_maker: async_sessionmaker[AsyncSession]) -> int:
        """Schedule every timed punishment found in the store. Returns the count armed."""
        async with transaction(session_maker) as session:
            records = await PunishmentStore(session).list_timed()

        latest: Dict[ExpiryKey, datetime] = {}
        for record in records:
            key = (record.user_id, PunishmentType(record.type))
            expires_at = as_utc(record.expires_at)
            if key not in latest or expires_at > latest[key]:
                latest[key] = expires_at

        for (user_id, punishment_type), expires_at in latest.items():
            self.schedule(user_id, punishment_type, expires_at)
        logger.info("Re-armed %d punishment expiry timers", len(latest))
        return len(latest)

    async def wait_idle(self) -> None:
        """
        Wait for every timer scheduled so far to finish or be cancelled.

        Test helper: lets a test drive timers to completion with a fake sleep.
        """
        while True:
            tasks = [t for t in self._tasks.values() if not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        outstanding = len(self.pending())
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if outstanding:
            logger.info("Cancelled %d pending expiry timers", outstanding)

    def _arm(self, key: ExpiryKey, delay: float) -> asyncio.Task:
        previous = self._tasks.pop(key, None)
        if previous is not None:
            previous.cancel()
        task = asyncio.create_task(self._run(key, delay), name=f"expire-{key[1].value}-{key[0]}")
        self._tasks[key] = task
        return task

    async def _run(self, key: ExpiryKey, delay: float) -> None:
        await self._sleep(delay)

        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]
        if self._on_expire is None:
            return

        user_id, punishment_type = key
        try:
            await self._on_expire(user_id, punishment_type)
        except PersistentStoreFailure as exc:
            logger.warning(
                "Expiry of %s for user %s failed, retrying in %.0fs: %s",
                punishment_type.value, user_id, self._retry_seconds, exc,
            )
            if key not in self._tasks:
                self._arm(key, self._retry_seconds)
        except Exception:
            logger.exception("Expiry of %s for user %s failed", punishment_type.value, user_id)
