"""
Moderation event broker.

Turns admin actions and expiry timers into store writes plus live
effects on connected users. Store writes (and their audit entries)
commit in one transaction before anything is sent or closed, so a store
failure leaves presence and connections exactly as they were.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatforum.database import transaction
from chatforum.kernel.events.event_store import EventStore
from chatforum.kernel.identity.session_store import SessionStore
from chatforum.kernel.models.base import as_utc, utcnow
from chatforum.kernel.models.event_log import EventType
from chatforum.kernel.models.punishment import PunishmentType
from chatforum.kernel.moderation.punishment_store import PunishmentStore
from chatforum.logging_config import get_logger
from chatforum.realtime import events
from chatforum.realtime.expiry import PunishmentExpiryScheduler
from chatforum.realtime.presence import PresenceRegistry
from chatforum.realtime.transport import POLICY_VIOLATION, Transport

logger = get_logger(__name__)

_APPLIED_EVENT = {
    PunishmentType.MUTE: EventType.USER_MUTED,
    PunishmentType.BAN: EventType.USER_BANNED,
}
_REVOKED_EVENT = {
    PunishmentType.MUTE: EventType.USER_UNMUTED,
    PunishmentType.BAN: EventType.USER_UNBANNED,
}
_LIFTED_WIRE_EVENT = {
    PunishmentType.MUTE: events.USER_UNMUTED,
    PunishmentType.BAN: events.USER_UNBANNED,
}


@dataclass(frozen=True)
class PunishmentRecord:
    """A punishment as applied, detached from the ORM session."""

    id: int
    user_id: int
    type: PunishmentType
    reason: Optional[str]
    expires_at: Optional[datetime]
    issuer_id: Optional[int]

    @property
    def is_permanent(self) -> bool:
        return self.expires_at is None


@dataclass(frozen=True)
class KickResult:
    session_revoked: bool
    was_online: bool
    live_session_revoked: bool = False


class ModerationBroker:
    """Applies bans, mutes, revocations, kicks and expiries."""

    def __init__(
        self,
        registry: PresenceRegistry,
        transport: Transport,
        session_maker: async_sessionmaker[AsyncSession],
        scheduler: Optional[PunishmentExpiryScheduler] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.transport = transport
        self.session_maker = session_maker
        self.clock = clock
        self.scheduler = scheduler or PunishmentExpiryScheduler(clock=clock)
        self.scheduler.bind(self.expire)

    async def apply_ban(
        self,
        user_id: int,
        reason: Optional[str],
        duration_minutes: Optional[int] = None,
        issuer_id: Optional[int] = None,
    ) -> PunishmentRecord:
        """
        Ban an identity.

        Every session of the user is revoked; a connected user receives
        user_banned and is disconnected. Everyone else is told through
        notify_user_banned.

        Raises:
            PersistentStoreFailure: Nothing was changed
        """
        record = await self._persist(PunishmentType.BAN, user_id, reason, duration_minutes, issuer_id)
        notice = events.punishment_notice(user_id, record.reason, record.expires_at)

        self.registry.revoke_admissions(user_id)
        handle = self.registry.lookup_handle(user_id)
        if handle is not None:
            await self.transport.send(handle, events.USER_BANNED, notice)
            await self.transport.close(handle, code=POLICY_VIOLATION)
            self.registry.unregister_handle(user_id, handle)

        await self.transport.broadcast(events.NOTIFY_USER_BANNED, notice)
        self._schedule(record)
        logger.info(
            "User %s banned until %s",
            user_id,
            record.expires_at.isoformat() if record.expires_at else "forever",
            extra={"user_id": issuer_id},
        )
        return record

    async def apply_mute(
        self,
        user_id: int,
        reason: Optional[str],
        duration_minutes: Optional[int] = None,
        issuer_id: Optional[int] = None,
    ) -> PunishmentRecord:
        """Mute an identity; it stays connected but its messages are dropped."""
        record = await self._persist(PunishmentType.MUTE, user_id, reason, duration_minutes, issuer_id)
        notice = events.punishment_notice(user_id, record.reason, record.expires_at)

        handle = self.registry.lookup_handle(user_id)
        if handle is not None:
            await self.transport.send(handle, events.USER_MUTED, notice)

        await self.transport.broadcast(events.NOTIFY_USER_MUTED, notice)
        self._schedule(record)
        logger.info(
            "User %s muted until %s",
            user_id,
            record.expires_at.isoformat() if record.expires_at else "forever",
            extra={"user_id": issuer_id},
        )
        return record

    async def revoke(
        self,
        user_id: int,
        punishment_type: PunishmentType,
        issuer_id: Optional[int] = None,
    ) -> int:
        """
        Lift every punishment of this type. Idempotent.

        The lifted event is broadcast even when nothing was active.
        Returns the number of records removed.
        """
        punishment_type = PunishmentType(punishment_type)
        async with transaction(self.session_maker) as session:
            removed = await PunishmentStore(session).delete_all(user_id, punishment_type)
            await EventStore(session).log(
                event_type=_REVOKED_EVENT[punishment_type],
                entity_type="user",
                entity_id=user_id,
                user_id=issuer_id,
                payload={"removed": removed},
            )

        self.scheduler.cancel(user_id, punishment_type)
        await self.transport.broadcast(_LIFTED_WIRE_EVENT[punishment_type], {"userId": user_id})
        logger.info(
            "Lifted %s for user %s (%d records)",
            punishment_type.value,
            user_id,
            removed,
            extra={"user_id": issuer_id},
        )
        return removed

    async def kick(
        self,
        user_id: int,
        session_token: Optional[str] = None,
        issuer_id: Optional[int] = None,
        live_session_token: Optional[str] = None,
    ) -> KickResult:
        """
        Disconnect an identity.

        session_token is the token of the requesting admin context and
        is revoked; live_session_token, when given, is the token the
        target's connection was admitted with and is revoked as well.
        No error when the user is offline or a token is unknown.
        """
        revoked = live_revoked = 0
        async with transaction(self.session_maker) as session:
            sessions = SessionStore(session)
            if session_token:
                revoked = await sessions.invalidate(session_token)
            if live_session_token and live_session_token != session_token:
                live_revoked = await sessions.invalidate(live_session_token)
            await EventStore(session).log(
                event_type=EventType.USER_KICKED,
                entity_type="user",
                entity_id=user_id,
                user_id=issuer_id,
                payload={
                    "session_revoked": bool(revoked),
                    "live_session_revoked": bool(live_revoked),
                },
            )

        self.registry.revoke_admissions(user_id)
        handle = self.registry.lookup_handle(user_id)
        if handle is not None:
            await self.transport.send(handle, events.USER_KICKED, {})
            await self.transport.close(handle)
            self.registry.unregister_handle(user_id, handle)
            logger.info("User %s kicked", user_id, extra={"user_id": issuer_id})

        return KickResult(
            session_revoked=bool(revoked),
            was_online=handle is not None,
            live_session_revoked=bool(live_revoked),
        )

    async def expire(self, user_id: int, punishment_type: PunishmentType) -> bool:
        """
        Timer callback: lift the punishment if it is actually due.

        A punishment replaced or extended since the timer was armed is
        left alone. Returns True when something was lifted.
        """
        punishment_type = PunishmentType(punishment_type)
        now = self.clock()
        async with transaction(self.session_maker) as session:
            store = PunishmentStore(session)
            active = await store.find(user_id, punishment_type, now=now)
            if active is not None:
                if active.expires_at is not None:
                    # Woke up early or the punishment was extended
                    self.scheduler.schedule(user_id, punishment_type, as_utc(active.expires_at))
                logger.debug("%s for user %s not due yet", punishment_type.value, user_id)
                return False
            if await store.find_any(user_id, punishment_type) is None:
                return False
            await store.delete_all(user_id, punishment_type)
            await EventStore(session).log(
                event_type=EventType.PUNISHMENT_EXPIRED,
                entity_type="user",
                entity_id=user_id,
                payload={"type": punishment_type},
            )

        await self.transport.broadcast(_LIFTED_WIRE_EVENT[punishment_type], {"userId": user_id})
        logger.info("%s for user %s expired", punishment_type.value.capitalize(), user_id)
        return True

    async def _persist(
        self,
        punishment_type: PunishmentType,
        user_id: int,
        reason: Optional[str],
        duration_minutes: Optional[int],
        issuer_id: Optional[int],
    ) -> PunishmentRecord:
        expires_at = None
        if duration_minutes:
            expires_at = self.clock() + timedelta(minutes=duration_minutes)

        async with transaction(self.session_maker) as session:
            if punishment_type is PunishmentType.BAN:
                await SessionStore(session).invalidate_all_for_user(user_id)
            store = PunishmentStore(session)
            await store.delete_all(user_id, punishment_type)
            row = await store.create(user_id, punishment_type, reason, expires_at, issuer_id)
            await EventStore(session).log(
                event_type=_APPLIED_EVENT[punishment_type],
                entity_type="user",
                entity_id=user_id,
                user_id=issuer_id,
                payload={"reason": reason, "expires_at": expires_at},
            )
            record = PunishmentRecord(
                id=row.id,
                user_id=user_id,
                type=punishment_type,
                reason=reason,
                expires_at=as_utc(expires_at) if expires_at else None,
                issuer_id=issuer_id,
            )
        return record

    def _schedule(self, record: PunishmentRecord) -> None:
        if record.expires_at is None:
            self.scheduler.cancel(record.user_id, record.type)
        else:
            self.scheduler.schedule(record.user_id, record.type, record.expires_at)
