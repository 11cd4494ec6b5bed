"""
Connection supervisor: admission and per-connection event routing.

Lifecycle of one connection:

    AWAITING_CREDENTIAL -> VALIDATING -> CONFLICT_CHECK
        -> [CONFLICT_RESOLUTION] -> ACTIVE -> DISCONNECTED

Admission failures close the connection without telling the client why.
The evict -> old unregisters -> new registers sequence spans several
suspension points, so a register attempt can still see the old entry;
that is retried a bounded number of times, never treated as fatal on
the first try.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatforum.config import Settings, get_settings
from chatforum.database import transaction
from chatforum.kernel.errors import (
    CredentialInvalid,
    EventValidationError,
    PersistentStoreFailure,
    RegistryConflictRetryExhausted,
    SessionInvalidOrExpired,
)
from chatforum.kernel.identity.jwt import JWTManager
from chatforum.kernel.identity.session_store import SessionStore
from chatforum.kernel.models.base import as_utc, utcnow
from chatforum.kernel.models.punishment import Punishment, PunishmentType
from chatforum.kernel.moderation.punishment_store import PunishmentStore
from chatforum.logging_config import get_logger
from chatforum.realtime import events
from chatforum.realtime.presence import PresenceRegistry, RegisterResult
from chatforum.realtime.profanity import ProfanityFilter
from chatforum.realtime.transport import POLICY_VIOLATION, Connection, Transport

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    AWAITING_CREDENTIAL = "awaiting_credential"
    VALIDATING = "validating"
    CONFLICT_CHECK = "conflict_check"
    CONFLICT_RESOLUTION = "conflict_resolution"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


class ConnectionContext:
    """What the supervisor knows about one connection."""

    def __init__(self, handle: Connection, token: str):
        self.handle = handle
        self.token = token
        self.state = ConnectionState.AWAITING_CREDENTIAL
        self.user_id: Optional[int] = None
        self.display_name: Optional[str] = None
        self.epoch: Optional[int] = None

    def __repr__(self) -> str:
        return f"<ConnectionContext user={self.user_id} state={self.state.value}>"


class ConnectionSupervisor:
    """Admits connections, resolves identity conflicts and routes inbound events."""

    def __init__(
        self,
        registry: PresenceRegistry,
        transport: Transport,
        session_maker: async_sessionmaker[AsyncSession],
        credential_validator: Optional[JWTManager] = None,
        message_filter: Optional[ProfanityFilter] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = settings or get_settings()
        self.registry = registry
        self.transport = transport
        self.session_maker = session_maker
        self.credential_validator = credential_validator or JWTManager()
        self.message_filter = message_filter or ProfanityFilter(settings.profanity_words)
        self.grace_seconds = settings.eviction_grace_seconds
        self.max_register_attempts = max(1, settings.eviction_max_attempts)
        self.max_message_length = settings.chat_message_max_length
        self.clock = clock
        self._contexts: Dict[Connection, ConnectionContext] = {}

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def on_connect(self, handle: Connection, credential: Optional[str]) -> bool:
        """
        Run admission for a new connection.

        Returns True once the connection is ACTIVE, False if it was closed.
        """
        if not credential:
            logger.info("Connection without credential rejected")
            await self.transport.close(handle, code=POLICY_VIOLATION)
            return False

        ctx = ConnectionContext(handle, credential)
        self._contexts[handle] = ctx
        try:
            await self._validate(ctx)
            await self._claim_presence(ctx)
        except (CredentialInvalid, SessionInvalidOrExpired) as exc:
            logger.info("Connection rejected: %s", exc.code, extra={"user_id": exc.user_id})
            return await self._reject(ctx)
        except PersistentStoreFailure as exc:
            logger.warning("Connection rejected, store unavailable: %s", exc)
            return await self._reject(ctx)
        except RegistryConflictRetryExhausted as exc:
            logger.warning(
                "Presence conflict unresolved after %d attempts; closing new connection",
                self.max_register_attempts,
                extra={"user_id": exc.user_id},
            )
            return await self._reject(ctx)

        if ctx.state is not ConnectionState.ACTIVE:
            # Closed while admission was suspended
            self._contexts.pop(handle, None)
            ctx.state = ConnectionState.DISCONNECTED
            return False

        logger.info(
            "User %s connected",
            ctx.display_name,
            extra={"user_id": ctx.user_id},
        )
        await self.broadcast_presence()
        return True

    async def _validate(self, ctx: ConnectionContext) -> None:
        ctx.state = ConnectionState.VALIDATING
        claims = self.credential_validator.verify(ctx.token)
        if claims is None:
            raise CredentialInvalid("credential did not verify")

        user_id = claims.user_id
        # Read before the store checks; a ban or kick landing after them bumps it
        ctx.epoch = self.registry.admission_epoch(user_id)
        async with transaction(self.session_maker) as session:
            record = await SessionStore(session).find_active_session(ctx.token)
            if record is None or record.user_id != user_id:
                raise SessionInvalidOrExpired("no active session for token", user_id=user_id)
            ban = await PunishmentStore(session).find(user_id, PunishmentType.BAN, now=self.clock())
            if ban is not None:
                raise SessionInvalidOrExpired("identity is banned", user_id=user_id)

        ctx.user_id = user_id
        ctx.display_name = claims.username

    async def _claim_presence(self, ctx: ConnectionContext) -> None:
        for attempt in range(1, self.max_register_attempts + 1):
            if self._abandoned(ctx):
                return

            ctx.state = ConnectionState.CONFLICT_CHECK
            existing = self.registry.lookup_handle(ctx.user_id)
            if existing is not None and existing is not ctx.handle:
                ctx.state = ConnectionState.CONFLICT_RESOLUTION
                await self._evict(ctx.user_id, existing)
                if self._abandoned(ctx):
                    return

            result = self.registry.register(ctx.user_id, ctx.display_name, ctx.handle, epoch=ctx.epoch)
            if result is RegisterResult.OK:
                ctx.state = ConnectionState.ACTIVE
                return
            if result is RegisterResult.REFUSED:
                raise SessionInvalidOrExpired(
                    "admission revoked by a moderation action",
                    user_id=ctx.user_id,
                )
            logger.debug(
                "Register attempt %d for user %s hit a conflict",
                attempt,
                ctx.user_id,
            )

        raise RegistryConflictRetryExhausted(
            "identity still held by another connection",
            user_id=ctx.user_id,
        )

    async def _evict(self, user_id: int, existing: Connection) -> None:
        """Force the connection currently holding user_id off, then wait for it to unregister."""
        if not self.transport.is_open(existing):
            # Transport says it is gone; its entry is stale
            self.registry.unregister_handle(user_id, existing)
            return

        logger.info(
            "User %s already connected; forcing logout of previous connection",
            user_id,
            extra={"user_id": user_id},
        )
        await self.transport.send(existing, events.FORCED_LOGOUT, {})
        await self.transport.close(existing)
        await self.registry.wait_released(user_id, existing, self.grace_seconds)

    def _abandoned(self, ctx: ConnectionContext) -> bool:
        return ctx.state is ConnectionState.DISCONNECTED or not self.transport.is_open(ctx.handle)

    async def _reject(self, ctx: ConnectionContext) -> bool:
        self._contexts.pop(ctx.handle, None)
        ctx.state = ConnectionState.DISCONNECTED
        await self.transport.close(ctx.handle, code=POLICY_VIOLATION)
        return False

    # ------------------------------------------------------------------
    # Active connection events
    # ------------------------------------------------------------------

    async def on_message(self, handle: Connection, event: str, payload: Any = None) -> None:
        """Route one inbound event from an ACTIVE connection."""
        ctx = self.context_for(handle)
        if ctx is None or ctx.state is not ConnectionState.ACTIVE:
            return

        if not isinstance(payload, BaseModel):
            try:
                payload = events.parse_inbound(event, payload)
            except EventValidationError as exc:
                logger.info("Dropped inbound frame: %s", exc, extra={"user_id": ctx.user_id})
                return

        if event == events.TYPING:
            await self.transport.broadcast(
                events.TYPING,
                {"userId": ctx.user_id, "displayName": ctx.display_name, "isTyping": payload.is_typing},
                exclude=handle,
            )
        elif event == events.JOIN_GROUP:
            self.transport.join_group(payload.group_id, handle)
        elif event == events.LEAVE_GROUP:
            self.transport.leave_group(payload.group_id, handle)
        elif event == events.ENTERED:
            await self._on_entered(ctx)
        elif event == events.MESSAGE:
            await self._on_chat_message(ctx, payload)

    async def _on_entered(self, ctx: ConnectionContext) -> None:
        await self.broadcast_presence()
        mute = await self._current_mute(ctx)
        if mute is not None:
            await self._send_mute_notice(ctx, mute)

    async def _on_chat_message(self, ctx: ConnectionContext, payload: events.MessageRequest) -> None:
        mute = await self._current_mute(ctx)
        if mute is not None:
            await self._send_mute_notice(ctx, mute)
            return

        text = payload.text.strip()[: self.max_message_length]
        if not text:
            return
        message = {
            "userId": ctx.user_id,
            "displayName": ctx.display_name,
            "text": self.message_filter.censor(text),
            "groupId": payload.group_id,
            "sentAt": self.clock(),
        }
        if payload.group_id:
            await self.transport.broadcast_to_group(payload.group_id, events.MESSAGE, message)
        else:
            await self.transport.broadcast(events.MESSAGE, message)

    async def _current_mute(self, ctx: ConnectionContext) -> Optional[Punishment]:
        """Active mute for this identity; None when the lookup fails (fail-open)."""
        try:
            async with transaction(self.session_maker) as session:
                return await PunishmentStore(session).find(ctx.user_id, PunishmentType.MUTE, now=self.clock())
        except PersistentStoreFailure as exc:
            logger.warning("Mute check failed, continuing without it: %s", exc, extra={"user_id": ctx.user_id})
            return None

    async def _send_mute_notice(self, ctx: ConnectionContext, mute: Punishment) -> None:
        await self.transport.send(
            ctx.handle,
            events.USER_MUTED,
            events.punishment_notice(ctx.user_id, mute.reason, as_utc(mute.expires_at)),
        )

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------

    async def on_disconnect(self, handle: Connection) -> None:
        """Terminal cleanup; safe to call more than once."""
        ctx = self._contexts.pop(handle, None)
        if ctx is None:
            return
        previous = ctx.state
        ctx.state = ConnectionState.DISCONNECTED
        if previous is not ConnectionState.ACTIVE or ctx.user_id is None:
            return

        # A newer connection may own the entry by now; only remove our own
        self.registry.unregister_handle(ctx.user_id, handle)
        logger.info("User %s disconnected", ctx.display_name, extra={"user_id": ctx.user_id})
        await self.broadcast_presence()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def broadcast_presence(self) -> None:
        await self.transport.broadcast(events.CHAT_UPDATE_USERS, self.registry.sorted_display_names())

    def context_for(self, handle: Connection) -> Optional[ConnectionContext]:
        return self._contexts.get(handle)

    def session_token_for(self, user_id: int) -> Optional[str]:
        """Token the identity's live connection was admitted with."""
        handle = self.registry.lookup_handle(user_id)
        ctx = self.context_for(handle) if handle is not None else None
        return ctx.token if ctx is not None else None
