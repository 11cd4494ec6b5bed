"""
Realtime presence and moderation.

RealtimeHub wires the shared presence registry, the WebSocket transport,
the connection supervisor, the moderation broker and the expiry
scheduler into one object the application keeps on app.state.
"""

from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatforum.config import Settings, get_settings
from chatforum.kernel.identity.jwt import JWTManager
from chatforum.kernel.models.base import utcnow
from chatforum.logging_config import get_logger
from chatforum.realtime.expiry import PunishmentExpiryScheduler
from chatforum.realtime.moderation import KickResult, ModerationBroker, PunishmentRecord
from chatforum.realtime.presence import PresenceRegistry, RegisterResult
from chatforum.realtime.supervisor import ConnectionState, ConnectionSupervisor
from chatforum.realtime.transport import Connection, Transport, WebSocketTransport

logger = get_logger(__name__)


class RealtimeHub:
    """One instance per process."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
        transport: Optional[Transport] = None,
        credential_validator: Optional[JWTManager] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = settings or get_settings()
        self.session_maker = session_maker
        self.registry = PresenceRegistry()
        self.transport = transport or WebSocketTransport()
        self.scheduler = PunishmentExpiryScheduler(clock=clock)
        self.supervisor = ConnectionSupervisor(
            registry=self.registry,
            transport=self.transport,
            session_maker=session_maker,
            credential_validator=credential_validator,
            settings=settings,
            clock=clock,
        )
        self.broker = ModerationBroker(
            registry=self.registry,
            transport=self.transport,
            session_maker=session_maker,
            scheduler=self.scheduler,
            clock=clock,
        )

    async def start(self) -> None:
        """Re-arm expiry timers from the store."""
        await self.scheduler.rearm(self.session_maker)

    async def stop(self) -> None:
        await self.scheduler.shutdown()
        for entry in self.registry.entries():
            await self.transport.close(entry.handle)
        logger.info("Realtime hub stopped")


__all__ = [
    "Connection",
    "ConnectionState",
    "ConnectionSupervisor",
    "KickResult",
    "ModerationBroker",
    "PresenceRegistry",
    "PunishmentExpiryScheduler",
    "PunishmentRecord",
    "RealtimeHub",
    "RegisterResult",
    "Transport",
    "WebSocketTransport",
]
