"""
Immutable event log for audit trail.

Identity and moderation actions are appended here in the same
transaction as the change they describe.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from chatforum.kernel.models.base import Base


class EventType(str, Enum):
    """All event types for the audit log."""

    # User events
    USER_REGISTERED = "user.registered"
    USER_LOGGED_IN = "user.logged_in"
    USER_LOGGED_OUT = "user.logged_out"
    USER_PASSWORD_CHANGED = "user.password_changed"

    # Moderation events
    USER_MUTED = "moderation.muted"
    USER_UNMUTED = "moderation.unmuted"
    USER_BANNED = "moderation.banned"
    USER_UNBANNED = "moderation.unbanned"
    USER_KICKED = "moderation.kicked"
    PUNISHMENT_EXPIRED = "moderation.expired"


class EventLog(Base):
    """
    Immutable audit event log.

    This table is append-only - no updates or deletes allowed.
    """

    __tablename__ = "event_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    event_type: Mapped[EventType] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )

    # Entity reference
    entity_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )
    entity_id: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        index=True,
    )

    # Actor
    user_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,  # System events (timed expiry) have no actor
        index=True,
    )

    payload: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )

    ip_address: Mapped[Optional[str]] = mapped_column(
        String(45),
        nullable=True,
    )
    user_agent: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    __table_args__ = (
        Index("ix_event_logs_entity", "entity_type", "entity_id"),
        Index("ix_event_logs_type_time", "event_type", "created_at"),
    )

    def __repr__(self) -> str:
        event_type = getattr(self.event_type, "value", self.event_type)
        return f"<EventLog {event_type} {self.entity_type}:{self.entity_id}>"
