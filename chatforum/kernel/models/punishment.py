"""
Punishment records (mutes and bans).
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from chatforum.kernel.models.base import Base


class PunishmentType(str, Enum):
    """Kinds of punishment an admin can apply."""
    MUTE = "mute"
    BAN = "ban"


class Punishment(Base):
    """A mute or ban; expires_at of None means permanent."""

    __tablename__ = "punishments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    issued_by_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,  # system-issued
    )
    type: Mapped[PunishmentType] = mapped_column(
        String(16),
        nullable=False,
    )
    reason: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_punishments_user_type", "user_id", "type"),
    )

    def __repr__(self) -> str:
        return f"<Punishment {self.type} user={self.user_id} until={self.expires_at}>"
