"""
Kernel Data Models

SQLAlchemy models for identities, sessions, punishments and the audit log.
"""

from chatforum.kernel.models.base import Base, TimestampMixin, as_utc, utcnow
from chatforum.kernel.models.user import Role, RoleName, User, user_roles
from chatforum.kernel.models.session import UserSession
from chatforum.kernel.models.punishment import Punishment, PunishmentType
from chatforum.kernel.models.event_log import EventLog, EventType

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "as_utc",
    "utcnow",
    # Identity
    "Role",
    "RoleName",
    "User",
    "user_roles",
    "UserSession",
    # Moderation
    "Punishment",
    "PunishmentType",
    # Event Log
    "EventLog",
    "EventType",
]
