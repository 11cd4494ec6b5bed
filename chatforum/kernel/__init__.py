"""
Stable Kernel Layer

Foundational components shared by the HTTP API and the realtime channel:
- Identity Core (users, roles, tokens, sessions)
- Moderation persistence (mutes, bans)
- Immutable Event Log (identity and moderation actions)
"""

from chatforum.kernel.models import (
    User,
    Role,
    RoleName,
    UserSession,
    Punishment,
    PunishmentType,
    EventLog,
    EventType,
)

__all__ = [
    # User & Identity
    "User",
    "Role",
    "RoleName",
    "UserSession",
    # Moderation
    "Punishment",
    "PunishmentType",
    # Event Log
    "EventLog",
    "EventType",
]
