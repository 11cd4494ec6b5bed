"""
Pydantic schemas for API request/response validation.
"""

from chatforum.schemas.auth import (
    ChangePasswordRequest,
    TokenResponse,
    UserCreate,
    UserLogin,
    UserResponse,
)
from chatforum.schemas.common import (
    ErrorResponse,
    HealthResponse,
    SuccessResponse,
)
from chatforum.schemas.moderation import (
    KickResponse,
    ModerationHistoryEntry,
    PresenceResponse,
    PunishmentRequest,
    PunishmentResponse,
    RevokeResponse,
)

__all__ = [
    # Auth
    "UserCreate",
    "UserLogin",
    "UserResponse",
    "TokenResponse",
    "ChangePasswordRequest",
    # Moderation
    "PunishmentRequest",
    "PunishmentResponse",
    "RevokeResponse",
    "KickResponse",
    "ModerationHistoryEntry",
    "PresenceResponse",
    # Common
    "ErrorResponse",
    "SuccessResponse",
    "HealthResponse",
]
