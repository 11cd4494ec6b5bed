"""
Moderation and presence schemas.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

# One year
MAX_DURATION_MINUTES = 525_600


class PunishmentRequest(BaseModel):
    """Mute or ban request. No duration means permanent."""

    reason: Optional[str] = Field(None, max_length=255)
    duration_minutes: Optional[int] = Field(None, ge=1, le=MAX_DURATION_MINUTES)


class PunishmentResponse(BaseModel):
    """A punishment as applied."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    type: str
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    issuer_id: Optional[int] = None
    is_permanent: bool


class RevokeResponse(BaseModel):
    user_id: int
    type: str
    removed: int


class ModerationHistoryEntry(BaseModel):
    """One audited moderation action against a user."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    event_type: str
    user_id: Optional[int] = None  # acting admin, None for timed expiry
    payload: dict
    created_at: datetime


class KickResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    session_revoked: bool
    live_session_revoked: bool = False
    was_online: bool


class PresenceResponse(BaseModel):
    """Display names of everyone currently connected."""

    online: List[str]
    count: int
