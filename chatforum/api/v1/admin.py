"""
Admin moderation endpoints.

Each action commits its store writes before touching live connections;
a store failure surfaces as 503 with code "store_unavailable" and
changes nothing.
"""

from typing import List

from fastapi import APIRouter, HTTPException, Query, status

from chatforum.api.deps import AdminUser, DbSession, Hub, SessionToken
from chatforum.kernel.events.event_store import EventStore
from chatforum.kernel.identity.identity_service import IdentityService
from chatforum.kernel.models.event_log import EventType
from chatforum.kernel.models.punishment import PunishmentType
from chatforum.realtime.moderation import PunishmentRecord
from chatforum.schemas.moderation import (
    KickResponse,
    ModerationHistoryEntry,
    PunishmentRequest,
    PunishmentResponse,
    RevokeResponse,
)

router = APIRouter()

MODERATION_EVENTS = [
    EventType.USER_MUTED,
    EventType.USER_UNMUTED,
    EventType.USER_BANNED,
    EventType.USER_UNBANNED,
    EventType.USER_KICKED,
    EventType.PUNISHMENT_EXPIRED,
]


async def _require_user(db: DbSession, user_id: int) -> None:
    if not await IdentityService(db).get_user_by_id(user_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )


def _to_response(record: PunishmentRecord) -> PunishmentResponse:
    return PunishmentResponse(
        id=record.id,
        user_id=record.user_id,
        type=record.type.value,
        reason=record.reason,
        expires_at=record.expires_at,
        issuer_id=record.issuer_id,
        is_permanent=record.is_permanent,
    )


@router.post("/mute/{user_id}", response_model=PunishmentResponse)
async def mute_user(
    user_id: int,
    data: PunishmentRequest,
    admin: AdminUser,
    db: DbSession,
    hub: Hub,
):
    """
    Mute a user.

    Replaces any mute already in place. Without duration_minutes the mute
    is permanent.
    """
    await _require_user(db, user_id)
    record = await hub.broker.apply_mute(
        user_id,
        reason=data.reason,
        duration_minutes=data.duration_minutes,
        issuer_id=admin.id,
    )
    return _to_response(record)


@router.post("/unmute/{user_id}", response_model=RevokeResponse)
async def unmute_user(
    user_id: int,
    admin: AdminUser,
    hub: Hub,
):
    """Lift every mute of a user."""
    removed = await hub.broker.revoke(user_id, PunishmentType.MUTE, issuer_id=admin.id)
    return RevokeResponse(user_id=user_id, type=PunishmentType.MUTE.value, removed=removed)


@router.post("/ban/{user_id}", response_model=PunishmentResponse)
async def ban_user(
    user_id: int,
    data: PunishmentRequest,
    admin: AdminUser,
    db: DbSession,
    hub: Hub,
):
    """
    Ban a user.

    Revokes all of the user's sessions and disconnects them if online.
    """
    if user_id == admin.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Admins cannot ban themselves",
        )
    await _require_user(db, user_id)
    record = await hub.broker.apply_ban(
        user_id,
        reason=data.reason,
        duration_minutes=data.duration_minutes,
        issuer_id=admin.id,
    )
    return _to_response(record)


@router.post("/unban/{user_id}", response_model=RevokeResponse)
async def unban_user(
    user_id: int,
    admin: AdminUser,
    hub: Hub,
):
    """Lift every ban of a user."""
    removed = await hub.broker.revoke(user_id, PunishmentType.BAN, issuer_id=admin.id)
    return RevokeResponse(user_id=user_id, type=PunishmentType.BAN.value, removed=removed)


@router.post("/kick/{user_id}", response_model=KickResponse)
async def kick_user(
    user_id: int,
    admin: AdminUser,
    token: SessionToken,
    hub: Hub,
):
    """
    Disconnect a user.

    Revokes the session token this request was made with, and the token
    the user's live connection was admitted with. Succeeds whether or
    not the user is online.
    """
    result = await hub.broker.kick(
        user_id,
        session_token=token,
        issuer_id=admin.id,
        live_session_token=hub.supervisor.session_token_for(user_id),
    )
    return KickResponse(
        user_id=user_id,
        session_revoked=result.session_revoked,
        live_session_revoked=result.live_session_revoked,
        was_online=result.was_online,
    )


@router.get("/history/{user_id}", response_model=List[ModerationHistoryEntry])
async def moderation_history(
    user_id: int,
    admin: AdminUser,
    db: DbSession,
    limit: int = Query(50, ge=1, le=500),
):
    """Moderation actions taken against a user, newest first."""
    await _require_user(db, user_id)
    entries = await EventStore(db).get_entity_history(
        "user",
        user_id,
        event_types=MODERATION_EVENTS,
        limit=limit,
    )
    return [ModerationHistoryEntry.model_validate(e) for e in entries]
