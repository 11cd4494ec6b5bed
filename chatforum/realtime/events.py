"""
Wire contract for the realtime channel.

Every frame is a JSON object {"event": name, "v": 1, "data": payload}.
Each event name maps to exactly one payload schema for the current
version; outbound payloads are validated before they are sent and
inbound frames before they reach the supervisor.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, RootModel, ValidationError

from chatforum.kernel.errors import EventValidationError

EVENT_SCHEMA_VERSION = 1

# Targeted (one connection)
FORCED_LOGOUT = "forced_logout"
USER_MUTED = "user_muted"
USER_BANNED = "user_banned"
USER_KICKED = "user_kicked"

# Broadcast
CHAT_UPDATE_USERS = "chat_update_users"
NOTIFY_USER_MUTED = "notify_user_muted"
NOTIFY_USER_BANNED = "notify_user_banned"
USER_UNMUTED = "user_unmuted"
USER_UNBANNED = "user_unbanned"
TYPING = "typing"
MESSAGE = "message"

# Inbound (client -> server)
ENTERED = "entered"
JOIN_GROUP = "join_group"
LEAVE_GROUP = "leave_group"


class EventPayload(BaseModel):
    """Base for payloads: camelCase on the wire, unknown keys rejected."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class EmptyPayload(EventPayload):
    pass


class PunishmentNotice(EventPayload):
    user_id: int = Field(alias="userId")
    reason: Optional[str] = None
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")


class PunishmentLifted(EventPayload):
    user_id: int = Field(alias="userId")


class PresenceList(RootModel[List[str]]):
    pass


class TypingNotice(EventPayload):
    user_id: int = Field(alias="userId")
    display_name: str = Field(alias="displayName")
    is_typing: bool = Field(default=True, alias="isTyping")


class ChatMessage(EventPayload):
    user_id: int = Field(alias="userId")
    display_name: str = Field(alias="displayName")
    text: str
    group_id: Optional[str] = Field(default=None, alias="groupId")
    sent_at: datetime = Field(alias="sentAt")


class TypingRequest(EventPayload):
    is_typing: bool = Field(default=True, alias="isTyping")


class GroupRequest(EventPayload):
    group_id: str = Field(alias="groupId", min_length=1, max_length=64)


class MessageRequest(EventPayload):
    text: str = Field(min_length=1)
    group_id: Optional[str] = Field(default=None, alias="groupId", max_length=64)


OUTBOUND_SCHEMAS: Dict[str, Type[BaseModel]] = {
    FORCED_LOGOUT: EmptyPayload,
    USER_MUTED: PunishmentNotice,
    USER_BANNED: PunishmentNotice,
    USER_KICKED: EmptyPayload,
    CHAT_UPDATE_USERS: PresenceList,
    NOTIFY_USER_MUTED: PunishmentNotice,
    NOTIFY_USER_BANNED: PunishmentNotice,
    USER_UNMUTED: PunishmentLifted,
    USER_UNBANNED: PunishmentLifted,
    TYPING: TypingNotice,
    MESSAGE: ChatMessage,
}

INBOUND_SCHEMAS: Dict[str, Type[BaseModel]] = {
    ENTERED: EmptyPayload,
    TYPING: TypingRequest,
    JOIN_GROUP: GroupRequest,
    LEAVE_GROUP: GroupRequest,
    MESSAGE: MessageRequest,
}


def build_payload(event: str, payload: Any) -> Any:
    """
    Validate an outbound payload and return its JSON-ready form.

    Raises:
        EventValidationError: Unknown event name or payload mismatch
    """
    schema = OUTBOUND_SCHEMAS.get(event)
    if schema is None:
        raise EventValidationError(f"Unknown outbound event {event!r}")
    try:
        if isinstance(payload, schema):
            model = payload
        else:
            model = schema.model_validate(payload)
    except ValidationError as exc:
        raise EventValidationError(f"Invalid payload for {event!r}: {exc}") from exc
    return model.model_dump(mode="json", by_alias=True)


def encode_frame(event: str, payload: Any) -> Dict[str, Any]:
    """Outbound frame envelope."""
    return {"event": event, "v": EVENT_SCHEMA_VERSION, "data": build_payload(event, payload)}


def parse_inbound(event: str, payload: Any) -> BaseModel:
    """
    Validate an inbound payload against the schema for event.

    Raises:
        EventValidationError: Unknown event name or payload mismatch
    """
    schema = INBOUND_SCHEMAS.get(event)
    if schema is None:
        raise EventValidationError(f"Unknown inbound event {event!r}")
    try:
        return schema.model_validate(payload if payload is not None else {})
    except ValidationError as exc:
        raise EventValidationError(f"Invalid payload for {event!r}: {exc}") from exc


def decode_frame(frame: Any) -> tuple[str, BaseModel]:
    """
    Split and validate a raw inbound frame.

    Frames without a version are accepted as the current version.

    Raises:
        EventValidationError: Malformed frame, unsupported version or bad payload
    """
    if not isinstance(frame, dict):
        raise EventValidationError("Frame must be a JSON object")
    event = frame.get("event")
    if not isinstance(event, str):
        raise EventValidationError("Frame is missing an event name")
    version = frame.get("v", EVENT_SCHEMA_VERSION)
    if version != EVENT_SCHEMA_VERSION:
        raise EventValidationError(f"Unsupported event version {version!r}")
    return event, parse_inbound(event, frame.get("data"))


def punishment_notice(user_id: int, reason: Optional[str], expires_at: Optional[datetime]) -> PunishmentNotice:
    return PunishmentNotice(user_id=user_id, reason=reason, expires_at=expires_at)
