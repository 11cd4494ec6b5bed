"""
Error taxonomy for the presence and session-authority subsystem.

Admission errors never reach the client: the connection is closed
without saying why, so a caller cannot learn which tokens are valid.
"""

from typing import Optional


class ChatForumError(Exception):
    """Base class for service errors."""

    code: str = "error"

    def __init__(self, message: str = "", *, user_id: Optional[int] = None):
        super().__init__(message or self.__class__.__name__)
        self.user_id = user_id


class CredentialInvalid(ChatForumError):
    """Token signature or claims did not verify."""

    code = "credential_invalid"


class SessionInvalidOrExpired(ChatForumError):
    """No valid, unexpired session row backs the token, or the identity is banned."""

    code = "session_invalid"


class RegistryConflictRetryExhausted(ChatForumError):
    """The identity stayed registered to another connection after every eviction attempt."""

    code = "registry_conflict"


class PersistentStoreFailure(ChatForumError):
    """A session/punishment store round trip failed."""

    code = "store_unavailable"


class EventValidationError(ChatForumError):
    """A frame did not match the schema registered for its event name."""

    code = "invalid_event"
