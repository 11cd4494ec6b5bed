"""
Identity Core - authentication, sessions and user management.
"""

from chatforum.kernel.identity.password import PasswordHasher, verify_password, hash_password
from chatforum.kernel.identity.jwt import (
    JWTManager,
    AccessTokenPayload,
    create_access_token,
    verify_access_token,
)
from chatforum.kernel.identity.session_store import SessionStore
from chatforum.kernel.identity.identity_service import AccountBanned, IdentityService, IssuedToken

__all__ = [
    "PasswordHasher",
    "verify_password",
    "hash_password",
    "JWTManager",
    "AccessTokenPayload",
    "create_access_token",
    "verify_access_token",
    "SessionStore",
    "AccountBanned",
    "IdentityService",
    "IssuedToken",
]
