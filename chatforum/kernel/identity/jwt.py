"""
JWT token management for authentication.

Tokens only prove who the bearer is. Whether a token may still be used
is decided by its session row (see session_store).
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from jose import JWTError, jwt
from pydantic import BaseModel

from chatforum.config import get_settings


class AccessTokenPayload(BaseModel):
    """JWT access token payload."""

    sub: str  # User ID
    username: str
    roles: List[str] = []
    exp: datetime
    iat: datetime
    jti: str

    @property
    def user_id(self) -> int:
        return int(self.sub)


class JWTManager:
    """
    JWT token creation and verification.

    Acts as the credential validator for both HTTP requests and the
    realtime channel.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        algorithm: Optional[str] = None,
        access_token_expire_minutes: Optional[int] = None,
    ):
        settings = get_settings()
        self.secret_key = secret_key or settings.secret_key
        self.algorithm = algorithm or settings.algorithm
        self.access_token_expire_minutes = (
            access_token_expire_minutes or settings.access_token_expire_minutes
        )

    def create_access_token(
        self,
        user_id: int,
        username: str,
        roles: List[str],
        expires_delta: Optional[timedelta] = None,
    ) -> tuple[str, datetime]:
        """
        Create a new access token.

        Returns:
            Tuple of (token, expiration_datetime)
        """
        now = datetime.now(timezone.utc)
        expire = now + (expires_delta or timedelta(minutes=self.access_token_expire_minutes))

        payload = {
            "sub": str(user_id),
            "username": username,
            "roles": sorted(roles),
            "exp": expire,
            "iat": now,
            "jti": str(uuid.uuid4()),  # keeps tokens unique within one second
            "type": "access",
        }

        token = jwt.encode(payload, self.secret_key, algorithm=self.algorithm)
        return token, expire

    def verify(self, token: str) -> Optional[AccessTokenPayload]:
        """
        Verify signature and claims of an access token.

        Returns:
            AccessTokenPayload if valid, None otherwise
        """
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
            )
        except JWTError:
            return None

        if payload.get("type") != "access":
            return None

        try:
            int(payload["sub"])
            return AccessTokenPayload(
                sub=payload["sub"],
                username=payload["username"],
                roles=payload.get("roles") or [],
                exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
                iat=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                jti=payload["jti"],
            )
        except (KeyError, TypeError, ValueError):
            return None


# Default manager instance
_jwt_manager: Optional[JWTManager] = None


def get_jwt_manager() -> JWTManager:
    """Get or create the default JWT manager."""
    global _jwt_manager
    if _jwt_manager is None:
        _jwt_manager = JWTManager()
    return _jwt_manager


def create_access_token(
    user_id: int,
    username: str,
    roles: List[str],
    expires_delta: Optional[timedelta] = None,
) -> tuple[str, datetime]:
    """Create an access token."""
    return get_jwt_manager().create_access_token(user_id, username, roles, expires_delta)


def verify_access_token(token: str) -> Optional[AccessTokenPayload]:
    """Verify an access token."""
    return get_jwt_manager().verify(token)
