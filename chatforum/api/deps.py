"""
FastAPI dependencies for authentication, authorization, and database sessions.
"""

from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from chatforum.database import get_db
from chatforum.kernel.identity.identity_service import IdentityService
from chatforum.kernel.identity.jwt import verify_access_token
from chatforum.kernel.identity.session_store import SessionStore
from chatforum.kernel.models.punishment import PunishmentType
from chatforum.kernel.models.user import User
from chatforum.kernel.moderation.punishment_store import PunishmentStore
from chatforum.realtime import RealtimeHub


# Security scheme
security = HTTPBearer(auto_error=False)

DbSession = Annotated[AsyncSession, Depends(get_db)]


async def get_session_token(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> str:
    """Bearer token of the request or 401."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return credentials.credentials


SessionToken = Annotated[str, Depends(get_session_token)]


async def get_current_user(token: SessionToken, db: DbSession) -> User:
    """
    Get the authenticated user.

    The token must verify, be backed by a valid unexpired session row,
    and belong to an active user without an active ban.
    """
    payload = verify_access_token(token)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    session_row = await SessionStore(db).find_active_session(token)
    if session_row is None or session_row.user_id != payload.user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session expired or revoked",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = await IdentityService(db).get_user_by_id(payload.user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is disabled",
        )

    if await PunishmentStore(db).find(user.id, PunishmentType.BAN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User is banned",
        )

    return user


CurrentUser = Annotated[User, Depends(get_current_user)]


async def require_admin(user: CurrentUser) -> User:
    """Require the current user to hold the admin role."""
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user


AdminUser = Annotated[User, Depends(require_admin)]


def get_hub(request: Request) -> RealtimeHub:
    """The realtime hub created in the application lifespan."""
    return request.app.state.hub


Hub = Annotated[RealtimeHub, Depends(get_hub)]


def get_client_ip(request: Request) -> Optional[str]:
    """Extract client IP from request."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def get_user_agent(request: Request) -> Optional[str]:
    """Extract user agent from request."""
    return request.headers.get("User-Agent")
