"""
Authentication endpoints.
"""

from fastapi import APIRouter, HTTPException, Request, status

from chatforum.api.deps import CurrentUser, DbSession, SessionToken, get_client_ip, get_user_agent
from chatforum.kernel.identity.identity_service import AccountBanned, IdentityService
from chatforum.kernel.models.base import as_utc
from chatforum.schemas.auth import (
    ChangePasswordRequest,
    TokenResponse,
    UserCreate,
    UserLogin,
    UserResponse,
)
from chatforum.schemas.common import SuccessResponse

router = APIRouter()


def _banned(exc: AccountBanned) -> HTTPException:
    expires_at = as_utc(exc.punishment.expires_at)
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "message": "Account is banned",
            "reason": exc.punishment.reason,
            "expires_at": expires_at.isoformat() if expires_at else None,
        },
    )


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def register(
    request: Request,
    data: UserCreate,
    db: DbSession,
):
    """
    Register a new user account.

    Returns an access token on successful registration.
    """
    identity_service = IdentityService(db)
    ip_address = get_client_ip(request)

    try:
        await identity_service.register_user(
            username=data.username,
            email=data.email,
            password=data.password,
            ip_address=ip_address,
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )

    result = await identity_service.authenticate(
        username=data.username,
        password=data.password,
        ip_address=ip_address,
        user_agent=get_user_agent(request),
    )

    if not result:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to authenticate after registration",
        )

    user, issued = result

    return TokenResponse(
        access_token=issued.access_token,
        token_type=issued.token_type,
        expires_at=issued.expires_at,
        user=UserResponse.from_user(user),
    )


@router.post("/login", response_model=TokenResponse)
async def login(
    request: Request,
    data: UserLogin,
    db: DbSession,
):
    """
    Authenticate user and open a session.

    Banned users are refused with the ban reason and end time.
    """
    identity_service = IdentityService(db)

    try:
        result = await identity_service.authenticate(
            username=data.username,
            password=data.password,
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
        )
    except AccountBanned as exc:
        raise _banned(exc)

    if not result:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
        )

    user, issued = result

    return TokenResponse(
        access_token=issued.access_token,
        token_type=issued.token_type,
        expires_at=issued.expires_at,
        user=UserResponse.from_user(user),
    )


@router.post("/logout", response_model=SuccessResponse)
async def logout(
    request: Request,
    user: CurrentUser,
    token: SessionToken,
    db: DbSession,
    everywhere: bool = False,
):
    """
    Log out by revoking the presented session.

    With ?everywhere=true every session of the user is revoked.
    """
    identity_service = IdentityService(db)

    revoked = await identity_service.logout(
        user_id=user.id,
        token=token,
        revoke_all=everywhere,
        ip_address=get_client_ip(request),
    )

    return SuccessResponse(message="Logged out successfully", data={"revoked": revoked})


@router.get("/me", response_model=UserResponse)
async def get_current_user_profile(user: CurrentUser):
    """Get current user's profile."""
    return UserResponse.from_user(user)


@router.post("/change-password", response_model=SuccessResponse)
async def change_password(
    request: Request,
    data: ChangePasswordRequest,
    user: CurrentUser,
    db: DbSession,
):
    """
    Change user's password.

    Revokes every session on success.
    """
    identity_service = IdentityService(db)

    success = await identity_service.change_password(
        user_id=user.id,
        current_password=data.current_password,
        new_password=data.new_password,
        ip_address=get_client_ip(request),
    )

    if not success:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Current password is incorrect",
        )

    return SuccessResponse(message="Password changed successfully. Please log in again.")
