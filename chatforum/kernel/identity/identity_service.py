"""
Identity service for user management operations.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from chatforum.kernel.events.event_store import EventStore
from chatforum.kernel.identity.jwt import JWTManager
from chatforum.kernel.identity.password import hash_password, verify_password
from chatforum.kernel.identity.session_store import SessionStore
from chatforum.kernel.models.event_log import EventType
from chatforum.kernel.models.punishment import Punishment, PunishmentType
from chatforum.kernel.models.user import Role, RoleName, User
from chatforum.kernel.moderation.punishment_store import PunishmentStore


@dataclass
class IssuedToken:
    """Access token plus the session row that backs it."""

    access_token: str
    expires_at: datetime
    token_type: str = "bearer"


class AccountBanned(Exception):
    """Login refused because the account holds an active ban."""

    def __init__(self, punishment: Punishment):
        self.punishment = punishment
        super().__init__(f"User {punishment.user_id} is banned")


class IdentityService:
    """
    Service for user identity operations.

    Handles registration, login (token + session issue), logout and
    password changes.
    """

    def __init__(self, session: AsyncSession, jwt_manager: Optional[JWTManager] = None):
        self.session = session
        self.jwt_manager = jwt_manager or JWTManager()
        self.event_store = EventStore(session)
        self.sessions = SessionStore(session)
        self.punishments = PunishmentStore(session)

    async def register_user(
        self,
        username: str,
        email: str,
        password: str,
        ip_address: Optional[str] = None,
    ) -> User:
        """
        Register a new user with the default role.

        Raises:
            ValueError: If username or email already exists
        """
        username = username.strip()
        email = email.lower().strip()

        query = select(User).where(or_(User.username == username, User.email == email))
        existing = (await self.session.execute(query)).scalars().first()
        if existing:
            raise ValueError("Username or email already registered")

        user = User(
            username=username,
            email=email,
            password_hash=hash_password(password),
        )
        user.roles = [await self._get_or_create_role(RoleName.USER)]

        self.session.add(user)
        await self.session.flush()
        # Load server-side defaults (created_at) while still in async context
        await self.session.refresh(user)

        await self.event_store.log(
            event_type=EventType.USER_REGISTERED,
            entity_type="user",
            entity_id=user.id,
            user_id=user.id,
            payload={"username": user.username},
            ip_address=ip_address,
        )

        return user

    async def authenticate(
        self,
        username: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[tuple[User, IssuedToken]]:
        """
        Check credentials and open a new session.

        Returns:
            Tuple of (User, IssuedToken) if successful, None otherwise

        Raises:
            AccountBanned: If the user holds an active ban
        """
        user = await self.get_user_by_username(username)
        if not user or not verify_password(password, user.password_hash):
            return None

        if not user.is_active:
            return None

        ban = await self.punishments.find(user.id, PunishmentType.BAN)
        if ban:
            raise AccountBanned(ban)

        token, expires_at = self.jwt_manager.create_access_token(
            user_id=user.id,
            username=user.username,
            roles=sorted(user.role_names),
        )
        await self.sessions.create(
            user_id=user.id,
            token=token,
            expires_at=expires_at,
            device_info=user_agent,
            ip_address=ip_address,
        )

        await self.event_store.log(
            event_type=EventType.USER_LOGGED_IN,
            entity_type="user",
            entity_id=user.id,
            user_id=user.id,
            payload={"method": "password"},
            ip_address=ip_address,
            user_agent=user_agent,
        )

        return user, IssuedToken(access_token=token, expires_at=expires_at)

    async def logout(
        self,
        user_id: int,
        token: Optional[str] = None,
        revoke_all: bool = False,
        ip_address: Optional[str] = None,
    ) -> int:
        """
        Revoke the presented session, or every session of the user.

        Returns:
            Number of sessions revoked
        """
        if revoke_all:
            revoked = await self.sessions.invalidate_all_for_user(user_id)
        elif token:
            revoked = await self.sessions.invalidate(token)
        else:
            revoked = 0

        await self.event_store.log(
            event_type=EventType.USER_LOGGED_OUT,
            entity_type="user",
            entity_id=user_id,
            user_id=user_id,
            payload={"revoke_all": revoke_all, "revoked": revoked},
            ip_address=ip_address,
        )
        return revoked

    async def change_password(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        ip_address: Optional[str] = None,
    ) -> bool:
        """
        Change user's password and revoke every session.

        Returns:
            True if successful, False if current password is wrong
        """
        user = await self.get_user_by_id(user_id)
        if not user or not verify_password(current_password, user.password_hash):
            return False

        user.password_hash = hash_password(new_password)
        revoked = await self.sessions.invalidate_all_for_user(user_id)

        await self.event_store.log(
            event_type=EventType.USER_PASSWORD_CHANGED,
            entity_type="user",
            entity_id=user_id,
            user_id=user_id,
            payload={"revoked_sessions": revoked},
            ip_address=ip_address,
        )
        return True

    async def get_user_by_id(self, user_id: int) -> Optional[User]:
        """Get a user by ID."""
        result = await self.session.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_user_by_username(self, username: str) -> Optional[User]:
        """Get a user by username."""
        result = await self.session.execute(select(User).where(User.username == username.strip()))
        return result.scalar_one_or_none()

    async def grant_role(self, user_id: int, role: RoleName) -> bool:
        """Add a role to a user. Returns False if the user does not exist."""
        user = await self.get_user_by_id(user_id)
        if not user:
            return False
        if role.value not in user.role_names:
            user.roles.append(await self._get_or_create_role(role))
        return True

    async def _get_or_create_role(self, name: RoleName) -> Role:
        result = await self.session.execute(select(Role).where(Role.name == name.value))
        role = result.scalar_one_or_none()
        if role is None:
            role = Role(name=name.value)
            self.session.add(role)
            await self.session.flush()
        return role
