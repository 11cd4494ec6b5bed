"""
Pytest fixtures for ChatForum tests.
"""

import asyncio
import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

# Configure before any chatforum import reads settings
_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
_tmp.close()
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_tmp.name}")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only-32-chars")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatforum.database import build_engine, build_session_maker, transaction
from chatforum.kernel.identity.identity_service import IdentityService
from chatforum.kernel.identity.jwt import JWTManager
from chatforum.kernel.identity.session_store import SessionStore
from chatforum.kernel.models import Base, RoleName, User
from chatforum.realtime.events import build_payload
from chatforum.realtime.transport import NORMAL_CLOSURE, Connection, Transport


class FakeTransport(Transport):
    """
    In-memory transport that records everything sent.

    When on_close is set, closing a connection schedules it as a task,
    the way a real socket's receive loop ends some time after close().
    """

    def __init__(self) -> None:
        self.sent: List[Tuple[Connection, str, Any]] = []
        self.broadcasts: List[Tuple[str, Any, Optional[Connection]]] = []
        self.group_broadcasts: List[Tuple[str, str, Any]] = []
        self.closed: List[Tuple[Connection, int]] = []
        self.groups: Dict[str, set] = {}
        self.on_close = None

    def connect(self) -> Connection:
        return Connection()

    async def send(self, handle: Connection, event: str, payload: Any) -> None:
        data = build_payload(event, payload)
        if handle.open:
            self.sent.append((handle, event, data))

    async def close(self, handle: Connection, code: int = NORMAL_CLOSURE) -> None:
        if not handle.open:
            return
        handle.open = False
        self.closed.append((handle, code))
        if self.on_close is not None:
            asyncio.get_running_loop().create_task(self.on_close(handle))

    async def broadcast(self, event: str, payload: Any, exclude: Optional[Connection] = None) -> None:
        self.broadcasts.append((event, build_payload(event, payload), exclude))

    async def broadcast_to_group(self, group_id, event, payload, exclude=None) -> None:
        self.group_broadcasts.append((group_id, event, build_payload(event, payload)))

    def join_group(self, group_id: str, handle: Connection) -> None:
        self.groups.setdefault(group_id, set()).add(handle)

    def leave_group(self, group_id: str, handle: Connection) -> None:
        self.groups.get(group_id, set()).discard(handle)

    def is_open(self, handle: Connection) -> bool:
        return handle.open

    # Assertion helpers

    def events_for(self, handle: Connection) -> List[str]:
        return [event for h, event, _ in self.sent if h is handle]

    def payloads_for(self, handle: Connection, event: str) -> List[Any]:
        return [data for h, e, data in self.sent if h is handle and e == event]

    def broadcast_events(self) -> List[str]:
        return [event for event, _, _ in self.broadcasts]

    def last_broadcast(self, event: str) -> Any:
        for e, data, _ in reversed(self.broadcasts):
            if e == event:
                return data
        return None


class FakeClock:
    """Settable clock; starts at a fixed UTC instant."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class ManualSleep:
    """Sleep replacement that only returns when the test releases it."""

    def __init__(self) -> None:
        self.waiters: List[Tuple[float, asyncio.Future]] = []

    async def __call__(self, delay: float) -> None:
        future = asyncio.get_running_loop().create_future()
        self.waiters.append((delay, future))
        await future

    @property
    def delays(self) -> List[float]:
        return [delay for delay, future in self.waiters if not future.done()]

    def release_all(self) -> None:
        for _, future in self.waiters:
            if not future.done():
                future.set_result(None)
        self.waiters.clear()


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    """A fresh SQLite file database per test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(db_engine) -> async_sessionmaker[AsyncSession]:
    return build_session_maker(db_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker):
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def broken_session_maker(tmp_path) -> async_sessionmaker[AsyncSession]:
    """Session factory whose every connection attempt fails."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'nowhere.db'}")
    return build_session_maker(engine)


@pytest.fixture
def jwt_manager() -> JWTManager:
    return JWTManager()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime.now(timezone.utc))


@pytest.fixture
def sleeper() -> ManualSleep:
    return ManualSleep()


@pytest.fixture
def create_user(session_maker):
    """Factory: register a user (optionally admin) and return it."""

    async def _create(username: str, admin: bool = False) -> User:
        async with transaction(session_maker) as session:
            service = IdentityService(session)
            user = await service.register_user(
                username=username,
                email=f"{username}@example.com",
                password="Password123",
            )
            if admin:
                await service.grant_role(user.id, RoleName.ADMIN)
        return user

    return _create


@pytest.fixture
def open_session(session_maker, jwt_manager):
    """Factory: issue a token for a user and persist its session row."""

    async def _open(user: User) -> str:
        token, expires_at = jwt_manager.create_access_token(
            user_id=user.id,
            username=user.username,
            roles=sorted(user.role_names),
        )
        async with transaction(session_maker) as session:
            await SessionStore(session).create(user.id, token, expires_at)
        return token

    return _open
