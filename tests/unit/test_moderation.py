"""
Tests for the moderation broker: bans, mutes, revocation, kicks and expiry.
"""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from chatforum.config import get_settings
from chatforum.database import transaction
from chatforum.kernel.errors import PersistentStoreFailure
from chatforum.kernel.events.event_store import EventStore
from chatforum.kernel.identity.session_store import SessionStore
from chatforum.kernel.models.event_log import EventType
from chatforum.kernel.models.punishment import PunishmentType
from chatforum.kernel.moderation.punishment_store import PunishmentStore
from chatforum.realtime import events
from chatforum.realtime.expiry import PunishmentExpiryScheduler
from chatforum.realtime.moderation import ModerationBroker
from chatforum.realtime.presence import PresenceRegistry
from chatforum.realtime.supervisor import ConnectionSupervisor
from chatforum.realtime.transport import POLICY_VIOLATION


@pytest.fixture
def registry() -> PresenceRegistry:
    return PresenceRegistry()


@pytest_asyncio.fixture
async def broker(registry, transport, session_maker, clock, sleeper):
    scheduler = PunishmentExpiryScheduler(clock=clock, sleep=sleeper)
    yield ModerationBroker(registry, transport, session_maker, scheduler=scheduler, clock=clock)
    await scheduler.shutdown()


@pytest.fixture
def supervisor(registry, transport, session_maker, jwt_manager, clock) -> ConnectionSupervisor:
    return ConnectionSupervisor(
        registry=registry,
        transport=transport,
        session_maker=session_maker,
        credential_validator=jwt_manager,
        settings=get_settings(),
        clock=clock,
    )


async def _until(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop (and the SQLite worker thread) until predicate holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition not reached"
        await asyncio.sleep(0.005)


async def _active(session_maker, user_id, punishment_type, clock):
    async with transaction(session_maker) as session:
        return await PunishmentStore(session).find(user_id, punishment_type, now=clock())


class TestBan:

    @pytest.mark.asyncio
    async def test_timed_ban_of_online_user(self, broker, registry, transport, session_maker, create_user, open_session, clock, sleeper):
        bob = await create_user("bob")
        token = await open_session(bob)
        handle = transport.connect()
        registry.register(bob.id, "bob", handle)

        record = await broker.apply_ban(bob.id, "spam", duration_minutes=10, issuer_id=None)

        assert record.expires_at == clock() + timedelta(minutes=10)
        # Target told first, then disconnected and forgotten
        assert transport.events_for(handle) == [events.USER_BANNED]
        assert transport.closed == [(handle, POLICY_VIOLATION)]
        assert registry.lookup_handle(bob.id) is None
        notice = transport.last_broadcast(events.NOTIFY_USER_BANNED)
        assert notice["userId"] == bob.id and notice["reason"] == "spam"
        # Every session revoked
        async with transaction(session_maker) as session:
            assert await SessionStore(session).find_active_session(token) is None

        await asyncio.sleep(0)
        assert sleeper.delays == [pytest.approx(600.0)]

        clock.advance(minutes=10, seconds=1)
        sleeper.release_all()
        await broker.scheduler.wait_idle()

        assert await _active(session_maker, bob.id, PunishmentType.BAN, clock) is None
        assert transport.last_broadcast(events.USER_UNBANNED) == {"userId": bob.id}

    @pytest.mark.asyncio
    async def test_ban_of_offline_user(self, broker, transport, session_maker, create_user, clock):
        bob = await create_user("bob")

        await broker.apply_ban(bob.id, None)

        assert transport.sent == []
        assert transport.broadcast_events() == [events.NOTIFY_USER_BANNED]
        ban = await _active(session_maker, bob.id, PunishmentType.BAN, clock)
        assert ban is not None and ban.expires_at is None
        assert broker.scheduler.pending() == set()

    @pytest.mark.asyncio
    async def test_reapply_replaces_existing(self, broker, session_maker, create_user, clock):
        bob = await create_user("bob")

        await broker.apply_ban(bob.id, "first", duration_minutes=5)
        second = await broker.apply_ban(bob.id, "second", duration_minutes=60)

        async with transaction(session_maker) as session:
            store = PunishmentStore(session)
            active = await store.find(bob.id, PunishmentType.BAN, now=clock())
            timed = await store.list_timed()
        assert active.id == second.id
        assert active.reason == "second"
        assert len(timed) == 1
        assert broker.scheduler.pending() == {(bob.id, PunishmentType.BAN)}

    @pytest.mark.asyncio
    async def test_store_failure_changes_nothing_live(self, registry, transport, broken_session_maker, clock):
        broker = ModerationBroker(registry, transport, broken_session_maker, clock=clock)
        handle = transport.connect()
        registry.register(9, "bob", handle)

        with pytest.raises(PersistentStoreFailure):
            await broker.apply_ban(9, "spam", duration_minutes=10)

        assert registry.lookup_handle(9) is handle
        assert handle.open
        assert transport.sent == [] and transport.broadcasts == []
        assert broker.scheduler.pending() == set()

    @pytest.mark.asyncio
    async def test_ban_is_audited(self, broker, session_maker, create_user):
        bob = await create_user("bob")
        admin = await create_user("root", admin=True)

        await broker.apply_ban(bob.id, "spam", issuer_id=admin.id)

        async with transaction(session_maker) as session:
            history = await EventStore(session).get_entity_history("user", bob.id, [EventType.USER_BANNED])
        assert len(history) == 1
        assert history[0].user_id == admin.id
        assert history[0].payload["reason"] == "spam"


class TestMute:

    @pytest.mark.asyncio
    async def test_permanent_mute_of_online_user(self, broker, registry, transport, session_maker, create_user, clock):
        carol = await create_user("carol")
        handle = transport.connect()
        registry.register(carol.id, "carol", handle)

        record = await broker.apply_mute(carol.id, "flood")

        assert record.is_permanent
        assert transport.payloads_for(handle, events.USER_MUTED) == [
            {"userId": carol.id, "reason": "flood", "expiresAt": None}
        ]
        assert transport.last_broadcast(events.NOTIFY_USER_MUTED)["userId"] == carol.id
        # Muted users stay connected
        assert handle.open
        assert registry.lookup_handle(carol.id) is handle
        assert broker.scheduler.pending() == set()
        assert await _active(session_maker, carol.id, PunishmentType.MUTE, clock) is not None

    @pytest.mark.asyncio
    async def test_timed_mute_expires(self, broker, transport, session_maker, create_user, clock, sleeper):
        carol = await create_user("carol")

        await broker.apply_mute(carol.id, None, duration_minutes=1)
        await asyncio.sleep(0)

        clock.advance(minutes=2)
        sleeper.release_all()
        await broker.scheduler.wait_idle()

        assert transport.last_broadcast(events.USER_UNMUTED) == {"userId": carol.id}
        assert await _active(session_maker, carol.id, PunishmentType.MUTE, clock) is None


class TestRevoke:

    @pytest.mark.asyncio
    async def test_revoke_is_idempotent(self, broker, transport, create_user):
        carol = await create_user("carol")
        await broker.apply_mute(carol.id, None, duration_minutes=30)

        assert await broker.revoke(carol.id, PunishmentType.MUTE) == 1
        assert await broker.revoke(carol.id, PunishmentType.MUTE) == 0

        assert transport.broadcast_events().count(events.USER_UNMUTED) == 2
        assert broker.scheduler.pending() == set()

    @pytest.mark.asyncio
    async def test_unban_broadcasts_lift(self, broker, transport, create_user):
        bob = await create_user("bob")
        await broker.apply_ban(bob.id, "spam")

        await broker.revoke(bob.id, PunishmentType.BAN)

        assert transport.last_broadcast(events.USER_UNBANNED) == {"userId": bob.id}
        assert transport.closed == []


class TestKick:

    @pytest.mark.asyncio
    async def test_kick_online_user(self, broker, registry, transport, session_maker, create_user, open_session):
        dave = await create_user("dave")
        token = await open_session(dave)
        other = await open_session(dave)
        handle = transport.connect()
        registry.register(dave.id, "dave", handle)

        result = await broker.kick(dave.id, session_token=token)

        assert result.session_revoked and result.was_online
        assert transport.events_for(handle) == [events.USER_KICKED]
        assert not handle.open
        assert registry.lookup_handle(dave.id) is None
        async with transaction(session_maker) as session:
            store = SessionStore(session)
            assert await store.find_active_session(token) is None
            # Only the given session is revoked
            assert await store.find_active_session(other) is not None

    @pytest.mark.asyncio
    async def test_kick_revokes_admin_token_and_live_token(self, broker, registry, transport, session_maker, create_user, open_session):
        admin = await create_user("root", admin=True)
        dave = await create_user("dave")
        admin_token = await open_session(admin)
        live_token = await open_session(dave)
        registry.register(dave.id, "dave", transport.connect())

        result = await broker.kick(
            dave.id,
            session_token=admin_token,
            issuer_id=admin.id,
            live_session_token=live_token,
        )

        assert result.session_revoked and result.live_session_revoked and result.was_online
        async with transaction(session_maker) as session:
            store = SessionStore(session)
            assert await store.find_active_session(admin_token) is None
            assert await store.find_active_session(live_token) is None

    @pytest.mark.asyncio
    async def test_kick_offline_user_without_session(self, broker, transport, create_user):
        dave = await create_user("dave")

        first = await broker.kick(dave.id, session_token=None)
        second = await broker.kick(dave.id, session_token=None)

        assert not first.session_revoked and not first.was_online
        assert first == second
        assert transport.sent == [] and transport.closed == []


class TestExpire:

    @pytest.mark.asyncio
    async def test_expire_skips_punishment_not_yet_due(self, broker, transport, session_maker, create_user, clock):
        bob = await create_user("bob")
        await broker.apply_ban(bob.id, None, duration_minutes=30)

        assert await broker.expire(bob.id, PunishmentType.BAN) is False

        assert await _active(session_maker, bob.id, PunishmentType.BAN, clock) is not None
        assert events.USER_UNBANNED not in transport.broadcast_events()
        # Timer still armed for the real expiry
        assert broker.scheduler.pending() == {(bob.id, PunishmentType.BAN)}

    @pytest.mark.asyncio
    async def test_expire_after_revoke_is_noop(self, broker, transport, create_user, clock):
        bob = await create_user("bob")
        await broker.apply_mute(bob.id, None, duration_minutes=1)
        await broker.revoke(bob.id, PunishmentType.MUTE)
        transport.broadcasts.clear()

        clock.advance(minutes=5)
        assert await broker.expire(bob.id, PunishmentType.MUTE) is False
        assert transport.broadcasts == []

    @pytest.mark.asyncio
    async def test_early_wakeup_rearms_timer(self, broker, transport, session_maker, create_user, clock, sleeper):
        bob = await create_user("bob")
        await broker.apply_ban(bob.id, "spam", duration_minutes=10)
        await asyncio.sleep(0)

        # Timer fires a millisecond before the stored expiry
        clock.advance(minutes=10, milliseconds=-1)
        sleeper.release_all()
        await _until(lambda: sleeper.delays)

        assert broker.scheduler.pending() == {(bob.id, PunishmentType.BAN)}
        assert sleeper.delays == [pytest.approx(0.001, abs=1e-3)]
        assert events.USER_UNBANNED not in transport.broadcast_events()

        clock.advance(minutes=5)
        sleeper.release_all()
        await broker.scheduler.wait_idle()

        assert await _active(session_maker, bob.id, PunishmentType.BAN, clock) is None
        assert transport.last_broadcast(events.USER_UNBANNED) == {"userId": bob.id}


class TestActionDuringAdmission:
    """Ban or kick landing while a second login waits out the eviction grace."""

    async def _second_login_waiting(self, supervisor, transport, create_user, open_session):
        alice = await create_user("alice")
        first = transport.connect()
        assert await supervisor.on_connect(first, await open_session(alice))

        # Old socket never acknowledges; the new one sits in the grace wait
        supervisor.grace_seconds = 5.0
        second = transport.connect()
        token = await open_session(alice)
        admission = asyncio.create_task(supervisor.on_connect(second, token))
        await _until(lambda: transport.events_for(first) == [events.FORCED_LOGOUT])
        return alice, second, token, admission

    @pytest.mark.asyncio
    async def test_ban_refuses_pending_admission(self, broker, supervisor, registry, transport, create_user, open_session):
        alice, second, _, admission = await self._second_login_waiting(
            supervisor, transport, create_user, open_session
        )

        await broker.apply_ban(alice.id, "spam")

        assert await admission is False
        assert registry.lookup_handle(alice.id) is None
        assert not second.open
        assert (second, POLICY_VIOLATION) in transport.closed

    @pytest.mark.asyncio
    async def test_kick_refuses_pending_admission(self, broker, supervisor, registry, transport, create_user, open_session):
        alice, second, token, admission = await self._second_login_waiting(
            supervisor, transport, create_user, open_session
        )

        result = await broker.kick(alice.id)

        assert result.was_online
        assert await admission is False
        assert registry.lookup_handle(alice.id) is None
        assert not second.open
        # Kick is not a ban: a later login with a live session gets in
        again = transport.connect()
        assert await supervisor.on_connect(again, token) is True
        assert registry.lookup_handle(alice.id) is again
