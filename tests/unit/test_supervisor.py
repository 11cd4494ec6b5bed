"""
Tests for connection admission, conflict eviction and event routing.

Uses the SQLite-backed stores from conftest and an in-memory transport.
"""

import asyncio
from datetime import timedelta

import pytest

from chatforum.config import get_settings
from chatforum.database import transaction
from chatforum.kernel.identity.session_store import SessionStore
from chatforum.kernel.models.punishment import PunishmentType
from chatforum.kernel.moderation.punishment_store import PunishmentStore
from chatforum.realtime import events
from chatforum.realtime.presence import PresenceRegistry, RegisterResult
from chatforum.realtime.profanity import ProfanityFilter
from chatforum.realtime.supervisor import ConnectionState, ConnectionSupervisor
from chatforum.realtime.transport import POLICY_VIOLATION


class AlwaysTakenRegistry(PresenceRegistry):
    """Registry where some other connection always wins the claim first."""

    def __init__(self) -> None:
        super().__init__()
        self.attempts = 0

    def register(self, user_id, display_name, handle, epoch=None) -> RegisterResult:
        self.attempts += 1
        return RegisterResult.CONFLICT


@pytest.fixture
def registry() -> PresenceRegistry:
    return PresenceRegistry()


@pytest.fixture
def supervisor(registry, transport, session_maker, jwt_manager, clock) -> ConnectionSupervisor:
    sup = ConnectionSupervisor(
        registry=registry,
        transport=transport,
        session_maker=session_maker,
        credential_validator=jwt_manager,
        message_filter=ProfanityFilter(["*darn*"]),
        settings=get_settings(),
        clock=clock,
    )
    # A closed socket's receive loop ends shortly after close()
    transport.on_close = sup.on_disconnect
    return sup


class TestAdmission:

    @pytest.mark.asyncio
    async def test_valid_credential_becomes_active(self, supervisor, registry, transport, create_user, open_session):
        alice = await create_user("alice")
        token = await open_session(alice)
        handle = transport.connect()

        assert await supervisor.on_connect(handle, token) is True

        assert registry.lookup_handle(alice.id) is handle
        assert supervisor.context_for(handle).state is ConnectionState.ACTIVE
        assert transport.last_broadcast(events.CHAT_UPDATE_USERS) == ["alice"]

    @pytest.mark.asyncio
    async def test_missing_credential_closed_without_state(self, supervisor, registry, transport):
        handle = transport.connect()

        assert await supervisor.on_connect(handle, None) is False

        assert transport.closed == [(handle, POLICY_VIOLATION)]
        assert supervisor.context_for(handle) is None
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_bad_signature_rejected_silently(self, supervisor, registry, transport):
        handle = transport.connect()

        assert await supervisor.on_connect(handle, "garbage.token.value") is False

        assert transport.sent == []
        assert not handle.open
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_token_without_session_row_rejected(self, supervisor, registry, transport, create_user, jwt_manager):
        alice = await create_user("alice")
        token, _ = jwt_manager.create_access_token(alice.id, "alice", ["user"])
        handle = transport.connect()

        assert await supervisor.on_connect(handle, token) is False
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_revoked_session_rejected(self, supervisor, registry, transport, session_maker, create_user, open_session):
        alice = await create_user("alice")
        token = await open_session(alice)
        async with transaction(session_maker) as session:
            await SessionStore(session).invalidate(token)

        handle = transport.connect()
        assert await supervisor.on_connect(handle, token) is False
        assert registry.lookup_handle(alice.id) is None

    @pytest.mark.asyncio
    async def test_banned_identity_rejected(self, supervisor, registry, transport, session_maker, create_user, open_session, clock):
        alice = await create_user("alice")
        token = await open_session(alice)
        async with transaction(session_maker) as session:
            await PunishmentStore(session).create(
                alice.id, PunishmentType.BAN, "spam", clock() + timedelta(hours=1)
            )

        handle = transport.connect()
        assert await supervisor.on_connect(handle, token) is False
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_store_failure_fails_closed(self, supervisor, registry, transport, create_user, open_session, broken_session_maker):
        alice = await create_user("alice")
        token = await open_session(alice)
        supervisor.session_maker = broken_session_maker

        handle = transport.connect()
        assert await supervisor.on_connect(handle, token) is False
        assert len(registry) == 0
        assert not handle.open


class TestConflictEviction:

    @pytest.mark.asyncio
    async def test_second_login_evicts_first(self, supervisor, registry, transport, create_user, open_session):
        alice = await create_user("alice")
        old = transport.connect()
        new = transport.connect()
        assert await supervisor.on_connect(old, await open_session(alice))

        assert await supervisor.on_connect(new, await open_session(alice)) is True

        assert transport.events_for(old) == [events.FORCED_LOGOUT]
        assert not old.open
        assert new.open
        assert registry.lookup_handle(alice.id) is new
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_eviction_without_disconnect_ack_still_admits(self, supervisor, registry, transport, create_user, open_session):
        alice = await create_user("alice")
        transport.on_close = None  # old socket never reports its disconnect
        old = transport.connect()
        new = transport.connect()
        await supervisor.on_connect(old, await open_session(alice))

        assert await supervisor.on_connect(new, await open_session(alice)) is True
        assert registry.lookup_handle(alice.id) is new

    @pytest.mark.asyncio
    async def test_stale_entry_dropped_without_forced_logout(self, supervisor, registry, transport, create_user, open_session):
        alice = await create_user("alice")
        stale = transport.connect()
        registry.register(alice.id, "alice", stale)
        stale.open = False

        new = transport.connect()
        assert await supervisor.on_connect(new, await open_session(alice)) is True

        assert transport.events_for(stale) == []
        assert registry.lookup_handle(alice.id) is new

    @pytest.mark.asyncio
    async def test_concurrent_logins_leave_one_entry(self, supervisor, registry, transport, create_user, open_session):
        alice = await create_user("alice")
        first = transport.connect()
        await supervisor.on_connect(first, await open_session(alice))

        second, third = transport.connect(), transport.connect()
        tokens = [await open_session(alice), await open_session(alice)]
        await asyncio.gather(
            supervisor.on_connect(second, tokens[0]),
            supervisor.on_connect(third, tokens[1]),
        )
        # Let scheduled disconnects run
        await asyncio.sleep(0.05)

        assert len(registry) == 1
        owner = registry.lookup_handle(alice.id)
        assert owner in (second, third)
        assert owner.open
        assert sum(1 for h in (first, second, third) if h.open) == 1

    @pytest.mark.asyncio
    async def test_conflict_that_never_clears_closes_new_connection(self, transport, session_maker, jwt_manager, clock, create_user, open_session):
        registry = AlwaysTakenRegistry()
        supervisor = ConnectionSupervisor(
            registry=registry,
            transport=transport,
            session_maker=session_maker,
            credential_validator=jwt_manager,
            settings=get_settings(),
            clock=clock,
        )
        alice = await create_user("alice")
        handle = transport.connect()

        assert await supervisor.on_connect(handle, await open_session(alice)) is False

        assert registry.attempts == supervisor.max_register_attempts == 3
        assert transport.closed == [(handle, POLICY_VIOLATION)]
        assert supervisor.context_for(handle) is None
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_abandoned_connection_not_registered(self, supervisor, registry, transport, create_user, open_session):
        alice = await create_user("alice")
        token = await open_session(alice)
        handle = transport.connect()
        handle.open = False  # client went away before admission finished

        assert await supervisor.on_connect(handle, token) is False
        assert len(registry) == 0


class TestActiveEvents:

    @pytest.mark.asyncio
    async def test_typing_goes_to_everyone_else(self, supervisor, transport, create_user, open_session):
        alice = await create_user("alice")
        handle = transport.connect()
        await supervisor.on_connect(handle, await open_session(alice))

        await supervisor.on_message(handle, events.TYPING, {"isTyping": True})

        event, data, exclude = transport.broadcasts[-1]
        assert event == events.TYPING
        assert data == {"userId": alice.id, "displayName": "alice", "isTyping": True}
        assert exclude is handle

    @pytest.mark.asyncio
    async def test_message_is_censored_and_broadcast(self, supervisor, transport, create_user, open_session):
        alice = await create_user("alice")
        handle = transport.connect()
        await supervisor.on_connect(handle, await open_session(alice))

        await supervisor.on_message(handle, events.MESSAGE, {"text": "darn it"})

        data = transport.last_broadcast(events.MESSAGE)
        assert data["text"] == "**** it"
        assert data["displayName"] == "alice"
        assert data["groupId"] is None

    @pytest.mark.asyncio
    async def test_group_message_goes_to_group(self, supervisor, transport, create_user, open_session):
        alice = await create_user("alice")
        handle = transport.connect()
        await supervisor.on_connect(handle, await open_session(alice))

        await supervisor.on_message(handle, events.JOIN_GROUP, {"groupId": "lobby"})
        await supervisor.on_message(handle, events.MESSAGE, {"text": "hello", "groupId": "lobby"})

        assert handle in transport.groups["lobby"]
        group_id, event, data = transport.group_broadcasts[-1]
        assert (group_id, event, data["text"]) == ("lobby", events.MESSAGE, "hello")
        assert transport.last_broadcast(events.MESSAGE) is None

    @pytest.mark.asyncio
    async def test_muted_sender_is_dropped_and_told(self, supervisor, transport, session_maker, create_user, open_session):
        alice = await create_user("alice")
        handle = transport.connect()
        await supervisor.on_connect(handle, await open_session(alice))
        async with transaction(session_maker) as session:
            await PunishmentStore(session).create(alice.id, PunishmentType.MUTE, "flood", None)

        await supervisor.on_message(handle, events.MESSAGE, {"text": "hello"})

        assert transport.last_broadcast(events.MESSAGE) is None
        notice = transport.payloads_for(handle, events.USER_MUTED)[-1]
        assert notice == {"userId": alice.id, "reason": "flood", "expiresAt": None}

    @pytest.mark.asyncio
    async def test_entered_rebroadcasts_presence_and_mute(self, supervisor, transport, session_maker, create_user, open_session):
        alice = await create_user("alice")
        handle = transport.connect()
        await supervisor.on_connect(handle, await open_session(alice))
        async with transaction(session_maker) as session:
            await PunishmentStore(session).create(alice.id, PunishmentType.MUTE, None, None)
        transport.broadcasts.clear()

        await supervisor.on_message(handle, events.ENTERED, {})

        assert transport.broadcast_events() == [events.CHAT_UPDATE_USERS]
        assert transport.events_for(handle) == [events.USER_MUTED]

    @pytest.mark.asyncio
    async def test_mute_check_failure_fails_open(self, supervisor, transport, create_user, open_session, broken_session_maker):
        alice = await create_user("alice")
        handle = transport.connect()
        await supervisor.on_connect(handle, await open_session(alice))
        supervisor.session_maker = broken_session_maker

        await supervisor.on_message(handle, events.MESSAGE, {"text": "still here"})

        assert transport.last_broadcast(events.MESSAGE)["text"] == "still here"

    @pytest.mark.asyncio
    async def test_invalid_payload_dropped(self, supervisor, transport, create_user, open_session):
        alice = await create_user("alice")
        handle = transport.connect()
        await supervisor.on_connect(handle, await open_session(alice))
        transport.broadcasts.clear()

        await supervisor.on_message(handle, events.MESSAGE, {"body": "wrong key"})

        assert transport.broadcasts == []

    @pytest.mark.asyncio
    async def test_events_from_unadmitted_connection_ignored(self, supervisor, transport):
        handle = transport.connect()
        await supervisor.on_message(handle, events.MESSAGE, {"text": "hi"})
        assert transport.broadcasts == []


class TestDisconnect:

    @pytest.mark.asyncio
    async def test_disconnect_unregisters_and_broadcasts(self, supervisor, registry, transport, create_user, open_session):
        alice = await create_user("alice")
        handle = transport.connect()
        await supervisor.on_connect(handle, await open_session(alice))

        await supervisor.on_disconnect(handle)

        assert len(registry) == 0
        assert transport.last_broadcast(events.CHAT_UPDATE_USERS) == []

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, supervisor, registry, transport, create_user, open_session):
        alice = await create_user("alice")
        handle = transport.connect()
        await supervisor.on_connect(handle, await open_session(alice))

        await supervisor.on_disconnect(handle)
        count = len(transport.broadcasts)
        await supervisor.on_disconnect(handle)

        assert len(transport.broadcasts) == count

    @pytest.mark.asyncio
    async def test_late_disconnect_leaves_newer_owner(self, supervisor, registry, transport, create_user, open_session):
        alice = await create_user("alice")
        transport.on_close = None
        old, new = transport.connect(), transport.connect()
        await supervisor.on_connect(old, await open_session(alice))
        await supervisor.on_connect(new, await open_session(alice))

        await supervisor.on_disconnect(old)

        assert registry.lookup_handle(alice.id) is new

    @pytest.mark.asyncio
    async def test_session_token_for_live_connection(self, supervisor, transport, create_user, open_session):
        alice = await create_user("alice")
        token = await open_session(alice)
        handle = transport.connect()
        await supervisor.on_connect(handle, token)

        assert supervisor.session_token_for(alice.id) == token
        assert supervisor.session_token_for(alice.id + 1) is None
