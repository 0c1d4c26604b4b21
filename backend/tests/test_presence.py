"""Tests for two-party room presence."""
import asyncio
from unittest.mock import AsyncMock, patch

import fakeredis
import pytest

from pairlink.errors import EventValidationError, RoomFullError, StoreUnavailable
from pairlink.presence.manager import room_key
from pairlink.presence.schemas import Occupant
from pairlink.services import build_services
from pairlink.signaling.connection import Connection, ConnectionState
from pairlink.turn.credentials import CONNECTIONS_KEY

from conftest import FakeWebSocket, make_settings


@pytest.fixture
def presence(services):
    return services.presence


async def joined(presence, connect, user_id, room_id="room-1", nickname=""):
    conn = connect(user_id)
    await presence.join(conn, room_id, user_id, nickname or user_id.title())
    return conn


class TestJoin:
    """Join, capacity and peer discovery."""

    @pytest.mark.asyncio
    async def test_first_join_sees_nobody(self, presence, connect, store):
        alice = connect("alice")
        peers = await presence.join(alice, "room-1", "alice", "Alice")
        assert peers == []
        assert alice.state == ConnectionState.ACTIVE
        assert alice.room_id == "room-1"
        assert await store.hlen(room_key("room-1")) == 1

    @pytest.mark.asyncio
    async def test_second_join_sees_first_and_notifies_it(self, presence, connect):
        alice = await joined(presence, connect, "alice")
        bob = connect("bob")
        peers = await presence.join(bob, "room-1", "bob", "Bob")

        assert [(p.id, p.nickname) for p in peers] == [("alice", "Alice")]
        assert alice.websocket.of_type("user-joined") == [
            {"type": "user-joined", "id": "bob", "nickname": "Bob"}
        ]
        assert bob.websocket.of_type("user-joined") == []

    @pytest.mark.asyncio
    async def test_third_join_is_rejected_without_mutation(self, presence, connect, store):
        alice = await joined(presence, connect, "alice")
        bob = await joined(presence, connect, "bob")
        before = await store.hgetall(room_key("room-1"))

        carol = connect("carol")
        with pytest.raises(RoomFullError):
            await presence.join(carol, "room-1", "carol", "Carol")

        assert await store.hgetall(room_key("room-1")) == before
        assert carol.state == ConnectionState.CONNECTED
        assert carol.room_id is None
        assert alice.websocket.of_type("user-joined")[-1]["id"] == "bob"
        assert bob.websocket.of_type("user-joined") == []

    @pytest.mark.asyncio
    async def test_rejoin_overwrites_own_stale_record_in_full_room(self, presence, connect, store):
        await joined(presence, connect, "alice")
        old_bob = await joined(presence, connect, "bob")

        new_bob = connect("bob")
        peers = await presence.join(new_bob, "room-1", "bob", "Bob")

        assert [p.id for p in peers] == ["alice"]
        occupant = await presence.get_occupant("room-1", "bob")
        assert occupant.connectionId == new_bob.id
        assert await store.hlen(room_key("room-1")) == 2
        assert old_bob.id != new_bob.id

    @pytest.mark.asyncio
    async def test_identity_mismatch(self, presence, connect):
        conn = connect("alice")
        with pytest.raises(EventValidationError) as exc:
            await presence.join(conn, "room-1", "mallory", "")
        assert exc.value.code == "IDENTITY_MISMATCH"

    @pytest.mark.asyncio
    async def test_already_in_another_room(self, presence, connect):
        alice = await joined(presence, connect, "alice", room_id="room-1")
        with pytest.raises(EventValidationError) as exc:
            await presence.join(alice, "room-2", "alice", "Alice")
        assert exc.value.code == "ALREADY_IN_ROOM"

    @pytest.mark.asyncio
    async def test_store_failure_after_write_rolls_back(self, presence, connect, store):
        alice = connect("alice")
        with patch.object(presence, "get_occupants", AsyncMock(side_effect=StoreUnavailable())):
            with pytest.raises(StoreUnavailable):
                await presence.join(alice, "room-1", "alice", "Alice")

        assert not await store.exists(room_key("room-1"))
        assert alice.state == ConnectionState.CONNECTED
        assert alice.room_id is None

    @pytest.mark.asyncio
    async def test_join_leave_join(self, presence, connect):
        alice = await joined(presence, connect, "alice")
        await presence.leave(alice)
        again = connect("alice")
        assert await presence.join(again, "room-1", "alice", "Alice") == []


class TestRelay:
    """Targeted and broadcast message delivery."""

    @pytest.mark.asyncio
    async def test_signal_reaches_only_the_target(self, presence, connect):
        alice = await joined(presence, connect, "alice")
        bob = await joined(presence, connect, "bob")

        sent = await presence.relay(alice, "signal", "bob", {"sdp": "offer"})

        assert sent == 1
        assert bob.websocket.of_type("signal") == [
            {"type": "signal", "from": "alice", "data": {"sdp": "offer"}}
        ]
        assert alice.websocket.of_type("signal") == []

    @pytest.mark.asyncio
    async def test_file_chunk_is_targeted(self, presence, connect):
        alice = await joined(presence, connect, "alice")
        bob = await joined(presence, connect, "bob")
        await presence.relay(alice, "file-chunk", "bob", {"seq": 1})
        assert bob.websocket.of_type("file-chunk")[0]["data"] == {"seq": 1}

    @pytest.mark.asyncio
    async def test_unknown_target_is_dropped(self, presence, connect):
        alice = await joined(presence, connect, "alice")
        bob = await joined(presence, connect, "bob")
        assert await presence.relay(alice, "signal", "nobody", {}) == 0
        assert bob.websocket.of_type("signal") == []

    @pytest.mark.asyncio
    async def test_media_state_is_broadcast_as_peer_state(self, presence, connect):
        alice = await joined(presence, connect, "alice")
        bob = await joined(presence, connect, "bob")
        await presence.relay(alice, "media-state-update", None, {"audio": False})
        assert bob.websocket.of_type("peer-state-updated") == [
            {"type": "peer-state-updated", "from": "alice", "data": {"audio": False}}
        ]
        assert alice.websocket.of_type("peer-state-updated") == []

    @pytest.mark.asyncio
    async def test_relay_outside_room_is_dropped(self, presence, connect):
        loner = connect("loner")
        assert await presence.relay(loner, "chat", None, "hi") == 0


class TestLeave:
    """Cleanup ordering and idempotence."""

    @pytest.mark.asyncio
    async def test_leave_notifies_peer_and_removes_record(self, presence, connect, store):
        alice = await joined(presence, connect, "alice")
        bob = await joined(presence, connect, "bob")

        assert await presence.leave(bob)

        assert alice.websocket.of_type("user-left") == [
            {"type": "user-left", "userId": "bob", "reason": "disconnect"}
        ]
        assert not await store.hexists(room_key("room-1"), "bob")
        assert bob.state == ConnectionState.GONE

    @pytest.mark.asyncio
    async def test_last_leave_removes_room(self, presence, connect, store):
        alice = await joined(presence, connect, "alice")
        await presence.leave(alice)
        assert not await store.exists(room_key("room-1"))
        assert await presence.list_room_ids() == []

    @pytest.mark.asyncio
    async def test_duplicate_leave_is_a_no_op(self, presence, connect):
        alice = await joined(presence, connect, "alice")
        bob = await joined(presence, connect, "bob")

        results = await asyncio.gather(presence.leave(bob), presence.leave(bob))

        assert sorted(results) == [False, True]
        assert len(alice.websocket.of_type("user-left")) == 1

    @pytest.mark.asyncio
    async def test_leave_racing_eviction_notifies_once(self, presence, connect):
        alice = await joined(presence, connect, "alice")
        bob = await joined(presence, connect, "bob")

        await asyncio.gather(
            presence.leave(bob),
            presence.force_evict("room-1", "bob", reason="heartbeat-timeout"),
        )

        assert len(alice.websocket.of_type("user-left")) == 1

    @pytest.mark.asyncio
    async def test_stale_leave_keeps_newer_record(self, presence, connect):
        await joined(presence, connect, "alice")
        old_bob = await joined(presence, connect, "bob")
        new_bob = connect("bob")
        await presence.join(new_bob, "room-1", "bob", "Bob")

        await presence.leave(old_bob)

        occupant = await presence.get_occupant("room-1", "bob")
        assert occupant is not None
        assert occupant.connectionId == new_bob.id

    @pytest.mark.asyncio
    async def test_store_failure_retries_once_then_abandons(self, presence, connect):
        alice = await joined(presence, connect, "alice")
        failing = AsyncMock(side_effect=StoreUnavailable())
        with patch.object(presence, "_remove_occupant_once", failing):
            assert await presence.leave(alice)
        assert failing.await_count == 2
        assert alice.state == ConnectionState.GONE


class TestHeartbeat:

    @pytest.mark.asyncio
    async def test_heartbeat_updates_record(self, presence, connect, clock):
        alice = await joined(presence, connect, "alice")
        clock.advance(10)
        assert await presence.heartbeat(alice)
        occupant = await presence.get_occupant("room-1", "alice")
        assert occupant.lastHeartbeat == clock.now

    @pytest.mark.asyncio
    async def test_heartbeat_after_leave_is_ignored(self, presence, connect):
        alice = await joined(presence, connect, "alice")
        await presence.leave(alice)
        assert not await presence.heartbeat(alice)

    @pytest.mark.asyncio
    async def test_heartbeat_racing_eviction_does_not_restore_record(self, presence, connect, fake_server):
        """An eviction landing between the read and the write wins."""
        alice = await joined(presence, connect, "alice")
        other_instance = fakeredis.FakeRedis(server=fake_server, decode_responses=True)

        def evicted_while_reading(user_id, raw):
            other_instance.hdel(room_key("room-1"), user_id)
            return Occupant.model_validate_json(raw)

        with patch("pairlink.presence.manager._decode", evicted_while_reading):
            assert not await presence.heartbeat(alice)

        assert await presence.get_occupant("room-1", "alice") is None
        assert await presence.list_room_ids() == []


class TestForceEvict:

    @pytest.mark.asyncio
    async def test_evicted_connection_is_told_and_closed(self, presence, connect):
        alice = await joined(presence, connect, "alice")
        bob = await joined(presence, connect, "bob")

        assert await presence.force_evict("room-1", "bob", reason="force-leave")

        assert bob.websocket.of_type("evicted") == [
            {"type": "evicted", "roomId": "room-1", "reason": "force-leave"}
        ]
        assert bob.websocket.closed == (4000, "force-leave")
        assert bob.state == ConnectionState.GONE
        assert alice.websocket.of_type("user-left")[0]["reason"] == "force-leave"

    @pytest.mark.asyncio
    async def test_evict_absent_user(self, presence):
        assert not await presence.force_evict("room-1", "ghost")


class TestLeases:
    """Relay connection-counter increments follow the occupant."""

    @pytest.fixture
    def limited_services(self, store, clock):
        settings = make_settings(turn={"enable_connection_limit": True, "max_connections_per_user": 3})
        return build_services(settings, store=store, clock=clock)

    @pytest.mark.asyncio
    async def test_leave_releases_leases(self, limited_services, store):
        presence = limited_services.presence
        alice = Connection(FakeWebSocket(), user_id="alice")
        limited_services.registry.register(alice)
        await presence.join(alice, "room-1", "alice", "Alice")
        await limited_services.issuer.issue("alice", "room-1")
        await presence.add_lease(alice)
        await limited_services.issuer.issue("alice", "room-1")
        await presence.add_lease(alice)

        occupant = await presence.get_occupant("room-1", "alice")
        assert occupant.leases == 2
        assert await store.get(CONNECTIONS_KEY.format(user_id="alice")) == "2"

        await presence.leave(alice)
        assert await store.get(CONNECTIONS_KEY.format(user_id="alice")) == "0"

    @pytest.mark.asyncio
    async def test_eviction_releases_leases(self, limited_services, store):
        presence = limited_services.presence
        bob = Connection(FakeWebSocket(), user_id="bob")
        limited_services.registry.register(bob)
        await presence.join(bob, "room-1", "bob", "Bob")
        await limited_services.issuer.issue("bob", "room-1")
        await presence.add_lease(bob)

        await presence.force_evict("room-1", "bob")
        assert await store.get(CONNECTIONS_KEY.format(user_id="bob")) == "0"

    @pytest.mark.asyncio
    async def test_lease_before_join_released_on_disconnect(self, limited_services, store):
        presence = limited_services.presence
        carol = Connection(FakeWebSocket(), user_id="carol")
        limited_services.registry.register(carol)
        await limited_services.issuer.issue("carol", "default")
        await presence.add_lease(carol)

        await presence.leave(carol)
        assert await store.get(CONNECTIONS_KEY.format(user_id="carol")) == "0"

    @pytest.mark.asyncio
    async def test_lease_not_recorded_when_store_fails(self, limited_services, fake_server):
        presence = limited_services.presence
        alice = Connection(FakeWebSocket(), user_id="alice")
        limited_services.registry.register(alice)
        await presence.join(alice, "room-1", "alice", "Alice")

        fake_server.connected = False
        with pytest.raises(StoreUnavailable):
            await presence.add_lease(alice)
        assert alice.leases == 0

    @pytest.mark.asyncio
    async def test_lease_refused_once_record_is_gone(self, limited_services, store):
        presence = limited_services.presence
        alice = Connection(FakeWebSocket(), user_id="alice")
        limited_services.registry.register(alice)
        await presence.join(alice, "room-1", "alice", "Alice")
        await store.hdel(room_key("room-1"), "alice")

        assert not await presence.add_lease(alice)
        assert alice.leases == 0
        assert not await store.exists(room_key("room-1"))
