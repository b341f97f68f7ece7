"""Tests for the connection lifecycle manager and the message relay.

These drive the components directly with FakeWebSocket sockets, so frames
can be inspected without a running server.
"""
import asyncio
import json
import logging

import pytest

from chatrelay.chat.router import handle_frame
from chatrelay.chat.schemas import ThreadKey
from chatrelay.config import AppConfig
from chatrelay.errors import MalformedEvent, StorageError
from chatrelay.services import build_services

from helpers import FailingStore, FakeWebSocket


async def connect(services, username, room=None):
    ws = FakeWebSocket()
    connection = await services.connections.connect(ws, username)
    if room:
        await services.connections.on_join_room(connection, room)
    return connection, ws


class TestConnectionLifecycle:
    """Tests for connect / join / disconnect."""

    @pytest.mark.asyncio
    async def test_connect_registers_and_announces(self, services):
        """OnConnect registers presence and broadcasts online to everyone."""
        bob, bob_ws = await connect(services, "bob")
        alice, alice_ws = await connect(services, "alice")

        assert alice_ws.accepted
        assert services.presence.get("alice") == alice.id
        assert alice_ws.sent[0]["type"] == "connected"
        assert alice_ws.sent[0]["onlineUsers"] == ["alice", "bob"]
        assert {"type": "presenceChanged", "username": "alice", "status": "online"} in bob_ws.sent
        assert {"type": "presenceChanged", "username": "alice", "status": "online"} in alice_ws.sent

    @pytest.mark.asyncio
    async def test_reconnect_latest_wins(self, services):
        """A second connection for a username replaces the first in presence."""
        first, _ = await connect(services, "alice")
        second, _ = await connect(services, "alice")

        assert first.id != second.id
        assert services.presence.get("alice") == second.id

    @pytest.mark.asyncio
    async def test_connect_registers_presence_once(self, services, caplog):
        """Each connect registers a single time, so a reconnect is logged once."""
        caplog.set_level(logging.INFO, logger="chatrelay.chat.presence")

        await connect(services, "alice")
        assert "reconnected" not in caplog.text

        second, second_ws = await connect(services, "alice")

        reconnects = [r for r in caplog.records if "reconnected" in r.getMessage()]
        assert len(reconnects) == 1
        assert second_ws.sent[0]["onlineUsers"] == ["alice"]
        assert len(services.connections.active_connections) == 2

    @pytest.mark.asyncio
    async def test_stale_disconnect_keeps_newer_session(self, services):
        """Disconnecting the old session neither evicts nor announces offline."""
        watcher, watcher_ws = await connect(services, "watcher")
        first, _ = await connect(services, "alice")
        second, _ = await connect(services, "alice")

        went_offline = await services.connections.on_disconnect(first)

        assert went_offline is False
        assert services.presence.get("alice") == second.id
        assert {"type": "presenceChanged", "username": "alice", "status": "offline"} not in watcher_ws.sent

    @pytest.mark.asyncio
    async def test_disconnect_announces_offline(self, services):
        watcher, watcher_ws = await connect(services, "watcher")
        alice, _ = await connect(services, "alice", room="general")

        went_offline = await services.connections.on_disconnect(alice)

        assert went_offline is True
        assert services.presence.get("alice") is None
        assert services.rooms.members("general") == set()
        assert watcher_ws.sent[-1] == {"type": "presenceChanged", "username": "alice", "status": "offline"}

    @pytest.mark.asyncio
    async def test_anonymous_connection_not_tracked(self, services):
        """A connection without a username is accepted but kept out of presence."""
        watcher, watcher_ws = await connect(services, "watcher")
        anon, anon_ws = await connect(services, None, room="general")

        assert anon_ws.accepted
        assert anon.is_anonymous
        assert services.presence.online_usernames() == ["watcher"]
        assert watcher_ws.frames("presenceChanged") == [
            {"type": "presenceChanged", "username": "watcher", "status": "online"}
        ]
        assert services.rooms.members("general") == {anon.id}
        assert await services.connections.on_disconnect(anon) is False

    @pytest.mark.asyncio
    async def test_join_room_sets_current_room(self, services):
        alice, alice_ws = await connect(services, "alice", room="general")

        assert alice.current_room == "general"
        assert alice_ws.sent[-1] == {"type": "roomJoined", "roomId": "general"}


class TestRoomMessages:
    """Tests for SendRoomMessage."""

    @pytest.mark.asyncio
    async def test_alice_and_bob_both_receive(self, services, store):
        """alice's message in "general" reaches alice and bob and is stored once."""
        alice, alice_ws = await connect(services, "alice", room="general")
        bob, bob_ws = await connect(services, "bob", room="general")

        report = await services.relay.send_room_message("general", "alice", text="hi")

        [to_alice] = alice_ws.frames("roomMessageDelivered")
        [to_bob] = bob_ws.frames("roomMessageDelivered")
        assert to_alice == to_bob
        assert to_alice["text"] == "hi"
        assert to_alice["username"] == "alice"
        assert to_alice["roomId"] == "general"
        assert to_alice["seen"] is False
        assert set(report.delivered_to) == {alice.id, bob.id}

        thread = await store.find_thread_by_room("general")
        assert await store.count_messages(thread.id) == 1

    @pytest.mark.asyncio
    async def test_broadcast_reaches_only_room_members(self, services):
        """Connections in other rooms or in no room receive nothing."""
        alice, alice_ws = await connect(services, "alice", room="general")
        carol, carol_ws = await connect(services, "carol", room="random")
        dave, dave_ws = await connect(services, "dave")

        report = await services.relay.send_room_message("general", "alice", text="hello")

        assert report.delivered_to == [alice.id]
        assert len(alice_ws.frames("roomMessageDelivered")) == 1
        assert carol_ws.frames("roomMessageDelivered") == []
        assert dave_ws.frames("roomMessageDelivered") == []

    @pytest.mark.asyncio
    async def test_storage_failure_blocks_broadcast(self, relay_config):
        """A failed append raises StorageError and no member receives anything."""
        failing = FailingStore()
        services = build_services(relay_config, store=failing)
        alice, alice_ws = await connect(services, "alice", room="general")
        bob, bob_ws = await connect(services, "bob", room="general")

        with pytest.raises(StorageError):
            await services.relay.send_room_message("general", "alice", text="lost")

        assert alice_ws.frames("roomMessageDelivered") == []
        assert bob_ws.frames("roomMessageDelivered") == []
        thread = await failing.find_thread_by_room("general")
        assert await failing.count_messages(thread.id) == 0
        failing.close()

    @pytest.mark.asyncio
    async def test_sequential_sends_keep_order(self, services, store):
        await connect(services, "alice", room="general")
        for text in ("one", "two", "three"):
            await services.relay.send_room_message("general", "alice", text=text)

        thread = await store.find_thread_by_room("general")
        assert [m.text for m in await store.get_messages(thread.id)] == ["one", "two", "three"]

    @pytest.mark.asyncio
    async def test_concurrent_sends_all_stored(self, services, store):
        """M concurrent relay sends grow the thread by exactly M."""
        await connect(services, "alice", room="general")

        await asyncio.gather(*[
            services.relay.send_room_message("general", "alice", text=str(i))
            for i in range(20)
        ])

        thread = await store.find_thread_by_room("general")
        assert await store.count_messages(thread.id) == 20

    @pytest.mark.asyncio
    async def test_duplicate_sends_are_not_deduplicated(self, services, store):
        await services.relay.send_room_message("general", "alice", text="again")
        await services.relay.send_room_message("general", "alice", text="again")

        thread = await store.find_thread_by_room("general")
        assert await store.count_messages(thread.id) == 2

    @pytest.mark.asyncio
    async def test_media_only_message_is_relayed(self, services):
        alice, alice_ws = await connect(services, "alice", room="general")

        await services.relay.send_room_message(
            "general", "alice", video_url="/uploads/video/clip.mp4"
        )

        [frame] = alice_ws.frames("roomMessageDelivered")
        assert frame["text"] == ""
        assert frame["videoUrl"] == "/uploads/video/clip.mp4"
        assert frame["audioUrl"] is None

    @pytest.mark.asyncio
    async def test_dead_socket_does_not_block_others(self, services):
        """A member whose socket fails is skipped; the rest still receive."""
        alice, alice_ws = await connect(services, "alice", room="general")
        bob, bob_ws = await connect(services, "bob", room="general")
        bob_ws.fail_sends = True

        report = await services.relay.send_room_message("general", "alice", text="hi")

        assert report.delivered_to == [alice.id]
        assert len(alice_ws.frames("roomMessageDelivered")) == 1

    @pytest.mark.asyncio
    async def test_missing_room_rejected_before_write(self, services, store):
        with pytest.raises(MalformedEvent):
            await services.relay.send_room_message("", "alice", text="hi")


class TestPrivateMessages:
    """Tests for SendPrivate."""

    @pytest.mark.asyncio
    async def test_online_recipient_receives(self, services):
        alice, alice_ws = await connect(services, "alice")
        bob, bob_ws = await connect(services, "bob")

        report = await services.relay.send_private("alice", "bob", text="hey")

        assert report.delivered is True
        [frame] = bob_ws.frames("privateMessageDelivered")
        assert frame["from"] == "alice"
        assert frame["text"] == "hey"
        assert alice_ws.frames("privateMessageDelivered") == []

    @pytest.mark.asyncio
    async def test_offline_recipient_stored_without_delivery(self, services, store):
        """Sending to offline bob stores the message and emits no delivery."""
        alice, alice_ws = await connect(services, "alice")

        report = await services.relay.send_private("alice", "bob", text="hey")

        assert report.delivered is False
        thread = await store.find_thread_by_user_pair("alice", "bob")
        assert await store.count_messages(thread.id) == 1

        # No backfill when bob connects later
        bob, bob_ws = await connect(services, "bob")
        assert bob_ws.frames("privateMessageDelivered") == []

    @pytest.mark.asyncio
    async def test_both_directions_share_thread(self, services, store):
        await services.relay.send_private("alice", "bob", text="ping")
        await services.relay.send_private("bob", "alice", text="pong")

        thread = await store.find_thread_by_user_pair("bob", "alice")
        messages = await store.get_messages(thread.id)
        assert [(m.username, m.text) for m in messages] == [("alice", "ping"), ("bob", "pong")]

    @pytest.mark.asyncio
    async def test_delivery_goes_to_latest_session(self, services):
        """After a reconnect only the newest connection gets private messages."""
        _, old_ws = await connect(services, "bob")
        _, new_ws = await connect(services, "bob")

        await services.relay.send_private("alice", "bob", text="which one?")

        assert old_ws.frames("privateMessageDelivered") == []
        assert len(new_ws.frames("privateMessageDelivered")) == 1

    @pytest.mark.asyncio
    async def test_missing_recipient_rejected_before_write(self, services, store):
        with pytest.raises(MalformedEvent):
            await services.relay.send_private("alice", "", text="to nobody")

        assert await store.find_thread(ThreadKey.direct("alice", "")) is None

    @pytest.mark.asyncio
    async def test_storage_failure_raises_and_skips_delivery(self, relay_config):
        failing = FailingStore()
        services = build_services(relay_config, store=failing)
        bob, bob_ws = await connect(services, "bob")

        with pytest.raises(StorageError):
            await services.relay.send_private("alice", "bob", text="lost")

        assert bob_ws.frames("privateMessageDelivered") == []
        failing.close()


def test_build_services_defaults_to_duckdb(tmp_path):
    """Without an injected store the configured DuckDB file is used."""
    config = AppConfig(storage={"db_path": str(tmp_path / "relay.duckdb")})
    services = build_services(config)
    try:
        assert type(services.store).__name__ == "DuckDBConversationStore"
        assert (tmp_path / "relay.duckdb").exists()
    finally:
        services.close()


@pytest.mark.asyncio
async def test_undecodable_frame_keeps_its_cause(services):
    connection, _ = await connect(services, "alice")

    with pytest.raises(MalformedEvent) as exc_info:
        await handle_frame(services, connection, "not json")

    assert isinstance(exc_info.value.__cause__, json.JSONDecodeError)
