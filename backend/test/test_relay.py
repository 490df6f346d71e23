"""SignalingRelay 단위 테스트."""

import asyncio

import pytest

from conftest import FakeTransport
from voicerooms.signaling import MessageType


async def _connect(relay, transport=None):
    transport = transport or FakeTransport()
    connection_id = await relay.connect(transport)
    return connection_id, transport


async def _join(relay, room_id, name, transport=None, member_id=None, reconnect_token=None):
    connection_id, transport = await _connect(relay, transport)
    data = {"room_id": room_id, "display_name": name}
    if member_id:
        data["member_id"] = member_id
    if reconnect_token:
        data["reconnect_token"] = reconnect_token
    await relay.handle_message(connection_id, {"type": "join", "data": data})
    snapshots = transport.of_type(MessageType.ROOM_SNAPSHOT)
    member = snapshots[-1]["data"]["member"] if snapshots else None
    return connection_id, transport, member


def _token(transport) -> str:
    return transport.of_type(MessageType.ROOM_SNAPSHOT)[-1]["data"]["reconnect_token"]


def _names(snapshot_message):
    return [m["display_name"] for m in snapshot_message["data"]["room"]["members"]]


class TestConnect:
    async def test_connect_sends_connection_id(self, relay):
        connection_id, transport = await _connect(relay)
        assert transport.sent == [{"type": "connected", "data": {"connection_id": connection_id}}]


class TestScenario:
    async def test_full_room_scenario(self, relay, registry):
        alice_conn, alice, alice_member = await _join(relay, "r1", "Alice")
        assert _names(alice.of_type("room_snapshot")[0]) == ["Alice"]

        bob_conn, bob, bob_member = await _join(relay, "r1", "Bob")
        assert _names(bob.of_type("room_snapshot")[0]) == ["Alice", "Bob"]
        joined = alice.of_type("member_joined")
        assert len(joined) == 1
        assert joined[0]["data"]["member"]["id"] == bob_member["id"]
        assert bob.of_type("member_joined") == []

        await _join(relay, "r1", "Carol")
        await _join(relay, "r1", "Dave")
        before = [m.id for m in registry.get_room("r1").members]

        _, eve, _ = await _join(relay, "r1", "Eve")
        errors = eve.of_type("error")
        assert len(errors) == 1
        assert errors[0]["data"]["code"] == "ROOM_FULL"
        assert eve.of_type("room_snapshot") == []
        assert [m.id for m in registry.get_room("r1").members] == before

        await relay.handle_message(alice_conn, {
            "type": "offer",
            "data": {"room_id": "r1", "target_member_id": bob_member["id"], "payload": {"sdp": "x", "type": "offer"}},
        })
        offers = bob.of_type("offer_received")
        assert offers == [{
            "type": "offer_received",
            "data": {"from_member_id": alice_member["id"], "payload": {"sdp": "x", "type": "offer"}},
        }]
        assert alice.of_type("offer_received") == []

        await relay.disconnect(bob_conn)
        left = alice.of_type("member_left")
        assert left == [{"type": "member_left", "data": {"member_id": bob_member["id"]}}]
        assert registry.resolve_by_id(bob_member["id"]) is None


class TestAddressedDelivery:
    @pytest.mark.parametrize("message_type, delivered_type", [
        ("offer", "offer_received"),
        ("answer", "answer_received"),
        ("ice_candidate", "ice_candidate_received"),
    ])
    async def test_only_target_receives(self, relay, message_type, delivered_type):
        alice_conn, alice, alice_member = await _join(relay, "r1", "Alice")
        _, bob, bob_member = await _join(relay, "r1", "Bob")
        _, carol, _ = await _join(relay, "r1", "Carol")

        await relay.handle_message(alice_conn, {
            "type": message_type,
            "data": {"room_id": "r1", "target_member_id": bob_member["id"], "payload": {"k": 1}},
        })

        assert len(bob.of_type(delivered_type)) == 1
        assert carol.of_type(delivered_type) == []
        assert alice.of_type(delivered_type) == []

    async def test_unknown_target_is_silently_dropped(self, relay):
        alice_conn, alice, _ = await _join(relay, "r1", "Alice")
        sent_before = len(alice.sent)

        await relay.handle_message(alice_conn, {
            "type": "offer",
            "data": {"room_id": "r1", "target_member_id": "ghost", "payload": {}},
        })

        assert len(alice.sent) == sent_before

    async def test_target_in_other_room_is_dropped(self, relay):
        alice_conn, _, _ = await _join(relay, "r1", "Alice")
        _, bob, bob_member = await _join(relay, "r2", "Bob")

        await relay.handle_message(alice_conn, {
            "type": "offer",
            "data": {"room_id": "r1", "target_member_id": bob_member["id"], "payload": {}},
        })

        assert bob.of_type("offer_received") == []

    async def test_rejoined_member_receives_on_new_connection(self, relay):
        alice_conn, _, _ = await _join(relay, "r1", "Alice")
        _, old_bob, bob_member = await _join(relay, "r1", "Bob")
        _, new_bob, _ = await _join(
            relay, "r1", "Bob", member_id=bob_member["id"], reconnect_token=_token(old_bob)
        )

        await relay.handle_message(alice_conn, {
            "type": "answer",
            "data": {"room_id": "r1", "target_member_id": bob_member["id"], "payload": {}},
        })

        assert len(new_bob.of_type("answer_received")) == 1
        assert old_bob.of_type("answer_received") == []

    async def test_addressed_from_outside_room_is_rejected(self, relay):
        connection_id, transport = await _connect(relay)
        await relay.handle_message(connection_id, {
            "type": "offer",
            "data": {"room_id": "r1", "target_member_id": "x", "payload": {}},
        })
        assert transport.of_type("error")[0]["data"]["code"] == "INVALID_MESSAGE"


class TestPresenceBroadcasts:
    async def test_rejoin_broadcasts_member_updated(self, relay, registry):
        _, alice, _ = await _join(relay, "r1", "Alice")
        _, bob, bob_member = await _join(relay, "r1", "Bob")

        await _join(relay, "r1", "Bob", member_id=bob_member["id"], reconnect_token=_token(bob))

        assert len(alice.of_type("member_joined")) == 1
        assert alice.of_type("member_updated")[0]["data"]["member"]["id"] == bob_member["id"]
        assert len(registry.get_room("r1").members) == 2

    async def test_update_state_broadcasts_excluding_sender(self, relay):
        alice_conn, alice, alice_member = await _join(relay, "r1", "Alice")
        _, bob, _ = await _join(relay, "r1", "Bob")

        await relay.handle_message(alice_conn, {
            "type": "update_state",
            "data": {"room_id": "r1", "fields": {"muted": True}},
        })

        updates = bob.of_type("member_updated")
        assert len(updates) == 1
        assert updates[0]["data"]["member"]["id"] == alice_member["id"]
        assert updates[0]["data"]["member"]["muted"] is True
        assert alice.of_type("member_updated") == []

    async def test_update_state_rejects_unknown_fields(self, relay, registry):
        alice_conn, alice, alice_member = await _join(relay, "r1", "Alice")

        await relay.handle_message(alice_conn, {
            "type": "update_state",
            "data": {"room_id": "r1", "fields": {"display_name": "Mallory"}},
        })

        assert alice.of_type("error")[0]["data"]["code"] == "INVALID_MESSAGE"
        assert registry.resolve_by_id(alice_member["id"]).display_name == "Alice"

    async def test_leave_broadcasts_member_left(self, relay, registry):
        alice_conn, alice, alice_member = await _join(relay, "r1", "Alice")
        _, bob, _ = await _join(relay, "r1", "Bob")

        await relay.handle_message(alice_conn, {
            "type": "leave",
            "data": {"room_id": "r1", "member_id": alice_member["id"]},
        })

        assert bob.of_type("member_left") == [{"type": "member_left", "data": {"member_id": alice_member["id"]}}]
        assert alice.of_type("member_left") == []

    async def test_leave_on_behalf_of_other_member_is_rejected(self, relay, registry):
        alice_conn, alice, _ = await _join(relay, "r1", "Alice")
        _, _, bob_member = await _join(relay, "r1", "Bob")

        await relay.handle_message(alice_conn, {
            "type": "leave",
            "data": {"room_id": "r1", "member_id": bob_member["id"]},
        })

        assert alice.of_type("error")[0]["data"]["code"] == "INVALID_MESSAGE"
        assert registry.resolve_by_id(bob_member["id"]) is not None

    async def test_moving_room_notifies_previous_room(self, relay):
        alice_conn, alice, alice_member = await _join(relay, "r1", "Alice")
        _, bob, bob_member = await _join(relay, "r1", "Bob")

        await relay.handle_message(alice_conn, {
            "type": "join",
            "data": {"room_id": "r2", "display_name": "Alice"},
        })

        left = bob.of_type("member_left")
        assert len(left) == 1
        assert left[0]["data"]["member_id"] == alice_member["id"]
        assert alice.of_type("room_snapshot")[-1]["data"]["member"]["id"] == alice_member["id"]


    async def test_join_with_foreign_member_id_is_rejected(self, relay, registry):
        alice_conn, alice, alice_member = await _join(relay, "r1", "Alice")
        bob_conn, bob, bob_member = await _join(relay, "r1", "Bob")
        mallory_conn, mallory, _ = await _join(relay, "r2", "Mallory")

        await relay.handle_message(mallory_conn, {
            "type": "join",
            "data": {"room_id": "r1", "display_name": "Mallory", "member_id": alice_member["id"]},
        })

        assert mallory.of_type("error")[-1]["data"]["code"] == "INVALID_MESSAGE"
        assert registry.resolve_by_connection(alice_conn).id == alice_member["id"]
        assert bob.of_type("member_updated") == []

        await relay.handle_message(bob_conn, {
            "type": "offer",
            "data": {"room_id": "r1", "target_member_id": alice_member["id"], "payload": {}},
        })
        assert len(alice.of_type("offer_received")) == 1
        assert mallory.of_type("offer_received") == []

    async def test_rejoin_on_connection_of_other_member_announces_departure(self, relay, registry):
        _, alice, alice_member = await _join(relay, "r1", "Alice")
        _, carol, _ = await _join(relay, "r2", "Carol")
        dave_conn, _, dave_member = await _join(relay, "r2", "Dave")

        await relay.handle_message(dave_conn, {
            "type": "join",
            "data": {
                "room_id": "r1",
                "display_name": "Alice",
                "member_id": alice_member["id"],
                "reconnect_token": _token(alice),
            },
        })

        assert carol.of_type("member_left")[-1]["data"]["member_id"] == dave_member["id"]
        assert registry.resolve_by_id(dave_member["id"]) is None
        assert [m.display_name for m in registry.get_room("r2").members] == ["Carol"]
        assert registry.resolve_by_connection(dave_conn).id == alice_member["id"]

        await relay.disconnect(dave_conn)
        assert registry.stats()["members"] == 1


class TestDisconnect:
    async def test_double_disconnect_broadcasts_once(self, relay):
        _, alice, _ = await _join(relay, "r1", "Alice")
        bob_conn, _, _ = await _join(relay, "r1", "Bob")

        await asyncio.gather(relay.disconnect(bob_conn), relay.disconnect(bob_conn))

        assert len(alice.of_type("member_left")) == 1

    async def test_disconnect_then_leave_broadcasts_once(self, relay):
        _, alice, _ = await _join(relay, "r1", "Alice")
        bob_conn, _, bob_member = await _join(relay, "r1", "Bob")

        await relay.disconnect(bob_conn)
        await relay.handle_message(bob_conn, {
            "type": "leave",
            "data": {"room_id": "r1", "member_id": bob_member["id"]},
        })

        assert len(alice.of_type("member_left")) == 1

    async def test_last_member_disconnect_makes_room_unaddressable(self, relay, registry):
        alice_conn, _, _ = await _join(relay, "r1", "Alice")

        await relay.disconnect(alice_conn)

        assert registry.get_room("r1") is None
        assert await relay.broadcast_to_room("r1", {"type": "noop", "data": {}}) == 0

    async def test_failed_send_during_broadcast_runs_disconnect(self, relay, registry):
        alice_conn, alice, _ = await _join(relay, "r1", "Alice")
        _, bob, bob_member = await _join(relay, "r1", "Bob")
        bob.fail = True

        await relay.handle_message(alice_conn, {
            "type": "update_state",
            "data": {"room_id": "r1", "fields": {"speaking": True}},
        })

        assert registry.resolve_by_id(bob_member["id"]) is None
        assert alice.of_type("member_left") == [{"type": "member_left", "data": {"member_id": bob_member["id"]}}]


class TestValidation:
    @pytest.mark.parametrize("message", [
        {"type": "teleport", "data": {}},
        {"type": "join", "data": {"room_id": "bad room!", "display_name": "A"}},
        {"type": "join", "data": {"room_id": "r1", "display_name": "   "}},
        {"type": "join", "data": {"room_id": "r1", "display_name": "x" * 33}},
        {"type": "join"},
        ["not", "an", "object"],
    ])
    async def test_malformed_message_reports_error_without_mutation(self, relay, registry, message):
        connection_id, transport = await _connect(relay)

        await relay.handle_message(connection_id, message)

        errors = transport.of_type("error")
        assert len(errors) == 1
        assert errors[0]["data"]["code"] == "INVALID_MESSAGE"
        assert registry.rooms == {}

    async def test_get_rooms_returns_active_rooms(self, relay):
        connection_id, transport = await _connect(relay)
        await _join(relay, "r1", "Alice")

        await relay.handle_message(connection_id, {"type": "get_rooms"})

        rooms = transport.of_type("rooms_list")[0]["data"]["rooms"]
        assert [r["room_id"] for r in rooms] == ["r1"]


class TestSweeper:
    async def test_sweeper_removes_stale_rooms(self, relay, registry, clock):
        alice_conn, _, _ = await _join(relay, "r1", "Alice")
        await relay.disconnect(alice_conn)
        clock.now += 200

        task = relay.start_sweeper(interval=0.01, max_idle=120)
        await asyncio.sleep(0.05)
        await relay.shutdown()

        assert task.done()
        assert "r1" not in registry.rooms
