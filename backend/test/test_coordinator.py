"""SessionCoordinator 단위 테스트.

시그널링 클라이언트는 전송 메시지를 기록하는 가짜 이미터로 대체하고,
오케스트레이터는 가짜 RTCPeerConnection/마이크를 주입한 실제 객체를 사용합니다.
"""

import asyncio
from typing import List, Optional

import pytest
from pyee.asyncio import AsyncIOEventEmitter

from conftest import candidate, settle
from voicerooms.session import SessionCoordinator
from voicerooms.shared import PermissionDenied, RoomFull
from voicerooms.signaling import MessageType
from voicerooms.webrtc import LevelSample, LinkState, OrchestratorEvent, PeerDisconnected


def _member(member_id: str, name: str, joined_at: str = "2026-01-01T00:00:00+00:00") -> dict:
    return {
        "id": member_id,
        "display_name": name,
        "connected": True,
        "muted": False,
        "speaking": False,
        "joined_at": joined_at,
    }


class FakeSignalingClient(AsyncIOEventEmitter):
    """전송 메시지를 기록하고 join에 미리 정한 응답을 돌려주는 가짜 클라이언트."""

    def __init__(self):
        super().__init__()
        self.sent: List[tuple] = []
        self.join_reply: Optional[tuple] = None
        self.online = True

    async def send(self, message_type: str, data: dict) -> bool:
        if not self.online:
            return False
        self.sent.append((message_type, data))
        if message_type == MessageType.JOIN and self.join_reply is not None:
            loop = asyncio.get_running_loop()
            loop.call_soon(self.emit, *self.join_reply)
        return True

    def of_type(self, message_type: str) -> List[dict]:
        return [data for t, data in self.sent if t == message_type]


def _snapshot(room_id: str, me: dict, others: List[dict]) -> tuple:
    return (MessageType.ROOM_SNAPSHOT, {
        "room": {"id": room_id, "members": others + [me], "capacity": 4},
        "member": me,
        "reconnect_token": f"token-{me['id']}",
    })


@pytest.fixture
def client() -> FakeSignalingClient:
    return FakeSignalingClient()


@pytest.fixture
async def coordinator(client, orchestrator):
    coord = SessionCoordinator(client, orchestrator, speaking_threshold=20, join_timeout=1.0)
    yield coord
    coord.close()


async def _join_as_bbbb(client, coordinator, others=()):
    client.join_reply = _snapshot("r1", _member("bbbb", "Bob"), list(others))
    return await coordinator.join("r1", "Bob")


class TestJoin:
    async def test_newcomer_offers_to_existing_members(self, client, coordinator, orchestrator, capture_factory):
        snapshot = await _join_as_bbbb(
            client, coordinator, [_member("aaaa", "Alice"), _member("cccc", "Carol")]
        )

        assert snapshot["member"]["id"] == "bbbb"
        assert coordinator.member_id == "bbbb"
        assert orchestrator.local_member_id == "bbbb"
        assert set(coordinator.members) == {"aaaa", "cccc"}
        assert len(capture_factory.calls) == 1

        offers = client.of_type(MessageType.OFFER)
        assert sorted(o["target_member_id"] for o in offers) == ["aaaa", "cccc"]
        assert all(o["room_id"] == "r1" and o["payload"]["type"] == "offer" for o in offers)
        assert orchestrator.get_connection_states() == {"aaaa": "negotiating", "cccc": "negotiating"}

    async def test_capture_happens_before_join_request(self, client, coordinator, capture_factory):
        capture_factory.error = PermissionDenied("denied")

        with pytest.raises(PermissionDenied):
            await _join_as_bbbb(client, coordinator)

        assert client.of_type(MessageType.JOIN) == []

    async def test_room_full_is_raised(self, client, coordinator):
        client.join_reply = (MessageType.ERROR, {"message": "Room 'r1' is full (4 members)", "code": "ROOM_FULL"})

        with pytest.raises(RoomFull) as exc_info:
            await coordinator.join("r1", "Bob")

        assert exc_info.value.room_id == "r1"
        assert client.of_type(MessageType.OFFER) == []

    async def test_join_without_connection_fails(self, client, coordinator):
        client.online = False
        with pytest.raises(ConnectionError):
            await coordinator.join("r1", "Bob")


class TestRemoteEvents:
    async def test_member_joined_creates_link_without_offer(self, client, coordinator, orchestrator):
        await _join_as_bbbb(client, coordinator)

        client.emit(MessageType.MEMBER_JOINED, {"member": _member("dddd", "Dave")})
        await settle()

        assert orchestrator.get_link("dddd").state == LinkState.IDLE
        assert client.of_type(MessageType.OFFER) == []
        assert "dddd" in coordinator.members

    async def test_offer_from_unknown_member_is_answered(self, client, coordinator, orchestrator):
        await _join_as_bbbb(client, coordinator)

        client.emit(MessageType.OFFER_RECEIVED, {
            "from_member_id": "eeee",
            "payload": {"sdp": "remote-offer", "type": "offer"},
        })
        await settle()

        answers = client.of_type(MessageType.ANSWER)
        assert len(answers) == 1
        assert answers[0]["target_member_id"] == "eeee"
        assert orchestrator.get_link("eeee") is not None

    async def test_answer_and_candidates_reach_link(self, client, coordinator, orchestrator, pc_factory):
        await _join_as_bbbb(client, coordinator, [_member("aaaa", "Alice")])

        client.emit(MessageType.ICE_CANDIDATE_RECEIVED, {"from_member_id": "aaaa", "payload": candidate(5001)})
        client.emit(MessageType.ANSWER_RECEIVED, {
            "from_member_id": "aaaa",
            "payload": {"sdp": "remote-answer", "type": "answer"},
        })
        await settle()

        pc = orchestrator.get_link("aaaa").pc
        assert pc.remoteDescription.sdp == "remote-answer"
        assert [c.port for c in pc.added_candidates] == [5001]

    async def test_member_left_closes_link(self, client, coordinator, orchestrator, pc_factory):
        await _join_as_bbbb(client, coordinator, [_member("aaaa", "Alice")])
        link = orchestrator.get_link("aaaa")

        client.emit(MessageType.MEMBER_LEFT, {"member_id": "aaaa"})
        await settle()

        assert orchestrator.get_link("aaaa") is None
        assert link.state == LinkState.CLOSED
        assert "aaaa" not in coordinator.members

    async def test_member_updated_only_touches_view(self, client, coordinator, orchestrator):
        await _join_as_bbbb(client, coordinator, [_member("aaaa", "Alice")])
        link = orchestrator.get_link("aaaa")
        state_before = link.state

        client.emit(MessageType.MEMBER_UPDATED, {"member": {**_member("aaaa", "Alice"), "muted": True}})

        assert coordinator.members["aaaa"]["muted"] is True
        assert orchestrator.get_link("aaaa") is link
        assert link.state == state_before

    async def test_peer_disconnected_marks_view(self, client, coordinator, orchestrator):
        await _join_as_bbbb(client, coordinator, [_member("aaaa", "Alice")])

        orchestrator.emit(OrchestratorEvent.PEER_DISCONNECTED, PeerDisconnected("aaaa", "ice_failed"))

        assert coordinator.members["aaaa"]["link"] == "disconnected"

    async def test_restart_offer_is_forwarded(self, client, coordinator, orchestrator):
        await _join_as_bbbb(client, coordinator, [_member("aaaa", "Alice")])

        await orchestrator.handle_connection_failure("aaaa")
        await settle()

        offers = client.of_type(MessageType.OFFER)
        assert offers[-1]["payload"]["ice_restart"] is True
        assert offers[-1]["target_member_id"] == "aaaa"


class TestLocalState:
    async def test_toggle_mute_publishes_state(self, client, coordinator, orchestrator):
        await _join_as_bbbb(client, coordinator)

        assert await coordinator.toggle_mute() is True
        assert orchestrator.voice_state.muted is True
        assert client.of_type(MessageType.UPDATE_STATE)[-1] == {"room_id": "r1", "fields": {"muted": True}}

        assert await coordinator.toggle_mute() is False

    async def test_speaking_published_only_on_change(self, client, coordinator):
        await _join_as_bbbb(client, coordinator)
        client.sent.clear()

        for level in (5, 30, 45, 50, 10, 0):
            await coordinator._on_level(LevelSample(level=level, muted=False))

        fields = [d["fields"] for d in client.of_type(MessageType.UPDATE_STATE)]
        assert fields == [{"speaking": True}, {"speaking": False}]

    async def test_muted_level_is_never_speaking(self, client, coordinator):
        await _join_as_bbbb(client, coordinator)
        client.sent.clear()

        await coordinator._on_level(LevelSample(level=90, muted=True))

        assert client.of_type(MessageType.UPDATE_STATE) == []

    async def test_leave_sends_leave_and_releases_media(self, client, coordinator, orchestrator):
        await _join_as_bbbb(client, coordinator, [_member("aaaa", "Alice")])

        await coordinator.leave()

        assert client.of_type(MessageType.LEAVE) == [{"room_id": "r1", "member_id": "bbbb"}]
        assert orchestrator.links == {}
        assert orchestrator.capture is None
        assert coordinator.members == {}


class TestReconnect:
    async def test_reconnect_rejoins_with_member_id(self, client, coordinator):
        await _join_as_bbbb(client, coordinator)
        client.sent.clear()

        client.emit("reconnected", "new-connection")
        await asyncio.sleep(0.05)

        joins = client.of_type(MessageType.JOIN)
        assert joins == [
            {"room_id": "r1", "display_name": "Bob", "member_id": "bbbb", "reconnect_token": "token-bbbb"}
        ]
        assert client.of_type(MessageType.UPDATE_STATE)[-1]["fields"] == {"muted": False, "speaking": False}

    async def test_rejoin_as_new_record_offers_again_and_drops_departed(self, client, coordinator, orchestrator):
        await _join_as_bbbb(client, coordinator, [_member("aaaa", "Alice"), _member("cccc", "Carol")])
        old_alice_link = orchestrator.get_link("aaaa")
        carol_link = orchestrator.get_link("cccc")
        client.sent.clear()

        me = _member("bbbb", "Bob", joined_at="2026-01-01T00:01:00+00:00")
        client.join_reply = _snapshot("r1", me, [_member("aaaa", "Alice")])
        client.emit("reconnected", "new-connection")
        await asyncio.sleep(0.05)

        offers = client.of_type(MessageType.OFFER)
        assert [o["target_member_id"] for o in offers] == ["aaaa"]
        assert set(orchestrator.links) == {"aaaa"}
        assert orchestrator.get_link("aaaa") is not old_alice_link
        assert old_alice_link.state == LinkState.CLOSED
        assert carol_link.state == LinkState.CLOSED
        assert set(coordinator.members) == {"aaaa"}

    async def test_rejoin_of_same_record_keeps_live_links(self, client, coordinator, orchestrator):
        await _join_as_bbbb(client, coordinator, [_member("aaaa", "Alice"), _member("cccc", "Carol")])
        alice_link = orchestrator.get_link("aaaa")
        client.sent.clear()

        client.join_reply = _snapshot("r1", _member("bbbb", "Bob"), [_member("aaaa", "Alice")])
        client.emit("reconnected", "new-connection")
        await asyncio.sleep(0.05)

        assert client.of_type(MessageType.OFFER) == []
        assert orchestrator.get_link("aaaa") is alice_link
        assert orchestrator.get_link("cccc") is None


class TestClose:
    async def test_close_removes_listeners(self, client, coordinator, orchestrator):
        await _join_as_bbbb(client, coordinator)

        coordinator.close()
        client.emit(MessageType.MEMBER_JOINED, {"member": _member("dddd", "Dave")})
        await settle()

        assert orchestrator.get_link("dddd") is None
        assert client.listeners(MessageType.MEMBER_JOINED) == []
        assert orchestrator.listeners(OrchestratorEvent.LEVEL) == []
