import json

import pytest

from chess_voice.core.signaling import (
    SignalingMessage,
    build_ice_candidate,
    build_offer,
    build_ready,
)


def test_wire_format_matches_web_client() -> None:
    offer = build_offer("alice", "bob", {"type": "offer", "sdp": "v=0"})
    assert json.loads(offer.encode()) == {
        "type": "offer",
        "from": "alice",
        "to": "bob",
        "data": {"type": "offer", "sdp": "v=0"},
    }
    assert json.loads(build_ready("alice", "bob").encode())["data"] is None


def test_decode_candidate() -> None:
    raw = json.dumps(
        {
            "type": "ice-candidate",
            "from": "bob",
            "to": "alice",
            "data": {"candidate": "candidate:1 1 udp 1 10.0.0.1 9 typ host", "sdpMid": "0", "sdpMLineIndex": 0},
        }
    ).encode()
    msg = SignalingMessage.decode(raw)
    assert msg == build_ice_candidate(
        "bob",
        "alice",
        {"candidate": "candidate:1 1 udp 1 10.0.0.1 9 typ host", "sdpMid": "0", "sdpMLineIndex": 0},
    )


def test_ready_session_token_roundtrips() -> None:
    ready = build_ready("alice", "bob", session="a1b2")
    assert json.loads(ready.encode())["session"] == "a1b2"
    assert SignalingMessage.decode(ready.encode()) == ready
    assert "session" not in json.loads(build_ready("alice", "bob").encode())


def test_ready_payload_data_is_dropped() -> None:
    msg = SignalingMessage.from_payload(
        {"type": "ready", "from": "a", "to": "b", "data": {"junk": True}}
    )
    assert msg.data is None


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"type": "hangup", "from": "a", "to": "b"},
        {"type": "ready", "from": "", "to": "b"},
        {"type": "ready", "from": "a"},
        {"type": "ready", "from": "a", "to": "b", "session": 7},
        {"type": "offer", "from": "a", "to": "b", "data": None},
        {"type": "offer", "from": "a", "to": "b", "data": {"type": "answer", "sdp": "v=0"}},
        {"type": "answer", "from": "a", "to": "b", "data": {"type": "answer"}},
        {"type": "ice-candidate", "from": "a", "to": "b", "data": {"sdpMid": "0"}},
        {
            "type": "ice-candidate",
            "from": "a",
            "to": "b",
            "data": {"candidate": ["not", "a", "string"], "sdpMid": "0", "sdpMLineIndex": 0},
        },
        {
            "type": "ice-candidate",
            "from": "a",
            "to": "b",
            "data": {"candidate": "candidate:1 1 udp 1 10.0.0.1 9 typ host", "sdpMid": 0},
        },
        {
            "type": "ice-candidate",
            "from": "a",
            "to": "b",
            "data": {"candidate": "candidate:1 1 udp 1 10.0.0.1 9 typ host", "sdpMLineIndex": "0"},
        },
    ],
)
def test_malformed_payloads_are_rejected(payload) -> None:
    with pytest.raises(ValueError):
        SignalingMessage.from_payload(payload)


def test_undecodable_bytes_are_rejected() -> None:
    with pytest.raises(ValueError):
        SignalingMessage.decode(b"\xff\xfe")
    with pytest.raises(ValueError):
        SignalingMessage.decode(b"{not json")
