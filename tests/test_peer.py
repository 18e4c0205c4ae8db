from aiortc import RTCSessionDescription

from chess_voice.core.peer import (
    candidate_from_dict,
    candidate_to_dict,
    description_from_dict,
    description_to_dict,
)

BROWSER_CANDIDATE = {
    "candidate": "candidate:842163049 1 udp 1677729535 203.0.113.7 51812 typ srflx raddr 10.0.0.2 rport 51812 generation 0",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}


def test_description_conversion() -> None:
    description = description_from_dict({"type": "offer", "sdp": "v=0\r\n"})
    assert isinstance(description, RTCSessionDescription)
    assert description_to_dict(description) == {"type": "offer", "sdp": "v=0\r\n"}


def test_browser_candidate_is_parsed() -> None:
    candidate = candidate_from_dict(BROWSER_CANDIDATE)

    assert candidate.ip == "203.0.113.7"
    assert candidate.port == 51812
    assert candidate.type == "srflx"
    assert candidate.sdpMid == "0"
    assert candidate.sdpMLineIndex == 0
    assert candidate_to_dict(candidate)["candidate"].startswith("candidate:842163049 ")


def test_end_of_candidates_marker_is_skipped() -> None:
    assert candidate_from_dict({"candidate": "", "sdpMid": "0", "sdpMLineIndex": 0}) is None
