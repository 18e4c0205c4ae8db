from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Literal, Dict, Any, Optional


SignalingMessageType = Literal[
    "ready",
    "offer",
    "answer",
    "ice-candidate",
]

MESSAGE_TYPES = ("ready", "offer", "answer", "ice-candidate")
DESCRIPTION_TYPES = ("offer", "answer")


@dataclass
class SignalingMessage:
    msg_type: SignalingMessageType
    from_id: str
    to_id: str
    data: Optional[Dict[str, Any]] = None
    session: Optional[str] = None  # per-start token, set on ready

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "type": self.msg_type,
            "from": self.from_id,
            "to": self.to_id,
            "data": self.data,
        }
        if self.session is not None:
            payload["session"] = self.session
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SignalingMessage":
        if not isinstance(payload, dict):
            raise ValueError(f"Signal payload must be an object, got {type(payload).__name__}")

        msg_type = payload.get("type")
        if msg_type not in MESSAGE_TYPES:
            raise ValueError(f"Unknown signal type: {msg_type!r}")

        from_id = payload.get("from")
        to_id = payload.get("to")
        if not isinstance(from_id, str) or not from_id:
            raise ValueError("Signal is missing 'from'")
        if not isinstance(to_id, str) or not to_id:
            raise ValueError("Signal is missing 'to'")

        session = payload.get("session")
        if session is not None and not isinstance(session, str):
            raise ValueError("Signal session token must be a string")

        data = payload.get("data")
        if msg_type == "ready":
            data = None
        elif msg_type in DESCRIPTION_TYPES:
            if not isinstance(data, dict) or not isinstance(data.get("sdp"), str):
                raise ValueError(f"'{msg_type}' signal carries no session description")
            if data.get("type") != msg_type:
                raise ValueError(
                    f"'{msg_type}' signal carries a '{data.get('type')}' description"
                )
        else:
            _check_candidate(data)

        return cls(
            msg_type=msg_type, from_id=from_id, to_id=to_id, data=data, session=session
        )

    def encode(self) -> bytes:
        return json.dumps(self.to_payload(), separators=(",", ":")).encode("utf-8")

    @classmethod
    def decode(cls, raw: bytes) -> "SignalingMessage":
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError(f"Undecodable signal: {exc}") from exc
        return cls.from_payload(payload)


def _check_candidate(data: Any) -> None:
    if not isinstance(data, dict) or not isinstance(data.get("candidate"), str):
        raise ValueError("'ice-candidate' signal carries no candidate")
    mid = data.get("sdpMid")
    if mid is not None and not isinstance(mid, str):
        raise ValueError(f"Candidate sdpMid must be a string, got {type(mid).__name__}")
    index = data.get("sdpMLineIndex")
    if index is not None and (isinstance(index, bool) or not isinstance(index, int)):
        raise ValueError(
            f"Candidate sdpMLineIndex must be an integer, got {type(index).__name__}"
        )


def build_ready(from_id: str, to_id: str, session: Optional[str] = None) -> SignalingMessage:
    return SignalingMessage(msg_type="ready", from_id=from_id, to_id=to_id, session=session)


def build_offer(from_id: str, to_id: str, description: Dict[str, Any]) -> SignalingMessage:
    return SignalingMessage(
        msg_type="offer", from_id=from_id, to_id=to_id, data=description
    )


def build_answer(from_id: str, to_id: str, description: Dict[str, Any]) -> SignalingMessage:
    return SignalingMessage(
        msg_type="answer", from_id=from_id, to_id=to_id, data=description
    )


def build_ice_candidate(
    from_id: str, to_id: str, candidate: Dict[str, Any]
) -> SignalingMessage:
    return SignalingMessage(
        msg_type="ice-candidate", from_id=from_id, to_id=to_id, data=candidate
    )
