"""
Peer connection handle built on aiortc.

Session descriptions and ICE candidates cross the signaling channel in the
browser's JSON shapes ({"type", "sdp"} and {"candidate", "sdpMid",
"sdpMLineIndex"}), so a Python participant interoperates with the web client.

aiortc gathers all local candidates before setLocalDescription() returns and
embeds them in the SDP; it never trickles. on_ice_candidate is kept for
connection implementations that do.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from chess_voice.logging_config import get_logger

logger = get_logger("core.peer")

CANDIDATE_PREFIX = "candidate:"


def description_to_dict(description: RTCSessionDescription) -> dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


def description_from_dict(data: dict[str, Any]) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=data["sdp"], type=data["type"])


def candidate_from_dict(data: dict[str, Any]) -> Optional[RTCIceCandidate]:
    """
    Parse a browser RTCIceCandidateInit.

    Returns None for the empty end-of-candidates marker.
    """
    text = (data.get("candidate") or "").strip()
    if not text:
        return None
    if text.startswith(CANDIDATE_PREFIX):
        text = text[len(CANDIDATE_PREFIX):]
    candidate = candidate_from_sdp(text)
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


def candidate_to_dict(candidate: RTCIceCandidate) -> dict[str, Any]:
    return {
        "candidate": CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


class AiortcPeerConnection:
    """
    One WebRTC connection for one call attempt.

    Callbacks:
    - on_ice_candidate(dict): local candidate to forward to the remote side
    - on_track(track): remote audio track arrived
    - on_connection_state(str): new / connecting / connected / disconnected /
      failed / closed
    """

    def __init__(self, stun_servers: list[str]) -> None:
        configuration = RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in stun_servers]
        )
        self._pc = RTCPeerConnection(configuration=configuration)
        self.on_ice_candidate: Optional[Callable[[dict[str, Any]], None]] = None
        self.on_track: Optional[Callable[[MediaStreamTrack], None]] = None
        self.on_connection_state: Optional[Callable[[str], None]] = None

        @self._pc.on("connectionstatechange")
        async def _on_connection_state() -> None:
            state = self._pc.connectionState
            logger.info(f"Peer connection state: {state}")
            if self.on_connection_state:
                self.on_connection_state(state)

        @self._pc.on("track")
        def _on_track(track: MediaStreamTrack) -> None:
            if track.kind != "audio":
                logger.debug(f"Ignoring remote {track.kind} track")
                return
            logger.info("Remote audio track received")
            if self.on_track:
                self.on_track(track)

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    def add_track(self, track: MediaStreamTrack) -> None:
        self._pc.addTrack(track)

    async def create_offer(self) -> dict[str, str]:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        return description_to_dict(self._pc.localDescription)

    async def create_answer(self) -> dict[str, str]:
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        return description_to_dict(self._pc.localDescription)

    async def set_remote_description(self, data: dict[str, Any]) -> None:
        await self._pc.setRemoteDescription(description_from_dict(data))

    def has_remote_description(self) -> bool:
        return self._pc.remoteDescription is not None

    async def add_ice_candidate(self, data: dict[str, Any]) -> None:
        candidate = candidate_from_dict(data)
        if candidate is None:
            logger.debug("End of remote candidates")
            return
        await self._pc.addIceCandidate(candidate)

    async def close(self) -> None:
        self.on_ice_candidate = None
        self.on_track = None
        self.on_connection_state = None
        await self._pc.close()


def create_peer_connection(stun_servers: list[str]) -> AiortcPeerConnection:
    """Default connection factory for PeerSession."""
    return AiortcPeerConnection(stun_servers)
