import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Any, Optional

from chess_voice.core.call_state import SessionIdentity
from chess_voice.core.channel import SignalingChannel
from chess_voice.core.controller import CallController
from chess_voice.core.media import LevelMeter, MediaAcquisitionError
from chess_voice.core.session import PeerSession
from chess_voice.core.transport import LocalBroker

STUN = ["stun:stun.example.org:3478"]

_sdp_ids = itertools.count(1)


class FakeTrack:
    kind = "audio"

    def __init__(self) -> None:
        self.enabled = True
        self.meter = LevelMeter()
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakeLocalMedia:
    def __init__(self) -> None:
        self.track = FakeTrack()
        self.far_end = None
        self.closed = False

    @property
    def meter(self) -> LevelMeter:
        return self.track.meter

    def attach_far_end(self, meter) -> None:
        self.far_end = meter

    def close(self) -> None:
        self.closed = True


class FakePlayback:
    def __init__(self, track) -> None:
        self.track = track
        self.muted = False
        self.meter = LevelMeter()
        self.started = False
        self.stopped = False

    def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True


class FakeMediaDevices:
    def __init__(self, error: Optional[MediaAcquisitionError] = None) -> None:
        self.error = error
        self.acquired: list[FakeLocalMedia] = []
        self.playbacks: list[FakePlayback] = []

    async def acquire(self) -> FakeLocalMedia:
        if self.error is not None:
            raise self.error
        media = FakeLocalMedia()
        self.acquired.append(media)
        return media

    def open_playback(self, track) -> FakePlayback:
        playback = FakePlayback(track)
        self.playbacks.append(playback)
        return playback


class FakePeerConnection:
    def __init__(self, stun_servers: list[str]) -> None:
        self.stun_servers = stun_servers
        self.tracks: list[Any] = []
        self.local_description: Optional[dict] = None
        self.remote_description: Optional[dict] = None
        self.candidates: list[dict] = []
        self.closed = False
        self.on_ice_candidate = None
        self.on_track = None
        self.on_connection_state = None

    def add_track(self, track) -> None:
        self.tracks.append(track)

    async def create_offer(self) -> dict:
        self.local_description = {"type": "offer", "sdp": f"v=0 o=offer-{next(_sdp_ids)}"}
        return dict(self.local_description)

    async def create_answer(self) -> dict:
        self.local_description = {"type": "answer", "sdp": f"v=0 o=answer-{next(_sdp_ids)}"}
        return dict(self.local_description)

    async def set_remote_description(self, description: dict) -> None:
        self.remote_description = description

    def has_remote_description(self) -> bool:
        return self.remote_description is not None

    async def add_ice_candidate(self, candidate: dict) -> None:
        self.candidates.append(candidate)

    async def close(self) -> None:
        self.closed = True

    def emit_state(self, state: str) -> None:
        if self.on_connection_state:
            self.on_connection_state(state)

    def emit_track(self, track) -> None:
        if self.on_track:
            self.on_track(track)

    def emit_candidate(self, candidate: dict) -> None:
        if self.on_ice_candidate:
            self.on_ice_candidate(candidate)


class FakeConnectionFactory:
    def __init__(self) -> None:
        self.created: list[FakePeerConnection] = []

    def __call__(self, stun_servers: list[str]) -> FakePeerConnection:
        connection = FakePeerConnection(stun_servers)
        self.created.append(connection)
        return connection


@dataclass
class Peer:
    session: PeerSession
    controller: CallController
    media: FakeMediaDevices
    factory: FakeConnectionFactory = field(default_factory=FakeConnectionFactory)

    @property
    def pc(self) -> FakePeerConnection:
        return self.factory.created[-1]


def make_peer(
    broker: LocalBroker,
    local_id: str,
    remote_id: str,
    game_id: str = "game42",
    media: Optional[FakeMediaDevices] = None,
    auto_answer: bool = True,
    grace_delay: float = 0.05,
    meter_interval: float = 0.01,
) -> Peer:
    """A session plus controller wired to fakes; must be called inside a running loop."""
    media = media or FakeMediaDevices()
    factory = FakeConnectionFactory()
    channel = SignalingChannel(broker.endpoint(), local_id, remote_id, dupe_window_sec=0.0)
    session = PeerSession(
        SessionIdentity(local_id=local_id, remote_id=remote_id, game_id=game_id),
        channel,
        media,
        factory,
        STUN,
        auto_answer=auto_answer,
    )
    controller = CallController(session, grace_delay=grace_delay, meter_interval=meter_interval)
    return Peer(session=session, controller=controller, media=media, factory=factory)


async def settle(*peers: Peer, rounds: int = 6) -> None:
    """Let cross-session deliveries and queued events run to completion."""
    for _ in range(rounds):
        for _ in range(5):
            await asyncio.sleep(0)
        for peer in peers:
            await peer.session.settle()


async def connected_pair(broker: LocalBroker, **kwargs) -> tuple[Peer, Peer]:
    """alice (initiator) and bob (responder) negotiated and reported connected."""
    alice = make_peer(broker, "alice", "bob", **kwargs)
    bob = make_peer(broker, "bob", "alice", **kwargs)
    await alice.session.open()
    await bob.session.open()

    assert await bob.session.start()
    assert await alice.session.start()
    assert await alice.session.request_offer()
    await settle(alice, bob)

    alice.pc.emit_state("connected")
    bob.pc.emit_state("connected")
    await settle(alice, bob)
    return alice, bob
