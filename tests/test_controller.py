import asyncio

from chess_voice.core.call_state import CallPhase
from chess_voice.core.media import DeviceUnavailable
from chess_voice.core.signaling import build_ice_candidate
from chess_voice.core.transport import LocalBroker

from conftest import FakeMediaDevices, connected_pair, make_peer, settle


def test_initiator_offers_after_grace_when_remote_is_silent() -> None:
    async def main():
        alice = make_peer(LocalBroker(), "alice", "bob", grace_delay=0.05)
        await alice.session.open()

        assert await alice.controller.start_call()
        await settle(alice)
        assert alice.factory.created == []

        await asyncio.sleep(0.1)
        await settle(alice)
        assert len(alice.factory.created) == 1
        assert alice.pc.local_description["type"] == "offer"

    asyncio.run(main())


def test_initiator_offers_immediately_once_remote_is_ready() -> None:
    async def main():
        broker = LocalBroker()
        alice = make_peer(broker, "alice", "bob", grace_delay=30.0)
        bob = make_peer(broker, "bob", "alice", grace_delay=30.0)
        await alice.session.open()
        await bob.session.open()

        assert await bob.controller.start_call()
        await settle(alice, bob)
        assert alice.controller.status.remote_ready

        assert await alice.controller.start_call()
        await settle(alice, bob)

        assert len(alice.factory.created) == 1
        assert len(bob.factory.created) == 1
        assert bob.pc.remote_description == alice.pc.local_description

    asyncio.run(main())


def test_responder_never_offers() -> None:
    async def main():
        bob = make_peer(LocalBroker(), "bob", "alice", grace_delay=0.01)
        await bob.session.open()

        assert await bob.controller.start_call()
        await asyncio.sleep(0.05)
        await settle(bob)

        assert bob.factory.created == []
        assert bob.controller.status.is_connecting

    asyncio.run(main())


def test_start_call_is_noop_while_connecting() -> None:
    async def main():
        alice = make_peer(LocalBroker(), "alice", "bob", grace_delay=30.0)
        await alice.session.open()

        assert await alice.controller.start_call()
        assert not await alice.controller.start_call()
        assert len(alice.media.acquired) == 1
        await alice.controller.end_call()

    asyncio.run(main())


def test_start_call_requires_subscription() -> None:
    async def main():
        alice = make_peer(LocalBroker(), "alice", "bob")
        assert not await alice.controller.start_call()
        assert alice.controller.status.phase == CallPhase.IDLE
        assert alice.media.acquired == []

    asyncio.run(main())


def test_end_call_cancels_pending_offer() -> None:
    async def main():
        alice = make_peer(LocalBroker(), "alice", "bob", grace_delay=0.05)
        await alice.session.open()

        assert await alice.controller.start_call()
        await alice.controller.end_call()
        await asyncio.sleep(0.1)
        await settle(alice)

        assert alice.factory.created == []
        assert alice.controller.status.phase == CallPhase.IDLE
        assert alice.media.acquired[0].closed

    asyncio.run(main())


def test_mute_and_deafen_are_independent() -> None:
    async def main():
        alice, bob = await connected_pair(LocalBroker())
        controller = alice.controller

        assert controller.toggle_mute()
        status = controller.status
        assert status.is_muted and not status.is_deafened

        assert controller.toggle_deafen()
        status = controller.status
        assert status.is_muted and status.is_deafened

        assert not controller.toggle_mute()
        status = controller.status
        assert not status.is_muted and status.is_deafened

        assert len(alice.factory.created) == 1
        assert controller.status.is_connected

    asyncio.run(main())


def test_mute_without_local_track_is_noop() -> None:
    async def main():
        alice = make_peer(LocalBroker(), "alice", "bob")
        await alice.session.open()

        assert not alice.controller.toggle_mute()
        assert not alice.controller.status.is_muted

    asyncio.run(main())


def test_retry_after_failure_uses_fresh_connection() -> None:
    async def main():
        alice, bob = await connected_pair(LocalBroker(), grace_delay=0.02)
        failed_pc = alice.pc

        failed_pc.emit_state("failed")
        await settle(alice, bob)
        status = alice.controller.status
        assert status.retry_available
        assert status.connection_error == "Connection failed"
        assert not status.is_connected

        assert await alice.controller.retry_connection()
        status = alice.controller.status
        assert status.connection_error is None
        assert not status.retry_available
        assert status.is_connecting

        await asyncio.sleep(0.05)
        await settle(alice, bob)

        assert len(alice.factory.created) == 2
        assert alice.pc is not failed_pc
        assert not alice.pc.closed
        assert alice.session.pending_candidates == 0
        assert bob.pc.remote_description == alice.pc.local_description
        assert alice.controller.supervisor.retries == 1

    asyncio.run(main())


def test_retry_unavailable_unless_failed() -> None:
    async def main():
        alice, bob = await connected_pair(LocalBroker())

        assert not await alice.controller.retry_connection()

        alice.pc.emit_state("disconnected")
        await settle(alice, bob)
        assert not alice.controller.status.retry_available
        assert not await alice.controller.retry_connection()
        assert len(alice.factory.created) == 1

    asyncio.run(main())


def test_meter_ticks_only_while_connected() -> None:
    async def main():
        alice, bob = await connected_pair(LocalBroker(), meter_interval=0.01)
        ticks = []
        alice.controller.add_listener(ticks.append)

        await asyncio.sleep(0.08)
        connected_ticks = [s for s in ticks if s.is_connected]
        assert len(connected_ticks) >= 3

        await alice.controller.end_call()
        ticks.clear()
        await asyncio.sleep(0.05)
        assert all(not s.is_connected for s in ticks)
        assert len(ticks) <= 1

    asyncio.run(main())


def test_status_reports_media_error() -> None:
    async def main():
        alice = make_peer(
            LocalBroker(),
            "alice",
            "bob",
            media=FakeMediaDevices(error=DeviceUnavailable("no microphone")),
        )
        await alice.session.open()
        seen = []
        alice.controller.add_listener(seen.append)

        assert not await alice.controller.start_call()
        status = alice.controller.status
        assert status.phase == CallPhase.IDLE
        assert status.connection_error == "Cannot start voice call: no microphone"
        assert not status.retry_available
        assert seen and seen[-1].connection_error == status.connection_error

    asyncio.run(main())


STALE = {"candidate": "candidate:1 1 udp 1 10.9.9.9 9999 typ host", "sdpMid": "0", "sdpMLineIndex": 0}


def test_initiator_drops_candidates_from_failed_attempt() -> None:
    async def main():
        alice, bob = await connected_pair(LocalBroker(), grace_delay=0.02)

        alice.pc.emit_state("failed")
        await settle(alice, bob)
        await bob.session.channel.send(build_ice_candidate("bob", "alice", STALE))
        await settle(alice, bob)
        assert alice.session.pending_candidates == 0

        assert await alice.controller.start_call()
        await asyncio.sleep(0.05)
        await settle(alice, bob)

        assert len(alice.factory.created) == 2
        assert alice.pc.remote_description == bob.pc.local_description
        assert STALE not in alice.pc.candidates

    asyncio.run(main())


def test_responder_restart_starts_with_empty_candidate_queue() -> None:
    async def main():
        alice, bob = await connected_pair(LocalBroker())

        bob.pc.emit_state("failed")
        await settle(alice, bob)
        await alice.session.channel.send(build_ice_candidate("alice", "bob", STALE))
        await settle(alice, bob)

        assert await bob.controller.start_call()
        await settle(alice, bob)

        assert len(bob.factory.created) == 2
        assert bob.pc.remote_description == alice.pc.local_description
        assert STALE not in bob.pc.candidates
        assert bob.session.pending_candidates == 0

    asyncio.run(main())
