"""
Peer session: negotiates one voice call with one remote participant.

Concurrency model:
- inbound signals, local commands and connection callbacks are posted as
  events to one asyncio.Queue and handled in order by a single runner task
- every connection callback is tagged with the attempt id it was created
  for; events from a torn-down attempt are dropped
- end() does not queue: it detaches the current attempt immediately, so a
  handler that resumes after an await sees it is stale and stops

Roles are fixed by participant id (see call_state.assign_role): the
initiator sends offers, the responder answers them.
"""

from __future__ import annotations

import asyncio
import itertools
import secrets
import weakref
from dataclasses import dataclass
from typing import Any, Callable, Optional

from chess_voice.core.call_state import (
    CallState,
    CallStateMachine,
    Role,
    SessionIdentity,
)
from chess_voice.core.candidates import IceCandidateQueue
from chess_voice.core.media import LocalMedia, MediaAcquisitionError
from chess_voice.core.signaling import (
    SignalingMessage,
    build_answer,
    build_ice_candidate,
    build_offer,
    build_ready,
)
from chess_voice.logging_config import get_logger

logger = get_logger("core.session")

CANNOT_START = "Cannot start voice call"
CONNECTION_FAILED = "Connection failed"

StateListener = Callable[[CallState], None]


@dataclass
class CallAttempt:
    """Resources of one negotiation. Never reused after teardown."""

    attempt_id: int
    candidates: IceCandidateQueue
    local_media: Optional[LocalMedia] = None
    connection: Any = None
    playback: Any = None
    local_offer: Optional[dict[str, Any]] = None
    answer_applied: bool = False


@dataclass
class _Start:
    done: asyncio.Future


@dataclass
class _CreateOffer:
    done: asyncio.Future


@dataclass
class _Inbound:
    message: SignalingMessage


@dataclass
class _LocalCandidate:
    attempt_id: int
    candidate: dict[str, Any]


@dataclass
class _RemoteTrack:
    attempt_id: int
    track: Any


@dataclass
class _ConnectionStateChanged:
    attempt_id: int
    state: str


class PeerSession:
    def __init__(
        self,
        identity: SessionIdentity,
        channel,
        media,
        connection_factory: Callable[[list[str]], Any],
        stun_servers: list[str],
        auto_answer: bool = True,
    ) -> None:
        self.identity = identity
        self.channel = channel
        self.media = media
        self.connection_factory = connection_factory
        self.stun_servers = list(stun_servers)
        self.auto_answer = auto_answer

        self.machine = CallStateMachine()
        self.machine.on_state_changed = self._on_state_changed
        self._listeners: list[StateListener] = []

        self._attempt: Optional[CallAttempt] = None
        self._attempt_ids = itertools.count(1)
        self._candidates = IceCandidateQueue()
        self._remote_ready = asyncio.Event()
        self._mic_enabled = True
        self._playback_muted = False
        self._local_meter: Optional[weakref.ref] = None
        self._remote_meter: Optional[weakref.ref] = None

        self._events: asyncio.Queue = asyncio.Queue()
        self._runner: Optional[asyncio.Task] = None

    # -- public surface -------------------------------------------------

    @property
    def role(self) -> Role:
        return self.identity.role

    @property
    def state(self) -> CallState:
        return self.machine.state

    @property
    def is_subscribed(self) -> bool:
        return self.channel.is_subscribed

    @property
    def remote_ready(self) -> bool:
        return self._remote_ready.is_set()

    @property
    def connection(self) -> Any:
        return self._attempt.connection if self._attempt else None

    @property
    def pending_candidates(self) -> int:
        return len(self._candidates)

    @property
    def has_local_track(self) -> bool:
        return self._attempt is not None and self._attempt.local_media is not None

    @property
    def microphone_enabled(self) -> bool:
        return self._mic_enabled

    @property
    def playback_muted(self) -> bool:
        return self._playback_muted

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def open(self) -> None:
        """Start the event runner and subscribe to the game's voice topic."""
        if self._runner is None:
            self._runner = asyncio.get_running_loop().create_task(
                self._run(), name=f"voice-session-{self.identity.topic}"
            )
        await self.channel.subscribe(self.identity.topic, self._on_message)
        logger.info(
            f"Voice session open on {self.identity.topic} as {self.role.value} "
            f"({self.identity.local_id} -> {self.identity.remote_id})"
        )

    async def close(self) -> None:
        await self.end()
        await self.channel.unsubscribe()
        runner = self._runner
        self._runner = None
        if runner is not None:
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass
        logger.info("Voice session closed")

    async def start(self) -> bool:
        """
        Acquire the microphone, enter NEGOTIATING and announce readiness.

        Returns:
            False when the call could not be started (see state.reason)
        """
        return await self._command(_Start)

    async def request_offer(self) -> bool:
        """Initiator only: create the connection and send the offer."""
        return await self._command(_CreateOffer)

    async def end(self) -> None:
        """Tear down the current call. Safe to call in any state, any number of times."""
        attempt = self._attempt
        self._attempt = None
        self._drain_events()
        self._candidates = IceCandidateQueue()
        self._local_meter = None
        self._remote_meter = None
        self._mic_enabled = True
        self._playback_muted = False
        self._set_remote_ready(False)
        self.machine.reset()
        if attempt is not None:
            logger.info(f"Ending call attempt {attempt.attempt_id}")
            await self._release(attempt)

    async def settle(self) -> None:
        """Wait until every queued event has been handled."""
        await self._events.join()

    async def wait_for_remote_ready(self, timeout: float) -> bool:
        if self._remote_ready.is_set():
            return True
        try:
            await asyncio.wait_for(self._remote_ready.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def set_microphone_enabled(self, enabled: bool) -> None:
        self._mic_enabled = enabled
        attempt = self._attempt
        if attempt is not None and attempt.local_media is not None:
            attempt.local_media.track.enabled = enabled
        logger.info(f"Microphone {'enabled' if enabled else 'muted'}")

    def set_playback_muted(self, muted: bool) -> None:
        self._playback_muted = muted
        attempt = self._attempt
        if attempt is not None and attempt.playback is not None:
            attempt.playback.muted = muted
        logger.info(f"Playback {'muted' if muted else 'unmuted'}")

    def audio_levels(self) -> tuple[float, float]:
        """(local, remote) RMS levels in [0, 1]; 0.0 once a meter is gone."""
        local = self._local_meter() if self._local_meter else None
        remote = self._remote_meter() if self._remote_meter else None
        return (
            local.level if local is not None else 0.0,
            remote.level if remote is not None else 0.0,
        )

    # -- event plumbing -------------------------------------------------

    def _post(self, event) -> None:
        self._events.put_nowait(event)

    async def _command(self, event_type) -> bool:
        if self._runner is None:
            raise RuntimeError("Voice session is not open")
        done = asyncio.get_running_loop().create_future()
        self._post(event_type(done))
        return await done

    def _drain_events(self) -> None:
        while True:
            try:
                event = self._events.get_nowait()
            except asyncio.QueueEmpty:
                break
            done = getattr(event, "done", None)
            if done is not None and not done.done():
                done.set_result(False)
            self._events.task_done()

    def _on_message(self, message: SignalingMessage) -> None:
        self._post(_Inbound(message))

    async def _run(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self._handle(event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Error handling {type(event).__name__}: {exc}", exc_info=True)
                await self._fail(f"Negotiation error: {exc}")
            finally:
                done = getattr(event, "done", None)
                if done is not None and not done.done():
                    done.set_result(False)
                self._events.task_done()

    async def _handle(self, event) -> None:
        if isinstance(event, _Start):
            event.done.set_result(await self._handle_start())
        elif isinstance(event, _CreateOffer):
            event.done.set_result(await self._handle_create_offer())
        elif isinstance(event, _Inbound):
            await self._handle_inbound(event.message)
        elif isinstance(event, _LocalCandidate):
            if self._current(event.attempt_id):
                await self.channel.send(
                    build_ice_candidate(
                        self.identity.local_id, self.identity.remote_id, event.candidate
                    )
                )
        elif isinstance(event, _RemoteTrack):
            attempt = self._current(event.attempt_id)
            if attempt is not None:
                await self._attach_remote_track(attempt, event.track)
        elif isinstance(event, _ConnectionStateChanged):
            attempt = self._current(event.attempt_id)
            if attempt is not None:
                await self._handle_connection_state(attempt, event.state)

    def _current(self, attempt_id: int) -> Optional[CallAttempt]:
        attempt = self._attempt
        if attempt is None or attempt.attempt_id != attempt_id:
            logger.debug(f"Dropping event for stale attempt {attempt_id}")
            return None
        return attempt

    def _is_current(self, attempt: CallAttempt) -> bool:
        return self._attempt is attempt

    # -- commands -------------------------------------------------------

    async def _handle_start(self) -> bool:
        if self.machine.state.is_active:
            logger.info("Start ignored: call already in progress")
            return False

        self.machine.reset()
        self._candidates = IceCandidateQueue()
        attempt = self._new_attempt()
        media = await self._acquire_media(attempt)
        if media is None:
            return False

        self.machine.start_negotiation(self.role)
        await self.channel.send(
            build_ready(
                self.identity.local_id,
                self.identity.remote_id,
                session=secrets.token_hex(8),
            )
        )
        return True

    async def _handle_create_offer(self) -> bool:
        if self.role != Role.INITIATOR:
            logger.warning("Only the initiator sends offers")
            return False
        attempt = self._attempt
        if attempt is None or not self.machine.state.is_active:
            logger.debug("No call attempt to offer for")
            return False
        if attempt.connection is not None:
            logger.debug("Offer already created for this attempt")
            return False
        await self._send_offer(attempt)
        return True

    # -- inbound signals ------------------------------------------------

    async def _handle_inbound(self, message: SignalingMessage) -> None:
        if message.msg_type == "ready":
            await self._on_ready()
        elif message.msg_type == "offer":
            await self._on_offer(message.data)
        elif message.msg_type == "answer":
            await self._on_answer(message.data)
        elif message.msg_type == "ice-candidate":
            await self._on_remote_candidate(message.data)

    async def _on_ready(self) -> None:
        attempt = self._attempt
        self._set_remote_ready(True)

        if self.role == Role.INITIATOR:
            if attempt is None or not self.machine.state.is_active:
                logger.info("Remote participant is ready")
                return
            if attempt.local_offer is None:
                logger.info("Remote participant is ready; offer can go out")
                return
            if not attempt.answer_applied:
                logger.info("Remote participant ready again; resending offer")
                await self.channel.send(
                    build_offer(
                        self.identity.local_id, self.identity.remote_id, attempt.local_offer
                    )
                )
                return
            logger.info("Remote participant restarted; renegotiating")
            fresh = await self._replace_attempt(attempt)
            if fresh is None:
                return
            self.machine.restart_negotiation()
            await self._send_offer(fresh)
            return

        if attempt is not None and attempt.connection is not None:
            logger.info("Initiator restarted; waiting for a new offer")
            fresh = await self._replace_attempt(attempt)
            if fresh is not None:
                self.machine.restart_negotiation()
        else:
            logger.info("Remote participant is ready")

    async def _on_offer(self, description: dict[str, Any]) -> None:
        if self.role != Role.RESPONDER:
            logger.warning("Ignoring offer: this side is the initiator")
            return

        attempt = self._attempt
        if attempt is not None and attempt.connection is not None:
            logger.info("Ignoring duplicate offer: connection already exists")
            return

        if attempt is None:
            if not self.auto_answer:
                logger.info("Ignoring offer while idle (auto-answer disabled)")
                return
            logger.info("Answering incoming call")
            attempt = self._new_attempt()

        if attempt.local_media is None:
            if await self._acquire_media(attempt) is None:
                return

        if not self.machine.state.is_active:
            self.machine.start_negotiation(self.role)

        connection = self._create_connection(attempt)
        await connection.set_remote_description(description)
        if not self._is_current(attempt):
            return
        await self._drain_candidates(attempt)
        if not self._is_current(attempt):
            return

        answer = await connection.create_answer()
        if not self._is_current(attempt):
            return
        await self.channel.send(
            build_answer(self.identity.local_id, self.identity.remote_id, answer)
        )

    async def _on_answer(self, description: dict[str, Any]) -> None:
        if self.role != Role.INITIATOR:
            logger.warning("Ignoring answer: this side is the responder")
            return

        attempt = self._attempt
        if attempt is None or attempt.connection is None or attempt.local_offer is None:
            logger.info("Ignoring answer: no offer in flight")
            return
        if attempt.answer_applied:
            logger.debug("Ignoring answer: already applied")
            return

        attempt.answer_applied = True
        await attempt.connection.set_remote_description(description)
        if self._is_current(attempt):
            await self._drain_candidates(attempt)

    async def _on_remote_candidate(self, candidate: dict[str, Any]) -> None:
        attempt = self._attempt
        if attempt is None and (self.role == Role.INITIATOR or not self.auto_answer):
            # No offer can be in flight, so this belongs to an earlier attempt.
            logger.debug("Dropping remote candidate: no call attempt")
            return
        if (
            attempt is None
            or attempt.connection is None
            or not attempt.connection.has_remote_description()
        ):
            self._candidates.push(candidate)
            logger.debug(f"Queued remote candidate ({len(self._candidates)} pending)")
            return
        await self._apply_candidate(attempt, candidate)

    # -- connection callbacks -------------------------------------------

    async def _attach_remote_track(self, attempt: CallAttempt, track: Any) -> None:
        previous = attempt.playback
        if previous is not None:
            attempt.playback = None
            await previous.stop()
            if not self._is_current(attempt):
                return

        playback = self.media.open_playback(track)
        playback.muted = self._playback_muted
        attempt.playback = playback
        playback.start()
        self._remote_meter = weakref.ref(playback.meter)
        if attempt.local_media is not None:
            attempt.local_media.attach_far_end(playback.meter)

    async def _handle_connection_state(self, attempt: CallAttempt, state: str) -> None:
        if state == "connected":
            self.machine.mark_connected()
        elif state == "disconnected":
            # Transient; ICE may recover on its own.
            self.machine.mark_disconnected()
        elif state == "failed":
            await self._fail(CONNECTION_FAILED)

    # -- attempt lifecycle ----------------------------------------------

    def _new_attempt(self, local_media: Optional[LocalMedia] = None) -> CallAttempt:
        attempt = CallAttempt(
            attempt_id=next(self._attempt_ids),
            candidates=self._candidates,
            local_media=local_media,
        )
        self._attempt = attempt
        logger.debug(f"Call attempt {attempt.attempt_id} created")
        return attempt

    async def _replace_attempt(self, old: CallAttempt) -> Optional[CallAttempt]:
        """Fresh attempt (new connection, empty queue) keeping the microphone."""
        media = old.local_media
        old.local_media = None
        self._candidates = IceCandidateQueue()
        self._remote_meter = None
        fresh = self._new_attempt(media)
        await self._release(old)
        return fresh if self._is_current(fresh) else None

    async def _acquire_media(self, attempt: CallAttempt) -> Optional[LocalMedia]:
        try:
            media = await self.media.acquire()
        except MediaAcquisitionError as exc:
            logger.error(f"{CANNOT_START}: {exc}")
            if self._is_current(attempt):
                self._attempt = None
                self.machine.reset(reason=f"{CANNOT_START}: {exc}")
            return None

        if not self._is_current(attempt):
            media.close()
            return None

        attempt.local_media = media
        media.track.enabled = self._mic_enabled
        self._local_meter = weakref.ref(media.meter)
        return media

    def _create_connection(self, attempt: CallAttempt):
        connection = self.connection_factory(self.stun_servers)
        attempt_id = attempt.attempt_id
        connection.on_ice_candidate = lambda c: self._post(_LocalCandidate(attempt_id, c))
        connection.on_track = lambda t: self._post(_RemoteTrack(attempt_id, t))
        connection.on_connection_state = lambda s: self._post(
            _ConnectionStateChanged(attempt_id, s)
        )
        attempt.connection = connection
        connection.add_track(attempt.local_media.track)
        return connection

    async def _send_offer(self, attempt: CallAttempt) -> None:
        connection = self._create_connection(attempt)
        offer = await connection.create_offer()
        if not self._is_current(attempt):
            return
        attempt.local_offer = offer
        await self.channel.send(
            build_offer(self.identity.local_id, self.identity.remote_id, offer)
        )

    async def _drain_candidates(self, attempt: CallAttempt) -> None:
        for candidate in attempt.candidates.drain():
            if not self._is_current(attempt):
                return
            await self._apply_candidate(attempt, candidate)

    async def _apply_candidate(self, attempt: CallAttempt, candidate: dict[str, Any]) -> None:
        if not attempt.candidates.mark_applied(candidate):
            logger.debug("Skipping candidate already applied")
            return
        try:
            await attempt.connection.add_ice_candidate(candidate)
        except Exception as exc:
            logger.warning(f"Failed to add remote candidate: {exc}")

    async def _fail(self, reason: str) -> None:
        attempt = self._attempt
        self._attempt = None
        self._candidates = IceCandidateQueue()
        self._remote_meter = None
        if self.machine.state.is_active:
            self.machine.mark_failed(reason)
        else:
            self.machine.reset(reason=reason)
        if attempt is not None:
            logger.warning(f"Call attempt {attempt.attempt_id} failed: {reason}")
            await self._release(attempt)

    async def _release(self, attempt: CallAttempt) -> None:
        connection = attempt.connection
        attempt.connection = None
        if connection is not None:
            connection.on_ice_candidate = None
            connection.on_track = None
            connection.on_connection_state = None
            try:
                await connection.close()
            except Exception as exc:
                logger.error(f"Error closing peer connection: {exc}")

        playback = attempt.playback
        attempt.playback = None
        if playback is not None:
            try:
                await playback.stop()
            except Exception as exc:
                logger.error(f"Error stopping playback: {exc}")

        media = attempt.local_media
        attempt.local_media = None
        if media is not None:
            try:
                media.close()
            except Exception as exc:
                logger.error(f"Error releasing microphone: {exc}")

    # -- notifications --------------------------------------------------

    def _set_remote_ready(self, ready: bool) -> None:
        if ready == self._remote_ready.is_set():
            return
        if ready:
            self._remote_ready.set()
        else:
            self._remote_ready.clear()
        self._notify()

    def _on_state_changed(self, state: CallState) -> None:
        logger.info(
            f"Call state: {state.phase.name}"
            + (f" ({state.reason})" if state.reason else "")
        )
        self._notify()

    def _notify(self) -> None:
        state = self.machine.state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as exc:
                logger.error(f"Error in state listener: {exc}", exc_info=True)
