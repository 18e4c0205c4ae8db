"""
Call controller: the surface the game UI talks to.

Wraps a PeerSession with the user-level operations (start, end, mute,
deafen, retry), the initiator's grace wait for the remote `ready`, and
periodic audio-level reporting while connected.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Optional

from chess_voice.core.call_state import CallPhase, CallState, Role
from chess_voice.core.supervisor import RetrySupervisor
from chess_voice.logging_config import get_logger

logger = get_logger("core.controller")

DEFAULT_GRACE_DELAY = 1.5
DEFAULT_METER_INTERVAL = 0.1


@dataclass(frozen=True)
class VoiceCallStatus:
    phase: CallPhase = CallPhase.IDLE
    is_connected: bool = False
    is_connecting: bool = False
    is_muted: bool = False
    is_deafened: bool = False
    connection_error: Optional[str] = None
    local_level: float = 0.0
    remote_level: float = 0.0
    retry_available: bool = False
    remote_ready: bool = False


StatusListener = Callable[[VoiceCallStatus], None]


class CallController:
    def __init__(
        self,
        session,
        grace_delay: float = DEFAULT_GRACE_DELAY,
        meter_interval: float = DEFAULT_METER_INTERVAL,
        supervisor: Optional[RetrySupervisor] = None,
    ) -> None:
        self.session = session
        self.grace_delay = grace_delay
        self.meter_interval = meter_interval
        self.supervisor = supervisor or RetrySupervisor()
        self._listeners: list[StatusListener] = []
        self._grace_task: Optional[asyncio.Task] = None
        self._meter_task: Optional[asyncio.Task] = None
        session.add_listener(self._on_session_state)

    @property
    def status(self) -> VoiceCallStatus:
        state = self.session.state
        local_level, remote_level = self.session.audio_levels()
        return VoiceCallStatus(
            phase=state.phase,
            is_connected=state.is_connected,
            is_connecting=state.is_connecting,
            is_muted=not self.session.microphone_enabled,
            is_deafened=self.session.playback_muted,
            connection_error=state.reason,
            local_level=local_level,
            remote_level=remote_level,
            retry_available=self.supervisor.retry_available,
            remote_ready=self.session.remote_ready,
        )

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    async def start_call(self) -> bool:
        state = self.session.state
        if state.is_connected or state.is_connecting:
            logger.info("Start ignored: call already connected or connecting")
            return False
        if not self.session.is_subscribed:
            logger.warning("Start ignored: signaling channel not subscribed")
            return False

        if not await self.session.start():
            return False

        if self.session.role == Role.INITIATOR:
            self._cancel_grace()
            self._grace_task = asyncio.get_running_loop().create_task(
                self._offer_after_grace(), name="voice-offer-grace"
            )
        return True

    async def end_call(self) -> None:
        grace = self._cancel_grace()
        if grace is not None:
            try:
                await grace
            except asyncio.CancelledError:
                pass
        await self.session.end()
        self._notify()

    def toggle_mute(self) -> bool:
        """Returns the new muted flag."""
        if not self.session.has_local_track:
            logger.debug("Mute ignored: no local audio track")
            return not self.session.microphone_enabled
        self.session.set_microphone_enabled(not self.session.microphone_enabled)
        self._notify()
        return not self.session.microphone_enabled

    def toggle_deafen(self) -> bool:
        """Returns the new deafened flag."""
        self.session.set_playback_muted(not self.session.playback_muted)
        self._notify()
        return self.session.playback_muted

    async def retry_connection(self) -> bool:
        if not self.supervisor.record_retry():
            return False
        await self.end_call()
        return await self.start_call()

    async def close(self) -> None:
        await self.end_call()
        self._stop_meter()

    async def _offer_after_grace(self) -> None:
        if not await self.session.wait_for_remote_ready(self.grace_delay):
            logger.info(
                f"Remote not ready after {self.grace_delay:.1f}s; sending offer anyway"
            )
        await self.session.request_offer()

    def _cancel_grace(self) -> Optional[asyncio.Task]:
        task = self._grace_task
        self._grace_task = None
        if task is not None and not task.done():
            task.cancel()
            return task
        return None

    def _on_session_state(self, state: CallState) -> None:
        self.supervisor.observe(state)
        if state.is_connected:
            self._start_meter()
        else:
            self._stop_meter()
        self._notify()

    def _start_meter(self) -> None:
        if self._meter_task is not None and not self._meter_task.done():
            return
        self._meter_task = asyncio.get_running_loop().create_task(
            self._meter_loop(), name="voice-level-meter"
        )

    def _stop_meter(self) -> None:
        task = self._meter_task
        self._meter_task = None
        if task is not None:
            task.cancel()

    async def _meter_loop(self) -> None:
        while self.session.state.is_connected:
            await asyncio.sleep(self.meter_interval)
            if self.session.state.is_connected:
                self._notify()

    def _notify(self) -> None:
        status = self.status
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as exc:
                logger.error(f"Error in status listener: {exc}", exc_info=True)
