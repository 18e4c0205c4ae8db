"""
Qt bridge for the voice call controller.

The call stack (signaling, aiortc, audio pumps) runs on an asyncio loop in a
background thread. VoiceChatBridge exposes it to Qt code:

Signals (emitted from the loop thread, delivered queued to Qt receivers):
- status_changed(VoiceCallStatus)
- connected_changed(bool)
- levels_changed(local, remote)
- error_changed(message), "" when the error clears
- retry_available_changed(bool)

Slots (callable from the Qt thread) hop onto the loop before touching the
controller.
"""

from __future__ import annotations

import asyncio
import threading
from concurrent.futures import Future
from typing import Any, Callable, Coroutine

from PySide6.QtCore import QObject, Signal, Slot

from chess_voice.core.controller import CallController, VoiceCallStatus
from chess_voice.logging_config import get_logger

logger = get_logger("ui.voice_bridge")


class EventLoopThread:
    """An asyncio event loop running forever on a daemon thread."""

    def __init__(self, name: str = "chess-voice-asyncio") -> None:
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    @property
    def is_running(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        asyncio.set_event_loop(self.loop)
        logger.debug("asyncio loop thread started")
        self.loop.run_forever()
        logger.debug("asyncio loop thread stopped")

    def submit(self, coro: Coroutine[Any, Any, Any]) -> Future:
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def call(self, callback: Callable[..., Any], *args: Any) -> None:
        self.loop.call_soon_threadsafe(callback, *args)

    def stop(self, timeout: float = 5.0) -> None:
        if self.loop.is_closed():
            return
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("asyncio loop thread did not stop in time")
            return
        self.loop.close()


class VoiceChatBridge(QObject):
    status_changed = Signal(object)  # VoiceCallStatus
    connected_changed = Signal(bool)
    levels_changed = Signal(float, float)  # local, remote (0.0-1.0)
    error_changed = Signal(str)  # "" when cleared
    retry_available_changed = Signal(bool)

    def __init__(self, controller: CallController, loop_thread: EventLoopThread):
        super().__init__()
        self.controller = controller
        self.loop_thread = loop_thread
        self._last = VoiceCallStatus()
        controller.add_listener(self._on_status)

    @property
    def status(self) -> VoiceCallStatus:
        return self._last

    def _on_status(self, status: VoiceCallStatus) -> None:
        previous = self._last
        self._last = status

        self.status_changed.emit(status)
        if status.is_connected != previous.is_connected:
            self.connected_changed.emit(status.is_connected)
        if (status.local_level, status.remote_level) != (
            previous.local_level,
            previous.remote_level,
        ):
            self.levels_changed.emit(status.local_level, status.remote_level)
        if status.connection_error != previous.connection_error:
            self.error_changed.emit(status.connection_error or "")
        if status.retry_available != previous.retry_available:
            self.retry_available_changed.emit(status.retry_available)

    @Slot()
    def start_call(self) -> None:
        self._submit(self.controller.start_call(), "start call")

    @Slot()
    def end_call(self) -> None:
        self._submit(self.controller.end_call(), "end call")

    @Slot()
    def retry_connection(self) -> None:
        self._submit(self.controller.retry_connection(), "retry")

    @Slot()
    def toggle_mute(self) -> None:
        self.loop_thread.call(self.controller.toggle_mute)

    @Slot()
    def toggle_deafen(self) -> None:
        self.loop_thread.call(self.controller.toggle_deafen)

    @Slot()
    def shutdown(self) -> None:
        """End the call, leave the topic and stop the loop. Blocks briefly."""
        if self.loop_thread.loop.is_closed():
            return
        future = self.loop_thread.submit(self._close())
        try:
            future.result(timeout=5.0)
        except Exception as exc:
            logger.error(f"Error during voice shutdown: {exc}")
        self.loop_thread.stop()

    async def _close(self) -> None:
        await self.controller.close()
        await self.controller.session.close()

    def _submit(self, coro: Coroutine[Any, Any, Any], action: str) -> None:
        future = self.loop_thread.submit(coro)

        def _done(fut: Future) -> None:
            if fut.cancelled():
                return
            exc = fut.exception()
            if exc is not None:
                logger.error(f"Voice {action} failed: {exc}")

        future.add_done_callback(_done)
