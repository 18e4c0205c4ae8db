"""
Signaling channel adapter.

Wraps a publish/subscribe transport topic and delivers addressed
SignalingMessages to one in-process handler. Messages not addressed to the
local participant, self-echoes and duplicates are dropped here, so the
session only ever sees traffic meant for it.

Sending is best-effort: voice chat must never block the game, so delivery
failures are logged and reported as False rather than raised.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

from chess_voice.core.message_filter import SignalingMessageFilter
from chess_voice.core.signaling import SignalingMessage
from chess_voice.logging_config import get_logger

logger = get_logger("core.channel")


class SignalingChannel:
    def __init__(
        self,
        transport,
        local_id: str,
        remote_id: str,
        dupe_window_sec: float = 1.0,
    ) -> None:
        self.transport = transport
        self.local_id = local_id
        self.remote_id = remote_id
        self.filter = SignalingMessageFilter(local_id, remote_id, dupe_window_sec)
        self.topic: Optional[str] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._on_message: Optional[Callable[[SignalingMessage], None]] = None

    @property
    def is_subscribed(self) -> bool:
        return self.topic is not None

    async def subscribe(
        self, topic: str, on_message: Callable[[SignalingMessage], None]
    ) -> None:
        """
        Register the handler for every message on `topic`.

        The handler runs on the event loop this coroutine was awaited on,
        whichever thread the transport delivers from.
        """
        if self.topic is not None:
            await self.unsubscribe()

        self._loop = asyncio.get_running_loop()
        self._on_message = on_message
        self.transport.subscribe(topic, self._on_raw)
        self.topic = topic
        logger.info(f"Signaling channel subscribed to {topic} as {self.local_id}")

    async def unsubscribe(self) -> None:
        if self.topic is None:
            return
        topic = self.topic
        self.topic = None
        self._on_message = None
        try:
            self.transport.unsubscribe(topic)
        except Exception as exc:
            logger.warning(f"Error unsubscribing from {topic}: {exc}")
        logger.info(f"Signaling channel left {topic}")

    async def send(self, message: SignalingMessage) -> bool:
        if self.topic is None:
            logger.warning(f"Dropping {message.msg_type} signal: channel not subscribed")
            return False
        try:
            self.transport.publish(self.topic, message.encode())
        except Exception as exc:
            logger.warning(f"Failed to send {message.msg_type} signal: {exc}")
            return False
        logger.debug(f"Sent {message.msg_type} to {message.to_id}")
        return True

    def _on_raw(self, payload: bytes) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._dispatch, payload)

    def _dispatch(self, payload: bytes) -> None:
        handler = self._on_message
        if handler is None:
            return

        try:
            message = SignalingMessage.decode(payload)
        except ValueError as exc:
            logger.warning(f"Dropping malformed signal: {exc}")
            return

        allowed, reason = self.filter.evaluate(message)
        if not allowed:
            logger.debug(
                f"Filtered {message.msg_type} from {message.from_id} to {message.to_id}: {reason}"
            )
            return

        logger.debug(f"Received {message.msg_type} from {message.from_id}")
        handler(message)
