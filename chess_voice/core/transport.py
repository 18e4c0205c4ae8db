"""
Publish/subscribe transports for the signaling channel.

A transport moves opaque payloads between participants sharing a topic:

- subscribe(topic, callback): callback(payload: bytes) for every message
  published on the topic by *another* endpoint (sender exclusion)
- unsubscribe(topic)
- publish(topic, payload): raises on failure, no delivery acknowledgment

Callbacks may run on any thread; the signaling channel marshals them onto
the asyncio loop.
"""

from __future__ import annotations

import threading
from typing import Callable, Dict

from chess_voice.logging_config import get_logger

logger = get_logger("core.transport")

Subscriber = Callable[[bytes], None]


class LocalBroker:
    """In-process hub connecting any number of LocalTransport endpoints."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, Dict["LocalTransport", Subscriber]] = {}

    def endpoint(self) -> "LocalTransport":
        return LocalTransport(self)

    def _subscribe(self, endpoint: "LocalTransport", topic: str, callback: Subscriber) -> None:
        with self._lock:
            self._subscriptions.setdefault(topic, {})[endpoint] = callback

    def _unsubscribe(self, endpoint: "LocalTransport", topic: str) -> None:
        with self._lock:
            subscribers = self._subscriptions.get(topic, {})
            subscribers.pop(endpoint, None)
            if not subscribers:
                self._subscriptions.pop(topic, None)

    def _publish(self, sender: "LocalTransport", topic: str, payload: bytes) -> int:
        with self._lock:
            targets = [
                callback
                for endpoint, callback in self._subscriptions.get(topic, {}).items()
                if endpoint is not sender
            ]
        for callback in targets:
            callback(payload)
        return len(targets)


class LocalTransport:
    def __init__(self, broker: LocalBroker) -> None:
        self.broker = broker
        self._closed = False

    def subscribe(self, topic: str, callback: Subscriber) -> None:
        self.broker._subscribe(self, topic, callback)

    def unsubscribe(self, topic: str) -> None:
        self.broker._unsubscribe(self, topic)

    def publish(self, topic: str, payload: bytes) -> None:
        if self._closed:
            raise ConnectionError("Local transport is closed")
        delivered = self.broker._publish(self, topic, payload)
        logger.debug(f"Published {len(payload)} bytes on {topic} to {delivered} peer(s)")

    def close(self) -> None:
        self._closed = True
