"""
Reticulum transport for voice-call signaling.

Topics: each subscriber owns a SINGLE destination named
  <app_name>.signal.<topic>
  and announces it with app_data {"app": <app_name>, "topic": <topic>}.
  Both players derive the same name from the game id, so the announce
  handler recognises peers on the same topic without any other handshake.

Publishing: encrypted packets to every peer destination discovered for the
  topic. Our own destinations are never targeted (sender exclusion).

Fragmentation: SDP bodies exceed one packet, so payloads are zlib-compressed
  and split into numbered fragments, reassembled on the receiving side.
"""

from __future__ import annotations

import json
import os
import struct
import threading
import time
import zlib
from typing import Callable, Dict, Optional

import RNS

from chess_voice.logging_config import get_logger

logger = get_logger("core.reticulum")

FRAGMENT_HEADER = struct.Struct("!8sBB")  # message id, index, count
MAX_FRAGMENTS = 255
MAX_PAYLOAD = 256 * 1024


def topic_aspect(topic: str) -> str:
    """RNS aspects may not contain dots."""
    return topic.replace(".", "_")


class Fragmenter:
    """Split payloads into packets no larger than `mdu` bytes."""

    def __init__(self, mdu: int) -> None:
        if mdu <= FRAGMENT_HEADER.size:
            raise ValueError(f"MDU {mdu} too small for fragment header")
        self.chunk_size = mdu - FRAGMENT_HEADER.size

    def split(self, payload: bytes) -> list[bytes]:
        body = zlib.compress(payload)
        chunks = [
            body[i : i + self.chunk_size] for i in range(0, len(body), self.chunk_size)
        ] or [b""]
        if len(chunks) > MAX_FRAGMENTS:
            raise ValueError(
                f"Payload of {len(payload)} bytes needs {len(chunks)} fragments "
                f"(limit: {MAX_FRAGMENTS})"
            )
        msg_id = os.urandom(8)
        return [
            FRAGMENT_HEADER.pack(msg_id, index, len(chunks)) + chunk
            for index, chunk in enumerate(chunks)
        ]


class Reassembler:
    """
    Collects fragments until a payload is complete.

    Partial payloads older than `timeout_sec` are discarded.
    """

    def __init__(self, timeout_sec: float = 10.0, max_payload: int = MAX_PAYLOAD) -> None:
        self.max_payload = max_payload
        self.timeout_sec = timeout_sec
        self._partial: Dict[bytes, tuple[float, int, Dict[int, bytes]]] = {}
        self._lock = threading.Lock()

    def push(self, fragment: bytes) -> Optional[bytes]:
        """
        Add a fragment.

        Returns:
            The complete payload once the last fragment arrives, else None
        """
        if len(fragment) < FRAGMENT_HEADER.size:
            raise ValueError("Fragment shorter than header")
        msg_id, index, count = FRAGMENT_HEADER.unpack_from(fragment)
        if count == 0 or index >= count:
            raise ValueError(f"Bad fragment numbering {index}/{count}")
        chunk = fragment[FRAGMENT_HEADER.size :]

        now = time.time()
        with self._lock:
            self._expire(now)
            first_seen, expected, parts = self._partial.setdefault(
                msg_id, (now, count, {})
            )
            if expected != count:
                raise ValueError("Fragment count changed mid-message")
            parts[index] = chunk
            if len(parts) < count:
                return None
            del self._partial[msg_id]

        body = b"".join(parts[i] for i in range(count))
        inflater = zlib.decompressobj()
        payload = inflater.decompress(body, self.max_payload)
        if inflater.unconsumed_tail:
            raise ValueError(f"Signaling payload exceeds {self.max_payload} bytes")
        return payload

    def pending(self) -> int:
        with self._lock:
            return len(self._partial)

    def _expire(self, now: float) -> None:
        stale = [
            msg_id
            for msg_id, (first_seen, _, _) in self._partial.items()
            if now - first_seen > self.timeout_sec
        ]
        for msg_id in stale:
            del self._partial[msg_id]
        if stale:
            logger.debug(f"Dropped {len(stale)} incomplete signaling payload(s)")


class TopicAnnounceHandler:
    """
    Handler for Reticulum announces of other subscribers on one topic.
    Registered with RNS.Transport while the topic is subscribed.
    """

    def __init__(self, transport: "ReticulumTransport", topic: str) -> None:
        self.transport = transport
        self.topic = topic
        self.aspect_filter = f"{transport.app_name}.signal.{topic_aspect(topic)}"

    def received_announce(self, destination_hash, announced_identity, app_data) -> None:
        try:
            if announced_identity is None:
                return
            if announced_identity.hash == self.transport.identity.hash:
                logger.debug("Ignoring our own announce")
                return

            if app_data:
                try:
                    data = json.loads(app_data.decode("utf-8"))
                except (json.JSONDecodeError, UnicodeDecodeError):
                    return
                if data.get("topic") != self.topic:
                    return

            self.transport._add_peer(self.topic, destination_hash, announced_identity)
        except Exception as exc:
            logger.error(f"Error in announce handler: {exc}", exc_info=True)


class ReticulumTransport:
    """
    Signaling transport over Reticulum.

    Callbacks are invoked on Reticulum's threads.
    """

    def __init__(
        self,
        identity: RNS.Identity,
        app_name: str = "chess_voice",
        fragment_timeout_sec: float = 10.0,
    ) -> None:
        self.identity = identity
        self.app_name = app_name
        self.fragmenter = Fragmenter(RNS.Packet.ENCRYPTED_MDU)
        self._reassembler = Reassembler(fragment_timeout_sec)
        self._destinations: Dict[str, RNS.Destination] = {}
        self._handlers: Dict[str, TopicAnnounceHandler] = {}
        self._peers: Dict[str, Dict[bytes, RNS.Destination]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, callback: Callable[[bytes], None]) -> None:
        if topic in self._destinations:
            self.unsubscribe(topic)

        destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            self.app_name,
            "signal",
            topic_aspect(topic),
        )

        def _on_packet(data: bytes, packet: RNS.Packet) -> None:
            try:
                payload = self._reassembler.push(data)
            except (ValueError, zlib.error) as exc:
                logger.warning(f"Dropping malformed signaling fragment: {exc}")
                return
            if payload is not None:
                callback(payload)

        destination.set_packet_callback(_on_packet)
        handler = TopicAnnounceHandler(self, topic)
        RNS.Transport.register_announce_handler(handler)

        with self._lock:
            self._destinations[topic] = destination
            self._handlers[topic] = handler
            self._peers.setdefault(topic, {})

        self._announce(topic)
        logger.info(
            f"Subscribed to {topic} at {RNS.prettyhexrep(destination.hash)}"
        )

    def unsubscribe(self, topic: str) -> None:
        with self._lock:
            destination = self._destinations.pop(topic, None)
            handler = self._handlers.pop(topic, None)
            self._peers.pop(topic, None)

        if handler is not None:
            RNS.Transport.deregister_announce_handler(handler)
        if destination is not None:
            destination.set_packet_callback(None)
            if hasattr(RNS.Transport, "deregister_destination"):
                RNS.Transport.deregister_destination(destination)
            logger.info(f"Unsubscribed from {topic}")

    def publish(self, topic: str, payload: bytes) -> None:
        with self._lock:
            peers = list(self._peers.get(topic, {}).values())
        if not peers:
            raise ConnectionError(f"No peers discovered on {topic} yet")

        fragments = self.fragmenter.split(payload)
        for destination in peers:
            for fragment in fragments:
                packet = RNS.Packet(destination, fragment)
                if packet.send() is False:
                    raise ConnectionError("RNS.Packet.send() returned False")
        logger.debug(
            f"Sent {len(payload)} bytes on {topic} as {len(fragments)} fragment(s) "
            f"to {len(peers)} peer(s)"
        )

    def _announce(self, topic: str) -> None:
        destination = self._destinations.get(topic)
        if destination is None:
            return
        app_data = json.dumps({"app": self.app_name, "topic": topic}).encode("utf-8")
        try:
            destination.announce(app_data=app_data)
            logger.debug(f"Announced subscription to {topic}")
        except Exception as exc:
            logger.error(f"Failed to announce {topic}: {exc}")

    def _add_peer(
        self, topic: str, destination_hash: bytes, identity: RNS.Identity
    ) -> None:
        with self._lock:
            peers = self._peers.get(topic)
            if peers is None or destination_hash in peers:
                return
            destination = RNS.Destination(
                identity,
                RNS.Destination.OUT,
                RNS.Destination.SINGLE,
                self.app_name,
                "signal",
                topic_aspect(topic),
            )
            if destination.hash != destination_hash:
                logger.warning(
                    f"Announced destination {RNS.prettyhexrep(destination_hash)} does not "
                    f"match {topic}; ignoring"
                )
                return
            peers[destination_hash] = destination

        logger.info(
            f"Discovered signaling peer {RNS.prettyhexrep(destination_hash)} on {topic}"
        )
        # Announce back once so a peer that subscribed after us learns our destination.
        self._announce(topic)
