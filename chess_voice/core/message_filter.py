from __future__ import annotations

import hashlib
import json
import time
from typing import Tuple

from chess_voice.core.signaling import SignalingMessage

Decision = Tuple[bool, str]


class SignalingMessageFilter:
    """
    Stateless-ish helper that enforces addressing and duplicate suppression
    for signaling messages before they are handed to the session.
    """

    def __init__(self, local_id: str, remote_id: str, dupe_window_sec: float = 1.0) -> None:
        self.local_id = local_id
        self.remote_id = remote_id
        self.dupe_window_sec = dupe_window_sec
        self._recent: dict[tuple[str, str, str], float] = {}

    def evaluate(self, msg: SignalingMessage) -> Decision:
        """
        Returns (allowed, reason).
        Reasons (when allowed is False):
        - self_echo
        - not_for_us
        - unknown_sender
        - duplicate
        """

        if msg.from_id == self.local_id:
            return False, "self_echo"

        if msg.to_id != self.local_id:
            return False, "not_for_us"

        if msg.from_id != self.remote_id:
            return False, "unknown_sender"

        now = time.time()
        self._expire(now)
        key = (msg.from_id, msg.msg_type, self._digest(msg))
        last_seen = self._recent.get(key)
        if last_seen and (now - last_seen) < self.dupe_window_sec:
            return False, "duplicate"
        self._recent[key] = now

        return True, "ok"

    def _expire(self, now: float) -> None:
        stale = [k for k, ts in self._recent.items() if now - ts >= self.dupe_window_sec]
        for key in stale:
            del self._recent[key]

    @staticmethod
    def _digest(msg: SignalingMessage) -> str:
        body = json.dumps([msg.data, msg.session], sort_keys=True).encode("utf-8")
        return hashlib.sha256(body).hexdigest()
