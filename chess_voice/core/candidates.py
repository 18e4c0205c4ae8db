from __future__ import annotations

from collections import deque
from typing import Any, Dict


class IceCandidateQueue:
    """
    Remote ICE candidates that arrived before a remote description was set.

    Candidates are drained in arrival order once the description exists.
    The queue also remembers what has been applied so no candidate reaches
    the peer connection twice.
    """

    def __init__(self) -> None:
        self._pending: deque[Dict[str, Any]] = deque()
        self._applied: set[tuple] = set()

    def __len__(self) -> int:
        return len(self._pending)

    def push(self, candidate: Dict[str, Any]) -> None:
        self._pending.append(candidate)

    def drain(self) -> list[Dict[str, Any]]:
        """Pop every queued candidate, oldest first."""
        drained = list(self._pending)
        self._pending.clear()
        return drained

    def mark_applied(self, candidate: Dict[str, Any]) -> bool:
        """Record a candidate as applied. Returns False if it already was."""
        key = self._key(candidate)
        if key in self._applied:
            return False
        self._applied.add(key)
        return True

    def clear(self) -> None:
        self._pending.clear()
        self._applied.clear()

    @staticmethod
    def _key(candidate: Dict[str, Any]) -> tuple:
        return (
            candidate.get("candidate"),
            candidate.get("sdpMid"),
            candidate.get("sdpMLineIndex"),
        )
