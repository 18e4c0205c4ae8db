from __future__ import annotations

from enum import Enum, auto
from dataclasses import dataclass
from typing import Optional, Callable


class CallPhase(Enum):
    IDLE = auto()
    NEGOTIATING = auto()
    CONNECTED = auto()
    DISCONNECTED = auto()
    FAILED = auto()


class Role(Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


def assign_role(local_id: str, remote_id: str) -> Role:
    """
    Decide who sends the offer.

    The lexicographically smaller participant id is the initiator, so both
    sides reach the same answer without exchanging a message.
    """
    if local_id == remote_id:
        raise ValueError("Local and remote participant ids must differ")
    return Role.INITIATOR if local_id < remote_id else Role.RESPONDER


def topic_for_game(game_id: str, prefix: str = "voice-") -> str:
    if not game_id:
        raise ValueError("game_id must not be empty")
    return f"{prefix}{game_id}"


@dataclass(frozen=True)
class SessionIdentity:
    local_id: str
    remote_id: str
    game_id: str
    topic_prefix: str = "voice-"

    @property
    def topic(self) -> str:
        return topic_for_game(self.game_id, self.topic_prefix)

    @property
    def role(self) -> Role:
        return assign_role(self.local_id, self.remote_id)


@dataclass(frozen=True)
class CallState:
    phase: CallPhase = CallPhase.IDLE
    role: Optional[Role] = None
    reason: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self.phase == CallPhase.CONNECTED

    @property
    def is_connecting(self) -> bool:
        return self.phase == CallPhase.NEGOTIATING

    @property
    def is_active(self) -> bool:
        return self.phase in (
            CallPhase.NEGOTIATING,
            CallPhase.CONNECTED,
            CallPhase.DISCONNECTED,
        )

    @property
    def retry_available(self) -> bool:
        return self.phase == CallPhase.FAILED


_ALLOWED = {
    CallPhase.IDLE: {CallPhase.NEGOTIATING},
    CallPhase.NEGOTIATING: {
        CallPhase.NEGOTIATING,
        CallPhase.CONNECTED,
        CallPhase.DISCONNECTED,
        CallPhase.FAILED,
    },
    CallPhase.CONNECTED: {
        CallPhase.NEGOTIATING,
        CallPhase.DISCONNECTED,
        CallPhase.FAILED,
    },
    CallPhase.DISCONNECTED: {
        CallPhase.NEGOTIATING,
        CallPhase.CONNECTED,
        CallPhase.FAILED,
    },
    CallPhase.FAILED: {CallPhase.NEGOTIATING},
}


class CallStateMachine:
    """
    Voice call state machine.
    This is pure logic: no networking, no audio, just state transitions.
    The session drives it; UI code can subscribe to on_state_changed.

    Teardown (reset) is legal from every phase and always lands in IDLE.
    """

    def __init__(self) -> None:
        self.state: CallState = CallState()
        self.on_state_changed: Optional[Callable[[CallState], None]] = None

    @property
    def phase(self) -> CallPhase:
        return self.state.phase

    def _set_state(self, state: CallState) -> None:
        self.state = state
        if self.on_state_changed:
            self.on_state_changed(self.state)

    def _transition(
        self, phase: CallPhase, role: Optional[Role], reason: Optional[str] = None
    ) -> None:
        if phase not in _ALLOWED[self.state.phase]:
            raise RuntimeError(
                f"Illegal call transition {self.state.phase.name} -> {phase.name}"
            )
        self._set_state(CallState(phase=phase, role=role, reason=reason))

    def start_negotiation(self, role: Role) -> None:
        if self.state.is_active:
            raise RuntimeError("Cannot start a new call while another call is active.")
        self._transition(CallPhase.NEGOTIATING, role)

    def restart_negotiation(self) -> None:
        """Fresh negotiation within the same call, after the remote side restarted."""
        if not self.state.is_active:
            raise RuntimeError("No active call to renegotiate.")
        self._transition(CallPhase.NEGOTIATING, self.state.role)

    def mark_connected(self) -> None:
        if self.state.phase == CallPhase.CONNECTED:
            return
        self._transition(CallPhase.CONNECTED, self.state.role)

    def mark_disconnected(self) -> None:
        if self.state.phase == CallPhase.DISCONNECTED:
            return
        self._transition(CallPhase.DISCONNECTED, self.state.role)

    def mark_failed(self, reason: str) -> None:
        self._transition(CallPhase.FAILED, self.state.role, reason)

    def reset(self, reason: Optional[str] = None) -> None:
        if self.state == CallState(reason=reason):
            return
        self._set_state(CallState(reason=reason))
