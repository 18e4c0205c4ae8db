import pytest

from chess_voice.core.call_state import (
    CallPhase,
    CallState,
    CallStateMachine,
    Role,
    SessionIdentity,
    assign_role,
    topic_for_game,
)


def test_role_assignment_is_deterministic_and_complementary() -> None:
    assert assign_role("alice", "bob") == Role.INITIATOR
    assert assign_role("bob", "alice") == Role.RESPONDER
    assert assign_role("user-10", "user-9") == Role.INITIATOR


def test_equal_ids_are_rejected() -> None:
    with pytest.raises(ValueError):
        assign_role("same", "same")


def test_topic_is_derived_from_game_id() -> None:
    assert topic_for_game("g1") == "voice-g1"
    identity = SessionIdentity(local_id="bob", remote_id="alice", game_id="g1")
    assert identity.topic == "voice-g1"
    assert identity.role == Role.RESPONDER
    with pytest.raises(ValueError):
        topic_for_game("")


def test_happy_path_transitions() -> None:
    machine = CallStateMachine()
    seen = []
    machine.on_state_changed = seen.append

    machine.start_negotiation(Role.INITIATOR)
    machine.mark_connected()
    machine.mark_disconnected()
    machine.mark_connected()
    machine.reset()

    assert [s.phase for s in seen] == [
        CallPhase.NEGOTIATING,
        CallPhase.CONNECTED,
        CallPhase.DISCONNECTED,
        CallPhase.CONNECTED,
        CallPhase.IDLE,
    ]
    assert seen[1].role == Role.INITIATOR


def test_failed_allows_only_new_negotiation() -> None:
    machine = CallStateMachine()
    machine.start_negotiation(Role.RESPONDER)
    machine.mark_failed("Connection failed")

    assert machine.state.retry_available
    assert machine.state.reason == "Connection failed"
    with pytest.raises(RuntimeError):
        machine.mark_connected()

    machine.start_negotiation(Role.RESPONDER)
    assert machine.state.is_connecting
    assert machine.state.reason is None


def test_connected_requires_negotiation() -> None:
    machine = CallStateMachine()
    with pytest.raises(RuntimeError):
        machine.mark_connected()
    with pytest.raises(RuntimeError):
        machine.restart_negotiation()


def test_cannot_start_while_active() -> None:
    machine = CallStateMachine()
    machine.start_negotiation(Role.INITIATOR)
    with pytest.raises(RuntimeError):
        machine.start_negotiation(Role.INITIATOR)


def test_reset_is_idempotent() -> None:
    machine = CallStateMachine()
    seen = []
    machine.on_state_changed = seen.append

    machine.reset()
    machine.reset()
    assert seen == []

    machine.reset(reason="Cannot start voice call: denied")
    assert machine.state == CallState(reason="Cannot start voice call: denied")
    machine.reset()
    assert machine.state == CallState()
    assert len(seen) == 2
