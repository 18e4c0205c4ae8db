from __future__ import annotations

from typing import Callable, Optional

from chess_voice.core.call_state import CallPhase, CallState
from chess_voice.logging_config import get_logger

logger = get_logger("core.supervisor")


class RetrySupervisor:
    """
    Decides when the user may retry a call.

    A retry is offered exactly while the call is FAILED. A DISCONNECTED
    connection is left to recover by itself and never offers a retry.
    Nothing here retries automatically; retries are counted when the user
    asks for one.
    """

    def __init__(self) -> None:
        self.retry_available = False
        self.last_failure: Optional[str] = None
        self.failures = 0
        self.retries = 0
        self.on_retry_available: Optional[Callable[[bool], None]] = None
        self._last_phase = CallPhase.IDLE

    def observe(self, state: CallState) -> None:
        if state.phase != self._last_phase:
            if state.phase == CallPhase.FAILED:
                self.failures += 1
                self.last_failure = state.reason
                logger.warning(f"Call failed ({state.reason}); retry available")
            elif state.phase == CallPhase.DISCONNECTED:
                logger.info("Connection interrupted; waiting for it to recover")
            elif state.phase == CallPhase.CONNECTED and self._last_phase == CallPhase.DISCONNECTED:
                logger.info("Connection recovered")
            self._last_phase = state.phase

        available = state.retry_available
        if available != self.retry_available:
            self.retry_available = available
            if self.on_retry_available:
                self.on_retry_available(available)

    def record_retry(self) -> bool:
        """Count a user retry. Returns False when no retry is on offer."""
        if not self.retry_available:
            logger.info("Retry requested but the call has not failed")
            return False
        self.retries += 1
        logger.info(f"Retrying call (attempt {self.retries}, last failure: {self.last_failure})")
        return True
