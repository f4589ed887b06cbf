"""CompletionGate: single-flight latch for the terminal outcome of one delivery."""

from __future__ import annotations

import threading

import structlog

logger = structlog.get_logger()


class CompletionGate:
    """Exactly one of {success, failure, timeout, interrupt} may close the gate.

    try_close() never awaits, so tasks on one event loop cannot interleave
    inside it; the lock also covers callers on other threads (executor
    callbacks). Callers that get False must not touch the record or the
    status surface again.
    """

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._lock = threading.Lock()
        self._closed = False
        self._winner: str | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def winner(self) -> str | None:
        """Outcome label passed by the caller that closed the gate."""
        return self._winner

    def try_close(self, outcome: str = "") -> bool:
        with self._lock:
            if self._closed:
                won = False
            else:
                self._closed = True
                self._winner = outcome or None
                won = True
        if won:
            logger.info("gate_closed", gate=self._name, outcome=outcome)
        else:
            logger.debug("gate_close_dropped", gate=self._name, outcome=outcome, winner=self._winner)
        return won
