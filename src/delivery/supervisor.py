"""TimeoutSupervisor: races a deadline against the CompletionGate."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from src.delivery.gate import CompletionGate

logger = structlog.get_logger()

DEFAULT_DEADLINE_S = 180.0

TIMEOUT_OUTCOME = "timeout"


class TimeoutSupervisor:
    """Force-closes the gate with a timeout outcome once the deadline elapses.

    The supervisor never cancels the network operation; it only stops the
    coordinator from waiting for it.
    """

    def __init__(self, deadline_s: float = DEFAULT_DEADLINE_S) -> None:
        self._deadline_s = deadline_s
        self.fired = False

    @property
    def deadline_s(self) -> float:
        return self._deadline_s

    async def race(
        self,
        gate: CompletionGate,
        on_timeout: Callable[[], Awaitable[None]],
        deadline_s: float | None = None,
    ) -> bool:
        """Sleep until the deadline, then try to close the gate.

        Returns True if this supervisor won the gate and ran ``on_timeout``.
        """
        deadline = self._deadline_s if deadline_s is None else deadline_s
        await asyncio.sleep(deadline)
        if not gate.try_close(TIMEOUT_OUTCOME):
            logger.debug("timeout_supervisor_noop", deadline_s=deadline)
            return False
        self.fired = True
        logger.warning("delivery_deadline_elapsed", deadline_s=deadline)
        await on_timeout()
        return True
