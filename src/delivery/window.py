"""Background execution window and the scoped tokens drawn from it.

A process that hosts detached deliveries owns one BackgroundWindow. Each
delivery holds a BackgroundToken from before the network operation starts
until after its final flush; the host's shutdown path waits for the window
to go idle so in-flight deliveries are not cut off by process exit.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

import structlog

from src.infra.errors import BackgroundTokenError

logger = structlog.get_logger()

DEFAULT_MAX_WINDOW_S = 600.0

_token_ids = itertools.count(1)


class BackgroundToken:
    """Capability for one invocation. Released exactly once."""

    def __init__(self, window: BackgroundWindow, name: str) -> None:
        self.id = next(_token_ids)
        self.name = name
        self._window = window
        self._active = False
        self._released = False
        self._expiry: asyncio.TimerHandle | None = None
        # Called once if the window expires before release. The holder then
        # settles and releases through scope(); without a handler the window
        # releases the token itself.
        self.on_expire: Callable[[], None] | None = None

    @property
    def active(self) -> bool:
        return self._active

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        self._window.release(self)

    @asynccontextmanager
    async def scope(self) -> AsyncIterator[BackgroundToken]:
        """Hold the token for the duration of the block, releasing on any exit."""
        if self._released:
            raise BackgroundTokenError(
                f"Background token '{self.name}' was already released"
            )
        try:
            yield self
        finally:
            self.release()


class BackgroundWindow:
    """Tracks outstanding background tokens for one process."""

    def __init__(self, *, max_window_s: float = DEFAULT_MAX_WINDOW_S) -> None:
        self._max_window_s = max_window_s
        self._active: dict[int, BackgroundToken] = {}
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def active_count(self) -> int:
        return len(self._active)

    def acquire(self, name: str) -> BackgroundToken:
        """Acquire a token for one invocation. One live token per name."""
        if any(t.name == name for t in self._active.values()):
            raise BackgroundTokenError(f"Background token '{name}' is already held")
        token = BackgroundToken(self, name)
        self._activate(token)
        return token

    def release(self, token: BackgroundToken) -> None:
        if token._released:
            return
        token._released = True
        token._active = False
        if token._expiry is not None:
            token._expiry.cancel()
            token._expiry = None
        self._active.pop(token.id, None)
        if not self._active:
            self._idle.set()
        logger.debug("background_token_released", token=token.name, active=len(self._active))

    async def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait until no tokens are outstanding. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "background_window_drain_timeout",
                outstanding=[t.name for t in self._active.values()],
            )
            return False
        return True

    def _activate(self, token: BackgroundToken) -> None:
        token._active = True
        self._active[token.id] = token
        self._idle.clear()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            token._expiry = loop.call_later(self._max_window_s, self._expire, token)
        logger.debug("background_token_acquired", token=token.name, active=len(self._active))

    def _expire(self, token: BackgroundToken) -> None:
        if token._released:
            return
        logger.warning("background_token_expired", token=token.name, max_window_s=self._max_window_s)
        token._expiry = None
        if token.on_expire is None:
            self.release(token)
            return
        try:
            token.on_expire()
        except Exception:
            logger.exception("background_token_expiry_handler_failed", token=token.name)
            self.release(token)
