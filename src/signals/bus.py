"""Cross-process signal bus: named, zero-payload, best-effort wake-ups.

A signal only says "something with this name happened". Handlers must re-read
current state from the store; delivery is at-least-once with no ordering
across names, and a signal posted while nobody listens is simply lost.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

logger = structlog.get_logger()

SignalHandler = Callable[[str], Awaitable[None]]


class Subscription:
    """Handle returned by subscribe(); cancel() detaches the handler."""

    def __init__(self, bus: SignalBus, name: str, handler: SignalHandler) -> None:
        self._bus = bus
        self.name = name
        self.handler = handler
        self.active = True

    async def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        await self._bus._unsubscribe(self)


class SignalBus(ABC):
    """Named-event pub/sub without payload."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._handler_tasks: set[asyncio.Task] = set()

    @abstractmethod
    async def post(self, name: str) -> None:
        """Post a signal. Never raises because of subscriber failures."""
        ...

    async def subscribe(self, name: str, handler: SignalHandler) -> Subscription:
        sub = Subscription(self, name, handler)
        first = name not in self._subscriptions
        self._subscriptions.setdefault(name, []).append(sub)
        if first:
            await self._on_first_subscriber(name)
        logger.debug("signal_subscribed", signal=name)
        return sub

    async def close(self) -> None:
        for subs in list(self._subscriptions.values()):
            for sub in list(subs):
                await sub.cancel()
        await self.drain()

    async def drain(self) -> None:
        """Wait until every handler scheduled so far has finished."""
        while self._handler_tasks:
            await asyncio.gather(*list(self._handler_tasks), return_exceptions=True)

    async def _unsubscribe(self, sub: Subscription) -> None:
        subs = self._subscriptions.get(sub.name, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._subscriptions.pop(sub.name, None)
            await self._on_last_unsubscribed(sub.name)

    def _dispatch(self, name: str) -> None:
        """Schedule every live handler for ``name`` as its own task."""
        for sub in list(self._subscriptions.get(name, [])):
            task = asyncio.create_task(self._run_handler(sub, name), name=f"signal:{name}")
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)

    async def _run_handler(self, sub: Subscription, name: str) -> None:
        if not sub.active:
            return
        try:
            await sub.handler(name)
        except Exception:
            logger.exception("signal_handler_failed", signal=name)

    async def _on_first_subscriber(self, name: str) -> None:
        return None

    async def _on_last_unsubscribed(self, name: str) -> None:
        return None


class InProcessSignalBus(SignalBus):
    """Single-process bus with the same delivery contract as PgSignalBus."""

    async def post(self, name: str) -> None:
        logger.debug("signal_posted", signal=name, transport="in_process")
        self._dispatch(name)


class PgSignalBus(SignalBus):
    """PostgreSQL LISTEN/NOTIFY bus with an empty payload.

    post() uses pg_notify on a pooled connection. Subscriptions share one
    dedicated connection that stays checked out while any channel is listened.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        super().__init__()
        self._engine = engine
        self._listen_conn: AsyncConnection | None = None
        self._driver_conn: Any = None
        self._lock = asyncio.Lock()

    async def post(self, name: str) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(text("SELECT pg_notify(:channel, '')"), {"channel": name})
        logger.debug("signal_posted", signal=name, transport="pg_notify")

    async def close(self) -> None:
        await super().close()
        async with self._lock:
            if self._listen_conn is not None:
                await self._listen_conn.close()
                self._listen_conn = None
                self._driver_conn = None

    def _on_notify(self, _conn: Any, _pid: int, channel: str, _payload: str) -> None:
        self._dispatch(channel)

    async def _on_first_subscriber(self, name: str) -> None:
        async with self._lock:
            if self._listen_conn is None:
                self._listen_conn = await self._engine.connect()
                raw = await self._listen_conn.get_raw_connection()
                self._driver_conn = raw.driver_connection
            await self._driver_conn.add_listener(name, self._on_notify)
        logger.info("signal_listening", signal=name)

    async def _on_last_unsubscribed(self, name: str) -> None:
        async with self._lock:
            if self._driver_conn is not None:
                await self._driver_conn.remove_listener(name, self._on_notify)
        logger.info("signal_unlistened", signal=name)
