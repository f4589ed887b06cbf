"""Ephemeral status surface: idle -> sending -> {sent | failed}.

The surface mirrors a delivery for user feedback. It is driven by the
coordinator and never drives it; only the path that won the CompletionGate
calls finish().
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from enum import StrEnum

import structlog

from src.constants import STATUS_KEY_PREFIX
from src.infra.errors import StatusTransitionError
from src.store.shared import SharedStore

logger = structlog.get_logger()

DEFAULT_LINGER_S = 2.0
_MIN_LINGER_S = 0.1


class StatusPhase(StrEnum):
    idle = "idle"
    sending = "sending"
    sent = "sent"
    failed = "failed"


_ALLOWED: dict[StatusPhase, frozenset[StatusPhase]] = {
    StatusPhase.idle: frozenset({StatusPhase.sending}),
    # progress updates keep the phase at sending
    StatusPhase.sending: frozenset({StatusPhase.sending, StatusPhase.sent, StatusPhase.failed}),
    StatusPhase.sent: frozenset(),
    StatusPhase.failed: frozenset(),
}


@dataclass(frozen=True)
class StatusSurfaceState:
    phase: StatusPhase = StatusPhase.idle
    detail_message: str = ""
    thumbnail_ref: str | None = None
    ended: bool = False


class StatusSink(ABC):
    """Host-side renderer for a status surface."""

    @abstractmethod
    async def render(self, surface_id: str, state: StatusSurfaceState) -> None: ...

    @abstractmethod
    async def end(self, surface_id: str, state: StatusSurfaceState) -> None: ...


class LogStatusSink(StatusSink):
    async def render(self, surface_id: str, state: StatusSurfaceState) -> None:
        logger.info(
            "status_surface_render",
            surface_id=surface_id,
            phase=state.phase.value,
            message=state.detail_message,
        )

    async def end(self, surface_id: str, state: StatusSurfaceState) -> None:
        logger.info("status_surface_ended", surface_id=surface_id, phase=state.phase.value)


class SharedStatusSink(StatusSink):
    """Publishes surface state to the shared store for other processes to render."""

    def __init__(self, shared: SharedStore) -> None:
        self._shared = shared

    async def render(self, surface_id: str, state: StatusSurfaceState) -> None:
        await self._shared.set(f"{STATUS_KEY_PREFIX}{surface_id}", _to_json(state))

    async def end(self, surface_id: str, state: StatusSurfaceState) -> None:
        await self._shared.set(f"{STATUS_KEY_PREFIX}{surface_id}", _to_json(state))


def _to_json(state: StatusSurfaceState) -> dict:
    data = asdict(state)
    data["phase"] = state.phase.value
    return data


class StatusSurface:
    def __init__(self, surface_id: str, sink: StatusSink) -> None:
        self._id = surface_id
        self._sink = sink
        self._state = StatusSurfaceState()
        self.update_count = 0
        self._teardown: asyncio.Task | None = None

    @property
    def state(self) -> StatusSurfaceState:
        return self._state

    @property
    def phase(self) -> StatusPhase:
        return self._state.phase

    async def start(self, message: str = "Sending…", thumbnail_ref: str | None = None) -> None:
        await self._transition(StatusPhase.sending, message, thumbnail_ref)

    async def update(
        self, phase: StatusPhase, message: str, thumbnail_ref: str | None = None
    ) -> None:
        await self._transition(phase, message, thumbnail_ref)

    async def finish(
        self,
        phase: StatusPhase,
        message: str,
        thumbnail_ref: str | None = None,
        linger_s: float = DEFAULT_LINGER_S,
    ) -> None:
        """Terminal update. Teardown follows after ``linger_s``; see wait_ended()."""
        if phase not in (StatusPhase.sent, StatusPhase.failed):
            raise StatusTransitionError(f"finish() needs a terminal phase, got '{phase}'")
        await self._transition(phase, message, thumbnail_ref)
        self._teardown = asyncio.create_task(
            self._linger_then_end(max(_MIN_LINGER_S, linger_s)), name=f"status:{self._id}"
        )

    async def wait_ended(self) -> None:
        if self._teardown is not None:
            await self._teardown

    async def _linger_then_end(self, linger_s: float) -> None:
        await asyncio.sleep(linger_s)
        self._state = StatusSurfaceState(
            phase=self._state.phase,
            detail_message=self._state.detail_message,
            thumbnail_ref=self._state.thumbnail_ref,
            ended=True,
        )
        await self._safe_sink_call(self._sink.end)

    async def _transition(
        self, phase: StatusPhase, message: str, thumbnail_ref: str | None
    ) -> None:
        current = self._state.phase
        if phase not in _ALLOWED[current]:
            raise StatusTransitionError(
                f"Illegal status transition {current.value} -> {phase.value}"
            )
        self._state = StatusSurfaceState(
            phase=phase,
            detail_message=message,
            thumbnail_ref=thumbnail_ref if thumbnail_ref is not None else self._state.thumbnail_ref,
        )
        self.update_count += 1
        await self._safe_sink_call(self._sink.render)

    async def _safe_sink_call(self, fn) -> None:
        # Sink failures never change the delivery outcome.
        try:
            await fn(self._id, self._state)
        except Exception:
            logger.exception("status_sink_failed", surface_id=self._id, phase=self._state.phase.value)
