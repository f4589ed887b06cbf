"""In-memory fakes with the same contracts as the PostgreSQL-backed stores
and the OpenAI transport."""

from __future__ import annotations

import asyncio
import copy
from collections.abc import AsyncIterator, Sequence
from typing import Any

from src.delivery.record import LogicalRecord, RecordDelta, TerminalState
from src.delivery.status import StatusSink, StatusSurfaceState
from src.delivery.transport import StreamingTransport


class FakeRecordStore:
    """RecordStore stand-in: upsert keyed on id, terminal rows are fenced."""

    def __init__(self) -> None:
        self.rows: dict[str, LogicalRecord] = {}
        self.writes: list[LogicalRecord] = []
        self.fenced = 0
        self.fail_next = 0

    async def upsert(self, record: LogicalRecord) -> bool:
        await asyncio.sleep(0)
        if self.fail_next:
            self.fail_next -= 1
            raise ConnectionError("store unavailable")
        existing = self.rows.get(record.id)
        if existing is not None and existing.is_terminal:
            self.fenced += 1
            return False
        stored = record.copy()
        if existing is not None:
            stored.created_at = existing.created_at
        self.rows[record.id] = stored
        self.writes.append(stored.copy())
        return True

    async def get(self, record_id: str) -> LogicalRecord | None:
        row = self.rows.get(record_id)
        return row.copy() if row is not None else None

    async def list_recent(self, limit: int, *, completed_only: bool = False) -> list[LogicalRecord]:
        if limit <= 0:
            return []
        rows = sorted(self.rows.values(), key=lambda r: r.created_at)
        if completed_only:
            rows = [r for r in rows if r.terminal_state == TerminalState.completed]
        return [r.copy() for r in rows[-limit:]]

    def writes_for(self, record_id: str) -> list[LogicalRecord]:
        return [w for w in self.writes if w.id == record_id]


class FakeSharedStore:
    """SharedStore stand-in. Several instances can share one backing dict."""

    def __init__(self, suite: str = "group.test", backing: dict | None = None) -> None:
        self._suite = suite
        self.backing: dict[tuple[str, str], dict[str, Any]] = backing if backing is not None else {}

    @property
    def suite(self) -> str:
        return self._suite

    async def get(self, key: str) -> dict[str, Any] | None:
        await asyncio.sleep(0)
        value = self.backing.get((self._suite, key))
        return copy.deepcopy(value)

    async def set(self, key: str, value: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        self.backing[(self._suite, key)] = copy.deepcopy(value)

    async def compare_and_swap(
        self, key: str, expected: dict[str, Any] | None, new: dict[str, Any]
    ) -> bool:
        await asyncio.sleep(0)
        if self.backing.get((self._suite, key)) != expected:
            return False
        self.backing[(self._suite, key)] = copy.deepcopy(new)
        return True


class ScriptedTransport(StreamingTransport):
    """Yields scripted deltas with an optional gap, then ends or raises.

    hang=True keeps the stream open after the script until cancelled or
    released via ``release``.
    """

    def __init__(
        self,
        deltas: Sequence[RecordDelta | str] = (),
        *,
        gap_s: float = 0.0,
        error: BaseException | None = None,
        hang: bool = False,
    ) -> None:
        self._deltas = [RecordDelta(text=d) if isinstance(d, str) else d for d in deltas]
        self._gap_s = gap_s
        self._error = error
        self._hang = hang
        self.release = asyncio.Event()
        self.calls: list[list[dict[str, Any]]] = []
        self.finished = False

    async def stream(self, messages: list[dict[str, Any]]) -> AsyncIterator[RecordDelta]:
        self.calls.append(messages)
        for delta in self._deltas:
            if self._gap_s:
                await asyncio.sleep(self._gap_s)
            yield delta
        if self._hang:
            await self.release.wait()
        if self._error is not None:
            raise self._error
        self.finished = True


class RecordingStatusSink(StatusSink):
    def __init__(self) -> None:
        self.renders: list[tuple[str, StatusSurfaceState]] = []
        self.ends: list[tuple[str, StatusSurfaceState]] = []

    async def render(self, surface_id: str, state: StatusSurfaceState) -> None:
        self.renders.append((surface_id, state))

    async def end(self, surface_id: str, state: StatusSurfaceState) -> None:
        self.ends.append((surface_id, state))


