"""Throttled delta persister for one LogicalRecord.

Bursty stream output is merged into an in-memory snapshot and written to the
store at most once per flush interval. Terminal calls skip the throttle and
perform exactly one final write.

All snapshot mutation and every flush run under one asyncio.Lock, so there is
never more than one write in flight for the record.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

import structlog

from src.delivery.record import (
    EMPTY_REPLY_TEXT,
    INTERRUPTED_PLACEHOLDER,
    LogicalRecord,
    RecordDelta,
    TerminalState,
    normalize_display_text,
)

logger = structlog.get_logger()

DEFAULT_FLUSH_INTERVAL_S = 0.15


class RecordWriter(Protocol):
    async def upsert(self, record: LogicalRecord) -> bool: ...


class ThrottledDeltaPersister:
    def __init__(
        self,
        record: LogicalRecord,
        store: RecordWriter,
        *,
        flush_interval_s: float = DEFAULT_FLUSH_INTERVAL_S,
    ) -> None:
        self._snapshot = record.copy()
        self._store = store
        self._interval = flush_interval_s
        self._lock = asyncio.Lock()
        self._flush_task: asyncio.Task | None = None
        self._finalized = False
        self.flush_count = 0

    @property
    def record_id(self) -> str:
        return self._snapshot.id

    @property
    def finalized(self) -> bool:
        return self._finalized

    def snapshot(self) -> LogicalRecord:
        """Detached copy of the current snapshot."""
        return self._snapshot.copy()

    async def receive(self, delta: RecordDelta) -> None:
        """Merge a delta and schedule a throttled flush if none is pending."""
        async with self._lock:
            if self._finalized:
                logger.debug("delta_dropped_after_final", record_id=self.record_id)
                return
            self._snapshot.apply(delta)
            if self._flush_task is None:
                self._flush_task = asyncio.create_task(
                    self._delayed_flush(), name=f"flush:{self.record_id}"
                )

    async def complete(self, final_content: str) -> bool:
        """Terminal success write. Returns False if already finalized."""
        text = normalize_display_text(final_content)
        if text:
            return await self._finalize(TerminalState.completed, None, content=text)
        # Nothing survived normalization: keep the record visible as an error.
        return await self._finalize(
            TerminalState.errored, "empty_response", content=EMPTY_REPLY_TEXT
        )

    async def fail(self, error_text: str) -> bool:
        """Terminal failure write. Partial content is kept when there is any."""
        return await self._finalize(TerminalState.errored, error_text, fallback=error_text)

    async def interrupt(self) -> bool:
        """Terminal write for a stop requested by the host."""
        return await self._finalize(
            TerminalState.interrupted, None, fallback=INTERRUPTED_PLACEHOLDER
        )

    async def _finalize(
        self,
        state: TerminalState,
        reason: str | None,
        *,
        content: str | None = None,
        fallback: str = "",
    ) -> bool:
        """Write the terminal snapshot once.

        Without explicit ``content`` the normalized partial text is kept, read
        under the same lock hold as the write so no delta can slip in between.
        """
        async with self._lock:
            if self._finalized:
                logger.debug(
                    "persister_final_dropped",
                    record_id=self.record_id,
                    requested_state=state.value,
                )
                return False
            self._finalized = True
            if self._flush_task is not None:
                # Holding the lock: the scheduled flush is not mid-write.
                self._flush_task.cancel()
                self._flush_task = None
            if content is None:
                content = normalize_display_text(self._snapshot.content) or fallback
            self._snapshot.content = content
            self._snapshot.terminal_state = state
            self._snapshot.error_reason = reason
            await self._flush_locked(final=True)
        logger.info(
            "persister_finalized",
            record_id=self.record_id,
            terminal_state=state.value,
            error_reason=reason,
            flush_count=self.flush_count,
        )
        return True

    async def _delayed_flush(self) -> None:
        await asyncio.sleep(self._interval)
        async with self._lock:
            self._flush_task = None
            if self._finalized:
                return
            try:
                await self._flush_locked(final=False)
            except Exception:
                # Intermediate writes are best-effort; the final flush rewrites everything.
                logger.exception("persister_flush_failed", record_id=self.record_id)

    async def _flush_locked(self, *, final: bool) -> None:
        self.flush_count += 1
        await self._store.upsert(self._snapshot.copy())
        logger.debug(
            "persister_flushed",
            record_id=self.record_id,
            final=final,
            flush_count=self.flush_count,
            chars=len(self._snapshot.content),
        )
