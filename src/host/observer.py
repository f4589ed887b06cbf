"""Host-side view of persisted records, refreshed on ``chat.updated``."""

from __future__ import annotations

import asyncio

import structlog

from src.constants import CHAT_LAST_UPDATE_KEY, chat_updated_signal
from src.delivery.record import LogicalRecord
from src.signals.bus import SignalBus, Subscription
from src.store.records import RecordStore
from src.store.shared import SharedStore

logger = structlog.get_logger()

DEFAULT_VIEW_LIMIT = 50


class RecordView:
    """In-memory list of recent records ordered by created_at."""

    def __init__(self) -> None:
        self._records: list[LogicalRecord] = []
        self.revision = 0

    @property
    def records(self) -> list[LogicalRecord]:
        return list(self._records)

    def get(self, record_id: str) -> LogicalRecord | None:
        for record in self._records:
            if record.id == record_id:
                return record
        return None

    def replace(self, records: list[LogicalRecord]) -> None:
        self._records = sorted(records, key=lambda r: r.created_at)
        self.revision += 1


class RecordChangedObserver:
    """Re-derives the view from the store on every ``chat.updated`` signal.

    Signals carry no payload; ``chat.last_update`` in the shared store names the
    record that changed last. Its ``updated_at`` comes from the writer's clock,
    so it is informational only and never used to skip a reload.
    """

    def __init__(
        self,
        records: RecordStore,
        shared: SharedStore,
        bus: SignalBus,
        *,
        signal_prefix: str,
        view: RecordView | None = None,
        limit: int = DEFAULT_VIEW_LIMIT,
    ) -> None:
        self._records = records
        self._shared = shared
        self._bus = bus
        self._signal = chat_updated_signal(signal_prefix)
        self._limit = limit
        self.view = view or RecordView()
        self._last_record_id: str | None = None
        self._lock = asyncio.Lock()
        self._subscription: Subscription | None = None

    @property
    def last_record_id(self) -> str | None:
        """Record named by the most recently handled update."""
        return self._last_record_id

    async def start(self) -> None:
        self._subscription = await self._bus.subscribe(self._signal, self._on_signal)
        await self.process_if_needed(source="startup")

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._subscription.cancel()
            self._subscription = None

    async def _on_signal(self, name: str) -> None:
        await self.process_if_needed(source=f"signal:{name}")

    async def process_if_needed(self, source: str = "unknown") -> bool:
        """Reload the view. Returns True when a record change has been announced."""
        async with self._lock:
            update = await self._shared.get(CHAT_LAST_UPDATE_KEY)
            if update:
                self._last_record_id = update.get("record_id")
            await self._reload()
        logger.info(
            "chat_update_applied",
            source=source,
            record_id=self._last_record_id,
            revision=self.view.revision,
        )
        return bool(update)

    async def _reload(self) -> None:
        self.view.replace(await self._records.list_recent(self._limit))
