from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from src.config.settings import Settings
from src.control.commands import (
    CommandProcessor,
    CommandPublisher,
    PendingCommand,
    RecordingCommand,
)
from src.delivery.coordinator import DeliveryCoordinator
from src.delivery.status import SharedStatusSink
from src.delivery.transport import OpenAIStreamTransport, StreamingTransport
from src.delivery.window import BackgroundWindow
from src.host.observer import RecordChangedObserver
from src.signals.bus import PgSignalBus, SignalBus
from src.store.database import create_db_engine, ensure_schema, make_session_factory
from src.store.records import RecordStore
from src.store.shared import SharedStore

logger = structlog.get_logger()


@dataclass
class HandoffRuntime:
    """Everything one process needs to trigger, observe and control deliveries."""

    settings: Settings
    engine: AsyncEngine
    records: RecordStore
    shared: SharedStore
    bus: SignalBus
    window: BackgroundWindow
    coordinator: DeliveryCoordinator
    publisher: CommandPublisher
    processor: CommandProcessor
    observer: RecordChangedObserver

    async def start_host(self) -> None:
        """Start the long-lived listeners. Short-lived trigger processes skip this."""
        await self.processor.start()
        await self.observer.start()

    async def close(self, drain_timeout_s: float | None = None) -> None:
        drained = await self.window.wait_idle(drain_timeout_s)
        if not drained:
            stopped = await self.coordinator.interrupt_all()
            logger.warning("deliveries_interrupted_on_shutdown", count=stopped)
            await self.window.wait_idle(drain_timeout_s)
        await self.processor.stop()
        await self.observer.stop()
        await self.bus.close()
        await self.engine.dispose()
        logger.info("db_engine_disposed")


def build_transport(settings: Settings) -> StreamingTransport | None:
    """None when no API key is set; invocations then raise ConfigurationError."""
    if not settings.openai.api_key:
        logger.warning("transport_not_configured")
        return None
    return OpenAIStreamTransport(
        api_key=settings.openai.api_key,
        model=settings.openai.model,
        base_url=settings.openai.base_url,
        system_prompt=settings.openai.system_prompt,
    )


async def build_runtime(settings: Settings) -> HandoffRuntime:
    # DB is mandatory; startup fails if DB/schema unavailable.
    engine = await create_db_engine(settings.database)
    await ensure_schema(engine, settings.database.schema_)
    db_session_factory = make_session_factory(engine)
    logger.info("db_connected")

    delivery = settings.delivery
    records = RecordStore(db_session_factory)
    shared = SharedStore(db_session_factory, delivery.suite)
    bus = PgSignalBus(engine)
    window = BackgroundWindow(max_window_s=delivery.max_window_s)
    coordinator = DeliveryCoordinator(
        records=records,
        shared=shared,
        bus=bus,
        window=window,
        transport=build_transport(settings),
        status_sink=SharedStatusSink(shared),
        settings=delivery,
    )

    processor = CommandProcessor(shared, bus, signal_prefix=delivery.signal_prefix)

    async def on_stop(command: PendingCommand) -> None:
        stopped = await coordinator.interrupt_all()
        logger.info("stop_command_applied", stopped=stopped, issued_at=command.issued_at)

    async def on_other(command: PendingCommand) -> None:
        logger.info("recording_command_received", command=command.command.value)

    processor.register(RecordingCommand.stop, on_stop)
    for command in (RecordingCommand.start, RecordingCommand.pause, RecordingCommand.resume):
        processor.register(command, on_other)

    return HandoffRuntime(
        settings=settings,
        engine=engine,
        records=records,
        shared=shared,
        bus=bus,
        window=window,
        coordinator=coordinator,
        publisher=CommandPublisher(shared, bus, signal_prefix=delivery.signal_prefix),
        processor=processor,
        observer=RecordChangedObserver(
            records, shared, bus, signal_prefix=delivery.signal_prefix
        ),
    )
