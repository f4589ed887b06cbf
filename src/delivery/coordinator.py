"""Detached delivery of one streamed reply, from trigger to terminal record.

The coordinator writes both records before returning a handle. A background
task then streams the reply into the responder record while a deadline races
it, and the first to close the gate writes the terminal state. Observers in
other processes learn of the change through ``chat.updated``.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable
from dataclasses import dataclass, field

import structlog

from src.config.settings import DeliverySettings
from src.constants import CHAT_LAST_UPDATE_KEY, chat_updated_signal
from src.delivery.gate import CompletionGate
from src.delivery.persister import ThrottledDeltaPersister
from src.delivery.record import LogicalRecord, Role, TerminalState
from src.delivery.status import StatusPhase, StatusSink, StatusSurface
from src.delivery.supervisor import TimeoutSupervisor
from src.delivery.transport import StreamingTransport, records_to_messages
from src.delivery.window import BackgroundToken, BackgroundWindow
from src.infra.errors import (
    ConfigurationError,
    DeliveryError,
    DeliveryTimeout,
    InputError,
    TransportCancelled,
    TransportFailure,
)
from src.signals.bus import SignalBus
from src.store.records import RecordStore
from src.store.shared import SharedStore

logger = structlog.get_logger()

MSG_SENDING = "Sending…"
MSG_RECEIVING = "Receiving reply…"
MSG_SENT = "Sent"
MSG_EMPTY = "No reply received"
MSG_CANCELLED = "Sending was interrupted by the system"
MSG_FAILED = "Sending failed"
MSG_TIMED_OUT = "Timed out"
MSG_STOPPED = "Stopped"


@dataclass
class InvocationRequest:
    text: str
    thumbnail_ref: str | None = None
    include_history: bool = True


@dataclass
class InvocationHandle:
    """Returned to the trigger as soon as the background task is spawned."""

    invocation_id: str
    originator_id: str
    responder_id: str
    task: asyncio.Task = field(repr=False)

    async def wait(self) -> None:
        await asyncio.shield(self.task)


@dataclass
class _Delivery:
    invocation_id: str
    gate: CompletionGate
    persister: ThrottledDeltaPersister
    status: StatusSurface
    thumbnail_ref: str | None
    settled: asyncio.Event = field(default_factory=asyncio.Event)
    transport_task: asyncio.Task | None = None


def _error_reason(error: DeliveryError) -> str:
    if isinstance(error, DeliveryTimeout):
        return "timeout"
    if isinstance(error, TransportCancelled):
        return "cancelled"
    return str(error)


def _error_message(error: DeliveryError) -> str:
    if isinstance(error, DeliveryTimeout):
        return MSG_TIMED_OUT
    if isinstance(error, TransportCancelled):
        return MSG_CANCELLED
    return MSG_FAILED


class DeliveryCoordinator:
    """Hands a streaming reply off to a detached background task.

    Flow per invocation:
      validate → persist originator (completed) → persist responder (pending)
      → acquire token → spawn task → return handle

    Inside the task the transport and the TimeoutSupervisor race for the
    CompletionGate. The winner finalizes the persister, finishes the status
    surface, records ``chat.last_update`` and posts ``chat.updated``. The
    token is released after the status surface has ended.
    """

    def __init__(
        self,
        *,
        records: RecordStore,
        shared: SharedStore,
        bus: SignalBus,
        window: BackgroundWindow,
        transport: StreamingTransport | None,
        status_sink: StatusSink,
        settings: DeliverySettings | None = None,
    ) -> None:
        self._records = records
        self._shared = shared
        self._bus = bus
        self._window = window
        self._transport = transport
        self._status_sink = status_sink
        self._settings = settings or DeliverySettings()
        self._tasks: set[asyncio.Task] = set()
        self._transport_tasks: set[asyncio.Task] = set()
        self._active: dict[str, _Delivery] = {}

    async def invoke(self, request: InvocationRequest) -> InvocationHandle:
        """Start one background delivery and return without waiting for it.

        Raises ConfigurationError or InputError before anything is written.
        """
        if self._transport is None:
            raise ConfigurationError("Streaming transport is not configured (OPENAI_API_KEY unset)")
        if not isinstance(request.text, str) or not request.text.strip():
            raise InputError("Invocation text must be a non-empty string")
        prompt = request.text.strip()

        history: list[LogicalRecord] = []
        if request.include_history and self._settings.history_limit > 0:
            history = await self._records.list_recent(
                self._settings.history_limit, completed_only=True
            )

        originator = LogicalRecord.new(Role.originator, prompt)
        originator.terminal_state = TerminalState.completed
        responder = LogicalRecord.new(Role.responder)

        token = self._window.acquire(f"delivery:{responder.id}")
        try:
            await self._records.upsert(originator)
            await self._records.upsert(responder)
        except Exception:
            token.release()
            raise

        delivery = _Delivery(
            invocation_id=responder.id,
            gate=CompletionGate(name=responder.id),
            persister=ThrottledDeltaPersister(
                responder, self._records, flush_interval_s=self._settings.flush_interval_s
            ),
            status=StatusSurface(responder.id, self._status_sink),
            thumbnail_ref=request.thumbnail_ref,
        )
        token.on_expire = lambda: self._on_window_expired(delivery)
        await delivery.status.start(MSG_SENDING, request.thumbnail_ref)
        self._active[responder.id] = delivery
        messages = records_to_messages(history, prompt)

        task = asyncio.create_task(
            self._run(delivery, token, messages), name=f"delivery:{responder.id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(
            "delivery_started",
            invocation_id=delivery.invocation_id,
            originator_id=originator.id,
            history=len(history),
        )
        return InvocationHandle(
            invocation_id=delivery.invocation_id,
            originator_id=originator.id,
            responder_id=responder.id,
            task=task,
        )

    async def interrupt(self, record_id: str) -> bool:
        """Stop one delivery on behalf of the host. Returns False if it already settled."""
        delivery = self._active.get(record_id)
        if delivery is None or not delivery.gate.try_close("interrupted"):
            return False
        if delivery.transport_task is not None and not delivery.transport_task.done():
            delivery.transport_task.cancel()
        await self._settle(
            delivery,
            write=delivery.persister.interrupt(),
            phase=StatusPhase.failed,
            message=MSG_STOPPED,
        )
        return True

    def _on_window_expired(self, delivery: _Delivery) -> None:
        # Expiry surfaces as TransportCancelled through the pump's cancellation path.
        task = delivery.transport_task
        if task is not None and not task.done():
            task.cancel()

    async def interrupt_all(self) -> int:
        stopped = 0
        for record_id in list(self._active):
            if await self.interrupt(record_id):
                stopped += 1
        return stopped

    async def wait_all(self) -> None:
        """Wait for every spawned delivery task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(
        self, delivery: _Delivery, token: BackgroundToken, messages: list[dict]
    ) -> None:
        with structlog.contextvars.bound_contextvars(invocation_id=delivery.invocation_id):
            async with token.scope():
                try:
                    await self._deliver(delivery, messages)
                except Exception:
                    logger.exception("delivery_unexpected_fault")
                    if delivery.gate.try_close("failure"):
                        await self._settle_error(delivery, TransportFailure("internal_error"))
                finally:
                    self._active.pop(delivery.invocation_id, None)
                await delivery.status.wait_ended()
            logger.info(
                "delivery_finished",
                outcome=delivery.gate.winner,
                flush_count=delivery.persister.flush_count,
            )

    async def _deliver(self, delivery: _Delivery, messages: list[dict]) -> None:
        supervisor = TimeoutSupervisor(self._settings.deadline_s)

        async def on_timeout() -> None:
            await self._settle_error(delivery, DeliveryTimeout())

        delivery.transport_task = asyncio.create_task(
            self._pump(delivery, messages), name=f"transport:{delivery.invocation_id}"
        )
        # Not awaited after settling: a late transport result is dropped by the gate.
        self._transport_tasks.add(delivery.transport_task)
        delivery.transport_task.add_done_callback(self._transport_tasks.discard)
        supervisor_task = asyncio.create_task(
            supervisor.race(delivery.gate, on_timeout), name=f"deadline:{delivery.invocation_id}"
        )
        try:
            await delivery.settled.wait()
        finally:
            if not supervisor_task.done():
                supervisor_task.cancel()

    async def _pump(self, delivery: _Delivery, messages: list[dict]) -> None:
        if self._transport is None:
            raise ConfigurationError("Streaming transport is not configured")
        receiving = False
        try:
            async for delta in self._transport.stream(messages):
                if delivery.gate.closed:
                    # Keep draining so the connection finishes, but stop touching state.
                    continue
                await delivery.persister.receive(delta)
                if not receiving and delta.text and not delivery.gate.closed:
                    receiving = True
                    await delivery.status.update(StatusPhase.sending, MSG_RECEIVING)
        except asyncio.CancelledError:
            if delivery.gate.try_close("cancelled"):
                await self._settle_error(delivery, TransportCancelled())
            raise
        except DeliveryError as e:
            if delivery.gate.try_close("failure"):
                await self._settle_error(delivery, e)
            else:
                logger.info("late_transport_error_dropped", error=str(e))
            return
        except Exception as e:
            logger.exception("transport_unexpected_fault")
            if delivery.gate.try_close("failure"):
                await self._settle_error(delivery, TransportFailure(str(e) or type(e).__name__))
            return

        if not delivery.gate.try_close("success"):
            logger.info("late_transport_result_dropped", winner=delivery.gate.winner)
            return
        await self._settle_success(delivery)

    async def _settle_success(self, delivery: _Delivery) -> None:
        final = delivery.persister.snapshot().content

        async def write() -> bool:
            await delivery.persister.complete(final)
            return delivery.persister.snapshot().terminal_state == TerminalState.completed

        completed = await self._guarded_write(write())
        await self._finish(
            delivery,
            phase=StatusPhase.sent if completed else StatusPhase.failed,
            message=MSG_SENT if completed else MSG_EMPTY,
        )

    async def _settle_error(self, delivery: _Delivery, error: DeliveryError) -> None:
        logger.warning("delivery_failed", code=error.code, reason=_error_reason(error))
        await self._settle(
            delivery,
            write=delivery.persister.fail(_error_reason(error)),
            phase=StatusPhase.failed,
            message=_error_message(error),
        )

    async def _settle(
        self,
        delivery: _Delivery,
        *,
        write: Awaitable[bool],
        phase: StatusPhase,
        message: str,
    ) -> None:
        ok = await self._guarded_write(write)
        await self._finish(
            delivery, phase=phase if ok else StatusPhase.failed, message=message if ok else MSG_FAILED
        )

    async def _guarded_write(self, write: Awaitable[bool]) -> bool:
        try:
            result = await write
        except Exception:
            logger.exception("delivery_final_write_failed")
            return False
        return result is not False

    async def _finish(self, delivery: _Delivery, *, phase: StatusPhase, message: str) -> None:
        """Terminal status, then the cross-process wake-up. Runs once per delivery."""
        await delivery.status.finish(
            phase, message, delivery.thumbnail_ref, linger_s=self._settings.linger_s
        )
        try:
            await self._shared.set(
                CHAT_LAST_UPDATE_KEY,
                {"record_id": delivery.invocation_id, "updated_at": time.time()},
            )
            await self._bus.post(chat_updated_signal(self._settings.signal_prefix))
        except Exception:
            logger.exception("chat_update_publish_failed")
        delivery.settled.set()
