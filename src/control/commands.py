"""Control-plane commands carried as shared value + zero-payload signal.

The publisher writes the pending command before posting its signal, and only
replaces a stored command that has an older ``issued_at``. The
processor runs a command at most once per ``issued_at``; it is invoked from
the signal handler and again on start, because a signal posted before the
host subscribed is lost.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from src.constants import LAST_HANDLED_COMMAND_KEY, PENDING_COMMAND_KEY, recording_signal
from src.infra.errors import InputError
from src.signals.bus import SignalBus, Subscription
from src.store.shared import SharedStore

logger = structlog.get_logger()


class RecordingCommand(StrEnum):
    start = "start"
    pause = "pause"
    resume = "resume"
    stop = "stop"


@dataclass(frozen=True)
class PendingCommand:
    command: RecordingCommand
    issued_at: float

    def to_dict(self) -> dict[str, Any]:
        return {"command": self.command.value, "issued_at": self.issued_at}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> PendingCommand:
        try:
            command = RecordingCommand(raw["command"])
            issued_at = float(raw["issued_at"])
        except (KeyError, ValueError, TypeError) as e:
            raise InputError(f"Malformed pending command: {raw!r}") from e
        return cls(command=command, issued_at=issued_at)


CommandHandler = Callable[[PendingCommand], Awaitable[None]]


def parse_command(name: str) -> RecordingCommand:
    try:
        return RecordingCommand(name.strip().lower())
    except ValueError:
        valid = ", ".join(c.value for c in RecordingCommand)
        raise InputError(f"Unknown command '{name}' (expected one of: {valid})") from None


class CommandPublisher:
    def __init__(self, shared: SharedStore, bus: SignalBus, *, signal_prefix: str) -> None:
        self._shared = shared
        self._bus = bus
        self._prefix = signal_prefix

    async def issue(
        self, command: RecordingCommand | str, *, issued_at: float | None = None
    ) -> PendingCommand:
        if not isinstance(command, RecordingCommand):
            command = parse_command(command)
        pending = PendingCommand(
            command=command, issued_at=time.time() if issued_at is None else issued_at
        )
        # State first: the signal only tells listeners to re-read it.
        if not await self._store_if_newer(pending):
            return pending
        await self._bus.post(recording_signal(self._prefix, command.value))
        logger.info("command_issued", command=command.value, issued_at=pending.issued_at)
        return pending

    async def _store_if_newer(self, pending: PendingCommand) -> bool:
        """Write ``pending`` unless the stored command has a newer or equal issued_at."""
        while True:
            current = await self._shared.get(PENDING_COMMAND_KEY)
            if current is not None:
                try:
                    stored = PendingCommand.from_dict(current)
                except InputError:
                    stored = None
                if stored is not None and stored.issued_at >= pending.issued_at:
                    logger.info(
                        "command_superseded",
                        command=pending.command.value,
                        issued_at=pending.issued_at,
                        stored_issued_at=stored.issued_at,
                    )
                    return False
            if await self._shared.compare_and_swap(
                PENDING_COMMAND_KEY, current, pending.to_dict()
            ):
                return True


class CommandProcessor:
    """Runs the pending command if it is newer than the last one acted on."""

    def __init__(
        self,
        shared: SharedStore,
        bus: SignalBus,
        *,
        signal_prefix: str,
        handlers: dict[RecordingCommand, CommandHandler] | None = None,
    ) -> None:
        self._shared = shared
        self._bus = bus
        self._prefix = signal_prefix
        self._handlers: dict[RecordingCommand, CommandHandler] = dict(handlers or {})
        self._subscriptions: list[Subscription] = []

    def register(self, command: RecordingCommand, handler: CommandHandler) -> None:
        self._handlers[command] = handler

    async def start(self) -> None:
        """Subscribe to every command signal, then pull once."""
        for command in RecordingCommand:
            sub = await self._bus.subscribe(
                recording_signal(self._prefix, command.value), self._on_signal
            )
            self._subscriptions.append(sub)
        await self.process_if_needed(source="startup")

    async def stop(self) -> None:
        for sub in self._subscriptions:
            await sub.cancel()
        self._subscriptions.clear()

    async def _on_signal(self, name: str) -> None:
        await self.process_if_needed(source=f"signal:{name}")

    async def process_if_needed(self, source: str = "unknown") -> PendingCommand | None:
        """Returns the command that was acted on, or None."""
        raw = await self._shared.get(PENDING_COMMAND_KEY)
        if raw is None:
            return None
        try:
            pending = PendingCommand.from_dict(raw)
        except InputError:
            logger.warning("pending_command_malformed", source=source, raw=raw)
            return None

        last = await self._shared.get(LAST_HANDLED_COMMAND_KEY)
        last_ts = float(last.get("issued_at", 0.0)) if last else 0.0
        if pending.issued_at <= last_ts:
            logger.debug(
                "pending_command_stale",
                source=source,
                command=pending.command.value,
                issued_at=pending.issued_at,
                last_handled=last_ts,
            )
            return None

        # Mark handled before acting so concurrent wake-ups run it once.
        marked = await self._shared.compare_and_swap(
            LAST_HANDLED_COMMAND_KEY, last, {"issued_at": pending.issued_at}
        )
        if not marked:
            logger.debug("pending_command_claimed_elsewhere", source=source)
            return None

        logger.info(
            "pending_command_processing",
            source=source,
            command=pending.command.value,
            issued_at=pending.issued_at,
        )
        handler = self._handlers.get(pending.command)
        if handler is None:
            logger.info("pending_command_unhandled", command=pending.command.value)
        else:
            await handler(pending)
        return pending
