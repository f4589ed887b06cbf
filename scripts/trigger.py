"""Short-lived trigger process.

Usage:
    python -m scripts.trigger send "summarise today's notes"
    python -m scripts.trigger command stop

`send` starts one background delivery and keeps the process alive until the
background window is idle, the way a host would keep an extension alive while
its token is held. `command` writes a pending control command and posts its
signal; the long-running host picks it up.

Reads settings from the environment / .env.
"""

from __future__ import annotations

import argparse
import asyncio
import json
from collections.abc import Sequence

import structlog

from src.config.settings import Settings, get_settings
from src.control.commands import RecordingCommand
from src.delivery.coordinator import InvocationRequest
from src.host.runtime import build_runtime
from src.infra.errors import HandoffError
from src.infra.logging import setup_logging

logger = structlog.get_logger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Trigger a background handoff delivery")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    subparsers = parser.add_subparsers(dest="action", required=True)

    send_parser = subparsers.add_parser("send", help="Start one delivery and wait for it")
    send_parser.add_argument("text")
    send_parser.add_argument("--thumbnail-ref", default=None)
    send_parser.add_argument(
        "--no-history", action="store_true", help="Do not send earlier records as context"
    )

    command_parser = subparsers.add_parser("command", help="Issue a control command")
    command_parser.add_argument("name", choices=[c.value for c in RecordingCommand])
    return parser


async def _send(settings: Settings, args: argparse.Namespace) -> dict:
    runtime = await build_runtime(settings)
    try:
        handle = await runtime.coordinator.invoke(
            InvocationRequest(
                text=args.text,
                thumbnail_ref=args.thumbnail_ref,
                include_history=not args.no_history,
            )
        )
        await runtime.window.wait_idle(settings.delivery.max_window_s)
        record = await runtime.records.get(handle.responder_id)
        return {
            "invocation_id": handle.invocation_id,
            "terminal_state": record.terminal_state.value if record else None,
            "content": record.content if record else None,
        }
    finally:
        await runtime.close(drain_timeout_s=settings.delivery.max_window_s)


async def _command(settings: Settings, args: argparse.Namespace) -> dict:
    runtime = await build_runtime(settings)
    try:
        pending = await runtime.publisher.issue(args.name)
        return pending.to_dict()
    finally:
        await runtime.close()


def run_cli(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()
    setup_logging(json_output=args.json_logs, log_level=args.log_level or settings.log_level)

    action = _send if args.action == "send" else _command
    try:
        result = asyncio.run(action(settings, args))
    except HandoffError as e:
        logger.error("trigger_failed", code=e.code, error=str(e))
        return 2
    print(json.dumps(result, ensure_ascii=False))
    return 0


def main() -> int:
    return run_cli()


if __name__ == "__main__":
    raise SystemExit(main())
