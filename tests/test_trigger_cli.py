"""Tests for the trigger CLI: argument parsing and result/exit-code handling."""

from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from scripts import trigger
from src.control.commands import PendingCommand, RecordingCommand
from src.delivery.coordinator import InvocationHandle
from src.delivery.record import LogicalRecord, Role, TerminalState
from src.infra.errors import ConfigurationError


def _runtime(*, invoke=None, responder: LogicalRecord | None = None):
    records = MagicMock()
    records.get = AsyncMock(return_value=responder)
    window = MagicMock()
    window.wait_idle = AsyncMock(return_value=True)
    publisher = MagicMock()
    publisher.issue = AsyncMock(
        return_value=PendingCommand(command=RecordingCommand.pause, issued_at=5.0)
    )
    return SimpleNamespace(
        coordinator=SimpleNamespace(invoke=invoke or AsyncMock()),
        records=records,
        window=window,
        publisher=publisher,
        close=AsyncMock(),
    )


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch):
    monkeypatch.setattr(trigger, "setup_logging", MagicMock())


class TestParser:
    def test_send_defaults(self) -> None:
        args = trigger.build_parser().parse_args(["send", "hello"])
        assert args.action == "send"
        assert args.text == "hello"
        assert args.thumbnail_ref is None
        assert args.no_history is False

    def test_command_choices(self) -> None:
        args = trigger.build_parser().parse_args(["command", "resume"])
        assert args.name == "resume"
        with pytest.raises(SystemExit):
            trigger.build_parser().parse_args(["command", "rewind"])

    def test_action_required(self) -> None:
        with pytest.raises(SystemExit):
            trigger.build_parser().parse_args([])


class TestRunCli:
    def test_send_waits_for_window_and_prints_result(self, monkeypatch, capsys) -> None:
        reply = LogicalRecord.new(Role.responder, "the answer")
        reply.terminal_state = TerminalState.completed
        invoke = AsyncMock(
            return_value=InvocationHandle(
                invocation_id="inv-9", originator_id="o", responder_id=reply.id, task=MagicMock()
            )
        )
        runtime = _runtime(invoke=invoke, responder=reply)
        monkeypatch.setattr(trigger, "build_runtime", AsyncMock(return_value=runtime))

        code = trigger.run_cli(["send", "question", "--no-history", "--thumbnail-ref", "t1"])

        assert code == 0
        assert json.loads(capsys.readouterr().out) == {
            "invocation_id": "inv-9",
            "terminal_state": "completed",
            "content": "the answer",
        }
        request = invoke.await_args.args[0]
        assert request.include_history is False
        assert request.thumbnail_ref == "t1"
        runtime.window.wait_idle.assert_awaited_once()
        runtime.close.assert_awaited_once()

    def test_command_prints_pending(self, monkeypatch, capsys) -> None:
        runtime = _runtime()
        monkeypatch.setattr(trigger, "build_runtime", AsyncMock(return_value=runtime))

        code = trigger.run_cli(["command", "pause"])

        assert code == 0
        assert json.loads(capsys.readouterr().out) == {"command": "pause", "issued_at": 5.0}
        runtime.publisher.issue.assert_awaited_once_with("pause")
        runtime.close.assert_awaited_once()

    def test_handoff_error_exits_2_and_closes(self, monkeypatch, capsys) -> None:
        runtime = _runtime(invoke=AsyncMock(side_effect=ConfigurationError("no api key")))
        monkeypatch.setattr(trigger, "build_runtime", AsyncMock(return_value=runtime))

        code = trigger.run_cli(["send", "question"])

        assert code == 2
        assert "invocation_id" not in capsys.readouterr().out
        runtime.close.assert_awaited_once()
