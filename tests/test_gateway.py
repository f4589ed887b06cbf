"""HTTP gateway tests against a stub runtime (no lifespan, no database)."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from src.constants import PENDING_COMMAND_KEY
from src.control.commands import CommandPublisher
from src.delivery.coordinator import InvocationHandle, InvocationRequest
from src.delivery.record import LogicalRecord, Role, TerminalState
from src.gateway.app import create_app
from src.infra.errors import BackgroundTokenError, ConfigurationError, InputError
from src.signals.bus import InProcessSignalBus
from tests.fakes import FakeRecordStore, FakeSharedStore


@pytest.fixture()
def runtime():
    shared = FakeSharedStore()
    bus = InProcessSignalBus()
    coordinator = MagicMock()
    coordinator.invoke = AsyncMock(
        return_value=InvocationHandle(
            invocation_id="inv-1", originator_id="rec-o", responder_id="rec-r", task=MagicMock()
        )
    )
    return SimpleNamespace(
        coordinator=coordinator,
        records=FakeRecordStore(),
        shared=shared,
        publisher=CommandPublisher(shared, bus, signal_prefix="test"),
    )


@pytest.fixture()
def client(runtime):
    app = create_app(with_lifespan=False)
    app.state.runtime = runtime
    return TestClient(app)


class TestHealth:
    def test_health(self, client) -> None:
        assert client.get("/health").json() == {"status": "ok"}


class TestInvocations:
    def test_accepted(self, client, runtime) -> None:
        resp = client.post("/invocations", json={"text": "hello", "thumbnail_ref": " img-1 "})

        assert resp.status_code == 202
        assert resp.json() == {
            "invocation_id": "inv-1",
            "originator_id": "rec-o",
            "responder_id": "rec-r",
        }
        request = runtime.coordinator.invoke.await_args.args[0]
        assert request == InvocationRequest(text="hello", thumbnail_ref="img-1", include_history=True)

    def test_blank_thumbnail_normalized_to_none(self, client, runtime) -> None:
        client.post("/invocations", json={"text": "hi", "thumbnail_ref": "  ", "include_history": False})
        request = runtime.coordinator.invoke.await_args.args[0]
        assert request.thumbnail_ref is None
        assert request.include_history is False

    def test_missing_text_is_422(self, client, runtime) -> None:
        resp = client.post("/invocations", json={})
        assert resp.status_code == 422
        runtime.coordinator.invoke.assert_not_awaited()

    @pytest.mark.parametrize(
        ("error", "status", "code"),
        [
            (InputError("text must not be empty"), 400, "INPUT_ERROR"),
            (ConfigurationError("transport missing"), 400, "CONFIG_ERROR"),
            (BackgroundTokenError("window closed"), 409, "TOKEN_ERROR"),
        ],
    )
    def test_errors_mapped(self, client, runtime, error, status, code) -> None:
        runtime.coordinator.invoke.side_effect = error

        resp = client.post("/invocations", json={"text": " "})

        assert resp.status_code == status
        assert resp.json() == {"error": {"code": code, "message": str(error)}}


class TestRecords:
    def test_list_and_get(self, client, runtime) -> None:
        question = LogicalRecord.new(Role.originator, "q")
        question.terminal_state = TerminalState.completed
        runtime.records.rows[question.id] = question

        listed = client.get("/records", params={"limit": 10}).json()["records"]
        assert [r["id"] for r in listed] == [question.id]
        assert listed[0]["terminal_state"] == "completed"

        one = client.get(f"/records/{question.id}")
        assert one.status_code == 200
        assert one.json()["content"] == "q"
        assert one.json()["interrupted"] is False

    def test_missing_record_is_404(self, client) -> None:
        resp = client.get("/records/nope")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NOT_FOUND"

    def test_limit_bounds(self, client) -> None:
        assert client.get("/records", params={"limit": 0}).status_code == 422
        assert client.get("/records", params={"limit": 501}).status_code == 422


class TestCommands:
    def test_issue_command(self, client, runtime) -> None:
        resp = client.post("/commands", json={"command": " Stop "})

        assert resp.status_code == 202
        body = resp.json()
        assert body["command"] == "stop"
        stored = runtime.shared.backing[(runtime.shared.suite, PENDING_COMMAND_KEY)]
        assert stored == {"command": "stop", "issued_at": body["issued_at"]}

    def test_unknown_command_is_422(self, client) -> None:
        assert client.post("/commands", json={"command": "rewind"}).status_code == 422
