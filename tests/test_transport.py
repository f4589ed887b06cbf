"""Tests for OpenAIStreamTransport delta mapping and error mapping."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from openai import APIConnectionError, APIStatusError, APITimeoutError

from src.delivery.record import LogicalRecord, RecordDelta, Role, TerminalState
from src.delivery.transport import OpenAIStreamTransport, records_to_messages
from src.infra.errors import TransportFailure

_REQUEST = httpx.Request("POST", "https://api.example.test/v1/chat/completions")


@pytest.fixture()
def transport():
    t = OpenAIStreamTransport(api_key="test-key", model="test-model", system_prompt="be brief")
    t._client = MagicMock()
    return t


def _tc_delta(*, index, call_id=None, name=None, args=None):
    fn = None
    if name is not None or args is not None:
        fn = SimpleNamespace(name=name, arguments=args)
    return SimpleNamespace(index=index, id=call_id, function=fn)


def _chunk(*, content=None, tool_calls=None):
    chunk = MagicMock()
    chunk.choices = [SimpleNamespace(delta=SimpleNamespace(content=content, tool_calls=tool_calls))]
    return chunk


def _empty_chunk():
    chunk = MagicMock()
    chunk.choices = []
    return chunk


def _stream_from(chunks, error: Exception | None = None):
    async def _gen():
        for c in chunks:
            yield c
        if error is not None:
            raise error

    return _gen()


async def _collect(transport, messages=None) -> list[RecordDelta]:
    deltas = []
    async for delta in transport.stream(messages or [{"role": "user", "content": "hi"}]):
        deltas.append(delta)
    return deltas


class TestStreamMapping:
    @pytest.mark.asyncio
    async def test_content_chunks_become_text_deltas(self, transport) -> None:
        transport._client.chat.completions.create = AsyncMock(
            return_value=_stream_from([_chunk(content="Hel"), _empty_chunk(), _chunk(content="lo")])
        )

        deltas = await _collect(transport)

        assert [d.text for d in deltas] == ["Hel", "lo"]
        assert all(not d.replace for d in deltas)

    @pytest.mark.asyncio
    async def test_system_prompt_prepended_and_stream_requested(self, transport) -> None:
        create = AsyncMock(return_value=_stream_from([_chunk(content="ok")]))
        transport._client.chat.completions.create = create

        await _collect(transport, [{"role": "user", "content": "question"}])

        kwargs = create.await_args.kwargs
        assert kwargs["stream"] is True
        assert kwargs["model"] == "test-model"
        assert kwargs["messages"][0] == {"role": "system", "content": "be brief"}
        assert kwargs["messages"][-1] == {"role": "user", "content": "question"}
        assert "temperature" not in kwargs

    @pytest.mark.asyncio
    async def test_tool_calls_become_fragments_after_stream(self, transport) -> None:
        chunks = [
            _chunk(tool_calls=[
                _tc_delta(index=0, call_id="call_1", name="lookup", args='{"q":"'),
            ]),
            _chunk(content="Checking"),
            _chunk(tool_calls=[_tc_delta(index=0, args='x"}')]),
            _chunk(tool_calls=[_tc_delta(index=1, name="other", args="{}")]),
        ]
        transport._client.chat.completions.create = AsyncMock(return_value=_stream_from(chunks))

        deltas = await _collect(transport)

        assert deltas[0].text == "Checking"
        fragments = deltas[-1].fragments
        assert [f.id for f in fragments] == ["call_1", "tool_call:1"]
        assert fragments[0].kind == "tool_call"
        assert fragments[0].data == {"name": "lookup", "arguments": '{"q":"x"}'}
        assert fragments[1].data == {"name": "other", "arguments": "{}"}


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_timeout_maps_to_failure(self, transport) -> None:
        transport._client.chat.completions.create = AsyncMock(
            side_effect=APITimeoutError(request=_REQUEST)
        )
        with pytest.raises(TransportFailure) as exc_info:
            await _collect(transport)
        assert exc_info.value.code == "TRANSPORT_TIMEOUT"

    @pytest.mark.asyncio
    async def test_status_error_carries_http_code(self, transport) -> None:
        response = httpx.Response(503, request=_REQUEST)
        transport._client.chat.completions.create = AsyncMock(
            side_effect=APIStatusError("upstream overloaded", response=response, body=None)
        )
        with pytest.raises(TransportFailure, match="HTTP 503") as exc_info:
            await _collect(transport)
        assert exc_info.value.code == "TRANSPORT_HTTP_503"

    @pytest.mark.asyncio
    async def test_api_error_maps_to_failure(self, transport) -> None:
        transport._client.chat.completions.create = AsyncMock(
            side_effect=APIConnectionError(request=_REQUEST)
        )
        with pytest.raises(TransportFailure) as exc_info:
            await _collect(transport)
        assert exc_info.value.code == "TRANSPORT_FAILURE"

    @pytest.mark.asyncio
    async def test_mid_stream_error_after_partial(self, transport) -> None:
        transport._client.chat.completions.create = AsyncMock(
            return_value=_stream_from(
                [_chunk(content="par")], error=APIConnectionError(request=_REQUEST)
            )
        )
        deltas: list[RecordDelta] = []
        with pytest.raises(TransportFailure):
            async for delta in transport.stream([{"role": "user", "content": "hi"}]):
                deltas.append(delta)
        assert [d.text for d in deltas] == ["par"]

    @pytest.mark.asyncio
    async def test_no_retry_on_failure(self, transport) -> None:
        create = AsyncMock(side_effect=APIConnectionError(request=_REQUEST))
        transport._client.chat.completions.create = create
        with pytest.raises(TransportFailure):
            await _collect(transport)
        assert create.await_count == 1


class TestRecordsToMessages:
    def test_history_then_prompt(self) -> None:
        user = LogicalRecord.new(Role.originator, "first question")
        reply = LogicalRecord.new(Role.responder, "first answer")
        reply.terminal_state = TerminalState.completed
        blank = LogicalRecord.new(Role.responder, "")

        messages = records_to_messages([user, reply, blank], "second question")

        assert messages == [
            {"role": "user", "content": "first question"},
            {"role": "assistant", "content": "first answer"},
            {"role": "user", "content": "second question"},
        ]
