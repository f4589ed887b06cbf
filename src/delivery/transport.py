from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

import structlog
from openai import APIConnectionError, APIError, APIStatusError, APITimeoutError, AsyncOpenAI

from src.delivery.record import Fragment, LogicalRecord, RecordDelta, Role
from src.infra.errors import TransportFailure

logger = structlog.get_logger()


class StreamingTransport(ABC):
    """The long-running network operation a delivery hands off to the background."""

    @abstractmethod
    def stream(self, messages: list[dict[str, Any]]) -> AsyncIterator[RecordDelta]:
        """Yield partial updates as they arrive.

        Raises TransportCancelled or TransportFailure. Host-side cancellation
        arrives as asyncio.CancelledError. Returning normally means the reply
        is complete.
        """
        ...


def records_to_messages(history: list[LogicalRecord], prompt: str) -> list[dict[str, Any]]:
    """Build chat-format messages from completed records plus the new prompt."""
    messages: list[dict[str, Any]] = []
    for record in history:
        if not record.content:
            continue
        role = "user" if record.role == Role.originator else "assistant"
        messages.append({"role": role, "content": record.content})
    messages.append({"role": "user", "content": prompt})
    return messages


class OpenAIStreamTransport(StreamingTransport):
    """Streams a chat completion from an OpenAI-compatible endpoint.

    Content tokens are yielded immediately. Tool call fragments are accumulated
    by index and yielded once as record fragments after the stream ends.
    No retries: a failed delivery is final and the user re-triggers.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        *,
        system_prompt: str = "",
        temperature: float | None = None,
    ) -> None:
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)
        self._model = model
        self._system_prompt = system_prompt
        self._temperature = temperature

    async def stream(self, messages: list[dict[str, Any]]) -> AsyncIterator[RecordDelta]:
        if self._system_prompt:
            messages = [{"role": "system", "content": self._system_prompt}, *messages]
        logger.debug("transport_stream_request", model=self._model, message_count=len(messages))

        pending_tool_calls: dict[int, dict[str, str]] = {}
        try:
            stream = await self._client.chat.completions.create(
                model=self._model,
                messages=messages,
                stream=True,
                **({"temperature": self._temperature} if self._temperature is not None else {}),
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta.content:
                    yield RecordDelta(text=delta.content)
                if delta.tool_calls:
                    for tc_delta in delta.tool_calls:
                        idx = tc_delta.index if tc_delta.index is not None else len(pending_tool_calls)
                        entry = pending_tool_calls.setdefault(
                            idx, {"id": "", "name": "", "arguments": ""}
                        )
                        if tc_delta.id:
                            entry["id"] = tc_delta.id
                        if tc_delta.function:
                            if tc_delta.function.name:
                                entry["name"] = tc_delta.function.name
                            if tc_delta.function.arguments:
                                entry["arguments"] += tc_delta.function.arguments
        except APITimeoutError as e:
            raise TransportFailure(f"Chat stream timed out: {e}", code="TRANSPORT_TIMEOUT") from e
        except APIConnectionError as e:
            raise TransportFailure(f"Chat stream connection failed: {e}") from e
        except APIStatusError as e:
            raise TransportFailure(
                f"Chat stream rejected (HTTP {e.status_code}): {e.message}",
                code=f"TRANSPORT_HTTP_{e.status_code}",
            ) from e
        except APIError as e:
            raise TransportFailure(f"Chat stream failed: {e}") from e

        if pending_tool_calls:
            yield RecordDelta(
                fragments=tuple(
                    Fragment(
                        id=entry["id"] or f"tool_call:{idx}",
                        kind="tool_call",
                        data={"name": entry["name"], "arguments": entry["arguments"]},
                    )
                    for idx, entry in sorted(pending_tool_calls.items())
                )
            )
