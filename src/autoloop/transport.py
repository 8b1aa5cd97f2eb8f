# transport.py
# Chat transport capability and its OpenAI-compatible implementation.
#
# The agent loop only ever talks to the ChatTransport protocol. Any provider
# (OpenRouter, OpenAI, a local llama.cpp / Ollama server exposing the OpenAI
# API) plugs in here.

import logging
import os
from collections.abc import AsyncIterator, Sequence
from typing import Any, Protocol, runtime_checkable

from dotenv import load_dotenv
from openai import AsyncOpenAI, OpenAIError

from autoloop.errors import TransportError
from autoloop.models import (
    ChatChunk,
    ChatMessage,
    ChatOptions,
    ChatResponse,
    ToolCallDelta,
    ToolCallRequest,
    ToolDescriptor,
)

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"


@runtime_checkable
class ChatTransport(Protocol):
    """Blocking and streaming chat completion."""

    supports_streaming_with_tools: bool

    async def send_chat(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions,
        tools: Sequence[ToolDescriptor] | None = None,
    ) -> ChatResponse: ...

    def stream_chat(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions,
        tools: Sequence[ToolDescriptor] | None = None,
    ) -> AsyncIterator[ChatChunk]: ...


# ---------------------------------------------------------------------------
# OpenAI-compatible transport
# ---------------------------------------------------------------------------


def _usage_dict(usage: Any) -> dict[str, Any]:
    if usage is None:
        return {}
    if hasattr(usage, "model_dump"):
        return usage.model_dump(exclude_none=True)
    return dict(usage)


class OpenAITransport:
    """
    ChatTransport over the official `openai` async client.

    `supports_streaming_with_tools` is a capability the caller declares. Hosted
    OpenAI-style APIs split tool arguments across many deltas and some gateways
    mangle them, so the default is False; local servers usually handle it.

    Example:
        transport = OpenAITransport(base_url="http://localhost:11434/v1",
                                    api_key="ollama",
                                    supports_streaming_with_tools=True)
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        supports_streaming_with_tools: bool = False,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.supports_streaming_with_tools = supports_streaming_with_tools
        self._client = client or AsyncOpenAI(
            base_url=base_url or os.getenv("AUTOLOOP_BASE_URL", DEFAULT_BASE_URL),
            api_key=api_key or os.getenv("OPENROUTER_API_KEY") or os.getenv("OPENAI_API_KEY"),
        )

    def _request(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions,
        tools: Sequence[ToolDescriptor] | None,
    ) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": model,
            "messages": [m.to_openai() for m in messages],
            **options.as_kwargs(),
        }
        if tools:
            request["tools"] = [t.to_openai() for t in tools]
        return request

    async def send_chat(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions,
        tools: Sequence[ToolDescriptor] | None = None,
    ) -> ChatResponse:
        try:
            response = await self._client.chat.completions.create(
                **self._request(model, messages, options, tools)
            )
        except OpenAIError as exc:
            raise TransportError(str(exc)) from exc

        if not response.choices:
            raise TransportError("Model returned no choices.")

        choice = response.choices[0]
        tool_calls = [
            ToolCallRequest(id=tc.id, name=tc.function.name, arguments=tc.function.arguments)
            for tc in (choice.message.tool_calls or [])
        ]
        return ChatResponse(
            message=ChatMessage(
                role="assistant",
                content=choice.message.content or "",
                tool_calls=tool_calls or None,
            ),
            finish_reason=choice.finish_reason,
            usage=_usage_dict(response.usage),
        )

    async def stream_chat(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        options: ChatOptions,
        tools: Sequence[ToolDescriptor] | None = None,
    ) -> AsyncIterator[ChatChunk]:
        request = self._request(model, messages, options, tools)
        request["stream"] = True
        request["stream_options"] = {"include_usage": True}

        # OpenAI deltas carry the call id only on the first fragment; later
        # fragments are addressed by index. Re-attach the id to every fragment.
        ids_by_index: dict[int, str] = {}

        try:
            stream = await self._client.chat.completions.create(**request)
            async for chunk in stream:
                usage = _usage_dict(getattr(chunk, "usage", None)) or None
                if not chunk.choices:
                    if usage:
                        yield ChatChunk(usage=usage)
                    continue

                choice = chunk.choices[0]
                delta = choice.delta
                fragments: list[ToolCallDelta] = []
                for tc in getattr(delta, "tool_calls", None) or []:
                    if tc.id:
                        ids_by_index[tc.index] = tc.id
                    function = tc.function
                    fragments.append(
                        ToolCallDelta(
                            id=tc.id or ids_by_index.get(tc.index),
                            name=function.name if function else None,
                            arguments=function.arguments if function else None,
                        )
                    )
                yield ChatChunk(
                    content=delta.content if delta else None,
                    tool_calls=fragments,
                    finish_reason=choice.finish_reason,
                    usage=usage,
                )
        except OpenAIError as exc:
            raise TransportError(str(exc)) from exc
