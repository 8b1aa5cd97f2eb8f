# aggregator.py
# Rebuilds one complete response from a stream of chunks.
#
# The result is indistinguishable from a blocking call: full text plus fully
# assembled tool calls. Half-formed calls never leave this module.

import json
import logging
import uuid
from collections.abc import AsyncIterator, Callable

from autoloop.errors import StreamFallback, StreamingToolCallError
from autoloop.models import ChatChunk, ChatMessage, ChatResponse, ToolCallRequest

logger = logging.getLogger(__name__)


def _generated_id() -> str:
    return f"call_{uuid.uuid4().hex[:16]}"


def _is_tool_streaming_failure(exc: Exception) -> bool:
    if isinstance(exc, StreamingToolCallError):
        return True
    message = str(exc).lower()
    return "stream" in message and "tool" in message


def _valid_arguments(raw: str) -> bool:
    try:
        parsed = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return False
    return isinstance(parsed, dict)


class ToolCallAccumulator:
    """Merges tool-call fragments by id, preserving first-seen order."""

    def __init__(self) -> None:
        self._calls: dict[str, dict[str, str]] = {}
        self._last_id: str | None = None

    def add(self, chunk: ChatChunk) -> None:
        for fragment in chunk.tool_calls:
            if not fragment.id and not fragment.name:
                logger.debug("Discarding tool-call fragment with neither id nor name: %r", fragment)
                continue

            call_id = fragment.id or self._last_id or _generated_id()
            call = self._calls.setdefault(call_id, {"name": "", "arguments": ""})
            self._last_id = call_id

            if fragment.name:
                call["name"] = fragment.name
            if fragment.arguments:
                call["arguments"] += fragment.arguments

    def complete_calls(self) -> list[ToolCallRequest]:
        """Calls with a name and a JSON-object argument string. Anything else is dropped whole."""
        calls: list[ToolCallRequest] = []
        for call_id, call in self._calls.items():
            if not call["name"].strip():
                logger.warning("Dropping streamed tool call %s with empty name", call_id)
                continue
            if not _valid_arguments(call["arguments"]):
                logger.warning(
                    "Dropping streamed tool call %s (%s): arguments are not valid JSON: %r",
                    call_id,
                    call["name"],
                    call["arguments"],
                )
                continue
            calls.append(ToolCallRequest(id=call_id, name=call["name"], arguments=call["arguments"]))
        return calls


async def aggregate_stream(
    chunks: AsyncIterator[ChatChunk],
    tools_offered: bool = False,
    on_content: Callable[[str], None] | None = None,
) -> ChatResponse:
    """
    Drain `chunks` into a single ChatResponse.

    Raises StreamFallback when the stream dies on tool-call fragments while
    tools were offered; the caller should repeat the request without streaming.
    Every other transport error propagates unchanged.
    """
    text: list[str] = []
    accumulator = ToolCallAccumulator()
    finish_reason: str | None = None
    usage: dict = {}
    timings: dict = {}

    try:
        async for chunk in chunks:
            if chunk.content:
                text.append(chunk.content)
                if on_content is not None:
                    on_content(chunk.content)
            if chunk.tool_calls:
                accumulator.add(chunk)
            if chunk.finish_reason:
                finish_reason = chunk.finish_reason
            if chunk.usage:
                usage = chunk.usage
            if chunk.timings:
                timings = chunk.timings
    except Exception as exc:
        if tools_offered and _is_tool_streaming_failure(exc):
            logger.warning("Stream failed on tool calls, signalling blocking retry: %s", exc)
            raise StreamFallback(exc) from exc
        raise

    tool_calls = accumulator.complete_calls()
    return ChatResponse(
        message=ChatMessage(
            role="assistant",
            content="".join(text),
            tool_calls=tool_calls or None,
        ),
        finish_reason=finish_reason,
        usage=usage,
        timings=timings,
    )
