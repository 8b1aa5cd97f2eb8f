import json

import pytest

from autoloop.config import AgentConfig
from autoloop.models import (
    ChatMessage,
    ChatResponse,
    ToolCallRequest,
    ToolDescriptor,
    ToolOutcome,
    ToolParameter,
)
from autoloop.tools import ToolRegistry

COMPLETE_VERDICT = json.dumps(
    {
        "completionStatus": "complete",
        "confidenceScore": 100,
        "completedComponents": [
            {"description": "Request fulfilled", "status": "verified", "evidence": ["tool output"], "confidence": 100}
        ],
        "missingComponents": [],
        "nextActions": [],
        "evidenceSummary": {"operationsPerformed": ["tool call"]},
    }
)


def partial_verdict(confidence: int = 50) -> str:
    return json.dumps(
        {
            "completionStatus": "partial",
            "confidenceScore": confidence,
            "missingComponents": [{"description": "Write the report", "priority": "high"}],
            "nextActions": [{"action": "Write the report", "toolsNeeded": ["echo"]}],
        }
    )


def text(content: str) -> ChatResponse:
    return ChatResponse(message=ChatMessage(role="assistant", content=content), finish_reason="stop")


def tool_calls(*calls: tuple[str, str, dict], content: str = "") -> ChatResponse:
    """Assistant response requesting (id, name, args) tool calls."""
    return ChatResponse(
        message=ChatMessage(
            role="assistant",
            content=content,
            tool_calls=[ToolCallRequest(id=i, name=n, arguments=json.dumps(a)) for i, n, a in calls],
        ),
        finish_reason="tool_calls",
    )


# ---------------------------------------------------------------------------
# Scripted transport
# ---------------------------------------------------------------------------


class ScriptedTransport:
    """
    ChatTransport double driven by queues.

    Agent steps, planning calls and verification calls each draw from their
    own queue. Queue items may be a ChatResponse, a str (plain text reply),
    an exception (raised) or a zero-arg callable returning/awaiting one of those.
    Every call is recorded in `calls` as (kind, messages, options, tools).
    """

    def __init__(self, replies=(), verdicts=(), plans=(), streams=(), supports_streaming_with_tools=False):
        self.replies = list(replies)
        self.verdicts = list(verdicts)
        self.plans = list(plans)
        self.streams = list(streams)
        self.supports_streaming_with_tools = supports_streaming_with_tools
        self.calls: list[tuple] = []

    def kinds(self) -> list[str]:
        return [c[0] for c in self.calls]

    def step_calls(self) -> list[tuple]:
        return [c for c in self.calls if c[0] in ("step", "stream")]

    async def _resolve(self, item):
        if callable(item):
            item = item()
        if hasattr(item, "__await__"):
            item = await item
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            return text(item)
        return item

    async def send_chat(self, model, messages, options, tools=None):
        if options.response_format:
            kind, queue, default = "verify", self.verdicts, COMPLETE_VERDICT
        elif options.temperature == 0.6 and not tools:
            kind, queue, default = "plan", self.plans, "TOOLS_SUMMARY:\nnone\nESTIMATED_STEPS:\n2"
        else:
            kind, queue, default = "step", self.replies, "Done."
        self.calls.append((kind, list(messages), options, tools))
        return await self._resolve(queue.pop(0) if queue else default)

    async def stream_chat(self, model, messages, options, tools=None):
        self.calls.append(("stream", list(messages), options, tools))
        for chunk in self.streams.pop(0):
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config():
    return AgentConfig(
        retry_delay=0,
        enable_planning=False,
        enable_streaming=False,
    )


class Recorder:
    """Tool handlers that count their invocations."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []

    def echo(self, args):
        self.calls.append(("echo", args))
        return str(args.get("message", ""))

    def list_files(self, args):
        self.calls.append(("list_files", args))
        return ["a.txt"]

    def boom(self, args):
        self.calls.append(("boom", args))
        raise RuntimeError("executor exploded")

    def flaky_factory(self, failures: int):
        remaining = {"n": failures}

        def flaky(args):
            self.calls.append(("flaky", args))
            if remaining["n"] > 0:
                remaining["n"] -= 1
                return ToolOutcome(success=False, error="temporarily unavailable")
            return "recovered"

        return flaky


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def registry(recorder):
    reg = ToolRegistry()
    reg.register(
        ToolDescriptor(
            name="echo",
            description="Echo a message.",
            parameters=(ToolParameter(name="message", required=True),),
        ),
        recorder.echo,
    )
    reg.register(
        ToolDescriptor(
            name="list_files",
            description="List a directory.",
            parameters=(ToolParameter(name="path"),),
        ),
        recorder.list_files,
    )
    reg.register(ToolDescriptor(name="boom", description="Always fails."), recorder.boom)
    return reg
