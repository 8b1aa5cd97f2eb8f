# dispatcher.py
# Executes one turn's tool calls with bounded retries and identity dedup.
#
# Guarantees one ToolCallResult per request, in request order. A call id is
# executed at most once per run; repeats get the cached result back.

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

from autoloop.config import AgentConfig
from autoloop.errors import ArgumentParseError, ToolExecutionError, ToolNotFoundError
from autoloop.models import AgentContext, ExecutionAttempt, ToolCallRequest, ToolCallResult
from autoloop.tools import ToolRegistry, process_content_blocks

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]

_EMPTY_ARGUMENTS = ("", "null", "undefined")


def parse_arguments(raw: str | dict[str, Any] | None) -> dict[str, Any]:
    """
    Normalise tool-call arguments into a mapping.

    Empty, `null` and `undefined` text mean no arguments. Raises
    ArgumentParseError for malformed JSON or anything that is not an object.
    """
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    text = raw.strip()
    if text in _EMPTY_ARGUMENTS:
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ArgumentParseError(f"Invalid JSON arguments: {exc.msg}") from exc
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ArgumentParseError(f"Arguments must be a JSON object, got {type(parsed).__name__}")
    return parsed


class RetryDispatcher:
    """
    Runs tool calls one at a time against a ToolRegistry.

    Example:
        dispatcher = RetryDispatcher(build_default_registry(), AgentConfig())
        results = await dispatcher.dispatch(message.tool_calls, context)
    """

    def __init__(
        self,
        registry: ToolRegistry,
        config: AgentConfig | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self._registry = registry
        self._config = config or AgentConfig()
        self._on_progress = on_progress

    def _progress(self, message: str) -> None:
        if self._on_progress is not None:
            self._on_progress(message)

    async def dispatch(
        self, requests: list[ToolCallRequest], context: AgentContext
    ) -> list[ToolCallResult]:
        results: list[ToolCallResult] = []
        for request in requests:
            if request.id in context.resolved_ids:
                results.append(self._duplicate(request, context))
                continue

            result = await self._dispatch_one(request, context)
            context.resolved_ids.add(request.id)
            context.results_by_id[request.id] = result
            results.append(result)
        return results

    def _duplicate(self, request: ToolCallRequest, context: AgentContext) -> ToolCallResult:
        logger.info("Skipping already processed tool call %s (%s)", request.id, request.name)
        cached = context.results_by_id.get(request.id)
        if cached is None:
            return ToolCallResult(
                tool_name=request.name,
                call_id=request.id,
                success=False,
                error=f"Tool call {request.id} was already processed.",
                duplicate=True,
            )
        return cached.model_copy(update={"duplicate": True})

    async def _dispatch_one(self, request: ToolCallRequest, context: AgentContext) -> ToolCallResult:
        try:
            arguments = parse_arguments(request.arguments)
        except ArgumentParseError as exc:
            logger.warning("Tool call %s (%s) has unparseable arguments: %s", request.id, request.name, exc)
            self._progress(f"❌ {request.name}: {exc}")
            return ToolCallResult(
                tool_name=request.name,
                call_id=request.id,
                success=False,
                error=f"Failed to parse tool arguments: {exc}",
                attempts=0,
            )

        max_retries = self._config.max_retries
        last_error = "Unknown error"

        for attempt in range(1, max_retries + 1):
            try:
                tool = self._registry.resolve(request.name)
                outcome = await tool.execute(arguments)
                if not outcome.success:
                    raise ToolExecutionError(outcome.error or "Tool execution failed")
            except (ToolNotFoundError, ToolExecutionError) as exc:
                last_error = str(exc)
            except Exception as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            else:
                context.attempts.append(
                    ExecutionAttempt(attempt=attempt, tool_name=request.name, arguments=arguments, success=True)
                )
                if attempt > 1:
                    self._progress(f"✅ {request.name} succeeded on attempt {attempt}")
                return self._success(request, outcome, attempt)

            context.attempts.append(
                ExecutionAttempt(
                    attempt=attempt,
                    tool_name=request.name,
                    arguments=arguments,
                    success=False,
                    error=last_error,
                )
            )
            logger.warning(
                "Tool %s attempt %d/%d failed: %s", request.name, attempt, max_retries, last_error
            )
            if attempt < max_retries:
                self._progress(f"🔄 Retrying {request.name} (attempt {attempt + 1}/{max_retries})")
                await asyncio.sleep(self._config.retry_delay)

        self._progress(f"❌ {request.name} failed after {max_retries} attempts: {last_error}")
        return ToolCallResult(
            tool_name=request.name,
            call_id=request.id,
            success=False,
            error=f"Failed after {max_retries} attempts: {last_error}",
            attempts=max_retries,
        )

    def _success(self, request: ToolCallRequest, outcome, attempt: int) -> ToolCallResult:
        if outcome.content:
            result, artifacts, images, reply = process_content_blocks(request.name, outcome.content)
            return ToolCallResult(
                tool_name=request.name,
                call_id=request.id,
                success=True,
                result=result,
                artifacts=artifacts,
                images=images,
                reply=reply.model_copy(update={"tool_call_id": request.id}),
                attempts=attempt,
            )
        return ToolCallResult(
            tool_name=request.name,
            call_id=request.id,
            success=True,
            result=outcome.result,
            attempts=attempt,
        )
