# harness.py
# Autonomous agent loop.
#
# The Scaffold is the kernel. The model is a passive responder: this class
# owns all control flow, the step budget, retries, verification and the
# final answer. Tools only ever run through the RetryDispatcher.
#
# Control flow:
#   query → plan? → enhanced system prompt
#   → STEP* (model call → aggregate → dispatch → replies → ledger)
#   → verify → continuation? → re-verify … → final answer
#
# Presentation is not done here. Progress strings go to the on_progress
# callback; display.py provides a terminal sink for it.

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from autoloop.aggregator import aggregate_stream
from autoloop.config import AgentConfig
from autoloop.dispatcher import RetryDispatcher
from autoloop.errors import StreamFallback, TransportError, TransportUnavailableError
from autoloop.ledger import ExecutionLedger, LedgerStore
from autoloop.models import (
    AgentContext,
    AgentResult,
    Artifact,
    ChatMessage,
    ChatResponse,
    CompletionVerdict,
    LoopState,
    ToolCallRequest,
    ToolCallResult,
    ToolDescriptor,
)
from autoloop.planner import Planner
from autoloop.runtime import RunHandle, connections
from autoloop.tools import ToolRegistry
from autoloop.transport import ChatTransport
from autoloop.verification import Verifier

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."

EMPTY_RESULT_MESSAGE = (
    "I completed the autonomous agent execution, but encountered some technical issues. "
    "Please try again."
)


# ---------------------------------------------------------------------------
# System prompts
# ---------------------------------------------------------------------------

AGENT_PROMPT = """\
{base}

AUTONOMOUS AGENT MODE

You operate as an autonomous agent that chains tool calls until the user's request is satisfied.
{plan}
CORE PRINCIPLES:
1. Follow the plan above as a guide, but adapt to the results you observe.
2. Remember what each tool call accomplished and build upon it.
3. After running a command or writing a file, check the result in the next step.
4. Never call the same tool with the same arguments twice.
5. Use the output of one tool as input for the next when it makes sense.

FALLBACK STRATEGY:
- On first failure: read the error, fix the arguments and retry.
- If failures exceed {max_retries}: choose an alternative tool or approach.
- If no suitable tool remains: give the best answer possible with what you have.

AVAILABLE TOOLS:
{tools}

RESPONSE FORMAT:
Mark progress lines with ✅ (done) and 🔄 (in progress), and use **Progress**, \
**Current State** and **Next Steps** headings so your progress can be tracked. \
When the request is satisfied, reply with the final answer and no tool calls.\
"""

PLAN_SECTION = """
TOOLS SUMMARY:
{summary}

EXECUTION PLAN ({steps} estimated steps):
{plan}
"""

CONTINUATION_PROMPT = """\
TASK CONTINUATION REQUIRED (Verification Loop {loop})

Based on verification analysis, the task is only {confidence}% complete. \
Continue execution to complete these remaining actions:

{actions}
{missing}
Continue with autonomous execution to complete these remaining tasks.\
"""


def _describe_tool(tool: ToolDescriptor) -> str:
    required = [p.name for p in tool.parameters if p.required]
    optional = [p.name for p in tool.parameters if not p.required]
    return (
        f"- {tool.name}: {tool.description}\n"
        f"  Required: {', '.join(required) or 'none'}\n"
        f"  Optional: {', '.join(optional) or 'none'}"
    )


def build_system_prompt(
    base: str | None,
    tools: Sequence[ToolDescriptor],
    context: AgentContext,
    max_retries: int,
) -> str:
    """Caller's system prompt plus plan injection, retry policy and tool list."""
    plan = ""
    if context.tools_summary:
        plan = PLAN_SECTION.format(
            summary=context.tools_summary,
            steps=context.estimated_steps or "?",
            plan=context.execution_plan or "Plan will be determined based on your request.",
        )
    return AGENT_PROMPT.format(
        base=base or DEFAULT_SYSTEM_PROMPT,
        plan=plan,
        max_retries=max_retries,
        tools="\n".join(_describe_tool(t) for t in tools) or "No tools available",
    )


def continuation_prompt(verdict: CompletionVerdict, loop: int) -> str:
    actions = "\n".join(
        f"{i}. {a.action} (using: {', '.join(a.tools_needed) or 'appropriate tools'})"
        for i, a in enumerate(verdict.next_actions, 1)
    )
    missing = ""
    if verdict.missing_components:
        missing = "\nMissing components to complete:\n" + "\n".join(
            f"• {m.description} (priority: {m.priority})" for m in verdict.missing_components
        ) + "\n"
    return CONTINUATION_PROMPT.format(
        loop=loop, confidence=verdict.confidence_score, actions=actions, missing=missing
    )


# ---------------------------------------------------------------------------
# Result helpers
# ---------------------------------------------------------------------------


def _result_text(result: ToolCallResult, limit: int | None = None) -> str:
    text = result.result if isinstance(result.result, str) else json.dumps(result.result, default=str)
    return text if limit is None else text[:limit]


def recovery_summary(results: Sequence[ToolCallResult]) -> str:
    """Summary written when a duplicate tool-call id aborted the loop."""
    successful = [r for r in results if r.success]
    failed = [r for r in results if not r.success]
    lines = [
        "I encountered a technical issue while processing the tools, but I was able to execute "
        f"{len(successful)} tools successfully"
        + (f" and {len(failed)} tools failed" if failed else "")
        + ". Here's what I found:",
        "",
    ]
    lines.extend(f"**{r.tool_name}**: {_result_text(r)}\n" for r in successful if r.result)
    lines.extend(f"**{r.tool_name}** (failed): {r.error or 'Unknown error'}\n" for r in failed)
    return "\n".join(lines).rstrip()


def error_summary(results: Sequence[ToolCallResult]) -> str:
    """Summary written when repeated model-call failures ended the loop."""
    lines = ["I encountered repeated errors during execution. Here's what I was able to accomplish:", ""]
    if not results:
        lines.append("Unfortunately, I wasn't able to execute any tools successfully due to technical issues.")
        return "\n".join(lines)

    successful = [r for r in results if r.success]
    lines.append(f"✅ Successfully executed {len(successful)} tools")
    lines.append(f"❌ Failed to execute {len(results) - len(successful)} tools")
    if successful:
        lines.append("")
        lines.append("**Successful results:**")
        lines.extend(f"- **{r.tool_name}**: {_result_text(r, 200)}..." for r in successful if r.result)
    return "\n".join(lines)


def collect_artifacts(results: Sequence[ToolCallResult]) -> list[Artifact]:
    """Tool artifacts, plus a JSON artifact for each structured result that has none."""
    artifacts: list[Artifact] = []
    for result in results:
        if result.artifacts:
            artifacts.extend(result.artifacts)
        elif result.success and isinstance(result.result, (dict, list)):
            artifacts.append(
                Artifact(
                    id=f"tool-{result.call_id}",
                    title=f"{result.tool_name} Result",
                    content=json.dumps(result.result, indent=2, default=str),
                    metadata={"tool_name": result.tool_name, "call_id": result.call_id},
                )
            )
    return artifacts


@dataclass
class _Run:
    """Mutable state for one Scaffold.run() call. Never shared between runs."""

    handle: RunHandle
    context: AgentContext
    ledger: ExecutionLedger
    conversation: list[ChatMessage]
    tools: list[ToolDescriptor]
    results: list[ToolCallResult] = field(default_factory=list)
    content: list[str] = field(default_factory=list)
    usage: dict[str, Any] = field(default_factory=dict)
    timings: dict[str, Any] = field(default_factory=dict)
    model_calls: int = 0
    tool_turns: int = 0
    error: str | None = None


# ---------------------------------------------------------------------------
# Scaffold
# ---------------------------------------------------------------------------


class Scaffold:
    """
    Central harness for autonomous tool-using execution.

    Example:
        scaffold = Scaffold(OpenAITransport(), build_default_registry(), AgentConfig.from_env())
        result = await scaffold.run("List the files in /tmp and summarize them.")
    """

    def __init__(
        self,
        transport: ChatTransport,
        registry: ToolRegistry,
        config: AgentConfig | None = None,
        on_progress: Callable[[str], None] | None = None,
        on_content: Callable[[str], None] | None = None,
        ledger_store: LedgerStore | None = None,
    ) -> None:
        self._transport = transport
        self._registry = registry
        self._config = config or AgentConfig()
        self._on_progress = on_progress
        self._on_content = on_content
        self._ledger_store = ledger_store
        self._dispatcher = RetryDispatcher(registry, self._config, on_progress)
        self._planner = Planner(transport, self._config.model, self._config.planner_history_window)
        self._verifier = Verifier(transport, self._config.model)

    @property
    def config(self) -> AgentConfig:
        return self._config

    def _progress(self, message: str) -> None:
        logger.debug(message)
        if self._on_progress is not None:
            self._on_progress(message)

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    async def _tracked(self, run_id: str, coro: Awaitable[ChatResponse]) -> ChatResponse:
        """Await `coro` as a task registered for this run so stop() can abort it."""
        task = asyncio.ensure_future(coro)
        connections.register(run_id, task)
        try:
            return await task
        finally:
            connections.release(run_id, task)

    async def _call_model(self, run: _Run) -> ChatResponse:
        model = self._config.model
        options = self._config.chat_options()
        tools = run.tools or None
        run.model_calls += 1

        streaming = self._config.enable_streaming and (
            not tools or self._transport.supports_streaming_with_tools
        )
        if not streaming:
            return await self._tracked(
                run.handle.run_id,
                self._transport.send_chat(model, run.conversation, options, tools),
            )

        chunks = self._transport.stream_chat(model, run.conversation, options, tools)
        try:
            return await self._tracked(
                run.handle.run_id,
                aggregate_stream(chunks, tools_offered=bool(tools), on_content=self._on_content),
            )
        except StreamFallback as exc:
            logger.warning("Falling back to a blocking call: %s", exc.cause)
            self._progress("⚠️ Switching to non-streaming mode for tool support...")
            return await self._tracked(
                run.handle.run_id,
                self._transport.send_chat(model, run.conversation, options, tools),
            )

    # ------------------------------------------------------------------
    # Tool replies
    # ------------------------------------------------------------------

    @staticmethod
    def _append_replies(
        conversation: list[ChatMessage],
        calls: Sequence[ToolCallRequest],
        results: Sequence[ToolCallResult],
    ) -> None:
        """Exactly one tool-role message per call, in call order."""
        by_id = {r.call_id: r for r in results}
        for call in calls:
            result = by_id.get(call.id)
            if result is None:
                logger.warning("No result for tool call %s (%s), synthesizing failure", call.id, call.name)
                conversation.append(
                    ChatMessage(
                        role="tool",
                        content=f"Tool execution failed: No result returned for {call.name or 'unknown tool'}",
                        name=call.name or "unknown_tool",
                        tool_call_id=call.id,
                    )
                )
            elif result.reply is not None:
                conversation.append(result.reply.model_copy(update={"tool_call_id": call.id}))
            else:
                conversation.append(
                    ChatMessage(
                        role="tool",
                        content=result.reply_text(),
                        name=result.tool_name,
                        tool_call_id=call.id,
                    )
                )

    # ------------------------------------------------------------------
    # Step loop
    # ------------------------------------------------------------------

    async def _run_steps(
        self, run: _Run, max_steps: int, verification_loop: int | None = None
    ) -> LoopState:
        """
        Run up to `max_steps` agent steps, never past the run's step budget.

        Returns DONE when the model stops calling tools (or the continuation
        window closes), STOPPED on a stop request, MAX_STEPS when the budget
        is spent and ERROR after repeated model-call failures.
        """
        context = run.context
        failures = 0

        for _ in range(max_steps):
            if run.handle.stop_requested:
                self._note_stopped(run, "Execution", context.current_step + 1)
                return LoopState.STOPPED
            if context.current_step >= context.step_budget:
                return LoopState.MAX_STEPS

            step = context.advance()
            label = f"Step {step}/{context.step_budget}"
            if verification_loop:
                label += f" (verification loop {verification_loop})"
            self._progress(f"🔄 {label}")

            try:
                response = await self._call_model(run)
            except asyncio.CancelledError:
                if run.handle.stop_requested:
                    self._note_stopped(run, "Execution", step)
                    return LoopState.STOPPED
                raise
            except TransportError as exc:
                if run.model_calls == 1:
                    raise TransportUnavailableError(f"Model call failed: {exc}") from exc

                message = str(exc)
                if "duplicate" in message.lower():
                    logger.error("Duplicate tool_call_id rejected by the model API: %s", message)
                    self._progress("❌ Duplicate tool call detected, finishing with current results")
                    context.resolved_ids.clear()
                    if run.results:
                        run.content.append(recovery_summary(run.results))
                    return LoopState.DONE

                failures += 1
                logger.warning("Step %d failed (%d/%d): %s", step, failures, self._config.max_retries, message)
                self._progress(f"❌ Error in step {step}: {message}")
                if failures >= self._config.max_retries:
                    run.error = message
                    run.content.append(error_summary(run.results))
                    return LoopState.ERROR
                continue

            failures = 0
            message = response.message
            if response.usage:
                run.usage = response.usage
            if response.timings:
                run.timings = response.timings
            if message.content:
                run.content.append(message.content)

            if not message.tool_calls:
                logger.info("%s: no tool calls, done", label)
                return LoopState.DONE

            assistant = ChatMessage(role="assistant", content=message.content, tool_calls=message.tool_calls)
            run.conversation.append(assistant)
            recorded = run.ledger.append(step, assistant, verification_loop)

            self._progress(f"🔧 Using {', '.join(dict.fromkeys(c.name for c in message.tool_calls))}...")
            results = await self._dispatcher.dispatch(message.tool_calls, context)
            self._append_replies(run.conversation, message.tool_calls, results)

            fresh = [r for r in results if not r.duplicate]
            run.results.extend(fresh)
            run.tool_turns += 1
            context.progress_log.append(f"Step {step}: {recorded.progress_summary or 'tools executed'}")

            failed = sum(1 for r in fresh if not r.success)
            if failed:
                self._progress(f"✅ Completed ({len(fresh) - failed} successful, {failed} failed)")
            else:
                self._progress("✅ Completed successfully")

        if context.current_step >= context.step_budget:
            logger.info("Step budget of %d exhausted", context.step_budget)
            return LoopState.MAX_STEPS
        return LoopState.DONE

    def _note_stopped(self, run: _Run, what: str, step: int | None = None) -> None:
        where = f" at step {step}" if step is not None else ""
        note = f"🛑 **{what} stopped by user{where}**"
        logger.info("Run %s: %s stopped by user%s", run.handle.run_id, what.lower(), where)
        self._progress(note)
        run.content.append(note)

    # ------------------------------------------------------------------
    # Verification loop
    # ------------------------------------------------------------------

    async def _verify(self, run: _Run, state: LoopState) -> tuple[LoopState, CompletionVerdict | None, int]:
        """Verify, continue while the verdict asks for more work, re-verify."""
        config = self._config
        context = run.context
        verdict: CompletionVerdict | None = None
        loops = 0

        while loops < config.max_verification_loops:
            if run.handle.stop_requested:
                self._note_stopped(run, "Verification")
                return LoopState.STOPPED, verdict, loops

            loops += 1
            self._progress(f"🔍 Verifying task completion (loop {loops})...")
            verdict = await self._verifier.verify(
                context.original_query, run.results, context, run.ledger.steps
            )
            status, confidence = verdict.completion_status, verdict.confidence_score
            self._progress(f"🔍 Verification: {status} ({confidence}% confidence)")

            if status == "complete" or confidence >= config.completion_confidence:
                run.content.append(f"**✅ Task Verification Complete** ({confidence}% confidence)")
                break

            if (
                verdict.next_actions
                and context.remaining_steps > config.continuation_safety_margin
            ):
                self._progress(f"🔄 Missing work detected, continuing execution (loop {loops})")
                run.conversation.append(ChatMessage(role="system", content=continuation_prompt(verdict, loops)))
                window = min(context.remaining_steps, len(verdict.next_actions) + config.continuation_buffer)
                turns_before = run.tool_turns
                state = await self._run_steps(run, window, verification_loop=loops)
                if state in (LoopState.STOPPED, LoopState.ERROR):
                    break
                if run.tool_turns == turns_before:
                    break
                continue

            run.content.append(
                f"**🔍 Task Verification**: "
                f"{'Incomplete' if status == 'incomplete' else 'Partially complete'} ({confidence}% confidence)"
                + (
                    "\n**Missing components**: " + ", ".join(m.description for m in verdict.missing_components)
                    if verdict.missing_components
                    else ""
                )
            )
            break
        else:
            self._progress("⚠️ Verification loop limit reached")
            if verdict is not None:
                run.content.append(
                    f"**🔍 Task Status**: Verification loop limit reached ({loops} iterations)\n"
                    f"**Final confidence**: {verdict.confidence_score}% - {verdict.completion_status}"
                )

        return state, verdict, loops

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        query: str,
        system_prompt: str | None = None,
        history: Sequence[ChatMessage] | None = None,
        handle: RunHandle | None = None,
    ) -> AgentResult:
        """
        Full pipeline entry point.

        Always returns an AgentResult, except when the very first model call
        fails, which raises TransportUnavailableError.
        """
        handle = handle or RunHandle()
        history = list(history or [])
        tools = self._registry.descriptors()
        context = AgentContext(
            original_query=query,
            tools_available=[t.name for t in tools],
            step_budget=self._config.step_budget,
        )
        ledger = ExecutionLedger(handle.run_id, query, self._ledger_store)
        logger.info("Run %s started with %d tools", handle.run_id, len(tools))

        # ── Planning ──────────────────────────────────────────────────
        if self._config.enable_planning and tools and not handle.stop_requested:
            self._progress("🧠 Analyzing available tools and conversation history...")
            plan = await self._planner.plan(query, tools, history)
            context.tools_summary = plan.summary
            context.execution_plan = plan.plan
            context.estimated_steps = plan.estimated_steps
            self._progress(f"✅ Plan created: {plan.estimated_steps} steps identified")

        # ── Conversation ──────────────────────────────────────────────
        if system_prompt is None and history and history[0].role == "system":
            system_prompt = history[0].content
        conversation = [
            ChatMessage(
                role="system",
                content=build_system_prompt(system_prompt, tools, context, self._config.max_retries),
            )
        ]
        conversation.extend(m for m in history if m.role != "system")
        conversation.append(ChatMessage(role="user", content=query))

        run = _Run(handle=handle, context=context, ledger=ledger, conversation=conversation, tools=tools)

        # ── Agent loop ────────────────────────────────────────────────
        try:
            state = await self._run_steps(run, self._config.step_budget)
        except TransportUnavailableError:
            ledger.finalize(LoopState.ERROR.value, 0)
            raise

        # ── Verification ──────────────────────────────────────────────
        verdict: CompletionVerdict | None = None
        loops = 0
        if self._config.enable_verification and run.results and state is not LoopState.STOPPED:
            state, verdict, loops = await self._verify(run, state)

        return self._finish(run, state, verdict, loops)

    def _finish(
        self, run: _Run, state: LoopState, verdict: CompletionVerdict | None, loops: int
    ) -> AgentResult:
        summary = run.ledger.summary(run.results)
        if verdict is not None:
            run.ledger.finalize(verdict.completion_status, verdict.confidence_score)
        else:
            run.ledger.finalize(state.value, 0)

        parts = [part for part in run.content if part.strip()]
        if summary:
            parts.append(summary)
        content = "\n\n".join(parts) or EMPTY_RESULT_MESSAGE

        successful = sum(1 for r in run.results if r.success)
        logger.info(
            "Run %s finished: %s after %d steps, %d tool results",
            run.handle.run_id,
            state.value,
            run.context.current_step,
            len(run.results),
        )
        return AgentResult(
            run_id=run.handle.run_id,
            content=content,
            state=state,
            stopped=state is LoopState.STOPPED,
            usage=run.usage,
            timings=run.timings,
            tools_used=[r.tool_name for r in run.results],
            steps=run.context.current_step,
            successful_tools=successful,
            failed_tools=len(run.results) - successful,
            artifacts=collect_artifacts(run.results),
            verdict=verdict,
            verification_loops=loops,
            processed_call_ids=[cid for cid in run.context.results_by_id if cid in run.context.resolved_ids],
            execution_plan=run.context.execution_plan,
            error=run.error,
        )
