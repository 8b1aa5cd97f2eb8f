import asyncio

import pytest

from autoloop.errors import StreamingToolCallError, TransportError, TransportUnavailableError
from autoloop.harness import Scaffold, build_system_prompt, collect_artifacts, continuation_prompt
from autoloop.ledger import InMemoryLedgerStore
from autoloop.models import (
    AgentContext,
    ChatChunk,
    CompletionVerdict,
    LoopState,
    ToolCallDelta,
    ToolCallResult,
    ToolDescriptor,
)
from autoloop.runtime import RunHandle, connections

from conftest import ScriptedTransport, partial_verdict, tool_calls


def _tool_messages(messages, call_id=None):
    return [m for m in messages if m.role == "tool" and (call_id is None or m.tool_call_id == call_id)]


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_list_files_scenario(registry, recorder, config):
    store = InMemoryLedgerStore()
    transport = ScriptedTransport(
        replies=[
            tool_calls(("call-1", "list_files", {"path": "/tmp"}), content="✅ Listing /tmp"),
            "The directory contains a.txt.",
        ]
    )
    handle = RunHandle()

    result = await Scaffold(transport, registry, config, ledger_store=store).run(
        "list files in /tmp", handle=handle
    )

    assert result.state is LoopState.DONE
    assert recorder.calls == [("list_files", {"path": "/tmp"})]
    assert len(transport.step_calls()) == 2
    assert result.verdict is not None
    assert result.verdict.confidence_score >= 0
    assert "a.txt" in result.content
    assert "## Execution Summary" in result.content
    assert result.tools_used == ["list_files"]
    assert result.processed_call_ids == ["call-1"]
    assert result.artifacts[0].title == "list_files Result"
    assert store.load(handle.run_id).final_status == "complete"


@pytest.mark.asyncio
async def test_streamed_split_arguments_dispatch_once(registry, recorder, config):
    config = config.model_copy(update={"enable_streaming": True})
    transport = ScriptedTransport(
        streams=[
            [
                ChatChunk(tool_calls=[ToolCallDelta(id="id-1", name="list_files", arguments='{"pa')]),
                ChatChunk(tool_calls=[ToolCallDelta(id="id-1", arguments='th":"/tmp"}')]),
            ],
            [ChatChunk(content="Found a.txt"), ChatChunk(finish_reason="stop")],
        ],
        supports_streaming_with_tools=True,
    )

    result = await Scaffold(transport, registry, config).run("list /tmp")

    assert recorder.calls == [("list_files", {"path": "/tmp"})]
    assert transport.kinds()[:2] == ["stream", "stream"]
    assert "Found a.txt" in result.content


@pytest.mark.asyncio
async def test_executor_that_always_throws_gets_one_reply(registry, recorder, config):
    transport = ScriptedTransport(replies=[tool_calls(("c1", "boom", {})), "I could not do it."])

    result = await Scaffold(transport, registry, config).run("explode")

    assert len(recorder.calls) == 3
    replies = _tool_messages(transport.step_calls()[1][1], "c1")
    assert len(replies) == 1
    assert "Failed after 3 attempts" in replies[0].content
    assert result.failed_tools == 1


@pytest.mark.asyncio
async def test_n_tool_calls_get_n_replies_in_order(registry, config):
    transport = ScriptedTransport(
        replies=[
            tool_calls(
                ("a", "echo", {"message": "one"}),
                ("b", "missing_tool", {}),
                ("c", "echo", {"message": "three"}),
            ),
            "done",
        ]
    )

    await Scaffold(transport, registry, config).run("three calls")

    replies = _tool_messages(transport.step_calls()[1][1])
    assert [m.tool_call_id for m in replies] == ["a", "b", "c"]
    assert replies[0].content == "one"
    assert "not found" in replies[1].content


@pytest.mark.asyncio
async def test_repeated_call_id_across_turns_executes_once(registry, recorder, config):
    transport = ScriptedTransport(
        replies=[
            tool_calls(("dup-1", "echo", {"message": "hi"})),
            tool_calls(("dup-1", "echo", {"message": "hi"})),
            "done",
        ]
    )

    result = await Scaffold(transport, registry, config).run("echo hi")

    assert recorder.calls == [("echo", {"message": "hi"})]
    assert len(_tool_messages(transport.step_calls()[2][1], "dup-1")) == 2
    assert result.successful_tools == 1


# ---------------------------------------------------------------------------
# Step budget and termination
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_step_budget_is_a_hard_ceiling(registry, config):
    config = config.model_copy(update={"step_budget": 3, "enable_verification": False})
    transport = ScriptedTransport(
        replies=[tool_calls((f"id-{i}", "echo", {"message": str(i)})) for i in range(10)]
    )

    result = await Scaffold(transport, registry, config).run("loop forever")

    assert len(transport.step_calls()) == 3
    assert result.state is LoopState.MAX_STEPS
    assert result.steps == 3


@pytest.mark.asyncio
async def test_stop_during_step_two_halts_before_step_three(registry, config):
    handle = RunHandle()

    def second_step():
        handle.stop()
        return tool_calls(("s2", "echo", {"message": "two"}))

    transport = ScriptedTransport(
        replies=[tool_calls(("s1", "echo", {"message": "one"})), second_step, "never reached"]
    )

    result = await Scaffold(transport, registry, config).run("stop me", handle=handle)

    assert len(transport.step_calls()) == 2
    assert "verify" not in transport.kinds()
    assert result.stopped is True
    assert result.state is LoopState.STOPPED
    assert "stopped by user at step 3" in result.content
    assert "Verification stopped by user" not in result.content
    assert result.verification_loops == 0


@pytest.mark.asyncio
async def test_stop_aborts_in_flight_model_call(registry, config):
    handle = RunHandle()
    entered = asyncio.Event()

    async def hang():
        entered.set()
        await asyncio.sleep(3600)

    transport = ScriptedTransport(replies=[tool_calls(("h1", "echo", {"message": "x"})), hang])
    task = asyncio.create_task(Scaffold(transport, registry, config).run("hang", handle=handle))

    await asyncio.wait_for(entered.wait(), timeout=5)
    assert handle.run_id in connections.active()
    handle.stop()
    result = await asyncio.wait_for(task, timeout=5)

    assert result.state is LoopState.STOPPED
    assert handle.run_id not in connections.active()


@pytest.mark.asyncio
async def test_first_call_failure_raises(registry, config):
    transport = ScriptedTransport(replies=[TransportError("connection refused")])
    with pytest.raises(TransportUnavailableError):
        await Scaffold(transport, registry, config).run("hello")


@pytest.mark.asyncio
async def test_later_failure_is_retried(registry, config):
    transport = ScriptedTransport(
        replies=[tool_calls(("r1", "echo", {"message": "x"})), TransportError("502 bad gateway"), "recovered"]
    )
    progress = []

    result = await Scaffold(transport, registry, config, on_progress=progress.append).run("retry")

    assert result.state is LoopState.DONE
    assert "recovered" in result.content
    assert any("Error in step 2" in p for p in progress)


@pytest.mark.asyncio
async def test_repeated_failures_end_in_error(registry, config):
    config = config.model_copy(update={"enable_verification": False})
    transport = ScriptedTransport(
        replies=[tool_calls(("r1", "echo", {"message": "x"}))] + [TransportError("503")] * 3
    )

    result = await Scaffold(transport, registry, config).run("retry")

    assert result.state is LoopState.ERROR
    assert result.error == "503"
    assert "repeated errors" in result.content
    assert len(transport.step_calls()) == 4


@pytest.mark.asyncio
async def test_duplicate_id_error_clears_and_finalizes(registry, config):
    transport = ScriptedTransport(
        replies=[
            tool_calls(("d1", "echo", {"message": "x"})),
            TransportError("Duplicate value for 'tool_call_id' of d1"),
        ]
    )

    result = await Scaffold(transport, registry, config).run("dup")

    assert result.state is LoopState.DONE
    assert result.processed_call_ids == []
    assert "technical issue" in result.content
    assert result.verdict is not None


# ---------------------------------------------------------------------------
# Streaming selection
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_tools_without_stream_support_use_blocking_calls(registry, config):
    config = config.model_copy(update={"enable_streaming": True})
    transport = ScriptedTransport(replies=["hi"], supports_streaming_with_tools=False)

    await Scaffold(transport, registry, config).run("hi")

    assert transport.kinds() == ["step"]


@pytest.mark.asyncio
async def test_stream_failure_on_tools_retries_blocking(registry, recorder, config):
    config = config.model_copy(update={"enable_streaming": True})
    transport = ScriptedTransport(
        streams=[
            [ChatChunk(tool_calls=[ToolCallDelta(id="x", name="echo")]), StreamingToolCallError("broken")],
            [ChatChunk(content="ok")],
        ],
        replies=[tool_calls(("x", "echo", {"message": "blocking"}))],
        supports_streaming_with_tools=True,
    )

    await Scaffold(transport, registry, config).run("fallback")

    assert transport.kinds()[:3] == ["stream", "step", "stream"]
    assert recorder.calls == [("echo", {"message": "blocking"})]


# ---------------------------------------------------------------------------
# Verification loop
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_verification_continues_then_caps(registry, config):
    config = config.model_copy(update={"max_verification_loops": 2})
    transport = ScriptedTransport(
        replies=[
            tool_calls(("v1", "echo", {"message": "1"})),
            "first pass",
            tool_calls(("v2", "echo", {"message": "2"})),
            "second pass",
            tool_calls(("v3", "echo", {"message": "3"})),
            "third pass",
        ],
        verdicts=[partial_verdict(50), partial_verdict(70)],
    )

    result = await Scaffold(transport, registry, config).run("keep going")

    assert transport.kinds().count("verify") == 2
    assert result.verification_loops == 2
    assert result.verdict.confidence_score == 70
    assert "Verification loop limit reached" in result.content
    continuation = [m for m in transport.step_calls()[2][1] if m.role == "system"][-1]
    assert "TASK CONTINUATION REQUIRED (Verification Loop 1)" in continuation.content
    assert "Write the report (using: echo)" in continuation.content


@pytest.mark.asyncio
async def test_continuation_without_tool_calls_ends_verification(registry, config):
    transport = ScriptedTransport(
        replies=[tool_calls(("v1", "echo", {"message": "1"})), "first", "nothing more to do"],
        verdicts=[partial_verdict(50)],
    )

    result = await Scaffold(transport, registry, config).run("q")

    assert transport.kinds().count("verify") == 1
    assert result.state is LoopState.DONE


@pytest.mark.asyncio
async def test_no_continuation_when_budget_nearly_spent(registry, config):
    config = config.model_copy(update={"step_budget": 3})
    transport = ScriptedTransport(
        replies=[tool_calls(("v1", "echo", {"message": "1"})), "done"],
        verdicts=[partial_verdict(50)],
    )

    result = await Scaffold(transport, registry, config).run("q")

    assert len(transport.step_calls()) == 2
    assert "Partially complete (50% confidence)" in result.content


@pytest.mark.asyncio
async def test_non_numeric_confidence_falls_back_to_partial(registry, config):
    transport = ScriptedTransport(
        replies=[tool_calls(("v1", "echo", {"message": "1"})), "first"],
        verdicts=['{"completionStatus": "partial", "confidenceScore": [50]}'],
    )

    result = await Scaffold(transport, registry, config).run("q")

    assert result.state is LoopState.DONE
    assert result.verdict.completion_status == "partial"
    assert result.verdict.confidence_score == 60
    assert transport.kinds().count("verify") == 1


@pytest.mark.asyncio
async def test_no_verification_without_tool_results(registry, config):
    transport = ScriptedTransport(replies=["Just an answer."])
    result = await Scaffold(transport, registry, config).run("hi")
    assert "verify" not in transport.kinds()
    assert result.verdict is None
    assert result.content == "Just an answer."


# ---------------------------------------------------------------------------
# Planning and prompts
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_plan_is_injected_into_system_prompt(registry, config):
    config = config.model_copy(update={"enable_planning": True})
    transport = ScriptedTransport(
        plans=["TOOLS_SUMMARY:\necho echoes\nEXECUTION_PLAN:\nStep 1: echo hi\nESTIMATED_STEPS:\n1"],
        replies=["hi"],
    )

    result = await Scaffold(transport, registry, config).run("say hi", system_prompt="You are terse.")

    assert transport.kinds() == ["plan", "step"]
    system = transport.step_calls()[0][1][0]
    assert system.role == "system"
    assert system.content.startswith("You are terse.")
    assert "Step 1: echo hi" in system.content
    assert result.execution_plan == "Step 1: echo hi"


def test_system_prompt_lists_tools_and_retry_policy():
    tools = [ToolDescriptor(name="echo", description="Echo.")]
    prompt = build_system_prompt(None, tools, AgentContext(original_query="q"), max_retries=3)
    assert "- echo: Echo." in prompt
    assert "If failures exceed 3" in prompt


def test_continuation_prompt_names_missing_components():
    verdict = CompletionVerdict.model_validate_json(partial_verdict(40))
    prompt = continuation_prompt(verdict, 3)
    assert "(Verification Loop 3)" in prompt
    assert "only 40% complete" in prompt
    assert "• Write the report (priority: high)" in prompt


def test_structured_results_become_json_artifacts():
    results = [
        ToolCallResult(tool_name="list_files", call_id="1", success=True, result=["a.txt"]),
        ToolCallResult(tool_name="echo", call_id="2", success=True, result="plain"),
        ToolCallResult(tool_name="boom", call_id="3", success=False, error="x"),
    ]
    artifacts = collect_artifacts(results)
    assert [a.id for a in artifacts] == ["tool-1"]
