import pytest

from autoloop.dispatcher import RetryDispatcher, parse_arguments
from autoloop.errors import ArgumentParseError
from autoloop.models import AgentContext, ContentBlock, ToolCallRequest, ToolDescriptor, ToolOutcome


def _ctx() -> AgentContext:
    return AgentContext(original_query="test")


def _req(id: str, name: str, arguments="{}") -> ToolCallRequest:
    return ToolCallRequest(id=id, name=name, arguments=arguments)


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("raw", ["", "   ", "null", "undefined", None])
def test_empty_arguments_mean_no_arguments(raw):
    assert parse_arguments(raw) == {}


def test_mapping_arguments_pass_through():
    args = {"path": "/tmp"}
    assert parse_arguments(args) is args


@pytest.mark.parametrize("raw", ['{"path": ', "[1, 2]", '"text"', "42"])
def test_malformed_or_non_object_arguments_raise(raw):
    with pytest.raises(ArgumentParseError):
        parse_arguments(raw)


# ---------------------------------------------------------------------------
# Retry behaviour
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_executor_that_always_throws_gives_one_failed_result(registry, recorder, config):
    dispatcher = RetryDispatcher(registry, config)
    context = _ctx()

    results = await dispatcher.dispatch([_req("c1", "boom")], context)

    assert len(results) == 1
    assert results[0].success is False
    assert results[0].attempts == 3
    assert "executor exploded" in results[0].error
    assert len([c for c in recorder.calls if c[0] == "boom"]) == 3
    assert [a.attempt for a in context.attempts] == [1, 2, 3]
    assert not any(a.success for a in context.attempts)


@pytest.mark.asyncio
async def test_reported_failure_is_retried_until_success(registry, recorder, config):
    registry.register(ToolDescriptor(name="flaky"), recorder.flaky_factory(failures=1))
    progress = []
    dispatcher = RetryDispatcher(registry, config, on_progress=progress.append)
    context = _ctx()

    (result,) = await dispatcher.dispatch([_req("f1", "flaky")], context)

    assert result.success is True
    assert result.result == "recovered"
    assert result.attempts == 2
    assert [a.success for a in context.attempts] == [False, True]
    assert any("Retrying flaky" in p for p in progress)


@pytest.mark.asyncio
async def test_unknown_tool_is_retried_then_fails(registry, config):
    dispatcher = RetryDispatcher(registry, config)
    (result,) = await dispatcher.dispatch([_req("u1", "no_such_tool")], _ctx())
    assert result.success is False
    assert result.attempts == config.max_retries
    assert "not found" in result.error


@pytest.mark.asyncio
async def test_malformed_arguments_fail_without_execution(registry, recorder, config):
    dispatcher = RetryDispatcher(registry, config)
    context = _ctx()

    (result,) = await dispatcher.dispatch([_req("m1", "echo", '{"message": ')], context)

    assert result.success is False
    assert result.attempts == 0
    assert recorder.calls == []
    assert context.attempts == []
    assert "m1" in context.resolved_ids


# ---------------------------------------------------------------------------
# Identity dedup
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_repeated_id_in_one_batch_executes_once(registry, recorder, config):
    dispatcher = RetryDispatcher(registry, config)
    requests = [_req("d1", "echo", '{"message": "hi"}'), _req("d1", "echo", '{"message": "hi"}')]

    results = await dispatcher.dispatch(requests, _ctx())

    assert len(results) == 2
    assert recorder.calls == [("echo", {"message": "hi"})]
    assert results[0].duplicate is False
    assert results[1].duplicate is True
    assert results[1].result == "hi"


@pytest.mark.asyncio
async def test_id_resolved_in_earlier_turn_is_not_redispatched(registry, recorder, config):
    dispatcher = RetryDispatcher(registry, config)
    context = _ctx()

    await dispatcher.dispatch([_req("d1", "echo", '{"message": "first"}')], context)
    (again,) = await dispatcher.dispatch([_req("d1", "echo", '{"message": "second"}')], context)

    assert len(recorder.calls) == 1
    assert again.duplicate is True
    assert again.result == "first"


@pytest.mark.asyncio
async def test_failed_id_is_not_retried_in_later_turns(registry, recorder, config):
    dispatcher = RetryDispatcher(registry, config)
    context = _ctx()

    await dispatcher.dispatch([_req("b1", "boom")], context)
    await dispatcher.dispatch([_req("b1", "boom")], context)

    assert len(recorder.calls) == config.max_retries


# ---------------------------------------------------------------------------
# Content-block outcomes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_content_blocks_become_reply_and_artifacts(registry, config):
    async def screenshot(args):
        return ToolOutcome(
            content=[
                ContentBlock(type="text", text="Captured page"),
                ContentBlock(type="image", data="iVBORw0KGgo=", mime_type="image/png"),
            ]
        )

    registry.register(ToolDescriptor(name="mcp_browser_screenshot"), screenshot)
    dispatcher = RetryDispatcher(registry, config)

    (result,) = await dispatcher.dispatch([_req("s1", "mcp_browser_screenshot")], _ctx())

    assert result.success is True
    assert result.reply is not None
    assert result.reply.tool_call_id == "s1"
    assert "Captured page" in result.reply.content
    assert result.images == ["data:image/png;base64,iVBORw0KGgo="]
    assert len(result.artifacts) == 1
    assert result.artifacts[0].metadata["original_type"] == "image"
