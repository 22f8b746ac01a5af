"""Tests for the agent orchestration loop."""

import asyncio
import json

import pytest
from conftest import (
    FakeBrowser,
    ScriptedStream,
    ScriptedTransport,
)

from superpowers.agent.agent_loop import (
    STOPPED_MESSAGE,
    Agent,
    create_agent,
    to_llm_messages,
)
from superpowers.agent.cancellation import CancellationToken
from superpowers.agent.llm_transport import ProviderApiError
from superpowers.config import Settings
from superpowers.core.schema import (
    AgentMessage,
    Attachment,
    PageContext,
    ParameterSpec,
    Tool,
    ToolParameters,
)

SEARCH_TOOL = Tool(
    name="searchGoogle",
    description="Search Google for a query",
    parameters=ToolParameters(
        properties={"query": ParameterSpec(type="string", description="Search query")},
        required=["query"],
    ),
)

SEARCH_BLOCK = (
    "```tool_code\n"
    '{"tool_calls": [{"name": "searchGoogle", "arguments": {"query": "cats"}}]}\n'
    "```"
)

USER = AgentMessage(role="user", content="What's 2+2?")


def _agent(transport, max_iterations=10, calls=None):
    agent = Agent(transport, max_iterations=max_iterations)

    async def search(arguments):
        if calls is not None:
            calls.append(arguments)
        return "ok"

    agent.add_tool(SEARCH_TOOL, search)
    return agent


# ---------------------------------------------------------------------------
# Basic turns
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_plain_answer_in_three_chunks(llm_options) -> None:
    transport = ScriptedTransport(["The ans", "wer is ", "4."])
    agent = Agent(transport)

    response = await agent.run([USER], llm_options)

    assert response.message == "The answer is 4."
    assert response.tool_calls == []
    assert response.finished is True
    assert response.iterations == 1
    assert transport.streams[0].closed


@pytest.mark.asyncio
async def test_tool_round_trip_feeds_history(llm_options) -> None:
    calls = []
    transport = ScriptedTransport([SEARCH_BLOCK], ["Cats are great."])
    agent = _agent(transport, calls=calls)
    history = [USER]

    response = await agent.run(history, llm_options)

    assert calls == [{"query": "cats"}]
    assert response.message == "Cats are great."
    assert response.iterations == 2
    assert response.finished is True
    assert [c.name for c in response.tool_calls] == ["searchGoogle"]
    assert [r.result for r in response.tool_results] == ["ok"]

    second_turn, _ = transport.calls[1]
    assert [m.role for m in second_turn] == ["user", "assistant", "tool"]
    assert second_turn[0].content == "What's 2+2?"
    assert second_turn[1].content == SEARCH_BLOCK
    assert [c.name for c in second_turn[1].tool_calls] == ["searchGoogle"]
    assert second_turn[2].content == json.dumps("ok")
    assert second_turn[2].tool_call_id == response.tool_calls[0].id

    assert history == [USER]


@pytest.mark.asyncio
async def test_iteration_budget_exhausted(llm_options) -> None:
    calls = []
    raw = "Searching now.\n" + SEARCH_BLOCK
    transport = ScriptedTransport([raw])
    agent = _agent(transport, max_iterations=1, calls=calls)

    response = await agent.run([USER], llm_options)

    assert calls == [{"query": "cats"}]
    assert response.finished is False
    assert response.iterations == 1
    assert response.message == raw
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_tool_failures_are_fed_back(llm_options) -> None:
    block = (
        "```tool_code\n"
        '{"tool_calls": [{"name": "nope", "arguments": {}}, {"name": "searchGoogle"}]}\n'
        "```"
    )
    transport = ScriptedTransport([block], ["Sorry."])
    agent = _agent(transport)

    response = await agent.run([USER], llm_options)

    assert response.finished is True
    errors = [r.error for r in response.tool_results]
    assert errors[0] == 'Tool "nope" not found'
    assert errors[1].startswith("Invalid arguments for tool 'searchGoogle'")

    second_turn, _ = transport.calls[1]
    tool_messages = [m.content for m in second_turn if m.role == "tool"]
    assert tool_messages[0] == 'Tool "nope" failed: Tool "nope" not found'
    assert tool_messages[1].startswith('Tool "searchGoogle" failed: ')


@pytest.mark.asyncio
async def test_malformed_tool_block_ends_run(llm_options) -> None:
    transport = ScriptedTransport(["Here:\n```tool_code\n{broken\n```\nbye"])
    agent = _agent(transport)

    response = await agent.run([USER], llm_options)

    assert response.finished is True
    assert response.tool_calls == []
    assert response.message == "Here:\n\nbye"


# ---------------------------------------------------------------------------
# Progress and prompt
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_progress_per_chunk_and_per_tool_batch(llm_options) -> None:
    transport = ScriptedTransport(["Let me ", "search.\n" + SEARCH_BLOCK], ["Done."])
    agent = _agent(transport)
    updates = []

    async def on_progress(progress):
        updates.append(progress)

    await agent.run([USER], llm_options, on_progress=on_progress)

    chunks = [u.chunk for u in updates]
    assert chunks == ["Let me ", "search.\n" + SEARCH_BLOCK, None, "Done."]
    assert updates[0].message == "Let me "
    assert updates[1].message == "Let me search.\n" + SEARCH_BLOCK
    batch = updates[2]
    assert [r.result for r in batch.tool_results] == ["ok"]
    assert [s.type for s in batch.planner_steps] == ["thinking", "tool_execution", "tool_result"]
    assert all(not u.finished for u in updates)


@pytest.mark.asyncio
async def test_sync_progress_callback(llm_options) -> None:
    transport = ScriptedTransport(["a", "b"])
    seen = []

    await Agent(transport).run([USER], llm_options, on_progress=lambda p: seen.append(p.chunk))

    assert seen == ["a", "b"]


@pytest.mark.asyncio
async def test_system_prompt_is_not_cumulative(llm_options) -> None:
    transport = ScriptedTransport(["one"], ["two"])
    agent = _agent(transport)
    page_a = PageContext(id=1, title="Alpha", url="https://a.example/")
    page_b = PageContext(id=2, title="Beta", url="https://b.example/")

    await agent.run([USER], llm_options, context=page_a)
    await agent.run([USER], llm_options, context=page_b)

    first = transport.calls[0][1].system_prompt
    second = transport.calls[1][1].system_prompt
    assert 'titled "Alpha"' in first
    assert 'titled "Beta"' in second
    assert "Alpha" not in second
    assert second.count("## CURRENT PAGE CONTEXT") == 1
    assert "```tool_code" in second
    assert '"searchGoogle"' in second
    assert llm_options.system_prompt is None


def test_to_llm_messages_flattens_images() -> None:
    msg = AgentMessage(
        role="user", content="look", attachments=[Attachment(data="aGVsbG8=")]
    )
    tool = AgentMessage(role="tool", content='"ok"', tool_call_id="call-1")

    converted = to_llm_messages([msg, tool])

    assert converted[0].images == ["aGVsbG8="]
    assert converted[1].tool_call_id == "call-1"


# ---------------------------------------------------------------------------
# Errors and cancellation
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_transport_error_propagates(llm_options) -> None:
    stream = ScriptedStream(["partial"], error=ProviderApiError("boom"))
    agent = Agent(ScriptedTransport(stream))

    with pytest.raises(ProviderApiError, match="boom"):
        await agent.run([USER], llm_options)
    assert stream.closed
    assert not agent.is_running


@pytest.mark.asyncio
async def test_stop_while_waiting_for_chunk(llm_options) -> None:
    stream = ScriptedStream(["Thinking"], hang=True)
    agent = Agent(ScriptedTransport(stream))

    task = asyncio.create_task(agent.run([USER], llm_options))
    await asyncio.wait_for(stream.waiting.wait(), timeout=1)
    agent.stop()
    response = await asyncio.wait_for(task, timeout=1)

    assert response.message == STOPPED_MESSAGE
    assert response.finished is True
    assert response.iterations == 1
    assert stream.cancel_count == 1
    assert stream.closed
    assert not agent.is_running


@pytest.mark.asyncio
async def test_stop_from_progress_callback(llm_options) -> None:
    stream = ScriptedStream(["a", "b", "c"])
    agent = Agent(ScriptedTransport(stream))

    def on_progress(progress):
        if progress.chunk == "a":
            agent.stop()

    response = await agent.run([USER], llm_options, on_progress=on_progress)

    assert response.message == STOPPED_MESSAGE
    assert stream.cancel_count == 1


@pytest.mark.asyncio
async def test_stop_between_tool_calls(llm_options) -> None:
    block = (
        "```tool_code\n"
        '{"tool_calls": [{"name": "searchGoogle", "arguments": {"query": "a"}},'
        ' {"name": "searchGoogle", "arguments": {"query": "b"}}]}\n'
        "```"
    )
    transport = ScriptedTransport([block])
    agent = Agent(transport)
    executed = []

    async def search(arguments):
        executed.append(arguments["query"])
        agent.stop()
        return "ok"

    agent.add_tool(SEARCH_TOOL, search)
    response = await agent.run([USER], llm_options)

    assert executed == ["a"]
    assert response.message == STOPPED_MESSAGE
    assert response.finished is True
    assert len(response.tool_results) == 1
    assert [c.arguments for c in response.tool_calls] == [{"query": "a"}]
    assert response.tool_results[0].id == response.tool_calls[0].id
    assert len(transport.calls) == 1


@pytest.mark.asyncio
async def test_stop_when_idle_is_noop(llm_options) -> None:
    agent = Agent(ScriptedTransport(["fine"]))
    agent.stop()

    response = await agent.run([USER], llm_options)
    assert response.message == "fine"


@pytest.mark.asyncio
async def test_precancelled_token_returns_immediately(llm_options) -> None:
    transport = ScriptedTransport()
    token = CancellationToken()
    token.cancel()

    response = await Agent(transport).run([USER], llm_options, cancel_token=token)

    assert response.message == STOPPED_MESSAGE
    assert response.iterations == 0
    assert transport.calls == []


def test_create_agent_wires_browser_tools() -> None:
    config = Settings(_env_file=None, MAX_ITERATIONS=7, FETCH_SITE_CONTEXT=False)
    agent = create_agent(config, transport=ScriptedTransport(), backend=FakeBrowser())

    assert agent.max_iterations == 7
    assert len(agent.registry) == 12
    assert agent.site_context is None
    assert agent.system_prompt.startswith("# SUPERPOWERS AGENT")
