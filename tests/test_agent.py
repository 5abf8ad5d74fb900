from __future__ import annotations

import json

import pytest

from agentjobs.agent import AgentBudgetExceeded, AgentLoop, normalize_input, thread_tail
from agentjobs.browser import BrowserSessionManager
from agentjobs.ratelimit import UpstreamAPIError
from agentjobs.results import ResultStore, StorageConfig
from agentjobs.tools import ToolContext, build_default_registry

from tests.fakes import FakeLauncher, ScriptedClient, final_response, make_settings, tool_use_response


@pytest.fixture()
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture()
def ctx(settings) -> ToolContext:
    sessions = BrowserSessionManager(settings.browser, launcher=FakeLauncher())
    return ToolContext(sessions=sessions, job_id="abc", container_name="qa")


def _loop(client: ScriptedClient, settings, memory=None) -> AgentLoop:
    return AgentLoop(client, build_default_registry(), settings.agent, memory=memory)


def test_normalize_input_accepts_prompt_and_messages():
    assert normalize_input("go") == ([{"role": "user", "content": "go"}], [])

    messages, system = normalize_input(
        [{"role": "system", "content": "stay on example.com"}, {"role": "user", "content": "go"}]
    )
    assert messages == [{"role": "user", "content": "go"}]
    assert system == ["stay on example.com"]


@pytest.mark.parametrize("raw", ["  ", [], None, [{"role": "tool", "content": "x"}], [{"role": "system", "content": "x"}]])
def test_normalize_input_rejects_unusable_input(raw):
    with pytest.raises(ValueError):
        normalize_input(raw)


@pytest.mark.asyncio
async def test_loop_runs_tools_until_model_stops(settings, ctx):
    client = ScriptedClient(
        [
            tool_use_response("navigate", {"url": "https://example.com", "settle_ms": 0}),
            final_response("Done."),
        ]
    )

    outcome = await _loop(client, settings).run("open example.com", ctx=ctx, thread_id="t-1")

    assert outcome.text == "Done."
    assert outcome.tool_call_count == 1
    assert outcome.steps[0].tool_calls == [{"name": "navigate", "success": True}]
    assert outcome.input_tokens == 900
    assert outcome.output_tokens == 70
    second_request = client.requests[1]["messages"]
    tool_result = second_request[-1]["content"][0]
    assert tool_result["type"] == "tool_result"
    assert tool_result["tool_use_id"] == "toolu_navigate"
    assert tool_result["is_error"] is False
    assert json.loads(tool_result["content"])["title"] == "Example Domain"
    assert client.requests[0]["max_tokens"] == 1024
    assert {tool["name"] for tool in client.requests[0]["tools"]} >= {"navigate", "click", "screenshot"}


@pytest.mark.asyncio
async def test_failed_tool_is_reported_back_to_model(settings, ctx):
    client = ScriptedClient([tool_use_response("teleport", {}), final_response("Could not teleport.")])

    outcome = await _loop(client, settings).run("teleport", ctx=ctx)

    assert outcome.steps[0].tool_calls == [{"name": "teleport", "success": False}]
    tool_result = client.requests[1]["messages"][-1]["content"][0]
    assert tool_result["is_error"] is True


@pytest.mark.asyncio
async def test_step_budget_is_enforced(settings, ctx):
    client = ScriptedClient([tool_use_response("wait", {"condition": "time", "value": "0"}) for _ in range(3)])

    with pytest.raises(AgentBudgetExceeded, match="Step budget of 3"):
        await _loop(client, settings).run("loop forever", ctx=ctx, max_steps=3)
    assert len(client.requests) == 3


@pytest.mark.asyncio
async def test_token_budget_bounds_output_tokens(settings, ctx):
    client = ScriptedClient(
        [tool_use_response("wait", {"condition": "time", "value": "0"}, output_tokens=600) for _ in range(2)]
    )

    with pytest.raises(AgentBudgetExceeded, match="Token budget of 1000"):
        await _loop(client, settings).run("go", ctx=ctx, max_tokens=1000)
    assert client.requests[0]["max_tokens"] == 1000
    assert client.requests[1]["max_tokens"] == 400


@pytest.mark.asyncio
async def test_transient_upstream_error_is_retried(settings, ctx):
    client = ScriptedClient([UpstreamAPIError("Anthropic API error (500): oops", status_code=500), final_response("ok")])

    outcome = await _loop(client, settings).run("go", ctx=ctx)

    assert outcome.text == "ok"
    assert outcome.steps[0].error.startswith("Anthropic API error")


@pytest.mark.asyncio
async def test_too_many_consecutive_errors_abort(settings, ctx):
    errors = [UpstreamAPIError(f"failure {n}", status_code=500) for n in range(3)]
    client = ScriptedClient(errors)

    with pytest.raises(UpstreamAPIError, match="failure 2"):
        await _loop(client, settings).run("go", ctx=ctx)
    assert len(client.requests) == 3


@pytest.mark.asyncio
async def test_thread_memory_carries_last_exchange_into_next_job(settings, ctx):
    store = ResultStore(StorageConfig.from_settings(settings.storage))
    first = ScriptedClient([final_response("Logged in as jim.")])
    second = ScriptedClient([final_response("Found his number.")])
    other = ScriptedClient([final_response("Hello.")])

    await _loop(first, settings, memory=store).run("log in", ctx=ctx, thread_id="t-1")
    await _loop(second, settings, memory=store).run("now search for jim", ctx=ctx, thread_id="t-1")
    await _loop(other, settings, memory=store).run("hello", ctx=ctx, thread_id="t-2")

    assert second.requests[0]["messages"] == [
        {"role": "user", "content": "log in"},
        {"role": "assistant", "content": "Logged in as jim."},
        {"role": "user", "content": "now search for jim"},
    ]
    assert other.requests[0]["messages"] == [{"role": "user", "content": "hello"}]
    assert store.load_thread("t-1")[-1] == {"role": "assistant", "content": "Found his number."}


@pytest.mark.asyncio
async def test_thread_memory_records_failed_run(settings, ctx):
    store = ResultStore(StorageConfig.from_settings(settings.storage))
    failing = ScriptedClient([tool_use_response("wait", {"condition": "time", "value": "0"})])
    follow_up = ScriptedClient([final_response("Retrying.")])

    with pytest.raises(AgentBudgetExceeded):
        await _loop(failing, settings, memory=store).run("log in", ctx=ctx, thread_id="t-1", max_steps=1)
    await _loop(follow_up, settings, memory=store).run("try again", ctx=ctx, thread_id="t-1")

    recalled = follow_up.requests[0]["messages"][1]
    assert recalled["role"] == "assistant"
    assert recalled["content"] == "The previous run failed: Step budget of 1 exhausted"


@pytest.mark.asyncio
async def test_memory_write_failure_keeps_outcome(settings, ctx):
    class BrokenMemory:
        async def recall(self, thread_id):  # noqa: ANN001
            return []

        async def remember(self, thread_id, messages, *, job_id=None):  # noqa: ANN001
            raise RuntimeError("database is locked")

    outcome = await _loop(ScriptedClient([final_response("ok")]), settings, memory=BrokenMemory()).run(
        "go", ctx=ctx, thread_id="t-1"
    )

    assert outcome.text == "ok"


def test_thread_tail_opens_on_user_turn():
    messages = [
        {"role": "user", "content": "a"},
        {"role": "assistant", "content": "b"},
        {"role": "user", "content": "c"},
        {"role": "assistant", "content": "d"},
    ]

    assert thread_tail(messages, 1) == messages[2:]
    assert thread_tail(messages, 2) == messages[2:]
    assert thread_tail(messages, 3) == messages
    assert thread_tail(messages, 0) == []
