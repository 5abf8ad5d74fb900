from __future__ import annotations

import asyncio
import json

import pytest
from pydantic import BaseModel

from agentjobs.schemas import InvocationResponse, JobMessage
from agentjobs.tools import ToolRegistry, ToolSpec
from agentjobs.worker import ERROR_STATUS_MESSAGE, build_worker, invocation_to_result

from tests.fakes import FakeLauncher, ScriptedClient, final_response, make_settings, tool_use_response


def _job(**overrides) -> JobMessage:
    data = {"jobId": "abc", "containerName": "qa", "input": "open example.com", "threadId": "t-1"}
    data.update(overrides)
    return JobMessage.model_validate(data)


@pytest.fixture()
def launcher() -> FakeLauncher:
    return FakeLauncher()


def _worker(tmp_path, client, launcher, save_artifact=None):
    return build_worker("qa", make_settings(tmp_path), client=client, launcher=launcher, save_artifact=save_artifact)


@pytest.mark.asyncio
async def test_missing_input_is_rejected_with_usage(tmp_path, launcher):
    worker = _worker(tmp_path, ScriptedClient([]), launcher)

    response = await worker.handle({"thread_id": "t-1"})
    body = json.loads(response.body)

    assert response.status_code == 400
    assert body["error"] == "Missing required field: input"
    assert len(body["examples"]) == 3
    assert launcher.launches == 0


@pytest.mark.asyncio
async def test_successful_job_reports_outcome_and_releases_browser(tmp_path, launcher):
    saved: dict[str, bytes] = {}

    async def save(key: str, data: bytes) -> str:
        saved[key] = data
        return key

    client = ScriptedClient(
        [
            tool_use_response("navigate", {"url": "https://example.com", "settle_ms": 0}),
            tool_use_response("screenshot", {"name": "home"}),
            final_response("Example Domain is up."),
        ]
    )
    worker = _worker(tmp_path, client, launcher, save_artifact=save)

    response = await worker.handle({"input": "open example.com", "thread_id": "t-1", "jobId": "abc"})
    body = json.loads(response.body)

    assert response.status_code == 200
    assert body["thread_id"] == "t-1"
    assert body["job_id"] == "abc"
    assert body["automationType"] == "generic-browser"
    assert body["text"] == "Example Domain is up."
    assert body["toolCalls"] == 2
    assert body["processingTime"] >= 0
    assert body["screenshots"] == list(saved)
    assert body["screenshots"][0].startswith("qa/abc/screenshots/home-")
    assert worker.sessions.session is None
    assert launcher.sessions[0].browser.closed


@pytest.mark.asyncio
async def test_agent_failure_becomes_structured_500(tmp_path, launcher):
    client = ScriptedClient([tool_use_response("navigate", {"url": "https://example.com", "settle_ms": 0}), RuntimeError("x")])
    worker = _worker(tmp_path, client, launcher)

    response = await worker.handle({"input": "open example.com", "jobId": "abc"})
    body = json.loads(response.body)

    assert response.status_code == 500
    assert body["error"] == "x"
    assert body["type"] == "RuntimeError"
    assert body["job_id"] == "abc"
    assert "timestamp" in body
    assert worker.sessions.session is None


@pytest.mark.asyncio
async def test_run_maps_success_to_job_result(tmp_path, launcher):
    worker = _worker(tmp_path, ScriptedClient([final_response("done")]), launcher)

    result = await worker.run(_job())

    assert result.success is True
    assert result.function_status_code == 200
    assert result.data["text"] == "done"
    assert result.job_id == "abc"
    assert result.container_name == "qa"


@pytest.mark.asyncio
async def test_run_maps_bad_input_to_failed_result(tmp_path, launcher):
    worker = _worker(tmp_path, ScriptedClient([]), launcher)

    result = await worker.run(_job(input=[{"role": "tool", "content": "x"}]))

    assert result.success is False
    assert result.error.message == ERROR_STATUS_MESSAGE
    assert result.error.status_code == 500
    assert result.error.payload["type"] == "ValueError"


def test_invocation_error_status_keeps_payload():
    response = InvocationResponse(status_code=400, body='{"error": "Missing required field: input"}')

    result = invocation_to_result(_job(), response, 12)

    assert result.success is False
    assert result.processing_time == 12
    assert result.error.payload == {"error": "Missing required field: input"}
    assert result.function_status_code == 400


@pytest.mark.asyncio
async def test_overlapping_invocations_run_one_at_a_time(tmp_path, launcher):
    gate = asyncio.Event()
    seen: list[tuple] = []

    class Empty(BaseModel):
        pass

    async def hold(params, ctx):  # noqa: ANN001
        page = await ctx.sessions.get_page()
        seen.append(("start", ctx.job_id))
        await gate.wait()
        seen.append(("end", ctx.job_id, page.is_closed()))
        return {"success": True}

    registry = ToolRegistry()
    registry.register(ToolSpec("hold", "blocks until released", Empty, hold))
    client = ScriptedClient(
        [tool_use_response("hold", {}), final_response("a"), tool_use_response("hold", {}), final_response("b")]
    )
    worker = build_worker("qa", make_settings(tmp_path), client=client, launcher=launcher, registry=registry)

    first = asyncio.create_task(worker.handle({"input": "first", "jobId": "a"}))
    second = asyncio.create_task(worker.handle({"input": "second", "jobId": "b"}))
    await asyncio.sleep(0.01)
    assert seen == [("start", "a")]

    gate.set()
    responses = await asyncio.gather(first, second)

    assert [json.loads(response.body)["text"] for response in responses] == ["a", "b"]
    assert seen == [("start", "a"), ("end", "a", False), ("start", "b"), ("end", "b", False)]
    assert launcher.launches == 2
