"""Entry point for the FastAPI application."""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.responses import JSONResponse
from prometheus_client import start_http_server
from prometheus_fastapi_instrumentator import Instrumentator

from agentjobs.runtime import Runtime, build_runtime
from agentjobs.schemas import JobAcceptedResponse, JobCreateRequest, JobMessage, utc_now_iso
from agentjobs.settings import get_settings

LOGGER = logging.getLogger(__name__)
_PROMETHEUS_EXPORTER_STARTED = False
_RUNTIME: Optional[Runtime] = None

REQUEST_EXAMPLES = {
    "container": {
        "container": "qa",
        "input": "Please test https://example.com",
        "thread_id": "optional-thread-id",
    },
    "prompt": {
        "container": "browser_automation",
        "prompt": "Navigate to example.com and take a screenshot",
    },
}


def get_runtime() -> Runtime:
    """Build the process runtime on first use."""

    global _RUNTIME
    if _RUNTIME is None:
        _RUNTIME = build_runtime(get_settings())
    return _RUNTIME


async def _start_prometheus_exporter(port: int) -> None:
    """Expose Prometheus metrics on the configured auxiliary port."""

    global _PROMETHEUS_EXPORTER_STARTED
    if _PROMETHEUS_EXPORTER_STARTED or port <= 0:
        return
    try:
        start_http_server(port)
    except OSError as exc:  # pragma: no cover - system dependent
        LOGGER.warning("Prometheus exporter failed to bind on port %s: %s", port, exc)
        return
    _PROMETHEUS_EXPORTER_STARTED = True
    LOGGER.info("Prometheus exporter listening on port %s", port)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    runtime = get_runtime()
    await _start_prometheus_exporter(runtime.settings.telemetry.prometheus_port)
    stop_event = asyncio.Event()
    dispatcher_task = None
    if runtime.settings.dispatch.embedded:
        dispatcher_task = asyncio.create_task(runtime.dispatcher.run(stop_event))
    yield
    stop_event.set()
    if dispatcher_task is not None:
        await dispatcher_task
    await runtime.aclose()


app = FastAPI(title="Agent Jobs", lifespan=_lifespan)
instrumentator = Instrumentator(should_instrument_requests_inprogress=True)
instrumentator.instrument(app)
try:
    instrumentator.expose(app, include_in_schema=False, should_gzip=True)
except ValueError:  # pragma: no cover - already registered
    LOGGER.debug("Prometheus /metrics endpoint already exposed")


@app.get("/health", tags=["health"])
async def healthcheck() -> dict[str, str]:
    """Return a simple status useful for smoke tests."""

    return {"status": "ok"}


@app.post("/api/job/start", status_code=status.HTTP_202_ACCEPTED)
async def start_job(request: JobCreateRequest, runtime: Runtime = Depends(get_runtime)) -> JSONResponse:
    if not request.container:
        if request.agent:
            raise HTTPException(
                status_code=status.HTTP_501_NOT_IMPLEMENTED,
                detail="Immediate agent invocation is not available; submit a container job instead",
            )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "Request must contain either 'agent' or 'container' field",
                "received": sorted(request.model_dump(exclude_none=True)),
                "examples": REQUEST_EXAMPLES,
            },
        )

    agent_input = request.agent_input()
    if agent_input is None or agent_input == "":
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Missing required field: prompt or input", "examples": REQUEST_EXAMPLES},
        )

    job = JobMessage(
        job_id=str(uuid.uuid4()),
        container_name=request.container,
        input=agent_input,
        thread_id=request.thread_id or str(uuid.uuid4()),
        original_request=request.model_dump(by_alias=True, exclude_none=True),
        max_steps=request.max_steps,
        max_tokens=request.max_tokens,
    )
    try:
        message_id = await runtime.queue.publish(job)
    except Exception as exc:
        LOGGER.exception("Failed to queue job %s for %s", job.job_id, job.container_name)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Failed to queue container job", "details": str(exc), "jobId": job.job_id},
        )
    await asyncio.to_thread(runtime.store.mark_queued, job)

    accepted = JobAcceptedResponse(
        job_id=job.job_id,
        container_name=job.container_name,
        timestamp=utc_now_iso(),
        check_status_url=f"/api/job/{job.job_id}",
        message_id=message_id,
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=accepted.model_dump(by_alias=True, exclude_none=True, mode="json"),
    )


@app.get("/api/job/{job_id}")
async def job_status(job_id: str, runtime: Runtime = Depends(get_runtime)) -> dict[str, Any]:
    try:
        response = await asyncio.to_thread(runtime.store.status, job_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return response.to_wire()


@app.get("/api/job/{job_id}/result")
async def job_result(job_id: str, runtime: Runtime = Depends(get_runtime)) -> dict[str, Any]:
    try:
        record = await asyncio.to_thread(runtime.store.get, job_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Result not available yet")
    return record.to_wire()


@app.post("/containers/{container_name}/invoke")
async def invoke_container(
    container_name: str,
    payload: dict[str, Any],
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    worker = runtime.workers.get(container_name)
    if worker is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown container: {container_name}")
    response = await worker.handle(payload)
    return response.model_dump(by_alias=True, exclude_none=True)


@app.get("/api/dlq")
async def list_dead_letters(runtime: Runtime = Depends(get_runtime)) -> list[dict[str, Any]]:
    messages = await runtime.queue.dead_letters()
    return [
        {
            "messageId": message.message_id,
            "partition": message.partition,
            "receiveCount": message.receive_count,
            "job": message.job.to_wire(),
        }
        for message in messages
    ]


@app.post("/api/dlq/{message_id}/redrive")
async def redrive_dead_letter(message_id: str, runtime: Runtime = Depends(get_runtime)) -> dict[str, Any]:
    if not await runtime.queue.redrive(message_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not in dead letters")
    return {"messageId": message_id, "status": "redriven"}
