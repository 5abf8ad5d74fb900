"""Worker: runs one job end to end and always answers with a structured response."""

from __future__ import annotations

import asyncio
import json
import logging
import time
import traceback
import uuid
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from agentjobs.agent import AgentLoop, ThreadMemory
from agentjobs.browser import BrowserSessionManager, Launcher
from agentjobs.ratelimit import AnthropicClient
from agentjobs.schemas import InvocationResponse, JobError, JobMessage, JobResult, WorkerRequest, utc_now_iso
from agentjobs.settings import Settings
from agentjobs.tools import ArtifactSaver, ToolContext, ToolRegistry, build_default_registry

LOGGER = logging.getLogger(__name__)

AUTOMATION_TYPE = "generic-browser"
FEATURES = (
    "navigation",
    "element-finding",
    "clicking",
    "typing",
    "waiting",
    "screenshots",
    "page-analysis",
    "javascript-execution",
    "smart-login",
    "smart-search",
    "table-interaction",
    "thread-memory",
)
USAGE_EXAMPLES = (
    'Go to the login page, log in with the credentials, then search for "jim johnson" and find his phone number',
    "Navigate to example.com and take a screenshot",
    "Find all the input fields on the current page and tell me what they are for",
)
ERROR_STATUS_MESSAGE = "Container function returned error status"


def _elapsed_ms(started: float) -> int:
    return max(0, int((time.perf_counter() - started) * 1000))


def _missing_input(value: Any) -> bool:
    return value is None or value == "" or value == []


def _decode_body(body: str) -> Any:
    if not body:
        return {}
    try:
        return json.loads(body)
    except ValueError:
        return body


def invocation_to_result(job: JobMessage, response: InvocationResponse, processing_ms: int) -> JobResult:
    """Map a worker response onto the stored JobResult shape."""

    if response.status_code == 200:
        data = json.loads(response.body or "{}")
        return JobResult(
            success=True,
            data=data,
            processing_time=processing_ms,
            job_id=job.job_id,
            container_name=job.container_name,
            function_status_code=response.status_code,
        )
    return JobResult(
        success=False,
        error=JobError(
            message=ERROR_STATUS_MESSAGE,
            status_code=response.status_code,
            payload=_decode_body(response.body),
            function_error=response.function_error,
        ),
        processing_time=processing_ms,
        job_id=job.job_id,
        container_name=job.container_name,
        function_status_code=response.status_code,
    )


def exception_to_result(job: JobMessage, exc: BaseException, processing_ms: int) -> JobResult:
    return JobResult(
        success=False,
        error=JobError(
            message=str(exc) or type(exc).__name__,
            type=type(exc).__name__,
            stack="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        ),
        processing_time=processing_ms,
        job_id=job.job_id,
        container_name=job.container_name,
    )


class Worker:
    """One container's handler.

    Owns a :class:`BrowserSessionManager`, so jobs for the same container run
    one at a time. The dispatcher's per-partition ordering already provides that
    for queued jobs; ``handle`` also holds a lock so direct invocations wait for
    the job in progress instead of sharing its page.
    """

    def __init__(
        self,
        name: str,
        *,
        agent: AgentLoop,
        sessions: BrowserSessionManager,
        save_artifact: Optional[ArtifactSaver] = None,
        automation_type: str = AUTOMATION_TYPE,
    ) -> None:
        self.name = name
        self.agent = agent
        self.sessions = sessions
        self.save_artifact = save_artifact
        self.automation_type = automation_type
        self._lock = asyncio.Lock()

    def _response(self, status_code: int, body: Mapping[str, Any]) -> InvocationResponse:
        return InvocationResponse(status_code=status_code, body=json.dumps(body, default=str))

    async def handle(self, request: WorkerRequest | Mapping[str, Any]) -> InvocationResponse:
        if not isinstance(request, WorkerRequest):
            try:
                request = WorkerRequest.model_validate(request)
            except ValidationError as exc:
                return self._response(400, {"error": "Invalid request", "details": exc.errors(include_url=False)})

        if _missing_input(request.input):
            return self._response(
                400,
                {
                    "error": "Missing required field: input",
                    "usage": "Provide a natural language prompt for browser automation",
                    "examples": list(USAGE_EXAMPLES),
                },
            )

        thread_id = request.thread_id or str(uuid.uuid4())
        job_id = request.job_id
        started = time.perf_counter()
        LOGGER.info("Worker %s processing job %s (thread %s)", self.name, job_id, thread_id)
        ctx = ToolContext(
            sessions=self.sessions,
            job_id=job_id,
            container_name=self.name,
            save_artifact=self.save_artifact,
        )
        try:
            async with self._lock, self.sessions.job_scope():
                outcome = await self.agent.run(
                    request.input,
                    ctx=ctx,
                    thread_id=thread_id,
                    max_steps=request.max_steps,
                    max_tokens=request.max_tokens,
                )
        except Exception as exc:
            LOGGER.exception("Worker %s failed job %s", self.name, job_id)
            return self._response(
                500,
                {
                    "error": str(exc) or type(exc).__name__,
                    "type": type(exc).__name__,
                    "automationType": self.automation_type,
                    "timestamp": utc_now_iso(),
                    "job_id": job_id,
                },
            )

        processing_ms = _elapsed_ms(started)
        LOGGER.info("Worker %s completed job %s in %sms", self.name, job_id, processing_ms)
        body = {
            "thread_id": thread_id,
            "job_id": job_id,
            "processingTime": processing_ms,
            "automationType": self.automation_type,
            "features": list(FEATURES),
            "timestamp": utc_now_iso(),
            **outcome.to_dict(),
            "screenshots": list(ctx.screenshots),
        }
        return self._response(200, body)

    async def run(self, job: JobMessage) -> JobResult:
        started = time.perf_counter()
        request = WorkerRequest(
            input=job.input,
            thread_id=job.thread_id,
            job_id=job.job_id,
            max_steps=job.max_steps,
            max_tokens=job.max_tokens,
        )
        try:
            response = await self.handle(request)
            return invocation_to_result(job, response, _elapsed_ms(started))
        except Exception as exc:
            LOGGER.exception("Invocation of %s failed for job %s", self.name, job.job_id)
            return exception_to_result(job, exc, _elapsed_ms(started))


def build_worker(
    name: str,
    settings: Settings,
    *,
    client: AnthropicClient,
    save_artifact: Optional[ArtifactSaver] = None,
    launcher: Optional[Launcher] = None,
    registry: Optional[ToolRegistry] = None,
    memory: Optional[ThreadMemory] = None,
) -> Worker:
    """Wire a worker with its own browser session and the shared API client."""

    sessions = BrowserSessionManager(settings.browser, launcher=launcher)
    agent = AgentLoop(client, registry or build_default_registry(), settings.agent, memory=memory)
    return Worker(name, agent=agent, sessions=sessions, save_artifact=save_artifact)
