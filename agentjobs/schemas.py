"""Pydantic DTOs shared across the ingress, queue, worker and result store."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utc_now_iso() -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a ``Z`` suffix."""

    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class JobStatus(str, Enum):
    """States reported by the status query."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    NOT_FOUND = "not_found"


class JobMessage(_CamelModel):
    """Queue payload for one job. ``job_id`` doubles as dedup and result key."""

    job_id: str = Field(alias="jobId", min_length=1)
    container_name: str = Field(alias="containerName", min_length=1)
    input: Any = None
    thread_id: str = Field(alias="threadId")
    timestamp: str = Field(default_factory=utc_now_iso, description="Submission time (ISO 8601)")
    original_request: dict[str, Any] = Field(default_factory=dict, alias="originalRequest")
    max_steps: int | None = Field(default=None, alias="maxSteps", ge=1)
    max_tokens: int | None = Field(default=None, alias="maxTokens", ge=1)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class WorkerRequest(_CamelModel):
    """Dispatcher → worker invocation payload."""

    input: Any = None
    thread_id: str | None = None
    job_id: str | None = Field(default=None, alias="jobId")
    max_steps: int | None = Field(default=None, alias="maxSteps", ge=1)
    max_tokens: int | None = Field(default=None, alias="maxTokens", ge=1)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class InvocationResponse(_CamelModel):
    """Worker → dispatcher envelope: a status indicator plus a JSON string body."""

    status_code: int = Field(alias="statusCode")
    body: str = ""
    function_error: str | None = Field(default=None, alias="functionError")


class JobError(BaseModel):
    """Failure details stored in a JobResult."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    message: str
    type: str | None = None
    stack: str | None = None
    status_code: int | None = Field(default=None, alias="statusCode")
    payload: Any = None
    function_error: str | None = Field(default=None, alias="functionError")


class JobResult(_CamelModel):
    """Outcome of one job. Exactly one is persisted per ``job_id``."""

    success: bool
    data: Any = None
    error: JobError | None = None
    processing_time: int | None = Field(default=None, alias="processingTime", ge=0)
    timestamp: str = Field(default_factory=utc_now_iso)
    job_id: str = Field(alias="jobId")
    container_name: str = Field(alias="containerName")
    function_status_code: int | None = Field(default=None, alias="functionStatusCode")

    @model_validator(mode="after")
    def _data_or_error(self) -> "JobResult":
        if not self.success and self.error is None:
            raise ValueError("failed results must carry an error")
        return self


class JobSection(_CamelModel):
    job_id: str = Field(alias="jobId")
    container_name: str = Field(alias="containerName")
    submitted_at: str | None = Field(default=None, alias="submittedAt")
    completed_at: str = Field(default_factory=utc_now_iso, alias="completedAt")
    processing_time: int | None = Field(default=None, alias="processingTime")


class RequestSection(_CamelModel):
    input: Any = None
    thread_id: str | None = Field(default=None, alias="threadId")
    original_request: dict[str, Any] = Field(default_factory=dict, alias="originalRequest")


class ResultMetadata(BaseModel):
    region: str | None = None
    version: str = "1.0.0"


class JobResultRecord(BaseModel):
    """Document stored at ``{containerName}/{jobId}/result.json``."""

    job: JobSection
    request: RequestSection
    result: JobResult
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class JobCreateRequest(BaseModel):
    """Payload clients submit to ``POST /api/job/start``."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    container: str | None = Field(default=None, description="Worker container that should run the job")
    agent: str | None = Field(default=None, description="Immediate agent invocation (not served here)")
    prompt: str | None = Field(default=None, description="Natural-language instruction")
    input: Any = Field(default=None, description="Raw agent input; used when prompt is absent")
    thread_id: str | None = Field(default=None, description="Conversation correlation id")
    max_steps: int | None = Field(default=None, alias="maxSteps", ge=1)
    max_tokens: int | None = Field(default=None, alias="maxTokens", ge=1)

    def agent_input(self) -> Any:
        if self.prompt is not None:
            return [{"role": "user", "content": self.prompt}]
        return self.input


class JobAcceptedResponse(_CamelModel):
    job_id: str = Field(alias="jobId")
    status: JobStatus = JobStatus.QUEUED
    message: str = "Container job queued for processing"
    container_name: str = Field(alias="containerName")
    timestamp: str
    check_status_url: str = Field(alias="checkStatusUrl")
    message_id: str | None = Field(default=None, alias="messageId")


class JobStatusResponse(_CamelModel):
    """Answer to "what happened to job X"."""

    job_id: str = Field(alias="jobId")
    status: JobStatus
    container_name: str | None = Field(default=None, alias="containerName")
    submitted_at: str | None = Field(default=None, alias="submittedAt")
    completed_at: str | None = Field(default=None, alias="completedAt")
    processing_time: int | None = Field(default=None, alias="processingTime")
    result: Any = None
    error: Any = None
    result_url: str | None = Field(default=None, alias="resultUrl")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
