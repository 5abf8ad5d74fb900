"""Prometheus metrics for the queue, dispatcher, worker and upstream shims."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

JOBS_PUBLISHED = Counter(
    "agentjobs_jobs_published_total",
    "Jobs accepted by the queue",
    ["container"],
)
JOBS_DEDUPLICATED = Counter(
    "agentjobs_jobs_deduplicated_total",
    "Publishes collapsed into an earlier message with the same job id",
    ["container"],
)
JOBS_DEAD_LETTERED = Counter(
    "agentjobs_jobs_dead_lettered_total",
    "Messages moved to the dead-letter list after too many receives",
    ["container"],
)
JOBS_COMPLETED = Counter(
    "agentjobs_jobs_completed_total",
    "Job results persisted by the dispatcher",
    ["container", "outcome"],
)
DISPATCH_FAILURES = Counter(
    "agentjobs_dispatch_failures_total",
    "Messages left unacknowledged for redelivery",
    ["container"],
)
JOB_PROCESSING_SECONDS = Histogram(
    "agentjobs_job_processing_seconds",
    "Wall time of one worker invocation",
    ["container"],
    buckets=(1, 5, 15, 30, 60, 120, 240, 360, 600),
)
TOOL_CALLS = Counter(
    "agentjobs_tool_calls_total",
    "Browser tool executions by outcome",
    ["tool", "outcome"],
)
BROWSER_SESSIONS = Counter(
    "agentjobs_browser_sessions_total",
    "Browser session lifecycle transitions",
    ["event"],
)
UPSTREAM_RETRIES = Counter(
    "agentjobs_upstream_retries_total",
    "Retries issued after an overloaded upstream response",
)
UPSTREAM_ERRORS = Counter(
    "agentjobs_upstream_errors_total",
    "Upstream API calls that surfaced an error",
    ["kind"],
)
RATE_LIMIT_WAIT_SECONDS = Histogram(
    "agentjobs_rate_limit_wait_seconds",
    "Time spent sleeping before an upstream call",
    ["reason"],
    buckets=(0.5, 1, 5, 10, 30, 60, 120),
)


def record_job_completion(container: str, *, success: bool, seconds: float | None = None) -> None:
    outcome = "success" if success else "failure"
    JOBS_COMPLETED.labels(container=container, outcome=outcome).inc()
    if seconds is not None:
        JOB_PROCESSING_SECONDS.labels(container=container).observe(max(0.0, seconds))


def record_tool_call(tool: str, *, success: bool) -> None:
    TOOL_CALLS.labels(tool=tool, outcome="success" if success else "failure").inc()


def record_rate_limit_wait(reason: str, seconds: float) -> None:
    RATE_LIMIT_WAIT_SECONDS.labels(reason=reason).observe(max(0.0, seconds))
