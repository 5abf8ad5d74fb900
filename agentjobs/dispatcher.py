"""Job dispatcher: queue consumer that invokes workers and commits results."""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

import httpx
from pydantic import ValidationError

from agentjobs import metrics
from agentjobs.queue import JobQueue, QueueMessage
from agentjobs.results import ResultStore
from agentjobs.schemas import InvocationResponse, JobResult, WorkerRequest
from agentjobs.settings import Settings
from agentjobs.worker import Worker, exception_to_result, invocation_to_result

LOGGER = logging.getLogger(__name__)


class UnknownContainerError(LookupError):
    """The job names a container with no registered worker."""


class InvocationError(RuntimeError):
    """The worker could not be reached or did not answer in time."""


class WorkerInvoker(ABC):
    """Synchronous (request/response) call into one container's worker."""

    @abstractmethod
    async def invoke(self, request: WorkerRequest) -> InvocationResponse:
        ...

    async def aclose(self) -> None:
        return None


class LocalWorkerInvoker(WorkerInvoker):
    def __init__(self, worker: Worker) -> None:
        self.worker = worker

    async def invoke(self, request: WorkerRequest) -> InvocationResponse:
        return await self.worker.handle(request)


class HttpWorkerInvoker(WorkerInvoker):
    """Calls a remote worker's ``POST /containers/{name}/invoke`` endpoint."""

    def __init__(
        self,
        base_url: str,
        container_name: str,
        *,
        timeout_seconds: float = 360.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.container_name = container_name
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    async def invoke(self, request: WorkerRequest) -> InvocationResponse:
        try:
            response = await self._client.post(
                f"/containers/{self.container_name}/invoke",
                json=request.to_wire(),
            )
            response.raise_for_status()
            return InvocationResponse.model_validate(response.json())
        except (httpx.HTTPError, ValidationError, ValueError) as exc:
            raise InvocationError(f"Invocation of {self.container_name} failed: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()


@dataclass(slots=True)
class BatchReport:
    """Per-message outcome of a batch: only failed message ids are listed."""

    batch_item_failures: list[dict[str, str]] = field(default_factory=list)
    processed: int = 0

    def to_wire(self) -> dict[str, Any]:
        return {"batchItemFailures": list(self.batch_item_failures)}


def _elapsed_ms(started: float) -> int:
    return max(0, int((time.perf_counter() - started) * 1000))


class JobDispatcher:
    """Consumes the queue one partition at a time and writes exactly one result per job.

    A message is acknowledged only after its result has been stored. If storing
    fails the message stays leased and becomes visible again when the lease
    expires; a redelivered message whose result already exists is acknowledged
    without invoking the worker again.
    """

    def __init__(
        self,
        queue: JobQueue,
        store: ResultStore,
        registry: Optional[Mapping[str, WorkerInvoker]] = None,
        *,
        invocation_timeout_seconds: float = 360.0,
        max_concurrency: int = 4,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        visibility = queue.config.visibility_timeout_seconds
        if invocation_timeout_seconds >= visibility:
            raise ValueError(
                f"invocation timeout ({invocation_timeout_seconds}s) must be below "
                f"the queue visibility timeout ({visibility}s)"
            )
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.queue = queue
        self.store = store
        self.registry: dict[str, WorkerInvoker] = dict(registry or {})
        self.invocation_timeout_seconds = invocation_timeout_seconds
        self.max_concurrency = max_concurrency
        self.poll_interval_seconds = poll_interval_seconds

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        queue: JobQueue,
        store: ResultStore,
        registry: Optional[Mapping[str, WorkerInvoker]] = None,
    ) -> JobDispatcher:
        return cls(
            queue,
            store,
            registry,
            invocation_timeout_seconds=settings.dispatch.invocation_timeout_seconds,
            max_concurrency=settings.dispatch.max_concurrency,
            poll_interval_seconds=settings.dispatch.poll_interval_seconds,
        )

    def register(self, container_name: str, invoker: WorkerInvoker) -> None:
        self.registry[container_name] = invoker

    async def _invoke(self, invoker: WorkerInvoker, message: QueueMessage) -> JobResult:
        job = message.job
        request = WorkerRequest(
            input=job.input,
            thread_id=job.thread_id,
            job_id=job.job_id,
            max_steps=job.max_steps,
            max_tokens=job.max_tokens,
        )
        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(invoker.invoke(request), timeout=self.invocation_timeout_seconds)
            result = invocation_to_result(job, response, _elapsed_ms(started))
        except asyncio.TimeoutError:
            LOGGER.error(
                "Invocation of %s timed out after %.0fs (job=%s)",
                job.container_name,
                self.invocation_timeout_seconds,
                job.job_id,
            )
            error = InvocationError(
                f"Invocation of {job.container_name} timed out after {self.invocation_timeout_seconds:.0f}s"
            )
            result = exception_to_result(job, error, _elapsed_ms(started))
        except Exception as exc:
            LOGGER.exception("Invocation of %s failed (job=%s)", job.container_name, job.job_id)
            result = exception_to_result(job, exc, _elapsed_ms(started))
        return result

    async def process_message(self, message: QueueMessage) -> JobResult:
        """Run one delivery through invoke → store → ack.

        Raises:
            ResultStoreError: the result could not be persisted; the message is
                left unacknowledged for redelivery.
        """

        job = message.job
        LOGGER.info(
            "Processing job %s for %s (message=%s, receive=%s)",
            job.job_id,
            job.container_name,
            message.message_id,
            message.receive_count,
        )
        existing = await asyncio.to_thread(self.store.get, job.job_id)
        if existing is not None:
            LOGGER.info("Job %s already has a stored result; acknowledging redelivery", job.job_id)
            await self.queue.ack(message)
            return existing.result

        invoker = self.registry.get(job.container_name)
        if invoker is None:
            LOGGER.error("Unknown container %s for job %s", job.container_name, job.job_id)
            result = exception_to_result(job, UnknownContainerError(f"Unknown container: {job.container_name}"), 0)
        else:
            await asyncio.to_thread(self.store.mark_processing, job)
            result = await self._invoke(invoker, message)

        try:
            await asyncio.to_thread(self.store.put, job, result)
        except Exception:
            metrics.DISPATCH_FAILURES.labels(container=job.container_name).inc()
            LOGGER.error("Could not store result for job %s; leaving message for redelivery", job.job_id)
            raise
        metrics.record_job_completion(
            job.container_name,
            success=result.success,
            seconds=(result.processing_time or 0) / 1000,
        )
        await self.queue.ack(message)
        return result

    async def process_batch(self, messages: Iterable[QueueMessage]) -> BatchReport:
        report = BatchReport()
        for message in messages:
            try:
                await self.process_message(message)
            except Exception as exc:
                LOGGER.error("Message %s failed: %s", message.message_id, exc)
                report.batch_item_failures.append({"itemIdentifier": message.message_id})
            else:
                report.processed += 1
        return report

    async def run_partition(self, partition: str) -> int:
        """Consume ``partition`` sequentially until it has nothing deliverable."""

        processed = 0
        while True:
            message = await self.queue.receive(partition)
            if message is None:
                return processed
            try:
                await self.process_message(message)
            except Exception as exc:
                LOGGER.error("Stopping partition %s after failure on %s: %s", partition, message.message_id, exc)
                return processed
            processed += 1

    async def drain(self) -> int:
        """Process until no partition has a deliverable message; returns the count."""

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _bounded(partition: str) -> int:
            async with semaphore:
                return await self.run_partition(partition)

        total = 0
        while True:
            partitions = await self.queue.partitions()
            counts = await asyncio.gather(*(_bounded(name) for name in partitions))
            if not sum(counts):
                return total
            total += sum(counts)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Poll for partitions and keep at most ``max_concurrency`` consumers running."""

        active: dict[str, asyncio.Task[int]] = {}

        def _done(partition: str, task: asyncio.Task[int]) -> None:
            active.pop(partition, None)
            if not task.cancelled() and task.exception() is not None:
                LOGGER.error("Partition consumer %s crashed: %s", partition, task.exception())

        LOGGER.info("Dispatcher started (max_concurrency=%s)", self.max_concurrency)
        while not stop_event.is_set():
            for partition in await self.queue.partitions():
                if partition in active or len(active) >= self.max_concurrency:
                    continue
                task = asyncio.create_task(self.run_partition(partition))
                active[partition] = task
                task.add_done_callback(lambda finished, name=partition: _done(name, finished))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval_seconds)
            except asyncio.TimeoutError:
                continue
        if active:
            await asyncio.gather(*active.values(), return_exceptions=True)
        LOGGER.info("Dispatcher stopped")

    async def aclose(self) -> None:
        for invoker in self.registry.values():
            await invoker.aclose()


def build_registry(
    settings: Settings,
    workers: Mapping[str, Worker] | None = None,
) -> dict[str, WorkerInvoker]:
    """Local workers first, then remote endpoints from ``CONTAINER_ENDPOINTS``."""

    registry: dict[str, WorkerInvoker] = {
        name: LocalWorkerInvoker(worker) for name, worker in (workers or {}).items()
    }
    for name, url in settings.dispatch.container_endpoints.items():
        registry[name] = HttpWorkerInvoker(
            url,
            name,
            timeout_seconds=settings.dispatch.invocation_timeout_seconds,
        )
    return registry
