"""Process wiring: one queue, one result store, one API client, one worker per local container.

The result store doubles as the workers' thread memory.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from agentjobs.browser import Launcher
from agentjobs.dispatcher import JobDispatcher, build_registry
from agentjobs.queue import JobQueue, build_queue
from agentjobs.ratelimit import AnthropicClient
from agentjobs.results import ResultStore, StorageConfig, build_store
from agentjobs.settings import Settings
from agentjobs.worker import Worker, build_worker

LOGGER = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    queue: JobQueue
    store: ResultStore
    client: AnthropicClient
    dispatcher: JobDispatcher
    workers: dict[str, Worker] = field(default_factory=dict)

    async def aclose(self) -> None:
        for worker in self.workers.values():
            await worker.sessions.cleanup()
        await self.dispatcher.aclose()
        await self.queue.close()
        await self.client.aclose()


def build_runtime(
    settings: Settings,
    *,
    queue: Optional[JobQueue] = None,
    store: Optional[ResultStore] = None,
    client: Optional[AnthropicClient] = None,
    launcher: Optional[Launcher] = None,
) -> Runtime:
    store = store or build_store(StorageConfig.from_settings(settings.storage))
    queue = queue or build_queue(settings)
    client = client or AnthropicClient(settings.anthropic)
    remote = settings.dispatch.container_endpoints
    workers = {
        name: build_worker(
            name,
            settings,
            client=client,
            save_artifact=store.save_artifact,
            launcher=launcher,
            memory=store,
        )
        for name in settings.dispatch.local_containers
        if name not in remote
    }
    dispatcher = JobDispatcher.from_settings(settings, queue, store, build_registry(settings, workers))
    LOGGER.info(
        "Runtime ready: queue=%s local=%s remote=%s",
        settings.queue.backend,
        sorted(workers),
        sorted(remote),
    )
    return Runtime(
        settings=settings,
        queue=queue,
        store=store,
        client=client,
        dispatcher=dispatcher,
        workers=workers,
    )
