"""Partitioned FIFO job queue with deduplication, leases and a dead-letter list.

Messages are partitioned by container name. Within a partition only the head
message is ever in flight: receiving it takes a lease on the whole partition
for ``visibility_timeout_seconds``. ``ack`` deletes the head and frees the
partition; an expired lease makes the same head deliverable again with a higher
receive count, and a head that has already been received
``max_receive_count`` times is moved to the dead-letter list instead.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

from agentjobs import metrics
from agentjobs.schemas import JobMessage
from agentjobs.settings import QueueSettings, Settings

LOGGER = logging.getLogger(__name__)


class QueueError(RuntimeError):
    """Queue transport failed (publish, receive or acknowledge)."""


@dataclass(slots=True)
class QueueMessage:
    """One delivery of a job. ``receipt`` identifies the lease it was handed out under."""

    message_id: str
    partition: str
    job: JobMessage
    receive_count: int = 0
    sent_at: float = 0.0
    receipt: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "messageId": self.message_id,
                "partition": self.partition,
                "sentAt": self.sent_at,
                "job": self.job.to_wire(),
            }
        )

    @classmethod
    def from_json(cls, raw: str | bytes, *, receive_count: int = 0, receipt: Optional[str] = None) -> QueueMessage:
        data = json.loads(raw)
        return cls(
            message_id=data["messageId"],
            partition=data["partition"],
            job=JobMessage.model_validate(data["job"]),
            receive_count=receive_count,
            sent_at=float(data.get("sentAt") or 0.0),
            receipt=receipt,
        )


class JobQueue(ABC):
    """Operations shared by every queue backend."""

    def __init__(self, config: QueueSettings) -> None:
        self.config = config

    @abstractmethod
    async def publish(self, job: JobMessage) -> Optional[str]:
        """Enqueue ``job`` on its container partition.

        Returns:
            The new message id, or ``None`` when the job id was already published
            within the deduplication window.
        """

    @abstractmethod
    async def receive(self, partition: Optional[str] = None) -> Optional[QueueMessage]:
        """Lease the head message of an unlocked partition, if any."""

    @abstractmethod
    async def ack(self, message: QueueMessage) -> bool:
        """Delete a delivered message and unlock its partition."""

    @abstractmethod
    async def release(self, message: QueueMessage) -> bool:
        """Unlock the partition so the message is redelivered immediately."""

    @abstractmethod
    async def dead_letters(self) -> list[QueueMessage]:
        ...

    @abstractmethod
    async def redrive(self, message_id: str) -> bool:
        """Move a dead-lettered message back to the tail of its partition."""

    @abstractmethod
    async def partitions(self) -> list[str]:
        ...

    async def close(self) -> None:
        return None


@dataclass(slots=True)
class _Lease:
    message_id: str
    receipt: str
    expires_at: float


class MemoryJobQueue(JobQueue):
    """Single-process backend used for tests and local development."""

    def __init__(self, config: QueueSettings, *, clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__(config)
        self._clock = clock
        self._queues: dict[str, deque[str]] = {}
        self._messages: dict[str, QueueMessage] = {}
        self._dedup: dict[str, tuple[str, float]] = {}
        self._leases: dict[str, _Lease] = {}
        self._dead: list[QueueMessage] = []
        self._cursor = 0

    async def publish(self, job: JobMessage) -> Optional[str]:
        now = self._clock()
        self._dedup = {key: entry for key, entry in self._dedup.items() if entry[1] > now}
        if job.job_id in self._dedup:
            metrics.JOBS_DEDUPLICATED.labels(container=job.container_name).inc()
            LOGGER.info("Dropped duplicate publish for job %s", job.job_id)
            return None
        message = QueueMessage(
            message_id=uuid.uuid4().hex,
            partition=job.container_name,
            job=job,
            sent_at=time.time(),
        )
        self._messages[message.message_id] = message
        self._queues.setdefault(message.partition, deque()).append(message.message_id)
        self._dedup[job.job_id] = (message.message_id, now + self.config.dedup_window_seconds)
        metrics.JOBS_PUBLISHED.labels(container=job.container_name).inc()
        LOGGER.info("Published job %s to partition %s (%s)", job.job_id, message.partition, message.message_id)
        return message.message_id

    def _candidates(self, partition: Optional[str]) -> list[str]:
        if partition is not None:
            return [partition]
        names = [name for name, queue in self._queues.items() if queue]
        if not names:
            return []
        self._cursor = (self._cursor + 1) % len(names)
        return names[self._cursor :] + names[: self._cursor]

    async def receive(self, partition: Optional[str] = None) -> Optional[QueueMessage]:
        now = self._clock()
        for name in self._candidates(partition):
            lease = self._leases.get(name)
            if lease is not None:
                if lease.expires_at > now:
                    continue
                LOGGER.warning("Lease on partition %s expired; message %s becomes visible again", name, lease.message_id)
                del self._leases[name]
            message = self._lease_head(name, now)
            if message is not None:
                return message
        return None

    def _lease_head(self, partition: str, now: float) -> Optional[QueueMessage]:
        queue = self._queues.get(partition)
        while queue:
            message = self._messages[queue[0]]
            if message.receive_count >= self.config.max_receive_count:
                queue.popleft()
                del self._messages[message.message_id]
                self._dead.append(message)
                metrics.JOBS_DEAD_LETTERED.labels(container=partition).inc()
                LOGGER.warning("Moved job %s to dead letters after %s receives", message.job.job_id, message.receive_count)
                continue
            message.receive_count += 1
            receipt = uuid.uuid4().hex
            self._leases[partition] = _Lease(message.message_id, receipt, now + self.config.visibility_timeout_seconds)
            return replace(message, receipt=receipt)
        return None

    def _lease_conflict(self, message: QueueMessage) -> bool:
        lease = self._leases.get(message.partition)
        return lease is not None and lease.message_id == message.message_id and lease.receipt != message.receipt

    async def ack(self, message: QueueMessage) -> bool:
        if message.message_id not in self._messages:
            return False
        if self._lease_conflict(message):
            LOGGER.warning("Ignoring ack for %s: redelivered under a newer receipt", message.message_id)
            return False
        lease = self._leases.get(message.partition)
        if lease is not None and lease.message_id == message.message_id:
            del self._leases[message.partition]
        queue = self._queues.get(message.partition)
        if queue is not None:
            queue.remove(message.message_id)
        del self._messages[message.message_id]
        return True

    async def release(self, message: QueueMessage) -> bool:
        lease = self._leases.get(message.partition)
        if lease is None or lease.receipt != message.receipt:
            return False
        del self._leases[message.partition]
        return True

    async def dead_letters(self) -> list[QueueMessage]:
        return [replace(message) for message in self._dead]

    async def redrive(self, message_id: str) -> bool:
        for index, message in enumerate(self._dead):
            if message.message_id == message_id:
                del self._dead[index]
                message.receive_count = 0
                self._messages[message_id] = message
                self._queues.setdefault(message.partition, deque()).append(message_id)
                LOGGER.info("Redrove job %s to partition %s", message.job.job_id, message.partition)
                return True
        return False

    async def partitions(self) -> list[str]:
        return [name for name, queue in self._queues.items() if queue]


_PUBLISH_SCRIPT = """
if not redis.call('SET', KEYS[1], ARGV[1], 'NX', 'PX', ARGV[3]) then
  return 0
end
redis.call('SET', KEYS[2], ARGV[2])
redis.call('RPUSH', KEYS[3], ARGV[1])
redis.call('SADD', KEYS[4], ARGV[4])
return 1
"""

_ACK_SCRIPT = """
local holder = redis.call('GET', KEYS[1])
if holder and holder ~= ARGV[1] then
  return -1
end
if holder then
  redis.call('DEL', KEYS[1])
end
local removed = redis.call('LREM', KEYS[2], 1, ARGV[2])
redis.call('DEL', KEYS[3])
redis.call('HDEL', KEYS[4], ARGV[2])
if redis.call('LLEN', KEYS[2]) == 0 then
  redis.call('SREM', KEYS[5], ARGV[3])
end
return removed
"""

_RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""


def get_redis_settings(config: QueueSettings) -> RedisSettings:
    """Get Redis settings for the arq connection pool."""

    return RedisSettings(
        host=config.redis_host,
        port=config.redis_port,
        database=config.redis_database,
        password=config.redis_password,
    )


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


class RedisJobQueue(JobQueue):
    """Multi-process backend on Redis, using arq's connection pool.

    Keys (all under ``config.prefix``):
        ``partitions``            set of partitions holding messages
        ``partition:{name}``      list of message ids, head first
        ``message:{id}``          JSON body
        ``receives``              hash of message id -> receive count
        ``lease:{name}``          receipt of the in-flight delivery, expires with the lease
        ``dedup:{jobId}``         message id, expires with the deduplication window
        ``dlq``                   list of dead-lettered message ids
    """

    def __init__(self, config: QueueSettings, *, pool: Optional[ArqRedis] = None) -> None:
        super().__init__(config)
        self.redis_settings = get_redis_settings(config)
        self._pool = pool

    async def get_pool(self) -> ArqRedis:
        """Get or create Redis connection pool."""
        if self._pool is None:
            self._pool = await create_pool(self.redis_settings)
        return self._pool

    def _key(self, *parts: str) -> str:
        return ":".join((self.config.prefix, *parts))

    async def publish(self, job: JobMessage) -> Optional[str]:
        pool = await self.get_pool()
        message = QueueMessage(
            message_id=uuid.uuid4().hex,
            partition=job.container_name,
            job=job,
            sent_at=time.time(),
        )
        try:
            fresh = await pool.eval(
                _PUBLISH_SCRIPT,
                4,
                self._key("dedup", job.job_id),
                self._key("message", message.message_id),
                self._key("partition", message.partition),
                self._key("partitions"),
                message.message_id,
                message.to_json(),
                int(self.config.dedup_window_seconds * 1000),
                message.partition,
            )
        except Exception as exc:
            raise QueueError(f"Failed to publish job {job.job_id}: {exc}") from exc
        if not fresh:
            metrics.JOBS_DEDUPLICATED.labels(container=job.container_name).inc()
            LOGGER.info("Dropped duplicate publish for job %s", job.job_id)
            return None
        metrics.JOBS_PUBLISHED.labels(container=job.container_name).inc()
        LOGGER.info("Published job %s to partition %s (%s)", job.job_id, message.partition, message.message_id)
        return message.message_id

    async def receive(self, partition: Optional[str] = None) -> Optional[QueueMessage]:
        pool = await self.get_pool()
        names = [partition] if partition is not None else await self.partitions()
        for name in names:
            message = await self._lease_head(pool, name)
            if message is not None:
                return message
        return None

    async def _lease_head(self, pool: ArqRedis, partition: str) -> Optional[QueueMessage]:
        lease_key = self._key("lease", partition)
        list_key = self._key("partition", partition)
        receipt = uuid.uuid4().hex
        acquired = await pool.set(
            lease_key,
            receipt,
            nx=True,
            px=int(self.config.visibility_timeout_seconds * 1000),
        )
        if not acquired:
            return None
        while True:
            head = _text(await pool.lindex(list_key, 0))
            if head is None:
                await pool.eval(_RELEASE_SCRIPT, 1, lease_key, receipt)
                await pool.srem(self._key("partitions"), partition)
                return None
            raw = await pool.get(self._key("message", head))
            if raw is None:
                LOGGER.warning("Dropping dangling message id %s from partition %s", head, partition)
                await pool.lrem(list_key, 1, head)
                continue
            count = await pool.hincrby(self._key("receives"), head, 1)
            if count > self.config.max_receive_count:
                await pool.lrem(list_key, 1, head)
                await pool.rpush(self._key("dlq"), head)
                await pool.hdel(self._key("receives"), head)
                metrics.JOBS_DEAD_LETTERED.labels(container=partition).inc()
                LOGGER.warning("Moved message %s to dead letters after %s receives", head, count - 1)
                continue
            return QueueMessage.from_json(raw, receive_count=count, receipt=receipt)

    async def ack(self, message: QueueMessage) -> bool:
        pool = await self.get_pool()
        try:
            removed = await pool.eval(
                _ACK_SCRIPT,
                5,
                self._key("lease", message.partition),
                self._key("partition", message.partition),
                self._key("message", message.message_id),
                self._key("receives"),
                self._key("partitions"),
                message.receipt or "",
                message.message_id,
                message.partition,
            )
        except Exception as exc:
            raise QueueError(f"Failed to acknowledge message {message.message_id}: {exc}") from exc
        if removed == -1:
            LOGGER.warning("Ignoring ack for %s: redelivered under a newer receipt", message.message_id)
            return False
        return bool(removed)

    async def release(self, message: QueueMessage) -> bool:
        pool = await self.get_pool()
        released = await pool.eval(_RELEASE_SCRIPT, 1, self._key("lease", message.partition), message.receipt or "")
        return bool(released)

    async def dead_letters(self) -> list[QueueMessage]:
        pool = await self.get_pool()
        messages = []
        for raw_id in await pool.lrange(self._key("dlq"), 0, -1):
            raw = await pool.get(self._key("message", _text(raw_id)))
            if raw is not None:
                messages.append(QueueMessage.from_json(raw, receive_count=self.config.max_receive_count))
        return messages

    async def redrive(self, message_id: str) -> bool:
        pool = await self.get_pool()
        removed = await pool.lrem(self._key("dlq"), 1, message_id)
        if not removed:
            return False
        raw = await pool.get(self._key("message", message_id))
        if raw is None:
            return False
        message = QueueMessage.from_json(raw)
        async with pool.pipeline(transaction=True) as pipe:
            pipe.hdel(self._key("receives"), message_id)
            pipe.rpush(self._key("partition", message.partition), message_id)
            pipe.sadd(self._key("partitions"), message.partition)
            await pipe.execute()
        LOGGER.info("Redrove job %s to partition %s", message.job.job_id, message.partition)
        return True

    async def partitions(self) -> list[str]:
        pool = await self.get_pool()
        return sorted(_text(name) for name in await pool.smembers(self._key("partitions")))

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None


def build_queue(settings: Settings) -> JobQueue:
    if settings.queue.backend == "redis":
        return RedisJobQueue(settings.queue)
    return MemoryJobQueue(settings.queue)
