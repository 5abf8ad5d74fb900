from __future__ import annotations

from dataclasses import replace

import pytest

from agentjobs.queue import MemoryJobQueue, build_queue, RedisJobQueue
from agentjobs.schemas import JobMessage

from tests.fakes import FakeClock, make_settings


def _job(job_id: str, container: str = "qa") -> JobMessage:
    return JobMessage(job_id=job_id, container_name=container, input="check example.com", thread_id=f"t-{job_id}")


@pytest.fixture()
def queue(tmp_path, clock: FakeClock) -> MemoryJobQueue:
    return MemoryJobQueue(make_settings(tmp_path).queue, clock=clock)


@pytest.mark.asyncio
async def test_duplicate_publish_within_window_is_dropped(queue: MemoryJobQueue, clock: FakeClock):
    first = await queue.publish(_job("abc"))
    second = await queue.publish(_job("abc"))

    assert first is not None
    assert second is None
    message = await queue.receive()
    assert message is not None and message.job.job_id == "abc"
    await queue.ack(message)
    assert await queue.receive() is None


@pytest.mark.asyncio
async def test_publish_after_dedup_window_is_accepted(queue: MemoryJobQueue, clock: FakeClock):
    await queue.publish(_job("abc"))
    clock.advance(301)

    assert await queue.publish(_job("abc")) is not None


@pytest.mark.asyncio
async def test_partition_delivers_in_order_one_at_a_time(queue: MemoryJobQueue):
    await queue.publish(_job("one"))
    await queue.publish(_job("two"))

    first = await queue.receive("qa")
    assert first.job.job_id == "one"
    assert await queue.receive("qa") is None

    await queue.ack(first)
    second = await queue.receive("qa")
    assert second.job.job_id == "two"


@pytest.mark.asyncio
async def test_partitions_are_independent(queue: MemoryJobQueue):
    await queue.publish(_job("a1", "alpha"))
    await queue.publish(_job("b1", "beta"))

    first = await queue.receive()
    second = await queue.receive()

    assert {first.partition, second.partition} == {"alpha", "beta"}
    assert sorted(await queue.partitions()) == ["alpha", "beta"]


@pytest.mark.asyncio
async def test_expired_lease_redelivers_same_message(queue: MemoryJobQueue, clock: FakeClock):
    await queue.publish(_job("abc"))
    await queue.publish(_job("def"))
    first = await queue.receive("qa")
    assert first.receive_count == 1

    clock.advance(599)
    assert await queue.receive("qa") is None
    clock.advance(2)

    again = await queue.receive("qa")
    assert again.job.job_id == "abc"
    assert again.receive_count == 2
    assert again.receipt != first.receipt


@pytest.mark.asyncio
async def test_stale_receipt_cannot_ack(queue: MemoryJobQueue, clock: FakeClock):
    await queue.publish(_job("abc"))
    first = await queue.receive("qa")
    clock.advance(601)
    second = await queue.receive("qa")

    assert await queue.ack(first) is False
    assert await queue.ack(second) is True
    assert await queue.partitions() == []


@pytest.mark.asyncio
async def test_release_makes_message_visible_immediately(queue: MemoryJobQueue):
    await queue.publish(_job("abc"))
    message = await queue.receive("qa")

    assert await queue.release(message) is True
    again = await queue.receive("qa")
    assert again.message_id == message.message_id
    assert again.receive_count == 2


@pytest.mark.asyncio
async def test_message_moves_to_dead_letters_after_max_receives(queue: MemoryJobQueue, clock: FakeClock):
    await queue.publish(_job("poison"))
    await queue.publish(_job("next"))

    for expected in (1, 2, 3):
        message = await queue.receive("qa")
        assert message.job.job_id == "poison"
        assert message.receive_count == expected
        clock.advance(601)

    following = await queue.receive("qa")
    assert following.job.job_id == "next"
    dead = await queue.dead_letters()
    assert [entry.job.job_id for entry in dead] == ["poison"]


@pytest.mark.asyncio
async def test_redrive_returns_dead_letter_to_partition_tail(queue: MemoryJobQueue, clock: FakeClock):
    await queue.publish(_job("poison"))
    for _ in range(3):
        await queue.receive("qa")
        clock.advance(601)
    assert await queue.receive("qa") is None
    message_id = (await queue.dead_letters())[0].message_id

    assert await queue.redrive(message_id) is True
    assert await queue.redrive(message_id) is False
    assert await queue.dead_letters() == []
    again = await queue.receive("qa")
    assert again.job.job_id == "poison"
    assert again.receive_count == 1


def test_build_queue_selects_backend(tmp_path):
    settings = make_settings(tmp_path)
    assert isinstance(build_queue(settings), MemoryJobQueue)

    redis_settings = replace(settings, queue=replace(settings.queue, backend="redis", redis_port=6380))
    queue = build_queue(redis_settings)
    assert isinstance(queue, RedisJobQueue)
    assert queue.redis_settings.host == "localhost"
    assert queue.redis_settings.port == 6380
