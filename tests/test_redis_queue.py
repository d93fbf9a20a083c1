"""
Integration tests for the Redis job queue.

Run against TEST_REDIS_URL (default redis://localhost:6379/15); skipped
when no server answers. Every test uses its own key prefix.
"""
import asyncio
import os
import uuid

import pytest
import pytest_asyncio
import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError

from config.settings import QueueConfig
from job_queue.message_queue import STALLED_REASON, JobState, JobStateError
from job_queue.redis_queue import RedisJobQueue

REDIS_URL = os.environ.get("TEST_REDIS_URL", "redis://localhost:6379/15")


@pytest_asyncio.fixture
async def queue():
    prefix = f"test-{uuid.uuid4().hex[:8]}"
    q = RedisJobQueue("linkedin-messages", QueueConfig(attempts=2, backoff_delay=0.01),
                      redis_url=REDIS_URL, key_prefix=prefix)
    try:
        await q.connect()
    except (RedisConnectionError, OSError):
        pytest.skip(f"Redis not reachable at {REDIS_URL}")

    yield q

    async for key in q._redis.scan_iter(match=f"{prefix}:*"):
        await q._redis.delete(key)
    await q.close()


class TestRedisJobQueue:
    @pytest.mark.asyncio
    async def test_enqueue_is_idempotent_while_outstanding(self, queue):
        first = await queue.enqueue("send-mq1", {"n": 1})
        second = await queue.enqueue("send-mq1", {"n": 2})
        assert first.payload == second.payload == {"n": 1}
        assert (await queue.get_stats()).waiting == 1

    @pytest.mark.asyncio
    async def test_priority_then_fifo(self, queue):
        await queue.enqueue("a", {}, priority=5)
        await queue.enqueue("b", {}, priority=1)
        await queue.enqueue("c", {}, priority=5)
        order = [(await queue.claim()).job_key for _ in range(3)]
        assert order == ["b", "a", "c"]
        assert await queue.claim() is None

    @pytest.mark.asyncio
    async def test_complete_then_replace(self, queue):
        await queue.enqueue("send-mq1", {"cycle": 1})
        job = await queue.claim()
        assert job.state == JobState.ACTIVE
        done = await queue.complete(job, {"success": True})
        assert done.state == JobState.COMPLETED
        assert (await queue.get_job("send-mq1")).result == {"success": True}

        fresh = await queue.enqueue("send-mq1", {"cycle": 2})
        assert fresh.state == JobState.WAITING
        assert fresh.payload == {"cycle": 2}
        assert fresh.attempts_made == 0

    @pytest.mark.asyncio
    async def test_fail_backs_off_then_exhausts(self, queue):
        await queue.enqueue("a", {})
        job = await queue.fail(await queue.claim(), "boom")
        assert job.state == JobState.DELAYED

        stored = await queue.get_job("a")
        assert stored.failed_reason == "boom"
        assert stored.attempts_made == 1

        retried = await queue.retry_job("a")
        assert retried.state == JobState.WAITING
        job = await queue.fail(await queue.claim(), "boom again")
        assert job.state == JobState.FAILED
        assert (await queue.get_stats()).failed == 1

    @pytest.mark.asyncio
    async def test_remove_rules(self, queue):
        await queue.enqueue("a", {})
        await queue.enqueue("b", {})
        assert await queue.remove("a") is True
        assert await queue.get_job("a") is None
        assert await queue.remove("missing") is False

        await queue.claim()
        with pytest.raises(JobStateError):
            await queue.remove("b")

    @pytest.mark.asyncio
    async def test_stalled_job_is_recovered(self, queue):
        queue.stalled_timeout = 0.01
        await queue.enqueue("send-mq1", {})
        await queue.claim()
        assert (await queue.get_stats()).active == 1

        await asyncio.sleep(0.05)
        [job] = await queue.recover_stalled()

        assert job.state == JobState.WAITING
        assert job.attempts_made == 1
        assert job.failed_reason == STALLED_REASON
        stats = await queue.get_stats()
        assert stats.active == 0
        assert stats.waiting == 1
        assert (await queue.claim()).job_key == "send-mq1"

    @pytest.mark.asyncio
    async def test_completed_job_is_not_recovered(self, queue):
        queue.stalled_timeout = 0.01
        await queue.enqueue("send-mq1", {})
        await queue.complete(await queue.claim(), {"success": True})
        await asyncio.sleep(0.05)
        assert await queue.recover_stalled() == []
