"""
Redis job queue — hashes + sorted sets, state changes in Lua.

Key layout for queue ``q`` under prefix ``p``:
  p:q:job:{key}   hash      job fields (see Job.to_hash)
  p:q:waiting     zset      score = priority * 1e12 + seq  (priority, then FIFO)
  p:q:delayed     zset      score = ready_at (epoch seconds)
  p:q:active      zset      score = lease deadline (epoch seconds)
  p:q:completed   zset      score = finished (epoch seconds)
  p:q:failed      zset      score = finished (epoch seconds)
  p:q:seq         counter

Enqueue, claim, retry, remove, prune and stalled recovery each run as one
script, so a job key can never be claimed twice or enqueued twice while
outstanding. A worker that dies mid-job leaves its key in ``active`` until
the lease deadline passes; recover_stalled() then hands the job back.
"""
from __future__ import annotations

import json
import time
import structlog
from typing import Any, Optional

import redis.asyncio as aioredis

from config.settings import QueueConfig
from job_queue.message_queue import (
    Job, JobQueue, JobState, QueueStats,
    JobNotFoundError, JobStateError, STALLED_REASON, _now_iso,
)

logger = structlog.get_logger()


_ENQUEUE = """
local state = redis.call('HGET', KEYS[1], 'state')
if state == 'waiting' or state == 'delayed' or state == 'active' then
  return 0
end
if state then
  redis.call('ZREM', KEYS[4], ARGV[1])
  redis.call('ZREM', KEYS[5], ARGV[1])
  redis.call('DEL', KEYS[1])
end
local seq = redis.call('INCR', KEYS[6])
local fields = cjson.decode(ARGV[2])
for k, v in pairs(fields) do
  redis.call('HSET', KEYS[1], k, v)
end
redis.call('HSET', KEYS[1], 'seq', seq)
if ARGV[4] == '1' then
  redis.call('HSET', KEYS[1], 'state', 'delayed')
  redis.call('ZADD', KEYS[3], ARGV[5], ARGV[1])
else
  redis.call('HSET', KEYS[1], 'state', 'waiting')
  redis.call('ZADD', KEYS[2], tonumber(ARGV[3]) * 1e12 + seq, ARGV[1])
end
return 1
"""

_CLAIM = """
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for _, key in ipairs(due) do
  local jk = ARGV[2] .. key
  redis.call('ZREM', KEYS[2], key)
  local priority = tonumber(redis.call('HGET', jk, 'priority') or '0')
  local seq = tonumber(redis.call('HGET', jk, 'seq') or '0')
  redis.call('HSET', jk, 'state', 'waiting')
  redis.call('ZADD', KEYS[1], priority * 1e12 + seq, key)
end
local popped = redis.call('ZPOPMIN', KEYS[1])
if #popped == 0 then
  return false
end
local key = popped[1]
redis.call('ZADD', KEYS[3], ARGV[4], key)
redis.call('HSET', ARGV[2] .. key, 'state', 'active', 'processed_on', ARGV[3], 'lease_until', ARGV[4])
return key
"""

_RETRY = """
local state = redis.call('HGET', KEYS[1], 'state')
if not state then
  return -1
end
if state == 'failed' then
  redis.call('ZREM', KEYS[4], ARGV[1])
  redis.call('HSET', KEYS[1], 'attempts_made', 0, 'failed_reason', '', 'finished_on', '')
elseif state == 'delayed' then
  redis.call('ZREM', KEYS[3], ARGV[1])
else
  return state
end
local priority = tonumber(redis.call('HGET', KEYS[1], 'priority') or '0')
local seq = tonumber(redis.call('HGET', KEYS[1], 'seq') or '0')
redis.call('HSET', KEYS[1], 'state', 'waiting', 'ready_at', ARGV[2])
redis.call('ZADD', KEYS[2], priority * 1e12 + seq, ARGV[1])
return 1
"""

_REMOVE = """
local state = redis.call('HGET', KEYS[1], 'state')
if not state then
  return 0
end
if state == 'active' then
  return -1
end
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('ZREM', KEYS[3], ARGV[1])
redis.call('ZREM', KEYS[4], ARGV[1])
redis.call('ZREM', KEYS[5], ARGV[1])
redis.call('DEL', KEYS[1])
return 1
"""

_RECOVER = """
local stalled = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
local recovered = {}
for _, key in ipairs(stalled) do
  redis.call('ZREM', KEYS[1], key)
  local jk = ARGV[2] .. key
  if redis.call('HGET', jk, 'state') == 'active' then
    local attempts = tonumber(redis.call('HGET', jk, 'attempts_made') or '0') + 1
    local max = tonumber(redis.call('HGET', jk, 'max_attempts') or '1')
    redis.call('HSET', jk, 'attempts_made', attempts, 'failed_reason', ARGV[3], 'lease_until', 0)
    if attempts < max then
      local priority = tonumber(redis.call('HGET', jk, 'priority') or '0')
      local seq = tonumber(redis.call('HGET', jk, 'seq') or '0')
      redis.call('HSET', jk, 'state', 'waiting', 'ready_at', ARGV[1])
      redis.call('ZADD', KEYS[2], priority * 1e12 + seq, key)
    else
      redis.call('HSET', jk, 'state', 'failed', 'finished_on', ARGV[4])
      redis.call('ZADD', KEYS[3], ARGV[1], key)
    end
    table.insert(recovered, key)
  end
end
return recovered
"""

_PRUNE = """
local doomed = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
local excess = redis.call('ZCARD', KEYS[1]) - #doomed - tonumber(ARGV[2])
if excess > 0 then
  local oldest = redis.call('ZRANGEBYSCORE', KEYS[1], '(' .. ARGV[1], '+inf', 'LIMIT', 0, excess)
  for _, k in ipairs(oldest) do
    table.insert(doomed, k)
  end
end
for _, k in ipairs(doomed) do
  redis.call('ZREM', KEYS[1], k)
  if redis.call('HGET', ARGV[3] .. k, 'state') == ARGV[4] then
    redis.call('DEL', ARGV[3] .. k)
  end
end
return #doomed
"""


class RedisJobQueue(JobQueue):
    """
    Production queue backed by Redis.

    The connection may be shared between queues; a queue only closes a
    connection it created itself.
    """

    def __init__(
        self,
        name: str,
        config: QueueConfig = None,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "outreach",
        connection: Optional[aioredis.Redis] = None,
    ):
        super().__init__(name, config)
        self._redis_url = redis_url
        self._redis = connection
        self._owns_connection = connection is None
        self._base = f"{key_prefix}:{name}"
        self._scripts: dict[str, Any] = {}

    # ── Keys ──────────────────────────────────────────────────

    def _job_hash(self, job_key: str) -> str:
        return f"{self._base}:job:{job_key}"

    @property
    def _job_prefix(self) -> str:
        return f"{self._base}:job:"

    def _key(self, suffix: str) -> str:
        return f"{self._base}:{suffix}"

    # ── Lifecycle ─────────────────────────────────────────────

    async def connect(self):
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=True,
                max_connections=20,
            )
        await self._redis.ping()
        self._scripts = {
            "enqueue": self._redis.register_script(_ENQUEUE),
            "claim": self._redis.register_script(_CLAIM),
            "retry": self._redis.register_script(_RETRY),
            "remove": self._redis.register_script(_REMOVE),
            "prune": self._redis.register_script(_PRUNE),
            "recover": self._redis.register_script(_RECOVER),
        }
        logger.info("redis_queue_connected", queue=self.name, url=self._redis_url)

    async def close(self):
        if self._redis is not None and self._owns_connection:
            await self._redis.aclose()
            self._redis = None

    # ── Operations ────────────────────────────────────────────

    async def enqueue(
        self,
        job_key: str,
        payload: dict[str, Any],
        *,
        name: str = "",
        priority: int = 0,
        delay: float = 0.0,
        attempts: Optional[int] = None,
    ) -> Job:
        job = self._new_job(job_key, payload, name, priority, delay, attempts)
        fields = job.to_hash()
        fields.pop("state")
        fields.pop("seq")

        created = await self._scripts["enqueue"](
            keys=[
                self._job_hash(job_key),
                self._key("waiting"), self._key("delayed"),
                self._key("completed"), self._key("failed"),
                self._key("seq"),
            ],
            args=[
                job_key, json.dumps(fields), job.priority,
                "1" if job.state == JobState.DELAYED else "0",
                job.ready_at,
            ],
        )
        if created:
            logger.info("job_enqueued",
                        queue=self.name,
                        job_key=job_key,
                        priority=priority,
                        delay=delay)
        else:
            logger.info("job_already_queued", queue=self.name, job_key=job_key)
        return await self.get_job(job_key)

    async def get_job(self, job_key: str) -> Optional[Job]:
        data = await self._redis.hgetall(self._job_hash(job_key))
        return Job.from_hash(data) if data else None

    async def get_stats(self) -> QueueStats:
        pipe = self._redis.pipeline()
        pipe.zcard(self._key("waiting"))
        pipe.zcard(self._key("active"))
        pipe.zcard(self._key("completed"))
        pipe.zcard(self._key("failed"))
        pipe.zcard(self._key("delayed"))
        waiting, active, completed, failed, delayed = await pipe.execute()
        return QueueStats(
            waiting=waiting, active=active, completed=completed,
            failed=failed, delayed=delayed,
        )

    async def claim(self) -> Optional[Job]:
        now = time.time()
        key = await self._scripts["claim"](
            keys=[self._key("waiting"), self._key("delayed"), self._key("active")],
            args=[now, self._job_prefix, _now_iso(), now + self.stalled_timeout],
        )
        if not key:
            return None
        return await self.get_job(key)

    async def update_progress(self, job_key: str, progress: int):
        job_hash = self._job_hash(job_key)
        if not await self._redis.exists(job_hash):
            return
        pipe = self._redis.pipeline(transaction=True)
        pipe.hset(job_hash, "progress", max(0, min(100, int(progress))))
        # renews the lease only while the job is still active
        pipe.zadd(self._key("active"), {job_key: time.time() + self.stalled_timeout}, xx=True)
        await pipe.execute()

    async def complete(self, job: Job, result: Optional[dict[str, Any]]) -> Job:
        finished = time.time()
        job.attempts_made += 1
        job.result = result
        job.state = JobState.COMPLETED
        job.finished_on = _now_iso()

        pipe = self._redis.pipeline(transaction=True)
        pipe.zrem(self._key("active"), job.job_key)
        pipe.hset(self._job_hash(job.job_key), mapping={
            "state": job.state.value,
            "attempts_made": job.attempts_made,
            "result": json.dumps(result),
            "finished_on": job.finished_on,
        })
        pipe.zadd(self._key("completed"), {job.job_key: finished})
        await pipe.execute()

        await self._prune(JobState.COMPLETED)
        return job

    async def fail(self, job: Job, error: str, *, retry: bool = True) -> Job:
        now = time.time()
        job.attempts_made += 1
        job.failed_reason = error

        pipe = self._redis.pipeline(transaction=True)
        pipe.zrem(self._key("active"), job.job_key)
        if retry and job.attempts_made < job.max_attempts:
            delay = job.backoff_seconds()
            job.state = JobState.DELAYED
            job.ready_at = now + delay
            pipe.hset(self._job_hash(job.job_key), mapping={
                "state": job.state.value,
                "attempts_made": job.attempts_made,
                "failed_reason": error,
                "ready_at": job.ready_at,
            })
            pipe.zadd(self._key("delayed"), {job.job_key: job.ready_at})
            await pipe.execute()
            logger.info("job_scheduled_for_retry",
                        queue=self.name,
                        job_key=job.job_key,
                        attempt=job.attempts_made,
                        delay=delay)
            return job

        job.state = JobState.FAILED
        job.finished_on = _now_iso()
        pipe.hset(self._job_hash(job.job_key), mapping={
            "state": job.state.value,
            "attempts_made": job.attempts_made,
            "failed_reason": error,
            "finished_on": job.finished_on,
        })
        pipe.zadd(self._key("failed"), {job.job_key: now})
        await pipe.execute()
        logger.warning("job_failed",
                       queue=self.name,
                       job_key=job.job_key,
                       attempts=job.attempts_made,
                       error=error)

        await self._prune(JobState.FAILED)
        return job

    async def retry_job(self, job_key: str) -> Job:
        outcome = await self._scripts["retry"](
            keys=[
                self._job_hash(job_key), self._key("waiting"),
                self._key("delayed"), self._key("failed"),
            ],
            args=[job_key, time.time()],
        )
        if outcome == -1:
            raise JobNotFoundError(job_key)
        if isinstance(outcome, str):
            raise JobStateError(job_key, outcome, "retry")
        logger.info("job_retry_requested", queue=self.name, job_key=job_key)
        return await self.get_job(job_key)

    async def remove(self, job_key: str) -> bool:
        outcome = await self._scripts["remove"](
            keys=[
                self._job_hash(job_key), self._key("waiting"), self._key("delayed"),
                self._key("completed"), self._key("failed"),
            ],
            args=[job_key],
        )
        if outcome == -1:
            raise JobStateError(job_key, JobState.ACTIVE.value, "remove")
        if outcome:
            logger.info("job_removed", queue=self.name, job_key=job_key)
        return bool(outcome)

    async def _prune(self, state: JobState) -> int:
        max_count, max_age = self.retention.limits(state)
        removed = await self._scripts["prune"](
            keys=[self._key(state.value)],
            args=[time.time() - max_age, max_count, self._job_prefix, state.value],
        )
        if removed:
            logger.debug("jobs_pruned", queue=self.name, state=state.value, count=removed)
        return int(removed)

    async def clean(self) -> int:
        return await self._prune(JobState.COMPLETED) + await self._prune(JobState.FAILED)

    async def recover_stalled(self) -> list[Job]:
        keys = await self._scripts["recover"](
            keys=[self._key("active"), self._key("waiting"), self._key("failed")],
            args=[time.time(), self._job_prefix, STALLED_REASON, _now_iso()],
        )
        recovered = []
        for key in keys:
            job = await self.get_job(key)
            if job is None:
                continue
            logger.warning("job_stalled",
                           queue=self.name,
                           job_key=key,
                           attempts=job.attempts_made,
                           state=job.state.value)
            recovered.append(job)
        if any(job.state == JobState.FAILED for job in recovered):
            await self._prune(JobState.FAILED)
        return recovered
