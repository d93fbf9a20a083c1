"""
Job Queue — Abstract interface with in-memory and Redis backends.

Job States:
  waiting    — ready to run, ordered by priority then FIFO
  delayed    — runs once ready_at passes (scheduled or backing off)
  active     — claimed by a worker slot; holds a lease renewed by progress
               updates, and a job whose lease runs out is recovered
  completed  — handler returned a result
  failed     — attempts exhausted or unrecoverable

Job Schema:
  {
      "job_key":        deterministic key, e.g. send-{messageQueueId}; one
                        outstanding job per key,
      "queue":          queue name,
      "name":           job name,
      "payload":        handler input,
      "priority":       lower runs first,
      "attempts_made":  attempts finished so far,
      "max_attempts":   ceiling before the job fails,
      "backoff_delay":  base seconds for exponential backoff,
      "state":          see above,
      "progress":       0-100,
      "result":         handler output,
      "failed_reason":  last error,
      "lease_until":    active jobs only, epoch seconds the claim is held until,
  }
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import json
import time
import structlog
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Optional

from config.settings import QueueBackendConfig, QueueConfig, RetentionConfig

logger = structlog.get_logger()

_DAY = 24 * 3600
STALLED_REASON = "Job stalled: worker lease expired"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ──────────────────────────────────────────────────────────────
#  Errors
# ──────────────────────────────────────────────────────────────

class JobQueueError(Exception):
    """Base exception for queue operations."""


class JobNotFoundError(JobQueueError):
    def __init__(self, job_key: str):
        self.job_key = job_key
        super().__init__(f"Job {job_key} not found")


class JobStateError(JobQueueError):
    def __init__(self, job_key: str, state: str, operation: str):
        self.job_key = job_key
        self.state = state
        super().__init__(f"Cannot {operation} job {job_key} in state {state}")


class UnrecoverableJobError(Exception):
    """Raised by a handler when retrying the job cannot help."""


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


OUTSTANDING = frozenset({JobState.WAITING, JobState.DELAYED, JobState.ACTIVE})


@dataclass
class Job:
    """A unit of work on the queue."""
    job_key: str
    queue: str
    name: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    max_attempts: int = 3
    backoff_delay: float = 2.0
    attempts_made: int = 0
    state: JobState = JobState.WAITING
    progress: int = 0
    result: Optional[dict[str, Any]] = None
    failed_reason: Optional[str] = None
    created_at: str = ""
    processed_on: Optional[str] = None
    finished_on: Optional[str] = None
    ready_at: float = 0.0
    lease_until: float = 0.0
    seq: int = 0

    def __post_init__(self):
        if not self.name:
            self.name = self.queue
        if not self.created_at:
            self.created_at = _now_iso()
        if not self.ready_at:
            self.ready_at = time.time()

    @property
    def is_outstanding(self) -> bool:
        return self.state in OUTSTANDING

    def backoff_seconds(self) -> float:
        """Exponential backoff after ``attempts_made`` failures."""
        return self.backoff_delay * (2 ** max(self.attempts_made - 1, 0))

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["state"] = self.state.value
        return d

    def to_hash(self) -> dict[str, str]:
        """Flat string mapping for Redis hashes."""
        d = self.to_dict()
        d["payload"] = json.dumps(d["payload"])
        d["result"] = json.dumps(d["result"])
        return {k: ("" if v is None else str(v)) for k, v in d.items()}

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> Job:
        data = dict(data)  # copy
        return cls(
            job_key=data["job_key"],
            queue=data["queue"],
            name=data.get("name", ""),
            payload=json.loads(data.get("payload") or "{}"),
            priority=int(data.get("priority", 0)),
            max_attempts=int(data.get("max_attempts", 3)),
            backoff_delay=float(data.get("backoff_delay", 2.0)),
            attempts_made=int(data.get("attempts_made", 0)),
            state=JobState(data.get("state", JobState.WAITING.value)),
            progress=int(data.get("progress") or 0),
            result=json.loads(data.get("result") or "null"),
            failed_reason=data.get("failed_reason") or None,
            created_at=data.get("created_at", ""),
            processed_on=data.get("processed_on") or None,
            finished_on=data.get("finished_on") or None,
            ready_at=float(data.get("ready_at") or 0.0),
            lease_until=float(data.get("lease_until") or 0.0),
            seq=int(data.get("seq") or 0),
        )

    def status_view(self) -> dict[str, Any]:
        """What operational callers see for a job."""
        return {
            "id": self.job_key,
            "queue": self.queue,
            "state": self.state.value,
            "data": self.payload,
            "result": self.result,
            "progress": self.progress,
            "attempts_made": self.attempts_made,
            "failed_reason": self.failed_reason,
            "processed_on": self.processed_on,
            "finished_on": self.finished_on,
        }


@dataclass
class RetentionPolicy:
    completed_count: int = 1000
    completed_age: float = 7 * _DAY     # seconds
    failed_count: int = 5000
    failed_age: float = 30 * _DAY

    @classmethod
    def from_config(cls, config: RetentionConfig) -> RetentionPolicy:
        return cls(
            completed_count=config.completed_count,
            completed_age=config.completed_age_days * _DAY,
            failed_count=config.failed_count,
            failed_age=config.failed_age_days * _DAY,
        )

    def limits(self, state: JobState) -> tuple[int, float]:
        if state == JobState.COMPLETED:
            return self.completed_count, self.completed_age
        return self.failed_count, self.failed_age


@dataclass
class QueueStats:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class JobQueue(ABC):
    """Abstract durable job queue for one logical job type."""

    def __init__(self, name: str, config: QueueConfig = None):
        self.name = name
        self.config = config or QueueConfig()
        self.retention = RetentionPolicy.from_config(self.config.retention)
        self.stalled_timeout = self.config.stalled_timeout

    def _new_job(
        self,
        job_key: str,
        payload: dict[str, Any],
        name: str = "",
        priority: int = 0,
        delay: float = 0.0,
        attempts: Optional[int] = None,
    ) -> Job:
        now = time.time()
        return Job(
            job_key=job_key,
            queue=self.name,
            name=name or self.name,
            payload=payload,
            priority=priority,
            max_attempts=attempts or self.config.attempts,
            backoff_delay=self.config.backoff_delay,
            state=JobState.DELAYED if delay > 0 else JobState.WAITING,
            ready_at=now + max(delay, 0.0),
        )

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
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
        """
        Add a job. If a job with the same key is still outstanding the call
        is a no-op and returns that job; a finished job is replaced.
        """
        ...

    @abstractmethod
    async def get_job(self, job_key: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def get_stats(self) -> QueueStats:
        ...

    @abstractmethod
    async def claim(self) -> Optional[Job]:
        """Promote due delayed jobs and move the next waiting job to active."""
        ...

    @abstractmethod
    async def update_progress(self, job_key: str, progress: int):
        """Record progress. For an active job this also renews its lease."""
        ...

    @abstractmethod
    async def complete(self, job: Job, result: Optional[dict[str, Any]]) -> Job:
        ...

    @abstractmethod
    async def fail(self, job: Job, error: str, *, retry: bool = True) -> Job:
        """
        Record a failed attempt. Reschedules with exponential backoff while
        attempts remain and ``retry`` is true; otherwise the job fails.
        """
        ...

    @abstractmethod
    async def retry_job(self, job_key: str) -> Job:
        """Move a failed or backing-off job straight back to waiting."""
        ...

    @abstractmethod
    async def remove(self, job_key: str) -> bool:
        """Remove a job that has not been claimed yet."""
        ...

    @abstractmethod
    async def clean(self) -> int:
        """Apply the retention policy. Returns the number of jobs removed."""
        ...

    @abstractmethod
    async def recover_stalled(self) -> list[Job]:
        """
        Take back active jobs whose lease has expired, as when the worker
        holding them died. Each counts as a failed attempt: the job goes back
        to waiting while attempts remain, otherwise it fails. Returns the
        recovered jobs in their new state.
        """
        ...


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryJobQueue(JobQueue):
    """
    Development/test queue backed by a heap and dicts.
    Single-process only; all jobs are lost on restart.
    """

    def __init__(self, name: str, config: QueueConfig = None):
        super().__init__(name, config)
        self._jobs: dict[str, Job] = {}
        self._waiting: list[tuple[int, int, str]] = []      # (priority, seq, key)
        self._finished: dict[JobState, dict[str, float]] = {
            JobState.COMPLETED: {},
            JobState.FAILED: {},
        }
        self._seq = itertools.count(1)
        self._lock = asyncio.Lock()

    async def connect(self):
        logger.info("inmemory_queue_connected", queue=self.name)

    async def close(self):
        pass

    def _push_waiting(self, job: Job):
        job.state = JobState.WAITING
        job.seq = next(self._seq)
        heapq.heappush(self._waiting, (job.priority, job.seq, job.job_key))

    def _forget(self, job_key: str):
        self._jobs.pop(job_key, None)
        for finished in self._finished.values():
            finished.pop(job_key, None)

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
        async with self._lock:
            existing = self._jobs.get(job_key)
            if existing and existing.is_outstanding:
                logger.info("job_already_queued",
                            queue=self.name,
                            job_key=job_key,
                            state=existing.state.value)
                return existing
            if existing:
                self._forget(job_key)

            job = self._new_job(job_key, payload, name, priority, delay, attempts)
            self._jobs[job_key] = job
            if job.state == JobState.WAITING:
                self._push_waiting(job)
            else:
                job.seq = next(self._seq)

        logger.info("job_enqueued",
                    queue=self.name,
                    job_key=job_key,
                    priority=priority,
                    delay=delay)
        return job

    async def get_job(self, job_key: str) -> Optional[Job]:
        return self._jobs.get(job_key)

    async def get_stats(self) -> QueueStats:
        stats = QueueStats()
        for job in self._jobs.values():
            setattr(stats, job.state.value, getattr(stats, job.state.value) + 1)
        return stats

    def _promote_delayed(self, now: float):
        for job in self._jobs.values():
            if job.state == JobState.DELAYED and job.ready_at <= now:
                self._push_waiting(job)

    async def claim(self) -> Optional[Job]:
        async with self._lock:
            self._promote_delayed(time.time())
            while self._waiting:
                _, seq, key = heapq.heappop(self._waiting)
                job = self._jobs.get(key)
                # stale heap entries: removed, re-enqueued or re-prioritised
                if job is None or job.state != JobState.WAITING or job.seq != seq:
                    continue
                job.state = JobState.ACTIVE
                job.processed_on = _now_iso()
                job.lease_until = time.time() + self.stalled_timeout
                return job
        return None

    async def update_progress(self, job_key: str, progress: int):
        job = self._jobs.get(job_key)
        if job:
            job.progress = max(0, min(100, int(progress)))
            if job.state == JobState.ACTIVE:
                job.lease_until = time.time() + self.stalled_timeout

    async def complete(self, job: Job, result: Optional[dict[str, Any]]) -> Job:
        async with self._lock:
            stored = self._jobs.get(job.job_key, job)
            stored.attempts_made += 1
            stored.result = result
            stored.state = JobState.COMPLETED
            stored.finished_on = _now_iso()
            self._jobs[stored.job_key] = stored
            self._finished[JobState.COMPLETED][stored.job_key] = time.time()
            self._prune(JobState.COMPLETED)
        return stored

    async def fail(self, job: Job, error: str, *, retry: bool = True) -> Job:
        async with self._lock:
            stored = self._jobs.get(job.job_key, job)
            stored.attempts_made += 1
            stored.failed_reason = error

            if retry and stored.attempts_made < stored.max_attempts:
                delay = stored.backoff_seconds()
                stored.state = JobState.DELAYED
                stored.ready_at = time.time() + delay
                logger.info("job_scheduled_for_retry",
                            queue=self.name,
                            job_key=stored.job_key,
                            attempt=stored.attempts_made,
                            delay=delay)
            else:
                stored.state = JobState.FAILED
                stored.finished_on = _now_iso()
                self._finished[JobState.FAILED][stored.job_key] = time.time()
                logger.warning("job_failed",
                               queue=self.name,
                               job_key=stored.job_key,
                               attempts=stored.attempts_made,
                               error=error)
                self._prune(JobState.FAILED)
            self._jobs[stored.job_key] = stored
        return stored

    async def retry_job(self, job_key: str) -> Job:
        async with self._lock:
            job = self._jobs.get(job_key)
            if job is None:
                raise JobNotFoundError(job_key)
            if job.state == JobState.FAILED:
                self._finished[JobState.FAILED].pop(job_key, None)
                job.attempts_made = 0
                job.failed_reason = None
                job.finished_on = None
            elif job.state != JobState.DELAYED:
                raise JobStateError(job_key, job.state.value, "retry")
            job.ready_at = time.time()
            self._push_waiting(job)
        logger.info("job_retry_requested", queue=self.name, job_key=job_key)
        return job

    async def remove(self, job_key: str) -> bool:
        async with self._lock:
            job = self._jobs.get(job_key)
            if job is None:
                return False
            if job.state == JobState.ACTIVE:
                raise JobStateError(job_key, job.state.value, "remove")
            self._forget(job_key)
        logger.info("job_removed", queue=self.name, job_key=job_key)
        return True

    def _prune(self, state: JobState) -> int:
        max_count, max_age = self.retention.limits(state)
        finished = self._finished[state]
        cutoff = time.time() - max_age
        doomed = [k for k, ts in finished.items() if ts < cutoff]
        expired = set(doomed)
        # insertion order == finish order
        survivors = [k for k in finished if k not in expired]
        if len(survivors) > max_count:
            doomed.extend(survivors[: len(survivors) - max_count])
        for key in doomed:
            finished.pop(key, None)
            self._jobs.pop(key, None)
        return len(doomed)

    async def clean(self) -> int:
        async with self._lock:
            return self._prune(JobState.COMPLETED) + self._prune(JobState.FAILED)

    async def recover_stalled(self) -> list[Job]:
        recovered = []
        async with self._lock:
            now = time.time()
            for job in list(self._jobs.values()):
                if job.state != JobState.ACTIVE or job.lease_until > now:
                    continue
                job.attempts_made += 1
                job.failed_reason = STALLED_REASON
                job.lease_until = 0.0
                if job.attempts_made < job.max_attempts:
                    job.ready_at = now
                    self._push_waiting(job)
                else:
                    job.state = JobState.FAILED
                    job.finished_on = _now_iso()
                    self._finished[JobState.FAILED][job.job_key] = now
                recovered.append(job)
            if any(job.state == JobState.FAILED for job in recovered):
                self._prune(JobState.FAILED)

        for job in recovered:
            logger.warning("job_stalled",
                           queue=self.name,
                           job_key=job.job_key,
                           attempts=job.attempts_made,
                           state=job.state.value)
        return recovered


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_job_queue(
    name: str,
    backend_config: QueueBackendConfig = None,
    queue_config: QueueConfig = None,
    connection: Any = None,
) -> JobQueue:
    """
    Factory: create the appropriate queue backend for one queue name.
    Redis queues reuse ``connection`` when given, so every queue of a
    process can share one pool.
    """
    backend_config = backend_config or QueueBackendConfig()

    if backend_config.backend == "redis":
        from job_queue.redis_queue import RedisJobQueue
        return RedisJobQueue(
            name,
            queue_config,
            redis_url=backend_config.redis_url,
            key_prefix=backend_config.key_prefix,
            connection=connection,
        )
    return InMemoryJobQueue(name, queue_config)
