"""
Worker Pool — Pulls jobs from one queue and runs them with bounded concurrency.

Runs as ``concurrency`` async slot tasks inside the application process.
Each slot claims one job at a time, waits for a rate-limit token, runs the
handler and reports the outcome back to the queue.

Topology:
  ┌──────────────┐  claim  ┌───────────┐  token  ┌──────────────┐
  │  Job Queue   │────────▶│ Slot 1..N │────────▶│   Handler    │
  └──────▲───────┘         └─────┬─────┘         └──────┬───────┘
         │ complete / fail       │                      │
         └───────────────────────┴──────────────────────┘
                                 │
                                 ▼
                      outcomes (asyncio.Queue of JobOutcome)

Shutdown drains: a slot finishes the job it holds before exiting, because
browser-automation side effects cannot be safely aborted mid-send.

Progress updates double as the heartbeat that renews a job's lease. If the
slot cannot report the outcome (complete/fail raises), the job stays active
until the lease runs out and JobQueue.recover_stalled() takes it back.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass, asdict
from typing import Any, Awaitable, Callable, Optional

from job_queue.message_queue import Job, JobQueue, JobState, UnrecoverableJobError
from job_queue.rate_limiter import TokenBucketRateLimiter

logger = structlog.get_logger()

ProgressReporter = Callable[[int], Awaitable[None]]
JobHandler = Callable[[Job, ProgressReporter], Awaitable[Optional[dict[str, Any]]]]


@dataclass
class JobOutcome:
    """Structured completion event for one job attempt."""
    queue: str
    job_key: str
    status: str                          # completed | retrying | failed
    attempts_made: int
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class WorkerPool:
    """
    Bounded set of concurrent consumers for one queue.

    Usage:
        pool = WorkerPool(queue, handler, concurrency=3,
                          rate_limiter=TokenBucketRateLimiter(10, 1.0))
        await pool.start()
        outcome = await pool.outcomes.get()
        await pool.stop()
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        concurrency: int = 3,
        rate_limiter: Optional[TokenBucketRateLimiter] = None,
        poll_interval: float = 0.5,
        outcomes: Optional[asyncio.Queue] = None,
    ):
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.rate_limiter = rate_limiter
        self.poll_interval = poll_interval
        self.outcomes: asyncio.Queue = outcomes if outcomes is not None else asyncio.Queue(maxsize=1000)
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._active = 0

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    @property
    def active_count(self) -> int:
        return self._active

    async def start(self, concurrency: Optional[int] = None):
        """Spawn the slot tasks. Calling start on a running pool does nothing."""
        if self.is_running:
            logger.warning("worker_pool_already_running", queue=self.queue.name)
            return
        if concurrency is not None:
            self.concurrency = concurrency
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._slot(i), name=f"{self.queue.name}-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("worker_pool_started",
                    queue=self.queue.name,
                    concurrency=self.concurrency)

    async def stop(self):
        """Let every slot finish its current job, then exit. No-op if stopped."""
        if not self.is_running:
            return
        self._stopping.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("worker_pool_stopped", queue=self.queue.name)

    # ── Slot loop ─────────────────────────────────────────────

    async def _slot(self, index: int):
        while not self._stopping.is_set():
            try:
                job = await self.queue.claim()
                if job is None:
                    await self._idle()
                    continue
                await self._run(job)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("worker_slot_error",
                             queue=self.queue.name,
                             slot=index,
                             error=str(e))
                await self._idle(1.0)

    async def _idle(self, seconds: Optional[float] = None):
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds or self.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def _run(self, job: Job):
        self._active += 1
        structlog.contextvars.bind_contextvars(queue=self.queue.name, job_key=job.job_key)
        try:
            if self.rate_limiter:
                await self.rate_limiter.acquire()

            async def report_progress(progress: int):
                # best effort: a lost update must not fail a job mid-send
                try:
                    await self.queue.update_progress(job.job_key, progress)
                except Exception as e:
                    logger.warning("job_progress_failed", progress=progress, error=str(e))

            try:
                result = await self.handler(job, report_progress)
            except UnrecoverableJobError as e:
                updated = await self.queue.fail(job, str(e), retry=False)
                self._publish(updated, error=str(e))
            except Exception as e:
                logger.error("job_handler_error",
                             attempt=job.attempts_made + 1,
                             error=str(e))
                updated = await self.queue.fail(job, str(e))
                self._publish(updated, error=str(e))
            else:
                updated = await self.queue.complete(job, result)
                self._publish(updated, result=result)
        finally:
            self._active -= 1
            structlog.contextvars.unbind_contextvars("queue", "job_key")

    def _publish(self, job: Job, result: Optional[dict[str, Any]] = None, error: Optional[str] = None):
        status = {
            JobState.COMPLETED: "completed",
            JobState.DELAYED: "retrying",
        }.get(job.state, "failed")
        outcome = JobOutcome(
            queue=self.queue.name,
            job_key=job.job_key,
            status=status,
            attempts_made=job.attempts_made,
            result=result,
            error=error,
        )
        if status == "completed":
            logger.info("job_completed", attempts=job.attempts_made, result=result)
        elif status == "retrying":
            logger.warning("job_retrying", attempts=job.attempts_made, error=error)
        else:
            logger.error("job_failed_permanently", attempts=job.attempts_made, error=error)

        try:
            self.outcomes.put_nowait(outcome)
        except asyncio.QueueFull:
            logger.warning("job_outcome_dropped", status=status)
