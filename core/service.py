"""
Delivery Service — Owns the queues, worker pools and requeue scheduler.

Constructed once at start-up (build_service) and passed by reference to
whatever needs it; nothing here is a module-level singleton.

  queue_message / schedule_item ─▶ linkedin-messages  ─▶ WorkerPool ─▶ MessageDispatcher
                                   instagram-messages ─▶ WorkerPool ─▶ MessageDispatcher
  add_enrichment_job ───────────▶ enrichment         ─▶ WorkerPool ─▶ EnrichmentProcessor

  RequeueScheduler: periodically re-enqueues due ``queued`` items, which is
  how retryable business failures get their next attempt. The same pass
  takes back jobs whose worker died and fails items stranded in processing.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Union

import redis.asyncio as aioredis

from channels.automation import BrowserAutomation, RemoteBrowserAutomation, UnavailableAutomation
from channels.base import MessengerRegistry
from channels.instagram import InstagramMessenger
from channels.linkedin import LinkedInMessenger
from config.settings import Settings, get_settings
from core.dispatcher import MessageDispatcher
from core.enrichment import Enricher, EnrichmentProcessor, HttpEnricher
from database.store_base import BaseStatusStore
from database.store_factory import create_store
from job_queue.message_queue import (
    Job, JobNotFoundError, JobQueue, JobState, STALLED_REASON, create_job_queue,
)
from job_queue.rate_limiter import TokenBucketRateLimiter
from job_queue.worker import WorkerPool
from models.lifecycle import InvalidTransitionError
from models.schemas import (
    EnrichmentJobData, MessageJobData, MessageQueueItem, MessageQueueStatus as S, Platform,
)

logger = structlog.get_logger()

MESSAGE_QUEUES: dict[Platform, str] = {
    Platform.LINKEDIN: "linkedin-messages",
    Platform.INSTAGRAM: "instagram-messages",
}
ENRICHMENT_QUEUE = "enrichment"

# manual re-queue starts a new attempt cycle from these
REQUEUEABLE = (S.FAILED, S.BLOCKED, S.CANCELLED)


def message_job_key(item_id: str) -> str:
    return f"send-{item_id}"


def enrichment_job_key(lead_id: str) -> str:
    return f"enrich-{lead_id}"


class UnknownQueueError(KeyError):
    def __init__(self, queue: str):
        self.queue = queue
        super().__init__(queue)

    def __str__(self) -> str:
        return f"Unknown queue: {self.queue}"


class MessageNotFoundError(LookupError):
    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Message {item_id} not found")


# ──────────────────────────────────────────────────────────────
#  Requeue Scheduler
# ──────────────────────────────────────────────────────────────

class RequeueScheduler:
    """
    Background task that periodically hands due ``queued`` items back to
    their job queue. Enqueue is idempotent per item, so items whose job is
    still outstanding are left alone.

    Items that already used up the business retry budget are claimed and
    failed instead of being sent again.

    Before requeueing, each pass recovers stalled jobs on ``queues`` (their
    messages are failed so the recovered job resumes them) and fails items
    that sat in processing longer than ``processing_timeout`` without an
    active job.
    """

    def __init__(
        self,
        store: BaseStatusStore,
        schedule: Callable[[MessageQueueItem], Awaitable[Job]],
        interval_seconds: float = 30.0,
        batch_size: int = 100,
        max_business_attempts: Optional[int] = None,
        queues: Optional[dict[str, JobQueue]] = None,
        processing_timeout: float = 600.0,
    ):
        self.store = store
        self.schedule = schedule
        self.queues = queues if queues is not None else {}
        self.processing_timeout = processing_timeout
        self.interval = interval_seconds
        self.batch_size = batch_size
        self.max_business_attempts = max_business_attempts
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start_background(self) -> asyncio.Task:
        if not self.is_running:
            self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("requeue_scheduler_started", interval=self.interval)
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("requeue_scheduler_error", error=str(e))
            await asyncio.sleep(self.interval)

    async def run_once(self) -> int:
        """One pass over due queued items. Returns how many were scheduled."""
        await self.recover_stalled()
        await self.sweep_processing()

        due = await self.store.list_items(
            status=S.QUEUED,
            due_before=datetime.now(timezone.utc),
            limit=self.batch_size,
        )
        scheduled = 0
        for item in due:
            try:
                if self._exhausted(item):
                    await self._expire(item)
                    continue
                await self.schedule(item)
                scheduled += 1
            except Exception as e:
                logger.error("requeue_item_failed", message_queue_id=item.id, error=str(e))
        if scheduled:
            logger.info("requeue_pass_complete", scheduled=scheduled, scanned=len(due))
        return scheduled

    def _exhausted(self, item: MessageQueueItem) -> bool:
        return self.max_business_attempts is not None and item.attempts >= self.max_business_attempts

    async def _expire(self, item: MessageQueueItem):
        claimed = await self.store.transition(item.id, S.PROCESSING, from_statuses=[S.QUEUED])
        if claimed is None:
            return
        await self.store.transition(
            item.id, S.FAILED,
            from_statuses=[S.PROCESSING],
            last_error=f"Retry budget exhausted after {item.attempts} attempts",
        )
        logger.warning("message_retry_budget_exhausted",
                       message_queue_id=item.id,
                       attempts=item.attempts)

    # ── Stranded work ─────────────────────────────────────────

    async def recover_stalled(self) -> int:
        """Take back expired jobs from every queue. Returns how many."""
        recovered = 0
        for queue in self.queues.values():
            for job in await queue.recover_stalled():
                recovered += 1
                item_id = job.payload.get("message_queue_id")
                if item_id:
                    await self._fail_stranded(item_id, STALLED_REASON)
        return recovered

    async def sweep_processing(self) -> int:
        """Fail items left in processing with no worker holding their job."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.processing_timeout)
        stale = await self.store.list_items(
            status=S.PROCESSING,
            updated_before=cutoff,
            limit=self.batch_size,
        )
        swept = 0
        for item in stale:
            try:
                queue = self.queues.get(MESSAGE_QUEUES.get(item.platform, ""))
                job = await queue.get_job(message_job_key(item.id)) if queue else None
                if job is not None and job.state == JobState.ACTIVE:
                    continue
                reason = f"Stalled in processing for over {self.processing_timeout:g}s"
                if await self._fail_stranded(item.id, reason):
                    swept += 1
            except Exception as e:
                logger.error("processing_sweep_failed", message_queue_id=item.id, error=str(e))
        return swept

    async def _fail_stranded(self, item_id: str, reason: str) -> bool:
        updated = await self.store.transition(
            item_id, S.FAILED,
            from_statuses=[S.PROCESSING],
            increment_attempts=True,
            last_error=reason,
        )
        if updated is None:
            return False
        logger.warning("message_processing_stranded",
                       message_queue_id=item_id,
                       attempts=updated.attempts,
                       reason=reason)
        return True


# ──────────────────────────────────────────────────────────────
#  Delivery Service
# ──────────────────────────────────────────────────────────────

class DeliveryService:
    """
    Usage:
        service = build_service(settings)
        await service.start()
        await service.queue_message(job_data)
        await service.stop()
    """

    def __init__(
        self,
        store: BaseStatusStore,
        messengers: MessengerRegistry,
        settings: Optional[Settings] = None,
        enricher: Optional[Enricher] = None,
        automation: Optional[BrowserAutomation] = None,
        redis_connection: Optional[aioredis.Redis] = None,
    ):
        self.settings = settings or Settings()
        self.store = store
        self.messengers = messengers
        self.enricher = enricher
        self.automation = automation
        self._redis = redis_connection
        self.outcomes: asyncio.Queue = asyncio.Queue(maxsize=1000)

        self.dispatcher = MessageDispatcher(
            store, messengers,
            max_business_attempts=self.settings.messaging.max_business_attempts,
        )

        self.queues: dict[str, JobQueue] = {}
        self.pools: dict[str, WorkerPool] = {}
        for platform in messengers.platforms():
            self._add_queue(MESSAGE_QUEUES[platform], self.dispatcher.process)
        if enricher is not None:
            self._add_queue(ENRICHMENT_QUEUE, EnrichmentProcessor(enricher).process)

        self.requeue = RequeueScheduler(
            store,
            self._schedule,
            interval_seconds=self.settings.messaging.requeue_interval,
            batch_size=self.settings.messaging.requeue_batch_size,
            max_business_attempts=self.settings.messaging.max_business_attempts,
            queues=self.queues,
            processing_timeout=self.settings.messaging.processing_timeout,
        )
        self._started = False

    def _add_queue(self, name: str, handler):
        config = self.settings.queue_config(name)
        queue = create_job_queue(name, self.settings.queue_backend, config, connection=self._redis)
        self.queues[name] = queue
        self.pools[name] = WorkerPool(
            queue,
            handler,
            concurrency=config.concurrency,
            rate_limiter=TokenBucketRateLimiter(config.rate_limit_max, config.rate_limit_duration),
            poll_interval=self.settings.queue_backend.poll_interval,
            outcomes=self.outcomes,
        )

    @property
    def is_running(self) -> bool:
        return self._started

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self):
        if self._started:
            logger.warning("delivery_service_already_started")
            return
        for queue in self.queues.values():
            await queue.connect()
        for pool in self.pools.values():
            await pool.start()
        await self.requeue.start_background()
        self._started = True
        logger.info("delivery_service_started",
                    queues=list(self.queues),
                    backend=self.settings.queue_backend.backend)

    async def stop(self):
        """Stop the scheduler, drain the pools, then release every resource."""
        if not self._started:
            return
        await self.requeue.stop()
        await asyncio.gather(*(pool.stop() for pool in self.pools.values()))
        for queue in self.queues.values():
            await queue.close()
        if self.enricher:
            await self.enricher.close()
        if self.automation:
            await self.automation.close()
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        await self.store.close()
        self._started = False
        logger.info("delivery_service_stopped")

    # ── Enqueueing ────────────────────────────────────────────

    def get_queue(self, name: str) -> JobQueue:
        queue = self.queues.get(name)
        if queue is None:
            raise UnknownQueueError(name)
        return queue

    def queue_for(self, platform: Union[str, Platform]) -> JobQueue:
        platform = Platform(platform)
        return self.get_queue(MESSAGE_QUEUES[platform])

    async def queue_message(
        self,
        data: Union[MessageJobData, dict[str, Any]],
        priority: int = 0,
        delay: float = 0.0,
    ) -> Job:
        if not isinstance(data, MessageJobData):
            data = MessageJobData.model_validate(data)
        return await self.queue_for(data.platform).enqueue(
            message_job_key(data.message_queue_id),
            data.model_dump(mode="json"),
            name="send-message",
            priority=priority,
            delay=delay,
        )

    async def schedule_item(self, item_id: str) -> Job:
        """
        Enqueue a stored item, delayed until its scheduled_at. Pending items
        are queued; failed, blocked and cancelled items are re-queued first;
        sent items are refused.
        """
        item = await self.get_message(item_id)
        if item.status in REQUEUEABLE:
            return await self.requeue_message(item_id)
        if item.status == S.SENT:
            raise InvalidTransitionError(item.status, S.QUEUED)
        if item.status == S.PENDING:
            item = await self.store.transition(item_id, S.QUEUED, from_statuses=[S.PENDING]) or item
        return await self._schedule(item)

    async def requeue_message(self, item_id: str) -> Job:
        """Start a new attempt cycle for a failed, blocked or cancelled message."""
        item = await self.get_message(item_id)
        if item.status not in REQUEUEABLE:
            raise InvalidTransitionError(item.status, S.QUEUED)
        updated = await self.store.transition(item_id, S.QUEUED, from_statuses=REQUEUEABLE)
        if updated is None:
            current = await self.get_message(item_id)
            raise InvalidTransitionError(current.status, S.QUEUED)
        logger.info("message_requeued", message_queue_id=item_id, previous=item.status.value)
        return await self._schedule(updated)

    async def _schedule(self, item: MessageQueueItem) -> Job:
        lead = await self.store.get_lead(item.lead_id, item.workspace_id)
        data = MessageJobData(
            message_queue_id=item.id,
            platform=item.platform,
            message_type=item.message_type,
            # a missing lead is recorded by the dispatcher as a validation failure
            profile_url=lead.profile_url if lead else "",
            content=item.content,
            lead_id=item.lead_id,
            agent_id=item.agent_id,
            workspace_id=item.workspace_id,
        )
        delay = (item.scheduled_at - datetime.now(timezone.utc)).total_seconds()
        return await self.queue_message(data, priority=item.priority, delay=max(delay, 0.0))

    async def add_enrichment_job(self, data: Union[EnrichmentJobData, dict[str, Any]]) -> Job:
        if not isinstance(data, EnrichmentJobData):
            data = EnrichmentJobData.model_validate(data)
        return await self.get_queue(ENRICHMENT_QUEUE).enqueue(
            enrichment_job_key(data.lead_id),
            data.model_dump(mode="json"),
            name="enrich-lead",
            priority=1,
        )

    # ── Operational queries ───────────────────────────────────

    async def get_job_status(self, queue: str, job_key: str) -> Optional[dict[str, Any]]:
        job = await self.get_queue(queue).get_job(job_key)
        return job.status_view() if job else None

    async def get_queue_stats(self, queue: Optional[str] = None) -> dict[str, Any]:
        if queue is not None:
            return (await self.get_queue(queue).get_stats()).to_dict()
        return {name: (await q.get_stats()).to_dict() for name, q in self.queues.items()}

    async def retry_job(self, queue: str, job_key: str) -> Job:
        """
        Manual retry. For a messaging job the failed item goes back to
        queued first, since a retried job starts with no attempts made and
        only claims queued items.
        """
        job_queue = self.get_queue(queue)
        job = await job_queue.get_job(job_key)
        if job is None:
            raise JobNotFoundError(job_key)

        item_id = job.payload.get("message_queue_id") if queue in MESSAGE_QUEUES.values() else None
        if item_id and job.state in (JobState.FAILED, JobState.DELAYED):
            await self.store.transition(item_id, S.QUEUED, from_statuses=[S.FAILED])
        return await job_queue.retry_job(job_key)

    async def get_message(self, item_id: str) -> MessageQueueItem:
        item = await self.store.get_item(item_id)
        if item is None:
            raise MessageNotFoundError(item_id)
        return item

    async def cancel_message(self, item_id: str) -> MessageQueueItem:
        """
        Cancel a message that has not been claimed yet. Raises
        JobStateError when a worker already holds its job, and
        InvalidTransitionError when the item is past the point of cancelling.
        """
        item = await self.get_message(item_id)
        if item.status not in (S.PENDING, S.QUEUED):
            raise InvalidTransitionError(item.status, S.CANCELLED)

        queue = self.queues.get(MESSAGE_QUEUES[item.platform])
        if queue is not None:
            await queue.remove(message_job_key(item_id))

        updated = await self.store.transition(
            item_id, S.CANCELLED, from_statuses=[S.PENDING, S.QUEUED],
        )
        if updated is None:
            current = await self.get_message(item_id)
            raise InvalidTransitionError(current.status, S.CANCELLED)
        logger.info("message_cancelled", message_queue_id=item_id)
        return updated

    async def health(self) -> dict[str, Any]:
        return {
            "running": self._started,
            "pools": {
                name: {"running": pool.is_running, "active": pool.active_count}
                for name, pool in self.pools.items()
            },
            "messengers": await self.messengers.health_check_all(),
            "requeue_scheduler": self.requeue.is_running,
        }


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

def build_service(settings: Optional[Settings] = None, store: Optional[BaseStatusStore] = None) -> DeliveryService:
    """Wire the service from configuration."""
    settings = settings or get_settings()
    store = store or create_store(settings.database)

    if settings.automation.base_url:
        automation: BrowserAutomation = RemoteBrowserAutomation(
            settings.automation.base_url,
            api_key=settings.automation.api_key,
            timeout=settings.automation.timeout,
        )
    else:
        logger.warning("browser_automation_unconfigured",
                       reason="automation.base_url is empty, every send will fail")
        automation = UnavailableAutomation()

    messengers = MessengerRegistry()
    messengers.register(LinkedInMessenger(automation))
    messengers.register(InstagramMessenger(automation))

    enricher = None
    if settings.enrichment.enabled and settings.enrichment.base_url:
        enricher = HttpEnricher(
            settings.enrichment.base_url,
            api_key=settings.enrichment.api_key,
            timeout=settings.enrichment.timeout,
        )

    connection = None
    if settings.queue_backend.backend == "redis":
        connection = aioredis.from_url(
            settings.queue_backend.redis_url,
            decode_responses=True,
            max_connections=50,
        )

    return DeliveryService(
        store,
        messengers,
        settings=settings,
        enricher=enricher,
        automation=automation,
        redis_connection=connection,
    )
