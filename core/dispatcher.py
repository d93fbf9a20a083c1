"""
Dispatcher — Executes one message job against the status store and a messenger.

Flow per job:
  claim (queued → processing)              progress 10 → 20
    → resolve lead + agent in workspace    progress 30
    → messenger.send()                     progress 80
    → record outcome                       progress 100

Outcomes:
  sent                  success; messenger result merged into metadata
  queued                retryable failure, picked up again by the requeue pass
  failed                non-retryable failure, validation failure, retry
                        budget exhausted, or an exception (re-raised so the
                        job queue backs off and retries)

A queue-level retry of a job whose previous attempt raised resumes the same
cycle from failed. Anything the dispatcher cannot claim (sent, cancelled,
claimed by another worker, missing) is reported without sending.

Progress reporting never fails a job. A message that was delivered but whose
sent status could not be written fails the job without a queue retry, so it
is never sent twice; the item is left in processing for the stale sweep.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from channels.base import MessengerRegistry
from database.store_base import BaseStatusStore
from job_queue.message_queue import Job, UnrecoverableJobError
from job_queue.worker import ProgressReporter
from models.schemas import (
    MessageJobData, MessageJobResult, MessageQueueItem, MessageQueueStatus as S,
)

logger = structlog.get_logger()


async def _no_progress(_: int) -> None:
    return None


class MessageDispatcher:
    """
    Per-job state machine shared by every messaging queue.

    Platform selection is a registry lookup; the dispatcher itself never
    branches on platform.
    """

    def __init__(
        self,
        store: BaseStatusStore,
        messengers: MessengerRegistry,
        max_business_attempts: Optional[int] = None,
    ):
        self.store = store
        self.messengers = messengers
        self.max_business_attempts = max_business_attempts

    async def process(self, job: Job, report_progress: ProgressReporter) -> dict[str, Any]:
        """WorkerPool handler: decode the payload, dispatch, return the wire result."""
        data = MessageJobData.model_validate(job.payload)
        result = await self.dispatch(
            data,
            resume_failed=job.attempts_made > 0,
            report_progress=report_progress,
        )
        return result.to_wire()

    async def dispatch(
        self,
        data: MessageJobData,
        *,
        resume_failed: bool = False,
        report_progress: Optional[ProgressReporter] = None,
    ) -> MessageJobResult:
        item_id = data.message_queue_id
        log = logger.bind(message_queue_id=item_id, platform=data.platform.value)
        reporter = report_progress or _no_progress

        async def progress(pct: int):
            # progress is advisory; it never decides the outcome
            try:
                await reporter(pct)
            except Exception as e:
                log.warning("message_progress_failed", progress=pct, error=str(e))

        await progress(10)

        sources = [S.QUEUED, S.FAILED] if resume_failed else [S.QUEUED]
        claimed = await self.store.transition(item_id, S.PROCESSING, from_statuses=sources)
        if claimed is None:
            current = await self.store.get_item(item_id)
            state = current.status.value if current else "missing"
            log.warning("message_not_claimable", status=state)
            return MessageJobResult(
                success=False,
                message_queue_id=item_id,
                lead_id=data.lead_id,
                status=current.status if current else None,
                error=f"Message not claimable: {state}",
                retryable=False,
            )

        await progress(20)

        try:
            lead = await self.store.get_lead(data.lead_id, data.workspace_id)
            if lead is None:
                return await self._reject(data, f"Lead not found: {data.lead_id}")

            agent = await self.store.get_agent(data.agent_id, data.workspace_id)
            if agent is None:
                return await self._reject(data, f"Agent not found: {data.agent_id}")

            messenger = self.messengers.get(data.platform)
            if messenger is None:
                return await self._reject(data, f"No messenger registered for platform: {data.platform.value}")

            await progress(30)

            target = data.profile_url or lead.profile_url
            result = await messenger.send(target, data.content, data.message_type)
        except Exception as e:
            log.error("message_dispatch_error", error=str(e))
            await self.store.transition(
                item_id, S.FAILED,
                from_statuses=[S.PROCESSING],
                increment_attempts=True,
                last_error=str(e),
            )
            raise

        await progress(80)

        if result.success:
            try:
                updated = await self.store.transition(
                    item_id, S.SENT,
                    from_statuses=[S.PROCESSING],
                    metadata={"messageId": result.message_id, **result.metadata},
                )
            except Exception as e:
                # delivered but unrecorded: a queue retry would send it twice
                log.error("message_sent_unrecorded", message_id=result.message_id, error=str(e))
                raise UnrecoverableJobError(f"Sent message {result.message_id} not recorded: {e}") from e
            await progress(100)
            log.info("message_sent", message_id=result.message_id)
            return MessageJobResult(
                success=True,
                message_queue_id=item_id,
                lead_id=data.lead_id,
                status=self._status_of(updated, S.SENT),
                message_id=result.message_id,
            )

        to_status = S.FAILED
        if result.retryable and not self._budget_exhausted(claimed):
            to_status = S.QUEUED

        updated = await self.store.transition(
            item_id, to_status,
            from_statuses=[S.PROCESSING],
            increment_attempts=True,
            last_error=result.error,
        )
        await progress(100)
        log.warning("message_send_failed",
                    error=result.error,
                    retryable=result.retryable,
                    status=to_status.value,
                    attempts=updated.attempts if updated else None)
        return MessageJobResult(
            success=False,
            message_queue_id=item_id,
            lead_id=data.lead_id,
            status=self._status_of(updated, to_status),
            error=result.error,
            retryable=result.retryable,
        )

    def _budget_exhausted(self, claimed: MessageQueueItem) -> bool:
        """True when this failure would use up the business retry budget."""
        if self.max_business_attempts is None:
            return False
        return claimed.attempts + 1 >= self.max_business_attempts

    async def _reject(self, data: MessageJobData, error: str) -> MessageJobResult:
        """Validation failure: record it and complete the job without retrying."""
        logger.warning("message_validation_failed",
                       message_queue_id=data.message_queue_id,
                       error=error)
        updated = await self.store.transition(
            data.message_queue_id, S.FAILED,
            from_statuses=[S.PROCESSING],
            increment_attempts=True,
            last_error=error,
        )
        return MessageJobResult(
            success=False,
            message_queue_id=data.message_queue_id,
            lead_id=data.lead_id,
            status=self._status_of(updated, S.FAILED),
            error=error,
            retryable=False,
        )

    @staticmethod
    def _status_of(updated: Optional[MessageQueueItem], intended: S) -> Optional[S]:
        # None when the item left processing under us (e.g. cancelled)
        if updated is None:
            logger.warning("message_status_write_skipped", intended=intended.value)
            return None
        return updated.status
