"""
Tests for the message dispatcher state machine.

Covers:
  - Success, retryable and terminal failures per platform
  - Validation failures (lead, agent, platform) never touch the browser
  - Exceptions are recorded then re-raised for the job queue
  - Guarded claim: sent/cancelled/missing items are not sent again
  - Business retry budget and queue-level retry resumption
  - Progress reporting failures never strand a claimed item
"""
import pytest

from channels.base import MessengerRegistry
from channels.linkedin import LinkedInMessenger
from core.dispatcher import MessageDispatcher
from job_queue.message_queue import Job, UnrecoverableJobError
from models.schemas import MessageQueueStatus, MessageType, Platform

from conftest import FakeAutomation, fail_with, job_data_for


@pytest.fixture
def dispatcher(store, registry):
    return MessageDispatcher(store, registry)


# ──────────────────────────────────────────────────────────────
#  Outcomes
# ──────────────────────────────────────────────────────────────

class TestDispatchOutcomes:
    @pytest.mark.asyncio
    async def test_linkedin_connection_request_sent(self, dispatcher, store, automation, make_item):
        item = await store.create_item(make_item(message_type=MessageType.CONNECTION_REQUEST))
        automation.script({"message_id": "li-msg-123", "metadata": {"threadId": "t-9"}})

        result = await dispatcher.dispatch(job_data_for(item))

        assert result.success is True
        assert result.message_id == "li-msg-123"
        assert result.status == MessageQueueStatus.SENT
        stored = await store.get_item(item.id)
        assert stored.status == MessageQueueStatus.SENT
        assert stored.sent_at is not None
        assert stored.attempts == 0
        assert stored.metadata["messageId"] == "li-msg-123"
        assert stored.metadata["threadId"] == "t-9"
        assert stored.metadata["platform"] == "linkedin"
        assert automation.calls[0]["action"] == "linkedin.connect"

    @pytest.mark.asyncio
    async def test_success_keeps_previous_error(self, dispatcher, store, make_item):
        item = await store.create_item(make_item(attempts=2, last_error="RATE_LIMITED"))
        await dispatcher.dispatch(job_data_for(item))
        stored = await store.get_item(item.id)
        assert stored.status == MessageQueueStatus.SENT
        assert stored.attempts == 2
        assert stored.last_error == "RATE_LIMITED"

    @pytest.mark.asyncio
    async def test_success_merges_into_existing_metadata(self, dispatcher, store, make_item):
        item = await store.create_item(make_item(metadata={"campaign": "q3"}))
        await dispatcher.dispatch(job_data_for(item))
        stored = await store.get_item(item.id)
        assert stored.metadata["campaign"] == "q3"
        assert "messageId" in stored.metadata

    @pytest.mark.asyncio
    async def test_rate_limited_is_requeued(self, dispatcher, store, automation, make_item):
        item = await store.create_item(make_item())
        automation.script(fail_with("RATE_LIMITED", True))

        result = await dispatcher.dispatch(job_data_for(item))

        assert result.success is False
        assert result.retryable is True
        stored = await store.get_item(item.id)
        assert stored.status == MessageQueueStatus.QUEUED
        assert stored.attempts == 1
        assert stored.last_error == "RATE_LIMITED"
        assert stored.sent_at is None

    @pytest.mark.asyncio
    async def test_account_blocked_fails(self, dispatcher, store, automation, make_item):
        item = await store.create_item(make_item())
        automation.script(fail_with("ACCOUNT_BLOCKED", False))

        result = await dispatcher.dispatch(job_data_for(item))

        assert result.status == MessageQueueStatus.FAILED
        stored = await store.get_item(item.id)
        assert stored.status == MessageQueueStatus.FAILED
        assert stored.attempts == 1
        assert stored.last_error == "ACCOUNT_BLOCKED"

    @pytest.mark.asyncio
    async def test_instagram_private_account_fails(self, dispatcher, store, automation, make_item):
        item = await store.create_item(make_item(
            id="mq_ig", platform=Platform.INSTAGRAM, message_type=MessageType.DM,
        ))
        automation.script(fail_with("PRIVATE_ACCOUNT"))

        result = await dispatcher.dispatch(job_data_for(item, "https://instagram.com/anasouza"))

        assert result.retryable is False
        stored = await store.get_item("mq_ig")
        assert stored.status == MessageQueueStatus.FAILED
        assert stored.last_error == "PRIVATE_ACCOUNT"
        assert automation.calls[0]["action"] == "instagram.direct"

    @pytest.mark.asyncio
    async def test_unknown_error_code_is_terminal(self, dispatcher, store, automation, make_item):
        item = await store.create_item(make_item())
        automation.script(fail_with("CAPTCHA_REQUIRED"))
        await dispatcher.dispatch(job_data_for(item))
        stored = await store.get_item(item.id)
        assert stored.status == MessageQueueStatus.FAILED
        assert stored.last_error == "CAPTCHA_REQUIRED"

    @pytest.mark.asyncio
    async def test_progress_milestones(self, dispatcher, store, make_item):
        item = await store.create_item(make_item())
        seen = []

        async def report(pct):
            seen.append(pct)

        await dispatcher.dispatch(job_data_for(item), report_progress=report)
        assert seen == [10, 20, 30, 80, 100]


# ──────────────────────────────────────────────────────────────
#  Validation failures
# ──────────────────────────────────────────────────────────────

class TestValidationFailures:
    @pytest.mark.asyncio
    async def test_missing_lead(self, dispatcher, store, automation, make_item):
        item = await store.create_item(make_item(lead_id="lead-999"))

        result = await dispatcher.dispatch(job_data_for(item))

        assert result.success is False
        assert result.retryable is False
        stored = await store.get_item(item.id)
        assert stored.status == MessageQueueStatus.FAILED
        assert stored.last_error == "Lead not found: lead-999"
        assert stored.attempts == 1
        assert automation.calls == []

    @pytest.mark.asyncio
    async def test_lead_from_other_workspace_is_missing(self, dispatcher, store, automation, make_item, lead):
        await store.upsert_lead(lead.model_copy(update={"id": "lead_other", "workspace_id": "ws_2"}))
        item = await store.create_item(make_item(lead_id="lead_other"))

        await dispatcher.dispatch(job_data_for(item))

        stored = await store.get_item(item.id)
        assert stored.last_error == "Lead not found: lead_other"
        assert automation.calls == []

    @pytest.mark.asyncio
    async def test_missing_agent(self, dispatcher, store, automation, make_item):
        item = await store.create_item(make_item(agent_id="agent-404"))
        await dispatcher.dispatch(job_data_for(item))
        stored = await store.get_item(item.id)
        assert stored.status == MessageQueueStatus.FAILED
        assert stored.last_error == "Agent not found: agent-404"
        assert automation.calls == []

    @pytest.mark.asyncio
    async def test_platform_without_messenger(self, store, make_item):
        registry = MessengerRegistry()
        registry.register(LinkedInMessenger(FakeAutomation()))
        dispatcher = MessageDispatcher(store, registry)
        item = await store.create_item(make_item(platform=Platform.INSTAGRAM))

        result = await dispatcher.dispatch(job_data_for(item))

        assert result.status == MessageQueueStatus.FAILED
        assert "instagram" in result.error


# ──────────────────────────────────────────────────────────────
#  Infrastructure failures
# ──────────────────────────────────────────────────────────────

class TestInfrastructureFailures:
    @pytest.mark.asyncio
    async def test_exception_is_recorded_and_reraised(self, dispatcher, store, automation, make_item):
        item = await store.create_item(make_item())
        automation.script(RuntimeError("browser session crashed"))

        with pytest.raises(RuntimeError, match="browser session crashed"):
            await dispatcher.dispatch(job_data_for(item))

        stored = await store.get_item(item.id)
        assert stored.status == MessageQueueStatus.FAILED
        assert stored.attempts == 1
        assert stored.last_error == "browser session crashed"

    @pytest.mark.asyncio
    async def test_queue_retry_resumes_failed_item(self, dispatcher, store, automation, make_item):
        item = await store.create_item(make_item())
        automation.script(RuntimeError("timeout"), {"message_id": "li-2"})

        first = Job(job_key=f"send-{item.id}", queue="linkedin-messages",
                    payload=job_data_for(item).model_dump(mode="json"))
        with pytest.raises(RuntimeError):
            await dispatcher.process(first, _noop)

        first.attempts_made = 1
        wire = await dispatcher.process(first, _noop)

        assert wire["success"] is True
        assert wire["messageId"] == "li-2"
        stored = await store.get_item(item.id)
        assert stored.status == MessageQueueStatus.SENT
        assert stored.attempts == 1

    @pytest.mark.asyncio
    async def test_fresh_job_does_not_resume_failed_item(self, dispatcher, store, automation, make_item):
        item = await store.create_item(make_item(status=MessageQueueStatus.FAILED))
        result = await dispatcher.dispatch(job_data_for(item))
        assert result.success is False
        assert automation.calls == []


# ──────────────────────────────────────────────────────────────
#  Guarded claim
# ──────────────────────────────────────────────────────────────

class TestGuardedClaim:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [
        MessageQueueStatus.SENT,
        MessageQueueStatus.CANCELLED,
        MessageQueueStatus.PROCESSING,
        MessageQueueStatus.PENDING,
    ])
    async def test_unclaimable_item_is_not_sent(self, dispatcher, store, automation, make_item, status):
        item = await store.create_item(make_item(status=status))

        result = await dispatcher.dispatch(job_data_for(item))

        assert result.success is False
        assert result.status == status
        assert automation.calls == []
        stored = await store.get_item(item.id)
        assert stored.status == status
        assert stored.attempts == 0

    @pytest.mark.asyncio
    async def test_missing_item(self, dispatcher, automation, make_item):
        result = await dispatcher.dispatch(job_data_for(make_item(id="ghost")))
        assert result.success is False
        assert result.status is None
        assert "missing" in result.error
        assert automation.calls == []

    @pytest.mark.asyncio
    async def test_duplicate_dispatch_sends_once(self, dispatcher, store, automation, make_item):
        item = await store.create_item(make_item())
        await dispatcher.dispatch(job_data_for(item))
        second = await dispatcher.dispatch(job_data_for(item))
        assert second.success is False
        assert len(automation.calls) == 1


# ──────────────────────────────────────────────────────────────
#  Business retry budget
# ──────────────────────────────────────────────────────────────

class TestBusinessRetryBudget:
    @pytest.mark.asyncio
    async def test_retryable_failure_fails_when_budget_reached(self, store, registry, automation, make_item):
        dispatcher = MessageDispatcher(store, registry, max_business_attempts=3)
        item = await store.create_item(make_item(attempts=2))
        automation.script(fail_with("NETWORK_ERROR"))

        result = await dispatcher.dispatch(job_data_for(item))

        assert result.retryable is True
        stored = await store.get_item(item.id)
        assert stored.status == MessageQueueStatus.FAILED
        assert stored.attempts == 3
        assert stored.last_error == "NETWORK_ERROR"

    @pytest.mark.asyncio
    async def test_retryable_failure_requeues_below_budget(self, store, registry, automation, make_item):
        dispatcher = MessageDispatcher(store, registry, max_business_attempts=3)
        item = await store.create_item(make_item(attempts=1))
        automation.script(fail_with("NETWORK_ERROR"))

        await dispatcher.dispatch(job_data_for(item))

        stored = await store.get_item(item.id)
        assert stored.status == MessageQueueStatus.QUEUED
        assert stored.attempts == 2


# ──────────────────────────────────────────────────────────────
#  Progress and outcome write failures
# ──────────────────────────────────────────────────────────────

class TestProgressFailures:
    @pytest.mark.asyncio
    async def test_progress_failure_after_send_still_records_sent(self, dispatcher, store, automation, make_item):
        item = await store.create_item(make_item())

        async def report(pct):
            if pct == 80:
                raise ConnectionError("redis went away")

        result = await dispatcher.dispatch(job_data_for(item), report_progress=report)

        assert result.success is True
        stored = await store.get_item(item.id)
        assert stored.status == MessageQueueStatus.SENT
        assert len(automation.calls) == 1

    @pytest.mark.asyncio
    async def test_progress_failure_on_claim_still_sends(self, dispatcher, store, automation, make_item):
        item = await store.create_item(make_item())

        async def report(pct):
            raise ConnectionError("redis went away")

        result = await dispatcher.dispatch(job_data_for(item), report_progress=report)

        assert result.success is True
        assert (await store.get_item(item.id)).status == MessageQueueStatus.SENT

    @pytest.mark.asyncio
    async def test_progress_failure_on_failed_send_records_outcome(self, dispatcher, store, automation, make_item):
        item = await store.create_item(make_item())
        automation.script(fail_with("ACCOUNT_BLOCKED"))

        async def report(pct):
            if pct == 100:
                raise ConnectionError("redis went away")

        result = await dispatcher.dispatch(job_data_for(item), report_progress=report)

        assert result.success is False
        stored = await store.get_item(item.id)
        assert stored.status == MessageQueueStatus.FAILED
        assert stored.last_error == "ACCOUNT_BLOCKED"

    @pytest.mark.asyncio
    async def test_unrecorded_send_is_not_retried(self, dispatcher, store, automation, make_item):
        item = await store.create_item(make_item())
        original = store.transition

        async def transition(item_id, to_status, **kwargs):
            if to_status == MessageQueueStatus.SENT:
                raise ConnectionError("database unavailable")
            return await original(item_id, to_status, **kwargs)

        store.transition = transition

        with pytest.raises(UnrecoverableJobError, match="not recorded"):
            await dispatcher.dispatch(job_data_for(item))

        assert len(automation.calls) == 1
        assert (await store.get_item(item.id)).status == MessageQueueStatus.PROCESSING


async def _noop(_pct):
    return None
