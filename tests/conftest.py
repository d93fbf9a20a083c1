"""Shared test fixtures for the delivery pipeline."""
import pytest
import pytest_asyncio
from typing import Any

from channels.automation import AutomationError, BrowserAutomation
from channels.base import MessengerRegistry
from channels.instagram import InstagramMessenger
from channels.linkedin import LinkedInMessenger
from database.store_memory import InMemoryStatusStore
from models.schemas import (
    Agent, Lead, MessageJobData, MessageQueueItem, MessageType, Platform,
)


class FakeAutomation(BrowserAutomation):
    """
    Scriptable browser automation. Each call pops the next scripted outcome:
    a dict is returned, an exception is raised. With nothing scripted every
    call succeeds.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    def script(self, *outcomes):
        self.outcomes.extend(outcomes)

    async def perform(self, action, target, content="", options=None):
        self.calls.append({"action": action, "target": target, "content": content})
        outcome = self.outcomes.pop(0) if self.outcomes else {"message_id": f"msg-{len(self.calls)}"}
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def close(self):
        self.closed = True


def fail_with(code: str, retryable=None) -> AutomationError:
    return AutomationError(code, retryable)


@pytest.fixture
def automation() -> FakeAutomation:
    return FakeAutomation()


@pytest.fixture
def registry(automation) -> MessengerRegistry:
    reg = MessengerRegistry()
    reg.register(LinkedInMessenger(automation))
    reg.register(InstagramMessenger(automation))
    return reg


@pytest.fixture
def lead() -> Lead:
    return Lead(
        id="lead_1",
        workspace_id="ws_1",
        full_name="Ana Souza",
        username="anasouza",
        profile_url="https://www.linkedin.com/in/anasouza",
        platform=Platform.LINKEDIN,
    )


@pytest.fixture
def agent() -> Agent:
    return Agent(id="agent_1", workspace_id="ws_1", name="Outbound SDR")


@pytest_asyncio.fixture
async def store(lead, agent) -> InMemoryStatusStore:
    s = InMemoryStatusStore()
    await s.upsert_lead(lead)
    await s.upsert_agent(agent)
    return s


@pytest.fixture
def make_item():
    def _make(**overrides) -> MessageQueueItem:
        fields = {
            "id": "mq_1",
            "platform": Platform.LINKEDIN,
            "lead_id": "lead_1",
            "agent_id": "agent_1",
            "workspace_id": "ws_1",
            "message_type": MessageType.DM,
            "content": "Hi Ana, loved your post on onboarding flows.",
        }
        fields.update(overrides)
        return MessageQueueItem(**fields)
    return _make


def job_data_for(item: MessageQueueItem, profile_url: str = "https://www.linkedin.com/in/anasouza") -> MessageJobData:
    return MessageJobData(
        message_queue_id=item.id,
        platform=item.platform,
        message_type=item.message_type,
        profile_url=profile_url,
        content=item.content,
        lead_id=item.lead_id,
        agent_id=item.agent_id,
        workspace_id=item.workspace_id,
    )
