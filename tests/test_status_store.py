"""
Tests for the status store backends.

Both backends run the same contract suite:
  - Item create / get / list ordering and filters
  - Guarded transitions (source narrowing, attempt counter, error, sent_at)
  - Metadata merge
  - Workspace-scoped lead and agent lookups
"""
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from config.settings import DatabaseConfig
from database.session import _to_async_url, create_engine, create_session_factory, init_db
from database.store import SqlStatusStore
from database.store_factory import create_store
from database.store_memory import InMemoryStatusStore
from models.lifecycle import InvalidTransitionError, allowed_sources, ensure_transition
from models.schemas import (
    Agent, Lead, MessageQueueItem, MessageQueueStatus as S, MessageType, Platform,
)


def _item(item_id="mq_1", **overrides) -> MessageQueueItem:
    fields = {
        "id": item_id,
        "platform": Platform.LINKEDIN,
        "lead_id": "lead_1",
        "agent_id": "agent_1",
        "workspace_id": "ws_1",
        "message_type": MessageType.DM,
        "content": "hello",
    }
    fields.update(overrides)
    return MessageQueueItem(**fields)


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryStatusStore()
        return

    engine = create_engine(f"sqlite:///{tmp_path}/store.db")
    await init_db(engine)
    yield SqlStatusStore(create_session_factory(engine))
    await engine.dispose()


# ──────────────────────────────────────────────────────────────
#  Items
# ──────────────────────────────────────────────────────────────

class TestItems:
    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        await store.create_item(_item(metadata={"campaign": "q3"}, priority=2))
        item = await store.get_item("mq_1")
        assert item.status == S.QUEUED
        assert item.platform == Platform.LINKEDIN
        assert item.message_type == MessageType.DM
        assert item.priority == 2
        assert item.metadata == {"campaign": "q3"}
        assert item.scheduled_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        assert await store.get_item("nope") is None

    @pytest.mark.asyncio
    async def test_list_orders_by_priority_then_schedule(self, store):
        now = datetime.now(timezone.utc)
        await store.create_item(_item("late", priority=1, scheduled_at=now - timedelta(minutes=1)))
        await store.create_item(_item("early", priority=1, scheduled_at=now - timedelta(minutes=5)))
        await store.create_item(_item("urgent", priority=0, scheduled_at=now))

        items = await store.list_items(status=S.QUEUED)

        assert [i.id for i in items] == ["urgent", "early", "late"]

    @pytest.mark.asyncio
    async def test_list_filters(self, store):
        now = datetime.now(timezone.utc)
        await store.create_item(_item("due"))
        await store.create_item(_item("future", scheduled_at=now + timedelta(hours=1)))
        await store.create_item(_item("ig", platform=Platform.INSTAGRAM))
        await store.create_item(_item("other_ws", workspace_id="ws_2"))
        await store.create_item(_item("pending", status=S.PENDING))

        due = await store.list_items(status=S.QUEUED, due_before=now + timedelta(seconds=5))
        assert {i.id for i in due} == {"due", "ig", "other_ws"}

        ig = await store.list_items(platform=Platform.INSTAGRAM)
        assert [i.id for i in ig] == ["ig"]

        ws2 = await store.list_items(workspace_id="ws_2")
        assert [i.id for i in ws2] == ["other_ws"]

        assert len(await store.list_items(limit=2)) == 2

    @pytest.mark.asyncio
    async def test_list_updated_before(self, store):
        now = datetime.now(timezone.utc)
        await store.create_item(_item("stale", status=S.PROCESSING, updated_at=now - timedelta(hours=1)))
        await store.create_item(_item("fresh", status=S.PROCESSING))

        stale = await store.list_items(status=S.PROCESSING, updated_before=now - timedelta(minutes=10))
        assert [i.id for i in stale] == ["stale"]


# ──────────────────────────────────────────────────────────────
#  Guarded transitions
# ──────────────────────────────────────────────────────────────

class TestTransition:
    @pytest.mark.asyncio
    async def test_claim_then_send(self, store):
        await store.create_item(_item())

        claimed = await store.transition("mq_1", S.PROCESSING, from_statuses=[S.QUEUED])
        assert claimed.status == S.PROCESSING
        assert claimed.sent_at is None

        sent = await store.transition("mq_1", S.SENT, metadata={"messageId": "li-1"})
        assert sent.status == S.SENT
        assert sent.sent_at is not None
        assert sent.metadata == {"messageId": "li-1"}

    @pytest.mark.asyncio
    async def test_second_claim_loses(self, store):
        await store.create_item(_item())
        assert await store.transition("mq_1", S.PROCESSING, from_statuses=[S.QUEUED]) is not None
        assert await store.transition("mq_1", S.PROCESSING, from_statuses=[S.QUEUED]) is None

    @pytest.mark.asyncio
    async def test_graph_forbids_edge(self, store):
        await store.create_item(_item(status=S.SENT))
        assert await store.transition("mq_1", S.QUEUED) is None
        assert (await store.get_item("mq_1")).status == S.SENT

    @pytest.mark.asyncio
    async def test_expected_state_narrows_graph(self, store):
        await store.create_item(_item(status=S.FAILED))
        assert await store.transition("mq_1", S.PROCESSING, from_statuses=[S.QUEUED]) is None
        resumed = await store.transition("mq_1", S.PROCESSING, from_statuses=[S.QUEUED, S.FAILED])
        assert resumed.status == S.PROCESSING

    @pytest.mark.asyncio
    async def test_missing_item(self, store):
        assert await store.transition("ghost", S.PROCESSING) is None

    @pytest.mark.asyncio
    async def test_failure_bookkeeping(self, store):
        await store.create_item(_item(status=S.PROCESSING, attempts=1, last_error="RATE_LIMITED"))

        failed = await store.transition("mq_1", S.FAILED, increment_attempts=True, last_error="ACCOUNT_BLOCKED")

        assert failed.attempts == 2
        assert failed.last_error == "ACCOUNT_BLOCKED"
        assert failed.sent_at is None

    @pytest.mark.asyncio
    async def test_error_kept_when_not_given(self, store):
        await store.create_item(_item(status=S.PROCESSING, last_error="RATE_LIMITED"))
        sent = await store.transition("mq_1", S.SENT)
        assert sent.last_error == "RATE_LIMITED"

    @pytest.mark.asyncio
    async def test_metadata_is_merged(self, store):
        await store.create_item(_item(status=S.PROCESSING, metadata={"campaign": "q3", "messageId": "old"}))
        sent = await store.transition("mq_1", S.SENT, metadata={"messageId": "li-2", "threadId": "t"})
        assert sent.metadata == {"campaign": "q3", "messageId": "li-2", "threadId": "t"}
        assert (await store.get_item("mq_1")).metadata == sent.metadata

    @pytest.mark.asyncio
    async def test_cancel_pending(self, store):
        await store.create_item(_item(status=S.PENDING))
        cancelled = await store.transition("mq_1", S.CANCELLED, from_statuses=[S.PENDING, S.QUEUED])
        assert cancelled.status == S.CANCELLED


# ──────────────────────────────────────────────────────────────
#  Leads and agents
# ──────────────────────────────────────────────────────────────

class TestLookups:
    @pytest.mark.asyncio
    async def test_lead_is_workspace_scoped(self, store):
        await store.upsert_lead(Lead(id="lead_1", workspace_id="ws_1", full_name="Ana",
                                     profile_url="https://www.linkedin.com/in/ana",
                                     platform=Platform.LINKEDIN))
        lead = await store.get_lead("lead_1", "ws_1")
        assert lead.full_name == "Ana"
        assert lead.platform == Platform.LINKEDIN
        assert await store.get_lead("lead_1", "ws_2") is None
        assert await store.get_lead("lead_x", "ws_1") is None

    @pytest.mark.asyncio
    async def test_upsert_updates(self, store):
        await store.upsert_agent(Agent(id="agent_1", workspace_id="ws_1", name="SDR"))
        await store.upsert_agent(Agent(id="agent_1", workspace_id="ws_1", name="Closer"))
        assert (await store.get_agent("agent_1", "ws_1")).name == "Closer"
        assert await store.get_agent("agent_1", "ws_9") is None


# ──────────────────────────────────────────────────────────────
#  Lifecycle graph, URLs and factory
# ──────────────────────────────────────────────────────────────

class TestLifecycle:
    def test_sent_is_final(self):
        with pytest.raises(InvalidTransitionError):
            ensure_transition(S.SENT, S.QUEUED)

    def test_processing_sources(self):
        assert allowed_sources(S.PROCESSING) == frozenset({S.QUEUED, S.FAILED})
        assert allowed_sources(S.PROCESSING, [S.QUEUED, S.SENT]) == frozenset({S.QUEUED})

    def test_requeue_sources(self):
        assert allowed_sources(S.QUEUED) == frozenset({
            S.PENDING, S.PROCESSING, S.FAILED, S.BLOCKED, S.CANCELLED,
        })


class TestDatabaseUrls:
    @pytest.mark.parametrize("url, expected", [
        ("postgresql://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
        ("postgres://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
        ("mysql://u:p@h/db", "mysql+aiomysql://u:p@h/db"),
        ("sqlite:///./outreach.db", "sqlite+aiosqlite:///./outreach.db"),
        ("sqlite+aiosqlite:///x.db", "sqlite+aiosqlite:///x.db"),
    ])
    def test_async_driver_mapping(self, url, expected):
        assert _to_async_url(url) == expected


class TestStoreFactory:
    def test_memory(self):
        assert isinstance(create_store(DatabaseConfig(store_backend="memory")), InMemoryStatusStore)

    def test_sql(self):
        assert isinstance(create_store(DatabaseConfig(store_backend="sql")), SqlStatusStore)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_store(DatabaseConfig(store_backend="mongo"))
