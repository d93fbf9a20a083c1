"""
InMemoryStatusStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlStatusStore
  - Guarded transitions serialized with an asyncio lock
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from database.store_base import BaseStatusStore
from models.lifecycle import allowed_sources
from models.schemas import (
    Agent, Lead, MessageQueueItem, MessageQueueStatus, Platform,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStatusStore(BaseStatusStore):
    """
    Full-featured in-memory store with the same interface as SqlStatusStore.
    Hands out copies so callers never mutate stored records.
    """

    def __init__(self):
        self._items: dict[str, MessageQueueItem] = {}
        self._leads: dict[str, Lead] = {}
        self._agents: dict[str, Agent] = {}
        self._lock = asyncio.Lock()
        logger.info("inmemory_store_initialized")

    # ── Message queue items ───────────────────────────────

    async def create_item(self, item: MessageQueueItem) -> MessageQueueItem:
        async with self._lock:
            self._items[item.id] = item.model_copy(deep=True)
        return item.model_copy(deep=True)

    async def get_item(self, item_id: str) -> Optional[MessageQueueItem]:
        item = self._items.get(item_id)
        return item.model_copy(deep=True) if item else None

    async def list_items(
        self,
        status: Optional[MessageQueueStatus] = None,
        workspace_id: Optional[str] = None,
        platform: Optional[Platform] = None,
        due_before: Optional[datetime] = None,
        updated_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[MessageQueueItem]:
        matches = [
            item for item in self._items.values()
            if (status is None or item.status == status)
            and (workspace_id is None or item.workspace_id == workspace_id)
            and (platform is None or item.platform == platform)
            and (due_before is None or item.scheduled_at <= due_before)
            and (updated_before is None or item.updated_at < updated_before)
        ]
        matches.sort(key=lambda i: (i.priority, i.scheduled_at))
        return [i.model_copy(deep=True) for i in matches[:limit]]

    async def transition(
        self,
        item_id: str,
        to_status: MessageQueueStatus,
        *,
        from_statuses: Optional[Iterable[MessageQueueStatus]] = None,
        increment_attempts: bool = False,
        last_error: Optional[str] = None,
        sent_at: Optional[datetime] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[MessageQueueItem]:
        sources = allowed_sources(to_status, from_statuses)
        async with self._lock:
            item = self._items.get(item_id)
            if item is None or item.status not in sources:
                return None

            item.status = to_status
            if increment_attempts:
                item.attempts += 1
            if last_error is not None:
                item.last_error = last_error
            if to_status == MessageQueueStatus.SENT:
                item.sent_at = sent_at or _utcnow()
            if metadata:
                item.metadata = {**item.metadata, **metadata}
            item.updated_at = _utcnow()
            return item.model_copy(deep=True)

    # ── Leads / Agents ────────────────────────────────────

    async def get_lead(self, lead_id: str, workspace_id: str) -> Optional[Lead]:
        lead = self._leads.get(lead_id)
        if lead is None or lead.workspace_id != workspace_id:
            return None
        return lead.model_copy()

    async def get_agent(self, agent_id: str, workspace_id: str) -> Optional[Agent]:
        agent = self._agents.get(agent_id)
        if agent is None or agent.workspace_id != workspace_id:
            return None
        return agent.model_copy()

    async def upsert_lead(self, lead: Lead) -> Lead:
        self._leads[lead.id] = lead.model_copy()
        return lead

    async def upsert_agent(self, agent: Agent) -> Agent:
        self._agents[agent.id] = agent.model_copy()
        return agent
