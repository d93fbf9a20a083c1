"""
Abstract Status Store — Interface for all storage backends.

Implementations:
  - SqlStatusStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryStatusStore (dict-based, single-process, no persistence)

The store owns the durable MessageQueueItem record. Every status change
goes through transition(), which applies status, attempt counter, error,
sent_at and metadata in one atomic step and only from source states the
lifecycle graph allows.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Optional

from models.schemas import (
    Agent, Lead, MessageQueueItem, MessageQueueStatus, Platform,
)


class BaseStatusStore(ABC):
    """Interface that all status store backends must implement."""

    # ── Message queue items ───────────────────────────────────

    @abstractmethod
    async def create_item(self, item: MessageQueueItem) -> MessageQueueItem:
        ...

    @abstractmethod
    async def get_item(self, item_id: str) -> Optional[MessageQueueItem]:
        ...

    @abstractmethod
    async def list_items(
        self,
        status: Optional[MessageQueueStatus] = None,
        workspace_id: Optional[str] = None,
        platform: Optional[Platform] = None,
        due_before: Optional[datetime] = None,
        updated_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[MessageQueueItem]:
        """
        Items ordered by priority, then scheduled_at. ``due_before`` matches
        scheduled_at <= the bound; ``updated_before`` matches items last
        changed strictly before it.
        """
        ...

    @abstractmethod
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
        """
        Move an item to ``to_status`` if its current status is one of
        ``from_statuses`` (narrowed to what the lifecycle graph permits).

        Returns the updated item, or None when the item does not exist or
        is not in an allowed source state. ``last_error`` is only written
        when given; ``metadata`` is merged, not replaced. ``sent_at`` is
        applied only when moving to sent, defaulting to the current time.
        """
        ...

    # ── Leads / Agents ────────────────────────────────────────

    @abstractmethod
    async def get_lead(self, lead_id: str, workspace_id: str) -> Optional[Lead]:
        """A lead from another workspace is reported as missing."""
        ...

    @abstractmethod
    async def get_agent(self, agent_id: str, workspace_id: str) -> Optional[Agent]:
        ...

    @abstractmethod
    async def upsert_lead(self, lead: Lead) -> Lead:
        ...

    @abstractmethod
    async def upsert_agent(self, agent: Agent) -> Agent:
        ...

    async def close(self) -> None:
        pass
