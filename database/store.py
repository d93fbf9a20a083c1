"""
SqlStatusStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Guarded transitions are a single conditional UPDATE
(``WHERE id = :id AND status IN (:sources)``) so two workers racing for
the same item can never both win; the metadata merge happens afterwards
inside the same transaction, while the row is still locked.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import AgentRow, LeadRow, MessageQueueRow
from database.session import get_session
from database.store_base import BaseStatusStore
from models.lifecycle import allowed_sources
from models.schemas import (
    Agent, Lead, MessageQueueItem, MessageQueueStatus, Platform,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SqlStatusStore(BaseStatusStore):
    """
    Persistent status store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.

    Uses the process-wide session from database.session unless a
    ``session_factory`` is given.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        if self._session_factory is None:
            async with get_session() as db:
                yield db
            return
        async with self._session_factory() as db:
            try:
                yield db
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    # ── Message queue items ────────────────────────────────

    async def create_item(self, item: MessageQueueItem) -> MessageQueueItem:
        async with self._session() as db:
            row = MessageQueueRow(
                id=item.id,
                platform=item.platform.value,
                account_id=item.account_id,
                lead_id=item.lead_id,
                agent_id=item.agent_id,
                workspace_id=item.workspace_id,
                message_type=item.message_type.value,
                content=item.content,
                status=item.status.value,
                priority=item.priority,
                scheduled_at=item.scheduled_at,
                attempts=item.attempts,
                last_error=item.last_error,
                sent_at=item.sent_at,
                metadata_=dict(item.metadata),
                created_at=item.created_at,
                updated_at=item.updated_at,
            )
            db.add(row)
            await db.flush()
            return self._row_to_item(row)

    async def get_item(self, item_id: str) -> Optional[MessageQueueItem]:
        async with self._session() as db:
            row = await db.get(MessageQueueRow, item_id)
            return self._row_to_item(row) if row else None

    async def list_items(
        self,
        status: Optional[MessageQueueStatus] = None,
        workspace_id: Optional[str] = None,
        platform: Optional[Platform] = None,
        due_before: Optional[datetime] = None,
        updated_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[MessageQueueItem]:
        stmt = select(MessageQueueRow)
        if status is not None:
            stmt = stmt.where(MessageQueueRow.status == MessageQueueStatus(status).value)
        if workspace_id is not None:
            stmt = stmt.where(MessageQueueRow.workspace_id == workspace_id)
        if platform is not None:
            stmt = stmt.where(MessageQueueRow.platform == Platform(platform).value)
        if due_before is not None:
            stmt = stmt.where(MessageQueueRow.scheduled_at <= due_before)
        if updated_before is not None:
            stmt = stmt.where(MessageQueueRow.updated_at < updated_before)
        stmt = stmt.order_by(MessageQueueRow.priority, MessageQueueRow.scheduled_at).limit(limit)

        async with self._session() as db:
            result = await db.execute(stmt)
            return [self._row_to_item(row) for row in result.scalars()]

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
        sources = [s.value for s in allowed_sources(to_status, from_statuses)]
        if not sources:
            return None

        values: dict[str, Any] = {"status": to_status.value, "updated_at": _utcnow()}
        if increment_attempts:
            values["attempts"] = MessageQueueRow.attempts + 1
        if last_error is not None:
            values["last_error"] = last_error
        if to_status == MessageQueueStatus.SENT:
            values["sent_at"] = sent_at or _utcnow()

        stmt = (
            update(MessageQueueRow)
            .where(MessageQueueRow.id == item_id, MessageQueueRow.status.in_(sources))
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        async with self._session() as db:
            result = await db.execute(stmt)
            if result.rowcount == 0:
                return None
            row = await db.get(MessageQueueRow, item_id, populate_existing=True)
            if metadata:
                row.metadata_ = {**(row.metadata_ or {}), **metadata}
                await db.flush()
            return self._row_to_item(row)

    # ── Leads / Agents ─────────────────────────────────────

    async def get_lead(self, lead_id: str, workspace_id: str) -> Optional[Lead]:
        async with self._session() as db:
            stmt = select(LeadRow).where(LeadRow.id == lead_id, LeadRow.workspace_id == workspace_id)
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is None:
                return None
            return Lead(
                id=row.id,
                workspace_id=row.workspace_id,
                full_name=row.full_name,
                username=row.username,
                profile_url=row.profile_url,
                platform=row.platform,
            )

    async def get_agent(self, agent_id: str, workspace_id: str) -> Optional[Agent]:
        async with self._session() as db:
            stmt = select(AgentRow).where(AgentRow.id == agent_id, AgentRow.workspace_id == workspace_id)
            row = (await db.execute(stmt)).scalar_one_or_none()
            return Agent(id=row.id, workspace_id=row.workspace_id, name=row.name) if row else None

    async def upsert_lead(self, lead: Lead) -> Lead:
        async with self._session() as db:
            existing = await db.get(LeadRow, lead.id)
            if existing:
                existing.workspace_id = lead.workspace_id
                existing.full_name = lead.full_name
                existing.username = lead.username
                existing.profile_url = lead.profile_url
                existing.platform = lead.platform.value if lead.platform else None
            else:
                db.add(LeadRow(
                    id=lead.id,
                    workspace_id=lead.workspace_id,
                    full_name=lead.full_name,
                    username=lead.username,
                    profile_url=lead.profile_url,
                    platform=lead.platform.value if lead.platform else None,
                ))
            return lead

    async def upsert_agent(self, agent: Agent) -> Agent:
        async with self._session() as db:
            existing = await db.get(AgentRow, agent.id)
            if existing:
                existing.workspace_id = agent.workspace_id
                existing.name = agent.name
            else:
                db.add(AgentRow(id=agent.id, workspace_id=agent.workspace_id, name=agent.name))
            return agent

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _row_to_item(row: MessageQueueRow) -> MessageQueueItem:
        return MessageQueueItem(
            id=row.id,
            platform=row.platform,
            account_id=row.account_id or "",
            lead_id=row.lead_id,
            agent_id=row.agent_id,
            workspace_id=row.workspace_id,
            message_type=row.message_type,
            content=row.content,
            status=row.status,
            priority=row.priority or 0,
            scheduled_at=row.scheduled_at,
            attempts=row.attempts or 0,
            last_error=row.last_error,
            sent_at=row.sent_at,
            metadata=dict(row.metadata_ or {}),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
