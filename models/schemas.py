"""
Core data models for the outbound delivery pipeline.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class Platform(str, Enum):
    LINKEDIN = "linkedin"
    INSTAGRAM = "instagram"


class MessageType(str, Enum):
    CONNECTION_REQUEST = "connection_request"
    DM = "dm"
    FOLLOW_UP = "follow_up"


class MessageQueueStatus(str, Enum):
    QUEUED = "queued"
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


class EnrichmentStatus(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"


# ──────────────────────────────────────────────────────────────
#  Wire base — accepts both snake_case and camelCase keys
# ──────────────────────────────────────────────────────────────

class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ──────────────────────────────────────────────────────────────
#  Lead / Agent — read-side lookups owned by the CRM
# ──────────────────────────────────────────────────────────────

class Lead(WireModel):
    id: str
    workspace_id: str
    full_name: str = ""
    username: str = ""
    profile_url: str = ""
    platform: Optional[Platform] = None


class Agent(WireModel):
    id: str
    workspace_id: str
    name: str = ""


# ──────────────────────────────────────────────────────────────
#  MessageQueueItem — durable lifecycle record of one message
# ──────────────────────────────────────────────────────────────

class MessageQueueItem(WireModel):
    """One outbound message and its delivery lifecycle."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    platform: Platform
    account_id: str = ""
    lead_id: str
    agent_id: str
    workspace_id: str
    message_type: MessageType
    content: str
    status: MessageQueueStatus = MessageQueueStatus.QUEUED
    priority: int = 0
    scheduled_at: datetime = Field(default_factory=_utcnow)
    attempts: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    sent_at: Optional[datetime] = None
    metadata: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("scheduled_at", "sent_at", "created_at", "updated_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def is_due(self) -> bool:
        return self.scheduled_at <= _utcnow()


# ──────────────────────────────────────────────────────────────
#  Job payloads and results
# ──────────────────────────────────────────────────────────────

class MessageJobData(WireModel):
    message_queue_id: str
    platform: Platform
    message_type: MessageType
    profile_url: str
    content: str
    lead_id: str
    agent_id: str
    workspace_id: str


class MessageJobResult(WireModel):
    success: bool
    message_queue_id: str
    lead_id: str = ""
    status: Optional[MessageQueueStatus] = None
    message_id: Optional[str] = None
    error: Optional[str] = None
    retryable: Optional[bool] = None


class EnrichmentJobData(WireModel):
    lead_id: str
    workspace_id: str
    user_id: Optional[str] = None
    force: bool = False


class EnrichmentJobResult(WireModel):
    success: bool
    lead_id: str
    status: EnrichmentStatus
    credits_used: int = 0
    confidence_score: float = 0.0
    error: Optional[str] = None
