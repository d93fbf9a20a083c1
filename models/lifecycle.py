"""
Message lifecycle graph.

    pending ──▶ queued ──▶ processing ──▶ sent
       │          │            │
       │          │            ├──▶ queued      (retryable failure)
       │          │            ├──▶ failed
       │          │            ├──▶ blocked
       └──────────┴────────────┴──▶ cancelled

failed / blocked / cancelled ──▶ queued starts a new attempt cycle.
failed ──▶ processing resumes the cycle when the job queue retries a job
whose previous attempt raised.
"""
from __future__ import annotations

from typing import Iterable, Optional

from models.schemas import MessageQueueStatus as S

TRANSITIONS: dict[S, frozenset[S]] = {
    S.PENDING: frozenset({S.QUEUED, S.CANCELLED}),
    S.QUEUED: frozenset({S.PROCESSING, S.CANCELLED}),
    S.PROCESSING: frozenset({S.SENT, S.QUEUED, S.FAILED, S.BLOCKED, S.CANCELLED}),
    S.FAILED: frozenset({S.QUEUED, S.PROCESSING}),
    S.BLOCKED: frozenset({S.QUEUED}),
    S.CANCELLED: frozenset({S.QUEUED}),
    S.SENT: frozenset(),
}

NON_TERMINAL = frozenset({S.QUEUED, S.PROCESSING})


class InvalidTransitionError(ValueError):
    def __init__(self, from_status: S, to_status: S):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid status transition: {from_status.value} -> {to_status.value}")


def can_transition(from_status: S, to_status: S) -> bool:
    return to_status in TRANSITIONS.get(from_status, frozenset())


def sources_for(to_status: S) -> frozenset[S]:
    """All states that may move directly into ``to_status``."""
    return frozenset(src for src, targets in TRANSITIONS.items() if to_status in targets)


def allowed_sources(to_status: S, from_statuses: Optional[Iterable[S]] = None) -> frozenset[S]:
    """
    Source states a guarded update may match: the caller's expected
    states narrowed to those the graph permits.
    """
    valid = sources_for(to_status)
    if from_statuses is None:
        return valid
    return valid & frozenset(from_statuses)


def ensure_transition(from_status: S, to_status: S) -> None:
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status)
