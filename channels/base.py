"""
Messengers — Platform send capability behind one contract.

Provides:
- ErrorCode / is_retryable: failure taxonomy shared by all platforms
- SendResult: success or classified failure of one send
- MessengerMetrics: per-platform send/fail/latency tracking
- Messenger: abstract base every platform variant implements
- MessengerRegistry: platform → messenger lookup used by the dispatcher
"""
from __future__ import annotations

import abc
import time
import structlog
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from channels.automation import AutomationError, BrowserAutomation
from models.schemas import MessageType, Platform

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  FAILURE TAXONOMY
# ══════════════════════════════════════════════════════════════

class ErrorCode(str, Enum):
    RATE_LIMITED = "RATE_LIMITED"
    NETWORK_ERROR = "NETWORK_ERROR"
    ACCOUNT_BLOCKED = "ACCOUNT_BLOCKED"
    PRIVATE_ACCOUNT = "PRIVATE_ACCOUNT"
    PROFILE_NOT_FOUND = "PROFILE_NOT_FOUND"
    MESSAGE_TOO_LONG = "MESSAGE_TOO_LONG"
    UNSUPPORTED_MESSAGE_TYPE = "UNSUPPORTED_MESSAGE_TYPE"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


RETRYABLE_CODES = frozenset({ErrorCode.RATE_LIMITED.value, ErrorCode.NETWORK_ERROR.value})


def is_retryable(code: str) -> bool:
    """Only known transient codes are retryable; anything else is terminal."""
    return code in RETRYABLE_CODES


# ══════════════════════════════════════════════════════════════
#  SEND RESULT
# ══════════════════════════════════════════════════════════════

@dataclass
class SendResult:
    success: bool
    message_id: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    error: str = ""
    retryable: bool = False

    @classmethod
    def ok(cls, message_id: str, metadata: dict[str, Any] = None) -> SendResult:
        return cls(success=True, message_id=message_id, metadata=metadata or {})

    @classmethod
    def failure(cls, error: Union[str, ErrorCode], retryable: Optional[bool] = None) -> SendResult:
        code = error.value if isinstance(error, ErrorCode) else (error or ErrorCode.UNKNOWN_ERROR.value)
        if retryable is None:
            retryable = is_retryable(code)
        return cls(success=False, error=code, retryable=retryable)


# ══════════════════════════════════════════════════════════════
#  METRICS
# ══════════════════════════════════════════════════════════════

class MessengerMetrics:
    """Tracks per-platform send, failure and latency metrics."""

    def __init__(self, platform: Platform):
        self.platform = platform
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-500]

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)
            del self._errors[:-50]

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform.value,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  MESSENGER — Abstract Base
# ══════════════════════════════════════════════════════════════

class Messenger(abc.ABC):
    """
    Base class for all platform messengers.

    Subclasses implement _do_send. The base class validates the message
    type, turns AutomationError into a classified SendResult and records
    metrics. Any other exception propagates to the caller untouched.
    Instances hold no per-send state and are safe to share between workers.
    """

    platform: Platform
    supported_types: frozenset[MessageType] = frozenset(MessageType)

    def __init__(self, automation: BrowserAutomation):
        self.automation = automation
        self.metrics = MessengerMetrics(self.platform)

    @abc.abstractmethod
    async def _do_send(self, target: str, content: str, message_type: MessageType) -> SendResult:
        ...

    async def send(self, target: str, content: str, message_type: Union[str, MessageType]) -> SendResult:
        try:
            mtype = MessageType(message_type)
        except ValueError:
            mtype = None
        if mtype is None or mtype not in self.supported_types:
            result = SendResult.failure(ErrorCode.UNSUPPORTED_MESSAGE_TYPE)
            self.metrics.record_failure(result.error)
            return result

        start = time.monotonic()
        try:
            result = await self._do_send(target, content, mtype)
        except AutomationError as e:
            result = SendResult.failure(e.code, e.retryable)

        if result.success:
            self.metrics.record_send((time.monotonic() - start) * 1000)
        else:
            self.metrics.record_failure(result.error)
            logger.warning("messenger_send_failed",
                           platform=self.platform.value,
                           message_type=mtype.value,
                           error=result.error,
                           retryable=result.retryable)
        return result

    async def health_check(self) -> dict[str, Any]:
        return {
            "platform": self.platform.value,
            "supported_types": sorted(t.value for t in self.supported_types),
            "metrics": self.metrics.to_dict(),
        }


# ══════════════════════════════════════════════════════════════
#  MESSENGER REGISTRY
# ══════════════════════════════════════════════════════════════

class MessengerRegistry:
    def __init__(self):
        self._messengers: dict[Platform, Messenger] = {}

    def register(self, messenger: Messenger):
        self._messengers[messenger.platform] = messenger

    def get(self, platform: Union[str, Platform]) -> Optional[Messenger]:
        try:
            return self._messengers.get(Platform(platform))
        except ValueError:
            return None

    def platforms(self) -> list[Platform]:
        return list(self._messengers.keys())

    async def health_check_all(self) -> dict[str, Any]:
        return {p.value: await m.health_check() for p, m in self._messengers.items()}
