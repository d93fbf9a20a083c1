"""
Instagram Messenger — direct messages only.

Instagram has no connection concept, so connection requests are reported
as UNSUPPORTED_MESSAGE_TYPE by the base class.
"""
from __future__ import annotations

import uuid
import structlog

from channels.base import Messenger, SendResult
from models.schemas import MessageType, Platform

logger = structlog.get_logger()


class InstagramMessenger(Messenger):

    platform = Platform.INSTAGRAM
    supported_types = frozenset({MessageType.DM, MessageType.FOLLOW_UP})

    async def _do_send(self, target: str, content: str, message_type: MessageType) -> SendResult:
        response = await self.automation.perform("instagram.direct", target, content)
        message_id = response.get("message_id") or f"ig-{uuid.uuid4().hex[:12]}"
        logger.info("instagram_direct_sent",
                    message_type=message_type.value,
                    message_id=message_id)
        return SendResult.ok(message_id, {
            **response.get("metadata", {}),
            "platform": self.platform.value,
            "messageType": message_type.value,
        })
