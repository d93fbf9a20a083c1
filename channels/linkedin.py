"""
LinkedIn Messenger — connection requests, DMs and follow-ups.

Connection requests carry an optional note which LinkedIn caps at 300
characters; longer notes are rejected before the browser is touched.
DMs and follow-ups both go through the messaging thread of the profile.
"""
from __future__ import annotations

import uuid
import structlog

from channels.base import ErrorCode, Messenger, SendResult
from models.schemas import MessageType, Platform

logger = structlog.get_logger()

CONNECTION_NOTE_LIMIT = 300

_ACTIONS = {
    MessageType.CONNECTION_REQUEST: "linkedin.connect",
    MessageType.DM: "linkedin.message",
    MessageType.FOLLOW_UP: "linkedin.message",
}


class LinkedInMessenger(Messenger):

    platform = Platform.LINKEDIN
    supported_types = frozenset(_ACTIONS)

    async def _do_send(self, target: str, content: str, message_type: MessageType) -> SendResult:
        if message_type == MessageType.CONNECTION_REQUEST and len(content) > CONNECTION_NOTE_LIMIT:
            return SendResult.failure(ErrorCode.MESSAGE_TOO_LONG)

        response = await self.automation.perform(_ACTIONS[message_type], target, content)
        message_id = response.get("message_id") or f"li-{uuid.uuid4().hex[:12]}"
        logger.info("linkedin_action_performed",
                    message_type=message_type.value,
                    message_id=message_id)
        return SendResult.ok(message_id, {
            **response.get("metadata", {}),
            "platform": self.platform.value,
            "messageType": message_type.value,
        })
