from .base_sender import BaseSender, OutboundMessage, SendResult
from typing import List
from uuid import uuid4
import asyncio
import logging

logger = logging.getLogger("automation_engine")


class MockSender(BaseSender):
    """Logs instead of delivering. Used with SENDER_MODE=mock and in tests."""

    def __init__(self, provider_name: str = "Mock"):
        self.provider_name = provider_name
        self.sent: List[OutboundMessage] = []

    async def send(self, message: OutboundMessage) -> SendResult:
        logger.info(f"[{self.provider_name}] Sending {message.channel.value}...")
        logger.info(f"   To: {message.to}")
        if message.subject:
            logger.info(f"   Subject: {message.subject}")
        await asyncio.sleep(0)
        self.sent.append(message)
        return SendResult(success=True, provider_message_id=f"mock-{uuid4().hex[:12]}")
