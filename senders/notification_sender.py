import asyncio
from typing import Optional

from api_clients.base_client import BaseClient
from .base_sender import BaseSender, OutboundMessage, SendResult


class NotificationSender(BaseSender, BaseClient):
    """In-app notifications, stored by the product backend for a user id."""

    def __init__(self, base_url: Optional[str] = None):
        BaseClient.__init__(self, base_url=base_url)

    async def send(self, message: OutboundMessage) -> SendResult:
        payload = {
            "user_id": message.to,
            "title": message.subject or "Automation notification",
            "message": message.body,
            "type": message.metadata.get("type", "automation"),
            "metadata": message.metadata,
        }
        resp = await asyncio.to_thread(self._post, "/notifications", payload)
        if resp is None:
            return SendResult(success=False, error="Notification could not be stored")
        return SendResult(success=True, provider_message_id=str(resp.get("id")) if resp.get("id") else None)
