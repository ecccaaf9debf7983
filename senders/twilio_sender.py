import asyncio
import logging
from typing import Dict, Any

import requests

from models.steps import MessageChannel
from .base_sender import BaseSender, OutboundMessage, SendResult

logger = logging.getLogger("automation_engine")

TWILIO_API = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


class TwilioSender(BaseSender):
    """SMS and WhatsApp through the Twilio Messages REST endpoint."""

    def __init__(self, config: Dict[str, Any]):
        self.account_sid = config.get("account_sid")
        self.auth_token = config.get("auth_token")
        self.phone_number = config.get("phone_number")
        self.whatsapp_number = config.get("whatsapp_number")

    async def send(self, message: OutboundMessage) -> SendResult:
        return await asyncio.to_thread(self._send_sync, message)

    def _send_sync(self, message: OutboundMessage) -> SendResult:
        if message.channel == MessageChannel.WHATSAPP:
            sender = f"whatsapp:{self.whatsapp_number or self.phone_number}"
            recipient = f"whatsapp:{message.to}"
        else:
            sender, recipient = self.phone_number, message.to

        try:
            resp = requests.post(
                TWILIO_API.format(sid=self.account_sid),
                data={"From": sender, "To": recipient, "Body": message.body},
                auth=(self.account_sid, self.auth_token),
                timeout=30,
            )
            resp.raise_for_status()
            return SendResult(success=True, provider_message_id=resp.json().get("sid"))
        except requests.RequestException as e:
            logger.error(f"Twilio {message.channel.value} send failed to {message.to}: {e}")
            return SendResult(success=False, error=str(e))
