from typing import Dict, Optional
import logging

from config import Settings
from models.steps import MessageChannel
from senders.base_sender import BaseSender, OutboundMessage, SendResult
from senders.smtp_sender import SMTPSender
from senders.twilio_sender import TwilioSender
from senders.notification_sender import NotificationSender
from senders.mock_senders import MockSender

logger = logging.getLogger("automation_engine")


class MessageDispatcher:
    """Routes an outbound message to the sender registered for its channel."""

    def __init__(self, senders: Dict[MessageChannel, BaseSender]):
        self.senders = senders

    async def send(self, message: OutboundMessage) -> SendResult:
        sender = self.senders.get(MessageChannel(message.channel))
        if sender is None:
            return SendResult(success=False, error=f"No sender configured for channel '{message.channel.value}'")
        return await sender.send(message)


class SenderBuilder:

    @staticmethod
    def validate_config(settings: Settings):
        """Raises ValueError when a live sender is missing credentials."""
        if settings.sender_mode not in ("live", "mock"):
            raise ValueError(f"Unknown sender mode '{settings.sender_mode}'")
        if settings.sender_mode == "mock":
            return
        if not settings.smtp_host:
            raise ValueError("Live email requires SMTP_HOST")
        if settings.smtp_username and not settings.smtp_password:
            raise ValueError("SMTP_USERNAME is set but SMTP_PASSWORD is missing")
        twilio = [settings.twilio_account_sid, settings.twilio_auth_token, settings.twilio_phone_number]
        if any(twilio) and not all(twilio):
            raise ValueError("Twilio requires TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_PHONE_NUMBER")

    @staticmethod
    def build(settings: Settings, mock: Optional[MockSender] = None) -> MessageDispatcher:
        SenderBuilder.validate_config(settings)

        if settings.sender_mode == "mock":
            mock = mock or MockSender()
            logger.info("Sender mode is 'mock': messages are logged, not delivered.")
            return MessageDispatcher({channel: mock for channel in MessageChannel})

        senders: Dict[MessageChannel, BaseSender] = {
            MessageChannel.EMAIL: SMTPSender({
                "host": settings.smtp_host,
                "port": settings.smtp_port,
                "username": settings.smtp_username,
                "password": settings.smtp_password,
                "use_tls": settings.smtp_use_tls,
                "from_email": settings.default_from_email,
                "from_name": settings.default_from_name,
            }),
            MessageChannel.NOTIFICATION: NotificationSender(base_url=settings.backend_url),
        }
        if settings.twilio_account_sid:
            twilio = TwilioSender({
                "account_sid": settings.twilio_account_sid,
                "auth_token": settings.twilio_auth_token,
                "phone_number": settings.twilio_phone_number,
                "whatsapp_number": settings.twilio_whatsapp_number,
            })
            senders[MessageChannel.SMS] = twilio
            senders[MessageChannel.WHATSAPP] = twilio
        else:
            logger.warning("Twilio is not configured; SMS and WhatsApp steps will fail.")
        return MessageDispatcher(senders)
