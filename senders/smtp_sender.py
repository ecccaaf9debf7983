import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Dict, Any
import logging
import asyncio
from .base_sender import BaseSender, OutboundMessage, SendResult

logger = logging.getLogger("automation_engine")


class SMTPSender(BaseSender):
    def __init__(self, config: Dict[str, Any]):
        self.host = config.get("host")
        self.port = config.get("port", 587)
        self.username = config.get("username")
        self.password = config.get("password")
        self.use_tls = config.get("use_tls", True)
        self.from_email = config.get("from_email")
        self.from_name = config.get("from_name")

    async def send(self, message: OutboundMessage) -> SendResult:
        # smtplib is blocking
        return await asyncio.to_thread(self._send_sync, message)

    def _send_sync(self, message: OutboundMessage) -> SendResult:
        try:
            # Stray spaces around addresses make some providers drop the message silently.
            from_email = (message.from_email or self.from_email or "").strip()
            from_name = message.from_name or self.from_name
            to_email = message.to.strip()

            msg = MIMEMultipart("alternative")
            msg["Subject"] = message.subject or ""
            msg["From"] = f"{from_name.strip()} <{from_email}>" if from_name else from_email
            msg["To"] = to_email
            message_id = make_msgid()
            msg["Message-ID"] = message_id
            if message.reply_to:
                msg["Reply-To"] = message.reply_to

            msg.attach(MIMEText(message.body, "html"))

            with smtplib.SMTP(self.host, self.port, timeout=30) as server:
                if self.use_tls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password)
                server.sendmail(from_email, [to_email], msg.as_string())

            return SendResult(success=True, provider_message_id=message_id)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP send failed to {message.to}: {e}")
            return SendResult(success=False, error=str(e))
