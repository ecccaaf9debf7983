from abc import ABC, abstractmethod
from typing import Dict, Any, Optional

from pydantic import BaseModel, Field

from models.steps import MessageChannel


class OutboundMessage(BaseModel):
    channel: MessageChannel
    to: str
    body: str = ""
    subject: Optional[str] = None
    template_id: Optional[str] = None
    from_email: Optional[str] = None
    from_name: Optional[str] = None
    reply_to: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SendResult(BaseModel):
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class BaseSender(ABC):
    @abstractmethod
    async def send(self, message: OutboundMessage) -> SendResult:
        pass
