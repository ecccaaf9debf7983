from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any, List
from datetime import datetime

from models.automation import TriggerEvent
from utils.time_utils import utcnow


class Lead(BaseModel):
    # The lead store owns the schema; unknown columns are kept as attributes.
    model_config = ConfigDict(extra="allow")

    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    status: Optional[str] = None
    stage: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    lead_score: Optional[float] = None
    priority: Optional[str] = None
    source: Optional[str] = None
    program_interest: Optional[str] = None
    assigned_to: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None
    last_contacted_at: Optional[datetime] = None
    next_follow_up_at: Optional[datetime] = None
    custom_fields: Dict[str, Any] = Field(default_factory=dict)

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    def attributes(self) -> Dict[str, Any]:
        return self.model_dump()


class LeadEvent(BaseModel):
    event_type: TriggerEvent
    lead_id: str
    occurred_at: datetime = Field(default_factory=utcnow)
    payload: Dict[str, Any] = Field(default_factory=dict)
