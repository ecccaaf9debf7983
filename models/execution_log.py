from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from enum import Enum
from datetime import datetime
from uuid import uuid4

from utils.time_utils import utcnow


class StepOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepExecutionLog(BaseModel):
    """Append-only audit entry written once per executed step."""
    id: str = Field(default_factory=lambda: str(uuid4()))
    enrollment_id: str
    automation_id: str
    lead_id: str
    step_id: str
    step_kind: str
    outcome: StepOutcome
    result: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
