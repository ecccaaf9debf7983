from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from enum import Enum
from datetime import datetime
from uuid import uuid4

from utils.time_utils import utcnow


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    WAITING = "waiting"
    COMPLETED = "completed"
    EXITED = "exited"
    FAILED = "failed"


OPEN_STATUSES = frozenset({EnrollmentStatus.ACTIVE, EnrollmentStatus.WAITING})


class WaitState(BaseModel):
    """Bookkeeping for the wait step an enrollment is suspended on."""
    step_id: str
    started_at: datetime
    due_at: datetime
    deadline_at: Optional[datetime] = None


class Enrollment(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    automation_id: str
    automation_version: int
    lead_id: str
    current_step_id: Optional[str] = None
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE

    enrolled_at: datetime = Field(default_factory=utcnow)
    last_advanced_at: Optional[datetime] = None
    resumes_at: Optional[datetime] = None
    terminated_at: Optional[datetime] = None
    exit_reason: Optional[str] = None
    error: Optional[str] = None

    variant_assignments: Dict[str, str] = Field(default_factory=dict)
    wait_state: Optional[WaitState] = None

    claim_token: Optional[str] = None
    claimed_at: Optional[datetime] = None

    test_mode: bool = False
    transferred_from: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def terminate(self, status: EnrollmentStatus, reason: Optional[str], now: datetime):
        self.status = status
        self.exit_reason = reason
        self.terminated_at = now
        self.resumes_at = None
        self.wait_state = None
