from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime

from models.automation import Automation, AutomationKind, AutomationStatus
from models.execution_log import StepExecutionLog


class EnrolledLead(BaseModel):
    lead_id: str
    enrollment_id: str
    name: str = "Unknown"
    email: str = ""
    status: str
    current_step_id: Optional[str] = None
    enrolled_at: datetime


class AutomationAnalytics(BaseModel):
    automation_id: str
    total_enrollments: int = 0
    active_enrollments: int = 0
    waiting_enrollments: int = 0
    completed_enrollments: int = 0
    exited_enrollments: int = 0
    failed_enrollments: int = 0
    completion_rate: int = 0
    total_executions: int = 0
    success_rate: int = 0
    step_distribution: Dict[str, int] = Field(default_factory=dict)
    enrolled_leads: List[EnrolledLead] = Field(default_factory=list)
    recent_activity: List[StepExecutionLog] = Field(default_factory=list)


class EnrollmentStats(BaseModel):
    total_enrollments: int = 0
    active_enrollments: int = 0
    completed_enrollments: int = 0
    exited_enrollments: int = 0
    completion_rate: int = 0


class AutomationSummary(BaseModel):
    automation: Automation
    stats: EnrollmentStats


class AutomationFilter(BaseModel):
    status: Optional[AutomationStatus] = None
    kind: Optional[AutomationKind] = None
    is_active: Optional[bool] = None
    search: Optional[str] = None


class SummaryStats(BaseModel):
    total_automations: int = 0
    active_automations: int = 0
    total_enrollments: int = 0
    avg_completion_rate: int = 0


class BulkEnrollResult(BaseModel):
    success: int = 0
    failed: int = 0
    # leads that were already enrolled; counted in success as well
    skipped: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)


class ExecutionResult(BaseModel):
    total: int = 0
    enrolled: int = 0
    skipped: int = 0
    failed: int = 0
    details: List[Dict[str, Any]] = Field(default_factory=list)
