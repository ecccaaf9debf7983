from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from enum import Enum
from datetime import datetime

from pydantic import Field

from models.common import EngineModel, Duration
from models.conditions import ConditionGroup, EvaluationMode


class StepKind(str, Enum):
    TRIGGER = "trigger"
    SEND_MESSAGE = "send-message"
    UPDATE_LEAD = "update-lead"
    ASSIGN_ADVISOR = "assign-advisor"
    CHANGE_STAGE = "change-stage"
    CREATE_TASK = "create-task"
    CREATE_CALENDAR_EVENT = "create-calendar-event"
    WEBHOOK = "webhook"
    LIST_ADD = "list-add"
    LIST_REMOVE = "list-remove"
    SCHEDULE_FOLLOWUP = "schedule-followup"
    CONDITION = "condition"
    SPLIT = "split"
    WAIT = "wait"
    GO_TO_WORKFLOW = "go-to-workflow"
    END_WORKFLOW = "end-workflow"


ACTION_KINDS = frozenset({
    StepKind.SEND_MESSAGE,
    StepKind.UPDATE_LEAD,
    StepKind.ASSIGN_ADVISOR,
    StepKind.CHANGE_STAGE,
    StepKind.CREATE_TASK,
    StepKind.CREATE_CALENDAR_EVENT,
    StepKind.WEBHOOK,
    StepKind.LIST_ADD,
    StepKind.LIST_REMOVE,
    StepKind.SCHEDULE_FOLLOWUP,
})

# Ordered enrollment pipeline used by change-stage advance/regress.
ENROLLMENT_STAGES = [
    "inquiry",
    "application_started",
    "documents_submitted",
    "under_review",
    "admitted",
    "enrolled",
    "registered",
]


class MessageChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"
    NOTIFICATION = "notification"


class EndReason(str, Enum):
    COMPLETED = "completed"
    GOAL_ACHIEVED = "goal_achieved"
    UNSUBSCRIBED = "unsubscribed"
    DISQUALIFIED = "disqualified"
    TRANSFERRED = "transferred"
    MANUAL = "manual"
    CUSTOM = "custom"


class WaitType(str, Enum):
    DURATION = "duration"
    UNTIL_DATE = "until_date"
    UNTIL_CONDITION = "until_condition"
    BUSINESS_HOURS = "business_hours"


class BaseStep(EngineModel):
    id: str
    name: Optional[str] = None


class LinearStep(BaseStep):
    next: Optional[str] = None


class TriggerStep(LinearStep):
    kind: Literal["trigger"] = "trigger"


class SendMessageStep(LinearStep):
    kind: Literal["send-message"] = "send-message"
    channel: MessageChannel = MessageChannel.EMAIL
    subject: Optional[str] = None
    content: str = ""
    template_id: Optional[str] = None
    from_name: Optional[str] = None
    from_email: Optional[str] = None
    reply_to: Optional[str] = None
    include_opt_out: bool = False
    opt_out_message: str = "Reply STOP to unsubscribe"
    # notification channel only
    recipient_type: Literal["lead", "lead_advisor", "specific"] = "lead"
    specific_recipients: List[str] = Field(default_factory=list)


class UpdateLeadStep(LinearStep):
    kind: Literal["update-lead"] = "update-lead"
    update_type: Literal["status", "tags", "score", "priority", "source", "program", "custom_fields"]
    new_status: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    tags_action: Literal["add", "remove", "replace"] = "add"
    score_change: int = 0
    priority: Optional[str] = None
    source: Optional[str] = None
    program_interest: Optional[str] = None
    custom_fields: Dict[str, Any] = Field(default_factory=dict)


class AssignAdvisorStep(LinearStep):
    kind: Literal["assign-advisor"] = "assign-advisor"
    assignment_method: Literal["specific", "round_robin", "load_balanced"] = "round_robin"
    specific_advisor_id: Optional[str] = None
    team_id: Optional[str] = None
    notify_advisor: bool = False


class ChangeStageStep(LinearStep):
    kind: Literal["change-stage"] = "change-stage"
    stage_type: Literal["specific", "advance", "regress"] = "specific"
    new_stage: Optional[str] = None
    advance_by: int = 1


class CreateTaskStep(LinearStep):
    kind: Literal["create-task"] = "create-task"
    task_title: str
    task_description: str = ""
    task_type: str = "follow_up"
    priority: str = "medium"
    due_in_days: int = 1
    assign_to: Literal["lead_advisor", "specific", "creator", "unassigned"] = "lead_advisor"
    specific_assignee: Optional[str] = None


class CreateCalendarEventStep(LinearStep):
    kind: Literal["create-calendar-event"] = "create-calendar-event"
    event_title: str
    event_description: str = ""
    event_type: str = "meeting"
    duration_minutes: int = 30
    schedule_in: Duration = Field(default_factory=Duration)
    invite_advisor: bool = True
    invite_lead: bool = False
    location_type: Literal["virtual", "phone", "in_person"] = "virtual"
    meeting_link: Optional[str] = None


class WebhookStep(LinearStep):
    kind: Literal["webhook"] = "webhook"
    url: str
    method: Literal["POST", "PUT", "PATCH"] = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    payload: Dict[str, Any] = Field(default_factory=dict)
    include_lead_data: bool = True
    retry_on_failure: bool = True
    max_retries: int = 3


class ListAddStep(LinearStep):
    kind: Literal["list-add"] = "list-add"
    list_id: str


class ListRemoveStep(LinearStep):
    kind: Literal["list-remove"] = "list-remove"
    list_id: str


class ScheduleFollowupStep(LinearStep):
    kind: Literal["schedule-followup"] = "schedule-followup"
    followup_type: Literal["call", "email", "meeting", "checkin"] = "call"
    days_until: int = 1
    notes: str = ""
    assign_to: Literal["lead_advisor", "specific"] = "lead_advisor"
    specific_assignee: Optional[str] = None


class ConditionStep(BaseStep):
    kind: Literal["condition"] = "condition"
    condition_groups: List[ConditionGroup] = Field(default_factory=list)
    evaluation_mode: EvaluationMode = EvaluationMode.AND
    true_next: Optional[str] = None
    false_next: Optional[str] = None


class SplitVariant(EngineModel):
    name: str
    percentage: int = Field(ge=0, le=100)
    next: Optional[str] = None


class SplitStep(BaseStep):
    kind: Literal["split"] = "split"
    variants: List[SplitVariant]


class WaitStep(LinearStep):
    kind: Literal["wait"] = "wait"
    wait_type: WaitType = WaitType.DURATION
    wait_time: Duration = Field(default_factory=Duration)
    wait_until: Optional[datetime] = None
    condition_groups: List[ConditionGroup] = Field(default_factory=list)
    evaluation_mode: EvaluationMode = EvaluationMode.AND
    # None falls back to the engine settings
    poll_interval: Optional[Duration] = None
    max_wait: Optional[Duration] = None
    timeout_next: Optional[str] = None
    timezone: str = "UTC"
    business_hours_only: bool = False


class GoToWorkflowStep(BaseStep):
    kind: Literal["go-to-workflow"] = "go-to-workflow"
    target_automation_id: str
    preserve_history: bool = True


class EndWorkflowStep(BaseStep):
    kind: Literal["end-workflow"] = "end-workflow"
    reason: EndReason = EndReason.COMPLETED
    custom_reason: Optional[str] = None
    update_lead_on_exit: bool = False
    exit_status: Optional[str] = None


Step = Annotated[
    Union[
        TriggerStep,
        SendMessageStep,
        UpdateLeadStep,
        AssignAdvisorStep,
        ChangeStageStep,
        CreateTaskStep,
        CreateCalendarEventStep,
        WebhookStep,
        ListAddStep,
        ListRemoveStep,
        ScheduleFollowupStep,
        ConditionStep,
        SplitStep,
        WaitStep,
        GoToWorkflowStep,
        EndWorkflowStep,
    ],
    Field(discriminator="kind"),
]


def successors(step: Step) -> List[Optional[str]]:
    """All successor references a step declares, unresolved ones included."""
    if isinstance(step, ConditionStep):
        return [step.true_next, step.false_next]
    if isinstance(step, SplitStep):
        return [variant.next for variant in step.variants]
    if isinstance(step, (GoToWorkflowStep, EndWorkflowStep)):
        return []
    if isinstance(step, WaitStep) and step.timeout_next:
        return [step.next, step.timeout_next]
    return [step.next]
