from pydantic import Field
from typing import Optional, Dict, Any, List
from enum import Enum
from datetime import datetime

from models.common import EngineModel, Duration
from models.conditions import ConditionGroup, EvaluationMode
from models.steps import Step, StepKind, SplitStep, successors
from errors import AutomationValidationError
from utils.time_utils import utcnow


class AutomationKind(str, Enum):
    SEQUENCE = "sequence"
    WORKFLOW = "workflow"


class AutomationStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"


class TriggerEvent(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    LEAD_CREATED = "lead_created"
    FORM_SUBMITTED = "form_submitted"
    STATUS_CHANGED = "status_changed"
    SCORE_THRESHOLD = "score_threshold"
    TAG_ADDED = "tag_added"
    TAG_REMOVED = "tag_removed"
    DATE_REACHED = "date_reached"
    WEBHOOK = "webhook"
    FIELD_CHANGED = "field_changed"
    DOCUMENT_UPLOADED = "document_uploaded"
    DOCUMENT_APPROVED = "document_approved"
    PAYMENT_RECEIVED = "payment_received"
    ADVISOR_ASSIGNED = "advisor_assigned"
    EMAIL_OPENED = "email_opened"
    EMAIL_CLICKED = "email_clicked"
    STAGE_CHANGED = "stage_changed"


class TriggerSpec(EngineModel):
    event_type: TriggerEvent = TriggerEvent.MANUAL
    condition_groups: List[ConditionGroup] = Field(default_factory=list)
    evaluation_mode: EvaluationMode = EvaluationMode.OR
    # Payload keys the event must carry with these exact values, e.g. {"tag": "hot-lead"}
    event_filter: Dict[str, Any] = Field(default_factory=dict)


class ReEnrollmentPolicy(EngineModel):
    allowed: bool = False
    min_delay: Optional[Duration] = None
    allow_overlap: bool = False


class Automation(EngineModel):
    id: str
    name: str
    description: Optional[str] = None
    kind: AutomationKind = AutomationKind.WORKFLOW
    owner_id: Optional[str] = None

    trigger: TriggerSpec = Field(default_factory=TriggerSpec)
    steps: List[Step] = Field(default_factory=list)

    is_active: bool = False
    status: AutomationStatus = AutomationStatus.DRAFT
    re_enrollment: ReEnrollmentPolicy = Field(default_factory=ReEnrollmentPolicy)
    # Manual runs without explicit leads enroll everyone matching these (status, source, tags).
    audience_filters: Dict[str, Any] = Field(default_factory=dict)

    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_runnable(self) -> bool:
        return self.is_active and self.status == AutomationStatus.ACTIVE

    def get_step(self, step_id: Optional[str]) -> Optional[Step]:
        if step_id is None:
            return None
        return next((step for step in self.steps if step.id == step_id), None)

    def entry_step(self) -> Optional[Step]:
        return next((step for step in self.steps if step.kind == StepKind.TRIGGER), None)

    def first_step_id(self) -> Optional[str]:
        """Where a new enrollment starts: the trigger's successor."""
        entry = self.entry_step()
        return entry.next if entry else None


def validate_automation(automation: Automation) -> Automation:
    """
    Checks the structural invariants of a step graph. Raises
    AutomationValidationError listing every problem found.
    """
    problems: List[str] = []
    ids = [step.id for step in automation.steps]
    known = set(ids)

    duplicates = sorted({step_id for step_id in ids if ids.count(step_id) > 1})
    if duplicates:
        problems.append(f"Duplicate step ids: {duplicates}")

    triggers = [step for step in automation.steps if step.kind == StepKind.TRIGGER]
    trigger_ids = {step.id for step in triggers}
    if len(triggers) != 1:
        problems.append(f"Expected exactly one trigger step, found {len(triggers)}")

    if not any(step.kind == StepKind.END_WORKFLOW for step in automation.steps):
        problems.append("Graph has no end-workflow step")

    for step in automation.steps:
        targets = successors(step)
        if step.kind in (StepKind.END_WORKFLOW, StepKind.GO_TO_WORKFLOW):
            continue
        if not targets or any(target is None for target in targets):
            problems.append(f"Step '{step.id}' ({step.kind}) is missing a successor")
            continue
        unresolved = [target for target in targets if target not in known]
        if unresolved:
            problems.append(f"Step '{step.id}' points at unknown steps {unresolved}")
        if trigger_ids.intersection(targets):
            problems.append(f"Step '{step.id}' loops back into the trigger")
        if isinstance(step, SplitStep):
            total = sum(variant.percentage for variant in step.variants)
            if total != 100:
                problems.append(f"Split '{step.id}' percentages sum to {total}, expected 100")

    if problems:
        raise AutomationValidationError(
            f"Automation '{automation.id}' is invalid: {'; '.join(problems)}", problems
        )
    return automation
