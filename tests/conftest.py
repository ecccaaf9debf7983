import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from config import Settings
from engine.automation_service import AutomationService
from errors import WebhookError
from models.automation import Automation, AutomationStatus
from models.lead import Lead
from models.steps import MessageChannel
from senders.mock_senders import MockSender
from senders.sender_builder import MessageDispatcher
from store.memory_store import InMemoryEnrollmentStore

T0 = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)  # a Monday


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeAutomationClient:
    """Keeps every published version so pinned enrollments can load theirs."""

    def __init__(self):
        self.automations: Dict[str, Automation] = {}
        self.versions: Dict[tuple, Automation] = {}
        self.deleted: List[str] = []

    def publish(self, automation: Automation) -> Automation:
        self.automations[automation.id] = automation
        self.versions[(automation.id, automation.version)] = automation
        return automation

    def get(self, automation_id: str) -> Optional[Automation]:
        automation = self.automations.get(automation_id)
        return automation.model_copy(deep=True) if automation else None

    def get_version(self, automation_id: str, version: int) -> Optional[Automation]:
        automation = self.versions.get((automation_id, version))
        return automation.model_copy(deep=True) if automation else None

    def list(self, filters=None) -> List[Automation]:
        automations = list(self.automations.values())
        if filters is not None and filters.is_active is not None:
            automations = [a for a in automations if a.is_active == filters.is_active]
        return [a.model_copy(deep=True) for a in automations]

    def set_active(self, automation_id: str, active: bool) -> Optional[Automation]:
        automation = self.automations.get(automation_id)
        if automation is None:
            return None
        automation.is_active = active
        automation.status = AutomationStatus.ACTIVE if active else AutomationStatus.PAUSED
        return automation.model_copy(deep=True)

    def delete(self, automation_id: str) -> bool:
        self.deleted.append(automation_id)
        return self.automations.pop(automation_id, None) is not None


class FakeLeadClient:
    def __init__(self):
        self.leads: Dict[str, Lead] = {}
        self.updates: List[tuple] = []
        self.advisor_id: Optional[str] = "advisor-7"

    def add(self, lead_id: str, **fields) -> Lead:
        fields.setdefault("first_name", "Ada")
        fields.setdefault("last_name", "Lovelace")
        fields.setdefault("email", f"{lead_id}@example.com")
        fields.setdefault("phone", "+15550100")
        self.leads[lead_id] = Lead(id=lead_id, **fields)
        return self.leads[lead_id]

    def get(self, lead_id: str) -> Optional[Lead]:
        lead = self.leads.get(lead_id)
        return lead.model_copy(deep=True) if lead else None

    def update(self, lead_id: str, updates: Dict[str, Any]) -> Optional[Lead]:
        if lead_id not in self.leads:
            return None
        self.updates.append((lead_id, updates))
        self.leads[lead_id] = self.leads[lead_id].model_copy(update=updates)
        return self.leads[lead_id]

    def search(self, filters=None, limit: int = 1000) -> List[Lead]:
        leads = list(self.leads.values())
        if filters and filters.get("status"):
            leads = [lead for lead in leads if lead.status == filters["status"]]
        return leads[:limit]

    def pick_advisor(self, method: str, team_id: Optional[str] = None) -> Optional[str]:
        return self.advisor_id


class FakeTaskClient:
    def __init__(self):
        self.tasks: List[Dict[str, Any]] = []
        self.events: List[Dict[str, Any]] = []
        self.followups: List[Dict[str, Any]] = []

    def create_task(self, task):
        self.tasks.append(task)
        return {"id": f"task-{len(self.tasks)}"}

    def create_calendar_event(self, event):
        self.events.append(event)
        return {"id": f"event-{len(self.events)}"}

    def create_followup(self, followup):
        self.followups.append(followup)
        return {"id": f"followup-{len(self.followups)}"}


class FakeListClient:
    def __init__(self):
        self.members: Dict[str, set] = {}

    def add_member(self, list_id: str, lead_id: str) -> bool:
        self.members.setdefault(list_id, set()).add(lead_id)
        return True

    def remove_member(self, list_id: str, lead_id: str) -> bool:
        self.members.setdefault(list_id, set()).discard(lead_id)
        return True


class FakeWebhookClient:
    """Plays back queued status codes; 2xx returns, anything else raises."""

    def __init__(self):
        self.statuses: List[int] = []
        self.calls: List[Dict[str, Any]] = []

    def call(self, method, url, headers=None, body=None):
        self.calls.append({"method": method, "url": url, "headers": headers, "body": body})
        status = self.statuses.pop(0) if self.statuses else 200
        if status >= 300:
            raise WebhookError(f"Webhook {method} {url} returned {status}", status_code=status)
        return {"status_code": status, "body": {"ok": True}}


class Harness:
    def __init__(self):
        self.clock = FakeClock()
        self.store = InMemoryEnrollmentStore()
        self.automations = FakeAutomationClient()
        self.leads = FakeLeadClient()
        self.tasks = FakeTaskClient()
        self.lists = FakeListClient()
        self.webhooks = FakeWebhookClient()
        self.sender = MockSender()
        self.settings = Settings(
            sender_mode="mock",
            retry_base_delay_seconds=0,
            retry_max_delay_seconds=0,
            bulk_concurrency=3,
        )
        self.service = AutomationService(
            settings=self.settings,
            store=self.store,
            automation_client=self.automations,
            lead_client=self.leads,
            task_client=self.tasks,
            list_client=self.lists,
            webhook_client=self.webhooks,
            dispatcher=MessageDispatcher({channel: self.sender for channel in MessageChannel}),
            clock=self.clock,
        )

    @property
    def manager(self):
        return self.service.enrollment_manager

    async def enroll(self, automation_id: str, lead_id: str, **kwargs):
        enrollment = await self.manager.enroll(automation_id, lead_id, **kwargs)
        await self.manager.wait_idle()
        return await self.store.get(enrollment.id) if enrollment else None

    async def tick(self) -> int:
        resumed = await self.service.scheduler.tick()
        await self.manager.wait_idle()
        return resumed

    async def logs_for(self, step_id: str, enrollment_id: Optional[str] = None):
        logs = await self.store.list_logs(enrollment_id=enrollment_id)
        return [entry for entry in logs if entry.step_id == step_id]


def build_automation(steps: List[Dict[str, Any]], automation_id: str = "auto-1", **overrides) -> Automation:
    data = {
        "id": automation_id,
        "name": "Spring nurture",
        "kind": "workflow",
        "isActive": True,
        "status": "active",
        "ownerId": "owner-1",
        "trigger": {"eventType": "lead_created"},
        "steps": steps,
    }
    data.update(overrides)
    return Automation.model_validate(data)


def status_groups(value: str) -> List[Dict[str, Any]]:
    return [{"operator": "AND", "conditions": [{"field": "status", "operator": "equals", "value": value}]}]


SCENARIO_STEPS = [
    {"id": "trigger", "kind": "trigger", "next": "email"},
    {
        "id": "email",
        "kind": "send-message",
        "channel": "email",
        "subject": "Welcome {{firstName}}",
        "content": "Hi {{firstName}}, tell us more about {{programName}}.{{unknownThing}}",
        "next": "wait",
    },
    {"id": "wait", "kind": "wait", "waitType": "duration", "waitTime": {"value": 2, "unit": "days"}, "next": "check"},
    {
        "id": "check",
        "kind": "condition",
        "conditionGroups": status_groups("converted"),
        "evaluationMode": "AND",
        "trueNext": "goal",
        "falseNext": "sms",
    },
    {"id": "goal", "kind": "end-workflow", "reason": "goal_achieved"},
    {"id": "sms", "kind": "send-message", "channel": "sms", "content": "Still interested, {{firstName}}?", "next": "done"},
    {"id": "done", "kind": "end-workflow", "reason": "completed"},
]


@pytest.fixture
def harness():
    return Harness()


@pytest.fixture
def scenario(harness):
    harness.automations.publish(build_automation(SCENARIO_STEPS))
    harness.leads.add("lead-1", program_interest="Data Science", status="new")
    return harness


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from app import app
    return TestClient(app)
