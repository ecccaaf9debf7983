import asyncio
import logging
from datetime import datetime
from typing import Callable, List

from api_clients.automation_client import AutomationClient
from api_clients.lead_client import LeadClient
from engine.enrollment_manager import EnrollmentManager
from executor.condition_evaluator import ConditionEvaluator
from models.analytics import AutomationFilter
from models.automation import Automation
from models.enrollment import Enrollment
from models.lead import Lead, LeadEvent
from utils.time_utils import utcnow

logger = logging.getLogger("automation_engine")


class TriggerEvaluator:
    """Decides which automations an incoming lead event enrolls the lead in."""

    def __init__(
        self,
        automation_client: AutomationClient,
        lead_client: LeadClient,
        enrollment_manager: EnrollmentManager,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.automation_client = automation_client
        self.lead_client = lead_client
        self.enrollment_manager = enrollment_manager
        self.clock = clock
        self.condition_evaluator = ConditionEvaluator()

    def evaluate(self, automation: Automation, event: LeadEvent, lead: Lead) -> bool:
        trigger = automation.trigger
        # Cheap rejections before any condition is evaluated.
        if trigger.event_type != event.event_type:
            return False
        for key, expected in trigger.event_filter.items():
            if event.payload.get(key) != expected:
                return False

        attributes = lead.attributes()
        attributes["event"] = event.payload
        return self.condition_evaluator.safe_evaluate_groups(
            trigger.condition_groups, trigger.evaluation_mode, attributes, self.clock()
        )

    async def handle_event(self, event: LeadEvent) -> List[Enrollment]:
        lead = await asyncio.to_thread(self.lead_client.get, event.lead_id)
        if lead is None:
            logger.warning(f"Event {event.event_type.value} for unknown lead {event.lead_id} ignored.")
            return []

        automations = await asyncio.to_thread(self.automation_client.list, AutomationFilter(is_active=True))
        matched = [a for a in automations if a.is_runnable and self.evaluate(a, event, lead)]
        if not matched:
            return []
        logger.info(f"Event {event.event_type.value} for lead {lead.id} matched {len(matched)} automation(s).")

        results = await asyncio.gather(
            *(self.enrollment_manager.enroll(a.id, lead.id) for a in matched), return_exceptions=True
        )
        enrollments = []
        for automation, result in zip(matched, results):
            if isinstance(result, Exception):
                logger.error(f"Enrolling lead {lead.id} in automation {automation.id} failed: {result}")
            elif result is not None:
                enrollments.append(result)
        return enrollments
