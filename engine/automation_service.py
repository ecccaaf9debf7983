import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional

from api_clients.automation_client import AutomationClient
from api_clients.lead_client import LeadClient
from api_clients.list_client import ListClient
from api_clients.task_client import TaskClient
from api_clients.webhook_client import WebhookClient
from config import Settings
from engine.analytics import AnalyticsAggregator
from engine.enrollment_manager import EnrollmentManager
from engine.trigger_evaluator import TriggerEvaluator
from errors import AutomationEngineError, AutomationInactiveError, AutomationNotFoundError
from executor.step_executor import StepExecutor
from models.analytics import (
    AutomationAnalytics,
    AutomationFilter,
    AutomationSummary,
    BulkEnrollResult,
    ExecutionResult,
    SummaryStats,
)
from models.automation import Automation, validate_automation
from models.enrollment import Enrollment, EnrollmentStatus
from models.lead import LeadEvent
from scheduler.scheduler_loop import SchedulerLoop
from scheduler.wake_runner import WakeRunner
from senders.sender_builder import MessageDispatcher, SenderBuilder
from store.base import EnrollmentStore
from store.factory import get_store
from utils.time_utils import utcnow

logger = logging.getLogger("automation_engine")


class AutomationService:
    """
    The operations the surrounding product calls. Wires the engine
    components together; collaborators can be injected for tests.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[EnrollmentStore] = None,
        automation_client: Optional[AutomationClient] = None,
        lead_client: Optional[LeadClient] = None,
        task_client: Optional[TaskClient] = None,
        list_client: Optional[ListClient] = None,
        webhook_client: Optional[WebhookClient] = None,
        dispatcher: Optional[MessageDispatcher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or Settings.from_env()
        self.store = store or get_store(self.settings.database_url)
        self.automation_client = automation_client or AutomationClient(self.settings.backend_url)
        self.lead_client = lead_client or LeadClient(self.settings.backend_url)
        self.clock = clock

        self.executor = StepExecutor(
            store=self.store,
            automation_client=self.automation_client,
            lead_client=self.lead_client,
            task_client=task_client or TaskClient(self.settings.backend_url),
            list_client=list_client or ListClient(self.settings.backend_url),
            webhook_client=webhook_client or WebhookClient(timeout=self.settings.webhook_timeout_seconds),
            dispatcher=dispatcher or SenderBuilder.build(self.settings),
            settings=self.settings,
            clock=clock,
        )
        self.enrollment_manager = EnrollmentManager(
            self.store, self.automation_client, self.lead_client, self.executor, self.settings, clock
        )
        self.trigger_evaluator = TriggerEvaluator(
            self.automation_client, self.lead_client, self.enrollment_manager, clock
        )
        self.analytics = AnalyticsAggregator(self.store, self.lead_client)
        self.scheduler = SchedulerLoop(
            self.store,
            WakeRunner(self.store, self.automation_client, self.executor, self.settings, clock),
            interval_seconds=self.settings.scheduler_interval_seconds,
            batch_size=self.settings.scheduler_batch_size,
            concurrency=self.settings.scheduler_concurrency,
            stalled_grace_seconds=self.settings.stalled_grace_seconds,
            claim_ttl_seconds=self.settings.claim_ttl_seconds,
            clock=clock,
        )

    async def _require(self, automation_id: str) -> Automation:
        automation = await asyncio.to_thread(self.automation_client.get, automation_id)
        if automation is None:
            raise AutomationNotFoundError(f"Automation {automation_id} not found")
        return automation

    async def list_automations(self, filters: Optional[AutomationFilter] = None) -> List[AutomationSummary]:
        automations = await asyncio.to_thread(self.automation_client.list, filters)
        stats = await asyncio.gather(*(self.analytics.enrollment_stats(a.id) for a in automations))
        return [AutomationSummary(automation=a, stats=s) for a, s in zip(automations, stats)]

    async def toggle_automation(self, automation_id: str, active: bool) -> Automation:
        automation = await self._require(automation_id)
        if active:
            # A broken graph must never start enrolling leads.
            validate_automation(automation)
        updated = await asyncio.to_thread(self.automation_client.set_active, automation_id, active)
        if updated is None:
            raise AutomationEngineError(f"Could not {'activate' if active else 'pause'} automation {automation_id}")
        logger.info(f"Automation {automation_id} {'activated' if active else 'paused'}.")
        return updated

    async def delete_automation(self, automation_id: str) -> int:
        """Exits every open enrollment, then deletes. Returns how many were exited."""
        await self._require(automation_id)
        exited = await self.enrollment_manager.exit_enrollments(automation_id, "automation_deleted")
        if not await asyncio.to_thread(self.automation_client.delete, automation_id):
            raise AutomationEngineError(f"Deleting automation {automation_id} failed")
        logger.info(f"Automation {automation_id} deleted; {exited} enrollment(s) exited.")
        return exited

    async def execute_automation(
        self, automation_id: str, lead_ids: Optional[List[str]] = None, test_mode: bool = False
    ) -> ExecutionResult:
        """
        Manual run that bypasses the trigger. Each new enrollment runs up to
        its first action before this returns; the rest continues in the
        background.
        """
        automation = await self._require(automation_id)
        if not automation.is_runnable:
            raise AutomationInactiveError(f"Automation {automation_id} is not active")

        if lead_ids is None:
            leads = await asyncio.to_thread(self.lead_client.search, automation.audience_filters)
            lead_ids = [lead.id for lead in leads]
        lead_ids = list(dict.fromkeys(lead_ids))
        logger.info(f"Executing automation {automation_id} for {len(lead_ids)} lead(s). Test mode: {test_mode}")

        result = ExecutionResult(total=len(lead_ids))
        semaphore = asyncio.Semaphore(self.settings.bulk_concurrency)

        async def process(lead_id: str):
            async with semaphore:
                try:
                    enrollment = await self.enrollment_manager.enroll(
                        automation_id, lead_id, test_mode=test_mode, launch=False
                    )
                    if enrollment is None:
                        result.skipped += 1
                        result.details.append({"lead_id": lead_id, "status": "skipped", "reason": "Already enrolled"})
                        return
                    advanced = await self.executor.advance(enrollment.id, max_actions=1)
                    if advanced is not None and advanced.status == EnrollmentStatus.ACTIVE:
                        self.enrollment_manager.launch(enrollment.id)
                    result.enrolled += 1
                    result.details.append({"lead_id": lead_id, "status": "enrolled", "enrollment_id": enrollment.id})
                except Exception as e:
                    logger.error(f"Executing automation {automation_id} for lead {lead_id} failed: {e}")
                    result.failed += 1
                    result.details.append({"lead_id": lead_id, "status": "failed", "error": str(e)})

        await asyncio.gather(*(process(lead_id) for lead_id in lead_ids))
        logger.info(
            f"Automation {automation_id} executed: {result.enrolled} enrolled, "
            f"{result.skipped} skipped, {result.failed} failed."
        )
        return result

    async def re_enroll_leads(
        self, automation_id: str, lead_ids: List[str], remove_existing: bool = False
    ) -> BulkEnrollResult:
        return await self.enrollment_manager.bulk_re_enroll(automation_id, lead_ids, remove_existing)

    async def get_automation_analytics(self, automation_id: str) -> AutomationAnalytics:
        await self._require(automation_id)
        return await self.analytics.get_analytics(automation_id)

    async def handle_event(self, event: LeadEvent) -> List[Enrollment]:
        return await self.trigger_evaluator.handle_event(event)

    async def summary_stats(self) -> SummaryStats:
        summaries = await self.list_automations()
        rated = [s.stats.completion_rate for s in summaries if s.stats.total_enrollments]
        return SummaryStats(
            total_automations=len(summaries),
            active_automations=sum(1 for s in summaries if s.automation.is_active),
            total_enrollments=sum(s.stats.total_enrollments for s in summaries),
            avg_completion_rate=round(sum(rated) / len(rated)) if rated else 0,
        )

    async def shutdown(self):
        self.scheduler.stop()
        await self.enrollment_manager.wait_idle()
