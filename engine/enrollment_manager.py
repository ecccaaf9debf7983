import asyncio
import logging
import traceback
from datetime import datetime
from typing import Callable, Iterable, Optional, Set

from api_clients.automation_client import AutomationClient
from api_clients.lead_client import LeadClient
from config import Settings
from errors import AutomationInactiveError, AutomationNotFoundError, LeadNotFoundError
from executor.step_executor import StepExecutor
from models.analytics import BulkEnrollResult
from models.automation import Automation
from models.enrollment import Enrollment
from store.base import EnrollmentStore
from utils.time_utils import utcnow

logger = logging.getLogger("automation_engine")


class EnrollmentManager:
    """
    Creates and terminates enrollments. Advancement of a new enrollment is
    handed to the step executor as a background task; callers never wait
    on it.
    """

    def __init__(
        self,
        store: EnrollmentStore,
        automation_client: AutomationClient,
        lead_client: LeadClient,
        executor: StepExecutor,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.automation_client = automation_client
        self.lead_client = lead_client
        self.executor = executor
        self.settings = settings or Settings()
        self.clock = clock
        self._tasks: Set[asyncio.Task] = set()
        executor.transfer = self._transfer

    async def enroll(
        self,
        automation_id: str,
        lead_id: str,
        force: bool = False,
        test_mode: bool = False,
        transferred_from: Optional[str] = None,
        launch: bool = True,
    ) -> Optional[Enrollment]:
        """
        Enrolls the lead, or returns None when nothing was created (automation
        not runnable, re-enrollment policy, or an open enrollment already
        exists). `force` skips the re-enrollment policy but never the
        single-open-enrollment rule. Raises LeadNotFoundError for unknown leads.
        """
        # Active state is read fresh for every decision.
        automation = await asyncio.to_thread(self.automation_client.get, automation_id)
        if automation is None:
            logger.warning(f"Automation {automation_id} not found; lead {lead_id} not enrolled.")
            return None
        if not automation.is_runnable:
            logger.info(f"Automation {automation_id} is not active; lead {lead_id} not enrolled.")
            return None
        first_step_id = automation.first_step_id()
        if first_step_id is None:
            logger.error(f"Automation {automation_id} has no step after its trigger.")
            return None

        lead = await asyncio.to_thread(self.lead_client.get, lead_id)
        if lead is None:
            raise LeadNotFoundError(f"Lead {lead_id} not found")

        now = self.clock()
        if not force and not await self._policy_allows(automation, lead_id, now):
            return None

        enrollment = Enrollment(
            automation_id=automation.id,
            automation_version=automation.version,
            lead_id=lead_id,
            current_step_id=first_step_id,
            enrolled_at=now,
            test_mode=test_mode,
            transferred_from=transferred_from,
            metadata={"enrolled_via": "test" if test_mode else "execution"},
        )
        policy = automation.re_enrollment
        created = await self.store.create_if_absent(enrollment, allow_overlap=policy.allowed and policy.allow_overlap)
        if not created:
            logger.info(f"Lead {lead_id} already has an open enrollment in automation {automation_id}.")
            return None

        logger.info(f"Enrolled lead {lead_id} in automation {automation_id} v{automation.version} [Enrollment {enrollment.id}]")
        if launch:
            self.launch(enrollment.id)
        return enrollment

    async def _policy_allows(self, automation: Automation, lead_id: str, now: datetime) -> bool:
        prior = await self.store.latest_for_lead(automation.id, lead_id)
        if prior is None:
            return True
        policy = automation.re_enrollment
        if not policy.allowed:
            logger.info(f"Re-enrollment disallowed for automation {automation.id}; lead {lead_id} skipped.")
            return False
        if prior.is_open and not policy.allow_overlap:
            return False
        if policy.min_delay is not None:
            since = prior.terminated_at or prior.enrolled_at
            if now - since < policy.min_delay.to_timedelta():
                logger.info(f"Re-enrollment delay for lead {lead_id} in automation {automation.id} has not elapsed.")
                return False
        return True

    def launch(self, enrollment_id: str, max_actions: Optional[int] = None) -> asyncio.Task:
        """Advances the enrollment in the background."""
        task = asyncio.create_task(self._advance_safely(enrollment_id, max_actions))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _advance_safely(self, enrollment_id: str, max_actions: Optional[int]):
        try:
            await self.executor.advance(enrollment_id, max_actions=max_actions)
        except Exception as e:
            logger.error(f"Background advance of enrollment {enrollment_id} crashed: {e}")
            logger.error(traceback.format_exc())

    async def wait_idle(self):
        """Waits until every background advance (including ones they start) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _transfer(self, target_automation_id: str, source: Enrollment, preserve_history: bool) -> Optional[Enrollment]:
        try:
            return await self.enroll(
                target_automation_id,
                source.lead_id,
                test_mode=source.test_mode,
                transferred_from=source.id if preserve_history else None,
            )
        except Exception as e:
            # The source enrollment is already closed as transferred and must stay that way.
            logger.error(f"Transfer of lead {source.lead_id} to automation {target_automation_id} failed: {e}")
            return None

    async def bulk_re_enroll(
        self, automation_id: str, lead_ids: Iterable[str], remove_existing: bool = False
    ) -> BulkEnrollResult:
        """
        Re-enrolls each lead independently with bounded concurrency. One lead
        failing is recorded in the result and never stops the others.
        """
        automation = await asyncio.to_thread(self.automation_client.get, automation_id)
        if automation is None:
            raise AutomationNotFoundError(f"Automation {automation_id} not found")
        if not automation.is_runnable:
            raise AutomationInactiveError(f"Automation {automation_id} is not active")

        result = BulkEnrollResult()
        semaphore = asyncio.Semaphore(self.settings.bulk_concurrency)

        async def process(lead_id: str):
            async with semaphore:
                try:
                    if remove_existing:
                        exited = await self.store.exit_open(automation_id, "re_enrolled", self.clock(), lead_id=lead_id)
                        if exited:
                            logger.info(f"Exited {len(exited)} enrollment(s) of lead {lead_id} before re-enrolling.")
                    enrollment = await self.enroll(automation_id, lead_id, force=True)
                    result.success += 1
                    if enrollment is None:
                        result.skipped += 1
                except Exception as e:
                    logger.error(f"Re-enrolling lead {lead_id} in automation {automation_id} failed: {e}")
                    result.failed += 1
                    result.errors.append({"lead_id": lead_id, "error": str(e)})

        await asyncio.gather(*(process(lead_id) for lead_id in dict.fromkeys(lead_ids)))
        logger.info(
            f"Bulk re-enroll for automation {automation_id}: {result.success} succeeded, "
            f"{result.failed} failed, {result.skipped} already enrolled."
        )
        return result

    async def exit_enrollments(self, automation_id: str, reason: str) -> int:
        exited = await self.store.exit_open(automation_id, reason, self.clock())
        if exited:
            logger.info(f"Exited {len(exited)} open enrollment(s) of automation {automation_id} ({reason}).")
        return len(exited)
