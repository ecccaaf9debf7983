import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from api_clients.automation_client import AutomationClient
from config import Settings
from executor.step_executor import StepExecutor
from models.enrollment import Enrollment, EnrollmentStatus
from store.base import EnrollmentStore
from utils.idempotency import new_claim_token
from utils.time_utils import utcnow

logger = logging.getLogger("automation_engine")


class WakeRunner:
    """Resumes one due enrollment, at most once per due time."""

    def __init__(
        self,
        store: EnrollmentStore,
        automation_client: AutomationClient,
        executor: StepExecutor,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.automation_client = automation_client
        self.executor = executor
        self.settings = settings or Settings()
        self.clock = clock

    async def run(self, enrollment_id: str) -> Optional[Enrollment]:
        token = new_claim_token()
        # The claim only succeeds while the enrollment is waiting, due and
        # unowned, so concurrent ticks cannot both resume it.
        enrollment = await self.store.claim_due(enrollment_id, token, self.clock(), self.settings.claim_ttl_seconds)
        if enrollment is None:
            logger.debug(f"Enrollment {enrollment_id} already claimed or no longer due.")
            return None

        automation = await asyncio.to_thread(self.automation_client.get, enrollment.automation_id)
        if automation is None:
            await self._exit_deleted(enrollment, token)
            return None
        if not automation.is_runnable:
            await self._defer(enrollment, token)
            return None

        logger.info(f"Resuming enrollment {enrollment_id} at step '{enrollment.current_step_id}'")
        return await self.executor.run_claimed(enrollment, token)

    async def recover(self, enrollment_id: str) -> Optional[Enrollment]:
        """
        Continues an active enrollment whose advance never finished, e.g.
        the process stopped before its background task ran or a worker died
        holding the claim.
        """
        token = new_claim_token()
        enrollment = await self.store.claim(enrollment_id, token, self.clock(), self.settings.claim_ttl_seconds)
        if enrollment is None:
            return None

        automation = await asyncio.to_thread(self.automation_client.get, enrollment.automation_id)
        if automation is None:
            await self._exit_deleted(enrollment, token)
            return None

        logger.warning(f"Recovering stalled enrollment {enrollment_id} at step '{enrollment.current_step_id}'")
        return await self.executor.run_claimed(enrollment, token)

    async def _defer(self, enrollment: Enrollment, token: str):
        # wait_state keeps the real due time; only the queue position moves.
        enrollment.resumes_at = self.clock() + timedelta(seconds=self.settings.scheduler_interval_seconds)
        enrollment.claim_token = None
        enrollment.claimed_at = None
        if await self.store.save(enrollment, token):
            logger.info(
                f"Automation {enrollment.automation_id} is not active; enrollment {enrollment.id} "
                f"stays waiting until {enrollment.resumes_at.isoformat()}."
            )

    async def _exit_deleted(self, enrollment: Enrollment, token: str):
        enrollment.terminate(EnrollmentStatus.EXITED, "automation_deleted", self.clock())
        enrollment.claim_token = None
        enrollment.claimed_at = None
        if await self.store.save(enrollment, token):
            logger.warning(f"Automation {enrollment.automation_id} no longer exists; enrollment {enrollment.id} exited.")
