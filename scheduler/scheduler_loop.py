import asyncio
import logging
import traceback
from datetime import datetime
from typing import Callable

from scheduler.wake_runner import WakeRunner
from store.base import EnrollmentStore
from utils.time_utils import utcnow

logger = logging.getLogger("automation_engine")


class SchedulerLoop:
    """
    Polls for waiting enrollments whose resumes_at has passed, and for
    active enrollments whose advance stalled. A missed tick is harmless:
    the enrollment stays due until some tick services it.
    """

    def __init__(
        self,
        store: EnrollmentStore,
        runner: WakeRunner,
        interval_seconds: float = 60,
        batch_size: int = 100,
        concurrency: int = 10,
        stalled_grace_seconds: int = 300,
        claim_ttl_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.runner = runner
        self.interval = interval_seconds
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.stalled_grace_seconds = stalled_grace_seconds
        self.claim_ttl_seconds = claim_ttl_seconds
        self.clock = clock
        self.running = False

    async def start(self):
        """Starts the scheduler polling loop."""
        if self.running:
            return

        self.running = True
        logger.info(f"Scheduler started (interval {self.interval}s).")

        while self.running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}")
                logger.error(traceback.format_exc())

            await asyncio.sleep(self.interval)

    def stop(self):
        self.running = False
        logger.info("Scheduler stopped.")

    async def tick(self) -> int:
        """Process one tick of the scheduler. Returns how many enrollments were advanced."""
        now = self.clock()
        due = await self.store.list_due(now, limit=self.batch_size)
        stalled = await self.store.list_stalled(
            now, self.stalled_grace_seconds, self.claim_ttl_seconds, limit=self.batch_size
        )
        if not due and not stalled:
            return 0

        if due:
            logger.info(f"{len(due)} waiting enrollment(s) are due.")
        if stalled:
            logger.warning(f"{len(stalled)} active enrollment(s) stalled mid-advance.")
        semaphore = asyncio.Semaphore(self.concurrency)

        async def wake(enrollment_id: str, handler):
            async with semaphore:
                try:
                    return await handler(enrollment_id)
                except Exception as e:
                    logger.error(f"Waking enrollment {enrollment_id} failed: {e}")
                    logger.error(traceback.format_exc())
                    return None

        results = await asyncio.gather(
            *(wake(e.id, self.runner.run) for e in due),
            *(wake(e.id, self.runner.recover) for e in stalled),
        )
        return sum(1 for r in results if r is not None)
