from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from models.enrollment import Enrollment
from models.execution_log import StepExecutionLog


class EnrollmentStore(ABC):
    """
    Durable enrollment state and the append-only execution log.

    Every mutation that can race is a compare-and-swap: creation is a
    conditional insert, and saves, claims and releases only apply when the
    stored claim token is the one the caller expects.
    """

    @abstractmethod
    async def create_if_absent(self, enrollment: Enrollment, allow_overlap: bool = False) -> bool:
        """
        Inserts the enrollment unless an active/waiting enrollment already
        exists for the same (automation, lead). Returns False when skipped.
        """

    @abstractmethod
    async def get(self, enrollment_id: str) -> Optional[Enrollment]:
        pass

    @abstractmethod
    async def save(self, enrollment: Enrollment, expected_token: Optional[str]) -> bool:
        """Writes the enrollment only if the stored claim token still equals `expected_token`."""

    @abstractmethod
    async def claim(self, enrollment_id: str, token: str, now: datetime, claim_ttl_seconds: int) -> Optional[Enrollment]:
        """Claims an open enrollment that is unclaimed or whose claim has expired."""

    @abstractmethod
    async def claim_due(self, enrollment_id: str, token: str, now: datetime, claim_ttl_seconds: int) -> Optional[Enrollment]:
        """Like claim, but only for waiting enrollments whose resumes_at <= now."""

    @abstractmethod
    async def release(self, enrollment_id: str, token: str) -> bool:
        pass

    @abstractmethod
    async def exit_open(
        self, automation_id: str, reason: str, now: datetime, lead_id: Optional[str] = None
    ) -> List[Enrollment]:
        """
        Moves every open enrollment of the automation (optionally only one
        lead's) to exited and drops any claim, so an in-flight advance loses
        its next save. Returns the exited enrollments.
        """

    @abstractmethod
    async def find_open(self, automation_id: str, lead_id: str) -> List[Enrollment]:
        pass

    @abstractmethod
    async def latest_for_lead(self, automation_id: str, lead_id: str) -> Optional[Enrollment]:
        """Most recently created enrollment of the lead in this automation."""

    @abstractmethod
    async def list_for_automation(self, automation_id: str) -> List[Enrollment]:
        pass

    @abstractmethod
    async def list_due(self, now: datetime, limit: int = 100) -> List[Enrollment]:
        """Waiting enrollments with resumes_at <= now, oldest first."""

    @abstractmethod
    async def list_stalled(
        self, now: datetime, grace_seconds: int, claim_ttl_seconds: int, limit: int = 100
    ) -> List[Enrollment]:
        """
        Active enrollments nobody is advancing: unclaimed and untouched for
        `grace_seconds`, or holding a claim older than the claim TTL.
        """

    @abstractmethod
    async def append_log(self, entry: StepExecutionLog) -> None:
        pass

    @abstractmethod
    async def list_logs(
        self, automation_id: Optional[str] = None, enrollment_id: Optional[str] = None
    ) -> List[StepExecutionLog]:
        """Log entries in the order they were appended."""
