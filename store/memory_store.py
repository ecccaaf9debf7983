import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from models.enrollment import Enrollment, EnrollmentStatus
from models.execution_log import StepExecutionLog
from store.base import EnrollmentStore


class InMemoryEnrollmentStore(EnrollmentStore):
    """
    Keeps enrollments in process memory. Used by tests and when no
    DATABASE_URL is configured; nothing survives a restart.
    """

    def __init__(self):
        self._enrollments: Dict[str, Enrollment] = {}
        self._logs: List[StepExecutionLog] = []
        self._lock = asyncio.Lock()

    @staticmethod
    def _copy(enrollment: Optional[Enrollment]) -> Optional[Enrollment]:
        return enrollment.model_copy(deep=True) if enrollment is not None else None

    @staticmethod
    def _claimable(enrollment: Enrollment, now: datetime, claim_ttl_seconds: int) -> bool:
        if enrollment.claim_token is None:
            return True
        return enrollment.claimed_at is None or enrollment.claimed_at <= now - timedelta(seconds=claim_ttl_seconds)

    async def create_if_absent(self, enrollment: Enrollment, allow_overlap: bool = False) -> bool:
        async with self._lock:
            if not allow_overlap:
                for existing in self._enrollments.values():
                    if (
                        existing.automation_id == enrollment.automation_id
                        and existing.lead_id == enrollment.lead_id
                        and existing.is_open
                    ):
                        return False
            self._enrollments[enrollment.id] = self._copy(enrollment)
            return True

    async def get(self, enrollment_id: str) -> Optional[Enrollment]:
        async with self._lock:
            return self._copy(self._enrollments.get(enrollment_id))

    async def save(self, enrollment: Enrollment, expected_token: Optional[str]) -> bool:
        async with self._lock:
            current = self._enrollments.get(enrollment.id)
            if current is None or current.claim_token != expected_token:
                return False
            self._enrollments[enrollment.id] = self._copy(enrollment)
            return True

    async def claim(self, enrollment_id: str, token: str, now: datetime, claim_ttl_seconds: int) -> Optional[Enrollment]:
        async with self._lock:
            current = self._enrollments.get(enrollment_id)
            if current is None or not current.is_open or not self._claimable(current, now, claim_ttl_seconds):
                return None
            current.claim_token = token
            current.claimed_at = now
            return self._copy(current)

    async def claim_due(self, enrollment_id: str, token: str, now: datetime, claim_ttl_seconds: int) -> Optional[Enrollment]:
        async with self._lock:
            current = self._enrollments.get(enrollment_id)
            if (
                current is None
                or current.status != EnrollmentStatus.WAITING
                or current.resumes_at is None
                or current.resumes_at > now
                or not self._claimable(current, now, claim_ttl_seconds)
            ):
                return None
            current.claim_token = token
            current.claimed_at = now
            return self._copy(current)

    async def release(self, enrollment_id: str, token: str) -> bool:
        async with self._lock:
            current = self._enrollments.get(enrollment_id)
            if current is None or current.claim_token != token:
                return False
            current.claim_token = None
            current.claimed_at = None
            return True

    async def exit_open(
        self, automation_id: str, reason: str, now: datetime, lead_id: Optional[str] = None
    ) -> List[Enrollment]:
        exited = []
        async with self._lock:
            for enrollment in self._enrollments.values():
                if enrollment.automation_id != automation_id or not enrollment.is_open:
                    continue
                if lead_id is not None and enrollment.lead_id != lead_id:
                    continue
                enrollment.terminate(EnrollmentStatus.EXITED, reason, now)
                enrollment.claim_token = None
                enrollment.claimed_at = None
                exited.append(self._copy(enrollment))
        return exited

    async def find_open(self, automation_id: str, lead_id: str) -> List[Enrollment]:
        async with self._lock:
            return [
                self._copy(e) for e in self._enrollments.values()
                if e.automation_id == automation_id and e.lead_id == lead_id and e.is_open
            ]

    async def latest_for_lead(self, automation_id: str, lead_id: str) -> Optional[Enrollment]:
        async with self._lock:
            matches = [
                e for e in self._enrollments.values()
                if e.automation_id == automation_id and e.lead_id == lead_id
            ]
            if not matches:
                return None
            return self._copy(max(matches, key=lambda e: e.enrolled_at))

    async def list_for_automation(self, automation_id: str) -> List[Enrollment]:
        async with self._lock:
            return [self._copy(e) for e in self._enrollments.values() if e.automation_id == automation_id]

    async def list_due(self, now: datetime, limit: int = 100) -> List[Enrollment]:
        async with self._lock:
            due = [
                e for e in self._enrollments.values()
                if e.status == EnrollmentStatus.WAITING and e.resumes_at is not None and e.resumes_at <= now
            ]
            due.sort(key=lambda e: e.resumes_at)
            return [self._copy(e) for e in due[:limit]]

    async def list_stalled(
        self, now: datetime, grace_seconds: int, claim_ttl_seconds: int, limit: int = 100
    ) -> List[Enrollment]:
        cutoff = now - timedelta(seconds=grace_seconds)

        def touched(e: Enrollment) -> datetime:
            return e.last_advanced_at or e.enrolled_at

        async with self._lock:
            stalled = [
                e for e in self._enrollments.values()
                if e.status == EnrollmentStatus.ACTIVE
                and (
                    (e.claim_token is None and touched(e) <= cutoff)
                    or (e.claim_token is not None and self._claimable(e, now, claim_ttl_seconds))
                )
            ]
            stalled.sort(key=touched)
            return [self._copy(e) for e in stalled[:limit]]

    async def append_log(self, entry: StepExecutionLog) -> None:
        async with self._lock:
            self._logs.append(entry.model_copy(deep=True))

    async def list_logs(
        self, automation_id: Optional[str] = None, enrollment_id: Optional[str] = None
    ) -> List[StepExecutionLog]:
        async with self._lock:
            return [
                entry.model_copy(deep=True) for entry in self._logs
                if (automation_id is None or entry.automation_id == automation_id)
                and (enrollment_id is None or entry.enrollment_id == enrollment_id)
            ]
