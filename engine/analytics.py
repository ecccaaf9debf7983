import asyncio
import logging
from collections import Counter
from typing import List

from api_clients.lead_client import LeadClient
from models.analytics import AutomationAnalytics, EnrolledLead, EnrollmentStats
from models.enrollment import Enrollment, EnrollmentStatus
from models.execution_log import StepOutcome
from store.base import EnrollmentStore

logger = logging.getLogger("automation_engine")

RECENT_ACTIVITY_LIMIT = 10


def _percent(part: int, total: int) -> int:
    return round(part / total * 100) if total else 0


class AnalyticsAggregator:
    """Read-only rollups computed from committed enrollment and log state."""

    def __init__(self, store: EnrollmentStore, lead_client: LeadClient):
        self.store = store
        self.lead_client = lead_client

    @staticmethod
    def _stats(enrollments: List[Enrollment]) -> EnrollmentStats:
        counts = Counter(e.status for e in enrollments)
        total = len(enrollments)
        return EnrollmentStats(
            total_enrollments=total,
            active_enrollments=counts[EnrollmentStatus.ACTIVE] + counts[EnrollmentStatus.WAITING],
            completed_enrollments=counts[EnrollmentStatus.COMPLETED],
            exited_enrollments=counts[EnrollmentStatus.EXITED],
            completion_rate=_percent(counts[EnrollmentStatus.COMPLETED], total),
        )

    async def enrollment_stats(self, automation_id: str) -> EnrollmentStats:
        return self._stats(await self.store.list_for_automation(automation_id))

    async def get_analytics(self, automation_id: str) -> AutomationAnalytics:
        enrollments = await self.store.list_for_automation(automation_id)
        logs = await self.store.list_logs(automation_id=automation_id)
        stats = self._stats(enrollments)
        counts = Counter(e.status for e in enrollments)

        open_enrollments = [e for e in enrollments if e.is_open]
        step_distribution = Counter(e.current_step_id for e in open_enrollments if e.current_step_id)

        failed_logs = sum(1 for entry in logs if entry.outcome == StepOutcome.FAILED)

        return AutomationAnalytics(
            automation_id=automation_id,
            total_enrollments=stats.total_enrollments,
            active_enrollments=stats.active_enrollments,
            waiting_enrollments=counts[EnrollmentStatus.WAITING],
            completed_enrollments=stats.completed_enrollments,
            exited_enrollments=stats.exited_enrollments,
            failed_enrollments=counts[EnrollmentStatus.FAILED],
            completion_rate=stats.completion_rate,
            total_executions=len(logs),
            success_rate=_percent(len(logs) - failed_logs, len(logs)),
            step_distribution=dict(step_distribution),
            enrolled_leads=await self._enrolled_leads(enrollments),
            recent_activity=list(reversed(logs[-RECENT_ACTIVITY_LIMIT:])),
        )

    async def _enrolled_leads(self, enrollments: List[Enrollment]) -> List[EnrolledLead]:
        lead_ids = list(dict.fromkeys(e.lead_id for e in enrollments))
        leads = await asyncio.gather(*(asyncio.to_thread(self.lead_client.get, lead_id) for lead_id in lead_ids))
        by_id = {lead.id: lead for lead in leads if lead is not None}

        rows = []
        for enrollment in sorted(enrollments, key=lambda e: e.enrolled_at, reverse=True):
            lead = by_id.get(enrollment.lead_id)
            rows.append(EnrolledLead(
                lead_id=enrollment.lead_id,
                enrollment_id=enrollment.id,
                name=(lead.full_name or "Unknown") if lead else "Unknown",
                email=(lead.email or "") if lead else "",
                status=enrollment.status.value,
                current_step_id=enrollment.current_step_id,
                enrolled_at=enrollment.enrolled_at,
            ))
        return rows
