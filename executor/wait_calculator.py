import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from models.common import Duration
from models.enrollment import WaitState
from models.steps import WaitStep, WaitType
from utils.time_utils import ensure_aware

logger = logging.getLogger("automation_engine")


class WaitCalculator:
    """
    Turns a wait step into durable wait state. Nothing here sleeps; the
    scheduler wakes the enrollment once `due_at` has passed.
    """

    def __init__(
        self,
        poll_interval: timedelta = timedelta(minutes=60),
        max_wait: timedelta = timedelta(days=30),
        business_hours_start: int = 9,
        business_hours_end: int = 17,
    ):
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.business_hours_start = business_hours_start
        self.business_hours_end = business_hours_end

    def start(self, step: WaitStep, now: datetime) -> Optional[WaitState]:
        """
        Wait state for entering `step` at `now`. Returns None when there is
        nothing to wait for (a target date already in the past).
        """
        if step.wait_type == WaitType.DURATION:
            due_at = now + step.wait_time.to_timedelta()
            deadline_at = None
        elif step.wait_type == WaitType.UNTIL_DATE:
            if step.wait_until is None:
                raise ValueError(f"Wait step '{step.id}' has no wait_until date")
            due_at = ensure_aware(step.wait_until)
            if due_at <= now:
                return None
            deadline_at = None
        elif step.wait_type == WaitType.UNTIL_CONDITION:
            # Entry was already checked; the next check is one poll interval in.
            due_at = now + self._poll_interval(step)
            deadline_at = now + self._max_wait(step)
            due_at = min(due_at, deadline_at)
        elif step.wait_type == WaitType.BUSINESS_HOURS:
            due_at = self.next_business_window(now, step.timezone)
            if due_at <= now:
                return None
            deadline_at = None
        else:
            raise ValueError(f"Unsupported wait type: {step.wait_type}")

        if step.business_hours_only and step.wait_type != WaitType.BUSINESS_HOURS:
            due_at = self.next_business_window(due_at, step.timezone)

        return WaitState(step_id=step.id, started_at=now, due_at=due_at, deadline_at=deadline_at)

    def next_poll(self, step: WaitStep, state: WaitState, now: datetime) -> Optional[WaitState]:
        """Re-arms a condition wait. None means the deadline has passed."""
        if state.deadline_at is not None and now >= state.deadline_at:
            return None
        due_at = now + self._poll_interval(step)
        if state.deadline_at is not None:
            due_at = min(due_at, state.deadline_at)
        return state.model_copy(update={"due_at": due_at})

    def next_business_window(self, moment: datetime, tz_name: str = "UTC") -> datetime:
        """
        Earliest instant >= moment inside Mon-Fri business hours in `tz_name`,
        returned in UTC-aware form.
        """
        tz = self._zone(tz_name)
        local = ensure_aware(moment).astimezone(tz)

        for _ in range(8):
            opens = local.replace(hour=self.business_hours_start, minute=0, second=0, microsecond=0)
            closes = local.replace(hour=self.business_hours_end, minute=0, second=0, microsecond=0)
            if local.weekday() < 5:
                if local < opens:
                    return opens.astimezone(timezone.utc)
                if local < closes:
                    return local.astimezone(timezone.utc)
            next_day = (local + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
            local = next_day
        raise ValueError("No business window found within a week")

    def _poll_interval(self, step: WaitStep) -> timedelta:
        return self._duration(step.poll_interval, self.poll_interval)

    def _max_wait(self, step: WaitStep) -> timedelta:
        return self._duration(step.max_wait, self.max_wait)

    @staticmethod
    def _duration(value: Optional[Duration], default: timedelta) -> timedelta:
        if value is None:
            return default
        delta = value.to_timedelta()
        return delta if delta > timedelta(0) else default

    @staticmethod
    def _zone(tz_name: str) -> tzinfo:
        if not tz_name or tz_name.upper() == "UTC":
            return timezone.utc
        try:
            return ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown timezone '{tz_name}', using UTC")
            return timezone.utc
