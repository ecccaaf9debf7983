import pytest
from datetime import datetime, timedelta, timezone

from executor.wait_calculator import WaitCalculator
from models.steps import WaitStep

MONDAY = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)
FRIDAY_EVENING = datetime(2024, 3, 8, 18, 0, tzinfo=timezone.utc)
NEXT_MONDAY_OPEN = datetime(2024, 3, 11, 9, 0, tzinfo=timezone.utc)


def wait_step(**fields):
    return WaitStep.model_validate({"id": "wait", "next": "after", **fields})


def test_duration_wait():
    state = WaitCalculator().start(wait_step(waitTime={"value": 3, "unit": "hours"}), MONDAY)
    assert state.due_at == MONDAY + timedelta(hours=3)
    assert state.deadline_at is None
    assert state.started_at == MONDAY


def test_until_date_in_future_and_past():
    calculator = WaitCalculator()
    future = calculator.start(wait_step(waitType="until_date", waitUntil="2024-03-10T08:00:00"), MONDAY)
    assert future.due_at == datetime(2024, 3, 10, 8, 0, tzinfo=timezone.utc)

    assert calculator.start(wait_step(waitType="until_date", waitUntil="2024-03-01T08:00:00Z"), MONDAY) is None


def test_until_date_requires_a_date():
    with pytest.raises(ValueError):
        WaitCalculator().start(wait_step(waitType="until_date"), MONDAY)


def test_condition_wait_defaults():
    state = WaitCalculator().start(wait_step(waitType="until_condition"), MONDAY)
    assert state.due_at == MONDAY + timedelta(minutes=60)
    assert state.deadline_at == MONDAY + timedelta(days=30)


def test_condition_wait_first_poll_never_passes_deadline():
    step = wait_step(waitType="until_condition", maxWait={"value": 30, "unit": "minutes"})
    state = WaitCalculator().start(step, MONDAY)
    assert state.due_at == MONDAY + timedelta(minutes=30)


def test_next_poll_stops_at_deadline():
    calculator = WaitCalculator(poll_interval=timedelta(hours=6), max_wait=timedelta(hours=10))
    step = wait_step(waitType="until_condition")
    state = calculator.start(step, MONDAY)

    second = calculator.next_poll(step, state, MONDAY + timedelta(hours=6))
    assert second.due_at == MONDAY + timedelta(hours=10)
    assert calculator.next_poll(step, second, MONDAY + timedelta(hours=10)) is None


@pytest.mark.parametrize("moment,expected", [
    (FRIDAY_EVENING, NEXT_MONDAY_OPEN),
    (datetime(2024, 3, 9, 12, 0, tzinfo=timezone.utc), NEXT_MONDAY_OPEN),
    (datetime(2024, 3, 4, 7, 30, tzinfo=timezone.utc), datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)),
    (MONDAY, MONDAY),
])
def test_next_business_window(moment, expected):
    assert WaitCalculator().next_business_window(moment) == expected


def test_business_window_in_local_timezone():
    # 12:00 UTC is 07:00 in New York (EST), two hours before opening
    moment = datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc)
    opens = WaitCalculator().next_business_window(moment, "America/New_York")
    assert opens == datetime(2024, 3, 4, 14, 0, tzinfo=timezone.utc)


def test_unknown_timezone_falls_back_to_utc():
    assert WaitCalculator().next_business_window(FRIDAY_EVENING, "Mars/Olympus") == NEXT_MONDAY_OPEN


def test_business_hours_wait():
    calculator = WaitCalculator()
    state = calculator.start(wait_step(waitType="business_hours"), FRIDAY_EVENING)
    assert state.due_at == NEXT_MONDAY_OPEN
    # already inside business hours: nothing to wait for
    assert calculator.start(wait_step(waitType="business_hours"), MONDAY) is None


def test_business_hours_only_shifts_duration_wait():
    step = wait_step(waitTime={"value": 4, "unit": "hours"}, businessHoursOnly=True)
    friday_afternoon = datetime(2024, 3, 8, 15, 0, tzinfo=timezone.utc)
    assert WaitCalculator().start(step, friday_afternoon).due_at == NEXT_MONDAY_OPEN
