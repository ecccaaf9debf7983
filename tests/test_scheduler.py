import asyncio
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

from models.enrollment import EnrollmentStatus
from models.steps import MessageChannel
from scheduler.scheduler_loop import SchedulerLoop
from conftest import SCENARIO_STEPS, build_automation


@pytest.mark.asyncio
async def test_wait_never_resumes_early(scenario):
    enrollment = await scenario.enroll("auto-1", "lead-1")
    assert enrollment.resumes_at == scenario.clock.now + timedelta(days=2)

    scenario.clock.advance(days=1, hours=23, minutes=59)
    assert await scenario.tick() == 0
    # a direct advance does not skip the wait either
    await scenario.service.executor.advance(enrollment.id)

    waiting = await scenario.store.get(enrollment.id)
    assert waiting.status == EnrollmentStatus.WAITING
    assert waiting.current_step_id == "wait"
    assert waiting.claim_token is None


@pytest.mark.asyncio
async def test_concurrent_ticks_resume_exactly_once(scenario):
    await scenario.enroll("auto-1", "lead-1")
    scenario.clock.advance(days=2)

    resumed = await asyncio.gather(
        scenario.service.scheduler.tick(),
        scenario.service.scheduler.tick(),
        scenario.service.scheduler.tick(),
    )

    assert sum(resumed) == 1
    sms = [m for m in scenario.sender.sent if m.channel == MessageChannel.SMS]
    assert len(sms) == 1


@pytest.mark.asyncio
async def test_paused_automation_keeps_enrollment_waiting(scenario):
    enrollment = await scenario.enroll("auto-1", "lead-1")
    due_at = enrollment.wait_state.due_at
    scenario.automations.set_active("auto-1", False)
    scenario.clock.advance(days=3)

    assert await scenario.tick() == 0
    waiting = await scenario.store.get(enrollment.id)
    assert waiting.status == EnrollmentStatus.WAITING
    assert waiting.claim_token is None
    assert waiting.wait_state.due_at == due_at
    assert waiting.resumes_at == scenario.clock.now + timedelta(seconds=scenario.settings.scheduler_interval_seconds)

    scenario.automations.set_active("auto-1", True)
    scenario.clock.advance(seconds=scenario.settings.scheduler_interval_seconds)
    assert await scenario.tick() == 1
    done = await scenario.store.get(enrollment.id)
    assert done.status == EnrollmentStatus.COMPLETED


@pytest.mark.asyncio
async def test_paused_enrollments_do_not_starve_other_automations(harness):
    harness.automations.publish(build_automation(SCENARIO_STEPS, automation_id="paused"))
    harness.automations.publish(build_automation(SCENARIO_STEPS, automation_id="live"))
    harness.leads.add("lead-1", status="new")
    harness.service.scheduler.batch_size = 1

    parked = await harness.enroll("paused", "lead-1")
    harness.clock.advance(minutes=5)
    live = await harness.enroll("live", "lead-1")
    harness.automations.set_active("paused", False)
    harness.clock.advance(days=3)

    for _ in range(2):
        await harness.tick()

    assert (await harness.store.get(live.id)).status == EnrollmentStatus.COMPLETED
    assert (await harness.store.get(parked.id)).status == EnrollmentStatus.WAITING


@pytest.mark.asyncio
async def test_deleted_automation_exits_waiting_enrollment(scenario):
    enrollment = await scenario.enroll("auto-1", "lead-1")
    scenario.automations.automations.pop("auto-1")
    scenario.clock.advance(days=2)

    assert await scenario.tick() == 0

    exited = await scenario.store.get(enrollment.id)
    assert exited.status == EnrollmentStatus.EXITED
    assert exited.exit_reason == "automation_deleted"
    assert exited.claim_token is None
    assert await scenario.tick() == 0


@pytest.mark.asyncio
async def test_orphaned_active_enrollment_is_recovered(scenario):
    # no background advance ever runs for this enrollment
    enrollment = await scenario.manager.enroll("auto-1", "lead-1", launch=False)

    assert await scenario.tick() == 0
    scenario.clock.advance(seconds=scenario.settings.stalled_grace_seconds)
    assert await scenario.tick() == 1

    recovered = await scenario.store.get(enrollment.id)
    assert recovered.status == EnrollmentStatus.WAITING
    assert recovered.current_step_id == "wait"
    assert [m.channel for m in scenario.sender.sent] == [MessageChannel.EMAIL]


@pytest.mark.asyncio
async def test_active_enrollment_with_expired_claim_is_recovered(scenario):
    enrollment = await scenario.manager.enroll("auto-1", "lead-1", launch=False)
    assert await scenario.store.claim(enrollment.id, "crashed-worker", scenario.clock(), 300) is not None

    scenario.clock.advance(minutes=4)
    assert await scenario.tick() == 0
    scenario.clock.advance(minutes=1)
    assert await scenario.tick() == 1

    recovered = await scenario.store.get(enrollment.id)
    assert recovered.current_step_id == "wait"
    assert recovered.claim_token is None


@pytest.mark.asyncio
async def test_expired_claim_is_recovered(scenario):
    enrollment = await scenario.enroll("auto-1", "lead-1")
    scenario.clock.advance(days=2)

    # a worker that crashed ten minutes ago still holds the claim
    stale = scenario.clock.now - timedelta(minutes=10)
    assert await scenario.store.claim(enrollment.id, "crashed-worker", stale, 300) is not None

    assert await scenario.tick() == 1
    done = await scenario.store.get(enrollment.id)
    assert done.status == EnrollmentStatus.COMPLETED


@pytest.mark.asyncio
async def test_live_claim_blocks_wake(scenario):
    enrollment = await scenario.enroll("auto-1", "lead-1")
    scenario.clock.advance(days=2)
    assert await scenario.store.claim(enrollment.id, "busy-worker", scenario.clock(), 300) is not None

    assert await scenario.tick() == 0


@pytest.mark.asyncio
async def test_tick_survives_a_failing_wake():
    store = MagicMock()
    store.list_due = AsyncMock(return_value=[MagicMock(id="e-1"), MagicMock(id="e-2")])
    store.list_stalled = AsyncMock(return_value=[])
    runner = MagicMock()
    runner.run = AsyncMock(side_effect=[RuntimeError("boom"), MagicMock()])

    loop = SchedulerLoop(store, runner, interval_seconds=0)

    assert await loop.tick() == 1
    assert runner.run.call_count == 2


@pytest.mark.asyncio
async def test_start_and_stop():
    store = MagicMock()
    store.list_due = AsyncMock(return_value=[])
    store.list_stalled = AsyncMock(return_value=[])
    loop = SchedulerLoop(store, MagicMock(), interval_seconds=0)

    task = asyncio.create_task(loop.start())
    await asyncio.sleep(0.01)
    assert loop.running
    loop.stop()
    await asyncio.wait_for(task, timeout=1)
    assert store.list_due.await_count >= 1
