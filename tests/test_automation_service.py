import pytest

from errors import AutomationInactiveError, AutomationNotFoundError, AutomationValidationError
from models.analytics import AutomationFilter
from models.enrollment import EnrollmentStatus
from models.execution_log import StepOutcome
from conftest import SCENARIO_STEPS, build_automation


# --- Analytics ---

@pytest.mark.asyncio
async def test_analytics_rollup(scenario):
    scenario.leads.add("lead-3", email=None, first_name="Grace", last_name="Hopper")
    await scenario.enroll("auto-1", "lead-1")
    await scenario.enroll("auto-1", "lead-3")

    analytics = await scenario.service.get_automation_analytics("auto-1")

    assert analytics.total_enrollments == 2
    assert analytics.active_enrollments == 1
    assert analytics.waiting_enrollments == 1
    assert analytics.failed_enrollments == 1
    assert analytics.completion_rate == 0
    assert analytics.step_distribution == {"wait": 1}
    # email + wait for lead-1, failed email for lead-3
    assert analytics.total_executions == 3
    assert analytics.success_rate == 67
    assert analytics.recent_activity[0].lead_id == "lead-3"
    assert analytics.recent_activity[0].outcome == StepOutcome.FAILED
    assert {row.name for row in analytics.enrolled_leads} == {"Ada Lovelace", "Grace Hopper"}

    scenario.clock.advance(days=2)
    await scenario.tick()

    analytics = await scenario.service.get_automation_analytics("auto-1")
    assert analytics.completed_enrollments == 1
    assert analytics.completion_rate == 50
    assert analytics.step_distribution == {}


@pytest.mark.asyncio
async def test_analytics_for_unknown_automation(harness):
    with pytest.raises(AutomationNotFoundError):
        await harness.service.get_automation_analytics("missing")


@pytest.mark.asyncio
async def test_recent_activity_is_capped(harness):
    steps = [{"id": "trigger", "kind": "trigger", "next": "u0"}]
    for i in range(12):
        steps.append({"id": f"u{i}", "kind": "update-lead", "updateType": "score", "scoreChange": 1,
                      "next": f"u{i + 1}" if i < 11 else "end"})
    steps.append({"id": "end", "kind": "end-workflow"})
    harness.automations.publish(build_automation(steps))
    harness.leads.add("lead-1", lead_score=0)

    await harness.enroll("auto-1", "lead-1")
    analytics = await harness.service.get_automation_analytics("auto-1")

    assert analytics.total_executions == 13
    assert len(analytics.recent_activity) == 10
    assert analytics.recent_activity[0].step_id == "end"
    assert harness.leads.leads["lead-1"].lead_score == 12


@pytest.mark.asyncio
async def test_summary_stats(scenario):
    scenario.automations.publish(build_automation(SCENARIO_STEPS, automation_id="auto-2", isActive=False, status="paused"))
    scenario.leads.add("lead-2")
    await scenario.enroll("auto-1", "lead-1")
    await scenario.enroll("auto-1", "lead-2")
    scenario.leads.leads["lead-1"].status = "converted"
    scenario.clock.advance(days=2)
    await scenario.tick()

    stats = await scenario.service.summary_stats()

    assert stats.total_automations == 2
    assert stats.active_automations == 1
    assert stats.total_enrollments == 2
    # only automations with enrollments are averaged
    assert stats.avg_completion_rate == 100


@pytest.mark.asyncio
async def test_list_automations_with_filter(scenario):
    scenario.automations.publish(build_automation(SCENARIO_STEPS, automation_id="auto-2", isActive=False, status="paused"))
    await scenario.enroll("auto-1", "lead-1")

    summaries = await scenario.service.list_automations(AutomationFilter(is_active=True))

    assert [s.automation.id for s in summaries] == ["auto-1"]
    assert summaries[0].stats.total_enrollments == 1
    assert summaries[0].stats.active_enrollments == 1


# --- Lifecycle ---

@pytest.mark.asyncio
async def test_toggle_rejects_invalid_graph(harness):
    harness.automations.publish(build_automation(
        [{"id": "trigger", "kind": "trigger", "next": "nowhere"}], isActive=False, status="draft"
    ))

    with pytest.raises(AutomationValidationError) as exc:
        await harness.service.toggle_automation("auto-1", True)
    assert any("unknown steps" in p for p in exc.value.problems)
    assert harness.automations.automations["auto-1"].is_active is False


@pytest.mark.asyncio
async def test_toggle_pause_and_activate(scenario):
    paused = await scenario.service.toggle_automation("auto-1", False)
    assert paused.is_active is False
    assert not paused.is_runnable

    active = await scenario.service.toggle_automation("auto-1", True)
    assert active.is_runnable


@pytest.mark.asyncio
async def test_delete_exits_open_enrollments(scenario):
    enrollment = await scenario.enroll("auto-1", "lead-1")

    exited = await scenario.service.delete_automation("auto-1")

    assert exited == 1
    assert scenario.automations.deleted == ["auto-1"]
    gone = await scenario.store.get(enrollment.id)
    assert gone.status == EnrollmentStatus.EXITED
    assert gone.exit_reason == "automation_deleted"


@pytest.mark.asyncio
async def test_execute_uses_audience_filters(harness):
    harness.automations.publish(build_automation(SCENARIO_STEPS, audienceFilters={"status": "new"}))
    harness.leads.add("lead-1", status="new")
    harness.leads.add("lead-2", status="new")
    harness.leads.add("lead-3", status="contacted")

    result = await harness.service.execute_automation("auto-1")
    await harness.manager.wait_idle()

    assert result.total == 2
    assert result.enrolled == 2
    assert {d["lead_id"] for d in result.details} == {"lead-1", "lead-2"}


@pytest.mark.asyncio
async def test_execute_reports_skips_and_failures(scenario):
    await scenario.enroll("auto-1", "lead-1")

    result = await scenario.service.execute_automation("auto-1", ["lead-1", "ghost"])

    assert result.skipped == 1
    assert result.failed == 1
    failed = next(d for d in result.details if d["status"] == "failed")
    assert failed["lead_id"] == "ghost"


@pytest.mark.asyncio
async def test_execute_requires_active_automation(scenario):
    scenario.automations.set_active("auto-1", False)
    with pytest.raises(AutomationInactiveError):
        await scenario.service.execute_automation("auto-1", ["lead-1"])
