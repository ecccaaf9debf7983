import asyncio
import logging
import traceback
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from api_clients.automation_client import AutomationClient
from api_clients.lead_client import LeadClient
from api_clients.list_client import ListClient
from api_clients.task_client import TaskClient
from api_clients.webhook_client import WebhookClient
from config import Settings
from errors import ConcurrencyConflict, LeadNotFoundError, StepExecutionError, WebhookError
from models.automation import Automation
from models.enrollment import Enrollment, EnrollmentStatus
from models.execution_log import StepExecutionLog, StepOutcome
from models.lead import Lead
from models.steps import (
    ACTION_KINDS,
    ENROLLMENT_STAGES,
    EndReason,
    MessageChannel,
    StepKind,
    WaitStep,
    WaitType,
)
from senders.base_sender import OutboundMessage
from senders.sender_builder import MessageDispatcher
from store.base import EnrollmentStore
from utils.idempotency import IdempotencyKey, new_claim_token
from utils.retry import RetryManager
from utils.time_utils import utcnow

from .condition_evaluator import ConditionEvaluator
from .template_renderer import TemplateRenderer
from .wait_calculator import WaitCalculator

logger = logging.getLogger("automation_engine")

# Called by go-to-workflow: (target_automation_id, source enrollment, preserve_history).
TransferHandler = Callable[[str, Enrollment, bool], Awaitable[Optional[Enrollment]]]


@dataclass
class StepContext:
    enrollment: Enrollment
    automation: Automation
    step: Any
    now: datetime
    lead: Optional[Lead] = None

    @property
    def test_mode(self) -> bool:
        return self.enrollment.test_mode


class StepExecutor:
    """
    Interprets an automation's step graph for one enrollment at a time.

    An advance owns the enrollment through its claim token: every save is
    conditional on that token, so a concurrent exit or a second worker makes
    this advance stop instead of overwriting newer state.
    """

    def __init__(
        self,
        store: EnrollmentStore,
        automation_client: AutomationClient,
        lead_client: LeadClient,
        task_client: TaskClient,
        list_client: ListClient,
        webhook_client: WebhookClient,
        dispatcher: MessageDispatcher,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.automation_client = automation_client
        self.lead_client = lead_client
        self.task_client = task_client
        self.list_client = list_client
        self.webhook_client = webhook_client
        self.dispatcher = dispatcher
        self.settings = settings or Settings()
        self.clock = clock

        self.condition_evaluator = ConditionEvaluator()
        self.template_renderer = TemplateRenderer()
        self.wait_calculator = WaitCalculator(
            poll_interval=timedelta(minutes=self.settings.condition_poll_interval_minutes),
            max_wait=timedelta(days=self.settings.condition_max_wait_days),
            business_hours_start=self.settings.business_hours_start,
            business_hours_end=self.settings.business_hours_end,
        )
        self.transfer: Optional[TransferHandler] = None

        actions = {
            StepKind.SEND_MESSAGE: self._send_message,
            StepKind.UPDATE_LEAD: self._update_lead,
            StepKind.ASSIGN_ADVISOR: self._assign_advisor,
            StepKind.CHANGE_STAGE: self._change_stage,
            StepKind.CREATE_TASK: self._create_task,
            StepKind.CREATE_CALENDAR_EVENT: self._create_calendar_event,
            StepKind.WEBHOOK: self._webhook,
            StepKind.LIST_ADD: self._list_add,
            StepKind.LIST_REMOVE: self._list_remove,
            StepKind.SCHEDULE_FOLLOWUP: self._schedule_followup,
        }
        self._handlers: Dict[StepKind, Callable[[StepContext], Awaitable[Optional[str]]]] = {
            kind: self._as_action(handler) for kind, handler in actions.items()
        }
        self._handlers.update({
            StepKind.TRIGGER: self._trigger,
            StepKind.CONDITION: self._condition,
            StepKind.SPLIT: self._split,
            StepKind.WAIT: self._wait,
            StepKind.GO_TO_WORKFLOW: self._go_to_workflow,
            StepKind.END_WORKFLOW: self._end_workflow,
        })
        missing = set(StepKind) - set(self._handlers)
        if missing or set(actions) != set(ACTION_KINDS):
            raise RuntimeError(f"Step kinds without a handler: {sorted(k.value for k in missing)}")

    # ------------------------------------------------------------------
    # Entry points

    async def advance(self, enrollment_id: str, max_actions: Optional[int] = None) -> Optional[Enrollment]:
        """
        Claims the enrollment and runs it until it waits, terminates, or has
        executed `max_actions` action steps. Returns None if another worker
        holds the claim.
        """
        token = new_claim_token()
        enrollment = await self.store.claim(enrollment_id, token, self.clock(), self.settings.claim_ttl_seconds)
        if enrollment is None:
            logger.debug(f"Enrollment {enrollment_id} is claimed elsewhere or no longer open; skipping.")
            return None
        return await self.run_claimed(enrollment, token, max_actions)

    async def run_claimed(self, enrollment: Enrollment, token: str, max_actions: Optional[int] = None) -> Optional[Enrollment]:
        """Runs an enrollment the caller has already claimed with `token`."""
        try:
            return await self._run(enrollment, token, max_actions)
        except ConcurrencyConflict as e:
            logger.warning(f"Stopped advancing enrollment {enrollment.id}: {e}")
            return None

    # ------------------------------------------------------------------
    # Interpreter loop

    async def _run(self, enrollment: Enrollment, token: str, max_actions: Optional[int]) -> Enrollment:
        automation = await asyncio.to_thread(
            self.automation_client.get_version, enrollment.automation_id, enrollment.automation_version
        )
        if automation is None:
            await self._fail(enrollment, token, None, f"Automation {enrollment.automation_id} v{enrollment.automation_version} not found")
            return enrollment

        if enrollment.status == EnrollmentStatus.WAITING:
            resumed = await self._resume(enrollment, automation, token)
            if not resumed:
                return enrollment

        steps_run = 0
        actions_run = 0
        while enrollment.status == EnrollmentStatus.ACTIVE:
            if max_actions is not None and actions_run >= max_actions:
                break
            if steps_run >= self.settings.max_steps_per_advance:
                await self._fail(enrollment, token, None, f"Exceeded {self.settings.max_steps_per_advance} steps in one advance")
                return enrollment

            step = automation.get_step(enrollment.current_step_id)
            if step is None:
                await self._fail(enrollment, token, None, f"Step '{enrollment.current_step_id}' not found in automation")
                return enrollment

            kind = StepKind(step.kind)
            ctx = StepContext(enrollment=enrollment, automation=automation, step=step, now=self.clock())
            try:
                next_step_id = await self._handlers[kind](ctx)
            except ConcurrencyConflict:
                raise
            except Exception as e:
                logger.error(f"Step '{step.id}' ({kind.value}) failed for enrollment {enrollment.id}: {e}")
                logger.debug(traceback.format_exc())
                await self._log(ctx, StepOutcome.FAILED, error=str(e))
                await self._fail(enrollment, token, step.id, str(e))
                return enrollment

            steps_run += 1
            if kind in ACTION_KINDS:
                actions_run += 1
            if enrollment.status == EnrollmentStatus.ACTIVE:
                enrollment.current_step_id = next_step_id
            enrollment.last_advanced_at = ctx.now
            await self._persist(enrollment, token)

        await self._release(enrollment, token)
        return enrollment

    async def _resume(self, enrollment: Enrollment, automation: Automation, token: str) -> bool:
        """
        Wakes a waiting enrollment. Returns True when it is active again and
        the loop should continue, False when it stays waiting or terminated.
        """
        now = self.clock()
        step = automation.get_step(enrollment.current_step_id)
        if not isinstance(step, WaitStep) or enrollment.wait_state is None:
            await self._fail(enrollment, token, enrollment.current_step_id, "Waiting enrollment is not on a wait step")
            return False

        if enrollment.resumes_at is not None and enrollment.resumes_at > now:
            await self._release(enrollment, token)
            return False

        ctx = StepContext(enrollment=enrollment, automation=automation, step=step, now=now)
        next_step_id = step.next

        if step.wait_type == WaitType.UNTIL_CONDITION:
            try:
                ctx.lead = await self._fresh_lead(enrollment.lead_id)
            except LeadNotFoundError as e:
                await self._log(ctx, StepOutcome.FAILED, error=str(e))
                await self._fail(enrollment, token, step.id, str(e))
                return False
            matched = self.condition_evaluator.safe_evaluate_groups(
                step.condition_groups, step.evaluation_mode, ctx.lead.attributes(), now
            )
            if not matched:
                rearmed = self.wait_calculator.next_poll(step, enrollment.wait_state, now)
                if rearmed is not None:
                    enrollment.wait_state = rearmed
                    enrollment.resumes_at = rearmed.due_at
                    await self._release(enrollment, token)
                    return False
                await self._log(ctx, StepOutcome.COMPLETED, {"timed_out": True, "next": step.timeout_next})
                if step.timeout_next is None:
                    enrollment.terminate(EnrollmentStatus.EXITED, "wait_timeout", now)
                    await self._release(enrollment, token)
                    return False
                next_step_id = step.timeout_next

        enrollment.status = EnrollmentStatus.ACTIVE
        enrollment.wait_state = None
        enrollment.resumes_at = None
        enrollment.current_step_id = next_step_id
        enrollment.last_advanced_at = now
        await self._persist(enrollment, token)
        return True

    # ------------------------------------------------------------------
    # Persistence helpers

    async def _persist(self, enrollment: Enrollment, token: str):
        if not await self.store.save(enrollment, token):
            raise ConcurrencyConflict(f"Lost claim on enrollment {enrollment.id}")

    async def _release(self, enrollment: Enrollment, token: str):
        enrollment.claim_token = None
        enrollment.claimed_at = None
        if not await self.store.save(enrollment, token):
            raise ConcurrencyConflict(f"Lost claim on enrollment {enrollment.id} before release")

    async def _fail(self, enrollment: Enrollment, token: str, step_id: Optional[str], error: str):
        logger.error(f"Enrollment {enrollment.id} failed at step '{step_id}': {error}")
        enrollment.terminate(EnrollmentStatus.FAILED, None, self.clock())
        enrollment.error = error
        await self._release(enrollment, token)

    async def _log(self, ctx: StepContext, outcome: StepOutcome, result: Optional[Dict[str, Any]] = None, error: Optional[str] = None):
        await self.store.append_log(StepExecutionLog(
            enrollment_id=ctx.enrollment.id,
            automation_id=ctx.enrollment.automation_id,
            lead_id=ctx.enrollment.lead_id,
            step_id=ctx.step.id,
            step_kind=ctx.step.kind,
            outcome=outcome,
            result=result or {},
            error=error,
            timestamp=ctx.now,
        ))

    async def _fresh_lead(self, lead_id: str) -> Lead:
        lead = await asyncio.to_thread(self.lead_client.get, lead_id)
        if lead is None:
            raise LeadNotFoundError(f"Lead {lead_id} not found")
        return lead

    async def _update_lead_record(self, ctx: StepContext, updates: Dict[str, Any]) -> Dict[str, Any]:
        if ctx.test_mode:
            return {"test_mode": True, "updates": updates}
        updated = await asyncio.to_thread(self.lead_client.update, ctx.enrollment.lead_id, updates)
        if updated is None:
            raise StepExecutionError(f"Updating lead {ctx.enrollment.lead_id} failed", step_id=ctx.step.id)
        return {"updates": updates}

    # ------------------------------------------------------------------
    # Control-flow steps

    async def _trigger(self, ctx: StepContext) -> Optional[str]:
        return ctx.step.next

    async def _condition(self, ctx: StepContext) -> Optional[str]:
        step = ctx.step
        ctx.lead = await self._fresh_lead(ctx.enrollment.lead_id)
        matched = self.condition_evaluator.safe_evaluate_groups(
            step.condition_groups, step.evaluation_mode, ctx.lead.attributes(), ctx.now
        )
        next_step_id = step.true_next if matched else step.false_next
        await self._log(ctx, StepOutcome.COMPLETED, {"matched": matched, "next": next_step_id})
        return next_step_id

    async def _split(self, ctx: StepContext) -> Optional[str]:
        step = ctx.step
        enrollment = ctx.enrollment
        variant_name = enrollment.variant_assignments.get(step.id) or self.assign_variant(
            enrollment.lead_id, enrollment.automation_id, step
        )
        variant = next((v for v in step.variants if v.name == variant_name), None)
        if variant is None:
            raise StepExecutionError(f"Split '{step.id}' has no variant '{variant_name}'", step_id=step.id)
        enrollment.variant_assignments[step.id] = variant.name
        await self._log(ctx, StepOutcome.COMPLETED, {"variant": variant.name, "next": variant.next})
        return variant.next

    @staticmethod
    def assign_variant(lead_id: str, automation_id: str, step) -> str:
        """Stable variant for (lead, automation, step): a hash bucket walked against cumulative percentages."""
        bucket = IdempotencyKey.bucket(lead_id, automation_id, step.id, buckets=100)
        cumulative = 0
        for variant in step.variants:
            cumulative += variant.percentage
            if bucket < cumulative:
                return variant.name
        return step.variants[-1].name

    async def _wait(self, ctx: StepContext) -> Optional[str]:
        step = ctx.step
        if step.wait_type == WaitType.UNTIL_CONDITION:
            ctx.lead = await self._fresh_lead(ctx.enrollment.lead_id)
            if self.condition_evaluator.safe_evaluate_groups(
                step.condition_groups, step.evaluation_mode, ctx.lead.attributes(), ctx.now
            ):
                await self._log(ctx, StepOutcome.COMPLETED, {"waited": False, "matched": True})
                return step.next

        state = self.wait_calculator.start(step, ctx.now)
        if state is None:
            await self._log(ctx, StepOutcome.COMPLETED, {"waited": False})
            return step.next
        enrollment = ctx.enrollment
        enrollment.status = EnrollmentStatus.WAITING
        enrollment.wait_state = state
        enrollment.resumes_at = state.due_at
        await self._log(ctx, StepOutcome.COMPLETED, {
            "wait_type": step.wait_type.value,
            "resumes_at": state.due_at.isoformat(),
        })
        logger.info(f"Enrollment {enrollment.id} waiting on '{step.id}' until {state.due_at.isoformat()}")
        return None

    async def _go_to_workflow(self, ctx: StepContext) -> Optional[str]:
        step = ctx.step
        enrollment = ctx.enrollment
        if self.transfer is None:
            raise StepExecutionError("No transfer handler configured for go-to-workflow", step_id=step.id)

        enrollment.terminate(EnrollmentStatus.EXITED, EndReason.TRANSFERRED.value, ctx.now)
        enrollment.metadata["transferred_to"] = step.target_automation_id
        await self._log(ctx, StepOutcome.COMPLETED, {"target_automation_id": step.target_automation_id})
        # The source run must be closed before the target enroll checks for open runs.
        await self._persist(enrollment, enrollment.claim_token)

        target = await self.transfer(step.target_automation_id, enrollment, step.preserve_history)
        if target is None:
            logger.warning(
                f"Lead {enrollment.lead_id} was not enrolled in {step.target_automation_id} after transfer"
            )
        return None

    async def _end_workflow(self, ctx: StepContext) -> Optional[str]:
        step = ctx.step
        completed = step.reason in (EndReason.COMPLETED, EndReason.GOAL_ACHIEVED)
        reason = step.custom_reason if step.reason == EndReason.CUSTOM and step.custom_reason else step.reason.value

        result: Dict[str, Any] = {"reason": reason}
        if step.update_lead_on_exit and step.exit_status:
            result["lead_update"] = await self._update_lead_record(ctx, {"status": step.exit_status})

        ctx.enrollment.terminate(
            EnrollmentStatus.COMPLETED if completed else EnrollmentStatus.EXITED, reason, ctx.now
        )
        result["status"] = ctx.enrollment.status.value
        await self._log(ctx, StepOutcome.COMPLETED, result)
        return None

    # ------------------------------------------------------------------
    # Action steps

    def _as_action(self, handler: Callable[[StepContext], Awaitable[Dict[str, Any]]]):
        async def run(ctx: StepContext) -> Optional[str]:
            ctx.lead = await self._fresh_lead(ctx.enrollment.lead_id)
            result = await handler(ctx)
            outcome = StepOutcome.SKIPPED if ctx.test_mode else StepOutcome.COMPLETED
            await self._log(ctx, outcome, result)
            return ctx.step.next
        return run

    def _context(self, ctx: StepContext) -> Dict[str, Any]:
        return self.template_renderer.build_context(ctx.lead)

    async def _send_message(self, ctx: StepContext) -> Dict[str, Any]:
        step, lead = ctx.step, ctx.lead
        context = self._context(ctx)
        body = self.template_renderer.render(step.content, context)
        subject = self.template_renderer.render(step.subject, context) if step.subject else None

        if step.channel == MessageChannel.EMAIL:
            recipients = [lead.email]
        elif step.channel in (MessageChannel.SMS, MessageChannel.WHATSAPP):
            recipients = [lead.phone]
            if step.include_opt_out and step.opt_out_message:
                body = f"{body}\n\n{step.opt_out_message}"
        elif step.recipient_type == "lead_advisor":
            recipients = [lead.assigned_to]
        elif step.recipient_type == "specific":
            recipients = list(step.specific_recipients)
        else:
            recipients = [lead.user_id]

        recipients = [r for r in recipients if r]
        if not recipients:
            raise StepExecutionError(f"Lead {lead.id} has no {step.channel.value} recipient", step_id=step.id)

        result: Dict[str, Any] = {"channel": step.channel.value, "recipients": recipients}
        if ctx.test_mode:
            result.update({"test_mode": True, "subject": subject})
            return result

        message_ids: List[Optional[str]] = []
        for recipient in recipients:
            sent = await self.dispatcher.send(OutboundMessage(
                channel=step.channel,
                to=recipient,
                subject=subject,
                body=body,
                template_id=step.template_id,
                from_email=step.from_email,
                from_name=step.from_name,
                reply_to=step.reply_to,
                metadata={"lead_id": lead.id, "automation_id": ctx.enrollment.automation_id},
            ))
            if not sent.success:
                raise StepExecutionError(
                    f"{step.channel.value} to {recipient} failed: {sent.error}", step_id=step.id
                )
            message_ids.append(sent.provider_message_id)
        result["provider_message_ids"] = message_ids

        if step.channel != MessageChannel.NOTIFICATION:
            await asyncio.to_thread(self.lead_client.update, lead.id, {"last_contacted_at": ctx.now.isoformat()})
        return result

    async def _update_lead(self, ctx: StepContext) -> Dict[str, Any]:
        step, lead = ctx.step, ctx.lead
        if step.update_type == "status":
            updates = {"status": step.new_status}
        elif step.update_type == "tags":
            if step.tags_action == "replace":
                tags = list(step.tags)
            elif step.tags_action == "remove":
                tags = [tag for tag in lead.tags if tag not in step.tags]
            else:
                tags = lead.tags + [tag for tag in step.tags if tag not in lead.tags]
            updates = {"tags": tags}
        elif step.update_type == "score":
            updates = {"lead_score": (lead.lead_score or 0) + step.score_change}
        elif step.update_type == "priority":
            updates = {"priority": step.priority}
        elif step.update_type == "source":
            updates = {"source": step.source}
        elif step.update_type == "program":
            updates = {"program_interest": step.program_interest}
        else:
            updates = {"custom_fields": {**lead.custom_fields, **step.custom_fields}}
        return await self._update_lead_record(ctx, updates)

    async def _assign_advisor(self, ctx: StepContext) -> Dict[str, Any]:
        step, lead = ctx.step, ctx.lead
        if step.assignment_method == "specific":
            advisor_id = step.specific_advisor_id
        else:
            advisor_id = await asyncio.to_thread(self.lead_client.pick_advisor, step.assignment_method, step.team_id)
        if not advisor_id:
            raise StepExecutionError(f"No advisor available for lead {lead.id}", step_id=step.id)

        result = await self._update_lead_record(ctx, {"assigned_to": advisor_id})
        result["advisor_id"] = advisor_id
        if step.notify_advisor and not ctx.test_mode:
            notified = await self.dispatcher.send(OutboundMessage(
                channel=MessageChannel.NOTIFICATION,
                to=advisor_id,
                subject="New lead assigned",
                body=f"{lead.full_name or lead.email or lead.id} has been assigned to you.",
                metadata={"type": "lead_assigned", "lead_id": lead.id},
            ))
            # The assignment itself succeeded; a lost notification is only logged.
            if not notified.success:
                logger.warning(f"Advisor {advisor_id} was not notified about lead {lead.id}: {notified.error}")
            result["advisor_notified"] = notified.success
        return result

    async def _change_stage(self, ctx: StepContext) -> Dict[str, Any]:
        step, lead = ctx.step, ctx.lead
        if step.stage_type == "specific":
            if not step.new_stage:
                raise StepExecutionError("change-stage needs a target stage", step_id=step.id)
            new_stage = step.new_stage
        else:
            position = ENROLLMENT_STAGES.index(lead.stage) if lead.stage in ENROLLMENT_STAGES else 0
            offset = step.advance_by if step.stage_type == "advance" else -step.advance_by
            position = max(0, min(len(ENROLLMENT_STAGES) - 1, position + offset))
            new_stage = ENROLLMENT_STAGES[position]
        result = await self._update_lead_record(ctx, {"stage": new_stage})
        result["previous_stage"] = lead.stage
        return result

    def _assignee(self, ctx: StepContext, assign_to: str, specific: Optional[str]) -> Optional[str]:
        if assign_to == "lead_advisor":
            return ctx.lead.assigned_to
        if assign_to == "specific":
            return specific
        if assign_to == "creator":
            return ctx.automation.owner_id
        return None

    async def _create_task(self, ctx: StepContext) -> Dict[str, Any]:
        step = ctx.step
        context = self._context(ctx)
        task = {
            "title": self.template_renderer.render(step.task_title, context),
            "description": self.template_renderer.render(step.task_description, context),
            "task_type": step.task_type,
            "priority": step.priority,
            "due_date": (ctx.now + timedelta(days=step.due_in_days)).isoformat(),
            "assigned_to": self._assignee(ctx, step.assign_to, step.specific_assignee),
            "lead_id": ctx.lead.id,
            "automation_id": ctx.enrollment.automation_id,
            "enrollment_id": ctx.enrollment.id,
        }
        if ctx.test_mode:
            return {"test_mode": True, "task": task}
        created = await asyncio.to_thread(self.task_client.create_task, task)
        if created is None:
            raise StepExecutionError(f"Creating task '{task['title']}' failed", step_id=step.id)
        return {"task_id": created.get("id"), "assigned_to": task["assigned_to"]}

    async def _create_calendar_event(self, ctx: StepContext) -> Dict[str, Any]:
        step, lead = ctx.step, ctx.lead
        context = self._context(ctx)
        starts_at = ctx.now + step.schedule_in.to_timedelta()
        attendees = []
        if step.invite_advisor and lead.assigned_to:
            attendees.append({"type": "advisor", "id": lead.assigned_to})
        if step.invite_lead and lead.email:
            attendees.append({"type": "lead", "email": lead.email})
        event = {
            "title": self.template_renderer.render(step.event_title, context),
            "description": self.template_renderer.render(step.event_description, context),
            "event_type": step.event_type,
            "start_time": starts_at.isoformat(),
            "end_time": (starts_at + timedelta(minutes=step.duration_minutes)).isoformat(),
            "location_type": step.location_type,
            "meeting_link": step.meeting_link,
            "attendees": attendees,
            "lead_id": lead.id,
        }
        if ctx.test_mode:
            return {"test_mode": True, "event": event}
        created = await asyncio.to_thread(self.task_client.create_calendar_event, event)
        if created is None:
            raise StepExecutionError(f"Creating calendar event '{event['title']}' failed", step_id=step.id)
        return {"event_id": created.get("id"), "start_time": event["start_time"]}

    async def _webhook(self, ctx: StepContext) -> Dict[str, Any]:
        step, lead = ctx.step, ctx.lead
        context = self._context(ctx)
        body = self.template_renderer.render_value(step.payload, context)
        body.update({
            "automation_id": ctx.enrollment.automation_id,
            "enrollment_id": ctx.enrollment.id,
            "step_id": step.id,
        })
        if step.include_lead_data:
            body["lead"] = lead.model_dump(mode="json")
        headers = self.template_renderer.render_value(step.headers, context)
        url = self.template_renderer.render(step.url, context)

        if ctx.test_mode:
            return {"test_mode": True, "method": step.method, "url": url}

        async def call() -> Dict[str, Any]:
            return await asyncio.to_thread(self.webhook_client.call, step.method, url, headers, body)

        attempts = 1 + step.max_retries if step.retry_on_failure else 1
        send = RetryManager.with_retry(
            max_attempts=attempts,
            base_delay=self.settings.retry_base_delay_seconds,
            max_delay=self.settings.retry_max_delay_seconds,
            retry_on=(WebhookError,),
        )(call)
        response = await send()
        return {"method": step.method, "url": url, "status_code": response["status_code"]}

    async def _list_add(self, ctx: StepContext) -> Dict[str, Any]:
        if ctx.test_mode:
            return {"test_mode": True, "list_id": ctx.step.list_id}
        if not await asyncio.to_thread(self.list_client.add_member, ctx.step.list_id, ctx.lead.id):
            raise StepExecutionError(f"Adding lead to list {ctx.step.list_id} failed", step_id=ctx.step.id)
        return {"list_id": ctx.step.list_id}

    async def _list_remove(self, ctx: StepContext) -> Dict[str, Any]:
        if ctx.test_mode:
            return {"test_mode": True, "list_id": ctx.step.list_id}
        if not await asyncio.to_thread(self.list_client.remove_member, ctx.step.list_id, ctx.lead.id):
            raise StepExecutionError(f"Removing lead from list {ctx.step.list_id} failed", step_id=ctx.step.id)
        return {"list_id": ctx.step.list_id}

    async def _schedule_followup(self, ctx: StepContext) -> Dict[str, Any]:
        step = ctx.step
        scheduled_for = ctx.now + timedelta(days=step.days_until)
        followup = {
            "lead_id": ctx.lead.id,
            "followup_type": step.followup_type,
            "scheduled_for": scheduled_for.isoformat(),
            "notes": self.template_renderer.render(step.notes, self._context(ctx)),
            "assigned_to": self._assignee(ctx, step.assign_to, step.specific_assignee),
        }
        if ctx.test_mode:
            return {"test_mode": True, "followup": followup}
        created = await asyncio.to_thread(self.task_client.create_followup, followup)
        if created is None:
            raise StepExecutionError("Scheduling follow-up failed", step_id=step.id)
        await asyncio.to_thread(self.lead_client.update, ctx.lead.id, {"next_follow_up_at": followup["scheduled_for"]})
        return {"followup_id": created.get("id"), "scheduled_for": followup["scheduled_for"]}
