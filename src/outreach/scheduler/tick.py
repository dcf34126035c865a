"""The periodic scheduler tick.

One ``tick()`` is a bounded synchronous batch job:

1. drain due commands through the command bus,
2. send the first message of eligible autopilot tasks,
3. evaluate ``awaiting_reply`` tasks whose follow-up time has passed.

All coordination with overlapping ticks and inbound replies happens through
conditional updates in the stores; the tick holds no state between runs.
Per-task failures are logged and reported in the summary, never raised.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime, timedelta

import structlog
from pydantic import BaseModel, Field

from outreach.commands.bus import CommandBus, DispatchOutcome, DispatchResult
from outreach.domain.errors import StaleTaskError
from outreach.domain.models import Task
from outreach.domain.types import ConversationRole, TaskOutcome
from outreach.guardrails.policy import Guardrails, SendBlock
from outreach.llm.follow_up import FollowUpEvaluator
from outreach.llm.models import FollowUpAction, FollowUpDecision, FollowUpRequest
from outreach.notifications import Notifier
from outreach.observability.metrics import OPEN_THREADS
from outreach.scheduler.sending import OutreachSender
from outreach.state_machine import TaskEvent
from outreach.store.accounts import AccountStore
from outreach.store.conversation import ConversationLog
from outreach.store.serializers import utc_now
from outreach.store.tasks import TaskStore

logger = structlog.get_logger()

# How long a follow-up evaluation holds a task before another tick may retry it.
FOLLOW_UP_LEASE = timedelta(minutes=15)


class TickSummary(BaseModel):
    """Counts reported by one tick."""

    commands_completed: int = 0
    commands_retried: int = 0
    commands_deferred: int = 0
    commands_dead_lettered: int = 0
    sent: int = 0
    queued: int = 0
    skipped: int = 0
    deferred: int = 0
    follow_ups: int = 0
    waited: int = 0
    escalated: int = 0
    closed: int = 0
    cancelled: int = 0
    errors: list[str] = Field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def record_send(self, result: DispatchResult | None) -> None:
        if result is not None and result.outcome == DispatchOutcome.COMPLETED:
            self.sent += 1
        else:
            self.queued += 1


def _days_between(later: datetime, earlier: datetime | None) -> float:
    if earlier is None:
        return 0.0
    return max((later - earlier).total_seconds() / 86400, 0.0)


class Scheduler:
    """Runs ticks over the stores, guardrails and evaluator it is given.

    Args:
        bus: Command bus used to drain and dispatch commands.
        tasks: Task store.
        conversation: Conversation log.
        accounts: Account store (display names for prompts).
        guardrails: Opt-out, quiet-hours and daily-cap checks.
        evaluator: Follow-up evaluator; owns the cadence policy.
        sender: Shared send path.
        notifier: Optional operator alerting for escalations.
        command_batch_size: Commands claimed per tick.
        autopilot_batch_size: Open tasks considered per tick.
        follow_up_batch_size: Due follow-ups considered per tick.
        time_budget_seconds: Soft deadline; no new item starts after it.
        clock: Current UTC time.
        monotonic: Monotonic clock for the deadline.
    """

    def __init__(
        self,
        *,
        bus: CommandBus,
        tasks: TaskStore,
        conversation: ConversationLog,
        accounts: AccountStore,
        guardrails: Guardrails,
        evaluator: FollowUpEvaluator,
        sender: OutreachSender,
        notifier: Notifier | None = None,
        command_batch_size: int = 20,
        autopilot_batch_size: int = 20,
        follow_up_batch_size: int = 10,
        time_budget_seconds: float = 25.0,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._bus = bus
        self._tasks = tasks
        self._conversation = conversation
        self._accounts = accounts
        self._guardrails = guardrails
        self._evaluator = evaluator
        self._sender = sender
        self._notifier = notifier
        self._command_batch_size = command_batch_size
        self._autopilot_batch_size = autopilot_batch_size
        self._follow_up_batch_size = follow_up_batch_size
        self._time_budget = time_budget_seconds
        self._clock = clock
        self._monotonic = monotonic

    def tick(self) -> TickSummary:
        """Run one scheduler pass.

        Raises:
            sqlite3.Error: When the store itself is unusable; the caller
                reports the whole tick as failed.
        """
        summary = TickSummary()
        deadline = self._monotonic() + self._time_budget
        log = logger.bind(tick_started_at=self._clock().isoformat())

        batch = self._bus.process_next(self._command_batch_size, deadline=deadline)
        summary.commands_completed = batch.completed + batch.suppressed
        summary.commands_retried = batch.retried
        summary.commands_deferred = batch.deferred
        summary.commands_dead_lettered = batch.dead_lettered
        summary.errors.extend(batch.errors)

        self._run_autopilot(summary, deadline)
        self._run_follow_ups(summary, deadline)

        OPEN_THREADS.set(self._tasks.count_active())
        log.info("tick_completed", **summary.model_dump(exclude={"errors"}), errors=len(summary.errors))
        return summary

    def _out_of_time(self, deadline: float, stage: str) -> bool:
        if self._monotonic() < deadline:
            return False
        logger.warning("tick_deadline_reached", stage=stage)
        return True

    # ------------------------------------------------------------------
    # Autopilot: first message of open tasks
    # ------------------------------------------------------------------

    def _run_autopilot(self, summary: TickSummary, deadline: float) -> None:
        for task in self._tasks.list_autopilot_candidates(self._autopilot_batch_size):
            if self._out_of_time(deadline, "autopilot"):
                return
            try:
                self._autopilot_one(task, summary)
            except Exception as exc:
                logger.exception("autopilot_task_failed", task_id=task.id)
                summary.errors.append(f"task {task.id}: {exc}")

    def _autopilot_one(self, task: Task, summary: TickSummary) -> None:
        log = logger.bind(task_id=task.id, account_id=task.account_id)
        check = self._guardrails.check_send(task.account_id, task.contact_email)

        if check.block == SendBlock.OPTED_OUT:
            self._cancel_opted_out(task)
            summary.cancelled += 1
            return
        if not check.allowed:
            log.info("autopilot_skipped", reason=check.block)
            summary.skipped += 1
            return

        draft = task.context.draft_message
        if not draft or not draft.strip():
            log.info("autopilot_skipped", reason="no_draft")
            summary.skipped += 1
            return

        now = self._clock()
        policy = self._evaluator.policy
        # The transition is the claim: an overlapping tick loses here.  It
        # commits together with the enqueued command or not at all.
        try:
            with self._tasks.transaction():
                claimed = self._tasks.transition(
                    task,
                    TaskEvent.SEND,
                    automated=True,
                    next_action_at=now + timedelta(days=policy.default_next_check_days(1)),
                )
                command = self._sender.enqueue_touch(claimed, draft)
        except StaleTaskError:
            log.info("autopilot_skipped", reason="claimed_elsewhere")
            summary.skipped += 1
            return

        summary.record_send(self._sender.dispatch(command))

    # ------------------------------------------------------------------
    # Follow-ups: awaiting_reply tasks past their next_action_at
    # ------------------------------------------------------------------

    def _run_follow_ups(self, summary: TickSummary, deadline: float) -> None:
        due = self._tasks.list_due_follow_ups(self._clock(), self._follow_up_batch_size)
        for task in due:
            if self._out_of_time(deadline, "follow_up"):
                return
            try:
                self._follow_up_one(task, summary)
            except StaleTaskError:
                # An inbound reply or another tick changed the task first.
                logger.info("follow_up_superseded", task_id=task.id)
                summary.skipped += 1
            except Exception as exc:
                logger.exception("follow_up_task_failed", task_id=task.id)
                summary.errors.append(f"task {task.id}: {exc}")

    def _follow_up_one(self, task: Task, summary: TickSummary) -> None:
        log = logger.bind(task_id=task.id, account_id=task.account_id)
        original_due = task.next_action_at

        check = self._guardrails.check_send(task.account_id, task.contact_email)
        if check.block == SendBlock.OPTED_OUT:
            self._cancel_opted_out(task, expected_next_action_at=original_due)
            summary.cancelled += 1
            return
        if not check.allowed:
            # next_action_at stays as is; the task is due again next tick.
            log.info("follow_up_deferred", reason=check.block)
            summary.deferred += 1
            return

        now = self._clock()
        leased = self._tasks.reschedule(task, now + FOLLOW_UP_LEASE)
        if leased is None:
            log.info("follow_up_skipped", reason="claimed_elsewhere")
            summary.skipped += 1
            return

        request = self._build_request(leased, now)
        decision = self._evaluator.evaluate(request)
        log.info(
            "follow_up_decided",
            action=decision.action.value,
            fallback=decision.fallback,
            messages_sent=request.messages_sent,
        )
        self._apply(leased, decision, original_due, summary)

    def _build_request(self, task: Task, now: datetime) -> FollowUpRequest:
        history = self._conversation.history(
            task.id, roles=(ConversationRole.AGENT, ConversationRole.MEMBER)
        )
        last_message_at = self._conversation.last_message_at(task.id) or task.created_at
        account = self._accounts.get(task.account_id)
        return FollowUpRequest(
            task_id=task.id,
            task_type=task.task_type,
            account_id=task.account_id,
            account_name=task.context.account_name or (account.name if account else None),
            contact_name=task.display_name,
            contact_email=task.contact_email,
            goal=task.goal,
            member_context=task.context.describe(),
            history=history,
            messages_sent=self._sender.touches_sent(task.id),
            days_since_last_message=_days_between(now, last_message_at),
            days_since_created=_days_between(now, task.created_at),
        )

    def _apply(
        self,
        task: Task,
        decision: FollowUpDecision,
        original_due: datetime | None,
        summary: TickSummary,
    ) -> None:
        lease = task.next_action_at
        now = self._clock()

        match decision.action:
            case FollowUpAction.WAIT:
                self._tasks.transition(
                    task,
                    TaskEvent.WAIT,
                    automated=True,
                    next_action_at=now + timedelta(days=decision.next_check_days or 1),
                    expected_next_action_at=lease,
                )
                summary.waited += 1

            case FollowUpAction.FOLLOW_UP:
                check = self._guardrails.check_send(task.account_id, task.contact_email)
                if not check.allowed:
                    # Guardrail changed while evaluating: hand the task back untouched.
                    self._tasks.reschedule(task, original_due)
                    logger.info("follow_up_deferred", task_id=task.id, reason=check.block)
                    summary.deferred += 1
                    return
                with self._tasks.transaction():
                    updated = self._tasks.transition(
                        task,
                        TaskEvent.FOLLOW_UP,
                        automated=True,
                        next_action_at=now + timedelta(days=decision.next_check_days or 1),
                        expected_next_action_at=lease,
                    )
                    command = self._sender.enqueue_touch(
                        updated, decision.message or "", follow_up=True
                    )
                summary.follow_ups += 1
                summary.record_send(self._sender.dispatch(command))

            case FollowUpAction.ESCALATE:
                escalated = self._tasks.transition(
                    task,
                    TaskEvent.ESCALATE,
                    automated=True,
                    outcome_reason=decision.reason or None,
                    expected_next_action_at=lease,
                )
                summary.escalated += 1
                if self._notifier is not None:
                    self._notifier.notify_task_escalated(escalated, decision.reason)

            case FollowUpAction.CLOSE:
                outcome = decision.outcome or TaskOutcome.UNRESPONSIVE
                self._tasks.transition(
                    task,
                    TaskEvent.TIMEOUT if outcome == TaskOutcome.UNRESPONSIVE else TaskEvent.CLOSE,
                    automated=True,
                    outcome=outcome,
                    outcome_reason=decision.reason or None,
                    expected_next_action_at=lease,
                )
                summary.closed += 1

    def _cancel_opted_out(self, task: Task, **guard: datetime | None) -> Task:
        logger.info("task_cancelled_opted_out", task_id=task.id, account_id=task.account_id)
        return self._tasks.transition(
            task,
            TaskEvent.OPT_OUT,
            automated=True,
            outcome=TaskOutcome.NOT_APPLICABLE,
            outcome_reason="opted_out",
            **guard,
        )
