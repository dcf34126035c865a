"""Inbound reply handling.

The reply token carried in the ``reply+<token>@`` address is the task id.
A member's reply always lands in the conversation log; only threads that
are awaiting a reply are handed to the reply evaluator.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from enum import StrEnum

import structlog
from pydantic import BaseModel

from outreach.domain.errors import StaleTaskError
from outreach.domain.models import Task
from outreach.domain.types import ConversationRole, TaskOutcome, TaskStatus
from outreach.email.parser import extract_latest_reply
from outreach.guardrails.policy import Guardrails
from outreach.llm.follow_up import CadencePolicy
from outreach.llm.models import ReplyAction, ReplyDecision
from outreach.llm.reply import ReplyEvaluator
from outreach.notifications import Notifier
from outreach.scheduler.sending import OutreachSender, subject_for
from outreach.state_machine import TERMINAL_STATES, TaskEvent
from outreach.store.accounts import AccountStore
from outreach.store.conversation import ConversationLog
from outreach.store.serializers import utc_now
from outreach.store.tasks import TaskStore

logger = structlog.get_logger()


class ReplyStatus(StrEnum):
    PROCESSED = "processed"
    LOGGED = "logged"
    SKIPPED = "skipped"


class ReplyResult(BaseModel, frozen=True):
    """What the handler did with one inbound reply."""

    status: ReplyStatus
    task_id: str | None = None
    action: ReplyAction | None = None
    reason: str | None = None


class ReplyHandler:
    """Log an inbound member reply and act on the evaluator's decision."""

    def __init__(
        self,
        *,
        tasks: TaskStore,
        conversation: ConversationLog,
        accounts: AccountStore,
        evaluator: ReplyEvaluator,
        sender: OutreachSender,
        guardrails: Guardrails,
        policy: CadencePolicy | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._tasks = tasks
        self._conversation = conversation
        self._accounts = accounts
        self._evaluator = evaluator
        self._sender = sender
        self._guardrails = guardrails
        self._policy = policy or CadencePolicy()
        self._notifier = notifier
        self._clock = clock

    def handle(self, reply_token: str, body: str, from_email: str | None = None) -> ReplyResult:
        log = logger.bind(task_id=reply_token, from_email=from_email)
        task = self._tasks.get(reply_token)
        if task is None:
            log.warning("reply_skipped", reason="unknown_task")
            return ReplyResult(status=ReplyStatus.SKIPPED, reason="unknown_task")
        if task.status in TERMINAL_STATES:
            log.info("reply_skipped", reason="task_closed", status=task.status.value)
            return ReplyResult(status=ReplyStatus.SKIPPED, task_id=task.id, reason="task_closed")

        text = extract_latest_reply(body)
        if not text:
            log.info("reply_skipped", reason="empty_reply")
            return ReplyResult(status=ReplyStatus.SKIPPED, task_id=task.id, reason="empty_reply")

        member_entry = self._conversation.append(task.id, ConversationRole.MEMBER, text)

        if task.status != TaskStatus.AWAITING_REPLY:
            log.info("reply_logged", status=task.status.value)
            return ReplyResult(status=ReplyStatus.LOGGED, task_id=task.id)

        # The reply wins over any follow-up already scheduled or leased.
        cleared = self._tasks.clear_next_action(task.id)
        if cleared is None:
            log.info("reply_logged", reason="status_changed")
            return ReplyResult(status=ReplyStatus.LOGGED, task_id=task.id)

        account = self._accounts.get(cleared.account_id)
        decision = self._evaluator.evaluate(
            cleared,
            self._conversation.history(cleared.id),
            account_name=cleared.context.account_name or (account.name if account else None),
        )
        self._conversation.append(
            cleared.id,
            ConversationRole.SYSTEM,
            f"Reply evaluation: {decision.action.value}"
            + (f" ({decision.reason})" if decision.reason else ""),
            agent_name=cleared.assigned_agent,
            evaluation=decision.model_dump(mode="json"),
        )
        log.info("reply_decided", action=decision.action.value, fallback=decision.fallback)

        try:
            self._apply(cleared, decision, text, member_entry.id)
        except StaleTaskError:
            log.info("reply_decision_superseded", action=decision.action.value)
            return ReplyResult(
                status=ReplyStatus.SKIPPED,
                task_id=task.id,
                action=decision.action,
                reason="concurrent_update",
            )
        return ReplyResult(
            status=ReplyStatus.PROCESSED,
            task_id=task.id,
            action=decision.action,
            reason=decision.reason or None,
        )

    def _apply(
        self, task: Task, decision: ReplyDecision, latest_reply: str, member_entry_id: int
    ) -> None:
        now = self._clock()
        days = self._policy.clamp_days(
            decision.next_check_days or self._policy.default_next_check_days(1)
        )
        match decision.action:
            case ReplyAction.REPLY:
                if self._guardrails.is_opted_out(task.account_id, task.contact_email):
                    self._tasks.transition(
                        task,
                        TaskEvent.OPT_OUT,
                        automated=True,
                        outcome=TaskOutcome.NOT_APPLICABLE,
                        outcome_reason="opted_out",
                    )
                    return
                with self._tasks.transaction():
                    updated = self._tasks.transition(
                        task,
                        TaskEvent.RECEIVE_REPLY,
                        automated=True,
                        next_action_at=now + timedelta(days=days),
                        expected_next_action_at=None,
                    )
                    command = self._sender.enqueue(
                        updated,
                        decision.reply or "",
                        idempotency_key=f"{task.id}:reply:{member_entry_id}",
                        subject=subject_for(task, follow_up=True),
                        issued_by="reply_handler",
                    )
                # Quiet hours defer the command itself; replies skip the daily cap.
                self._sender.dispatch(command)

            case ReplyAction.CLOSE:
                self._tasks.transition(
                    task,
                    TaskEvent.CLOSE,
                    automated=True,
                    outcome=decision.outcome or TaskOutcome.ENGAGED,
                    outcome_reason=decision.reason or None,
                    expected_next_action_at=None,
                )

            case ReplyAction.ESCALATE:
                escalated = self._tasks.transition(
                    task,
                    TaskEvent.ESCALATE,
                    automated=True,
                    outcome_reason=decision.reason or None,
                    expected_next_action_at=None,
                )
                if self._notifier is not None:
                    self._notifier.notify_task_escalated(
                        escalated, decision.reason or "Member reply needs attention", latest_reply
                    )

            case ReplyAction.WAIT:
                self._tasks.transition(
                    task,
                    TaskEvent.WAIT,
                    automated=True,
                    next_action_at=now + timedelta(days=days),
                    expected_next_action_at=None,
                )
