"""Task operations exposed to agents, operators and the webhook layer."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import structlog

from outreach.domain.context import TaskContext
from outreach.domain.errors import InvalidTransitionError, MissingContactError, MissingDraftError
from outreach.domain.models import ConversationEntry, Task
from outreach.domain.types import ConversationRole, TaskOutcome, TaskStatus
from outreach.guardrails.policy import Guardrails
from outreach.llm.follow_up import CadencePolicy
from outreach.notifications import Notifier
from outreach.scheduler.sending import OutreachSender
from outreach.state_machine import TaskEvent, TaskStateMachine
from outreach.store.conversation import ConversationLog
from outreach.store.serializers import utc_now
from outreach.store.tasks import TaskStore

logger = structlog.get_logger()


class TaskService:
    """Create tasks and apply operator actions to them.

    Every status change goes through ``TaskStore.transition`` and is
    therefore validated by the state machine and guarded on the status
    last read.
    """

    def __init__(
        self,
        tasks: TaskStore,
        conversation: ConversationLog,
        sender: OutreachSender,
        guardrails: Guardrails,
        *,
        policy: CadencePolicy | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._tasks = tasks
        self._conversation = conversation
        self._sender = sender
        self._guardrails = guardrails
        self._policy = policy or CadencePolicy()
        self._notifier = notifier
        self._clock = clock

    def create_task(
        self,
        *,
        account_id: str,
        task_type: str,
        goal: str = "",
        context: TaskContext | dict[str, Any] | None = None,
        contact_id: str | None = None,
        contact_email: str | None = None,
        contact_name: str | None = None,
        assigned_agent: str = "retention",
        requires_approval: bool = False,
    ) -> Task:
        """Create an ``open`` task, parked for approval when required.

        Raises:
            MissingContactError: Neither a contact email nor a contact id.
            DuplicateTaskError: If a live task already exists for the
                contact and task type.
        """
        with self._tasks.transaction():
            task = self._tasks.create(
                account_id=account_id,
                task_type=task_type,
                goal=goal,
                context=context,
                contact_id=contact_id,
                contact_email=contact_email,
                contact_name=contact_name,
                assigned_agent=assigned_agent,
                requires_approval=requires_approval,
            )
            if requires_approval:
                task = self._tasks.transition(task, TaskEvent.REQUEST_APPROVAL)
        return task

    def approve_task(self, task_id: str, *, message: str | None = None) -> Task:
        """Approve a parked task and send its draft (or *message*).

        An opted-out contact cancels the task instead of sending.

        Raises:
            TaskNotFoundError: Unknown task.
            InvalidTransitionError: The task is not awaiting approval.
            MissingDraftError: Neither *message* nor a draft is available.
            MissingContactError: The task has no email address to send to.
        """
        task = self._tasks.require(task_id)
        if task.status != TaskStatus.AWAITING_APPROVAL:
            raise InvalidTransitionError(task.status, TaskEvent.APPROVE)
        return self._send_first_touch(task, TaskEvent.APPROVE, message)

    def dismiss_task(self, task_id: str, reason: str | None = None) -> Task:
        """Operator rejects a parked draft."""
        task = self._tasks.require(task_id)
        return self._tasks.transition(
            task,
            TaskEvent.DISMISS,
            outcome=TaskOutcome.NOT_APPLICABLE,
            outcome_reason=reason or "dismissed",
        )

    def record_external_signal(
        self,
        task_id: str,
        outcome: TaskOutcome = TaskOutcome.RECOVERED,
        reason: str | None = None,
    ) -> Task:
        """Resolve a live task because the member re-engaged elsewhere."""
        task = self._tasks.require(task_id)
        return self._tasks.transition(
            task,
            TaskEvent.RESOLVE,
            outcome=outcome,
            outcome_reason=reason or "external_signal",
        )

    def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        outcome: TaskOutcome | None = None,
        reason: str | None = None,
        message: str | None = None,
    ) -> Task:
        """Operator moves a task to *status*.

        Moving a not-yet-sent task to ``awaiting_reply`` sends its draft.

        Raises:
            InvalidTransitionError: If *status* is not reachable.
        """
        task = self._tasks.require(task_id)
        if status == task.status:
            raise InvalidTransitionError(task.status, f"-> {status}")

        event = TaskStateMachine(task.status).event_for(status)
        if event in (TaskEvent.SEND, TaskEvent.APPROVE):
            return self._send_first_touch(task, TaskEvent(event), message, issued_by="operator")

        next_action_at = None
        if event == TaskEvent.RESUME:
            next_action_at = self._clock() + timedelta(days=self._policy.default_next_check_days(1))
        if status == TaskStatus.CANCELLED and outcome is None:
            outcome = TaskOutcome.NOT_APPLICABLE

        updated = self._tasks.transition(
            task,
            event,
            next_action_at=next_action_at,
            outcome=outcome,
            outcome_reason=reason,
        )
        if updated.status == TaskStatus.ESCALATED and self._notifier is not None:
            self._notifier.notify_task_escalated(updated, reason or "Escalated by operator")
        return updated

    def append_conversation(
        self,
        task_id: str,
        role: ConversationRole,
        content: str,
        *,
        agent_name: str | None = None,
        evaluation: dict[str, Any] | None = None,
    ) -> ConversationEntry:
        self._tasks.require(task_id)
        return self._conversation.append(
            task_id, role, content, agent_name=agent_name, evaluation=evaluation
        )

    def get_conversation_history(self, task_id: str) -> list[ConversationEntry]:
        self._tasks.require(task_id)
        return self._conversation.history(task_id)

    def _send_first_touch(
        self,
        task: Task,
        event: TaskEvent,
        message: str | None,
        *,
        issued_by: str = "operator",
    ) -> Task:
        body = (message or task.context.draft_message or "").strip()
        if not body:
            raise MissingDraftError(task.id)
        if not task.contact_email:
            raise MissingContactError(task.id)

        if self._guardrails.is_opted_out(task.account_id, task.contact_email):
            logger.info("task_cancelled_opted_out", task_id=task.id)
            return self._tasks.transition(
                task,
                TaskEvent.OPT_OUT,
                outcome=TaskOutcome.NOT_APPLICABLE,
                outcome_reason="opted_out",
            )

        now = self._clock()
        with self._tasks.transaction():
            sent = self._tasks.transition(
                task,
                event,
                next_action_at=now + timedelta(days=self._policy.default_next_check_days(1)),
                approved_at=now if event == TaskEvent.APPROVE else None,
            )
            command = self._sender.enqueue_touch(sent, body, issued_by=issued_by)
        # Quiet hours and mailer failures are handled by the command bus.
        self._sender.dispatch(command)
        return sent
