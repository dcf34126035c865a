"""Turn a task plus a message body into a dispatched ``SendEmail`` command.

Every send path (autopilot, follow-up, operator approval, reply) goes
through ``OutreachSender`` so that idempotency keys and payload shape are
built in one place.  Callers enqueue inside the same store transaction as
the task transition that accounts for the send, and dispatch after it
commits: a task never reaches ``awaiting_reply`` without a durable command.

Outreach touches are keyed ``<task_id>:touch:<n>`` and counted against the
touch ceiling; replies to a member are keyed on the member's conversation
entry and are not.
"""

from __future__ import annotations

from typing import Any

import structlog

from outreach.commands.bus import CommandBus, DispatchResult
from outreach.domain.errors import MissingContactError
from outreach.domain.models import Command, Task
from outreach.domain.types import CommandType

logger = structlog.get_logger()

DEFAULT_SUBJECTS: dict[str, str] = {
    "churn_risk": "We miss you",
    "win_back": "We'd love to have you back",
    "payment_failed": "A quick note about your membership payment",
    "onboarding": "Welcome! Checking in",
}
GENERIC_SUBJECT = "Checking in"


def subject_for(task: Task, *, follow_up: bool = False) -> str:
    """Subject line for *task*; follow-ups and replies stay in the same thread."""
    subject = task.context.message_subject or DEFAULT_SUBJECTS.get(task.task_type, GENERIC_SUBJECT)
    if follow_up and not subject.lower().startswith("re:"):
        return f"Re: {subject}"
    return subject


def touch_key_prefix(task_id: str) -> str:
    return f"{task_id}:touch:"


class OutreachSender:
    """Enqueue and dispatch outbound email for a task.

    The first dispatch happens in the caller's tick or request; any failure
    is left to the command bus retry policy.
    """

    def __init__(self, bus: CommandBus) -> None:
        self._bus = bus

    def touches_sent(self, task_id: str) -> int:
        """Outreach touches that are live or delivered (dead letters excluded)."""
        return self._bus.store.count_for_task(
            task_id, CommandType.SEND_EMAIL, key_prefix=touch_key_prefix(task_id)
        )

    def next_touch_key(self, task_id: str) -> str:
        # Dead-lettered touches keep their number so a retry never collides.
        used = self._bus.store.count_for_task(
            task_id,
            CommandType.SEND_EMAIL,
            key_prefix=touch_key_prefix(task_id),
            include_dead_letters=True,
        )
        return f"{touch_key_prefix(task_id)}{used + 1}"

    def enqueue_touch(
        self,
        task: Task,
        body: str,
        *,
        follow_up: bool = False,
        issued_by: str = "scheduler",
    ) -> Command:
        """Enqueue an outreach touch (first message or follow-up)."""
        return self.enqueue(
            task,
            body,
            idempotency_key=self.next_touch_key(task.id),
            subject=subject_for(task, follow_up=follow_up),
            issued_by=issued_by,
        )

    def enqueue(
        self,
        task: Task,
        body: str,
        *,
        idempotency_key: str,
        subject: str | None = None,
        issued_by: str = "scheduler",
    ) -> Command:
        """Persist a pending ``SendEmail`` for *task*.

        Raises:
            MissingContactError: The task has no email address to send to.
        """
        if not task.contact_email:
            raise MissingContactError(task.id)
        payload: dict[str, Any] = {
            "to": task.contact_email,
            "subject": subject or subject_for(task),
            "body": body,
            "account_id": task.account_id,
            "task_id": task.id,
            "reply_token": task.id,
            "recipient_name": task.contact_name,
            "agent_name": task.assigned_agent,
        }
        return self._bus.enqueue(
            CommandType.SEND_EMAIL,
            payload,
            account_id=task.account_id,
            task_id=task.id,
            issued_by=issued_by,
            idempotency_key=idempotency_key,
        )

    def dispatch(self, command: Command) -> DispatchResult | None:
        """Dispatch an enqueued command right away.

        Returns:
            The dispatch result, or ``None`` when the command is not
            currently due (already sent, or claimed by another caller).
        """
        result = self._bus.dispatch(command.id)
        logger.info(
            "outreach_send_dispatched",
            task_id=command.task_id,
            command_id=command.id,
            idempotency_key=command.idempotency_key,
            outcome=result.outcome.value if result is not None else None,
        )
        return result
