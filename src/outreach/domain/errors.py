"""Domain-specific exception classes for the outreach engine."""

from __future__ import annotations

from datetime import datetime

from outreach.domain.types import TaskStatus


class OutreachError(Exception):
    """Base class for all domain errors in the outreach engine."""


class InvalidTransitionError(OutreachError):
    """Raised when an invalid task state transition is attempted.

    Attributes:
        current_state: The state the task was in when the transition was attempted.
        event: The event that was rejected.
    """

    def __init__(self, current_state: TaskStatus, event: str) -> None:
        self.current_state = current_state
        self.event = event
        super().__init__(f"Cannot apply event '{event}' in state '{current_state}'")


class DuplicateTaskError(OutreachError):
    """Raised when a second live thread is created for the same contact and task type."""

    def __init__(self, account_id: str, contact: str | None, task_type: str) -> None:
        self.account_id = account_id
        self.contact = contact
        self.task_type = task_type
        super().__init__(
            f"An active {task_type} task already exists for {contact} "
            f"in account {account_id}"
        )


class TaskNotFoundError(OutreachError):
    """Raised when a task id does not match any stored task."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class StaleTaskError(OutreachError):
    """Raised when a conditional task update loses a race with another writer."""

    def __init__(self, task_id: str, expected: TaskStatus) -> None:
        self.task_id = task_id
        self.expected = expected
        super().__init__(f"Task {task_id} is no longer in state '{expected}'")


class CommandNotFoundError(OutreachError):
    """Raised when a command id does not match any stored command."""

    def __init__(self, command_id: str) -> None:
        self.command_id = command_id
        super().__init__(f"Command not found: {command_id}")


class UnknownCommandTypeError(OutreachError):
    """Raised when no executor is registered for a command type."""

    def __init__(self, command_type: str) -> None:
        self.command_type = command_type
        super().__init__(f"No executor registered for command type: {command_type}")


class CommandDeferred(OutreachError):  # noqa: N818
    """Raised by an executor to push a command back without spending an attempt.

    Guardrail deferrals (quiet hours) are expected, not failures.

    Attributes:
        until: Earliest time the command may be attempted again.
        reason: Short machine-readable reason, e.g. ``"quiet_hours"``.
    """

    def __init__(self, until: datetime, reason: str) -> None:
        self.until = until
        self.reason = reason
        super().__init__(f"Deferred until {until.isoformat()}: {reason}")


class MalformedDecisionError(OutreachError):
    """Raised when reasoner output cannot be parsed into a decision."""


class CommandStateError(OutreachError):
    """Raised when an operator action does not apply to the command's status."""

    def __init__(self, command_id: str, status: str, action: str) -> None:
        self.command_id = command_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} command {command_id} in status '{status}'")


class MissingDraftError(OutreachError):
    """Raised when a task must be sent but has no message body."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task {task_id} has no draft message to send")


class MissingContactError(OutreachError):
    """Raised when a task has no contact identity, or no email address to send to."""

    def __init__(self, task_id: str | None = None) -> None:
        self.task_id = task_id
        if task_id is None:
            super().__init__("A task needs a contact_email or a contact_id")
        else:
            super().__init__(f"Task {task_id} has no contact email to send to")


class InvalidCommandPayloadError(OutreachError):
    """Raised by an executor whose command payload can never be executed.

    Retrying cannot fix the payload, so the bus dead-letters the command on
    the first attempt.
    """

    def __init__(self, command_id: str, detail: str) -> None:
        self.command_id = command_id
        self.detail = detail
        super().__init__(f"Command {command_id} has an invalid payload: {detail}")


class OutboundMessageNotFoundError(OutreachError):
    """Raised when the audit row for a command is missing after it was written."""

    def __init__(self, command_id: str) -> None:
        self.command_id = command_id
        super().__init__(f"No outbound message recorded for command {command_id}")
