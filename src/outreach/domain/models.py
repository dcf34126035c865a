"""Pydantic v2 models for the durable records of the outreach engine."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny

from outreach.domain.context import TaskContext
from outreach.domain.types import (
    Channel,
    CommandStatus,
    ConversationRole,
    MessageStatus,
    TaskOutcome,
    TaskStatus,
)


class Command(BaseModel):
    """A durable request to perform one side-effecting action."""

    model_config = ConfigDict(frozen=True)

    id: str
    command_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: CommandStatus = CommandStatus.PENDING
    attempt_count: int = 0
    max_attempts: int = 3
    account_id: str | None = None
    task_id: str | None = None
    issued_by: str = "unknown"
    idempotency_key: str | None = None
    next_attempt_at: datetime
    created_at: datetime
    claimed_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None
    result: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        """Return True once the command is completed or dead-lettered."""
        return self.status in (CommandStatus.COMPLETED, CommandStatus.DEAD_LETTER)


class Task(BaseModel):
    """One outreach thread targeting one contact for one purpose."""

    model_config = ConfigDict(frozen=True)

    id: str
    account_id: str
    task_type: str
    status: TaskStatus = TaskStatus.OPEN
    goal: str = ""
    context: SerializeAsAny[TaskContext]
    contact_id: str | None = None
    contact_email: str | None = None
    contact_name: str | None = None
    assigned_agent: str = "retention"
    requires_approval: bool = False
    next_action_at: datetime | None = None
    outcome: TaskOutcome | None = None
    outcome_reason: str | None = None
    approved_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None = None

    @property
    def display_name(self) -> str:
        """Name used to greet the contact, falling back to the email local part."""
        if self.contact_name:
            return self.contact_name
        if self.contact_email:
            return self.contact_email.split("@")[0]
        return "there"


class ConversationEntry(BaseModel):
    """An append-only row in a task's conversation log."""

    model_config = ConfigDict(frozen=True)

    id: int
    task_id: str
    role: ConversationRole
    content: str
    agent_name: str | None = None
    evaluation: dict[str, Any] | None = None
    created_at: datetime


class OutboundMessage(BaseModel):
    """Audit row for a message handed to the mailer."""

    model_config = ConfigDict(frozen=True)

    id: str
    command_id: str | None
    account_id: str
    task_id: str | None = None
    channel: Channel = Channel.EMAIL
    recipient_email: str
    recipient_name: str | None = None
    subject: str
    body: str
    reply_token: str | None = None
    status: MessageStatus
    provider_message_id: str | None = None
    failed_reason: str | None = None
    created_at: datetime
    updated_at: datetime


class Account(BaseModel):
    """The business an outreach thread is sent on behalf of."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    timezone: str = "America/New_York"
    autopilot_enabled: bool = False
