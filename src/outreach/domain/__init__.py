"""Domain types, models, and errors for the outreach engine."""

from outreach.domain.context import (
    ChurnRiskContext,
    PaymentFailedContext,
    TaskContext,
    WinBackContext,
    decode_task_context,
)
from outreach.domain.errors import (
    CommandDeferred,
    CommandNotFoundError,
    CommandStateError,
    DuplicateTaskError,
    InvalidTransitionError,
    MalformedDecisionError,
    MissingDraftError,
    OutreachError,
    StaleTaskError,
    TaskNotFoundError,
    UnknownCommandTypeError,
)
from outreach.domain.models import (
    Account,
    Command,
    ConversationEntry,
    OutboundMessage,
    Task,
)
from outreach.domain.types import (
    ACTIVE_TASK_STATUSES,
    Channel,
    CommandStatus,
    CommandType,
    ConversationRole,
    MessageStatus,
    TaskOutcome,
    TaskStatus,
)

__all__ = [
    "ACTIVE_TASK_STATUSES",
    "Account",
    "Channel",
    "ChurnRiskContext",
    "Command",
    "CommandDeferred",
    "CommandNotFoundError",
    "CommandStateError",
    "CommandStatus",
    "CommandType",
    "ConversationEntry",
    "ConversationRole",
    "DuplicateTaskError",
    "InvalidTransitionError",
    "MalformedDecisionError",
    "MessageStatus",
    "MissingDraftError",
    "OutboundMessage",
    "OutreachError",
    "PaymentFailedContext",
    "StaleTaskError",
    "Task",
    "TaskContext",
    "TaskNotFoundError",
    "TaskOutcome",
    "TaskStatus",
    "UnknownCommandTypeError",
    "WinBackContext",
    "decode_task_context",
]
