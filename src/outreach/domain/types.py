"""Domain enumerations for the outreach execution engine."""

from enum import StrEnum


class CommandType(StrEnum):
    """Side-effecting actions the Command Bus knows how to dispatch."""

    SEND_EMAIL = "SendEmail"


class CommandStatus(StrEnum):
    """Lifecycle states of a durable command."""

    PENDING = "pending"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


class TaskStatus(StrEnum):
    """States in the outreach thread lifecycle."""

    OPEN = "open"
    AWAITING_APPROVAL = "awaiting_approval"
    AWAITING_REPLY = "awaiting_reply"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


class TaskOutcome(StrEnum):
    """How an outreach thread ended."""

    ENGAGED = "engaged"
    RECOVERED = "recovered"
    UNRESPONSIVE = "unresponsive"
    CHURNED = "churned"
    NOT_APPLICABLE = "not_applicable"


class ConversationRole(StrEnum):
    """Author of a conversation log entry."""

    AGENT = "agent"
    MEMBER = "member"
    SYSTEM = "system"


class MessageStatus(StrEnum):
    """Delivery states of an outbound message audit row."""

    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class Channel(StrEnum):
    """Contact channels an opt-out can apply to."""

    EMAIL = "email"
    SMS = "sms"


# Statuses that still count as a live thread for duplicate prevention.
ACTIVE_TASK_STATUSES: frozenset[TaskStatus] = frozenset(
    {
        TaskStatus.OPEN,
        TaskStatus.AWAITING_APPROVAL,
        TaskStatus.AWAITING_REPLY,
        TaskStatus.ESCALATED,
    }
)
