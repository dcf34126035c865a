"""Pydantic models defining the evaluator contracts.

Decisions are validated shapes built from untrusted model output; the
evaluators, not the model, decide what happens when a shape is invalid.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from outreach.domain.models import ConversationEntry
from outreach.domain.types import TaskOutcome


class FollowUpAction(StrEnum):
    """What to do with a thread whose follow-up time has passed."""

    FOLLOW_UP = "follow_up"
    WAIT = "wait"
    ESCALATE = "escalate"
    CLOSE = "close"


class ReplyAction(StrEnum):
    """What to do after a member replied."""

    REPLY = "reply"
    WAIT = "wait"
    ESCALATE = "escalate"
    CLOSE = "close"


class FollowUpDecision(BaseModel):
    """Validated follow-up decision.

    ``message`` is present iff ``action`` is ``follow_up``; ``next_check_days``
    is set for ``follow_up`` and ``wait``; ``outcome`` for ``close``.
    """

    model_config = ConfigDict(frozen=True)

    action: FollowUpAction
    reason: str = ""
    message: str | None = None
    outcome: TaskOutcome | None = None
    next_check_days: float | None = Field(default=None, gt=0)
    fallback: bool = False


class ReplyDecision(BaseModel):
    """Validated decision after an inbound reply."""

    model_config = ConfigDict(frozen=True)

    action: ReplyAction
    reason: str = ""
    reply: str | None = None
    outcome: TaskOutcome | None = None
    next_check_days: float | None = Field(default=None, gt=0)
    fallback: bool = False


class FollowUpRequest(BaseModel):
    """Everything the follow-up evaluator needs about one thread."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    task_type: str
    account_id: str
    account_name: str | None = None
    contact_name: str
    contact_email: str | None = None
    goal: str = ""
    member_context: str = ""
    history: list[ConversationEntry] = Field(default_factory=list)
    messages_sent: int = 0
    days_since_last_message: float = 0.0
    days_since_created: float = 0.0
