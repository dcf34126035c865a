"""Transition map defining all valid (status, event) -> status mappings."""

from enum import StrEnum

from outreach.domain.types import TaskStatus


class TaskEvent(StrEnum):
    """Events that can trigger status transitions on an outreach task."""

    REQUEST_APPROVAL = "request_approval"
    SEND = "send"
    APPROVE = "approve"
    DISMISS = "dismiss"
    RECEIVE_REPLY = "receive_reply"
    FOLLOW_UP = "follow_up"
    WAIT = "wait"
    CLOSE = "close"
    TIMEOUT = "timeout"
    ESCALATE = "escalate"
    RESOLVE = "resolve"
    RESUME = "resume"
    OPT_OUT = "opt_out"
    CANCEL = "cancel"


_NON_TERMINAL = (
    TaskStatus.OPEN,
    TaskStatus.AWAITING_APPROVAL,
    TaskStatus.AWAITING_REPLY,
    TaskStatus.ESCALATED,
)

# All valid (current_status, event_string) -> next_status mappings.
# Any pair not in this dict is an invalid transition.
TRANSITIONS: dict[tuple[TaskStatus, str], TaskStatus] = {
    # From OPEN
    (TaskStatus.OPEN, TaskEvent.REQUEST_APPROVAL): TaskStatus.AWAITING_APPROVAL,
    (TaskStatus.OPEN, TaskEvent.SEND): TaskStatus.AWAITING_REPLY,
    # From AWAITING_APPROVAL (operator decisions)
    (TaskStatus.AWAITING_APPROVAL, TaskEvent.APPROVE): TaskStatus.AWAITING_REPLY,
    (TaskStatus.AWAITING_APPROVAL, TaskEvent.DISMISS): TaskStatus.CANCELLED,
    # From AWAITING_REPLY (evaluator decisions, replies, timeouts)
    (TaskStatus.AWAITING_REPLY, TaskEvent.RECEIVE_REPLY): TaskStatus.AWAITING_REPLY,
    (TaskStatus.AWAITING_REPLY, TaskEvent.FOLLOW_UP): TaskStatus.AWAITING_REPLY,
    (TaskStatus.AWAITING_REPLY, TaskEvent.WAIT): TaskStatus.AWAITING_REPLY,
    (TaskStatus.AWAITING_REPLY, TaskEvent.CLOSE): TaskStatus.RESOLVED,
    (TaskStatus.AWAITING_REPLY, TaskEvent.TIMEOUT): TaskStatus.RESOLVED,
    (TaskStatus.AWAITING_REPLY, TaskEvent.ESCALATE): TaskStatus.ESCALATED,
    # From ESCALATED (operator only)
    (TaskStatus.ESCALATED, TaskEvent.RESUME): TaskStatus.AWAITING_REPLY,
    # Any live thread can be resolved by an external signal, cancelled by an
    # operator, or cancelled because the contact opted out.
    **{(status, TaskEvent.RESOLVE): TaskStatus.RESOLVED for status in _NON_TERMINAL},
    **{(status, TaskEvent.CANCEL): TaskStatus.CANCELLED for status in _NON_TERMINAL},
    **{(status, TaskEvent.OPT_OUT): TaskStatus.CANCELLED for status in _NON_TERMINAL},
}

# States that reject all events -- no outgoing transitions allowed.
TERMINAL_STATES: frozenset[TaskStatus] = frozenset({TaskStatus.RESOLVED, TaskStatus.CANCELLED})

# Events the scheduler and reply handler may apply on their own.  ESCALATED
# threads have no automated events: only an operator moves them further.
AUTOMATED_EVENTS: frozenset[str] = frozenset(
    {
        TaskEvent.SEND,
        TaskEvent.RECEIVE_REPLY,
        TaskEvent.FOLLOW_UP,
        TaskEvent.WAIT,
        TaskEvent.CLOSE,
        TaskEvent.TIMEOUT,
        TaskEvent.ESCALATE,
        TaskEvent.OPT_OUT,
    }
)
