"""Task lifecycle state machine with transition validation."""

from outreach.state_machine.machine import TaskStateMachine
from outreach.state_machine.transitions import (
    AUTOMATED_EVENTS,
    TERMINAL_STATES,
    TRANSITIONS,
    TaskEvent,
)

__all__ = [
    "AUTOMATED_EVENTS",
    "TERMINAL_STATES",
    "TRANSITIONS",
    "TaskEvent",
    "TaskStateMachine",
]
