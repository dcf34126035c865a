"""TaskStateMachine class with trigger, history, and valid_events."""

from __future__ import annotations

from outreach.domain.errors import InvalidTransitionError
from outreach.domain.types import TaskStatus
from outreach.state_machine.transitions import AUTOMATED_EVENTS, TERMINAL_STATES, TRANSITIONS


class TaskStateMachine:
    """Finite state machine governing the outreach thread lifecycle.

    Tracks the current task status, validates transitions against the
    transition map, and records the transitions applied in this instance.

    Usage::

        sm = TaskStateMachine()
        sm.trigger("send")        # -> AWAITING_REPLY
        sm.trigger("follow_up")   # -> AWAITING_REPLY
        sm.trigger("close")       # -> RESOLVED (terminal)
    """

    def __init__(self, initial_state: TaskStatus = TaskStatus.OPEN) -> None:
        self._state: TaskStatus = initial_state
        self._history: list[tuple[TaskStatus, str, TaskStatus]] = []

    @property
    def state(self) -> TaskStatus:
        """Return the current task status."""
        return self._state

    @property
    def is_terminal(self) -> bool:
        """Return True if the machine is in a terminal state (RESOLVED or CANCELLED)."""
        return self._state in TERMINAL_STATES

    @property
    def history(self) -> list[tuple[TaskStatus, str, TaskStatus]]:
        """Return a copy of the ``(from_state, event, to_state)`` history."""
        return list(self._history)

    def trigger(self, event: str, *, automated: bool = False) -> TaskStatus:
        """Apply an event to the current state and transition.

        Args:
            event: The event string (e.g. ``"send"``).
            automated: When True, only events the scheduler may apply on its
                own are accepted, so an escalated thread cannot be moved by
                automation.

        Returns:
            The new state after the transition.

        Raises:
            InvalidTransitionError: If the transition is not allowed from
                the current state, or if the machine is in a terminal state.
        """
        if self.is_terminal:
            raise InvalidTransitionError(self._state, event)

        if automated and (
            event not in AUTOMATED_EVENTS or self._state == TaskStatus.ESCALATED
        ):
            raise InvalidTransitionError(self._state, event)

        key = (self._state, event)
        if key not in TRANSITIONS:
            raise InvalidTransitionError(self._state, event)

        old_state = self._state
        new_state = TRANSITIONS[key]
        self._history.append((old_state, event, new_state))
        self._state = new_state
        return new_state

    def get_valid_events(self) -> list[str]:
        """Return a sorted list of events valid from the current state."""
        if self.is_terminal:
            return []
        return sorted(event for state, event in TRANSITIONS if state == self._state)

    def event_for(self, target: TaskStatus) -> str:
        """Return the first event (alphabetically) that moves to *target*.

        Used by the operator ``update_status`` path, which is expressed in
        terms of a target status rather than an event.

        Raises:
            InvalidTransitionError: If no event reaches *target*.
        """
        for event in self.get_valid_events():
            if TRANSITIONS[(self._state, event)] == target:
                return event
        raise InvalidTransitionError(self._state, f"-> {target}")
