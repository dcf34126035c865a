"""Operator alerts posted to Slack."""

from typing import Protocol

from outreach.domain.models import Command, Task
from outreach.notifications.slack import SlackNotifier


class Notifier(Protocol):
    """Best-effort operator alerting.  Implementations must not raise."""

    def notify_task_escalated(self, task: Task, reason: str, latest_reply: str | None = None) -> None: ...

    def notify_dead_letter(self, command: Command) -> None: ...


__all__ = ["Notifier", "SlackNotifier"]
