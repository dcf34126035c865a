"""Slack notification client for operator alerts.

Wraps slack_sdk.WebClient to post Block Kit messages to the escalation
channel.  Alerting is best effort: the ``notify_*`` helpers log Slack
failures and never raise into the tick or the reply handler.
"""

from __future__ import annotations

from typing import Any

import structlog
from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

from outreach.domain.models import Command, Task
from outreach.notifications.blocks import build_dead_letter_blocks, build_task_escalation_blocks

logger = structlog.get_logger()


class SlackNotifier:
    """Posts structured notifications to the escalation channel."""

    def __init__(
        self,
        escalation_channel: str,
        bot_token: str,
        *,
        client: WebClient | None = None,
    ) -> None:
        """Initialize the SlackNotifier.

        Args:
            escalation_channel: Channel ID for escalation and dead-letter alerts.
            bot_token: Slack bot token.
            client: Optional pre-built WebClient (tests pass a mock).
        """
        self._client = client or WebClient(token=bot_token)
        self._escalation_channel = escalation_channel

    def post_escalation(self, blocks: list[dict[str, Any]], fallback_text: str) -> str:
        """Post a message to the escalation channel.

        Returns:
            The Slack message timestamp (ts) for reference.

        Raises:
            SlackApiError: If the Slack API call fails.
        """
        response = self._client.chat_postMessage(
            channel=self._escalation_channel,
            blocks=blocks,
            text=fallback_text,
        )
        return str(response["ts"])

    def notify_task_escalated(self, task: Task, reason: str, latest_reply: str | None = None) -> None:
        """Alert operators that *task* needs a human.  Never raises."""
        try:
            self.post_escalation(
                build_task_escalation_blocks(task, reason, latest_reply),
                fallback_text=f"Escalation: {task.display_name} ({reason})",
            )
        except (SlackApiError, OSError):
            logger.exception("slack_escalation_post_failed", task_id=task.id)

    def notify_dead_letter(self, command: Command) -> None:
        """Alert operators that *command* exhausted its retries.  Never raises."""
        try:
            self.post_escalation(
                build_dead_letter_blocks(command),
                fallback_text=f"Dead letter: {command.command_type} {command.id}",
            )
        except (SlackApiError, OSError):
            logger.exception("slack_dead_letter_post_failed", command_id=command.id)


__all__ = ["SlackApiError", "SlackNotifier"]
