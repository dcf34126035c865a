"""Block Kit message builders for operator alerts.

Pure functions that return Block Kit block dicts. These functions have no
side effects and are easy to test.
"""

from __future__ import annotations

from typing import Any

from outreach.domain.models import Command, Task


def build_task_escalation_blocks(task: Task, reason: str, latest_reply: str | None = None) -> list[dict[str, Any]]:
    """Build Block Kit blocks for a task that needs a human.

    Args:
        task: The escalated task.
        reason: Why the thread was escalated.
        latest_reply: The member's most recent message, quoted when present.

    Returns:
        List of Block Kit block dicts.
    """
    blocks: list[dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f"Escalation: {task.display_name}"},
        },
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Contact:*\n{task.contact_email or 'unknown'}"},
                {"type": "mrkdwn", "text": f"*Task type:*\n{task.task_type}"},
                {"type": "mrkdwn", "text": f"*Account:*\n{task.account_id}"},
                {"type": "mrkdwn", "text": f"*Reason:*\n{reason}"},
            ],
        },
    ]

    if latest_reply:
        blocks.append(
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"*Latest reply:*\n> {latest_reply[:500]}"},
            }
        )

    blocks.append(
        {
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": f"Task `{task.id}`"}],
        }
    )
    return blocks


def build_dead_letter_blocks(command: Command) -> list[dict[str, Any]]:
    """Build Block Kit blocks for a command that exhausted its retries."""
    return [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f"Dead letter: {command.command_type}"},
        },
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Command:*\n`{command.id}`"},
                {"type": "mrkdwn", "text": f"*Attempts:*\n{command.attempt_count}/{command.max_attempts}"},
                {"type": "mrkdwn", "text": f"*Task:*\n{command.task_id or '-'}"},
                {"type": "mrkdwn", "text": f"*Last error:*\n{command.last_error or '-'}"},
            ],
        },
        {
            "type": "context",
            "elements": [
                {"type": "mrkdwn", "text": f"Requeue with `outreach-admin requeue {command.id}`"}
            ],
        },
    ]
