"""Task operations for agents, operators and the webhook layer."""

from outreach.tasks.service import TaskService

__all__ = ["TaskService"]
