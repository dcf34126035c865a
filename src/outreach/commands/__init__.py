"""Durable command bus and the executors it dispatches to."""

from outreach.commands.bus import (
    BatchResult,
    CommandBus,
    CommandExecutor,
    DispatchOutcome,
    DispatchResult,
)
from outreach.commands.executors import SendEmailExecutor, SendEmailPayload

__all__ = [
    "BatchResult",
    "CommandBus",
    "CommandExecutor",
    "DispatchOutcome",
    "DispatchResult",
    "SendEmailExecutor",
    "SendEmailPayload",
]
