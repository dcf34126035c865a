"""Policy checks consulted before any send."""

from outreach.guardrails.policy import Guardrails, SendBlock, SendCheck
from outreach.guardrails.timezone import (
    is_quiet_hours,
    local_midnight,
    quiet_hours_end,
    resolve_zone,
)

__all__ = [
    "Guardrails",
    "SendBlock",
    "SendCheck",
    "is_quiet_hours",
    "local_midnight",
    "quiet_hours_end",
    "resolve_zone",
]
