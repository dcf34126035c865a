"""Periodic tick and the shared send path."""

from outreach.scheduler.sending import OutreachSender, subject_for
from outreach.scheduler.tick import FOLLOW_UP_LEASE, Scheduler, TickSummary

__all__ = ["FOLLOW_UP_LEASE", "OutreachSender", "Scheduler", "TickSummary", "subject_for"]
