"""Inbound member replies."""

from outreach.replies.handler import ReplyHandler, ReplyResult, ReplyStatus

__all__ = ["ReplyHandler", "ReplyResult", "ReplyStatus"]
