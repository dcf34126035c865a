"""Pydantic v2 models and the mailer capability for the email domain."""

from __future__ import annotations

from typing import Protocol

from pydantic import BaseModel, ConfigDict


class OutboundEmail(BaseModel):
    """An email handed to the mailer.

    ``html`` is what the provider renders; ``text`` is the plain-text
    alternative and the copy stored in the conversation log.
    """

    model_config = ConfigDict(frozen=True)

    to: str
    subject: str
    html: str
    text: str | None = None
    reply_to: str | None = None


class SendReceipt(BaseModel):
    """Provider confirmation for an accepted send."""

    model_config = ConfigDict(frozen=True)

    id: str


class Mailer(Protocol):
    """Fire-and-confirm email transport.  Errors propagate to the caller."""

    def send(self, email: OutboundEmail) -> SendReceipt: ...
