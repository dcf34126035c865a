"""Tests for the Resend mailer using an httpx mock transport."""

from __future__ import annotations

import json

import httpx
import pytest

from outreach.email.client import RESEND_API_URL, MailerError, ResendMailer
from outreach.email.models import OutboundEmail

EMAIL = OutboundEmail(
    to="member@example.com",
    subject="Checking in",
    html="<p>Hi!</p>",
    text="Hi!",
    reply_to="reply+task-1@replies.example.com",
)


def _mailer(handler) -> ResendMailer:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return ResendMailer("re_test_key", "Iron Temple <team@example.com>", client=client)


class TestResendMailer:
    def test_posts_payload_and_returns_id(self) -> None:
        """POSTs the Resend payload and returns the provider message id."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "re_123"})

        receipt = _mailer(handler).send(EMAIL)

        assert receipt.id == "re_123"
        request = seen[0]
        assert str(request.url) == RESEND_API_URL
        assert request.headers["Authorization"] == "Bearer re_test_key"
        body = json.loads(request.content)
        assert body == {
            "from": "Iron Temple <team@example.com>",
            "to": ["member@example.com"],
            "subject": "Checking in",
            "html": "<p>Hi!</p>",
            "text": "Hi!",
            "reply_to": "reply+task-1@replies.example.com",
        }

    def test_error_status_raises(self) -> None:
        mailer = _mailer(lambda request: httpx.Response(422, json={"message": "bad to"}))
        with pytest.raises(MailerError, match="422"):
            mailer.send(EMAIL)

    def test_missing_id_raises(self) -> None:
        """A 200 response without an id raises MailerError."""
        mailer = _mailer(lambda request: httpx.Response(200, json={}))
        with pytest.raises(MailerError):
            mailer.send(EMAIL)

    def test_transport_error_propagates(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(httpx.ConnectTimeout):
            _mailer(handler).send(EMAIL)
