"""Resend HTTP API mailer.

Sends are synchronous because the scheduler tick runs in a worker thread.
Failures are raised, never retried here: the command bus attempt counter
owns retries.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from outreach.email.models import OutboundEmail, SendReceipt

logger = structlog.get_logger()

RESEND_API_URL = "https://api.resend.com/emails"


class MailerError(Exception):
    """Raised when the provider rejects a send or returns no message id."""


class ResendMailer:
    """Wrapper around the Resend ``POST /emails`` endpoint.

    Args:
        api_key: Resend API key (sent as a bearer token).
        from_address: ``From`` header, e.g. ``"Gym <team@example.com>"``.
        timeout: Per-request timeout in seconds.
        client: Optional pre-built ``httpx.Client`` (tests inject a mock
            transport here).
    """

    def __init__(
        self,
        api_key: str,
        from_address: str,
        *,
        timeout: float = 15.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._api_key = api_key
        self._from_address = from_address
        self._client = client or httpx.Client(timeout=timeout)

    def send(self, email: OutboundEmail) -> SendReceipt:
        """Send *email* and return the provider message id.

        Raises:
            httpx.HTTPError: On transport errors or timeouts.
            MailerError: On a non-2xx response or a response without an id.
        """
        payload: dict[str, Any] = {
            "from": self._from_address,
            "to": [email.to],
            "subject": email.subject,
            "html": email.html,
        }
        if email.text:
            payload["text"] = email.text
        if email.reply_to:
            payload["reply_to"] = email.reply_to

        response = self._client.post(
            RESEND_API_URL,
            json=payload,
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        if response.is_error:
            raise MailerError(f"Resend returned {response.status_code}: {response.text[:200]}")

        message_id = str(response.json().get("id") or "")
        if not message_id:
            raise MailerError("Resend response did not include a message id")

        logger.info("email_sent", provider="resend", provider_message_id=message_id)
        return SendReceipt(id=message_id)

    def close(self) -> None:
        self._client.close()
