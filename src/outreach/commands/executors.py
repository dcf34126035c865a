"""Executors for each command type.

``SendEmailExecutor`` is idempotent per command id: the outbound audit row is
keyed on the command, and a row already marked ``sent`` short-circuits the
retry without calling the mailer again.
"""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from outreach.domain.errors import CommandDeferred, InvalidCommandPayloadError
from outreach.domain.models import Command
from outreach.domain.types import ConversationRole, MessageStatus
from outreach.email.models import Mailer, OutboundEmail
from outreach.email.parser import render_html, reply_address
from outreach.guardrails.policy import Guardrails
from outreach.store.conversation import ConversationLog
from outreach.store.outbound import OutboundMessageStore

logger = structlog.get_logger()


class SendEmailPayload(BaseModel):
    """Payload of a ``SendEmail`` command.

    Accepts both snake_case and the camelCase keys agents historically wrote.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    to: str
    subject: str
    body: str
    account_id: str = Field(alias="accountId")
    task_id: str | None = Field(default=None, alias="taskId")
    reply_token: str | None = Field(default=None, alias="replyToken")
    recipient_name: str | None = Field(default=None, alias="recipientName")
    agent_name: str | None = Field(default=None, alias="agentName")


class SendEmailExecutor:
    """Send one email through the mailer and keep the audit trail.

    Args:
        mailer: The mail transport capability.
        outbound: Outbound message audit store.
        conversation: Conversation log; the sent body is appended as an
            ``agent`` entry when the command belongs to a task.
        guardrails: Opt-out and quiet-hours checks applied at send time.
        reply_domain: Domain for ``reply+<token>@`` reply-to addresses.
    """

    def __init__(
        self,
        mailer: Mailer,
        outbound: OutboundMessageStore,
        conversation: ConversationLog,
        guardrails: Guardrails,
        *,
        reply_domain: str = "",
    ) -> None:
        self._mailer = mailer
        self._outbound = outbound
        self._conversation = conversation
        self._guardrails = guardrails
        self._reply_domain = reply_domain

    def execute(self, command: Command) -> dict[str, Any]:
        """Send the email described by *command*.

        Returns:
            ``{"status": "sent", ...}`` on success (including an idempotent
            re-run of an already-sent command) or ``{"status": "suppressed"}``
            when the recipient opted out.

        Raises:
            CommandDeferred: During the account's quiet hours.
            InvalidCommandPayloadError: The payload is missing or malformed.
            Exception: Whatever the mailer raised; the audit row is marked
                ``failed`` first.
        """
        try:
            payload = SendEmailPayload.model_validate(command.payload)
        except ValidationError as exc:
            raise InvalidCommandPayloadError(
                command.id, f"{exc.error_count()} validation error(s) for SendEmailPayload"
            ) from exc
        log = logger.bind(command_id=command.id, task_id=payload.task_id)

        existing = self._outbound.get_by_command(command.id)
        if existing is not None and existing.status == MessageStatus.SENT:
            log.info("send_email_already_sent", outbound_message_id=existing.id)
            return {
                "status": "sent",
                "outbound_message_id": existing.id,
                "provider_message_id": existing.provider_message_id,
                "duplicate": True,
            }

        if self._guardrails.is_opted_out(payload.account_id, payload.to):
            log.info("send_email_suppressed", reason="opted_out")
            return {"status": "suppressed", "reason": "opted_out"}

        if self._guardrails.is_quiet_hours(payload.account_id):
            raise CommandDeferred(self._guardrails.quiet_hours_end(payload.account_id), "quiet_hours")

        message = self._outbound.upsert_queued(
            command_id=command.id,
            account_id=payload.account_id,
            task_id=payload.task_id,
            recipient_email=payload.to,
            recipient_name=payload.recipient_name,
            subject=payload.subject,
            body=payload.body,
            reply_token=payload.reply_token,
        )

        email = OutboundEmail(
            to=payload.to,
            subject=payload.subject,
            html=render_html(payload.body),
            text=payload.body,
            reply_to=reply_address(payload.reply_token, self._reply_domain),
        )
        try:
            receipt = self._mailer.send(email)
        except Exception as exc:
            self._outbound.mark_failed(message.id, f"{type(exc).__name__}: {exc}")
            raise

        self._outbound.mark_sent(message.id, receipt.id)
        if payload.task_id:
            self._conversation.append(
                payload.task_id,
                ConversationRole.AGENT,
                payload.body,
                agent_name=payload.agent_name,
            )

        log.info("send_email_sent", outbound_message_id=message.id, provider_message_id=receipt.id)
        return {
            "status": "sent",
            "outbound_message_id": message.id,
            "provider_message_id": receipt.id,
        }
