"""Email transport, models and body helpers."""

from outreach.email.client import MailerError, ResendMailer
from outreach.email.models import Mailer, OutboundEmail, SendReceipt
from outreach.email.parser import (
    extract_latest_reply,
    html_to_text,
    render_html,
    reply_address,
    token_from_address,
)

__all__ = [
    "Mailer",
    "MailerError",
    "OutboundEmail",
    "ResendMailer",
    "SendReceipt",
    "extract_latest_reply",
    "html_to_text",
    "render_html",
    "reply_address",
    "token_from_address",
]
