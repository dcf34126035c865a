"""Plain-text and HTML helpers for outbound bodies and inbound replies.

Provides helpers for:
- Rendering a plain-text draft as simple HTML paragraphs
- Building the ``reply+<token>@domain`` reply-to address and reading it back
- Extracting only the latest reply from a quoted email thread
"""

from __future__ import annotations

import html
import re

from mailparser_reply import EmailReplyParser  # type: ignore[import-untyped]

_REPLY_ADDRESS = re.compile(r"reply\+([^@\s>]+)@", re.IGNORECASE)


def render_html(text: str) -> str:
    """Render a plain-text body as HTML paragraphs.

    Blank lines separate paragraphs; single newlines become ``<br>``.  All
    text is escaped, so a drafted message can never inject markup.

    Args:
        text: The plain-text message body.

    Returns:
        An HTML fragment.
    """
    paragraphs = [p.strip() for p in re.split(r"\n\s*\n", text.strip()) if p.strip()]
    rendered = [
        "<p>" + "<br>".join(html.escape(line) for line in p.splitlines()) + "</p>"
        for p in paragraphs
    ]
    return "\n".join(rendered)


def html_to_text(body: str) -> str:
    """Strip tags from an HTML body (used when a reply has no text part)."""
    return html.unescape(re.sub(r"<[^>]+>", "", body))


def reply_address(reply_token: str | None, domain: str) -> str | None:
    """Return ``reply+<token>@<domain>``, or ``None`` without token or domain."""
    if not reply_token or not domain:
        return None
    return f"reply+{reply_token}@{domain}"


def token_from_address(address: str) -> str | None:
    """Read the reply token back out of a ``reply+<token>@`` address."""
    match = _REPLY_ADDRESS.search(address)
    return match.group(1) if match else None


def extract_latest_reply(full_body: str) -> str:
    """Extract only the latest reply text from an email thread body.

    Uses ``mail-parser-reply`` to strip quoted content, signature blocks,
    and forwarded message headers.

    If the parser returns an empty string (e.g. the entire message was
    detected as quoted content), the original ``full_body`` is returned
    as a fallback.

    Args:
        full_body: The full text body of the email.

    Returns:
        The extracted latest reply text, or the original body if
        extraction yields nothing.
    """
    parsed: str = EmailReplyParser(languages=["en"]).parse_reply(text=full_body)
    if not parsed or not parsed.strip():
        return full_body
    return parsed.strip()
