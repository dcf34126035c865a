"""Tests for the email body helpers."""

from outreach.email.parser import (
    extract_latest_reply,
    html_to_text,
    render_html,
    reply_address,
    token_from_address,
)

# ---------------------------------------------------------------------------
# extract_latest_reply tests
# ---------------------------------------------------------------------------


class TestExtractLatestReply:
    """Tests for extract_latest_reply."""

    def test_simple_text_no_quoted(self) -> None:
        result = extract_latest_reply("Sounds good, see you Monday!")
        assert "see you Monday" in result

    def test_strips_on_wrote_quoted_content(self) -> None:
        """Strips 'On ... wrote:' and everything quoted after it."""
        text = (
            "I got busy with work, back next week.\n\n"
            "On Tue, Mar 10, 2026 at 12:00 PM Iron Temple <team@example.com> wrote:\n"
            "> Hi! We noticed you have not been in lately.\n"
            "> Everything ok?\n"
        )
        result = extract_latest_reply(text)
        assert "back next week" in result
        assert "We noticed" not in result

    def test_empty_extraction_returns_original(self) -> None:
        """If extraction leaves nothing, the original text is returned."""
        result = extract_latest_reply("> Just a quoted line")
        assert len(result) > 0

    def test_returns_string_type(self) -> None:
        assert isinstance(extract_latest_reply("Hello there"), str)


# ---------------------------------------------------------------------------
# Reply addresses
# ---------------------------------------------------------------------------


class TestReplyAddress:
    def test_build_and_read_back(self) -> None:
        address = reply_address("task-123", "replies.example.com")
        assert address == "reply+task-123@replies.example.com"
        assert token_from_address(address) == "task-123"

    def test_display_name_form(self) -> None:
        assert token_from_address("Iron Temple <Reply+abc-1@replies.example.com>") == "abc-1"

    def test_missing_token_or_domain(self) -> None:
        """reply_address needs both a token and a domain."""
        assert reply_address(None, "replies.example.com") is None
        assert reply_address("task-123", "") is None

    def test_plain_address_has_no_token(self) -> None:
        assert token_from_address("team@example.com") is None


# ---------------------------------------------------------------------------
# HTML rendering
# ---------------------------------------------------------------------------


class TestHtml:
    def test_paragraphs_and_line_breaks(self) -> None:
        assert render_html("Hi Sam,\nquick one.\n\nSee you!") == (
            "<p>Hi Sam,<br>quick one.</p>\n<p>See you!</p>"
        )

    def test_markup_is_escaped(self) -> None:
        """Markup in the text is escaped before it is wrapped in HTML."""
        assert "<script>" not in render_html("<script>alert(1)</script>")

    def test_html_to_text(self) -> None:
        assert html_to_text("<p>Stop &amp; unsubscribe</p>") == "Stop & unsubscribe"
