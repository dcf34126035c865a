"""Parse untrusted reasoner output into validated decisions.

Models sometimes wrap JSON in prose or code fences, so the outermost
``{...}`` span is extracted before decoding.  Anything that does not yield a
complete, consistent decision raises ``MalformedDecisionError``; callers
choose the safe fallback.
"""

from __future__ import annotations

import json
import re
from typing import Any

from pydantic import ValidationError

from outreach.domain.errors import MalformedDecisionError
from outreach.domain.types import TaskOutcome
from outreach.llm.models import FollowUpAction, FollowUpDecision, ReplyAction, ReplyDecision

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def extract_json(raw: str) -> dict[str, Any]:
    """Return the outermost JSON object embedded in *raw*.

    Raises:
        MalformedDecisionError: If no JSON object can be decoded.
    """
    match = _JSON_OBJECT.search(raw or "")
    if match is None:
        raise MalformedDecisionError("No JSON object found in reasoner output")
    try:
        decoded = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise MalformedDecisionError(f"Invalid JSON in reasoner output: {exc}") from exc
    if not isinstance(decoded, dict):
        raise MalformedDecisionError("Reasoner output is not a JSON object")
    return decoded


def _outcome(value: Any) -> TaskOutcome | None:
    if isinstance(value, str):
        try:
            return TaskOutcome(value.strip().lower())
        except ValueError:
            return None
    return None


def _days(value: Any) -> float | None:
    # bool is an int subclass; "true" days is not a horizon.
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value) if value > 0 else None


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _reason(data: dict[str, Any]) -> str:
    return _text(data.get("reasoning")) or _text(data.get("reason")) or ""


def parse_follow_up_decision(raw: str) -> FollowUpDecision:
    """Parse a follow-up decision.

    ``nextCheckDays`` may be missing (the cadence policy supplies a
    default); an unknown action or a ``follow_up`` without a message is
    malformed.

    Raises:
        MalformedDecisionError: If the output is not a usable decision.
    """
    data = extract_json(raw)
    try:
        action = FollowUpAction(str(data.get("action", "")).strip().lower())
    except ValueError as exc:
        raise MalformedDecisionError(f"Unknown follow-up action: {data.get('action')!r}") from exc

    message = _text(data.get("message"))
    if action == FollowUpAction.FOLLOW_UP and message is None:
        raise MalformedDecisionError("follow_up decision without a message")

    try:
        return FollowUpDecision(
            action=action,
            reason=_reason(data),
            message=message if action == FollowUpAction.FOLLOW_UP else None,
            outcome=_outcome(data.get("outcome")) if action == FollowUpAction.CLOSE else None,
            next_check_days=(
                _days(data.get("nextCheckDays", data.get("next_check_days")))
                if action in (FollowUpAction.FOLLOW_UP, FollowUpAction.WAIT)
                else None
            ),
        )
    except ValidationError as exc:
        raise MalformedDecisionError(str(exc)) from exc


def parse_reply_decision(raw: str) -> ReplyDecision:
    """Parse a post-reply decision.

    Raises:
        MalformedDecisionError: On an unknown action or a ``reply`` without text.
    """
    data = extract_json(raw)
    try:
        action = ReplyAction(str(data.get("action", "")).strip().lower())
    except ValueError as exc:
        raise MalformedDecisionError(f"Unknown reply action: {data.get('action')!r}") from exc

    reply = _text(data.get("reply"))
    if action == ReplyAction.REPLY and reply is None:
        raise MalformedDecisionError("reply decision without reply text")

    try:
        return ReplyDecision(
            action=action,
            reason=_reason(data) or _text(data.get("scoreReason")) or "",
            reply=reply if action == ReplyAction.REPLY else None,
            outcome=_outcome(data.get("outcome")) if action == ReplyAction.CLOSE else None,
            next_check_days=_days(data.get("nextCheckDays", data.get("next_check_days"))),
        )
    except ValidationError as exc:
        raise MalformedDecisionError(str(exc)) from exc
