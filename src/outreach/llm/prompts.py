"""System and user prompt templates for the evaluators.

Templates use Python string placeholders ({variable_name}) for injection of
task context and conversation history.  Per-task-type guidelines describe
the outreach approach a skilled member-success coach would take.
"""

from __future__ import annotations

from collections.abc import Iterable

from outreach.domain.models import ConversationEntry
from outreach.domain.types import ConversationRole

TASK_TYPE_GUIDELINES: dict[str, str] = {
    "churn_risk": """\
The member is still active but their engagement is dropping.
- Touch 1: warm, personal check-in. Mention something specific, never guilt.
- Touch 2: offer something concrete (a class that fits their schedule, a coach session).
- Touch 3: short, low-pressure note that the door is open. Then stop.
- Escalate immediately on injury, billing disputes, complaints about staff, or legal language.""",
    "win_back": """\
The member already cancelled.
- Touch 1: acknowledge their decision, ask one genuine question about what changed.
- Touch 2: share what is new since they left, or a relevant offer if one exists.
- Touch 3: graceful goodbye. Then stop.
- Close as churned when they confirm they are not coming back.""",
    "payment_failed": """\
The member's recurring payment failed.
- Touch 1: friendly heads-up with no blame; payment cards expire all the time.
- Touch 2: reminder with the simplest way to update payment details.
- Escalate any dispute about the amount owed or a request for a refund.""",
    "onboarding": """\
The member joined recently.
- Touch 1: welcome, ask about their goals.
- Touch 2: suggest a first class or intro session that matches those goals.
- Close as engaged once they have booked or attended.""",
}

GENERIC_GUIDELINES = """\
Keep every message short, personal and specific to the member.
- Never repeat a previous message.
- Stop after a few unanswered messages; persistence past that damages the relationship.
- Escalate anything involving health, money disputes, complaints or legal language."""

BASE_SYSTEM_PROMPT = """You write on behalf of {account_name}, a fitness business, \
to its members. You sound like a thoughtful coach, not a marketer.

OUTREACH GUIDELINES ({task_type}):
{guidelines}

RULES:
- Plain text only. No subject line, no signature block, no markdown.
- Never invent prices, discounts, or policies that are not in the context.
- Never pressure, guilt, or threaten.
- If the member asks to stop receiving messages, close the thread.
"""

FOLLOW_UP_USER_PROMPT = """Business: {account_name}
Member: {contact_name} ({contact_email})
Goal: {goal}
Context: {member_context}

Messages sent so far: {messages_sent} (hard limit: {max_touches})
Days since last message: {days_since_last_message}

Conversation:
{conversation}

The member has not replied to the last message. Decide:
1. Send another follow-up, close the thread, escalate to the owner, or wait longer?
2. If following up: write the next message. Do NOT repeat what was already said.
3. If closing: choose the outcome (unresponsive after reasonable attempts, churned, etc.)
4. If following up or waiting: how many days until the next check?

Respond ONLY with valid JSON (no markdown fences):
{{
  "reasoning": "2-3 sentences explaining the decision",
  "action": "follow_up" | "close" | "escalate" | "wait",
  "message": "the follow-up message text (required if action=follow_up)",
  "outcome": "unresponsive" | "churned" | "engaged" | "not_applicable" (if action=close),
  "nextCheckDays": number (if action=follow_up or wait)
}}"""

REPLY_USER_PROMPT = """Business: {account_name}
Member: {contact_name} ({contact_email})
Goal: {goal}
Context: {member_context}

Conversation:
{conversation}

The member just replied (last MEMBER message). Decide the best next action.

Respond ONLY with valid JSON (no markdown fences):
{{
  "reasoning": "2-3 sentences on what the member is communicating",
  "action": "reply" | "close" | "escalate" | "wait",
  "reply": "the message to send (required for action=reply)",
  "outcome": "engaged" | "recovered" | "churned" | "not_applicable" (if action=close),
  "nextCheckDays": number (if action=reply or wait)
}}"""


def guidelines_for(task_type: str) -> str:
    """Return the outreach guidelines for *task_type* (generic if unknown)."""
    return TASK_TYPE_GUIDELINES.get(task_type, GENERIC_GUIDELINES)


def build_system_prompt(task_type: str, account_name: str | None) -> str:
    """Render the shared system prompt for a task type."""
    return BASE_SYSTEM_PROMPT.format(
        account_name=account_name or "the business",
        task_type=task_type,
        guidelines=guidelines_for(task_type),
    )


def format_conversation(entries: Iterable[ConversationEntry]) -> str:
    """Render agent and member entries as a labelled transcript.

    System entries are internal notes and are never shown to the model.
    """
    labels = {ConversationRole.AGENT: "BUSINESS", ConversationRole.MEMBER: "MEMBER"}
    lines = [
        f"[{labels[entry.role]}]: {entry.content}"
        for entry in entries
        if entry.role in labels
    ]
    return "\n\n".join(lines) if lines else "(No messages yet)"
