"""Reply evaluator: decide what to do after a member writes back.

A member's words are never silently dropped, so every failure to get a
usable decision escalates to a human instead of waiting.
"""

from __future__ import annotations

import structlog

from outreach.domain.errors import MalformedDecisionError
from outreach.domain.models import ConversationEntry, Task
from outreach.llm.client import Reasoner
from outreach.llm.models import ReplyAction, ReplyDecision
from outreach.llm.parsing import parse_reply_decision
from outreach.llm.prompts import REPLY_USER_PROMPT, build_system_prompt, format_conversation

logger = structlog.get_logger()


class ReplyEvaluator:
    """Ask the reasoner for ``reply | close | escalate | wait`` on a thread."""

    def __init__(self, reasoner: Reasoner) -> None:
        self._reasoner = reasoner

    def evaluate(
        self,
        task: Task,
        history: list[ConversationEntry],
        *,
        account_name: str | None = None,
    ) -> ReplyDecision:
        """Return the decision for *task* given its full *history*."""
        prompt = REPLY_USER_PROMPT.format(
            account_name=account_name or task.context.account_name or "the business",
            contact_name=task.display_name,
            contact_email=task.contact_email or "unknown",
            goal=task.goal or "Re-engage the member",
            member_context=task.context.describe() or "(none)",
            conversation=format_conversation(history),
        )
        try:
            raw = self._reasoner.evaluate(
                build_system_prompt(task.task_type, account_name or task.context.account_name),
                prompt,
            )
            return parse_reply_decision(raw)
        except MalformedDecisionError as exc:
            logger.warning("reply_decision_malformed", task_id=task.id, error=str(exc))
            return self._escalate(f"Could not interpret evaluation: {exc}")
        except Exception as exc:
            logger.warning(
                "reply_reasoner_failed", task_id=task.id, error=f"{type(exc).__name__}: {exc}"
            )
            return self._escalate("Evaluation unavailable")

    @staticmethod
    def _escalate(reason: str) -> ReplyDecision:
        return ReplyDecision(action=ReplyAction.ESCALATE, reason=reason, fallback=True)
