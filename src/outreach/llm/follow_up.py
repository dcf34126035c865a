"""Follow-up evaluator: a deterministic wrapper around the reasoning step.

The reasoner proposes; the cadence policy disposes.  The touch ceiling and
the maximum thread age are enforced here whatever the model returns, and
any failure to get a usable decision falls back to a short ``wait`` so a
thread can never get stuck on a parsing error.
"""

from __future__ import annotations

from collections.abc import Sequence

import structlog
from pydantic import BaseModel, ConfigDict, Field

from outreach.domain.errors import MalformedDecisionError
from outreach.domain.types import TaskOutcome
from outreach.llm.client import Reasoner
from outreach.llm.models import FollowUpAction, FollowUpDecision, FollowUpRequest
from outreach.llm.parsing import parse_follow_up_decision
from outreach.llm.prompts import FOLLOW_UP_USER_PROMPT, build_system_prompt, format_conversation

logger = structlog.get_logger()


class CadencePolicy(BaseModel):
    """Bounds on how long and how often a silent thread is pursued.

    Attributes:
        max_touches: Absolute ceiling on outbound messages per thread,
            counting the first message.
        day_offsets: Default days before the next check after touch N
            (index N-1); the last value repeats.
        max_thread_days: Threads older than this close as unresponsive.
        fallback_wait_days: Horizon used when no usable decision exists.
        min_check_days: Smallest horizon a decision may set.
    """

    model_config = ConfigDict(frozen=True)

    max_touches: int = Field(default=4, ge=1)
    day_offsets: tuple[int, ...] = (3, 7, 7)
    max_thread_days: int = Field(default=30, ge=1)
    fallback_wait_days: float = Field(default=1.0, gt=0)
    min_check_days: float = Field(default=0.5, gt=0)

    def default_next_check_days(self, messages_sent: int) -> float:
        """Default horizon after *messages_sent* outbound messages."""
        offsets: Sequence[int] = self.day_offsets or (3,)
        index = min(max(messages_sent, 1), len(offsets)) - 1
        return float(offsets[index])

    def clamp_days(self, days: float) -> float:
        """Bound a proposed horizon to ``[min_check_days, max_thread_days]``."""
        return max(self.min_check_days, min(days, float(self.max_thread_days)))


class FollowUpEvaluator:
    """Decide the next action for an ``awaiting_reply`` thread past its due time.

    Args:
        reasoner: The reasoning capability (untrusted output).
        policy: Cadence bounds enforced around every decision.
    """

    def __init__(self, reasoner: Reasoner, policy: CadencePolicy | None = None) -> None:
        self._reasoner = reasoner
        self._policy = policy or CadencePolicy()

    @property
    def policy(self) -> CadencePolicy:
        return self._policy

    def evaluate(self, request: FollowUpRequest) -> FollowUpDecision:
        """Return a decision that already satisfies the cadence policy.

        Never raises for reasoner or parsing failures.
        """
        log = logger.bind(task_id=request.task_id, messages_sent=request.messages_sent)
        policy = self._policy

        if request.messages_sent >= policy.max_touches:
            log.info("follow_up_ceiling_reached", max_touches=policy.max_touches)
            return FollowUpDecision(
                action=FollowUpAction.CLOSE,
                outcome=TaskOutcome.UNRESPONSIVE,
                reason=f"No reply after {request.messages_sent} messages",
            )

        if request.days_since_created >= policy.max_thread_days:
            log.info("follow_up_thread_expired", max_thread_days=policy.max_thread_days)
            return FollowUpDecision(
                action=FollowUpAction.CLOSE,
                outcome=TaskOutcome.UNRESPONSIVE,
                reason=f"No reply within {policy.max_thread_days} days",
            )

        try:
            raw = self._reasoner.evaluate(
                build_system_prompt(request.task_type, request.account_name),
                self._build_prompt(request),
            )
            decision = parse_follow_up_decision(raw)
        except MalformedDecisionError as exc:
            log.warning("follow_up_decision_malformed", error=str(exc))
            return self._fallback(f"Unusable evaluation: {exc}")
        except Exception as exc:
            # Reasoner transport failures are retried by waiting, not inline.
            log.warning("follow_up_reasoner_failed", error=f"{type(exc).__name__}: {exc}")
            return self._fallback("Evaluation unavailable")

        return self._enforce(decision, request)

    def _enforce(self, decision: FollowUpDecision, request: FollowUpRequest) -> FollowUpDecision:
        policy = self._policy

        if decision.action == FollowUpAction.FOLLOW_UP and request.messages_sent + 1 > policy.max_touches:
            logger.info("follow_up_ceiling_overrides_decision", task_id=request.task_id)
            return FollowUpDecision(
                action=FollowUpAction.CLOSE,
                outcome=TaskOutcome.UNRESPONSIVE,
                reason=f"Touch ceiling of {policy.max_touches} reached",
            )

        if decision.action == FollowUpAction.CLOSE and decision.outcome is None:
            return decision.model_copy(update={"outcome": TaskOutcome.UNRESPONSIVE})

        if decision.action in (FollowUpAction.FOLLOW_UP, FollowUpAction.WAIT):
            sent_after = request.messages_sent + (1 if decision.action == FollowUpAction.FOLLOW_UP else 0)
            days = decision.next_check_days or policy.default_next_check_days(sent_after)
            return decision.model_copy(update={"next_check_days": policy.clamp_days(days)})

        return decision

    def _fallback(self, reason: str) -> FollowUpDecision:
        return FollowUpDecision(
            action=FollowUpAction.WAIT,
            reason=reason,
            next_check_days=self._policy.fallback_wait_days,
            fallback=True,
        )

    def _build_prompt(self, request: FollowUpRequest) -> str:
        return FOLLOW_UP_USER_PROMPT.format(
            account_name=request.account_name or "the business",
            contact_name=request.contact_name,
            contact_email=request.contact_email or "unknown",
            goal=request.goal or "Re-engage the member",
            member_context=request.member_context or "(none)",
            messages_sent=request.messages_sent,
            max_touches=self._policy.max_touches,
            days_since_last_message=round(request.days_since_last_message, 1),
            conversation=format_conversation(request.history),
        )
