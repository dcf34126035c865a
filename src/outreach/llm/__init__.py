"""Reasoning capability, prompts and the evaluators that wrap it."""

from outreach.llm.client import AnthropicReasoner, Reasoner, get_anthropic_client
from outreach.llm.follow_up import CadencePolicy, FollowUpEvaluator
from outreach.llm.models import (
    FollowUpAction,
    FollowUpDecision,
    FollowUpRequest,
    ReplyAction,
    ReplyDecision,
)
from outreach.llm.parsing import extract_json, parse_follow_up_decision, parse_reply_decision
from outreach.llm.reply import ReplyEvaluator

__all__ = [
    "AnthropicReasoner",
    "CadencePolicy",
    "FollowUpAction",
    "FollowUpDecision",
    "FollowUpEvaluator",
    "FollowUpRequest",
    "Reasoner",
    "ReplyAction",
    "ReplyDecision",
    "ReplyEvaluator",
    "extract_json",
    "get_anthropic_client",
    "parse_follow_up_decision",
    "parse_reply_decision",
]
