"""Anthropic-backed reasoning capability.

The evaluators depend only on the ``Reasoner`` protocol: a single-shot text
completion whose output is untrusted and always validated by the caller.
"""

from __future__ import annotations

from typing import Protocol

import structlog
from anthropic import Anthropic

logger = structlog.get_logger()

# Haiku keeps per-evaluation cost negligible; evaluations are short JSON.
DEFAULT_REASONER_MODEL = "claude-haiku-4-5"
DEFAULT_MAX_TOKENS = 800


class Reasoner(Protocol):
    """Single-shot text completion.  The return value is untrusted text."""

    def evaluate(self, system: str, prompt: str) -> str: ...


def get_anthropic_client(api_key: str | None = None, timeout: float = 20.0) -> Anthropic:
    """Create an Anthropic client.

    With no *api_key* the constructor reads ``ANTHROPIC_API_KEY`` from the
    environment.  SDK-level retries are disabled: a failed evaluation falls
    back to a safe decision and is retried on a later tick.
    """
    return Anthropic(api_key=api_key or None, timeout=timeout, max_retries=0)


class AnthropicReasoner:
    """``Reasoner`` implementation over ``client.messages.create``.

    Args:
        client: An ``anthropic.Anthropic`` instance (or compatible mock).
        model: Anthropic model ID.
        max_tokens: Completion budget per evaluation.
    """

    def __init__(
        self,
        client: Anthropic,
        *,
        model: str = DEFAULT_REASONER_MODEL,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        self._client = client
        self._model = model
        self._max_tokens = max_tokens

    def evaluate(self, system: str, prompt: str) -> str:
        """Return the first text block of the completion, stripped.

        Raises:
            anthropic.APIError: On API failures and timeouts.
        """
        response = self._client.messages.create(
            model=self._model,
            max_tokens=self._max_tokens,
            system=system,
            messages=[{"role": "user", "content": prompt}],
        )
        for block in response.content:
            if getattr(block, "type", None) == "text":
                return str(block.text).strip()
        logger.warning("reasoner_returned_no_text", model=self._model)
        return ""
