"""Typed task context, one variant per task type.

The context column is free-form JSON written by agents and operators, so
decoding is lenient: unknown keys are kept as extras, invalid values are
dropped in favour of the field default, and an unknown ``task_type`` falls
back to the generic variant instead of raising.
"""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = structlog.get_logger()


class TaskContext(BaseModel):
    """Fields shared by every task type."""

    model_config = ConfigDict(extra="allow", frozen=True, populate_by_name=True)

    kind: str = "generic"
    draft_message: str | None = Field(default=None, alias="draftMessage")
    message_subject: str | None = Field(default=None, alias="messageSubject")
    account_name: str | None = Field(default=None, alias="accountName")
    detail: str | None = None
    playbook_id: str | None = Field(default=None, alias="playbookId")
    priority: str | None = None

    def describe(self) -> str:
        """Return a one-line summary of the contact's situation for prompts."""
        return self.detail or ""

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize for storage, keeping unknown extras."""
        return self.model_dump(mode="json", exclude_none=True)


class ChurnRiskContext(TaskContext):
    """A member whose engagement signals point to cancellation."""

    kind: str = "churn_risk"
    risk_reason: str | None = Field(default=None, alias="riskReason")
    risk_score: float | None = Field(default=None, alias="riskScore")
    days_since_last_visit: int | None = Field(default=None, alias="daysSinceLastVisit")

    def describe(self) -> str:
        parts = [p for p in (self.risk_reason, self.detail) if p]
        if self.days_since_last_visit is not None:
            parts.append(f"last visit {self.days_since_last_visit} days ago")
        return "; ".join(parts)


class WinBackContext(TaskContext):
    """A former member who already cancelled."""

    kind: str = "win_back"
    cancel_reason: str | None = Field(default=None, alias="cancelReason")
    cancelled_at: str | None = Field(default=None, alias="cancelledAt")

    def describe(self) -> str:
        parts = [p for p in (self.detail,) if p]
        if self.cancel_reason:
            parts.append(f"cancelled because: {self.cancel_reason}")
        if self.cancelled_at:
            parts.append(f"cancelled on {self.cancelled_at}")
        return "; ".join(parts)


class PaymentFailedContext(TaskContext):
    """A member whose recurring payment bounced."""

    kind: str = "payment_failed"
    amount_due: str | None = Field(default=None, alias="amountDue")
    failure_reason: str | None = Field(default=None, alias="failureReason")

    def describe(self) -> str:
        parts = [p for p in (self.detail,) if p]
        if self.amount_due:
            parts.append(f"amount due {self.amount_due}")
        if self.failure_reason:
            parts.append(f"payment failed: {self.failure_reason}")
        return "; ".join(parts)


_CONTEXT_TYPES: dict[str, type[TaskContext]] = {
    "churn_risk": ChurnRiskContext,
    "win_back": WinBackContext,
    "payment_failed": PaymentFailedContext,
}


def context_class_for(task_type: str) -> type[TaskContext]:
    """Return the context variant registered for *task_type* (generic if unknown)."""
    return _CONTEXT_TYPES.get(task_type, TaskContext)


def decode_task_context(task_type: str, raw: dict[str, Any] | None) -> TaskContext:
    """Decode a stored context payload into the variant for *task_type*.

    Invalid field values are dropped one validation pass at a time so a
    single bad key never makes the whole task unreadable.

    Args:
        task_type: The task's type tag (e.g. ``"churn_risk"``).
        raw: The decoded JSON payload, or ``None``.

    Returns:
        A ``TaskContext`` instance (or subclass) with ``kind`` set to
        *task_type*.
    """
    cls = context_class_for(task_type)
    data: dict[str, Any] = dict(raw) if isinstance(raw, dict) else {}
    data["kind"] = task_type

    for _ in range(len(data) + 1):
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            bad_keys = {err["loc"][0] for err in exc.errors() if err["loc"]}
            bad_keys.discard("kind")
            if not bad_keys:
                break
            logger.warning(
                "task_context_fields_dropped",
                task_type=task_type,
                fields=sorted(str(k) for k in bad_keys),
            )
            for key in bad_keys:
                data.pop(key, None)
                for name, field in cls.model_fields.items():
                    if key in (name, field.alias):
                        data.pop(name, None)
                        if field.alias:
                            data.pop(field.alias, None)

    return cls(kind=task_type)
