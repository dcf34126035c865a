"""Command bus: claim due commands and dispatch each to its executor.

Retry, backoff and dead-letter logic lives here once, for every command
type.  One command's failure never aborts the rest of the batch.
"""

from __future__ import annotations

import time
from enum import StrEnum
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field

from outreach.domain.errors import (
    CommandDeferred,
    InvalidCommandPayloadError,
    UnknownCommandTypeError,
)
from outreach.domain.models import Command
from outreach.domain.types import CommandStatus
from outreach.notifications import Notifier
from outreach.observability.metrics import COMMANDS_PROCESSED
from outreach.store.commands import CommandStore

logger = structlog.get_logger()


class CommandExecutor(Protocol):
    """Performs the side effect for one command type.

    Must be safe to re-invoke for the same command id: a crash between a
    successful side effect and ``complete`` causes a second dispatch.
    Raise to fail the attempt; raise ``CommandDeferred`` to push the command
    back without spending an attempt, or ``InvalidCommandPayloadError`` to
    dead-letter it straight away.
    """

    def execute(self, command: Command) -> dict[str, Any]: ...


class DispatchOutcome(StrEnum):
    """What happened to a command in one dispatch."""

    COMPLETED = "completed"
    SUPPRESSED = "suppressed"
    RETRIED = "retried"
    DEFERRED = "deferred"
    DEAD_LETTER = "dead_letter"


class DispatchResult(BaseModel, frozen=True):
    """Outcome of dispatching one claimed command."""

    command_id: str
    outcome: DispatchOutcome
    result: dict[str, Any] | None = None
    error: str | None = None


class BatchResult(BaseModel):
    """Per-outcome counts for one ``process_next`` pass."""

    completed: int = 0
    suppressed: int = 0
    retried: int = 0
    deferred: int = 0
    dead_lettered: int = 0
    errors: list[str] = Field(default_factory=list)

    def record(self, result: DispatchResult) -> None:
        match result.outcome:
            case DispatchOutcome.COMPLETED:
                self.completed += 1
            case DispatchOutcome.SUPPRESSED:
                self.suppressed += 1
            case DispatchOutcome.RETRIED:
                self.retried += 1
            case DispatchOutcome.DEFERRED:
                self.deferred += 1
            case DispatchOutcome.DEAD_LETTER:
                self.dead_lettered += 1


class CommandBus:
    """Dispatches commands from a ``CommandStore`` to registered executors.

    Args:
        store: The durable command store.
        executors: Executors keyed by command type.
        notifier: Optional operator alerting for dead letters.
    """

    def __init__(
        self,
        store: CommandStore,
        executors: dict[str, CommandExecutor] | None = None,
        *,
        notifier: Notifier | None = None,
    ) -> None:
        self._store = store
        self._executors: dict[str, CommandExecutor] = dict(executors or {})
        self._notifier = notifier

    @property
    def store(self) -> CommandStore:
        return self._store

    def register(self, command_type: str, executor: CommandExecutor) -> None:
        """Register (or replace) the executor for *command_type*."""
        self._executors[command_type] = executor

    def enqueue(self, command_type: str, payload: dict[str, Any], **kwargs: Any) -> Command:
        """Persist a pending command (see ``CommandStore.enqueue``)."""
        return self._store.enqueue(command_type, payload, **kwargs)

    def process_next(self, limit: int, *, deadline: float | None = None) -> BatchResult:
        """Claim up to *limit* due commands and dispatch each one.

        Args:
            limit: Maximum number of commands to claim.
            deadline: ``time.monotonic()`` value after which no further
                command is dispatched.  Commands already claimed but not
                dispatched stay ``claimed`` and are recovered once their
                claim goes stale.

        Returns:
            Per-outcome counts and the errors of commands that could not be
            processed at all.
        """
        batch = BatchResult()

        for expired in self._store.expire_stale_claims():
            logger.error(
                "command_dead_lettered",
                command_id=expired.id,
                command_type=expired.command_type,
                reason=expired.last_error,
            )
            COMMANDS_PROCESSED.labels(
                command_type=expired.command_type, outcome=DispatchOutcome.DEAD_LETTER
            ).inc()
            batch.dead_lettered += 1
            self._alert_dead_letter(expired)

        claimed = self._store.claim_batch(limit)
        for index, command in enumerate(claimed):
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning(
                    "command_batch_deadline_reached",
                    dispatched=index,
                    left_claimed=len(claimed) - index,
                )
                break
            try:
                batch.record(self._run(command))
            except Exception as exc:
                # Store failure while recording the outcome; the claim goes
                # stale and the command is retried on a later tick.
                logger.exception("command_processing_failed", command_id=command.id)
                batch.errors.append(f"command {command.id}: {exc}")

        if claimed:
            logger.info(
                "command_batch_processed",
                claimed=len(claimed),
                completed=batch.completed,
                retried=batch.retried,
                deferred=batch.deferred,
                dead_lettered=batch.dead_lettered,
            )
        return batch

    def dispatch(self, command_id: str) -> DispatchResult | None:
        """Claim and run one specific command right away.

        Returns:
            The dispatch result, or ``None`` if the command was not due or
            another caller holds it.
        """
        command = self._store.claim(command_id)
        if command is None:
            return None
        return self._run(command)

    def _run(self, command: Command) -> DispatchResult:
        log = logger.bind(
            command_id=command.id,
            command_type=command.command_type,
            attempt=command.attempt_count,
        )
        executor = self._executors.get(command.command_type)
        if executor is None:
            reason = str(UnknownCommandTypeError(command.command_type))
            self._store.dead_letter(command.id, reason)
            log.error("command_dead_lettered", reason=reason)
            return self._finish(command, DispatchOutcome.DEAD_LETTER, error=reason)

        try:
            result = executor.execute(command) or {}
        except CommandDeferred as deferral:
            self._store.defer(command.id, deferral.until, deferral.reason)
            log.info("command_deferred", until=deferral.until.isoformat(), reason=deferral.reason)
            return self._finish(command, DispatchOutcome.DEFERRED, error=deferral.reason)
        except InvalidCommandPayloadError as exc:
            error = f"{type(exc).__name__}: {exc}"
            self._store.dead_letter(command.id, error)
            log.error("command_dead_lettered", reason=error)
            return self._finish(command, DispatchOutcome.DEAD_LETTER, error=error)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            status = self._store.fail(command.id, error)
            if status == CommandStatus.DEAD_LETTER:
                log.error("command_dead_lettered", reason=error)
                return self._finish(command, DispatchOutcome.DEAD_LETTER, error=error)
            log.warning("command_attempt_failed", error=error)
            return self._finish(command, DispatchOutcome.RETRIED, error=error)

        if not self._store.complete(command.id, result):
            log.warning("command_completion_lost")
        outcome = (
            DispatchOutcome.SUPPRESSED
            if result.get("status") == "suppressed"
            else DispatchOutcome.COMPLETED
        )
        log.info("command_completed", outcome=outcome.value)
        return self._finish(command, outcome, result=result)

    def _finish(
        self,
        command: Command,
        outcome: DispatchOutcome,
        *,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> DispatchResult:
        COMMANDS_PROCESSED.labels(command_type=command.command_type, outcome=outcome.value).inc()
        if outcome == DispatchOutcome.DEAD_LETTER:
            dead = self._store.get(command.id)
            self._alert_dead_letter(dead or command)
        return DispatchResult(command_id=command.id, outcome=outcome, result=result, error=error)

    def _alert_dead_letter(self, command: Command) -> None:
        if self._notifier is not None:
            self._notifier.notify_dead_letter(command)

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    def list_dead_letters(self, limit: int = 50) -> list[Command]:
        return self._store.list_dead_letters(limit)

    def requeue(self, command_id: str) -> Command:
        return self._store.requeue(command_id)

    def counts_by_status(self) -> dict[str, int]:
        return self._store.counts_by_status()
