"""SQLite-backed command store: the durable queue behind the command bus.

Every status change is a conditional UPDATE keyed on the row's current
status (and, for claims, its due time or claim time), so two overlapping
ticks can never both claim the same command.  ``rowcount`` tells the caller
whether it won.
"""

from __future__ import annotations

import sqlite3
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any

import structlog

from outreach.domain.errors import CommandNotFoundError, CommandStateError
from outreach.domain.models import Command
from outreach.domain.types import CommandStatus
from outreach.resilience.retry import retry_on_locked
from outreach.store.schema import StoreConnection
from outreach.store.serializers import dumps_json, from_db_ts, loads_json, to_db_ts, utc_now

logger = structlog.get_logger()


def _row_to_command(row: sqlite3.Row) -> Command:
    return Command(
        id=row["id"],
        command_type=row["command_type"],
        payload=loads_json(row["payload_json"]) or {},
        status=CommandStatus(row["status"]),
        attempt_count=row["attempt_count"],
        max_attempts=row["max_attempts"],
        account_id=row["account_id"],
        task_id=row["task_id"],
        issued_by=row["issued_by"],
        idempotency_key=row["idempotency_key"],
        next_attempt_at=from_db_ts(row["next_attempt_at"]),
        created_at=from_db_ts(row["created_at"]),
        claimed_at=from_db_ts(row["claimed_at"]),
        completed_at=from_db_ts(row["completed_at"]),
        last_error=row["last_error"],
        result=loads_json(row["result_json"]),
    )


class CommandStore:
    """Persist commands and move them through their lifecycle.

    ``pending -> claimed -> (completed | pending | dead_letter)``.  A command
    never leaves ``completed`` or ``dead_letter`` except through an explicit
    operator ``requeue`` of a dead letter.
    """

    def __init__(
        self,
        conn: StoreConnection,
        *,
        clock: Callable[[], datetime] = utc_now,
        default_max_attempts: int = 3,
        backoff_minutes: Sequence[int] = (2, 10),
        claim_timeout_seconds: int = 300,
    ) -> None:
        """Initialize with an open database connection.

        Args:
            conn: An open ``StoreConnection`` whose database already has the
                  ``commands`` table (see ``init_db``).
            clock: Returns the current UTC time; injectable for tests.
            default_max_attempts: ``max_attempts`` for newly enqueued commands.
            backoff_minutes: Delay before retry N is ``backoff_minutes[N-1]``;
                  the last value repeats.
            claim_timeout_seconds: Age after which a ``claimed`` command is
                  considered abandoned and may be claimed again.
        """
        self._conn = conn
        self._clock = clock
        self._default_max_attempts = default_max_attempts
        self._backoff_minutes = tuple(backoff_minutes) or (2,)
        self._claim_timeout = timedelta(seconds=claim_timeout_seconds)

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    @retry_on_locked("command_enqueue")
    def enqueue(
        self,
        command_type: str,
        payload: dict[str, Any],
        *,
        account_id: str | None = None,
        task_id: str | None = None,
        issued_by: str = "system",
        idempotency_key: str | None = None,
        max_attempts: int | None = None,
    ) -> Command:
        """Insert a pending command with ``attempt_count = 0``.

        When *idempotency_key* matches an existing command, that command is
        returned unchanged instead of inserting a duplicate.
        """
        now = to_db_ts(self._clock())
        command_id = str(uuid.uuid4())
        with self._conn.transaction():
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO commands (
                    id, command_type, payload_json, status, attempt_count, max_attempts,
                    account_id, task_id, issued_by, idempotency_key,
                    next_attempt_at, created_at
                ) VALUES (?, ?, ?, 'pending', 0, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    command_id,
                    command_type,
                    dumps_json(payload) or "{}",
                    max_attempts or self._default_max_attempts,
                    account_id,
                    task_id,
                    issued_by,
                    idempotency_key,
                    now,
                    now,
                ),
            )

        if cursor.rowcount == 0 and idempotency_key is not None:
            existing = self.get_by_idempotency_key(idempotency_key)
            if existing is not None:
                logger.info(
                    "command_enqueue_deduplicated",
                    command_id=existing.id,
                    idempotency_key=idempotency_key,
                )
                return existing

        logger.info(
            "command_enqueued",
            command_id=command_id,
            command_type=command_type,
            task_id=task_id,
            issued_by=issued_by,
        )
        return self._require(command_id)

    @retry_on_locked("command_claim")
    def claim_batch(self, limit: int) -> list[Command]:
        """Claim up to *limit* due commands for this caller.

        Due means ``pending`` with ``next_attempt_at <= now`` and attempts
        left, or ``claimed`` longer ago than the claim timeout.  Each
        candidate is flipped with its own conditional UPDATE; candidates won
        by a concurrent caller are silently skipped.
        """
        if limit <= 0:
            return []
        now = self._clock()
        claimed: list[Command] = []
        with self._conn.transaction():
            rows = self._conn.execute(
                """
                SELECT * FROM commands
                WHERE (status = 'pending' AND next_attempt_at <= ? AND attempt_count < max_attempts)
                   OR (status = 'claimed' AND claimed_at <= ? AND attempt_count < max_attempts)
                ORDER BY next_attempt_at, created_at
                LIMIT ?
                """,
                (to_db_ts(now), to_db_ts(now - self._claim_timeout), limit),
            ).fetchall()
            for row in rows:
                command = self._try_claim(row, now)
                if command is not None:
                    claimed.append(command)
        return claimed

    @retry_on_locked("command_claim_one")
    def claim(self, command_id: str) -> Command | None:
        """Claim one specific command if it is currently due.

        Returns:
            The claimed command, or ``None`` when it is not due, already
            terminal, or won by another caller.
        """
        with self._conn.transaction():
            row = self._conn.execute(
                "SELECT * FROM commands WHERE id = ?", (command_id,)
            ).fetchone()
            if row is None:
                raise CommandNotFoundError(command_id)
            now = self._clock()
            if row["attempt_count"] >= row["max_attempts"]:
                return None
            if row["status"] == CommandStatus.PENDING:
                if row["next_attempt_at"] > to_db_ts(now):
                    return None
            elif row["status"] == CommandStatus.CLAIMED:
                if row["claimed_at"] > to_db_ts(now - self._claim_timeout):
                    return None
            else:
                return None
            return self._try_claim(row, now)

    def _try_claim(self, row: sqlite3.Row, now: datetime) -> Command | None:
        # Runs inside the caller's transaction.
        ts = to_db_ts(now)
        if row["status"] == CommandStatus.PENDING:
            cursor = self._conn.execute(
                """
                UPDATE commands
                SET status = 'claimed', claimed_at = ?, attempt_count = attempt_count + 1
                WHERE id = ? AND status = 'pending' AND next_attempt_at <= ?
                  AND attempt_count < max_attempts
                """,
                (ts, row["id"], ts),
            )
        else:
            cursor = self._conn.execute(
                """
                UPDATE commands
                SET claimed_at = ?, attempt_count = attempt_count + 1
                WHERE id = ? AND status = 'claimed' AND claimed_at = ?
                  AND attempt_count < max_attempts
                """,
                (ts, row["id"], row["claimed_at"]),
            )
            if cursor.rowcount == 1:
                logger.warning(
                    "command_stale_claim_recovered",
                    command_id=row["id"],
                    previous_claimed_at=row["claimed_at"],
                )
        if cursor.rowcount != 1:
            return None
        return self._require(row["id"])

    @retry_on_locked("command_expire")
    def expire_stale_claims(self) -> list[Command]:
        """Dead-letter stale claims that have no attempts left.

        A command claimed on its final attempt whose worker never reported
        back cannot be retried without breaking the attempt bound.

        Returns:
            The commands moved to ``dead_letter`` by this call.
        """
        now = self._clock()
        stale_before = to_db_ts(now - self._claim_timeout)
        expired: list[Command] = []
        with self._conn.transaction():
            rows = self._conn.execute(
                """
                SELECT id, claimed_at FROM commands
                WHERE status = 'claimed' AND claimed_at <= ? AND attempt_count >= max_attempts
                """,
                (stale_before,),
            ).fetchall()
            for row in rows:
                cursor = self._conn.execute(
                    """
                    UPDATE commands
                    SET status = 'dead_letter', completed_at = ?,
                        last_error = 'claim expired on final attempt'
                    WHERE id = ? AND status = 'claimed' AND claimed_at = ?
                    """,
                    (to_db_ts(now), row["id"], row["claimed_at"]),
                )
                if cursor.rowcount == 1:
                    expired.append(self._require(row["id"]))
        return expired

    @retry_on_locked("command_complete")
    def complete(self, command_id: str, result: dict[str, Any] | None = None) -> bool:
        """Mark a claimed command completed and store its result.

        Returns:
            ``False`` when the command was no longer claimed by this caller.
        """
        with self._conn.transaction():
            cursor = self._conn.execute(
                """
                UPDATE commands
                SET status = 'completed', completed_at = ?, result_json = ?
                WHERE id = ? AND status = 'claimed'
                """,
                (to_db_ts(self._clock()), dumps_json(result), command_id),
            )
        return cursor.rowcount == 1

    @retry_on_locked("command_fail")
    def fail(self, command_id: str, error: str) -> CommandStatus:
        """Record a failed attempt on a claimed command.

        With attempts left the command returns to ``pending`` and becomes due
        again after the backoff for this attempt; otherwise it is
        dead-lettered.

        Returns:
            The command's new status.
        """
        with self._conn.transaction():
            command = self._require(command_id)
            if command.status != CommandStatus.CLAIMED:
                return command.status
            if command.attempt_count >= command.max_attempts:
                self.dead_letter(command_id, error)
                return CommandStatus.DEAD_LETTER

            now = self._clock()
            index = min(max(command.attempt_count, 1), len(self._backoff_minutes)) - 1
            retry_at = now + timedelta(minutes=self._backoff_minutes[index])
            self._conn.execute(
                """
                UPDATE commands
                SET status = 'pending', next_attempt_at = ?, last_error = ?
                WHERE id = ? AND status = 'claimed'
                """,
                (to_db_ts(retry_at), error, command_id),
            )
        return CommandStatus.PENDING

    @retry_on_locked("command_dead_letter")
    def dead_letter(self, command_id: str, reason: str) -> bool:
        """Move a live command to the terminal ``dead_letter`` status."""
        with self._conn.transaction():
            cursor = self._conn.execute(
                """
                UPDATE commands
                SET status = 'dead_letter', completed_at = ?, last_error = ?
                WHERE id = ? AND status IN ('pending', 'claimed')
                """,
                (to_db_ts(self._clock()), reason, command_id),
            )
        return cursor.rowcount == 1

    @retry_on_locked("command_defer")
    def defer(self, command_id: str, until: datetime, reason: str) -> bool:
        """Return a claimed command to ``pending`` without spending an attempt."""
        with self._conn.transaction():
            cursor = self._conn.execute(
                """
                UPDATE commands
                SET status = 'pending', next_attempt_at = ?,
                    attempt_count = MAX(attempt_count - 1, 0), last_error = ?
                WHERE id = ? AND status = 'claimed'
                """,
                (to_db_ts(until), f"deferred: {reason}", command_id),
            )
        return cursor.rowcount == 1

    @retry_on_locked("command_requeue")
    def requeue(self, command_id: str) -> Command:
        """Give a dead-lettered command a fresh attempt budget (operator action).

        Raises:
            CommandNotFoundError: If the command does not exist.
            CommandStateError: If the command is not dead-lettered.
        """
        command = self._require(command_id)
        with self._conn.transaction():
            cursor = self._conn.execute(
                """
                UPDATE commands
                SET status = 'pending', attempt_count = 0, next_attempt_at = ?,
                    claimed_at = NULL, completed_at = NULL
                WHERE id = ? AND status = 'dead_letter'
                """,
                (to_db_ts(self._clock()), command_id),
            )
        if cursor.rowcount != 1:
            raise CommandStateError(command_id, command.status, "requeue")
        logger.info("command_requeued", command_id=command_id)
        return self._require(command_id)

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def get(self, command_id: str) -> Command | None:
        """Return the command with *command_id*, or ``None``."""
        row = self._conn.execute(
            "SELECT * FROM commands WHERE id = ?", (command_id,)
        ).fetchone()
        return _row_to_command(row) if row is not None else None

    def get_by_idempotency_key(self, key: str) -> Command | None:
        """Return the command enqueued under *key*, or ``None``."""
        row = self._conn.execute(
            "SELECT * FROM commands WHERE idempotency_key = ?", (key,)
        ).fetchone()
        return _row_to_command(row) if row is not None else None

    def list_dead_letters(self, limit: int = 50) -> list[Command]:
        """Return dead-lettered commands, most recent first, for operator review."""
        rows = self._conn.execute(
            """
            SELECT * FROM commands WHERE status = 'dead_letter'
            ORDER BY completed_at DESC, created_at DESC LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [_row_to_command(row) for row in rows]

    def counts_by_status(self) -> dict[str, int]:
        """Return the number of commands per status (every status present)."""
        counts = {status.value: 0 for status in CommandStatus}
        for row in self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM commands GROUP BY status"
        ).fetchall():
            counts[row["status"]] = row["n"]
        return counts

    def count_for_task(
        self,
        task_id: str,
        command_type: str,
        *,
        key_prefix: str | None = None,
        include_dead_letters: bool = False,
    ) -> int:
        """Count commands of *command_type* enqueued for a task.

        Args:
            task_id: The owning task.
            command_type: Command type tag.
            key_prefix: Only count commands whose idempotency key starts
                with this prefix.
            include_dead_letters: Dead letters never reached the contact and
                are excluded unless this is set.
        """
        sql = "SELECT COUNT(*) AS n FROM commands WHERE task_id = ? AND command_type = ?"
        params: list[Any] = [task_id, command_type]
        if key_prefix is not None:
            sql += " AND substr(idempotency_key, 1, ?) = ?"
            params.extend([len(key_prefix), key_prefix])
        if not include_dead_letters:
            sql += " AND status != 'dead_letter'"
        row = self._conn.execute(sql, params).fetchone()
        return int(row["n"])

    def _require(self, command_id: str) -> Command:
        command = self.get(command_id)
        if command is None:
            raise CommandNotFoundError(command_id)
        return command
