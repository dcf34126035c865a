"""SQLite-backed task store for outreach threads.

Transitions are validated by ``TaskStateMachine`` and persisted with a
conditional UPDATE keyed on the status the caller read.  A caller that loses
the race gets ``StaleTaskError`` and must re-read instead of overwriting.
"""

from __future__ import annotations

import sqlite3
import uuid
from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any

import structlog

from outreach.domain.context import TaskContext, decode_task_context
from outreach.domain.errors import (
    DuplicateTaskError,
    MissingContactError,
    StaleTaskError,
    TaskNotFoundError,
)
from outreach.domain.models import Task
from outreach.domain.types import ACTIVE_TASK_STATUSES, TaskOutcome, TaskStatus
from outreach.observability.metrics import TASK_TRANSITIONS
from outreach.resilience.retry import retry_on_locked
from outreach.state_machine import TERMINAL_STATES, TaskStateMachine
from outreach.store.schema import StoreConnection
from outreach.store.serializers import dumps_json, from_db_ts, loads_json, to_db_ts, utc_now

logger = structlog.get_logger()

# Sentinel: "do not add a next_action_at guard to the UPDATE".
_UNSET: Any = object()


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        account_id=row["account_id"],
        task_type=row["task_type"],
        status=TaskStatus(row["status"]),
        goal=row["goal"],
        context=decode_task_context(row["task_type"], loads_json(row["context_json"])),
        contact_id=row["contact_id"],
        contact_email=row["contact_email"],
        contact_name=row["contact_name"],
        assigned_agent=row["assigned_agent"],
        requires_approval=bool(row["requires_approval"]),
        next_action_at=from_db_ts(row["next_action_at"]),
        outcome=_parse_outcome(row["outcome"]),
        outcome_reason=row["outcome_reason"],
        approved_at=from_db_ts(row["approved_at"]),
        created_at=from_db_ts(row["created_at"]),
        updated_at=from_db_ts(row["updated_at"]),
        resolved_at=from_db_ts(row["resolved_at"]),
    )


def _parse_outcome(value: str | None) -> TaskOutcome | None:
    if not value:
        return None
    try:
        return TaskOutcome(value)
    except ValueError:
        return None


def _normalize_email(email: str | None) -> str | None:
    if email is None:
        return None
    email = email.strip().lower()
    return email or None


class TaskStore:
    """Persist outreach tasks and apply guarded status transitions."""

    def __init__(
        self,
        conn: StoreConnection,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize with an open database connection.

        Args:
            conn: An open ``StoreConnection`` with the ``tasks`` table.
            clock: Returns the current UTC time; injectable for tests.
        """
        self._conn = conn
        self._clock = clock

    def transaction(self) -> AbstractContextManager[StoreConnection]:
        """One unit of work spanning every store that shares this connection.

        Writes made inside it, by this store or by the command store, commit
        together or not at all.
        """
        return self._conn.transaction()

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    @retry_on_locked("task_create")
    def create(
        self,
        *,
        account_id: str,
        task_type: str,
        goal: str = "",
        context: TaskContext | dict[str, Any] | None = None,
        contact_id: str | None = None,
        contact_email: str | None = None,
        contact_name: str | None = None,
        assigned_agent: str = "retention",
        requires_approval: bool = False,
    ) -> Task:
        """Insert a new ``open`` task.

        Raises:
            MissingContactError: Neither *contact_email* nor *contact_id* is given.
            DuplicateTaskError: If a non-terminal task already exists for the
                same account, contact and task type.  The contact is the
                email address when there is one, else the contact id.
        """
        if isinstance(context, TaskContext):
            context_payload = context.to_json_dict()
        else:
            context_payload = decode_task_context(task_type, context).to_json_dict()

        task_id = str(uuid.uuid4())
        now = to_db_ts(self._clock())
        email = _normalize_email(contact_email)
        if email is None and not contact_id:
            raise MissingContactError()
        try:
            with self._conn.transaction():
                self._conn.execute(
                    """
                    INSERT INTO tasks (
                        id, account_id, task_type, status, goal, context_json,
                        contact_id, contact_email, contact_name, assigned_agent,
                        requires_approval, created_at, updated_at
                    ) VALUES (?, ?, ?, 'open', ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        task_id,
                        account_id,
                        task_type,
                        goal,
                        dumps_json(context_payload) or "{}",
                        contact_id,
                        email,
                        contact_name,
                        assigned_agent,
                        int(requires_approval),
                        now,
                        now,
                    ),
                )
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" in str(exc):
                raise DuplicateTaskError(account_id, email or contact_id, task_type) from exc
            raise

        logger.info(
            "task_created",
            task_id=task_id,
            account_id=account_id,
            task_type=task_type,
            requires_approval=requires_approval,
        )
        return self.require(task_id)

    @retry_on_locked("task_transition")
    def transition(
        self,
        task: Task,
        event: str,
        *,
        automated: bool = False,
        next_action_at: datetime | None = None,
        outcome: TaskOutcome | None = None,
        outcome_reason: str | None = None,
        approved_at: datetime | None = None,
        expected_next_action_at: Any = _UNSET,
    ) -> Task:
        """Apply *event* to *task* and persist the new status.

        ``next_action_at`` is only kept when the new status is
        ``awaiting_reply``; every other status clears it.  Terminal statuses
        stamp ``resolved_at``.

        Args:
            task: The task as the caller last read it.
            event: A ``TaskEvent`` value.
            automated: Reject events automation may not apply (see
                ``TaskStateMachine.trigger``).
            next_action_at: New follow-up time while awaiting a reply.
            outcome: Outcome to record (terminal transitions).
            outcome_reason: Free-text reason for the outcome.
            approved_at: Operator approval time (approve transition).
            expected_next_action_at: When given, the UPDATE also requires
                ``next_action_at`` to still hold this value (lease guard).

        Returns:
            The task as stored after the transition.

        Raises:
            InvalidTransitionError: If *event* is not valid from the status.
            StaleTaskError: If another writer changed the task first.
        """
        machine = TaskStateMachine(task.status)
        new_status = machine.trigger(event, automated=automated)

        if new_status != TaskStatus.AWAITING_REPLY:
            next_action_at = None
        now = self._clock()
        resolved_at = now if new_status in TERMINAL_STATES else None

        sql = """
            UPDATE tasks
            SET status = ?, next_action_at = ?,
                outcome = COALESCE(?, outcome),
                outcome_reason = COALESCE(?, outcome_reason),
                approved_at = COALESCE(?, approved_at),
                resolved_at = COALESCE(?, resolved_at),
                updated_at = ?
            WHERE id = ? AND status = ?
        """
        params: list[Any] = [
            new_status.value,
            to_db_ts(next_action_at),
            outcome.value if outcome is not None else None,
            outcome_reason,
            to_db_ts(approved_at),
            to_db_ts(resolved_at),
            to_db_ts(now),
            task.id,
            task.status.value,
        ]
        if expected_next_action_at is not _UNSET:
            sql += " AND next_action_at IS ?"
            params.append(to_db_ts(expected_next_action_at))

        with self._conn.transaction():
            cursor = self._conn.execute(sql, params)
        if cursor.rowcount != 1:
            raise StaleTaskError(task.id, task.status)

        TASK_TRANSITIONS.labels(status=new_status.value).inc()
        logger.info(
            "task_transitioned",
            task_id=task.id,
            task_event=event,
            from_status=task.status.value,
            to_status=new_status.value,
            outcome=outcome.value if outcome is not None else None,
        )
        return self.require(task.id)

    @retry_on_locked("task_reschedule")
    def reschedule(
        self,
        task: Task,
        next_action_at: datetime | None,
    ) -> Task | None:
        """Move ``next_action_at`` of an ``awaiting_reply`` task.

        The UPDATE is guarded on both the status and the ``next_action_at``
        the caller read, which makes it usable as a short lease: the
        scheduler pushes the due time forward before calling slow
        collaborators, and an inbound reply (which clears the field) makes
        any later guarded write lose.

        Returns:
            The updated task, or ``None`` if the guard did not match.
        """
        with self._conn.transaction():
            cursor = self._conn.execute(
                """
                UPDATE tasks SET next_action_at = ?, updated_at = ?
                WHERE id = ? AND status = 'awaiting_reply' AND next_action_at IS ?
                """,
                (
                    to_db_ts(next_action_at),
                    to_db_ts(self._clock()),
                    task.id,
                    to_db_ts(task.next_action_at),
                ),
            )
        if cursor.rowcount != 1:
            return None
        return self.require(task.id)

    @retry_on_locked("task_clear_next_action")
    def clear_next_action(self, task_id: str) -> Task | None:
        """Clear ``next_action_at`` of an ``awaiting_reply`` task unconditionally.

        Used when a member replies: the reply takes precedence over any
        scheduled follow-up, including one a concurrent tick has leased.

        Returns:
            The updated task, or ``None`` if it is not awaiting a reply.
        """
        with self._conn.transaction():
            cursor = self._conn.execute(
                """
                UPDATE tasks SET next_action_at = NULL, updated_at = ?
                WHERE id = ? AND status = 'awaiting_reply'
                """,
                (to_db_ts(self._clock()), task_id),
            )
        if cursor.rowcount != 1:
            return None
        return self.require(task_id)

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def get(self, task_id: str) -> Task | None:
        """Return the task with *task_id*, or ``None``."""
        row = self._conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row) if row is not None else None

    def require(self, task_id: str) -> Task:
        """Return the task with *task_id*.

        Raises:
            TaskNotFoundError: If no such task exists.
        """
        task = self.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list_autopilot_candidates(self, limit: int) -> list[Task]:
        """Open tasks eligible for an autonomous first send.

        ``requires_approval`` is false, a contact email is present and the
        account has autopilot enabled.  Oldest first.
        """
        rows = self._conn.execute(
            """
            SELECT t.* FROM tasks t
            JOIN accounts a ON a.id = t.account_id
            WHERE t.status = 'open'
              AND t.requires_approval = 0
              AND t.contact_email IS NOT NULL AND t.contact_email != ''
              AND a.autopilot_enabled = 1
            ORDER BY t.created_at
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [_row_to_task(row) for row in rows]

    def list_due_follow_ups(self, now: datetime, limit: int) -> list[Task]:
        """``awaiting_reply`` tasks whose ``next_action_at`` has passed, most overdue first."""
        rows = self._conn.execute(
            """
            SELECT * FROM tasks
            WHERE status = 'awaiting_reply'
              AND next_action_at IS NOT NULL AND next_action_at <= ?
            ORDER BY next_action_at
            LIMIT ?
            """,
            (to_db_ts(now), limit),
        ).fetchall()
        return [_row_to_task(row) for row in rows]

    def list_by_status(self, status: TaskStatus, limit: int = 100) -> list[Task]:
        """Tasks in *status*, most recently updated first."""
        rows = self._conn.execute(
            "SELECT * FROM tasks WHERE status = ? ORDER BY updated_at DESC LIMIT ?",
            (status.value, limit),
        ).fetchall()
        return [_row_to_task(row) for row in rows]

    def count_active(self) -> int:
        """Number of non-terminal tasks."""
        statuses = [s.value for s in ACTIVE_TASK_STATUSES]
        placeholders = ", ".join("?" for _ in statuses)
        row = self._conn.execute(
            f"SELECT COUNT(*) AS n FROM tasks WHERE status IN ({placeholders})",
            statuses,
        ).fetchone()
        return int(row["n"])
