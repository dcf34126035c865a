"""Append-only conversation log per task.

Entries are never updated or deleted.  ``(created_at, id)`` is the total
order the evaluators reason over; the autoincrement id breaks ties between
entries written within the same microsecond.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from datetime import datetime
from typing import Any

from outreach.domain.models import ConversationEntry
from outreach.domain.types import ConversationRole
from outreach.resilience.retry import retry_on_locked
from outreach.store.schema import StoreConnection
from outreach.store.serializers import dumps_json, from_db_ts, loads_json, to_db_ts, utc_now


def _row_to_entry(row: sqlite3.Row) -> ConversationEntry:
    return ConversationEntry(
        id=row["id"],
        task_id=row["task_id"],
        role=ConversationRole(row["role"]),
        content=row["content"],
        agent_name=row["agent_name"],
        evaluation=loads_json(row["evaluation_json"]),
        created_at=from_db_ts(row["created_at"]),
    )


class ConversationLog:
    """Append and read the per-task message history."""

    def __init__(
        self,
        conn: StoreConnection,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._conn = conn
        self._clock = clock

    @retry_on_locked("conversation_append")
    def append(
        self,
        task_id: str,
        role: ConversationRole,
        content: str,
        *,
        agent_name: str | None = None,
        evaluation: dict[str, Any] | None = None,
    ) -> ConversationEntry:
        """Append one entry and return it as stored."""
        with self._conn.transaction():
            cursor = self._conn.execute(
                """
                INSERT INTO task_conversations (
                    task_id, role, content, agent_name, evaluation_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    task_id,
                    role.value,
                    content,
                    agent_name,
                    dumps_json(evaluation),
                    to_db_ts(self._clock()),
                ),
            )
        row = self._conn.execute(
            "SELECT * FROM task_conversations WHERE id = ?", (cursor.lastrowid,)
        ).fetchone()
        return _row_to_entry(row)

    def history(
        self,
        task_id: str,
        roles: tuple[ConversationRole, ...] | None = None,
    ) -> list[ConversationEntry]:
        """Return the task's entries in conversation order.

        Args:
            task_id: The task whose log to read.
            roles: Restrict to these roles (e.g. agent and member only for
                evaluator prompts).  ``None`` returns every entry.
        """
        sql = "SELECT * FROM task_conversations WHERE task_id = ?"
        params: list[Any] = [task_id]
        if roles:
            sql += f" AND role IN ({', '.join('?' for _ in roles)})"
            params.extend(r.value for r in roles)
        sql += " ORDER BY created_at, id"
        return [_row_to_entry(row) for row in self._conn.execute(sql, params).fetchall()]

    def last_message_at(self, task_id: str) -> datetime | None:
        """Time of the newest agent or member entry, ignoring system notes."""
        row = self._conn.execute(
            """
            SELECT MAX(created_at) AS last_at FROM task_conversations
            WHERE task_id = ? AND role IN ('agent', 'member')
            """,
            (task_id,),
        ).fetchone()
        return from_db_ts(row["last_at"]) if row is not None else None
