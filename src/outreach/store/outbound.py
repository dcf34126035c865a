"""Outbound message audit table.

One row per command (``command_id`` is UNIQUE).  A retry of the same command
reuses its row instead of inserting another, so at most one ``sent`` row can
ever exist per command.
"""

from __future__ import annotations

import sqlite3
import uuid
from collections.abc import Callable
from datetime import datetime

from outreach.domain.errors import OutboundMessageNotFoundError
from outreach.domain.models import OutboundMessage
from outreach.domain.types import Channel, MessageStatus
from outreach.resilience.retry import retry_on_locked
from outreach.store.schema import StoreConnection
from outreach.store.serializers import from_db_ts, to_db_ts, utc_now


def _row_to_message(row: sqlite3.Row) -> OutboundMessage:
    return OutboundMessage(
        id=row["id"],
        command_id=row["command_id"],
        account_id=row["account_id"],
        task_id=row["task_id"],
        channel=Channel(row["channel"]),
        recipient_email=row["recipient_email"],
        recipient_name=row["recipient_name"],
        subject=row["subject"],
        body=row["body"],
        reply_token=row["reply_token"],
        status=MessageStatus(row["status"]),
        provider_message_id=row["provider_message_id"],
        failed_reason=row["failed_reason"],
        created_at=from_db_ts(row["created_at"]),
        updated_at=from_db_ts(row["updated_at"]),
    )


class OutboundMessageStore:
    """Record every message handed to the mailer."""

    def __init__(
        self,
        conn: StoreConnection,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._conn = conn
        self._clock = clock

    @retry_on_locked("outbound_upsert")
    def upsert_queued(
        self,
        *,
        command_id: str,
        account_id: str,
        task_id: str | None,
        recipient_email: str,
        recipient_name: str | None,
        subject: str,
        body: str,
        reply_token: str | None,
    ) -> OutboundMessage:
        """Create the ``queued`` row for *command_id*, or reset a failed one.

        A row that already reached ``sent`` is left untouched.
        """
        now = to_db_ts(self._clock())
        with self._conn.transaction():
            self._conn.execute(
                """
                INSERT INTO outbound_messages (
                    id, command_id, account_id, task_id, channel, recipient_email,
                    recipient_name, subject, body, reply_token, status,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, 'email', ?, ?, ?, ?, ?, 'queued', ?, ?)
                ON CONFLICT (command_id) DO UPDATE SET
                    status = 'queued',
                    failed_reason = NULL,
                    subject = excluded.subject,
                    body = excluded.body,
                    updated_at = excluded.updated_at
                WHERE outbound_messages.status != 'sent'
                """,
                (
                    str(uuid.uuid4()),
                    command_id,
                    account_id,
                    task_id,
                    recipient_email,
                    recipient_name,
                    subject,
                    body,
                    reply_token,
                    now,
                    now,
                ),
            )
        message = self.get_by_command(command_id)
        if message is None:
            raise OutboundMessageNotFoundError(command_id)
        return message

    @retry_on_locked("outbound_mark_sent")
    def mark_sent(self, message_id: str, provider_message_id: str | None) -> None:
        """Record a confirmed send."""
        now = to_db_ts(self._clock())
        with self._conn.transaction():
            self._conn.execute(
                """
                UPDATE outbound_messages
                SET status = 'sent', provider_message_id = ?, failed_reason = NULL,
                    sent_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (provider_message_id, now, now, message_id),
            )

    @retry_on_locked("outbound_mark_failed")
    def mark_failed(self, message_id: str, reason: str) -> None:
        """Record a failed send attempt (the row is reused on retry)."""
        with self._conn.transaction():
            self._conn.execute(
                """
                UPDATE outbound_messages
                SET status = 'failed', failed_reason = ?, updated_at = ?
                WHERE id = ? AND status != 'sent'
                """,
                (reason, to_db_ts(self._clock()), message_id),
            )

    def get_by_command(self, command_id: str) -> OutboundMessage | None:
        """Return the audit row for *command_id*, or ``None``."""
        row = self._conn.execute(
            "SELECT * FROM outbound_messages WHERE command_id = ?", (command_id,)
        ).fetchone()
        return _row_to_message(row) if row is not None else None

    def list_for_task(self, task_id: str) -> list[OutboundMessage]:
        """All audit rows for a task, oldest first."""
        rows = self._conn.execute(
            "SELECT * FROM outbound_messages WHERE task_id = ? ORDER BY created_at",
            (task_id,),
        ).fetchall()
        return [_row_to_message(row) for row in rows]

    def count_sent_since(self, account_id: str, since: datetime) -> int:
        """Number of messages sent for the account at or after *since*."""
        row = self._conn.execute(
            """
            SELECT COUNT(*) AS n FROM outbound_messages
            WHERE account_id = ? AND status = 'sent' AND sent_at >= ?
            """,
            (account_id, to_db_ts(since)),
        ).fetchone()
        return int(row["n"])
