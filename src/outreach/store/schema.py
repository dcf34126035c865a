"""SQLite schema for the outreach engine.

``init_db()`` opens the database in WAL mode and creates every table and
index idempotently, so it is safe to call on each process start.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any


class StoreConnection(sqlite3.Connection):
    """sqlite3 connection whose write units are serialised by one lock.

    Every store wraps its statement-plus-commit work in ``transaction()``.
    Units nest: an inner unit becomes a savepoint of the outer one and only
    the outermost unit commits, so a caller can make several store writes
    succeed or fail together.  A failed unit rolls back to its own savepoint
    and leaves anything else pending on the connection alone.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.lock = threading.RLock()
        self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator[StoreConnection]:
        """Hold the lock for one unit of work; commit it when the outermost unit exits."""
        with self.lock:
            savepoint = f"unit_{self._depth}"
            self.execute(f"SAVEPOINT {savepoint}")
            self._depth += 1
            try:
                yield self
            except BaseException:
                # SQLite may already have rolled back the whole transaction.
                if self.in_transaction:
                    self.execute(f"ROLLBACK TO {savepoint}")
                    self.execute(f"RELEASE {savepoint}")
                raise
            else:
                self.execute(f"RELEASE {savepoint}")
                if self._depth == 1:
                    self.commit()
            finally:
                self._depth -= 1


def connect(db_path: Path | str) -> StoreConnection:
    """Open a connection configured for the stores.

    The connection is shared between the event loop thread and the worker
    threads requests and ticks run in, so ``check_same_thread`` is disabled
    and writes are serialised by ``StoreConnection.transaction``.

    Args:
        db_path: Path to the SQLite database file, or ``":memory:"``.

    Returns:
        An open ``StoreConnection`` with ``sqlite3.Row`` rows.
    """
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        str(db_path), check_same_thread=False, timeout=5.0, factory=StoreConnection
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def create_tables(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes if they do not already exist.

    Args:
        conn: An open sqlite3.Connection.
    """
    conn.execute("""
        CREATE TABLE IF NOT EXISTS accounts (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL DEFAULT '',
            timezone TEXT NOT NULL DEFAULT 'America/New_York',
            autopilot_enabled INTEGER NOT NULL DEFAULT 0
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS commands (
            id TEXT PRIMARY KEY,
            command_type TEXT NOT NULL,
            payload_json TEXT NOT NULL DEFAULT '{}',
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'claimed', 'completed', 'failed', 'dead_letter')),
            attempt_count INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            account_id TEXT,
            task_id TEXT,
            issued_by TEXT NOT NULL DEFAULT 'unknown',
            idempotency_key TEXT UNIQUE,
            next_attempt_at TEXT NOT NULL,
            created_at TEXT NOT NULL,
            claimed_at TEXT,
            completed_at TEXT,
            last_error TEXT,
            result_json TEXT
        )
    """)
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_commands_due ON commands (status, next_attempt_at)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_commands_task ON commands (task_id)")

    conn.execute("""
        CREATE TABLE IF NOT EXISTS tasks (
            id TEXT PRIMARY KEY,
            account_id TEXT NOT NULL,
            task_type TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'open'
                CHECK (status IN ('open', 'awaiting_approval', 'awaiting_reply',
                                  'escalated', 'resolved', 'cancelled')),
            goal TEXT NOT NULL DEFAULT '',
            context_json TEXT NOT NULL DEFAULT '{}',
            contact_id TEXT,
            contact_email TEXT,
            contact_name TEXT,
            assigned_agent TEXT NOT NULL DEFAULT 'retention',
            requires_approval INTEGER NOT NULL DEFAULT 0,
            next_action_at TEXT,
            outcome TEXT,
            outcome_reason TEXT,
            approved_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            resolved_at TEXT
        )
    """)
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_tasks_due ON tasks (status, next_action_at)"
    )
    # At most one live thread per (account, contact, task_type); the contact
    # is the email address, or the contact id for tasks without one.
    conn.execute("DROP INDEX IF EXISTS uq_tasks_active_thread")
    conn.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_tasks_active_contact
        ON tasks (account_id, COALESCE(contact_email, contact_id), task_type)
        WHERE status IN ('open', 'awaiting_approval', 'awaiting_reply', 'escalated')
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS task_conversations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            task_id TEXT NOT NULL REFERENCES tasks (id),
            role TEXT NOT NULL CHECK (role IN ('agent', 'member', 'system')),
            content TEXT NOT NULL,
            agent_name TEXT,
            evaluation_json TEXT,
            created_at TEXT NOT NULL
        )
    """)
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_conversations_task "
        "ON task_conversations (task_id, created_at, id)"
    )

    conn.execute("""
        CREATE TABLE IF NOT EXISTS outbound_messages (
            id TEXT PRIMARY KEY,
            command_id TEXT UNIQUE,
            account_id TEXT NOT NULL,
            task_id TEXT,
            channel TEXT NOT NULL DEFAULT 'email',
            recipient_email TEXT NOT NULL,
            recipient_name TEXT,
            subject TEXT NOT NULL,
            body TEXT NOT NULL,
            reply_token TEXT,
            status TEXT NOT NULL CHECK (status IN ('queued', 'sent', 'failed')),
            provider_message_id TEXT,
            failed_reason TEXT,
            sent_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_outbound_account_sent "
        "ON outbound_messages (account_id, status, sent_at)"
    )

    conn.execute("""
        CREATE TABLE IF NOT EXISTS communication_optouts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id TEXT NOT NULL,
            channel TEXT NOT NULL,
            contact TEXT NOT NULL,
            reason TEXT,
            created_at TEXT NOT NULL,
            UNIQUE (account_id, channel, contact)
        )
    """)

    conn.commit()


def init_db(db_path: Path | str) -> StoreConnection:
    """Create and initialize the outreach database.

    Args:
        db_path: Path to the SQLite database file, or ``":memory:"``.

    Returns:
        An open ``StoreConnection`` with every table created.
    """
    conn = connect(db_path)
    create_tables(conn)
    return conn
