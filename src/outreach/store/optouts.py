"""Communication opt-out list keyed on (account, channel, contact)."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

import structlog

from outreach.domain.types import Channel
from outreach.resilience.retry import retry_on_locked
from outreach.store.schema import StoreConnection
from outreach.store.serializers import to_db_ts, utc_now

logger = structlog.get_logger()


def normalize_contact(contact: str) -> str:
    """Lower-case and trim an email address or phone number for lookup."""
    return contact.strip().lower()


class OptOutStore:
    """Presence of a row blocks every future send to that contact on that channel."""

    def __init__(
        self,
        conn: StoreConnection,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._conn = conn
        self._clock = clock

    @retry_on_locked("optout_add")
    def add(
        self,
        account_id: str,
        contact: str,
        channel: Channel = Channel.EMAIL,
        reason: str | None = None,
    ) -> None:
        """Record an opt-out.  Adding the same contact twice is a no-op."""
        with self._conn.transaction():
            self._conn.execute(
                """
                INSERT OR IGNORE INTO communication_optouts (
                    account_id, channel, contact, reason, created_at
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (account_id, channel.value, normalize_contact(contact), reason,
                 to_db_ts(self._clock())),
            )
        logger.info("contact_opted_out", account_id=account_id, channel=channel.value)

    def is_opted_out(self, account_id: str, channel: Channel, contact: str | None) -> bool:
        """Return True when *contact* opted out of *channel* for the account."""
        if not contact:
            return False
        row = self._conn.execute(
            """
            SELECT 1 FROM communication_optouts
            WHERE account_id = ? AND channel = ? AND contact = ?
            LIMIT 1
            """,
            (account_id, channel.value, normalize_contact(contact)),
        ).fetchone()
        return row is not None
