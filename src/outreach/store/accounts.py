"""Account settings the engine needs: display name, timezone, autopilot flag."""

from __future__ import annotations

from outreach.domain.models import Account
from outreach.resilience.retry import retry_on_locked
from outreach.store.schema import StoreConnection


class AccountStore:
    """Read and upsert account rows."""

    def __init__(self, conn: StoreConnection, *, default_timezone: str = "America/New_York") -> None:
        self._conn = conn
        self._default_timezone = default_timezone

    @retry_on_locked("account_upsert")
    def upsert(self, account: Account) -> Account:
        """Insert or replace the account row."""
        with self._conn.transaction():
            self._conn.execute(
                """
                INSERT INTO accounts (id, name, timezone, autopilot_enabled)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    name = excluded.name,
                    timezone = excluded.timezone,
                    autopilot_enabled = excluded.autopilot_enabled
                """,
                (account.id, account.name, account.timezone, int(account.autopilot_enabled)),
            )
        return account

    def get(self, account_id: str) -> Account | None:
        row = self._conn.execute(
            "SELECT * FROM accounts WHERE id = ?", (account_id,)
        ).fetchone()
        if row is None:
            return None
        return Account(
            id=row["id"],
            name=row["name"],
            timezone=row["timezone"] or self._default_timezone,
            autopilot_enabled=bool(row["autopilot_enabled"]),
        )

    def timezone_for(self, account_id: str) -> str:
        """The account's IANA timezone, or the configured default."""
        account = self.get(account_id)
        if account is None or not account.timezone:
            return self._default_timezone
        return account.timezone
