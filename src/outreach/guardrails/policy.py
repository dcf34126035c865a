"""Send guardrails: opt-out list, quiet hours and the per-account daily cap.

The checks are read-then-act against aggregate state.  They bound blast
radius; under concurrent ticks the daily cap may be overrun by a few sends.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from enum import StrEnum
from zoneinfo import ZoneInfo

import structlog
from pydantic import BaseModel

from outreach.domain.types import Channel
from outreach.guardrails.timezone import (
    DEFAULT_TIMEZONE,
    QUIET_HOUR_END,
    QUIET_HOUR_START,
    is_quiet_hours,
    local_midnight,
    quiet_hours_end,
    resolve_zone,
)
from outreach.store.accounts import AccountStore
from outreach.store.optouts import OptOutStore
from outreach.store.outbound import OutboundMessageStore
from outreach.store.serializers import utc_now

logger = structlog.get_logger()


class SendBlock(StrEnum):
    """Why a send may not happen right now."""

    OPTED_OUT = "opted_out"
    QUIET_HOURS = "quiet_hours"
    DAILY_CAP = "daily_cap"


class SendCheck(BaseModel, frozen=True):
    """Result of consulting the guardrails before a send.

    Attributes:
        allowed: True when the send may proceed now.
        block: The first guardrail that blocked the send, if any.
        retry_at: Earliest time a deferred send may be retried (quiet
            hours only; opt-outs never clear on their own).
    """

    allowed: bool
    block: SendBlock | None = None
    retry_at: datetime | None = None


class Guardrails:
    """Stateless policy checks over the opt-out, account and audit stores."""

    def __init__(
        self,
        optouts: OptOutStore,
        accounts: AccountStore,
        outbound: OutboundMessageStore,
        *,
        daily_limit: int = 10,
        quiet_hour_start: int = QUIET_HOUR_START,
        quiet_hour_end: int = QUIET_HOUR_END,
        default_timezone: str = DEFAULT_TIMEZONE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._optouts = optouts
        self._accounts = accounts
        self._outbound = outbound
        self._daily_limit = daily_limit
        self._quiet_start = quiet_hour_start
        self._quiet_end = quiet_hour_end
        self._default_timezone = default_timezone
        self._clock = clock

    @property
    def daily_limit(self) -> int:
        return self._daily_limit

    def is_opted_out(
        self,
        account_id: str,
        contact: str | None,
        channel: Channel = Channel.EMAIL,
    ) -> bool:
        return self._optouts.is_opted_out(account_id, channel, contact)

    def _zone(self, account_id: str) -> ZoneInfo:
        return resolve_zone(self._accounts.timezone_for(account_id), self._default_timezone)

    def is_quiet_hours(self, account_id: str) -> bool:
        """True when it is currently quiet hours in the account's timezone."""
        return is_quiet_hours(
            self._zone(account_id), self._clock(), self._quiet_start, self._quiet_end
        )

    def quiet_hours_end(self, account_id: str) -> datetime:
        """The UTC time the account's current (or next) quiet window ends."""
        return quiet_hours_end(self._zone(account_id), self._clock(), self._quiet_end)

    def daily_send_count(self, account_id: str) -> int:
        """Messages sent for the account since local midnight."""
        since = local_midnight(self._zone(account_id), self._clock())
        return self._outbound.count_sent_since(account_id, since)

    def under_daily_cap(self, account_id: str) -> bool:
        return self.daily_send_count(account_id) < self._daily_limit

    def check_send(
        self,
        account_id: str,
        contact: str | None,
        *,
        channel: Channel = Channel.EMAIL,
        enforce_daily_cap: bool = True,
    ) -> SendCheck:
        """Consult every guardrail in precedence order.

        Opt-out wins over quiet hours, which wins over the daily cap, so a
        caller that cancels on ``OPTED_OUT`` never mistakes it for a deferral.

        Args:
            account_id: The sending account.
            contact: Recipient email (or phone for SMS).
            channel: The channel the send would use.
            enforce_daily_cap: False for sends that do not count as
                autonomous volume (e.g. replies to a member).
        """
        if self.is_opted_out(account_id, contact, channel):
            return SendCheck(allowed=False, block=SendBlock.OPTED_OUT)

        if self.is_quiet_hours(account_id):
            return SendCheck(
                allowed=False,
                block=SendBlock.QUIET_HOURS,
                retry_at=self.quiet_hours_end(account_id),
            )

        if enforce_daily_cap and not self.under_daily_cap(account_id):
            logger.info(
                "daily_cap_reached", account_id=account_id, limit=self._daily_limit
            )
            return SendCheck(allowed=False, block=SendBlock.DAILY_CAP)

        return SendCheck(allowed=True)
