"""Serialization helpers shared by the SQLite stores.

Timestamps are stored as fixed-width ISO-8601 UTC strings with microseconds
(``2025-01-02T03:04:05.000006Z``) so that string comparison in SQL matches
chronological order.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(tz=UTC)


def to_db_ts(value: datetime | None) -> str | None:
    """Format an aware datetime for storage (naive values are taken as UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(_TS_FORMAT)


def from_db_ts(value: str | None) -> datetime | None:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if value is None:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=UTC)


def dumps_json(value: dict[str, Any] | None) -> str | None:
    """JSON-encode an optional dict column."""
    if value is None:
        return None
    return json.dumps(value, default=str)


def loads_json(value: str | None) -> dict[str, Any] | None:
    """Decode an optional JSON dict column, tolerating corrupt values."""
    if not value:
        return None
    try:
        decoded = json.loads(value)
    except json.JSONDecodeError:
        return None
    return decoded if isinstance(decoded, dict) else None
