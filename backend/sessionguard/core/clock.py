"""Injectable UTC clock."""

from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    """Source of the current time. Always returns timezone-aware UTC datetimes."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock."""

    def now(self) -> datetime:
        return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_epoch_ms(value: datetime) -> int:
    """Milliseconds since the epoch for a datetime."""
    return int(ensure_utc(value).timestamp() * 1000)


def isoformat_utc(value: datetime) -> str:
    """Canonical ISO-8601 form with millisecond precision and a Z suffix."""
    value = ensure_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def truncate_to_ms(value: datetime) -> datetime:
    """Drop sub-millisecond precision so stored and hashed timestamps agree."""
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)
