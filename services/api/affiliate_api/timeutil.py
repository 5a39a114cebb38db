from __future__ import annotations

from datetime import UTC, datetime


def as_aware_utc(dt: datetime) -> datetime:
    # SQLite hands DateTime(timezone=True) values back naive; they are stored as UTC.
    if getattr(dt, "tzinfo", None) is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def as_aware_utc_or_none(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    return as_aware_utc(dt)


def iso_or_none(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return as_aware_utc(dt).isoformat()
