"""UTC helpers; SQLite hands back naive datetimes even for timezone-aware columns."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_dt(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_optional_dt(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return normalize_dt(value)


def isoformat_or_none(value: Optional[datetime]) -> Optional[str]:
    normalized = normalize_optional_dt(value)
    return normalized.isoformat() if normalized is not None else None
