"""Naive-UTC time helpers shared by the models and services."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time without tzinfo, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def minutes_between(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() // 60)
