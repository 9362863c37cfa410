"""Single clock for every timestamp the core records: naive UTC, as SQLite stores it."""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
