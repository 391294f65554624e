"""UTC clock helpers shared by the store, the lock manager and the orchestrator."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def format_timestamp(moment: datetime) -> str:
    """RFC 3339 UTC timestamp with microseconds and a ``Z`` suffix."""

    return moment.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


__all__ = ["Clock", "format_timestamp", "utc_now"]
