"""
cogworks — processing lock manager

File: src/cogworks/control_plane/locks.py

Purpose
- Serialize invocations for the same work item through a timestamped
  ``processing`` marker held in the external store.

Functional requirements
- Acquisition and stale override are each a single compare-and-swap on the
  marker, so of any number of concurrent invocations exactly one wins, including
  the near-simultaneous stale-override race (the loser's swap fails because the
  marker it expected is already gone).
- Only the owning token may refresh or release the lock.
- ``hold`` releases on every exit path of the guarded block.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from cogworks.constants import DEFAULT_LOCK_LABEL, DEFAULT_LOCK_TIMEOUT_MINUTES
from cogworks.domain.errors import StaleLockOverride
from cogworks.domain.ids import generate_lock_token
from cogworks.domain.models import Marker
from cogworks.utils.clock import Clock, format_timestamp, utc_now

if TYPE_CHECKING:
    from cogworks.store.base import ArtifactStore

DEFAULT_LOCK_TIMEOUT = timedelta(minutes=DEFAULT_LOCK_TIMEOUT_MINUTES)


class LockOutcome(StrEnum):
    ACQUIRED = "acquired"
    ALREADY_HELD = "already_held"
    STALE_OVERRIDDEN = "stale_overridden"


@dataclass(frozen=True, slots=True)
class LockAttempt:
    """Result of ``try_acquire``.

    ``timestamp`` is the holder's timestamp for ``already_held`` and the
    overridden holder's timestamp for ``stale_overridden``.
    """

    ref: str
    outcome: LockOutcome
    token: str | None = None
    timestamp: str | None = None

    @property
    def acquired(self) -> bool:
        return self.outcome is not LockOutcome.ALREADY_HELD

    @property
    def warning(self) -> StaleLockOverride | None:
        if self.outcome is LockOutcome.STALE_OVERRIDDEN and self.timestamp is not None:
            return StaleLockOverride(self.ref, self.timestamp)
        return None


def is_stale(timestamp: str, timeout: timedelta = DEFAULT_LOCK_TIMEOUT, *, now: datetime | None = None) -> bool:
    """Whether a lock set at ``timestamp`` has outlived ``timeout``.

    Unparseable timestamps are treated as stale so a corrupt marker can never
    wedge a work item permanently.
    """
    try:
        set_at = datetime.fromisoformat(timestamp)
    except (TypeError, ValueError):
        return True
    if set_at.tzinfo is None:
        return True
    current = now if now is not None else utc_now()
    return current - set_at >= timeout


class LockManager:
    def __init__(
        self,
        store: ArtifactStore,
        *,
        timeout: timedelta = DEFAULT_LOCK_TIMEOUT,
        marker_name: str = DEFAULT_LOCK_LABEL,
        clock: Clock = utc_now,
        token_factory: Callable[[], str] = generate_lock_token,
        logger: Any | None = None,
    ) -> None:
        if timeout <= timedelta(0):
            raise ValueError("lock timeout must be positive")
        self._store = store
        self._timeout = timeout
        self._marker_name = marker_name
        self._clock = clock
        self._token_factory = token_factory
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def timeout(self) -> timedelta:
        return self._timeout

    @property
    def marker_name(self) -> str:
        return self._marker_name

    def is_stale(self, timestamp: str, timeout: timedelta | None = None) -> bool:
        return is_stale(timestamp, self._timeout if timeout is None else timeout, now=self._clock())

    def try_acquire(self, ref: str) -> LockAttempt:
        now = self._clock()
        token = self._token_factory()
        claim = Marker(name=self._marker_name, owner=token, timestamp=format_timestamp(now))

        current = self._store.read_marker(ref, self._marker_name)
        if current is None:
            if self._store.compare_and_swap_marker(ref, self._marker_name, expected=None, new=claim):
                self._logger.info("lock_acquired", work_item_ref=ref, owner=token)
                return LockAttempt(ref=ref, outcome=LockOutcome.ACQUIRED, token=token)
            return self._lost_race(ref)

        if not is_stale(current.timestamp, self._timeout, now=now):
            self._logger.info("lock_busy", work_item_ref=ref, held_since=current.timestamp)
            return LockAttempt(ref=ref, outcome=LockOutcome.ALREADY_HELD, timestamp=current.timestamp)

        if self._store.compare_and_swap_marker(ref, self._marker_name, expected=current, new=claim):
            self._logger.warning(
                "lock_stale_override",
                work_item_ref=ref,
                previous_owner=current.owner,
                previous_timestamp=current.timestamp,
                owner=token,
            )
            return LockAttempt(
                ref=ref,
                outcome=LockOutcome.STALE_OVERRIDDEN,
                token=token,
                timestamp=current.timestamp,
            )
        return self._lost_race(ref)

    def refresh(self, ref: str, token: str) -> bool:
        """Move the owner's timestamp forward; ``False`` when ``token`` no longer owns the lock."""
        current = self._store.read_marker(ref, self._marker_name)
        if current is None or current.owner != token:
            self._logger.warning("lock_refresh_lost", work_item_ref=ref, owner=token)
            return False
        renewed = Marker(name=self._marker_name, owner=token, timestamp=format_timestamp(self._clock()))
        return self._store.compare_and_swap_marker(ref, self._marker_name, expected=current, new=renewed)

    def release(self, ref: str, token: str) -> bool:
        current = self._store.read_marker(ref, self._marker_name)
        if current is None or current.owner != token:
            self._logger.warning("lock_release_skipped", work_item_ref=ref, owner=token)
            return False
        released = self._store.compare_and_swap_marker(ref, self._marker_name, expected=current, new=None)
        if released:
            self._logger.info("lock_released", work_item_ref=ref, owner=token)
        return released

    @contextmanager
    def hold(self, ref: str) -> Iterator[LockAttempt]:
        attempt = self.try_acquire(ref)
        try:
            yield attempt
        finally:
            if attempt.acquired and attempt.token is not None:
                self.release(ref, attempt.token)

    def _lost_race(self, ref: str) -> LockAttempt:
        winner = self._store.read_marker(ref, self._marker_name)
        timestamp = winner.timestamp if winner is not None else None
        self._logger.info("lock_busy", work_item_ref=ref, held_since=timestamp)
        return LockAttempt(ref=ref, outcome=LockOutcome.ALREADY_HELD, timestamp=timestamp)


__all__ = [
    "DEFAULT_LOCK_TIMEOUT",
    "LockAttempt",
    "LockManager",
    "LockOutcome",
    "is_stale",
]
