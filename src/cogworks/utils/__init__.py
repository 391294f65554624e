"""Shared utilities: async concurrency, atomic filesystem writes, hashing."""

from __future__ import annotations

from cogworks.utils.clock import Clock, format_timestamp, utc_now
from cogworks.utils.concurrency import CancellationToken, WorkerPool, run_with_timeout
from cogworks.utils.fs import atomic_write, exclusive_lock
from cogworks.utils.hashing import canonical_json, sha256_json, sha256_text

__all__ = [
    "CancellationToken",
    "Clock",
    "WorkerPool",
    "atomic_write",
    "canonical_json",
    "exclusive_lock",
    "format_timestamp",
    "run_with_timeout",
    "sha256_json",
    "sha256_text",
    "utc_now",
]
