"""ID generation for runs, traces and lock ownership, plus work-item reference checks."""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from typing import Final

CROCKFORD_BASE32_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26
ULID_RANDOM_BYTES: Final[int] = 10
ULID_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1

RUN_ID_PREFIX: Final[str] = "run"
TRACE_ID_PREFIX: Final[str] = "trc"
LOCK_TOKEN_PREFIX: Final[str] = "lck"

_WORK_ITEM_REF_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/#:-]{0,199}$")
_DECODE_TABLE: Final[dict[str, int]] = {
    char: index for index, char in enumerate(CROCKFORD_BASE32_ALPHABET)
}

_RandBytes = Callable[[int], bytes]

__all__ = [
    "LOCK_TOKEN_PREFIX",
    "RUN_ID_PREFIX",
    "TRACE_ID_PREFIX",
    "generate_lock_token",
    "generate_run_id",
    "generate_trace_id",
    "generate_ulid",
    "validate_ulid",
    "validate_work_item_ref",
]


def generate_ulid(
    *,
    timestamp_ms: int | None = None,
    randbytes: _RandBytes | None = None,
) -> str:
    """Generate a ULID as a 26-character uppercase Crockford Base32 string."""
    ts_ms = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not 0 <= ts_ms <= ULID_MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: expected 0..{ULID_MAX_TIMESTAMP_MS}")
    raw = (secrets.token_bytes if randbytes is None else randbytes)(ULID_RANDOM_BYTES)
    if len(raw) != ULID_RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {ULID_RANDOM_BYTES} bytes")

    value = (ts_ms << 80) | int.from_bytes(bytes(raw), "big")
    chars = ["0"] * ULID_LENGTH
    for index in range(ULID_LENGTH - 1, -1, -1):
        chars[index] = CROCKFORD_BASE32_ALPHABET[value & 0b11111]
        value >>= 5
    return "".join(chars)


def validate_ulid(value: str) -> None:
    if not isinstance(value, str) or len(value) != ULID_LENGTH:
        raise ValueError(f"ulid must be a {ULID_LENGTH}-character string")
    for index, char in enumerate(value):
        if char.upper() not in _DECODE_TABLE:
            raise ValueError(f"invalid ULID character {char!r} at index {index}")


def generate_run_id(*, timestamp_ms: int | None = None, randbytes: _RandBytes | None = None) -> str:
    return f"{RUN_ID_PREFIX}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def generate_trace_id(
    *, timestamp_ms: int | None = None, randbytes: _RandBytes | None = None
) -> str:
    return f"{TRACE_ID_PREFIX}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def generate_lock_token(
    *, timestamp_ms: int | None = None, randbytes: _RandBytes | None = None
) -> str:
    return f"{LOCK_TOKEN_PREFIX}-{generate_ulid(timestamp_ms=timestamp_ms, randbytes=randbytes)}"


def validate_work_item_ref(ref: str) -> str:
    """Validate and normalize a work-item reference such as ``owner/repo#42`` or ``42``."""
    if not isinstance(ref, str):
        raise ValueError(f"work item ref must be a string, got {type(ref).__name__}")
    normalized = ref.strip()
    if not _WORK_ITEM_REF_RE.fullmatch(normalized):
        raise ValueError(f"invalid work item ref {ref!r}")
    return normalized
