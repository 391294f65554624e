"""Unit tests for ID generation and work-item reference checks."""

from __future__ import annotations

import pytest

from cogworks.domain import ids


def _zero_bytes(size: int) -> bytes:
    return b"\x00" * size


def _ff_bytes(size: int) -> bytes:
    return b"\xff" * size


def test_generate_ulid_no_collision_1000() -> None:
    generated = {ids.generate_ulid() for _ in range(1_000)}
    assert len(generated) == 1_000


def test_ulid_charset_and_length() -> None:
    value = ids.generate_ulid(timestamp_ms=123_456, randbytes=_ff_bytes)

    assert len(value) == ids.ULID_LENGTH
    assert value == value.upper()
    assert all(char in ids.CROCKFORD_BASE32_ALPHABET for char in value)
    ids.validate_ulid(value.lower())


def test_ulid_is_deterministic_for_fixed_inputs() -> None:
    first = ids.generate_ulid(timestamp_ms=0, randbytes=_zero_bytes)
    second = ids.generate_ulid(timestamp_ms=0, randbytes=_zero_bytes)

    assert first == second == "0" * 26


def test_ulid_sorts_by_timestamp() -> None:
    earlier = ids.generate_ulid(timestamp_ms=1_000, randbytes=_ff_bytes)
    later = ids.generate_ulid(timestamp_ms=1_001, randbytes=_zero_bytes)

    assert earlier < later


@pytest.mark.parametrize("value", ["0" * 25, "I" + "0" * 25, "U" + "0" * 25, "*" + "0" * 25])
def test_validate_ulid_rejects_bad_values(value: str) -> None:
    with pytest.raises(ValueError):
        ids.validate_ulid(value)


def test_ulid_rejects_out_of_range_timestamp_and_short_randomness() -> None:
    with pytest.raises(ValueError, match="timestamp_ms out of range"):
        ids.generate_ulid(timestamp_ms=ids.ULID_MAX_TIMESTAMP_MS + 1)
    with pytest.raises(ValueError, match="exactly 10 bytes"):
        ids.generate_ulid(timestamp_ms=0, randbytes=lambda size: b"\x00")


def test_prefixed_ids() -> None:
    assert ids.generate_run_id(timestamp_ms=0, randbytes=_zero_bytes) == "run-" + "0" * 26
    assert ids.generate_trace_id(timestamp_ms=0, randbytes=_zero_bytes).startswith("trc-")
    assert ids.generate_lock_token(timestamp_ms=0, randbytes=_zero_bytes).startswith("lck-")


@pytest.mark.parametrize("ref", ["42", "acme/widgets#42", "  item-1  ", "PROJ-7"])
def test_work_item_refs_are_normalized(ref: str) -> None:
    assert ids.validate_work_item_ref(ref) == ref.strip()


@pytest.mark.parametrize("ref", ["", "   ", "-leading", "has space", "x" * 201])
def test_invalid_work_item_refs(ref: str) -> None:
    with pytest.raises(ValueError, match="invalid work item ref"):
        ids.validate_work_item_ref(ref)
