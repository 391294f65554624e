"""Deterministic SHA-256 helpers for canonical JSON payloads."""

from __future__ import annotations

import hashlib
import json

__all__ = [
    "canonical_json",
    "sha256_json",
    "sha256_text",
]


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    """Return SHA-256 hex digest for text encoded with ``encoding``."""

    return hashlib.sha256(text.encode(encoding)).hexdigest()


def canonical_json(value: object) -> str:
    """Serialize ``value`` with sorted keys and compact separators."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_json(value: object) -> str:
    return sha256_text(canonical_json(value))
