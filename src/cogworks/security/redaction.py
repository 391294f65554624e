"""
cogworks — security redaction utilities

File: src/cogworks/security/redaction.py

Purpose
- Keep secrets out of logs, artifacts, and diagnostics written back to work items.

Functional requirements
- Redact well-known credential shapes in free text.
- Redact values under sensitive keys in nested structures.
- Redact exact secret values registered at runtime (credentials read from the
  environment), wherever they appear.

Non-functional requirements
- Deterministic output; never mutates the input structure.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Final

REDACTED_VALUE: Final[str] = "***REDACTED***"

_MIN_REGISTERED_SECRET_LENGTH: Final[int] = 6

_SENSITIVE_KEY_EXACT: Final[frozenset[str]] = frozenset(
    {
        "access_token",
        "api_key",
        "apikey",
        "auth_token",
        "authorization",
        "client_secret",
        "credential",
        "credentials",
        "password",
        "passwd",
        "private_key",
        "refresh_token",
        "secret",
        "token",
        "webhook_secret",
    }
)
_SENSITIVE_KEY_SUFFIXES: Final[tuple[str, ...]] = (
    "_api_key",
    "_password",
    "_secret",
    "_token",
    "_private_key",
)

_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True, slots=True)
class _TextRule:
    name: str
    pattern: re.Pattern[str]
    sensitive_group: int | None = None


_TEXT_RULES: Final[tuple[_TextRule, ...]] = (
    _TextRule(
        name="private_key_block",
        pattern=re.compile(
            r"-----BEGIN(?: [A-Z0-9]+)* PRIVATE KEY-----"
            r"[\s\S]+?"
            r"-----END(?: [A-Z0-9]+)* PRIVATE KEY-----"
        ),
    ),
    _TextRule(
        name="authorization_bearer",
        pattern=re.compile(r"(?i)(\bbearer\s+)([A-Za-z0-9\-._~+/=]{8,})"),
        sensitive_group=2,
    ),
    _TextRule(
        name="explicit_secret_assignment",
        pattern=re.compile(
            r"(?i)(\b(?:password|passwd|secret|api[_-]?key|client[_-]?secret|"
            r"access[_-]?token|refresh[_-]?token|token)\b\s*[:=]\s*[\"']?)"
            r"([A-Za-z0-9._~+/=-]{6,})"
        ),
        sensitive_group=2,
    ),
    _TextRule(name="anthropic_api_key", pattern=re.compile(r"\bsk-ant-[A-Za-z0-9_-]{20,255}\b")),
    _TextRule(name="openai_api_key", pattern=re.compile(r"\bsk-[A-Za-z0-9]{20,255}\b")),
    _TextRule(name="aws_access_key", pattern=re.compile(r"\b(?:AKIA|ASIA)[A-Z0-9]{16}\b")),
    _TextRule(name="github_token", pattern=re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,255}\b")),
)

_REGISTERED_LOCK = threading.Lock()
_REGISTERED_SECRETS: set[str] = set()


def register_secret_values(values: Iterable[str]) -> None:
    """Register exact secret values (e.g. tokens read from the environment) for redaction."""

    with _REGISTERED_LOCK:
        for value in values:
            if isinstance(value, str) and len(value.strip()) >= _MIN_REGISTERED_SECRET_LENGTH:
                _REGISTERED_SECRETS.add(value.strip())


def clear_registered_secrets() -> None:
    with _REGISTERED_LOCK:
        _REGISTERED_SECRETS.clear()


def is_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return False
    if normalized in _SENSITIVE_KEY_EXACT:
        return True
    return normalized.endswith(_SENSITIVE_KEY_SUFFIXES)


def redact_text(text: str) -> str:
    """Redact credential-shaped substrings and registered secret values from ``text``."""

    if not isinstance(text, str):
        raise TypeError("text must be a string")
    redacted = text
    with _REGISTERED_LOCK:
        registered = sorted(_REGISTERED_SECRETS, key=len, reverse=True)
    for secret in registered:
        redacted = redacted.replace(secret, REDACTED_VALUE)
    for rule in _TEXT_RULES:
        redacted = _apply_rule(redacted, rule)
    return redacted


def redact_structure(value: object) -> object:
    """Return a redacted deep copy of a JSON-like structure."""

    return _redact(value, key=None)


def _apply_rule(text: str, rule: _TextRule) -> str:
    if rule.sensitive_group is None:
        return rule.pattern.sub(REDACTED_VALUE, text)

    # Rules with a sensitive group keep the leading label (group 1) and mask the value.
    return rule.pattern.sub(lambda match: f"{match.group(1)}{REDACTED_VALUE}", text)


def _redact(value: object, *, key: str | None) -> object:
    if key is not None and is_sensitive_key(key) and value is not None:
        return REDACTED_VALUE
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, Mapping):
        return {str(k): _redact(item, key=str(k)) for k, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_redact(item, key=None) for item in value]
    return value


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


__all__ = [
    "REDACTED_VALUE",
    "clear_registered_secrets",
    "is_sensitive_key",
    "redact_structure",
    "redact_text",
    "register_secret_values",
]
