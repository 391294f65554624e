"""Secret redaction and untrusted-context hygiene."""

from __future__ import annotations

from cogworks.security.prompt_hygiene import (
    HygienePolicyMode,
    TrustLevel,
    embed_untrusted_json,
    sanitize_context,
)
from cogworks.security.redaction import (
    REDACTED_VALUE,
    redact_structure,
    redact_text,
    register_secret_values,
)

__all__ = [
    "HygienePolicyMode",
    "REDACTED_VALUE",
    "TrustLevel",
    "embed_untrusted_json",
    "redact_structure",
    "redact_text",
    "register_secret_values",
    "sanitize_context",
]
