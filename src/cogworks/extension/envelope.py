"""
cogworks — extension protocol envelope

File: src/cogworks/extension/envelope.py

Purpose
- Typed request/response envelopes exchanged with domain services.

Wire format
- request:  ``{"repository": {"path", "ref"}, "domain", "operation", "payload", "trace_id"}``
- response: ``{"status": "ok"|"error", "diagnostics": [...], "artifacts": [{"type", "content"}]}``
- health: operation ``health_check`` with an empty payload

Functional requirements
- Response parsing is strict: unknown keys, wrong types and unknown enum
  values raise ``SchemaValidationError`` listing every problem found.
- Diagnostics default to ``blocking`` severity and the ``general`` category.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum

from cogworks.domain.errors import SchemaValidationError
from cogworks.domain.models import Diagnostic, DiagnosticSeverity, JSONValue, coerce_json_mapping, coerce_json_value

_RESPONSE_KEYS = frozenset({"status", "diagnostics", "artifacts"})
_DIAGNOSTIC_KEYS = frozenset({"message", "artifact", "location", "severity", "category"})
_ARTIFACT_KEYS = frozenset({"type", "content"})

HEALTH_CHECK_OPERATION = "health_check"


class ResponseStatus(StrEnum):
    OK = "ok"
    ERROR = "error"


class HealthState(StrEnum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True, slots=True)
class RepositoryRef:
    path: str
    ref: str = "HEAD"

    def to_dict(self) -> dict[str, JSONValue]:
        return {"path": self.path, "ref": self.ref}


@dataclass(frozen=True, slots=True)
class ExtensionRequest:
    repository: RepositoryRef
    domain: str
    operation: str
    payload: Mapping[str, JSONValue] = field(default_factory=dict)
    trace_id: str = ""

    def __post_init__(self) -> None:
        if not self.domain.strip():
            raise ValueError("ExtensionRequest.domain must not be empty")
        if not self.operation.strip():
            raise ValueError("ExtensionRequest.operation must not be empty")
        object.__setattr__(self, "payload", coerce_json_mapping(self.payload, path="payload"))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "repository": self.repository.to_dict(),
            "domain": self.domain,
            "operation": self.operation,
            "payload": dict(self.payload),
            "trace_id": self.trace_id,
        }


@dataclass(frozen=True, slots=True)
class ExtensionArtifact:
    type: str
    content: JSONValue

    def to_dict(self) -> dict[str, JSONValue]:
        return {"type": self.type, "content": self.content}


@dataclass(frozen=True, slots=True)
class ExtensionResponse:
    status: ResponseStatus
    diagnostics: tuple[Diagnostic, ...] = ()
    artifacts: tuple[ExtensionArtifact, ...] = ()

    @property
    def ok(self) -> bool:
        return self.status is ResponseStatus.OK

    def outputs(self) -> dict[str, JSONValue]:
        """Artifact contents keyed by type; a later artifact of the same type wins."""
        return {artifact.type: artifact.content for artifact in self.artifacts}

    def diagnostics_payload(self) -> list[JSONValue]:
        return [diagnostic.to_dict() for diagnostic in self.diagnostics]

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "status": self.status.value,
            "diagnostics": self.diagnostics_payload(),
            "artifacts": [artifact.to_dict() for artifact in self.artifacts],
        }


@dataclass(frozen=True, slots=True)
class HealthStatus:
    domain: str
    state: HealthState
    reason: str | None = None

    @property
    def healthy(self) -> bool:
        return self.state is HealthState.HEALTHY


def parse_response(data: object) -> ExtensionResponse:
    """Validate a decoded response body, raising ``SchemaValidationError`` on any deviation."""

    errors: list[str] = []
    if not isinstance(data, Mapping):
        raise SchemaValidationError("extension response must be a JSON object")
    for key in sorted(set(data) - _RESPONSE_KEYS):
        errors.append(f"unknown key {key!r}")

    status: ResponseStatus | None = None
    raw_status = data.get("status")
    try:
        status = ResponseStatus(raw_status)
    except ValueError:
        errors.append(f"status: expected 'ok' or 'error', got {raw_status!r}")

    diagnostics = _parse_diagnostics(data.get("diagnostics", []), errors)
    artifacts = _parse_artifacts(data.get("artifacts", []), errors)
    if errors or status is None:
        raise SchemaValidationError("malformed extension response", errors=errors)
    return ExtensionResponse(status=status, diagnostics=diagnostics, artifacts=artifacts)


def _parse_diagnostics(raw: object, errors: list[str]) -> tuple[Diagnostic, ...]:
    if not isinstance(raw, list):
        errors.append("diagnostics: expected array")
        return ()
    parsed: list[Diagnostic] = []
    for index, entry in enumerate(raw):
        path = f"diagnostics[{index}]"
        if not isinstance(entry, Mapping):
            errors.append(f"{path}: expected object")
            continue
        for key in sorted(set(entry) - _DIAGNOSTIC_KEYS):
            errors.append(f"{path}: unknown key {key!r}")
        fields: dict[str, str] = {}
        for key in ("message", "artifact", "location"):
            value = entry.get(key)
            if not isinstance(value, str):
                errors.append(f"{path}.{key}: expected string")
            else:
                fields[key] = value
        severity = DiagnosticSeverity.BLOCKING
        if "severity" in entry:
            try:
                severity = DiagnosticSeverity(entry["severity"])
            except ValueError:
                errors.append(f"{path}.severity: unknown severity {entry['severity']!r}")
        category = entry.get("category", "general")
        if not isinstance(category, str):
            errors.append(f"{path}.category: expected string")
            category = "general"
        if len(fields) == 3:
            parsed.append(Diagnostic(severity=severity, category=category, **fields))
    return tuple(parsed)


def _parse_artifacts(raw: object, errors: list[str]) -> tuple[ExtensionArtifact, ...]:
    if not isinstance(raw, list):
        errors.append("artifacts: expected array")
        return ()
    parsed: list[ExtensionArtifact] = []
    for index, entry in enumerate(raw):
        path = f"artifacts[{index}]"
        if not isinstance(entry, Mapping):
            errors.append(f"{path}: expected object")
            continue
        for key in sorted(set(entry) - _ARTIFACT_KEYS):
            errors.append(f"{path}: unknown key {key!r}")
        artifact_type = entry.get("type")
        if not isinstance(artifact_type, str) or not artifact_type.strip():
            errors.append(f"{path}.type: expected non-empty string")
            continue
        if "content" not in entry:
            errors.append(f"{path}.content: missing")
            continue
        try:
            content = coerce_json_value(entry["content"], path=f"{path}.content")
        except TypeError as exc:
            errors.append(str(exc))
            continue
        parsed.append(ExtensionArtifact(type=artifact_type, content=content))
    return tuple(parsed)


__all__ = [
    "HEALTH_CHECK_OPERATION",
    "ExtensionArtifact",
    "ExtensionRequest",
    "ExtensionResponse",
    "HealthState",
    "HealthStatus",
    "RepositoryRef",
    "ResponseStatus",
    "parse_response",
]
