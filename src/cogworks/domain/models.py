"""
cogworks — shared domain types

File: src/cogworks/domain/models.py

Purpose
- Typed, validated records exchanged between the store, the engine and callers.

Functional requirements
- Models are immutable and serialize to canonical JSON-compatible mappings.
- Artifacts round-trip losslessly through ``to_dict``/``from_dict``; the
  artifact digest covers kind, run, node and payload.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, NoReturn

from cogworks.utils.hashing import sha256_json

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]


class StepStatus(StrEnum):
    """Outcome of one engine invocation for one work item."""

    ADVANCED = "advanced"
    COMPLETED = "completed"
    GATED = "gated"
    WAITING = "waiting"
    BUSY = "busy"
    DEFERRED = "deferred"
    FAILED = "failed"
    ESCALATED = "escalated"


class NodeKind(StrEnum):
    TOOL = "tool"
    REASONING = "reasoning"
    GATE = "gate"
    SPAWN = "spawn"


class GateMode(StrEnum):
    AUTO = "auto"
    HUMAN = "human"


class EdgeTrigger(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    ALWAYS = "always"


class JoinPolicy(StrEnum):
    ALL = "all"
    ANY = "any"


class NodeStatus(StrEnum):
    PENDING = "pending"
    AWAITING_APPROVAL = "awaiting_approval"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ArtifactKind(StrEnum):
    CLASSIFICATION = "classification"
    RUN_STARTED = "run_started"
    NODE_OUTPUT = "node_output"
    NODE_FAILURE = "node_failure"
    PENDING_APPROVAL = "pending_approval"
    APPROVAL = "approval"
    REJECTION = "rejection"
    CONDITION_RESULT = "condition_result"
    EDGE_TRAVERSAL = "edge_traversal"
    SPAWNED = "spawned"
    ESCALATION = "escalation"
    RUN_COMPLETED = "run_completed"


class DiagnosticSeverity(StrEnum):
    BLOCKING = "blocking"
    WARNING = "warning"
    INFORMATIONAL = "informational"


class ReviewState(StrEnum):
    OPEN = "open"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    MERGED = "merged"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class WorkItem:
    """A unit of requested work as held by the external artifact store.

    A work item with ``parent_ref`` set is a sub-work-item; its ``metadata``
    carries the spawn key, the inherited pipeline and sibling dependencies.
    """

    ref: str
    title: str
    body: str = ""
    labels: tuple[str, ...] = ()
    parent_ref: str | None = None
    metadata: Mapping[str, JSONValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.ref, str) or not self.ref.strip():
            raise ValueError("WorkItem.ref must be a non-empty string")
        object.__setattr__(self, "labels", tuple(sorted(dict.fromkeys(self.labels))))
        object.__setattr__(self, "metadata", coerce_json_mapping(self.metadata, path="metadata"))

    @property
    def is_sub_item(self) -> bool:
        return self.parent_ref is not None

    @property
    def spawn_key(self) -> str | None:
        value = self.metadata.get("key")
        return value if isinstance(value, str) else None

    @property
    def pinned_pipeline(self) -> str | None:
        value = self.metadata.get("pipeline")
        return value if isinstance(value, str) and value else None

    @property
    def depends_on(self) -> tuple[str, ...]:
        raw = self.metadata.get("depends_on")
        if not isinstance(raw, list):
            return ()
        return tuple(item for item in raw if isinstance(item, str))

    def has_label(self, label: str) -> bool:
        return label in self.labels

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "ref": self.ref,
            "title": self.title,
            "body": self.body,
            "labels": list(self.labels),
            "parent_ref": self.parent_ref,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> WorkItem:
        labels = data.get("labels", [])
        metadata = data.get("metadata", {})
        parent = data.get("parent_ref")
        if not isinstance(labels, list) or not all(isinstance(item, str) for item in labels):
            _fail("WorkItem.labels", "expected list of strings")
        if not isinstance(metadata, Mapping):
            _fail("WorkItem.metadata", "expected object")
        if parent is not None and not isinstance(parent, str):
            _fail("WorkItem.parent_ref", "expected string or null")
        return cls(
            ref=_expect_str(data.get("ref"), "WorkItem.ref"),
            title=_expect_str(data.get("title", ""), "WorkItem.title", allow_empty=True),
            body=_expect_str(data.get("body", ""), "WorkItem.body", allow_empty=True),
            labels=tuple(labels),
            parent_ref=parent,
            metadata=metadata,
        )


@dataclass(frozen=True, slots=True)
class Comment:
    """Raw comment as returned by the artifact store, in store order."""

    comment_id: str
    body: str
    created_at: str


@dataclass(frozen=True, slots=True)
class Marker:
    """Timestamped label-equivalent marker (used for the processing lock)."""

    name: str
    owner: str
    timestamp: str

    def to_dict(self) -> dict[str, JSONValue]:
        return {"name": self.name, "owner": self.owner, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Marker:
        return cls(
            name=_expect_str(data.get("name"), "Marker.name"),
            owner=_expect_str(data.get("owner"), "Marker.owner"),
            timestamp=_expect_str(data.get("timestamp"), "Marker.timestamp"),
        )


@dataclass(frozen=True, slots=True)
class Artifact:
    """Durable record of one engine decision or node result.

    ``sequence`` is the artifact's position in the work item's comment log and is
    assigned by the reader, never written.
    """

    kind: ArtifactKind
    run_id: str
    payload: Mapping[str, JSONValue] = field(default_factory=dict)
    node_id: str | None = None
    created_at: str = ""
    sequence: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", ArtifactKind(self.kind))
        if not isinstance(self.run_id, str):
            raise ValueError("Artifact.run_id must be a string")
        object.__setattr__(self, "payload", coerce_json_mapping(self.payload, path="payload"))

    @property
    def digest(self) -> str:
        return sha256_json(
            {
                "kind": self.kind.value,
                "run_id": self.run_id,
                "node_id": self.node_id,
                "payload": dict(self.payload),
            }
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "kind": self.kind.value,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "created_at": self.created_at,
            "payload": dict(self.payload),
            "digest": self.digest,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object], *, sequence: int = 0) -> Artifact:
        raw_kind = _expect_str(data.get("kind"), "Artifact.kind")
        try:
            kind = ArtifactKind(raw_kind)
        except ValueError:
            _fail("Artifact.kind", f"unknown artifact kind {raw_kind!r}")
        node_id = data.get("node_id")
        if node_id is not None and not isinstance(node_id, str):
            _fail("Artifact.node_id", "expected string or null")
        payload = data.get("payload", {})
        if not isinstance(payload, Mapping):
            _fail("Artifact.payload", "expected object")
        artifact = cls(
            kind=kind,
            run_id=_expect_str(data.get("run_id", ""), "Artifact.run_id", allow_empty=True),
            payload=payload,
            node_id=node_id,
            created_at=_expect_str(data.get("created_at", ""), "Artifact.created_at", allow_empty=True),
            sequence=sequence,
        )
        expected = data.get("digest")
        if expected is not None and expected != artifact.digest:
            _fail("Artifact.digest", "content digest mismatch")
        return artifact


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """Domain-service finding about an artifact; opaque data to the engine."""

    message: str
    artifact: str
    location: str
    severity: DiagnosticSeverity = DiagnosticSeverity.BLOCKING
    category: str = "general"

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "message": self.message,
            "artifact": self.artifact,
            "location": self.location,
            "severity": self.severity.value,
            "category": self.category,
        }


@dataclass(frozen=True, slots=True)
class StepResult:
    """Result of one ``advance`` invocation."""

    ref: str
    status: StepStatus
    run_id: str | None = None
    pipeline: str | None = None
    executed: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    gated: tuple[str, ...] = ()
    waiting: tuple[str, ...] = ()
    escalation_reason: str | None = None
    cost_total_usd: float = 0.0
    retries_total: int = 0
    run_completed: bool = False
    warnings: tuple[str, ...] = ()
    detail: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "ref": self.ref,
            "status": self.status.value,
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "executed": list(self.executed),
            "failed": list(self.failed),
            "gated": list(self.gated),
            "waiting": list(self.waiting),
            "escalation_reason": self.escalation_reason,
            "cost_total_usd": self.cost_total_usd,
            "retries_total": self.retries_total,
            "run_completed": self.run_completed,
            "warnings": list(self.warnings),
            "detail": self.detail,
        }


def coerce_json_value(value: object, *, path: str) -> JSONValue:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"{path} keys must be strings")
            out[key] = coerce_json_value(item, path=f"{path}.{key}")
        return out
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [coerce_json_value(item, path=f"{path}[]") for item in value]
    raise TypeError(f"{path} must be JSON-serializable")


def coerce_json_mapping(mapping: Mapping[str, Any], *, path: str) -> dict[str, JSONValue]:
    if not isinstance(mapping, Mapping):
        raise TypeError(f"{path} must be an object")
    out: dict[str, JSONValue] = {}
    for key, value in mapping.items():
        if not isinstance(key, str):
            raise TypeError(f"{path} keys must be strings")
        out[key] = coerce_json_value(value, path=f"{path}.{key}")
    return out


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_str(value: object, path: str, *, allow_empty: bool = False) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    if not allow_empty and not value.strip():
        _fail(path, "must not be empty")
    return value


__all__ = [
    "Artifact",
    "ArtifactKind",
    "Comment",
    "Diagnostic",
    "DiagnosticSeverity",
    "EdgeTrigger",
    "GateMode",
    "JSONScalar",
    "JSONValue",
    "JoinPolicy",
    "Marker",
    "NodeKind",
    "NodeStatus",
    "ReviewState",
    "StepResult",
    "StepStatus",
    "WorkItem",
    "coerce_json_mapping",
    "coerce_json_value",
]
