"""Domain types, IDs and the engine error taxonomy."""

from __future__ import annotations

from cogworks.domain import ids
from cogworks.domain.errors import (
    BudgetExceeded,
    CogWorksError,
    DomainServiceTimeout,
    DomainServiceUnavailable,
    RateLimitBackoff,
    ReasoningError,
    RetryLimitExceeded,
    RetryPolicy,
    SchemaValidationError,
    StaleLockOverride,
    StoreError,
    StructuralConfigError,
    StructuralIssue,
    WorkItemNotFoundError,
)
from cogworks.domain.models import (
    Artifact,
    ArtifactKind,
    Comment,
    Diagnostic,
    DiagnosticSeverity,
    EdgeTrigger,
    GateMode,
    JoinPolicy,
    JSONValue,
    Marker,
    NodeKind,
    NodeStatus,
    ReviewState,
    StepResult,
    StepStatus,
    WorkItem,
)

__all__ = [
    "Artifact",
    "ArtifactKind",
    "BudgetExceeded",
    "CogWorksError",
    "Comment",
    "Diagnostic",
    "DiagnosticSeverity",
    "DomainServiceTimeout",
    "DomainServiceUnavailable",
    "EdgeTrigger",
    "GateMode",
    "JSONValue",
    "JoinPolicy",
    "Marker",
    "NodeKind",
    "NodeStatus",
    "RateLimitBackoff",
    "ReasoningError",
    "RetryLimitExceeded",
    "RetryPolicy",
    "ReviewState",
    "SchemaValidationError",
    "StaleLockOverride",
    "StepResult",
    "StepStatus",
    "StoreError",
    "StructuralConfigError",
    "StructuralIssue",
    "WorkItem",
    "WorkItemNotFoundError",
    "ids",
]
