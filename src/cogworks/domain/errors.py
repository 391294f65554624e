"""
cogworks — error taxonomy

File: src/cogworks/domain/errors.py

Purpose
- Normalized engine errors with deterministic machine-readable fields.

Functional requirements
- Each error carries a stable ``code`` and a retry policy so callers can decide
  between failing a node, deferring a wave, or escalating the run.
- Structural configuration errors carry every validation issue, never a subset.

Propagation
- node-local: SchemaValidationError, DomainServiceUnavailable,
  DomainServiceTimeout, ReasoningError
- run-halting: BudgetExceeded, RetryLimitExceeded
- wave-deferring: RateLimitBackoff
- fatal before any work: StructuralConfigError
- advisory: StaleLockOverride (a warning, never raised out of the engine)
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum


class RetryKind(StrEnum):
    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Whether an operation may be attempted again, and after how long."""

    kind: RetryKind
    after_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.after_seconds is not None and self.after_seconds < 0:
            raise ValueError("RetryPolicy.after_seconds must be >= 0")
        if self.kind is RetryKind.NON_RETRYABLE and self.after_seconds is not None:
            raise ValueError("non-retryable policies have no delay")

    @classmethod
    def retryable(cls, after_seconds: float | None = None) -> RetryPolicy:
        return cls(kind=RetryKind.RETRYABLE, after_seconds=after_seconds)

    @classmethod
    def non_retryable(cls) -> RetryPolicy:
        return cls(kind=RetryKind.NON_RETRYABLE)

    @property
    def is_retryable(self) -> bool:
        return self.kind is RetryKind.RETRYABLE


class CogWorksError(RuntimeError):
    """Base engine error."""

    default_code = "engine_error"

    def __init__(
        self,
        detail: str,
        *,
        code: str | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.code = code or self.default_code
        self.detail = " ".join(str(detail).split()) or self.code
        self.retry = retry if retry is not None else RetryPolicy.non_retryable()
        super().__init__(f"{self.code}: {self.detail}")


@dataclass(frozen=True, slots=True)
class StructuralIssue:
    """One structural validation failure located by a dotted path."""

    path: str
    message: str

    def render(self) -> str:
        return f"{self.path}: {self.message}" if self.path else self.message


class StructuralConfigError(CogWorksError):
    """Pipeline configuration is structurally invalid; nothing may execute."""

    default_code = "structural_config"

    def __init__(self, issues: Sequence[StructuralIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown structural failure"
        else:
            rendered = "; ".join(issue.render() for issue in self.issues)
        super().__init__(rendered)


class SchemaValidationError(CogWorksError):
    """A payload failed schema validation (domain response or node output)."""

    default_code = "schema_validation"

    def __init__(self, detail: str, *, errors: Sequence[str] = ()) -> None:
        self.errors = tuple(errors)
        rendered = detail if not self.errors else f"{detail} ({'; '.join(self.errors)})"
        super().__init__(rendered, retry=RetryPolicy.retryable())


class DomainServiceUnavailable(CogWorksError):
    """Domain service failed its health check or could not be reached."""

    default_code = "domain_unavailable"

    def __init__(self, domain: str, detail: str) -> None:
        self.domain = domain
        super().__init__(f"{domain}: {detail}", retry=RetryPolicy.retryable())


class DomainServiceTimeout(CogWorksError):
    """Domain operation exceeded its deadline."""

    default_code = "domain_timeout"

    def __init__(self, domain: str, operation: str, timeout_seconds: float) -> None:
        self.domain = domain
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"{domain}.{operation} timed out after {timeout_seconds:g}s",
            retry=RetryPolicy.retryable(),
        )


class BudgetExceeded(CogWorksError):
    """Accumulated (plus reserved) cost reached the configured ceiling."""

    default_code = "budget_exceeded"

    def __init__(self, *, accumulated: float, limit: float) -> None:
        self.accumulated = accumulated
        self.limit = limit
        super().__init__(f"cost {accumulated:.6f} reached limit {limit:.6f}")


class RetryLimitExceeded(CogWorksError):
    """Retry or rework ceiling reached."""

    default_code = "retry_limit_exceeded"

    def __init__(self, detail: str, *, node_id: str | None = None) -> None:
        self.node_id = node_id
        super().__init__(detail)


class StaleLockOverride(CogWorksError):
    """A stale processing lock was overridden; reported as a warning."""

    default_code = "stale_lock_override"

    def __init__(self, ref: str, previous_timestamp: str) -> None:
        self.ref = ref
        self.previous_timestamp = previous_timestamp
        super().__init__(f"overrode stale lock on {ref} set at {previous_timestamp}")


class RateLimitBackoff(CogWorksError):
    """A collaborator asked the engine to back off; the wave is deferred."""

    default_code = "rate_limited"

    def __init__(self, detail: str, *, retry_after_seconds: float | None = None) -> None:
        self.retry_after_seconds = retry_after_seconds
        super().__init__(detail, retry=RetryPolicy.retryable(retry_after_seconds))


class ReasoningError(CogWorksError):
    """The reasoning collaborator failed or returned unusable content."""

    default_code = "reasoning_error"

    def __init__(self, detail: str) -> None:
        super().__init__(detail, retry=RetryPolicy.retryable())


class StoreError(CogWorksError):
    """The external artifact store rejected or failed an operation."""

    default_code = "store_error"


class WorkItemNotFoundError(StoreError):
    default_code = "work_item_not_found"

    def __init__(self, ref: str) -> None:
        self.ref = ref
        super().__init__(f"work item {ref!r} does not exist")


__all__ = [
    "BudgetExceeded",
    "CogWorksError",
    "DomainServiceTimeout",
    "DomainServiceUnavailable",
    "RateLimitBackoff",
    "ReasoningError",
    "RetryKind",
    "RetryLimitExceeded",
    "RetryPolicy",
    "SchemaValidationError",
    "StaleLockOverride",
    "StoreError",
    "StructuralConfigError",
    "StructuralIssue",
    "WorkItemNotFoundError",
]
