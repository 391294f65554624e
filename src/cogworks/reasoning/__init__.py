"""Reasoning collaborator interface, context assembly and the offline client."""

from __future__ import annotations

from cogworks.reasoning.base import (
    ClassificationRequest,
    ClassificationResult,
    CompletionRequest,
    CompletionResult,
    ContextDocument,
    PredicateRequest,
    PredicateResult,
    ReasoningClient,
    ReasoningUsage,
    create_reasoning_client,
    load_client_factory,
)
from cogworks.reasoning.context import build_context, edge_context, work_item_document
from cogworks.reasoning.offline import OfflineReasoningClient

__all__ = [
    "ClassificationRequest",
    "ClassificationResult",
    "CompletionRequest",
    "CompletionResult",
    "ContextDocument",
    "OfflineReasoningClient",
    "PredicateRequest",
    "PredicateResult",
    "ReasoningClient",
    "ReasoningUsage",
    "build_context",
    "create_reasoning_client",
    "edge_context",
    "load_client_factory",
    "work_item_document",
]
