"""
cogworks — reasoning collaborator interface

File: src/cogworks/reasoning/base.py

Purpose
- Provider-agnostic request/response models for the external reasoning
  collaborator, and loading of a configured client factory.

Functional requirements
- Three calls: ``complete`` (reasoning node content), ``evaluate_predicate``
  (edge conditions) and ``classify`` (intake classification).
- Every result carries ``ReasoningUsage`` so the engine can account cost.
- Clients signal provider throttling with ``RateLimitBackoff`` and any other
  failure with ``ReasoningError``.
"""

from __future__ import annotations

import importlib
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from cogworks.config.loader import read_secret
from cogworks.domain.models import JSONValue, coerce_json_mapping
from cogworks.security.prompt_hygiene import TrustLevel
from cogworks.security.redaction import register_secret_values

if TYPE_CHECKING:
    from cogworks.pipeline.definition import OutputSchema


@dataclass(frozen=True, slots=True)
class ContextDocument:
    """Named context document handed to the reasoning collaborator."""

    name: str
    content: str
    trust: TrustLevel = TrustLevel.UNTRUSTED

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("ContextDocument.name cannot be empty")
        if not isinstance(self.content, str):
            raise TypeError("ContextDocument.content must be a string")

    def to_dict(self) -> dict[str, JSONValue]:
        return {"name": self.name, "content": self.content, "trust": self.trust.value}


@dataclass(frozen=True, slots=True)
class ReasoningUsage:
    """Token/cost accounting for one reasoning call."""

    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    def __post_init__(self) -> None:
        if self.input_tokens < 0:
            raise ValueError("input_tokens must be >= 0")
        if self.output_tokens < 0:
            raise ValueError("output_tokens must be >= 0")
        if self.cost_usd < 0:
            raise ValueError("cost_usd must be >= 0")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cost_usd": self.cost_usd,
        }


@dataclass(frozen=True, slots=True)
class CompletionRequest:
    template: str
    outputs: tuple[str, ...]
    context: tuple[ContextDocument, ...] = ()
    output_schema: Mapping[str, OutputSchema] = field(default_factory=dict)
    work_item_ref: str = ""
    run_id: str = ""
    node_id: str = ""
    trace_id: str = ""


@dataclass(frozen=True, slots=True)
class CompletionResult:
    """Structured content keyed by artifact type."""

    outputs: Mapping[str, JSONValue]
    usage: ReasoningUsage = ReasoningUsage()

    def __post_init__(self) -> None:
        object.__setattr__(self, "outputs", coerce_json_mapping(self.outputs, path="outputs"))


@dataclass(frozen=True, slots=True)
class PredicateRequest:
    prompt: str
    context: tuple[ContextDocument, ...] = ()
    work_item_ref: str = ""
    run_id: str = ""
    edge_id: str = ""


@dataclass(frozen=True, slots=True)
class PredicateResult:
    value: bool
    usage: ReasoningUsage = ReasoningUsage()
    rationale: str = ""


@dataclass(frozen=True, slots=True)
class ClassificationRequest:
    context: tuple[ContextDocument, ...]
    classifications: tuple[str, ...] = ()
    work_item_ref: str = ""


@dataclass(frozen=True, slots=True)
class ClassificationResult:
    """``classification`` of ``None`` selects the default pipeline."""

    classification: str | None
    safety_critical: bool = False
    rationale: str = ""
    usage: ReasoningUsage = ReasoningUsage()


@runtime_checkable
class ReasoningClient(Protocol):
    """Protocol implemented by concrete reasoning collaborators."""

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        """Produce content for every artifact type in ``request.outputs``."""

    async def evaluate_predicate(self, request: PredicateRequest) -> PredicateResult:
        """Answer a yes/no edge predicate."""

    async def classify(self, request: ClassificationRequest) -> ClassificationResult:
        """Classify a work item at intake."""


ReasoningClientFactory = Callable[[Mapping[str, Any]], ReasoningClient]


def load_client_factory(path: str) -> ReasoningClientFactory:
    """Resolve a ``package.module:callable`` factory path."""

    module_name, sep, attribute = path.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"invalid reasoning client factory {path!r}; expected 'module:callable'")
    module = importlib.import_module(module_name)
    factory = getattr(module, attribute, None)
    if not callable(factory):
        raise ValueError(f"reasoning client factory {path!r} is not callable")
    return factory


def create_reasoning_client(config: Mapping[str, Any], *, environ: Mapping[str, str] | None = None) -> ReasoningClient:
    """Build the configured client; its API key is registered for redaction first."""

    api_key = read_secret(config, ("reasoning", "api_key_env"), environ=environ)
    if api_key is not None:
        register_secret_values([api_key])
    factory = load_client_factory(config["reasoning"]["client_factory"])
    client = factory(config)
    if not isinstance(client, ReasoningClient):
        raise TypeError(f"{config['reasoning']['client_factory']} did not return a ReasoningClient")
    return client


__all__ = [
    "ClassificationRequest",
    "ClassificationResult",
    "CompletionRequest",
    "CompletionResult",
    "ContextDocument",
    "PredicateRequest",
    "PredicateResult",
    "ReasoningClient",
    "ReasoningClientFactory",
    "ReasoningUsage",
    "create_reasoning_client",
    "load_client_factory",
]
