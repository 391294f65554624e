"""Deterministic reasoning client for dry runs and tests.

Responses are derived only from the request, so repeated runs over the same
artifacts produce identical outputs. Behaviour can be scripted per template,
prompt or work item to exercise failure paths.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from cogworks.domain.models import JSONValue
from cogworks.reasoning.base import (
    ClassificationRequest,
    ClassificationResult,
    CompletionRequest,
    CompletionResult,
    PredicateRequest,
    PredicateResult,
    ReasoningUsage,
)
from cogworks.utils.hashing import sha256_json

_PLACEHOLDERS: dict[str, JSONValue] = {
    "string": "",
    "number": 0.0,
    "integer": 0,
    "boolean": False,
    "object": {},
    "array": [],
}


@dataclass
class OfflineReasoningClient:
    """Scriptable stand-in for a model-backed client.

    ``outputs`` maps a template to the outputs it returns; ``predicates`` maps a
    prompt to its answer (default ``True``); ``errors`` maps a template or prompt
    to an exception raised instead of answering.
    """

    outputs: Mapping[str, Mapping[str, JSONValue]] = field(default_factory=dict)
    predicates: Mapping[str, bool] = field(default_factory=dict)
    classification: str | None = None
    safety_critical: bool = False
    errors: Mapping[str, Exception] = field(default_factory=dict)
    cost_per_call_usd: float = 0.0
    calls: list[tuple[str, str]] = field(default_factory=list)

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        self.calls.append(("complete", request.template))
        self._raise_scripted(request.template)
        scripted = self.outputs.get(request.template, {})
        digest = sha256_json([document.to_dict() for document in request.context])
        produced: dict[str, JSONValue] = {}
        for artifact_type in request.outputs:
            if artifact_type in scripted:
                produced[artifact_type] = scripted[artifact_type]
                continue
            content: dict[str, JSONValue] = {
                "summary": f"{request.template}: offline draft",
                "context_digest": digest,
            }
            schema = request.output_schema.get(artifact_type)
            if schema is not None:
                for key in schema.required:
                    content.setdefault(key, _PLACEHOLDERS.get(schema.properties.get(key, "string"), ""))
            produced[artifact_type] = content
        return CompletionResult(outputs=produced, usage=self._usage())

    async def evaluate_predicate(self, request: PredicateRequest) -> PredicateResult:
        self.calls.append(("predicate", request.prompt))
        self._raise_scripted(request.prompt)
        value = self.predicates.get(request.prompt, True)
        return PredicateResult(value=value, usage=self._usage(), rationale="offline answer")

    async def classify(self, request: ClassificationRequest) -> ClassificationResult:
        self.calls.append(("classify", request.work_item_ref))
        self._raise_scripted(request.work_item_ref)
        chosen = self.classification
        if chosen is None:
            text = " ".join(document.content.lower() for document in request.context)
            chosen = next((name for name in request.classifications if name.lower() in text), None)
        return ClassificationResult(
            classification=chosen,
            safety_critical=self.safety_critical,
            rationale="offline keyword match" if chosen else "no classification matched",
            usage=self._usage(),
        )

    def _raise_scripted(self, key: str) -> None:
        error = self.errors.get(key)
        if error is not None:
            raise error

    def _usage(self) -> ReasoningUsage:
        return ReasoningUsage(cost_usd=self.cost_per_call_usd)


def create_client(config: Mapping[str, Any]) -> OfflineReasoningClient:
    """Factory referenced by the default ``reasoning.client_factory`` setting."""
    return OfflineReasoningClient()


__all__ = ["OfflineReasoningClient", "create_client"]
