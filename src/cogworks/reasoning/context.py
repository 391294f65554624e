"""Context assembly for reasoning calls.

Pipeline artifacts produced by the engine's own nodes are trusted data. The
work item's text and any domain-service diagnostics came from outside the
engine, so they are delimited and marked as data only.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING

from cogworks.constants import SUB_WORK_ITEM_ARTIFACT, WORK_ITEM_ARTIFACT
from cogworks.reasoning.base import ContextDocument
from cogworks.security.prompt_hygiene import TrustLevel, embed_untrusted_json, sanitize_context
from cogworks.security.redaction import redact_structure, redact_text

if TYPE_CHECKING:
    from cogworks.control_plane.run_state import RunState
    from cogworks.domain.models import JSONValue, WorkItem


def work_item_document(work_item: WorkItem) -> ContextDocument:
    text = f"Title: {work_item.title}\n\n{work_item.body}".strip()
    sanitized = sanitize_context(redact_text(text), trust=TrustLevel.UNTRUSTED)
    return ContextDocument(name=WORK_ITEM_ARTIFACT, content=sanitized.sanitized_text, trust=TrustLevel.UNTRUSTED)


def build_context(
    state: RunState,
    inputs: Mapping[str, JSONValue],
    *,
    diagnostics: Sequence[Mapping[str, JSONValue]] = (),
) -> tuple[ContextDocument, ...]:
    """Assemble context documents for one reasoning node, in a stable order."""

    documents: list[ContextDocument] = []
    for artifact_type in sorted(inputs):
        if artifact_type in (WORK_ITEM_ARTIFACT, SUB_WORK_ITEM_ARTIFACT):
            documents.append(work_item_document(state.work_item))
            continue
        rendered = json.dumps(redact_structure(inputs[artifact_type]), sort_keys=True, indent=2)
        documents.append(ContextDocument(name=artifact_type, content=rendered, trust=TrustLevel.TRUSTED))
    if diagnostics:
        documents.append(
            ContextDocument(
                name="diagnostics",
                content=embed_untrusted_json(redact_structure([dict(item) for item in diagnostics])),
                trust=TrustLevel.UNTRUSTED,
            )
        )
    return tuple(documents)


def edge_context(state: RunState, source_id: str) -> tuple[ContextDocument, ...]:
    """Context for a reasoning predicate: the source node's outputs and findings."""

    source = state.node(source_id)
    documents = [work_item_document(state.work_item)]
    for artifact_type in sorted(source.outputs):
        rendered = json.dumps(redact_structure(source.outputs[artifact_type]), sort_keys=True, indent=2)
        documents.append(ContextDocument(name=artifact_type, content=rendered, trust=TrustLevel.TRUSTED))
    if source.error is not None:
        documents.append(
            ContextDocument(name="error", content=embed_untrusted_json(dict(source.error)), trust=TrustLevel.UNTRUSTED)
        )
    if source.diagnostics:
        documents.append(
            ContextDocument(
                name="diagnostics",
                content=embed_untrusted_json([dict(item) for item in source.diagnostics]),
                trust=TrustLevel.UNTRUSTED,
            )
        )
    return tuple(documents)


__all__ = ["build_context", "edge_context", "work_item_document"]
