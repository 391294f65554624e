"""Unit tests for folding an artifact log into a run state."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import replace

import pytest

from cogworks.control_plane import load_run_state, reconstruct
from cogworks.domain.models import Artifact, ArtifactKind, JSONValue, NodeStatus, WorkItem
from cogworks.pipeline import PipelineCatalog
from cogworks.pipeline.definition import PipelineDefinition
from cogworks.store import MemoryArtifactStore
from cogworks.store.codec import encode_artifact

PIPELINE = """
version: 1
default_pipeline: loop
pipelines:
  loop:
    nodes:
      - {id: draft, kind: reasoning, template: draft, inputs: [work_item], outputs: [draft]}
      - {id: review, kind: gate, gate: human, inputs: [draft]}
      - {id: check, kind: reasoning, template: check, inputs: [draft], outputs: [verdict]}
    edges:
      - {from: draft, to: review}
      - {from: review, to: check}
      - {from: check, to: draft, rework: true, max_traversals: 3}
"""

ITEM = WorkItem(ref="item-1", title="Export", body="Add export.")


@pytest.fixture
def definition(make_catalog: Callable[[str], PipelineCatalog]) -> PipelineDefinition:
    return make_catalog(PIPELINE).get("loop")


def _started(definition: PipelineDefinition, run_id: str = "run-1") -> Artifact:
    return Artifact(
        kind=ArtifactKind.RUN_STARTED,
        run_id=run_id,
        payload={
            "pipeline": definition.name,
            "definition": dict(definition.raw),
            "digest": definition.digest,
            "parallelism": definition.parallelism,
        },
    )


def _node(
    kind: ArtifactKind,
    node_id: str,
    payload: Mapping[str, JSONValue] | None = None,
    *,
    run_id: str = "run-1",
) -> Artifact:
    return Artifact(kind=kind, run_id=run_id, node_id=node_id, payload={"epoch": 0, **dict(payload or {})})


def _log(*artifacts: Artifact) -> list[Artifact]:
    return [replace(artifact, sequence=index) for index, artifact in enumerate(artifacts)]


def test_item_without_run_is_not_started() -> None:
    classified = Artifact(
        kind=ArtifactKind.CLASSIFICATION,
        run_id="",
        payload={"classification": "bug", "safety_critical": True},
    )

    state = reconstruct(ITEM, _log(classified))

    assert not state.started
    assert state.classification == "bug"
    assert state.classification_sequence == 0
    assert state.safety_critical is True
    assert state.available_types == frozenset({"work_item"})


def test_node_output_completes_node_and_publishes_artifact(definition: PipelineDefinition) -> None:
    state = reconstruct(
        ITEM,
        _log(
            _started(definition),
            _node(ArtifactKind.NODE_OUTPUT, "draft", {"outputs": {"draft": {"text": "v1"}}, "cost_usd": 0.25}),
        ),
    )

    draft = state.node("draft")
    assert draft.status is NodeStatus.COMPLETED
    assert draft.executions == 1
    assert draft.output_sequence == 1
    assert state.artifact_content("draft") == {"text": "v1"}
    assert "draft" in state.available_types
    assert state.cost_total_usd == pytest.approx(0.25)


def test_intake_cost_on_run_started_counts_once(definition: PipelineDefinition) -> None:
    classified = Artifact(
        kind=ArtifactKind.CLASSIFICATION,
        run_id="",
        payload={"classification": "feature", "cost_usd": 0.1},
    )
    started = _started(definition)
    started = replace(started, payload={**dict(started.payload), "cost_usd": 0.1})

    state = reconstruct(
        ITEM,
        _log(
            classified,
            started,
            _node(ArtifactKind.NODE_OUTPUT, "draft", {"outputs": {"draft": {}}, "cost_usd": 0.25}),
        ),
    )

    assert state.cost_total_usd == pytest.approx(0.35)
    assert state.node("draft").cost_usd == pytest.approx(0.25)


def test_execution_after_failure_counts_as_a_retry(definition: PipelineDefinition) -> None:
    state = reconstruct(
        ITEM,
        _log(
            _started(definition),
            _node(ArtifactKind.NODE_FAILURE, "draft", {"error": {"category": "timeout", "message": "slow"}}),
            _node(ArtifactKind.NODE_OUTPUT, "draft", {"outputs": {"draft": {}}}),
        ),
    )

    draft = state.node("draft")
    assert draft.status is NodeStatus.COMPLETED
    assert draft.executions == 2
    assert draft.retries == 1
    assert draft.consecutive_failures == 0
    assert draft.error is None
    assert state.retries_total == 1


def test_approval_lifecycle(definition: PipelineDefinition) -> None:
    base = [
        _started(definition),
        _node(ArtifactKind.NODE_OUTPUT, "draft", {"outputs": {"draft": {}}}),
        _node(ArtifactKind.PENDING_APPROVAL, "review", {"review_ref": "item-1:review-1"}),
    ]

    awaiting = reconstruct(ITEM, _log(*base)).node("review")
    approved = reconstruct(ITEM, _log(*base, _node(ArtifactKind.APPROVAL, "review", {"signal": "label"}))).node(
        "review"
    )
    rejected = reconstruct(ITEM, _log(*base, _node(ArtifactKind.REJECTION, "review", {"signal": "review"}))).node(
        "review"
    )

    assert awaiting.status is NodeStatus.AWAITING_APPROVAL
    assert awaiting.review_ref == "item-1:review-1"
    assert approved.status is NodeStatus.PENDING
    assert approved.approved is True
    assert rejected.status is NodeStatus.FAILED
    assert rejected.rejected is True
    assert rejected.error == {"category": "rejected", "message": "rejected via review"}


def test_rework_traversal_resets_scope_and_ignores_stale_results(definition: PipelineDefinition) -> None:
    state = reconstruct(
        ITEM,
        _log(
            _started(definition),
            _node(ArtifactKind.NODE_OUTPUT, "draft", {"outputs": {"draft": {}}}),
            _node(ArtifactKind.APPROVAL, "review"),
            _node(ArtifactKind.NODE_OUTPUT, "review", {"outputs": {"draft": {}}}),
            _node(ArtifactKind.NODE_OUTPUT, "check", {"outputs": {"verdict": {"ok": False}}}),
            Artifact(
                kind=ArtifactKind.EDGE_TRAVERSAL,
                run_id="run-1",
                node_id="draft",
                payload={"edge": "check->draft", "source_epoch": 0, "source_execution": 1, "traversal": 1},
            ),
            _node(ArtifactKind.NODE_OUTPUT, "check", {"outputs": {"verdict": {"ok": True}}, "cost_usd": 0.5}),
        ),
    )

    for node_id in ("draft", "review", "check"):
        assert state.node(node_id).status is NodeStatus.PENDING
        assert state.node(node_id).epoch == 1
    assert state.node("review").approved is False
    assert state.traversals == {"check->draft": 1}
    assert state.rework_fired("check->draft", 0, 1)
    assert state.retries_total == 1
    assert state.cost_total_usd == pytest.approx(0.5)
    assert any("stale epoch for check" in reason for reason in state.ignored)


def test_only_the_latest_run_is_folded(definition: PipelineDefinition) -> None:
    classified = Artifact(kind=ArtifactKind.CLASSIFICATION, run_id="", payload={"classification": "feature"})
    state = reconstruct(
        ITEM,
        _log(
            classified,
            _started(definition, "run-1"),
            _node(ArtifactKind.NODE_OUTPUT, "draft", {"outputs": {"draft": {}}}),
            Artifact(kind=ArtifactKind.ESCALATION, run_id="run-1", payload={"reason": "gave up"}),
            _started(definition, "run-2"),
            _node(ArtifactKind.NODE_OUTPUT, "draft", {"outputs": {"draft": {}}}, run_id="run-1"),
        ),
    )

    assert state.run_id == "run-2"
    assert state.classification == "feature"
    assert state.escalated is False
    assert state.node("draft").status is NodeStatus.PENDING


def test_terminal_artifacts(definition: PipelineDefinition) -> None:
    escalated = reconstruct(
        ITEM,
        _log(
            _started(definition),
            Artifact(kind=ArtifactKind.ESCALATION, run_id="run-1", payload={"reason": "budget", "category": "x"}),
        ),
    )
    completed = reconstruct(
        ITEM,
        _log(_started(definition), Artifact(kind=ArtifactKind.RUN_COMPLETED, run_id="run-1", payload={})),
    )

    assert escalated.terminal and escalated.escalation_reason == "budget"
    assert completed.terminal and completed.completed


def test_tampered_snapshot_leaves_definition_unusable(definition: PipelineDefinition) -> None:
    started = _started(definition)
    tampered = replace(started, payload={**dict(started.payload), "digest": "0" * 64})

    state = reconstruct(ITEM, _log(tampered))

    assert state.started
    assert state.definition is None
    assert state.definition_error == "pinned pipeline snapshot does not match its digest"


def test_unknown_node_artifacts_are_ignored(definition: PipelineDefinition) -> None:
    state = reconstruct(ITEM, _log(_started(definition), _node(ArtifactKind.NODE_OUTPUT, "ghost")))

    assert "ghost" not in state.nodes
    assert state.ignored == ("artifact 1: unknown node 'ghost'",)


def test_sub_item_exposes_its_own_artifact_type() -> None:
    child = WorkItem(ref="item-2", title="Part", parent_ref="item-1")

    state = reconstruct(child, [])

    assert state.artifact_content("sub_work_item") == child.to_dict()
    with pytest.raises(KeyError):
        state.artifact_content("draft")


def test_reconstruction_is_deterministic(definition: PipelineDefinition) -> None:
    log = _log(
        _started(definition),
        _node(ArtifactKind.NODE_OUTPUT, "draft", {"outputs": {"draft": {"text": "v1"}}}),
    )

    assert reconstruct(ITEM, log).fingerprint() == reconstruct(ITEM, list(log)).fingerprint()


def test_load_run_state_skips_unreadable_artifacts(definition: PipelineDefinition) -> None:
    store = MemoryArtifactStore()
    store.add_work_item(ITEM)
    store.add_comment("item-1", "Looks good to me")
    store.add_comment("item-1", encode_artifact(_started(definition)))
    store.add_comment("item-1", "<!-- cogworks:artifact {not json} -->")

    state = load_run_state(store, "item-1")

    assert state.run_id == "run-1"
    assert len(state.ignored) == 1
