"""Unit tests for frontier planning over reconstructed runs."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import replace

import pytest

from cogworks.control_plane import RunState, reconstruct
from cogworks.domain.models import Artifact, ArtifactKind, JSONValue, WorkItem
from cogworks.pipeline import GraphModel, PipelineCatalog
from cogworks.pipeline.definition import PipelineDefinition

DOCUMENT = """
version: 1
default_pipeline: review
pipelines:
  review:
    nodes:
      - {id: implement, kind: reasoning, template: implement, inputs: [work_item], outputs: [patch]}
      - {id: verify, kind: reasoning, template: verify, inputs: [patch], outputs: [report]}
      - {id: triage, kind: reasoning, template: triage, inputs: [work_item], outputs: [notes]}
      - {id: approve, kind: gate, gate: human, inputs: [patch]}
      - {id: ship, kind: reasoning, template: ship, inputs: [patch], outputs: [release], join: any}
    edges:
      - {from: implement, to: verify}
      - {from: verify, to: triage, on: failure}
      - {from: verify, to: approve}
      - {from: approve, to: ship}
      - {from: triage, to: ship}
      - {from: verify, to: implement, rework: true, on: failure, max_traversals: 1}
"""


@pytest.fixture
def definition(make_catalog: Callable[[str], PipelineCatalog]) -> PipelineDefinition:
    return make_catalog(DOCUMENT).get("review")


def _state(
    definition: PipelineDefinition,
    *artifacts: Artifact,
    item: WorkItem | None = None,
) -> RunState:
    started = Artifact(
        kind=ArtifactKind.RUN_STARTED,
        run_id="run-1",
        payload={"pipeline": definition.name, "definition": dict(definition.raw), "digest": definition.digest},
    )
    log = [replace(artifact, sequence=index) for index, artifact in enumerate((started, *artifacts))]
    return reconstruct(item or WorkItem(ref="item-1", title="Export"), log)


def _output(node_id: str, outputs: Mapping[str, JSONValue], epoch: int = 0) -> Artifact:
    return Artifact(
        kind=ArtifactKind.NODE_OUTPUT,
        run_id="run-1",
        node_id=node_id,
        payload={"epoch": epoch, "outputs": dict(outputs)},
    )


def _failure(node_id: str, epoch: int = 0) -> Artifact:
    return Artifact(
        kind=ArtifactKind.NODE_FAILURE,
        run_id="run-1",
        node_id=node_id,
        payload={"epoch": epoch, "error": {"category": "domain_error", "message": "red"}},
    )


def _traversal(edge: str) -> Artifact:
    return Artifact(
        kind=ArtifactKind.EDGE_TRAVERSAL,
        run_id="run-1",
        node_id=edge.split("->")[1],
        payload={"edge": edge, "source_epoch": 0, "source_execution": 1, "traversal": 1},
    )


def test_fresh_run_starts_at_entry_nodes(definition: PipelineDefinition) -> None:
    frontier = GraphModel(definition).plan(_state(definition))

    assert frontier.ready == ("implement",)
    assert not frontier.complete and not frontier.stalled


def test_success_path_requests_human_gate_and_skips_failure_branch(definition: PipelineDefinition) -> None:
    state = _state(definition, _output("implement", {"patch": {}}), _output("verify", {"report": {}}))

    frontier = GraphModel(definition).plan(state)

    assert frontier.gate_requests == ("approve",)
    assert frontier.skipped == ("triage",)
    assert frontier.ready == ()


def test_requested_gate_is_reported_as_gated(definition: PipelineDefinition) -> None:
    pending = Artifact(kind=ArtifactKind.PENDING_APPROVAL, run_id="run-1", node_id="approve", payload={"epoch": 0})
    state = _state(definition, _output("implement", {"patch": {}}), _output("verify", {"report": {}}), pending)

    frontier = GraphModel(definition).plan(state)

    assert frontier.gated == ("approve",)
    assert not frontier.actionable
    assert not frontier.stalled


def test_failure_route_fires_rework_first_then_exhausts(definition: PipelineDefinition) -> None:
    failed = _state(definition, _output("implement", {"patch": {}}), _failure("verify"))
    first = GraphModel(definition).plan(failed)

    assert [firing.edge.id for firing in first.rework_firings] == ["verify->implement"]
    assert first.rework_firings[0].traversal == 1
    assert first.ready == ("triage",)
    assert first.retry_candidates == ()

    again = _state(
        definition,
        _output("implement", {"patch": {}}),
        _failure("verify"),
        _traversal("verify->implement"),
        _output("implement", {"patch": {}}, epoch=1),
        _failure("verify", epoch=1),
    )
    second = GraphModel(definition).plan(again)

    assert second.rework_firings == ()
    assert [edge.id for edge in second.exhausted_rework] == ["verify->implement"]


def test_join_any_runs_when_one_branch_fires(definition: PipelineDefinition) -> None:
    state = _state(
        definition,
        _output("implement", {"patch": {}}),
        _failure("verify"),
        _traversal("verify->implement"),
        _output("implement", {"patch": {}}, epoch=1),
        _failure("verify", epoch=1),
        _output("triage", {"notes": {}}, epoch=1),
    )

    frontier = GraphModel(definition).plan(state)

    assert frontier.ready == ("ship",)
    assert frontier.skipped == ("approve",)


def test_safety_critical_item_turns_override_into_a_human_gate(
    make_catalog: Callable[[str], PipelineCatalog],
) -> None:
    definition = make_catalog(
        """
        default_pipeline: main
        pipelines:
          main:
            nodes:
              - {id: check, kind: gate, safety_override: human}
        """
    ).get("main")

    normal = GraphModel(definition).plan(_state(definition))
    critical = GraphModel(definition).plan(
        _state(definition, item=WorkItem(ref="item-1", title="Brakes", labels=("safety-critical",)))
    )

    assert normal.ready == ("check",)
    assert critical.gate_requests == ("check",)


def test_unresolved_reasoning_predicate_is_pending(make_catalog: Callable[[str], PipelineCatalog]) -> None:
    definition = make_catalog(
        """
        default_pipeline: main
        pipelines:
          main:
            nodes:
              - {id: a, kind: reasoning, template: a, outputs: [x]}
              - {id: b, kind: reasoning, template: b, inputs: [x], outputs: [y]}
            edges:
              - {from: a, to: b, when: {reasoning: "Worth doing?"}}
        """
    ).get("main")

    frontier = GraphModel(definition).plan(_state(definition, _output("a", {"x": 1})))

    (predicate,) = frontier.pending_predicates
    assert predicate.edge_id == "a->b"
    assert predicate.prompt == "Worth doing?"
    assert (predicate.source_epoch, predicate.source_execution) == (0, 1)
    assert frontier.ready == ()
    assert frontier.actionable


def test_missing_input_blocks_and_stalls(make_catalog: Callable[[str], PipelineCatalog]) -> None:
    definition = make_catalog(
        """
        default_pipeline: main
        pipelines:
          main:
            nodes:
              - {id: a, kind: reasoning, template: a, outputs: [x]}
              - {id: b, kind: reasoning, template: b, outputs: [y]}
              - {id: c, kind: reasoning, template: c, inputs: [y], outputs: [z], join: any}
            edges:
              - {from: a, to: c}
              - {from: b, to: c, on: failure}
        """
    ).get("main")

    state = _state(definition, _output("a", {"x": 1}), _output("b", {}))
    frontier = GraphModel(definition).plan(state)

    assert frontier.blocked == ("c",)
    assert frontier.stalled


def test_failed_node_without_route_is_a_retry_candidate(make_catalog: Callable[[str], PipelineCatalog]) -> None:
    definition = make_catalog(
        """
        default_pipeline: main
        pipelines:
          main:
            nodes:
              - {id: a, kind: reasoning, template: a, outputs: [x]}
        """
    ).get("main")

    frontier = GraphModel(definition).plan(_state(definition, _failure("a")))

    assert frontier.retry_candidates == ("a",)
    assert not frontier.complete


def test_all_nodes_terminal_is_complete(make_catalog: Callable[[str], PipelineCatalog]) -> None:
    definition = make_catalog(
        """
        default_pipeline: main
        pipelines:
          main:
            nodes:
              - {id: a, kind: reasoning, template: a, outputs: [x]}
        """
    ).get("main")

    frontier = GraphModel(definition).plan(_state(definition, _output("a", {"x": 1})))

    assert frontier.complete
    assert frontier.to_dict()["complete"] is True


FAN_IN = """
default_pipeline: fan
pipelines:
  fan:
    nodes:
      - {id: api, kind: reasoning, template: api, inputs: [work_item], outputs: [api_patch]}
      - {id: docs, kind: reasoning, template: docs, inputs: [work_item], outputs: [docs_patch]}
      - {id: ui, kind: reasoning, template: ui, inputs: [work_item], outputs: [ui_patch]}
      - id: merge
        kind: reasoning
        template: merge
        inputs: [api_patch, docs_patch, ui_patch]
        outputs: [release]
        join: all
    edges:
      - {from: api, to: merge}
      - {from: docs, to: merge}
      - {from: ui, to: merge}
"""


def test_join_all_waits_for_every_parallel_sibling(make_catalog: Callable[[str], PipelineCatalog]) -> None:
    definition = make_catalog(FAN_IN).get("fan")
    graph = GraphModel(definition)

    fresh = graph.plan(_state(definition))
    partial = graph.plan(_state(definition, _output("api", {"api_patch": {}}), _output("ui", {"ui_patch": {}})))
    done = graph.plan(
        _state(
            definition,
            _output("api", {"api_patch": {}}),
            _output("ui", {"ui_patch": {}}),
            _output("docs", {"docs_patch": {}}),
        )
    )

    assert set(fresh.ready) == {"api", "docs", "ui"}
    assert partial.ready == ("docs",)
    assert "merge" not in partial.ready
    assert not partial.stalled and not partial.complete
    assert done.ready == ("merge",)
    assert not done.complete


def test_join_all_skips_when_a_sibling_edge_does_not_fire(make_catalog: Callable[[str], PipelineCatalog]) -> None:
    definition = make_catalog(FAN_IN.replace("{from: ui, to: merge}", "{from: ui, to: merge, on: failure}")).get("fan")

    frontier = GraphModel(definition).plan(
        _state(
            definition,
            _output("api", {"api_patch": {}}),
            _output("ui", {"ui_patch": {}}),
            _output("docs", {"docs_patch": {}}),
        )
    )

    assert frontier.ready == ()
    assert frontier.skipped == ("merge",)
    assert frontier.complete
