"""
cogworks — unit tests for the pipeline loader

File: tests/unit/pipeline/test_loader.py

Purpose
- The bundled sample document loads cleanly.
- Every structural problem is reported in one error, and nothing from an
  invalid document is returned.
"""

from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Any

import pytest

from cogworks.domain.errors import StructuralConfigError
from cogworks.domain.models import EdgeTrigger, GateMode, JoinPolicy, NodeKind
from cogworks.pipeline import load_pipeline_catalog, load_pipeline_yaml, parse_pipeline_document
from cogworks.pipeline.loader import parse_pipeline_definition

SAMPLES = Path(__file__).resolve().parents[3] / "samples"


def _document(text: str) -> Any:
    return load_pipeline_yaml(textwrap.dedent(text))


def _issues(text: str) -> list[str]:
    with pytest.raises(StructuralConfigError) as excinfo:
        parse_pipeline_document(_document(text))
    return [issue.render() for issue in excinfo.value.issues]


def test_sample_document_loads() -> None:
    catalog = load_pipeline_catalog(SAMPLES / "pipelines.yaml")

    assert catalog.default_pipeline == "change"
    assert set(catalog.pipelines) >= {"change", "feature", "decompose"}
    assert catalog.select("bug") == "change"
    assert catalog.select("epic") == "decompose"
    assert catalog.select(None) == "change"
    assert catalog.classifications == ("bug", "epic", "feature")

    change = catalog.get("change")
    rework = [edge for edge in change.edges if edge.rework]
    assert [(edge.source, edge.target, edge.on, edge.max_traversals) for edge in rework] == [
        ("verify", "implement", EdgeTrigger.FAILURE, 3)
    ]


def test_on_key_is_read_as_a_string_key() -> None:
    document = _document(
        """
        version: 1
        default_pipeline: p
        pipelines:
          p:
            nodes:
              - {id: a, kind: reasoning, template: a, inputs: [work_item], outputs: [x], description: off}
              - {id: b, kind: reasoning, template: b, inputs: [x], outputs: [y]}
            edges:
              - {from: a, to: b}
              - {from: b, to: a, on: failure, rework: true, max_traversals: 2}
        """
    )

    definition = parse_pipeline_document(document).get("p")

    edge = definition.edges[1]
    assert (edge.on, edge.rework, edge.max_traversals) == (EdgeTrigger.FAILURE, True, 2)
    assert definition.node("a").description == "off"
    assert definition.raw["edges"][1]["on"] == "failure"  # type: ignore[index,call-overload]


def test_node_and_edge_fields_are_typed() -> None:
    catalog = parse_pipeline_document(
        _document(
            """
            version: 1
            default_pipeline: main
            pipelines:
              main:
                parallelism: 2
                nodes:
                  - {id: a, kind: reasoning, template: a, inputs: [work_item], outputs: [x], estimated_cost_usd: 0.5}
                  - {id: b, kind: tool, domain: build, operation: check, inputs: [x], outputs: [y], timeout_seconds: 30}
                  - {id: g, kind: gate, inputs: [x], safety_override: human, join: any}
                edges:
                  - {from: a, to: b}
                  - {from: a, to: g, on: always}
                  - {from: b, to: a, rework: true}
            """
        )
    )

    main = catalog.get("main")
    assert main.parallelism == 2
    assert main.node("a").estimated_cost_usd == 0.5
    assert main.node("b").kind is NodeKind.TOOL
    assert main.node("b").timeout_seconds == 30
    assert main.node("g").safety_override is GateMode.HUMAN
    assert main.node("g").join is JoinPolicy.ANY
    assert main.edge("a->g").on is EdgeTrigger.ALWAYS
    assert main.edge("b->a").max_traversals == 5
    assert main.topological_order == ("a", "b", "g")
    assert main.rework_scope("a") == ("a", "b", "g")


def test_all_structural_issues_are_reported_together() -> None:
    issues = _issues(
        """
        version: 2
        default_pipeline: nope
        pipelines:
          main:
            nodes:
              - {id: a, kind: reasoning, inputs: [work_item], outputs: [x]}
              - {id: b, kind: tool, domain: build, inputs: [missing]}
              - {id: a, kind: gate}
              - {id: c, kind: gate, outputs: [z]}
            edges:
              - {from: a, to: ghost}
        """
    )

    assert "version: unsupported version 2" in issues
    assert "default_pipeline: must name a defined pipeline, got 'nope'" in issues
    assert "pipelines.main.nodes[0].template: reasoning nodes require a template" in issues
    assert "pipelines.main.nodes[1].operation: tool nodes require an operation" in issues
    assert "pipelines.main.nodes[3].outputs: gate nodes pass inputs through and declare no outputs" in issues
    assert "pipelines.main.edges[0].to: unknown node 'ghost'" in issues


def test_forward_cycle_is_rejected_but_rework_cycle_is_allowed() -> None:
    cyclic = _issues(
        """
        default_pipeline: main
        pipelines:
          main:
            nodes:
              - {id: a, kind: gate}
              - {id: b, kind: gate}
            edges:
              - {from: a, to: b}
              - {from: b, to: a}
        """
    )

    assert "pipelines.main.edges: cycle without a rework edge: a -> b -> a" in cyclic
    assert "pipelines.main.nodes: pipeline has no entry node" in cyclic


@pytest.mark.parametrize(
    ("snippet", "message"),
    [
        ("- {from: a, to: a}", "self-loop on 'a' must be a rework edge"),
        ("- {from: a, to: b, max_traversals: 2}", "only rework edges are bounded"),
        ("- {from: b, to: a, rework: true, max_traversals: 0}", "must be an integer >= 1"),
        ("- {from: a, to: b, on: sometimes}", "expected one of: success, failure, always"),
        ("- {from: a, to: b, colour: red}", "unknown key"),
        ("- {from: a, to: b}\n      - {from: a, to: b}", "duplicate edge 'a->b'"),
    ],
)
def test_edge_validation(snippet: str, message: str) -> None:
    text = (
        "default_pipeline: main\n"
        "pipelines:\n"
        "  main:\n"
        "    nodes:\n"
        "      - {id: a, kind: gate}\n"
        "      - {id: b, kind: gate}\n"
        "    edges:\n"
        f"      {snippet}\n"
    )

    assert any(message in issue for issue in _issues(text))


def test_artifact_flow_rules() -> None:
    issues = _issues(
        """
        default_pipeline: main
        pipelines:
          main:
            nodes:
              - {id: a, kind: reasoning, template: a, outputs: [x, work_item]}
              - {id: b, kind: reasoning, template: b, outputs: [x]}
              - {id: c, kind: reasoning, template: c, inputs: [y]}
        """
    )

    assert "pipelines.main.nodes.c.inputs: no node produces 'y'" in issues
    assert "pipelines.main.nodes: 'work_item' is a built-in artifact type" in issues
    assert "pipelines.main.artifact_selection: 'x' is produced by a, b; add a selection rule" in issues


def test_selection_rule_resolves_multiple_producers() -> None:
    catalog = parse_pipeline_document(
        _document(
            """
            default_pipeline: main
            pipelines:
              main:
                artifact_selection: {x: b}
                nodes:
                  - {id: a, kind: reasoning, template: a, outputs: [x]}
                  - {id: b, kind: reasoning, template: b, outputs: [x]}
            """
        )
    )

    assert catalog.get("main").artifact_selection == {"x": "b"}


def test_spawn_nodes_need_a_source_and_child_pipeline() -> None:
    issues = _issues(
        """
        default_pipeline: epic
        pipelines:
          epic:
            nodes:
              - {id: plan, kind: reasoning, template: plan, outputs: [child_plan]}
              - {id: spawn, kind: spawn, inputs: [child_plan], source: other}
              - {id: again, kind: spawn, inputs: [child_plan], source: child_plan, pipeline: epic}
        """
    )

    assert "pipelines.epic.nodes[1].source: 'other' must be one of the node inputs" in issues
    assert "pipelines.epic.nodes[1].pipeline: spawn nodes need a child pipeline or per_item" in issues
    assert "pipelines.epic.nodes[2].pipeline: child pipeline must differ from its parent" in issues


def test_kind_specific_fields_are_rejected_elsewhere() -> None:
    issues = _issues(
        """
        default_pipeline: main
        pipelines:
          main:
            nodes:
              - {id: a, kind: gate, template: nope, domain: build}
        """
    )

    assert "pipelines.main.nodes[0].template: not allowed on gate nodes" in issues
    assert "pipelines.main.nodes[0].domain: not allowed on gate nodes" in issues


def test_output_schema_must_describe_declared_outputs() -> None:
    issues = _issues(
        """
        default_pipeline: main
        pipelines:
          main:
            nodes:
              - id: a
                kind: reasoning
                template: a
                outputs: [x]
                output_schema:
                  x: {required: [summary], properties: {summary: text}}
                  y: {required: []}
        """
    )

    assert "pipelines.main.nodes[0].output_schema.x.properties.summary: unknown type 'text'" in issues
    assert "pipelines.main.nodes[0].output_schema.y: schema for an undeclared output" in issues


def test_pinned_snapshot_is_revalidated() -> None:
    with pytest.raises(StructuralConfigError, match="expected non-empty list of nodes"):
        parse_pipeline_definition("main", {"nodes": []})


def test_missing_file_and_bad_yaml(tmp_path: Path) -> None:
    broken = tmp_path / "pipelines.yaml"
    broken.write_text("pipelines: [unclosed\n", encoding="utf-8")

    with pytest.raises(StructuralConfigError, match="unable to read"):
        load_pipeline_catalog(tmp_path / "absent.yaml")
    with pytest.raises(StructuralConfigError, match="invalid YAML"):
        load_pipeline_catalog(broken)


def test_unknown_child_pipeline_is_reported() -> None:
    issues = _issues(
        """
        default_pipeline: epic
        pipelines:
          epic:
            per_item: missing
            nodes:
              - {id: plan, kind: reasoning, template: plan, outputs: [child_plan]}
              - {id: spawn, kind: spawn, inputs: [child_plan], source: child_plan, pipeline: nowhere}
        """
    )

    assert issues == [
        "pipelines.epic.per_item: unknown pipeline 'missing'",
        "pipelines.epic.nodes.spawn.pipeline: unknown pipeline 'nowhere'",
    ]
