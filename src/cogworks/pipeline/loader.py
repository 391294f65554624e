"""
cogworks — pipeline configuration loader

File: src/cogworks/pipeline/loader.py

Purpose
- Load the pipeline document (YAML) and turn it into validated, immutable
  ``PipelineDefinition`` objects grouped in a ``PipelineCatalog``.

Functional requirements
- Validation is fail closed: every structural problem in the document is
  collected and reported together in one ``StructuralConfigError``; no
  pipeline from an invalid document is ever returned.
- Non-rework cycles are detected with the deterministic ``TaskGraph``.
- ``parse_pipeline_definition`` re-validates a single pinned snapshot, so a
  run keeps executing the definition it started with.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from enum import StrEnum
from pathlib import Path
from typing import Final, TypeVar

import yaml

from cogworks.constants import (
    BUILTIN_ARTIFACT_TYPES,
    DEFAULT_PARALLELISM,
    DEFAULT_REWORK_MAX_TRAVERSALS,
    PIPELINE_SCHEMA_VERSION,
)
from cogworks.domain.errors import StructuralConfigError, StructuralIssue
from cogworks.domain.models import (
    EdgeTrigger,
    GateMode,
    JoinPolicy,
    JSONValue,
    NodeKind,
    coerce_json_mapping,
)
from cogworks.pipeline.conditions import parse_condition
from cogworks.pipeline.definition import (
    SELECT_LATEST,
    Edge,
    Node,
    OutputSchema,
    PipelineCatalog,
    PipelineDefinition,
)
from cogworks.pipeline.task_graph import TaskGraph

DOCUMENT_KEYS: Final[frozenset[str]] = frozenset({"version", "default_pipeline", "selection", "pipelines"})
PIPELINE_KEYS: Final[frozenset[str]] = frozenset(
    {"description", "parallelism", "per_item", "artifact_selection", "nodes", "edges"}
)
NODE_KEYS: Final[frozenset[str]] = frozenset(
    {
        "id",
        "kind",
        "description",
        "inputs",
        "outputs",
        "gate",
        "safety_override",
        "join",
        "domain",
        "operation",
        "template",
        "source",
        "pipeline",
        "payload",
        "estimated_cost_usd",
        "timeout_seconds",
        "max_retries",
        "review_request",
        "output_schema",
    }
)
EDGE_KEYS: Final[frozenset[str]] = frozenset({"from", "to", "on", "when", "rework", "max_traversals"})
OUTPUT_SCHEMA_KEYS: Final[frozenset[str]] = frozenset({"required", "properties"})
OUTPUT_PROPERTY_TYPES: Final[frozenset[str]] = frozenset(
    {"string", "number", "integer", "boolean", "object", "array"}
)

_E = TypeVar("_E", bound=StrEnum)

_YAML_BOOL_TAG: Final[str] = "tag:yaml.org,2002:bool"

_KIND_ONLY_FIELDS: Final[dict[str, NodeKind]] = {
    "domain": NodeKind.TOOL,
    "operation": NodeKind.TOOL,
    "template": NodeKind.REASONING,
    "source": NodeKind.SPAWN,
    "pipeline": NodeKind.SPAWN,
}


class PipelineYamlLoader(yaml.SafeLoader):
    """``SafeLoader`` that resolves only ``true`` and ``false`` to booleans.

    Under YAML 1.1 rules ``on``, ``off``, ``yes`` and ``no`` are booleans too, which
    turns the edge key ``on:`` into ``True``.
    """


PipelineYamlLoader.yaml_implicit_resolvers = {
    first: [(tag, pattern) for tag, pattern in resolvers if tag != _YAML_BOOL_TAG]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
PipelineYamlLoader.add_implicit_resolver(
    _YAML_BOOL_TAG,
    re.compile(r"^(?:true|True|TRUE|false|False|FALSE)$"),
    list("tTfF"),
)


def load_pipeline_yaml(text: str) -> object:
    """Parse pipeline YAML with ``PipelineYamlLoader``."""
    return yaml.load(text, Loader=PipelineYamlLoader)  # noqa: S506 - SafeLoader subclass.


def load_pipeline_catalog(path: str | Path, *, default_parallelism: int = DEFAULT_PARALLELISM) -> PipelineCatalog:
    """Read and validate the pipeline document at ``path``."""

    resolved = Path(path)
    try:
        text = resolved.read_text(encoding="utf-8")
    except OSError as exc:
        raise StructuralConfigError([StructuralIssue("", f"unable to read {resolved}: {exc}")]) from exc
    try:
        document = load_pipeline_yaml(text)
    except yaml.YAMLError as exc:
        raise StructuralConfigError([StructuralIssue("", f"invalid YAML in {resolved}: {exc}")]) from exc
    return parse_pipeline_document(document, default_parallelism=default_parallelism)


def parse_pipeline_document(
    document: object, *, default_parallelism: int = DEFAULT_PARALLELISM
) -> PipelineCatalog:
    issues: list[StructuralIssue] = []
    if not isinstance(document, Mapping):
        raise StructuralConfigError([StructuralIssue("", "pipeline document must be a mapping")])
    _check_keys(document, DOCUMENT_KEYS, "", issues)

    version = document.get("version", PIPELINE_SCHEMA_VERSION)
    if version != PIPELINE_SCHEMA_VERSION or isinstance(version, bool):
        issues.append(StructuralIssue("version", f"unsupported version {version!r}"))

    raw_pipelines = document.get("pipelines")
    pipelines: dict[str, PipelineDefinition] = {}
    if not isinstance(raw_pipelines, Mapping) or not raw_pipelines:
        issues.append(StructuralIssue("pipelines", "expected non-empty mapping of pipelines"))
        raw_pipelines = {}
    for name in sorted(raw_pipelines, key=str):
        if not isinstance(name, str) or not name.strip():
            issues.append(StructuralIssue("pipelines", f"invalid pipeline name {name!r}"))
            continue
        definition = _parse_pipeline(
            name, raw_pipelines[name], f"pipelines.{name}", issues, default_parallelism=default_parallelism
        )
        if definition is not None:
            pipelines[name] = definition

    names = set(raw_pipelines)
    default_pipeline = document.get("default_pipeline")
    if not isinstance(default_pipeline, str) or default_pipeline not in names:
        issues.append(StructuralIssue("default_pipeline", f"must name a defined pipeline, got {default_pipeline!r}"))

    selection = _parse_string_mapping(document.get("selection", {}), "selection", issues)
    for classification in sorted(selection):
        if selection[classification] not in names:
            issues.append(
                StructuralIssue(f"selection.{classification}", f"unknown pipeline {selection[classification]!r}")
            )

    for name in sorted(pipelines):
        _check_cross_references(pipelines[name], names, issues)

    if issues:
        raise StructuralConfigError(issues)
    assert isinstance(default_pipeline, str)
    return PipelineCatalog(
        pipelines=pipelines,
        default_pipeline=default_pipeline,
        selection=selection,
        version=PIPELINE_SCHEMA_VERSION,
    )


def parse_pipeline_definition(
    name: str, raw: object, *, default_parallelism: int = DEFAULT_PARALLELISM
) -> PipelineDefinition:
    """Validate one pipeline in isolation (used for pinned run snapshots)."""

    issues: list[StructuralIssue] = []
    definition = _parse_pipeline(name, raw, f"pipelines.{name}", issues, default_parallelism=default_parallelism)
    if issues or definition is None:
        raise StructuralConfigError(issues)
    return definition


def _parse_pipeline(
    name: str,
    raw: object,
    path: str,
    issues: list[StructuralIssue],
    *,
    default_parallelism: int,
) -> PipelineDefinition | None:
    if not isinstance(raw, Mapping):
        issues.append(StructuralIssue(path, "pipeline must be a mapping"))
        return None
    start = len(issues)
    _check_keys(raw, PIPELINE_KEYS, path, issues)

    try:
        snapshot = coerce_json_mapping(raw, path=path)
    except TypeError as exc:
        issues.append(StructuralIssue(path, str(exc)))
        snapshot = {}

    parallelism = raw.get("parallelism", default_parallelism)
    if not _is_int(parallelism) or parallelism < 1:
        issues.append(StructuralIssue(f"{path}.parallelism", "must be an integer >= 1"))
        parallelism = default_parallelism

    per_item = raw.get("per_item")
    if per_item is not None and (not isinstance(per_item, str) or not per_item.strip()):
        issues.append(StructuralIssue(f"{path}.per_item", "expected pipeline name"))
        per_item = None

    nodes = _parse_nodes(raw.get("nodes"), f"{path}.nodes", issues, pipeline_name=name, per_item=per_item)
    node_ids = {node.id for node in nodes}
    edges = _parse_edges(raw.get("edges", []), f"{path}.edges", issues, node_ids=node_ids)
    selection = _parse_string_mapping(raw.get("artifact_selection", {}), f"{path}.artifact_selection", issues)

    _check_graph(path, nodes, edges, issues)
    _check_artifact_flow(path, nodes, selection, issues)

    if len(issues) > start:
        return None
    return PipelineDefinition(
        name=name,
        nodes=tuple(nodes),
        edges=tuple(edges),
        parallelism=parallelism,
        raw=snapshot,
        per_item=per_item,
        artifact_selection=selection,
    )


def _parse_nodes(
    raw: object,
    path: str,
    issues: list[StructuralIssue],
    *,
    pipeline_name: str,
    per_item: str | None,
) -> list[Node]:
    if not isinstance(raw, list) or not raw:
        issues.append(StructuralIssue(path, "expected non-empty list of nodes"))
        return []

    nodes: list[Node] = []
    seen: set[str] = set()
    for index, item in enumerate(raw):
        node_path = f"{path}[{index}]"
        if not isinstance(item, Mapping):
            issues.append(StructuralIssue(node_path, "node must be a mapping"))
            continue
        node = _parse_node(item, node_path, issues, pipeline_name=pipeline_name, per_item=per_item)
        if node is None:
            continue
        if node.id in seen:
            issues.append(StructuralIssue(f"{node_path}.id", f"duplicate node id {node.id!r}"))
            continue
        seen.add(node.id)
        nodes.append(node)
    return nodes


def _parse_node(
    raw: Mapping[str, object],
    path: str,
    issues: list[StructuralIssue],
    *,
    pipeline_name: str,
    per_item: str | None,
) -> Node | None:
    start = len(issues)
    _check_keys(raw, NODE_KEYS, path, issues)

    node_id = raw.get("id")
    if not isinstance(node_id, str) or not node_id.strip() or "->" in node_id:
        issues.append(StructuralIssue(f"{path}.id", "expected non-empty node id without '->'"))
        return None
    kind = _parse_enum(NodeKind, raw.get("kind"), f"{path}.kind", issues)
    gate = _parse_enum(GateMode, raw.get("gate", GateMode.AUTO.value), f"{path}.gate", issues)
    join = _parse_enum(JoinPolicy, raw.get("join", JoinPolicy.ALL.value), f"{path}.join", issues)
    safety_override = None
    if raw.get("safety_override") is not None:
        safety_override = _parse_enum(GateMode, raw.get("safety_override"), f"{path}.safety_override", issues)

    inputs = _parse_names(raw.get("inputs", []), f"{path}.inputs", issues)
    outputs = _parse_names(raw.get("outputs", []), f"{path}.outputs", issues)
    domain = _optional_str(raw, "domain", path, issues)
    operation = _optional_str(raw, "operation", path, issues)
    template = _optional_str(raw, "template", path, issues)
    source = _optional_str(raw, "source", path, issues)
    child_pipeline = _optional_str(raw, "pipeline", path, issues)
    description = raw.get("description", "")
    if not isinstance(description, str):
        issues.append(StructuralIssue(f"{path}.description", "expected string"))
        description = ""

    estimated_cost = _optional_number(raw, "estimated_cost_usd", path, issues, minimum=0.0, inclusive=True)
    timeout_seconds = _optional_number(raw, "timeout_seconds", path, issues, minimum=0.0, inclusive=False)
    max_retries = raw.get("max_retries")
    if max_retries is not None and (not _is_int(max_retries) or max_retries < 0):
        issues.append(StructuralIssue(f"{path}.max_retries", "must be an integer >= 0"))
        max_retries = None
    review_request = raw.get("review_request", False)
    if not isinstance(review_request, bool):
        issues.append(StructuralIssue(f"{path}.review_request", "expected boolean"))
        review_request = False

    payload_raw = raw.get("payload", {})
    payload: dict[str, JSONValue] = {}
    if not isinstance(payload_raw, Mapping):
        issues.append(StructuralIssue(f"{path}.payload", "expected mapping"))
    else:
        try:
            payload = coerce_json_mapping(payload_raw, path=f"{path}.payload")
        except TypeError as exc:
            issues.append(StructuralIssue(f"{path}.payload", str(exc)))

    output_schema = _parse_output_schema(raw.get("output_schema", {}), f"{path}.output_schema", outputs, issues)

    if kind is not None:
        for field_name, owner in _KIND_ONLY_FIELDS.items():
            if field_name in raw and kind is not owner:
                issues.append(StructuralIssue(f"{path}.{field_name}", f"not allowed on {kind.value} nodes"))
        if kind is NodeKind.TOOL:
            if domain is None:
                issues.append(StructuralIssue(f"{path}.domain", "tool nodes require a domain"))
            if operation is None:
                issues.append(StructuralIssue(f"{path}.operation", "tool nodes require an operation"))
        elif kind is NodeKind.REASONING:
            if template is None:
                issues.append(StructuralIssue(f"{path}.template", "reasoning nodes require a template"))
        elif kind is NodeKind.GATE:
            if outputs:
                issues.append(StructuralIssue(f"{path}.outputs", "gate nodes pass inputs through and declare no outputs"))
        elif kind is NodeKind.SPAWN:
            if source is None:
                issues.append(StructuralIssue(f"{path}.source", "spawn nodes require a source artifact type"))
            elif source not in inputs:
                issues.append(StructuralIssue(f"{path}.source", f"{source!r} must be one of the node inputs"))
            child_pipeline = child_pipeline or per_item
            if child_pipeline is None:
                issues.append(StructuralIssue(f"{path}.pipeline", "spawn nodes need a child pipeline or per_item"))
            elif child_pipeline == pipeline_name:
                issues.append(StructuralIssue(f"{path}.pipeline", "child pipeline must differ from its parent"))

    if len(issues) > start or kind is None or gate is None or join is None:
        return None
    return Node(
        id=node_id,
        kind=kind,
        inputs=inputs,
        outputs=outputs,
        gate=gate,
        safety_override=safety_override,
        join=join,
        domain=domain,
        operation=operation,
        template=template,
        source=source,
        child_pipeline=child_pipeline,
        payload=payload,
        estimated_cost_usd=estimated_cost,
        timeout_seconds=timeout_seconds,
        max_retries=max_retries,
        review_request=review_request,
        output_schema=output_schema,
        description=description,
    )


def _parse_edges(
    raw: object, path: str, issues: list[StructuralIssue], *, node_ids: set[str]
) -> list[Edge]:
    if not isinstance(raw, list):
        issues.append(StructuralIssue(path, "expected list of edges"))
        return []

    edges: list[Edge] = []
    seen: set[str] = set()
    for index, item in enumerate(raw):
        edge_path = f"{path}[{index}]"
        if not isinstance(item, Mapping):
            issues.append(StructuralIssue(edge_path, "edge must be a mapping"))
            continue
        start = len(issues)
        _check_keys(item, EDGE_KEYS, edge_path, issues)
        source = item.get("from")
        target = item.get("to")
        for key, endpoint in (("from", source), ("to", target)):
            if not isinstance(endpoint, str) or endpoint not in node_ids:
                issues.append(StructuralIssue(f"{edge_path}.{key}", f"unknown node {endpoint!r}"))
        trigger = _parse_enum(EdgeTrigger, item.get("on", EdgeTrigger.SUCCESS.value), f"{edge_path}.on", issues)
        rework = item.get("rework", False)
        if not isinstance(rework, bool):
            issues.append(StructuralIssue(f"{edge_path}.rework", "expected boolean"))
            rework = False

        max_traversals = item.get("max_traversals")
        if rework:
            if max_traversals is None:
                max_traversals = DEFAULT_REWORK_MAX_TRAVERSALS
            elif not _is_int(max_traversals) or max_traversals < 1:
                issues.append(StructuralIssue(f"{edge_path}.max_traversals", "must be an integer >= 1"))
        elif max_traversals is not None:
            issues.append(StructuralIssue(f"{edge_path}.max_traversals", "only rework edges are bounded"))

        if source == target and not rework and isinstance(source, str):
            issues.append(StructuralIssue(edge_path, f"self-loop on {source!r} must be a rework edge"))

        condition = parse_condition(item.get("when"), f"{edge_path}.when", issues)
        if len(issues) > start or trigger is None:
            continue
        assert isinstance(source, str) and isinstance(target, str)
        edge = Edge(
            source=source,
            target=target,
            on=trigger,
            condition=condition,
            rework=rework,
            max_traversals=max_traversals if rework else None,
        )
        if edge.id in seen:
            issues.append(StructuralIssue(edge_path, f"duplicate edge {edge.id!r}"))
            continue
        seen.add(edge.id)
        edges.append(edge)
    return edges


def _check_graph(path: str, nodes: Sequence[Node], edges: Sequence[Edge], issues: list[StructuralIssue]) -> None:
    if not nodes:
        return
    graph = TaskGraph(
        nodes=(node.id for node in nodes),
        edges=((edge.source, edge.target) for edge in edges if not edge.rework),
    )
    for cycle in graph.detect_cycles():
        issues.append(
            StructuralIssue(f"{path}.edges", f"cycle without a rework edge: {' -> '.join(cycle)}")
        )
    if not any(not graph.parents(node.id) for node in nodes):
        issues.append(StructuralIssue(f"{path}.nodes", "pipeline has no entry node"))


def _check_artifact_flow(
    path: str,
    nodes: Sequence[Node],
    selection: Mapping[str, str],
    issues: list[StructuralIssue],
) -> None:
    producers: dict[str, list[str]] = {}
    for node in nodes:
        for artifact_type in node.outputs:
            producers.setdefault(artifact_type, []).append(node.id)

    for node in nodes:
        for artifact_type in node.inputs:
            if artifact_type not in producers and artifact_type not in BUILTIN_ARTIFACT_TYPES:
                issues.append(
                    StructuralIssue(f"{path}.nodes.{node.id}.inputs", f"no node produces {artifact_type!r}")
                )

    for artifact_type in sorted(producers):
        if artifact_type in BUILTIN_ARTIFACT_TYPES:
            issues.append(StructuralIssue(f"{path}.nodes", f"{artifact_type!r} is a built-in artifact type"))
        if len(producers[artifact_type]) > 1 and artifact_type not in selection:
            owners = ", ".join(sorted(producers[artifact_type]))
            issues.append(
                StructuralIssue(
                    f"{path}.artifact_selection",
                    f"{artifact_type!r} is produced by {owners}; add a selection rule",
                )
            )

    for artifact_type in sorted(selection):
        rule = selection[artifact_type]
        if artifact_type not in producers:
            issues.append(StructuralIssue(f"{path}.artifact_selection.{artifact_type}", "no node produces this type"))
        elif rule != SELECT_LATEST and rule not in producers[artifact_type]:
            issues.append(
                StructuralIssue(
                    f"{path}.artifact_selection.{artifact_type}",
                    f"expected {SELECT_LATEST!r} or a producing node id, got {rule!r}",
                )
            )


def _check_cross_references(
    definition: PipelineDefinition, names: set[str], issues: list[StructuralIssue]
) -> None:
    path = f"pipelines.{definition.name}"
    if definition.per_item is not None and definition.per_item not in names:
        issues.append(StructuralIssue(f"{path}.per_item", f"unknown pipeline {definition.per_item!r}"))
    for node in definition.nodes:
        if node.kind is NodeKind.SPAWN and node.child_pipeline not in names:
            issues.append(
                StructuralIssue(f"{path}.nodes.{node.id}.pipeline", f"unknown pipeline {node.child_pipeline!r}")
            )


def _parse_output_schema(
    raw: object, path: str, outputs: tuple[str, ...], issues: list[StructuralIssue]
) -> dict[str, OutputSchema]:
    if not isinstance(raw, Mapping):
        issues.append(StructuralIssue(path, "expected mapping of artifact type to schema"))
        return {}
    schemas: dict[str, OutputSchema] = {}
    for artifact_type in sorted(raw, key=str):
        entry_path = f"{path}.{artifact_type}"
        entry = raw[artifact_type]
        if artifact_type not in outputs:
            issues.append(StructuralIssue(entry_path, "schema for an undeclared output"))
            continue
        if not isinstance(entry, Mapping):
            issues.append(StructuralIssue(entry_path, "expected mapping"))
            continue
        _check_keys(entry, OUTPUT_SCHEMA_KEYS, entry_path, issues)
        required = _parse_names(entry.get("required", []), f"{entry_path}.required", issues)
        properties = _parse_string_mapping(entry.get("properties", {}), f"{entry_path}.properties", issues)
        for key in sorted(properties):
            if properties[key] not in OUTPUT_PROPERTY_TYPES:
                issues.append(StructuralIssue(f"{entry_path}.properties.{key}", f"unknown type {properties[key]!r}"))
        schemas[artifact_type] = OutputSchema(required=required, properties=properties)
    return schemas


def _check_keys(raw: Mapping[object, object], allowed: frozenset[str], path: str, issues: list[StructuralIssue]) -> None:
    for key in sorted(raw, key=str):
        if key not in allowed:
            location = f"{path}.{key}" if path else str(key)
            issues.append(StructuralIssue(location, "unknown key"))


def _parse_enum(
    enum_type: type[_E], raw: object, path: str, issues: list[StructuralIssue]
) -> _E | None:
    try:
        return enum_type(raw)
    except ValueError:
        expected = ", ".join(member.value for member in enum_type)
        issues.append(StructuralIssue(path, f"expected one of: {expected}; got {raw!r}"))
        return None


def _parse_names(raw: object, path: str, issues: list[StructuralIssue]) -> tuple[str, ...]:
    if not isinstance(raw, list) or not all(isinstance(item, str) and item.strip() for item in raw):
        issues.append(StructuralIssue(path, "expected list of non-empty strings"))
        return ()
    names = tuple(raw)
    if len(set(names)) != len(names):
        issues.append(StructuralIssue(path, "duplicate entries"))
    return names


def _parse_string_mapping(raw: object, path: str, issues: list[StructuralIssue]) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping) or not all(
        isinstance(key, str) and isinstance(value, str) for key, value in raw.items()
    ):
        issues.append(StructuralIssue(path, "expected mapping of strings"))
        return {}
    return dict(raw)


def _optional_str(raw: Mapping[str, object], key: str, path: str, issues: list[StructuralIssue]) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        issues.append(StructuralIssue(f"{path}.{key}", "expected non-empty string"))
        return None
    return value


def _optional_number(
    raw: Mapping[str, object],
    key: str,
    path: str,
    issues: list[StructuralIssue],
    *,
    minimum: float,
    inclusive: bool,
) -> float | None:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.append(StructuralIssue(f"{path}.{key}", "expected number"))
        return None
    if value < minimum or (not inclusive and value == minimum):
        bound = ">=" if inclusive else ">"
        issues.append(StructuralIssue(f"{path}.{key}", f"must be {bound} {minimum:g}"))
        return None
    return float(value)


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


__all__ = [
    "load_pipeline_catalog",
    "parse_pipeline_definition",
    "parse_pipeline_document",
]
