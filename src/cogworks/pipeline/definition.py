"""Typed pipeline definitions: nodes, edges, pipelines and the pipeline catalog."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import cached_property

from cogworks.domain.models import EdgeTrigger, GateMode, JoinPolicy, JSONValue, NodeKind
from cogworks.pipeline.conditions import ALWAYS, Condition
from cogworks.pipeline.task_graph import TaskGraph
from cogworks.utils.hashing import sha256_json

SELECT_LATEST = "latest"


@dataclass(frozen=True, slots=True)
class OutputSchema:
    """Minimal structural schema for one output artifact's content."""

    required: tuple[str, ...] = ()
    properties: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Node:
    id: str
    kind: NodeKind
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()
    gate: GateMode = GateMode.AUTO
    safety_override: GateMode | None = None
    join: JoinPolicy = JoinPolicy.ALL
    domain: str | None = None
    operation: str | None = None
    template: str | None = None
    source: str | None = None
    child_pipeline: str | None = None
    payload: Mapping[str, JSONValue] = field(default_factory=dict)
    estimated_cost_usd: float | None = None
    timeout_seconds: float | None = None
    max_retries: int | None = None
    review_request: bool = False
    output_schema: Mapping[str, OutputSchema] = field(default_factory=dict)
    description: str = ""

    def effective_gate(self, *, safety_critical: bool) -> GateMode:
        """Human when configured, or when a safety-critical item overrides the gate."""
        if self.gate is GateMode.HUMAN:
            return GateMode.HUMAN
        if safety_critical and self.safety_override is GateMode.HUMAN:
            return GateMode.HUMAN
        return GateMode.AUTO


@dataclass(frozen=True, slots=True)
class Edge:
    source: str
    target: str
    on: EdgeTrigger = EdgeTrigger.SUCCESS
    condition: Condition = ALWAYS
    rework: bool = False
    max_traversals: int | None = None

    @property
    def id(self) -> str:
        return f"{self.source}->{self.target}"

    def fires_on(self, succeeded: bool) -> bool:
        if self.on is EdgeTrigger.ALWAYS:
            return True
        return succeeded is (self.on is EdgeTrigger.SUCCESS)


@dataclass(frozen=True)
class PipelineDefinition:
    """Validated pipeline. ``raw`` is the source mapping pinned into each run."""

    name: str
    nodes: tuple[Node, ...]
    edges: tuple[Edge, ...]
    parallelism: int
    raw: Mapping[str, JSONValue]
    per_item: str | None = None
    artifact_selection: Mapping[str, str] = field(default_factory=dict)

    @cached_property
    def digest(self) -> str:
        return sha256_json({"name": self.name, "definition": dict(self.raw)})

    @cached_property
    def _node_index(self) -> dict[str, Node]:
        return {node.id: node for node in self.nodes}

    @cached_property
    def forward_graph(self) -> TaskGraph:
        return TaskGraph(
            nodes=(node.id for node in self.nodes),
            edges=((edge.source, edge.target) for edge in self.edges if not edge.rework),
        )

    @cached_property
    def topological_order(self) -> tuple[str, ...]:
        return self.forward_graph.topological_sort()

    @cached_property
    def rework_edges(self) -> tuple[Edge, ...]:
        return tuple(edge for edge in self.edges if edge.rework)

    def node(self, node_id: str) -> Node:
        try:
            return self._node_index[node_id]
        except KeyError:
            raise KeyError(f"unknown node {node_id!r} in pipeline {self.name!r}") from None

    def has_node(self, node_id: str) -> bool:
        return node_id in self._node_index

    def incoming(self, node_id: str) -> tuple[Edge, ...]:
        return tuple(edge for edge in self.edges if edge.target == node_id and not edge.rework)

    def edge(self, edge_id: str) -> Edge:
        for candidate in self.edges:
            if candidate.id == edge_id:
                return candidate
        raise KeyError(f"unknown edge {edge_id!r} in pipeline {self.name!r}")

    def producers(self, artifact_type: str) -> tuple[str, ...]:
        return tuple(node.id for node in self.nodes if artifact_type in node.outputs)

    def rework_scope(self, target: str) -> tuple[str, ...]:
        """The rework target plus everything downstream of it over forward edges."""
        return tuple(sorted({target, *self.forward_graph.descendants(target)}))


@dataclass(frozen=True)
class PipelineCatalog:
    """All pipelines from one configuration document plus selection rules."""

    pipelines: Mapping[str, PipelineDefinition]
    default_pipeline: str
    selection: Mapping[str, str] = field(default_factory=dict)
    version: int = 1

    def get(self, name: str) -> PipelineDefinition:
        try:
            return self.pipelines[name]
        except KeyError:
            raise KeyError(f"unknown pipeline {name!r}") from None

    def select(self, classification: str | None) -> str:
        """Map an intake classification to a pipeline name (default when unmapped)."""
        if classification is not None and classification in self.selection:
            return self.selection[classification]
        return self.default_pipeline

    @property
    def classifications(self) -> tuple[str, ...]:
        return tuple(sorted(self.selection))


__all__ = [
    "Edge",
    "Node",
    "OutputSchema",
    "PipelineCatalog",
    "PipelineDefinition",
    "SELECT_LATEST",
]
