"""
cogworks — graph model

File: src/cogworks/pipeline/graph.py

Purpose
- Compute, from a pipeline definition and a reconstructed run, what can happen
  next: the ``Frontier``.

Functional requirements
- Pure and deterministic: the same definition and run state always yield the
  same frontier, with nodes listed in topological order.
- A node is ready only when its fan-in policy is satisfied, every declared
  input artifact type is available, and (for human gates) approval exists.
- Skips propagate in topological order: a skipped source resolves all its
  outgoing edges as not fired.
- A failed node with no firing failure route keeps its outgoing edges
  unresolved; the node is reported as a retry candidate.
- Rework edges at their traversal ceiling are reported as exhausted and are
  never returned as firings.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import TYPE_CHECKING

from cogworks.domain.models import GateMode, JoinPolicy, NodeStatus
from cogworks.pipeline.conditions import evaluate_condition

if TYPE_CHECKING:
    from cogworks.control_plane.run_state import NodeState, RunState
    from cogworks.pipeline.definition import Edge, Node, PipelineDefinition


class Activation(StrEnum):
    GO = "go"
    SKIP = "skip"
    WAIT = "wait"


@dataclass(frozen=True, slots=True)
class PendingPredicate:
    """A reasoning predicate that must be resolved before an edge can be evaluated."""

    edge_id: str
    index: int
    prompt: str
    source: str
    source_epoch: int
    source_execution: int

    @property
    def key(self) -> tuple[str, int, int, int]:
        return (self.edge_id, self.index, self.source_epoch, self.source_execution)


@dataclass(frozen=True, slots=True)
class ReworkFiring:
    edge: Edge
    source_epoch: int
    source_execution: int
    traversal: int


@dataclass(frozen=True, slots=True)
class Frontier:
    ready: tuple[str, ...] = ()
    gate_requests: tuple[str, ...] = ()
    gated: tuple[str, ...] = ()
    waiting: tuple[str, ...] = ()
    retry_candidates: tuple[str, ...] = ()
    rework_firings: tuple[ReworkFiring, ...] = ()
    exhausted_rework: tuple[Edge, ...] = ()
    pending_predicates: tuple[PendingPredicate, ...] = ()
    skipped: tuple[str, ...] = ()
    blocked: tuple[str, ...] = ()
    complete: bool = False
    stalled: bool = False

    @property
    def actionable(self) -> bool:
        return bool(
            self.ready
            or self.gate_requests
            or self.rework_firings
            or self.exhausted_rework
            or self.pending_predicates
            or self.retry_candidates
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "ready": list(self.ready),
            "gate_requests": list(self.gate_requests),
            "gated": list(self.gated),
            "waiting": list(self.waiting),
            "retry_candidates": list(self.retry_candidates),
            "rework_firings": [firing.edge.id for firing in self.rework_firings],
            "exhausted_rework": [edge.id for edge in self.exhausted_rework],
            "pending_predicates": [list(predicate.key) for predicate in self.pending_predicates],
            "skipped": list(self.skipped),
            "blocked": list(self.blocked),
            "complete": self.complete,
            "stalled": self.stalled,
        }


class GraphModel:
    """Ready-set computation over one pipeline definition."""

    def __init__(self, definition: PipelineDefinition) -> None:
        self._definition = definition

    @property
    def definition(self) -> PipelineDefinition:
        return self._definition

    def plan(self, state: RunState) -> Frontier:
        return _Planner(self._definition, state).run()


@dataclass
class _Planner:
    definition: PipelineDefinition
    state: RunState
    _edge_values: dict[str, bool | None] = field(default_factory=dict)
    _pending: dict[tuple[str, int, int, int], PendingPredicate] = field(default_factory=dict)
    _skipped: set[str] = field(default_factory=set)

    def run(self) -> Frontier:
        ready: list[str] = []
        gate_requests: list[str] = []
        gated: list[str] = []
        waiting: list[str] = []
        retry_candidates: list[str] = []
        blocked: list[str] = []
        terminal = 0

        for node_id in self.definition.topological_order:
            node = self.definition.node(node_id)
            node_state = self.state.node(node_id)
            if node_state.status is NodeStatus.COMPLETED:
                terminal += 1
                continue
            if node_state.status is NodeStatus.FAILED:
                routed = self._routed(node_id)
                if routed is False:
                    retry_candidates.append(node_id)
                elif routed is True:
                    terminal += 1
                continue
            if node_state.status is NodeStatus.WAITING:
                waiting.append(node_id)
                continue

            activation = self._activation(node)
            if activation is Activation.SKIP:
                self._skipped.add(node_id)
                terminal += 1
                continue
            if activation is Activation.WAIT:
                continue
            if not self._inputs_available(node):
                blocked.append(node_id)
                continue
            if node.effective_gate(safety_critical=self.state.safety_critical) is GateMode.HUMAN:
                if not node_state.approved:
                    (gated if node_state.approval_requested else gate_requests).append(node_id)
                    continue
            ready.append(node_id)

        firings, exhausted = self._rework()
        pending = tuple(self._pending.values())
        complete = (
            terminal == len(self.definition.nodes)
            and not firings
            and not exhausted
            and not pending
        )
        frontier = Frontier(
            ready=tuple(ready),
            gate_requests=tuple(gate_requests),
            gated=tuple(gated),
            waiting=tuple(waiting),
            retry_candidates=tuple(retry_candidates),
            rework_firings=firings,
            exhausted_rework=exhausted,
            pending_predicates=pending,
            skipped=tuple(node_id for node_id in self.definition.topological_order if node_id in self._skipped),
            blocked=tuple(blocked),
            complete=complete,
        )
        if not complete and not frontier.actionable and not gated and not waiting:
            return replace(frontier, stalled=True)
        return frontier

    def _activation(self, node: Node) -> Activation:
        incoming = self.definition.incoming(node.id)
        if not incoming:
            return Activation.GO
        outcomes = [self._forward_outcome(edge) for edge in incoming]
        if node.join is JoinPolicy.ANY:
            if any(outcome is True for outcome in outcomes):
                return Activation.GO
            if all(outcome is False for outcome in outcomes):
                return Activation.SKIP
            return Activation.WAIT
        if any(outcome is False for outcome in outcomes):
            return Activation.SKIP
        if all(outcome is True for outcome in outcomes):
            return Activation.GO
        return Activation.WAIT

    def _forward_outcome(self, edge: Edge) -> bool | None:
        if edge.source in self._skipped:
            return False
        source = self.state.node(edge.source)
        if source.status is NodeStatus.COMPLETED:
            return self._edge_value(edge)
        if source.status is NodeStatus.FAILED and self._routed(edge.source) is True:
            return self._edge_value(edge)
        return None

    def _routed(self, node_id: str) -> bool | None:
        """Whether a failed node has an outgoing edge that fires on its failure."""
        unresolved = False
        for edge in self.definition.edges:
            if edge.source != node_id:
                continue
            value = self._edge_value(edge)
            if value is True:
                return True
            if value is None:
                unresolved = True
        return None if unresolved else False

    def _edge_value(self, edge: Edge) -> bool | None:
        if edge.id in self._edge_values:
            return self._edge_values[edge.id]
        value = self._evaluate(edge)
        self._edge_values[edge.id] = value
        return value

    def _evaluate(self, edge: Edge) -> bool | None:
        source = self.state.node(edge.source)
        if source.status not in (NodeStatus.COMPLETED, NodeStatus.FAILED):
            return None
        if not edge.fires_on(source.status is NodeStatus.COMPLETED):
            return False
        cached = self.state.predicate_results(edge.id, source.epoch, source.executions)
        result = evaluate_condition(edge.condition, self._context(source), cached)
        if result.pending is not None:
            index, prompt = result.pending
            predicate = PendingPredicate(
                edge_id=edge.id,
                index=index,
                prompt=prompt,
                source=edge.source,
                source_epoch=source.epoch,
                source_execution=source.executions,
            )
            self._pending.setdefault(predicate.key, predicate)
            return None
        return result.value

    def _context(self, source: NodeState) -> Mapping[str, object]:
        succeeded = source.status is NodeStatus.COMPLETED
        return {
            "status": "success" if succeeded else "failure",
            "outputs": dict(source.outputs),
            "error": dict(source.error) if source.error is not None else None,
            "diagnostics": [dict(item) for item in source.diagnostics],
            "classification": self.state.classification,
            "safety_critical": self.state.safety_critical,
            "traversals": dict(self.state.traversals),
        }

    def _inputs_available(self, node: Node) -> bool:
        available = self.state.available_types
        return all(artifact_type in available for artifact_type in node.inputs)

    def _rework(self) -> tuple[tuple[ReworkFiring, ...], tuple[Edge, ...]]:
        firings: list[ReworkFiring] = []
        exhausted: list[Edge] = []
        for edge in self.definition.rework_edges:
            source = self.state.node(edge.source)
            if source.status not in (NodeStatus.COMPLETED, NodeStatus.FAILED):
                continue
            if self.state.rework_fired(edge.id, source.epoch, source.executions):
                continue
            if self._edge_value(edge) is not True:
                continue
            count = self.state.traversals.get(edge.id, 0)
            assert edge.max_traversals is not None
            if count >= edge.max_traversals:
                exhausted.append(edge)
                continue
            firings.append(
                ReworkFiring(
                    edge=edge,
                    source_epoch=source.epoch,
                    source_execution=source.executions,
                    traversal=count + 1,
                )
            )
        return tuple(firings), tuple(exhausted)


__all__ = ["Activation", "Frontier", "GraphModel", "PendingPredicate", "ReworkFiring"]
