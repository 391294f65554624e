"""
cogworks — run state reconstruction

File: src/cogworks/control_plane/run_state.py

Purpose
- Rebuild a pipeline run's progress purely from the artifacts persisted on a
  work item. The in-process ``RunState`` is a disposable projection; the
  artifact log is the single source of truth.

Functional requirements
- ``reconstruct`` is a pure left fold over the ordered artifact log of the
  latest run (everything after the last ``run_started``). Classification
  artifacts survive across runs.
- The pipeline definition is pinned: ``run_started`` embeds the definition
  snapshot and its digest, and the fold re-validates that snapshot. A
  snapshot that no longer validates, or whose digest does not match, is
  reported through ``definition_error`` and never executed.
- A rework ``edge_traversal`` resets its target and every node reachable from
  the target over non-rework edges: epoch + 1, outputs withdrawn, approvals
  cleared.
- Accumulated cost and retries only ever increase during the fold.
- Node artifacts whose epoch does not match the node's current epoch are
  ignored (their cost still counts).

Non-functional requirements
- Deterministic: identical logs give identical states and fingerprints.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

import structlog

from cogworks.constants import (
    DEFAULT_PARALLELISM,
    DEFAULT_SAFETY_LABEL,
    SUB_WORK_ITEM_ARTIFACT,
    WORK_ITEM_ARTIFACT,
)
from cogworks.domain.errors import StructuralConfigError
from cogworks.domain.models import Artifact, ArtifactKind, JSONValue, NodeStatus, WorkItem
from cogworks.pipeline.definition import SELECT_LATEST
from cogworks.pipeline.loader import parse_pipeline_definition
from cogworks.store.codec import decode_log
from cogworks.utils.hashing import sha256_json

if TYPE_CHECKING:
    from cogworks.pipeline.definition import PipelineDefinition
    from cogworks.store.base import ArtifactStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class NodeState:
    node_id: str
    status: NodeStatus = NodeStatus.PENDING
    epoch: int = 0
    executions: int = 0
    consecutive_failures: int = 0
    retries: int = 0
    outputs: Mapping[str, JSONValue] = field(default_factory=dict)
    output_sequence: int | None = None
    error: Mapping[str, JSONValue] | None = None
    diagnostics: tuple[Mapping[str, JSONValue], ...] = ()
    approval_requested: bool = False
    approved: bool = False
    rejected: bool = False
    review_ref: str | None = None
    children: tuple[tuple[str, str], ...] = ()
    cost_usd: float = 0.0

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "node_id": self.node_id,
            "status": self.status.value,
            "epoch": self.epoch,
            "executions": self.executions,
            "consecutive_failures": self.consecutive_failures,
            "retries": self.retries,
            "outputs": dict(self.outputs),
            "output_sequence": self.output_sequence,
            "error": dict(self.error) if self.error is not None else None,
            "diagnostics": [dict(item) for item in self.diagnostics],
            "approval_requested": self.approval_requested,
            "approved": self.approved,
            "rejected": self.rejected,
            "review_ref": self.review_ref,
            "children": [{"key": key, "ref": ref} for key, ref in self.children],
            "cost_usd": self.cost_usd,
        }


@dataclass(frozen=True)
class RunState:
    """Reconstructed state of the latest run on one work item."""

    work_item: WorkItem
    run_id: str | None = None
    pipeline: str | None = None
    definition: PipelineDefinition | None = None
    definition_digest: str | None = None
    definition_error: str | None = None
    classification: str | None = None
    classification_sequence: int | None = None
    safety_critical: bool = False
    nodes: Mapping[str, NodeState] = field(default_factory=dict)
    traversals: Mapping[str, int] = field(default_factory=dict)
    condition_results: Mapping[tuple[str, int, int, int], bool] = field(default_factory=dict)
    fired_rework: frozenset[tuple[str, int, int]] = frozenset()
    cost_total_usd: float = 0.0
    retries_total: int = 0
    escalated: bool = False
    escalation_reason: str | None = None
    completed: bool = False
    artifact_count: int = 0
    ignored: tuple[str, ...] = ()

    @property
    def started(self) -> bool:
        return self.run_id is not None

    @property
    def terminal(self) -> bool:
        return self.escalated or self.completed

    @property
    def available_types(self) -> frozenset[str]:
        available = {WORK_ITEM_ARTIFACT}
        if self.work_item.is_sub_item:
            available.add(SUB_WORK_ITEM_ARTIFACT)
        if self.definition is not None:
            for node in self.definition.nodes:
                for artifact_type in node.outputs:
                    if self.producer_of(artifact_type) is not None:
                        available.add(artifact_type)
        return frozenset(available)

    def node(self, node_id: str) -> NodeState:
        return self.nodes.get(node_id) or NodeState(node_id=node_id)

    def predicate_results(self, edge_id: str, epoch: int, execution: int) -> dict[int, bool]:
        return {
            index: value
            for (edge, index, result_epoch, result_execution), value in self.condition_results.items()
            if edge == edge_id and result_epoch == epoch and result_execution == execution
        }

    def rework_fired(self, edge_id: str, epoch: int, execution: int) -> bool:
        return (edge_id, epoch, execution) in self.fired_rework

    def producer_of(self, artifact_type: str) -> str | None:
        """The completed node whose output currently provides ``artifact_type``."""
        if self.definition is None:
            return None
        rule = self.definition.artifact_selection.get(artifact_type, SELECT_LATEST)
        candidates = [
            node_id
            for node_id in self.definition.producers(artifact_type)
            if self.node(node_id).status is NodeStatus.COMPLETED
            and artifact_type in self.node(node_id).outputs
        ]
        if rule != SELECT_LATEST:
            return rule if rule in candidates else None
        if not candidates:
            return None
        return max(candidates, key=lambda node_id: (self.node(node_id).output_sequence or -1, node_id))

    def artifact_content(self, artifact_type: str) -> JSONValue:
        if artifact_type == WORK_ITEM_ARTIFACT:
            return self.work_item.to_dict()
        if artifact_type == SUB_WORK_ITEM_ARTIFACT and self.work_item.is_sub_item:
            return self.work_item.to_dict()
        producer = self.producer_of(artifact_type)
        if producer is None:
            raise KeyError(f"artifact type {artifact_type!r} is not available")
        return self.node(producer).outputs[artifact_type]

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "ref": self.work_item.ref,
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "definition_digest": self.definition_digest,
            "definition_error": self.definition_error,
            "classification": self.classification,
            "safety_critical": self.safety_critical,
            "nodes": {node_id: self.nodes[node_id].to_dict() for node_id in sorted(self.nodes)},
            "traversals": {edge_id: self.traversals[edge_id] for edge_id in sorted(self.traversals)},
            "condition_results": [
                [*key, self.condition_results[key]] for key in sorted(self.condition_results)
            ],
            "fired_rework": [list(entry) for entry in sorted(self.fired_rework)],
            "available_types": sorted(self.available_types),
            "cost_total_usd": self.cost_total_usd,
            "retries_total": self.retries_total,
            "escalated": self.escalated,
            "escalation_reason": self.escalation_reason,
            "completed": self.completed,
            "artifact_count": self.artifact_count,
        }

    def fingerprint(self) -> str:
        return sha256_json(self.to_dict())


def reconstruct(
    work_item: WorkItem,
    artifacts: Sequence[Artifact],
    *,
    safety_label: str = DEFAULT_SAFETY_LABEL,
    ignored: Sequence[str] = (),
) -> RunState:
    """Fold the artifact log of ``work_item`` into a ``RunState``."""

    classification: str | None = None
    classification_sequence: int | None = None
    classified_safety = False
    last_start: int | None = None
    for index, artifact in enumerate(artifacts):
        if artifact.kind is ArtifactKind.CLASSIFICATION:
            value = artifact.payload.get("classification")
            classification = value if isinstance(value, str) else None
            classification_sequence = artifact.sequence
            classified_safety = artifact.payload.get("safety_critical") is True
        elif artifact.kind is ArtifactKind.RUN_STARTED:
            last_start = index

    safety_critical = (
        work_item.has_label(safety_label)
        or work_item.metadata.get("safety_critical") is True
        or classified_safety
    )
    base = RunState(
        work_item=work_item,
        classification=classification,
        classification_sequence=classification_sequence,
        safety_critical=safety_critical,
        artifact_count=len(artifacts),
        ignored=tuple(ignored),
    )
    if last_start is None:
        return base

    fold = _Fold(base, artifacts[last_start])
    for artifact in artifacts[last_start + 1 :]:
        fold.apply(artifact)
    return fold.finish()


def load_run_state(store: ArtifactStore, ref: str, *, safety_label: str = DEFAULT_SAFETY_LABEL) -> RunState:
    """Read ``ref`` from ``store`` and reconstruct its run."""

    work_item = store.get_work_item(ref)
    decoded = decode_log(store.list_comments(ref))
    for comment_id, reason in decoded.rejected:
        logger.warning("run_state_comment_ignored", work_item_ref=ref, comment_id=comment_id, reason=reason)
    return reconstruct(
        work_item,
        decoded.artifacts,
        safety_label=safety_label,
        ignored=tuple(reason for _, reason in decoded.rejected),
    )


class _Fold:
    """Mutable accumulator for one run; produces an immutable ``RunState``."""

    def __init__(self, base: RunState, started: Artifact) -> None:
        self._base = base
        self._run_id = started.run_id
        payload = started.payload
        name = payload.get("pipeline")
        self._pipeline = name if isinstance(name, str) else None
        self._digest: str | None = None
        self._definition: PipelineDefinition | None = None
        self._definition_error: str | None = None
        self._load_definition(payload)

        self._nodes: dict[str, NodeState] = {}
        if self._definition is not None:
            self._nodes = {node.id: NodeState(node_id=node.id) for node in self._definition.nodes}
        self._traversals: dict[str, int] = {}
        self._conditions: dict[tuple[str, int, int, int], bool] = {}
        self._fired: set[tuple[str, int, int]] = set()
        self._cost = round(_cost_of(payload), 12)
        self._retries = 0
        self._escalation: str | None = None
        self._completed = False
        self._ignored: list[str] = list(base.ignored)

    def _load_definition(self, payload: Mapping[str, Any]) -> None:
        raw = payload.get("definition")
        digest = payload.get("digest")
        self._digest = digest if isinstance(digest, str) else None
        if self._pipeline is None or not isinstance(raw, Mapping):
            self._definition_error = "run_started carries no pipeline snapshot"
            return
        try:
            definition = parse_pipeline_definition(
                self._pipeline,
                raw,
                default_parallelism=max(1, _int(payload.get("parallelism"), default=DEFAULT_PARALLELISM)),
            )
        except StructuralConfigError as exc:
            self._definition_error = exc.detail
            return
        if self._digest is not None and definition.digest != self._digest:
            self._definition_error = "pinned pipeline snapshot does not match its digest"
            return
        self._definition = definition

    def apply(self, artifact: Artifact) -> None:
        if artifact.run_id != self._run_id or artifact.kind is ArtifactKind.CLASSIFICATION:
            return
        payload = artifact.payload
        self._cost = round(self._cost + _cost_of(payload), 12)
        kind = artifact.kind

        if kind is ArtifactKind.ESCALATION:
            reason = payload.get("reason")
            self._escalation = reason if isinstance(reason, str) else "escalated"
            return
        if kind is ArtifactKind.RUN_COMPLETED:
            self._completed = True
            return
        if kind is ArtifactKind.CONDITION_RESULT:
            self._record_condition(payload)
            return
        if kind is ArtifactKind.EDGE_TRAVERSAL:
            self._record_traversal(artifact)
            return

        node_id = artifact.node_id
        if node_id is None or node_id not in self._nodes:
            self._ignored.append(f"artifact {artifact.sequence}: unknown node {node_id!r}")
            return
        state = self._nodes[node_id]
        if _int(payload.get("epoch"), default=state.epoch) != state.epoch:
            self._ignored.append(f"artifact {artifact.sequence}: stale epoch for {node_id}")
            return

        cost = _cost_of(payload)
        if cost:
            state = replace(state, cost_usd=round(state.cost_usd + cost, 12))
        if kind is ArtifactKind.NODE_OUTPUT:
            state = self._executed(state)
            state = replace(
                state,
                status=NodeStatus.COMPLETED,
                consecutive_failures=0,
                outputs=_mapping(payload.get("outputs")),
                output_sequence=artifact.sequence,
                error=None,
                diagnostics=_diagnostics(payload.get("diagnostics")),
            )
        elif kind is ArtifactKind.NODE_FAILURE:
            state = self._executed(state)
            state = replace(
                state,
                status=NodeStatus.FAILED,
                consecutive_failures=state.consecutive_failures + 1,
                outputs={},
                output_sequence=None,
                error=_mapping(payload.get("error")),
                diagnostics=_diagnostics(payload.get("diagnostics")),
            )
        elif kind is ArtifactKind.PENDING_APPROVAL:
            review_ref = payload.get("review_ref")
            state = replace(
                state,
                status=NodeStatus.AWAITING_APPROVAL,
                approval_requested=True,
                review_ref=review_ref if isinstance(review_ref, str) else None,
            )
        elif kind is ArtifactKind.APPROVAL:
            state = replace(state, status=NodeStatus.PENDING, approved=True)
        elif kind is ArtifactKind.REJECTION:
            signal = payload.get("signal")
            state = replace(
                state,
                status=NodeStatus.FAILED,
                rejected=True,
                error={"category": "rejected", "message": f"rejected via {signal}"},
            )
        elif kind is ArtifactKind.SPAWNED:
            state = replace(state, status=NodeStatus.WAITING, children=_children(payload.get("children")))
        self._nodes[node_id] = state

    def _executed(self, state: NodeState) -> NodeState:
        if state.consecutive_failures > 0:
            self._retries += 1
            state = replace(state, retries=state.retries + 1)
        return replace(state, executions=state.executions + 1)

    def _record_condition(self, payload: Mapping[str, JSONValue]) -> None:
        edge = payload.get("edge")
        value = payload.get("value")
        if not isinstance(edge, str) or not isinstance(value, bool):
            self._ignored.append("condition_result without edge/value")
            return
        key = (edge, _int(payload.get("index")), _int(payload.get("epoch")), _int(payload.get("execution")))
        self._conditions.setdefault(key, value)

    def _record_traversal(self, artifact: Artifact) -> None:
        payload = artifact.payload
        edge_id = payload.get("edge")
        if self._definition is None or not isinstance(edge_id, str):
            self._ignored.append(f"artifact {artifact.sequence}: traversal without definition")
            return
        try:
            edge = self._definition.edge(edge_id)
        except KeyError:
            self._ignored.append(f"artifact {artifact.sequence}: unknown edge {edge_id!r}")
            return
        self._traversals[edge_id] = self._traversals.get(edge_id, 0) + 1
        self._retries += 1
        self._fired.add((edge_id, _int(payload.get("source_epoch")), _int(payload.get("source_execution"))))
        for node_id in self._definition.rework_scope(edge.target):
            previous = self._nodes[node_id]
            self._nodes[node_id] = NodeState(
                node_id=node_id,
                epoch=previous.epoch + 1,
                retries=previous.retries,
                cost_usd=previous.cost_usd,
                children=previous.children,
            )

    def finish(self) -> RunState:
        return replace(
            self._base,
            run_id=self._run_id,
            pipeline=self._pipeline,
            definition=self._definition,
            definition_digest=self._digest,
            definition_error=self._definition_error,
            nodes=dict(self._nodes),
            traversals=dict(self._traversals),
            condition_results=dict(self._conditions),
            fired_rework=frozenset(self._fired),
            cost_total_usd=self._cost,
            retries_total=self._retries,
            escalated=self._escalation is not None,
            escalation_reason=self._escalation,
            completed=self._completed,
            ignored=tuple(self._ignored),
        )


def _cost_of(payload: Mapping[str, JSONValue]) -> float:
    value = payload.get("cost_usd")
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return 0.0
    return float(value)


def _int(value: object, *, default: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return default
    return value


def _mapping(value: object) -> dict[str, JSONValue]:
    return dict(value) if isinstance(value, Mapping) else {}


def _diagnostics(value: object) -> tuple[Mapping[str, JSONValue], ...]:
    if not isinstance(value, list):
        return ()
    return tuple(dict(item) for item in value if isinstance(item, Mapping))


def _children(value: object) -> tuple[tuple[str, str], ...]:
    if not isinstance(value, list):
        return ()
    children: list[tuple[str, str]] = []
    for entry in value:
        if isinstance(entry, Mapping) and isinstance(entry.get("key"), str) and isinstance(entry.get("ref"), str):
            children.append((entry["key"], entry["ref"]))
    return tuple(children)


__all__ = ["NodeState", "RunState", "load_run_state", "reconstruct"]
