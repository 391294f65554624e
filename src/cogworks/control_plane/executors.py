"""
cogworks — node executors

File: src/cogworks/control_plane/executors.py

Purpose
- One executor per node kind behind a uniform ``execute(context) -> NodeOutcome``.

Functional requirements
- tool: one Extension Client operation; an ``error`` response is a node
  failure carrying the service diagnostics.
- reasoning: one reasoning call over the assembled context; content is keyed
  by the declared output types.
- gate: a pure checkpoint that passes its inputs through.
- spawn: creates sub-work-items from a plan artifact, matching existing
  children by key so a crash between creation and the ``spawned`` artifact
  never duplicates a child; completion is checked separately through
  ``check_children``.
- Successful outputs are validated against the node's declared outputs and
  ``output_schema`` before anything is persisted.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from cogworks.constants import DEFAULT_SAFETY_LABEL, DEFAULT_TRIGGER_LABEL
from cogworks.control_plane.run_state import load_run_state
from cogworks.domain.errors import SchemaValidationError
from cogworks.domain.models import JSONValue, NodeKind
from cogworks.pipeline.task_graph import CycleError, TaskGraph
from cogworks.reasoning.base import CompletionRequest
from cogworks.reasoning.context import build_context

if TYPE_CHECKING:
    from cogworks.control_plane.run_state import RunState
    from cogworks.extension.client import ExtensionClient
    from cogworks.pipeline.definition import Node, OutputSchema
    from cogworks.reasoning.base import ReasoningClient
    from cogworks.store.base import ArtifactStore

logger = structlog.get_logger(__name__)

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list,),
}


class OutcomeKind(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SPAWNED = "spawned"
    WAITING = "waiting"


@dataclass(frozen=True, slots=True)
class NodeOutcome:
    kind: OutcomeKind
    outputs: Mapping[str, JSONValue] = field(default_factory=dict)
    diagnostics: tuple[Mapping[str, JSONValue], ...] = ()
    error: Mapping[str, JSONValue] | None = None
    cost_usd: float = 0.0
    children: tuple[tuple[str, str], ...] = ()

    @classmethod
    def succeeded(
        cls,
        outputs: Mapping[str, JSONValue],
        *,
        diagnostics: Sequence[Mapping[str, JSONValue]] = (),
        cost_usd: float = 0.0,
    ) -> NodeOutcome:
        return cls(OutcomeKind.SUCCEEDED, outputs=dict(outputs), diagnostics=tuple(diagnostics), cost_usd=cost_usd)

    @classmethod
    def failed(
        cls,
        category: str,
        message: str,
        *,
        diagnostics: Sequence[Mapping[str, JSONValue]] = (),
        cost_usd: float = 0.0,
    ) -> NodeOutcome:
        return cls(
            OutcomeKind.FAILED,
            error={"category": category, "message": message},
            diagnostics=tuple(diagnostics),
            cost_usd=cost_usd,
        )

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCEEDED


@dataclass(frozen=True, slots=True)
class ExecutionContext:
    """Everything one node execution may read or call."""

    node: Node
    state: RunState
    inputs: Mapping[str, JSONValue]
    trace_id: str
    reasoning: ReasoningClient
    store: ArtifactStore
    extension: ExtensionClient | None = None
    trigger_label: str = DEFAULT_TRIGGER_LABEL
    safety_label: str = DEFAULT_SAFETY_LABEL

    @property
    def run_id(self) -> str:
        return self.state.run_id or ""


class Executor(Protocol):
    async def execute(self, context: ExecutionContext) -> NodeOutcome: ...


class ToolExecutor:
    async def execute(self, context: ExecutionContext) -> NodeOutcome:
        node = context.node
        assert node.domain is not None and node.operation is not None
        if context.extension is None:
            return NodeOutcome.failed("domain_unavailable", f"no extension client for domain {node.domain!r}")
        payload: dict[str, JSONValue] = {**dict(node.payload), "inputs": dict(context.inputs)}
        response = await context.extension.invoke(
            node.domain,
            node.operation,
            payload,
            timeout_seconds=node.timeout_seconds,
            trace_id=context.trace_id,
        )
        diagnostics = [diagnostic.to_dict() for diagnostic in response.diagnostics]
        if not response.ok:
            return NodeOutcome.failed(
                "domain_error",
                f"{node.domain}.{node.operation} reported {len(diagnostics)} diagnostic(s)",
                diagnostics=diagnostics,
            )
        produced = response.outputs()
        return NodeOutcome.succeeded(
            {artifact_type: produced[artifact_type] for artifact_type in node.outputs if artifact_type in produced},
            diagnostics=diagnostics,
        )


class ReasoningExecutor:
    async def execute(self, context: ExecutionContext) -> NodeOutcome:
        node = context.node
        assert node.template is not None
        request = CompletionRequest(
            template=node.template,
            outputs=node.outputs,
            context=build_context(context.state, context.inputs, diagnostics=_input_diagnostics(context)),
            output_schema=node.output_schema,
            work_item_ref=context.state.work_item.ref,
            run_id=context.run_id,
            node_id=node.id,
            trace_id=context.trace_id,
        )
        result = await context.reasoning.complete(request)
        return NodeOutcome.succeeded(
            {artifact_type: result.outputs[artifact_type] for artifact_type in node.outputs if artifact_type in result.outputs},
            cost_usd=result.usage.cost_usd,
        )


class GateExecutor:
    async def execute(self, context: ExecutionContext) -> NodeOutcome:
        return NodeOutcome.succeeded(context.inputs)


@dataclass(frozen=True, slots=True)
class PlannedChild:
    key: str
    title: str
    body: str = ""
    depends_on: tuple[str, ...] = ()


class SpawnExecutor:
    async def execute(self, context: ExecutionContext) -> NodeOutcome:
        node = context.node
        assert node.source is not None and node.child_pipeline is not None
        planned = parse_spawn_plan(context.inputs.get(node.source))
        parent = context.state.work_item
        # Store calls block (file locks, disk I/O); keep them off the event loop.
        known = await asyncio.to_thread(context.store.list_children, parent.ref)
        existing = {
            child.spawn_key: child
            for child in known
            if child.spawn_key is not None and child.metadata.get("parent_node") == node.id
        }

        refs: dict[str, str] = {}
        for child in planned:
            match = existing.get(child.key)
            if match is not None:
                refs[child.key] = match.ref
                continue
            created = await asyncio.to_thread(
                context.store.create_work_item,
                title=child.title,
                body=child.body,
                labels=(context.trigger_label,),
                parent_ref=parent.ref,
                metadata={
                    "key": child.key,
                    "pipeline": node.child_pipeline,
                    "depends_on": [refs[dependency] for dependency in child.depends_on],
                    "parent_node": node.id,
                    "safety_critical": context.state.safety_critical,
                },
            )
            refs[child.key] = created.ref
            logger.info(
                "spawn_child_created",
                work_item_ref=parent.ref,
                node_id=node.id,
                key=child.key,
                child_ref=created.ref,
            )
        return NodeOutcome(OutcomeKind.SPAWNED, children=tuple((child.key, refs[child.key]) for child in planned))


def parse_spawn_plan(raw: object) -> tuple[PlannedChild, ...]:
    """Validate a plan artifact and return its children in dependency order."""

    if not isinstance(raw, Mapping) or not isinstance(raw.get("sub_items"), list):
        raise SchemaValidationError("spawn plan must be an object with a 'sub_items' array")
    errors: list[str] = []
    children: dict[str, PlannedChild] = {}
    for index, entry in enumerate(raw["sub_items"]):
        path = f"sub_items[{index}]"
        if not isinstance(entry, Mapping):
            errors.append(f"{path}: expected object")
            continue
        key = entry.get("key")
        title = entry.get("title")
        body = entry.get("body", "")
        depends_on = entry.get("depends_on", [])
        if not isinstance(key, str) or not key.strip():
            errors.append(f"{path}.key: expected non-empty string")
            continue
        if key in children:
            errors.append(f"{path}.key: duplicate key {key!r}")
            continue
        if not isinstance(title, str) or not title.strip():
            errors.append(f"{path}.title: expected non-empty string")
            continue
        if not isinstance(body, str):
            errors.append(f"{path}.body: expected string")
            continue
        if not isinstance(depends_on, list) or not all(isinstance(item, str) for item in depends_on):
            errors.append(f"{path}.depends_on: expected array of keys")
            continue
        children[key] = PlannedChild(key=key, title=title, body=body, depends_on=tuple(depends_on))

    for child in children.values():
        for dependency in child.depends_on:
            if dependency not in children:
                errors.append(f"{child.key}: unknown dependency {dependency!r}")
    if errors:
        raise SchemaValidationError("invalid spawn plan", errors=errors)

    graph = TaskGraph(
        nodes=children,
        edges=((dependency, child.key) for child in children.values() for dependency in child.depends_on),
    )
    try:
        order = graph.topological_sort()
    except CycleError as exc:
        raise SchemaValidationError("spawn plan dependencies form a cycle", errors=[str(exc)]) from exc
    return tuple(children[key] for key in order)


def check_children(context: ExecutionContext) -> NodeOutcome:
    """Completion check for a spawn node whose children are running."""

    node = context.node
    node_state = context.state.node(node.id)
    summaries: list[JSONValue] = []
    pending = 0
    for key, ref in node_state.children:
        child = load_run_state(context.store, ref, safety_label=context.safety_label)
        if child.escalated:
            return NodeOutcome.failed(
                "child_escalated",
                f"sub-work-item {ref} ({key}) escalated: {child.escalation_reason}",
            )
        if not child.completed:
            pending += 1
        summaries.append({"key": key, "ref": ref, "completed": child.completed})
    if pending:
        return NodeOutcome(OutcomeKind.WAITING)
    return NodeOutcome.succeeded({artifact_type: {"children": summaries} for artifact_type in node.outputs})


def validate_outputs(node: Node, outputs: Mapping[str, JSONValue]) -> None:
    """Require every declared output and enforce ``output_schema``."""

    errors: list[str] = []
    for artifact_type in node.outputs:
        if artifact_type not in outputs:
            errors.append(f"missing output {artifact_type!r}")
            continue
        schema = node.output_schema.get(artifact_type)
        if schema is not None:
            errors.extend(_schema_errors(artifact_type, outputs[artifact_type], schema))
    if errors:
        raise SchemaValidationError(f"node {node.id!r} produced invalid outputs", errors=errors)


def _schema_errors(artifact_type: str, content: JSONValue, schema: OutputSchema) -> list[str]:
    if not isinstance(content, dict):
        return [f"{artifact_type}: expected object"]
    errors = [f"{artifact_type}.{key}: required" for key in schema.required if key not in content]
    for key, expected in sorted(schema.properties.items()):
        if key not in content:
            continue
        value = content[key]
        allowed = _JSON_TYPES[expected]
        if isinstance(value, bool) and bool not in allowed:
            errors.append(f"{artifact_type}.{key}: expected {expected}")
        elif not isinstance(value, allowed):
            errors.append(f"{artifact_type}.{key}: expected {expected}")
    return errors


def _input_diagnostics(context: ExecutionContext) -> list[Mapping[str, JSONValue]]:
    diagnostics: list[Mapping[str, JSONValue]] = []
    for artifact_type in context.node.inputs:
        producer = context.state.producer_of(artifact_type)
        if producer is not None:
            diagnostics.extend(context.state.node(producer).diagnostics)
    return diagnostics


EXECUTORS: dict[NodeKind, Executor] = {
    NodeKind.TOOL: ToolExecutor(),
    NodeKind.REASONING: ReasoningExecutor(),
    NodeKind.GATE: GateExecutor(),
    NodeKind.SPAWN: SpawnExecutor(),
}


async def execute_node(context: ExecutionContext, *, executors: Mapping[NodeKind, Any] | None = None) -> NodeOutcome:
    """Run the executor for ``context.node`` and validate a successful result.

    Invalid outputs turn the outcome into a ``schema_validation`` failure that keeps
    the cost of the call.
    """

    registry = EXECUTORS if executors is None else executors
    outcome = await registry[context.node.kind].execute(context)
    if outcome.ok and context.node.kind is not NodeKind.GATE:
        try:
            validate_outputs(context.node, outcome.outputs)
        except SchemaValidationError as exc:
            return NodeOutcome.failed(
                exc.code, exc.detail, diagnostics=outcome.diagnostics, cost_usd=outcome.cost_usd
            )
    return outcome


__all__ = [
    "EXECUTORS",
    "ExecutionContext",
    "Executor",
    "GateExecutor",
    "NodeOutcome",
    "OutcomeKind",
    "PlannedChild",
    "ReasoningExecutor",
    "SpawnExecutor",
    "ToolExecutor",
    "check_children",
    "execute_node",
    "parse_spawn_plan",
    "validate_outputs",
]
