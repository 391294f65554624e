"""Unit tests for node executors, spawn plans and output validation."""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from typing import Any

import pytest

from cogworks.control_plane import (
    ExecutionContext,
    NodeOutcome,
    OutcomeKind,
    check_children,
    execute_node,
    parse_spawn_plan,
    reconstruct,
)
from cogworks.control_plane.executors import validate_outputs
from cogworks.domain.errors import SchemaValidationError
from cogworks.domain.models import Artifact, ArtifactKind, JSONValue, NodeKind, WorkItem
from cogworks.pipeline import PipelineCatalog
from cogworks.pipeline.definition import PipelineDefinition
from cogworks.reasoning import OfflineReasoningClient
from cogworks.store import MemoryArtifactStore
from cogworks.store.codec import encode_artifact

PIPELINE = """
version: 1
default_pipeline: epic
pipelines:
  epic:
    nodes:
      - id: plan
        kind: reasoning
        template: plan
        inputs: [work_item]
        outputs: [child_plan]
        output_schema:
          child_plan:
            required: [sub_items]
            properties: {sub_items: array}
      - {id: hold, kind: gate, inputs: [child_plan]}
      - {id: spawn, kind: spawn, inputs: [child_plan], source: child_plan, pipeline: part, outputs: [children]}
    edges:
      - {from: plan, to: hold}
      - {from: hold, to: spawn}
  part:
    nodes:
      - {id: work, kind: reasoning, template: work, inputs: [sub_work_item], outputs: [patch]}
"""

PLAN: dict[str, JSONValue] = {
    "sub_items": [
        {"key": "api", "title": "Add API", "body": "Expose the export endpoint."},
        {"key": "ui", "title": "Add button", "depends_on": ["api"]},
    ]
}


@pytest.fixture
def epic(make_catalog: Callable[[str], PipelineCatalog]) -> PipelineDefinition:
    return make_catalog(PIPELINE).get("epic")


def _context(
    store: MemoryArtifactStore,
    definition: PipelineDefinition,
    node_id: str,
    inputs: Mapping[str, JSONValue],
    *,
    reasoning: OfflineReasoningClient | None = None,
    artifacts: tuple[Artifact, ...] = (),
) -> ExecutionContext:
    item = store.get_work_item("item-1")
    return ExecutionContext(
        node=definition.node(node_id),
        state=reconstruct(item, [_started(definition), *artifacts]),
        inputs=inputs,
        trace_id="trc-1",
        reasoning=reasoning if reasoning is not None else OfflineReasoningClient(),
        store=store,
    )


def _started(definition: PipelineDefinition) -> Artifact:
    return Artifact(
        kind=ArtifactKind.RUN_STARTED,
        run_id="run-1",
        payload={"pipeline": definition.name, "definition": dict(definition.raw), "digest": definition.digest},
    )


def test_spawn_plan_is_returned_in_dependency_order() -> None:
    plan = parse_spawn_plan(
        {
            "sub_items": [
                {"key": "ui", "title": "Button", "depends_on": ["api"]},
                {"key": "api", "title": "Endpoint"},
            ]
        }
    )

    assert [child.key for child in plan] == ["api", "ui"]
    assert plan[1].depends_on == ("api",)


@pytest.mark.parametrize(
    ("raw", "fragment"),
    [
        ([], "'sub_items' array"),
        ({"sub_items": [{"key": "a"}]}, "sub_items[0].title"),
        ({"sub_items": [{"key": "a", "title": "A"}, {"key": "a", "title": "B"}]}, "duplicate key 'a'"),
        ({"sub_items": [{"key": "a", "title": "A", "depends_on": ["z"]}]}, "unknown dependency 'z'"),
        (
            {
                "sub_items": [
                    {"key": "a", "title": "A", "depends_on": ["b"]},
                    {"key": "b", "title": "B", "depends_on": ["a"]},
                ]
            },
            "cycle",
        ),
    ],
)
def test_invalid_spawn_plans_are_rejected(raw: object, fragment: str) -> None:
    with pytest.raises(SchemaValidationError) as excinfo:
        parse_spawn_plan(raw)

    assert fragment in excinfo.value.detail


def test_validate_outputs_enforces_declared_schema(epic: PipelineDefinition) -> None:
    node = epic.node("plan")

    validate_outputs(node, {"child_plan": {"sub_items": []}})
    with pytest.raises(SchemaValidationError) as missing:
        validate_outputs(node, {})
    with pytest.raises(SchemaValidationError) as wrong_type:
        validate_outputs(node, {"child_plan": {"sub_items": "nope"}})

    assert missing.value.errors == ("missing output 'child_plan'",)
    assert wrong_type.value.errors == ("child_plan.sub_items: expected array",)


@pytest.mark.asyncio
async def test_reasoning_node_fills_schema_placeholders(
    store: MemoryArtifactStore, add_item: Callable[..., Any], epic: PipelineDefinition
) -> None:
    add_item()

    outcome = await execute_node(_context(store, epic, "plan", {"work_item": {"ref": "item-1"}}))

    assert outcome.kind is OutcomeKind.SUCCEEDED
    assert outcome.outputs["child_plan"]["sub_items"] == []  # type: ignore[index]


@pytest.mark.asyncio
async def test_gate_passes_its_inputs_through(
    store: MemoryArtifactStore, add_item: Callable[..., Any], epic: PipelineDefinition
) -> None:
    add_item()

    outcome = await execute_node(_context(store, epic, "hold", {"child_plan": PLAN}))

    assert outcome == NodeOutcome.succeeded({"child_plan": PLAN})


@pytest.mark.asyncio
async def test_spawn_creates_children_once(
    store: MemoryArtifactStore, add_item: Callable[..., Any], epic: PipelineDefinition
) -> None:
    add_item(labels=("safety-critical",))

    first = await execute_node(_context(store, epic, "spawn", {"child_plan": PLAN}))
    again = await execute_node(_context(store, epic, "spawn", {"child_plan": PLAN}))

    assert first.kind is OutcomeKind.SPAWNED
    assert first.children == again.children
    children = {child.spawn_key: child for child in store.list_children("item-1")}
    assert len(children) == 2
    api, ui = children["api"], children["ui"]
    assert api.body == "Expose the export endpoint."
    assert api.labels == ("cogworks:run",)
    assert api.pinned_pipeline == "part"
    assert api.metadata["safety_critical"] is True
    assert ui.depends_on == (api.ref,)
    assert dict(first.children) == {"api": api.ref, "ui": ui.ref}


def _spawned(children: list[dict[str, JSONValue]]) -> Artifact:
    return Artifact(
        kind=ArtifactKind.SPAWNED,
        run_id="run-1",
        node_id="spawn",
        payload={"epoch": 0, "children": children},
    )


def test_check_children_waits_until_every_child_completes(
    store: MemoryArtifactStore, add_item: Callable[..., Any], epic: PipelineDefinition
) -> None:
    add_item()
    add_item("item-2", parent_ref="item-1")
    add_item("item-3", parent_ref="item-1")
    part = Artifact(kind=ArtifactKind.RUN_STARTED, run_id="run-2", payload={"pipeline": "part"})
    store.add_comment("item-2", encode_artifact(part))
    store.add_comment("item-2", encode_artifact(Artifact(kind=ArtifactKind.RUN_COMPLETED, run_id="run-2")))
    spawned = _spawned([{"key": "api", "ref": "item-2"}, {"key": "ui", "ref": "item-3"}])

    waiting = check_children(_context(store, epic, "spawn", {}, artifacts=(spawned,)))
    store.add_comment("item-3", encode_artifact(part))
    store.add_comment("item-3", encode_artifact(Artifact(kind=ArtifactKind.RUN_COMPLETED, run_id="run-2")))
    done = check_children(_context(store, epic, "spawn", {}, artifacts=(spawned,)))

    assert waiting.kind is OutcomeKind.WAITING
    assert done.kind is OutcomeKind.SUCCEEDED
    assert done.outputs == {
        "children": {
            "children": [
                {"key": "api", "ref": "item-2", "completed": True},
                {"key": "ui", "ref": "item-3", "completed": True},
            ]
        }
    }


def test_escalated_child_fails_the_spawn_node(
    store: MemoryArtifactStore, add_item: Callable[..., Any], epic: PipelineDefinition
) -> None:
    add_item()
    add_item("item-2", parent_ref="item-1")
    store.add_comment("item-2", encode_artifact(Artifact(kind=ArtifactKind.RUN_STARTED, run_id="run-2")))
    store.add_comment(
        "item-2",
        encode_artifact(Artifact(kind=ArtifactKind.ESCALATION, run_id="run-2", payload={"reason": "stalled"})),
    )

    outcome = check_children(
        _context(store, epic, "spawn", {}, artifacts=(_spawned([{"key": "api", "ref": "item-2"}]),))
    )

    assert outcome.kind is OutcomeKind.FAILED
    assert outcome.error == {"category": "child_escalated", "message": "sub-work-item item-2 (api) escalated: stalled"}


@pytest.mark.asyncio
async def test_custom_executor_registry(
    store: MemoryArtifactStore, add_item: Callable[..., Any], epic: PipelineDefinition
) -> None:
    class Refusing:
        async def execute(self, context: ExecutionContext) -> NodeOutcome:
            return NodeOutcome.failed("refused", f"{context.node.id} refused")

    add_item()

    outcome = await execute_node(
        _context(store, epic, "plan", {}), executors={NodeKind.REASONING: Refusing()}
    )

    assert outcome.error == {"category": "refused", "message": "plan refused"}
    assert not outcome.ok



@pytest.mark.asyncio
async def test_invalid_reasoning_output_fails_and_keeps_its_cost(
    store: MemoryArtifactStore, add_item: Callable[..., Any], epic: PipelineDefinition
) -> None:
    add_item()
    reasoning = OfflineReasoningClient(
        outputs={"plan": {"child_plan": {"sub_items": "nope"}}},
        cost_per_call_usd=0.4,
    )

    outcome = await execute_node(
        _context(store, epic, "plan", {"work_item": {"ref": "item-1"}}, reasoning=reasoning)
    )

    assert outcome.kind is OutcomeKind.FAILED
    assert outcome.cost_usd == pytest.approx(0.4)
    assert outcome.error is not None
    assert outcome.error["category"] == "schema_validation"
    assert "child_plan.sub_items: expected array" in str(outcome.error["message"])


class ThreadRecordingStore(MemoryArtifactStore):
    def __init__(self) -> None:
        super().__init__()
        self.threads: list[int] = []

    def list_children(self, ref: str) -> tuple[WorkItem, ...]:
        self.threads.append(threading.get_ident())
        return super().list_children(ref)

    def create_work_item(self, **kwargs: Any) -> WorkItem:
        self.threads.append(threading.get_ident())
        return super().create_work_item(**kwargs)


@pytest.mark.asyncio
async def test_spawn_store_calls_run_off_the_event_loop(epic: PipelineDefinition) -> None:
    store = ThreadRecordingStore()
    store.add_work_item(WorkItem(ref="item-1", title="Export"))

    outcome = await execute_node(_context(store, epic, "spawn", {"child_plan": PLAN}))

    assert outcome.kind is OutcomeKind.SPAWNED
    assert len(store.threads) == 3
    assert threading.get_ident() not in store.threads
