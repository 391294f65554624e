"""
cogworks — orchestrator step function

File: src/cogworks/control_plane/orchestrator.py

Purpose
- ``advance(ref)``: one stateless invocation that moves a work item's pipeline
  run forward as far as it can without waiting on anything external.

Functional requirements
- All progress is reconstructed from the artifact log at the start of every
  wave; nothing carries over between invocations except artifacts, labels and
  markers in the store.
- Terminal runs return immediately without side effects; sub-work-items with
  unfinished sibling dependencies return ``waiting`` without taking the lock.
- The processing lock is taken before any write and released on every exit
  path. A stale lock is overridden and reported as a warning.
- Within a wave: resolve reasoning predicates, apply one rework traversal,
  escalate exhausted rework, request approvals, check spawned children, then
  execute the ready set with bounded parallelism, each node budget-reserved and
  deadline-guarded. Results are written in topological order.
- Budget, retry and rework exhaustion, stalls and unusable pinned definitions
  end the run with an ``escalation`` artifact.

Status precedence
- escalated > failed > deferred > gated > waiting > advanced
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import structlog

from cogworks.constants import (
    DEFAULT_APPROVE_PREFIX,
    DEFAULT_MAX_WAVES_PER_INVOCATION,
    DEFAULT_OPERATION_TIMEOUT_SECONDS,
    DEFAULT_PIPELINE_LABEL_PREFIX,
    DEFAULT_RECLASSIFY_LABEL,
    DEFAULT_REJECT_PREFIX,
    DEFAULT_SAFETY_LABEL,
    DEFAULT_TRIGGER_LABEL,
)
from cogworks.control_plane.budgets import BudgetLimits, BudgetTracker
from cogworks.control_plane.executors import (
    ExecutionContext,
    NodeOutcome,
    OutcomeKind,
    check_children,
    execute_node,
)
from cogworks.control_plane.locks import LockManager
from cogworks.control_plane.run_state import load_run_state
from cogworks.domain.errors import (
    CogWorksError,
    RateLimitBackoff,
    ReasoningError,
    RetryLimitExceeded,
    StructuralConfigError,
    StructuralIssue,
)
from cogworks.domain.ids import generate_run_id, generate_trace_id, validate_work_item_ref
from cogworks.domain.models import (
    Artifact,
    ArtifactKind,
    JSONValue,
    NodeStatus,
    ReviewState,
    StepResult,
    StepStatus,
)
from cogworks.observability.logging import correlation_scope
from cogworks.pipeline.graph import Frontier, GraphModel
from cogworks.reasoning.base import ClassificationRequest, PredicateRequest
from cogworks.reasoning.context import edge_context, work_item_document
from cogworks.security.redaction import redact_structure
from cogworks.store.codec import encode_artifact
from cogworks.utils.clock import Clock, format_timestamp, utc_now
from cogworks.utils.concurrency import WorkerPool, run_with_timeout

if TYPE_CHECKING:
    from cogworks.control_plane.run_state import NodeState, RunState
    from cogworks.domain.models import WorkItem
    from cogworks.extension.client import ExtensionClient
    from cogworks.pipeline.definition import Node, PipelineCatalog, PipelineDefinition
    from cogworks.pipeline.graph import PendingPredicate
    from cogworks.reasoning.base import ReasoningClient
    from cogworks.store.base import ArtifactStore


@dataclass(frozen=True, slots=True)
class LabelPolicy:
    trigger: str = DEFAULT_TRIGGER_LABEL
    safety_critical: str = DEFAULT_SAFETY_LABEL
    approve_prefix: str = DEFAULT_APPROVE_PREFIX
    reject_prefix: str = DEFAULT_REJECT_PREFIX
    reclassify: str = DEFAULT_RECLASSIFY_LABEL
    pipeline_prefix: str = DEFAULT_PIPELINE_LABEL_PREFIX

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> LabelPolicy:
        section = config["labels"]
        return cls(
            trigger=section["trigger"],
            safety_critical=section["safety_critical"],
            approve_prefix=section["approve_prefix"],
            reject_prefix=section["reject_prefix"],
            reclassify=section["reclassify"],
            pipeline_prefix=section["pipeline_prefix"],
        )

    def approve(self, node_id: str) -> str:
        return f"{self.approve_prefix}{node_id}"

    def reject(self, node_id: str) -> str:
        return f"{self.reject_prefix}{node_id}"


@dataclass
class _Invocation:
    """What one invocation did; feeds the ``StepResult``."""

    ref: str
    token: str
    warnings: list[str] = field(default_factory=list)
    executed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    deferred: str | None = None
    failure_detail: str | None = None
    lock_lost: bool = False


@dataclass(frozen=True, slots=True)
class _Execution:
    outcome: NodeOutcome | None = None
    backoff: RateLimitBackoff | None = None


class Orchestrator:
    """Stateless step function over the external artifact store."""

    def __init__(
        self,
        store: ArtifactStore,
        catalog: PipelineCatalog,
        reasoning: ReasoningClient,
        *,
        extension: ExtensionClient | None = None,
        budgets: BudgetTracker | None = None,
        locks: LockManager | None = None,
        labels: LabelPolicy | None = None,
        max_waves: int = DEFAULT_MAX_WAVES_PER_INVOCATION,
        node_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS,
        clock: Clock = utc_now,
        run_id_factory: Callable[[], str] = generate_run_id,
        trace_id_factory: Callable[[], str] = generate_trace_id,
        logger: Any | None = None,
    ) -> None:
        if max_waves < 1:
            raise ValueError("max_waves must be >= 1")
        self._store = store
        self._catalog = catalog
        self._reasoning = reasoning
        self._extension = extension
        self._budgets = budgets if budgets is not None else BudgetTracker()
        self._locks = locks if locks is not None else LockManager(store, clock=clock)
        self._labels = labels if labels is not None else LabelPolicy()
        self._max_waves = max_waves
        self._node_timeout = node_timeout_seconds
        self._clock = clock
        self._run_ids = run_id_factory
        self._trace_ids = trace_id_factory
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        store: ArtifactStore,
        catalog: PipelineCatalog,
        reasoning: ReasoningClient,
        extension: ExtensionClient | None = None,
        clock: Clock = utc_now,
    ) -> Orchestrator:
        return cls(
            store,
            catalog,
            reasoning,
            extension=extension,
            budgets=BudgetTracker(BudgetLimits.from_config(config)),
            locks=LockManager(
                store,
                timeout=timedelta(minutes=config["lock"]["timeout_minutes"]),
                marker_name=config["lock"]["label"],
                clock=clock,
            ),
            labels=LabelPolicy.from_config(config),
            max_waves=config["engine"]["max_waves_per_invocation"],
            node_timeout_seconds=float(config["extension"]["operation_timeout_seconds"]),
            clock=clock,
        )

    @property
    def labels(self) -> LabelPolicy:
        return self._labels

    async def advance(self, ref: str) -> StepResult:
        ref = validate_work_item_ref(ref)
        with correlation_scope(work_item_ref=ref):
            state = self._load(ref)
            if state.terminal and not state.work_item.has_label(self._labels.reclassify):
                return self._terminal_result(state)

            unfinished = self._unfinished_dependencies(state.work_item)
            if unfinished:
                self._logger.info("advance_waiting_on_dependencies", work_item_ref=ref, depends_on=list(unfinished))
                return StepResult(
                    ref=ref,
                    status=StepStatus.WAITING,
                    run_id=state.run_id,
                    pipeline=state.pipeline,
                    waiting=unfinished,
                    detail="waiting on sibling sub-work-items: " + ", ".join(unfinished),
                )

            attempt = self._locks.try_acquire(ref)
            if not attempt.acquired or attempt.token is None:
                return StepResult(
                    ref=ref,
                    status=StepStatus.BUSY,
                    run_id=state.run_id,
                    pipeline=state.pipeline,
                    detail=f"processing lock held since {attempt.timestamp}",
                )
            invocation = _Invocation(ref=ref, token=attempt.token)
            if attempt.warning is not None:
                invocation.warnings.append(str(attempt.warning))
            try:
                return await self._advance_locked(invocation)
            finally:
                self._locks.release(ref, attempt.token)

    def advance_sync(self, ref: str) -> StepResult:
        """Run one invocation on a fresh event loop."""

        async def _once() -> StepResult:
            try:
                return await self.advance(ref)
            finally:
                if self._extension is not None:
                    await self._extension.aclose()

        return asyncio.run(_once())

    async def _advance_locked(self, invocation: _Invocation) -> StepResult:
        ref = invocation.ref
        if self._store.get_work_item(ref).has_label(self._labels.trigger):
            self._store.remove_label(ref, self._labels.trigger)

        state = self._load(ref)
        restart = state.work_item.has_label(self._labels.reclassify)
        if state.terminal and not restart:
            return self._terminal_result(state, warnings=invocation.warnings)

        if restart or not state.started:
            if not await self._start_run(invocation, state, reclassify=restart):
                return self._finish(invocation, self._load(ref))
            state = self._load(ref)

        definition = state.definition
        if definition is None:
            self._escalate(
                invocation,
                state,
                f"pinned pipeline is unusable: {state.definition_error}",
                category=StructuralConfigError.default_code,
            )
            return self._finish(invocation, self._load(ref))

        if self._extension is not None:
            self._extension.begin_run(state.run_id)
        with correlation_scope(run_id=state.run_id):
            await self._run_waves(invocation, definition)
        return self._finish(invocation, self._load(ref))

    async def _start_run(self, invocation: _Invocation, state: RunState, *, reclassify: bool) -> bool:
        item = state.work_item
        classification = state.classification
        intake_cost = 0.0
        if item.pinned_pipeline is None and (reclassify or state.classification_sequence is None):
            request = ClassificationRequest(
                context=(work_item_document(item),),
                classifications=self._catalog.classifications,
                work_item_ref=item.ref,
            )
            try:
                outcome = await self._reasoning.classify(request)
            except RateLimitBackoff as exc:
                invocation.deferred = exc.detail
                return False
            except ReasoningError as exc:
                self._logger.error("classification_failed", work_item_ref=item.ref, detail=exc.detail)
                reason = f"classification failed: {exc.detail}"
                invocation.failure_detail = reason
                self._abort_start(invocation, reason, category=exc.code)
                return False
            classification = outcome.classification
            intake_cost = outcome.usage.cost_usd
            self._write(
                item.ref,
                ArtifactKind.CLASSIFICATION,
                run_id="",
                payload={
                    "classification": classification,
                    "safety_critical": outcome.safety_critical,
                    "rationale": outcome.rationale,
                    "cost_usd": intake_cost,
                },
            )
        if reclassify:
            self._store.remove_label(item.ref, self._labels.reclassify)

        try:
            name = self._select_pipeline(item, classification)
        except StructuralConfigError as exc:
            self._logger.error("pipeline_selection_failed", work_item_ref=item.ref, detail=exc.detail)
            self._abort_start(
                invocation, exc.detail, category=exc.code, classification=classification, cost_usd=intake_cost
            )
            return False
        definition = self._catalog.get(name)
        run_id = self._run_ids()
        # The classification that picked this pipeline is charged to the run.
        self._write(
            item.ref,
            ArtifactKind.RUN_STARTED,
            run_id=run_id,
            payload={
                "pipeline": name,
                "definition": dict(definition.raw),
                "digest": definition.digest,
                "parallelism": definition.parallelism,
                "classification": classification,
                "cost_usd": intake_cost,
            },
        )
        self._logger.info(
            "run_started",
            work_item_ref=item.ref,
            run_id=run_id,
            pipeline=name,
            classification=classification,
            digest=definition.digest,
        )
        return True

    def _abort_start(
        self,
        invocation: _Invocation,
        reason: str,
        *,
        category: str,
        classification: str | None = None,
        cost_usd: float = 0.0,
    ) -> None:
        """Open a run with no pipeline and escalate it, so the item records why it stopped."""
        run_id = self._run_ids()
        self._write(
            invocation.ref,
            ArtifactKind.RUN_STARTED,
            run_id=run_id,
            payload={"pipeline": None, "classification": classification, "cost_usd": cost_usd},
        )
        self._write(
            invocation.ref,
            ArtifactKind.ESCALATION,
            run_id=run_id,
            payload={"reason": reason, "category": category},
        )
        self._logger.warning("run_escalated", run_id=run_id, reason=reason, category=category)

    def _select_pipeline(self, item: WorkItem, classification: str | None) -> str:
        forced = sorted(
            label[len(self._labels.pipeline_prefix) :]
            for label in item.labels
            if label.startswith(self._labels.pipeline_prefix)
        )
        if item.pinned_pipeline is not None:
            name, path = item.pinned_pipeline, "metadata.pipeline"
        elif forced:
            name, path = forced[0], "labels"
        else:
            name, path = self._catalog.select(classification), "selection"
        if name not in self._catalog.pipelines:
            raise StructuralConfigError([StructuralIssue(path, f"unknown pipeline {name!r} for {item.ref}")])
        return name

    async def _run_waves(self, invocation: _Invocation, definition: PipelineDefinition) -> None:
        graph = GraphModel(definition)
        order = {node_id: index for index, node_id in enumerate(definition.topological_order)}
        for wave in range(self._max_waves):
            if wave and not self._locks.refresh(invocation.ref, invocation.token):
                invocation.lock_lost = True
                invocation.warnings.append("processing lock lost between waves")
                return

            state = self._load(invocation.ref)
            self._budgets.observe(state)
            if state.terminal:
                return
            if self._consume_signals(state):
                state = self._load(invocation.ref)

            frontier = graph.plan(state)
            self._logger.debug("wave_planned", wave=wave, frontier=frontier.to_dict())
            if frontier.complete:
                self._complete(state)
                return

            halt = self._budgets.exhausted(state)
            if halt is not None:
                self._escalate_error(invocation, state, halt.to_error())
                return

            if frontier.stalled:
                blocked = ", ".join(frontier.blocked) or "none"
                self._escalate(invocation, state, f"pipeline stalled; blocked nodes: {blocked}", category="stalled")
                return

            if frontier.pending_predicates:
                if not await self._resolve_predicates(invocation, state, frontier.pending_predicates):
                    return
                continue

            if frontier.exhausted_rework:
                edge = frontier.exhausted_rework[0]
                self._escalate_error(
                    invocation,
                    state,
                    RetryLimitExceeded(
                        f"rework edge {edge.id} reached max_traversals={edge.max_traversals}",
                        node_id=edge.target,
                    ),
                )
                return

            if frontier.rework_firings:
                firing = frontier.rework_firings[0]
                decision = self._budgets.check_retry(state, None)
                if not decision.allowed:
                    self._escalate_error(invocation, state, decision.to_error())
                    return
                self._write(
                    invocation.ref,
                    ArtifactKind.EDGE_TRAVERSAL,
                    run_id=state.run_id,
                    node_id=firing.edge.target,
                    payload={
                        "edge": firing.edge.id,
                        "source_epoch": firing.source_epoch,
                        "source_execution": firing.source_execution,
                        "traversal": firing.traversal,
                    },
                )
                continue

            progressed = False
            for node_id in frontier.gate_requests:
                self._request_approval(state, definition.node(node_id))
                progressed = True

            for node_id in frontier.waiting:
                node = definition.node(node_id)
                outcome = check_children(self._context(state, node, {}, self._trace_ids()))
                if outcome.kind is not OutcomeKind.WAITING:
                    self._record(invocation, state, node, outcome)
                    progressed = True

            runnable = list(frontier.ready)
            for node_id in frontier.retry_candidates:
                if node_id in invocation.failed:
                    continue
                if state.node(node_id).rejected:
                    self._escalate(
                        invocation,
                        state,
                        f"node {node_id} was rejected and has no failure route",
                        category="rejected",
                    )
                    return
                decision = self._budgets.check_retry(
                    state, node_id, max_node_retries=definition.node(node_id).max_retries
                )
                if not decision.allowed:
                    self._escalate_error(invocation, state, decision.to_error())
                    return
                runnable.append(node_id)
            runnable.sort(key=order.__getitem__)

            if runnable:
                if not await self._execute_wave(invocation, state, definition, runnable):
                    return
                progressed = True
            if not progressed:
                return

    async def _execute_wave(
        self,
        invocation: _Invocation,
        state: RunState,
        definition: PipelineDefinition,
        runnable: list[str],
    ) -> bool:
        reserved: list[tuple[Node, str]] = []
        for node_id in runnable:
            node = definition.node(node_id)
            decision = self._budgets.check_and_reserve(state, node.estimated_cost_usd, node_id=node_id)
            if not decision.allowed or decision.reservation_id is None:
                for _, reservation_id in reserved:
                    self._budgets.release(state, reservation_id)
                self._escalate_error(invocation, state, decision.to_error())
                return False
            reserved.append((node, decision.reservation_id))

        self._logger.info("wave_started", nodes=[node.id for node, _ in reserved], parallelism=definition.parallelism)
        pool: WorkerPool[_Execution] = WorkerPool(max_concurrency=definition.parallelism)
        results = await pool.run([self._execute(state, node) for node, _ in reserved])

        backoff: RateLimitBackoff | None = None
        for (node, reservation_id), execution in zip(reserved, results, strict=True):
            if execution.outcome is None:
                self._budgets.release(state, reservation_id)
                backoff = backoff or execution.backoff
                continue
            self._budgets.record_actual(state, execution.outcome.cost_usd, reservation_id=reservation_id)
            self._record(invocation, state, node, execution.outcome)
        if backoff is not None:
            after = backoff.retry_after_seconds
            invocation.deferred = backoff.detail if after is None else f"{backoff.detail} (retry after {after:g}s)"
            return False
        return True

    async def _execute(self, state: RunState, node: Node) -> _Execution:
        trace_id = self._trace_ids()
        inputs = {artifact_type: state.artifact_content(artifact_type) for artifact_type in node.inputs}
        context = self._context(state, node, inputs, trace_id)
        timeout = node.timeout_seconds or self._node_timeout
        with correlation_scope(node_id=node.id, trace_id=trace_id):
            self._logger.info("node_started", kind=node.kind.value, epoch=state.node(node.id).epoch)
            try:
                outcome = await run_with_timeout(execute_node(context), timeout)
            except RateLimitBackoff as exc:
                self._logger.warning("node_deferred", detail=exc.detail, retry_after=exc.retry_after_seconds)
                return _Execution(backoff=exc)
            except TimeoutError:
                outcome = NodeOutcome.failed("timeout", f"node {node.id} exceeded {timeout:g}s")
            except CogWorksError as exc:
                outcome = NodeOutcome.failed(exc.code, exc.detail)
            self._logger.info("node_finished", outcome=outcome.kind.value, cost_usd=outcome.cost_usd)
        return _Execution(outcome=outcome)

    def _record(self, invocation: _Invocation, state: RunState, node: Node, outcome: NodeOutcome) -> None:
        node_state = state.node(node.id)
        execution = node_state.executions + 1
        diagnostics: list[JSONValue] = [dict(item) for item in outcome.diagnostics]
        if outcome.kind is OutcomeKind.SUCCEEDED:
            self._write(
                invocation.ref,
                ArtifactKind.NODE_OUTPUT,
                run_id=state.run_id,
                node_id=node.id,
                payload={
                    "epoch": node_state.epoch,
                    "execution": execution,
                    "outputs": dict(outcome.outputs),
                    "cost_usd": outcome.cost_usd,
                    "diagnostics": diagnostics,
                },
            )
            invocation.executed.append(node.id)
        elif outcome.kind is OutcomeKind.FAILED:
            self._write(
                invocation.ref,
                ArtifactKind.NODE_FAILURE,
                run_id=state.run_id,
                node_id=node.id,
                payload={
                    "epoch": node_state.epoch,
                    "execution": execution,
                    "error": dict(outcome.error or {}),
                    "diagnostics": diagnostics,
                    "cost_usd": outcome.cost_usd,
                },
            )
            invocation.failed.append(node.id)
        elif outcome.kind is OutcomeKind.SPAWNED:
            self._write(
                invocation.ref,
                ArtifactKind.SPAWNED,
                run_id=state.run_id,
                node_id=node.id,
                payload={
                    "epoch": node_state.epoch,
                    "children": [{"key": key, "ref": ref} for key, ref in outcome.children],
                },
            )
            invocation.executed.append(node.id)

    def _request_approval(self, state: RunState, node: Node) -> None:
        item = state.work_item
        review_ref: str | None = None
        if node.review_request:
            review_ref = self._store.open_review_request(
                item.ref,
                title=f"Approve {node.id}: {item.title}",
                body=f"Pipeline {state.pipeline} (run {state.run_id}) is waiting for approval of node {node.id}.",
            )
        self._write(
            item.ref,
            ArtifactKind.PENDING_APPROVAL,
            run_id=state.run_id,
            node_id=node.id,
            payload={"epoch": state.node(node.id).epoch, "review_ref": review_ref},
        )
        self._logger.info("approval_requested", node_id=node.id, review_ref=review_ref)

    def _consume_signals(self, state: RunState) -> bool:
        """Turn approve/reject labels and review states into durable artifacts."""
        consumed = False
        for node_id in sorted(state.nodes):
            node_state = state.nodes[node_id]
            if node_state.status is not NodeStatus.AWAITING_APPROVAL:
                continue
            signal = self._approval_signal(state.work_item, node_state)
            if signal is None:
                continue
            approved, source, label = signal
            self._write(
                state.work_item.ref,
                ArtifactKind.APPROVAL if approved else ArtifactKind.REJECTION,
                run_id=state.run_id,
                node_id=node_id,
                payload={"epoch": node_state.epoch, "signal": source},
            )
            if label is not None:
                self._store.remove_label(state.work_item.ref, label)
            self._logger.info("approval_signal", node_id=node_id, approved=approved, signal=source)
            consumed = True
        return consumed

    def _approval_signal(self, item: WorkItem, node_state: NodeState) -> tuple[bool, str, str | None] | None:
        reject_label = self._labels.reject(node_state.node_id)
        if item.has_label(reject_label):
            return False, "label", reject_label
        approve_label = self._labels.approve(node_state.node_id)
        if item.has_label(approve_label):
            return True, "label", approve_label
        if node_state.review_ref is not None:
            review = self._store.review_request_state(item.ref, node_state.review_ref)
            if review in (ReviewState.APPROVED, ReviewState.MERGED):
                return True, "review", None
            if review is ReviewState.CLOSED:
                return False, "review", None
        return None

    async def _resolve_predicates(
        self,
        invocation: _Invocation,
        state: RunState,
        pending: tuple[PendingPredicate, ...],
    ) -> bool:
        for predicate in pending:
            request = PredicateRequest(
                prompt=predicate.prompt,
                context=edge_context(state, predicate.source),
                work_item_ref=invocation.ref,
                run_id=state.run_id or "",
                edge_id=predicate.edge_id,
            )
            try:
                result = await self._reasoning.evaluate_predicate(request)
            except RateLimitBackoff as exc:
                invocation.deferred = exc.detail
                return False
            except ReasoningError as exc:
                self._escalate(
                    invocation,
                    state,
                    f"predicate {predicate.index} on {predicate.edge_id} failed: {exc.detail}",
                    category=exc.code,
                )
                return False
            self._write(
                invocation.ref,
                ArtifactKind.CONDITION_RESULT,
                run_id=state.run_id,
                node_id=predicate.source,
                payload={
                    "edge": predicate.edge_id,
                    "index": predicate.index,
                    "epoch": predicate.source_epoch,
                    "execution": predicate.source_execution,
                    "value": result.value,
                    "cost_usd": result.usage.cost_usd,
                },
            )
        return True

    def _complete(self, state: RunState) -> None:
        item = state.work_item
        self._write(
            item.ref,
            ArtifactKind.RUN_COMPLETED,
            run_id=state.run_id,
            payload={"cost_total_usd": state.cost_total_usd, "retries_total": state.retries_total},
        )
        self._logger.info("run_completed", cost_total_usd=state.cost_total_usd, retries_total=state.retries_total)
        if item.parent_ref is None:
            return
        self._store.add_label(item.parent_ref, self._labels.trigger)
        for sibling in self._store.list_children(item.parent_ref):
            if item.ref in sibling.depends_on:
                self._store.add_label(sibling.ref, self._labels.trigger)

    def _escalate(self, invocation: _Invocation, state: RunState, reason: str, *, category: str) -> None:
        self._write(
            invocation.ref,
            ArtifactKind.ESCALATION,
            run_id=state.run_id,
            payload={"reason": reason, "category": category},
        )
        self._logger.warning("run_escalated", reason=reason, category=category)

    def _escalate_error(self, invocation: _Invocation, state: RunState, error: CogWorksError | None) -> None:
        if error is None:
            raise RuntimeError("escalation requested without an error")
        self._escalate(invocation, state, error.detail, category=error.code)

    def _write(
        self,
        ref: str,
        kind: ArtifactKind,
        *,
        run_id: str | None,
        payload: Mapping[str, object],
        node_id: str | None = None,
    ) -> Artifact:
        redacted = redact_structure(dict(payload))
        assert isinstance(redacted, dict)
        artifact = Artifact(
            kind=kind,
            run_id=run_id or "",
            payload=redacted,
            node_id=node_id,
            created_at=format_timestamp(self._clock()),
        )
        self._store.add_comment(ref, encode_artifact(artifact))
        self._logger.info("artifact_written", kind=kind.value, artifact_node=node_id, digest=artifact.digest)
        return artifact

    def _context(self, state: RunState, node: Node, inputs: Mapping[str, JSONValue], trace_id: str) -> ExecutionContext:
        return ExecutionContext(
            node=node,
            state=state,
            inputs=inputs,
            trace_id=trace_id,
            reasoning=self._reasoning,
            store=self._store,
            extension=self._extension,
            trigger_label=self._labels.trigger,
            safety_label=self._labels.safety_critical,
        )

    def _load(self, ref: str) -> RunState:
        return load_run_state(self._store, ref, safety_label=self._labels.safety_critical)

    def _unfinished_dependencies(self, item: WorkItem) -> tuple[str, ...]:
        return tuple(ref for ref in item.depends_on if not self._load(ref).completed)

    def _finish(self, invocation: _Invocation, state: RunState) -> StepResult:
        definition = state.definition
        frontier: Frontier | None = None
        if definition is not None and not state.terminal:
            frontier = GraphModel(definition).plan(state)

        gated: tuple[str, ...] = ()
        waiting: tuple[str, ...] = ()
        awaiting_retry: tuple[str, ...] = ()
        if definition is not None and frontier is not None:
            gated = tuple(
                node_id
                for node_id in definition.topological_order
                if node_id in frontier.gated or node_id in frontier.gate_requests
            )
            waiting = frontier.waiting
            awaiting_retry = tuple(node_id for node_id in frontier.retry_candidates if node_id in invocation.failed)

        if state.escalated:
            status = StepStatus.ESCALATED
        elif invocation.failure_detail is not None or awaiting_retry:
            status = StepStatus.FAILED
        elif invocation.deferred is not None:
            status = StepStatus.DEFERRED
        elif gated:
            status = StepStatus.GATED
        elif waiting:
            status = StepStatus.WAITING
        else:
            status = StepStatus.ADVANCED

        more_work = status is StepStatus.ADVANCED and frontier is not None and frontier.actionable
        if not invocation.lock_lost and (status is StepStatus.DEFERRED or more_work):
            self._store.add_label(invocation.ref, self._labels.trigger)

        result = StepResult(
            ref=invocation.ref,
            status=status,
            run_id=state.run_id,
            pipeline=state.pipeline,
            executed=tuple(invocation.executed),
            failed=tuple(invocation.failed),
            gated=gated,
            waiting=waiting,
            escalation_reason=state.escalation_reason,
            cost_total_usd=state.cost_total_usd,
            retries_total=state.retries_total,
            run_completed=state.completed,
            warnings=tuple(invocation.warnings),
            detail=invocation.failure_detail or invocation.deferred,
        )
        self._logger.info("advance_finished", status=status.value, executed=list(result.executed))
        return result

    def _terminal_result(self, state: RunState, *, warnings: list[str] | None = None) -> StepResult:
        return StepResult(
            ref=state.work_item.ref,
            status=StepStatus.ESCALATED if state.escalated else StepStatus.COMPLETED,
            run_id=state.run_id,
            pipeline=state.pipeline,
            escalation_reason=state.escalation_reason,
            cost_total_usd=state.cost_total_usd,
            retries_total=state.retries_total,
            run_completed=state.completed,
            warnings=tuple(warnings or ()),
        )


__all__ = ["LabelPolicy", "Orchestrator"]
