"""Shared fixtures: a controllable clock, an in-memory store and engine builders."""

from __future__ import annotations

import itertools
import textwrap
from collections.abc import Callable, Iterator, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from cogworks.control_plane import BudgetLimits, BudgetTracker, LabelPolicy, LockManager, Orchestrator
from cogworks.domain.models import WorkItem
from cogworks.pipeline import PipelineCatalog, load_pipeline_yaml, parse_pipeline_document
from cogworks.reasoning import OfflineReasoningClient
from cogworks.security.redaction import clear_registered_secrets
from cogworks.store import MemoryArtifactStore

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@pytest.fixture(autouse=True)
def _clear_secrets() -> Iterator[None]:
    yield
    clear_registered_secrets()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> MemoryArtifactStore:
    return MemoryArtifactStore(clock=clock)


@pytest.fixture
def make_catalog() -> Callable[[str], PipelineCatalog]:
    def _make(text: str) -> PipelineCatalog:
        return parse_pipeline_document(load_pipeline_yaml(textwrap.dedent(text)))

    return _make


@pytest.fixture
def add_item(store: MemoryArtifactStore) -> Callable[..., WorkItem]:
    def _add(
        ref: str = "item-1",
        *,
        title: str = "Add export button",
        body: str = "Users want to export reports.",
        labels: tuple[str, ...] = ("cogworks:run",),
        parent_ref: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> WorkItem:
        return store.add_work_item(
            WorkItem(
                ref=ref,
                title=title,
                body=body,
                labels=labels,
                parent_ref=parent_ref,
                metadata=dict(metadata or {}),
            )
        )

    return _add


@pytest.fixture
def make_orchestrator(store: MemoryArtifactStore, clock: FakeClock) -> Callable[..., Orchestrator]:
    def _make(
        catalog: PipelineCatalog,
        *,
        reasoning: OfflineReasoningClient | None = None,
        extension: Any | None = None,
        limits: BudgetLimits | None = None,
        max_waves: int = 16,
        labels: LabelPolicy | None = None,
    ) -> Orchestrator:
        run_ids = itertools.count(1)
        trace_ids = itertools.count(1)
        return Orchestrator(
            store,
            catalog,
            reasoning if reasoning is not None else OfflineReasoningClient(),
            extension=extension,
            budgets=BudgetTracker(limits),
            locks=LockManager(store, clock=clock),
            labels=labels,
            max_waves=max_waves,
            clock=clock,
            run_id_factory=lambda: f"run-{next(run_ids):04d}",
            trace_id_factory=lambda: f"trace-{next(trace_ids):04d}",
        )

    return _make
