"""Unit tests for the deterministic forward-edge graph."""

from __future__ import annotations

import pytest

from cogworks.pipeline.task_graph import CycleError, TaskGraph


def test_topological_sort_breaks_ties_lexicographically() -> None:
    graph = TaskGraph(nodes=["c", "b", "a"], edges=[("a", "d"), ("b", "d"), ("c", "d")])

    assert graph.topological_sort() == ("a", "b", "c", "d")
    assert graph.parents("d") == ("a", "b", "c")
    assert graph.children("a") == ("d",)


def test_closures() -> None:
    graph = TaskGraph(edges=[("design", "review"), ("review", "build"), ("design", "docs")])

    assert graph.descendants("design") == ("build", "docs", "review")
    assert graph.ancestors("build") == ("design", "review")
    assert graph.descendants("build") == ()


def test_cycles_are_reported_canonically() -> None:
    graph = TaskGraph(edges=[("b", "c"), ("c", "a"), ("a", "b"), ("x", "x")])

    assert graph.detect_cycles() == (("a", "b", "c", "a"), ("x", "x"))
    with pytest.raises(CycleError) as excinfo:
        graph.topological_sort()
    assert excinfo.value.cycles == (("a", "b", "c", "a"), ("x", "x"))
    assert "a -> b -> c -> a" in str(excinfo.value)


def test_unknown_and_empty_nodes() -> None:
    graph = TaskGraph(nodes=["a"])

    with pytest.raises(KeyError, match="Unknown node: z"):
        graph.children("z")
    with pytest.raises(ValueError):
        graph.add_node("")
