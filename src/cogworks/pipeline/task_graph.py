"""Deterministic adjacency-list graph over node IDs (forward edges only)."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from heapq import heapify, heappop, heappush


class CycleError(ValueError):
    """Raised when the forward-edge graph contains a cycle."""

    cycles: tuple[tuple[str, ...], ...]

    def __init__(self, cycles: Iterable[Sequence[str]]) -> None:
        self.cycles = tuple(tuple(path) for path in cycles)
        if not self.cycles:
            message = "graph contains at least one cycle"
        else:
            preview = ", ".join(" -> ".join(path) for path in self.cycles[:3])
            suffix = "..." if len(self.cycles) > 3 else ""
            message = f"graph contains cycle(s): {preview}{suffix}"
        super().__init__(message)


class TaskGraph:
    """Directed graph with deterministic traversal order.

    Ties are always broken lexicographically by node ID so two evaluations of the
    same definition produce identical orderings.
    """

    __slots__ = ("_children", "_parents")

    def __init__(
        self,
        nodes: Iterable[str] | None = None,
        edges: Iterable[tuple[str, str]] | None = None,
    ) -> None:
        self._children: dict[str, set[str]] = {}
        self._parents: dict[str, set[str]] = {}
        for node_id in nodes or ():
            self.add_node(node_id)
        for parent, child in edges or ():
            self.add_edge(parent, child)

    @property
    def nodes(self) -> tuple[str, ...]:
        return tuple(sorted(self._children))

    def add_node(self, node_id: str) -> None:
        if not node_id:
            raise ValueError("Node ID must be non-empty.")
        self._children.setdefault(node_id, set())
        self._parents.setdefault(node_id, set())

    def add_edge(self, parent: str, child: str) -> None:
        self.add_node(parent)
        self.add_node(child)
        self._children[parent].add(child)
        self._parents[child].add(parent)

    def parents(self, node_id: str) -> tuple[str, ...]:
        return tuple(sorted(self._require(node_id, self._parents)))

    def children(self, node_id: str) -> tuple[str, ...]:
        return tuple(sorted(self._require(node_id, self._children)))

    def descendants(self, node_id: str) -> tuple[str, ...]:
        """All nodes reachable from ``node_id`` (excluding itself unless on a cycle)."""
        return self._closure(node_id, self._children)

    def ancestors(self, node_id: str) -> tuple[str, ...]:
        return self._closure(node_id, self._parents)

    def topological_sort(self) -> tuple[str, ...]:
        """Return a deterministic topological ordering or raise ``CycleError``."""
        indegree = {node: len(parents) for node, parents in self._parents.items()}
        ready = [node for node, degree in indegree.items() if degree == 0]
        heapify(ready)

        order: list[str] = []
        while ready:
            node = heappop(ready)
            order.append(node)
            for child in self._children[node]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    heappush(ready, child)

        if len(order) != len(self._children):
            raise CycleError(self.detect_cycles())
        return tuple(order)

    def detect_cycles(self) -> tuple[tuple[str, ...], ...]:
        """Return canonical closed cycle paths, e.g. ``("a", "b", "a")``."""
        visiting: set[str] = set()
        done: set[str] = set()
        stack: list[str] = []
        cycles: dict[tuple[str, ...], None] = {}

        for start in sorted(self._children):
            if start in done:
                continue
            frames: list[tuple[str, Iterator[str]]] = [(start, iter(sorted(self._children[start])))]
            visiting.add(start)
            stack.append(start)
            while frames:
                node, pending_children = frames[-1]
                child = next(pending_children, None)
                if child is None:
                    frames.pop()
                    visiting.discard(node)
                    done.add(node)
                    stack.pop()
                    continue
                if child in visiting:
                    cycle = (*stack[stack.index(child) :], child)
                    cycles[_canonicalize_cycle(cycle)] = None
                elif child not in done:
                    visiting.add(child)
                    stack.append(child)
                    frames.append((child, iter(sorted(self._children[child]))))
        return tuple(sorted(cycles))

    def _closure(self, node_id: str, adjacency: dict[str, set[str]]) -> tuple[str, ...]:
        seen: set[str] = set()
        pending = list(self._require(node_id, adjacency))
        while pending:
            node = pending.pop()
            if node not in seen:
                seen.add(node)
                pending.extend(adjacency[node] - seen)
        return tuple(sorted(seen))

    @staticmethod
    def _require(node_id: str, adjacency: dict[str, set[str]]) -> set[str]:
        try:
            return adjacency[node_id]
        except KeyError:
            raise KeyError(f"Unknown node: {node_id}") from None


def _canonicalize_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
    core = tuple(cycle[:-1])
    best = min(core[offset:] + core[:offset] for offset in range(len(core)))
    return (*best, best[0])


__all__ = ["CycleError", "TaskGraph"]
