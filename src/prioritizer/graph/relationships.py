"""Relationship graph snapshots over tasks and typed edges."""

from __future__ import annotations

import heapq
import logging
from collections import deque
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from ..errors import CycleError, StructuralError
from ..memory.schema import RelationshipEdge, Task

LOGGER = logging.getLogger(__name__)

EdgePair = Tuple[str, str]


class RelationshipGraph:
    """Immutable snapshot of tasks and their relationships.

    Every mutating helper returns a new snapshot with an incremented version so
    concurrent callers never share a mutable instance.
    """

    def __init__(
        self,
        tasks: Iterable[Task] = (),
        edges: Iterable[RelationshipEdge] = (),
        *,
        version: int = 0,
    ) -> None:
        self._tasks: Dict[str, Task] = {}
        for task in tasks:
            if task.id in self._tasks:
                raise StructuralError(
                    f"Duplicate task id: {task.id}",
                    context={"task_id": task.id, "invariant": "unique task ids"},
                )
            self._tasks[task.id] = task

        self._edges: Dict[EdgePair, RelationshipEdge] = {}
        for edge in edges:
            self._check_edge(edge)
            existing = self._edges.get(edge.pair)
            if existing is not None:
                raise StructuralError(
                    f"Edge {edge.describe()} conflicts with {existing.describe()}",
                    context={
                        "source_id": edge.source_id,
                        "target_id": edge.target_id,
                        "invariant": "one edge per (source, target)",
                    },
                )
            self._edges[edge.pair] = edge
        self._version = version

    # Accessors -----------------------------------------------------------------------
    @property
    def version(self) -> int:
        return self._version

    @property
    def tasks(self) -> Mapping[str, Task]:
        return dict(self._tasks)

    @property
    def edges(self) -> Tuple[RelationshipEdge, ...]:
        return tuple(self._edges.values())

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def get_edge(self, source_id: str, target_id: str) -> Optional[RelationshipEdge]:
        return self._edges.get((source_id, target_id))

    def directional_edges(self) -> Iterator[RelationshipEdge]:
        for edge in self._edges.values():
            if edge.type.is_directional:
                yield edge

    def successors(self, task_id: str) -> List[str]:
        return [edge.target_id for edge in self.directional_edges() if edge.source_id == task_id]

    def predecessors(self, task_id: str) -> List[str]:
        return [edge.source_id for edge in self.directional_edges() if edge.target_id == task_id]

    def in_degree(self, task_id: str) -> int:
        return sum(1 for edge in self.directional_edges() if edge.target_id == task_id)

    # Traversal -----------------------------------------------------------------------
    def _adjacency(self, *, include_related: bool) -> Dict[str, List[str]]:
        adjacency: Dict[str, List[str]] = {}
        for edge in self._edges.values():
            if edge.type.is_directional:
                adjacency.setdefault(edge.source_id, []).append(edge.target_id)
            elif include_related:
                adjacency.setdefault(edge.source_id, []).append(edge.target_id)
                adjacency.setdefault(edge.target_id, []).append(edge.source_id)
        return adjacency

    def has_path(
        self,
        source_id: str,
        target_id: str,
        *,
        max_hops: Optional[int] = None,
        include_related: bool = False,
    ) -> bool:
        """Breadth-first search from ``source_id`` to ``target_id``."""
        if source_id == target_id:
            return True
        adjacency = self._adjacency(include_related=include_related)
        visited = {source_id}
        queue: deque[tuple[str, int]] = deque([(source_id, 0)])
        while queue:
            current, depth = queue.popleft()
            if max_hops is not None and depth >= max_hops:
                continue
            for neighbour in adjacency.get(current, ()):
                if neighbour == target_id:
                    return True
                if neighbour not in visited:
                    visited.add(neighbour)
                    queue.append((neighbour, depth + 1))
        return False

    def connected_within(self, first_id: str, second_id: str, max_hops: int) -> bool:
        """Return True when either task reaches the other within ``max_hops`` edges."""
        return self.has_path(first_id, second_id, max_hops=max_hops, include_related=True) or self.has_path(
            second_id, first_id, max_hops=max_hops, include_related=True
        )

    def find_cycle(self) -> List[str]:
        """Return one prerequisite/blocks cycle as a closed node path, or ``[]``."""
        return find_cycle(self._tasks.keys(), list(self.directional_edges()))

    def is_acyclic(self) -> bool:
        return not self.find_cycle()

    def linearize(self, task_ids: Sequence[str]) -> List[str]:
        """Stable topological order of ``task_ids`` under the directional edges among them.

        Ties resolve to the incoming order, so an already consistent sequence is
        returned unchanged.
        """
        rank = {task_id: index for index, task_id in enumerate(task_ids)}
        members = set(rank)
        indegree = {task_id: 0 for task_id in task_ids}
        adjacency: Dict[str, List[str]] = {task_id: [] for task_id in task_ids}
        for edge in self.directional_edges():
            if edge.source_id in members and edge.target_id in members:
                adjacency[edge.source_id].append(edge.target_id)
                indegree[edge.target_id] += 1

        heap = [(rank[task_id], task_id) for task_id in task_ids if indegree[task_id] == 0]
        heapq.heapify(heap)
        ordered: List[str] = []
        while heap:
            _, current = heapq.heappop(heap)
            ordered.append(current)
            for child in adjacency[current]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    heapq.heappush(heap, (rank[child], child))

        if len(ordered) != len(task_ids):
            placed = set(ordered)
            remaining = [task_id for task_id in task_ids if task_id not in placed]
            dump = [edge.describe() for edge in self.directional_edges()]
            LOGGER.error("Cycle survived resolution among %s; edges: %s", remaining, dump)
            raise CycleError(
                "Directional cycle detected while linearizing tasks",
                context={"remaining": remaining, "edges": dump, "graph_version": self._version},
            )
        return ordered

    # Derivation ----------------------------------------------------------------------
    def with_tasks(self, tasks: Iterable[Task]) -> "RelationshipGraph":
        """Return a snapshot with ``tasks`` added or replaced."""
        merged = dict(self._tasks)
        for task in tasks:
            merged[task.id] = task
        return RelationshipGraph(merged.values(), self._edges.values(), version=self._version + 1)

    def with_edges(self, edges: Iterable[RelationshipEdge]) -> "RelationshipGraph":
        """Return a snapshot with ``edges`` added; an edge on an existing pair replaces it."""
        merged = dict(self._edges)
        for edge in edges:
            merged[edge.pair] = edge
        return RelationshipGraph(self._tasks.values(), merged.values(), version=self._version + 1)

    def without_edges(self, edges: Iterable[RelationshipEdge]) -> "RelationshipGraph":
        removed = {edge.pair for edge in edges}
        kept = [edge for pair, edge in self._edges.items() if pair not in removed]
        return RelationshipGraph(self._tasks.values(), kept, version=self._version + 1)

    def _check_edge(self, edge: RelationshipEdge) -> None:
        missing = [task_id for task_id in edge.pair if task_id not in self._tasks]
        if missing:
            raise StructuralError(
                f"Edge {edge.describe()} references unknown task(s): {', '.join(missing)}",
                context={"edge": edge.model_dump(mode="json"), "missing": missing},
            )

    # Serialisation -------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self._version,
            "tasks": [task.model_dump(mode="json") for task in self._tasks.values()],
            "edges": [edge.model_dump(mode="json") for edge in self._edges.values()],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RelationshipGraph":
        tasks = [Task.model_validate(item) for item in payload.get("tasks") or []]
        edges = [RelationshipEdge.model_validate(item) for item in payload.get("edges") or []]
        version = payload.get("version") or 0
        return cls(tasks, edges, version=int(version))


def find_cycle(nodes: Iterable[str], edges: Sequence[RelationshipEdge]) -> List[str]:
    """Depth-first search for a directed cycle; returns ``[n0, ..., n0]`` or ``[]``."""
    adjacency: Dict[str, List[str]] = {}
    for edge in edges:
        adjacency.setdefault(edge.source_id, []).append(edge.target_id)
    for targets in adjacency.values():
        targets.sort()

    visited: set[str] = set()
    on_stack: set[str] = set()

    for root in sorted(set(nodes) | set(adjacency)):
        if root in visited:
            continue
        path: List[str] = [root]
        iterators = [iter(adjacency.get(root, ()))]
        visited.add(root)
        on_stack.add(root)
        while iterators:
            advanced = False
            for neighbour in iterators[-1]:
                if neighbour in on_stack:
                    start = path.index(neighbour)
                    return path[start:] + [neighbour]
                if neighbour not in visited:
                    visited.add(neighbour)
                    on_stack.add(neighbour)
                    path.append(neighbour)
                    iterators.append(iter(adjacency.get(neighbour, ())))
                    advanced = True
                    break
            if not advanced:
                iterators.pop()
                on_stack.discard(path.pop())
    return []
