"""Cycle-safe edge insertion for the relationship graph."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Sequence, Set, Tuple

from ..errors import CycleError, StructuralError
from ..memory.schema import RelationshipEdge
from .relationships import EdgePair, RelationshipGraph, find_cycle

LOGGER = logging.getLogger(__name__)

__all__ = [
    "EdgeProposalResult",
    "MergedEdge",
    "ResolvedConflict",
    "kahn_remaining",
    "propose_edges",
]


@dataclass(slots=True)
class ResolvedConflict:
    """Edge removed to break a cycle, with the cycle it broke."""

    edge: RelationshipEdge
    cycle: List[str]
    round: int
    was_candidate: bool

    @property
    def confidence(self) -> float:
        return self.edge.confidence

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.edge.source_id,
            "target": self.edge.target_id,
            "type": self.edge.type.value,
            "confidence": self.edge.confidence,
            "cycle": list(self.cycle),
            "round": self.round,
            "was_candidate": self.was_candidate,
            "reason": f"Lowest-confidence edge in cycle {' -> '.join(self.cycle)}",
        }


@dataclass(slots=True)
class MergedEdge:
    """Two edges on the same (source, target) pair collapsed into one."""

    kept: RelationshipEdge
    discarded: RelationshipEdge

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kept": self.kept.model_dump(mode="json"),
            "discarded": self.discarded.model_dump(mode="json"),
        }


@dataclass(slots=True)
class EdgeProposalResult:
    """Outcome of ``propose_edges``."""

    accepted: List[RelationshipEdge]
    conflicts: List[ResolvedConflict]
    graph: RelationshipGraph
    merged: List[MergedEdge] = field(default_factory=list)

    @property
    def cycles_resolved(self) -> int:
        return len(self.conflicts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": [edge.model_dump(mode="json") for edge in self.accepted],
            "resolved_conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "merged": [entry.to_dict() for entry in self.merged],
            "graph_version": self.graph.version,
        }


def kahn_remaining(nodes: Iterable[str], edges: Sequence[RelationshipEdge]) -> Set[str]:
    """Run Kahn's algorithm and return the nodes it could not remove."""
    indegree: Dict[str, int] = {node: 0 for node in nodes}
    adjacency: Dict[str, List[str]] = {}
    for edge in edges:
        indegree.setdefault(edge.source_id, 0)
        indegree[edge.target_id] = indegree.get(edge.target_id, 0) + 1
        adjacency.setdefault(edge.source_id, []).append(edge.target_id)

    queue = deque(node for node, degree in indegree.items() if degree == 0)
    removed: Set[str] = set()
    while queue:
        node = queue.popleft()
        removed.add(node)
        for child in adjacency.get(node, ()):
            indegree[child] -= 1
            if indegree[child] == 0:
                queue.append(child)
    return set(indegree) - removed


def _merge(
    working: Dict[EdgePair, RelationshipEdge],
    candidate: RelationshipEdge,
    merged: List[MergedEdge],
) -> None:
    existing = working.get(candidate.pair)
    if existing is None:
        working[candidate.pair] = candidate
        return
    if existing == candidate:
        return
    if candidate.confidence > existing.confidence:
        working[candidate.pair] = candidate
        merged.append(MergedEdge(kept=candidate, discarded=existing))
    else:
        merged.append(MergedEdge(kept=existing, discarded=candidate))


def propose_edges(
    graph: RelationshipGraph,
    candidates: Iterable[RelationshipEdge],
) -> EdgeProposalResult:
    """Insert ``candidates`` into ``graph`` and break any cycle they introduce.

    While Kahn's algorithm leaves nodes behind, one cycle among them is located
    and its lowest-confidence edge removed (ties: target with the larger
    in-degree, then ``(source, target)``). The input graph is left untouched.
    """
    batch = list(candidates)
    missing: List[Tuple[str, str]] = [
        edge.pair for edge in batch if edge.source_id not in graph or edge.target_id not in graph
    ]
    if missing:
        raise StructuralError(
            "Candidate edges reference unknown tasks",
            context={"edges": [f"{source}->{target}" for source, target in missing]},
        )

    working: Dict[EdgePair, RelationshipEdge] = {edge.pair: edge for edge in graph.edges}
    merged: List[MergedEdge] = []
    for candidate in batch:
        _merge(working, candidate, merged)

    candidate_pairs = {edge.pair for edge in batch}
    nodes = list(graph.tasks)
    conflicts: List[ResolvedConflict] = []
    max_rounds = len(working)

    while True:
        directional = [edge for edge in working.values() if edge.type.is_directional]
        remaining = kahn_remaining(nodes, directional)
        if not remaining:
            break
        if len(conflicts) >= max_rounds:
            _raise_cycle_error(remaining, directional, graph)

        subgraph = [edge for edge in directional if edge.source_id in remaining and edge.target_id in remaining]
        cycle = find_cycle(remaining, subgraph)
        if not cycle:
            _raise_cycle_error(remaining, directional, graph)

        cycle_edges = [working[(cycle[index], cycle[index + 1])] for index in range(len(cycle) - 1)]
        indegree: Dict[str, int] = {}
        for edge in directional:
            indegree[edge.target_id] = indegree.get(edge.target_id, 0) + 1
        victim = min(
            cycle_edges,
            key=lambda edge: (edge.confidence, -indegree.get(edge.target_id, 0), edge.source_id, edge.target_id),
        )
        del working[victim.pair]
        conflict = ResolvedConflict(
            edge=victim,
            cycle=cycle,
            round=len(conflicts) + 1,
            was_candidate=victim.pair in candidate_pairs and victim in batch,
        )
        conflicts.append(conflict)
        LOGGER.info(
            "Removed %s to break cycle %s (round %d)",
            victim.describe(),
            " -> ".join(cycle),
            conflict.round,
        )

    accepted = [edge for edge in batch if working.get(edge.pair) == edge]
    deduped: List[RelationshipEdge] = []
    for edge in accepted:
        if edge not in deduped:
            deduped.append(edge)

    resolved_graph = RelationshipGraph(graph.tasks.values(), working.values(), version=graph.version + 1)
    if conflicts:
        LOGGER.info(
            "Edge proposal accepted %d of %d candidate(s); %d conflict(s) resolved",
            len(deduped),
            len(batch),
            len(conflicts),
        )
    return EdgeProposalResult(accepted=deduped, conflicts=conflicts, graph=resolved_graph, merged=merged)


def _raise_cycle_error(
    remaining: Set[str],
    directional: Sequence[RelationshipEdge],
    graph: RelationshipGraph,
) -> None:
    dump = [edge.describe() for edge in directional]
    LOGGER.error("Cycle resolution failed; remaining nodes %s; edges: %s", sorted(remaining), dump)
    raise CycleError(
        "Cycle resolution could not make the graph acyclic",
        context={"remaining": sorted(remaining), "edges": dump, "graph_version": graph.version},
    )
