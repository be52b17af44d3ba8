from __future__ import annotations

import random

import pytest

from prioritizer.errors import StructuralError
from prioritizer.graph.cycles import kahn_remaining, propose_edges
from prioritizer.graph.relationships import RelationshipGraph
from prioritizer.memory.schema import RelationshipEdge, RelationshipType, Task


def _graph(task_ids, edges=()) -> RelationshipGraph:
    return RelationshipGraph([Task(id=task_id, text=task_id) for task_id in task_ids], edges)


def test_three_cycle_drops_the_lowest_confidence_edge(edge) -> None:
    graph = _graph("XYZ")
    result = propose_edges(graph, [edge("X", "Y", 0.9), edge("Y", "Z", 0.5), edge("Z", "X", 0.9)])

    assert [conflict.edge.pair for conflict in result.conflicts] == [("Y", "Z")]
    assert result.cycles_resolved == 1
    assert {candidate.pair for candidate in result.accepted} == {("X", "Y"), ("Z", "X")}
    assert result.graph.is_acyclic()
    assert result.graph.version == graph.version + 1
    assert graph.edges == ()


def test_acyclic_batch_is_accepted_unchanged(edge) -> None:
    graph = _graph("ABC", [edge("A", "B")])
    result = propose_edges(graph, [edge("B", "C")])

    assert result.conflicts == []
    assert [candidate.pair for candidate in result.accepted] == [("B", "C")]
    assert len(result.graph.edges) == 2


def test_tie_on_confidence_removes_edge_into_busiest_target(edge) -> None:
    graph = _graph("ABCD", [edge("D", "B", 0.9)])
    result = propose_edges(graph, [edge("A", "B", 0.5), edge("B", "C", 0.5), edge("C", "A", 0.5)])

    assert [conflict.edge.pair for conflict in result.conflicts] == [("A", "B")]


def test_existing_edges_can_be_removed_to_keep_a_candidate(edge) -> None:
    graph = _graph("AB", [edge("B", "A", 0.2)])
    result = propose_edges(graph, [edge("A", "B", 0.9)])

    assert result.conflicts[0].edge.pair == ("B", "A")
    assert result.conflicts[0].was_candidate is False
    assert result.graph.get_edge("B", "A") is None
    assert result.conflicts[0].to_dict()["cycle"][0] == result.conflicts[0].to_dict()["cycle"][-1]


def test_related_edges_never_count_as_cycles(edge) -> None:
    graph = _graph("AB", [edge("A", "B")])
    result = propose_edges(graph, [edge("B", "A", 0.1, kind=RelationshipType.RELATED)])

    assert result.conflicts == []


def test_same_pair_keeps_the_higher_confidence_edge(edge) -> None:
    graph = _graph("AB", [edge("A", "B", 0.4)])
    result = propose_edges(graph, [edge("A", "B", 0.8, kind=RelationshipType.BLOCKS)])

    assert result.graph.get_edge("A", "B").confidence == pytest.approx(0.8)
    assert result.graph.get_edge("A", "B").type is RelationshipType.BLOCKS
    assert len(result.merged) == 1
    assert result.merged[0].discarded.confidence == pytest.approx(0.4)


def test_unknown_tasks_reject_the_whole_batch(edge) -> None:
    graph = _graph("AB")
    with pytest.raises(StructuralError):
        propose_edges(graph, [edge("A", "B"), edge("B", "Q")])


def test_kahn_remaining_reports_cycle_members(edge) -> None:
    remaining = kahn_remaining("ABCD", [edge("A", "B"), edge("B", "C"), edge("C", "B"), edge("C", "D")])
    assert remaining == {"B", "C", "D"}


def _cycle_space_dimension(nodes, pairs) -> int:
    parent = {node: node for node in nodes}

    def find(node):
        while parent[node] != node:
            parent[node] = parent[parent[node]]
            node = parent[node]
        return node

    for source, target in pairs:
        parent[find(source)] = find(target)
    components = len({find(node) for node in nodes})
    return len(pairs) - len(nodes) + components


@pytest.mark.parametrize("seed", range(25))
def test_random_batches_with_planted_cycles_end_acyclic_and_minimal(seed: int) -> None:
    rng = random.Random(seed)
    nodes = [f"t{index:02d}" for index in range(12)]
    existing = {}
    for _ in range(14):
        first, second = sorted(rng.sample(range(len(nodes)), 2))
        pair = (nodes[first], nodes[second])
        existing[pair] = RelationshipEdge(
            source_id=pair[0], target_id=pair[1], confidence=round(rng.uniform(0.1, 1.0), 2)
        )
    graph = RelationshipGraph([Task(id=node, text=node) for node in nodes], existing.values())

    candidates = []
    for length in (2, 3, 4, 5):
        members = sorted(rng.sample(nodes, length))
        for index, source in enumerate(members):
            target = members[(index + 1) % length]
            candidates.append(
                RelationshipEdge(source_id=source, target_id=target, confidence=round(rng.uniform(0.1, 1.0), 2))
            )

    merged_pairs = set(existing) | {candidate.pair for candidate in candidates}
    bound = _cycle_space_dimension(nodes, merged_pairs)

    result = propose_edges(graph, candidates)

    assert result.graph.is_acyclic()
    assert kahn_remaining(nodes, list(result.graph.directional_edges())) == set()
    assert len(result.conflicts) <= bound
    assert len(result.graph.edges) == len(merged_pairs) - len(result.conflicts)
