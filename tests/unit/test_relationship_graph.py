from __future__ import annotations

import pytest

from prioritizer.errors import CycleError, StructuralError
from prioritizer.graph.relationships import RelationshipGraph, find_cycle
from prioritizer.memory.schema import RelationshipType, TaskStatus


def test_graph_rejects_duplicate_tasks_and_unknown_edges(make_task, edge) -> None:
    with pytest.raises(StructuralError):
        RelationshipGraph([make_task("A"), make_task("A")])

    with pytest.raises(StructuralError) as excinfo:
        RelationshipGraph([make_task("A")], [edge("A", "missing")])
    assert excinfo.value.context["missing"] == ["missing"]


def test_graph_rejects_two_edges_on_the_same_pair(make_task, edge) -> None:
    tasks = [make_task("A"), make_task("B")]
    with pytest.raises(StructuralError):
        RelationshipGraph(tasks, [edge("A", "B"), edge("A", "B", kind=RelationshipType.BLOCKS)])


def test_has_path_respects_hops_and_related_edges(make_task, edge) -> None:
    tasks = [make_task(task_id) for task_id in "ABCD"]
    graph = RelationshipGraph(
        tasks,
        [edge("A", "B"), edge("B", "C"), edge("C", "D", kind=RelationshipType.RELATED)],
    )

    assert graph.has_path("A", "C")
    assert not graph.has_path("A", "C", max_hops=1)
    assert not graph.has_path("C", "A")
    assert not graph.has_path("A", "D")
    assert graph.has_path("D", "C", include_related=True)
    assert graph.connected_within("D", "A", 3)
    assert not graph.connected_within("D", "A", 2)


def test_derived_snapshots_bump_version_and_leave_original_untouched(make_task, edge) -> None:
    graph = RelationshipGraph([make_task("A"), make_task("B")], version=4)
    extended = graph.with_edges([edge("A", "B")])

    assert graph.edges == ()
    assert extended.version == 5
    assert extended.get_edge("A", "B") is not None
    assert extended.without_edges(extended.edges).edges == ()

    discarded = extended.with_tasks([extended.get_task("B").discard()])
    assert discarded.get_task("B").status is TaskStatus.DISCARDED
    assert discarded.get_task("B").restore().status is TaskStatus.ACTIVE
    assert extended.get_task("B").status is TaskStatus.ACTIVE


def test_linearize_keeps_consistent_order_and_fixes_violations(make_task, edge) -> None:
    tasks = [make_task(task_id) for task_id in "ABCD"]
    graph = RelationshipGraph(tasks, [edge("C", "A")])

    assert graph.linearize(["C", "A", "B", "D"]) == ["C", "A", "B", "D"]
    assert graph.linearize(["A", "B", "C", "D"]) == ["B", "C", "A", "D"]


def test_linearize_raises_cycle_error_with_edge_dump(make_task, edge) -> None:
    graph = RelationshipGraph([make_task("A"), make_task("B")], [edge("A", "B"), edge("B", "A")])

    assert graph.find_cycle() in (["A", "B", "A"], ["B", "A", "B"])
    with pytest.raises(CycleError) as excinfo:
        graph.linearize(["A", "B"])
    assert len(excinfo.value.context["edges"]) == 2


def test_find_cycle_ignores_acyclic_input(edge) -> None:
    assert find_cycle(["A", "B", "C"], [edge("A", "B"), edge("A", "C"), edge("B", "C")]) == []


def test_round_trip_through_dict(make_task, edge) -> None:
    graph = RelationshipGraph([make_task("A"), make_task("B")], [edge("A", "B", 0.4)], version=2)
    restored = RelationshipGraph.from_dict(graph.to_dict())

    assert restored.version == 2
    assert restored.get_edge("A", "B").confidence == pytest.approx(0.4)
    assert set(restored.tasks) == {"A", "B"}
