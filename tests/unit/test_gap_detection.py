from __future__ import annotations

import pytest

from prioritizer.config import GapSettings
from prioritizer.errors import StructuralError
from prioritizer.graph.relationships import RelationshipGraph
from prioritizer.memory.schema import OrderedPlan, Task
from prioritizer.planning.gaps import detect_gaps, gap_confidence


def _scan(tasks, edges=(), settings=None):
    graph = RelationshipGraph(tasks, edges)
    plan = OrderedPlan(ordered_task_ids=[task.id for task in tasks])
    return detect_gaps(plan, graph, settings=settings)


def test_time_indicator_flags_pairs_far_above_median_effort(make_task) -> None:
    tasks = [
        make_task("t1", effort_hours=2),
        make_task("t2", effort_hours=2),
        make_task("t3", effort_hours=2),
        make_task("t4", effort_hours=40),
        make_task("t5", effort_hours=2),
    ]
    gaps = _scan(tasks)

    assert [(gap.predecessor_id, gap.successor_id) for gap in gaps] == [("t3", "t4"), ("t4", "t5")]
    assert all(gap.indicators.fired() == ["time"] for gap in gaps)
    assert all(gap.severity == 1 and gap.confidence == 0.0 for gap in gaps)


def test_action_type_needs_a_missing_intermediate_stage() -> None:
    research = Task(id="r", text="Research competitor pricing")
    deploy = Task(id="d", text="Deploy pricing service")
    build = Task(id="b", text="Build pricing service")

    gaps = _scan([research, deploy])
    assert len(gaps) == 1
    assert gaps[0].indicators.action_type is True

    with_build = _scan([research, deploy, build])
    assert not any(gap.predecessor_id == "r" for gap in with_build)


def test_skill_indicator_uses_terms_or_embeddings() -> None:
    design = Task(id="ux", text="Design onboarding mockups")
    database = Task(id="db", text="Configure postgres replication")
    gaps = _scan([design, database])
    assert gaps[0].indicators.fired() == ["skill"]

    close = [
        Task(id="a", text="Design onboarding mockups", embedding=[1.0, 0.0]),
        Task(id="b", text="Configure postgres replication", embedding=[0.9, 0.1]),
    ]
    assert _scan(close) == []

    far = [
        Task(id="a", text="Billing module alpha", embedding=[1.0, 0.0]),
        Task(id="b", text="Billing module beta", embedding=[0.0, 1.0]),
    ]
    assert _scan(far)[0].indicators.fired() == ["skill"]


def test_dependency_indicator_requires_shared_document(make_task, edge) -> None:
    first = make_task("a", document_id="doc-1")
    second = make_task("b", document_id="doc-1")
    assert _scan([first, second])[0].indicators.fired() == ["dependency"]

    assert _scan([first, second], [edge("a", "b")]) == []
    assert _scan([make_task("a"), make_task("b")]) == []


def test_pairs_where_successor_reaches_predecessor_are_skipped(make_task, edge) -> None:
    first = make_task("a", document_id="doc-1")
    second = make_task("b", document_id="doc-1")
    middle = make_task("m")
    tasks = [first, second, middle]
    graph = RelationshipGraph(tasks, [edge("b", "m"), edge("m", "a")])
    plan = OrderedPlan(ordered_task_ids=["a", "b"])

    assert detect_gaps(plan, graph, settings=GapSettings(max_hops=1)) == []
    flagged = detect_gaps(plan, graph, settings=GapSettings(max_hops=1, skip_cyclic_pairs=False))
    assert [gap.indicators.fired() for gap in flagged] == [["dependency"]]


def test_gaps_are_sorted_by_severity_then_position_and_deterministic(make_task) -> None:
    tasks = [
        make_task("t1", "Research billing options", effort_hours=2),
        make_task("t2", "Deploy invoice exporter", effort_hours=30, document_id="doc"),
        make_task("t3", "Billing module gamma", effort_hours=2, document_id="doc"),
        make_task("t4", "Billing module delta", effort_hours=2),
    ]
    graph = RelationshipGraph(tasks)
    plan = OrderedPlan(ordered_task_ids=["t1", "t2", "t3", "t4"])

    first = detect_gaps(plan, graph)
    second = detect_gaps(plan, graph)

    assert first == second
    severities = [gap.severity for gap in first]
    assert severities == sorted(severities, reverse=True)
    assert first[0].predecessor_id == "t1"
    assert first[0].confidence == gap_confidence(first[0].severity)


def test_max_gaps_and_min_indicators_limit_output(make_task) -> None:
    tasks = [make_task(f"t{index}", effort_hours=40 if index == 2 else 1) for index in range(5)]
    assert len(_scan(tasks, settings=GapSettings(max_gaps=1))) == 1
    assert _scan(tasks, settings=GapSettings(min_indicators=2)) == []


def test_unknown_ordered_ids_are_structural_errors(make_task) -> None:
    graph = RelationshipGraph([make_task("a")])
    with pytest.raises(StructuralError):
        detect_gaps(OrderedPlan(ordered_task_ids=["a", "ghost"]), graph)


def test_confidence_mapping() -> None:
    assert [gap_confidence(count) for count in range(5)] == [0.0, 0.0, 0.6, 0.75, 1.0]
