from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from prioritizer.graph.relationships import RelationshipGraph  # noqa: E402
from prioritizer.memory.schema import (  # noqa: E402
    OrderedPlan,
    RelationshipEdge,
    RelationshipType,
    Task,
)

TaskFactory = Callable[..., Task]


@pytest.fixture()
def make_task() -> TaskFactory:
    """Build tasks with terse defaults so tests only spell out what matters."""

    def _make(
        task_id: str,
        text: Optional[str] = None,
        *,
        effort_hours: Optional[int] = None,
        document_id: Optional[str] = None,
        **extra,
    ) -> Task:
        return Task(
            id=task_id,
            text=text if text is not None else f"Billing module {task_id}",
            effort_hours=effort_hours,
            document_id=document_id,
            **extra,
        )

    return _make


@pytest.fixture()
def edge() -> Callable[..., RelationshipEdge]:
    def _edge(
        source: str,
        target: str,
        confidence: float = 0.8,
        kind: RelationshipType = RelationshipType.PREREQUISITE,
    ) -> RelationshipEdge:
        return RelationshipEdge(source_id=source, target_id=target, type=kind, confidence=confidence)

    return _edge


@pytest.fixture()
def abc_state(make_task: TaskFactory, edge) -> tuple[RelationshipGraph, OrderedPlan]:
    """Three-task chain A -> B -> C ordered as [A, B, C]."""
    tasks = [make_task("A"), make_task("B"), make_task("C")]
    graph = RelationshipGraph(tasks, [edge("A", "B"), edge("B", "C")])
    plan = OrderedPlan(ordered_task_ids=["A", "B", "C"], confidence_scores={"A": 0.9, "B": 0.8, "C": 0.7})
    return graph, plan


@pytest.fixture()
def documentation_tasks() -> list[Task]:
    return [
        Task(id="doc-writing", text="Write API documentation", effort_hours=4),
        Task(id="doc-review", text="Review documentation draft", effort_hours=2),
        Task(id="feature-code", text="Implement feature code", effort_hours=8),
    ]
