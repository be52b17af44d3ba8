"""Gap detection between adjacent tasks of an ordered plan."""

from __future__ import annotations

import logging
import statistics
from typing import List, Mapping, Optional, Sequence

from ..config import GapSettings
from ..errors import StructuralError
from ..graph.relationships import RelationshipGraph
from ..memory.schema import Gap, GapIndicators, OrderedPlan, Task
from .task_filters import (
    cosine_similarity,
    dominant_terms,
    infer_workflow_stage,
    stage_index,
    term_similarity,
)

LOGGER = logging.getLogger(__name__)

__all__ = ["detect_gaps", "gap_confidence"]


def gap_confidence(indicator_count: int) -> float:
    """Map the number of fired indicators onto a confidence score."""
    if indicator_count < 2:
        return 0.0
    if indicator_count == 2:
        return 0.6
    if indicator_count == 3:
        return 0.75
    return 1.0


def _median_effort(tasks: Sequence[Task]) -> Optional[float]:
    efforts = [task.effort_hours for task in tasks if task.effort_hours]
    if not efforts:
        return None
    return float(statistics.median(efforts))


def _time_indicator(predecessor: Task, successor: Task, median: Optional[float], settings: GapSettings) -> bool:
    if median is None or median <= 0:
        return False
    if predecessor.effort_hours is None or successor.effort_hours is None:
        return False
    return predecessor.effort_hours + successor.effort_hours > settings.effort_multiple * median


def _action_type_indicator(
    ordered: Sequence[Task],
    position: int,
    settings: GapSettings,
) -> bool:
    first = stage_index(infer_workflow_stage(ordered[position].text))
    second = stage_index(infer_workflow_stage(ordered[position + 1].text))
    if first is None or second is None or abs(first - second) < 2:
        return False
    low, high = sorted((first, second))
    start = max(0, position - settings.action_window)
    stop = min(len(ordered), position + 2 + settings.action_window)
    for index in range(start, stop):
        if index in (position, position + 1):
            continue
        stage = stage_index(infer_workflow_stage(ordered[index].text))
        if stage is not None and low < stage < high:
            return False
    return True


def _skill_indicator(predecessor: Task, successor: Task, settings: GapSettings) -> bool:
    if predecessor.embedding and successor.embedding and len(predecessor.embedding) == len(successor.embedding):
        similarity = cosine_similarity(predecessor.embedding, successor.embedding)
        return similarity <= settings.embedding_similarity_floor
    first_terms = dominant_terms(predecessor.text)
    second_terms = dominant_terms(successor.text)
    if not first_terms or not second_terms:
        return False
    return term_similarity(first_terms, second_terms) <= settings.skill_similarity_floor


def _shares_anchor(predecessor: Task, successor: Task) -> bool:
    if predecessor.document_id and predecessor.document_id == successor.document_id:
        return True
    if predecessor.outcome_id and predecessor.outcome_id == successor.outcome_id:
        return True
    return False


def _dependency_indicator(
    predecessor: Task,
    successor: Task,
    graph: RelationshipGraph,
    settings: GapSettings,
) -> bool:
    if not _shares_anchor(predecessor, successor):
        return False
    return not graph.connected_within(predecessor.id, successor.id, settings.max_hops)


def detect_gaps(
    plan: OrderedPlan,
    graph: RelationshipGraph,
    tasks: Optional[Mapping[str, Task]] = None,
    settings: Optional[GapSettings] = None,
) -> List[Gap]:
    """Flag adjacent pairs whose relationship looks weak.

    The scan is pure: repeated calls with the same inputs return the same gaps in
    the same order (severity descending, then position).
    """
    settings = settings or GapSettings()
    task_map = dict(tasks) if tasks is not None else dict(graph.tasks)

    missing = [task_id for task_id in plan.ordered_task_ids if task_id not in task_map]
    if missing:
        raise StructuralError(
            "Ordered plan references unknown tasks",
            context={"missing": missing, "invariant": "ordered ids are known tasks"},
        )

    ordered = [task_map[task_id] for task_id in plan.ordered_task_ids]
    if len(ordered) < 2:
        return []

    median = _median_effort(ordered)
    gaps: List[Gap] = []
    for position in range(len(ordered) - 1):
        predecessor = ordered[position]
        successor = ordered[position + 1]
        indicators = GapIndicators(
            time=_time_indicator(predecessor, successor, median, settings),
            action_type=_action_type_indicator(ordered, position, settings),
            skill=_skill_indicator(predecessor, successor, settings),
            dependency=_dependency_indicator(predecessor, successor, graph, settings),
        )
        severity = len(indicators.fired())
        if severity < settings.min_indicators:
            LOGGER.debug(
                "No gap between %s and %s (%d indicator(s))",
                predecessor.id,
                successor.id,
                severity,
            )
            continue

        if settings.skip_cyclic_pairs and graph.has_path(successor.id, predecessor.id):
            LOGGER.debug(
                "Gap between %s and %s skipped: successor already reaches predecessor",
                predecessor.id,
                successor.id,
            )
            continue

        gaps.append(
            Gap(
                predecessor_id=predecessor.id,
                successor_id=successor.id,
                position=position,
                indicators=indicators,
                severity=severity,
                confidence=gap_confidence(severity),
            )
        )

    gaps.sort(key=lambda gap: (-gap.severity, gap.position))
    if settings.max_gaps > 0:
        gaps = gaps[: settings.max_gaps]

    LOGGER.info(
        "Gap analysis complete: %d pair(s) analysed, %d gap(s) found",
        len(ordered) - 1,
        len(gaps),
    )
    return gaps
