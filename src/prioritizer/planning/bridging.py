"""Insert user-accepted bridging tasks into an ordering without breaking the graph."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from ..config import BridgingSettings
from ..errors import GenerationFailure, PrioritizerError, StaleReferenceError, StructuralError
from ..graph.cycles import ResolvedConflict, propose_edges
from ..graph.relationships import RelationshipGraph
from ..memory.schema import (
    BridgingTask,
    Gap,
    OrderedPlan,
    RelationshipEdge,
    RelationshipType,
    Task,
    TaskStatus,
    duplicate_task_ids,
)

LOGGER = logging.getLogger(__name__)

__all__ = [
    "CandidateBatch",
    "InsertionResult",
    "SkippedBridge",
    "generate_candidates",
    "insert_bridging_tasks",
    "validate_candidate",
]

GapKey = Tuple[str, str]
CandidateGenerator = Callable[[Gap], Awaitable[Sequence[Union[BridgingTask, Mapping[str, Any]]]]]


@dataclass(slots=True)
class SkippedBridge:
    """Bridging task that could not be applied, with the error that stopped it."""

    bridge: BridgingTask
    error: PrioritizerError

    @property
    def requires_manual_input(self) -> bool:
        return isinstance(self.error, GenerationFailure)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.bridge.id,
            "predecessor_id": self.bridge.predecessor_id,
            "successor_id": self.bridge.successor_id,
            "requires_manual_input": self.requires_manual_input,
            **self.error.to_dict(),
        }


@dataclass(slots=True)
class InsertionResult:
    """New plan and graph snapshots after a batch of bridging insertions."""

    plan: OrderedPlan
    graph: RelationshipGraph
    conflicts: List[ResolvedConflict] = field(default_factory=list)
    inserted_ids: List[str] = field(default_factory=list)
    skipped: List[SkippedBridge] = field(default_factory=list)

    @property
    def cycles_resolved(self) -> int:
        return len(self.conflicts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan": self.plan.model_dump(mode="json"),
            "graph_version": self.graph.version,
            "inserted_ids": list(self.inserted_ids),
            "cycles_resolved": self.cycles_resolved,
            "resolved_conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "skipped": [item.to_dict() for item in self.skipped],
        }


def validate_candidate(bridge: BridgingTask, settings: Optional[BridgingSettings] = None) -> Tuple[str, int]:
    """Return the final text and effort of ``bridge`` or raise ``GenerationFailure``."""
    settings = settings or BridgingSettings()
    text = bridge.final_text
    effort = bridge.final_effort_hours
    problems: List[str] = []
    if not settings.min_text_length <= len(text) <= settings.max_text_length:
        problems.append(
            f"text must be {settings.min_text_length}-{settings.max_text_length} characters (got {len(text)})"
        )
    if effort is None or not settings.min_effort_hours <= effort <= settings.max_effort_hours:
        problems.append(
            f"effort must be {settings.min_effort_hours}-{settings.max_effort_hours} hours (got {effort})"
        )
    if not 0.0 <= bridge.confidence <= 1.0:
        problems.append(f"confidence must lie in [0, 1] (got {bridge.confidence})")
    if problems:
        raise GenerationFailure(
            f"Bridging task {bridge.id} requires manual input: {'; '.join(problems)}",
            context={"bridge_id": bridge.id, "problems": problems},
        )
    assert effort is not None
    return text, effort


def _check_batch(graph: RelationshipGraph, batch: Sequence[BridgingTask]) -> None:
    seen: set[str] = set()
    duplicates: List[str] = []
    collisions: List[str] = []
    for bridge in batch:
        if bridge.id in seen:
            duplicates.append(bridge.id)
        seen.add(bridge.id)
        if bridge.id in graph:
            collisions.append(bridge.id)
    if duplicates or collisions:
        raise StructuralError(
            "Bridging batch contains duplicate task ids",
            context={"duplicates": duplicates, "existing": collisions},
        )


def _anchor_positions(order: Sequence[str], graph: RelationshipGraph, bridge: BridgingTask) -> Tuple[int, int]:
    positions = {task_id: index for index, task_id in enumerate(order)}
    missing = [
        task_id
        for task_id in (bridge.predecessor_id, bridge.successor_id)
        if task_id not in positions or task_id not in graph
    ]
    if missing:
        raise StaleReferenceError(
            f"Bridging task {bridge.id} references tasks missing from the ordering: {', '.join(missing)}",
            context={"bridge_id": bridge.id, "missing": missing},
        )
    predecessor_index = positions[bridge.predecessor_id]
    successor_index = positions[bridge.successor_id]
    if predecessor_index >= successor_index:
        raise StaleReferenceError(
            f"Bridging task {bridge.id} anchors are out of order",
            context={
                "bridge_id": bridge.id,
                "predecessor_index": predecessor_index,
                "successor_index": successor_index,
            },
        )
    return predecessor_index, successor_index


def _bridge_task(bridge: BridgingTask, text: str, effort: int, predecessor: Task) -> Task:
    return Task(
        id=bridge.id,
        text=text,
        document_id=predecessor.document_id,
        outcome_id=predecessor.outcome_id,
        effort_hours=effort,
        status=TaskStatus.ACTIVE,
        metadata={
            "source": "bridging",
            "predecessor_id": bridge.predecessor_id,
            "successor_id": bridge.successor_id,
            "reasoning": bridge.reasoning,
        },
    )


def insert_bridging_tasks(
    plan: OrderedPlan,
    graph: RelationshipGraph,
    accepted: Iterable[BridgingTask],
    settings: Optional[BridgingSettings] = None,
) -> InsertionResult:
    """Splice ``accepted`` bridges into ``plan`` in submission order.

    Each bridge lands directly before its successor and gains
    ``prerequisite(predecessor -> bridge)`` and ``prerequisite(bridge -> successor)``
    edges through the cycle resolver. Only the window between the two anchors is
    re-linearized. Per-item failures are collected in ``skipped``; a malformed
    batch raises ``StructuralError`` before anything is applied.
    """
    duplicates = duplicate_task_ids(plan.ordered_task_ids)
    if duplicates:
        raise StructuralError(
            "Ordering contains duplicate task ids",
            context={"duplicates": duplicates},
        )
    settings = settings or BridgingSettings()
    batch = list(accepted)
    _check_batch(graph, batch)

    working_plan = plan.with_order(plan.ordered_task_ids)
    working_graph = graph
    result = InsertionResult(plan=working_plan, graph=working_graph)

    for bridge in batch:
        try:
            text, effort = validate_candidate(bridge, settings)
            predecessor_index, successor_index = _anchor_positions(
                working_plan.ordered_task_ids, working_graph, bridge
            )
        except (GenerationFailure, StaleReferenceError) as error:
            LOGGER.warning("Skipping bridging task %s: %s", bridge.id, error)
            result.skipped.append(SkippedBridge(bridge=bridge, error=error))
            continue

        predecessor = working_graph.get_task(bridge.predecessor_id)
        assert predecessor is not None
        task = _bridge_task(bridge, text, effort, predecessor)
        edges = [
            RelationshipEdge(
                source_id=bridge.predecessor_id,
                target_id=bridge.id,
                type=RelationshipType.PREREQUISITE,
                confidence=bridge.confidence,
                detection_method="bridging",
            ),
            RelationshipEdge(
                source_id=bridge.id,
                target_id=bridge.successor_id,
                type=RelationshipType.PREREQUISITE,
                confidence=bridge.confidence,
                detection_method="bridging",
            ),
        ]
        proposal = propose_edges(working_graph.with_tasks([task]), edges)

        order = list(working_plan.ordered_task_ids)
        order.insert(successor_index, bridge.id)
        window_end = successor_index + 2
        order[predecessor_index:window_end] = proposal.graph.linearize(order[predecessor_index:window_end])

        scores = dict(working_plan.confidence_scores)
        scores[bridge.id] = bridge.confidence
        working_plan = working_plan.with_order(order, confidence_scores=scores)
        working_graph = proposal.graph
        result.conflicts.extend(proposal.conflicts)
        result.inserted_ids.append(bridge.id)
        LOGGER.info(
            "Inserted bridging task %s between %s and %s",
            bridge.id,
            bridge.predecessor_id,
            bridge.successor_id,
        )

    result.plan = working_plan
    result.graph = working_graph
    return result


@dataclass(slots=True)
class CandidateBatch:
    """Bridging candidates produced for a list of gaps."""

    gaps: List[Gap]
    candidates: Dict[GapKey, List[BridgingTask]] = field(default_factory=dict)
    failures: List[GenerationFailure] = field(default_factory=list)

    def ordered(self) -> List[BridgingTask]:
        """Flatten candidates following the gap order (severity first)."""
        flattened: List[BridgingTask] = []
        for gap in self.gaps:
            flattened.extend(self.candidates.get((gap.predecessor_id, gap.successor_id), []))
        return flattened


def _coerce_candidate(gap: Gap, item: Union[BridgingTask, Mapping[str, Any]]) -> BridgingTask:
    if isinstance(item, BridgingTask):
        return item
    payload = {"predecessor_id": gap.predecessor_id, "successor_id": gap.successor_id, **dict(item)}
    return BridgingTask.model_validate(payload)


async def generate_candidates(
    gaps: Sequence[Gap],
    generator: CandidateGenerator,
    settings: Optional[BridgingSettings] = None,
    *,
    timeout: Optional[float] = None,
) -> CandidateBatch:
    """Ask ``generator`` for bridging candidates, at most ``generation_workers`` at a time.

    Empty, malformed, or timed-out generations become ``GenerationFailure``
    entries; the remaining gaps are unaffected.
    """
    settings = settings or BridgingSettings()
    semaphore = asyncio.Semaphore(settings.generation_workers)
    batch = CandidateBatch(gaps=list(gaps))

    async def _generate(gap: Gap) -> None:
        key = (gap.predecessor_id, gap.successor_id)
        async with semaphore:
            try:
                if timeout is None:
                    raw_items = await generator(gap)
                else:
                    raw_items = await asyncio.wait_for(generator(gap), timeout=timeout)
            except asyncio.TimeoutError:
                batch.failures.append(
                    GenerationFailure(
                        f"Bridging generation timed out for {key[0]} -> {key[1]}",
                        context={"gap": list(key), "timeout": timeout},
                    )
                )
                return
            except GenerationFailure as error:
                batch.failures.append(error)
                return

        try:
            items = [_coerce_candidate(gap, item) for item in raw_items or []]
        except ValidationError as error:
            batch.failures.append(
                GenerationFailure(
                    f"Generator returned malformed candidates for {key[0]} -> {key[1]}",
                    context={"gap": list(key), "errors": error.errors(include_url=False)},
                )
            )
            return

        valid: List[BridgingTask] = []
        for item in items:
            try:
                validate_candidate(item, settings)
            except GenerationFailure as error:
                batch.failures.append(error)
            else:
                valid.append(item)
        if not valid:
            batch.failures.append(
                GenerationFailure(
                    f"No usable bridging candidates for {key[0]} -> {key[1]}",
                    context={"gap": list(key), "received": len(items)},
                )
            )
        batch.candidates[key] = valid

    await asyncio.gather(*(_generate(gap) for gap in batch.gaps))
    LOGGER.info(
        "Generated candidates for %d gap(s); %d failure(s)",
        len(batch.gaps),
        len(batch.failures),
    )
    return batch
