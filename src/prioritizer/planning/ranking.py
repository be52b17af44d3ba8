"""Incremental re-ranking of a baseline plan from reflection effects."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ..errors import StaleReferenceError, StructuralError
from ..memory.schema import EffectKind, LockSet, OrderedPlan, ReflectionEffect, duplicate_task_ids

LOGGER = logging.getLogger(__name__)

__all__ = ["AdjustmentResult", "MovedTask", "TaskAdjustment", "adjust", "fold_effects"]


@dataclass(slots=True)
class TaskAdjustment:
    """Net effect of all reflections on a single task."""

    task_id: str
    delta: float = 0.0
    blocked: bool = False
    reasons: List[str] = field(default_factory=list)

    @property
    def dominant(self) -> Optional[EffectKind]:
        if self.blocked:
            return EffectKind.BLOCKED
        if self.delta > 0:
            return EffectKind.BOOSTED
        if self.delta < 0:
            return EffectKind.DEMOTED
        return None

    def sort_key(self) -> tuple[int, float]:
        return (1 if self.blocked else 0, -self.delta)


@dataclass(slots=True)
class MovedTask:
    task_id: str
    from_rank: int
    to_rank: int
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"task_id": self.task_id, "from": self.from_rank, "to": self.to_rank, "reason": self.reason}


@dataclass(slots=True)
class AdjustmentResult:
    """Adjusted plan together with what moved and why."""

    plan: OrderedPlan
    diff: List[MovedTask] = field(default_factory=list)
    score_deltas: Dict[str, float] = field(default_factory=dict)
    blocked: List[str] = field(default_factory=list)
    stale_locks: List[StaleReferenceError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan": self.plan.model_dump(mode="json"),
            "diff": [entry.to_dict() for entry in self.diff],
            "score_deltas": dict(self.score_deltas),
            "blocked": list(self.blocked),
            "stale_locks": [error.to_dict() for error in self.stale_locks],
        }


def fold_effects(effects: Iterable[ReflectionEffect]) -> Dict[str, TaskAdjustment]:
    """Collapse reflection effects into one adjustment per task."""
    folded: Dict[str, TaskAdjustment] = {}
    for effect in effects:
        entry = folded.setdefault(effect.task_id, TaskAdjustment(task_id=effect.task_id))
        if effect.effect is EffectKind.BLOCKED:
            entry.blocked = True
            entry.delta -= effect.magnitude
        elif effect.effect is EffectKind.DEMOTED:
            entry.delta -= effect.magnitude
        else:
            entry.delta += effect.magnitude
        if effect.reason:
            entry.reasons.append(effect.reason)
    return folded


def _reason(adjustment: Optional[TaskAdjustment]) -> str:
    if adjustment is None or adjustment.dominant is None:
        return "shifted by neighbouring changes"
    label = adjustment.dominant.value
    if adjustment.reasons:
        return f"{label}: {adjustment.reasons[0]}"
    return label


def adjust(
    baseline: OrderedPlan,
    effects: Iterable[ReflectionEffect],
    lock_set: LockSet = frozenset(),
) -> AdjustmentResult:
    """Re-order ``baseline`` from ``effects`` while pinning locked tasks in place.

    Unlocked tasks are stable-sorted by descending delta (blocked tasks sink below
    every other task) and poured back into the unlocked slots. Applying the same
    effects to the result yields the same ordering again.
    """
    duplicates = duplicate_task_ids(baseline.ordered_task_ids)
    if duplicates:
        raise StructuralError(
            "Baseline ordering contains duplicate task ids",
            context={"duplicates": duplicates},
        )
    order = list(baseline.ordered_task_ids)
    positions = {task_id: index for index, task_id in enumerate(order)}
    folded = fold_effects(effects)

    ignored = sorted(task_id for task_id in folded if task_id not in positions)
    if ignored:
        LOGGER.debug("Ignoring effects for tasks outside the ordering: %s", ignored)

    stale_locks: List[StaleReferenceError] = []
    for task_id in sorted(lock_set):
        if task_id not in positions:
            LOGGER.warning("Lock on %s skipped: task is not in the baseline ordering", task_id)
            stale_locks.append(
                StaleReferenceError(
                    f"Locked task {task_id} is not in the baseline ordering",
                    context={"task_id": task_id},
                )
            )

    neutral = TaskAdjustment(task_id="")
    unlocked = [task_id for task_id in order if task_id not in lock_set]
    unlocked.sort(key=lambda task_id: folded.get(task_id, neutral).sort_key())

    pending = iter(unlocked)
    adjusted = [task_id if task_id in lock_set else next(pending) for task_id in order]

    diff = [
        MovedTask(
            task_id=task_id,
            from_rank=positions[task_id] + 1,
            to_rank=index + 1,
            reason=_reason(folded.get(task_id)),
        )
        for index, task_id in enumerate(adjusted)
        if positions[task_id] != index
    ]
    score_deltas = {task_id: entry.delta for task_id, entry in folded.items() if task_id in positions}
    blocked = [task_id for task_id in adjusted if folded.get(task_id, neutral).blocked]

    LOGGER.info(
        "Adjusted ordering: %d task(s) moved, %d locked, %d blocked",
        len(diff),
        len(lock_set) - len(stale_locks),
        len(blocked),
    )
    return AdjustmentResult(
        plan=baseline.with_order(adjusted),
        diff=diff,
        score_deltas=score_deltas,
        blocked=blocked,
        stale_locks=stale_locks,
    )
