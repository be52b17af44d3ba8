"""Typed records exchanged by the prioritizer core and its callers."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class TaskStatus(str, Enum):
    """Lifecycle states for a task."""

    ACTIVE = "active"
    MANUAL = "manual"
    EXCLUDED = "excluded"
    DISCARDED = "discarded"


SEQUENCEABLE_STATUSES: FrozenSet[TaskStatus] = frozenset({TaskStatus.ACTIVE, TaskStatus.MANUAL})


class RelationshipType(str, Enum):
    """Kinds of edges tracked between tasks."""

    PREREQUISITE = "prerequisite"
    BLOCKS = "blocks"
    RELATED = "related"

    @property
    def is_directional(self) -> bool:
        return self is not RelationshipType.RELATED


class EffectKind(str, Enum):
    """How a reflection influences a single task."""

    BOOSTED = "boosted"
    DEMOTED = "demoted"
    BLOCKED = "blocked"


class DirectiveType(str, Enum):
    """Classifier verdict for a reflection."""

    NEGATION = "negation"
    POSITIVE = "positive"
    NEUTRAL = "neutral"


class Task(RecordModel):
    """Single work item derived from an ingested document."""

    id: str = Field(min_length=1)
    text: str = ""
    document_id: Optional[str] = None
    outcome_id: Optional[str] = None
    effort_hours: Optional[int] = Field(default=None, gt=0)
    status: TaskStatus = TaskStatus.ACTIVE
    embedding: Optional[List[float]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def sequenceable(self) -> bool:
        return self.status in SEQUENCEABLE_STATUSES

    def discard(self) -> "Task":
        """Soft-delete the task; the record stays recoverable."""
        previous = self.metadata.get("previous_status", self.status.value)
        if self.status is TaskStatus.DISCARDED:
            return self.model_copy()
        return self.model_copy(
            update={
                "status": TaskStatus.DISCARDED,
                "metadata": {**self.metadata, "previous_status": previous},
            }
        )

    def restore(self) -> "Task":
        """Undo a soft delete, returning the task to its prior status."""
        if self.status is not TaskStatus.DISCARDED:
            return self.model_copy()
        metadata = dict(self.metadata)
        previous = metadata.pop("previous_status", TaskStatus.ACTIVE.value)
        return self.model_copy(update={"status": TaskStatus(previous), "metadata": metadata})


class RelationshipEdge(RecordModel):
    """Typed, weighted edge between two tasks."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    source_id: str = Field(min_length=1)
    target_id: str = Field(min_length=1)
    type: RelationshipType = RelationshipType.PREREQUISITE
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    detection_method: str = "ai"

    @property
    def key(self) -> tuple[str, str, RelationshipType]:
        return (self.source_id, self.target_id, self.type)

    @property
    def pair(self) -> tuple[str, str]:
        return (self.source_id, self.target_id)

    def describe(self) -> str:
        return f"{self.type.value}({self.source_id}->{self.target_id}, {self.confidence:.2f})"


class ExcludedTask(RecordModel):
    """Task removed from an ordering together with the reason."""

    task_id: str = Field(min_length=1)
    reason: str = ""


class OrderedPlan(RecordModel):
    """Priority ordering over tasks; head of the sequence is the highest priority."""

    ordered_task_ids: List[str] = Field(default_factory=list)
    confidence_scores: Dict[str, float] = Field(default_factory=dict)
    excluded_tasks: List[ExcludedTask] = Field(default_factory=list)
    synthesis_summary: str = ""
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def excluded_ids(self) -> set[str]:
        return {entry.task_id for entry in self.excluded_tasks}

    def index_of(self, task_id: str) -> Optional[int]:
        try:
            return self.ordered_task_ids.index(task_id)
        except ValueError:
            return None

    def with_order(self, ordered_task_ids: List[str], **updates: Any) -> "OrderedPlan":
        """Return a copy carrying a new sequence; the receiver stays untouched."""
        payload: Dict[str, Any] = {"ordered_task_ids": list(ordered_task_ids)}
        payload.update(updates)
        return self.model_copy(update=payload, deep=True)


class GapIndicators(RecordModel):
    """Indicators evaluated for one adjacent pair."""

    time: bool = False
    action_type: bool = False
    skill: bool = False
    dependency: bool = False

    def fired(self) -> List[str]:
        return [name for name, value in self.model_dump().items() if value]


class Gap(RecordModel):
    """Suspected missing step between two adjacent tasks."""

    predecessor_id: str
    successor_id: str
    position: int = 0
    indicators: GapIndicators = Field(default_factory=GapIndicators)
    severity: int = 0
    confidence: float = 0.0


class Reflection(RecordModel):
    """Short user-supplied contextual note that steers ranking."""

    id: str = Field(min_length=1)
    text: str = ""
    is_active: bool = True
    recency_weight: float = Field(default=1.0, gt=0.0, le=1.0)
    created_at: datetime = Field(default_factory=utc_now)


class ReflectionClassification(RecordModel):
    """Upstream interpretation of a reflection (directive plus targeted tasks)."""

    reflection_id: str = Field(min_length=1)
    directive: DirectiveType = DirectiveType.NEUTRAL
    target_task_ids: List[str] = Field(default_factory=list)
    effect: Optional[EffectKind] = None


class ReflectionEffect(RecordModel):
    """Effect of one reflection on one task, consumed by the ranker."""

    reflection_id: str = Field(min_length=1)
    task_id: str = Field(min_length=1)
    effect: EffectKind
    magnitude: float = Field(default=1.0, gt=0.0)
    reason: str = ""


class BridgingTask(BaseModel):
    """Candidate task accepted by a user to fill a detected gap.

    Kept lenient so malformed generator output can be reported per item rather
    than rejected at parse time.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    predecessor_id: str
    successor_id: str
    text: str = ""
    effort_hours: Optional[int] = None
    confidence: float = 0.8
    reasoning: str = ""
    edited_text: Optional[str] = None
    edited_effort_hours: Optional[int] = None

    @property
    def final_text(self) -> str:
        return (self.edited_text if self.edited_text is not None else self.text).strip()

    @property
    def final_effort_hours(self) -> Optional[int]:
        if self.edited_effort_hours is not None:
            return self.edited_effort_hours
        return self.effort_hours


LockSet = FrozenSet[str]


def duplicate_task_ids(task_ids: Iterable[str]) -> List[str]:
    """Ids that occur more than once, in order of their second appearance."""
    seen: set[str] = set()
    duplicates: List[str] = []
    for task_id in task_ids:
        if task_id in seen and task_id not in duplicates:
            duplicates.append(task_id)
        seen.add(task_id)
    return duplicates


def plan_violations(plan: OrderedPlan, tasks: Mapping[str, Task]) -> List[str]:
    """Return human-readable breaches of the OrderedPlan invariants."""
    problems: List[str] = []
    seen: set[str] = set()
    for task_id in plan.ordered_task_ids:
        if task_id in seen:
            problems.append(f"duplicate task id in ordering: {task_id}")
            continue
        seen.add(task_id)
        task = tasks.get(task_id)
        if task is None:
            problems.append(f"unknown task id in ordering: {task_id}")
        elif not task.sequenceable:
            problems.append(f"task {task_id} has status {task.status.value} and cannot be ordered")
    excluded_seen: set[str] = set()
    for entry in plan.excluded_tasks:
        if entry.task_id not in tasks:
            problems.append(f"unknown task id in excluded set: {entry.task_id}")
        if entry.task_id in seen:
            problems.append(f"task {entry.task_id} is both ordered and excluded")
        if entry.task_id in excluded_seen:
            problems.append(f"duplicate task id in excluded set: {entry.task_id}")
        excluded_seen.add(entry.task_id)
    return problems
