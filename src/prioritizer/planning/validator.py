"""Evaluator-optimizer loop that checks planner output before it is accepted."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..config import ValidatorSettings
from ..errors import ValidationExhausted
from ..memory.schema import (
    DirectiveType,
    ExcludedTask,
    OrderedPlan,
    ReflectionClassification,
    Task,
    plan_violations,
)
from ..models.planner import Planner, PlannerError, PlannerRequest, PlannerResponseFormatError, parse_json_payload
from ..utils.slug import timestamped_slug

LOGGER = logging.getLogger(__name__)

__all__ = [
    "CheckResult",
    "IterationRecord",
    "PlanAccepted",
    "PlanValidator",
    "RepairRequest",
    "SchemaError",
    "SemanticError",
    "ValidatedPlan",
    "ValidationReport",
    "ValidationState",
    "Verdict",
]


class ValidationState(str, Enum):
    RECEIVED = "received"
    SCHEMA_CHECKED = "schema_checked"
    SEMANTICS_CHECKED = "semantics_checked"
    ACCEPTED = "accepted"
    REPAIR_REQUESTED = "repair_requested"


class Verdict(str, Enum):
    ACCEPTED = "accepted"
    NEEDS_REVIEW = "needs_review"
    REJECTED = "rejected"


class PlanPayload(BaseModel):
    """Shape expected from the planner; unknown keys are tolerated."""

    model_config = ConfigDict(extra="ignore")

    ordered_task_ids: List[str]
    confidence_scores: Dict[str, float] = Field(default_factory=dict)
    excluded_tasks: List[ExcludedTask] = Field(default_factory=list)
    synthesis_summary: str = ""

    @field_validator("excluded_tasks", mode="before")
    @classmethod
    def _coerce_excluded(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [{"task_id": item} if isinstance(item, str) else item for item in value]
        return value

    @field_validator("confidence_scores", mode="before")
    @classmethod
    def _coerce_scores(cls, value: Any) -> Any:
        return {} if value is None else value


# Tagged single-pass results -----------------------------------------------------------
@dataclass(slots=True)
class PlanAccepted:
    plan: OrderedPlan
    kind: Literal["accepted"] = "accepted"


@dataclass(slots=True)
class SchemaError:
    problems: List[str]
    excerpt: str = ""
    kind: Literal["schema_error"] = "schema_error"


@dataclass(slots=True)
class SemanticError:
    plan: OrderedPlan
    violations: List[str]
    kind: Literal["semantic_error"] = "semantic_error"


CheckResult = Union[PlanAccepted, SchemaError, SemanticError]


@dataclass(slots=True)
class ValidatedPlan:
    plan: OrderedPlan
    iteration: int = 1


@dataclass(slots=True)
class RepairRequest:
    """Evaluator feedback handed back to the planner as extra instructions."""

    iteration: int
    instructions: List[str]
    source: Literal["schema", "semantics", "planner"] = "semantics"


@dataclass(slots=True)
class IterationRecord:
    """Chain-of-thought entry for one planner call."""

    iteration: int
    states: List[ValidationState] = field(default_factory=list)
    outcome: str = ""
    violations: List[str] = field(default_factory=list)
    confidence: float = 0.0
    corrections: str = ""
    evaluator_feedback: Optional[str] = None
    duration_ms: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iteration": self.iteration,
            "states": [state.value for state in self.states],
            "outcome": self.outcome,
            "violations": list(self.violations),
            "confidence": self.confidence,
            "corrections": self.corrections,
            "evaluator_feedback": self.evaluator_feedback,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True)
class ValidationReport:
    verdict: Verdict
    plan: Optional[OrderedPlan]
    iterations: List[IterationRecord] = field(default_factory=list)
    exhausted: Optional[ValidationExhausted] = None
    log_path: Optional[Path] = None

    @property
    def needs_review(self) -> bool:
        return self.verdict is Verdict.NEEDS_REVIEW

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "plan": self.plan.model_dump(mode="json") if self.plan is not None else None,
            "iterations": [record.to_dict() for record in self.iterations],
            "exhausted": self.exhausted.to_dict() if self.exhausted is not None else None,
        }


def _mean_confidence(plan: OrderedPlan) -> float:
    scores = [plan.confidence_scores[task_id] for task_id in plan.ordered_task_ids if task_id in plan.confidence_scores]
    if not scores:
        return 0.0
    return sum(scores) / len(scores)


def _describe_corrections(previous: Optional[OrderedPlan], current: OrderedPlan) -> str:
    if previous is None:
        return "initial candidate"
    moved = sum(
        1
        for index, task_id in enumerate(current.ordered_task_ids)
        if previous.index_of(task_id) != index
    )
    newly_excluded = sorted(current.excluded_ids - previous.excluded_ids)
    restored = sorted(previous.excluded_ids - current.excluded_ids)
    parts = [f"{moved} task(s) repositioned"]
    if newly_excluded:
        parts.append(f"excluded {', '.join(newly_excluded)}")
    if restored:
        parts.append(f"restored {', '.join(restored)}")
    return "; ".join(parts)


class PlanValidator:
    """Check planner output against structural and directive contracts.

    ``check``/``validate`` run one pass over a raw payload. ``run`` drives the
    planner until a candidate is accepted or the repair cap is hit, in which case
    the best schema-valid candidate is returned for review.
    """

    def __init__(
        self,
        tasks: Union[Mapping[str, Task], Iterable[Task]],
        directives: Sequence[ReflectionClassification] = (),
        settings: Optional[ValidatorSettings] = None,
        *,
        logs_root: Optional[Path] = None,
        run_id: Optional[str] = None,
    ) -> None:
        if isinstance(tasks, Mapping):
            self._tasks: Dict[str, Task] = dict(tasks)
        else:
            self._tasks = {task.id: task for task in tasks}
        self._directives = list(directives)
        self._settings = settings or ValidatorSettings()
        self._logs_root = logs_root
        self._run_id = run_id or "plan"

    @property
    def settings(self) -> ValidatorSettings:
        return self._settings

    def _targets(self, directive: DirectiveType) -> Dict[str, str]:
        targets: Dict[str, str] = {}
        for item in self._directives:
            if item.directive is not directive:
                continue
            for task_id in item.target_task_ids:
                if task_id in self._tasks:
                    targets.setdefault(task_id, item.reflection_id)
                else:
                    LOGGER.debug("Directive %s targets unknown task %s", item.reflection_id, task_id)
        return targets

    # Single pass ---------------------------------------------------------------------
    def parse(self, raw: Any) -> Union[OrderedPlan, SchemaError]:
        excerpt = raw[:200] if isinstance(raw, str) else ""
        try:
            data = parse_json_payload(raw) if isinstance(raw, str) or raw is None else raw
        except PlannerResponseFormatError as error:
            return SchemaError(problems=[str(error)], excerpt=excerpt)

        if isinstance(data, Mapping) and isinstance(data.get("plan"), Mapping):
            data = data["plan"]
        if isinstance(data, list):
            data = {"ordered_task_ids": data}
        if not isinstance(data, Mapping):
            return SchemaError(problems=["payload must be a JSON object"], excerpt=excerpt)

        try:
            payload = PlanPayload.model_validate(data)
        except ValidationError as error:
            problems = [
                f"{'.'.join(str(part) for part in issue['loc']) or 'payload'}: {issue['msg']}"
                for issue in error.errors(include_url=False)
            ]
            return SchemaError(problems=problems, excerpt=excerpt)

        plan = OrderedPlan(**payload.model_dump())
        problems = plan_violations(plan, self._tasks)
        problems.extend(
            f"confidence score for {task_id} must lie in [0, 1]"
            for task_id, score in plan.confidence_scores.items()
            if not 0.0 <= score <= 1.0
        )
        if problems:
            return SchemaError(problems=problems, excerpt=excerpt)
        return plan

    def semantic_violations(self, plan: OrderedPlan) -> List[str]:
        violations: List[str] = []
        excluded = plan.excluded_ids
        for task_id, reflection_id in self._targets(DirectiveType.NEGATION).items():
            if task_id not in excluded:
                violations.append(
                    f"task {task_id} must be excluded: reflection {reflection_id} asks to ignore it"
                )

        cutoff = len(plan.ordered_task_ids) / 2
        for task_id, reflection_id in self._targets(DirectiveType.POSITIVE).items():
            if task_id in excluded:
                violations.append(
                    f"task {task_id} must not be excluded: reflection {reflection_id} prioritises it"
                )
                continue
            index = plan.index_of(task_id)
            if index is None:
                violations.append(f"task {task_id} is missing but reflection {reflection_id} prioritises it")
            elif index >= cutoff:
                violations.append(
                    f"task {task_id} must rank in the upper half (rank {index + 1} of "
                    f"{len(plan.ordered_task_ids)}) per reflection {reflection_id}"
                )
        return violations

    def check(self, raw: Any) -> CheckResult:
        parsed = self.parse(raw)
        if isinstance(parsed, SchemaError):
            return parsed
        violations = self.semantic_violations(parsed)
        if violations:
            return SemanticError(plan=parsed, violations=violations)
        return PlanAccepted(plan=parsed)

    def validate(self, raw: Any, *, iteration: int = 1) -> Union[ValidatedPlan, RepairRequest]:
        result = self.check(raw)
        if isinstance(result, PlanAccepted):
            return ValidatedPlan(plan=result.plan, iteration=iteration)
        if isinstance(result, SchemaError):
            return RepairRequest(iteration=iteration, instructions=list(result.problems), source="schema")
        return RepairRequest(iteration=iteration, instructions=list(result.violations), source="semantics")

    # Loop ----------------------------------------------------------------------------
    async def run(self, planner: Planner, request: PlannerRequest) -> ValidationReport:
        attempts = self._settings.max_repairs + 1
        records: List[IterationRecord] = []
        best: Optional[tuple[int, float, int, OrderedPlan]] = None
        previous: Optional[OrderedPlan] = None
        accepted: Optional[OrderedPlan] = None
        instructions = list(request.repair_instructions)

        for iteration in range(1, attempts + 1):
            current = request.with_repairs(instructions, iteration)
            record = IterationRecord(iteration=iteration, states=[ValidationState.RECEIVED])
            records.append(record)
            started = time.monotonic()
            try:
                raw = await asyncio.wait_for(planner.generate(current), timeout=self._settings.planner_timeout)
            except asyncio.TimeoutError:
                record.outcome = "timeout"
                instructions = [f"previous attempt exceeded {self._settings.planner_timeout:.1f}s; respond promptly"]
                record.violations = list(instructions)
                LOGGER.warning("Planner timed out on iteration %d", iteration)
            except PlannerError as error:
                record.outcome = "planner_error"
                instructions = [f"previous attempt failed: {error}"]
                record.violations = list(instructions)
                LOGGER.warning("Planner failed on iteration %d: %s", iteration, error)
            else:
                result = self.check(raw)
                if isinstance(result, SchemaError):
                    record.outcome = result.kind
                    record.violations = list(result.problems)
                    instructions = list(result.problems)
                else:
                    record.states.extend([ValidationState.SCHEMA_CHECKED, ValidationState.SEMANTICS_CHECKED])
                    record.confidence = _mean_confidence(result.plan)
                    record.corrections = _describe_corrections(previous, result.plan)
                    previous = result.plan
                    record.outcome = result.kind
                    if isinstance(result, PlanAccepted):
                        record.states.append(ValidationState.ACCEPTED)
                        record.evaluator_feedback = "all checks passed"
                        accepted = result.plan
                    else:
                        record.violations = list(result.violations)
                        instructions = list(result.violations)
                        rank = (len(result.violations), -record.confidence, iteration, result.plan)
                        if best is None or rank[:3] < best[:3]:
                            best = rank
            finally:
                record.duration_ms = int((time.monotonic() - started) * 1000)

            if accepted is not None:
                break
            record.evaluator_feedback = "; ".join(record.violations) or None
            if iteration < attempts:
                record.states.append(ValidationState.REPAIR_REQUESTED)
            LOGGER.info(
                "Validator iteration %d rejected candidate (%s): %d issue(s)",
                iteration,
                record.outcome,
                len(record.violations),
            )

        if accepted is not None:
            report = ValidationReport(verdict=Verdict.ACCEPTED, plan=accepted, iterations=records)
        else:
            exhausted = ValidationExhausted(
                f"Plan validation exhausted {attempts} attempt(s)",
                context={
                    "attempts": attempts,
                    "max_repairs": self._settings.max_repairs,
                    "last_issues": records[-1].violations if records else [],
                },
            )
            if best is not None:
                report = ValidationReport(
                    verdict=Verdict.NEEDS_REVIEW,
                    plan=best[3],
                    iterations=records,
                    exhausted=exhausted,
                )
            else:
                report = ValidationReport(verdict=Verdict.REJECTED, plan=None, iterations=records, exhausted=exhausted)

        LOGGER.info("Plan validation finished with verdict %s after %d call(s)", report.verdict.value, len(records))
        report.log_path = self._write_log(report, request)
        return report

    def _write_log(self, report: ValidationReport, request: PlannerRequest) -> Optional[Path]:
        """Persist the iteration history as JSON for later debugging."""
        if not self._settings.log_iterations or self._logs_root is None:
            return None
        logs_root = self._logs_root / "validator"
        try:
            logs_root.mkdir(parents=True, exist_ok=True)
        except OSError:
            LOGGER.warning("Unable to create validator log directory %s", logs_root)
            return None

        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "run_id": self._run_id,
            "request": request.to_payload(),
            "report": report.to_dict(),
        }
        path = logs_root / f"{timestamped_slug(self._run_id, prefix='validator')}.json"
        try:
            path.write_text(json.dumps(entry, indent=2, default=str), encoding="utf-8")
        except OSError as error:
            LOGGER.warning("Failed to write validator log %s: %s", path, error)
            return None
        return path
