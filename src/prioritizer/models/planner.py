"""Planner request types and tolerant parsing of generative planner output."""

from __future__ import annotations

import ast
import json
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..memory.schema import DirectiveType, ReflectionClassification, Task

__all__ = [
    "Planner",
    "PlannerError",
    "PlannerRequest",
    "PlannerResponseFormatError",
    "PlannerTransportError",
    "ReplayPlanner",
    "parse_json_payload",
]


class PlannerError(RuntimeError):
    """Base error raised for planner failures."""


class PlannerTransportError(PlannerError):
    """Raised when the planner fails to return a response."""


class PlannerResponseFormatError(PlannerError):
    """Raised when the planner returns payload that is not valid JSON."""


@dataclass(slots=True)
class PlannerRequest:
    """Inputs handed to the external planner on every iteration."""

    tasks: List[Task]
    directives: List[ReflectionClassification] = field(default_factory=list)
    outcome: str = ""
    repair_instructions: List[str] = field(default_factory=list)
    iteration: int = 1
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def task_map(self) -> Dict[str, Task]:
        return {task.id: task for task in self.tasks}

    def with_repairs(self, instructions: Sequence[str], iteration: int) -> "PlannerRequest":
        """Return a copy carrying evaluator feedback for the next attempt."""
        return replace(self, repair_instructions=list(instructions), iteration=iteration)

    def render_prompt(self) -> str:
        lines: List[str] = []
        if self.outcome:
            lines.append(f"Outcome: {self.outcome}")
        lines.append("Tasks:")
        for task in self.tasks:
            effort = f" ({task.effort_hours}h)" if task.effort_hours else ""
            lines.append(f"- {task.id}: {task.text}{effort}")
        negations = [item for item in self.directives if item.directive is DirectiveType.NEGATION]
        positives = [item for item in self.directives if item.directive is DirectiveType.POSITIVE]
        if negations:
            lines.append("Exclude these tasks:")
            lines.extend(f"- {', '.join(item.target_task_ids)}" for item in negations)
        if positives:
            lines.append("Prioritise these tasks:")
            lines.extend(f"- {', '.join(item.target_task_ids)}" for item in positives)
        if self.repair_instructions:
            lines.append("Fix the following problems from the previous attempt:")
            lines.extend(f"- {instruction}" for instruction in self.repair_instructions)
        lines.append(
            "Respond with JSON: ordered_task_ids, confidence_scores, excluded_tasks "
            "(task_id, reason), synthesis_summary."
        )
        return "\n".join(lines)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "iteration": self.iteration,
            "outcome": self.outcome,
            "tasks": [task.model_dump(mode="json", exclude={"embedding"}) for task in self.tasks],
            "directives": [item.model_dump(mode="json") for item in self.directives],
            "repair_instructions": list(self.repair_instructions),
            "metadata": dict(self.metadata),
        }


class Planner:
    """Asynchronous planner returning raw (untrusted) text for a request."""

    name = "planner"

    async def generate(self, request: PlannerRequest) -> str:
        """Produce a raw candidate plan. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement generate().")


class ReplayPlanner(Planner):
    """Offline planner that replays recorded payloads in order."""

    name = "replay"

    def __init__(self, payloads: Sequence[Any]) -> None:
        self._payloads = [
            payload if isinstance(payload, str) else json.dumps(payload) for payload in payloads
        ]
        self.requests: List[PlannerRequest] = []

    async def generate(self, request: PlannerRequest) -> str:
        self.requests.append(request)
        index = len(self.requests) - 1
        if index >= len(self._payloads):
            raise PlannerTransportError(
                f"Replay planner has no payload for iteration {request.iteration}"
            )
        return self._payloads[index]


_TYPOGRAPHIC = str.maketrans({"\u201c": "\"", "\u201d": "\"", "\u2018": "'", "\u2019": "'", "\u00a0": " ", "\ufeff": ""})
_FENCE = re.compile(r"```(?:json)?\s*\n(.*?)```", re.IGNORECASE | re.DOTALL)
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")
_DECODER = json.JSONDecoder()


def parse_json_payload(raw_response: Optional[str]) -> Any:
    """Decode planner output, tolerating fences, chatter, trailing commas, and Python literals."""
    text = (raw_response or "").translate(_TYPOGRAPHIC).strip()
    if not text:
        raise PlannerResponseFormatError("Planner returned an empty response.")

    for candidate in _candidates(text):
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            pass
        start = _first_container(candidate)
        if start is not None:
            try:
                value, _ = _DECODER.raw_decode(candidate, start)
            except json.JSONDecodeError:
                pass
            else:
                return value
        literal = _python_literal(candidate)
        if literal is not None:
            return literal

    raise PlannerResponseFormatError(f"Planner returned invalid JSON: {text[:200]}")


def _candidates(text: str) -> List[str]:
    """Fenced body first, then the whole text; each also without trailing commas."""
    fence = _FENCE.search(text)
    bases = [fence.group(1).strip(), text] if fence else [text]
    candidates: List[str] = []
    for base in bases:
        for variant in (base, _TRAILING_COMMA.sub(r"\1", base)):
            if variant and variant not in candidates:
                candidates.append(variant)
    return candidates


def _first_container(text: str) -> Optional[int]:
    positions = [index for index in (text.find("{"), text.find("[")) if index != -1]
    return min(positions) if positions else None


def _python_literal(candidate: str) -> Any:
    try:
        value = ast.literal_eval(candidate)
    except (SyntaxError, TypeError, ValueError):
        return None
    return _jsonable(value)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)
