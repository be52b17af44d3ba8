"""
Ordering utilities: gap detection, bridging, re-ranking, and plan validation.
"""

from importlib import import_module
from typing import Any

_EXPORTS = {
    "detect_gaps": "prioritizer.planning.gaps",
    "insert_bridging_tasks": "prioritizer.planning.bridging",
    "generate_candidates": "prioritizer.planning.bridging",
    "InsertionResult": "prioritizer.planning.bridging",
    "adjust": "prioritizer.planning.ranking",
    "AdjustmentResult": "prioritizer.planning.ranking",
    "AdjustmentScheduler": "prioritizer.planning.scheduler",
    "PlanValidator": "prioritizer.planning.validator",
    "ValidationReport": "prioritizer.planning.validator",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import planning helpers so light callers avoid the asyncio stack."""
    if name in _EXPORTS:
        module = import_module(_EXPORTS[name])
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
