"""Error taxonomy shared by the graph, planning, and validation layers."""

from __future__ import annotations

from typing import Any, Mapping, Optional

__all__ = [
    "CycleError",
    "GenerationFailure",
    "PrioritizerError",
    "StaleReferenceError",
    "StructuralError",
    "ValidationExhausted",
]


class PrioritizerError(RuntimeError):
    """Base error carrying enough context to reconstruct a failure."""

    def __init__(self, message: str, *, context: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = dict(context or {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": str(self),
            "context": dict(self.context),
        }


class StructuralError(PrioritizerError):
    """Raised for malformed input; the whole operation is rejected."""


class CycleError(PrioritizerError):
    """Raised when a prerequisite/blocks cycle survives resolution."""


class StaleReferenceError(PrioritizerError):
    """Raised when an anchor or lock no longer exists in the current baseline."""


class GenerationFailure(PrioritizerError):
    """Raised when an external generator returned invalid or empty candidates."""

    requires_manual_input = True


class ValidationExhausted(PrioritizerError):
    """Recorded when the plan validator hits its repair cap."""
