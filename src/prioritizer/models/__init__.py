"""Convenience exports for planner integrations."""

from .planner import (
    Planner,
    PlannerError,
    PlannerRequest,
    PlannerResponseFormatError,
    PlannerTransportError,
    ReplayPlanner,
    parse_json_payload,
)

__all__ = [
    "Planner",
    "PlannerError",
    "PlannerRequest",
    "PlannerResponseFormatError",
    "PlannerTransportError",
    "ReplayPlanner",
    "parse_json_payload",
]
