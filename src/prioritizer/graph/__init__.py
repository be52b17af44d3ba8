"""Relationship graph snapshots and cycle-safe edge insertion."""

from .cycles import EdgeProposalResult, MergedEdge, ResolvedConflict, kahn_remaining, propose_edges
from .relationships import RelationshipGraph, find_cycle

__all__ = [
    "EdgeProposalResult",
    "MergedEdge",
    "RelationshipGraph",
    "ResolvedConflict",
    "find_cycle",
    "kahn_remaining",
    "propose_edges",
]
