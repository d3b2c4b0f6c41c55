"""Merge runs: matching, conflict detection, resolution and commit."""

from kg_merge.merge.detector import ConflictDetector
from kg_merge.merge.matcher import EntityMatcher, GraphIndex, MatchResult
from kg_merge.merge.orchestrator import MergeOrchestrator
from kg_merge.merge.resolution import ResolutionEngine, apply_resolution

__all__ = [
    "ConflictDetector",
    "EntityMatcher",
    "GraphIndex",
    "MatchResult",
    "MergeOrchestrator",
    "ResolutionEngine",
    "apply_resolution",
]
