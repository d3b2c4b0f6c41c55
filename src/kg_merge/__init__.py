"""kg-merge: quality-gated merging into a versioned knowledge graph.

Scores extracted entities and relationships against ontology rules, gates
merges behind the quality result, matches new entities against the stored
graph by unique keys, detects and resolves conflicts automatically or with
a reviewer, and commits every change as a new version row.
"""

__version__ = "0.1.0"

from kg_merge.config import KgMergeConfig
from kg_merge.extract.models import Transform, load_transform
from kg_merge.graph.knowledge_graph import KnowledgeGraph
from kg_merge.graph.sqlite_store import SQLiteGraphStore
from kg_merge.graph.store import GraphStore, InMemoryGraphStore
from kg_merge.merge.orchestrator import MergeOrchestrator
from kg_merge.ontology.loader import load_ontology
from kg_merge.pipeline import apply_decisions, run_check, run_export, run_merge
from kg_merge.quality.engine import evaluate
from kg_merge.quality.gate import QualityGate

__all__ = [
    "__version__",
    "GraphStore",
    "InMemoryGraphStore",
    "KgMergeConfig",
    "KnowledgeGraph",
    "MergeOrchestrator",
    "QualityGate",
    "SQLiteGraphStore",
    "Transform",
    "apply_decisions",
    "evaluate",
    "load_ontology",
    "load_transform",
    "run_check",
    "run_export",
    "run_merge",
]
