"""Versioned graph storage.

Every commit adds a version row; a current-version index per logical id
is only moved by a successful optimistic-concurrency commit.
"""

from kg_merge.graph.knowledge_graph import KnowledgeGraph
from kg_merge.graph.sqlite_store import SQLiteGraphStore
from kg_merge.graph.store import GraphStore, InMemoryGraphStore

__all__ = ["GraphStore", "InMemoryGraphStore", "KnowledgeGraph", "SQLiteGraphStore"]
