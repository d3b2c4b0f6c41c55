"""Knowledge graph view of the store using NetworkX MultiDiGraph."""

import json
import logging
from collections import Counter
from datetime import datetime
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _get_version
from pathlib import Path
from typing import Any

import networkx as nx

from kg_merge.graph.store import GraphStore

try:
    __version__ = _get_version("kg-merge")
except PackageNotFoundError:
    __version__ = "unknown"

logger = logging.getLogger(__name__)


class KnowledgeGraph:
    """NetworkX-based snapshot of the current graph.

    Nodes are logical entity ids, edges are keyed by the relationship's
    canonical key. Only current, non-retracted rows are included.
    """

    def __init__(self) -> None:
        self.graph = nx.MultiDiGraph()
        self.created_at = datetime.now()

    @classmethod
    def from_store(cls, store: GraphStore) -> "KnowledgeGraph":
        """Build a graph from the store's current rows."""
        kg = cls()
        for row in store.fetch_current():
            kg.graph.add_node(
                row.logical_id,
                entity_type=row.entity_type,
                labels=list(row.labels),
                version=row.version,
                run_id=row.run_id,
                properties=dict(row.properties),
            )
        skipped = 0
        for rel in store.all_relationships():
            # Edges to retracted or missing entities are left out
            if not (kg.graph.has_node(rel.source_id) and kg.graph.has_node(rel.target_id)):
                skipped += 1
                continue
            kg.graph.add_edge(
                rel.source_id,
                rel.target_id,
                key=rel.logical_id,
                relation_type=rel.relation_type,
                properties=dict(rel.properties),
                version=rel.version,
                run_id=rel.run_id,
            )
        if skipped:
            logger.debug(f"Skipped {skipped} relationships with a missing endpoint")
        return kg

    def export(self) -> dict[str, Any]:
        """Export graph as JSON-serializable dict."""
        nodes = [{"id": node_id, **data} for node_id, data in self.graph.nodes(data=True)]
        links = [
            {"source": source, "target": target, "key": key, **data}
            for source, target, key, data in self.graph.edges(data=True, keys=True)
        ]

        type_counts = Counter(data.get("entity_type") for _, data in self.graph.nodes(data=True))
        relation_counts = Counter(data.get("relation_type") for _, _, data in self.graph.edges(data=True))
        metadata = {
            "created_at": self.created_at.isoformat(),
            "entity_count": self.entity_count,
            "relation_count": self.relation_count,
            "entity_type_summary": dict(type_counts),
            "relation_type_summary": dict(relation_counts),
            "kg_merge_version": __version__,
        }
        return {"metadata": metadata, "nodes": nodes, "links": links}

    def save(self, path: str | Path) -> None:
        """Save graph to JSON file."""
        out = Path(path)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(json.dumps(self.export(), indent=2, default=str))
        logger.info(f"Graph saved: {self.entity_count} entities, {self.relation_count} relations → {out}")

    @property
    def entity_count(self) -> int:
        return self.graph.number_of_nodes()

    @property
    def relation_count(self) -> int:
        return self.graph.number_of_edges()
