"""Tests for the NetworkX graph view and JSON export."""

import json

from kg_merge.graph.knowledge_graph import KnowledgeGraph
from kg_merge.pipeline import run_export

from conftest import ACME_ID, start


class TestKnowledgeGraph:
    """Test building and exporting the current graph."""

    def test_from_store(self, orchestrator, acme_store, sample_transform):
        start(orchestrator, sample_transform)
        kg = KnowledgeGraph.from_store(acme_store)

        assert kg.entity_count == 4
        assert kg.relation_count == 2
        node = kg.graph.nodes[ACME_ID]
        assert node["entity_type"] == "Company"
        assert node["version"] == 1
        assert node["properties"]["name"] == "Acme Inc"
        edge = kg.graph.edges["person:p_1", "company:0000000001", "person:p_1|OFFICER_OF|company:0000000001"]
        assert edge["relation_type"] == "OFFICER_OF"
        assert edge["properties"] == {"title": "CEO"}

    def test_current_rows_only(self, acme_store):
        acme_store.commit_entity(ACME_ID, {"cik": "0000320193", "name": "Acme Corporation"}, 1)
        acme_store.commit_entity("company:gone", {"name": "Gone"}, 0, entity_type="Company")
        acme_store.commit_relationship(ACME_ID, "SUBSIDIARY_OF", "company:gone", {}, 0)
        acme_store.commit_entity("company:gone", {}, 1, retracted=True)

        kg = KnowledgeGraph.from_store(acme_store)
        assert list(kg.graph.nodes) == [ACME_ID]
        assert kg.graph.nodes[ACME_ID]["version"] == 2
        assert kg.relation_count == 0

    def test_export_shape(self, orchestrator, acme_store, sample_transform):
        start(orchestrator, sample_transform)
        data = KnowledgeGraph.from_store(acme_store).export()

        assert set(data) == {"metadata", "nodes", "links"}
        assert data["metadata"]["entity_type_summary"] == {"Company": 3, "Person": 1}
        assert data["metadata"]["relation_type_summary"] == {"SUBSIDIARY_OF": 1, "OFFICER_OF": 1}
        link = next(link for link in data["links"] if link["relation_type"] == "SUBSIDIARY_OF")
        assert link["source"] == "company:0000000002"
        assert link["key"] == "company:0000000002|SUBSIDIARY_OF|company:0000000001"

    def test_run_export_writes_json(self, acme_store, tmp_dir):
        path = tmp_dir / "exports" / "graph.json"
        kg = run_export(acme_store, path)
        data = json.loads(path.read_text())
        assert data["metadata"]["entity_count"] == kg.entity_count == 1
        assert data["nodes"][0]["id"] == ACME_ID
