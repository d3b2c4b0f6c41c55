"""Shared test fixtures for kg-merge."""

import tempfile
from pathlib import Path

import pytest

from kg_merge.extract.models import ExtractedEntity, ExtractedRelationship, Transform
from kg_merge.graph.store import InMemoryGraphStore
from kg_merge.merge.models import MergeSettings
from kg_merge.merge.orchestrator import MergeOrchestrator
from kg_merge.ontology.loader import load_ontology
from kg_merge.ontology.models import Ontology
from kg_merge.quality.gate import QualityGate
from kg_merge.quality.models import QualityResult

ACME_ID = "company:0000320193"
ACME_CIK = "0000320193"


def company(ref: str, cik: str, name: str, confidence: float = 0.95, **props) -> ExtractedEntity:
    """Build an extracted Company."""
    return ExtractedEntity(
        ref=ref,
        entity_type="Company",
        properties={"cik": cik, "name": name, **props},
        confidence=confidence,
    )


def person(ref: str, person_id: str, name: str, confidence: float = 0.95, **props) -> ExtractedEntity:
    """Build an extracted Person."""
    return ExtractedEntity(
        ref=ref,
        entity_type="Person",
        properties={"person_id": person_id, "name": name, **props},
        confidence=confidence,
    )


def relation(source: str, relation_type: str, target: str, confidence: float = 0.9, **props) -> ExtractedRelationship:
    return ExtractedRelationship(
        relation_type=relation_type,
        source_ref=source,
        target_ref=target,
        properties=props,
        confidence=confidence,
    )


def approve(gate: QualityGate, transform_id: str) -> None:
    """Record a clean quality result, which the gate auto-approves."""
    gate.record(transform_id, QualityResult(transform_id=transform_id, overall_score=100.0, grade="A"))


def start(orchestrator: MergeOrchestrator, transform: Transform, session_id: str = "session-1"):
    """Register, approve and merge a transform."""
    orchestrator.add_transform(transform)
    approve(orchestrator.gate, transform.transform_id)
    return orchestrator.start_merge(session_id, transform.transform_id)


@pytest.fixture
def ontology() -> Ontology:
    """The bundled company filings ontology."""
    return load_ontology()


@pytest.fixture
def store() -> InMemoryGraphStore:
    return InMemoryGraphStore()


@pytest.fixture
def gate() -> QualityGate:
    return QualityGate()


@pytest.fixture
def acme_store(store) -> InMemoryGraphStore:
    """Store holding Acme at version 1."""
    store.commit_entity(
        ACME_ID,
        {"cik": ACME_CIK, "name": "Acme Inc", "status": "active"},
        0,
        entity_type="Company",
        labels=["Organization"],
        unique_keys=["cik"],
        run_id="seed",
    )
    return store


@pytest.fixture
def orchestrator(acme_store, ontology, gate) -> MergeOrchestrator:
    """Orchestrator over the Acme store, auto-resolving at 0.9."""
    return MergeOrchestrator(acme_store, ontology, gate, MergeSettings(concurrency=4))


@pytest.fixture
def sample_transform() -> Transform:
    """Two new companies, one officer and their relationships."""
    return Transform(
        transform_id="t-new",
        session_id="session-1",
        source_document="10-K 2024",
        entities=[
            company("c1", "0000000001", "Globex Corporation"),
            company("c2", "0000000002", "Initech LLC"),
            person("p1", "P-1", "Hank Scorpio", role="CEO"),
        ],
        relationships=[
            relation("c2", "SUBSIDIARY_OF", "c1"),
            relation("p1", "OFFICER_OF", "c1", title="CEO"),
        ],
    )


@pytest.fixture
def tmp_dir():
    """Temporary directory that cleans up after test."""
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)
