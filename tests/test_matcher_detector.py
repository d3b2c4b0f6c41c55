"""Tests for unique-key matching and conflict detection."""

import pytest

from kg_merge.errors import MatchAmbiguityError
from kg_merge.extract.models import ExtractedEntity
from kg_merge.graph.models import RelationshipVersion
from kg_merge.merge.detector import (
    AssertedRelationship,
    ConflictDetector,
    clamp,
    diff_properties,
    diff_relationships,
)
from kg_merge.merge.matcher import EntityMatcher, GraphIndex, MatchResult, make_logical_id

from conftest import ACME_CIK, ACME_ID, company


def _stored_rel(source, relation_type, target, **props) -> RelationshipVersion:
    key = f"{source}|{relation_type}|{target}"
    return RelationshipVersion(row_id=f"{key}@v1", logical_id=key, relation_type=relation_type,
                               source_id=source, target_id=target, properties=props, version=1)


class TestLogicalIds:
    """Test logical id generation for new entities."""

    def test_from_unique_keys(self):
        entity = company("c1", "0000320193", "Acme")
        assert make_logical_id(entity, ["cik"]) == "company:0000320193"

    def test_normalizes_key_values(self):
        entity = ExtractedEntity(ref="p", entity_type="Person", properties={"person_id": "  José García "})
        assert make_logical_id(entity, ["person_id"]) == "person:jose_garcia"

    def test_exact_ids_keep_keys_apart(self):
        dashed = company("a", "A-1", "Alpha Corp")
        spaced = company("b", "a 1", "Beta Corp")
        assert make_logical_id(dashed, ["cik"]) == make_logical_id(spaced, ["cik"]) == "company:a_1"

        exact = make_logical_id(dashed, ["cik"], exact=True)
        assert exact.startswith("company:a_1-")
        assert exact == make_logical_id(dashed, ["cik"], exact=True)
        assert exact != make_logical_id(spaced, ["cik"], exact=True)

    def test_extractor_id_wins(self):
        entity = ExtractedEntity(ref="c", logical_id="company:custom", entity_type="Company",
                                 properties={"cik": "1"})
        assert make_logical_id(entity, ["cik"]) == "company:custom"

    def test_random_without_keys(self):
        entity = ExtractedEntity(ref="f", entity_type="Filing", properties={})
        first = make_logical_id(entity, ["accession_number"])
        assert first.startswith("filing:")
        assert first != make_logical_id(entity, ["accession_number"])


class TestEntityMatcher:
    """Test matching against the stored graph index."""

    def test_single_match(self, acme_store, ontology):
        index = GraphIndex.build(acme_store, ontology)
        result = EntityMatcher().match(company("c1", ACME_CIK, "Acme Corporation"), index)
        assert result.kind == "one"
        assert result.require_single() == ACME_ID

    def test_no_match_is_new(self, acme_store, ontology):
        index = GraphIndex.build(acme_store, ontology)
        result = EntityMatcher().match(company("c1", "0000000001", "Globex"), index)
        assert result.kind == "none"
        assert result.require_single() is None

    def test_duplicate_rows_are_ambiguous(self, acme_store, ontology):
        """Two stored rows sharing a cik never auto-select one."""
        acme_store.commit_entity("company:acme-dup", {"cik": ACME_CIK, "name": "ACME"}, 0, entity_type="Company")
        index = GraphIndex.build(acme_store, ontology)
        result = EntityMatcher().match(company("c1", ACME_CIK, "Acme"), index)
        assert result.kind == "many"
        assert result.candidate_ids == (ACME_ID, "company:acme-dup")
        with pytest.raises(MatchAmbiguityError) as exc_info:
            result.require_single()
        assert exc_info.value.candidate_ids == [ACME_ID, "company:acme-dup"]

    def test_missing_key_never_matches(self, acme_store, ontology):
        index = GraphIndex.build(acme_store, ontology)
        entity = ExtractedEntity(ref="c1", entity_type="Company", properties={"name": "Acme Inc"})
        assert EntityMatcher().match(entity, index).kind == "none"

    def test_all_unique_keys_must_match(self):
        """Partial unique-key equality is not a match."""
        index = GraphIndex(unique_keys={"Listing": ["exchange", "ticker"]})
        index.add("Listing", "listing:1", {"exchange": "NYSE", "ticker": "ACME"})
        assert index.lookup("Listing", {"exchange": "NYSE", "ticker": "ACME"}) == ["listing:1"]
        assert index.lookup("Listing", {"exchange": "NASDAQ", "ticker": "ACME"}) == []
        assert index.lookup("Listing", {"ticker": "ACME"}) == []

    def test_type_without_keys_never_matches(self):
        index = GraphIndex(unique_keys={"Note": []})
        index.add("Note", "note:1", {"text": "x"})
        assert index.lookup("Note", {"text": "x"}) == []

    def test_value_types_are_distinguished(self):
        index = GraphIndex(unique_keys={"Company": ["cik"]})
        index.add("Company", "company:1", {"cik": 320193})
        assert index.lookup("Company", {"cik": "320193"}) == []

    def test_retracted_rows_not_indexed(self, acme_store, ontology):
        acme_store.commit_entity(ACME_ID, {}, 1, retracted=True)
        index = GraphIndex.build(acme_store, ontology)
        assert EntityMatcher().match(company("c1", ACME_CIK, "Acme"), index).kind == "none"


class TestDiffs:
    """Test property and relationship diffing."""

    def test_property_diff_kinds(self):
        diffs = diff_properties(
            {"name": "Acme Inc", "status": "active", "employees": 10},
            {"name": "Acme Corporation", "status": None, "founded": "1990-01-01", "employees": 10},
        )
        assert [(d.name, d.change) for d in diffs] == [
            ("name", "change"), ("status", "removal"), ("founded", "addition"),
        ]

    def test_unmentioned_keys_are_not_diffs(self):
        assert diff_properties({"name": "Acme", "status": "active"}, {"name": "Acme"}) == []

    def test_relationship_diffs_only_for_asserted_types(self):
        stored = [
            _stored_rel(ACME_ID, "SUBSIDIARY_OF", "company:parent"),
            _stored_rel(ACME_ID, "FILED", "filing:old"),
        ]
        asserted = [AssertedRelationship("SUBSIDIARY_OF", "company:new-parent")]
        diffs = diff_relationships(stored, asserted)
        assert [(d.relation_type, d.target_id, d.change) for d in diffs] == [
            ("SUBSIDIARY_OF", "company:new-parent", "addition"),
            ("SUBSIDIARY_OF", "company:parent", "removal"),
        ]
        assert diffs[0].field == "SUBSIDIARY_OF->company:new-parent"

    def test_repeated_assertions_collapse(self):
        asserted = [AssertedRelationship("FILED", "filing:1"), AssertedRelationship("FILED", "filing:1")]
        assert len(diff_relationships([], asserted)) == 1

    def test_clamp(self):
        assert clamp(1.5) == 1.0
        assert clamp(-0.1) == 0.0


class TestConflictDetector:
    """Test conflict classification and suggestions."""

    def _detect(self, ontology, store, entity, **kwargs):
        index = GraphIndex.build(store, ontology)
        match = EntityMatcher().match(entity, index)
        logical_id = match.candidate_ids[0] if match.kind == "one" else ""
        existing = store.get_entity(logical_id) if logical_id else None
        return ConflictDetector(ontology).detect(
            entity, match, logical_id=logical_id, existing=existing, run_id="run-1", **kwargs,
        )

    def test_changed_name_is_property_conflict(self, ontology, acme_store):
        """The Acme rename gives one conflict on name with no suggestion."""
        conflict = self._detect(ontology, acme_store, company("c1", ACME_CIK, "Acme Corporation", confidence=0.8))
        assert conflict.conflict_type == "property_conflict"
        assert conflict.logical_id == ACME_ID
        assert [(d.name, d.existing_value, d.new_value) for d in conflict.property_diffs] == [
            ("name", "Acme Inc", "Acme Corporation"),
        ]
        assert conflict.suggested_resolution is None
        assert conflict.expected_version == 1
        assert conflict.confidence == pytest.approx(0.8)
        assert conflict.status == "PENDING"

    def test_all_diffs_in_one_conflict(self, ontology, acme_store):
        entity = company("c1", ACME_CIK, "Acme Corporation", status="inactive", employees=50)
        conflict = self._detect(ontology, acme_store, entity)
        assert {d.name for d in conflict.property_diffs} == {"name", "status", "employees"}

    def test_additions_suggest_accept(self, ontology, acme_store):
        conflict = self._detect(ontology, acme_store, company("c1", ACME_CIK, "Acme Inc", employees=50,
                                                             confidence=0.7))
        assert conflict.is_additive()
        assert conflict.suggested_resolution.strategy == "ACCEPT"
        assert conflict.suggested_resolution.confidence == pytest.approx(0.7)

    def test_forbidden_value_suggests_reject(self, ontology, acme_store):
        conflict = self._detect(ontology, acme_store, company("c1", ACME_CIK, "Acme Inc", status="Unknown"))
        assert conflict.suggested_resolution.strategy == "REJECT"

    def test_removal_needs_review(self, ontology, acme_store):
        conflict = self._detect(ontology, acme_store, company("c1", ACME_CIK, "Acme Inc", status=None))
        assert conflict.property_diffs[0].change == "removal"
        assert conflict.suggested_resolution is None

    def test_identical_entity_has_no_conflict(self, ontology, acme_store):
        assert self._detect(ontology, acme_store, company("c1", ACME_CIK, "Acme Inc")) is None

    def test_new_entity_has_no_conflict(self, ontology, acme_store):
        assert self._detect(ontology, acme_store, company("c1", "0000000001", "Globex")) is None

    def test_relationship_conflict(self, ontology, acme_store):
        acme_store.commit_relationship(ACME_ID, "SUBSIDIARY_OF", "company:parent", {}, 0)
        conflict = self._detect(
            ontology, acme_store, company("c1", ACME_CIK, "Acme Inc"),
            existing_relationships=acme_store.fetch_relationships(ACME_ID),
            asserted_relationships=[AssertedRelationship("SUBSIDIARY_OF", "company:other")],
        )
        assert conflict.conflict_type == "relationship_conflict"
        assert conflict.diff_fields == ["SUBSIDIARY_OF->company:other", "SUBSIDIARY_OF->company:parent"]
        assert conflict.suggested_resolution is None

    def test_relationship_addition_suggests_accept(self, ontology, acme_store):
        conflict = self._detect(
            ontology, acme_store, company("c1", ACME_CIK, "Acme Inc"),
            asserted_relationships=[AssertedRelationship("FILED", "filing:1")],
        )
        assert conflict.conflict_type == "relationship_conflict"
        assert conflict.suggested_resolution.strategy == "ACCEPT"

    def test_duplicate_match(self, ontology, acme_store):
        acme_store.commit_entity("company:acme-dup", {"cik": ACME_CIK, "name": "ACME"}, 0, entity_type="Company")
        conflict = self._detect(ontology, acme_store, company("c1", ACME_CIK, "Acme"))
        assert conflict.conflict_type == "duplicate_match"
        assert conflict.candidate_ids == [ACME_ID, "company:acme-dup"]
        assert conflict.logical_id == ""
        assert conflict.suggested_resolution is None

    def test_unknown_type_is_schema_mismatch(self, ontology, store):
        entity = ExtractedEntity(ref="x", entity_type="Spaceship", properties={"name": "Nostromo"},
                                 confidence=0.6)
        conflict = ConflictDetector(ontology).detect(entity, MatchResult(), logical_id="spaceship:1")
        assert conflict.conflict_type == "schema_mismatch"
        assert conflict.suggested_resolution.strategy == "REJECT"
        assert conflict.suggested_resolution.confidence == pytest.approx(0.6)

    def test_badly_typed_value_is_schema_mismatch(self, ontology, acme_store):
        conflict = self._detect(ontology, acme_store, company("c1", ACME_CIK, "Acme Inc", employees="lots"))
        assert conflict.conflict_type == "schema_mismatch"
        assert [d.name for d in conflict.property_diffs] == ["employees"]
        assert "employees" in conflict.message

    def test_confidence_is_product(self, ontology, acme_store):
        entity = company("c1", ACME_CIK, "Acme Corporation", confidence=0.5)
        index = GraphIndex.build(acme_store, ontology)
        match = MatchResult((ACME_ID,), confidence=0.5)
        conflict = ConflictDetector(ontology).detect(
            entity, match, logical_id=ACME_ID, existing=acme_store.get_entity(ACME_ID),
        )
        assert conflict.confidence == pytest.approx(0.25)
        assert EntityMatcher().match(entity, index).confidence == 1.0
