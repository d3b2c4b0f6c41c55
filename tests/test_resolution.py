"""Tests for the resolution engine and strategy application."""

import threading

import pytest

from kg_merge.errors import ConflictAlreadyResolved, ConflictResolutionError, NotFoundError
from kg_merge.graph.store import InMemoryGraphStore
from kg_merge.merge.models import Conflict, PropertyDiff, RelationshipDiff, Resolution, SuggestedResolution
from kg_merge.merge.resolution import ResolutionEngine, apply_resolution, validate_resolution

from conftest import ACME_ID

STORED = {"cik": "0000320193", "name": "Acme Inc", "status": "active"}


def _conflict(conflict_id="c1", suggestion=None, **kwargs) -> Conflict:
    defaults = dict(
        conflict_id=conflict_id,
        run_id="run-1",
        entity_ref="e1",
        logical_id=ACME_ID,
        entity_type="Company",
        conflict_type="property_conflict",
        property_diffs=[
            PropertyDiff(name="name", change="change", existing_value="Acme Inc", new_value="Acme Corporation"),
            PropertyDiff(name="status", change="removal", existing_value="active"),
            PropertyDiff(name="employees", change="addition", new_value=50),
        ],
        relationship_diffs=[
            RelationshipDiff(relation_type="SUBSIDIARY_OF", target_id="company:new", change="addition"),
            RelationshipDiff(relation_type="SUBSIDIARY_OF", target_id="company:old", change="removal"),
        ],
        suggested_resolution=suggestion,
        confidence=0.8,
    )
    defaults.update(kwargs)
    return Conflict(**defaults)


def _duplicate(conflict_id="d1") -> Conflict:
    return Conflict(
        conflict_id=conflict_id, run_id="run-1", entity_ref="e1", entity_type="Company",
        conflict_type="duplicate_match", candidate_ids=[ACME_ID, "company:dup"],
    )


@pytest.fixture
def engine(store) -> ResolutionEngine:
    return ResolutionEngine(store, auto_resolve_threshold=0.9)


class TestStateMachine:
    """Test PENDING -> AWAITING_REVIEW -> RESOLVED."""

    def test_no_suggestion_awaits_review(self, engine, store):
        registered = engine.register(_conflict())
        assert registered.status == "AWAITING_REVIEW"
        assert store.feedback() == []

    def test_confident_suggestion_auto_resolves(self, engine, store):
        suggestion = SuggestedResolution(strategy="ACCEPT", confidence=0.95, reason="additions only")
        registered = engine.register(_conflict(suggestion=suggestion))
        assert registered.status == "RESOLVED"
        resolution = engine.resolution("c1")
        assert resolution.automatic is True
        assert resolution.strategy == "ACCEPT"
        [record] = store.feedback(conflict_id="c1")
        assert record.automatic is True
        assert record.learning_comment == "auto-resolved: additions only"

    def test_threshold_is_inclusive(self, engine):
        suggestion = SuggestedResolution(strategy="REJECT", confidence=0.9)
        assert engine.register(_conflict(suggestion=suggestion)).status == "RESOLVED"

    def test_weak_suggestion_awaits_review(self, engine):
        suggestion = SuggestedResolution(strategy="ACCEPT", confidence=0.89)
        assert engine.register(_conflict(suggestion=suggestion)).status == "AWAITING_REVIEW"

    def test_register_twice_rejected(self, engine):
        engine.register(_conflict())
        with pytest.raises(ConflictResolutionError, match="already registered"):
            engine.register(_conflict())

    def test_ensure_registered_once(self, engine, store):
        suggestion = SuggestedResolution(strategy="ACCEPT", confidence=0.95)
        first = engine.ensure_registered(_conflict(suggestion=suggestion))
        again = engine.ensure_registered(_conflict(suggestion=suggestion))
        assert first.status == again.status == "RESOLVED"
        assert len(store.feedback(conflict_id="c1")) == 1

    def test_resolve_records_feedback_verbatim(self, engine, store):
        engine.register(_conflict())
        comment = "Name changed after the 2023 rebrand.\nSee 8-K."
        resolution, created = engine.resolve("c1", "ACCEPT", learning_comment=comment)
        assert created is True
        assert engine.get("c1").status == "RESOLVED"
        [record] = store.feedback(conflict_id="c1")
        assert record.learning_comment == comment
        assert record.strategy == "ACCEPT"
        assert record.automatic is False
        assert record.logical_id == ACME_ID

    def test_unknown_conflict(self, engine):
        with pytest.raises(NotFoundError):
            engine.resolve("missing", "ACCEPT")
        with pytest.raises(NotFoundError):
            engine.get("missing")

    def test_conflicts_filtered(self, engine):
        engine.register(_conflict("c1"))
        engine.register(_conflict("c2", run_id="run-2"))
        engine.resolve("c1", "REJECT")
        assert [c.conflict_id for c in engine.conflicts(run_id="run-1")] == ["c1"]
        assert [c.conflict_id for c in engine.conflicts(status="AWAITING_REVIEW")] == ["c2"]

    def test_guard_blocks_resolution(self, engine, store):
        engine.register(_conflict())

        def guard(conflict):
            raise ConflictResolutionError("run is gone")

        with pytest.raises(ConflictResolutionError, match="run is gone"):
            engine.resolve("c1", "ACCEPT", guard=guard)
        assert engine.get("c1").status == "AWAITING_REVIEW"
        assert store.feedback() == []

    def test_feedback_failure_leaves_conflict_open(self, engine, store, monkeypatch):
        engine.register(_conflict())

        def broken(record):
            raise RuntimeError("disk full")

        monkeypatch.setattr(store, "record_feedback", broken)
        with pytest.raises(RuntimeError):
            engine.resolve("c1", "ACCEPT")
        assert engine.get("c1").status == "AWAITING_REVIEW"
        assert engine.resolution("c1") is None


class TestIdempotency:
    """Test re-resolution of a settled conflict."""

    def test_identical_resolution_is_noop(self, engine, store):
        engine.register(_conflict())
        first, created = engine.resolve("c1", "MERGE", {"name": "Acme Inc", "status": "active"}, "first")
        again, created_again = engine.resolve("c1", "MERGE", {"name": "Acme Inc", "status": "active"}, "other")
        assert created is True
        assert created_again is False
        assert again.learning_comment == "first"
        assert again.resolved_at == first.resolved_at
        assert len(store.feedback(conflict_id="c1")) == 1

    def test_different_resolution_raises(self, engine):
        engine.register(_conflict())
        engine.resolve("c1", "ACCEPT")
        with pytest.raises(ConflictAlreadyResolved):
            engine.resolve("c1", "REJECT")
        with pytest.raises(ConflictAlreadyResolved):
            engine.resolve("c1", "MERGE", {"name": "x", "status": None})

    def test_concurrent_different_strategies(self, engine, store):
        """Exactly one of two racing resolutions wins."""
        engine.register(_conflict())
        outcomes = []
        barrier = threading.Barrier(2)

        def resolve(strategy):
            barrier.wait()
            try:
                engine.resolve("c1", strategy)
                outcomes.append(("ok", strategy))
            except ConflictAlreadyResolved:
                outcomes.append(("already", strategy))

        threads = [threading.Thread(target=resolve, args=(s,)) for s in ("ACCEPT", "REJECT")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(kind for kind, _ in outcomes) == ["already", "ok"]
        winner = next(s for kind, s in outcomes if kind == "ok")
        assert engine.resolution("c1").strategy == winner
        assert len(store.feedback(conflict_id="c1")) == 1


class TestValidation:
    """Test resolution requests rejected before anything changes."""

    def test_unknown_strategy(self):
        with pytest.raises(ConflictResolutionError, match="Unknown strategy"):
            validate_resolution(_conflict(), "IGNORE", {}, None)

    def test_modify_needs_every_field(self):
        with pytest.raises(ConflictResolutionError, match="SUBSIDIARY_OF->company:old"):
            validate_resolution(_conflict(), "MODIFY", {
                "name": "Acme Corp", "status": "active", "employees": 40,
                "SUBSIDIARY_OF->company:new": True,
            }, None)

    def test_modify_complete(self):
        validate_resolution(_conflict(), "MODIFY", {
            "name": "Acme Corp", "status": "active", "employees": 40,
            "SUBSIDIARY_OF->company:new": True, "SUBSIDIARY_OF->company:old": True,
        }, None)

    def test_relationship_keep_flag_must_be_bool(self):
        with pytest.raises(ConflictResolutionError, match="boolean"):
            validate_resolution(_conflict(), "MODIFY", {"SUBSIDIARY_OF->company:new": "yes"}, None)

    def test_unknown_relationship_field(self):
        with pytest.raises(ConflictResolutionError, match="not a relationship"):
            validate_resolution(_conflict(), "MODIFY", {"FILED->filing:1": True}, None)

    def test_merge_needs_scalar_values(self):
        with pytest.raises(ConflictResolutionError, match="name, status"):
            validate_resolution(_conflict(), "MERGE", {}, None)

    def test_merge_cannot_override_relationships(self):
        with pytest.raises(ConflictResolutionError, match="unions relationships"):
            validate_resolution(_conflict(), "MERGE", {
                "name": "x", "status": "y", "SUBSIDIARY_OF->company:old": False,
            }, None)

    def test_canonical_id_only_for_duplicates(self):
        with pytest.raises(ConflictResolutionError, match="duplicate_match"):
            validate_resolution(_conflict(), "ACCEPT", {}, ACME_ID)

    def test_duplicate_cannot_be_accepted(self):
        with pytest.raises(ConflictResolutionError, match="cannot be accepted"):
            validate_resolution(_duplicate(), "ACCEPT", {}, None)

    def test_duplicate_needs_candidate(self):
        with pytest.raises(ConflictResolutionError, match="canonical_id"):
            validate_resolution(_duplicate(), "MERGE", {}, None)
        with pytest.raises(ConflictResolutionError, match="canonical_id"):
            validate_resolution(_duplicate(), "MODIFY", {}, "company:elsewhere")
        validate_resolution(_duplicate(), "MERGE", {}, "company:dup")
        validate_resolution(_duplicate(), "REJECT", {}, None)

    def test_invalid_request_keeps_conflict_open(self, engine):
        engine.register(_conflict())
        with pytest.raises(ConflictResolutionError):
            engine.resolve("c1", "MODIFY", {"name": "x"})
        assert engine.get("c1").status == "AWAITING_REVIEW"
        engine.resolve("c1", "ACCEPT")


class TestApplyResolution:
    """Test what each strategy commits."""

    def _apply(self, strategy, changed_props=None, conflict=None, canonical_id=None):
        resolution = Resolution(conflict_id="c1", strategy=strategy, changed_props=changed_props or {},
                                canonical_id=canonical_id)
        return apply_resolution(conflict or _conflict(), resolution, dict(STORED))

    def test_accept_replaces_everything(self):
        applied = self._apply("ACCEPT")
        assert applied.write is True
        assert applied.properties == {"cik": "0000320193", "name": "Acme Corporation", "employees": 50}
        assert [d.target_id for d in applied.add_relationships] == ["company:new"]
        assert [d.target_id for d in applied.retract_relationships] == ["company:old"]

    def test_reject_keeps_stored(self):
        applied = self._apply("REJECT")
        assert applied.write is False
        assert applied.properties == STORED
        assert applied.add_relationships == []
        assert applied.retract_relationships == []

    def test_merge_unions_relationships(self):
        applied = self._apply("MERGE", {"name": "Acme Inc", "status": "active"})
        assert applied.properties == {**STORED, "employees": 50}
        assert [d.target_id for d in applied.add_relationships] == ["company:new"]
        assert applied.retract_relationships == []

    def test_merge_scalar_override(self):
        applied = self._apply("MERGE", {"name": "ACME Incorporated", "status": None})
        assert applied.properties == {"cik": "0000320193", "name": "ACME Incorporated", "employees": 50}

    def test_modify_uses_changed_props(self):
        applied = self._apply("MODIFY", {
            "name": "Acme Corp", "status": "inactive", "employees": 45,
            "SUBSIDIARY_OF->company:new": False, "SUBSIDIARY_OF->company:old": False,
        })
        assert applied.properties == {"cik": "0000320193", "name": "Acme Corp", "status": "inactive",
                                      "employees": 45}
        assert applied.add_relationships == []
        assert [d.target_id for d in applied.retract_relationships] == ["company:old"]

    def test_modify_keeps_unaddressed_additions(self):
        """Fresh additions that appeared after review are not lost."""
        conflict = _conflict(property_diffs=[
            PropertyDiff(name="name", change="change", existing_value="Acme Inc", new_value="Acme Corporation"),
            PropertyDiff(name="founded", change="addition", new_value="1976-04-01"),
        ], relationship_diffs=[])
        applied = self._apply("MODIFY", {"name": "Acme Corp"}, conflict=conflict)
        assert applied.properties["founded"] == "1976-04-01"
        assert applied.properties["name"] == "Acme Corp"

    def test_no_change_means_no_write(self):
        conflict = _conflict(property_diffs=[], relationship_diffs=[])
        assert self._apply("ACCEPT", conflict=conflict).write is False

    def test_canonical_id_targets_chosen_row(self):
        applied = self._apply("MERGE", {}, conflict=_duplicate(), canonical_id="company:dup")
        assert applied.logical_id == "company:dup"


class TestEngineOnOwnStore:
    """The engine works with any store."""

    def test_separate_store(self):
        store = InMemoryGraphStore()
        engine = ResolutionEngine(store, auto_resolve_threshold=0.5)
        suggestion = SuggestedResolution(strategy="ACCEPT", confidence=0.5)
        assert engine.register(_conflict(suggestion=suggestion)).is_resolved
        assert len(store.feedback()) == 1
