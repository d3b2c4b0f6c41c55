"""Per-conflict resolution state machine and strategy application.

Conflicts enter as PENDING. A conflict whose suggestion reaches the
auto-resolve threshold is settled immediately; every other conflict waits
in AWAITING_REVIEW until ``resolve`` is called for it. Every resolution,
automatic or not, appends a FeedbackRecord to the store.
"""

import logging
import threading
import uuid
from collections.abc import Callable
from typing import Any

from kg_merge.errors import ConflictAlreadyResolved, ConflictResolutionError, NotFoundError
from kg_merge.graph.models import FeedbackRecord
from kg_merge.graph.store import GraphStore
from kg_merge.merge.models import (
    STRATEGIES,
    AppliedResolution,
    Conflict,
    Resolution,
)

logger = logging.getLogger(__name__)


def validate_resolution(
    conflict: Conflict,
    strategy: str,
    changed_props: dict[str, Any],
    canonical_id: str | None,
) -> None:
    """Check a resolution request against the conflict it targets.

    Raises:
        ConflictResolutionError: If the strategy cannot settle this conflict
    """
    if strategy not in STRATEGIES:
        raise ConflictResolutionError(
            f"Unknown strategy {strategy!r}. Choose from: {', '.join(STRATEGIES)}"
        )
    if not isinstance(changed_props, dict):
        raise ConflictResolutionError("changed_props must be a mapping")

    relationship_fields = {d.field for d in conflict.relationship_diffs}
    for key, value in changed_props.items():
        if "->" not in key:
            continue
        if key not in relationship_fields and conflict.conflict_type != "duplicate_match":
            raise ConflictResolutionError(f"{key} is not a relationship of conflict {conflict.conflict_id}")
        if not isinstance(value, bool):
            raise ConflictResolutionError(f"{key} takes a boolean keep flag, got {value!r}")

    if conflict.conflict_type == "duplicate_match":
        if strategy == "ACCEPT":
            raise ConflictResolutionError(
                "A duplicate match cannot be accepted as is; use MODIFY or MERGE with a "
                "canonical_id, or REJECT"
            )
        if strategy == "REJECT":
            if canonical_id is not None:
                raise ConflictResolutionError("canonical_id only applies to MODIFY or MERGE")
            return
        if canonical_id not in conflict.candidate_ids:
            raise ConflictResolutionError(
                f"{strategy} of a duplicate match needs canonical_id, one of: "
                f"{', '.join(conflict.candidate_ids)}"
            )
        return

    if canonical_id is not None:
        raise ConflictResolutionError("canonical_id only applies to duplicate_match conflicts")

    if strategy == "MODIFY":
        missing = [f for f in conflict.diff_fields if f not in changed_props]
        if missing:
            raise ConflictResolutionError(f"MODIFY is missing values for: {', '.join(missing)}")
    elif strategy == "MERGE":
        if any("->" in key for key in changed_props):
            raise ConflictResolutionError("MERGE unions relationships; they cannot be overridden")
        missing = [
            d.name for d in conflict.property_diffs
            if d.change != "addition" and d.name not in changed_props
        ]
        if missing:
            raise ConflictResolutionError(
                f"MERGE needs explicit values for changed or removed properties: {', '.join(missing)}"
            )


def apply_resolution(
    conflict: Conflict,
    resolution: Resolution,
    existing_props: dict[str, Any],
) -> AppliedResolution:
    """Compute what to commit for a resolved conflict.

    ``conflict`` must carry diffs against ``existing_props``; for a duplicate
    match, that means diffs against the canonical row.

    Args:
        conflict: Conflict with property and relationship diffs
        resolution: The settled decision
        existing_props: Current stored properties of the target entity

    Returns:
        The final property map and the relationships to add or retract
    """
    logical_id = resolution.canonical_id or conflict.logical_id
    if resolution.strategy == "REJECT":
        return AppliedResolution(write=False, properties=dict(existing_props), logical_id=logical_id)

    props = dict(existing_props)
    adds, retracts = [], []
    strategy = resolution.strategy

    if strategy == "ACCEPT":
        for diff in conflict.property_diffs:
            if diff.change == "removal":
                props.pop(diff.name, None)
            else:
                props[diff.name] = diff.new_value
        adds = [d for d in conflict.relationship_diffs if d.change == "addition"]
        retracts = [d for d in conflict.relationship_diffs if d.change == "removal"]

    elif strategy == "MERGE":
        for diff in conflict.property_diffs:
            if diff.change == "addition":
                props[diff.name] = diff.new_value
        adds = [d for d in conflict.relationship_diffs if d.change == "addition"]

    if strategy in ("MODIFY", "MERGE"):
        for key, value in resolution.changed_props.items():
            if "->" in key:
                continue
            if value is None:
                props.pop(key, None)
            else:
                props[key] = value

    if strategy == "MODIFY":
        # Additions the reviewer never saw (new entity, or fresh diffs on retry) are kept
        for diff in conflict.property_diffs:
            if diff.change == "addition" and diff.name not in resolution.changed_props:
                props[diff.name] = diff.new_value
        for diff in conflict.relationship_diffs:
            keep = resolution.changed_props.get(diff.field)
            if keep is None:
                continue
            if diff.change == "addition" and keep:
                adds.append(diff)
            elif diff.change == "removal" and not keep:
                retracts.append(diff)

    return AppliedResolution(
        write=props != existing_props,
        properties=props,
        add_relationships=adds,
        retract_relationships=retracts,
        logical_id=logical_id,
    )


class ResolutionEngine:
    """Holds every conflict of the orchestrator and settles them exactly once."""

    def __init__(self, store: GraphStore, auto_resolve_threshold: float = 0.9) -> None:
        self.store = store
        self.auto_resolve_threshold = auto_resolve_threshold
        self._conflicts: dict[str, Conflict] = {}
        self._resolutions: dict[str, Resolution] = {}
        self._lock = threading.RLock()

    def register(self, conflict: Conflict) -> Conflict:
        """Add a PENDING conflict and move it to RESOLVED or AWAITING_REVIEW.

        Returns:
            A copy of the conflict in its new state
        """
        with self._lock:
            if conflict.conflict_id in self._conflicts:
                raise ConflictResolutionError(f"Conflict {conflict.conflict_id} is already registered")
            stored = conflict.model_copy(deep=True, update={"status": "PENDING"})
            self._conflicts[stored.conflict_id] = stored

            suggestion = stored.suggested_resolution
            if suggestion is not None and suggestion.confidence >= self.auto_resolve_threshold:
                resolution = Resolution(
                    conflict_id=stored.conflict_id,
                    strategy=suggestion.strategy,
                    learning_comment=f"auto-resolved: {suggestion.reason}" if suggestion.reason else "auto-resolved",
                    automatic=True,
                )
                self._settle(stored, resolution)
                logger.debug(
                    f"Auto-resolved {stored.conflict_type} on {stored.logical_id or stored.entity_ref} "
                    f"with {suggestion.strategy} ({suggestion.confidence:.2f})"
                )
            else:
                stored.status = "AWAITING_REVIEW"
            return stored.model_copy(deep=True)

    def ensure_registered(self, conflict: Conflict) -> Conflict:
        """Like ``register``, but a conflict that is already known is returned as is.

        Safe to call again after a timed-out attempt that may have landed.
        """
        with self._lock:
            known = self._conflicts.get(conflict.conflict_id)
            if known is not None:
                return known.model_copy(deep=True)
            return self.register(conflict)

    def resolve(
        self,
        conflict_id: str,
        strategy: str,
        changed_props: dict[str, Any] | None = None,
        learning_comment: str = "",
        canonical_id: str | None = None,
        guard: Callable[[Conflict], None] | None = None,
    ) -> tuple[Resolution, bool]:
        """Settle a conflict.

        Args:
            conflict_id: Conflict to resolve
            strategy: ACCEPT, REJECT, MODIFY or MERGE
            changed_props: Replacement values (MODIFY/MERGE)
            learning_comment: Free text stored verbatim in the feedback log
            canonical_id: Chosen row for duplicate_match conflicts
            guard: Called with the conflict under the engine lock before any
                change; raising from it aborts the resolution

        Returns:
            The stored resolution, and whether this call created it

        Raises:
            NotFoundError: Unknown conflict id
            ConflictResolutionError: Invalid request; the conflict stays unresolved
            ConflictAlreadyResolved: Resolved earlier with a different decision
        """
        changed_props = dict(changed_props or {})
        with self._lock:
            conflict = self._conflicts.get(conflict_id)
            if conflict is None:
                raise NotFoundError(f"Conflict not found: {conflict_id}")

            existing = self._resolutions.get(conflict_id)
            if existing is not None:
                if existing.same_decision(strategy, changed_props, canonical_id):
                    return existing.model_copy(deep=True), False
                raise ConflictAlreadyResolved(conflict_id)

            if guard is not None:
                guard(conflict)
            validate_resolution(conflict, strategy, changed_props, canonical_id)

            resolution = Resolution(
                conflict_id=conflict_id,
                strategy=strategy,
                changed_props=changed_props,
                canonical_id=canonical_id,
                learning_comment=learning_comment,
            )
            self._settle(conflict, resolution)
        logger.info(f"Resolved conflict {conflict_id} with {strategy}")
        return resolution.model_copy(deep=True), True

    def _settle(self, conflict: Conflict, resolution: Resolution) -> None:
        # Caller holds self._lock. Feedback goes first: a store failure leaves the conflict open.
        self.store.record_feedback(FeedbackRecord(
            feedback_id=uuid.uuid4().hex,
            conflict_id=conflict.conflict_id,
            run_id=conflict.run_id,
            logical_id=resolution.canonical_id or conflict.logical_id or conflict.entity_ref,
            conflict_type=conflict.conflict_type,
            strategy=resolution.strategy,
            changed_props=resolution.changed_props,
            canonical_id=resolution.canonical_id,
            learning_comment=resolution.learning_comment,
            automatic=resolution.automatic,
        ))
        self._resolutions[conflict.conflict_id] = resolution
        conflict.status = "RESOLVED"

    def get(self, conflict_id: str) -> Conflict:
        with self._lock:
            conflict = self._conflicts.get(conflict_id)
            if conflict is None:
                raise NotFoundError(f"Conflict not found: {conflict_id}")
            return conflict.model_copy(deep=True)

    def resolution(self, conflict_id: str) -> Resolution | None:
        with self._lock:
            found = self._resolutions.get(conflict_id)
            return found.model_copy(deep=True) if found else None

    def conflicts(self, run_id: str | None = None, status: str | None = None) -> list[Conflict]:
        """Conflicts in creation order, optionally filtered."""
        with self._lock:
            return [
                c.model_copy(deep=True) for c in self._conflicts.values()
                if (run_id is None or c.run_id == run_id) and (status is None or c.status == status)
            ]
