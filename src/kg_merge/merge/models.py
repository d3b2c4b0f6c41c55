"""Pydantic models for merge runs, conflicts and resolutions.

A conflict moves PENDING -> AWAITING_REVIEW -> RESOLVED, or straight from
PENDING to RESOLVED when its suggestion is confident enough. A run moves
STARTED -> RUNNING -> (AWAITING_RESOLUTION ->) COMPLETED, with FAILED and
CANCELLED as the other terminal states.
"""

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, computed_field

ConflictType = Literal["property_conflict", "duplicate_match", "relationship_conflict", "schema_mismatch"]
ConflictStatus = Literal["PENDING", "AWAITING_REVIEW", "RESOLVED"]
ResolutionStrategy = Literal["ACCEPT", "REJECT", "MODIFY", "MERGE"]
RunStatus = Literal["STARTED", "RUNNING", "AWAITING_RESOLUTION", "COMPLETED", "FAILED", "CANCELLED"]
DiffChange = Literal["addition", "removal", "change"]

STRATEGIES: tuple[str, ...] = ("ACCEPT", "REJECT", "MODIFY", "MERGE")
TERMINAL_RUN_STATUSES: frozenset[str] = frozenset({"COMPLETED", "FAILED", "CANCELLED"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def relationship_field(relation_type: str, target_id: str) -> str:
    """Name under which a relationship diff is addressed in changed_props."""
    return f"{relation_type}->{target_id}"


class MergeSettings(BaseModel):
    """Tunables for a merge orchestrator."""

    auto_resolve_threshold: float = Field(default=0.9, ge=0.0, le=1.0)
    concurrency: int = Field(default=8, ge=1)
    max_commit_retries: int = Field(default=3, ge=1)
    commit_timeout: float = Field(default=30.0, gt=0.0)


class PropertyDiff(BaseModel):
    """One differing property between the stored and the extracted entity."""

    name: str
    change: DiffChange
    existing_value: Any = None
    new_value: Any = None


class RelationshipDiff(BaseModel):
    """One relationship present on only one side."""

    relation_type: str
    target_id: str
    change: Literal["addition", "removal"]
    properties: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)

    @property
    def field(self) -> str:
        return relationship_field(self.relation_type, self.target_id)


class SuggestedResolution(BaseModel):
    strategy: ResolutionStrategy
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str = ""


class Conflict(BaseModel):
    """A disagreement between one extracted entity and the stored graph.

    All diffs for the entity live in one conflict. ``candidate_ids`` is
    filled for ``duplicate_match`` conflicts only; ``logical_id`` is then
    empty until a resolution picks the canonical row.
    """

    conflict_id: str
    run_id: str
    entity_ref: str
    logical_id: str = ""
    entity_type: str
    conflict_type: ConflictType
    property_diffs: list[PropertyDiff] = Field(default_factory=list)
    relationship_diffs: list[RelationshipDiff] = Field(default_factory=list)
    candidate_ids: list[str] = Field(default_factory=list)
    expected_version: int = 0
    suggested_resolution: SuggestedResolution | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    status: ConflictStatus = "PENDING"
    message: str = ""
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def diff_fields(self) -> list[str]:
        """Every field a MODIFY resolution has to address."""
        return [d.name for d in self.property_diffs] + [d.field for d in self.relationship_diffs]

    @property
    def is_resolved(self) -> bool:
        return self.status == "RESOLVED"

    def is_additive(self) -> bool:
        """Only additions: nothing stored would change or disappear."""
        return all(d.change == "addition" for d in self.property_diffs) and all(
            d.change == "addition" for d in self.relationship_diffs
        )


class Resolution(BaseModel):
    """The decision that settled a conflict."""

    conflict_id: str
    strategy: ResolutionStrategy
    changed_props: dict[str, Any] = Field(default_factory=dict)
    canonical_id: str | None = None
    learning_comment: str = ""
    automatic: bool = False
    resolved_at: datetime = Field(default_factory=_utcnow)

    def same_decision(self, strategy: str, changed_props: dict[str, Any], canonical_id: str | None) -> bool:
        """Identity used for idempotent re-resolution. Comments do not count."""
        return (
            self.strategy == strategy
            and self.changed_props == (changed_props or {})
            and self.canonical_id == canonical_id
        )


class AppliedResolution(BaseModel):
    """What a resolution turns into at commit time."""

    write: bool  # False when the stored entity stays as it is
    properties: dict[str, Any] = Field(default_factory=dict)
    add_relationships: list[RelationshipDiff] = Field(default_factory=list)
    retract_relationships: list[RelationshipDiff] = Field(default_factory=list)
    logical_id: str = ""


class StageTiming(BaseModel):
    discovery: float = 0.0
    resolution_wait: float = 0.0
    commit: float = 0.0


class MergeStatistics(BaseModel):
    """Counters for one merge run."""

    entities_processed: int = 0
    new_entities: int = 0
    merged_entities: int = 0
    unchanged_entities: int = 0
    rejected_entities: int = 0
    relationships_committed: int = 0
    relationships_retracted: int = 0
    relationships_skipped: int = 0
    commit_retries: int = 0
    failed_units: int = 0
    timings: StageTiming = Field(default_factory=StageTiming)


class UnitError(BaseModel):
    """A per-unit failure recorded on the run instead of halting it."""

    unit: str
    error: str


class MergeRun(BaseModel):
    """State of one merge run. Readers always receive a deep copy."""

    run_id: str
    session_id: str
    transform_id: str
    status: RunStatus = "STARTED"
    total_units: int = 0
    settled_units: int = 0
    conflicts_count: int = 0
    resolved_count: int = 0
    statistics: MergeStatistics = Field(default_factory=MergeStatistics)
    errors: list[UnitError] = Field(default_factory=list)
    failure: str = ""
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = None

    @computed_field
    @property
    def progress(self) -> float:
        if self.total_units == 0:
            return 1.0 if self.status == "COMPLETED" else 0.0
        return min(1.0, self.settled_units / self.total_units)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES
