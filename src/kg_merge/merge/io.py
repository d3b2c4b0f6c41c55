"""Read and write conflict review YAML files.

A run's open conflicts can be written out, decided offline by filling in
each entry's ``decision:`` block, and fed back with ``decisions_for``.
"""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from kg_merge.merge.models import (
    Conflict,
    ConflictType,
    PropertyDiff,
    RelationshipDiff,
    ResolutionStrategy,
    SuggestedResolution,
)

logger = logging.getLogger(__name__)


class ConflictDecision(BaseModel):
    """An operator's decision for one conflict."""

    strategy: ResolutionStrategy
    changed_props: dict[str, Any] = Field(default_factory=dict)
    canonical_id: str | None = None
    learning_comment: str = ""


class ConflictEntry(BaseModel):
    """One conflict as shown to a reviewer."""

    conflict_id: str
    entity_ref: str
    logical_id: str = ""
    entity_type: str
    conflict_type: ConflictType
    confidence: float = 0.0
    message: str = ""
    candidate_ids: list[str] = Field(default_factory=list)
    property_diffs: list[PropertyDiff] = Field(default_factory=list)
    relationship_diffs: list[RelationshipDiff] = Field(default_factory=list)
    suggested_resolution: SuggestedResolution | None = None
    decision: ConflictDecision | None = None

    @classmethod
    def from_conflict(cls, conflict: Conflict) -> "ConflictEntry":
        return cls.model_validate(conflict.model_dump(include=set(cls.model_fields) - {"decision"}))


class ConflictFile(BaseModel):
    """Top-level model for conflicts.yaml."""

    run_id: str = ""
    transform_id: str = ""
    conflicts: list[ConflictEntry] = Field(default_factory=list)

    @property
    def decided(self) -> list[ConflictEntry]:
        return [c for c in self.conflicts if c.decision is not None]

    @property
    def undecided(self) -> list[ConflictEntry]:
        return [c for c in self.conflicts if c.decision is None]

    def decisions_for(self, conflict: Conflict) -> ConflictDecision | None:
        """Decision for a conflict, by conflict id or else by entity and conflict type.

        The fallback lets a file written for one run be replayed against a
        new run of the same transform.
        """
        for entry in self.conflicts:
            if entry.conflict_id == conflict.conflict_id:
                return entry.decision
        for entry in self.conflicts:
            same_entity = (
                entry.logical_id == conflict.logical_id if conflict.logical_id
                else entry.entity_ref == conflict.entity_ref
            )
            if same_entity and entry.conflict_type == conflict.conflict_type:
                return entry.decision
        return None


def write_conflicts(conflict_file: ConflictFile, path: Path) -> None:
    """Write conflicts to YAML."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = conflict_file.model_dump(mode="json")
    with open(path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
    logger.info(f"Wrote {len(conflict_file.conflicts)} conflicts to {path}")


def read_conflicts(path: Path) -> ConflictFile:
    """Read conflicts from YAML."""
    if not path.exists():
        return ConflictFile()
    with open(path) as f:
        data = yaml.safe_load(f)
    if data is None:
        return ConflictFile()
    return ConflictFile.model_validate(data)
