"""Pydantic models for stored graph rows.

Every commit inserts a new version row; earlier rows are kept with
``is_current`` cleared. Rows are frozen: readers always get copies.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def row_id_for(logical_id: str, version: int) -> str:
    """Stable id of one version row."""
    return f"{logical_id}@v{version}"


def relationship_key(source_id: str, relation_type: str, target_id: str) -> str:
    """Logical id of a relationship: one per (source, type, target) triple."""
    return f"{source_id}|{relation_type}|{target_id}"


class EntityVersion(BaseModel):
    """One version of an entity."""

    model_config = ConfigDict(frozen=True)

    row_id: str
    logical_id: str
    entity_type: str
    labels: list[str] = Field(default_factory=list)
    properties: dict[str, Any] = Field(default_factory=dict)
    unique_keys: list[str] = Field(default_factory=list)
    version: int = Field(ge=1)
    is_current: bool = True
    supersedes: str | None = None  # row_id of the previous version
    retracted: bool = False
    run_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class RelationshipVersion(BaseModel):
    """One version of a relationship between two logical entities."""

    model_config = ConfigDict(frozen=True)

    row_id: str
    logical_id: str
    relation_type: str
    source_id: str
    target_id: str
    properties: dict[str, Any] = Field(default_factory=dict)
    version: int = Field(ge=1)
    is_current: bool = True
    supersedes: str | None = None
    retracted: bool = False  # tombstone: the relationship was removed
    run_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class FeedbackRecord(BaseModel):
    """Immutable log entry written for every conflict resolution.

    The learning comment is stored verbatim. Nothing in kg-merge reads it
    back to change behaviour; it is there for external learning tools.
    """

    model_config = ConfigDict(frozen=True)

    feedback_id: str
    conflict_id: str
    run_id: str
    logical_id: str
    conflict_type: str
    strategy: str
    changed_props: dict[str, Any] = Field(default_factory=dict)
    canonical_id: str | None = None
    learning_comment: str = ""
    automatic: bool = False
    created_at: datetime = Field(default_factory=_utcnow)


class GraphPage(BaseModel):
    """One page of the current graph."""

    page: int
    page_size: int
    total_entities: int
    total_relationships: int
    entities: list[EntityVersion] = Field(default_factory=list)
    relationships: list[RelationshipVersion] = Field(default_factory=list)

    @property
    def has_next(self) -> bool:
        seen = self.page * self.page_size
        return seen < self.total_entities or seen < self.total_relationships
