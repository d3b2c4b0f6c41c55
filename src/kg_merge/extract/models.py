"""Pydantic models for upstream extraction results.

Generic models: entity_type is a string driven by the ontology, not
concrete Company/Person subclasses. Extraction itself happens upstream;
kg-merge only consumes the transform document it produces.
"""

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)


class ExtractedEntity(BaseModel):
    """An entity extracted from a document, not yet merged."""

    ref: str  # Transform-local id, used by relationships
    logical_id: str | None = None  # Graph id, when the extractor already knows it
    entity_type: str  # Driven by the ontology (Company, Person, etc.)
    labels: list[str] = Field(default_factory=list)
    properties: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    context: str = ""  # Quote from source text


class ExtractedRelationship(BaseModel):
    """A relationship between two extracted entities."""

    relation_type: str
    source_ref: str  # ExtractedEntity.ref
    target_ref: str  # ExtractedEntity.ref, or an existing logical id
    properties: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    evidence: str = ""


class Transform(BaseModel):
    """One transform: the ordered extraction output merged by a single run."""

    transform_id: str
    session_id: str = ""
    source_document: str = ""
    entities: list[ExtractedEntity] = Field(default_factory=list)
    relationships: list[ExtractedRelationship] = Field(default_factory=list)
    extracted_at: str = ""

    @model_validator(mode="after")
    def _unique_refs(self) -> "Transform":
        seen: set[str] = set()
        for entity in self.entities:
            if entity.ref in seen:
                raise ValueError(f"Duplicate entity ref in transform: {entity.ref}")
            seen.add(entity.ref)
        return self

    def entity_by_ref(self, ref: str) -> ExtractedEntity | None:
        for entity in self.entities:
            if entity.ref == ref:
                return entity
        return None

    def outgoing(self, ref: str) -> list[ExtractedRelationship]:
        """Relationships whose source is the given entity ref."""
        return [r for r in self.relationships if r.source_ref == ref]


def load_transform(path: Path) -> Transform:
    """Load a transform from a JSON file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Transform not found: {path}")
    data = json.loads(path.read_text(encoding="utf-8"))
    transform = Transform.model_validate(data)
    logger.info(
        f"Loaded transform {transform.transform_id}: "
        f"{len(transform.entities)} entities, {len(transform.relationships)} relationships"
    )
    return transform
