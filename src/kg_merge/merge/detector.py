"""Classify differences between an extracted entity and the stored graph.

All property and relationship diffs of one entity are collected into a
single Conflict. The suggestion is ACCEPT when the extraction only adds
data, REJECT when every changed value is one the ontology forbids (or the
entity does not fit the ontology at all), and absent otherwise.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from kg_merge.extract.models import ExtractedEntity
from kg_merge.graph.models import EntityVersion, RelationshipVersion
from kg_merge.merge.matcher import MatchResult
from kg_merge.merge.models import Conflict, PropertyDiff, RelationshipDiff, SuggestedResolution
from kg_merge.ontology.models import Ontology

logger = logging.getLogger(__name__)


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


@dataclass
class AssertedRelationship:
    """An outgoing relationship of the extracted entity, with its target resolved to a logical id."""

    relation_type: str
    target_id: str
    properties: dict[str, Any] = field(default_factory=dict)
    confidence: float = 1.0


def diff_properties(existing: dict[str, Any], new: dict[str, Any]) -> list[PropertyDiff]:
    """Property diffs, in the extraction's key order.

    Keys the extraction does not mention are not diffs; an explicit
    ``None`` on the new side removes the stored value.
    """
    diffs = []
    for name, new_value in new.items():
        old_value = existing.get(name)
        if old_value == new_value:
            continue
        if old_value is None:
            diffs.append(PropertyDiff(name=name, change="addition", new_value=new_value))
        elif new_value is None:
            diffs.append(PropertyDiff(name=name, change="removal", existing_value=old_value))
        else:
            diffs.append(PropertyDiff(name=name, change="change", existing_value=old_value, new_value=new_value))
    return diffs


def diff_relationships(
    stored: list[RelationshipVersion],
    asserted: list[AssertedRelationship],
) -> list[RelationshipDiff]:
    """Relationship diffs for the relation types the extraction asserts.

    Stored targets of an asserted type that the extraction no longer
    names are removals. Relation types the extraction is silent about are
    left alone.
    """
    asserted_types = {a.relation_type for a in asserted}
    stored_keys = {(r.relation_type, r.target_id) for r in stored}
    asserted_keys: set[tuple[str, str]] = set()

    diffs = []
    for rel in asserted:
        key = (rel.relation_type, rel.target_id)
        if key in asserted_keys:
            continue
        asserted_keys.add(key)
        if key not in stored_keys:
            diffs.append(RelationshipDiff(
                relation_type=rel.relation_type,
                target_id=rel.target_id,
                change="addition",
                properties=dict(rel.properties),
                confidence=rel.confidence,
            ))
    for row in sorted(stored, key=lambda r: (r.relation_type, r.target_id)):
        key = (row.relation_type, row.target_id)
        if row.relation_type in asserted_types and key not in asserted_keys:
            diffs.append(RelationshipDiff(
                relation_type=row.relation_type,
                target_id=row.target_id,
                change="removal",
                properties=dict(row.properties),
            ))
    return diffs


class ConflictDetector:
    """Turn a match result and the stored state into an optional Conflict."""

    def __init__(self, ontology: Ontology) -> None:
        self.ontology = ontology

    def detect(
        self,
        entity: ExtractedEntity,
        match: MatchResult,
        *,
        logical_id: str = "",
        existing: EntityVersion | None = None,
        existing_relationships: list[RelationshipVersion] | None = None,
        asserted_relationships: list[AssertedRelationship] | None = None,
        run_id: str = "",
    ) -> Conflict | None:
        """Classify one extracted entity.

        Args:
            entity: The extracted entity
            match: Matcher outcome for the entity
            logical_id: Id the entity has (or will have) in the graph
            existing: Current stored row when the match is single
            existing_relationships: Live outgoing relationships of that row
            asserted_relationships: Outgoing relationships the extraction asserts
            run_id: Owning merge run

        Returns:
            A Conflict, or None when the entity can be written as is
        """
        confidence = clamp(entity.confidence * match.confidence)

        def conflict(conflict_type: str, **kwargs: Any) -> Conflict:
            return Conflict(
                conflict_id=uuid.uuid4().hex,
                run_id=run_id,
                entity_ref=entity.ref,
                logical_id=logical_id,
                entity_type=entity.entity_type,
                conflict_type=conflict_type,
                expected_version=existing.version if existing else 0,
                confidence=confidence,
                **kwargs,
            )

        schema = self._schema_mismatch(entity, existing)
        if schema is not None:
            diffs, message = schema
            logger.debug(f"{entity.ref}: schema mismatch ({message})")
            return conflict(
                "schema_mismatch",
                property_diffs=diffs,
                message=message,
                suggested_resolution=SuggestedResolution(
                    strategy="REJECT", confidence=confidence, reason=message,
                ),
            )

        if match.kind == "many":
            return conflict(
                "duplicate_match",
                logical_id="",
                candidate_ids=list(match.candidate_ids),
                message=f"unique key matches {len(match.candidate_ids)} stored entities",
            )

        if match.kind == "none" or existing is None:
            return None

        property_diffs = diff_properties(existing.properties, entity.properties)
        relationship_diffs = diff_relationships(
            existing_relationships or [], asserted_relationships or [],
        )
        if not property_diffs and not relationship_diffs:
            return None

        conflict_type = "property_conflict" if property_diffs else "relationship_conflict"
        return conflict(
            conflict_type,
            property_diffs=property_diffs,
            relationship_diffs=relationship_diffs,
            suggested_resolution=self._suggest(entity, property_diffs, relationship_diffs, confidence),
        )

    def _schema_mismatch(
        self, entity: ExtractedEntity, existing: EntityVersion | None,
    ) -> tuple[list[PropertyDiff], str] | None:
        type_def = self.ontology.entity_types.get(entity.entity_type)
        if type_def is None:
            return [], f"entity type {entity.entity_type!r} is not in the ontology"

        old = existing.properties if existing else {}
        diffs = []
        for name, value in entity.properties.items():
            prop = type_def.properties.get(name)
            if prop is not None and not prop.accepts(value):
                change = "addition" if old.get(name) is None else "change"
                diffs.append(PropertyDiff(name=name, change=change, existing_value=old.get(name), new_value=value))
        if not diffs:
            return None
        names = ", ".join(d.name for d in diffs)
        return diffs, f"values do not fit the declared property types: {names}"

    def _suggest(
        self,
        entity: ExtractedEntity,
        property_diffs: list[PropertyDiff],
        relationship_diffs: list[RelationshipDiff],
        confidence: float,
    ) -> SuggestedResolution | None:
        destructive = [d for d in property_diffs if d.change != "addition"]
        destructive_rels = [d for d in relationship_diffs if d.change == "removal"]

        if not destructive and not destructive_rels:
            return SuggestedResolution(strategy="ACCEPT", confidence=confidence, reason="additions only")

        if destructive and not destructive_rels and all(
            d.change == "change" and self._is_forbidden(entity.entity_type, d.name, d.new_value)
            for d in destructive
        ):
            return SuggestedResolution(
                strategy="REJECT", confidence=confidence,
                reason="new values are forbidden by business rules",
            )
        return None

    def _is_forbidden(self, entity_type: str, prop: str, value: Any) -> bool:
        return any(rule.is_forbidden(value) for rule in self.ontology.forbidden_value_rules(entity_type, prop))
