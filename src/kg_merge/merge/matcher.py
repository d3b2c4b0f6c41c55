"""Match extracted entities against the stored graph by unique keys.

An entity matches a stored row only when every property its type declares
``unique: true`` is present on both sides with equal values. Types without
unique keys never match, so each of their extractions becomes a new entity.
"""

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal

from unidecode import unidecode

from kg_merge.errors import MatchAmbiguityError
from kg_merge.extract.models import ExtractedEntity
from kg_merge.graph.store import GraphStore
from kg_merge.ontology.models import Ontology
from kg_merge.quality.rules import is_empty

logger = logging.getLogger(__name__)

MatchKind = Literal["none", "one", "many"]


def _key_part(value: Any) -> str:
    normalized = unidecode(str(value).lower().strip())
    normalized = "".join(c if c.isalnum() else "_" for c in normalized)
    while "__" in normalized:
        normalized = normalized.replace("__", "_")
    return normalized.strip("_")


def make_logical_id(entity: ExtractedEntity, unique_keys: list[str], exact: bool = False) -> str:
    """Stable logical id for a new entity.

    Uses the extractor's id when given, otherwise the normalized unique key
    values, otherwise a random id. Normalization can map different keys to
    the same id (``A-1`` and ``a 1``); with ``exact`` a digest of the raw
    values is appended so such keys get ids of their own.
    """
    if entity.logical_id:
        return entity.logical_id
    values = [entity.properties.get(k) for k in unique_keys]
    if unique_keys and not any(is_empty(v) for v in values):
        logical_id = f"{entity.entity_type.lower()}:{'_'.join(_key_part(v) for v in values)}"
        if exact:
            raw = json.dumps(values, sort_keys=True, default=str)
            logical_id += "-" + hashlib.sha1(raw.encode()).hexdigest()[:8]
        return logical_id
    return f"{entity.entity_type.lower()}:{uuid.uuid4().hex[:12]}"


def same_unique_keys(properties: dict[str, Any], other: dict[str, Any], unique_keys: list[str]) -> bool:
    """Whether two property maps hold equal values for every unique key."""
    return all(properties.get(k) == other.get(k) for k in unique_keys)


@dataclass(frozen=True)
class MatchResult:
    """Outcome of matching one entity: zero, one or several candidates."""

    candidate_ids: tuple[str, ...] = ()
    confidence: float = 1.0

    @property
    def kind(self) -> MatchKind:
        if not self.candidate_ids:
            return "none"
        return "one" if len(self.candidate_ids) == 1 else "many"

    def require_single(self) -> str | None:
        """The matched id, ``None`` for no match.

        Raises:
            MatchAmbiguityError: If several rows matched
        """
        if len(self.candidate_ids) > 1:
            raise MatchAmbiguityError(list(self.candidate_ids))
        return self.candidate_ids[0] if self.candidate_ids else None


@dataclass
class GraphIndex:
    """Unique-key index over the current stored rows, per entity type."""

    unique_keys: dict[str, list[str]] = field(default_factory=dict)
    _by_key: dict[str, dict[tuple, list[str]]] = field(default_factory=dict)

    @classmethod
    def build(cls, store: GraphStore, ontology: Ontology, entity_types: set[str] | None = None) -> "GraphIndex":
        """Index the live current rows of every keyed type (or just the given ones)."""
        index = cls()
        types = entity_types if entity_types is not None else set(ontology.get_entity_type_names())
        for entity_type in sorted(types):
            keys = ontology.unique_keys(entity_type)
            index.unique_keys[entity_type] = keys
            if not keys:
                continue
            rows = store.fetch_current(entity_type)
            for row in rows:
                index.add(entity_type, row.logical_id, row.properties)
            logger.debug(f"Indexed {len(rows)} {entity_type} rows on {keys}")
        return index

    @staticmethod
    def _key(keys: list[str], properties: dict[str, Any]) -> tuple | None:
        values = [properties.get(k) for k in keys]
        if any(is_empty(v) for v in values):
            return None
        return tuple(json.dumps(v, sort_keys=True, default=str) for v in values)

    def add(self, entity_type: str, logical_id: str, properties: dict[str, Any]) -> None:
        keys = self.unique_keys.get(entity_type)
        if not keys:
            return
        key = self._key(keys, properties)
        if key is None:
            return
        bucket = self._by_key.setdefault(entity_type, {}).setdefault(key, [])
        if logical_id not in bucket:
            bucket.append(logical_id)

    def lookup(self, entity_type: str, properties: dict[str, Any]) -> list[str]:
        keys = self.unique_keys.get(entity_type)
        if not keys:
            return []
        key = self._key(keys, properties)
        if key is None:
            return []
        return sorted(self._by_key.get(entity_type, {}).get(key, []))


class EntityMatcher:
    """Find stored candidates for an extracted entity."""

    def match(self, entity: ExtractedEntity, index: GraphIndex) -> MatchResult:
        candidates = index.lookup(entity.entity_type, entity.properties)
        if len(candidates) > 1:
            logger.info(f"{entity.ref}: unique key matches {len(candidates)} stored entities")
        return MatchResult(tuple(candidates))
