"""Versioned graph store contract and its in-memory implementation.

All version rows live in an arena keyed by row id; a separate index maps
each logical id to its current row. The index only changes inside a
commit, and a commit only succeeds when the caller's expected prior
version equals the current one (optimistic concurrency). Writes to the
same logical id are serialised by a per-id lock; different ids commit in
parallel.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any

from kg_merge.errors import VersionConflictError
from kg_merge.graph.models import (
    EntityVersion,
    FeedbackRecord,
    GraphPage,
    RelationshipVersion,
    relationship_key,
    row_id_for,
)

logger = logging.getLogger(__name__)


class GraphStore(ABC):
    """Minimal read/write contract the merge core needs from a graph store."""

    # --- writes ---

    @abstractmethod
    def commit_entity(
        self,
        logical_id: str,
        properties: dict[str, Any],
        expected_prior_version: int,
        *,
        entity_type: str | None = None,
        labels: list[str] | None = None,
        unique_keys: list[str] | None = None,
        retracted: bool = False,
        run_id: str | None = None,
    ) -> int:
        """Write a new entity version and return its version number.

        Raises:
            VersionConflictError: If expected_prior_version is not current
            PersistenceError: If the store fails
        """

    @abstractmethod
    def commit_relationship(
        self,
        source_id: str,
        relation_type: str,
        target_id: str,
        properties: dict[str, Any],
        expected_prior_version: int,
        *,
        retracted: bool = False,
        run_id: str | None = None,
    ) -> int:
        """Write a new relationship version and return its version number."""

    @abstractmethod
    def record_feedback(self, record: FeedbackRecord) -> None:
        """Append a resolution feedback record."""

    # --- reads ---

    @abstractmethod
    def get_entity(self, logical_id: str) -> EntityVersion | None:
        """Current version of an entity (retracted rows included)."""

    @abstractmethod
    def get_relationship(self, logical_id: str) -> RelationshipVersion | None:
        """Current version of a relationship (retracted rows included)."""

    @abstractmethod
    def fetch_current(self, entity_type: str | None = None) -> list[EntityVersion]:
        """Bulk read of live current entities, optionally of one type."""

    @abstractmethod
    def fetch_relationships(self, entity_id: str, direction: str = "out") -> list[RelationshipVersion]:
        """Live current relationships touching an entity ('out', 'in' or 'both')."""

    @abstractmethod
    def history(self, logical_id: str) -> list[EntityVersion]:
        """All versions of an entity, oldest first."""

    @abstractmethod
    def relationship_history(self, logical_id: str) -> list[RelationshipVersion]:
        """All versions of a relationship, oldest first."""

    @abstractmethod
    def all_relationships(self) -> list[RelationshipVersion]:
        """Live current relationships."""

    @abstractmethod
    def feedback(self, conflict_id: str | None = None, run_id: str | None = None) -> list[FeedbackRecord]:
        """Feedback records, oldest first, optionally filtered."""

    def current_version(self, logical_id: str) -> int:
        row = self.get_entity(logical_id)
        return row.version if row else 0

    def relationship_version(self, logical_id: str) -> int:
        row = self.get_relationship(logical_id)
        return row.version if row else 0

    def entity_ids(self) -> set[str]:
        return {row.logical_id for row in self.fetch_current()}

    def snapshot(self, page: int = 1, page_size: int = 100) -> GraphPage:
        """One page of live current entities and relationships, ordered by logical id."""
        if page < 1 or page_size < 1:
            raise ValueError("page and page_size must be >= 1")
        entities = sorted(self.fetch_current(), key=lambda r: r.logical_id)
        relationships = sorted(self.all_relationships(), key=lambda r: r.logical_id)
        start = (page - 1) * page_size
        end = start + page_size
        return GraphPage(
            page=page,
            page_size=page_size,
            total_entities=len(entities),
            total_relationships=len(relationships),
            entities=entities[start:end],
            relationships=relationships[start:end],
        )

    def close(self) -> None:
        """Release resources. No-op by default."""

    def __enter__(self) -> "GraphStore":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # --- row builders shared by implementations ---

    @staticmethod
    def _next_entity_row(
        logical_id: str,
        current: EntityVersion | None,
        properties: dict[str, Any],
        expected_prior_version: int,
        entity_type: str | None,
        labels: list[str] | None,
        unique_keys: list[str] | None,
        retracted: bool,
        run_id: str | None,
    ) -> EntityVersion:
        actual = current.version if current else 0
        if actual != expected_prior_version:
            raise VersionConflictError(logical_id, expected_prior_version, actual)
        if current is None and not entity_type:
            raise ValueError(f"New entity {logical_id} needs an entity_type")
        version = actual + 1
        return EntityVersion(
            row_id=row_id_for(logical_id, version),
            logical_id=logical_id,
            entity_type=entity_type or current.entity_type,
            labels=list(labels if labels is not None else (current.labels if current else [])),
            properties=dict(properties),
            unique_keys=list(unique_keys if unique_keys is not None else (current.unique_keys if current else [])),
            version=version,
            is_current=True,
            supersedes=current.row_id if current else None,
            retracted=retracted,
            run_id=run_id,
        )

    @staticmethod
    def _next_relationship_row(
        source_id: str,
        relation_type: str,
        target_id: str,
        current: RelationshipVersion | None,
        properties: dict[str, Any],
        expected_prior_version: int,
        retracted: bool,
        run_id: str | None,
    ) -> RelationshipVersion:
        logical_id = relationship_key(source_id, relation_type, target_id)
        actual = current.version if current else 0
        if actual != expected_prior_version:
            raise VersionConflictError(logical_id, expected_prior_version, actual)
        version = actual + 1
        return RelationshipVersion(
            row_id=row_id_for(logical_id, version),
            logical_id=logical_id,
            relation_type=relation_type,
            source_id=source_id,
            target_id=target_id,
            properties=dict(properties),
            version=version,
            is_current=True,
            supersedes=current.row_id if current else None,
            retracted=retracted,
            run_id=run_id,
        )


class InMemoryGraphStore(GraphStore):
    """Arena-plus-index store held in process memory."""

    def __init__(self) -> None:
        self._entity_rows: dict[str, EntityVersion] = {}
        self._entity_versions: dict[str, list[str]] = defaultdict(list)
        self._current_entities: dict[str, str] = {}

        self._relationship_rows: dict[str, RelationshipVersion] = {}
        self._relationship_versions: dict[str, list[str]] = defaultdict(list)
        self._current_relationships: dict[str, str] = {}

        self._feedback: list[FeedbackRecord] = []

        # Guards the arena/index dicts; held only for the swap, never for I/O
        self._index_lock = threading.RLock()
        self._id_locks: dict[str, threading.Lock] = {}
        self._id_locks_guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._id_locks_guard:
            lock = self._id_locks.get(key)
            if lock is None:
                lock = self._id_locks[key] = threading.Lock()
            return lock

    def commit_entity(
        self,
        logical_id: str,
        properties: dict[str, Any],
        expected_prior_version: int,
        *,
        entity_type: str | None = None,
        labels: list[str] | None = None,
        unique_keys: list[str] | None = None,
        retracted: bool = False,
        run_id: str | None = None,
    ) -> int:
        with self._lock_for(f"entity:{logical_id}"):
            current = self._current_entity_row(logical_id)
            row = self._next_entity_row(
                logical_id, current, properties, expected_prior_version,
                entity_type, labels, unique_keys, retracted, run_id,
            )
            with self._index_lock:
                if current is not None:
                    self._entity_rows[current.row_id] = current.model_copy(update={"is_current": False})
                self._entity_rows[row.row_id] = row
                self._entity_versions[logical_id].append(row.row_id)
                self._current_entities[logical_id] = row.row_id
        logger.debug(f"Committed {row.row_id}")
        return row.version

    def commit_relationship(
        self,
        source_id: str,
        relation_type: str,
        target_id: str,
        properties: dict[str, Any],
        expected_prior_version: int,
        *,
        retracted: bool = False,
        run_id: str | None = None,
    ) -> int:
        key = relationship_key(source_id, relation_type, target_id)
        with self._lock_for(f"relationship:{key}"):
            current = self._current_relationship_row(key)
            row = self._next_relationship_row(
                source_id, relation_type, target_id, current, properties,
                expected_prior_version, retracted, run_id,
            )
            with self._index_lock:
                if current is not None:
                    self._relationship_rows[current.row_id] = current.model_copy(update={"is_current": False})
                self._relationship_rows[row.row_id] = row
                self._relationship_versions[key].append(row.row_id)
                self._current_relationships[key] = row.row_id
        logger.debug(f"Committed {row.row_id}")
        return row.version

    def record_feedback(self, record: FeedbackRecord) -> None:
        with self._index_lock:
            self._feedback.append(record)

    def _current_entity_row(self, logical_id: str) -> EntityVersion | None:
        with self._index_lock:
            row_id = self._current_entities.get(logical_id)
            return self._entity_rows[row_id] if row_id else None

    def _current_relationship_row(self, logical_id: str) -> RelationshipVersion | None:
        with self._index_lock:
            row_id = self._current_relationships.get(logical_id)
            return self._relationship_rows[row_id] if row_id else None

    def get_entity(self, logical_id: str) -> EntityVersion | None:
        row = self._current_entity_row(logical_id)
        return row.model_copy(deep=True) if row else None

    def get_relationship(self, logical_id: str) -> RelationshipVersion | None:
        row = self._current_relationship_row(logical_id)
        return row.model_copy(deep=True) if row else None

    def fetch_current(self, entity_type: str | None = None) -> list[EntityVersion]:
        with self._index_lock:
            rows = [self._entity_rows[row_id] for row_id in self._current_entities.values()]
        return [
            row.model_copy(deep=True) for row in rows
            if not row.retracted and (entity_type is None or row.entity_type == entity_type)
        ]

    def fetch_relationships(self, entity_id: str, direction: str = "out") -> list[RelationshipVersion]:
        if direction not in ("out", "in", "both"):
            raise ValueError(f"Invalid direction: {direction!r}")
        result = []
        for row in self.all_relationships():
            outgoing = row.source_id == entity_id and direction in ("out", "both")
            incoming = row.target_id == entity_id and direction in ("in", "both")
            if outgoing or incoming:
                result.append(row)
        return result

    def all_relationships(self) -> list[RelationshipVersion]:
        with self._index_lock:
            rows = [self._relationship_rows[row_id] for row_id in self._current_relationships.values()]
        return [row.model_copy(deep=True) for row in rows if not row.retracted]

    def history(self, logical_id: str) -> list[EntityVersion]:
        with self._index_lock:
            return [self._entity_rows[r].model_copy(deep=True) for r in self._entity_versions.get(logical_id, [])]

    def relationship_history(self, logical_id: str) -> list[RelationshipVersion]:
        with self._index_lock:
            return [
                self._relationship_rows[r].model_copy(deep=True)
                for r in self._relationship_versions.get(logical_id, [])
            ]

    def feedback(self, conflict_id: str | None = None, run_id: str | None = None) -> list[FeedbackRecord]:
        with self._index_lock:
            records = list(self._feedback)
        return [
            r for r in records
            if (conflict_id is None or r.conflict_id == conflict_id)
            and (run_id is None or r.run_id == run_id)
        ]
