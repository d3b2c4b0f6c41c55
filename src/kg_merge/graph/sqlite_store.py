"""SQLite-backed versioned graph store.

Same contract as InMemoryGraphStore. Each commit runs in its own
``BEGIN IMMEDIATE`` transaction: the version check, the demotion of the
previous current row and the insert of the new row apply together or not
at all. A partial unique index keeps at most one current row per logical id.
"""

import json
import logging
import sqlite3
import threading
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from kg_merge.errors import PersistenceError, VersionConflictError
from kg_merge.graph.models import (
    EntityVersion,
    FeedbackRecord,
    RelationshipVersion,
    relationship_key,
)
from kg_merge.graph.store import GraphStore

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS entity_versions (
    row_id TEXT PRIMARY KEY,
    logical_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    labels TEXT NOT NULL,
    properties TEXT NOT NULL,
    unique_keys TEXT NOT NULL,
    version INTEGER NOT NULL,
    is_current INTEGER NOT NULL,
    supersedes TEXT,
    retracted INTEGER NOT NULL DEFAULT 0,
    run_id TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (logical_id, version)
);
CREATE UNIQUE INDEX IF NOT EXISTS ix_entity_current
    ON entity_versions (logical_id) WHERE is_current = 1;
CREATE INDEX IF NOT EXISTS ix_entity_type
    ON entity_versions (entity_type, is_current);
CREATE TABLE IF NOT EXISTS relationship_versions (
    row_id TEXT PRIMARY KEY,
    logical_id TEXT NOT NULL,
    relation_type TEXT NOT NULL,
    source_id TEXT NOT NULL,
    target_id TEXT NOT NULL,
    properties TEXT NOT NULL,
    version INTEGER NOT NULL,
    is_current INTEGER NOT NULL,
    supersedes TEXT,
    retracted INTEGER NOT NULL DEFAULT 0,
    run_id TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (logical_id, version)
);
CREATE UNIQUE INDEX IF NOT EXISTS ix_relationship_current
    ON relationship_versions (logical_id) WHERE is_current = 1;
CREATE INDEX IF NOT EXISTS ix_relationship_source
    ON relationship_versions (source_id, is_current);
CREATE INDEX IF NOT EXISTS ix_relationship_target
    ON relationship_versions (target_id, is_current);
CREATE TABLE IF NOT EXISTS feedback (
    feedback_id TEXT PRIMARY KEY,
    conflict_id TEXT NOT NULL,
    run_id TEXT NOT NULL,
    logical_id TEXT NOT NULL,
    conflict_type TEXT NOT NULL,
    strategy TEXT NOT NULL,
    changed_props TEXT NOT NULL,
    canonical_id TEXT,
    learning_comment TEXT NOT NULL,
    automatic INTEGER NOT NULL,
    created_at TEXT NOT NULL
);
"""

_ENTITY_COLUMNS = (
    "row_id, logical_id, entity_type, labels, properties, unique_keys, version, "
    "is_current, supersedes, retracted, run_id, created_at"
)
_RELATIONSHIP_COLUMNS = (
    "row_id, logical_id, relation_type, source_id, target_id, properties, version, "
    "is_current, supersedes, retracted, run_id, created_at"
)


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str, sort_keys=True)


class SQLiteGraphStore(GraphStore):
    """Graph store persisted in a single SQLite database file."""

    def __init__(self, db_path: str | Path = ":memory:", timeout: float = 30.0) -> None:
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            # Autocommit mode: transactions are opened explicitly per commit
            self._conn = sqlite3.connect(
                self._db_path, timeout=timeout, isolation_level=None, check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA)
            self._check_schema_version()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open graph database {self._db_path}: {e}") from e
        # One connection shared by worker threads
        self._lock = threading.RLock()
        logger.debug(f"Opened graph database {self._db_path}")

    def _check_schema_version(self) -> None:
        row = self._conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO meta (key, value) VALUES ('schema_version', ?)", (str(SCHEMA_VERSION),)
            )
        elif int(row["value"]) != SCHEMA_VERSION:
            raise PersistenceError(
                f"Graph database schema v{row['value']} is not supported (expected v{SCHEMA_VERSION})"
            )

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self) -> Generator[sqlite3.Connection, None, None]:
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise PersistenceError(f"Cannot start transaction: {e}") from e
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                try:
                    self._conn.execute("COMMIT")
                except sqlite3.Error as e:
                    self._rollback()
                    raise PersistenceError(f"Commit failed: {e}") from e

    def _rollback(self) -> None:
        """Leave a failed transaction so the shared connection stays usable."""
        if not self._conn.in_transaction:
            return
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.error(f"Rollback after failed commit did not complete: {e}")

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(f"Query failed: {e}") from e

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

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
        try:
            with self._transaction() as conn:
                found = conn.execute(
                    f"SELECT {_ENTITY_COLUMNS} FROM entity_versions "
                    "WHERE logical_id = ? AND is_current = 1",
                    (logical_id,),
                ).fetchone()
                current = self._entity_from_row(found) if found else None
                row = self._next_entity_row(
                    logical_id, current, properties, expected_prior_version,
                    entity_type, labels, unique_keys, retracted, run_id,
                )
                if current is not None:
                    conn.execute(
                        "UPDATE entity_versions SET is_current = 0 WHERE row_id = ?",
                        (current.row_id,),
                    )
                conn.execute(
                    f"INSERT INTO entity_versions ({_ENTITY_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        row.row_id, row.logical_id, row.entity_type, _dumps(row.labels),
                        _dumps(row.properties), _dumps(row.unique_keys), row.version, 1,
                        row.supersedes, int(row.retracted), row.run_id, row.created_at.isoformat(),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise VersionConflictError(
                logical_id, expected_prior_version, self.current_version(logical_id)
            ) from e
        except sqlite3.Error as e:
            raise PersistenceError(f"Commit of {logical_id} failed: {e}") from e
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
        try:
            with self._transaction() as conn:
                found = conn.execute(
                    f"SELECT {_RELATIONSHIP_COLUMNS} FROM relationship_versions "
                    "WHERE logical_id = ? AND is_current = 1",
                    (key,),
                ).fetchone()
                current = self._relationship_from_row(found) if found else None
                row = self._next_relationship_row(
                    source_id, relation_type, target_id, current, properties,
                    expected_prior_version, retracted, run_id,
                )
                if current is not None:
                    conn.execute(
                        "UPDATE relationship_versions SET is_current = 0 WHERE row_id = ?",
                        (current.row_id,),
                    )
                conn.execute(
                    f"INSERT INTO relationship_versions ({_RELATIONSHIP_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        row.row_id, row.logical_id, row.relation_type, row.source_id,
                        row.target_id, _dumps(row.properties), row.version, 1,
                        row.supersedes, int(row.retracted), row.run_id, row.created_at.isoformat(),
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise VersionConflictError(key, expected_prior_version, self.relationship_version(key)) from e
        except sqlite3.Error as e:
            raise PersistenceError(f"Commit of {key} failed: {e}") from e
        logger.debug(f"Committed {row.row_id}")
        return row.version

    def record_feedback(self, record: FeedbackRecord) -> None:
        try:
            with self._transaction() as conn:
                conn.execute(
                    "INSERT INTO feedback (feedback_id, conflict_id, run_id, logical_id, "
                    "conflict_type, strategy, changed_props, canonical_id, learning_comment, "
                    "automatic, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.feedback_id, record.conflict_id, record.run_id, record.logical_id,
                        record.conflict_type, record.strategy, _dumps(record.changed_props),
                        record.canonical_id, record.learning_comment, int(record.automatic),
                        record.created_at.isoformat(),
                    ),
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot record feedback {record.feedback_id}: {e}") from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_entity(self, logical_id: str) -> EntityVersion | None:
        rows = self._query(
            f"SELECT {_ENTITY_COLUMNS} FROM entity_versions WHERE logical_id = ? AND is_current = 1",
            (logical_id,),
        )
        return self._entity_from_row(rows[0]) if rows else None

    def get_relationship(self, logical_id: str) -> RelationshipVersion | None:
        rows = self._query(
            f"SELECT {_RELATIONSHIP_COLUMNS} FROM relationship_versions "
            "WHERE logical_id = ? AND is_current = 1",
            (logical_id,),
        )
        return self._relationship_from_row(rows[0]) if rows else None

    def fetch_current(self, entity_type: str | None = None) -> list[EntityVersion]:
        sql = f"SELECT {_ENTITY_COLUMNS} FROM entity_versions WHERE is_current = 1 AND retracted = 0"
        params: tuple = ()
        if entity_type is not None:
            sql += " AND entity_type = ?"
            params = (entity_type,)
        return [self._entity_from_row(r) for r in self._query(sql + " ORDER BY logical_id", params)]

    def fetch_relationships(self, entity_id: str, direction: str = "out") -> list[RelationshipVersion]:
        clauses = {
            "out": "source_id = ?",
            "in": "target_id = ?",
            "both": "(source_id = ? OR target_id = ?)",
        }
        if direction not in clauses:
            raise ValueError(f"Invalid direction: {direction!r}")
        params = (entity_id, entity_id) if direction == "both" else (entity_id,)
        rows = self._query(
            f"SELECT {_RELATIONSHIP_COLUMNS} FROM relationship_versions "
            f"WHERE is_current = 1 AND retracted = 0 AND {clauses[direction]} ORDER BY logical_id",
            params,
        )
        return [self._relationship_from_row(r) for r in rows]

    def all_relationships(self) -> list[RelationshipVersion]:
        rows = self._query(
            f"SELECT {_RELATIONSHIP_COLUMNS} FROM relationship_versions "
            "WHERE is_current = 1 AND retracted = 0 ORDER BY logical_id"
        )
        return [self._relationship_from_row(r) for r in rows]

    def history(self, logical_id: str) -> list[EntityVersion]:
        rows = self._query(
            f"SELECT {_ENTITY_COLUMNS} FROM entity_versions WHERE logical_id = ? ORDER BY version",
            (logical_id,),
        )
        return [self._entity_from_row(r) for r in rows]

    def relationship_history(self, logical_id: str) -> list[RelationshipVersion]:
        rows = self._query(
            f"SELECT {_RELATIONSHIP_COLUMNS} FROM relationship_versions "
            "WHERE logical_id = ? ORDER BY version",
            (logical_id,),
        )
        return [self._relationship_from_row(r) for r in rows]

    def feedback(self, conflict_id: str | None = None, run_id: str | None = None) -> list[FeedbackRecord]:
        sql = (
            "SELECT feedback_id, conflict_id, run_id, logical_id, conflict_type, strategy, "
            "changed_props, canonical_id, learning_comment, automatic, created_at FROM feedback"
        )
        clauses, params = [], []
        if conflict_id is not None:
            clauses.append("conflict_id = ?")
            params.append(conflict_id)
        if run_id is not None:
            clauses.append("run_id = ?")
            params.append(run_id)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at, rowid"
        return [
            FeedbackRecord(
                feedback_id=r["feedback_id"],
                conflict_id=r["conflict_id"],
                run_id=r["run_id"],
                logical_id=r["logical_id"],
                conflict_type=r["conflict_type"],
                strategy=r["strategy"],
                changed_props=json.loads(r["changed_props"]),
                canonical_id=r["canonical_id"],
                learning_comment=r["learning_comment"],
                automatic=bool(r["automatic"]),
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in self._query(sql, tuple(params))
        ]

    @staticmethod
    def _entity_from_row(row: sqlite3.Row) -> EntityVersion:
        return EntityVersion(
            row_id=row["row_id"],
            logical_id=row["logical_id"],
            entity_type=row["entity_type"],
            labels=json.loads(row["labels"]),
            properties=json.loads(row["properties"]),
            unique_keys=json.loads(row["unique_keys"]),
            version=row["version"],
            is_current=bool(row["is_current"]),
            supersedes=row["supersedes"],
            retracted=bool(row["retracted"]),
            run_id=row["run_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    @staticmethod
    def _relationship_from_row(row: sqlite3.Row) -> RelationshipVersion:
        return RelationshipVersion(
            row_id=row["row_id"],
            logical_id=row["logical_id"],
            relation_type=row["relation_type"],
            source_id=row["source_id"],
            target_id=row["target_id"],
            properties=json.loads(row["properties"]),
            version=row["version"],
            is_current=bool(row["is_current"]),
            supersedes=row["supersedes"],
            retracted=bool(row["retracted"]),
            run_id=row["run_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )
