"""Exception hierarchy for kg-merge.

Per-conflict and per-entity errors are attached to the unit of work that
raised them and never halt a merge run. Run-level errors (persistence
failures after retries, a rejected quality gate) stop the run.
"""


class KgMergeError(Exception):
    """Base class for all kg-merge errors."""


class ValidationError(KgMergeError):
    """Malformed rule or ontology input. Raised before any run starts."""

    def __init__(self, message: str, rule_id: str | None = None):
        self.rule_id = rule_id
        if rule_id:
            message = f"Rule {rule_id!r}: {message}"
        super().__init__(message)


class NotFoundError(KgMergeError):
    """A run, conflict, transform or stored row does not exist."""


class MatchAmbiguityError(KgMergeError):
    """A unique key matched more than one existing entity.

    The orchestrator never lets this escape: ambiguous matches are turned
    into ``duplicate_match`` conflicts. It is raised only when a caller asks
    a MatchResult for a single candidate that does not exist.
    """

    def __init__(self, candidate_ids: list[str]):
        self.candidate_ids = list(candidate_ids)
        super().__init__(
            f"Ambiguous match: {len(self.candidate_ids)} candidates "
            f"({', '.join(self.candidate_ids)})"
        )


class ConflictResolutionError(KgMergeError):
    """Invalid resolution request. The conflict stays unresolved."""


class ConflictAlreadyResolved(KgMergeError):
    """A resolved conflict was resolved again with different content."""

    def __init__(self, conflict_id: str):
        self.conflict_id = conflict_id
        super().__init__(f"Conflict {conflict_id} is already resolved differently")


class RunNotActiveError(ConflictResolutionError):
    """The merge run owning a conflict was cancelled or has failed."""


class VersionConflictError(KgMergeError):
    """Optimistic-concurrency clash on commit. Retriable.

    ``after_timeout`` is set when the clashing call retried a timed-out
    attempt, which may itself have landed.
    """

    def __init__(self, logical_id: str, expected: int, actual: int):
        self.logical_id = logical_id
        self.expected = expected
        self.actual = actual
        self.after_timeout = False
        super().__init__(
            f"Version conflict on {logical_id}: expected v{expected}, store has v{actual}"
        )


class IdentityCollisionError(KgMergeError):
    """A new entity's logical id is held by a stored entity with other unique key values."""

    def __init__(self, logical_id: str, entity_ref: str):
        self.logical_id = logical_id
        self.entity_ref = entity_ref
        super().__init__(
            f"{entity_ref}: logical id {logical_id} belongs to an entity with different unique keys"
        )


class PersistenceError(KgMergeError):
    """The store failed in a way retries cannot fix. Aborts the run."""


class QualityGateRejected(KgMergeError):
    """The transform has no approved quality result, so no merge may start."""

    def __init__(self, transform_id: str, reason: str):
        self.transform_id = transform_id
        self.reason = reason
        super().__init__(f"Quality gate rejected transform {transform_id}: {reason}")
