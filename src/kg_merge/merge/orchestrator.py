"""Merge orchestrator: drives one transform into the versioned graph.

A run walks through:

1. Quality gate check (``QualityGateRejected`` if not approved).
2. Discovery: every extracted entity is matched and diffed by bounded
   concurrent workers. Clean and auto-resolved entities are committed
   straight away.
3. If conflicts wait for review, the run parks in AWAITING_RESOLUTION.
   Nothing blocks: ``resolve_conflict`` is the only way forward.
4. Once every conflict is RESOLVED, the remaining entities and then all
   relationships are committed and the run ends COMPLETED (or FAILED when
   any unit failed).

Store calls run in worker threads under a timeout. Timeouts are retried a
bounded number of times and then abort the run; version clashes re-fetch,
re-diff and retry, and only fail their own unit when retries run out.
An entity whose row was written after it was diffed (by a twin in the
same transform or by another run) is classified again before the write,
so a changed value always surfaces as a conflict.
"""

import asyncio
import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from kg_merge.errors import (
    IdentityCollisionError,
    KgMergeError,
    NotFoundError,
    PersistenceError,
    RunNotActiveError,
    VersionConflictError,
)
from kg_merge.extract.models import ExtractedEntity, ExtractedRelationship, Transform
from kg_merge.graph.models import EntityVersion, GraphPage, relationship_key
from kg_merge.graph.store import GraphStore
from kg_merge.merge.detector import AssertedRelationship, ConflictDetector, diff_properties, diff_relationships
from kg_merge.merge.matcher import EntityMatcher, GraphIndex, MatchResult, make_logical_id, same_unique_keys
from kg_merge.merge.models import (
    Conflict,
    MergeRun,
    MergeSettings,
    MergeStatistics,
    Resolution,
    UnitError,
)
from kg_merge.merge.resolution import ResolutionEngine, apply_resolution
from kg_merge.ontology.models import Ontology
from kg_merge.quality.gate import QualityGate

logger = logging.getLogger(__name__)

# Entity unit outcomes
NEW, MERGED, UNCHANGED, REJECTED, FAILED = "new", "merged", "unchanged", "rejected", "failed"


@dataclass
class _EntityUnit:
    entity: ExtractedEntity
    logical_id: str | None  # None until a duplicate match picks its canonical row
    matched: bool = False
    match: MatchResult | None = None
    conflict_id: str | None = None
    resolution: Resolution | None = None
    outcome: str = ""
    seen_version: int = 0  # live stored version when last diffed

    @property
    def settled(self) -> bool:
        return bool(self.outcome)


@dataclass
class _RunState:
    run: MergeRun
    transform: Transform
    cancel_event: threading.Event = field(default_factory=threading.Event)
    lock: threading.RLock = field(default_factory=threading.RLock)
    units: dict[str, _EntityUnit] = field(default_factory=dict)
    aborted: bool = False
    finishing: bool = False
    waiting_since: float | None = None

    def stopping(self) -> bool:
        return self.aborted or self.cancel_event.is_set()


class MergeOrchestrator:
    """Runs merges of registered transforms into a graph store.

    Args:
        store: Versioned graph store
        ontology: Compiled ontology (unique keys, property types, rules)
        gate: Quality gate every transform must pass
        settings: Concurrency, retry and auto-resolve settings
    """

    def __init__(
        self,
        store: GraphStore,
        ontology: Ontology,
        gate: QualityGate,
        settings: MergeSettings | None = None,
    ) -> None:
        self.store = store
        self.ontology = ontology
        self.gate = gate
        self.settings = settings or MergeSettings()
        self.matcher = EntityMatcher()
        self.detector = ConflictDetector(ontology)
        self.resolutions = ResolutionEngine(store, self.settings.auto_resolve_threshold)
        self._transforms: dict[str, Transform] = {}
        self._runs: dict[str, _RunState] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def add_transform(self, transform: Transform) -> None:
        """Make a transform available to ``start_merge``."""
        with self._lock:
            self._transforms[transform.transform_id] = transform

    def start_merge(self, session_id: str, transform_id: str) -> MergeRun:
        """Start a merge run for an approved transform.

        Returns once discovery is done: either COMPLETED/FAILED/CANCELLED,
        or AWAITING_RESOLUTION with conflicts to resolve.

        Raises:
            QualityGateRejected: If the transform is not approved
            NotFoundError: If the transform was never added
        """
        self.gate.require_approved(transform_id)
        with self._lock:
            transform = self._transforms.get(transform_id)
            if transform is None:
                raise NotFoundError(f"Transform not found: {transform_id}")
            run = MergeRun(
                run_id=uuid.uuid4().hex,
                session_id=session_id,
                transform_id=transform_id,
                total_units=len(transform.entities) + len(transform.relationships),
            )
            state = _RunState(run=run, transform=transform)
            self._runs[run.run_id] = state

        logger.info(
            f"Merge run {run.run_id} started for transform {transform_id} "
            f"({len(transform.entities)} entities, {len(transform.relationships)} relationships)"
        )
        self._drive(state, self._adiscover)
        return self.get_run(run.run_id)

    def get_run(self, run_id: str) -> MergeRun:
        state = self._state(run_id)
        with state.lock:
            return state.run.model_copy(deep=True)

    def list_conflicts(self, run_id: str, status: str | None = None) -> list[Conflict]:
        """Conflicts of a run in discovery order, optionally by status."""
        self._state(run_id)
        return self.resolutions.conflicts(run_id=run_id, status=status)

    def get_conflict(self, conflict_id: str) -> Conflict:
        return self.resolutions.get(conflict_id)

    def resolve_conflict(
        self,
        conflict_id: str,
        strategy: str,
        changed_props: dict[str, Any] | None = None,
        learning_comment: str = "",
        canonical_id: str | None = None,
    ) -> Resolution:
        """Resolve one conflict; commits the run once nothing is left open.

        Raises:
            NotFoundError: Unknown conflict
            RunNotActiveError: The run was cancelled or has failed
            ConflictResolutionError: Invalid resolution request
            ConflictAlreadyResolved: Already resolved with a different decision
        """
        conflict = self.resolutions.get(conflict_id)
        state = self._state(conflict.run_id)

        def _require_active(_: Conflict) -> None:
            with state.lock:
                if state.run.status in ("CANCELLED", "FAILED") or state.stopping():
                    raise RunNotActiveError(
                        f"Run {state.run.run_id} is {state.run.status.lower()}; "
                        f"conflict {conflict_id} can no longer be resolved"
                    )

        resolution, created = self.resolutions.resolve(
            conflict_id, strategy, changed_props, learning_comment, canonical_id,
            guard=_require_active,
        )
        if not created:
            return resolution

        with state.lock:
            unit = state.units[conflict.entity_ref]
            unit.resolution = resolution
            if resolution.canonical_id:
                unit.logical_id = resolution.canonical_id
            state.run.resolved_count += 1
            ready = (
                state.run.status == "AWAITING_RESOLUTION"
                and state.run.resolved_count == state.run.conflicts_count
                and not state.finishing
            )
            if ready:
                state.finishing = True
                if state.waiting_since is not None:
                    state.run.statistics.timings.resolution_wait = time.perf_counter() - state.waiting_since
                state.run.status = "RUNNING"

        if ready:
            logger.info(f"All conflicts of run {state.run.run_id} resolved, committing")
            self._drive(state, self._acommit_remaining)
        return resolution

    def cancel(self, run_id: str) -> MergeRun:
        """Cancel a run. Committed rows stay; pending work is dropped."""
        state = self._state(run_id)
        with state.lock:
            if state.run.is_terminal:
                return state.run.model_copy(deep=True)
            state.cancel_event.set()
            # A parked run has no worker that would notice the token
            if state.run.status == "AWAITING_RESOLUTION":
                self._finish(state, "CANCELLED")
            logger.info(f"Merge run {run_id} cancellation requested")
            return state.run.model_copy(deep=True)

    def statistics(self, run_id: str) -> MergeStatistics:
        state = self._state(run_id)
        with state.lock:
            return state.run.statistics.model_copy(deep=True)

    def graph_snapshot(self, page: int = 1, page_size: int = 100) -> GraphPage:
        """Current entities and relationships only, one page at a time."""
        return self.store.snapshot(page=page, page_size=page_size)

    def runs(self) -> list[MergeRun]:
        with self._lock:
            states = list(self._runs.values())
        return [self.get_run(s.run.run_id) for s in states]

    # ------------------------------------------------------------------
    # Run driver
    # ------------------------------------------------------------------

    def _state(self, run_id: str) -> _RunState:
        with self._lock:
            state = self._runs.get(run_id)
        if state is None:
            raise NotFoundError(f"Merge run not found: {run_id}")
        return state

    def _drive(self, state: _RunState, phase: Callable[[_RunState], Any]) -> None:
        try:
            asyncio.run(phase(state))
        except BaseException:
            with state.lock:
                if not state.run.is_terminal:
                    self._finish(state, "FAILED", failure="internal error")
            raise

    def _finish(self, state: _RunState, status: str, failure: str = "") -> None:
        # Caller holds state.lock.
        state.run.status = status
        if failure:
            state.run.failure = failure
        state.run.finished_at = datetime.now(timezone.utc)
        logger.info(
            f"Merge run {state.run.run_id} {status.lower()}: "
            f"{state.run.settled_units}/{state.run.total_units} units settled"
            + (f" ({failure})" if failure else "")
        )

    def _settle_end(self, state: _RunState) -> bool:
        """Finish the run if it was stopped. Returns True when it did."""
        with state.lock:
            if state.run.is_terminal:
                return True
            if state.aborted:
                self._finish(state, "FAILED", failure=state.run.failure)
                return True
            if state.cancel_event.is_set():
                self._finish(state, "CANCELLED")
                return True
        return False

    async def _adiscover(self, state: _RunState) -> None:
        transform = state.transform
        with state.lock:
            state.run.status = "RUNNING"
        started = time.perf_counter()

        types = {e.entity_type for e in transform.entities}
        try:
            index = await self._store_call(state, GraphIndex.build, self.store, self.ontology, types)
        except PersistenceError as e:
            self._abort(state, "graph index", e)
            self._settle_end(state)
            return

        # Matching first: relationship targets need every entity's logical id
        for entity in transform.entities:
            match = self.matcher.match(entity, index)
            if match.kind == "one":
                unit = _EntityUnit(entity, match.candidate_ids[0], matched=True, match=match)
            elif match.kind == "many":
                unit = _EntityUnit(entity, None, match=match)
            else:
                logical_id = make_logical_id(entity, self.ontology.unique_keys(entity.entity_type))
                unit = _EntityUnit(entity, logical_id, match=match)
            state.units[entity.ref] = unit

        sem = asyncio.Semaphore(self.settings.concurrency)

        async def _bounded(unit: _EntityUnit) -> None:
            async with sem:
                await self._guarded(state, f"entity {unit.entity.ref}", self._adiscover_entity, state, unit, index)

        await asyncio.gather(*[_bounded(u) for u in state.units.values()])

        with state.lock:
            state.run.statistics.timings.discovery = time.perf_counter() - started
        if self._settle_end(state):
            return

        with state.lock:
            open_conflicts = state.run.conflicts_count - state.run.resolved_count
            if open_conflicts:
                state.run.status = "AWAITING_RESOLUTION"
                state.waiting_since = time.perf_counter()
                logger.info(f"Merge run {state.run.run_id} awaits resolution of {open_conflicts} conflicts")
                return
            state.finishing = True

        await self._acommit_remaining(state)

    async def _adiscover_entity(self, state: _RunState, unit: _EntityUnit, index: GraphIndex) -> None:
        entity = unit.entity
        match = unit.match or self.matcher.match(entity, index)
        existing = None
        stored_rels: list = []
        if match.kind == "one":
            existing = await self._store_call(state, self.store.get_entity, unit.logical_id)
            stored_rels = await self._store_call(state, self.store.fetch_relationships, unit.logical_id, "out")
            unit.seen_version = _live_version(existing)

        conflict = self.detector.detect(
            entity,
            match,
            logical_id=unit.logical_id or "",
            existing=existing,
            existing_relationships=stored_rels,
            asserted_relationships=self._asserted(state, entity),
            run_id=state.run.run_id,
        )
        if conflict is None:
            await self._acommit_entity(state, unit)
            return

        registered = await self._aregister(state, unit, conflict)
        if registered.is_resolved:
            await self._acommit_entity(state, unit)

    async def _aregister(self, state: _RunState, unit: _EntityUnit, conflict: Conflict) -> Conflict:
        """Register a conflict for the unit; auto-resolution records feedback in the store."""
        registered = await self._store_call(state, self.resolutions.ensure_registered, conflict)
        with state.lock:
            unit.conflict_id = registered.conflict_id
            state.run.conflicts_count += 1
            if registered.is_resolved:
                state.run.resolved_count += 1
        if registered.is_resolved:
            unit.resolution = self.resolutions.resolution(registered.conflict_id)
        return registered

    async def _acommit_remaining(self, state: _RunState) -> None:
        sem = asyncio.Semaphore(self.settings.concurrency)
        started = time.perf_counter()

        async def _bounded(name: str, fn: Callable, *args: Any) -> None:
            async with sem:
                await self._guarded(state, name, fn, *args)

        pending = [u for u in state.units.values() if not u.settled]
        await asyncio.gather(*[
            _bounded(f"entity {u.entity.ref}", self._acommit_entity, state, u) for u in pending
        ])

        if not state.stopping():
            by_source: dict[str, list[ExtractedRelationship]] = {}
            orphans = []
            for rel in state.transform.relationships:
                if rel.source_ref in state.units:
                    by_source.setdefault(rel.source_ref, []).append(rel)
                else:
                    orphans.append(rel)
            for rel in orphans:
                self._unit_failed(state, _rel_name(rel), f"unknown source entity {rel.source_ref!r}")
            await asyncio.gather(*[
                _bounded(f"relationships of {ref}", self._acommit_relationships, state, state.units[ref], rels)
                for ref, rels in by_source.items()
            ])

        with state.lock:
            state.run.statistics.timings.commit += time.perf_counter() - started
        if self._settle_end(state):
            return
        with state.lock:
            failed = state.run.statistics.failed_units
            self._finish(state, "FAILED" if failed else "COMPLETED",
                         failure=f"{failed} units failed" if failed else "")

    # ------------------------------------------------------------------
    # Units
    # ------------------------------------------------------------------

    async def _guarded(self, state: _RunState, name: str, fn: Callable, *args: Any) -> None:
        """Run one unit; unit errors are recorded, persistence errors abort the run."""
        if state.stopping():
            return
        try:
            await fn(*args)
        except PersistenceError as e:
            self._abort(state, name, e)
        except KgMergeError as e:
            self._unit_failed(state, name, str(e))

    def _abort(self, state: _RunState, name: str, error: PersistenceError) -> None:
        with state.lock:
            if not state.aborted:
                state.aborted = True
                state.run.failure = str(error)
        logger.error(f"Run {state.run.run_id} aborted on {name}: {error}")

    def _unit_failed(self, state: _RunState, name: str, error: str) -> None:
        with state.lock:
            state.run.errors.append(UnitError(unit=name, error=error))
            state.run.statistics.failed_units += 1
            state.run.settled_units += 1
            if name.startswith("entity "):
                unit = state.units.get(name[len("entity "):])
                if unit is not None:
                    unit.outcome = FAILED
        logger.warning(f"{name} failed: {error}")

    async def _store_call(self, state: _RunState, fn: Callable, *args: Any, **kwargs: Any) -> Any:
        """Call the store in a worker thread, retrying timeouts."""
        attempts = self.settings.max_commit_retries
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(fn, *args, **kwargs), timeout=self.settings.commit_timeout,
                )
            except TimeoutError:
                logger.warning(f"Store call {fn.__name__} timed out (attempt {attempt}/{attempts})")
                with state.lock:
                    state.run.statistics.commit_retries += 1
            except VersionConflictError as e:
                e.after_timeout = attempt > 1
                raise
        raise PersistenceError(f"Store call {fn.__name__} timed out after {attempts} attempts")

    def _asserted(self, state: _RunState, entity: ExtractedEntity) -> list[AssertedRelationship]:
        """Outgoing relationships of the entity whose target is known."""
        asserted = []
        for rel in state.transform.outgoing(entity.ref):
            target_id = self._target_id(state, rel.target_ref)
            if target_id is not None:
                asserted.append(AssertedRelationship(
                    relation_type=rel.relation_type,
                    target_id=target_id,
                    properties=dict(rel.properties),
                    confidence=rel.confidence,
                ))
        return asserted

    def _target_id(self, state: _RunState, ref: str) -> str | None:
        unit = state.units.get(ref)
        if unit is None:
            return ref  # Already a logical id in the graph; checked at commit
        if unit.outcome == FAILED or (unit.outcome == REJECTED and not unit.matched):
            return None
        return unit.logical_id

    async def _acommit_entity(self, state: _RunState, unit: _EntityUnit) -> None:
        if state.stopping():
            return
        entity = unit.entity
        type_def = self.ontology.entity_types.get(entity.entity_type)
        attempts = self.settings.max_commit_retries
        for attempt in range(1, attempts + 1):
            existing = None
            if not _rejected(unit):
                existing = await self._store_call(state, self.store.get_entity, _commit_id(unit))
            if unit.resolution is None and _live_version(existing) != unit.seen_version:
                # Written since discovery: classify again before writing
                existing, proceed = await self._arecheck_entity(state, unit, existing)
                if not proceed:
                    return
            if _rejected(unit):
                self._settle_entity(state, unit, REJECTED)
                return

            resolution = unit.resolution or Resolution(conflict_id="", strategy="ACCEPT", automatic=True)
            logical_id = _commit_id(unit)
            existing_props = existing.properties if existing and not existing.retracted else {}
            diff_view = Conflict(
                conflict_id=resolution.conflict_id or "implicit",
                run_id=state.run.run_id,
                entity_ref=entity.ref,
                logical_id=logical_id,
                entity_type=entity.entity_type,
                conflict_type="property_conflict",
                property_diffs=diff_properties(existing_props, entity.properties),
            )
            applied = apply_resolution(diff_view, resolution, existing_props)
            if existing is not None and not existing.retracted and not applied.write:
                self._settle_entity(state, unit, UNCHANGED)
                return
            expected = existing.version if existing else 0
            try:
                version = await self._store_call(
                    state,
                    self.store.commit_entity,
                    logical_id,
                    applied.properties,
                    expected,
                    entity_type=entity.entity_type if existing is None else None,
                    labels=entity.labels or (type_def.labels if type_def else []),
                    unique_keys=self.ontology.unique_keys(entity.entity_type),
                    run_id=state.run.run_id,
                )
            except VersionConflictError as e:
                landed = None
                if e.after_timeout:
                    landed = await self._store_call(state, self.store.get_entity, logical_id)
                if _is_own_write(landed, state.run.run_id, expected, applied.properties):
                    logger.info(f"{logical_id}: timed-out commit of v{landed.version} landed")
                    version = landed.version
                else:
                    logger.debug(f"{logical_id}: {e} (attempt {attempt}/{attempts}), re-fetching")
                    with state.lock:
                        state.run.statistics.commit_retries += 1
                    if attempt == attempts:
                        raise
                    continue
            with state.lock:
                unit.logical_id = logical_id
                unit.seen_version = version
            self._settle_entity(state, unit, NEW if version == 1 else MERGED)
            return

    async def _arecheck_entity(
        self, state: _RunState, unit: _EntityUnit, existing: EntityVersion | None,
    ) -> tuple[EntityVersion | None, bool]:
        """Classify an entity again once its row changed after discovery.

        A row holding other unique key values belongs to another entity:
        the unit moves to an id derived from its exact key values, or fails
        when the extractor chose the id. A row of the same entity is diffed
        as a match, and a conflict is registered before anything is written.

        Returns:
            The row to commit against, and whether the commit may go ahead
        """
        entity = unit.entity
        keys = self.ontology.unique_keys(entity.entity_type)
        if _held_by_other(existing, entity, keys):
            if entity.logical_id:
                raise IdentityCollisionError(existing.logical_id, entity.ref)
            fresh_id = make_logical_id(entity, keys, exact=True)
            existing = await self._store_call(state, self.store.get_entity, fresh_id)
            if _held_by_other(existing, entity, keys):
                raise IdentityCollisionError(fresh_id, entity.ref)
            logger.info(f"{entity.ref}: {unit.logical_id} belongs to another entity, using {fresh_id}")
            with state.lock:
                unit.logical_id = fresh_id
            if _live_version(existing) == 0:
                unit.seen_version = 0
                return existing, True

        stored_rels = await self._store_call(state, self.store.fetch_relationships, unit.logical_id, "out")
        conflict = self.detector.detect(
            entity,
            MatchResult((unit.logical_id,)),
            logical_id=unit.logical_id,
            existing=existing,
            existing_relationships=stored_rels,
            asserted_relationships=self._asserted(state, entity),
            run_id=state.run.run_id,
        )
        with state.lock:
            unit.matched = _live_version(existing) > 0
            unit.seen_version = _live_version(existing)
        if conflict is None:
            return existing, True
        logger.info(f"{entity.ref}: {unit.logical_id} was written during the run, raised {conflict.conflict_type}")
        registered = await self._aregister(state, unit, conflict)
        return existing, registered.is_resolved

    def _settle_entity(self, state: _RunState, unit: _EntityUnit, outcome: str) -> None:
        counters = {
            NEW: "new_entities",
            MERGED: "merged_entities",
            UNCHANGED: "unchanged_entities",
            REJECTED: "rejected_entities",
        }
        with state.lock:
            unit.outcome = outcome
            stats = state.run.statistics
            stats.entities_processed += 1
            setattr(stats, counters[outcome], getattr(stats, counters[outcome]) + 1)
            state.run.settled_units += 1

    async def _acommit_relationships(
        self, state: _RunState, unit: _EntityUnit, rels: list[ExtractedRelationship],
    ) -> None:
        """Commit one source entity's relationships under its resolution."""
        if unit.outcome in (FAILED, REJECTED) or unit.logical_id is None:
            self._settle_relationships(state, rels, skipped=len(rels))
            return

        source_id = unit.logical_id
        asserted = []
        unresolved = []
        for rel in rels:
            target_id = self._target_id(state, rel.target_ref)
            if target_id is not None and rel.target_ref not in state.units:
                target = await self._store_call(state, self.store.get_entity, target_id)
                if target is None or target.retracted:
                    self._unit_failed(state, _rel_name(rel), f"unknown target entity {rel.target_ref!r}")
                    continue
            if target_id is None:
                unresolved.append(rel)
                continue
            asserted.append((rel, AssertedRelationship(
                relation_type=rel.relation_type, target_id=target_id,
                properties=dict(rel.properties), confidence=rel.confidence,
            )))
        self._settle_relationships(state, unresolved, skipped=len(unresolved))

        resolution = unit.resolution or Resolution(conflict_id="", strategy="ACCEPT", automatic=True)
        stored = await self._store_call(state, self.store.fetch_relationships, source_id, "out")
        diff_view = Conflict(
            conflict_id=resolution.conflict_id or "implicit",
            run_id=state.run.run_id,
            entity_ref=unit.entity.ref,
            logical_id=source_id,
            entity_type=unit.entity.entity_type,
            conflict_type="relationship_conflict",
            relationship_diffs=diff_relationships(stored, [a for _, a in asserted]),
        )
        applied = apply_resolution(diff_view, resolution, {})
        to_add = {(d.relation_type, d.target_id): d for d in applied.add_relationships}

        for rel, assertion in asserted:
            key = (assertion.relation_type, assertion.target_id)
            diff = to_add.pop(key, None)
            if diff is None:
                self._settle_relationships(state, [rel], skipped=1)
                continue
            try:
                await self._acommit_relationship(
                    state, source_id, diff.relation_type, diff.target_id, diff.properties,
                )
            except VersionConflictError as e:
                self._unit_failed(state, _rel_name(rel), str(e))
                continue
            self._settle_relationships(state, [rel], committed=1)

        for diff in applied.retract_relationships:
            try:
                await self._acommit_relationship(
                    state, source_id, diff.relation_type, diff.target_id, diff.properties, retracted=True,
                )
            except VersionConflictError as e:
                # Retractions are not units of their own; the source entity's diff stays stale
                logger.warning(f"Could not retract {diff.field} of {source_id}: {e}")
                with state.lock:
                    state.run.errors.append(UnitError(unit=f"retraction {diff.field} of {source_id}", error=str(e)))
                continue
            with state.lock:
                state.run.statistics.relationships_retracted += 1

    async def _acommit_relationship(
        self,
        state: _RunState,
        source_id: str,
        relation_type: str,
        target_id: str,
        properties: dict[str, Any],
        retracted: bool = False,
    ) -> None:
        key = relationship_key(source_id, relation_type, target_id)
        attempts = self.settings.max_commit_retries
        for attempt in range(1, attempts + 1):
            expected = await self._store_call(state, self.store.relationship_version, key)
            try:
                await self._store_call(
                    state,
                    self.store.commit_relationship,
                    source_id, relation_type, target_id, properties, expected,
                    retracted=retracted, run_id=state.run.run_id,
                )
                return
            except VersionConflictError:
                with state.lock:
                    state.run.statistics.commit_retries += 1
                if attempt == attempts:
                    raise

    def _settle_relationships(
        self, state: _RunState, rels: list[ExtractedRelationship], committed: int = 0, skipped: int = 0,
    ) -> None:
        if not rels:
            return
        with state.lock:
            state.run.statistics.relationships_committed += committed
            state.run.statistics.relationships_skipped += skipped
            state.run.settled_units += len(rels)


def _rel_name(rel: ExtractedRelationship) -> str:
    return f"relationship {rel.source_ref} {rel.relation_type} {rel.target_ref}"


def _live_version(row: EntityVersion | None) -> int:
    return row.version if row is not None and not row.retracted else 0


def _commit_id(unit: _EntityUnit) -> str | None:
    canonical = unit.resolution.canonical_id if unit.resolution else None
    return canonical or unit.logical_id


def _rejected(unit: _EntityUnit) -> bool:
    return unit.resolution is not None and unit.resolution.strategy == "REJECT"


def _held_by_other(row: EntityVersion | None, entity: ExtractedEntity, unique_keys: list[str]) -> bool:
    """Whether a live row carries unique key values other than the entity's."""
    if _live_version(row) == 0 or not unique_keys:
        return False
    return not same_unique_keys(row.properties, entity.properties, unique_keys)


def _is_own_write(row: EntityVersion | None, run_id: str, expected: int, properties: dict[str, Any]) -> bool:
    """Whether the row is the commit this run attempted on top of ``expected``."""
    return (
        row is not None
        and row.run_id == run_id
        and row.version == expected + 1
        and row.properties == properties
    )
