"""Library-usable pipeline functions.

Each function corresponds to a CLI command but takes explicit parameters
instead of reading from config/CLI args. Use these from notebooks, web
apps, or anywhere you want kg-merge as a library.
"""

import logging
from pathlib import Path

from kg_merge.errors import ConflictAlreadyResolved, ConflictResolutionError
from kg_merge.extract.models import Transform
from kg_merge.graph.knowledge_graph import KnowledgeGraph
from kg_merge.graph.store import GraphStore
from kg_merge.merge.io import ConflictEntry, ConflictFile, write_conflicts
from kg_merge.merge.models import MergeRun, MergeSettings
from kg_merge.merge.orchestrator import MergeOrchestrator
from kg_merge.ontology.models import Ontology
from kg_merge.quality.engine import evaluate
from kg_merge.quality.gate import QualityGate
from kg_merge.quality.models import QualityRecord

logger = logging.getLogger(__name__)


def run_check(
    transform: Transform,
    ontology: Ontology,
    gate: QualityGate,
    store: GraphStore | None = None,
) -> QualityRecord:
    """Score a transform against the ontology's rules and record it at the gate.

    Args:
        transform: Extraction output to score
        ontology: Ontology carrying the quality rules
        gate: Gate that records (and possibly auto-approves) the result
        store: Existing graph; its entity ids count as valid references

    Returns:
        The recorded quality result with its gate decision, if any
    """
    known_ids = store.entity_ids() if store is not None else None
    result = evaluate(
        transform.entities,
        transform.relationships,
        ontology.quality_rules,
        config=gate.config,
        known_entity_ids=known_ids,
        transform_id=transform.transform_id,
    )
    return gate.record(transform.transform_id, result)


def apply_decisions(
    orchestrator: MergeOrchestrator,
    run_id: str,
    conflict_file: ConflictFile,
) -> dict[str, int]:
    """Resolve a run's open conflicts from a decisions file.

    Returns:
        Stats dict with counts of applied, missing and invalid decisions
    """
    stats = {"applied": 0, "missing": 0, "invalid": 0}
    for conflict in orchestrator.list_conflicts(run_id, status="AWAITING_REVIEW"):
        decision = conflict_file.decisions_for(conflict)
        if decision is None:
            stats["missing"] += 1
            continue
        try:
            orchestrator.resolve_conflict(
                conflict.conflict_id,
                decision.strategy,
                decision.changed_props,
                decision.learning_comment,
                canonical_id=decision.canonical_id,
            )
        except (ConflictResolutionError, ConflictAlreadyResolved) as e:
            logger.warning(f"Decision for {conflict.logical_id or conflict.entity_ref} not applied: {e}")
            stats["invalid"] += 1
            continue
        stats["applied"] += 1
    logger.info(
        f"Applied {stats['applied']} decisions "
        f"({stats['missing']} missing, {stats['invalid']} invalid)"
    )
    return stats


def run_merge(
    transform: Transform,
    ontology: Ontology,
    store: GraphStore,
    gate: QualityGate,
    settings: MergeSettings | None = None,
    session_id: str = "",
    decisions: ConflictFile | None = None,
) -> tuple[MergeOrchestrator, MergeRun]:
    """Merge an approved transform into the store.

    Args:
        transform: Extraction output to merge
        ontology: Ontology with unique keys and property types
        store: Target graph store
        gate: Quality gate holding the transform's approval
        settings: Merge settings (defaults if omitted)
        session_id: Recorded on the run
        decisions: Offline decisions applied to conflicts awaiting review

    Returns:
        The orchestrator (to resolve remaining conflicts) and the run state

    Raises:
        QualityGateRejected: If the transform is not approved
    """
    orchestrator = MergeOrchestrator(store, ontology, gate, settings)
    orchestrator.add_transform(transform)
    run = orchestrator.start_merge(session_id or transform.session_id, transform.transform_id)
    if decisions is not None and run.status == "AWAITING_RESOLUTION":
        apply_decisions(orchestrator, run.run_id, decisions)
        run = orchestrator.get_run(run.run_id)
    return orchestrator, run


def export_open_conflicts(orchestrator: MergeOrchestrator, run_id: str, path: Path) -> ConflictFile:
    """Write a run's conflicts that still await review to YAML."""
    run = orchestrator.get_run(run_id)
    conflict_file = ConflictFile(
        run_id=run_id,
        transform_id=run.transform_id,
        conflicts=[
            ConflictEntry.from_conflict(c)
            for c in orchestrator.list_conflicts(run_id, status="AWAITING_REVIEW")
        ],
    )
    write_conflicts(conflict_file, path)
    return conflict_file


def run_export(store: GraphStore, output_path: Path) -> KnowledgeGraph:
    """Export the current graph to JSON."""
    kg = KnowledgeGraph.from_store(store)
    kg.save(output_path)
    return kg
