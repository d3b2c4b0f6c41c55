"""Quality rule engine: score extracted entities against ontology rules.

Pure function of (entities, relationships, rules, config): no I/O, no
clock, no randomness. Repeated calls with the same input give an equal
QualityResult.
"""

import logging
from collections import Counter
from typing import Any

from kg_merge.extract.models import ExtractedEntity, ExtractedRelationship
from kg_merge.quality.models import (
    SEVERITIES,
    QualityConfig,
    QualityResult,
    QualityViolation,
    grade_for,
)
from kg_merge.quality.rules import CompletenessRule, QualityRule, RuleContext, parse_rules

logger = logging.getLogger(__name__)

MAX_SCORE = 100.0


def evaluate(
    entities: list[ExtractedEntity],
    relationships: list[ExtractedRelationship],
    rules: list[QualityRule | dict[str, Any]],
    config: QualityConfig | None = None,
    known_entity_ids: set[str] | None = None,
    transform_id: str = "",
) -> QualityResult:
    """Evaluate quality rules and produce a scored result.

    Each entity starts at 100 and loses a severity-weighted penalty per
    violation, floored at 0. The overall score is the mean over entities;
    dataset-level completeness violations are then subtracted from that mean.

    Args:
        entities: Extracted entities to score
        relationships: Extracted relationships (for cardinality checks)
        rules: Rule models or raw rule definitions
        config: Penalties and review threshold (defaults if omitted)
        known_entity_ids: Ids already in the graph, valid as references
        transform_id: Recorded on the result

    Returns:
        Immutable QualityResult

    Raises:
        ValidationError: If any rule definition is malformed
    """
    config = config or QualityConfig()
    parsed = parse_rules(list(rules))
    context = RuleContext.build(entities, relationships, known_entity_ids)

    violations: list[QualityViolation] = []
    entity_scores: dict[str, float] = {}

    for entity in entities:
        applicable = [r for r in parsed if r.applies_to(entity)]
        entity_violations: list[QualityViolation] = []
        for rule in applicable:
            entity_violations.extend(rule.evaluate(entity, context))

        penalty = sum(config.penalty_for(v.severity) for v in entity_violations)
        entity_scores[entity.ref] = round(max(0.0, MAX_SCORE - penalty), 2)
        violations.extend(entity_violations)

    dataset_violations: list[QualityViolation] = []
    for rule in parsed:
        if isinstance(rule, CompletenessRule):
            dataset_violations.extend(rule.evaluate_dataset(entities, context))
    violations.extend(dataset_violations)

    if entity_scores:
        mean_score = sum(entity_scores.values()) / len(entity_scores)
    else:
        mean_score = MAX_SCORE
    dataset_penalty = sum(config.penalty_for(v.severity) for v in dataset_violations)
    overall = round(max(0.0, mean_score - dataset_penalty), 2)

    severity_counts = Counter(v.severity for v in violations)
    counts = {severity: severity_counts.get(severity, 0) for severity in SEVERITIES}

    requires_review = overall < config.manual_review_threshold or counts["error"] > 0

    result = QualityResult(
        transform_id=transform_id,
        overall_score=overall,
        grade=grade_for(overall),
        violations=violations,
        counts=counts,
        entity_scores=entity_scores,
        entities_evaluated=len(entities),
        rules_evaluated=len(parsed),
        requires_review=requires_review,
    )

    logger.info(
        f"Quality {transform_id or '(unnamed)'}: score {overall:.1f} ({result.grade}), "
        f"{counts['error']} errors, {counts['warning']} warnings, {counts['info']} info"
        + ("; review required" if requires_review else "")
    )
    return result
