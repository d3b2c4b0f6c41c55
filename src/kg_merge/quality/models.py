"""Pydantic models for quality scoring: violations, results and gate decisions."""

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Severity = Literal["error", "warning", "info"]
RuleKind = Literal["format", "business", "completeness", "consistency"]
Grade = Literal["A", "B", "C", "D", "F"]
DecisionStatus = Literal["APPROVED", "REJECTED"]

SEVERITIES: tuple[Severity, ...] = ("error", "warning", "info")

# Lower bound (inclusive) of each grade, checked top-down
GRADE_THRESHOLDS: tuple[tuple[float, Grade], ...] = (
    (90.0, "A"),
    (80.0, "B"),
    (70.0, "C"),
    (60.0, "D"),
    (0.0, "F"),
)


def grade_for(score: float) -> Grade:
    """Map a 0-100 score to its letter grade."""
    for lower, grade in GRADE_THRESHOLDS:
        if score >= lower:
            return grade
    return "F"


class QualityConfig(BaseModel):
    """Scoring constants and review thresholds for the rule engine."""

    error_penalty: float = Field(default=20.0, ge=0.0)
    warning_penalty: float = Field(default=10.0, ge=0.0)
    info_penalty: float = Field(default=2.0, ge=0.0)
    manual_review_threshold: float = Field(default=70.0, ge=0.0, le=100.0)
    auto_approve: bool = True
    auto_approve_threshold: float = Field(default=90.0, ge=0.0, le=100.0)

    def penalty_for(self, severity: Severity) -> float:
        if severity == "error":
            return self.error_penalty
        if severity == "warning":
            return self.warning_penalty
        return self.info_penalty


class QualityViolation(BaseModel):
    """A single rule failure against one entity (or the whole dataset)."""

    model_config = ConfigDict(frozen=True)

    rule_id: str
    rule_kind: RuleKind
    severity: Severity
    entity_id: str | None = None  # None for dataset-level violations
    entity_type: str = ""
    property: str | None = None
    message: str
    expected: Any = None
    actual: Any = None
    suggestion: str | None = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class QualityResult(BaseModel):
    """Score, grade and violations for one transform. Immutable once computed."""

    model_config = ConfigDict(frozen=True)

    transform_id: str = ""
    overall_score: float = Field(ge=0.0, le=100.0)
    grade: Grade
    violations: list[QualityViolation] = Field(default_factory=list)
    counts: dict[str, int] = Field(default_factory=dict)  # by severity
    entity_scores: dict[str, float] = Field(default_factory=dict)
    entities_evaluated: int = 0
    rules_evaluated: int = 0
    requires_review: bool = False

    @property
    def error_count(self) -> int:
        return self.counts.get("error", 0)

    def filter(
        self,
        severity: Severity | None = None,
        kind: RuleKind | None = None,
        entity_id: str | None = None,
    ) -> list[QualityViolation]:
        """Violations matching all given criteria, in result order."""
        return [
            v for v in self.violations
            if (severity is None or v.severity == severity)
            and (kind is None or v.rule_kind == kind)
            and (entity_id is None or v.entity_id == entity_id)
        ]


class GateDecision(BaseModel):
    """Approval or rejection of a transform's quality result."""

    transform_id: str
    status: DecisionStatus
    comment: str = ""
    automatic: bool = False
    decided_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class QualityRecord(BaseModel):
    """Top-level model for a persisted quality result file."""

    result: QualityResult
    decision: GateDecision | None = None
