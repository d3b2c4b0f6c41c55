"""Quality scoring and the approval gate in front of every merge."""

from kg_merge.quality.engine import evaluate
from kg_merge.quality.gate import QualityGate
from kg_merge.quality.models import QualityConfig, QualityResult, QualityViolation
from kg_merge.quality.rules import parse_rule, parse_rules

__all__ = ["QualityConfig", "QualityGate", "QualityResult", "QualityViolation", "evaluate", "parse_rule", "parse_rules"]
