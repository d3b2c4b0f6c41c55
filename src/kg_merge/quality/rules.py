"""Quality rule variants.

Rules arrive as declarative configuration (ontology YAML) and map onto a
closed set of four tagged variants. Each variant evaluates one extracted
entity at a time and returns the violations it finds. Keys are accepted in
snake_case or the camelCase spelling used by ontology files
(``minLength``, ``caseFormat``, ``entityLevel`` ...).
"""

import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from kg_merge.errors import ValidationError
from kg_merge.extract.models import ExtractedEntity, ExtractedRelationship
from kg_merge.quality.models import QualityViolation, RuleKind, Severity

CaseFormat = Literal["titleCase", "upperCase", "lowerCase", "sentenceCase"]


def is_empty(value: Any) -> bool:
    """True for values that count as "not provided"."""
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    if isinstance(value, (list, tuple, set, dict)) and not value:
        return True
    return False


def apply_case(text: str, case_format: CaseFormat) -> str:
    """Transform text into the given case format."""
    if case_format == "upperCase":
        return text.upper()
    if case_format == "lowerCase":
        return text.lower()
    if case_format == "titleCase":
        return " ".join(word[:1].upper() + word[1:].lower() for word in text.split(" "))
    return text[:1].upper() + text[1:].lower()


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@dataclass
class RuleContext:
    """Read-only view of the transform shared by all rule evaluations."""

    known_ids: frozenset[str]
    outgoing: dict[str, list[ExtractedRelationship]] = field(default_factory=dict)
    incoming: dict[str, list[ExtractedRelationship]] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        entities: list[ExtractedEntity],
        relationships: list[ExtractedRelationship],
        known_entity_ids: set[str] | frozenset[str] | None = None,
    ) -> "RuleContext":
        outgoing: dict[str, list[ExtractedRelationship]] = defaultdict(list)
        incoming: dict[str, list[ExtractedRelationship]] = defaultdict(list)
        for rel in relationships:
            outgoing[rel.source_ref].append(rel)
            incoming[rel.target_ref].append(rel)
        known = {e.ref for e in entities} | set(known_entity_ids or ())
        return cls(known_ids=frozenset(known), outgoing=dict(outgoing), incoming=dict(incoming))


class _RuleBase(BaseModel):
    """Fields shared by every rule variant."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )

    rule_id: str = Field(validation_alias=AliasChoices("rule_id", "ruleId", "id"))
    entity_type: str  # "*" targets every entity type
    property: str | None = None
    severity: Severity = "error"
    message: str | None = None
    suggestion: str | None = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)

    def applies_to(self, entity: ExtractedEntity) -> bool:
        return self.entity_type in ("*", entity.entity_type)

    def _violation(
        self,
        kind: RuleKind,
        entity: ExtractedEntity | None,
        message: str,
        expected: Any = None,
        actual: Any = None,
        prop: str | None = None,
    ) -> QualityViolation:
        return QualityViolation(
            rule_id=self.rule_id,
            rule_kind=kind,
            severity=self.severity,
            entity_id=entity.ref if entity else None,
            entity_type=entity.entity_type if entity else self.entity_type,
            property=prop if prop is not None else self.property,
            message=self.message or message,
            expected=expected,
            actual=actual,
            suggestion=self.suggestion,
            confidence=self.confidence,
        )


class FormatRule(_RuleBase):
    """Pattern, length and case-format checks on one property."""

    kind: Literal["format"] = "format"
    pattern: str | None = None
    min_length: int | None = Field(default=None, ge=0)
    max_length: int | None = Field(default=None, ge=0)
    case_format: CaseFormat | None = None

    @model_validator(mode="after")
    def _check(self) -> "FormatRule":
        if not self.property:
            raise ValueError("format rule needs a target property")
        if self.pattern is None and self.min_length is None and self.max_length is None and self.case_format is None:
            raise ValueError("format rule declares no pattern, length or case format")
        if self.min_length is not None and self.max_length is not None and self.min_length > self.max_length:
            raise ValueError(f"minLength {self.min_length} exceeds maxLength {self.max_length}")
        if self.pattern is not None:
            try:
                re.compile(self.pattern)
            except re.error as e:
                raise ValueError(f"invalid pattern {self.pattern!r}: {e}") from e
        return self

    def evaluate(self, entity: ExtractedEntity, context: RuleContext) -> list[QualityViolation]:
        value = entity.properties.get(self.property)
        if is_empty(value):
            return []
        text = value if isinstance(value, str) else str(value)

        violations = []
        if self.pattern is not None and re.fullmatch(self.pattern, text) is None:
            violations.append(self._violation(
                "format", entity,
                f"'{self.property}' does not match pattern {self.pattern}",
                expected=self.pattern, actual=text,
            ))
        if self.min_length is not None and len(text) < self.min_length:
            violations.append(self._violation(
                "format", entity,
                f"'{self.property}' is shorter than {self.min_length} characters",
                expected=f">= {self.min_length} characters", actual=len(text),
            ))
        if self.max_length is not None and len(text) > self.max_length:
            violations.append(self._violation(
                "format", entity,
                f"'{self.property}' is longer than {self.max_length} characters",
                expected=f"<= {self.max_length} characters", actual=len(text),
            ))
        if self.case_format is not None:
            expected = apply_case(text, self.case_format)
            if expected != text:
                violations.append(self._violation(
                    "format", entity,
                    f"'{self.property}' is not in {self.case_format}",
                    expected=expected, actual=text,
                ))
        return violations


class BusinessRule(_RuleBase):
    """Forbidden values, allowed values and numeric ranges on one property."""

    kind: Literal["business"] = "business"
    forbidden_values: list[Any] | None = None
    allowed_values: list[Any] | None = None
    min: float | None = None
    max: float | None = None
    min_inclusive: bool = True
    max_inclusive: bool = True
    case_sensitive: bool = True

    @model_validator(mode="after")
    def _check(self) -> "BusinessRule":
        if not self.property:
            raise ValueError("business rule needs a target property")
        if self.forbidden_values is None and self.allowed_values is None and self.min is None and self.max is None:
            raise ValueError("business rule declares no forbidden values, allowed values or range")
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError(f"range min {self.min} exceeds max {self.max}")
        return self

    def _normalize(self, value: Any) -> Any:
        if not self.case_sensitive and isinstance(value, str):
            return value.casefold()
        return value

    def _contains(self, values: list[Any], value: Any) -> bool:
        target = self._normalize(value)
        return any(self._normalize(v) == target for v in values)

    def is_forbidden(self, value: Any) -> bool:
        """True when the value is on this rule's forbidden list."""
        if not self.forbidden_values or is_empty(value):
            return False
        items = value if isinstance(value, list) else [value]
        return any(self._contains(self.forbidden_values, item) for item in items)

    def _in_range(self, number: float) -> bool:
        if self.min is not None:
            if number < self.min or (number == self.min and not self.min_inclusive):
                return False
        if self.max is not None:
            if number > self.max or (number == self.max and not self.max_inclusive):
                return False
        return True

    def _range_text(self) -> str:
        lower = "(-inf" if self.min is None else f"{'[' if self.min_inclusive else '('}{self.min:g}"
        upper = "+inf)" if self.max is None else f"{self.max:g}{']' if self.max_inclusive else ')'}"
        return f"{lower}, {upper}"

    def evaluate(self, entity: ExtractedEntity, context: RuleContext) -> list[QualityViolation]:
        value = entity.properties.get(self.property)
        if is_empty(value):
            return []

        violations = []
        if self.is_forbidden(value):
            violations.append(self._violation(
                "business", entity,
                f"'{self.property}' has a forbidden value",
                expected=f"not one of {self.forbidden_values}", actual=value,
            ))
        if self.allowed_values is not None:
            items = value if isinstance(value, list) else [value]
            if not all(self._contains(self.allowed_values, item) for item in items):
                violations.append(self._violation(
                    "business", entity,
                    f"'{self.property}' is not an allowed value",
                    expected=f"one of {self.allowed_values}", actual=value,
                ))
        if self.min is not None or self.max is not None:
            number = _as_number(value)
            if number is None:
                violations.append(self._violation(
                    "business", entity,
                    f"'{self.property}' is not numeric",
                    expected=self._range_text(), actual=value,
                ))
            elif not self._in_range(number):
                violations.append(self._violation(
                    "business", entity,
                    f"'{self.property}' is outside {self._range_text()}",
                    expected=self._range_text(), actual=value,
                ))
        return violations


class RelationshipRequirement(BaseModel):
    """Required cardinality of one relationship type."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True, extra="forbid")

    relation_type: str
    min_count: int = Field(default=1, ge=0)
    max_count: int | None = Field(default=None, ge=0)
    direction: Literal["out", "in"] = "out"

    @model_validator(mode="after")
    def _check(self) -> "RelationshipRequirement":
        if self.max_count is not None and self.min_count > self.max_count:
            raise ValueError(
                f"{self.relation_type}: minCount {self.min_count} exceeds maxCount {self.max_count}"
            )
        return self


class CompletenessRule(_RuleBase):
    """Required properties and relationship cardinality.

    With ``entity_level`` (the default) every entity missing a requirement
    gets its own violation. Otherwise the rule is checked once for the whole
    transform: the share of entities that satisfy it must reach
    ``min_coverage``.
    """

    kind: Literal["completeness"] = "completeness"
    required_properties: list[str] = Field(default_factory=list)
    required_relationships: list[RelationshipRequirement] = Field(default_factory=list)
    entity_level: bool = True
    min_coverage: float = Field(default=1.0, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check(self) -> "CompletenessRule":
        if not self.property and not self.required_properties and not self.required_relationships:
            raise ValueError("completeness rule requires nothing")
        return self

    def required_names(self) -> list[str]:
        names = list(self.required_properties)
        if self.property and self.property not in names:
            names.insert(0, self.property)
        return names

    def _relationship_count(self, entity: ExtractedEntity, req: RelationshipRequirement, context: RuleContext) -> int:
        index = context.outgoing if req.direction == "out" else context.incoming
        return sum(1 for r in index.get(entity.ref, []) if r.relation_type == req.relation_type)

    def _find_gaps(self, entity: ExtractedEntity, context: RuleContext) -> list[QualityViolation]:
        violations = []
        for name in self.required_names():
            if is_empty(entity.properties.get(name)):
                violations.append(self._violation(
                    "completeness", entity,
                    f"Required property '{name}' is missing",
                    expected="a value", actual=entity.properties.get(name), prop=name,
                ))
        for req in self.required_relationships:
            count = self._relationship_count(entity, req, context)
            too_few = count < req.min_count
            too_many = req.max_count is not None and count > req.max_count
            if too_few or too_many:
                bounds = f"{req.min_count}..{req.max_count if req.max_count is not None else '*'}"
                violations.append(self._violation(
                    "completeness", entity,
                    f"Expected {bounds} {req.relation_type} relationships ({req.direction}), found {count}",
                    expected=bounds, actual=count, prop=req.relation_type,
                ))
        return violations

    def evaluate(self, entity: ExtractedEntity, context: RuleContext) -> list[QualityViolation]:
        if not self.entity_level:
            return []
        return self._find_gaps(entity, context)

    def evaluate_dataset(self, entities: list[ExtractedEntity], context: RuleContext) -> list[QualityViolation]:
        """Dataset-level check, only for rules with entity_level disabled."""
        if self.entity_level:
            return []
        targets = [e for e in entities if self.applies_to(e)]
        if not targets:
            return []
        satisfied = sum(1 for e in targets if not self._find_gaps(e, context))
        coverage = satisfied / len(targets)
        if coverage >= self.min_coverage:
            return []
        return [self._violation(
            "completeness", None,
            f"Only {coverage:.0%} of {self.entity_type} entities are complete "
            f"(required {self.min_coverage:.0%})",
            expected=self.min_coverage, actual=round(coverage, 4),
        )]


class ConsistencyRule(_RuleBase):
    """Cross-reference existence and temporal ordering."""

    kind: Literal["consistency"] = "consistency"
    reference_property: str | None = None
    start_property: str | None = None
    end_property: str | None = None
    allow_equal: bool = True

    @model_validator(mode="after")
    def _check(self) -> "ConsistencyRule":
        has_temporal = self.start_property is not None or self.end_property is not None
        if has_temporal and (self.start_property is None or self.end_property is None):
            raise ValueError("temporal check needs both startProperty and endProperty")
        if self.reference_property is None and not has_temporal:
            raise ValueError("consistency rule declares no reference or temporal check")
        return self

    def evaluate(self, entity: ExtractedEntity, context: RuleContext) -> list[QualityViolation]:
        violations = []

        if self.reference_property:
            value = entity.properties.get(self.reference_property)
            if not is_empty(value):
                refs = value if isinstance(value, list) else [value]
                for ref in refs:
                    if str(ref) not in context.known_ids:
                        violations.append(self._violation(
                            "consistency", entity,
                            f"'{self.reference_property}' references unknown entity {ref}",
                            expected="an existing entity id", actual=ref,
                            prop=self.reference_property,
                        ))

        if self.start_property and self.end_property:
            start_raw = entity.properties.get(self.start_property)
            end_raw = entity.properties.get(self.end_property)
            if not is_empty(start_raw) and not is_empty(end_raw):
                start = _as_datetime(start_raw)
                end = _as_datetime(end_raw)
                if start is None or end is None:
                    bad_prop = self.start_property if start is None else self.end_property
                    violations.append(self._violation(
                        "consistency", entity,
                        f"'{bad_prop}' is not a date",
                        expected="ISO 8601 date", actual=start_raw if start is None else end_raw,
                        prop=bad_prop,
                    ))
                elif start > end or (start == end and not self.allow_equal):
                    op = "<=" if self.allow_equal else "<"
                    violations.append(self._violation(
                        "consistency", entity,
                        f"'{self.start_property}' must be {op} '{self.end_property}'",
                        expected=f"{self.start_property} {op} {self.end_property}",
                        actual=f"{start_raw} > {end_raw}" if start > end else f"{start_raw} == {end_raw}",
                        prop=self.start_property,
                    ))

        return violations


QualityRule = Annotated[
    Union[FormatRule, BusinessRule, CompletenessRule, ConsistencyRule],
    Field(discriminator="kind"),
]

_RULE_ADAPTER: TypeAdapter[QualityRule] = TypeAdapter(QualityRule)


def parse_rule(data: Any) -> QualityRule:
    """Validate a declarative rule definition into its tagged variant.

    Raises:
        ValidationError: If the definition is malformed. The error names the rule.
    """
    if isinstance(data, (FormatRule, BusinessRule, CompletenessRule, ConsistencyRule)):
        return data
    rule_id = None
    if isinstance(data, dict):
        rule_id = data.get("rule_id") or data.get("ruleId") or data.get("id")
        if "kind" not in data:
            raise ValidationError("missing 'kind' (format, business, completeness or consistency)", rule_id)
    try:
        return _RULE_ADAPTER.validate_python(data)
    except PydanticValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'rule'}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(details, rule_id) from e


def parse_rules(items: list[Any]) -> list[QualityRule]:
    """Parse a list of rule definitions, rejecting duplicate rule ids."""
    rules = [parse_rule(item) for item in items]
    seen: set[str] = set()
    for rule in rules:
        if rule.rule_id in seen:
            raise ValidationError("duplicate rule id", rule.rule_id)
        seen.add(rule.rule_id)
    return rules
