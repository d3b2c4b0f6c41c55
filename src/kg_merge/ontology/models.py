"""Pydantic models for the compiled ontology.

Defines the entity types, their properties (with uniqueness and
requiredness), the relationship types, and the quality rules that an
extraction is scored against.
"""

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from kg_merge.quality.rules import BusinessRule, CompletenessRule, QualityRule

PropertyType = Literal["string", "integer", "float", "boolean", "date", "list", "any"]


class PropertyDef(BaseModel):
    """Declaration of one entity property."""

    type: PropertyType = "string"
    unique: bool = False
    required: bool = False
    description: str = ""

    def accepts(self, value: Any) -> bool:
        """Whether a non-null value fits the declared type."""
        if value is None or self.type == "any":
            return True
        if self.type == "string":
            return isinstance(value, str)
        if self.type == "integer":
            return isinstance(value, int) and not isinstance(value, bool)
        if self.type == "float":
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        if self.type == "boolean":
            return isinstance(value, bool)
        if self.type == "list":
            return isinstance(value, list)
        if isinstance(value, (date, datetime)):
            return True
        if isinstance(value, str):
            try:
                datetime.fromisoformat(value)
            except ValueError:
                return False
            return True
        return False


class EntityTypeDef(BaseModel):
    """Configuration for an entity type."""

    description: str = ""
    labels: list[str] = Field(default_factory=list)
    properties: dict[str, PropertyDef] = Field(default_factory=dict)

    @property
    def unique_keys(self) -> list[str]:
        return [name for name, prop in self.properties.items() if prop.unique]

    @property
    def required_properties(self) -> list[str]:
        return [name for name, prop in self.properties.items() if prop.required]


class RelationTypeDef(BaseModel):
    """Configuration for a relationship type."""

    description: str = ""
    source_types: list[str] = Field(default_factory=list)
    target_types: list[str] = Field(default_factory=list)


class Ontology(BaseModel):
    """Complete ontology loaded from YAML."""

    name: str
    version: str = "1.0.0"
    description: str = ""

    entity_types: dict[str, EntityTypeDef] = Field(default_factory=dict)
    relation_types: dict[str, RelationTypeDef] = Field(default_factory=dict)
    quality_rules: list[QualityRule] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_rule_targets(self) -> "Ontology":
        seen: set[str] = set()
        for rule in self.quality_rules:
            if rule.rule_id in seen:
                raise ValueError(f"duplicate rule id {rule.rule_id!r}")
            seen.add(rule.rule_id)
            if rule.entity_type != "*" and rule.entity_type not in self.entity_types:
                raise ValueError(
                    f"rule {rule.rule_id!r} targets unknown entity type {rule.entity_type!r}"
                )
        return self

    def get_entity_type_names(self) -> list[str]:
        return list(self.entity_types.keys())

    def get_relation_type_names(self) -> list[str]:
        return list(self.relation_types.keys())

    def unique_keys(self, entity_type: str) -> list[str]:
        """Properties declared unique for a type (empty if undeclared)."""
        config = self.entity_types.get(entity_type)
        return config.unique_keys if config else []

    def rules_for(self, entity_type: str) -> list[QualityRule]:
        return [r for r in self.quality_rules if r.entity_type in ("*", entity_type)]

    def forbidden_value_rules(self, entity_type: str, prop: str) -> list[BusinessRule]:
        """Business rules with a forbidden-value list on one property."""
        return [
            r for r in self.rules_for(entity_type)
            if isinstance(r, BusinessRule) and r.property == prop and r.forbidden_values
        ]

    def completeness_rules(self) -> list[CompletenessRule]:
        return [r for r in self.quality_rules if isinstance(r, CompletenessRule)]
