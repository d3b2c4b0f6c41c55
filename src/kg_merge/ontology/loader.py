"""Ontology loader.

Loads and validates ontologies from YAML files. Supports bundled
ontologies (shipped with kg-merge) and user-provided files. Property
definitions may carry inline rule blocks, e.g.::

    name:
      type: string
      required: true
      rules: {minLength: 10, maxLength: 500}

which compile into format/business rules; ``required: true`` properties
compile into one completeness rule per entity type. A top-level
``quality_rules`` list holds free-standing rules of any kind.
"""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from kg_merge.errors import ValidationError
from kg_merge.ontology.models import EntityTypeDef, Ontology, PropertyDef, RelationTypeDef
from kg_merge.quality.rules import parse_rule

logger = logging.getLogger(__name__)

# Bundled ontologies directory (shipped with the package)
BUNDLED_ONTOLOGIES_DIR = Path(__file__).parent / "bundled"

# Inline rule keys, by the rule kind they compile into
_FORMAT_KEYS = {"pattern", "minLength", "maxLength", "caseFormat",
                "min_length", "max_length", "case_format"}
_BUSINESS_KEYS = {"forbiddenValues", "allowedValues", "min", "max", "minInclusive",
                  "maxInclusive", "caseSensitive", "forbidden_values", "allowed_values",
                  "min_inclusive", "max_inclusive", "case_sensitive"}
_SHARED_KEYS = {"severity", "message", "suggestion"}

# Module-level loader for convenience function
_default_loader: "OntologyLoader | None" = None


def load_ontology(
    ontology_path: Path | None = None,
    bundled_name: str = "company",
) -> Ontology:
    """Convenience function to load an ontology.

    Args:
        ontology_path: Path to an ontology YAML (takes priority)
        bundled_name: Name of bundled ontology to load if no path given

    Returns:
        Validated Ontology
    """
    global _default_loader
    if _default_loader is None:
        _default_loader = OntologyLoader()
    if ontology_path:
        return _default_loader.load_from_path(ontology_path)
    return _default_loader.load_bundled(bundled_name)


class OntologyLoader:
    """Load and validate ontologies from YAML files."""

    def __init__(self) -> None:
        self._cache: dict[str, Ontology] = {}

    def load_from_path(self, yaml_path: Path) -> Ontology:
        """Load an ontology from a specific YAML file.

        Raises:
            ValidationError: If the file is missing or the ontology is invalid
        """
        yaml_path = Path(yaml_path)
        cache_key = str(yaml_path.resolve())

        if cache_key in self._cache:
            return self._cache[cache_key]

        if not yaml_path.exists():
            raise ValidationError(f"Ontology not found: {yaml_path}")

        logger.info(f"Loading ontology: {yaml_path}")
        try:
            raw = yaml.safe_load(yaml_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ValidationError(f"Ontology {yaml_path} is not valid YAML: {e}") from e

        ontology = self.parse(raw)
        self._cache[cache_key] = ontology

        logger.info(
            f"Loaded ontology '{ontology.name}' "
            f"({len(ontology.entity_types)} entity types, "
            f"{len(ontology.relation_types)} relation types, "
            f"{len(ontology.quality_rules)} quality rules)"
        )
        return ontology

    def load_bundled(self, name: str = "company") -> Ontology:
        """Load a bundled ontology by name."""
        path = BUNDLED_ONTOLOGIES_DIR / name / "ontology.yaml"
        if not path.exists():
            available = self.list_bundled()
            raise ValidationError(f"Bundled ontology '{name}' not found. Available: {available}")
        return self.load_from_path(path)

    def list_bundled(self) -> list[str]:
        """List available bundled ontology names."""
        if not BUNDLED_ONTOLOGIES_DIR.exists():
            return []
        return sorted(
            d.name
            for d in BUNDLED_ONTOLOGIES_DIR.iterdir()
            if d.is_dir() and (d / "ontology.yaml").exists()
        )

    def parse(self, raw: Any) -> Ontology:
        """Parse a raw YAML document into an Ontology.

        Raises:
            ValidationError: On any malformed type, property or rule
        """
        if not isinstance(raw, dict):
            raise ValidationError("Ontology document must be a mapping")
        # Support both top-level and nested 'ontology:' key
        if "ontology" in raw:
            raw = raw["ontology"]

        entity_types: dict[str, EntityTypeDef] = {}
        rules: list = []

        for type_name, cfg in (raw.get("entity_types") or {}).items():
            if isinstance(cfg, str):
                # Simple form: "Company: A registered company"
                entity_types[type_name] = EntityTypeDef(description=cfg)
                continue
            cfg = cfg or {}
            properties: dict[str, PropertyDef] = {}
            for prop_name, prop_cfg in (cfg.get("properties") or {}).items():
                prop_cfg = dict(prop_cfg or {})
                inline_rules = prop_cfg.pop("rules", None)
                try:
                    properties[prop_name] = PropertyDef.model_validate(prop_cfg)
                except PydanticValidationError as e:
                    raise ValidationError(f"Property {type_name}.{prop_name} is invalid: {e}") from e
                if inline_rules:
                    rules.extend(self._compile_inline_rules(type_name, prop_name, inline_rules))

            entity_types[type_name] = EntityTypeDef(
                description=cfg.get("description", ""),
                labels=cfg.get("labels", []),
                properties=properties,
            )
            required = entity_types[type_name].required_properties
            if required:
                rules.append(parse_rule({
                    "kind": "completeness",
                    "rule_id": f"{type_name}.required",
                    "entity_type": type_name,
                    "required_properties": required,
                    "severity": "error",
                }))

        relation_types = {}
        for name, cfg in (raw.get("relation_types") or {}).items():
            if isinstance(cfg, str):
                relation_types[name] = RelationTypeDef(description=cfg)
            else:
                cfg = cfg or {}
                relation_types[name] = RelationTypeDef(
                    description=cfg.get("description", ""),
                    source_types=cfg.get("source_types", []),
                    target_types=cfg.get("target_types", []),
                )

        for item in raw.get("quality_rules") or []:
            rules.append(parse_rule(item))

        try:
            return Ontology(
                name=raw.get("name", "Unknown"),
                version=str(raw.get("version", "1.0.0")),
                description=raw.get("description", ""),
                entity_types=entity_types,
                relation_types=relation_types,
                quality_rules=rules,
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Ontology is invalid: {e}") from e

    def _compile_inline_rules(self, type_name: str, prop_name: str, block: Any) -> list:
        """Turn a property's inline ``rules:`` mapping into rule variants."""
        base_id = f"{type_name}.{prop_name}"
        if not isinstance(block, dict):
            raise ValidationError("inline rules must be a mapping", base_id)
        unknown = set(block) - _FORMAT_KEYS - _BUSINESS_KEYS - _SHARED_KEYS
        if unknown:
            raise ValidationError(f"unknown rule keys: {', '.join(sorted(unknown))}", base_id)

        shared = {k: block[k] for k in _SHARED_KEYS if k in block}
        compiled = []
        format_part = {k: block[k] for k in _FORMAT_KEYS if k in block}
        if format_part:
            compiled.append(parse_rule({
                "kind": "format",
                "rule_id": f"{base_id}.format",
                "entity_type": type_name,
                "property": prop_name,
                **shared,
                **format_part,
            }))
        business_part = {k: block[k] for k in _BUSINESS_KEYS if k in block}
        if business_part:
            compiled.append(parse_rule({
                "kind": "business",
                "rule_id": f"{base_id}.business",
                "entity_type": type_name,
                "property": prop_name,
                **shared,
                **business_part,
            }))
        return compiled
