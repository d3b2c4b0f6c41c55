"""Ontology configuration system for kg-merge."""

from kg_merge.ontology.loader import OntologyLoader, load_ontology
from kg_merge.ontology.models import EntityTypeDef, Ontology, PropertyDef, RelationTypeDef

__all__ = ["EntityTypeDef", "Ontology", "OntologyLoader", "PropertyDef", "RelationTypeDef", "load_ontology"]
