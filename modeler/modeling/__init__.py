"""
Modeler Modeling Module

Provides the model definition editing engine:
- Model tree (nodes, relationships, dimension links, path addressing)
- Schema cache (per-node table columns, dimension custom columns)
- Tree mutator (add, delete and patch nodes)
- Configuration validation (relationship and dimension link rules)
- Editor sessions

Persistence (model_store, persistence) depends on modeler.services and is
imported from its own modules.
"""

from .model_tree import (
    Cardinality,
    DimensionLink,
    DimensionScope,
    FieldMapping,
    ModelDefinition,
    ModelNode,
    ModelTree,
    Relationship,
)
from .schema_cache import ColumnInfo, DimensionColumn, DimensionColumnCache, SchemaCache
from .tree_mutator import MutationResult
from .configuration import ValidationReport
from .session import EditorSession, SessionRegistry

__all__ = [
    "Cardinality",
    "DimensionLink",
    "DimensionScope",
    "FieldMapping",
    "ModelDefinition",
    "ModelNode",
    "ModelTree",
    "Relationship",
    "ColumnInfo",
    "DimensionColumn",
    "DimensionColumnCache",
    "SchemaCache",
    "MutationResult",
    "ValidationReport",
    "EditorSession",
    "SessionRegistry",
]
