"""
Node Configuration Rules

Validation and normalization for what the configuration panel edits on the
selected node:
- Relationship: cardinality + parent/child field mappings
- DimensionLink: dimension id + table/dimension fields + traversal scope

Field membership is checked by name only against the cached schemas; column
type compatibility is left to the backend.

Switching a node's table invalidates dimension field choices: every link's
dimension_field that is neither a built-in dimension attribute nor one of the
link's dimension custom columns is cleared as part of the same edit.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from modeler.errors import item_not_found, validation_failed
from .model_tree import (
    Cardinality, DimensionLink, DimensionScope, FieldMapping, ModelDefinition,
    ModelNode, ModelTree, NodePath, Relationship, parent_path, path_key, walk,
)
from .schema_cache import ColumnInfo, DimensionColumn, DimensionColumnCache, SchemaCache

logger = logging.getLogger(__name__)


# Attributes every dimension item has, whatever its custom columns.
BUILTIN_DIMENSION_FIELDS = ("node_id", "parent_id", "name", "code", "description")

FieldList = Iterable[Union[ColumnInfo, DimensionColumn, str]]


def _names(fields: Optional[FieldList]) -> List[str]:
    if not fields:
        return []
    return [f if isinstance(f, str) else f.name for f in fields]


@dataclass(frozen=True)
class ValidationIssue:
    """One inline validation failure."""
    path: str
    field: str
    message: str

    def to_dict(self) -> dict:
        return {"path": self.path, "field": self.field, "message": self.message}


@dataclass
class ValidationReport:
    """Issues found across the whole definition."""
    issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues

    def for_path(self, path: NodePath) -> List[ValidationIssue]:
        key = path_key(path)
        return [i for i in self.issues if i.path == key]

    def to_dict(self) -> dict:
        return {"valid": self.valid, "issues": [i.to_dict() for i in self.issues]}

    def raise_for_issues(self) -> None:
        if self.issues:
            raise validation_failed([i.to_dict() for i in self.issues])


# =============================================================================
# RELATIONSHIP
# =============================================================================

def validate_relationship(
    relationship: Optional[Relationship],
    parent_fields: Optional[FieldList],
    child_fields: Optional[FieldList],
    path: str = "",
) -> List[ValidationIssue]:
    """
    Check a relationship against the parent's and the node's columns.

    Valid iff there is at least one mapping and every parent_field /
    child_field names an existing column on its side.
    """
    if relationship is None or not relationship.field_mappings:
        return [ValidationIssue(path, "relationship.field_mappings",
                                "At least one field mapping is required")]

    parent_names = set(_names(parent_fields))
    child_names = set(_names(child_fields))
    issues = []
    for index, mapping in enumerate(relationship.field_mappings):
        prefix = f"relationship.field_mappings[{index}]"
        if mapping.parent_field not in parent_names:
            issues.append(ValidationIssue(
                path, f"{prefix}.parent_field",
                f"'{mapping.parent_field}' is not a column of the parent table"
                if mapping.parent_field else "Choose a parent column",
            ))
        if mapping.child_field not in child_names:
            issues.append(ValidationIssue(
                path, f"{prefix}.child_field",
                f"'{mapping.child_field}' is not a column of this table"
                if mapping.child_field else "Choose a column of this table",
            ))
    return issues


def set_cardinality(relationship: Optional[Relationship], cardinality: Cardinality) -> Relationship:
    """Change cardinality; existing mappings are kept as they are."""
    relationship = relationship or Relationship()
    return replace(relationship, cardinality=Cardinality(cardinality))


def add_field_mapping(
    relationship: Optional[Relationship],
    parent_field: str = "",
    child_field: str = "",
) -> Relationship:
    relationship = relationship or Relationship()
    mapping = FieldMapping(parent_field=parent_field, child_field=child_field)
    return replace(relationship, field_mappings=relationship.field_mappings + (mapping,))


def remove_field_mapping(relationship: Relationship, index: int) -> Relationship:
    mappings = relationship.field_mappings
    if index < 0 or index >= len(mappings):
        raise item_not_found("field mapping", index, len(mappings))
    return replace(relationship, field_mappings=mappings[:index] + mappings[index + 1:])


def set_mapping_field(relationship: Relationship, index: int, side: str, name: str) -> Relationship:
    """Set the ``parent`` or ``child`` column of mapping ``index``."""
    mappings = relationship.field_mappings
    if index < 0 or index >= len(mappings):
        raise item_not_found("field mapping", index, len(mappings))
    if side not in ("parent", "child"):
        raise ValueError(f"side must be 'parent' or 'child', got {side!r}")
    mapping = replace(mappings[index], **{f"{side}_field": name})
    return replace(
        relationship,
        field_mappings=mappings[:index] + (mapping,) + mappings[index + 1:],
    )


# =============================================================================
# DIMENSION LINKS
# =============================================================================

def dimension_field_options(custom_columns: Optional[FieldList]) -> List[str]:
    """Built-in attributes followed by the dimension's custom columns."""
    options = list(BUILTIN_DIMENSION_FIELDS)
    options.extend(n for n in _names(custom_columns) if n not in BUILTIN_DIMENSION_FIELDS)
    return options


def validate_dimension_link(
    link: DimensionLink,
    node_fields: Optional[FieldList],
    custom_columns: Optional[FieldList],
    path: str = "",
    index: int = 0,
) -> List[ValidationIssue]:
    """
    Check one dimension link.

    Valid iff a dimension is chosen, table_field is a column of the node's
    table and dimension_field is a built-in attribute or a custom column of
    that dimension.
    """
    prefix = f"dimension_links[{index}]"
    issues = []
    if not link.dimension_id:
        issues.append(ValidationIssue(path, f"{prefix}.dimension_id", "Choose a dimension"))
    if link.table_field not in set(_names(node_fields)):
        issues.append(ValidationIssue(
            path, f"{prefix}.table_field",
            f"'{link.table_field}' is not a column of this table"
            if link.table_field else "Choose a column of this table",
        ))
    if link.dimension_field not in dimension_field_options(custom_columns):
        issues.append(ValidationIssue(
            path, f"{prefix}.dimension_field",
            f"'{link.dimension_field}' is not an attribute of the dimension"
            if link.dimension_field else "Choose a dimension attribute",
        ))
    return issues


def new_dimension_link() -> DimensionLink:
    return DimensionLink(
        dimension_id=0,
        dimension_item_id=0,
        table_field="",
        dimension_field="",
        scope=DimensionScope.CHILDREN,
    )


def update_dimension_link(
    links: Sequence[DimensionLink],
    index: int,
    changes: Mapping[str, Any],
) -> Tuple[DimensionLink, ...]:
    """
    Replace link ``index`` with ``changes`` applied.

    Choosing another dimension drops a custom dimension_field, since custom
    columns belong to the previous dimension.
    """
    links = tuple(links)
    if index < 0 or index >= len(links):
        raise item_not_found("dimension link", index, len(links))
    old = links[index]
    values = dict(changes)
    if "scope" in values:
        values["scope"] = DimensionScope(values["scope"])
    link = replace(old, **values)
    if (
        link.dimension_id != old.dimension_id
        and "dimension_field" not in changes
        and link.dimension_field not in BUILTIN_DIMENSION_FIELDS
    ):
        link = replace(link, dimension_field="")
    return links[:index] + (link,) + links[index + 1:]


def remove_dimension_link(links: Sequence[DimensionLink], index: int) -> Tuple[DimensionLink, ...]:
    links = tuple(links)
    if index < 0 or index >= len(links):
        raise item_not_found("dimension link", index, len(links))
    return links[:index] + links[index + 1:]


def reconcile_dimension_links(
    links: Sequence[DimensionLink],
    dimension_columns: Mapping[int, FieldList],
) -> Tuple[DimensionLink, ...]:
    """
    Clear dimension_field selections that are no longer legal.

    A selection survives when it is a built-in attribute or a member of the
    custom columns known for the link's dimension; a dimension whose columns
    are unknown counts as having none.
    """
    result = []
    for link in links:
        options = dimension_field_options(dimension_columns.get(link.dimension_id))
        if link.dimension_field and link.dimension_field not in options:
            logger.debug(
                f"Cleared dimension field '{link.dimension_field}' "
                f"of dimension {link.dimension_id}"
            )
            link = replace(link, dimension_field="")
        result.append(link)
    return tuple(result)


# =============================================================================
# WHOLE DEFINITION
# =============================================================================

@dataclass(frozen=True)
class FieldChoices:
    """Legal picker values for the selected node."""
    parent_fields: Tuple[ColumnInfo, ...]
    child_fields: Tuple[ColumnInfo, ...]
    dimension_fields: Tuple[Tuple[str, ...], ...]

    def to_dict(self) -> dict:
        return {
            "parentFields": [f.to_dict() for f in self.parent_fields],
            "childFields": [f.to_dict() for f in self.child_fields],
            "dimensionFields": [list(options) for options in self.dimension_fields],
        }


def field_choices(
    tree: ModelTree,
    path: NodePath,
    node: ModelNode,
    schema_cache: SchemaCache,
    dimension_cache: DimensionColumnCache,
) -> FieldChoices:
    return FieldChoices(
        parent_fields=schema_cache.fields_for(tree, parent_path(path)),
        child_fields=schema_cache.fields_for(tree, path),
        dimension_fields=tuple(
            tuple(dimension_field_options(dimension_cache.get(link.dimension_id)))
            for link in node.dimension_links
        ),
    )


def validate_definition(
    definition: Union[ModelDefinition, ModelTree],
    schema_cache: SchemaCache,
    dimension_cache: DimensionColumnCache,
) -> ValidationReport:
    """
    Validate every node of the tree; run before save.

    Checks that a root exists, every node has a table, every non-root node
    has a valid relationship to its parent and every dimension link is valid.
    The tree is never modified.
    """
    tree = definition.tree if isinstance(definition, ModelDefinition) else definition
    report = ValidationReport()
    if tree.root is None:
        report.issues.append(ValidationIssue("/", "root", "Add a root node first"))
        return report

    for path, node in walk(tree):
        key = path_key(path)
        if not node.has_table:
            report.issues.append(ValidationIssue(key, "source_table_id", "Choose a table"))
        node_fields = schema_cache.fields_for(tree, path)
        if path:
            report.issues.extend(validate_relationship(
                node.relationship,
                schema_cache.fields_for(tree, parent_path(path)),
                node_fields,
                path=key,
            ))
        for index, link in enumerate(node.dimension_links):
            report.issues.extend(validate_dimension_link(
                link,
                node_fields,
                dimension_cache.get(link.dimension_id),
                path=key,
                index=index,
            ))

    if report.issues:
        logger.info(f"Model definition has {len(report.issues)} validation issue(s)")
    return report
