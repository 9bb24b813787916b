"""
Tree Mutator

Structural edits over a ModelTree, expressed as pure functions:
- add_root / add_child: append blank nodes
- delete_node: remove a whole subtree (confirmed by the caller)
- update_node: shallow patch of a single node; a table switch also clears
  dimension fields the node can no longer offer
- select_node: lookup plus the schema fetches the selection needs

Each operation returns a new tree together with the side effects the caller
must carry out: schema fetches to run and cache keys to drop. Nothing here
performs I/O or touches a cache.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from modeler.errors import (
    confirmation_required, invalid_patch, invalid_patch_value, no_root,
    path_not_found, root_exists, root_relationship,
)
from .configuration import FieldList, reconcile_dimension_links
from .model_tree import (
    Cardinality, DimensionLink, ModelNode, ModelTree, NodePath, Relationship,
    ROOT_PATH, get_node_at_path, is_ancestor, parent_path, path_key, walk,
    with_node_at_path,
)
from .schema_cache import FetchRequest, SchemaCache

logger = logging.getLogger(__name__)


NODE_PATCH_FIELDS = ("source_table_id", "label", "relationship", "dimension_links")


@dataclass(frozen=True)
class MutationResult:
    """
    Outcome of a structural edit.

    Attributes:
        tree: The new tree
        path: Path of the node the edit produced or touched (None after a
            deletion)
        fetches: Schema fetches the caller should run
        invalidations: Schema cache keys the caller should drop
    """
    tree: ModelTree
    path: Optional[NodePath] = None
    fetches: Tuple[FetchRequest, ...] = ()
    invalidations: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Selection:
    """Selected node, its parent, and the fetches needed to populate both."""
    path: NodePath
    node: ModelNode
    parent_path: Optional[NodePath]
    parent: Optional[ModelNode]
    fetches: Tuple[FetchRequest, ...] = ()


def blank_child() -> ModelNode:
    """A new child: no table yet, 1:1 relationship without mappings."""
    return ModelNode(
        source_table_id=0,
        relationship=Relationship(cardinality=Cardinality.ONE_TO_ONE, field_mappings=()),
        dimension_links=(),
        children=(),
    )


def add_root(tree: ModelTree) -> MutationResult:
    """Create the empty root of an empty tree."""
    if tree.root is not None:
        raise root_exists()
    logger.info("Added root node")
    return MutationResult(tree=ModelTree(root=ModelNode()), path=ROOT_PATH)


def add_child(tree: ModelTree, parent: NodePath) -> MutationResult:
    """
    Append a blank child under ``parent``.

    The new node is not selected; the caller decides.

    Raises:
        ModelerError: ERR_NO_ROOT when the tree is empty, ERR_PATH_NOT_FOUND
            when ``parent`` does not resolve
    """
    if tree.root is None:
        raise no_root()
    parent_node = get_node_at_path(tree, parent)
    if parent_node is None:
        raise path_not_found(path_key(parent))

    child = blank_child()
    new_tree = with_node_at_path(
        tree, parent, lambda node: replace(node, children=node.children + (child,))
    )
    child_path = tuple(parent) + (len(parent_node.children),)
    logger.info(f"Added child node {path_key(child_path)}")
    return MutationResult(tree=new_tree, path=child_path)


def delete_node(tree: ModelTree, path: NodePath, confirmed: bool = False) -> MutationResult:
    """
    Remove the subtree rooted at ``path``.

    Deleting the root path empties the tree. Any other path removes exactly
    that subtree; later siblings shift one index left, so their cache keys
    (and those of their descendants) are invalidated and refetched under the
    new paths.

    Raises:
        ModelerError: ERR_CONFIRMATION_REQUIRED unless ``confirmed``,
            ERR_NO_ROOT on an empty tree, ERR_PATH_NOT_FOUND on a stale path
    """
    path = tuple(path)
    if not confirmed:
        raise confirmation_required(path_key(path))
    if tree.root is None:
        raise no_root()
    if get_node_at_path(tree, path) is None:
        raise path_not_found(path_key(path))

    if not path:
        keys = tuple(path_key(p) for p, _ in walk(tree))
        logger.info("Deleted root node; model tree is now empty")
        return MutationResult(tree=ModelTree(root=None), invalidations=keys)

    parent = path[:-1]
    index = path[-1]

    def shifted(p: NodePath) -> bool:
        return is_ancestor(parent, p) and p[len(parent)] >= index

    keys = tuple(path_key(p) for p, _ in walk(tree) if shifted(p))
    new_tree = with_node_at_path(
        tree,
        parent,
        lambda node: replace(node, children=node.children[:index] + node.children[index + 1:]),
    )
    fetches = tuple(
        FetchRequest(path=p, uid=node.uid, table_id=node.source_table_id)
        for p, node in walk(new_tree)
        if shifted(p) and node.has_table
    )
    logger.info(f"Deleted subtree {path_key(path)} ({len(keys)} cached path(s) invalidated)")
    return MutationResult(tree=new_tree, fetches=fetches, invalidations=keys)


def _coerce(field: str, convert: Callable[[], Any]) -> Any:
    try:
        return convert()
    except (TypeError, ValueError, AttributeError) as e:
        raise invalid_patch_value(field, str(e))


def _as_link(value: Any) -> DimensionLink:
    if isinstance(value, DimensionLink):
        return value
    if not isinstance(value, dict):
        raise TypeError(f"expected a dimension link object, got {type(value).__name__}")
    return DimensionLink.from_dict(value)


def _coerce_patch(path: NodePath, patch: Mapping[str, Any]) -> Dict[str, Any]:
    unknown = [k for k in patch if k not in NODE_PATCH_FIELDS]
    if unknown:
        raise invalid_patch(unknown, list(NODE_PATCH_FIELDS))

    values: Dict[str, Any] = {}
    if "source_table_id" in patch:
        values["source_table_id"] = _coerce(
            "source_table_id", lambda: int(patch["source_table_id"] or 0)
        )
    if "label" in patch:
        values["label"] = patch["label"] or ""
    if "relationship" in patch:
        relationship = patch["relationship"]
        if isinstance(relationship, dict):
            relationship = _coerce("relationship", lambda: Relationship.from_dict(relationship))
        elif relationship is not None and not isinstance(relationship, Relationship):
            raise invalid_patch_value("relationship", "expected an object or null")
        if relationship is not None and not path:
            raise root_relationship()
        values["relationship"] = relationship
    if "dimension_links" in patch:
        values["dimension_links"] = _coerce("dimension_links", lambda: tuple(
            _as_link(link) for link in (patch["dimension_links"] or ())
        ))
    return values


def update_node(
    tree: ModelTree,
    path: NodePath,
    patch: Mapping[str, Any],
    dimension_columns: Optional[Mapping[int, FieldList]] = None
) -> MutationResult:
    """
    Shallow-merge ``patch`` into the node at ``path``.

    Nested values replace the old ones whole: a new relationship never keeps
    the previous mapping list, new dimension_links replace the whole list.
    Changing source_table_id drops the node's cached schema, requests the
    new table's schema and clears every dimension_field that is neither
    built-in nor a custom column in ``dimension_columns`` for its dimension.

    Raises:
        ModelerError: ERR_INVALID_PATCH for unknown keys or malformed values,
            ERR_ROOT_RELATIONSHIP for a relationship on the root,
            ERR_PATH_NOT_FOUND on a stale path
    """
    path = tuple(path)
    values = _coerce_patch(path, patch)
    node = get_node_at_path(tree, path)
    if node is None:
        raise path_not_found(path_key(path))

    updated = replace(node, **values)
    table_changed = updated.source_table_id != node.source_table_id
    if table_changed:
        updated = replace(updated, dimension_links=reconcile_dimension_links(
            updated.dimension_links, dimension_columns or {}
        ))
    new_tree = with_node_at_path(tree, path, lambda _: updated)

    fetches: Tuple[FetchRequest, ...] = ()
    invalidations: Tuple[str, ...] = ()
    if table_changed:
        invalidations = (path_key(path),)
        if updated.has_table:
            fetches = (FetchRequest(path=path, uid=updated.uid, table_id=updated.source_table_id),)
        logger.info(
            f"Node {path_key(path)} table changed "
            f"{node.source_table_id} -> {updated.source_table_id}"
        )
    return MutationResult(tree=new_tree, path=path, fetches=fetches, invalidations=invalidations)


def select_node(tree: ModelTree, path: NodePath, cache: SchemaCache) -> Selection:
    """
    Look up the node at ``path`` and the fetches its configuration needs.

    Both the node's and the parent's schemas are required to offer join
    columns; each is requested only when not already cached for that exact
    node and table. A node without a table needs no fetch.

    Raises:
        ModelerError: ERR_PATH_NOT_FOUND on a stale path
    """
    path = tuple(path)
    node = get_node_at_path(tree, path)
    if node is None:
        raise path_not_found(path_key(path))

    fetches: List[FetchRequest] = []
    if node.has_table and not cache.has_current(tree, path):
        fetches.append(FetchRequest(path=path, uid=node.uid, table_id=node.source_table_id))

    up = parent_path(path)
    parent = get_node_at_path(tree, up) if up is not None else None
    if parent is not None and parent.has_table and not cache.has_current(tree, up):
        fetches.append(FetchRequest(path=up, uid=parent.uid, table_id=parent.source_table_id))

    return Selection(
        path=path,
        node=node,
        parent_path=up,
        parent=parent,
        fetches=tuple(fetches),
    )
