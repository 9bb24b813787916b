"""
Model Tree

In-memory representation of a model definition's join tree:
- Root table node with recursively nested child nodes
- Relationship (cardinality + field mappings) binding a node to its parent
- Dimension links resolving a column through an external dimension tree

Nodes are immutable. Every edit rebuilds the nodes on the path from the root
to the target and shares every untouched subtree by reference.

Nodes are addressed by NodePath, a tuple of child indices from the root.
Paths are NOT stable: deleting a node shifts every later sibling (and all of
its descendants) one position left. Each node also carries a ``uid`` assigned
at creation, which survives edits and lets callers recognise a node after its
path has moved.
"""

import logging
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from modeler.errors import path_not_found

logger = logging.getLogger(__name__)


NodePath = Tuple[int, ...]

ROOT_PATH: NodePath = ()


class Cardinality(str, Enum):
    """Relationship cardinality."""
    ONE_TO_ONE = "1:1"
    ONE_TO_MANY = "1:n"


class DimensionScope(str, Enum):
    """Part of the dimension tree a link is allowed to match against."""
    CHILDREN = "children"
    DESCENDANTS = "descendants"
    LEAVES = "leaves"


def new_uid() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class FieldMapping:
    """Join condition: parent column = child column."""
    parent_field: str = ""
    child_field: str = ""

    def to_dict(self) -> dict:
        return {"fromField": self.parent_field, "toField": self.child_field}

    @classmethod
    def from_dict(cls, data: dict) -> "FieldMapping":
        return cls(
            parent_field=data.get("fromField", data.get("parent_field", "")) or "",
            child_field=data.get("toField", data.get("child_field", "")) or "",
        )


@dataclass(frozen=True)
class Relationship:
    """
    How a node joins its parent.

    Attributes:
        cardinality: 1:1 or 1:n
        field_mappings: Join column pairs; at least one is required to save
    """
    cardinality: Cardinality = Cardinality.ONE_TO_ONE
    field_mappings: Tuple[FieldMapping, ...] = ()

    def to_dict(self) -> dict:
        return {
            "type": self.cardinality.value,
            "fields": [m.to_dict() for m in self.field_mappings],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Relationship":
        return cls(
            cardinality=Cardinality(data.get("type", data.get("cardinality", "1:1"))),
            field_mappings=tuple(
                FieldMapping.from_dict(m) for m in (data.get("fields") or [])
            ),
        )


@dataclass(frozen=True)
class DimensionLink:
    """
    Binding of a table column to a position in an external dimension.

    Attributes:
        dimension_id: Dimension to resolve through (0 = not chosen)
        dimension_item_id: Anchor item inside the dimension tree
        table_field: Column of the node's table
        dimension_field: Built-in or custom dimension attribute matched against
        scope: Children, descendants or leaves of the anchor item
    """
    dimension_id: int = 0
    dimension_item_id: int = 0
    table_field: str = ""
    dimension_field: str = ""
    scope: DimensionScope = DimensionScope.CHILDREN

    def to_dict(self) -> dict:
        return {
            "dim_id": self.dimension_id,
            "item_id": self.dimension_item_id,
            "dim_field": self.dimension_field,
            "table_field": self.table_field,
            "type": self.scope.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DimensionLink":
        return cls(
            dimension_id=int(data.get("dim_id") or 0),
            dimension_item_id=int(data.get("item_id") or 0),
            table_field=data.get("table_field") or "",
            dimension_field=data.get("dim_field") or "",
            scope=DimensionScope(data.get("type") or "children"),
        )


@dataclass(frozen=True)
class ModelNode:
    """
    One table join point in the model tree.

    Attributes:
        source_table_id: Table identifier, 0 while not yet chosen
        label: Display name, usually the table name
        relationship: Join to the parent; always None on the root
        dimension_links: Dimension bindings of this node's columns
        children: Child nodes, in display order
        uid: Stable identity; not persisted, ignored by equality
    """
    source_table_id: int = 0
    label: str = ""
    relationship: Optional[Relationship] = None
    dimension_links: Tuple[DimensionLink, ...] = ()
    children: Tuple["ModelNode", ...] = ()
    uid: str = field(default_factory=new_uid, compare=False, repr=False)

    @property
    def has_table(self) -> bool:
        return self.source_table_id != 0

    def to_dict(self) -> dict:
        result: Dict[str, Any] = {
            "source_id": self.source_table_id,
            "name": self.label,
        }
        if self.relationship is not None:
            result["relationships"] = self.relationship.to_dict()
        result["dimensions"] = [d.to_dict() for d in self.dimension_links]
        result["childrens"] = [c.to_dict() for c in self.children]
        return result

    @classmethod
    def from_dict(cls, data: dict) -> "ModelNode":
        relationship = data.get("relationships")
        return cls(
            source_table_id=int(data.get("source_id", data.get("table_id")) or 0),
            label=data.get("name") or "",
            relationship=Relationship.from_dict(relationship) if relationship else None,
            dimension_links=tuple(
                DimensionLink.from_dict(d) for d in (data.get("dimensions") or [])
            ),
            children=tuple(cls.from_dict(c) for c in (data.get("childrens") or [])),
        )


@dataclass(frozen=True)
class ModelTree:
    """The join tree. ``root`` is None once the whole tree has been deleted."""
    root: Optional[ModelNode] = None

    @property
    def is_empty(self) -> bool:
        return self.root is None

    def to_dict(self) -> Optional[dict]:
        return self.root.to_dict() if self.root is not None else None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ModelTree":
        if not data:
            return cls(root=None)
        # The root has no parent to join against.
        return cls(root=replace(ModelNode.from_dict(data), relationship=None))


@dataclass
class ModelDefinition:
    """
    A complete model definition as edited in one session.

    Attributes:
        id: Persistence identifier, 0 until first saved
        code: Model code
        display_name: Display name
        description: Free text description
        status: Publication status flag
        parent_id: Folder the model is filed under
        tree: The join tree
    """
    id: int = 0
    code: str = ""
    display_name: str = ""
    description: str = ""
    status: int = 1
    parent_id: int = 0
    tree: ModelTree = field(default_factory=lambda: ModelTree(root=ModelNode()))

    @property
    def is_new(self) -> bool:
        return self.id == 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "model_code": self.code,
            "display_name": self.display_name,
            "description": self.description,
            "status": self.status,
            "parent_id": self.parent_id,
            "configuration": self.tree.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ModelDefinition":
        return cls(
            id=int(data.get("id") or 0),
            code=data.get("model_code", data.get("code", "")) or "",
            display_name=data.get("display_name") or "",
            description=data.get("description") or "",
            status=int(data.get("status", 1) or 0),
            parent_id=int(data.get("parent_id") or 0),
            tree=ModelTree.from_dict(data.get("configuration")),
        )


# =============================================================================
# PATHS
# =============================================================================

def path_key(path: NodePath) -> str:
    """Serialize a path to its cache/API key: ``/`` for the root, ``/0/1`` below."""
    return "/" + "/".join(str(i) for i in path)


def parse_path(key: str) -> NodePath:
    """Inverse of path_key. Accepts keys with or without the leading slash."""
    parts = [p for p in (key or "").strip().split("/") if p != ""]
    try:
        path = tuple(int(p) for p in parts)
    except ValueError:
        raise path_not_found(key)
    if any(i < 0 for i in path):
        raise path_not_found(key)
    return path


def parent_path(path: NodePath) -> Optional[NodePath]:
    """Parent of ``path``; None for the root."""
    if not path:
        return None
    return path[:-1]


def is_ancestor(ancestor: NodePath, path: NodePath) -> bool:
    """True when ``ancestor`` is a strict prefix of ``path``."""
    return len(ancestor) < len(path) and path[:len(ancestor)] == ancestor


# =============================================================================
# READ / WRITE PRIMITIVES
# =============================================================================

def get_node_at_path(tree: ModelTree, path: NodePath) -> Optional[ModelNode]:
    """
    Resolve ``path`` child index by child index.

    Returns:
        The node, or None when the tree is empty or any index is out of
        range (a stale path). Never raises.
    """
    node = tree.root
    if node is None:
        return None
    for index in path:
        if index < 0 or index >= len(node.children):
            return None
        node = node.children[index]
    return node


def with_node_at_path(
    tree: ModelTree,
    path: NodePath,
    updater: Callable[[ModelNode], ModelNode]
) -> ModelTree:
    """
    Copy-on-write update of the node at ``path``.

    Every node from the root down to the target is rebuilt; all other
    subtrees are shared with the original tree.

    Raises:
        ModelerError: ERR_PATH_NOT_FOUND when the path does not resolve. The
            original tree is left unchanged.
    """
    if tree.root is None:
        raise path_not_found(path_key(path), 0)

    def rebuild(node: ModelNode, depth: int) -> ModelNode:
        if depth == len(path):
            return updater(node)
        index = path[depth]
        if index < 0 or index >= len(node.children):
            raise path_not_found(path_key(path), depth)
        child = rebuild(node.children[index], depth + 1)
        return replace(
            node,
            children=node.children[:index] + (child,) + node.children[index + 1:],
        )

    return ModelTree(root=rebuild(tree.root, 0))


def walk(tree: ModelTree) -> Iterator[Tuple[NodePath, ModelNode]]:
    """Pre-order traversal yielding ``(path, node)`` pairs."""
    if tree.root is None:
        return
    stack: List[Tuple[NodePath, ModelNode]] = [(ROOT_PATH, tree.root)]
    while stack:
        path, node = stack.pop()
        yield path, node
        for index in range(len(node.children) - 1, -1, -1):
            stack.append((path + (index,), node.children[index]))


def find_path(tree: ModelTree, uid: str) -> Optional[NodePath]:
    """Current path of the node with ``uid``, or None if it no longer exists."""
    for path, node in walk(tree):
        if node.uid == uid:
            return path
    return None


def node_count(tree: ModelTree) -> int:
    return sum(1 for _ in walk(tree))


def depth(tree: ModelTree) -> int:
    """Number of levels; 0 for an empty tree."""
    return max((len(path) + 1 for path, _ in walk(tree)), default=0)
