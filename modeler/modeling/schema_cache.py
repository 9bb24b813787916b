"""
Schema Cache

Memoizes table-column metadata fetched from the schema service:
- Entries keyed by node path, since the same table can sit at several tree
  positions with different parent contexts
- A secondary memo keyed by table id, so one table is fetched only once
- Dimension custom columns cached separately, keyed by dimension id

Each entry remembers the node uid and table id it was fetched for. A result
is applied only while its path still resolves to that same node with that
same table, so a fetch that completes after a structural edit is dropped
instead of being attached to whichever node moved into its old position.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .model_tree import ModelTree, NodePath, get_node_at_path, path_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ColumnInfo:
    """Column metadata as returned by the schema service."""
    name: str
    type: str = ""
    comment: str = ""

    def to_dict(self) -> dict:
        return {"name": self.name, "type": self.type, "comment": self.comment}

    @classmethod
    def from_dict(cls, data: dict) -> "ColumnInfo":
        return cls(
            name=data.get("name", ""),
            type=data.get("type", data.get("data_type", "")) or "",
            comment=data.get("comment") or "",
        )


@dataclass(frozen=True)
class DimensionColumn:
    """Custom column declared on a dimension."""
    name: str
    comment: str = ""
    max_length: Optional[int] = None

    def to_dict(self) -> dict:
        return {"name": self.name, "comment": self.comment, "maxLength": self.max_length}

    @classmethod
    def from_dict(cls, data: dict) -> "DimensionColumn":
        max_length = data.get("length", data.get("maxLength", data.get("max_length")))
        return cls(
            name=data.get("name", ""),
            comment=data.get("comment") or "",
            max_length=int(max_length) if max_length is not None else None,
        )


@dataclass(frozen=True)
class FetchRequest:
    """
    A schema fetch issued for one node.

    Attributes:
        path: Node path at the time the fetch was issued
        uid: Identity of the node the fetch is for
        table_id: Table whose schema is requested
    """
    path: NodePath
    uid: str
    table_id: int

    @property
    def key(self) -> str:
        return path_key(self.path)

    def is_current(self, tree: ModelTree) -> bool:
        """True while ``path`` still resolves to the same node and table."""
        node = get_node_at_path(tree, self.path)
        return (
            node is not None
            and node.uid == self.uid
            and node.source_table_id == self.table_id
        )


@dataclass(frozen=True)
class SchemaEntry:
    """Cached column list for the node at ``key``."""
    key: str
    uid: str
    table_id: int
    fields: Tuple[ColumnInfo, ...]

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]


class SchemaCache:
    """
    Path-keyed cache of table schemas.

    Usage:
        cache = SchemaCache()
        if cache.apply_result(tree, request, fields):
            fields = cache.fields_for(tree, request.path)
    """

    def __init__(self):
        self._entries: Dict[str, SchemaEntry] = {}
        self._tables: Dict[int, Tuple[ColumnInfo, ...]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def keys(self) -> List[str]:
        return list(self._entries)

    def get(self, path: NodePath) -> Optional[SchemaEntry]:
        return self._entries.get(path_key(path))

    def table_fields(self, table_id: int) -> Optional[Tuple[ColumnInfo, ...]]:
        """Memoized schema of ``table_id`` regardless of tree position."""
        return self._tables.get(table_id)

    def has_current(self, tree: ModelTree, path: NodePath) -> bool:
        """True when the entry at ``path`` belongs to the node now there."""
        entry = self.get(path)
        node = get_node_at_path(tree, path)
        return (
            entry is not None
            and node is not None
            and entry.uid == node.uid
            and entry.table_id == node.source_table_id
        )

    def fields_for(self, tree: ModelTree, path: Optional[NodePath]) -> Tuple[ColumnInfo, ...]:
        """
        Columns of the node at ``path``.

        Empty when the path is None or stale, the node has no table yet, or
        the entry at that key was fetched for a different node or table.
        """
        if path is None:
            return ()
        node = get_node_at_path(tree, path)
        if node is None or not node.has_table:
            return ()
        if not self.has_current(tree, path):
            return ()
        return self._entries[path_key(path)].fields

    def store(self, request: FetchRequest, fields: Iterable[ColumnInfo]) -> SchemaEntry:
        fields = tuple(fields)
        entry = SchemaEntry(
            key=request.key,
            uid=request.uid,
            table_id=request.table_id,
            fields=fields,
        )
        self._entries[entry.key] = entry
        self._tables[request.table_id] = fields
        return entry

    def apply_result(
        self,
        tree: ModelTree,
        request: FetchRequest,
        fields: Iterable[ColumnInfo]
    ) -> bool:
        """
        Store a completed fetch if it still applies to ``tree``.

        Returns:
            True if stored, False if the result was stale and dropped
        """
        fields = tuple(fields)
        if not request.is_current(tree):
            # The table memo is position independent and still valid.
            self._tables[request.table_id] = fields
            logger.debug(
                f"Dropped stale schema for {request.key} "
                f"(table {request.table_id}, node {request.uid[:8]})"
            )
            return False
        self.store(request, fields)
        return True

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def invalidate_many(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
        self._tables.clear()


class DimensionColumnCache:
    """Custom columns per dimension id, independent of the schema cache."""

    def __init__(self):
        self._columns: Dict[int, Tuple[DimensionColumn, ...]] = {}

    def __contains__(self, dimension_id: int) -> bool:
        return dimension_id in self._columns

    def get(self, dimension_id: int) -> Optional[Tuple[DimensionColumn, ...]]:
        return self._columns.get(dimension_id)

    def put(self, dimension_id: int, columns: Sequence[DimensionColumn]) -> None:
        self._columns[dimension_id] = tuple(columns)

    def snapshot(self) -> Dict[int, Tuple[DimensionColumn, ...]]:
        return dict(self._columns)

    def clear(self) -> None:
        self._columns.clear()
