"""
Editor Session

One operator's editing session over one model definition. The session owns:
- the ModelDefinition being edited (and its tree)
- the schema cache and the dimension column cache
- the current selection
- the set of schema fetches still in flight
- transient notices for failures nobody is waiting on

Structural edits are synchronous and go through the tree mutator; they
return the fetches they require, which the caller awaits with
``load_schemas``. Fetch results are applied only if their node still sits at
the same path with the same table; otherwise they are dropped.

The selection is tracked by node uid as well as by path, so a selection
survives sibling deletions that shift its path and is cleared only when the
node itself is gone.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from modeler.errors import (
    ModelerError, no_root, no_selection, path_not_found, session_not_found,
    stale_selection,
)
from . import configuration
from .configuration import FieldChoices, ValidationReport
from .model_tree import (
    Cardinality, ModelDefinition, ModelNode, ModelTree, NodePath, Relationship,
    find_path, get_node_at_path, path_key, walk,
)
from .schema_cache import (
    DimensionColumn, DimensionColumnCache, FetchRequest, SchemaCache,
)
from .tree_mutator import (
    MutationResult, Selection, add_child, add_root, delete_node, select_node,
    update_node,
)

logger = logging.getLogger(__name__)


@dataclass
class Notice:
    """Transient, non-fatal message for the operator."""
    level: str
    message: str
    code: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        return {
            "level": self.level,
            "message": self.message,
            "code": self.code,
            "createdAt": self.created_at.isoformat(),
        }


def preload_requests(tree: ModelTree) -> List[FetchRequest]:
    """One schema fetch per node that has a table."""
    return [
        FetchRequest(path=path, uid=node.uid, table_id=node.source_table_id)
        for path, node in walk(tree)
        if node.has_table
    ]


class EditorSession:
    """
    Editing state for one model definition.

    Usage:
        session = EditorSession(schema_service, dimension_service)
        result = session.add_child()
        await session.select(result.path)
        await session.load_schemas(session.choose_table(12, "orders").fetches)
    """

    def __init__(
        self,
        schema_service,
        dimension_service,
        definition: Optional[ModelDefinition] = None,
        session_id: Optional[str] = None
    ):
        self.id = session_id or uuid.uuid4().hex
        self.definition = definition or ModelDefinition()
        self.schema_service = schema_service
        self.dimension_service = dimension_service
        self.schema_cache = SchemaCache()
        self.dimension_cache = DimensionColumnCache()
        self.notices: List[Notice] = []
        self._selected_path: Optional[NodePath] = None
        self._selected_uid: Optional[str] = None
        self._pending: Dict[Tuple[str, str, int], "asyncio.Future[bool]"] = {}

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def tree(self) -> ModelTree:
        return self.definition.tree

    @tree.setter
    def tree(self, tree: ModelTree) -> None:
        self.definition.tree = tree

    @property
    def selected_path(self) -> Optional[NodePath]:
        return self._selected_path

    @property
    def selected_node(self) -> Optional[ModelNode]:
        if self._selected_path is None:
            return None
        node = get_node_at_path(self.tree, self._selected_path)
        if node is None or node.uid != self._selected_uid:
            return None
        return node

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def busy(self) -> bool:
        """True while a schema fetch for the selected node is outstanding."""
        return self._selected_uid is not None and any(
            uid == self._selected_uid for (_, uid, _) in self._pending
        )

    def notify(self, level: str, message: str, code: Optional[str] = None) -> Notice:
        notice = Notice(level=level, message=message, code=code)
        self.notices.append(notice)
        getattr(logger, "warning" if level == "error" else level)(
            f"session {self.id[:8]}: {message}"
        )
        return notice

    def _notify_error(self, error: ModelerError) -> Notice:
        return self.notify("warning", error.message, error.code.value)

    def drain_notices(self) -> List[Notice]:
        notices, self.notices = self.notices, []
        return notices

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    def clear_selection(self) -> None:
        self._selected_path = None
        self._selected_uid = None

    def _resync_selection(self) -> None:
        """Follow the selected node to its current path, or drop the selection."""
        if self._selected_uid is None:
            return
        path = find_path(self.tree, self._selected_uid)
        if path is None:
            stale = path_key(self._selected_path) if self._selected_path is not None else "/"
            self.clear_selection()
            self._notify_error(stale_selection(stale))
        else:
            self._selected_path = path

    def _target(self, path: Optional[NodePath], action: str) -> Tuple[NodePath, ModelNode]:
        """Resolve an explicit path, or the selection when ``path`` is None."""
        if self.tree.is_empty:
            raise no_root()
        if path is None:
            if self._selected_path is None:
                raise no_selection(action)
            node = self.selected_node
            if node is None:
                error = stale_selection(path_key(self._selected_path))
                self.clear_selection()
                self._notify_error(error)
                raise error
            return self._selected_path, node
        path = tuple(path)
        node = get_node_at_path(self.tree, path)
        if node is None:
            raise path_not_found(path_key(path))
        return path, node

    async def select(self, path: NodePath) -> Selection:
        """
        Select the node at ``path`` and load what its configuration needs.

        A stale path clears the selection, leaves a notice and re-raises the
        addressing error. Fetch failures only leave notices; the selection
        still succeeds with empty field lists.
        """
        try:
            selection = select_node(self.tree, tuple(path), self.schema_cache)
        except ModelerError as e:
            self.clear_selection()
            self._notify_error(e)
            raise

        self._selected_path = selection.path
        self._selected_uid = selection.node.uid
        await asyncio.gather(
            self.load_schemas(selection.fetches),
            self.load_dimension_columns(link.dimension_id for link in selection.node.dimension_links),
        )
        return selection

    # -------------------------------------------------------------------------
    # Structural edits
    # -------------------------------------------------------------------------

    def _apply(self, result: MutationResult) -> MutationResult:
        self.tree = result.tree
        self.schema_cache.invalidate_many(result.invalidations)
        self._resync_selection()
        return result

    def add_root(self) -> MutationResult:
        return self._apply(add_root(self.tree))

    def add_child(self, parent: Optional[NodePath] = None) -> MutationResult:
        """Append a blank child under ``parent`` (default: the selection)."""
        parent_path, _ = self._target(parent, "add a child")
        return self._apply(add_child(self.tree, parent_path))

    def delete(self, path: Optional[NodePath] = None, confirmed: bool = False) -> MutationResult:
        """Delete the subtree at ``path`` (default: the selection)."""
        target, _ = self._target(path, "delete a node")
        return self._apply(delete_node(self.tree, target, confirmed=confirmed))

    def update(self, patch: Mapping[str, Any], path: Optional[NodePath] = None) -> MutationResult:
        """Patch a node; a table switch reconciles against the cached dimension columns."""
        target, _ = self._target(path, "edit a node")
        return self._apply(update_node(
            self.tree, target, patch, self.dimension_cache.snapshot()
        ))

    def choose_table(
        self,
        table_id: int,
        label: Optional[str] = None,
        path: Optional[NodePath] = None
    ) -> MutationResult:
        """Set the node's table, clearing dimension fields it invalidates."""
        target, _ = self._target(path, "choose a table")
        patch: Dict[str, Any] = {"source_table_id": table_id}
        if label is not None:
            patch["label"] = label
        return self.update(patch, target)

    # -------------------------------------------------------------------------
    # Relationship and dimension link edits
    # -------------------------------------------------------------------------

    def set_cardinality(self, cardinality: Cardinality, path: Optional[NodePath] = None) -> MutationResult:
        target, node = self._target(path, "edit the relationship")
        relationship = configuration.set_cardinality(node.relationship, cardinality)
        return self.update({"relationship": relationship}, target)

    def add_field_mapping(
        self,
        parent_field: str = "",
        child_field: str = "",
        path: Optional[NodePath] = None
    ) -> MutationResult:
        target, node = self._target(path, "edit the relationship")
        relationship = configuration.add_field_mapping(node.relationship, parent_field, child_field)
        return self.update({"relationship": relationship}, target)

    def set_mapping_field(
        self,
        index: int,
        side: str,
        name: str,
        path: Optional[NodePath] = None
    ) -> MutationResult:
        target, node = self._target(path, "edit the relationship")
        relationship = configuration.set_mapping_field(
            node.relationship or Relationship(), index, side, name
        )
        return self.update({"relationship": relationship}, target)

    def remove_field_mapping(self, index: int, path: Optional[NodePath] = None) -> MutationResult:
        target, node = self._target(path, "edit the relationship")
        relationship = configuration.remove_field_mapping(
            node.relationship or Relationship(), index
        )
        return self.update({"relationship": relationship}, target)

    def add_dimension_link(self, path: Optional[NodePath] = None) -> MutationResult:
        target, node = self._target(path, "add a dimension link")
        links = node.dimension_links + (configuration.new_dimension_link(),)
        return self.update({"dimension_links": links}, target)

    def update_dimension_link(
        self,
        index: int,
        changes: Mapping[str, Any],
        path: Optional[NodePath] = None
    ) -> MutationResult:
        target, node = self._target(path, "edit a dimension link")
        links = configuration.update_dimension_link(node.dimension_links, index, changes)
        return self.update({"dimension_links": links}, target)

    def remove_dimension_link(self, index: int, path: Optional[NodePath] = None) -> MutationResult:
        target, node = self._target(path, "remove a dimension link")
        links = configuration.remove_dimension_link(node.dimension_links, index)
        return self.update({"dimension_links": links}, target)

    # -------------------------------------------------------------------------
    # Schema loading
    # -------------------------------------------------------------------------

    async def fetch_schema(self, request: FetchRequest) -> bool:
        """
        Fetch and cache one schema.

        Identical in-flight requests share one service call, and a table
        already fetched for another path is served from the table memo.

        Returns:
            True if the result was stored, False if it failed or was stale
        """
        memo = self.schema_cache.table_fields(request.table_id)
        if memo is not None:
            return self.schema_cache.apply_result(self.tree, request, memo)

        ident = (request.key, request.uid, request.table_id)
        future = self._pending.get(ident)
        if future is None:
            future = asyncio.ensure_future(self._fetch_schema(request))
            self._pending[ident] = future
            future.add_done_callback(lambda _: self._pending.pop(ident, None))
        return await future

    async def _fetch_schema(self, request: FetchRequest) -> bool:
        try:
            fields = await self.schema_service.get_table_schema(request.table_id)
        except ModelerError as e:
            self._notify_error(e)
            return False
        return self.schema_cache.apply_result(self.tree, request, fields)

    async def load_schemas(self, requests: Iterable[FetchRequest]) -> int:
        """Run fetches concurrently; returns how many results were stored."""
        requests = list(requests)
        if not requests:
            return 0
        results = await asyncio.gather(*(self.fetch_schema(r) for r in requests))
        return sum(1 for applied in results if applied)

    async def fetch_dimension_columns(self, dimension_id: int) -> Optional[Tuple[DimensionColumn, ...]]:
        if not dimension_id:
            return None
        cached = self.dimension_cache.get(dimension_id)
        if cached is not None:
            return cached
        try:
            columns = await self.dimension_service.get_dimension_columns(dimension_id)
        except ModelerError as e:
            self._notify_error(e)
            return None
        self.dimension_cache.put(dimension_id, columns)
        return self.dimension_cache.get(dimension_id)

    async def load_dimension_columns(self, dimension_ids: Iterable[int]) -> None:
        ids = sorted({d for d in dimension_ids if d})
        if ids:
            await asyncio.gather(*(self.fetch_dimension_columns(d) for d in ids))

    async def preload(self) -> int:
        """Eagerly fetch every node's schema and every linked dimension."""
        dimension_ids = [
            link.dimension_id
            for _, node in walk(self.tree)
            for link in node.dimension_links
        ]
        applied, _ = await asyncio.gather(
            self.load_schemas(preload_requests(self.tree)),
            self.load_dimension_columns(dimension_ids),
        )
        logger.info(f"Preloaded {applied} schema(s) for model {self.definition.id}")
        return applied

    # -------------------------------------------------------------------------
    # Whole definition
    # -------------------------------------------------------------------------

    def replace_definition(self, definition: ModelDefinition) -> None:
        """Swap in a loaded definition; selection and caches start over."""
        self.definition = definition
        self.schema_cache.clear()
        self.dimension_cache.clear()
        self.clear_selection()

    def validate(self) -> ValidationReport:
        return configuration.validate_definition(
            self.definition, self.schema_cache, self.dimension_cache
        )

    def field_choices(self, path: Optional[NodePath] = None) -> FieldChoices:
        target, node = self._target(path, "list field choices")
        return configuration.field_choices(
            self.tree, target, node, self.schema_cache, self.dimension_cache
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "definition": self.definition.to_dict(),
            "selection": path_key(self._selected_path) if self._selected_path is not None else None,
            "busy": self.busy,
            "cachedPaths": sorted(self.schema_cache.keys()),
            "notices": [n.to_dict() for n in self.notices],
        }


class SessionRegistry:
    """In-memory editor sessions for the API, keyed by session id."""

    def __init__(self):
        self._sessions: Dict[str, EditorSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def add(self, session: EditorSession) -> EditorSession:
        self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> EditorSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise session_not_found(session_id)
        return session

    def remove(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None
