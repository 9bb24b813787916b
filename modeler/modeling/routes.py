"""
Modeling API Routes

REST API endpoints for the model definition editor:
- Model persistence (whole-document create / get / update / delete / list)
- Editor sessions (selection, structural edits, node configuration,
  validation and save)
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, Field

from modeler.core.config import get_settings
from modeler.errors import model_not_found
from modeler.services import (
    ApiClient, DimensionService, HttpDimensionService, HttpModelService,
    HttpSchemaService, ModelService, SchemaService,
)
from .model_store import ModelStore
from .model_tree import Cardinality, DimensionScope, NodePath, parse_path, path_key
from .persistence import LocalModelService, ModelPersistence, definition_from_document
from .session import EditorSession, SessionRegistry
from .tree_mutator import MutationResult

logger = logging.getLogger(__name__)

models_router = APIRouter(prefix="/v1/config/models", tags=["Models"])
editor_router = APIRouter(prefix="/v1/editor/sessions", tags=["Editor"])

# Shared instances, created on first use
_store: Optional[ModelStore] = None
_api_client: Optional[ApiClient] = None
registry = SessionRegistry()


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_store() -> ModelStore:
    global _store
    if _store is None:
        _store = ModelStore(get_settings().store_path)
    return _store


def get_api_client() -> ApiClient:
    global _api_client
    if _api_client is None:
        _api_client = ApiClient.from_settings()
    return _api_client


async def close_api_client() -> None:
    global _api_client
    if _api_client is not None:
        await _api_client.close()
        _api_client = None


def get_registry() -> SessionRegistry:
    return registry


def get_schema_service(api: ApiClient = Depends(get_api_client)) -> SchemaService:
    return HttpSchemaService(api)


def get_dimension_service(api: ApiClient = Depends(get_api_client)) -> DimensionService:
    return HttpDimensionService(api)


def get_model_service(
    store: ModelStore = Depends(get_store),
    api: ApiClient = Depends(get_api_client)
) -> ModelService:
    """Local SQLite store or the remote persistence service, per settings."""
    if get_settings().persistence_mode == "remote":
        return HttpModelService(api)
    return LocalModelService(store)


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class SessionCreate(BaseModel):
    """Open an editor session on a new or a stored model."""
    modelId: Optional[int] = Field(None, description="Stored model to load; omit for a new model")
    code: str = ""
    displayName: str = ""
    description: str = ""
    parentId: int = 0


class SelectRequest(BaseModel):
    """Select a node by path key ("/" for the root, "/0/1" below)."""
    path: str


class AddChildRequest(BaseModel):
    """Append a child; defaults to the selected node."""
    parent: Optional[str] = None


class NodePatchRequest(BaseModel):
    """Shallow node patch; relationship and dimensions use the stored document format."""
    path: Optional[str] = None
    patch: Dict[str, Any]


class TableChoiceRequest(BaseModel):
    """Choose the node's source table."""
    tableId: int
    label: Optional[str] = None
    path: Optional[str] = None


class CardinalityRequest(BaseModel):
    cardinality: Cardinality
    path: Optional[str] = None


class FieldMappingRequest(BaseModel):
    parentField: str = ""
    childField: str = ""
    path: Optional[str] = None


class MappingFieldRequest(BaseModel):
    """Set one side of an existing field mapping."""
    side: str = Field(..., pattern="^(parent|child)$")
    name: str
    path: Optional[str] = None


class DimensionLinkUpdate(BaseModel):
    """Partial dimension link update; omitted fields keep their value."""
    dimensionId: Optional[int] = None
    dimensionItemId: Optional[int] = None
    tableField: Optional[str] = None
    dimensionField: Optional[str] = None
    scope: Optional[DimensionScope] = None
    path: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        mapping = {
            "dimensionId": "dimension_id",
            "dimensionItemId": "dimension_item_id",
            "tableField": "table_field",
            "dimensionField": "dimension_field",
            "scope": "scope",
        }
        values = self.model_dump(exclude_unset=True)
        return {mapping[k]: v for k, v in values.items() if k in mapping}


class SaveRequest(BaseModel):
    skipValidation: bool = False


# =============================================================================
# HELPERS
# =============================================================================

def envelope(data: Any = None, message: str = "success") -> Dict[str, Any]:
    """Response envelope shared with the upstream configuration API."""
    return {"code": 200, "message": message, "data": data}


def _path(key: Optional[str]) -> Optional[NodePath]:
    return parse_path(key) if key is not None else None


def _state(session: EditorSession, **extra) -> Dict[str, Any]:
    """Session snapshot; pending notices are delivered once and drained."""
    state = session.to_dict()
    session.drain_notices()
    state.update(extra)
    return state


def _result(result: MutationResult, applied: int = 0) -> Dict[str, Any]:
    return {
        "path": path_key(result.path) if result.path is not None else None,
        "invalidated": list(result.invalidations),
        "fetched": applied,
    }


async def _apply(session: EditorSession, result: MutationResult) -> Dict[str, Any]:
    applied = await session.load_schemas(result.fetches)
    return _state(session, result=_result(result, applied))


# =============================================================================
# MODEL PERSISTENCE
# =============================================================================

@models_router.post("")
async def create_model(
    document: Dict[str, Any] = Body(...),
    service: ModelService = Depends(get_model_service)
):
    """Store a new model definition document."""
    definition_from_document(document)
    model_id = await service.create_model(document)
    return envelope({"id": model_id})


@models_router.get("")
async def list_models(
    parent_id: Optional[int] = Query(None),
    service: ModelService = Depends(get_model_service)
):
    """List stored model definitions, optionally filtered by folder."""
    models = await service.list_models(parent_id)
    return envelope({"list": models, "total": len(models)})


@models_router.get("/{model_id}")
async def get_model(model_id: int, service: ModelService = Depends(get_model_service)):
    """Get a model definition document."""
    return envelope(await service.get_model(model_id))


@models_router.put("/{model_id}")
async def update_model(
    model_id: int,
    document: Dict[str, Any] = Body(...),
    service: ModelService = Depends(get_model_service)
):
    """Overwrite a stored model definition with the whole document."""
    definition_from_document(document)
    await service.update_model(model_id, document)
    return envelope({"id": model_id})


@models_router.delete("/{model_id}")
async def delete_model(model_id: int, service: ModelService = Depends(get_model_service)):
    """Delete a model definition."""
    if not await service.delete_model(model_id):
        raise model_not_found(model_id)
    return envelope({"deleted": True})


# =============================================================================
# EDITOR SESSIONS
# =============================================================================

@editor_router.post("")
async def create_session(
    request: SessionCreate,
    registry: SessionRegistry = Depends(get_registry),
    schema_service: SchemaService = Depends(get_schema_service),
    dimension_service: DimensionService = Depends(get_dimension_service),
    model_service: ModelService = Depends(get_model_service)
):
    """
    Open an editor session.

    With ``modelId`` the stored definition is loaded and every node's schema
    preloaded; otherwise the session starts on a new model with an empty root.
    """
    session = EditorSession(schema_service, dimension_service)
    if request.modelId is not None:
        await ModelPersistence(model_service).load(request.modelId, session)
    else:
        session.definition.code = request.code
        session.definition.display_name = request.displayName
        session.definition.description = request.description
        session.definition.parent_id = request.parentId
    registry.add(session)
    logger.info(f"Opened editor session {session.id[:8]} (model {session.definition.id})")
    return _state(session)


@editor_router.get("/{session_id}")
async def get_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Current session state."""
    return _state(registry.get(session_id))


@editor_router.delete("/{session_id}")
async def close_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Discard a session and everything it has cached."""
    registry.get(session_id)
    registry.remove(session_id)
    return {"deleted": True}


@editor_router.post("/{session_id}/select")
async def select_node(
    session_id: str,
    request: SelectRequest,
    registry: SessionRegistry = Depends(get_registry)
):
    """Select a node and load the schemas its configuration needs."""
    session = registry.get(session_id)
    selection = await session.select(parse_path(request.path))
    choices = session.field_choices(selection.path)
    return _state(
        session,
        node=selection.node.to_dict(),
        choices=choices.to_dict(),
    )


@editor_router.post("/{session_id}/root")
async def add_root(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    session = registry.get(session_id)
    return await _apply(session, session.add_root())


@editor_router.post("/{session_id}/nodes")
async def add_child(
    session_id: str,
    request: AddChildRequest,
    registry: SessionRegistry = Depends(get_registry)
):
    """Append a blank child under ``parent`` or the selected node."""
    session = registry.get(session_id)
    return await _apply(session, session.add_child(_path(request.parent)))


@editor_router.delete("/{session_id}/nodes")
async def delete_node(
    session_id: str,
    path: Optional[str] = Query(None),
    confirm: bool = Query(False),
    registry: SessionRegistry = Depends(get_registry)
):
    """
    Delete a node and its whole subtree.

    Requires ``confirm=true``; deleting "/" empties the model.
    """
    session = registry.get(session_id)
    return await _apply(session, session.delete(_path(path), confirmed=confirm))


@editor_router.patch("/{session_id}/nodes")
async def patch_node(
    session_id: str,
    request: NodePatchRequest,
    registry: SessionRegistry = Depends(get_registry)
):
    session = registry.get(session_id)
    return await _apply(session, session.update(request.patch, _path(request.path)))


@editor_router.put("/{session_id}/nodes/table")
async def choose_table(
    session_id: str,
    request: TableChoiceRequest,
    registry: SessionRegistry = Depends(get_registry)
):
    """Set the node's table; dimension fields it invalidates are cleared."""
    session = registry.get(session_id)
    result = session.choose_table(request.tableId, request.label, _path(request.path))
    return await _apply(session, result)


@editor_router.get("/{session_id}/choices")
async def get_field_choices(
    session_id: str,
    path: Optional[str] = Query(None),
    registry: SessionRegistry = Depends(get_registry)
):
    """Legal column and dimension attribute choices for a node."""
    session = registry.get(session_id)
    return session.field_choices(_path(path)).to_dict()


# -----------------------------------------------------------------------------
# Relationship
# -----------------------------------------------------------------------------

@editor_router.put("/{session_id}/relationship/cardinality")
async def set_cardinality(
    session_id: str,
    request: CardinalityRequest,
    registry: SessionRegistry = Depends(get_registry)
):
    session = registry.get(session_id)
    return await _apply(session, session.set_cardinality(request.cardinality, _path(request.path)))


@editor_router.post("/{session_id}/relationship/mappings")
async def add_field_mapping(
    session_id: str,
    request: FieldMappingRequest,
    registry: SessionRegistry = Depends(get_registry)
):
    session = registry.get(session_id)
    result = session.add_field_mapping(request.parentField, request.childField, _path(request.path))
    return await _apply(session, result)


@editor_router.put("/{session_id}/relationship/mappings/{index}")
async def set_mapping_field(
    session_id: str,
    index: int,
    request: MappingFieldRequest,
    registry: SessionRegistry = Depends(get_registry)
):
    session = registry.get(session_id)
    result = session.set_mapping_field(index, request.side, request.name, _path(request.path))
    return await _apply(session, result)


@editor_router.delete("/{session_id}/relationship/mappings/{index}")
async def remove_field_mapping(
    session_id: str,
    index: int,
    path: Optional[str] = Query(None),
    registry: SessionRegistry = Depends(get_registry)
):
    session = registry.get(session_id)
    return await _apply(session, session.remove_field_mapping(index, _path(path)))


# -----------------------------------------------------------------------------
# Dimension links
# -----------------------------------------------------------------------------

@editor_router.post("/{session_id}/dimension-links")
async def add_dimension_link(
    session_id: str,
    path: Optional[str] = Query(None),
    registry: SessionRegistry = Depends(get_registry)
):
    session = registry.get(session_id)
    return await _apply(session, session.add_dimension_link(_path(path)))


@editor_router.patch("/{session_id}/dimension-links/{index}")
async def update_dimension_link(
    session_id: str,
    index: int,
    request: DimensionLinkUpdate,
    registry: SessionRegistry = Depends(get_registry)
):
    """Edit one dimension link; a newly chosen dimension's columns are fetched."""
    session = registry.get(session_id)
    changes = request.changes()
    if changes.get("dimension_id"):
        await session.load_dimension_columns([changes["dimension_id"]])
    result = session.update_dimension_link(index, changes, _path(request.path))
    return await _apply(session, result)


@editor_router.delete("/{session_id}/dimension-links/{index}")
async def remove_dimension_link(
    session_id: str,
    index: int,
    path: Optional[str] = Query(None),
    registry: SessionRegistry = Depends(get_registry)
):
    session = registry.get(session_id)
    return await _apply(session, session.remove_dimension_link(index, _path(path)))


# -----------------------------------------------------------------------------
# Validation and save
# -----------------------------------------------------------------------------

@editor_router.post("/{session_id}/validate")
async def validate_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
    """Validate the whole definition without saving."""
    return registry.get(session_id).validate().to_dict()


@editor_router.post("/{session_id}/save")
async def save_session(
    session_id: str,
    request: Optional[SaveRequest] = None,
    registry: SessionRegistry = Depends(get_registry),
    model_service: ModelService = Depends(get_model_service)
):
    """Validate and persist the whole definition."""
    session = registry.get(session_id)
    model_id = await ModelPersistence(model_service).save(
        session, validate=not (request and request.skipValidation)
    )
    return _state(session, modelId=model_id)
