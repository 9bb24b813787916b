"""
Model Persistence

Moves whole model definitions between an editor session and a model service:
- save: create on first save (adopting the returned id), overwrite afterwards
- load: fetch by id, replace the session's definition wholesale, then
  eagerly preload every node's schema

There is no diffing against the last loaded version; every save sends the
complete document.
"""

import logging
from typing import Any, Dict, List, Optional

from modeler.errors import invalid_document, model_not_found, no_root
from modeler.services.base import ModelService
from .model_store import ModelStore
from .model_tree import ModelDefinition, depth, node_count
from .session import EditorSession

logger = logging.getLogger(__name__)


def definition_to_document(definition: ModelDefinition) -> Dict[str, Any]:
    return definition.to_dict()


def definition_from_document(document: Any) -> ModelDefinition:
    """
    Parse a stored document.

    Raises:
        ModelerError: ERR_INVALID_DOCUMENT when the document is malformed
    """
    if not isinstance(document, dict):
        raise invalid_document(f"expected an object, got {type(document).__name__}")
    configuration = document.get("configuration")
    if configuration is not None and not isinstance(configuration, dict):
        raise invalid_document("configuration must be an object or null")
    try:
        return ModelDefinition.from_dict(document)
    except (TypeError, ValueError, AttributeError) as e:
        raise invalid_document(str(e))


class LocalModelService(ModelService):
    """ModelService over the local SQLite store."""

    def __init__(self, store: ModelStore):
        self.store = store

    async def create_model(self, document: Dict[str, Any]) -> int:
        return self.store.create(document)

    async def update_model(self, model_id: int, document: Dict[str, Any]) -> None:
        if not self.store.update(model_id, document):
            raise model_not_found(model_id)

    async def get_model(self, model_id: int) -> Dict[str, Any]:
        document = self.store.get(model_id)
        if document is None:
            raise model_not_found(model_id)
        return document

    async def delete_model(self, model_id: int) -> bool:
        return self.store.delete(model_id)

    async def list_models(self, parent_id: Optional[int] = None) -> List[Dict[str, Any]]:
        return self.store.list_all(parent_id)


class ModelPersistence:
    """
    Save and load editor sessions through a ModelService.

    Usage:
        persistence = ModelPersistence(LocalModelService(ModelStore()))
        model_id = await persistence.save(session)
        session = await persistence.open(model_id, schema_service, dimension_service)
    """

    def __init__(self, service: ModelService):
        self.service = service

    async def save(self, session: EditorSession, validate: bool = True) -> int:
        """
        Persist the whole definition.

        New definitions are created once and adopt the returned id; existing
        ones are overwritten under their id. A failed call leaves the session
        untouched.

        Raises:
            ModelerError: ERR_NO_ROOT for an empty tree, ERR_VALIDATION_FAILED
                when ``validate`` finds issues, or a service error
        """
        definition = session.definition
        if definition.tree.is_empty:
            raise no_root()
        if validate:
            session.validate().raise_for_issues()

        document = definition_to_document(definition)
        if definition.is_new:
            model_id = await self.service.create_model(document)
            definition.id = model_id
            logger.info(f"Created model {model_id} from session {session.id[:8]}")
        else:
            await self.service.update_model(definition.id, document)
            logger.info(f"Saved model {definition.id} from session {session.id[:8]}")
        return definition.id

    async def load(self, model_id: int, session: EditorSession, preload: bool = True) -> EditorSession:
        """
        Replace the session's definition with the stored one.

        The session is only modified once the document has been fetched and
        parsed, so a failed load leaves it exactly as it was.
        """
        document = await self.service.get_model(model_id)
        definition = definition_from_document(document)
        if not definition.id:
            definition.id = model_id
        session.replace_definition(definition)
        logger.info(
            f"Loaded model {model_id} into session {session.id[:8]} "
            f"({node_count(definition.tree)} node(s), {depth(definition.tree)} level(s))"
        )
        if preload:
            await session.preload()
        return session

    async def open(
        self,
        model_id: int,
        schema_service,
        dimension_service,
        preload: bool = True
    ) -> EditorSession:
        """Load a stored model into a new session."""
        session = EditorSession(schema_service, dimension_service)
        return await self.load(model_id, session, preload=preload)

    async def delete(self, model_id: int) -> bool:
        deleted = await self.service.delete_model(model_id)
        if deleted:
            logger.info(f"Deleted model {model_id}")
        return deleted
