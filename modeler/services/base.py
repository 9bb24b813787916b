"""
Service Interfaces

Abstract collaborators the editing engine consumes. HTTP implementations live
in clients.py; the local persistence store is adapted in
modeler.modeling.persistence.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from modeler.modeling.schema_cache import ColumnInfo, DimensionColumn


class SchemaService(ABC):
    """Returns the column list of a table."""

    @abstractmethod
    async def get_table_schema(self, table_id: int) -> List[ColumnInfo]:
        pass


class DimensionService(ABC):
    """Returns the custom columns declared on a dimension."""

    @abstractmethod
    async def get_dimension_columns(self, dimension_id: int) -> List[DimensionColumn]:
        pass


class ModelService(ABC):
    """
    Whole-document model persistence.

    There is no partial update: every write carries the complete definition
    document and overwrites what was stored (last writer wins).
    """

    @abstractmethod
    async def create_model(self, document: Dict[str, Any]) -> int:
        """Store a new definition and return its identifier."""
        pass

    @abstractmethod
    async def update_model(self, model_id: int, document: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def get_model(self, model_id: int) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def delete_model(self, model_id: int) -> bool:
        pass

    @abstractmethod
    async def list_models(self, parent_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """Summaries of stored definitions, optionally within one folder."""
        pass
