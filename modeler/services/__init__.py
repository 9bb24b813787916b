"""
Upstream services consumed by the editing engine.
"""

from .base import DimensionService, ModelService, SchemaService
from .clients import ApiClient, HttpDimensionService, HttpModelService, HttpSchemaService

__all__ = [
    "SchemaService",
    "DimensionService",
    "ModelService",
    "ApiClient",
    "HttpSchemaService",
    "HttpDimensionService",
    "HttpModelService",
]
